#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import argparse
import common
import build_config
from toolchain_environment import environment, toolchain_pipeline
from modifier import get_modifier


def build_specific_toolchain(config: build_config.build_configure, arch: str, toolchain: str, force: bool = False) -> bool:
    """构建一个工具链

    Args:
        config (build_config.build_configure): 构建配置
        arch (str): 目标架构
        toolchain (str): 工具链类型
        force (bool, optional): 是否忽略已有产物强制重新构建. 默认为False.

    Returns:
        bool: 是否进行了构建
    """
    env = environment(config, arch, toolchain)
    pipeline = toolchain_pipeline(env, get_modifier(env.target), force)
    return pipeline.build()


def build_all_toolchains(config: build_config.build_configure, force: bool = False) -> None:
    """为当前架构构建build.json中启用的所有工具链"""
    for toolchain in config.toolchain_type_list:
        build_specific_toolchain(config, config.arch, toolchain, force)
    common.log_success(f"All toolchains built for {config.arch}: {', '.join(config.toolchain_type_list)}")


def clean(config: build_config.build_configure, remove_artifacts: bool = False) -> None:
    """删除构建目录

    Args:
        config (build_config.build_configure): 构建配置
        remove_artifacts (bool, optional): 是否同时删除工具链输出目录. 默认为False.
    """
    common.log_info("Cleaning build artifacts...")
    common.remove_if_exists(config.build_dir)
    if remove_artifacts:
        common.remove_if_exists(config.artifacts_dir)
    common.log_success("Clean complete")


def dump_config(config: build_config.build_configure) -> None:
    """打印合并后的配置"""
    for line in config.dump():
        print(line)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Build cross toolchains for ForgeOS.", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    build_config.build_configure.add_argument(parser)
    parser.add_argument("--arch", type=str, help="The target architecture. Use build.architecture.default by default.")
    parser.add_argument("--toolchain", type=str, help="The toolchain type: musl, gnu or glibc. Use build.toolchain.default by default.")
    parser.add_argument("--build-dir", dest="build_dir", type=str, help="The directory to extract and build sources.")
    parser.add_argument("--artifacts-dir", dest="artifacts_dir", type=str, help="The directory to install toolchains.")
    parser.add_argument("--packages-dir", dest="packages_dir", type=str, help="The directory containing downloaded packages.")
    parser.add_argument("--jobs", type=int, help="Number of concurrent jobs at build time. Use 1.5 times of cpu cores by default.")
    parser.add_argument("--force", action="store_true", help="Rebuild every stage even if the toolchain already exists.")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--build", action="store_true", help="Build the selected toolchain. This is the default action.")
    group.add_argument("--all-toolchains", action="store_true", help="Build all toolchain types enabled in build.json.")
    group.add_argument("--clean", action="store_true", help="Remove the build directory.")
    group.add_argument("--clean-all", action="store_true", help="Remove the build directory and all toolchains.")
    group.add_argument("--dump", action="store_true", help="Print the merged configuration and exit.")
    args = parser.parse_args(argv)

    current_config = build_config.build_configure.parse_args(args)
    current_config.check()

    if args.dump:
        dump_config(current_config)
    elif args.clean or args.clean_all:
        clean(current_config, args.clean_all)
    elif args.all_toolchains:
        build_all_toolchains(current_config, args.force)
    else:
        build_specific_toolchain(current_config, current_config.arch, current_config.toolchain, args.force)


if __name__ == "__main__":
    common.run_main(main)
