#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import argparse
import datetime
import os
import psutil
import common
import build_config
import build_toolchain

release_notes_file = "TOOLCHAIN_RELEASE_NOTES.md"


class release_environment:
    """一次发布所需的路径和参数"""

    config: build_config.build_configure  # 构建配置
    version: str  # 发布版本号
    arch: str  # 目标架构
    toolchain_list: list[str]  # 要发布的工具链类型
    releases_dir: str  # 归档输出目录
    stage_dir: str  # 归档内容暂存目录
    notes_path: str  # 发布说明路径

    def __init__(self, config: build_config.build_configure, version: str | None = None, arch: str | None = None, toolchain_list: list[str] | None = None) -> None:
        self.config = config
        self.version = version or config.version
        self.arch = arch or config.arch
        if self.arch not in config.supported_arch_list:
            raise common.config_error(f"Unsupported architecture: {self.arch}. Supported architectures: {', '.join(config.supported_arch_list)}")
        self.toolchain_list = []
        for toolchain in toolchain_list or config.toolchain_type_list:
            if (name := build_config.normalize_toolchain(toolchain)) not in self.toolchain_list:
                self.toolchain_list.append(name)
        self.releases_dir = os.path.join(config.project_root, "releases")
        self.stage_dir = os.path.join(config.build_dir, "release")
        self.notes_path = os.path.join(config.project_root, release_notes_file)

    def get_name(self, toolchain: str) -> str:
        """归档名称，如musl-aarch64-1.0.0"""
        return f"{toolchain}-{self.arch}-{self.version}"

    def get_archive_path(self, toolchain: str) -> str:
        return os.path.join(self.releases_dir, f"{self.get_name(toolchain)}.tar.xz")

    def get_checksum_path(self, toolchain: str) -> str:
        return os.path.join(self.releases_dir, f"{self.get_name(toolchain)}-SHA256SUMS.txt")

    def get_upload_list(self) -> list[str]:
        """所有要上传的文件"""
        upload_list: list[str] = []
        for toolchain in self.toolchain_list:
            upload_list += [self.get_archive_path(toolchain), self.get_checksum_path(toolchain)]
        return upload_list


def stage(env: release_environment, toolchain: str) -> str:
    """将bin/和sysroot复制到暂存目录，不包含libexec/和share/

    Raises:
        build_step_error: 工具链不存在

    Returns:
        str: 暂存目录
    """
    output_dir = env.config.get_output_dir(env.arch, toolchain)
    target = env.config.get_target(env.arch, toolchain)
    if not os.path.isdir(output_dir) and not common.command_dry_run.get():
        raise common.build_step_error(f"Toolchain not found at: {output_dir}")
    stage_dir = os.path.join(env.stage_dir, env.get_name(toolchain))
    common.mkdir(stage_dir)
    for item in ("bin", target):
        if not os.path.isdir(os.path.join(output_dir, item)) and not common.command_dry_run.get():
            raise common.build_step_error(f"Incomplete toolchain at {output_dir}: {item}/ not found.")
        common.copy(os.path.join(output_dir, item), os.path.join(stage_dir, item))
    return stage_dir


def compress(env: release_environment, toolchain: str) -> str:
    """创建可复现的tar.xz归档

    Returns:
        str: 归档路径
    """
    name = env.get_name(toolchain)
    tar_path = os.path.join(env.releases_dir, f"{name}.tar")
    common.mkdir(env.releases_dir, False)
    common.remove_if_exists(env.get_archive_path(toolchain))
    common.run_command(
        f"tar --sort=name --mtime=@{env.config.source_date_epoch} --owner=0 --group=0 --numeric-owner "
        f"-cf {tar_path} -C {env.stage_dir} {name}"
    )
    memory_MB = psutil.virtual_memory().available // 1048576 + 3072
    common.run_command(f"xz -fev9 -T 0 --memlimit={memory_MB}MiB {tar_path}")
    return env.get_archive_path(toolchain)


def write_checksum(env: release_environment, toolchain: str) -> None:
    """写入归档的sha256校验和，格式兼容sha256sum -c"""
    archive_path = env.get_archive_path(toolchain)
    if common.command_dry_run.get():
        common.log_info(f"Skip checksum of {archive_path} in dry-run mode.")
        return
    checksum = common.sha256sum(archive_path)
    common.write_file(env.get_checksum_path(toolchain), f"{checksum}  {os.path.basename(archive_path)}\n")
    common.log_success(f"Checksum generated: {os.path.basename(env.get_checksum_path(toolchain))}")


def get_release_notes(env: release_environment) -> str:
    """生成发布说明，版本号取自构建配置"""
    config = env.config
    package_list = config.get_packages()

    def get_version(name: str) -> str:
        return package_list[name].version if name in package_list else "unknown"

    build_date = datetime.datetime.fromtimestamp(config.source_date_epoch, datetime.timezone.utc)
    lines = [
        f"# ForgeOS Toolchains {env.version}",
        "",
        "Cross-compilation toolchains for the ForgeOS edge Linux distribution.",
        "",
        "## Build Information",
        "",
        f"- **Version**: {env.version}",
        f"- **Architecture**: {env.arch}",
        f"- **Build Date**: {build_date.strftime('%Y-%m-%dT%H:%M:%SZ')}",
        f"- **Source Date Epoch**: {config.source_date_epoch}",
        "",
        "## Available Toolchains",
        "",
    ]
    for toolchain in env.toolchain_list:
        libc = build_config.libc_package_list[toolchain]
        lines += [
            f"### {toolchain} Toolchain",
            f"- **Target Triple**: {config.get_target(env.arch, toolchain)}",
            f"- **C Library**: {libc} {get_version(libc)}",
            f"- **Compiler**: GCC {get_version('gcc')}",
            f"- **Binutils**: GNU binutils {get_version('binutils')}",
            f"- **Linux Headers**: {get_version('linux')}",
            f"- **Archive**: `{os.path.basename(env.get_archive_path(toolchain))}`",
            "",
        ]
    first = env.toolchain_list[0]
    lines += [
        "## Archive Contents",
        "",
        "- `bin/`: compiler binaries (gcc, g++, ld, as, ar, ...)",
        "- `<target>/`: C library, headers and sysroot libraries",
        "",
        "`libexec/` and `share/` are not included.",
        "",
        "## Installation",
        "",
        "```bash",
        f"tar -xJf {os.path.basename(env.get_archive_path(first))} -C /opt/toolchain/",
        f"export PATH=/opt/toolchain/{env.get_name(first)}/bin:$PATH",
        f"{config.get_target(env.arch, first)}-gcc -o program program.c",
        "```",
        "",
        "## Verification",
        "",
        "```bash",
        *(f"sha256sum -c {os.path.basename(env.get_checksum_path(toolchain))}" for toolchain in env.toolchain_list),
        "```",
        "",
    ]
    return "\n".join(lines)


def publish(env: release_environment) -> None:
    """创建GitHub发布并上传所有文件"""
    files = " ".join(env.get_upload_list() + [env.notes_path])
    try:
        common.run_command(
            f'gh release create {env.version} --title "ForgeOS Toolchains {env.version} ({env.arch})" --notes-file {env.notes_path} {files}'
        )
    except common.build_step_error:
        common.log_warning(f"Release may already exist. Use: make upload-release VERSION={env.version}")
        raise
    common.log_success(f"GitHub release {env.version} created")


def upload(env: release_environment) -> None:
    """上传文件到已存在的GitHub发布

    Raises:
        build_step_error: 发布不存在或上传失败
    """
    if common.run_command(f"gh release view {env.version}", ignore_error=True, echo=False) is None and not common.command_dry_run.get():
        common.log_info(f"Create release first: make release VERSION={env.version}")
        raise common.build_step_error(f"Release not found: {env.version}")
    for path in env.get_upload_list():
        common.run_command(f"gh release upload {env.version} {path} --clobber")
        common.log_success(f"Uploaded: {os.path.basename(path)}")


def create_release(
    env: release_environment, build: bool = True, reuse_archive: bool = False, cleanup: bool = False
) -> list[str]:
    """构建、暂存并压缩所有工具链

    Args:
        env (release_environment): 发布环境
        build (bool, optional): 是否先构建工具链. 默认为True.
        reuse_archive (bool, optional): 归档已存在时是否直接使用. 默认为False.
        cleanup (bool, optional): 完成后是否删除artifacts目录. 默认为False.

    Returns:
        list[str]: 归档路径列表
    """
    common.log_info(f"Creating toolchain release: {env.version}")
    common.log_info(f"Architecture: {env.arch}")
    common.log_info(f"Toolchains: {' '.join(env.toolchain_list)}")
    archive_list: list[str] = []
    for toolchain in env.toolchain_list:
        archive_path = env.get_archive_path(toolchain)
        if reuse_archive and os.path.isfile(archive_path):
            common.log_success(f"Found: {os.path.basename(archive_path)}")
        else:
            if build:
                build_toolchain.build_specific_toolchain(env.config, env.arch, toolchain)
            common.log_info(f"Processing {toolchain} toolchain...")
            stage(env, toolchain)
            compress(env, toolchain)
            if not common.command_dry_run.get():
                common.log_success(f"Archive created: {os.path.basename(archive_path)} ({common.format_size(os.path.getsize(archive_path))})")
        if reuse_archive and os.path.isfile(env.get_checksum_path(toolchain)):
            common.log_success(f"Found: {os.path.basename(env.get_checksum_path(toolchain))}")
        else:
            write_checksum(env, toolchain)
        archive_list.append(archive_path)
    common.remove_if_exists(env.stage_dir)
    common.write_file(env.notes_path, get_release_notes(env))
    common.log_success(f"Release notes generated: {env.notes_path}")
    if cleanup:
        common.remove_if_exists(env.config.artifacts_dir)
        common.log_success("Artifacts cleaned up")
        common.log_info("To rebuild toolchains, run: make all-toolchains")
    return archive_list


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Create release archives of toolchains.", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    build_config.build_configure.add_argument(parser)
    parser.add_argument("version", nargs="?", type=str, help="The release version. Use metadata.version in build.json by default.")
    parser.add_argument("--arch", type=str, help="The target architecture. Use build.architecture.default by default.")
    parser.add_argument("--toolchains", nargs="*", type=str, help="Toolchain types to release. Use all enabled types by default.")
    parser.add_argument("--build", action=argparse.BooleanOptionalAction, help="Build the toolchains before packaging them.", default=True)
    parser.add_argument("--cleanup", action="store_true", help="Remove the artifacts directory after packaging.")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--publish", action="store_true", help="Create a GitHub release with the archives.")
    group.add_argument("--upload", action="store_true", help="Upload the archives to an existing GitHub release.")
    args = parser.parse_args(argv)

    current_config = build_config.build_configure.parse_args(args)
    current_config.check()
    env = release_environment(current_config, args.version, args.arch, args.toolchains)
    create_release(env, args.build and not args.upload, args.upload, args.cleanup and not args.upload)
    if args.publish:
        publish(env)
    elif args.upload:
        upload(env)
    common.log_success("Toolchain release complete!")


if __name__ == "__main__":
    common.run_main(main)
