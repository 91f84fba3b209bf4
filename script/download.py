#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import argparse
import datetime
import os
import common
import build_config

package_info_file = "package-info.txt"


def _exist_echo(package: build_config.package_info) -> None:
    """包已存在时显示提示"""
    common.log_success(f"Package {package.filename} exists, skip download.")


def get_url_list(config: build_config.build_configure, package: build_config.package_info) -> list[str]:
    """获取包的候选下载地址，forge-packages镜像优先于上游地址

    Args:
        config (build_config.build_configure): 构建配置
        package (build_config.package_info): 要下载的包

    Returns:
        list[str]: 按尝试顺序排列的下载地址
    """
    url_list: list[str] = []
    if mirror := config.get_forge_packages_url(package):
        url_list.append(mirror)
    if package.url not in url_list:
        url_list.append(package.url)
    return url_list


def check_sha256(package: build_config.package_info, path: str) -> bool:
    """检查文件的sha256校验和，未配置校验和时视为通过"""
    if not package.sha256:
        return True
    checksum = common.sha256sum(path)
    if checksum != package.sha256:
        common.log_warning(f"Checksum mismatch for {package.filename}: expected {package.sha256}, got {checksum}.")
        return False
    return True


def download_package(config: build_config.build_configure, package: build_config.package_info, verify: bool = True, retry: int = 3) -> str:
    """下载单个包，已缓存且校验通过的包不会重新下载

    Args:
        config (build_config.build_configure): 构建配置
        package (build_config.package_info): 要下载的包
        verify (bool, optional): 是否校验sha256. 默认校验.
        retry (int, optional): wget的重试次数. 默认为3.

    Raises:
        missing_package_error: 所有地址均下载失败或下载后校验和不匹配

    Returns:
        str: 包的路径
    """
    path = package.get_path(config.packages_dir)
    if os.path.isfile(path):
        if not verify or check_sha256(package, path):
            _exist_echo(package)
            return path
        common.log_warning(f"Re-downloading {package.filename}.")
        common.remove(path)

    for url in get_url_list(config, package):
        common.log_info(f"Downloading {package.filename} from {url}")
        result = common.run_command(f"wget -c -t {retry} -O {path} {url}", ignore_error=True)
        if common.command_dry_run.get():
            return path
        if result is not None and os.path.isfile(path):
            break
        # 删除不完整的文件后尝试下一个地址
        common.remove_if_exists(path)
        common.log_warning(f"Download {package.filename} from {url} failed.")
    else:
        raise common.missing_package_error(f"Failed to download {package.filename}.")

    if verify and not check_sha256(package, path):
        common.remove(path)
        raise common.missing_package_error(f"Checksum verification failed for {package.filename}.")
    common.log_success(f"Downloaded {package.filename} ({common.format_size(os.path.getsize(path))})")
    return path


def get_package_info(config: build_config.build_configure, package_list: dict[str, build_config.package_info]) -> str:
    """生成package-info.txt的内容"""
    generated = datetime.datetime.fromtimestamp(config.source_date_epoch, datetime.timezone.utc)
    if config.forge_packages_releases and config.forge_packages_version:
        source = f"{config.forge_packages_releases.rstrip('/')}/tag/{config.forge_packages_version}"
    else:
        source = "upstream"
    lines = [
        "ForgeOS Toolchain Packages",
        f"Source: {source}",
        f"Directory: {config.packages_dir}",
        f"Generated: {generated.strftime('%Y-%m-%dT%H:%M:%SZ')}",
        "",
        "Available packages:",
    ]
    for package in package_list.values():
        path = package.get_path(config.packages_dir)
        if os.path.isfile(path):
            lines.append(f"  {package.filename} ({common.format_size(os.path.getsize(path))})")
    lines.append("")
    return "\n".join(lines)


def download(config: build_config.build_configure, toolchain: str | None = None, verify: bool = True, retry: int = 3) -> list[str]:
    """下载不存在的包

    Args:
        config (build_config.build_configure): 构建配置
        toolchain (str | None, optional): 只下载该工具链所需的包. 默认下载所有包.
        verify (bool, optional): 是否校验sha256. 默认校验.
        retry (int, optional): wget的重试次数. 默认为3.

    Returns:
        list[str]: 所有包的路径
    """
    package_list = config.get_packages(toolchain)
    common.log_info(f"Downloading {len(package_list)} packages to {config.packages_dir}")
    common.mkdir(config.packages_dir, False)
    path_list = [download_package(config, package, verify, retry) for package in package_list.values()]
    common.write_file(os.path.join(config.packages_dir, package_info_file), get_package_info(config, package_list))
    common.log_success("All packages downloaded.")
    return path_list


def list_packages(config: build_config.build_configure, toolchain: str | None = None) -> list[str]:
    """列出包及其下载状态

    Returns:
        list[str]: 每个包一行描述
    """
    lines: list[str] = []
    for package in config.get_packages(toolchain).values():
        path = package.get_path(config.packages_dir)
        state = f"downloaded, {common.format_size(os.path.getsize(path))}" if os.path.isfile(path) else "missing"
        lines.append(f"{package.name} {package.version}: {package.filename} [{state}]")
    return lines


def remove(config: build_config.build_configure, toolchain: str | None = None) -> None:
    """删除已下载的包

    Args:
        config (build_config.build_configure): 构建配置
        toolchain (str | None, optional): 只删除该工具链所需的包. 默认删除所有包.
    """
    removed = False
    for package in config.get_packages(toolchain).values():
        path = package.get_path(config.packages_dir)
        if os.path.exists(path):
            common.remove(path)
            removed = True
    common.remove_if_exists(os.path.join(config.packages_dir, package_info_file))
    if removed:
        common.log_success(f"Packages removed from {config.packages_dir}")
    else:
        common.log_info("No downloaded package to remove.")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Download source packages for building toolchains.", formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    build_config.build_configure.add_argument(parser)
    parser.add_argument("--packages-dir", dest="packages_dir", type=str, help="The directory to save packages.")
    parser.add_argument("--toolchain", type=str, help="Only handle packages needed by this toolchain type.")
    parser.add_argument("--retry", type=int, help="The number of retries when a download failed.", default=3)
    parser.add_argument("--verify", action=argparse.BooleanOptionalAction, help="Verify sha256 checksums of packages.", default=True)
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--download", action="store_true", help="Download missing packages. This is the default action.")
    group.add_argument("--list", action="store_true", help="List packages and whether they are downloaded.")
    group.add_argument("--remove", action="store_true", help="Remove downloaded packages.")
    args = parser.parse_args(argv)
    if args.retry < 0:
        raise common.config_error(f"Invalid network try times: {args.retry}.")

    current_config = build_config.build_configure.parse_args(args)
    current_config.check()
    toolchain = build_config.normalize_toolchain(args.toolchain) if args.toolchain else None
    if args.list:
        for line in list_packages(current_config, toolchain):
            print(line)
    elif args.remove:
        remove(current_config, toolchain)
    else:
        download(current_config, toolchain, args.verify, args.retry)


if __name__ == "__main__":
    common.run_main(main)
