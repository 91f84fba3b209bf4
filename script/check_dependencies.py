#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import argparse
import os
import re
import shutil
import typing
import packaging.version as version
import psutil
import common
import build_config


class command_info:
    """一个宿主命令的检查项"""

    command: str  # 命令
    name: str  # 显示名称
    required: bool  # 是否必需
    min_version: str | None  # 最低版本

    def __init__(self, command: str, name: str, required: bool = True, min_version: str | None = None) -> None:
        self.command = command
        self.name = name
        self.required = required
        self.min_version = min_version


# 所有平台共用的binutils工具
_binutils_command_list = [
    command_info("ld", "Linker"),
    command_info("ar", "Archiver"),
    command_info("strip", "Strip"),
    command_info("ranlib", "Ranlib"),
    command_info("nm", "NM"),
    command_info("objcopy", "Objcopy"),
    command_info("objdump", "Objdump"),
    command_info("readelf", "Readelf"),
]
_generic_command_list = [
    command_info("gcc", "GCC Compiler", min_version="9.0"),
    command_info("g++", "G++ Compiler", min_version="9.0"),
    command_info("wget", "Wget"),
    command_info("tar", "Tar", min_version="1.28"),
    command_info("xz", "XZ"),
    command_info("bash", "Bash", min_version="4.0"),
]
_optional_command_list = [
    command_info("file", "File", False),
    command_info("bison", "Bison", False),
    command_info("gawk", "GNU Awk", False),
    command_info("git", "Git", False),
    command_info("gh", "GitHub CLI", False),
]
platform_command_list: typing.Final[dict[str, list[command_info]]] = {
    "linux": [
        *_generic_command_list,
        command_info("make", "Make", min_version="4.0"),
        *_binutils_command_list,
        command_info("nproc", "nproc", False),
        *_optional_command_list,
    ],
    "macos": [
        *_generic_command_list,
        command_info("gmake", "GNU Make", min_version="4.0"),
        command_info("make", "Make", False),
        *_binutils_command_list,
        command_info("sysctl", "sysctl", False),
        *_optional_command_list,
    ],
    "generic": [*_generic_command_list, command_info("make", "Make", min_version="4.0")],
}

# 构建所需的Debian系统包
system_package_list: typing.Final[list[str]] = [
    "bison",
    "flex",
    "texinfo",
    "make",
    "gawk",
    "gcc",
    "g++",
    "python3",
    "tar",
    "xz-utils",
    "bzip2",
    "wget",
    "file",
    "rsync",
    "libgmp-dev",
    "libmpfr-dev",
    "libmpc-dev",
    "libisl-dev",
    "zlib1g-dev",
]

# 推荐的系统资源，单位为GiB
recommended_memory = 4
recommended_disk_space = 10
network_check_list = ("https://ftp.gnu.org", "https://github.com")

_version_pattern = re.compile(r"\d+(?:\.\d+)+")


def parse_version(output: str) -> version.Version | None:
    """从--version输出的第一行中提取版本号"""
    first_line = output.splitlines()[0] if output else ""
    for match in _version_pattern.finditer(first_line):
        try:
            return version.Version(match.group())
        except version.InvalidVersion:
            continue
    return None


class dependency_checker:
    platform: str  # 宿主平台
    build_dir: str  # 检查磁盘空间的目录
    error_count: int  # 缺失的必需命令数
    warning_count: int  # 警告数

    def __init__(self, build_dir: str, platform: str | None = None) -> None:
        platform = (platform or common.get_platform()).lower()
        self.platform = "macos" if platform == "darwin" else platform
        self.build_dir = build_dir
        self.error_count = 0
        self.warning_count = 0

    def get_command_list(self) -> list[command_info]:
        if self.platform not in platform_command_list:
            common.log_warning(f"Unknown platform: {self.platform}")
            common.log_info("Checking generic dependencies...")
            return platform_command_list["generic"]
        return platform_command_list[self.platform]

    def check_command(self, info: command_info) -> bool:
        """检查命令是否存在以及版本是否满足要求

        Returns:
            bool: 必需命令缺失或版本过低时返回False
        """
        if shutil.which(info.command) is None:
            if info.required:
                common.log_error(f"{info.name}: not found (required)")
                self.error_count += 1
                return False
            common.log_warning(f"{info.name}: not found (optional)")
            self.warning_count += 1
            return True

        result = common.run_command(f"{info.command} --version", ignore_error=True, capture=True, echo=False, dry_run=False)
        current_version = parse_version(result.stdout) if result else None
        if info.min_version and current_version and current_version < version.Version(info.min_version):
            message = f"{info.name}: {current_version} is older than {info.min_version}"
            if info.required:
                common.log_error(message)
                self.error_count += 1
                return False
            common.log_warning(message)
            self.warning_count += 1
            return True
        common.log_success(f"{info.name}: {current_version or 'available'}")
        return True

    def check_commands(self) -> None:
        common.log_info(f"Checking {self.platform} dependencies...")
        for info in self.get_command_list():
            self.check_command(info)

    def check_resources(self) -> None:
        """检查内存和磁盘空间，不足时只给出警告"""
        common.log_info("Checking system resources...")
        memory = psutil.virtual_memory().total
        memory_message = f"Memory: {common.format_size(memory)} (recommended: {recommended_memory}GB+)"
        if memory >= recommended_memory << 30:
            common.log_success(memory_message)
        else:
            common.log_warning(memory_message)
            self.warning_count += 1

        # 构建目录可能尚未创建，检查其最近的已存在祖先目录
        path = os.path.abspath(self.build_dir)
        while not os.path.exists(path):
            path = os.path.dirname(path)
        free = psutil.disk_usage(path).free
        disk_message = f"Disk space: {common.format_size(free)} free in {path} (recommended: {recommended_disk_space}GB+)"
        if free >= recommended_disk_space << 30:
            common.log_success(disk_message)
        else:
            common.log_warning(disk_message)
            self.warning_count += 1

    def check_network(self) -> None:
        common.log_info("Checking network connectivity...")
        for url in network_check_list:
            if common.run_command(f"wget -q --spider -T 10 -t 1 {url}", ignore_error=True, echo=False, dry_run=False):
                common.log_success(f"Network: {url} accessible")
            else:
                common.log_warning(f"Network: {url} not accessible (may affect downloads)")
                self.warning_count += 1

    def check(self, network: bool = False) -> None:
        """运行所有检查

        Raises:
            missing_dependency_error: 缺少必需命令
        """
        common.log_info(f"Checking dependencies for {self.platform} platform...")
        self.check_commands()
        self.check_resources()
        if network:
            self.check_network()
        if self.error_count:
            common.log_info("Please install the missing dependencies and try again")
            raise common.missing_dependency_error(f"{self.error_count} required dependencies are missing or too old.")
        common.log_success("All required dependencies are available")
        common.log_info("You can proceed with toolchain builds")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Check host dependencies for building toolchains.", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    build_config.build_configure.add_argument(parser)
    parser.add_argument("--platform", type=str, help="The host platform. Detect automatically by default.")
    parser.add_argument("--network", action="store_true", help="Also check network connectivity.")
    parser.add_argument("--system", action="store_true", help="Print needy system packages and exit.")
    args = parser.parse_args(argv)

    if args.system:
        print(f"Please install following system packages: {' '.join(system_package_list)}")
        return
    current_config = build_config.build_configure.parse_args(args)
    dependency_checker(current_config.build_dir, args.platform).check(args.network)


if __name__ == "__main__":
    common.run_main(main)
