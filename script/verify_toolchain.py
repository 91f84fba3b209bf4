#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import argparse
import os
import common
import build_config
from toolchain_environment import environment, env_tool_list

# 需要检查的交叉工具
tool_list = ("gcc", "g++", "ar", "strip", "ranlib", "nm", "objcopy", "objdump", "readelf")
# file命令输出中的架构名
file_arch_list = {"aarch64": "aarch64", "x86_64": "x86-64", "i686": "80386", "arm": "ARM", "riscv64": "RISC-V", "loongarch64": "LoongArch"}

c_test_program = r"""#include <stdio.h>

int main(void)
{
    printf("Hello from ForgeOS toolchain\n");
    return 0;
}
"""

cxx_test_program = r"""#include <iostream>
#include <string>
#include <vector>

int main()
{
    std::vector<std::string> words{"Hello", "from", "ForgeOS", "toolchain"};
    for (const auto &word : words)
        std::cout << word << ' ';
    std::cout << std::endl;
    return 0;
}
"""


class verifier:
    """检查已安装的工具链，dry-run时只显示将要执行的命令并跳过文件检查"""

    env: environment  # 工具链环境
    fail_fast: bool  # 是否在第一个错误处停止
    error_count: int  # 错误数
    warning_count: int  # 警告数
    work_dir: str  # 编译测试程序的目录

    def __init__(self, env: environment, fail_fast: bool = False) -> None:
        self.env = env
        self.fail_fast = fail_fast
        self.error_count = 0
        self.warning_count = 0
        self.work_dir = os.path.join(env.config.build_dir, f"verify-{env.arch}-{env.libc}")

    def _error(self, message: str) -> None:
        common.log_error(message)
        self.error_count += 1
        if self.fail_fast:
            raise common.verification_error(message)

    def _warning(self, message: str) -> None:
        common.log_warning(message)
        self.warning_count += 1

    def _exists(self, path: str) -> bool:
        return common.command_dry_run.get() or os.path.exists(path)

    def _run(self, command: str) -> str | None:
        """运行命令并返回输出，失败时返回None，dry-run时返回空字符串"""
        result = common.run_command(command, ignore_error=True, capture=True)
        if common.command_dry_run.get():
            return ""
        return result.stdout if result else None

    def check_directory(self) -> bool:
        """检查工具链目录和env.sh是否存在"""
        if not self._exists(self.env.prefix):
            self._error(f"Toolchain directory not found: {self.env.prefix}")
            common.log_info("Build the toolchain first: make toolchain")
            return False
        common.log_success(f"Toolchain directory found: {self.env.prefix}")
        if not self._exists(self.env.env_script_path):
            self._error(f"Environment script not found: {self.env.env_script_path}")
            return False
        common.log_success("Environment script found")
        return True

    def check_env_script(self) -> None:
        """检查env.sh是否导出了所有工具变量"""
        if common.command_dry_run.get():
            return
        with open(self.env.env_script_path) as file:
            content = file.read()
        for variable in ("CROSS_COMPILE", *env_tool_list):
            if f"export {variable}=" not in content:
                self._error(f"{variable} not exported by {self.env.env_script_path}")
        common.log_info(f"Cross-compile prefix: {self.env.tool_prefix}")

    def check_tools(self) -> None:
        """检查每个工具存在、可执行且能输出版本"""
        for tool in tool_list:
            path = self.env.get_tool_path(tool)
            if not self._exists(path):
                self._error(f"{tool} not found: {path}")
                continue
            if not common.command_dry_run.get() and not os.access(path, os.X_OK):
                self._error(f"{tool} is not executable: {path}")
                continue
            output = self._run(f"{path} --version")
            if output is None:
                self._error(f"{tool} failed to report its version")
                continue
            first_line = output.splitlines()[0] if output else ""
            if first_line and self.env.target not in output:
                self._warning(f"{tool} version output does not mention {self.env.target}: {first_line}")
            common.log_success(f"{tool}: {first_line or path}")

    def check_binary(self, path: str) -> None:
        """用file检查编译结果的架构和链接方式"""
        output = self._run(f"file {path}")
        if common.command_dry_run.get():
            return
        if not output:
            self._warning(f"Cannot inspect {path} with file, architecture and static linking not checked")
            return
        arch_name = file_arch_list.get(self.env.arch, self.env.arch)
        if arch_name in output:
            common.log_success(f"Binary architecture is {self.env.arch}")
        else:
            self._warning(f"Binary architecture may be incorrect: {output.strip()}")
        if "statically linked" in output:
            common.log_success("Binary is statically linked")
        else:
            self._warning("Binary may not be statically linked")

    def compile_test(self) -> None:
        """静态编译C和C++测试程序"""
        common.mkdir(self.work_dir)
        try:
            for name, source, tool in (("test_c", c_test_program, "gcc"), ("test_cpp", cxx_test_program, "g++")):
                source_path = os.path.join(self.work_dir, f"{name}.{'c' if tool == 'gcc' else 'cpp'}")
                binary_path = os.path.join(self.work_dir, name)
                common.write_file(source_path, source)
                if self._run(f"{self.env.get_tool_path(tool)} -static -o {binary_path} {source_path}") is None:
                    self._error(f"{'C' if tool == 'gcc' else 'C++'} compilation failed")
                    continue
                common.log_success(f"{'C' if tool == 'gcc' else 'C++'} compilation successful")
                if tool == "gcc":
                    self.check_binary(binary_path)
        finally:
            common.remove_if_exists(self.work_dir)

    def check_info_file(self) -> None:
        if self._exists(self.env.info_file_path):
            common.log_success("Toolchain info file found")
        else:
            self._warning(f"Toolchain info file not found: {self.env.info_file_path}")

    def verify(self) -> None:
        """运行所有检查

        Raises:
            verification_error: 存在错误
        """
        common.log_info(f"Verifying {self.env.libc} toolchain for {self.env.arch}")
        if self.check_directory():
            self.check_env_script()
            self.check_tools()
            self.compile_test()
            self.check_info_file()
        if self.error_count:
            raise common.verification_error(f"Toolchain verification failed with {self.error_count} errors and {self.warning_count} warnings.")
        if self.warning_count:
            common.log_warning(f"Toolchain verification passed with {self.warning_count} warnings.")
        else:
            common.log_success("Toolchain verification passed.")
        common.log_info(f"To use the toolchain: source {self.env.env_script_path}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Verify an installed cross toolchain.", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    build_config.build_configure.add_argument(parser)
    parser.add_argument("--arch", type=str, help="The target architecture. Use build.architecture.default by default.")
    parser.add_argument("--toolchain", type=str, help="The toolchain type: musl, gnu or glibc. Use build.toolchain.default by default.")
    parser.add_argument("--build-dir", dest="build_dir", type=str, help="The directory to compile test programs in.")
    parser.add_argument("--artifacts-dir", dest="artifacts_dir", type=str, help="The directory containing toolchains.")
    parser.add_argument("--fail-fast", action="store_true", help="Stop at the first error.")
    args = parser.parse_args(argv)

    current_config = build_config.build_configure.parse_args(args)
    current_config.check()
    verifier(environment(current_config), args.fail_fast).verify()


if __name__ == "__main__":
    common.run_main(main)
