import datetime
import os
import typing
import common
import build_config

# stage1 gcc只用于编译libc，禁用所有运行库
disable_runtime_option = (
    "--disable-libssp",
    "--disable-libgomp",
    "--disable-libmudflap",
    "--disable-libsanitizer",
    "--disable-libatomic",
    "--disable-libquadmath",
    "--disable-libstdcxx-pch",
)
# 无libc的stage1 gcc选项
stage1_gcc_option = (
    "--enable-languages=c",
    "--with-newlib",
    "--without-headers",
    "--disable-shared",
    "--disable-threads",
    "--disable-multilib",
)

# linux内核的ARCH参数
linux_arch_list = {"i686": "x86", "x86_64": "x86", "arm": "arm", "aarch64": "arm64", "loongarch64": "loongarch", "riscv64": "riscv"}

# env.sh中导出的工具变量
env_tool_list = {
    "CC": "gcc",
    "CXX": "g++",
    "AR": "ar",
    "STRIP": "strip",
    "RANLIB": "ranlib",
    "NM": "nm",
    "OBJCOPY": "objcopy",
    "OBJDUMP": "objdump",
    "READELF": "readelf",
}
# glibc安装的链接器脚本开头
ldscript_header = b"/* GNU ld script"
# 完整工具链必须包含的工具
complete_tool_list = ("gcc", "g++", "ar", "ld")

# 可复现构建所用的编译选项
common_cflags = "-Os -fno-stack-protector -fno-unwind-tables -fno-asynchronous-unwind-tables"
common_ldflags = "-Wl,--build-id=sha1"


class environment:
    """一个(架构, libc)组合的构建环境"""

    config: build_config.build_configure  # 构建配置
    arch: str  # 目标架构
    libc: str  # 工具链类型，musl或gnu
    libc_package: str  # libc包名，musl或glibc
    target: str  # target平台
    build: str  # build平台
    target_arch: str  # target平台的架构
    tool_prefix: str  # 工具的前缀，即CROSS_COMPILE
    prefix: str  # 工具链安装位置
    lib_prefix: str  # 安装后库目录的前缀，即sysroot
    bin_dir: str  # 安装后可执行文件所在目录
    build_root: str  # 源代码解压目录
    packages_dir: str  # 源码包所在目录
    package_list: dict[str, build_config.package_info]  # 所需源码包
    source_dir_list: dict[str, str]  # 所有库的源码目录
    jobs: int  # 编译所用线程数
    make_command: str  # make命令，macOS下为gmake
    env_script_path: str  # env.sh路径
    info_file_path: str  # toolchain.info路径

    def __init__(self, config: build_config.build_configure, arch: str | None = None, toolchain: str | None = None) -> None:
        self.config = config
        self.arch = arch or config.arch
        self.libc = build_config.normalize_toolchain(toolchain or config.toolchain)
        self.libc_package = build_config.libc_package_list[self.libc]
        self.target = config.get_target(self.arch, self.libc)
        self.target_arch = self.target.split("-")[0]
        self.build = common.get_build_triplet()
        self.tool_prefix = f"{self.target}-"

        self.prefix = os.path.abspath(config.get_output_dir(self.arch, self.libc))
        self.lib_prefix = os.path.join(self.prefix, self.target)
        self.bin_dir = os.path.join(self.prefix, "bin")
        self.build_root = os.path.join(config.build_dir, f"{self.libc_package}-toolchain")
        self.packages_dir = config.packages_dir
        self.package_list = config.get_packages(self.libc)
        self.source_dir_list = {name: os.path.join(self.build_root, package.source_dir_name) for name, package in self.package_list.items()}
        self.jobs = config.jobs
        self.make_command = "gmake" if common.get_platform() == "macos" else "make"
        self.env_script_path = os.path.join(self.prefix, "env.sh")
        self.info_file_path = os.path.join(self.prefix, "toolchain.info")

    def get_tool_path(self, tool: str) -> str:
        """获取交叉工具的安装路径，如bin/aarch64-linux-musl-gcc"""
        return os.path.join(self.bin_dir, f"{self.tool_prefix}{tool}")

    def is_built(self) -> bool:
        """工具链是否已完整构建"""
        return all(os.path.isfile(self.get_tool_path(tool)) for tool in complete_tool_list)

    def check_packages(self) -> None:
        """检查所需源码包是否均已下载

        Raises:
            missing_package_error: 存在缺失的包
        """
        for package in self.package_list.values():
            path = package.get_path(self.packages_dir)
            if not os.path.isfile(path):
                common.log_info("Download packages first: make download-packages")
                raise common.missing_package_error(f"Required package not found: {path}")
            common.log_success(f"Found: {package.filename}")

    def extract(self, lib: str) -> None:
        """解压源码包，源码目录已存在时跳过

        Args:
            lib (str): 要解压的包
        """
        source_dir = self.source_dir_list[lib]
        if os.path.isdir(source_dir):
            common.log_debug(f"Source of {lib} exists, skip extracting.")
            return
        package = self.package_list[lib]
        common.log_info(f"Extracting {package.filename}...")
        common.mkdir(self.build_root, False)
        common.run_command(f"tar -xf {package.get_path(self.packages_dir)} -C {self.build_root}")

    def download_gcc_prerequisites(self) -> None:
        """在gcc源码树中下载gmp、mpfr、mpc和isl"""
        gcc_dir = self.source_dir_list["gcc"]
        for lib in ("gmp", "mpfr", "mpc", "isl"):
            if not os.path.exists(os.path.join(gcc_dir, lib)):
                _ = common.chdir_guard(gcc_dir)
                common.run_command("contrib/download_prerequisites")
                break
        else:
            common.log_debug("GCC prerequisites exist, skip download.")

    def enter_build_dir(self, lib: str, remove_files: bool = True) -> None:
        """进入构建目录

        Args:
            lib (str): 要构建的库
            remove_files (bool, optional): 是否清空已存在的构建目录. 默认清空.
        """
        assert lib in self.source_dir_list, f"Unknown lib {lib}."
        build_dir = self.source_dir_list[lib]
        # linux头文件在源码树内安装
        if lib != "linux":
            build_dir = os.path.join(build_dir, "build")
            common.mkdir(build_dir, remove_files)
        common.chdir(build_dir)

    def configure(self, *option: str) -> None:
        """自动对库进行配置

        Args:
            option (tuple[str, ...]): 配置选项
        """
        options = " ".join(("", *option))
        # 编译glibc时LD_LIBRARY_PATH中不能包含当前路径，此处直接清空LD_LIBRARY_PATH环境变量
        common.run_command(f"../configure{options} LD_LIBRARY_PATH=")

    def make(self, *target: str) -> None:
        """自动对库进行编译

        Args:
            target (tuple[str, ...]): 要编译的目标
        """
        targets = " ".join(("", *target))
        common.run_command(f"{self.make_command}{targets} -j {self.jobs}")

    def install(self, *target: str) -> None:
        """自动对库进行安装

        Args:
            target (tuple[str, ...]): 要安装的目标，默认为install
        """
        targets = " ".join(target or ("install",))
        common.run_command(f"{self.make_command} {targets} -j {self.jobs}")

    def change_glibc_ldscript(self) -> None:
        """将glibc链接器脚本中的绝对路径替换为文件名，使工具链可以移动"""
        if common.command_dry_run.get():
            common.log_info("Adjust glibc linker scripts.")
            return
        lib_dir = os.path.join(self.lib_prefix, "lib")
        for file in filter(lambda file: file.endswith(".so"), os.listdir(lib_dir)):
            path = os.path.join(lib_dir, file)
            if os.path.islink(path) or not os.path.isfile(path):
                continue
            with open(path, "rb") as script:
                if script.read(len(ldscript_header)) != ldscript_header:
                    continue
                content = ldscript_header + script.read()
            common.write_file(path, content.decode().replace(f"{lib_dir}/", ""))
            common.log_debug(f"Adjusted linker script {path}")

    def register_in_env(self) -> None:
        """注册安装路径到环境变量"""
        os.environ["PATH"] = f"{self.bin_dir}:{os.environ['PATH']}"

    def get_env_script(self) -> str:
        """生成env.sh内容，脚本通过自身路径定位工具链根目录"""
        lines = [
            "#!/bin/bash",
            f"# ForgeOS {self.libc} toolchain environment setup",
            "# Generated by build_toolchain.py",
            "",
            'TOOLCHAIN_ROOT="$(cd "$(dirname "${BASH_SOURCE[0]}")" && pwd)"',
            "",
            "# Toolchain configuration",
            f'export ARCH="{self.arch}"',
            f'export TOOLCHAIN_TYPE="{self.libc}"',
            f'export TARGET="{self.target}"',
            f'export CROSS_COMPILE="{self.tool_prefix}"',
            f'export SYSROOT="$TOOLCHAIN_ROOT/{self.target}"',
            "",
            "# Toolchain paths",
            'export TOOLCHAIN_BIN="$TOOLCHAIN_ROOT/bin"',
            'export TOOLCHAIN_LIB="$SYSROOT/lib"',
            'export TOOLCHAIN_INCLUDE="$SYSROOT/include"',
            'export PATH="$TOOLCHAIN_BIN:$PATH"',
            "",
            "# Compiler variables",
            *(f'export {name}="$TOOLCHAIN_BIN/${{CROSS_COMPILE}}{tool}"' for name, tool in env_tool_list.items()),
            "",
            "# Build flags for reproducible builds",
            f'export CFLAGS="{common_cflags}"',
            f'export CXXFLAGS="{common_cflags}"',
            f'export LDFLAGS="{common_ldflags}"',
            "",
        ]
        return "\n".join(lines)

    def write_env_script(self) -> None:
        """写入env.sh"""
        common.write_file(self.env_script_path, self.get_env_script(), executable=True)
        common.log_success(f"Environment script created: {self.env_script_path}")

    def get_info(self) -> str:
        """生成toolchain.info内容"""
        generated = datetime.datetime.fromtimestamp(self.config.source_date_epoch, datetime.timezone.utc)
        lines = [
            f"# ForgeOS {self.libc} Toolchain Information",
            f"# Generated: {generated.strftime('%Y-%m-%dT%H:%M:%SZ')}",
            f"# Source date epoch: {self.config.source_date_epoch}",
            "",
            f"ARCH={self.arch}",
            f"TOOLCHAIN_TYPE={self.libc}",
            f"TARGET={self.target}",
            f"CROSS_COMPILE={self.tool_prefix}",
            f"PLATFORM={common.get_platform()}",
            "",
            "# Version information",
            *(f"{name.upper()}_VERSION={package.version}" for name, package in self.package_list.items()),
            "",
            "# Toolchain binaries",
            *(f"{name}={self.get_tool_path(tool)}" for name, tool in env_tool_list.items()),
            "",
            "# Build flags",
            f"CFLAGS={common_cflags}",
            f"CXXFLAGS={common_cflags}",
            f"LDFLAGS={common_ldflags}",
            "",
        ]
        return "\n".join(lines)

    def write_info_file(self) -> None:
        """写入toolchain.info"""
        common.write_file(self.info_file_path, self.get_info())
        common.log_success(f"Toolchain info file created: {self.info_file_path}")


class toolchain_pipeline:
    env: environment  # 构建环境
    basic_option: list[str]  # binutils和gcc共用选项
    binutils_option: list[str]  # binutils相关选项
    gcc_stage1_option: list[str]  # stage1 gcc相关选项
    gcc_option: list[str]  # 完整gcc相关选项
    linux_option: list[str]  # linux头文件相关选项
    libc_option: list[str]  # libc相关选项
    glibc_phony_stubs_path: str  # glibc占位文件所在路径
    force: bool  # 是否忽略已有产物强制重新构建

    def __init__(
        self,
        env: environment,
        modifier: typing.Callable[["toolchain_pipeline"], None] | None = None,
        force: bool = False,
    ) -> None:
        """musl或glibc交叉工具链的构建流程

        Args:
            env (environment): 构建环境
            modifier (Callable[["toolchain_pipeline"], None], optional): 平台相关的修改器. 默认为None.
            force (bool, optional): 是否忽略已有产物强制重新构建. 默认为False.
        """
        self.env = env
        self.force = force
        self.basic_option = [f"--target={env.target}", f"--prefix={env.prefix}", "--disable-nls", "--disable-werror"]
        self.binutils_option = ["--disable-multilib"]
        self.gcc_stage1_option = [*stage1_gcc_option, *disable_runtime_option]
        self.gcc_option = ["--enable-languages=c,c++", "--disable-multilib", "--disable-bootstrap"]
        if env.libc == "musl":
            self.gcc_option.append("--disable-libsanitizer")

        if env.target_arch not in linux_arch_list:
            raise common.config_error(f"Cannot install linux headers for architecture {env.target_arch}.")
        self.linux_option = [f"ARCH={linux_arch_list[env.target_arch]}", f"INSTALL_HDR_PATH={env.lib_prefix}", "headers_install"]

        match env.libc:
            case "musl":
                self.libc_option = [
                    f"--prefix={env.lib_prefix}",
                    f"--target={env.target}",
                    f"--syslibdir={os.path.join(env.lib_prefix, 'lib')}",
                    f"CROSS_COMPILE={env.tool_prefix}",
                    f"CC={env.tool_prefix}gcc",
                ]
            case "gnu":
                self.libc_option = [
                    f"--prefix={env.lib_prefix}",
                    f"--host={env.target}",
                    f"--build={env.build}",
                    f"--with-headers={os.path.join(env.lib_prefix, 'include')}",
                    "--disable-werror",
                ]
        # 编译不完整libgcc时所需的stubs.h所在路径
        self.glibc_phony_stubs_path = os.path.join(env.lib_prefix, "include", "gnu", "stubs.h")

        # 允许调整配置选项
        if modifier:
            modifier(self)

    def _build_binutils(self) -> None:
        """编译binutils"""
        self.env.enter_build_dir("binutils")
        self.env.configure(*self.basic_option, *self.binutils_option)
        self.env.make()
        self.env.install()

    def _build_gcc_stage1(self) -> None:
        """编译不依赖libc的stage1 gcc，musl工具链一并编译libgcc"""
        self.env.enter_build_dir("gcc")
        self.env.configure(*self.basic_option, *self.gcc_stage1_option)
        if self.env.libc == "musl":
            self.env.make("all-gcc", "all-target-libgcc")
            self.env.install("install-gcc", "install-target-libgcc")
        else:
            # glibc工具链的libgcc需要在安装glibc头文件后编译
            self.env.make("all-gcc")
            self.env.install("install-gcc")

    def _install_linux_headers(self) -> None:
        """安装Linux头文件"""
        self.env.enter_build_dir("linux")
        self.env.make(*self.linux_option)

    def _build_musl(self) -> None:
        """使用stage1 gcc编译安装musl"""
        self.env.enter_build_dir("musl")
        self.env.configure(*self.libc_option)
        self.env.make()
        self.env.install("install")

    def _build_glibc(self) -> None:
        """安装glibc头文件，编译libgcc，再编译安装完整glibc"""
        # 安装glibc头文件
        self.env.enter_build_dir("glibc")
        self.env.configure(*self.libc_option, "libc_cv_forced_unwind=yes")
        self.env.make("install-headers")
        # 为了跨平台，不能使用mknod
        common.write_file(self.glibc_phony_stubs_path, "")

        # 编译安装libgcc
        self.env.enter_build_dir("gcc", False)
        self.env.make("all-target-libgcc")
        self.env.install("install-target-libgcc")

        # 编译安装glibc
        self.env.enter_build_dir("glibc")
        self.env.configure(*self.libc_option)
        self.env.make()
        self.env.install("install")
        self.env.change_glibc_ldscript()

    def _build_gcc_final(self) -> None:
        """编译完整gcc"""
        self.env.enter_build_dir("gcc")
        self.env.configure(*self.basic_option, *self.gcc_option)
        self.env.make()
        self.env.install()

    def get_stage_list(self) -> list[tuple[str, list[str], typing.Callable[[], None]]]:
        """获取构建阶段列表

        Returns:
            list[tuple[str, list[str], Callable[[], None]]]: [(阶段名, 产物列表, 构建函数)]，按构建顺序排列
        """
        env = self.env
        lib_dir = os.path.join(env.lib_prefix, "lib")
        stage1_output = [env.get_tool_path("gcc")]
        if env.libc == "gnu":
            # glibc阶段要在stage1 gcc的构建目录中编译libgcc
            stage1_output.append(os.path.join(env.source_dir_list["gcc"], "build", "Makefile"))
        libc_stage = (
            ("musl", [os.path.join(lib_dir, "libc.a")], self._build_musl)
            if env.libc == "musl"
            else ("glibc", [os.path.join(lib_dir, "libc.so.6")], self._build_glibc)
        )
        return [
            ("binutils", [env.get_tool_path("ld"), env.get_tool_path("as")], self._build_binutils),
            ("gcc stage 1", stage1_output, self._build_gcc_stage1),
            ("linux headers", [os.path.join(env.lib_prefix, "include", "linux", "version.h")], self._install_linux_headers),
            libc_stage,
            ("gcc", [env.get_tool_path("g++")], self._build_gcc_final),
        ]

    def _run_stage(self, name: str, output_list: list[str], build_fn: typing.Callable[[], None]) -> None:
        """运行一个构建阶段，产物已存在时跳过，完成后检查产物

        Raises:
            build_step_error: 构建完成后产物不存在
        """
        if not self.force and all(os.path.exists(path) for path in output_list):
            common.log_success(f"{name} already built - skipping")
            return
        common.log_info(f"Building {name}...")
        build_fn()
        if not common.command_dry_run.get():
            for path in output_list:
                if not os.path.exists(path):
                    raise common.build_step_error(f"Build step {name} failed: {path} not found.")
        common.log_success(f"{name} built")

    def _after_build(self) -> None:
        """生成环境脚本和信息文件，并检查编译器是否可用"""
        self.env.write_env_script()
        self.env.write_info_file()
        gcc = self.env.get_tool_path("gcc")
        result = common.run_command(f"{gcc} --version", capture=True)
        if result:
            common.log_info(result.stdout.splitlines()[0] if result.stdout else gcc)

    def build(self) -> bool:
        """构建工具链

        Returns:
            bool: 是否进行了构建，工具链已存在时返回False
        """
        env = self.env
        common.log_info(f"Building {env.libc_package} toolchain for {env.arch}")
        common.log_info(f"Target: {env.target}")
        common.log_info(f"Packages directory: {env.packages_dir}")
        common.log_info(f"Build directory: {env.build_root}")
        common.log_info(f"Output directory: {env.prefix}")
        if not self.force and env.is_built():
            common.log_success(f"Complete toolchain already exists at {env.prefix}")
            common.log_info("Skipping toolchain build (use 'make clean-all' or --force to rebuild)")
            return False

        env.check_packages()
        common.mkdir(env.build_root, False)
        common.mkdir(env.lib_prefix, False)
        for lib in env.package_list:
            env.extract(lib)
        if env.config.download_prerequisites:
            env.download_gcc_prerequisites()
        # 后续阶段需要使用已安装的交叉工具
        env.register_in_env()

        for name, output_list, build_fn in self.get_stage_list():
            self._run_stage(name, output_list, build_fn)
        self._after_build()
        common.log_success(f"{env.libc_package} toolchain build complete: {env.prefix}")
        return True


assert __name__ != "__main__", "Import this file instead of running it directly."
