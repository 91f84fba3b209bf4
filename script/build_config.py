import json
import math
import os
import time
import packaging.version as version
import common

config_error = common.config_error

# 工具链类型别名，值为规范名称
toolchain_alias_list: dict[str, str] = {"musl": "musl", "gnu": "gnu", "glibc": "gnu"}
# 各工具链类型所用的libc包
libc_package_list: dict[str, str] = {"musl": "musl", "gnu": "glibc"}
# 所有工具链共用的包，按构建顺序排列
common_package_list = ("binutils", "gcc", "linux")

default_directory_list: dict[str, str] = {"build": "build", "output": "artifacts", "packages": "packages/downloads"}
default_arch = "aarch64"
default_supported_arch_list = ["aarch64", "x86_64"]
default_toolchain = "musl"


def normalize_toolchain(toolchain: str) -> str:
    """将工具链类型转化为规范名称，glibc视为gnu

    Args:
        toolchain (str): 用户输入的工具链类型

    Raises:
        config_error: 未知工具链类型

    Returns:
        str: musl或gnu
    """
    name = toolchain_alias_list.get(toolchain.strip().lower())
    if name is None:
        raise config_error(f"Unknown toolchain: {toolchain}. Supported toolchains: {', '.join(toolchain_alias_list)}")
    return name


def _check_version(name: str, value: str) -> str:
    try:
        version.Version(value)
    except version.InvalidVersion:
        raise config_error(f'Invalid version "{value}" of package {name}.')
    return value


class package_info:
    """build.json中一个源码包的描述"""

    name: str  # 包名
    version: str  # 版本号
    filename: str  # 下载后的文件名
    url: str  # 上游下载地址
    sha256: str | None  # 期望的sha256校验和

    def __init__(self, name: str, version: str, filename: str, url: str, sha256: str | None = None) -> None:
        self.name = name
        self.version = _check_version(name, version)
        self.filename = self._expand(filename)
        self.url = self._expand(url)
        self.sha256 = sha256.lower() if sha256 else None

    def _expand(self, template: str) -> str:
        """展开{version}和{major}占位符"""
        major = self.version.split(".")[0]
        return template.replace("{version}", self.version).replace("{major}", major)

    @classmethod
    def from_json(cls, name: str, item: dict, default_version: str | None) -> "package_info":
        """从build.json的包条目构造对象，环境变量<NAME>_VERSION优先于配置文件

        Args:
            name (str): 包名
            item (dict): build.packages.<name>
            default_version (str | None): build.toolchain.versions中的版本号
        """
        if not isinstance(item, dict):
            raise config_error(f"Invalid entry of package {name} in build.json.")
        env_name = f"{name.upper().replace('-', '_')}_VERSION"
        package_version = os.environ.get(env_name) or item.get("version") or default_version
        if not package_version:
            raise config_error(f"No version for package {name}.")
        for key in ("filename", "url"):
            if not isinstance(item.get(key), str):
                raise config_error(f'Package {name} requires a "{key}" field.')
        return cls(name, str(package_version), item["filename"], item["url"], item.get("sha256"))

    @property
    def source_dir_name(self) -> str:
        """解压后源码目录名"""
        return f"{self.name}-{self.version}"

    def get_path(self, packages_dir: str) -> str:
        """包在下载目录中的路径"""
        return os.path.join(packages_dir, self.filename)


def find_project_root() -> str:
    """使用git查找项目根目录，失败时回退到脚本目录的上级目录"""
    script_dir = os.path.dirname(os.path.abspath(__file__))
    result = common.run_command(f"git -C {script_dir} rev-parse --show-toplevel", ignore_error=True, capture=True, echo=False, dry_run=False)
    if result and result.stdout.strip():
        return result.stdout.strip()
    project_root = os.path.dirname(script_dir)
    common.log_warning("Not in a git repository. Using fallback project root detection.")
    common.log_debug(f"Project root: {project_root}")
    return project_root


def load_build_json(config_file: str) -> dict:
    """读取build.json

    Raises:
        config_error: 文件不存在或格式错误
    """
    if not os.path.isfile(config_file):
        raise config_error(f"build.json not found at {config_file}")
    try:
        with open(config_file) as file:
            config = json.load(file)
    except json.JSONDecodeError as e:
        raise config_error(f'Invalid build.json "{config_file}": {e}')
    if not isinstance(config, dict) or not isinstance(config.get("build"), dict):
        raise config_error(f'Invalid build.json "{config_file}": missing "build" object.')
    return config


class build_configure(common.basic_configure):
    """合并后的构建配置，优先级：命令行 > 环境变量 > build.json > 默认值"""

    project_root: str  # 项目根目录
    config_file: str  # build.json路径
    version: str  # 发布版本号
    build_dir: str  # 构建目录
    artifacts_dir: str  # 工具链输出目录
    packages_dir: str  # 源码包下载目录
    arch: str  # 目标架构
    supported_arch_list: list[str]  # 受支持的架构
    toolchain: str  # 工具链类型，musl或gnu
    toolchain_type_list: list[str]  # 受支持的工具链类型
    package_list: dict[str, package_info]  # 所有源码包
    forge_packages_releases: str | None  # forge-packages发布页地址
    forge_packages_version: str | None  # forge-packages发布版本
    download_prerequisites: bool  # 是否运行gcc的contrib/download_prerequisites
    source_date_epoch: int  # 可复现构建时间戳
    jobs: int  # 并发数

    def __init__(
        self,
        config_file: str | None = None,
        arch: str | None = None,
        toolchain: str | None = None,
        build_dir: str | None = None,
        artifacts_dir: str | None = None,
        packages_dir: str | None = None,
        jobs: int | None = None,
    ) -> None:
        if config_file:
            self.config_file = os.path.abspath(config_file)
            self.project_root = os.path.dirname(self.config_file)
        else:
            self.project_root = find_project_root()
            self.config_file = os.path.join(self.project_root, "build.json")
        config = load_build_json(self.config_file)
        build: dict = config["build"]

        self.version = str(config.get("metadata", {}).get("version", "0.0.0"))

        directories: dict = build.get("directories", {})
        self.build_dir = self._resolve_dir(build_dir or os.environ.get("BUILD_DIR") or directories.get("build", default_directory_list["build"]))
        self.artifacts_dir = self._resolve_dir(
            artifacts_dir or os.environ.get("ARTIFACTS_DIR") or directories.get("output", default_directory_list["output"])
        )
        self.packages_dir = self._resolve_dir(
            packages_dir or os.environ.get("PACKAGES_DIR") or directories.get("packages", default_directory_list["packages"])
        )

        architecture: dict = build.get("architecture", {})
        self.supported_arch_list = list(architecture.get("supported", default_supported_arch_list))
        self.arch = arch or os.environ.get("ARCH") or architecture.get("default", default_arch)

        toolchain_config: dict = build.get("toolchain", {})
        self.toolchain_type_list = []
        for item in toolchain_config.get("types", ["musl", "gnu"]):
            if (name := normalize_toolchain(item)) not in self.toolchain_type_list:
                self.toolchain_type_list.append(name)
        self.toolchain = normalize_toolchain(toolchain or os.environ.get("TOOLCHAIN") or toolchain_config.get("default", default_toolchain))
        self.download_prerequisites = bool(toolchain_config.get("download_prerequisites", False))

        version_list: dict = toolchain_config.get("versions", {})
        packages: dict = build.get("packages", {})
        self.package_list = {name: package_info.from_json(name, item, version_list.get(name)) for name, item in packages.items()}

        repository: dict = build.get("repository", {})
        self.forge_packages_releases = repository.get("forge_packages_releases") or None
        self.forge_packages_version = repository.get("forge_packages_version") or None

        epoch = os.environ.get("SOURCE_DATE_EPOCH")
        try:
            self.source_date_epoch = int(epoch) if epoch else int(time.time())
        except ValueError:
            raise config_error(f"Invalid SOURCE_DATE_EPOCH: {epoch}")
        self.jobs = jobs or math.floor((os.cpu_count() or 1) * 1.5)
        # LOG_TO_FILE=1时日志写入构建目录
        common.setup_logging(self.build_dir)

    def _resolve_dir(self, path: str) -> str:
        """相对路径相对于项目根目录解析"""
        return path if os.path.isabs(path) else os.path.normpath(os.path.join(self.project_root, path))

    def check(self) -> None:
        """检查合并后的配置是否合法

        Raises:
            config_error: 配置不合法
        """
        if self.arch not in self.supported_arch_list:
            raise config_error(f"Unsupported architecture: {self.arch}. Supported architectures: {', '.join(self.supported_arch_list)}")
        if self.toolchain not in self.toolchain_type_list:
            raise config_error(f"Toolchain {self.toolchain} is not enabled in build.json.")
        if self.jobs < 1:
            raise config_error(f"Invalid jobs: {self.jobs}.")
        for toolchain in self.toolchain_type_list:
            for name in self.get_package_name_list(toolchain):
                if name not in self.package_list:
                    raise config_error(f"Package {name} required by {toolchain} toolchain is missing in build.json.")

    @staticmethod
    def get_package_name_list(toolchain: str) -> list[str]:
        """获取指定工具链所需的包名列表"""
        return [*common_package_list, libc_package_list[normalize_toolchain(toolchain)]]

    def get_packages(self, toolchain: str | None = None) -> dict[str, package_info]:
        """获取指定工具链所需的包，toolchain为None时返回所有包"""
        if toolchain is None:
            return dict(self.package_list)
        return {name: self.package_list[name] for name in self.get_package_name_list(toolchain)}

    def get_target(self, arch: str | None = None, toolchain: str | None = None) -> str:
        """获取目标平台triplet，如aarch64-linux-musl"""
        return f"{arch or self.arch}-linux-{normalize_toolchain(toolchain or self.toolchain)}"

    def get_output_dir(self, arch: str | None = None, toolchain: str | None = None) -> str:
        """获取工具链安装目录，如artifacts/aarch64-musl"""
        return os.path.join(self.artifacts_dir, f"{arch or self.arch}-{normalize_toolchain(toolchain or self.toolchain)}")

    def get_forge_packages_url(self, package: package_info) -> str | None:
        """获取包在forge-packages发布页中的下载地址，未配置时返回None"""
        if not self.forge_packages_releases or not self.forge_packages_version:
            return None
        return f"{self.forge_packages_releases.rstrip('/')}/download/{self.forge_packages_version}/{package.filename}"

    def dump(self) -> list[str]:
        """生成配置描述，用于make config"""
        target = self.get_target()
        return [
            "ForgeOS Toolchain Configuration:",
            f"  Architecture: {self.arch}",
            f"  Toolchain: {self.toolchain}",
            f"  Target: {target}",
            f"  Cross-compile: {target}-",
            f"  Build directory: {self.build_dir}",
            f"  Artifacts directory: {self.artifacts_dir}",
            f"  Packages directory: {self.packages_dir}",
            f"  Output directory: {self.get_output_dir()}",
            f"  Source date epoch: {self.source_date_epoch}",
            f"  Jobs: {self.jobs}",
            *(f"  {package.name}: {package.version}" for package in self.package_list.values()),
        ]


assert __name__ != "__main__", "Import this file instead of running it directly."
