import functools
import hashlib
import logging
import os
import platform
import shutil
import sys
import argparse
import inspect
import itertools
import subprocess
from collections.abc import Callable
from typing import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")


class command_dry_run:
    """是否只显示命令而不实际执行"""

    _dry_run: bool = False

    @classmethod
    def get(cls) -> bool:
        return cls._dry_run

    @classmethod
    def set(cls, dry_run: bool) -> None:
        cls._dry_run = dry_run


class toolchain_error(RuntimeError):
    """构建工具链过程中所有可预期错误的基类，命令行入口捕获后以退出码1退出"""


class config_error(toolchain_error):
    """build.json无效、架构或工具链类型不受支持"""


class missing_dependency_error(toolchain_error):
    """缺少必需的宿主命令"""


class missing_package_error(toolchain_error):
    """源码包缺失、下载失败或校验和不匹配"""


class build_step_error(toolchain_error):
    """命令执行失败或构建阶段的产物不存在"""


class verification_error(toolchain_error):
    """工具链验证失败"""


# 日志
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

_logger = logging.getLogger("forge-toolchain")


class _tag_formatter(logging.Formatter):
    """为日志添加[INFO]、[✓]、[!]、[✗]标记"""

    tag_list: dict[int, tuple[str, str]] = {
        logging.DEBUG: ("[DEBUG]", "\033[0;36m"),
        logging.INFO: ("[INFO]", "\033[0;34m"),
        SUCCESS: ("[✓]", "\033[0;32m"),
        logging.WARNING: ("[!]", "\033[1;33m"),
        logging.ERROR: ("[✗]", "\033[0;31m"),
    }
    color: bool  # 是否输出颜色
    timestamp: bool  # 是否输出时间

    def __init__(self, color: bool = False, timestamp: bool = False) -> None:
        super().__init__()
        self.color = color
        self.timestamp = timestamp

    def format(self, record: logging.LogRecord) -> str:
        tag, color_code = self.tag_list.get(record.levelno, (f"[{record.levelname}]", ""))
        if self.color and color_code:
            tag = f"{color_code}{tag}\033[0m"
        message = f"{tag} {record.getMessage()}"
        if self.timestamp:
            message = f"{self.formatTime(record)} {message}"
        return message


def _env_flag(value: str | None) -> bool | None:
    """将环境变量解析为布尔值

    Returns:
        bool | None: 真值返回True，假值或未设置返回False，其他值返回None
    """
    if value is None or value.strip().lower() in ("", "0", "false", "no", "off"):
        return False
    if value.strip().lower() in ("1", "true", "yes", "on"):
        return True
    return None


def setup_logging(log_dir: str | None = None) -> str | None:
    """根据DEBUG和LOG_TO_FILE环境变量配置日志

    Args:
        log_dir (str | None, optional): LOG_TO_FILE为真值时日志文件所在的根目录，默认为当前工作目录.

    Returns:
        str | None: 日志文件路径，不写入文件时返回None
    """
    for handler in list(_logger.handlers):
        _logger.removeHandler(handler)
        handler.close()
    _logger.setLevel(logging.DEBUG if _env_flag(os.environ.get("DEBUG")) else logging.INFO)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(_tag_formatter(color=sys.stderr.isatty()))
    _logger.addHandler(stream_handler)

    log_to_file = os.environ.get("LOG_TO_FILE")
    match _env_flag(log_to_file):
        case True:
            log_file: str | None = os.path.join(log_dir or os.getcwd(), "logs", "forge-toolchain.log")
        case None:
            # 其他取值视为日志文件路径
            log_file = log_to_file
        case _:
            log_file = None
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(_tag_formatter(timestamp=True))
        _logger.addHandler(file_handler)
    return log_file


def _get_logger() -> logging.Logger:
    if not _logger.handlers:
        setup_logging()
    return _logger


def log_debug(message: str) -> None:
    _get_logger().debug(message)


def log_info(message: str) -> None:
    _get_logger().info(message)


def log_success(message: str) -> None:
    _get_logger().log(SUCCESS, message)


def log_warning(message: str) -> None:
    _get_logger().warning(message)


def log_error(message: str) -> None:
    _get_logger().error(message)


def _support_dry_run(echo_fn: Callable[..., str | None] | None = None) -> Callable[[Callable[P, R]], Callable[P, R | None]]:
    """根据dry_run参数和command_dry_run中的全局状态确定是否只回显命令而不执行，若fn没有dry_run参数则只会使用全局状态

    Args:
        echo_fn (Callable[..., str | None] | None, optional): 回调函数，返回要显示的命令字符串或None，无回调或返回None时不显示命令，所有参数需要能在主函数的参数列表中找到，默认为无回调.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R | None]:
        signature = inspect.signature(fn)

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | None:
            bound_args = signature.bind(*args, **kwargs)
            bound_args.apply_defaults()
            if echo_fn:
                param_list: list = []
                for key in inspect.signature(echo_fn).parameters.keys():
                    assert (
                        key in bound_args.arguments
                    ), f"The param {key} of echo_fn is not in the param list of fn. Every param of echo_fn should be able to find in the param list of fn."
                    param_list.append(bound_args.arguments[key])
                echo = echo_fn(*param_list)
                if echo is not None:
                    log_info(echo)
            dry_run: bool | None = bound_args.arguments.get("dry_run")
            assert isinstance(dry_run, bool | None), f"The param dry_run must be a bool or None."
            if dry_run is None and command_dry_run.get() or dry_run:
                return None
            return fn(*bound_args.args, **bound_args.kwargs)

        return wrapper

    return decorator


@_support_dry_run(lambda command, echo: f"Run command: {command}" if echo else None)
def run_command(
    command: str, ignore_error: bool = False, capture: bool = False, echo: bool = True, dry_run: bool | None = None
) -> subprocess.CompletedProcess[str] | None:
    """运行指定命令, 若不忽略错误, 则在命令执行出错时抛出build_step_error, 反之记录错误码

    Args:
        command (str): 要运行的命令
        ignore_error (bool, optional): 是否忽略错误. 默认不忽略错误.
        capture (bool, optional): 是否捕获命令输出，默认为不捕获.
        echo (bool, optional): 是否回显信息，设置为False将不回显任何信息，包括错误提示，默认为回显.
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.

    Raises:
        build_step_error: 命令执行失败且ignore_error为False时抛出异常

    Returns:
        None | subprocess.CompletedProcess[str]: 在命令正常执行结束后返回执行结果，否则返回None
    """

    if capture:
        pipe = subprocess.PIPE  # capture为True，不论是否回显都需要捕获输出
    elif echo:
        pipe = None  # 回显而不捕获输出则正常输出
    else:
        pipe = subprocess.DEVNULL  # 不回显又不捕获输出则丢弃输出
    try:
        result = subprocess.run(command, stdout=pipe, stderr=pipe, shell=True, check=True, text=True)
    except subprocess.CalledProcessError as e:
        if not ignore_error:
            raise build_step_error(f'Command "{command}" failed with errno={e.returncode}.')
        elif echo:
            log_warning(f'Command "{command}" failed with errno={e.returncode}, but it is ignored.')
        return None
    return result


@_support_dry_run(lambda path: f"Create directory {path}.")
def mkdir(path: str, remove_if_exist=True, dry_run: bool | None = None) -> None:
    """创建目录

    Args:
        path (str): 要创建的目录
        remove_if_exist (bool, optional): 是否先删除已存在的同名目录. 默认先删除已存在的同名目录.
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """
    if remove_if_exist and os.path.exists(path):
        shutil.rmtree(path)
    os.makedirs(path, exist_ok=True)


@_support_dry_run(lambda src, dst: f"Copy {src} -> {dst}.")
def copy(src: str, dst: str, overwrite=True, follow_symlinks: bool = False, dry_run: bool | None = None) -> None:
    """复制文件或目录

    Args:
        src (str): 源路径
        dst (str): 目标路径
        overwrite (bool, optional): 是否覆盖已存在项. 默认为覆盖.
        follow_symlinks (bool, optional): 是否复制软链接指向的目标，而不是软链接本身. 默认为保留软链接.
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """
    # 创建目标目录
    dir = os.path.dirname(dst)
    if dir != "":
        mkdir(dir, False, dry_run=dry_run)
    if not overwrite and os.path.exists(dst):
        return
    if os.path.isdir(src):
        if os.path.exists(dst):
            shutil.rmtree(dst)
        shutil.copytree(src, dst, not follow_symlinks)
    else:
        if os.path.exists(dst):
            os.remove(dst)
        shutil.copyfile(src, dst, follow_symlinks=follow_symlinks)
        shutil.copymode(src, dst, follow_symlinks=follow_symlinks)


@_support_dry_run(lambda path: f"Remove {path}.")
def remove(path: str, dry_run: bool | None = None) -> None:
    """删除指定路径

    Args:
        path (str): 要删除的路径
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


@_support_dry_run(lambda path: f"Remove {path} if path exists.")
def remove_if_exists(path: str, dry_run: bool | None = None) -> None:
    """如果指定路径存在则删除指定路径

    Args:
        path (str): 要删除的路径
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """
    if os.path.lexists(path):
        remove(path, dry_run=dry_run)


@_support_dry_run(lambda path: f"Enter directory {path}.")
def chdir(path: str, dry_run: bool | None = None) -> str:
    """将工作目录设置为指定路径

    Args:
        path (str): 要进入的路径
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.

    Returns:
        str: 之前的工作目录
    """
    cwd = os.getcwd()
    os.chdir(path)
    return cwd


class chdir_guard:
    """在构造时进入指定工作目录并在析构时回到原工作目录"""

    cwd: str
    dry_run: bool | None

    def __init__(self, path: str, dry_run: bool | None = None) -> None:
        self.dry_run = dry_run
        self.cwd = chdir(path, dry_run) or ""

    def __del__(self) -> None:
        if self.cwd:
            chdir(self.cwd, self.dry_run)


@_support_dry_run(lambda path: f"Write file {path}.")
def write_file(path: str, content: str, executable: bool = False, dry_run: bool | None = None) -> None:
    """写入文本文件，必要时创建父目录

    Args:
        path (str): 文件路径
        content (str): 文件内容
        executable (bool, optional): 是否添加可执行权限. 默认不添加.
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """
    dir = os.path.dirname(path)
    if dir != "":
        os.makedirs(dir, exist_ok=True)
    with open(path, "w") as file:
        file.write(content)
    if executable:
        os.chmod(path, 0o755)


def sha256sum(path: str) -> str:
    """计算文件的sha256校验和

    Args:
        path (str): 文件路径

    Returns:
        str: 十六进制校验和
    """
    digest = hashlib.sha256()
    with open(path, "rb") as file:
        for chunk in iter(lambda: file.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def format_size(size: int) -> str:
    """将字节数转化为便于阅读的字符串"""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}GiB"


def get_platform() -> str:
    """获取宿主平台名称，linux、macos或小写的系统名"""
    system = platform.system().lower()
    return "macos" if system == "darwin" else system


def get_build_triplet() -> str:
    """获取构建平台的triplet，优先使用宿主gcc的-dumpmachine输出

    Returns:
        str: 构建平台triplet
    """
    result = run_command("gcc -dumpmachine", ignore_error=True, capture=True, echo=False, dry_run=False)
    if result and result.stdout.strip():
        return result.stdout.strip()
    return f"{platform.machine()}-linux-gnu"


class basic_configure:
    """所有命令行脚本共用的配置基类"""

    @staticmethod
    def add_argument(parser: argparse.ArgumentParser) -> None:
        """为argparse添加--config和--dry-run选项

        Args:
            parser (argparse.ArgumentParser): 命令行解析器
        """
        parser.add_argument("--config", dest="config_file", type=str, help="Path of build.json. Use <project root>/build.json by default.")
        parser.add_argument(
            "--dry-run",
            dest="dry_run",
            action=argparse.BooleanOptionalAction,
            help="Preview the commands without actually executing them.",
            default=False,
        )

    @classmethod
    def parse_args(cls, args: argparse.Namespace):
        """使用用户输入构造配置对象，未在args中出现的参数使用默认值"""
        command_dry_run.set(args.dry_run)
        args_list = vars(args)
        parma_list: dict = {}
        for parma in itertools.islice(inspect.signature(cls.__init__).parameters.keys(), 1, None):
            if parma in args_list:
                parma_list[parma] = args_list[parma]
        return cls(**parma_list)


def run_main(main: Callable[[], None]) -> None:
    """运行命令行入口，将toolchain_error记录为错误日志并以退出码1退出

    Args:
        main (Callable[[], None]): 入口函数
    """
    try:
        main()
    except toolchain_error as e:
        log_error(str(e))
        sys.exit(1)


assert __name__ != "__main__", "Import this file instead of running it directly."
