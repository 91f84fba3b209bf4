from typing import Callable
import toolchain_environment as toolchain

# 修改器列表
modifier_list: dict[str, Callable[[toolchain.toolchain_pipeline], None]] = {}


def register(fn):
    """注册修改器到列表，函数名去掉_modifier后缀即为目标平台

    Args:
        fn (function): 修改器函数
    """
    name: str = fn.__name__
    field_list = name.split("_")[:-1]
    name = "-".join(field_list)
    # 特殊处理x86_64
    name = name.replace("x86-64", "x86_64")
    modifier_list[name] = fn
    return fn


def get_modifier(target: str) -> Callable[[toolchain.toolchain_pipeline], None] | None:
    """获取目标平台的修改器，不存在时返回None"""
    return modifier_list.get(target)


def _fix_cortex_a53(env: toolchain.toolchain_pipeline) -> None:
    # 规避Cortex-A53勘误835769和843419
    for option in ("--enable-fix-cortex-a53-835769", "--enable-fix-cortex-a53-843419"):
        env.gcc_stage1_option.append(option)
        env.gcc_option.append(option)


@register
def aarch64_linux_musl_modifier(env: toolchain.toolchain_pipeline) -> None:
    _fix_cortex_a53(env)


@register
def aarch64_linux_gnu_modifier(env: toolchain.toolchain_pipeline) -> None:
    _fix_cortex_a53(env)
