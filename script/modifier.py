from typing import Callable
import gcc_environment as gcc

# 修改器列表，按目标平台索引
modifier_list: dict[str, Callable[[gcc.cross_environment], None]] = {}
# 修改器列表，按宿主平台索引
host_modifier_list: dict[str, Callable[[gcc.cross_environment], None]] = {}

# Android的libc缺少64位文件接口
android_binutils_cache = ["ac_cv_func_fopen64=no", "ac_cv_func_fseeko64=no", "ac_cv_func_ftello64=no"]
android_gcc_cache = ["ac_cv_c_bigendian=no", "gcc_cv_c_no_fpie=no", "gcc_cv_no_pie=no"]


def _get_name(fn: Callable) -> str:
    field_list = fn.__name__.split("_")[:-1]
    return "-".join(field_list)


def register(fn):
    """注册修改器到列表

    Args:
        fn (function): 修改器函数
    """
    modifier_list[_get_name(fn)] = fn
    return fn


def register_host(fn):
    """注册宿主平台修改器到列表，函数名以_host_modifier结尾"""
    host_modifier_list[_get_name(fn).removesuffix("-host")] = fn
    return fn


@register
def arm_none_eabi_modifier(env: gcc.cross_environment) -> None:
    env.gcc_option.append("--with-multilib-list=rmprofile,aprofile")


@register_host
def aarch64_linux_android_host_modifier(env: gcc.cross_environment) -> None:
    for name in ("binutils_compile_target", "binutils_compile_host"):
        env.config_cache[name] = {"bfd": android_binutils_cache, "binutils": android_binutils_cache}
    for name in ("gcc_compile_target", "gcc_compile"):
        env.config_cache[name] = {"gcc": android_gcc_cache}


def get_modifier(host: str, target: str) -> Callable[[gcc.cross_environment], None] | None:
    """从修改器列表中查找宿主平台和目标平台对应的修改器，并合并为一个

    Args:
        host (str): 宿主平台
        target (str): 目标平台

    Returns:
        Callable | None: 修改器
    """
    fn_list = [fn for fn in (host_modifier_list.get(host), modifier_list.get(target)) if fn]
    if not fn_list:
        return None

    def modifier(env: gcc.cross_environment) -> None:
        for fn in fn_list:
            fn(env)

    return modifier


assert __name__ != "__main__", "Import this file instead of running it directly."
