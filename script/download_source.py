import common
import dataclasses
import enum
import os
import packaging.version as version
import typing


class component_version(enum.StrEnum):
    """默认版本号"""

    binutils = "2.43.1"
    gcc = "14.2.0"
    newlib = "4.4.0.20231231"
    gmp = "6.3.0"
    mpc = "1.3.1"
    mpfr = "4.2.1"
    make = "4.4.1"


# 下载地址模板，可用字段为name、version和archive
url_template_list: typing.Final[dict[str, str]] = {
    "binutils": "https://ftp.gnu.org/gnu/binutils/{archive}",
    "gcc": "https://ftp.gnu.org/gnu/gcc/gcc-{version}/{archive}",
    "newlib": "https://sourceware.org/pub/newlib/{archive}",
    "gmp": "https://ftp.gnu.org/gnu/gmp/{archive}",
    "mpc": "https://ftp.gnu.org/gnu/mpc/{archive}",
    "mpfr": "https://ftp.gnu.org/gnu/mpfr/{archive}",
    "make": "https://ftp.gnu.org/gnu/make/{archive}",
}

# gmp目前没有提供.gz格式的压缩包
archive_suffix_list: typing.Final[dict[str, str]] = {"gmp": "tar.bz2"}

# 以源码树形式放入gcc源码树中的依赖库
gcc_in_tree_lib_list: typing.Final[tuple[str, ...]] = ("gmp", "mpc", "mpfr")

# 可以通过将版本设置为空来禁用的组件
optional_component_list: typing.Final[tuple[str, ...]] = (*gcc_in_tree_lib_list, "make")


@dataclasses.dataclass(frozen=True)
class source_component:
    """一个可构建单元的源代码描述，构造后只读"""

    name: str  # 组件名
    version: str  # 版本号
    url_template: str  # 下载地址模板
    suffix: str = "tar.gz"  # 压缩包后缀

    def __post_init__(self) -> None:
        try:
            version.Version(self.version)
        except version.InvalidVersion:
            raise common.configuration_error(f'Invalid version "{self.version}" of component {self.name}.')

    @property
    def unpack_dir(self) -> str:
        """解压后的源码目录名"""
        return f"{self.name}-{self.version}"

    @property
    def archive_name(self) -> str:
        """下载后的压缩包文件名"""
        return f"{self.unpack_dir}.{self.suffix}"

    @property
    def url(self) -> str:
        return self.url_template.format(name=self.name, version=self.version, archive=self.archive_name)


def make_component(name: str, lib_version: str) -> source_component:
    """根据组件名和版本号创建源代码描述

    Args:
        name (str): 组件名
        lib_version (str): 版本号
    """
    assert name in url_template_list, f"Unknown component: {name}"
    return source_component(name, lib_version, url_template_list[name], archive_suffix_list.get(name, "tar.gz"))


def get_component_list(version_list: dict[str, str]) -> dict[str, source_component]:
    """获取本次构建的所有组件，版本为空的可选组件会被跳过

    Args:
        version_list (dict[str, str]): {组件名: 版本号}

    Raises:
        configuration_error: 必要组件没有版本号时抛出异常

    Returns:
        dict[str, source_component]: {组件名: 源代码描述}，按下载顺序排列
    """
    component_list: dict[str, source_component] = {}
    for name in url_template_list:
        lib_version = version_list.get(name, "")
        if not lib_version:
            if name in optional_component_list:
                continue
            raise common.configuration_error(f"The version of component {name} is required.")
        component_list[name] = make_component(name, lib_version)
    return component_list


def get_default_version_list() -> dict[str, str]:
    """获取默认版本列表，可以使用环境变量覆盖，如GCC_V=13.3.0，make默认不构建"""
    return {
        name: os.environ.get(f"{name.upper()}_V", "" if name == "make" else str(component_version[name]))
        for name in url_template_list
    }


# 构建所需的系统工具
system_tool_list: typing.Final[list[str]] = [
    "make",
    "tar",
    "patch",
    "gzip",
    "bzip2",
    "bison",
    "flex",
    "makeinfo",
    "gcc",
    "g++",
]


__all__ = [
    "component_version",
    "source_component",
    "make_component",
    "get_component_list",
    "get_default_version_list",
    "gcc_in_tree_lib_list",
    "optional_component_list",
    "system_tool_list",
]
