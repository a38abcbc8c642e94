#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import os
import argparse
import shlex
import typing
import common
from download_source import *

# 按优先级排列的下载工具，均支持断点续传
download_tool_list: typing.Final[list[tuple[str, str]]] = [
    ("wget", "wget -c -O {path} {url}"),
    ("curl", "curl -L -C - -o {path} {url}"),
]

# {压缩包后缀: tar解压选项}
unpack_option_list: typing.Final[dict[str, str]] = {
    ".tar.gz": "-xzf",
    ".tgz": "-xzf",
    ".tar.bz2": "-xjf",
    ".tar.xz": "-xJf",
    ".tar": "-xf",
}

patched_marker: typing.Final[str] = ".patched"
partial_suffix: typing.Final[str] = ".part"  # 未下载完成的文件后缀


def _exist_echo(item: str) -> None:
    """文件已存在时显示提示"""
    print(f"[toolchains] {item} exists, skip.")


def fetch(url: str, directory: str, file_name: str | None = None) -> str:
    """下载文件到指定目录，文件已存在时直接返回

    Args:
        url (str): 下载地址
        directory (str): 保存文件的目录
        file_name (str | None, optional): 保存的文件名. 默认为url的最后一段.

    Raises:
        download_unavailable: 没有可用的下载工具
        download_failed: 下载工具返回非0值

    Returns:
        str: 下载后的文件路径
    """
    path = os.path.join(directory, file_name or url.rsplit("/", 1)[-1])
    if os.path.exists(path):
        _exist_echo(f"Lib {os.path.basename(path)}")
        return path

    for tool, command in download_tool_list:
        if common.command_exists(tool):
            break
    else:
        raise common.download_unavailable("Install wget or curl to download toolchain sources.")

    common.mkdir(directory, False)
    # 下载到临时文件，中断后再次运行时续传该文件
    part_path = path + partial_suffix
    result = common.run_command(command.format(path=shlex.quote(part_path), url=shlex.quote(url)), ignore_error=True)
    if result and not result.ok:
        raise common.download_failed(f'Download "{url}" with {tool} failed with errno={result.exit_code}.')
    common.rename(part_path, path)
    return path


def _get_unpack_option(archive_path: str) -> str:
    for suffix, option in unpack_option_list.items():
        if archive_path.endswith(suffix):
            return option
    raise common.unpack_failed(f'Unknown archive type of "{archive_path}".')


def unpack(archive_path: str, expected_dir: str) -> None:
    """将压缩包解压到expected_dir所在目录，expected_dir已存在时跳过

    解压中断时目录可能处于不完整状态，需要手动删除后重试.

    Args:
        archive_path (str): 压缩包路径
        expected_dir (str): 解压后应当出现的目录

    Raises:
        unpack_failed: 压缩包类型未知或tar返回非0值
    """
    if os.path.isdir(expected_dir):
        _exist_echo(f"Directory {os.path.basename(expected_dir)}")
        return
    option = _get_unpack_option(archive_path)
    parent_dir = os.path.dirname(os.path.abspath(expected_dir))
    result = common.run_command(f"tar {option} {shlex.quote(archive_path)} -C {shlex.quote(parent_dir)}", ignore_error=True)
    if result and not result.ok:
        raise common.unpack_failed(f'Unpack "{archive_path}" failed with errno={result.exit_code}.')


def get_patch_list(component_dir: str, patch_dir: str) -> list[str]:
    """查找组件对应的补丁，补丁名形如"0001-xxx-<组件目录名>.patch"，按字典序排列

    Args:
        component_dir (str): 组件源码目录
        patch_dir (str): 补丁所在目录
    """
    if not os.path.isdir(patch_dir):
        return []
    suffix = f"-{os.path.basename(os.path.normpath(component_dir))}.patch"
    return [os.path.join(patch_dir, patch) for patch in sorted(os.listdir(patch_dir)) if patch.endswith(suffix)]


def apply_patches(component_dir: str, patch_dir: str) -> None:
    """对源码树应用补丁，每个源码树只应用一次

    Args:
        component_dir (str): 组件源码目录
        patch_dir (str): 补丁所在目录

    Raises:
        patch_failed: 任一补丁无法应用，此时需要删除源码树后重新解压
    """
    marker = os.path.join(component_dir, patched_marker)
    if os.path.exists(marker):
        return
    for patch in get_patch_list(component_dir, patch_dir):
        result = common.run_command(f"patch -p1 -i {shlex.quote(os.path.abspath(patch))}", ignore_error=True, cwd=component_dir)
        if result and not result.ok:
            raise common.patch_failed(
                f'Apply "{patch}" to "{component_dir}" failed. Remove the source tree and unpack it again before retrying.'
            )
    common.touch(marker)


def prepare_component(component: source_component, build_dir: str, patch_dir: str) -> str:
    """下载、解压并修补组件源码

    Args:
        component (source_component): 组件源代码描述
        build_dir (str): 构建目录
        patch_dir (str): 补丁所在目录

    Returns:
        str: 组件源码目录
    """
    archive_path = fetch(component.url, build_dir, component.archive_name)
    source_dir = os.path.join(build_dir, component.unpack_dir)
    unpack(archive_path, source_dir)
    apply_patches(source_dir, patch_dir)
    return source_dir


def prepare_sources(component_list: dict[str, source_component], build_dir: str, patch_dir: str) -> dict[str, str]:
    """准备所有组件的源码，并将gmp、mpc、mpfr链接到gcc源码树中

    Args:
        component_list (dict[str, source_component]): {组件名: 源代码描述}
        build_dir (str): 构建目录
        patch_dir (str): 补丁所在目录

    Returns:
        dict[str, str]: {组件名: 源码目录}
    """
    source_dir_list = {name: prepare_component(component, build_dir, patch_dir) for name, component in component_list.items()}
    gcc_dir = source_dir_list["gcc"]
    for lib in filter(lambda lib: lib in component_list, gcc_in_tree_lib_list):
        common.symlink(os.path.join("..", component_list[lib].unpack_dir), os.path.join(gcc_dir, lib))
    return source_dir_list


__all__ = [
    "fetch",
    "unpack",
    "get_patch_list",
    "apply_patches",
    "prepare_component",
    "prepare_sources",
]

if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Download, unpack and patch the sources of the toolchain.", formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    common.basic_configure.add_argument(parser)
    parser.add_argument("--patch-dir", type=str, help="The directory of patches.", default=os.environ.get("PATCH_DIR", "patches"))
    args = parser.parse_args()
    common.command_dry_run.set(args.dry_run)

    build_dir = os.path.abspath(args.build_dir)
    try:
        prepare_sources(get_component_list(get_default_version_list()), build_dir, os.path.abspath(args.patch_dir))
    except common.toolchain_error as e:
        parser.exit(1, f"[toolchains] {e}\n")
