#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import os
import sys
import argparse
import platform
import common
import download
import environment
import packer
from typing import Callable
from gcc_environment import cross_environment as cross
from download_source import component_version, get_component_list, source_component, system_tool_list
from modifier import get_modifier


def get_env_jobs() -> int:
    """读取环境变量JOBS中的并发数，未设置时为0

    Raises:
        configuration_error: JOBS不是非负整数
    """
    jobs = os.environ.get("JOBS", "0")
    if not jobs.isdigit():
        raise common.configuration_error(f"JOBS environment variable must be a non-negative integer, got {jobs!r}.")
    return int(jobs)


class configure(common.basic_configure):
    prefix: str  # 安装路径，为空时自动推导
    jobs: int  # 并发数，为0时使用cpu核心数
    build: str  # 构建平台，为空时自动探测
    host: str  # 宿主平台，为空时与构建平台相同
    target: str  # 目标平台
    patch_dir: str  # 补丁所在目录
    repo_dir: str  # 包输出目录
    maintainer: str  # 包维护者
    subversion: str  # 包版本后缀
    pkgversion: str  # gcc的--with-pkgversion
    package_format: str  # 包格式
    install_packages: bool  # 是否将构建出的包安装到当前系统
    escalate_any_failure: bool  # 安装失败时是否不区分原因直接提权
    binutils_version: str  # binutils版本
    gcc_version: str  # gcc版本
    newlib_version: str  # newlib版本
    gmp_version: str  # gmp版本，为空时使用系统库
    mpc_version: str  # mpc版本，为空时使用系统库
    mpfr_version: str  # mpfr版本，为空时使用系统库
    make_version: str  # make版本，为空时不构建

    def __init__(
        self,
        build_dir: str = os.environ.get("BUILD_PATH", "toolchain"),
        prefix: str = os.environ.get("PREFIX", ""),
        jobs: int | None = None,
        build: str = os.environ.get("TOOLCHAIN_BUILD", ""),
        host: str = os.environ.get("TOOLCHAIN_HOST", ""),
        target: str = os.environ.get("TOOLCHAIN_TARGET", "arm-none-eabi"),
        patch_dir: str = os.environ.get("PATCH_DIR", "patches"),
        repo_dir: str = os.environ.get("REPO_DIR", f"out-{platform.machine()}"),
        maintainer: str = os.environ.get("MAINTAINER", "toolchains"),
        subversion: str = os.environ.get("SUBVERSION", ""),
        pkgversion: str = os.environ.get("PKGVERSION", ""),
        package_format: str = "deb",
        install_packages: bool = False,
        escalate_any_failure: bool = False,
        binutils_version: str = os.environ.get("BINUTILS_V", component_version.binutils),
        gcc_version: str = os.environ.get("GCC_V", component_version.gcc),
        newlib_version: str = os.environ.get("NEWLIB_V", component_version.newlib),
        gmp_version: str = os.environ.get("GMP_V", component_version.gmp),
        mpc_version: str = os.environ.get("MPC_V", component_version.mpc),
        mpfr_version: str = os.environ.get("MPFR_V", component_version.mpfr),
        make_version: str = os.environ.get("MAKE_V", ""),
    ) -> None:
        super().__init__(build_dir)
        self.prefix = prefix
        self.jobs = get_env_jobs() if jobs is None else jobs
        self.build = build
        self.host = host
        self.target = target
        self.patch_dir = os.path.abspath(patch_dir)
        self.repo_dir = os.path.abspath(repo_dir)
        self.maintainer = maintainer
        self.subversion = subversion
        self.pkgversion = pkgversion
        self.package_format = package_format
        self.install_packages = install_packages
        self.escalate_any_failure = escalate_any_failure
        self.binutils_version = str(binutils_version)
        self.gcc_version = str(gcc_version)
        self.newlib_version = str(newlib_version)
        self.gmp_version = str(gmp_version)
        self.mpc_version = str(mpc_version)
        self.mpfr_version = str(mpfr_version)
        self.make_version = str(make_version)

    def check(self) -> None:
        assert self.jobs >= 0, f"Invalid jobs: {self.jobs}."
        assert self.package_format in packer.archiver_list, f"Unknown package format: {self.package_format}."

    def get_version_list(self) -> dict[str, str]:
        """获取{组件名: 版本号}，空版本表示不构建该可选组件"""
        return {name: getattr(self, f"{name}_version") for name in ("binutils", "gcc", "newlib", "gmp", "mpc", "mpfr", "make")}


def get_missing_tool_list() -> list[str]:
    """获取PATH中缺少的构建工具"""
    return [tool for tool in system_tool_list if not common.command_exists(tool)]


def dump_system_tool() -> None:
    """打印构建所需的系统工具"""
    missing_tool_list = get_missing_tool_list()
    print("Required programs:")
    for tool in system_tool_list:
        print(f"\t{tool}{' (missing)' if tool in missing_tool_list else ''}")


def detect_build(binutils: source_component, config: configure) -> str:
    """准备binutils源码后使用其中的config.guess探测build平台，得到规范的平台名称"""
    source_dir = download.prepare_component(binutils, config.build_dir, config.patch_dir)
    return environment.detect_build_triplet(os.path.join(source_dir, "config.guess"))


def make_toolchain(config: configure, modifier_getter: Callable = get_modifier, **kwargs) -> cross:
    """根据配置确定拓扑和环境

    Args:
        config (configure): 构建配置
        modifier_getter (Callable, optional): 查找修改器的函数. 默认为get_modifier.
        **kwargs: 传递给cross_environment的其他参数，如store和runner

    Returns:
        cross: 本次构建的工具链
    """
    component_list = get_component_list(config.get_version_list())
    topo = environment.resolve(config.build, config.host, config.target, lambda: detect_build(component_list["binutils"], config))
    print(f"[toolchains] Build {topo.toolchain_type} toolchain: build={topo.build}, host={topo.host}, target={topo.target}.")
    env = environment.resolve_env(config.jobs or None, config.prefix or None, topo, config.build_dir)
    toolchain = cross(
        topo,
        env,
        component_list,
        config.patch_dir,
        config.repo_dir,
        config.maintainer,
        config.subversion,
        config.pkgversion,
        packer.archiver_list[config.package_format](),
        config.install_packages,
        escalate_any_failure=config.escalate_any_failure,
        modifier=modifier_getter(topo.host, topo.target),
        **kwargs,
    )
    return toolchain


def _print_failure(toolchain: cross | None, error: common.toolchain_error) -> None:
    print(f"[toolchains] Build failed: {error}", file=sys.stderr)
    if toolchain and toolchain.executor.last_step:
        step = toolchain.executor.last_step
        print(f'[toolchains] Last attempted stage: {step.key} in "{step.scope}".', file=sys.stderr)
    if isinstance(error, common.stage_failed | common.privilege_escalation_failed):
        print(f"[toolchains] Exit status: {error.exit_code}.", file=sys.stderr)
    print("[toolchains] Completed stages are kept, run again to resume.", file=sys.stderr)


def get_parser() -> argparse.ArgumentParser:
    default_config = configure()
    parser = argparse.ArgumentParser(
        description="Build gcc freestanding toolchain and pack it.", formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    configure.add_argument(parser)
    parser.add_argument("--prefix", type=str, help="The installation directory. Required for canadian cross.", default=default_config.prefix)
    parser.add_argument(
        "--jobs", type=int, help="Number of concurrent jobs at build time. Use cpu cores when it is 0.", default=default_config.jobs
    )
    parser.add_argument("--build", type=str, help="The build platform. Detect automatically when empty.", default=default_config.build)
    parser.add_argument("--host", type=str, help="The host platform. Same as the build platform when empty.", default=default_config.host)
    parser.add_argument("--target", type=str, help="The target platform.", default=default_config.target)
    parser.add_argument("--patch-dir", type=str, help="The directory of patches.", default=default_config.patch_dir)
    parser.add_argument("--repo-dir", type=str, help="The directory to save packages.", default=default_config.repo_dir)
    parser.add_argument("--maintainer", type=str, help="The maintainer of packages.", default=default_config.maintainer)
    parser.add_argument("--subversion", type=str, help="The suffix of package versions, such as -1.", default=default_config.subversion)
    parser.add_argument("--pkgversion", type=str, help="The version string shown by gcc --version.", default=default_config.pkgversion)
    parser.add_argument(
        "--package-format",
        type=str,
        choices=list(packer.archiver_list),
        help="The format of packages.",
        default=default_config.package_format,
    )
    parser.add_argument(
        "--install-packages",
        action=argparse.BooleanOptionalAction,
        help="Install every package into the current system after it is created.",
        default=default_config.install_packages,
    )
    parser.add_argument(
        "--escalate-on-any-failure",
        dest="escalate_any_failure",
        action=argparse.BooleanOptionalAction,
        help="Retry install commands with sudo or su on any failure instead of permission errors only.",
        default=default_config.escalate_any_failure,
    )
    for name in ("binutils", "gcc", "newlib", "gmp", "mpc", "mpfr", "make"):
        parser.add_argument(
            f"--{name}-version",
            dest=f"{name}_version",
            type=str,
            help=f"The version of {name}." + (" Empty to disable it." if name not in ("binutils", "gcc", "newlib") else ""),
            default=getattr(default_config, f"{name}_version"),
        )
    parser.add_argument("--system", action="store_true", help="Print the programs required by the build and exit.")
    return parser


def main(argv: list[str] | None = None, **kwargs) -> int:
    """命令行入口

    Args:
        argv (list[str] | None, optional): 命令行参数. 默认为sys.argv.
        **kwargs: 传递给cross_environment的其他参数

    Returns:
        int: 进程返回值，成功为0
    """
    try:
        parser = get_parser()
    except common.configuration_error as e:
        print(f"[toolchains] {e}", file=sys.stderr)
        return 1
    args = parser.parse_args(argv)
    if args.system:
        dump_system_tool()
        return 0

    toolchain: cross | None = None
    try:
        current_config = configure.parse_args(args)
        current_config.load_config(args)
        current_config.check()
        missing_tool_list = get_missing_tool_list()
        if missing_tool_list:
            print(f"[toolchains] Warning: programs not found in PATH: {', '.join(missing_tool_list)}.")
        toolchain = make_toolchain(current_config, **kwargs)
        toolchain.build()
        current_config.save_config(args)
    except common.toolchain_error as e:
        _print_failure(toolchain, e)
        return 1

    print(f"[toolchains] Executed {len(toolchain.executor.executed)} stages, skipped {len(toolchain.executor.skipped)} stages.")
    print(f"[toolchains] Installation directory: {toolchain.env.prefix}")
    print(f"[toolchains] Build directory: {toolchain.env.build_dir} (can be removed now)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
