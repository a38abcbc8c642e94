import os
import shlex
import psutil
import common
from collections.abc import Callable


def detect_build_triplet(config_guess: str | None = None) -> str:
    """探测当前平台的规范平台名称，优先使用config.guess，其次使用gcc -dumpmachine

    Args:
        config_guess (str | None, optional): config.guess脚本路径，文件不存在时跳过. 默认不使用config.guess.

    Raises:
        configuration_error: 所有探测方法均失败

    Returns:
        str: 当前平台名称
    """
    detector_list: list[str] = []
    if config_guess and os.path.exists(config_guess):
        detector_list.append(shlex.quote(config_guess))
    detector_list += ["gcc -dumpmachine", "cc -dumpmachine"]
    for detector in detector_list:
        # 探测结果会影响后续流程，dry run时也需要执行
        result = common.run_command(detector, ignore_error=True, capture=True, echo=False, dry_run=False)
        if result and result.ok and result.output.strip():
            return result.output.strip().splitlines()[-1]
    raise common.configuration_error("Cannot detect the build platform, please set it explicitly.")


class topology:
    """构建拓扑，即(build, host, target)三元组以及由此确定的构建流程"""

    build: str  # build平台
    host: str  # host平台
    target: str  # target平台
    toolchain_type: str  # 工具链类别
    is_canadian_cross: bool  # 是否需要加拿大构建

    def __init__(self, build: str, host: str, target: str) -> None:
        for triplet in (build, host, target):
            common.triplet_field(triplet)
        self.build = build
        self.host = host
        self.target = target
        # 鉴别工具链类别
        if self.build == self.host == self.target:
            self.toolchain_type = "native"
        elif self.build == self.host != self.target:
            self.toolchain_type = "cross"
        elif self.build != self.host == self.target:
            self.toolchain_type = "canadian"
        else:
            self.toolchain_type = "canadian cross"
        self.is_canadian_cross = self.build != self.host

    @property
    def name(self) -> str:
        """工具链名称，同时用作默认安装目录名"""
        return f"{self.host}-host-{self.target}-target-gcc"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, topology):
            return NotImplemented
        return (self.build, self.host, self.target) == (other.build, other.host, other.target)

    def __repr__(self) -> str:
        return f"topology(build={self.build!r}, host={self.host!r}, target={self.target!r})"


def resolve(
    build_override: str | None, host_override: str | None, target: str, detector: Callable[[], str] = detect_build_triplet
) -> topology:
    """确定构建拓扑

    Args:
        build_override (str | None): 用户指定的build平台，为空时自动探测
        host_override (str | None): 用户指定的host平台，为空时与build平台相同
        target (str): target平台
        detector (Callable[[], str], optional): 平台探测函数. 默认为detect_build_triplet.
    """
    if not target:
        raise common.configuration_error("The target platform is required.")
    build = build_override or detector()
    host = host_override or build
    return topology(build, host, target)


class env_config:
    """所有阶段共用的环境：并发数、安装路径和PATH"""

    jobs: int  # 编译所用线程数
    prefix: str  # 最终安装路径
    cross_prefix: str  # build->target交叉工具链的安装路径，标准交叉时与prefix相同
    build_dir: str  # 构建目录
    tmpinst_dir: str  # 打包时的临时安装根目录
    path: str  # 各阶段使用的PATH

    def __init__(self, jobs: int, prefix: str, cross_prefix: str, build_dir: str, path: str) -> None:
        assert jobs > 0, f"Invalid jobs: {jobs}."
        self.jobs = jobs
        self.prefix = prefix
        self.cross_prefix = cross_prefix
        self.build_dir = build_dir
        self.tmpinst_dir = os.path.join(build_dir, "tmpinst")
        self.path = path

    @property
    def intermediate_prefix(self) -> str | None:
        """加拿大构建时的中间安装路径，其中的工具链不会被发布"""
        return self.cross_prefix if self.cross_prefix != self.prefix else None

    @property
    def bin_dir(self) -> str:
        return os.path.join(self.prefix, "bin")

    def prepend_path(self, directory: str) -> None:
        """将目录加入PATH的最前端

        Args:
            directory (str): 要加入的目录
        """
        self.path = os.pathsep.join((directory, self.path)) if self.path else directory

    def register_in_env(self) -> None:
        """注册PATH到当前进程的环境变量，子进程会继承该环境变量"""
        os.environ["PATH"] = self.path


def get_cpu_count() -> int:
    """获取cpu核心数，无法获取时返回1"""
    return psutil.cpu_count() or 1


def resolve_env(
    explicit_jobs: int | None,
    explicit_prefix: str | None,
    topo: topology,
    build_dir: str,
    prefix_dir: str | None = None,
) -> env_config:
    """确定所有阶段共用的环境

    Args:
        explicit_jobs (int | None): 用户指定的并发数，为空时使用cpu核心数
        explicit_prefix (str | None): 用户指定的安装路径，加拿大构建时必须指定
        topo (topology): 构建拓扑
        build_dir (str): 构建目录
        prefix_dir (str | None, optional): 未指定安装路径时默认安装路径的父目录. 默认为$HOME.

    Raises:
        configuration_error: 加拿大构建时未指定安装路径

    Returns:
        env_config: 构建环境
    """
    jobs = explicit_jobs or get_cpu_count()
    if explicit_prefix:
        prefix = os.path.abspath(explicit_prefix)
    elif topo.is_canadian_cross:
        raise common.configuration_error(
            "PREFIX environment variable is not defined. Please define PREFIX and point it to the requested installation directory."
        )
    else:
        prefix = os.path.join(prefix_dir or os.environ.get("HOME", os.getcwd()), topo.name)

    build_dir = os.path.abspath(build_dir)
    # 加拿大构建时build->target交叉工具链安装到独立目录，不属于最终发布的工具链
    cross_prefix = os.path.join(build_dir, "cross_prefix") if topo.is_canadian_cross else prefix
    env = env_config(jobs, prefix, cross_prefix, build_dir, os.environ.get("PATH", ""))
    # 后续阶段优先使用前面阶段构建的工具
    env.prepend_path(os.path.join(prefix, "bin"))
    if env.intermediate_prefix:
        env.prepend_path(os.path.join(cross_prefix, "bin"))
    return env


assert __name__ != "__main__", "Import this file instead of running it directly."
