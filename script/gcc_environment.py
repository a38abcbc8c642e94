import glob
import os
import shlex
import sys
import typing
import common
import download
import packer
from collections.abc import Callable
from download_source import source_component
from environment import topology, env_config
from pipeline import stage_graph, stage_step, pipeline_executor, runner_type
from stage_tracker import basic_stage_store, marker_stage_store, stage_name

# 独立工具链的gcc配置选项
freestanding_gcc_option = (
    "--enable-languages=c,c++,lto",
    "--without-headers",
    "--disable-libssp",
    "--enable-multilib",
    "--disable-shared",
    "--with-gcc",
    "--with-newlib",
    "--enable-tls",
    "--disable-threads",
    "--disable-decimal-float",
    "--disable-libffi",
    "--disable-libgomp",
    "--disable-libmudflap",
    "--disable-libquadmath",
    "--disable-win32-registry",
    "--disable-nls",
    "--disable-werror",
    "--without-zstd",
    "--enable-host-pie",
)

binutils_basic_option = (
    "--enable-multilib",
    "--without-system-zlib",
    "--without-zstd",
    "--disable-werror",
)

newlib_basic_option = (
    "--disable-newlib-supplied-syscalls",
    "--disable-threads",
    "--disable-libssp",
    "--disable-werror",
)

make_basic_option = (
    "--disable-largefile",
    "--disable-nls",
    "--disable-rpath",
)


class package_info(typing.NamedTuple):
    description: str  # 描述模板，可用字段为target
    homepage: str  # 主页
    depends: tuple[str, ...]  # 依赖的组件
    prune: tuple[str, ...]  # 打包前删除的路径，相对于安装路径，支持通配符


package_info_list: typing.Final[dict[str, package_info]] = {
    "binutils": package_info(
        "GNU assembler, linker and binary utilities for {target}",
        "https://www.gnu.org/software/binutils/",
        (),
        ("lib/bfd-plugins", "share/info"),
    ),
    "newlib": package_info(
        "Newlib is a C library intended for use on embedded systems. Compiled for {target}.",
        "https://sourceware.org/newlib/",
        (),
        ("share/info",),
    ),
    "gcc": package_info(
        "The GNU Compiler Collection for {target}",
        "https://gcc.gnu.org/",
        ("binutils", "newlib"),
        ("share/info", "share/man/man7", "lib/libcc1.*", "lib64/libcc1.*"),
    ),
}


def get_host_gcc_option(platform_name: str = sys.platform) -> list[str]:
    """获取与宿主系统相关的gcc配置选项，macOS上使用Homebrew提供的依赖库

    Args:
        platform_name (str, optional): 宿主系统名称. 默认为sys.platform.

    Raises:
        configuration_error: macOS上没有安装Homebrew
    """
    if not platform_name.startswith("darwin"):
        return ["--with-system-zlib"]
    if not common.command_exists("brew"):
        raise common.configuration_error(
            "Compilation on macOS is supported via Homebrew (https://brew.sh). Please install homebrew and try again."
        )
    result = common.run_command("brew --prefix", capture=True, echo=False, dry_run=False)
    assert result
    brew_prefix = result.output.strip()
    return [f"--with-{lib}={brew_prefix}" for lib in ("gmp", "mpfr", "mpc", "zlib")]


def get_host_path_list(platform_name: str = sys.platform) -> list[str]:
    """获取需要加入PATH的宿主工具目录，macOS上gcc需要GNU sed"""
    if not platform_name.startswith("darwin"):
        return []
    result = common.run_command("brew --prefix gsed", capture=True, echo=False, dry_run=False)
    assert result
    return [os.path.join(result.output.strip(), "libexec", "gnubin")]


def _cache_command(subdir: str, line_list: list[str]) -> str:
    """生成写入config.cache的命令"""
    lines = " ".join(shlex.quote(line) for line in line_list)
    return f"mkdir -p {subdir} && printf '%s\\n' {lines} > {subdir}/config.cache"


class cross_environment:
    topo: topology  # 构建拓扑
    env: env_config  # 构建环境
    component_list: dict[str, source_component]  # 所有组件
    patch_dir: str  # 补丁所在目录
    repo_dir: str  # 包输出目录
    maintainer: str  # 包维护者
    subversion: str  # 包版本后缀
    archiver: packer.basic_archiver  # 打包工具
    install_packages: bool  # 是否将构建出的包安装到当前系统
    package_arch: str  # 包的架构
    binutils_option: list[str]  # binutils配置选项
    gcc_option: list[str]  # gcc配置选项
    newlib_option: list[str]  # newlib配置选项
    newlib_cflags: str  # 编译newlib时的CFLAGS_FOR_TARGET
    make_option: list[str]  # make配置选项
    config_cache: dict[str, dict[str, list[str]]]  # {组件: {子目录: config.cache内容}}
    executor: pipeline_executor  # 阶段执行器

    def __init__(
        self,
        topo: topology,
        env: env_config,
        component_list: dict[str, source_component],
        patch_dir: str,
        repo_dir: str,
        maintainer: str = "",
        subversion: str = "",
        pkgversion: str = "",
        archiver: packer.basic_archiver | None = None,
        install_packages: bool = False,
        store: basic_stage_store | None = None,
        runner: runner_type | None = None,
        escalate_any_failure: bool = False,
        host_gcc_option: list[str] | None = None,
        modifier: Callable[["cross_environment"], None] | None = None,
    ) -> None:
        """gcc交叉工具链构建流程

        Args:
            topo (topology): 构建拓扑
            env (env_config): 构建环境
            component_list (dict[str, source_component]): 所有组件
            patch_dir (str): 补丁所在目录
            repo_dir (str): 包输出目录
            maintainer (str, optional): 包维护者. 默认为空.
            subversion (str, optional): 包版本后缀. 默认为空.
            pkgversion (str, optional): gcc的--with-pkgversion. 默认不设置.
            archiver (packer.basic_archiver | None, optional): 打包工具. 默认为dpkg.
            install_packages (bool, optional): 是否将构建出的包安装到当前系统. 默认不安装.
            store (basic_stage_store | None, optional): 阶段状态存储. 默认使用阶段标记文件.
            runner (runner_type | None, optional): 运行外部命令的函数. 默认直接运行.
            escalate_any_failure (bool, optional): 安装失败时是否不区分原因直接提权. 默认只在权限不足时提权.
            host_gcc_option (list[str] | None, optional): 宿主相关的gcc配置选项. 默认根据当前系统推导.
            modifier (Callable[["cross_environment"], None], optional): 平台相关的修改器. 默认为None.
        """
        self.topo = topo
        self.env = env
        self.component_list = component_list
        self.patch_dir = patch_dir
        self.repo_dir = repo_dir
        self.maintainer = maintainer
        self.subversion = subversion
        self.archiver = archiver or packer.dpkg_archiver()
        self.install_packages = install_packages
        host_field = common.triplet_field(topo.host)
        self.package_arch = host_field.arch if topo.is_canadian_cross else packer.get_package_arch()

        self.binutils_option = [*binutils_basic_option]
        self.gcc_option = [*(get_host_gcc_option() if host_gcc_option is None else host_gcc_option), *freestanding_gcc_option]
        if pkgversion:
            self.gcc_option.insert(0, f"--with-pkgversion={shlex.quote(pkgversion)}")
        self.newlib_option = [*newlib_basic_option]
        self.newlib_cflags = "-DHAVE_ASSERT_FUNC -O2 -fpermissive"
        self.make_option = [*make_basic_option]
        self.config_cache = {}
        self.executor = pipeline_executor(store or marker_stage_store(), runner, escalate_any_failure)

        # 允许调整配置选项
        if modifier:
            modifier(self)

    def source_dir(self, lib: str) -> str:
        return os.path.join(self.env.build_dir, self.component_list[lib].unpack_dir)

    def scope(self, name: str) -> str:
        return os.path.join(self.env.build_dir, name)

    def _configure(self, name: str, lib: str, *option: str, env: dict[str, str] | None = None) -> list[str]:
        """生成配置命令，配置脚本位于与构建目录同级的源码目录中"""
        command_list = [_cache_command(subdir, line_list) for subdir, line_list in self.config_cache.get(name, {}).items()]
        env_prefix = "".join(f"{key}={shlex.quote(value)} " for key, value in (env or {}).items())
        configure = os.path.join("..", self.component_list[lib].unpack_dir, "configure")
        command_list.append(f"{env_prefix}{configure} {' '.join(option)}")
        return command_list

    def _make(self, *target: str) -> list[str]:
        targets = " ".join(("", *target))
        return [f"make{targets} -j {self.env.jobs}"]

    def _install(self, *target: str) -> list[str]:
        return [f"make {' '.join(target or ('install',))}"]

    def _package_install(self, lib: str, install_target: str = "install-strip") -> list[str]:
        """安装到临时目录以便打包，重新执行时先清空临时目录"""
        payload_dir = self.payload_dir(lib)
        return [f"rm -rf {shlex.quote(payload_dir)}", f"make {install_target} DESTDIR={shlex.quote(payload_dir)}"]

    def package_name(self, lib: str) -> str:
        return f"{self.topo.target}-{lib}"

    def payload_dir(self, lib: str) -> str:
        return os.path.join(self.env.tmpinst_dir, self.package_name(lib))

    def package_descriptor(self, lib: str) -> packer.package_descriptor:
        info = package_info_list[lib]
        return packer.package_descriptor(
            self.package_name(lib),
            self.component_list[lib].version,
            self.subversion,
            tuple(self.package_name(dependency) for dependency in info.depends),
            self.maintainer,
            info.homepage,
            info.description.format(target=self.topo.target),
            self.payload_dir(lib),
        )

    def shape_payload(self, lib: str) -> None:
        """删除与其他包冲突的文件，并将binutils的重复程序替换为软链接"""
        prefix_dir = os.path.join(self.payload_dir(lib), self.env.prefix.lstrip(os.sep))
        for pattern in package_info_list[lib].prune:
            for path in glob.glob(os.path.join(prefix_dir, pattern)):
                common.remove_if_exists(path)
        if lib == "binutils":
            target_bin_dir = os.path.join(prefix_dir, self.topo.target, "bin")
            if os.path.isdir(target_bin_dir):
                for file in os.listdir(target_bin_dir):
                    common.symlink(
                        os.path.join("..", self.topo.target, "bin", file), os.path.join(prefix_dir, "bin", f"{self.topo.target}-{file}")
                    )

    def _pack(self, lib: str, component: str) -> Callable[[], None]:
        def action() -> None:
            self.shape_payload(lib)
            package_path = packer.package(self.package_descriptor(lib), self.repo_dir, self.archiver, self.package_arch)
            # 之后的阶段需要使用刚构建的工具
            if self.install_packages and not self.topo.is_canadian_cross:
                result = self.executor.install_runner(self.archiver.install_command(package_path), self.env.build_dir, False)
                if result and not result.ok:
                    raise common.stage_failed(component, stage_name.packaged, result.exit_code, self.scope(component))

        return action

    def _add_package_step(self, graph: stage_graph, lib: str, component: str, install_target: str = "install-strip", after: tuple[str, ...] = ()) -> None:
        # 包依赖的组件需要先打包
        step = stage_step(component, stage_name.packaged, self.scope(component), self._package_install(lib, install_target), self._pack(lib, component), after=after)
        graph.add(step)

    def _add_target_stages(self, graph: stage_graph, release: bool) -> None:
        """添加build->target交叉工具链的阶段，release为False时只安装到中间安装路径而不打包"""
        prefix = shlex.quote(self.env.cross_prefix)
        target = self.topo.target
        privileged = (stage_name.installed, stage_name.gcc_installed, stage_name.libgcc_installed, stage_name.gcc_installed_target)

        # 编译binutils
        graph.component(
            "binutils_compile_target",
            self.scope("binutils_compile_target"),
            [
                (stage_name.configured, self._configure("binutils_compile_target", "binutils", f"--prefix={prefix}", f"--target={target}", *self.binutils_option)),
                (stage_name.compiled, self._make()),
                (stage_name.installed, self._install("install-strip")),
            ],
            privileged,
        )
        if release:
            self._add_package_step(graph, "binutils", "binutils_compile_target")

        # 编译gcc和libgcc，之后编译newlib需要使用该gcc
        graph.component(
            "gcc_compile_target",
            self.scope("gcc_compile_target"),
            [
                (stage_name.configured, self._configure("gcc_compile_target", "gcc", f"--prefix={prefix}", f"--target={target}", *self.gcc_option)),
                (stage_name.gcc_compiled, self._make("all-gcc")),
                (stage_name.gcc_installed, self._install("install-gcc")),
                (stage_name.libgcc_compiled, self._make("all-target-libgcc")),
                (stage_name.libgcc_installed, self._install("install-target-libgcc")),
            ],
            privileged,
            after=["binutils_compile_target/installed"],
        )

        # 编译newlib
        graph.component(
            "newlib_compile_target",
            self.scope("newlib_compile_target"),
            [
                (
                    stage_name.configured,
                    self._configure(
                        "newlib_compile_target",
                        "newlib",
                        f"--prefix={prefix}",
                        f"--target={target}",
                        *self.newlib_option,
                        env={"CFLAGS_FOR_TARGET": self.newlib_cflags},
                    ),
                ),
                (stage_name.compiled, self._make()),
                (stage_name.installed, self._install()),
            ],
            privileged,
            after=["gcc_compile_target/libgcc_installed"],
        )
        if release:
            self._add_package_step(graph, "newlib", "newlib_compile_target", "install")

            # 标准交叉只需在原构建目录中继续编译libstdc++等target库
            graph.component(
                "gcc_compile_target",
                self.scope("gcc_compile_target"),
                [
                    (stage_name.gcc_compiled_target, self._make("all")),
                    (stage_name.gcc_installed_target, self._install("install-strip")),
                ],
                privileged,
                after=["newlib_compile_target/installed"],
            )
            self._add_package_step(graph, "gcc", "gcc_compile_target", after=("binutils_compile_target/packaged", "newlib_compile_target/packaged"))

    def _add_host_stages(self, graph: stage_graph) -> None:
        """添加加拿大构建中host->target工具链的阶段，需要build->target工具链已完成"""
        prefix = shlex.quote(self.env.prefix)
        triplet_option = (f"--build={self.topo.build}", f"--host={self.topo.host}", f"--target={self.topo.target}")
        privileged = (stage_name.installed, stage_name.libgcc_installed, stage_name.gcc_installed_target)

        # pkg-config会在加拿大构建中错误地启用msgpack
        graph.component(
            "binutils_compile_host",
            self.scope("binutils_compile_host"),
            [
                (stage_name.configured, self._configure("binutils_compile_host", "binutils", f"--prefix={prefix}", *triplet_option, *self.binutils_option, "--without-msgpack")),
                (stage_name.compiled, self._make()),
                (stage_name.installed, self._install("install-strip")),
            ],
            privileged,
            after=["gcc_compile_target/libgcc_installed", "newlib_compile_target/installed"],
        )
        self._add_package_step(graph, "binutils", "binutils_compile_host")

        graph.component(
            "gcc_compile",
            self.scope("gcc_compile"),
            [
                (stage_name.configured, self._configure("gcc_compile", "gcc", f"--prefix={prefix}", *triplet_option, *self.gcc_option)),
                (stage_name.libgcc_compiled, self._make("all-target-libgcc")),
                (stage_name.libgcc_installed, self._install("install-target-libgcc")),
            ],
            privileged,
            after=["binutils_compile_host/installed"],
        )

        graph.component(
            "newlib_compile",
            self.scope("newlib_compile"),
            [
                (
                    stage_name.configured,
                    self._configure(
                        "newlib_compile",
                        "newlib",
                        f"--prefix={prefix}",
                        f"--target={self.topo.target}",
                        *self.newlib_option,
                        env={"CFLAGS_FOR_TARGET": self.newlib_cflags},
                    ),
                ),
                (stage_name.compiled, self._make()),
                (stage_name.installed, self._install()),
            ],
            privileged,
            after=["gcc_compile/libgcc_installed"],
        )
        self._add_package_step(graph, "newlib", "newlib_compile", "install")

        # 在独立的构建目录中完成gcc的编译
        graph.component(
            "gcc_compile",
            self.scope("gcc_compile"),
            [
                (stage_name.gcc_compiled_target, self._make("all")),
                (stage_name.gcc_installed_target, self._install("install-strip")),
            ],
            privileged,
            after=["newlib_compile/installed"],
        )
        self._add_package_step(graph, "gcc", "gcc_compile", after=("binutils_compile_host/packaged", "newlib_compile/packaged"))

    def _add_make_stages(self, graph: stage_graph, after: str) -> None:
        """在源码树中编译运行于host的make"""
        name = self.component_list["make"].unpack_dir
        graph.component(
            name,
            self.source_dir("make"),
            [
                (stage_name.configured, [f"./configure --prefix={shlex.quote(self.env.prefix)} {' '.join(self.make_option)} --build={self.topo.build} --host={self.topo.host}"]),
                (stage_name.compiled, self._make()),
                (stage_name.installed, self._install("install-strip")),
            ],
            (stage_name.installed,),
            after=[after],
        )

    def build_graph(self) -> stage_graph:
        """根据构建拓扑选择阶段图

        Returns:
            stage_graph: 本次构建的所有阶段
        """
        graph = stage_graph()
        if self.topo.is_canadian_cross:
            self._add_target_stages(graph, False)
            self._add_host_stages(graph)
            last = "gcc_compile/packaged"
        else:
            self._add_target_stages(graph, True)
            last = "gcc_compile_target/packaged"
        if "make" in self.component_list:
            self._add_make_stages(graph, last)
        return graph

    def check_host_compiler(self) -> None:
        """加拿大构建需要一个生成host平台程序的编译器

        Raises:
            configuration_error: 找不到host编译器
        """
        if not self.topo.is_canadian_cross:
            return
        compiler = f"{self.topo.host}-gcc"
        if common.command_exists(compiler):
            print(f"[toolchains] Found host compiler: {compiler} in PATH. Using it.")
            return
        message = f"This build requires a working {self.topo.host} cross-compiler ({compiler}) in PATH."
        if self.topo.host == "x86_64-w64-mingw32":
            message += " Install it instead: apt install mingw-w64 (Debian/Ubuntu) or brew install mingw-w64 (macOS)."
        raise common.configuration_error(message)

    def prepare_sources(self) -> None:
        """下载、解压并修补所有源码"""
        common.mkdir(self.env.build_dir, False)
        common.mkdir(self.env.tmpinst_dir, False)
        download.prepare_sources(self.component_list, self.env.build_dir, self.patch_dir)

    def build(self) -> None:
        """构建gcc工具链"""
        self.check_host_compiler()
        for path in get_host_path_list():
            self.env.prepend_path(path)
        self.env.register_in_env()
        self.prepare_sources()
        self.executor.run(self.build_graph())


assert __name__ != "__main__", "Import this file instead of running it directly."
