import functools
import os
import shutil
import json
import argparse
import inspect
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


def _support_dry_run(echo_fn: Callable[..., str | None] | None = None) -> Callable[[Callable[P, R]], Callable[P, R | None]]:
    """为函数添加dry run支持，dry_run参数为None时使用command_dry_run中的全局状态，dry run时函数不执行并返回None

    Args:
        echo_fn (Callable[..., str | None] | None, optional): 生成回显信息的回调，参数按名称从被装饰函数的参数中选取，返回None时不回显. 默认不回显.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R | None]:
        signature = inspect.signature(fn)
        echo_param_list = list(inspect.signature(echo_fn).parameters) if echo_fn else []
        for param in echo_param_list:
            assert param in signature.parameters, f"The param {param} of echo_fn is not a param of {fn.__name__}."

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | None:
            bound_args = signature.bind(*args, **kwargs)
            bound_args.apply_defaults()
            if echo_fn:
                echo = echo_fn(*(bound_args.arguments[param] for param in echo_param_list))
                if echo is not None:
                    print(echo)
            dry_run: bool | None = bound_args.arguments.get("dry_run")
            assert dry_run is None or isinstance(dry_run, bool), "The param dry_run must be a bool or None."
            if command_dry_run.get() if dry_run is None else dry_run:
                return None
            return fn(*bound_args.args, **bound_args.kwargs)

        return wrapper

    return decorator


class toolchain_error(RuntimeError):
    """构建过程中所有错误的基类，任何该类错误都会终止本次构建"""


class download_unavailable(toolchain_error):
    """没有可用的下载工具"""


class download_failed(toolchain_error):
    """下载工具返回非0值"""


class unpack_failed(toolchain_error):
    """解压失败或不支持的压缩包类型"""


class patch_failed(toolchain_error):
    """补丁无法应用"""


class configuration_error(toolchain_error):
    """缺少必要参数或参数非法"""


class packaging_failed(toolchain_error):
    """打包失败"""


class stage_failed(toolchain_error):
    """构建阶段的外部进程返回非0值"""

    component: str  # 组件名称
    stage: str  # 阶段名称
    exit_code: int  # 外部进程返回值
    scope: str  # 阶段所在的工作目录

    def __init__(self, component: str, stage: str, exit_code: int, scope: str) -> None:
        self.component = component
        self.stage = stage
        self.exit_code = exit_code
        self.scope = scope
        super().__init__(f'Stage {component}/{stage} failed with exit code {exit_code} in directory "{scope}".')


class privilege_escalation_failed(toolchain_error):
    """普通安装失败后，提权安装也失败"""

    command: str  # 安装命令
    exit_code: int  # 最后一次尝试的返回值

    def __init__(self, command: str, exit_code: int) -> None:
        self.command = command
        self.exit_code = exit_code
        super().__init__(f'Install command "{command}" failed even with elevated privilege, last exit code {exit_code}.')


class command_result:
    """外部命令的执行结果"""

    command: str  # 执行的命令
    exit_code: int  # 返回值
    output: str  # 捕获的输出，未捕获时为空

    def __init__(self, command: str, exit_code: int, output: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.output = output

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class command_failed(toolchain_error):
    """命令执行失败且未忽略错误"""

    result: command_result

    def __init__(self, result: command_result) -> None:
        self.result = result
        super().__init__(f'Command "{result.command}" failed with errno={result.exit_code}.')


@_support_dry_run(lambda command, echo: f"[toolchains] Run command: {command}" if echo else None)
def run_command(
    command: str,
    ignore_error: bool = False,
    capture: bool = False,
    echo: bool = True,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    dry_run: bool | None = None,
) -> command_result | None:
    """运行指定命令并阻塞直到命令结束, 若不忽略错误, 则在命令执行出错时抛出command_failed

    Args:
        command (str): 要运行的命令
        ignore_error (bool, optional): 是否忽略错误，忽略时由调用者根据返回值判断. 默认不忽略错误.
        capture (bool, optional): 是否捕获命令输出，捕获时stderr合并到stdout，默认为不捕获.
        echo (bool, optional): 是否回显信息，设置为False将不回显任何信息，包括错误提示，默认为回显.
        cwd (str | None, optional): 命令的工作目录，默认为当前目录.
        env (dict[str, str] | None, optional): 命令的环境变量，默认继承当前进程.
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.

    Raises:
        command_failed: 命令执行失败且ignore_error为False时抛出异常

    Returns:
        command_result | None: 命令执行结果，dry run时返回None
    """

    if capture:
        stdout, stderr = subprocess.PIPE, subprocess.STDOUT
    elif echo:
        stdout = stderr = None
    else:
        stdout = stderr = subprocess.DEVNULL
    process = subprocess.run(command, stdout=stdout, stderr=stderr, shell=True, text=True, cwd=cwd, env=env)
    result = command_result(command, process.returncode, process.stdout or "")
    if not result.ok:
        if not ignore_error:
            raise command_failed(result)
        elif echo:
            print(f'[toolchains] Command "{command}" exited with errno={result.exit_code}.')
    return result


def command_exists(command: str) -> bool:
    """检查命令是否存在于PATH中

    Args:
        command (str): 命令名称
    """
    return shutil.which(command) is not None


@_support_dry_run(lambda path: f"[toolchains] Create directory {path}.")
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


@_support_dry_run(lambda path: f"[toolchains] Remove {path}.")
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


def remove_if_exists(path: str, dry_run: bool | None = None) -> None:
    """如果指定路径存在则删除指定路径

    Args:
        path (str): 要删除的路径
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """
    if os.path.lexists(path):
        remove(path, dry_run)


@_support_dry_run(lambda src, dst: f"[toolchains] Rename {src} to {dst}.")
def rename(src: str, dst: str, dry_run: bool | None = None) -> None:
    """重命名文件，已存在的同名文件会被替换

    Args:
        src (str): 原路径
        dst (str): 新路径
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """
    os.replace(src, dst)


@_support_dry_run(lambda src, dst: f"[toolchains] Link {dst} -> {src}.")
def symlink(src: str, dst: str, dry_run: bool | None = None) -> None:
    """创建软链接，已存在的同名项会被替换

    Args:
        src (str): 软链接指向的路径
        dst (str): 软链接所在路径
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """
    if os.path.lexists(dst):
        remove(dst, False)
    os.symlink(src, dst)


@_support_dry_run(lambda path: f"[toolchains] Touch {path}.")
def touch(path: str, dry_run: bool | None = None) -> None:
    """创建空文件，文件已存在时只更新时间戳

    Args:
        path (str): 文件路径
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """
    with open(path, "a"):
        pass
    os.utime(path)


class triplet_field:
    """平台名称的各个域，形如arch-vendor-os-abi，vendor和os可以省略"""

    arch: str  # 架构
    vendor: str  # 制造商
    os: str  # 操作系统
    abi: str  # abi/libc

    def __init__(self, triplet: str) -> None:
        """解析平台名称

        Args:
            triplet (str): 输入平台名称，如arm-none-eabi、x86_64-w64-mingw32
        """
        field = triplet.split("-")
        assert 2 <= len(field) <= 4 and all(field), f'Illegal triplet "{triplet}"'
        self.arch, *middle, self.abi = field
        self.vendor = middle[0] if len(middle) == 2 else "unknown"
        self.os = middle[-1] if middle else "unknown"


class basic_configure:
    build_dir: str  # 构建目录，所有源代码树、构建树和阶段标记都位于其中

    def __init__(self, build_dir: str = "toolchain") -> None:
        self.build_dir = os.path.abspath(build_dir)

    @staticmethod
    def add_argument(parser: argparse.ArgumentParser) -> None:
        """为argparse添加--build-dir、--export、--import和--dry-run选项

        Args:
            parser (argparse.ArgumentParser): 命令行解析器
        """
        parser.add_argument(
            "--build-dir",
            dest="build_dir",
            type=str,
            help="The directory to hold source trees, build trees and stage markers.",
            default=os.environ.get("BUILD_PATH", "toolchain"),
        )
        parser.add_argument("--export", dest="export_file", type=str, help="Export settings to specific file.")
        parser.add_argument("--import", dest="import_file", type=str, help="Import settings from specific file.")
        parser.add_argument(
            "--dry-run",
            dest="dry_run",
            action=argparse.BooleanOptionalAction,
            help="Preview the commands without actually executing them.",
            default=False,
        )

    @classmethod
    def parse_args(cls, args: argparse.Namespace):
        """用命令行参数构造配置，__init__的每个参数都需要有同名的命令行参数"""
        command_dry_run.set(args.dry_run)
        args_list = vars(args)
        param_list = list(inspect.signature(cls.__init__).parameters)[1:]
        for param in param_list:
            assert param in args_list, f"The param {param} of {cls.__name__} is not in args."
        return cls(**{param: args_list[param] for param in param_list})

    def save_config(self, args: argparse.Namespace) -> None:
        """将配置以json格式保存到--export指定的文件

        Args:
            args (argparse.Namespace): 用户输入参数

        Raises:
            configuration_error: 无法写入文件
        """
        export_file: str | None = args.export_file
        if not export_file:
            return
        try:
            with open(export_file, "w") as file:
                json.dump(vars(self), file, indent=4)
        except OSError as e:
            raise configuration_error(f'Export settings to "{export_file}" failed: {e}')
        print(f'[toolchains] Settings have been written to file "{export_file}".')

    def load_config(self, args: argparse.Namespace) -> None:
        """从--import指定的文件加载配置，用户显式指定的值优先于文件中的值

        Args:
            args (argparse.Namespace): 用户输入参数

        Raises:
            configuration_error: 文件无法读取或格式错误
        """
        import_file: str | None = args.import_file
        if not import_file:
            return
        try:
            with open(import_file) as file:
                import_config_list = json.load(file)
        except (OSError, ValueError) as e:
            raise configuration_error(f'Import settings from "{import_file}" failed: {e}')
        if not isinstance(import_config_list, dict):
            raise configuration_error(f'Invalid settings file "{import_file}".')
        default_config_list = vars(type(self)())
        for key, value in list(vars(self).items()):
            # 只有仍为默认值的项才使用文件中的值，文件中缺少的项保持默认值
            if value == default_config_list[key] and key in import_config_list:
                setattr(self, key, import_config_list[key])


assert __name__ != "__main__", "Import this file instead of running it directly."
