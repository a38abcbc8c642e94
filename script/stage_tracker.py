import enum
import os
import common


class stage_name(enum.StrEnum):
    """阶段标记名称，组件可以使用自定义的名称表示多步目标"""

    configured = "configured"
    compiled = "compiled"
    installed = "installed"
    packaged = "packaged"
    gcc_compiled = "gcc_compiled"
    gcc_installed = "gcc_installed"
    libgcc_compiled = "libgcc_compiled"
    libgcc_installed = "libgcc_installed"
    gcc_compiled_target = "gcc_compiled_target"
    gcc_installed_target = "gcc_installed_target"


def _check_stage(stage: str) -> None:
    assert stage and os.sep not in stage and stage[0] != ".", f'Illegal stage name "{stage}".'


class basic_stage_store:
    """阶段完成状态的存储接口

    标记一旦设置便不会被自动清除，只能由用户删除标记或工作目录来强制重新执行。
    """

    def has_completed(self, scope: str, stage: str) -> bool:
        """检查阶段是否已完成，该操作没有副作用

        Args:
            scope (str): 阶段所在的工作目录
            stage (str): 阶段名称
        """
        raise NotImplementedError

    def mark_completed(self, scope: str, stage: str) -> None:
        """记录阶段已完成，仅在阶段的外部进程成功退出后调用

        Args:
            scope (str): 阶段所在的工作目录
            stage (str): 阶段名称
        """
        raise NotImplementedError


class marker_stage_store(basic_stage_store):
    """使用工作目录中的点文件作为阶段标记"""

    @staticmethod
    def marker_path(scope: str, stage: str) -> str:
        _check_stage(stage)
        return os.path.join(scope, f".{stage}")

    def has_completed(self, scope: str, stage: str) -> bool:
        return os.path.exists(self.marker_path(scope, stage))

    def mark_completed(self, scope: str, stage: str) -> None:
        path = self.marker_path(scope, stage)
        common.mkdir(scope, False)
        common.touch(path)


class memory_stage_store(basic_stage_store):
    """在内存中记录阶段状态，不访问文件系统"""

    completed: set[tuple[str, str]]  # {(工作目录, 阶段名称)}

    def __init__(self, completed: set[tuple[str, str]] | None = None) -> None:
        self.completed = set()
        for scope, stage in completed or ():
            self.mark_completed(scope, stage)

    def has_completed(self, scope: str, stage: str) -> bool:
        _check_stage(stage)
        return (os.path.abspath(scope), stage) in self.completed

    def mark_completed(self, scope: str, stage: str) -> None:
        _check_stage(stage)
        self.completed.add((os.path.abspath(scope), stage))


assert __name__ != "__main__", "Import this file instead of running it directly."
