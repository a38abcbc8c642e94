import enum
import graphlib
import heapq
import os
import re
import shlex
import typing
import common
from collections.abc import Callable, Iterable
from stage_tracker import basic_stage_store

# runner(command, cwd, capture) -> 执行结果，dry run时为None
runner_type: typing.TypeAlias = Callable[[str, str, bool], common.command_result | None]

# 判断安装失败是否由权限不足引起
permission_error_pattern: typing.Final[re.Pattern[str]] = re.compile(
    r"permission denied|operation not permitted|EACCES|EPERM|read-only file system", re.IGNORECASE
)


class stage_state(enum.StrEnum):
    pending = "pending"
    running = "running"
    done = "done"
    failed = "failed"


class stage_step:
    """流水线中的一个阶段：在工作目录中依次运行若干命令和一个可选的回调，成功后设置阶段标记"""

    component: str  # 组件名，同时是工作目录名
    stage: str  # 阶段标记名
    scope: str  # 工作目录
    commands: list[str]  # 依次运行的外部命令
    action: Callable[[], None] | None  # 命令全部成功后运行的回调，失败时抛出toolchain_error
    privileged: bool  # 是否为安装命令，安装命令在权限不足时会尝试提权
    after: list[str]  # 依赖的阶段

    def __init__(
        self,
        component: str,
        stage: str,
        scope: str,
        commands: Iterable[str] = (),
        action: Callable[[], None] | None = None,
        privileged: bool = False,
        after: Iterable[str] = (),
    ) -> None:
        self.component = component
        self.stage = stage
        self.scope = scope
        self.commands = list(commands)
        self.action = action
        self.privileged = privileged
        self.after = list(after)

    @property
    def key(self) -> str:
        return f"{self.component}/{self.stage}"

    def __repr__(self) -> str:
        return f"stage_step({self.key!r})"


class stage_graph:
    """阶段的有向无环图，同一组件内的阶段按声明顺序依次依赖"""

    steps: dict[str, stage_step]  # {阶段键: 阶段}，保持声明顺序
    last_step: dict[str, str]  # {组件名: 该组件最后声明的阶段键}

    def __init__(self) -> None:
        self.steps = {}
        self.last_step = {}

    def add(self, step: stage_step) -> stage_step:
        """添加阶段，自动依赖同一组件中上一个声明的阶段

        Args:
            step (stage_step): 要添加的阶段

        Returns:
            stage_step: 添加的阶段
        """
        if step.key in self.steps:
            raise common.configuration_error(f"Duplicate stage {step.key}.")
        previous = self.last_step.get(step.component)
        if previous and previous not in step.after:
            step.after.insert(0, previous)
        self.steps[step.key] = step
        self.last_step[step.component] = step.key
        return step

    def component(
        self, component: str, scope: str, stage_list: Iterable[tuple[str, list[str]]], privileged: Iterable[str] = (), after: Iterable[str] = ()
    ) -> list[stage_step]:
        """批量添加一个组件的阶段

        Args:
            component (str): 组件名
            scope (str): 工作目录
            stage_list (Iterable[tuple[str, list[str]]]): [(阶段名, 命令列表)]
            privileged (Iterable[str], optional): 需要提权回退的阶段名. 默认为空.
            after (Iterable[str], optional): 组件第一个阶段额外依赖的阶段. 默认为空.
        """
        privileged, after = set(privileged), list(after)
        step_list: list[stage_step] = []
        for stage, commands in stage_list:
            step = stage_step(component, stage, scope, commands, privileged=stage in privileged, after=after if not step_list else ())
            step_list.append(self.add(step))
        return step_list

    def order(self) -> list[stage_step]:
        """对阶段进行拓扑排序，多个阶段同时就绪时按声明顺序执行

        Raises:
            configuration_error: 依赖不存在或存在环

        Returns:
            list[stage_step]: 执行顺序
        """
        index_list = {key: index for index, key in enumerate(self.steps)}
        sorter: graphlib.TopologicalSorter[str] = graphlib.TopologicalSorter()
        for key, step in self.steps.items():
            for dependency in step.after:
                if dependency not in self.steps:
                    raise common.configuration_error(f"Stage {key} depends on unknown stage {dependency}.")
            sorter.add(key, *step.after)
        try:
            sorter.prepare()
        except graphlib.CycleError as e:
            raise common.configuration_error(f"Stage dependency cycle: {' -> '.join(e.args[1])}")

        ready: list[tuple[int, str]] = []
        result: list[stage_step] = []
        while sorter.is_active():
            for key in sorter.get_ready():
                heapq.heappush(ready, (index_list[key], key))
            _, key = heapq.heappop(ready)
            result.append(self.steps[key])
            sorter.done(key)
        return result


def default_runner(command: str, cwd: str, capture: bool) -> common.command_result | None:
    """在工作目录中运行命令，返回执行结果而不抛出异常"""
    result = common.run_command(command, ignore_error=True, capture=capture, cwd=cwd)
    if capture and result and result.output:
        print(result.output, end="" if result.output.endswith("\n") else "\n")
    return result


def is_permission_error(result: common.command_result) -> bool:
    return bool(permission_error_pattern.search(result.output))


def with_privilege_escalation(runner: runner_type, escalate_any_failure: bool = False) -> runner_type:
    """为安装命令添加提权回退：先直接安装，失败后依次尝试sudo和su

    Args:
        runner (runner_type): 运行命令的函数
        escalate_any_failure (bool, optional): 是否在任何失败时都尝试提权，否则只在权限不足时提权. 默认只在权限不足时提权.

    Returns:
        runner_type: 带提权回退的运行函数，提权后仍失败时抛出privilege_escalation_failed
    """

    def escalated_runner(command: str, cwd: str, capture: bool) -> common.command_result | None:
        result = runner(command, cwd, True)
        if result is None or result.ok:
            return result
        if not escalate_any_failure and not is_permission_error(result):
            return result

        print(f'[toolchains] Install command "{command}" failed, retrying with elevated privilege.')
        # 保留PATH以便提权后仍能找到之前阶段构建的工具
        env_command = f"env PATH={shlex.quote(os.environ.get('PATH', ''))} {command}"
        escalated_list: list[str] = []
        if common.command_exists("sudo"):
            escalated_list.append(f"sudo {env_command}")
        if common.command_exists("su"):
            escalated_list.append(f"su -c {shlex.quote(env_command)}")
        for escalated_command in escalated_list:
            result = runner(escalated_command, cwd, capture)
            if result is None or result.ok:
                return result
        raise common.privilege_escalation_failed(command, result.exit_code)

    return escalated_runner


class pipeline_executor:
    """按拓扑顺序执行阶段，已完成的阶段直接跳过，任一阶段失败时立即终止"""

    store: basic_stage_store  # 阶段状态存储
    runner: runner_type  # 运行普通命令
    install_runner: runner_type  # 运行安装命令
    state: dict[str, stage_state]  # {阶段键: 状态}
    executed: list[str]  # 本次实际执行的阶段
    skipped: list[str]  # 本次跳过的阶段
    last_step: stage_step | None  # 最后尝试的阶段

    def __init__(
        self,
        store: basic_stage_store,
        runner: runner_type | None = None,
        escalate_any_failure: bool = False,
    ) -> None:
        self.store = store
        self.runner = runner or default_runner
        self.install_runner = with_privilege_escalation(self.runner, escalate_any_failure)
        self.state = {}
        self.executed = []
        self.skipped = []
        self.last_step = None

    def run_step(self, step: stage_step) -> None:
        """执行单个阶段

        Args:
            step (stage_step): 要执行的阶段

        Raises:
            stage_failed: 外部命令返回非0值
            toolchain_error: 回调失败、提权失败或文件操作失败
        """
        self.last_step = step
        if self.store.has_completed(step.scope, step.stage):
            self.state[step.key] = stage_state.done
            self.skipped.append(step.key)
            print(f"[toolchains] Skip {step.key}, already completed.")
            return

        self.state[step.key] = stage_state.running
        print(f"[toolchains] Running {step.key} in {step.scope}.")
        try:
            # 工作目录在首次需要时创建
            common.mkdir(step.scope, False)
            runner = self.install_runner if step.privileged else self.runner
            for command in step.commands:
                result = runner(command, step.scope, False)
                if result is not None and not result.ok:
                    raise common.stage_failed(step.component, step.stage, result.exit_code, step.scope)
            if step.action:
                step.action()
        except common.toolchain_error:
            self.state[step.key] = stage_state.failed
            print(f"[toolchains] Stage {step.key} failed.")
            raise
        except OSError as e:
            self.state[step.key] = stage_state.failed
            print(f"[toolchains] Stage {step.key} failed.")
            raise common.toolchain_error(f'Stage {step.key} failed in "{step.scope}": {e}') from e

        self.store.mark_completed(step.scope, step.stage)
        self.state[step.key] = stage_state.done
        self.executed.append(step.key)
        print(f"[toolchains] Stage {step.key} done.")

    def run(self, graph: stage_graph) -> None:
        """按拓扑顺序执行所有阶段

        Args:
            graph (stage_graph): 阶段图
        """
        order = graph.order()
        for step in order:
            self.state[step.key] = stage_state.pending
        for step in order:
            self.run_step(step)


assert __name__ != "__main__", "Import this file instead of running it directly."
