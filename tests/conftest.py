from __future__ import annotations

import os
import shlex

import pytest

import common
import download


# ---------------------------------------------------------------------------
# Fake shell
# ---------------------------------------------------------------------------


class fake_shell:
    """Stand-in for common.run_command.

    Records every command and simulates the filesystem effects of the
    external programs the pipeline relies on (download, unpack, install
    into DESTDIR, archive).
    """

    def __init__(self) -> None:
        self.command_list: list[str] = []
        self.cwd_list: list[str | None] = []
        self.exit_code: dict[str, int] = {}  # {command substring: exit code}
        self.output: dict[str, str] = {}  # {command substring: captured output}
        self.program_list: set[str] = {"wget", "curl", "tar", "patch", "make", "sudo", "su", "dpkg"}
        self.install_file_list: list[str] = ["usr/bin/tool"]

    def _lookup(self, table: dict, command: str, default):
        for key, value in table.items():
            if key in command:
                return value
        return default

    def __call__(self, command, ignore_error=False, capture=False, echo=True, cwd=None, env=None, dry_run=None):
        self.command_list.append(command)
        self.cwd_list.append(cwd)
        if dry_run or dry_run is None and common.command_dry_run.get():
            return None
        exit_code = self._lookup(self.exit_code, command, 0)
        output = self._lookup(self.output, command, "")
        if exit_code == 0:
            self.simulate(command)
        result = common.command_result(command, exit_code, output)
        if exit_code and not ignore_error:
            raise common.command_failed(result)
        return result

    def simulate(self, command: str) -> None:
        match shlex.split(command):
            case ["wget", "-c", "-O", path, _] | ["curl", "-L", "-C", "-", "-o", path, _]:
                open(path, "w").close()
            case ["tar", option, archive, "-C", parent] if option.startswith("-x"):
                name = os.path.basename(archive)
                for suffix in download.unpack_option_list:
                    if name.endswith(suffix):
                        name = name.removesuffix(suffix)
                        break
                os.makedirs(os.path.join(parent, name), exist_ok=True)
            case ["tar", "-czf", output, "-C", _, "."] | ["dpkg", "-b", _, output]:
                open(output, "w").close()
            case ["make", *_, destdir] if destdir.startswith("DESTDIR="):
                payload_dir = destdir.removeprefix("DESTDIR=")
                for file in self.install_file_list:
                    path = os.path.join(payload_dir, file)
                    os.makedirs(os.path.dirname(path), exist_ok=True)
                    with open(path, "w") as f:
                        f.write("payload")
            case _:
                pass

    def commands_with(self, text: str) -> list[str]:
        return [command for command in self.command_list if text in command]


@pytest.fixture
def shell(monkeypatch) -> fake_shell:
    fake = fake_shell()
    monkeypatch.setattr(common, "run_command", fake)
    monkeypatch.setattr(common, "command_exists", lambda command: command in fake.program_list)
    return fake


@pytest.fixture(autouse=True)
def reset_dry_run():
    common.command_dry_run.set(False)
    yield
    common.command_dry_run.set(False)


@pytest.fixture
def isolated_path(monkeypatch):
    """PATH is modified by the environment resolver, restore it afterwards."""
    monkeypatch.setenv("PATH", os.environ.get("PATH", ""))
