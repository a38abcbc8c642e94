"""Tests for topology and environment resolution."""
from __future__ import annotations

import os

import pytest

import common
import environment
from environment import resolve, resolve_env, topology


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "build, host, target, toolchain_type, canadian",
    [
        ("x86_64-linux-gnu", "x86_64-linux-gnu", "arm-none-eabi", "cross", False),
        ("x86_64-linux-gnu", "x86_64-linux-gnu", "x86_64-linux-gnu", "native", False),
        ("x86_64-linux-gnu", "x86_64-w64-mingw32", "arm-none-eabi", "canadian cross", True),
        ("x86_64-linux-gnu", "aarch64-linux-gnu", "aarch64-linux-gnu", "canadian", True),
    ],
)
def test_topology_type(build, host, target, toolchain_type, canadian):
    topo = topology(build, host, target)

    assert topo.toolchain_type == toolchain_type
    assert topo.is_canadian_cross is canadian


def test_topology_name():
    assert topology("x86_64-linux-gnu", "x86_64-linux-gnu", "arm-none-eabi").name == "x86_64-linux-gnu-host-arm-none-eabi-target-gcc"


def test_topology_rejects_malformed_triplet():
    with pytest.raises(AssertionError):
        topology("x86_64", "x86_64-linux-gnu", "arm-none-eabi")


def test_resolve_detects_build_and_defaults_host():
    topo = resolve("", None, "arm-none-eabi", detector=lambda: "aarch64-linux-gnu")

    assert topo == topology("aarch64-linux-gnu", "aarch64-linux-gnu", "arm-none-eabi")
    assert not topo.is_canadian_cross


def test_resolve_host_override_is_canadian():
    topo = resolve("x86_64-linux-gnu", "x86_64-w64-mingw32", "arm-none-eabi", detector=lambda: pytest.fail("should not detect"))

    assert topo.is_canadian_cross


def test_resolve_is_deterministic():
    first = resolve("x86_64-linux-gnu", "x86_64-w64-mingw32", "arm-none-eabi")
    second = resolve("x86_64-linux-gnu", "x86_64-w64-mingw32", "arm-none-eabi")

    assert first == second
    assert first.is_canadian_cross == second.is_canadian_cross


def test_resolve_requires_target():
    with pytest.raises(common.configuration_error):
        resolve("x86_64-linux-gnu", None, "")


def test_detect_build_triplet_falls_back(shell):
    shell.exit_code["gcc -dumpmachine"] = 127
    shell.output["cc -dumpmachine"] = "x86_64-pc-linux-gnu\n"

    assert environment.detect_build_triplet() == "x86_64-pc-linux-gnu"
    assert shell.command_list == ["gcc -dumpmachine", "cc -dumpmachine"]


def test_detect_build_triplet_prefers_config_guess(tmp_path, shell):
    config_guess = tmp_path / "binutils-2.43.1" / "config.guess"
    config_guess.parent.mkdir()
    config_guess.write_text("")
    shell.output["config.guess"] = "x86_64-pc-linux-gnu\n"

    assert environment.detect_build_triplet(str(config_guess)) == "x86_64-pc-linux-gnu"
    assert shell.command_list == [str(config_guess)]


def test_detect_build_triplet_skips_missing_config_guess(tmp_path, shell):
    shell.output["gcc -dumpmachine"] = "x86_64-linux-gnu\n"

    assert environment.detect_build_triplet(str(tmp_path / "config.guess")) == "x86_64-linux-gnu"
    assert shell.command_list == ["gcc -dumpmachine"]


def test_detect_build_triplet_fails(shell):
    shell.exit_code["dumpmachine"] = 127

    with pytest.raises(common.configuration_error):
        environment.detect_build_triplet()


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

cross_topo = topology("x86_64-linux-gnu", "x86_64-linux-gnu", "arm-none-eabi")
canadian_topo = topology("x86_64-linux-gnu", "x86_64-w64-mingw32", "arm-none-eabi")


def test_explicit_jobs_win(tmp_path, monkeypatch):
    monkeypatch.setattr(environment.psutil, "cpu_count", lambda: 16)

    assert resolve_env(3, None, cross_topo, str(tmp_path), str(tmp_path)).jobs == 3


def test_jobs_from_cpu_count(tmp_path, monkeypatch):
    monkeypatch.setattr(environment.psutil, "cpu_count", lambda: 16)

    assert resolve_env(None, None, cross_topo, str(tmp_path), str(tmp_path)).jobs == 16


def test_jobs_fall_back_to_one(tmp_path, monkeypatch):
    monkeypatch.setattr(environment.psutil, "cpu_count", lambda: None)

    assert resolve_env(None, None, cross_topo, str(tmp_path), str(tmp_path)).jobs == 1


def test_default_prefix_for_standard_cross(tmp_path):
    env = resolve_env(1, None, cross_topo, str(tmp_path / "build"), str(tmp_path / "home"))

    assert env.prefix == str(tmp_path / "home" / cross_topo.name)
    assert env.cross_prefix == env.prefix
    assert env.intermediate_prefix is None
    assert env.tmpinst_dir == str(tmp_path / "build" / "tmpinst")


def test_default_prefix_follows_current_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path / "someone"))

    env = resolve_env(1, None, cross_topo, str(tmp_path / "build"))

    assert env.prefix == str(tmp_path / "someone" / cross_topo.name)


def test_canadian_requires_prefix(tmp_path):
    with pytest.raises(common.configuration_error, match="PREFIX"):
        resolve_env(1, None, canadian_topo, str(tmp_path))


def test_canadian_uses_intermediate_prefix(tmp_path):
    env = resolve_env(1, str(tmp_path / "opt"), canadian_topo, str(tmp_path / "build"))

    assert env.prefix == str(tmp_path / "opt")
    assert env.intermediate_prefix == str(tmp_path / "build" / "cross_prefix")


def test_path_prefers_built_tools(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", "/usr/bin")

    env = resolve_env(1, str(tmp_path / "opt"), canadian_topo, str(tmp_path / "build"))

    assert env.path.split(os.pathsep) == [
        str(tmp_path / "build" / "cross_prefix" / "bin"),
        str(tmp_path / "opt" / "bin"),
        "/usr/bin",
    ]


def test_register_in_env(tmp_path, isolated_path):
    env = resolve_env(1, str(tmp_path / "opt"), cross_topo, str(tmp_path))

    env.register_in_env()

    assert os.environ["PATH"].split(os.pathsep)[0] == str(tmp_path / "opt" / "bin")


def test_invalid_jobs(tmp_path):
    with pytest.raises(AssertionError):
        environment.env_config(0, "/opt", "/opt", str(tmp_path), "")
