"""A single component driven through fetch, patch, build and package."""
from __future__ import annotations

import os

import pytest

import download
import packer
from download_source import source_component
from pipeline import pipeline_executor, stage_graph, stage_step
from stage_tracker import marker_stage_store


alpha = source_component("alpha", "1.0", "https://example.org/{archive}")


def _run_alpha(work_dir: str, patch_dir: str, repo_dir: str) -> pipeline_executor:
    source_dir = download.prepare_component(alpha, work_dir, patch_dir)
    payload_dir = os.path.join(work_dir, "tmpinst", "alpha")
    descriptor = packer.package_descriptor("alpha", alpha.version, "", (), "toolchains", "https://example.org", "alpha", payload_dir)

    graph = stage_graph()
    graph.component(
        "alpha",
        source_dir,
        [
            ("configured", ["./configure --prefix=/usr"]),
            ("compiled", ["make -j 2"]),
            ("installed", [f"make install DESTDIR={payload_dir}"]),
        ],
    )
    graph.add(
        stage_step("alpha", "packaged", source_dir, action=lambda: packer.package(descriptor, repo_dir, packer.tar_archiver(), "x86_64"))
    )
    executor = pipeline_executor(marker_stage_store())
    executor.run(graph)
    return executor


@pytest.fixture
def alpha_dirs(tmp_path):
    patch_dir = tmp_path / "patches"
    patch_dir.mkdir()
    (patch_dir / "0001-build-alpha-1.0.patch").write_text("")
    return str(tmp_path / "work"), str(patch_dir), str(tmp_path / "repo")


def test_alpha_from_empty_working_directory(shell, alpha_dirs):
    work_dir, patch_dir, repo_dir = alpha_dirs

    _run_alpha(work_dir, patch_dir, repo_dir)

    assert os.path.isfile(os.path.join(work_dir, "alpha-1.0.tar.gz"))
    source_dir = os.path.join(work_dir, "alpha-1.0")
    assert os.path.isdir(source_dir)
    assert os.path.isfile(os.path.join(source_dir, ".patched"))
    for stage in ("configured", "compiled", "installed", "packaged"):
        assert os.path.isfile(os.path.join(source_dir, f".{stage}"))
    assert os.listdir(repo_dir) == ["alpha_1.0_x86_64.pkg"]

    programs = [command.split()[0] for command in shell.command_list]
    assert programs == ["wget", "tar", "patch", "./configure", "make", "make", "tar"]


def test_alpha_rerun_invokes_nothing(shell, alpha_dirs):
    work_dir, patch_dir, repo_dir = alpha_dirs
    _run_alpha(work_dir, patch_dir, repo_dir)
    shell.command_list.clear()

    executor = _run_alpha(work_dir, patch_dir, repo_dir)

    assert shell.command_list == []
    assert executor.executed == []
    assert len(executor.skipped) == 4
