"""Tests for package metadata and archiving."""
from __future__ import annotations

import os
import stat

import pytest

import common
import packer


def _descriptor(payload_dir, **kwargs) -> packer.package_descriptor:
    field_list = {
        "name": "arm-none-eabi-gcc",
        "version": "14.2.0",
        "subversion": "-1",
        "depends": ("arm-none-eabi-binutils", "arm-none-eabi-newlib"),
        "maintainer": "toolchains",
        "homepage": "https://gcc.gnu.org/",
        "description": "The GNU Compiler Collection for arm-none-eabi",
        "payload_dir": str(payload_dir),
    }
    field_list.update(kwargs)
    return packer.package_descriptor(**field_list)


def _write(path, size: int) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as file:
        file.write(b"x" * size)


def test_file_stem_is_deterministic(tmp_path):
    assert _descriptor(tmp_path).file_stem("x86_64") == "arm-none-eabi-gcc_14.2.0-1_x86_64"
    assert _descriptor(tmp_path).file_stem("x86_64") == _descriptor(tmp_path).file_stem("x86_64")


@pytest.mark.parametrize("size, expected", [(0, 0), (1, 1), (1024, 1), (1025, 2)])
def test_payload_size_rounds_up(tmp_path, size, expected):
    if size:
        _write(str(tmp_path / "usr" / "bin" / "gcc"), size)

    assert packer.get_payload_size(str(tmp_path)) == expected


def test_payload_size_sums_recursively(tmp_path):
    _write(str(tmp_path / "a"), 1000)
    _write(str(tmp_path / "b" / "c" / "d"), 1000)

    assert packer.get_payload_size(str(tmp_path)) == 2


def test_metadata_record(tmp_path):
    metadata = packer.make_metadata(_descriptor(tmp_path), "amd64", 42)

    assert list(metadata) == ["Package", "Architecture", "Installed-Size", "Maintainer", "Version", "Homepage", "Depends", "Description"]
    assert metadata["Version"] == "14.2.0-1"
    assert metadata["Installed-Size"] == "42"
    assert metadata["Depends"] == "arm-none-eabi-binutils, arm-none-eabi-newlib"
    assert packer.format_metadata(metadata).splitlines()[0] == "Package: arm-none-eabi-gcc"


def test_package_deb(tmp_path, shell):
    payload_dir = tmp_path / "tmpinst" / "arm-none-eabi-gcc"
    _write(str(payload_dir / "opt" / "bin" / "arm-none-eabi-gcc"), 10)
    repo_dir = tmp_path / "repo"

    path = packer.package(_descriptor(payload_dir), str(repo_dir), packer.dpkg_archiver(), "amd64")

    assert path == str(repo_dir / "arm-none-eabi-gcc_14.2.0-1_amd64.deb")
    assert os.path.isfile(path)
    control_path = payload_dir / "DEBIAN" / "control"
    assert "Installed-Size: 1\n" in control_path.read_text()
    assert stat.S_IMODE(os.stat(control_path).st_mode) == 0o644
    assert stat.S_IMODE(os.stat(payload_dir / "DEBIAN").st_mode) == 0o755
    assert shell.command_list[0].startswith("dpkg -b ")


def test_package_tar(tmp_path, shell):
    payload_dir = tmp_path / "payload"
    _write(str(payload_dir / "bin" / "tool"), 10)

    path = packer.package(_descriptor(payload_dir, subversion=""), str(tmp_path / "repo"), packer.tar_archiver(), "x86_64")

    assert os.path.basename(path) == "arm-none-eabi-gcc_14.2.0_x86_64.pkg"
    assert (payload_dir / ".PKGINFO").read_text().startswith("Package: arm-none-eabi-gcc\n")
    assert shell.command_list[0].startswith("tar -czf ")


def test_package_empty_payload(tmp_path, shell):
    (tmp_path / "payload" / "usr").mkdir(parents=True)

    with pytest.raises(common.packaging_failed):
        packer.package(_descriptor(tmp_path / "payload"), str(tmp_path / "repo"), packer.tar_archiver())
    with pytest.raises(common.packaging_failed):
        packer.package(_descriptor(tmp_path / "missing"), str(tmp_path / "repo"), packer.tar_archiver())
    assert shell.command_list == []


def test_package_archiver_failure(tmp_path, shell):
    _write(str(tmp_path / "payload" / "bin" / "tool"), 10)
    shell.exit_code["dpkg -b"] = 2

    with pytest.raises(common.packaging_failed, match="errno=2"):
        packer.package(_descriptor(tmp_path / "payload"), str(tmp_path / "repo"), packer.dpkg_archiver(), "amd64")


def test_package_dry_run(tmp_path, shell):
    common.command_dry_run.set(True)

    path = packer.package(_descriptor(tmp_path / "missing"), str(tmp_path / "repo"), packer.dpkg_archiver(), "amd64")

    assert path.endswith("arm-none-eabi-gcc_14.2.0-1_amd64.deb")
    assert shell.command_list == []
    assert not (tmp_path / "repo").exists()
