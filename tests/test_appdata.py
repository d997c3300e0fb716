"""Unit tests for ok_devio._appdata."""

import beartype.roar
import json
import pytest
import subprocess
import sys
import typeguard

import ok_devio
from ok_devio import _appdata


def test_app_data_dir_override(monkeypatch, tmp_path):
    monkeypatch.setenv("OK_DEVIO_DATA_DIR", str(tmp_path / "data"))
    assert ok_devio.app_data_dir() == tmp_path / "data"


def test_ensure_app_data_seeds_layout(tmp_path):
    root = ok_devio.ensure_app_data(tmp_path / "app")
    assert (root / "firmware").is_dir()
    assert (root / "partitions").is_dir()
    chips = json.loads((root / "chip.list.json").read_text())
    assert chips[0] == "ESP32"
    assert "ESP8266" in chips
    assert ok_devio.read_chip_list(root) == chips


def test_ensure_app_data_keeps_existing_chip_list(tmp_path):
    (tmp_path / "chip.list.json").write_text('["CUSTOM"]')
    ok_devio.ensure_app_data(tmp_path)
    assert ok_devio.read_chip_list(tmp_path) == ["CUSTOM"]


def test_bad_chip_list_falls_back(tmp_path):
    (tmp_path / "chip.list.json").write_text('{"not": "a list"}')
    assert ok_devio.read_chip_list(tmp_path) == list(_appdata.DEFAULT_CHIPS)
    assert ok_devio.read_chip_list(tmp_path / "missing") == list(
        _appdata.DEFAULT_CHIPS
    )


def test_file_info(tmp_path):
    path = tmp_path / "fw.bin"
    path.write_bytes(b"\x00" * 10)

    info = ok_devio.file_info(str(path))
    assert info.name == "fw.bin"
    assert info.is_file and not info.is_dir
    assert info.len == 10
    assert info.create_time > 0

    info = ok_devio.file_info(tmp_path)
    assert info.is_dir and not info.is_file

    info = ok_devio.file_info(str(tmp_path / "nope.bin"))
    assert info == ok_devio.FileInfo(name="nope.bin")


def test_reveal_in_file_manager(mocker, monkeypatch):
    popen = mocker.patch("subprocess.Popen")

    monkeypatch.setattr(sys, "platform", "linux")
    ok_devio.reveal_in_file_manager("/data/fw/app.bin")
    assert popen.call_args.args[0] == ["xdg-open", "/data/fw"]

    monkeypatch.setattr(sys, "platform", "darwin")
    ok_devio.reveal_in_file_manager("/data/fw/app.bin")
    assert popen.call_args.args[0] == ["open", "-R", "/data/fw/app.bin"]

    monkeypatch.setattr(sys, "platform", "win32")
    ok_devio.open_directory("C:\\data")
    assert popen.call_args.args[0] == ["explorer", "C:\\data"]


def test_launch_failure_is_logged(mocker, monkeypatch):
    mocker.patch("subprocess.Popen", side_effect=FileNotFoundError("xdg-open"))
    monkeypatch.setattr(sys, "platform", "linux")
    ok_devio.open_directory("/tmp")
    assert subprocess.Popen.called


def test_launch_helpers_check_argument_types(mocker):
    popen = mocker.patch("subprocess.Popen")
    errors = (typeguard.TypeCheckError, beartype.roar.BeartypeCallHintViolation)
    with pytest.raises(errors):
        ok_devio.reveal_in_file_manager(42)
    with pytest.raises(errors):
        ok_devio.open_directory(None)
    assert not popen.called
