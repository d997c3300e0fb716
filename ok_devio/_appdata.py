"""Application data directory bootstrap and file-manager helpers"""

import dataclasses
import json
import logging
import os
import pathlib
import subprocess
import sys

import platformdirs
import typeguard

log = logging.getLogger("ok_devio.appdata")

APP_NAME = "ok-devio"
SUBDIRECTORIES = ("firmware", "partitions")
CHIP_LIST_NAME = "chip.list.json"
DEFAULT_CHIPS = (
    "ESP32",
    "ESP32C2",
    "ESP32C3",
    "ESP32C6",
    "ESP32S2",
    "ESP32S3",
    "ESP32H2",
    "ESP8266",
)


@dataclasses.dataclass(frozen=True)
class FileInfo:
    name: str
    is_dir: bool = False
    is_file: bool = False
    len: int = 0
    create_time: int = 0


@typeguard.typechecked
def app_data_dir() -> pathlib.Path:
    if ov := os.getenv("OK_DEVIO_DATA_DIR"):
        return pathlib.Path(ov)
    return pathlib.Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


@typeguard.typechecked
def ensure_app_data(root: pathlib.Path | None = None) -> pathlib.Path:
    """Creates the data directory layout and seeds the chip list if missing"""

    root = root or app_data_dir()
    for sub in SUBDIRECTORIES:
        try:
            (root / sub).mkdir(parents=True, exist_ok=True)
        except OSError:
            log.warning("Can't create %s", root / sub, exc_info=True)

    chip_list = root / CHIP_LIST_NAME
    if not chip_list.exists():
        try:
            chip_list.write_text(json.dumps(list(DEFAULT_CHIPS)))
            log.debug("Seeded %s", chip_list)
        except OSError:
            log.warning("Can't write %s", chip_list, exc_info=True)

    return root


@typeguard.typechecked
def read_chip_list(root: pathlib.Path | None = None) -> list[str]:
    chip_list = (root or app_data_dir()) / CHIP_LIST_NAME
    try:
        chips = json.loads(chip_list.read_text())
    except (OSError, ValueError):
        log.warning("Can't read %s", chip_list, exc_info=True)
        return list(DEFAULT_CHIPS)
    if not isinstance(chips, list) or not all(isinstance(c, str) for c in chips):
        log.warning("%s is not a list of strings", chip_list)
        return list(DEFAULT_CHIPS)
    return chips


@typeguard.typechecked
def file_info(path: str | os.PathLike) -> FileInfo:
    """Metadata for path; a missing file yields an all-false FileInfo"""

    p = pathlib.Path(path)
    name = p.name or str(path)
    try:
        st = p.stat()
    except OSError:
        return FileInfo(name=name)

    created = getattr(st, "st_birthtime", None) or st.st_mtime
    return FileInfo(
        name=name,
        is_dir=p.is_dir(),
        is_file=p.is_file(),
        len=st.st_size,
        create_time=int(created),
    )


@typeguard.typechecked
def reveal_in_file_manager(path: str) -> None:
    """Shows the file selected in the platform file manager (fire-and-forget)"""

    if sys.platform.startswith("win"):
        _launch(["explorer", "/select,", path])
    elif sys.platform == "darwin":
        _launch(["open", "-R", path])
    else:
        _launch(["xdg-open", str(pathlib.Path(path).parent)])


@typeguard.typechecked
def open_directory(path: str) -> None:
    if sys.platform.startswith("win"):
        _launch(["explorer", path])
    elif sys.platform == "darwin":
        _launch(["open", path])
    else:
        _launch(["xdg-open", path])


def _launch(command: list[str]) -> None:
    try:
        subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        log.debug("Launched %s", command)
    except OSError:
        log.warning("Can't run %s", command[0], exc_info=True)
