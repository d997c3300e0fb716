import json
import logging
import os
import pathlib

import natsort
from serial.tools import list_ports

log = logging.getLogger("ok_devio.scanning")


def list_serial_ports() -> list[str]:
    """Returns the serial port names on this system (empty if enumeration fails)"""

    if ov := os.getenv("OK_DEVIO_SCAN_OVERRIDE"):
        try:
            ov_data = json.loads(pathlib.Path(ov).read_text())
            if not isinstance(ov_data, (list, dict)) or not all(
                isinstance(name, str) for name in ov_data
            ):
                raise ValueError("Override data is not a list of port names")
        except (OSError, ValueError):
            log.warning("Can't read $OK_DEVIO_SCAN_OVERRIDE %s", ov, exc_info=True)
            return []

        names = list(ov_data)
        log.debug("$OK_DEVIO_SCAN_OVERRIDE (%s): %d ports", ov, len(names))
    else:
        try:
            names = [p.device for p in list_ports.comports()]
        except OSError:
            log.warning("Can't enumerate serial ports", exc_info=True)
            return []

    names = natsort.natsorted(names, alg=natsort.ns.PATH)
    log.debug("Found %d ports", len(names))
    return names
