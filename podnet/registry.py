"""Selection of the driver that handles a network."""

from __future__ import annotations

import os
import stat
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from podnet import constants
from podnet.driver import DriverInfo, NetworkDriver
from podnet.errors import NetavarkError
from podnet.plugin_driver import PluginDriver
from podnet.vlan import Vlan


def get_network_driver(
    info: DriverInfo,
    plugin_directories: Optional[Sequence[os.PathLike | str]] = None,
) -> NetworkDriver:
    """Return the driver for ``info.network``.

    Built-in drivers come first; otherwise the first executable file named
    after the driver in one of ``plugin_directories`` is used.
    """
    name = info.network.driver
    if name in (constants.DRIVER_IPVLAN, constants.DRIVER_MACVLAN):
        return Vlan(info)

    for directory in plugin_directories or []:
        path = Path(directory) / name
        try:
            meta = path.stat()
        except OSError:
            continue
        if stat.S_ISREG(meta.st_mode) and meta.st_mode & 0o111:
            return PluginDriver(path, info)

    raise NetavarkError(f'unknown network driver "{name}"')