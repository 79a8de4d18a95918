"""A network driver that runs an external plugin program."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, Optional

from podnet.driver import DriverInfo, NetworkDriver
from podnet.errors import NetavarkError
from podnet.types import StatusBlock


class PluginDriver(NetworkDriver):
    """Delegates setup and teardown to an executable plugin."""

    def __init__(self, path: Any, info: DriverInfo) -> None:
        self.path = Path(path)
        self.info = info

    def validate(self) -> None:
        # The plugin API has no validate call; running the plugin only to
        # validate would cost an extra process start for little gain.
        return None

    def setup(self, netlink_sockets: tuple[Any, Any]) -> tuple[StatusBlock, None]:
        try:
            status = self._exec_plugin(setup=True)
        except NetavarkError as exc:
            raise exc.wrap(self._failure_context()) from exc
        assert status is not None
        return status, None

    def teardown(self, netlink_sockets: tuple[Any, Any]) -> None:
        try:
            self._exec_plugin(setup=False)
        except NetavarkError as exc:
            raise exc.wrap(self._failure_context()) from exc

    def network_name(self) -> str:
        return self.info.network.name

    def _failure_context(self) -> str:
        return f'plugin "{self.path.name}" failed'

    def _input(self) -> dict[str, Any]:
        mappings = self.info.port_mappings
        return {
            "container_id": self.info.container_id,
            "container_name": self.info.container_name,
            "port_mappings": None if mappings is None else [m.to_dict() for m in mappings],
            "network": self.info.network.to_dict(),
            "network_options": self.info.per_network_opts.to_dict(),
        }

    def _exec_plugin(self, setup: bool) -> Optional[StatusBlock]:
        payload = json.dumps(self._input()).encode()
        command = [str(self.path), "setup" if setup else "teardown", self.info.netns_path]
        try:
            proc = subprocess.Popen(command, stdin=subprocess.PIPE, stdout=subprocess.PIPE)
        except OSError as exc:
            raise NetavarkError(str(exc)) from exc
        with proc:
            try:
                output, _ = proc.communicate(payload)
            except OSError as exc:
                proc.kill()
                proc.wait()
                raise NetavarkError(str(exc)).wrap("read into buffer") from exc
        rc = proc.returncode
        if rc < 0:
            raise NetavarkError("plugin killed by signal")
        if rc == 0:
            if not setup:
                return None
            try:
                return StatusBlock.from_dict(json.loads(output))
            except (ValueError, KeyError, TypeError) as exc:
                raise NetavarkError(str(exc)) from exc
        try:
            message = json.loads(output)["error"]
        except (ValueError, KeyError, TypeError) as exc:
            raise NetavarkError(str(exc)) from exc
        raise NetavarkError(f"exit code {rc}, message: {message}")