"""Framework for writing network plugins driven over stdin and stdout."""

from __future__ import annotations

import abc
import json
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Optional

from podnet.errors import NetavarkError
from podnet.types import Network, NetworkPluginExec, StatusBlock

API_VERSION = "1.0.0"


@dataclass
class Info:
    """Information a plugin reports about itself."""

    version: str
    api_version: str
    extra_info: Optional[dict[str, str]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "api_version": self.api_version,
            **(self.extra_info or {}),
        }


class Plugin(abc.ABC):
    """The operations a network plugin provides."""

    @abc.abstractmethod
    def create(self, network: Network) -> Network:
        """Validate and complete a network configuration."""

    @abc.abstractmethod
    def setup(self, netns: str, opts: NetworkPluginExec) -> StatusBlock:
        """Set up the network configuration inside ``netns``."""

    @abc.abstractmethod
    def teardown(self, netns: str, opts: NetworkPluginExec) -> None:
        """Tear down the network configuration inside ``netns``."""


def _write(data: Any) -> None:
    json.dump(data, sys.stdout)
    sys.stdout.flush()


class PluginExec:
    """Dispatches the command line of a plugin program to a Plugin."""

    def __init__(self, plugin: Plugin, info: Info) -> None:
        self.plugin = plugin
        self.info = info

    def exec(self, argv: Optional[Sequence[str]] = None) -> None:
        """Run the subcommand in ``argv`` (program name first).

        On failure the error is written to stdout as JSON and the process
        exits with status 1.
        """
        args = list(sys.argv if argv is None else argv)
        try:
            self._run(args)
        except Exception as exc:  # any plugin failure is reported to the caller
            _write({"error": str(exc)})
            sys.exit(1)

    def _run(self, args: list[str]) -> None:
        if not args:
            raise NetavarkError("zero arguments given")
        command = args[1] if len(args) > 1 else None
        if command is None or command == "info":
            _write(self.info.to_dict())
        elif command == "create":
            network = Network.from_dict(json.load(sys.stdin))
            network = self.plugin.create(network)
            _write(network.to_dict())
        elif command == "setup":
            netns = self._netns(args)
            opts = NetworkPluginExec.from_dict(json.load(sys.stdin))
            status = self.plugin.setup(netns, opts)
            _write(status.to_dict())
        elif command == "teardown":
            netns = self._netns(args)
            opts = NetworkPluginExec.from_dict(json.load(sys.stdin))
            self.plugin.teardown(netns, opts)
        else:
            raise NetavarkError(f"unknown subcommand: {command}")

    @staticmethod
    def _netns(args: list[str]) -> str:
        if len(args) < 3:
            raise NetavarkError("netns path argument is missing")
        return args[2]