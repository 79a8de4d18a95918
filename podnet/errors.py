"""Error types raised throughout the package."""

from __future__ import annotations

import json
import os


class NetavarkError(Exception):
    """Base error for every failure reported by the network tooling."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def wrap(self, context: str) -> "NetavarkError":
        """Return a new error whose message is prefixed with ``context``."""
        wrapped = NetavarkError(f"{context}: {self}")
        wrapped.__cause__ = self
        return wrapped

    def to_json(self) -> str:
        """Serialise the error as the JSON object printed to callers."""
        return json.dumps({"error": str(self)})


class NetlinkError(NetavarkError):
    """Error returned by the kernel in answer to a netlink request."""

    def __init__(self, errno_code: int, message: str | None = None) -> None:
        reason = message if message is not None else os.strerror(errno_code)
        super().__init__(f"Netlink error: {reason} (os error {errno_code})")
        self.errno_code = errno_code
        self.reason = reason