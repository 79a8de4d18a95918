"""Sanity checks on inputs before the network is touched."""

from __future__ import annotations

import logging
import os

from podnet.errors import NetavarkError

logger = logging.getLogger(__name__)


def ns_checks(path: str | os.PathLike) -> None:
    """Check that the network namespace path can be opened and inspected."""
    logger.debug("Validating network namespace...")
    try:
        fd = os.open(path, os.O_RDONLY)
        try:
            os.fstat(fd)
        finally:
            os.close(fd)
    except OSError as exc:
        raise NetavarkError(str(exc)) from exc