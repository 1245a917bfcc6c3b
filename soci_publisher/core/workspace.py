"""Scratch workspace manager.

Each invocation gets its own unpredictably named directory under a shared
parent (``/tmp`` by default). The directory is exclusively owned by the
invocation and removed unconditionally when it ends.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from types import TracebackType

from soci_publisher.errors import ResourceError

logger = logging.getLogger(__name__)


def available_space(parent: Path) -> int:
    """Free bytes on the filesystem holding *parent*.

    Informational only: a failure to stat returns 0 and never blocks
    provisioning.
    """
    try:
        return shutil.disk_usage(parent).free
    except OSError as exc:
        logger.warning("Could not query free space of %s: %s", parent, exc)
        return 0


def provision(parent: Path, prefix: str = "soci-") -> Path:
    """Create a new uniquely named subdirectory of *parent*."""
    try:
        return Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    except OSError as exc:
        raise ResourceError(f"Cannot create workspace under {parent}: {exc}") from exc


def teardown(workspace: Path) -> None:
    """Recursively remove *workspace*.

    Idempotent. Runs as a cleanup action, so failures are logged and never
    raised.
    """
    logger.info("Removing all files in %s", workspace)
    try:
        shutil.rmtree(workspace)
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.error("Clean up error for %s: %s", workspace, exc)


class ScratchWorkspace:
    """Context manager owning one provisioned workspace directory.

    Parameters
    ----------
    parent:
        Directory under which the workspace is created.
    prefix:
        Name prefix; the random suffix keeps concurrent invocations apart.
    """

    def __init__(self, parent: Path, prefix: str = "soci-") -> None:
        self.parent = Path(parent)
        self.prefix = prefix
        self.path: Path | None = None

    def __enter__(self) -> Path:
        free = available_space(self.parent)
        logger.info("There are %d bytes of free space in %s", free, self.parent)
        logger.info("Creating a directory to store images and SOCI artifacts")
        self.path = provision(self.parent, self.prefix)
        logger.info("The path to the workspace: %s", self.path)
        return self.path

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self.path is not None:
            teardown(self.path)
