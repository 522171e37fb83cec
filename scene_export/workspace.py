"""Per-job scratch directories under the configured temp root."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from scene_export.errors import AllocationError

LOGGER = logging.getLogger(__name__)


class WorkspaceManager:
    """Allocate and reclaim one exclusively owned directory per export job."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def allocate(self, job_id: str) -> Path:
        """Create a fresh, empty directory for ``job_id``.

        Raises:
            AllocationError: storage unavailable, or the directory already exists
        """

        path = self.root / job_id
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise AllocationError(f"Workspace root {self.root} is unavailable: {exc}") from exc
        try:
            path.mkdir(exist_ok=False)
        except FileExistsError as exc:
            raise AllocationError(f"Workspace for job {job_id} already exists") from exc
        except OSError as exc:
            raise AllocationError(f"Unable to allocate workspace for job {job_id}: {exc}") from exc
        LOGGER.debug("Created export workspace", extra={"workspace": str(path)})
        return path

    def reclaim(self, path: Path) -> bool:
        """Delete ``path`` recursively.

        Returns True when this call removed the directory. An absent directory
        is a no-op and other failures are logged, never raised.
        """

        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            LOGGER.warning("Failed to reclaim workspace %s: %s", path, exc)
            return False
        LOGGER.debug("Cleaned up export workspace", extra={"workspace": str(path)})
        return True

    def purge_orphans(self) -> int:
        """Remove workspaces left behind by a previous process."""

        if not self.root.is_dir():
            return 0
        removed = 0
        for entry in self.root.iterdir():
            if entry.is_dir() and self.reclaim(entry):
                removed += 1
        if removed:
            LOGGER.info("Removed %d orphaned export workspaces from %s", removed, self.root)
        return removed
