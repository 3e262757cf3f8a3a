"""Directory snapshots used to spot session files created after spawn."""

import logging
import os
import time
from pathlib import Path

from agentmeter.models import FileInfo, FileSnapshot

logger = logging.getLogger(__name__)


class FileSnapshotter:
    """Takes recursive directory snapshots and diffs them."""

    def snapshot(self, dir_path: Path) -> FileSnapshot:
        dir_path = Path(dir_path)
        files: list[FileInfo] = []
        if not dir_path.exists():
            logger.debug(f"Snapshot directory does not exist: {dir_path}")
            return FileSnapshot(timestamp=time.time(), files=files)

        for root, _dirs, names in os.walk(dir_path):
            for name in names:
                full_path = Path(root) / name
                try:
                    stat = full_path.stat()
                except OSError:
                    # Deleted between listing and stat, or unreadable
                    continue
                files.append(FileInfo(
                    path=str(full_path),
                    size=stat.st_size,
                    created_at=getattr(stat, "st_birthtime", stat.st_ctime),
                    modified_at=stat.st_mtime,
                ))

        return FileSnapshot(timestamp=time.time(), files=files)

    def diff(self, before: FileSnapshot, after: FileSnapshot) -> list[FileInfo]:
        """Files in after that are new, or were modified since before."""
        changed = []
        before_by_path = {f.path: f for f in before.files}
        for info in after.files:
            previous = before_by_path.get(info.path)
            if previous is None or info.modified_at > previous.modified_at:
                changed.append(info)
        logger.debug(f"Snapshot diff: {len(changed)} new or modified files")
        return changed
