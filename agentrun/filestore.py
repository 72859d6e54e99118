"""
File store used for checkpoint snapshots and rollback replay.

WHAT THIS FILE DOES:
-------------------
Gives the Checkpoint Manager a small read/write/delete/exists interface over
a project's files, so rollback can be tested against a temp directory and
pointed at any backend later.

All paths are relative to the store's root. LocalFileStore refuses any path
that would resolve outside it (../ tricks, absolute paths, symlinks out).
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable

from .schemas import FileSnapshot

logger = logging.getLogger(__name__)


class FileStore(ABC):
    """Base class for file backends."""

    @abstractmethod
    def read(self, path: str) -> str:
        """Read a file. Raises FileNotFoundError if it does not exist."""
        pass

    @abstractmethod
    def write(self, path: str, content: str) -> None:
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        """Delete a file. Deleting a missing file is a no-op."""
        pass

    @abstractmethod
    def exists(self, path: str) -> bool:
        pass


class LocalFileStore(FileStore):
    """
    FileStore over a directory on local disk.

    Usage:
        files = LocalFileStore(Path("./my-project"))
        files.write("src/main.py", "print('hello')")
        files.read("src/main.py")
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve_path(self, path: str) -> Path:
        """
        Resolve a path within the root, preventing directory traversal.

        Raises:
            ValueError: If path attempts to escape the root
        """
        path = path.lstrip("/")
        full_path = (self.root / path).resolve()
        try:
            full_path.relative_to(self.root)
        except ValueError:
            raise ValueError(f"Path '{path}' attempts to escape project root")
        return full_path

    def read(self, path: str) -> str:
        return self._resolve_path(path).read_text()

    def write(self, path: str, content: str) -> None:
        full_path = self._resolve_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content)
        logger.debug(f"Wrote {len(content)} chars to {path}")

    def delete(self, path: str) -> None:
        full_path = self._resolve_path(path)
        if full_path.exists():
            full_path.unlink()
            logger.debug(f"Deleted {path}")

    def exists(self, path: str) -> bool:
        return self._resolve_path(path).is_file()


def capture_snapshots(files: FileStore, paths: Iterable[str]) -> list[FileSnapshot]:
    """
    Snapshot the current content of each path.

    A file that exists is captured as "modify" with its content, so replay
    writes it back. A file that does not exist yet is captured as "delete",
    so replay removes whatever was created after the snapshot.
    """
    snapshots = []
    for path in dict.fromkeys(paths):
        if files.exists(path):
            snapshots.append(FileSnapshot(path=path, content=files.read(path), action="modify"))
        else:
            snapshots.append(FileSnapshot(path=path, content=None, action="delete"))
    return snapshots
