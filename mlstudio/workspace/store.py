"""JSON document store for workspace metadata."""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetadataStore:
    """
    Keyed JSON documents and append-only JSON-lines logs under one directory.

    Documents are replaced atomically so readers in other processes never see
    a partial write. Line logs are appended one record per write, which lets a
    training script log metrics while the controller reads them.
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.lock = threading.RLock()

    def _path(self, key: str) -> Path:
        return self.base_path / key

    def write(self, key: str, document: Dict[str, Any]) -> None:
        """
        Write a document atomically.

        Args:
            key: Relative path of the document (e.g. ``runs/<id>/run.json``)
            document: JSON-serializable dictionary
        """
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")

        with open(tmp_path, 'w') as f:
            json.dump(document, f, indent=2, default=str)
        os.replace(tmp_path, path)

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        """Read a document, returning None if it does not exist."""
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, 'r') as f:
            return json.load(f)

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def update(
        self,
        key: str,
        mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
        default: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Read-modify-write a document under the store lock.

        Args:
            key: Document key
            mutate: Function receiving the current document and returning the new one
            default: Document used when none exists yet

        Returns:
            The written document

        Raises:
            KeyError: If the document is missing and no default is given
        """
        with self.lock:
            current = self.read(key)
            if current is None:
                if default is None:
                    raise KeyError(key)
                current = dict(default)
            updated = mutate(current)
            self.write(key, updated)
            return updated

    def list(self, prefix: str, pattern: str = "*.json") -> List[str]:
        """
        List document keys directly under a prefix.

        Args:
            prefix: Directory key
            pattern: Glob matched against file names

        Returns:
            Sorted list of keys
        """
        directory = self._path(prefix)
        if not directory.is_dir():
            return []
        return sorted(
            str(p.relative_to(self.base_path).as_posix())
            for p in directory.glob(pattern)
            if p.is_file() and not p.name.startswith(".")
        )

    def list_dirs(self, prefix: str) -> List[str]:
        """List sub-directory names under a prefix."""
        directory = self._path(prefix)
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.iterdir() if p.is_dir())

    def append(self, key: str, record: Dict[str, Any]) -> None:
        """Append one record to a JSON-lines log."""
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record, default=str) + "\n"
        with open(path, 'a') as f:
            f.write(line)

    def read_lines(self, key: str) -> List[Dict[str, Any]]:
        """Read all complete records of a JSON-lines log."""
        path = self._path(key)
        if not path.exists():
            return []

        records = []
        with open(path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    # a concurrent writer may not have finished the last line
                    logger.debug(f"Skipping partial record in {key}")
        return records
