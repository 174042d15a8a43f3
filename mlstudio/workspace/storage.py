"""Artifact storage for run files, dataset snapshots, models and pipeline sources.

Artifacts are addressed by a path relative to the store root
(``runs/<run_id>/outputs/model.pkl``) and handed out as ``file://`` URIs.
Run records, dataset versions and model versions keep those URIs.
"""

import hashlib
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import List

FILE_SCHEME = "file://"


def path_from_uri(uri: str) -> Path:
    """Filesystem path behind a ``file://`` URI (plain paths pass through)."""
    return Path(uri[len(FILE_SCHEME):]) if uri.startswith(FILE_SCHEME) else Path(uri)


def _checked_relative(path: str) -> PurePosixPath:
    relative = PurePosixPath(path.replace("\\", "/"))
    if relative.is_absolute() or ".." in relative.parts or not relative.parts:
        raise ValueError(f"Artifact path must be relative and stay inside the store: '{path}'")
    return relative


class StorageBackend(ABC):
    """
    Where workspace artifacts live.

    Saves take a store-relative path and return the artifact URI. Loads,
    deletes and existence checks take that URI. A URI may name a single
    file or a folder (registered model folders, pipeline data, snapshots).
    """

    @abstractmethod
    def uri_for(self, path: str) -> str:
        pass

    @abstractmethod
    def save_artifact(self, artifact: bytes, path: str) -> str:
        pass

    @abstractmethod
    def save_artifact_from_file(self, source_path: str, dest_path: str) -> str:
        pass

    @abstractmethod
    def load_artifact(self, uri: str) -> bytes:
        pass

    @abstractmethod
    def load_artifact_to_file(self, uri: str, dest_path: str) -> None:
        pass

    @abstractmethod
    def delete_artifact(self, uri: str) -> None:
        pass

    @abstractmethod
    def artifact_exists(self, uri: str) -> bool:
        pass

    @abstractmethod
    def list_artifacts(self, prefix: str = "") -> List[str]:
        """Files below ``prefix``, relative to it, in sorted order."""
        pass


class FileSystemStorage(StorageBackend):
    """Artifacts stored as plain files under ``base_path``."""

    def __init__(self, base_path: str = "artifacts"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"FileSystemStorage(base_path='{self.base_path}')"

    def _resolve(self, path: str) -> Path:
        return self.base_path.joinpath(*_checked_relative(path).parts)

    def uri_for(self, path: str) -> str:
        return f"{FILE_SCHEME}{self.base_path.absolute()}/{_checked_relative(path)}"

    def local_path(self, uri: str) -> Path:
        return path_from_uri(uri)

    def save_artifact(self, artifact: bytes, path: str) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        # readers never see a half-written file
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(artifact)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return self.uri_for(path)

    def save_artifact_from_file(self, source_path: str, dest_path: str) -> str:
        """
        Copy a local file or folder into the store.

        Folders are merged into an existing destination folder, so repeated
        uploads of an outputs directory only add or replace files.

        Raises:
            FileNotFoundError: If ``source_path`` does not exist
        """
        source = Path(source_path)
        if not source.exists():
            raise FileNotFoundError(f"No file or folder at {source_path}")

        target = self._resolve(dest_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            shutil.copytree(source, target, dirs_exist_ok=True)
        else:
            shutil.copy2(source, target)
        return self.uri_for(dest_path)

    def load_artifact(self, uri: str) -> bytes:
        path = path_from_uri(uri)
        if not path.is_file():
            raise FileNotFoundError(f"Artifact not found at {uri}")
        return path.read_bytes()

    def load_artifact_to_file(self, uri: str, dest_path: str) -> None:
        source = path_from_uri(uri)
        if not source.exists():
            raise FileNotFoundError(f"Artifact not found at {uri}")

        dest = Path(dest_path)
        if source.is_dir():
            shutil.copytree(source, dest, dirs_exist_ok=True)
        else:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)

    def delete_artifact(self, uri: str) -> None:
        path = path_from_uri(uri)
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()

    def artifact_exists(self, uri: str) -> bool:
        return path_from_uri(uri).exists()

    def compute_hash(self, uri: str, algorithm: str = "sha256") -> str:
        """
        Content hash of a file or folder.

        For a folder, each file's relative name is hashed ahead of its
        bytes, so renaming a file changes the hash as well.

        Raises:
            FileNotFoundError: If nothing exists at ``uri``
        """
        root = path_from_uri(uri)
        if not root.exists():
            raise FileNotFoundError(f"Artifact not found at {uri}")

        digest = hashlib.new(algorithm)
        if root.is_file():
            files = [root]
        else:
            files = sorted(p for p in root.rglob("*") if p.is_file())

        for file_path in files:
            if root.is_dir():
                digest.update(file_path.relative_to(root).as_posix().encode())
            with open(file_path, "rb") as f:
                for chunk in iter(lambda: f.read(65536), b""):
                    digest.update(chunk)
        return digest.hexdigest()

    def list_artifacts(self, prefix: str = "") -> List[str]:
        root = self._resolve(prefix) if prefix else self.base_path
        if not root.is_dir():
            return []
        return sorted(
            item.relative_to(root).as_posix()
            for item in root.rglob("*")
            if item.is_file() and not item.name.startswith(".")
        )
