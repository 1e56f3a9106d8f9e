"""Artifact upload boundary.

The runner only needs "upload these paths under this name". Remote storage
transport is someone else's job; `LocalArtifactUploader` bundles artifacts
into a directory, which is what the CLI uses by default.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


class ArtifactUploadError(RuntimeError):
    pass


class ArtifactUploader(Protocol):
    def upload(self, *, name: str, paths: Sequence[Path], kind: str = "other") -> Optional[str]:
        """Upload `paths` as one artifact; return its id when the backend assigns one."""


def slugify_artifact_name(name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-._")
    return slug or "artifact"


class LocalArtifactUploader:
    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def upload(self, *, name: str, paths: Sequence[Path], kind: str = "other") -> Optional[str]:
        artifact_id = slugify_artifact_name(name)
        dest = self._root / artifact_id
        dest.mkdir(parents=True, exist_ok=True)
        for src in paths:
            src = Path(src)
            target = dest / src.name
            try:
                if src.is_dir():
                    shutil.copytree(src, target, dirs_exist_ok=True)
                else:
                    shutil.copy2(src, target)
            except OSError as e:
                raise ArtifactUploadError(f"Failed to store {src} in {dest}: {e}") from e
        logger.info("Stored %s artifact %r in %s", kind, name, dest)
        return artifact_id
