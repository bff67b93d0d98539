"""Durable storage and verification of rendered artifacts."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Iterator

from .watermark import fsync_directory

LOGGER = logging.getLogger(__name__)


class ArtifactExistsError(FileExistsError):
    """Raised when an artifact for an identifier has already been written."""


@dataclass(slots=True)
class Artifact:
    identifier: int
    filename: str
    path: Path
    size: int
    checksum: str | None = None


@dataclass(frozen=True, slots=True)
class ArtifactName:
    published: date
    identifier: int
    filename: str


class ArtifactStore:
    """Write-once artifact directory keyed by ``{YYYYMMDD}-{id}.{ext}`` names."""

    def __init__(self, root: Path, *, extension: str = "pdf", min_size: int = 1) -> None:
        self._root = root
        self._extension = extension.lstrip(".")
        self._min_size = max(1, min_size)
        self._name_re = re.compile(rf"^(?P<date>\d{{8}})-(?P<id>\d+)\.{re.escape(self._extension)}$")

    @property
    def root(self) -> Path:
        return self._root

    def filename_for(self, identifier: int, published: date) -> str:
        return f"{published:%Y%m%d}-{identifier}.{self._extension}"

    def parse_name(self, filename: str) -> ArtifactName | None:
        match = self._name_re.match(filename)
        if not match:
            return None
        raw_date = match.group("date")
        try:
            published = date(int(raw_date[:4]), int(raw_date[4:6]), int(raw_date[6:]))
        except ValueError:
            return None
        return ArtifactName(published=published, identifier=int(match.group("id")), filename=filename)

    def iter_artifacts(self) -> Iterator[ArtifactName]:
        """Yield parsed artifact names in ascending identifier order."""

        if not self._root.exists():
            return
        names = [self.parse_name(entry.name) for entry in self._root.iterdir() if entry.is_file()]
        yield from sorted((name for name in names if name), key=lambda name: name.identifier)

    def find_existing(self, identifier: int) -> Artifact | None:
        """Return a valid artifact for ``identifier`` whatever its date prefix."""

        if not self._root.exists():
            return None
        for path in sorted(self._root.glob(f"*-{identifier}.{self._extension}")):
            parsed = self.parse_name(path.name)
            if parsed is None or parsed.identifier != identifier:
                continue
            artifact = Artifact(identifier, path.name, path, path.stat().st_size)
            if self.verify(artifact):
                return artifact
            LOGGER.warning("Ignoring undersized artifact %s (%d bytes)", path, artifact.size)
        return None

    def highest_identifier(self) -> int | None:
        return max((name.identifier for name in self.iter_artifacts()), default=None)

    def write(self, identifier: int, published: date, payload: bytes) -> Artifact:
        """Persist ``payload`` atomically; existing artifacts are never overwritten."""

        existing = self.find_existing(identifier)
        if existing is not None:
            raise ArtifactExistsError(f"Artifact for {identifier} already exists at {existing.path}")

        self._root.mkdir(parents=True, exist_ok=True)
        filename = self.filename_for(identifier, published)
        target = self._root / filename
        if target.exists():
            raise ArtifactExistsError(f"Refusing to overwrite {target}")

        fd, tmp_name = tempfile.mkstemp(prefix=f".{filename}.", suffix=".tmp", dir=self._root)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        fsync_directory(self._root)

        return Artifact(
            identifier=identifier,
            filename=filename,
            path=target,
            size=len(payload),
            checksum=hashlib.sha256(payload).hexdigest(),
        )

    def verify(self, artifact: Artifact) -> bool:
        try:
            size = artifact.path.stat().st_size
        except FileNotFoundError:
            return False
        if size != artifact.size:
            return False
        return size >= self._min_size

    def discard(self, artifact: Artifact) -> None:
        LOGGER.warning("Discarding invalid artifact %s", artifact.path)
        artifact.path.unlink(missing_ok=True)


def persist_rejected_text(debug_dir: Path | None, identifier: int, text: str) -> Path | None:
    """Keep sub-threshold extraction output around for template debugging."""

    if debug_dir is None:
        return None
    debug_dir.mkdir(parents=True, exist_ok=True)
    path = debug_dir / f"EMPTY-{identifier}.txt"
    path.write_text(text, encoding="utf-8")
    return path


def persist_raw_html(path: Path | None, html: str) -> None:
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(html, encoding="utf-8")
