"""Durable, schema-validated ingestion watermark."""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_LEGACY_KEYS = {
    "last_article_number": "last_processed_id",
    "last_URL_processed": "last_processed_reference",
}


class CorruptState(RuntimeError):
    """Raised when the persisted watermark cannot be trusted."""


class RegressionRejected(RuntimeError):
    """Raised when an advance would move the watermark backwards."""


class IngestMode(str, Enum):
    INCREMENTAL = "incremental"
    CATCHUP = "catchup"


@dataclass(frozen=True, slots=True)
class Watermark:
    last_processed_id: int
    last_processed_reference: str
    last_run_at: datetime
    last_date_used: date
    current_date: date
    last_mode: IngestMode = IngestMode.INCREMENTAL

    @classmethod
    def seed(cls, identifier: int, now: datetime, reference: str = "") -> "Watermark":
        return cls(
            last_processed_id=identifier,
            last_processed_reference=reference,
            last_run_at=now,
            last_date_used=now.date(),
            current_date=now.date(),
            last_mode=IngestMode.INCREMENTAL,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "version": SCHEMA_VERSION,
            "last_processed_id": self.last_processed_id,
            "last_processed_reference": self.last_processed_reference,
            "last_run_at": self.last_run_at.isoformat(),
            "last_date_used": self.last_date_used.isoformat(),
            "current_date": self.current_date.isoformat(),
            "last_mode": self.last_mode.value,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Watermark":
        """Validate a persisted record, collecting every schema violation."""

        if not isinstance(record, Mapping):
            raise CorruptState("Watermark record must be a JSON object")

        data = dict(record)
        for legacy_key, key in _LEGACY_KEYS.items():
            if key not in data and legacy_key in data:
                data[key] = data[legacy_key]

        errors: list[str] = []

        version = data.get("version", SCHEMA_VERSION)
        if version != SCHEMA_VERSION:
            errors.append(f"unsupported version {version!r}")

        identifier = data.get("last_processed_id")
        if isinstance(identifier, bool) or not isinstance(identifier, int) or identifier < 0:
            errors.append("last_processed_id must be a non-negative integer")

        reference = data.get("last_processed_reference", "")
        if not isinstance(reference, str):
            errors.append("last_processed_reference must be a string")

        current_date = _parse_date(data.get("current_date"), "current_date", errors)
        last_date_used = _parse_date(data.get("last_date_used"), "last_date_used", errors)

        raw_run_at = data.get("last_run_at")
        last_run_at: datetime | None = None
        if raw_run_at is None and last_date_used is not None:
            last_run_at = datetime.combine(last_date_used, datetime.min.time(), tzinfo=timezone.utc)
        else:
            last_run_at = _parse_timestamp(raw_run_at, errors)

        mode_value = data.get("last_mode", IngestMode.INCREMENTAL.value)
        try:
            mode = IngestMode(mode_value)
        except ValueError:
            errors.append(f"last_mode must be one of {[m.value for m in IngestMode]}")
            mode = IngestMode.INCREMENTAL

        if errors:
            raise CorruptState("Watermark failed validation: " + "; ".join(errors))

        return cls(
            last_processed_id=identifier,
            last_processed_reference=reference,
            last_run_at=last_run_at,
            last_date_used=last_date_used,
            current_date=current_date,
            last_mode=mode,
        )


def _parse_date(value: Any, name: str, errors: list[str]) -> date | None:
    if not isinstance(value, str):
        errors.append(f"{name} must be a YYYY-MM-DD string")
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        errors.append(f"{name} is not a valid calendar date: {value!r}")
        return None


def _parse_timestamp(value: Any, errors: list[str]) -> datetime | None:
    if not isinstance(value, str):
        errors.append("last_run_at must be an ISO-8601 timestamp string")
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        errors.append(f"last_run_at is not a valid timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    """Write JSON so readers only ever observe the old or the new document."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    fsync_directory(path.parent)


def fsync_directory(directory: Path) -> None:
    """Flush a directory entry so a completed rename survives power loss."""

    if os.name == "nt":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class WatermarkStore:
    """Load and advance the watermark persisted at ``path``."""

    def __init__(self, path: Path, *, seed_id: int = 0) -> None:
        self._path = path
        self._seed_id = seed_id
        self._current: Watermark | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def backup_path(self) -> Path:
        return self._path.with_name(self._path.name + ".bak")

    @property
    def current(self) -> Watermark:
        if self._current is None:
            raise RuntimeError("Watermark has not been loaded")
        return self._current

    def load(
        self,
        *,
        now: datetime | None = None,
        recover_from: int | None = None,
        floor: int | None = None,
    ) -> Watermark:
        now = now or datetime.now(timezone.utc)
        if not self._path.exists():
            watermark = Watermark.seed(self._seed_id, now)
            LOGGER.info("No watermark at %s; seeding baseline %d", self._path, self._seed_id)
            self._write(watermark)
            return watermark

        try:
            watermark = self._read(self._path)
        except CorruptState as exc:
            if recover_from is None:
                raise
            watermark = self._recover(exc, recover_from, floor, now)

        self._current = watermark
        return watermark

    def advance(
        self,
        identifier: int,
        reference: str,
        timestamp: datetime,
        *,
        date_used: date | None = None,
    ) -> Watermark:
        current = self.current
        if identifier < current.last_processed_id:
            raise RegressionRejected(
                f"Refusing to move watermark from {current.last_processed_id} back to {identifier}"
            )
        if identifier == current.last_processed_id:
            LOGGER.debug("Watermark already at %d; advance is a no-op", identifier)
            return current

        updated = replace(
            current,
            last_processed_id=identifier,
            last_processed_reference=reference,
            last_date_used=date_used or timestamp.date(),
            current_date=timestamp.date(),
        )
        self._write(updated)
        LOGGER.debug("Watermark advanced %d -> %d", current.last_processed_id, identifier)
        return updated

    def record_run(self, mode: IngestMode, timestamp: datetime) -> Watermark:
        updated = replace(
            self.current,
            last_run_at=timestamp,
            current_date=timestamp.date(),
            last_mode=mode,
        )
        self._write(updated)
        return updated

    def _read(self, path: Path) -> Watermark:
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptState(f"Unreadable watermark at {path}: {exc}") from exc
        return Watermark.from_record(record)

    def _recover(
        self,
        error: CorruptState,
        baseline: int,
        floor: int | None,
        now: datetime,
    ) -> Watermark:
        known: list[int] = [floor] if floor is not None else []
        if self.backup_path.exists():
            try:
                known.append(self._read(self.backup_path).last_processed_id)
            except CorruptState as backup_error:
                LOGGER.warning("Ignoring unreadable watermark backup: %s", backup_error)
        last_known = max(known, default=None)
        if last_known is not None and baseline < last_known:
            raise CorruptState(
                f"{error}; recovery baseline {baseline} is below last known watermark {last_known}"
            ) from error

        LOGGER.warning("Watermark corrupt (%s); recovering from operator baseline %d", error, baseline)
        watermark = Watermark.seed(baseline, now)
        self._write(watermark, backup=False)
        return watermark

    def _write(self, watermark: Watermark, *, backup: bool = True) -> None:
        if backup and self._path.exists():
            shutil.copy2(self._path, self.backup_path)
        atomic_write_json(self._path, watermark.to_record())
        self._current = watermark
