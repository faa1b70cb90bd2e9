"""Watermark persistence — the single "last fetch time" resume point."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger("mdatp-watch")


@dataclass(frozen=True)
class StateStorage:
    """Pair of openers for reading and (re)writing persisted state.

    ``open_read`` raises ``FileNotFoundError`` when nothing was persisted yet.
    Both return text file objects usable as context managers.
    """

    open_read: Callable[[], IO[str]]
    open_write: Callable[[], IO[str]]


def file_state_storage(path: str | Path) -> StateStorage:
    """State storage backed by a single JSON file."""
    path = Path(path).expanduser()

    def _open_read() -> IO[str]:
        return path.open("r", encoding="utf-8")

    def _open_write() -> IO[str]:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o640)
        return os.fdopen(fd, "w", encoding="utf-8")

    return StateStorage(open_read=_open_read, open_write=_open_write)


class WatchState(BaseModel):
    """On-disk shape: ``{"lastFetchTime": "<ISO-8601 UTC>"}``."""

    model_config = ConfigDict(populate_by_name=True)

    last_fetch_time: datetime | None = Field(default=None, alias="lastFetchTime")


def _normalize(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Go's zero time.Time, written by older state files
    if value.year == 1:
        return None
    return value.astimezone(timezone.utc)


class WatermarkStore:
    """In-memory watermark with JSON load/save.

    Only the fetch cycle holding the cycle slot calls ``set``.
    """

    def __init__(self, watermark: datetime | None = None) -> None:
        self._watermark = _normalize(watermark)

    def get(self) -> datetime | None:
        return self._watermark

    def set(self, value: datetime) -> None:
        self._watermark = _normalize(value)

    @property
    def is_set(self) -> bool:
        return self._watermark is not None

    def load(self, storage: StateStorage) -> None:
        """Load the persisted watermark. Never raises; bad state means start fresh."""
        self._watermark = None
        try:
            with storage.open_read() as f:
                raw = f.read()
        except FileNotFoundError:
            logger.debug("No previous state found, starting fresh")
            return
        except OSError as e:
            logger.warning(f"Could not read state, starting fresh: {e}")
            return

        if not raw.strip():
            logger.debug("State is empty, starting fresh")
            return

        try:
            state = WatchState.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                f"State content invalid, starting fresh: {e.errors()[0]['msg']}"
            )
            return

        self._watermark = _normalize(state.last_fetch_time)
        if self._watermark is not None:
            logger.info(f"Resuming from lastFetchTime={self._watermark.isoformat()}")

    def save(self, storage: StateStorage) -> bool:
        """Persist the watermark. Returns False (and logs) on failure."""
        payload = WatchState(last_fetch_time=self._watermark).model_dump_json(
            by_alias=True
        )
        try:
            with storage.open_write() as f:
                f.write(payload + "\n")
        except Exception as e:
            logger.error(f"Could not save state: {e}")
            return False
        logger.debug(f"State saved: {payload}")
        return True
