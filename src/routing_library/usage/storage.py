# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
JSON snapshot storage for the usage ledger and credential rotator.

The in-memory stores are authoritative. This module only loads a snapshot at
startup and writes snapshots afterwards, debounced, off the request path.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles

from ..config.defaults import DEFAULT_SAVE_DEBOUNCE_SECONDS, SNAPSHOT_VERSION

lib_logger = logging.getLogger("routing_library")


class UsageStorage:
    """
    Snapshot file with dirty tracking and a write debounce.

    Snapshot layout:
        {"version": 1, "saved_at": <ts>, "usage": {...}, "credentials": {...}}
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        save_debounce_seconds: float = DEFAULT_SAVE_DEBOUNCE_SECONDS,
    ):
        self.file_path = Path(file_path)
        self.save_debounce_seconds = save_debounce_seconds
        self._dirty = False
        self._last_save = 0.0

    def mark_dirty(self) -> None:
        self._dirty = True

    @property
    def dirty(self) -> bool:
        return self._dirty

    async def load(self) -> Dict[str, Any]:
        """
        Load the snapshot.

        A missing, empty, corrupt or unreadable file yields an empty snapshot.
        """
        if not self.file_path.exists():
            return {}
        try:
            async with aiofiles.open(self.file_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            # File deleted between exists check and open
            return {}
        except OSError as e:
            lib_logger.warning(
                f"Cannot read usage file {self.file_path}: {e}. Using empty state."
            )
            return {}

        if not content.strip():
            return {}
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            lib_logger.warning(
                f"Corrupted usage file {self.file_path}: {e}. Starting fresh."
            )
            return {}
        if not isinstance(data, dict):
            lib_logger.warning(f"Unexpected usage file layout in {self.file_path}")
            return {}
        if data.get("version") != SNAPSHOT_VERSION:
            lib_logger.warning(
                f"Usage file {self.file_path} has version {data.get('version')}, "
                f"expected {SNAPSHOT_VERSION}. Starting fresh."
            )
            return {}
        return data

    async def save(self, data: Dict[str, Any], force: bool = False) -> bool:
        """
        Write a snapshot unless the debounce window has not elapsed.

        Args:
            data: Snapshot payload (usage and credentials sections)
            force: Ignore the debounce

        Returns:
            True if written, False if skipped or failed
        """
        now = time.time()
        if not force and now - self._last_save < self.save_debounce_seconds:
            self._dirty = True
            return False

        payload = {"version": SNAPSHOT_VERSION, "saved_at": now, **data}
        tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(payload, indent=2, sort_keys=True))
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            lib_logger.warning(f"Failed to save usage file {self.file_path}: {e}")
            self._dirty = True
            return False

        self._last_save = now
        self._dirty = False
        lib_logger.debug(f"Saved usage snapshot to {self.file_path}")
        return True

    async def save_if_dirty(self, data: Dict[str, Any]) -> bool:
        if not self._dirty:
            return False
        return await self.save(data, force=True)

    @property
    def seconds_until_next_save(self) -> float:
        remaining = self.save_debounce_seconds - (time.time() - self._last_save)
        return max(0.0, remaining)

    def __repr__(self) -> str:
        return f"UsageStorage({str(self.file_path)!r})"


def snapshot_section(data: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    section = data.get(name)
    return section if isinstance(section, dict) else None
