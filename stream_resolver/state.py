# stream_resolver/state.py

import asyncio
import dataclasses
import json
import os
import time
from collections.abc import Callable
from typing import Any, Optional

from .config import logger
from .services.torrent_data import ResolutionKey, ResolutionRecord


def save_records(file_path: str, records: dict[str, ResolutionRecord]) -> None:
    """Saves every resolution record to a JSON file."""
    data_to_save = {
        "records": [dataclasses.asdict(record) for record in records.values()]
    }
    try:
        with open(file_path, "w", encoding="utf-8") as f:
            json.dump(data_to_save, f, indent=4)
        logger.debug(f"[CACHE] Saved {len(records)} resolution records.")
    except OSError as e:
        logger.error(f"[CACHE] Could not save records file to '{file_path}': {e}")


def _record_from_dict(raw: dict[str, Any]) -> Optional[ResolutionRecord]:
    known = {f.name for f in dataclasses.fields(ResolutionRecord)}
    try:
        return ResolutionRecord(**{k: v for k, v in raw.items() if k in known})
    except TypeError:
        return None


def load_records(file_path: str) -> dict[str, ResolutionRecord]:
    """Loads resolution records from a JSON file, keyed by their storage key."""
    if not os.path.exists(file_path):
        logger.info(
            f"[CACHE] Records file '{file_path}' not found. Starting with a fresh store."
        )
        return {}

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.error(
            f"[CACHE] Could not read or parse records file '{file_path}': {e}. Starting fresh."
        )
        return {}

    records: dict[str, ResolutionRecord] = {}
    for raw in data.get("records", []) if isinstance(data, dict) else []:
        record = _record_from_dict(raw) if isinstance(raw, dict) else None
        if record is None:
            logger.warning(f"[CACHE] Skipping malformed record: {raw}")
            continue
        records[record.key.storage_key] = record
    logger.info(f"[CACHE] Loaded {len(records)} resolution records.")
    return records


class ResolutionStore:
    """
    Persistent map of ResolutionKey -> ResolutionRecord.

    With ``file_path`` set to None the store lives in memory only. Records
    are never deleted; an upsert replaces the record under the same key.
    """

    def __init__(self, file_path: str | None = None) -> None:
        self.file_path = file_path
        self._records: dict[str, ResolutionRecord] = {}
        self._loaded = file_path is None
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._lock:
            if self._loaded:
                return
            assert self.file_path is not None
            self._records = await asyncio.to_thread(load_records, self.file_path)
            self._loaded = True

    async def _persist(self) -> None:
        if self.file_path is None:
            return
        snapshot = {k: dataclasses.replace(v) for k, v in self._records.items()}
        async with self._lock:
            await asyncio.to_thread(save_records, self.file_path, snapshot)

    async def get(self, key: ResolutionKey) -> Optional[ResolutionRecord]:
        await self._ensure_loaded()
        return self._records.get(key.storage_key)

    async def records_for(self, info_hash: str) -> list[ResolutionRecord]:
        await self._ensure_loaded()
        wanted = info_hash.lower()
        return [r for r in self._records.values() if r.info_hash == wanted]

    async def find_compatible(
        self,
        key: ResolutionKey,
        is_usable: Callable[[ResolutionRecord], bool] | None = None,
    ) -> Optional[ResolutionRecord]:
        """
        Returns the record stored under ``key``, else the most recently used
        record for the same torrent and content type. With ``is_usable`` set,
        only records it accepts are considered.
        """
        exact = await self.get(key)
        if exact is not None and (is_usable is None or is_usable(exact)):
            return exact
        broad = [
            r
            for r in await self.records_for(key.info_hash)
            if r.content_type == key.content_type
            and (is_usable is None or is_usable(r))
        ]
        if not broad:
            return None
        return max(broad, key=lambda r: r.last_used_at)

    async def touch(self, record: ResolutionRecord) -> ResolutionRecord:
        await self._ensure_loaded()
        record.last_used_at = time.time()
        self._records[record.key.storage_key] = record
        await self._persist()
        return record

    async def upsert(self, record: ResolutionRecord) -> ResolutionRecord:
        await self._ensure_loaded()
        previous = self._records.get(record.key.storage_key)
        if previous is not None:
            record.created_at = previous.created_at
        record.last_used_at = time.time()
        self._records[record.key.storage_key] = record
        logger.info(
            f"[CACHE] Stored resolution for {record.info_hash} "
            f"({record.content_type}, {record.metadata_id or 'any'})."
        )
        await self._persist()
        return record
