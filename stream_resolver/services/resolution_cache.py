# stream_resolver/services/resolution_cache.py

import asyncio
from collections.abc import Awaitable, Callable

from ..config import logger
from ..state import ResolutionStore
from .torrent_data import ResolutionKey, ResolutionRecord

Producer = Callable[[], Awaitable[ResolutionRecord]]
RecordFilter = Callable[[ResolutionRecord], bool]


class ResolutionCache:
    """
    Makes sure one torrent is resolved at most once at a time.

    Stored records are returned straight away. Otherwise the first caller for
    a torrent runs ``produce`` while later callers for the same torrent, any
    episode, wait on its outcome, success or failure. Waiters receive the
    owner's record and derive their own link from it.
    """

    def __init__(self, store: ResolutionStore) -> None:
        self.store = store
        self._in_flight: dict[ResolutionKey, asyncio.Future[ResolutionRecord]] = {}
        self._lock = asyncio.Lock()

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def _stored(
        self, key: ResolutionKey, is_usable: RecordFilter | None
    ) -> ResolutionRecord | None:
        record = await self.store.find_compatible(key, is_usable)
        if record is None:
            return None
        logger.info(f"[CACHE] Reusing stored resolution for {key.info_hash}.")
        return await self.store.touch(record)

    async def resolve(
        self,
        key: ResolutionKey,
        produce: Producer,
        is_usable: RecordFilter | None = None,
    ) -> ResolutionRecord:
        """
        Returns a record for ``key``. ``is_usable`` restricts which stored
        records may be reused; records of in-flight work are shared as is.
        """
        record = await self._stored(key, is_usable)
        if record is not None:
            return record

        torrent_key = key.broad()
        async with self._lock:
            future = self._in_flight.get(torrent_key)
            is_owner = future is None
            if is_owner:
                future = asyncio.get_running_loop().create_future()
                self._in_flight[torrent_key] = future

        assert future is not None
        if not is_owner:
            logger.info(f"[CACHE] Joining in-flight resolution for {key.info_hash}.")
            return await asyncio.shield(future)

        try:
            # Another owner may have finished between the store check and the claim.
            record = await self._stored(key, is_usable)
            if record is None:
                record = await produce()
                record = await self.store.upsert(record)
            future.set_result(record)
            return record
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark the exception as retrieved when nobody else is waiting.
            future.exception()
            raise
        finally:
            async with self._lock:
                self._in_flight.pop(torrent_key, None)
