# stream_resolver/services/metadata.py

import re
from typing import Any, Optional

import httpx

from ..config import logger
from .retry import RetryPolicy, with_retry
from .torrent_data import MediaMetadata

TMDB_API_URL = "https://api.themoviedb.org/3"
CINEMETA_URL = "https://v3-cinemeta.strem.io/meta"


def _extract_year(value: Any) -> Optional[int]:
    """Finds the first four-digit year in values like "2010-2014" or "2025-"."""
    if value is None:
        return None
    match = re.search(r"\d{4}", str(value))
    return int(match.group(0)) if match else None


class MetadataService:
    """
    Looks up the canonical title and year for an IMDb id.

    TMDB is asked first when an API key is configured, Cinemeta otherwise or
    when TMDB fails. Successful lookups are cached for the lifetime of the
    service object.
    """

    def __init__(
        self,
        tmdb_api_key: str | None = None,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15,
    ) -> None:
        self.tmdb_api_key = tmdb_api_key
        self.retry_policy = retry_policy or RetryPolicy.named("metadata")
        self._client = http_client
        self._timeout = timeout
        self._cache: dict[tuple[str, str], MediaMetadata] = {}

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        async def _attempt() -> Any:
            if self._client is not None:
                response = await self._client.get(url, params=params)
            else:
                async with httpx.AsyncClient(
                    timeout=self._timeout, follow_redirects=True
                ) as client:
                    response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json()

        return await with_retry(_attempt, self.retry_policy, description=f"GET {url}")

    async def _fetch_tmdb(self, metadata_id: str, content_type: str) -> MediaMetadata:
        data = await self._get_json(
            f"{TMDB_API_URL}/find/{metadata_id}",
            params={"api_key": self.tmdb_api_key, "external_source": "imdb_id"},
        )
        key = "tv_results" if content_type == "series" else "movie_results"
        results = (data or {}).get(key) or []
        if not results:
            raise LookupError(f"TMDB has no {key} for {metadata_id}")
        item = results[0]
        if content_type == "series":
            title, date = item.get("name"), item.get("first_air_date")
        else:
            title, date = item.get("title"), item.get("release_date")
        if not title:
            raise LookupError(f"TMDB result for {metadata_id} has no title")
        return MediaMetadata(title=title, year=_extract_year(date), source="TMDB")

    async def _fetch_cinemeta(
        self, metadata_id: str, content_type: str
    ) -> MediaMetadata:
        data = await self._get_json(f"{CINEMETA_URL}/{content_type}/{metadata_id}.json")
        meta = (data or {}).get("meta")
        if not meta or not meta.get("name"):
            raise LookupError(f"Cinemeta has no entry for {metadata_id}")
        year = _extract_year(meta.get("year") or meta.get("releaseInfo"))
        return MediaMetadata(title=meta["name"], year=year, source="Cinemeta")

    async def lookup(
        self, metadata_id: str, content_type: str
    ) -> Optional[MediaMetadata]:
        """Returns metadata for the id, or None when every provider fails."""
        cache_key = (metadata_id, content_type)
        if cache_key in self._cache:
            logger.debug(f"[METADATA] Cache hit for {metadata_id} ({content_type})")
            return self._cache[cache_key]

        logger.info(f"[METADATA] Resolving metadata for {metadata_id} ({content_type})...")

        providers = []
        if self.tmdb_api_key:
            providers.append(("TMDB", self._fetch_tmdb))
        providers.append(("Cinemeta", self._fetch_cinemeta))

        for name, fetch in providers:
            try:
                result = await fetch(metadata_id, content_type)
            except (httpx.HTTPError, LookupError, ValueError) as e:
                logger.warning(f"[METADATA] {name} lookup failed for {metadata_id}: {e}")
                continue
            logger.info(f"[METADATA] Resolved via {name}: '{result.title}' ({result.year})")
            self._cache[cache_key] = result
            return result

        logger.error(f"[METADATA] Could not resolve metadata for {metadata_id}.")
        return None
