# stream_resolver/services/bitmagnet.py

from typing import Any, Optional

import httpx

from ..config import DEFAULT_SEARCH_LIMIT, logger
from .retry import RetryPolicy, with_retry
from .torrent_data import TorrentCandidate, TorrentFile

CONTENT_TYPES = {"series": "tv_show", "movie": "movie"}
FILES_LIMIT = 1000

TORRENT_CONTENT_SEARCH_QUERY = """
query TorrentContentSearch($input: TorrentContentSearchQueryInput!) {
  torrentContent {
    search(input: $input) {
      items {
        infoHash
        title
        seeders
        leechers
        publishedAt
        videoResolution
        languages { id }
        torrent {
          name
          size
          filesStatus
          filesCount
        }
      }
    }
  }
}
"""

TORRENT_FILES_QUERY = """
query TorrentFiles($input: TorrentFilesQueryInput!) {
  torrent {
    files(input: $input) {
      items {
        index
        path
        size
        fileType
      }
    }
  }
}
"""


class SearchProviderError(Exception):
    """The search provider answered, but with an error instead of data."""


def _to_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def candidate_from_item(item: dict[str, Any]) -> Optional[TorrentCandidate]:
    """Converts one ``torrentContent.search`` item into a TorrentCandidate."""
    info_hash = item.get("infoHash")
    torrent = item.get("torrent") or {}
    name = torrent.get("name") or item.get("title")
    if not info_hash or not name:
        return None
    languages = tuple(
        str(lang["id"]).lower()
        for lang in item.get("languages") or []
        if isinstance(lang, dict) and lang.get("id")
    )
    files_count = torrent.get("filesCount")
    return TorrentCandidate(
        name=name,
        info_hash=str(info_hash).lower(),
        size=_to_int(torrent.get("size")),
        seeders=_to_int(item.get("seeders")),
        leechers=_to_int(item.get("leechers")),
        languages=languages,
        content_title=item.get("title") or None,
        files_count=_to_int(files_count) if files_count is not None else None,
    )


class BitmagnetClient:
    """Searches a Bitmagnet instance through its GraphQL endpoint."""

    def __init__(
        self,
        graphql_url: str,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30,
    ) -> None:
        self.graphql_url = graphql_url
        self.retry_policy = retry_policy or RetryPolicy.named("search")
        self._client = http_client
        self._timeout = timeout

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.graphql_url, json=payload)
        async with httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=True
        ) as client:
            return await client.post(self.graphql_url, json=payload)

    async def _query(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        logger.debug(f"[BITMAGNET] Sending GraphQL query with variables: {variables}")

        async def _attempt() -> dict[str, Any]:
            response = await self._post({"query": query, "variables": variables})
            response.raise_for_status()
            return response.json()

        body = await with_retry(
            _attempt, self.retry_policy, description="Bitmagnet GraphQL query"
        )
        if body.get("errors"):
            messages = ", ".join(
                str(err.get("message", err)) if isinstance(err, dict) else str(err)
                for err in body["errors"]
            )
            logger.error(f"[BITMAGNET] GraphQL query failed: {messages}")
            raise SearchProviderError(messages)
        data = body.get("data")
        if not data:
            logger.warning("[BITMAGNET] Received empty data object from GraphQL server.")
            return {}
        return data

    async def search(
        self,
        query: str,
        content_type: str,
        min_seeders: int = 0,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[TorrentCandidate]:
        """
        Runs a ``torrentContent.search`` for ``query`` restricted to the given
        content type (``series`` or ``movie``), newest and best-seeded first.
        """
        provider_type = CONTENT_TYPES.get(content_type, content_type)
        data = await self._query(
            TORRENT_CONTENT_SEARCH_QUERY,
            {
                "input": {
                    "queryString": query,
                    "limit": limit,
                    "orderBy": [
                        {"field": "published_at", "descending": True},
                        {"field": "seeders", "descending": True},
                    ],
                    "facets": {"contentType": {"filter": [provider_type]}},
                }
            },
        )
        items = ((data.get("torrentContent") or {}).get("search") or {}).get("items")
        if not items:
            logger.warning(f"[BITMAGNET] Search for '{query}' returned no items.")
            return []

        candidates: list[TorrentCandidate] = []
        for item in items:
            candidate = candidate_from_item(item)
            if candidate is None:
                continue
            if candidate.seeders < min_seeders:
                continue
            candidates.append(candidate)

        logger.info(
            f"[BITMAGNET] Search for '{query}' ({provider_type}) returned "
            f"{len(candidates)} usable candidates out of {len(items)}."
        )
        return candidates

    async def files_for(self, info_hash: str) -> list[TorrentFile]:
        """Lists the files the provider knows for one torrent."""
        data = await self._query(
            TORRENT_FILES_QUERY,
            {"input": {"infoHashes": [info_hash], "limit": FILES_LIMIT}},
        )
        items = ((data.get("torrent") or {}).get("files") or {}).get("items")
        if not items:
            logger.warning(f"[BITMAGNET] File query for '{info_hash}' returned no items.")
            return []

        files = [
            TorrentFile(
                path=str(item.get("path") or ""),
                size=_to_int(item.get("size")),
                index=_to_int(item.get("index")),
            )
            for item in items
            if item.get("path")
        ]
        logger.debug(
            f"[BITMAGNET] Retrieved {len(files)} file(s) for infohash {info_hash}."
        )
        return files
