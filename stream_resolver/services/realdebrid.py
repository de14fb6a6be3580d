# stream_resolver/services/realdebrid.py

from typing import Any, Optional

import httpx

from ..config import logger
from ..utils import magnet_from_hash
from .retry import ProviderRejected, RetryPolicy, with_retry

API_URL = "https://api.real-debrid.com/rest/1.0"
LIST_LIMIT = 100


class RealDebridClient:
    """
    Thin async wrapper around the Real-Debrid REST API.

    Every call is retried on transient failures according to the configured
    policy. A 4xx answer other than 429 raises ProviderRejected right away.
    """

    def __init__(
        self,
        api_token: str,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = API_URL,
        timeout: float = 30,
    ) -> None:
        if not api_token:
            raise ValueError("Real-Debrid API token is required.")
        self.headers = {"Authorization": f"Bearer {api_token}"}
        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy.named("resolution")
        self._client = http_client
        self._timeout = timeout

    async def _send(
        self,
        method: str,
        url: str,
        data: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(
                method, url, headers=self.headers, data=data, params=params
            )
        async with httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=True
        ) as client:
            return await client.request(
                method, url, headers=self.headers, data=data, params=params
            )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"

        async def _attempt() -> Any:
            response = await self._send(method, url, data, params)
            logger.debug(f"[RD] {method} {path} -> {response.status_code}")
            status = response.status_code
            if 400 <= status < 500 and status != 429:
                raise ProviderRejected(
                    f"Real-Debrid rejected {method} {path}: "
                    f"{_error_message(response)}",
                    status_code=status,
                )
            response.raise_for_status()
            if status == 204 or not response.content:
                return None
            return response.json()

        return await with_retry(
            _attempt, self.retry_policy, description=f"Real-Debrid {method} {path}"
        )

    async def list_torrents(self, limit: int = LIST_LIMIT) -> list[dict[str, Any]]:
        """Returns the torrents already present on the account, newest first."""
        result = await self._request("GET", "/torrents", params={"limit": limit})
        return result if isinstance(result, list) else []

    async def find_torrent_by_hash(self, info_hash: str) -> Optional[dict[str, Any]]:
        wanted = info_hash.lower()
        for torrent in await self.list_torrents():
            if str(torrent.get("hash", "")).lower() == wanted:
                return torrent
        return None

    async def add_magnet(self, info_hash: str) -> str:
        """Submits a magnet for the hash and returns the provider torrent id."""
        result = await self._request(
            "POST", "/torrents/addMagnet", data={"magnet": magnet_from_hash(info_hash)}
        )
        torrent_id = (result or {}).get("id")
        if not torrent_id:
            raise ProviderRejected(f"Real-Debrid returned no torrent id for {info_hash}.")
        logger.info(f"[RD] Added magnet for {info_hash} as torrent {torrent_id}.")
        return str(torrent_id)

    async def select_files(self, torrent_id: str, file_ids: list[int] | str = "all") -> None:
        files = file_ids if isinstance(file_ids, str) else ",".join(map(str, file_ids))
        await self._request(
            "POST", f"/torrents/selectFiles/{torrent_id}", data={"files": files}
        )
        logger.info(f"[RD] Selected files '{files}' on torrent {torrent_id}.")

    async def torrent_info(self, torrent_id: str) -> dict[str, Any]:
        result = await self._request("GET", f"/torrents/info/{torrent_id}")
        return result if isinstance(result, dict) else {}

    async def unrestrict_link(self, link: str) -> str:
        """Turns a hoster link into a direct download URL."""
        result = await self._request("POST", "/unrestrict/link", data={"link": link})
        download = (result or {}).get("download")
        if not download:
            raise ProviderRejected(f"Real-Debrid could not unrestrict {link}.")
        return str(download)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text[:200]
