# stream_resolver/services/resolution.py

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from ..config import logger
from ..utils import file_basename
from .episode_matcher import MatchReason, match_reason
from .realdebrid import RealDebridClient
from .retry import (
    OperationCancelled,
    ProviderRejected,
    RetryPolicy,
    TransientProviderError,
    wait_or_cancel,
)
from .title_parser import parse_title
from .torrent_data import ResolutionKey

FAILED_STATUSES = frozenset({"magnet_error", "error", "virus", "dead"})
READY_STATUS = "downloaded"
WAITING_SELECTION_STATUS = "waiting_files_selection"


class ResolutionState(Enum):
    INIT = "init"
    SUBMITTED = "submitted"
    FILES_SELECTED = "files_selected"
    POLLING = "polling"
    READY = "ready"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ResolutionWorkflowRequest:
    """Everything needed to turn one torrent into a direct link."""

    key: ResolutionKey
    season: Optional[int] = None
    episode: Optional[int] = None
    file_index: Optional[int] = None
    file_path: Optional[str] = None

    @property
    def is_series(self) -> bool:
        return self.key.content_type == "series"


@dataclass
class WorkflowResult:
    state: ResolutionState = ResolutionState.INIT
    history: list[ResolutionState] = field(
        default_factory=lambda: [ResolutionState.INIT]
    )
    provider_torrent_id: Optional[str] = None
    torrent_info: dict[str, Any] = field(default_factory=dict)
    selected_file_ids: list[int] = field(default_factory=list)
    source_link: Optional[str] = None
    direct_link: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is ResolutionState.READY

    def advance(self, state: ResolutionState) -> None:
        self.state = state
        self.history.append(state)


class ResolutionError(Exception):
    """A resolution workflow ended without a direct link."""

    def __init__(self, result: WorkflowResult) -> None:
        super().__init__(
            f"Resolution ended in {result.state.value}: {result.error or 'unknown error'}"
        )
        self.result = result


def _same_path(provider_path: str, wanted_path: str) -> bool:
    return provider_path.strip("/\\").replace("\\", "/") == wanted_path.strip(
        "/\\"
    ).replace("\\", "/")


def provider_file_id(
    torrent_info: dict[str, Any],
    file_path: Optional[str],
    file_index: Optional[int],
) -> Optional[int]:
    """
    Maps a file found by the search provider onto the resolution provider's
    file id: by path first, then by basename, otherwise ``index + 1``.
    """
    files = torrent_info.get("files") or []
    if file_path:
        for entry in files:
            if _same_path(str(entry.get("path", "")), file_path):
                return int(entry["id"])
        wanted_name = file_basename(file_path)
        for entry in files:
            if file_basename(str(entry.get("path", ""))) == wanted_name:
                return int(entry["id"])
    if file_index is not None:
        return file_index + 1
    return None


def _selected_files(torrent_info: dict[str, Any]) -> list[dict[str, Any]]:
    return [f for f in torrent_info.get("files") or [] if f.get("selected") == 1]


def selected_file_position(
    torrent_info: dict[str, Any],
    content_type: str,
    season: Optional[int] = None,
    episode: Optional[int] = None,
    file_path: Optional[str] = None,
) -> Optional[int]:
    """
    Position, among the selected files, of the file that serves the request.

    A known file path wins; series then look for the requested episode among
    the selected files, and movies take the largest selected file. A lone
    selected file without any episode marker is taken for the requested
    episode of its season.
    """
    selected = _selected_files(torrent_info)
    if not selected:
        return None

    if file_path:
        for position, entry in enumerate(selected):
            if _same_path(str(entry.get("path", "")), file_path):
                return position

    if content_type == "series" and season is not None and episode is not None:
        fallback_season = parse_title(torrent_info.get("filename")).season
        for position, entry in enumerate(selected):
            descriptor = parse_title(
                file_basename(str(entry.get("path", ""))),
                fallback_season=fallback_season,
            )
            if match_reason(descriptor, season, episode) in (
                MatchReason.EXACT,
                MatchReason.RANGE,
            ):
                return position
        if len(selected) == 1:
            descriptor = parse_title(
                file_basename(str(selected[0].get("path", ""))),
                fallback_season=fallback_season,
            )
            if not descriptor.has_episode and descriptor.season in (None, season):
                logger.info(
                    "[RESOLVE] No explicit episode in the only selected file. "
                    "Assuming it is the requested one."
                )
                return 0
        return None

    return max(range(len(selected)), key=lambda i: int(selected[i].get("bytes") or 0))


def select_output_link(
    torrent_info: dict[str, Any],
    content_type: str,
    season: Optional[int] = None,
    episode: Optional[int] = None,
    file_path: Optional[str] = None,
) -> Optional[str]:
    """Picks the hoster link to unrestrict from a ready torrent.

    Links line up with the selected files, in order.
    """
    links = list(torrent_info.get("links") or [])
    if not links:
        return None
    if not _selected_files(torrent_info):
        return links[0] if len(links) == 1 else None
    position = selected_file_position(
        torrent_info, content_type, season, episode, file_path
    )
    if position is None or position >= len(links):
        return None
    return links[position]


class ResolutionWorkflow:
    """
    Drives a torrent through the provider until a direct link is available.

    INIT -> SUBMITTED -> FILES_SELECTED -> POLLING -> READY, with FAILED for
    provider errors and TIMEOUT when polling never sees a finished torrent.
    """

    def __init__(
        self,
        client: RealDebridClient,
        polling_policy: RetryPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.client = client
        self.polling_policy = polling_policy or RetryPolicy.named("polling")
        self.cancel_event = cancel_event

    async def run(self, request: ResolutionWorkflowRequest) -> WorkflowResult:
        result = WorkflowResult()
        info_hash = request.key.info_hash
        logger.info(f"[RESOLVE] Starting resolution for {info_hash}.")

        try:
            existing = await self.client.find_torrent_by_hash(info_hash)
            if existing and existing.get("status") in FAILED_STATUSES:
                existing = None
            if existing and not await self._serves_request(existing, request):
                logger.info(
                    f"[RESOLVE] Provider torrent {existing['id']} does not hold the "
                    f"requested file selected. Submitting {info_hash} again."
                )
                existing = None
            if existing:
                result.provider_torrent_id = str(existing["id"])
                logger.info(
                    f"[RESOLVE] Reusing provider torrent {result.provider_torrent_id} "
                    f"for {info_hash} (status: {existing.get('status')})."
                )
            else:
                result.provider_torrent_id = await self.client.add_magnet(info_hash)
            result.advance(ResolutionState.SUBMITTED)

            needs_selection = existing is None or (
                existing.get("status") == WAITING_SELECTION_STATUS
            )
            if needs_selection:
                await self._select_files(result, request)
            result.advance(ResolutionState.FILES_SELECTED)

            result.advance(ResolutionState.POLLING)
            info = await self._poll(result)
            if info is None:
                return result

            result.torrent_info = info
            result.selected_file_ids = [
                int(f["id"]) for f in info.get("files") or [] if f.get("selected") == 1
            ]
            link = select_output_link(
                info,
                request.key.content_type,
                request.season,
                request.episode,
                request.file_path,
            )
            if not link:
                return self._fail(result, "no link matches the requested file")
            result.source_link = link
            result.direct_link = await self.client.unrestrict_link(link)
            result.advance(ResolutionState.READY)
            logger.info(f"[RESOLVE] {info_hash} is ready.")
            return result

        except ProviderRejected as e:
            return self._fail(result, f"provider rejected the request: {e}")
        except (httpx.HTTPError, TransientProviderError) as e:
            return self._fail(result, f"provider unavailable: {e}")
        except OperationCancelled:
            return self._fail(result, "cancelled")

    async def _serves_request(
        self, existing: dict[str, Any], request: ResolutionWorkflowRequest
    ) -> bool:
        """
        True when a provider torrent already on the account can deliver the
        requested file. Its file selection cannot change once made.
        """
        if not request.is_series or existing.get("status") == WAITING_SELECTION_STATUS:
            return True
        info = await self.client.torrent_info(str(existing["id"]))
        if not _selected_files(info):
            return True
        position = selected_file_position(
            info,
            request.key.content_type,
            request.season,
            request.episode,
            request.file_path,
        )
        return position is not None

    async def _select_files(
        self, result: WorkflowResult, request: ResolutionWorkflowRequest
    ) -> None:
        assert result.provider_torrent_id is not None
        selection: list[int] | str = "all"
        if request.file_path or request.file_index is not None:
            info = await self.client.torrent_info(result.provider_torrent_id)
            file_id = provider_file_id(info, request.file_path, request.file_index)
            if file_id is not None:
                selection = [file_id]
        await self.client.select_files(result.provider_torrent_id, selection)

    async def _poll(self, result: WorkflowResult) -> Optional[dict[str, Any]]:
        assert result.provider_torrent_id is not None
        policy = self.polling_policy

        for attempt in range(policy.max_attempts):
            info = await self.client.torrent_info(result.provider_torrent_id)
            status = info.get("status")
            logger.debug(
                f"[RESOLVE] Torrent {result.provider_torrent_id} status: {status} "
                f"({info.get('progress', 0)}%), poll {attempt + 1}/{policy.max_attempts}"
            )
            if status in FAILED_STATUSES:
                self._fail(result, f"provider reported status '{status}'")
                return None
            if status == READY_STATUS:
                if not info.get("links"):
                    self._fail(result, "torrent finished without any links")
                    return None
                return info
            if attempt + 1 < policy.max_attempts:
                await wait_or_cancel(policy.delay_for(attempt), self.cancel_event)

        result.error = f"still not ready after {policy.max_attempts} status checks"
        result.advance(ResolutionState.TIMEOUT)
        logger.warning(
            f"[RESOLVE] Timed out waiting for torrent {result.provider_torrent_id}."
        )
        return None

    def _fail(self, result: WorkflowResult, error: str) -> WorkflowResult:
        result.error = error
        result.advance(ResolutionState.FAILED)
        logger.error(
            f"[RESOLVE] Resolution failed (torrent {result.provider_torrent_id}): {error}"
        )
        return result
