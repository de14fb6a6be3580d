# stream_resolver/services/stream_service.py

from __future__ import annotations

import dataclasses
from collections.abc import Awaitable, Sequence
from typing import Any, Optional

import httpx

from ..config import (
    DEFAULT_MIN_SEEDERS,
    DEFAULT_PREFERRED_LANGUAGES,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_SIMILARITY_THRESHOLD,
    MIN_TARGETED_RESULTS,
    logger,
)
from ..state import ResolutionStore
from ..utils import get_quality
from .bitmagnet import BitmagnetClient, SearchProviderError
from .metadata import MetadataService
from .ranking import RankingContext, rank_candidates
from .realdebrid import RealDebridClient
from .resolution import (
    ResolutionError,
    ResolutionWorkflow,
    ResolutionWorkflowRequest,
    select_output_link,
)
from .resolution_cache import ResolutionCache
from .retry import ProviderRejected, RetryPolicy
from .torrent_data import (
    MediaMetadata,
    MediaRequest,
    ResolutionKey,
    ResolutionRecord,
    ScoredCandidate,
    StreamOption,
    TorrentCandidate,
    TorrentFile,
)


def merge_candidates(
    *groups: Sequence[TorrentCandidate],
) -> list[TorrentCandidate]:
    """Concatenates candidate lists, keeping the first entry per info hash."""
    seen: set[str] = set()
    merged: list[TorrentCandidate] = []
    for group in groups:
        for candidate in group:
            if candidate.info_hash in seen:
                continue
            seen.add(candidate.info_hash)
            merged.append(candidate)
    return merged


def record_serves(
    record: ResolutionRecord, request: MediaRequest, file_path: Optional[str] = None
) -> bool:
    """True when a stored record can deliver a link for ``request``."""
    if not record.torrent_info:
        return record.metadata_id == request.stream_id and bool(record.direct_link)
    return (
        select_output_link(
            record.torrent_info,
            request.content_type,
            request.season,
            request.episode,
            file_path,
        )
        is not None
    )


class StreamService:
    """
    Ties metadata, search, ranking and resolution together for one request.

    Failures never escape: they are logged and reported as an empty list or
    ``None`` (no stream available).
    """

    def __init__(
        self,
        search_client: BitmagnetClient,
        debrid_client: RealDebridClient,
        metadata_service: MetadataService,
        store: ResolutionStore,
        preferred_languages: Sequence[str] = tuple(DEFAULT_PREFERRED_LANGUAGES),
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        min_seeders: int = DEFAULT_MIN_SEEDERS,
        search_limit: int = DEFAULT_SEARCH_LIMIT,
        polling_policy: RetryPolicy | None = None,
    ) -> None:
        self.search_client = search_client
        self.debrid_client = debrid_client
        self.metadata_service = metadata_service
        self.store = store
        self.cache = ResolutionCache(store)
        self.preferred_languages = list(preferred_languages)
        self.similarity_threshold = similarity_threshold
        self.min_seeders = min_seeders
        self.search_limit = search_limit
        self.polling_policy = polling_policy or RetryPolicy.named("polling")

    @classmethod
    def from_config(cls, configuration: dict[str, Any]) -> "StreamService":
        """Builds the service and its clients from ``get_configuration()`` output."""
        retry = configuration.get("retry", {})
        matching = configuration.get("matching", {})
        return cls(
            search_client=BitmagnetClient(
                configuration["bitmagnet"]["graphql_url"],
                retry_policy=RetryPolicy.named("search", retry),
            ),
            debrid_client=RealDebridClient(
                configuration["realdebrid"]["api_token"],
                retry_policy=RetryPolicy.named("resolution", retry),
            ),
            metadata_service=MetadataService(
                configuration.get("tmdb", {}).get("api_key"),
                retry_policy=RetryPolicy.named("metadata", retry),
            ),
            store=ResolutionStore(configuration.get("storage", {}).get("records_file")),
            preferred_languages=matching.get(
                "preferred_languages", DEFAULT_PREFERRED_LANGUAGES
            ),
            similarity_threshold=matching.get(
                "similarity_threshold", DEFAULT_SIMILARITY_THRESHOLD
            ),
            min_seeders=matching.get("min_seeders", DEFAULT_MIN_SEEDERS),
            search_limit=matching.get("search_limit", DEFAULT_SEARCH_LIMIT),
            polling_policy=RetryPolicy.named("polling", retry),
        )

    # --- Searching and ranking ---

    async def _search(self, query: str, content_type: str) -> list[TorrentCandidate]:
        try:
            return await self.search_client.search(
                query, content_type, min_seeders=self.min_seeders, limit=self.search_limit
            )
        except (SearchProviderError, httpx.HTTPError) as e:
            logger.error(f"[STREAMS] Search for '{query}' failed: {e}")
            return []

    async def _files_for(self, candidate: TorrentCandidate) -> list[TorrentFile]:
        files = await self.search_client.files_for(candidate.info_hash)
        if not files and candidate.files_count == 1:
            logger.info(
                f"[STREAMS] No file list for single-file torrent '{candidate.name}'. "
                "Using the torrent name."
            )
            return [TorrentFile(path=candidate.name, size=candidate.size, index=0)]
        return files

    async def _rank(
        self, candidates: Sequence[TorrentCandidate], context: RankingContext
    ) -> list[ScoredCandidate]:
        return await rank_candidates(
            candidates, context, self.preferred_languages, files_provider=self._files_for
        )

    async def _ranked_for(
        self, request: MediaRequest, metadata: MediaMetadata
    ) -> list[ScoredCandidate]:
        context = RankingContext(
            canonical_title=metadata.title,
            content_type=request.content_type,
            season=request.season,
            episode=request.episode,
            year=metadata.year,
            similarity_threshold=self.similarity_threshold,
        )

        if not request.is_series:
            candidates = await self._search(metadata.title, request.content_type)
            return await self._rank(candidates, context)

        targeted_query = f"{metadata.title} S{request.season:02d}"
        targeted = await self._search(targeted_query, request.content_type)
        ranked = await self._rank(targeted, context)
        if len(ranked) >= MIN_TARGETED_RESULTS:
            return ranked

        logger.info(
            f"[STREAMS] Only {len(ranked)} results for '{targeted_query}'. "
            f"Broadening the search to '{metadata.title}'."
        )
        broad = await self._search(metadata.title, request.content_type)
        known = {candidate.info_hash for candidate in targeted}
        extra = [candidate for candidate in broad if candidate.info_hash not in known]
        if not extra:
            return ranked
        return await self._rank(merge_candidates(targeted, extra), context)

    async def find_streams(self, request: MediaRequest) -> list[StreamOption]:
        """Returns the ranked stream options for a request, best first."""
        if not request.is_complete:
            logger.error(
                f"[STREAMS] Series request {request.metadata_id} lacks season or "
                "episode. No streams available."
            )
            return []

        metadata = await self.metadata_service.lookup(
            request.metadata_id, request.content_type
        )
        if metadata is None:
            logger.error(
                f"[STREAMS] No metadata for {request.metadata_id}. No streams available."
            )
            return []

        ranked = await self._ranked_for(request, metadata)
        options: list[StreamOption] = []
        for scored in ranked:
            key = ResolutionKey(
                scored.candidate.info_hash, request.content_type, request.stream_id
            )
            stored = await self.store.find_compatible(
                key,
                lambda record, path=scored.matched_file_path: record_serves(
                    record, request, path
                ),
            )
            options.append(StreamOption(scored, is_cached=stored is not None))

        logger.info(
            f"[STREAMS] {len(options)} streams for {request.stream_id} "
            f"('{metadata.title}')."
        )
        return options

    # --- Resolution ---

    async def _produce(
        self, request: MediaRequest, key: ResolutionKey, scored: ScoredCandidate | None
    ) -> ResolutionRecord:
        workflow = ResolutionWorkflow(self.debrid_client, self.polling_policy)
        result = await workflow.run(
            ResolutionWorkflowRequest(
                key=key,
                season=request.season,
                episode=request.episode,
                file_index=scored.matched_file_index if scored else None,
                file_path=scored.matched_file_path if scored else None,
            )
        )
        if not result.ok:
            raise ResolutionError(result)

        language = quality = None
        seeders = 0
        if scored is not None:
            declared = scored.candidate.languages
            language = declared[0] if declared else scored.descriptor.language
            quality = get_quality(scored.descriptor.resolution)
            seeders = scored.candidate.seeders
        return ResolutionRecord(
            info_hash=key.info_hash,
            content_type=key.content_type,
            metadata_id=key.metadata_id,
            provider_torrent_id=result.provider_torrent_id,
            selected_file_ids=result.selected_file_ids,
            source_link=result.source_link,
            direct_link=result.direct_link,
            torrent_info=result.torrent_info,
            language=language,
            quality=quality,
            seeders=seeders,
        )

    async def _link_for(
        self,
        record: ResolutionRecord,
        request: MediaRequest,
        file_path: Optional[str],
    ) -> Optional[str]:
        """
        Derives the direct link for ``request`` from a stored record. The
        stored direct link is reused only when the same source link applies,
        so a record made for one episode can serve another from the same pack.
        """
        if not record.torrent_info:
            return record.direct_link if record.metadata_id == request.stream_id else None

        source_link = select_output_link(
            record.torrent_info,
            request.content_type,
            request.season,
            request.episode,
            file_path,
        )
        if not source_link:
            logger.error(
                f"[STREAMS] Stored torrent {record.info_hash} has no link for "
                f"{request.stream_id}."
            )
            return None
        if source_link == record.source_link and record.direct_link:
            return record.direct_link

        direct_link = await self.debrid_client.unrestrict_link(source_link)
        await self.store.upsert(
            dataclasses.replace(
                record,
                metadata_id=request.stream_id,
                source_link=source_link,
                direct_link=direct_link,
            )
        )
        return direct_link

    async def resolve_stream(
        self,
        request: MediaRequest,
        info_hash: str,
        scored: ScoredCandidate | None = None,
    ) -> Optional[str]:
        """Turns one torrent into a direct link for the request, or None."""
        if not request.is_complete:
            logger.error(f"[STREAMS] Incomplete series request {request.stream_id}.")
            return None

        key = ResolutionKey(info_hash, request.content_type, request.stream_id)
        file_path = scored.matched_file_path if scored else None

        def _usable(record: ResolutionRecord) -> bool:
            return record_serves(record, request, file_path)

        def _produce() -> Awaitable[ResolutionRecord]:
            return self._produce(request, key, scored)

        try:
            record = await self.cache.resolve(key, _produce, _usable)
            if not _usable(record):
                logger.info(
                    f"[STREAMS] Shared resolution of {key.info_hash} does not hold "
                    f"{request.stream_id}. Resolving it separately."
                )
                record = await self.cache.resolve(key, _produce, _usable)
            link = await self._link_for(record, request, file_path)
        except ResolutionError as e:
            logger.error(f"[STREAMS] Could not resolve {key.info_hash}: {e}")
            return None
        except (ProviderRejected, httpx.HTTPError) as e:
            logger.error(f"[STREAMS] Provider error while resolving {key.info_hash}: {e}")
            return None

        if link:
            logger.info(f"[STREAMS] Resolved {request.stream_id} via {key.info_hash}.")
        return link

    async def best_stream(self, request: MediaRequest) -> Optional[str]:
        """Resolves the top-ranked stream for the request."""
        options = await self.find_streams(request)
        if not options:
            logger.warning(f"[STREAMS] No stream available for {request.stream_id}.")
            return None
        top = options[0]
        return await self.resolve_stream(request, top.info_hash, top.scored)
