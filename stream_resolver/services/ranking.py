# stream_resolver/services/ranking.py

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Optional

from ..config import DEFAULT_SIMILARITY_THRESHOLD, logger
from ..utils import get_quality
from .episode_matcher import find_episode_file, match_reason, needs_file_inspection
from .similarity import similarity
from .title_parser import EXPLICIT_MATCHERS, parse_title
from .torrent_data import (
    Accepted,
    ParsedDescriptor,
    Rejected,
    ScoredCandidate,
    TorrentCandidate,
    TorrentFile,
)

FilesProvider = Callable[[TorrentCandidate], Awaitable[Optional[Sequence[TorrentFile]]]]

MATCH_BONUS = 100.0
LANGUAGE_WEIGHT = 1000
UNKNOWN_LANGUAGE_SCORE = 100
SIMILARITY_WEIGHT = 10
SEEDER_WEIGHT = 0.1
SEEDER_CAP = 1000
MAX_CONCURRENT_FILE_FETCHES = 4

QUALITY_BONUS = {"4k": 20, "1080p": 15, "720p": 10}
HDR_BONUS = 3
DOLBY_VISION_BONUS = 3

# Every spelling in a group refers to the same language.
_LANGUAGE_GROUPS: tuple[tuple[str, ...], ...] = (
    ("en", "eng", "english"),
    ("ta", "tam", "tamil"),
    ("hi", "hin", "hindi"),
    ("te", "tel", "telugu"),
    ("ml", "mal", "malayalam"),
    ("kn", "kan", "kannada"),
    ("es", "spa", "esp", "spanish"),
    ("fr", "fre", "fra", "french"),
    ("de", "ger", "deu", "german"),
    ("it", "ita", "italian"),
    ("pt", "por", "portuguese"),
    ("ru", "rus", "russian"),
    ("ja", "jpn", "japanese"),
    ("ko", "kor", "korean"),
    ("zh", "chi", "zho", "chinese"),
)

LANGUAGE_ALIASES: dict[str, str] = {
    alias: group[0] for group in _LANGUAGE_GROUPS for alias in group
}


def canonical_language(code: str | None) -> str | None:
    if not code:
        return None
    value = code.strip().lower()
    return LANGUAGE_ALIASES.get(value, value)


@dataclass(frozen=True)
class RankingContext:
    """What the candidates are being ranked against."""

    canonical_title: str
    content_type: str
    season: Optional[int] = None
    episode: Optional[int] = None
    year: Optional[int] = None
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD

    @property
    def is_series(self) -> bool:
        return self.content_type == "series"


def language_score(
    candidate: TorrentCandidate,
    descriptor: ParsedDescriptor,
    preferred_languages: Sequence[str],
) -> int:
    """
    Scores a candidate by the position of its best preferred language.

    Provider-declared languages are consulted first, then languages parsed
    from the title. Entry ``i`` of ``n`` preferred languages is worth
    ``(n - i) * 1000``. A candidate whose languages match none of the
    preferences scores 0, and one without any language information 100.
    """
    preferred = [canonical_language(lang) for lang in preferred_languages if lang]
    n = len(preferred)

    for source in (candidate.languages, descriptor.languages):
        present = {canonical_language(lang) for lang in source if lang}
        present.discard(None)
        if not present:
            continue
        for i, lang in enumerate(preferred):
            if lang in present:
                return (n - i) * LANGUAGE_WEIGHT
        return 0

    return UNKNOWN_LANGUAGE_SCORE


def quality_bonus(descriptor: ParsedDescriptor) -> int:
    bonus = QUALITY_BONUS.get(get_quality(descriptor.resolution), 0)
    if descriptor.has_hdr:
        bonus += HDR_BONUS
    if descriptor.has_dolby_vision:
        bonus += DOLBY_VISION_BONUS
    return bonus


def _movie_gate(descriptor: ParsedDescriptor, context: RankingContext) -> str | None:
    if descriptor.has_episode or descriptor.all_seasons:
        return "title looks like a series release"
    if descriptor.year and context.year and abs(descriptor.year - context.year) > 1:
        return f"year {descriptor.year} does not match {context.year}"
    return None


async def score_candidate(
    candidate: TorrentCandidate,
    context: RankingContext,
    preferred_languages: Sequence[str],
    files_provider: FilesProvider | None = None,
) -> ScoredCandidate:
    """Scores one candidate, returning a Rejected verdict when it cannot be used."""
    if context.is_series:
        descriptor = parse_title(candidate.name)
    else:
        descriptor = parse_title(candidate.name, matchers=EXPLICIT_MATCHERS)

    def _reject(reason: str) -> ScoredCandidate:
        logger.debug(f"[RANK] Rejected '{candidate.name}': {reason}")
        return ScoredCandidate(candidate, Rejected(reason), descriptor)

    title_text = candidate.content_title or descriptor.title or descriptor.sanitized_title
    title_similarity = similarity(title_text, context.canonical_title)
    if title_similarity < context.similarity_threshold:
        return _reject(
            f"title similarity {title_similarity:.2f} is below "
            f"{context.similarity_threshold:.2f}"
        )

    matched_file: TorrentFile | None = None
    if context.is_series:
        if context.season is None or context.episode is None:
            return _reject("series request without season and episode")
        reason = match_reason(descriptor, context.season, context.episode)
        if reason is None:
            return _reject(
                f"does not contain S{context.season:02d}E{context.episode:02d}"
            )
        if needs_file_inspection(reason):
            files = candidate.files
            if files is None and files_provider is not None:
                files = await files_provider(candidate)
            if not files:
                return _reject(f"{reason.value} without a usable file list")
            matched_file = find_episode_file(
                files,
                context.season,
                context.episode,
                context.canonical_title,
                fallback_season=descriptor.season,
            )
            if matched_file is None:
                return _reject(
                    f"no file inside for S{context.season:02d}E{context.episode:02d}"
                )
    else:
        gate_failure = _movie_gate(descriptor, context)
        if gate_failure:
            return _reject(gate_failure)

    score = title_similarity * SIMILARITY_WEIGHT
    score += MATCH_BONUS
    score += language_score(candidate, descriptor, preferred_languages)
    score += quality_bonus(descriptor)
    score += SEEDER_WEIGHT * min(max(candidate.seeders, 0), SEEDER_CAP)

    logger.debug(
        f"[RANK] Accepted '{candidate.name}' with score {score:.1f} "
        f"(similarity={title_similarity:.2f}, seeders={candidate.seeders})"
    )
    return ScoredCandidate(
        candidate,
        Accepted(score),
        descriptor,
        matched_file_index=matched_file.index if matched_file else None,
        matched_file_path=matched_file.path if matched_file else None,
    )


async def rank_candidates(
    candidates: Sequence[TorrentCandidate],
    context: RankingContext,
    preferred_languages: Sequence[str],
    files_provider: FilesProvider | None = None,
    max_concurrent_fetches: int = MAX_CONCURRENT_FILE_FETCHES,
) -> list[ScoredCandidate]:
    """
    Scores all candidates concurrently and returns the accepted ones, best
    first. File lists are fetched through ``files_provider`` only when a
    candidate needs them, with at most ``max_concurrent_fetches`` in flight.
    """
    semaphore = asyncio.Semaphore(max_concurrent_fetches)

    async def _bounded_files(
        candidate: TorrentCandidate,
    ) -> Optional[Sequence[TorrentFile]]:
        assert files_provider is not None
        async with semaphore:
            try:
                return await files_provider(candidate)
            except Exception as e:  # noqa: BLE001
                logger.warning(
                    f"[RANK] Could not fetch files for '{candidate.name}': {e}"
                )
                return None

    provider = _bounded_files if files_provider is not None else None
    scored = await asyncio.gather(
        *(
            score_candidate(candidate, context, preferred_languages, provider)
            for candidate in candidates
        )
    )

    accepted = [item for item in scored if item.accepted]
    accepted.sort(key=lambda item: (item.score, item.candidate.seeders), reverse=True)
    logger.info(
        f"[RANK] {len(accepted)} of {len(candidates)} candidates accepted for "
        f"'{context.canonical_title}'."
    )
    return accepted
