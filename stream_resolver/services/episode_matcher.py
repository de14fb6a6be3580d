# stream_resolver/services/episode_matcher.py

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from ..config import logger
from ..utils import file_basename, is_video_file
from .similarity import similarity
from .title_parser import parse_title
from .torrent_data import ParsedDescriptor, TorrentFile


class MatchReason(Enum):
    EXACT = "exact"
    RANGE = "range"
    SEASON_PACK = "season_pack"
    IMPLICIT_PACK = "implicit_pack"


def match_reason(
    descriptor: ParsedDescriptor, season: int, episode: int
) -> Optional[MatchReason]:
    """
    Explains why a parsed title covers the requested episode, or returns None.

    A title flagged as a season pack and a title carrying a season but no
    episode are each enough on their own to count as a pack of that season.
    """
    seasons = descriptor.all_seasons
    if season not in seasons:
        return None

    if descriptor.episode is not None and len(seasons) == 1:
        if descriptor.episode == episode:
            return MatchReason.EXACT
    if descriptor.episodes and episode in descriptor.episodes:
        return MatchReason.RANGE
    if descriptor.is_season_pack:
        return MatchReason.SEASON_PACK
    if not descriptor.has_episode:
        return MatchReason.IMPLICIT_PACK
    return None


def matches(descriptor: ParsedDescriptor, season: int, episode: int) -> bool:
    return match_reason(descriptor, season, episode) is not None


def needs_file_inspection(reason: Optional[MatchReason]) -> bool:
    """Only an exact single-episode title can be trusted without its file list."""
    return reason is not MatchReason.EXACT


def find_episode_file(
    files: Iterable[TorrentFile],
    season: int,
    episode: int,
    canonical_title: str | None = None,
    fallback_season: Optional[int] = None,
) -> Optional[TorrentFile]:
    """
    Picks the video file inside a torrent that holds the requested episode.

    Only files whose own name explicitly names the episode (exact or as part
    of a range) qualify. Exact matches beat ranges, then title similarity
    decides, then the larger file wins.
    """
    best: Optional[TorrentFile] = None
    best_key: tuple[int, float, int] | None = None

    for torrent_file in files:
        if not is_video_file(torrent_file.path):
            continue
        name = file_basename(torrent_file.path)
        descriptor = parse_title(name, fallback_season=fallback_season)
        reason = match_reason(descriptor, season, episode)
        if reason not in (MatchReason.EXACT, MatchReason.RANGE):
            continue

        title_score = (
            similarity(descriptor.title, canonical_title) if canonical_title else 0.0
        )
        key = (
            1 if reason is MatchReason.EXACT else 0,
            title_score,
            torrent_file.size,
        )
        logger.debug(
            f"[RANK] File '{name}' matches S{season:02d}E{episode:02d} "
            f"({reason.value}, similarity={title_score:.2f})"
        )
        if best_key is None or key > best_key:
            best, best_key = torrent_file, key

    return best
