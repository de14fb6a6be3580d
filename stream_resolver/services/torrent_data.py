from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..utils import format_bytes, get_quality


@dataclass(frozen=True)
class TorrentFile:
    """A single file inside a torrent as reported by the search provider."""

    path: str
    size: int = 0
    index: int = 0


@dataclass(frozen=True)
class TorrentCandidate:
    """Structured information for a torrent returned by the search provider.

    Attributes:
        name: Raw display name of the torrent.
        info_hash: Content hash, unique per torrent.
        size: Declared total size in bytes.
        seeders: Number of seeders reported by the provider.
        leechers: Number of leechers reported by the provider.
        languages: Provider language ids (e.g. ``"en"``, ``"ta"``).
        files: Embedded file list, when the provider returned one.
        content_title: Optional title guess made by the provider itself.
        files_count: Number of files the provider knows the torrent holds.
    """

    name: str
    info_hash: str
    size: int = 0
    seeders: int = 0
    leechers: int = 0
    languages: tuple[str, ...] = ()
    files: Optional[tuple[TorrentFile, ...]] = None
    content_title: Optional[str] = None
    files_count: Optional[int] = None


@dataclass(frozen=True)
class ParsedDescriptor:
    """Structured fields extracted from a torrent name or file path."""

    raw_title: str
    sanitized_title: str = ""
    title: Optional[str] = None
    year: Optional[int] = None
    season: Optional[int] = None
    seasons: tuple[int, ...] = ()
    episode: Optional[int] = None
    episodes: tuple[int, ...] = ()
    resolution: Optional[str] = None
    codec: Optional[str] = None
    language: Optional[str] = None
    languages: tuple[str, ...] = ()
    group: Optional[str] = None
    is_season_pack: bool = False
    is_complete: bool = False
    has_hdr: bool = False
    has_dolby_vision: bool = False

    @property
    def has_episode(self) -> bool:
        return self.episode is not None or bool(self.episodes)

    @property
    def all_seasons(self) -> tuple[int, ...]:
        if self.seasons:
            return self.seasons
        return (self.season,) if self.season is not None else ()

    @property
    def all_episodes(self) -> tuple[int, ...]:
        if self.episodes:
            return self.episodes
        return (self.episode,) if self.episode is not None else ()


@dataclass(frozen=True)
class Accepted:
    score: float


@dataclass(frozen=True)
class Rejected:
    reason: str


Verdict = Union[Accepted, Rejected]


@dataclass(frozen=True)
class ScoredCandidate:
    """A candidate together with its ranking verdict.

    ``matched_file_index`` is ``None`` when the provider default (largest
    file) should be used.
    """

    candidate: TorrentCandidate
    verdict: Verdict
    descriptor: ParsedDescriptor
    matched_file_index: Optional[int] = None
    matched_file_path: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return isinstance(self.verdict, Accepted)

    @property
    def score(self) -> float:
        return self.verdict.score if isinstance(self.verdict, Accepted) else 0.0


@dataclass(frozen=True)
class ResolutionKey:
    """Identity of one "turn this torrent into a link" workflow."""

    info_hash: str
    content_type: str
    metadata_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "info_hash", self.info_hash.lower())

    def broad(self) -> "ResolutionKey":
        return ResolutionKey(self.info_hash, self.content_type)

    @property
    def storage_key(self) -> str:
        return f"{self.info_hash}|{self.content_type}|{self.metadata_id or ''}"


@dataclass
class ResolutionRecord:
    """Persisted result of a completed resolution workflow."""

    info_hash: str
    content_type: str
    metadata_id: Optional[str] = None
    provider_torrent_id: Optional[str] = None
    selected_file_ids: list[int] = field(default_factory=list)
    source_link: Optional[str] = None
    direct_link: Optional[str] = None
    torrent_info: dict[str, Any] = field(default_factory=dict)
    language: Optional[str] = None
    quality: Optional[str] = None
    seeders: int = 0
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)

    @property
    def key(self) -> ResolutionKey:
        return ResolutionKey(self.info_hash, self.content_type, self.metadata_id)


@dataclass(frozen=True)
class MediaRequest:
    """A stream request for a movie or a single show episode."""

    content_type: str
    metadata_id: str
    season: Optional[int] = None
    episode: Optional[int] = None

    @classmethod
    def from_stremio_id(cls, content_type: str, stremio_id: str) -> "MediaRequest":
        """
        Builds a request from ids like ``tt0944947:1:2`` or ``tt0133093``.
        Raises ValueError for series ids without season and episode.
        """
        parts = stremio_id.split(":")
        if content_type != "series":
            return cls(content_type, parts[0])
        if len(parts) < 3:
            raise ValueError(f"Series id '{stremio_id}' lacks season and episode.")
        return cls(content_type, parts[0], int(parts[1]), int(parts[2]))

    @property
    def is_series(self) -> bool:
        return self.content_type == "series"

    @property
    def is_complete(self) -> bool:
        """Series requests need both season and episode."""
        return not self.is_series or (
            self.season is not None and self.episode is not None
        )

    @property
    def stream_id(self) -> str:
        if self.is_series and self.season is not None and self.episode is not None:
            return f"{self.metadata_id}:{self.season}:{self.episode}"
        return self.metadata_id


@dataclass(frozen=True)
class MediaMetadata:
    title: str
    year: Optional[int] = None
    source: str = ""


@dataclass(frozen=True)
class StreamOption:
    """A ranked candidate ready to be offered to the user."""

    scored: ScoredCandidate
    is_cached: bool = False

    @property
    def info_hash(self) -> str:
        return self.scored.candidate.info_hash

    @property
    def quality(self) -> str:
        return get_quality(self.scored.descriptor.resolution)

    @property
    def language(self) -> str:
        descriptor = self.scored.descriptor
        declared = self.scored.candidate.languages
        return (declared[0] if declared else descriptor.language) or "und"

    @property
    def size_label(self) -> str:
        return format_bytes(self.scored.candidate.size)

    def describe(self) -> str:
        """One-line summary shown to the user, e.g. in the CLI listing."""
        marker = "cached" if self.is_cached else "uncached"
        candidate = self.scored.candidate
        return (
            f"[{marker}] {candidate.name} | {self.quality} | {self.language} | "
            f"{self.size_label} | {candidate.seeders} seeders | "
            f"score {self.scored.score:.1f}"
        )
