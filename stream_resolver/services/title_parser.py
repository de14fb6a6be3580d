# stream_resolver/services/title_parser.py

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from PTT import parse_title as ptt_parse_title

from ..config import logger
from .torrent_data import ParsedDescriptor

# --- Sanitization patterns, applied in order ---

# [10集], 【字幕组】, (Русский) ... any bracket block holding a non-Latin character.
_NON_LATIN_BLOCK = re.compile(
    r"[\[\u3010(\uff08][^\]\u3011)\uff09]*?[^\x00-\u024f\s]"
    r"[^\]\u3011)\uff09]*?[\]\u3011)\uff09]"
)
# Cyrillic, Arabic, Thai, Hangul Jamo, CJK, Hangul syllables and fullwidth forms.
_NON_LATIN_RUN = re.compile(
    r"[\u0400-\u04ff\u0600-\u06ff\u0e00-\u0e7f\u1100-\u11ff\u2e80-\u9fff"
    r"\uac00-\ud7af\uf900-\ufaff\uff00-\uffef]+"
)
# [rarbg.to], [ www.site.org ], [5.1] ... tags holding anything but alnum/dash/space.
_NOISY_TAG = re.compile(r"\[[^\]]*[^A-Za-z0-9\-\s\]][^\]]*\]")
_URLS_AND_EMAILS = re.compile(
    r"(?i)\b(?:https?://\S+|www\.\S+|[\w.+-]+@[\w-]+(?:\.[\w-]+)+)"
)
_EMPTY_BRACKETS = re.compile(r"[\[(]\s*[\])]")
_SEPARATORS = re.compile(r"[._]")
_WHITESPACE = re.compile(r"\s+")


def _sanitize_pass(text: str) -> str:
    text = _NON_LATIN_BLOCK.sub(" ", text)
    text = _NON_LATIN_RUN.sub(" ", text)
    text = _NOISY_TAG.sub(" ", text)
    text = _URLS_AND_EMAILS.sub(" ", text)
    text = _EMPTY_BRACKETS.sub(" ", text)
    text = _SEPARATORS.sub(" ", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip(" -")


def sanitize_title(raw_title: str) -> str:
    """
    Cleans a raw torrent name so the structural parser sees only meaningful
    tokens. Applying it to already sanitized text returns that text unchanged.
    """
    if not raw_title:
        return ""

    text = _sanitize_pass(raw_title)
    # Removing one token can expose another (e.g. "( [] )"), so run to a fixed point.
    while True:
        cleaned = _sanitize_pass(text)
        if cleaned == text:
            return text
        text = cleaned


# --- Season/episode fallback chain ---

_SEP = r"[\s._-]*"


@dataclass(frozen=True)
class FallbackMatcher:
    """One regex in the ordered season/episode fallback chain.

    ``season_group`` is ``None`` for matchers that only recover an episode.
    ``source`` selects whether the raw or the sanitized title is searched.
    """

    name: str
    pattern: re.Pattern[str]
    season_group: Optional[int] = 1
    episode_group: int = 2
    source: str = "raw"

    def extract(
        self, raw_title: str, sanitized_title: str
    ) -> tuple[Optional[int], int] | None:
        text = sanitized_title if self.source == "sanitized" else raw_title
        match = self.pattern.search(text)
        if not match:
            return None
        season = (
            int(match.group(self.season_group))
            if self.season_group is not None
            else None
        )
        return season, int(match.group(self.episode_group))


EXPLICIT_MATCHERS: tuple[FallbackMatcher, ...] = (
    FallbackMatcher(
        "season_episode_words",
        re.compile(
            rf"(?i)\bseason{_SEP}(\d{{1,2}}){_SEP}(?:episode|ep){_SEP}(\d{{1,3}})\b"
        ),
    ),
    FallbackMatcher(
        "sxxexx",
        re.compile(r"(?i)\bs(\d{1,2})[\s._-]?ep?[\s._-]?(\d{1,3})(?!\d)"),
    ),
    FallbackMatcher("nxm", re.compile(r"(?i)\b(\d{1,2})x(\d{1,3})\b")),
)

FALLBACK_MATCHERS: tuple[FallbackMatcher, ...] = EXPLICIT_MATCHERS + (
    # "Show 102 HDTV" -> S1E02. "H 264" is a codec, not an episode.
    FallbackMatcher(
        "three_digit",
        re.compile(r"(?<![Hh]\s)(?<!\d)\b(\d)(\d{2})\b(?!\d)"),
        source="sanitized",
    ),
    FallbackMatcher(
        "dotted",
        re.compile(r"(?<!\d)(?<!\d\.)\b(\d{1,2})\.(\d{2})\b(?!\.\d)"),
    ),
    FallbackMatcher(
        "episode_only",
        re.compile(r"(?i)\b(?:episode|ep|e)[\s._-]?(\d{1,3})\b"),
        season_group=None,
        episode_group=1,
    ),
)


def apply_fallback_chain(
    raw_title: str,
    sanitized_title: str,
    season: Optional[int],
    episode: Optional[int],
    matchers: tuple[FallbackMatcher, ...] = FALLBACK_MATCHERS,
) -> tuple[Optional[int], Optional[int]]:
    """Fills missing season/episode values, stopping once both are known."""
    for matcher in matchers:
        if season is not None and episode is not None:
            break
        found = matcher.extract(raw_title, sanitized_title)
        if found is None:
            continue
        found_season, found_episode = found
        logger.debug(
            f"[PARSER] Fallback '{matcher.name}' matched '{raw_title}': "
            f"season={found_season} episode={found_episode}"
        )
        if season is None and found_season is not None:
            season = found_season
        if episode is None:
            episode = found_episode
    return season, episode


# --- Structural parsing ---


def _safe_structural_parse(text: str) -> dict[str, Any]:
    """Runs PTT, returning an empty result instead of raising."""
    if not text:
        return {}
    try:
        parsed = ptt_parse_title(text)
    except Exception as e:  # noqa: BLE001
        logger.warning(f"[PARSER] Failed to parse torrent title '{text}': {e}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _int_tuple(values: Any) -> tuple[int, ...]:
    if not values:
        return ()
    if isinstance(values, int):
        return (values,)
    out: list[int] = []
    for value in values:
        try:
            out.append(int(value))
        except (TypeError, ValueError):
            continue
    return tuple(out)


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_title(
    raw_title: str | None,
    fallback_season: Optional[int] = None,
    matchers: tuple[FallbackMatcher, ...] = FALLBACK_MATCHERS,
) -> ParsedDescriptor:
    """
    Parses a torrent name or file path into a ParsedDescriptor.

    Never raises: input that cannot be understood produces a descriptor whose
    fields are left empty. ``fallback_season`` is used when only an episode
    number could be recovered, e.g. for a file inside a season folder.
    """
    raw = raw_title if isinstance(raw_title, str) else ""
    sanitized = sanitize_title(raw)
    parsed = _safe_structural_parse(sanitized)

    seasons = _int_tuple(parsed.get("seasons"))
    episodes = _int_tuple(parsed.get("episodes"))
    season = seasons[0] if seasons else None

    if season is None or not episodes:
        season, recovered_episode = apply_fallback_chain(
            raw,
            sanitized,
            season,
            episodes[0] if episodes else None,
            matchers,
        )
        if not episodes and recovered_episode is not None:
            episodes = (recovered_episode,)
        if not seasons and season is not None:
            seasons = (season,)

    if season is None and episodes and fallback_season is not None:
        season = fallback_season
        seasons = (fallback_season,)

    languages = tuple(
        str(lang).lower() for lang in (parsed.get("languages") or []) if lang
    )
    hdr_tags = [str(tag).upper() for tag in (parsed.get("hdr") or [])]
    is_complete = bool(parsed.get("complete"))

    title = parsed.get("title")
    title = title.strip(" -") or None if isinstance(title, str) else None

    return ParsedDescriptor(
        raw_title=raw,
        sanitized_title=sanitized,
        title=title,
        year=_to_int(parsed.get("year")),
        season=season,
        seasons=seasons,
        episode=episodes[0] if len(episodes) == 1 else None,
        episodes=episodes if len(episodes) > 1 else (),
        resolution=parsed.get("resolution") or None,
        codec=parsed.get("codec") or None,
        language=languages[0] if languages else None,
        languages=languages,
        group=parsed.get("group") or None,
        is_season_pack=bool(seasons) and (is_complete or not episodes),
        is_complete=is_complete,
        has_hdr=any(tag.startswith("HDR") for tag in hdr_tags),
        has_dolby_vision=any(tag in ("DV", "DOVI", "DOLBY VISION") for tag in hdr_tags),
    )
