import pytest

from stream_resolver.services.episode_matcher import (
    MatchReason,
    find_episode_file,
    match_reason,
    matches,
    needs_file_inspection,
)
from stream_resolver.services.torrent_data import ParsedDescriptor, TorrentFile


def _descriptor(**fields) -> ParsedDescriptor:
    return ParsedDescriptor(raw_title="test", **fields)


def test_exact_episode_matches_only_itself():
    descriptor = _descriptor(season=1, seasons=(1,), episode=2)

    assert match_reason(descriptor, 1, 2) is MatchReason.EXACT
    assert not matches(descriptor, 1, 3)
    assert not matches(descriptor, 2, 2)


def test_episode_range_matches_members():
    descriptor = _descriptor(season=1, seasons=(1,), episodes=(1, 2, 3))

    assert match_reason(descriptor, 1, 2) is MatchReason.RANGE
    assert not matches(descriptor, 1, 4)


@pytest.mark.parametrize("episode", [1, 5, 24])
def test_season_pack_matches_every_episode(episode):
    flagged = _descriptor(season=1, seasons=(1,), is_season_pack=True)
    implicit = _descriptor(season=1, seasons=(1,))

    assert match_reason(flagged, 1, episode) is MatchReason.SEASON_PACK
    assert match_reason(implicit, 1, episode) is MatchReason.IMPLICIT_PACK


def test_multi_season_pack_matches_included_seasons():
    descriptor = _descriptor(season=1, seasons=(1, 2, 3), is_season_pack=True)

    assert matches(descriptor, 2, 7)
    assert not matches(descriptor, 4, 1)


def test_title_without_season_never_matches():
    assert match_reason(_descriptor(), 1, 1) is None


def test_needs_file_inspection_unless_exact():
    assert not needs_file_inspection(MatchReason.EXACT)
    assert needs_file_inspection(MatchReason.RANGE)
    assert needs_file_inspection(MatchReason.SEASON_PACK)
    assert needs_file_inspection(MatchReason.IMPLICIT_PACK)


def test_find_episode_file_picks_requested_episode():
    files = [
        TorrentFile("Show Name/Show Name S01E04.mkv", 900, 0),
        TorrentFile("Show Name/Show Name S01E05.mkv", 1000, 1),
        TorrentFile("Show Name/Show Name S01E05.nfo", 10, 2),
    ]

    found = find_episode_file(files, 1, 5, "Show Name")

    assert found == files[1]


def test_find_episode_file_prefers_larger_file_on_tie():
    files = [
        TorrentFile("Show Name S01E05 720p.mkv", 500, 0),
        TorrentFile("Show Name S01E05 1080p.mkv", 2000, 1),
    ]

    assert find_episode_file(files, 1, 5, "Show Name") == files[1]


def test_find_episode_file_ignores_non_video_and_missing_episodes():
    files = [
        TorrentFile("Show Name S01E05.srt", 10, 0),
        TorrentFile("Show Name S01E06.mkv", 1000, 1),
    ]

    assert find_episode_file(files, 1, 5, "Show Name") is None


def test_find_episode_file_uses_fallback_season(mocker):
    mocker.patch(
        "stream_resolver.services.title_parser.ptt_parse_title", return_value={}
    )
    files = [TorrentFile("Season 2/Episode 5.mkv", 1000, 0)]

    assert find_episode_file(files, 2, 5, fallback_season=2) == files[0]
    assert find_episode_file(files, 2, 5) is None
