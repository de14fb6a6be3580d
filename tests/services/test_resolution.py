from unittest.mock import AsyncMock

import httpx
import pytest

from stream_resolver.services.realdebrid import RealDebridClient
from stream_resolver.services.resolution import (
    ResolutionError,
    ResolutionState,
    ResolutionWorkflow,
    ResolutionWorkflowRequest,
    WorkflowResult,
    provider_file_id,
    select_output_link,
)
from stream_resolver.services.retry import ProviderRejected, RetryPolicy
from stream_resolver.services.torrent_data import ResolutionKey

HASH = "abcdef0123456789abcdef0123456789abcdef01"

PACK_INFO = {
    "id": "RD1",
    "hash": HASH,
    "filename": "Show Name S01 1080p",
    "status": "downloaded",
    "files": [
        {"id": 1, "path": "/Show Name S01E01.mkv", "bytes": 100, "selected": 1},
        {"id": 2, "path": "/Show Name S01E02.mkv", "bytes": 100, "selected": 1},
        {"id": 3, "path": "/sample.txt", "bytes": 1, "selected": 0},
    ],
    "links": ["https://real-debrid.com/d/E01", "https://real-debrid.com/d/E02"],
}


@pytest.fixture
def client():
    client = AsyncMock(spec=RealDebridClient)
    client.find_torrent_by_hash.return_value = None
    client.add_magnet.return_value = "RD1"
    client.unrestrict_link.side_effect = lambda link: link.replace(
        "real-debrid.com/d", "download.example"
    )
    return client


@pytest.fixture
def fast_polling(mocker):
    mocker.patch("asyncio.sleep", new_callable=AsyncMock)
    return RetryPolicy(max_attempts=3, initial_delay=2.0, max_delay=20.0, multiplier=1.5)


def _series_request(**fields) -> ResolutionWorkflowRequest:
    return ResolutionWorkflowRequest(
        key=ResolutionKey(HASH, "series", "tt1:1:2"), season=1, episode=2, **fields
    )


@pytest.mark.asyncio
async def test_workflow_reaches_ready(client, fast_polling):
    client.torrent_info.side_effect = [
        {"status": "downloading", "progress": 40},
        PACK_INFO,
    ]

    result = await ResolutionWorkflow(client, fast_polling).run(_series_request())

    assert result.state is ResolutionState.READY
    assert result.history == [
        ResolutionState.INIT,
        ResolutionState.SUBMITTED,
        ResolutionState.FILES_SELECTED,
        ResolutionState.POLLING,
        ResolutionState.READY,
    ]
    assert result.provider_torrent_id == "RD1"
    assert result.selected_file_ids == [1, 2]
    assert result.source_link == "https://real-debrid.com/d/E02"
    assert result.direct_link == "https://download.example/E02"
    client.add_magnet.assert_awaited_once_with(HASH)
    client.select_files.assert_awaited_once_with("RD1", "all")


@pytest.mark.asyncio
async def test_workflow_selects_matched_file_by_path(client, fast_polling):
    client.torrent_info.side_effect = [
        {"status": "waiting_files_selection", "files": PACK_INFO["files"]},
        PACK_INFO,
    ]

    result = await ResolutionWorkflow(client, fast_polling).run(
        _series_request(file_index=1, file_path="Show Name S01E02.mkv")
    )

    assert result.ok
    client.select_files.assert_awaited_once_with("RD1", [2])


@pytest.mark.asyncio
async def test_dead_torrent_fails_without_more_status_checks(client, fast_polling):
    client.torrent_info.return_value = {"status": "dead"}

    result = await ResolutionWorkflow(client, fast_polling).run(_series_request())

    assert result.state is ResolutionState.FAILED
    assert ResolutionState.TIMEOUT not in result.history
    assert "dead" in result.error
    assert client.torrent_info.await_count == 1
    client.unrestrict_link.assert_not_awaited()


@pytest.mark.asyncio
async def test_never_finishing_torrent_times_out(client, fast_polling):
    client.torrent_info.return_value = {"status": "downloading", "progress": 1}

    result = await ResolutionWorkflow(client, fast_polling).run(_series_request())

    assert result.state is ResolutionState.TIMEOUT
    assert ResolutionState.FAILED not in result.history
    assert client.torrent_info.await_count == 3


@pytest.mark.asyncio
async def test_downloaded_without_links_fails(client, fast_polling):
    client.torrent_info.return_value = {"status": "downloaded", "links": []}

    result = await ResolutionWorkflow(client, fast_polling).run(_series_request())

    assert result.state is ResolutionState.FAILED


@pytest.mark.asyncio
async def test_existing_provider_torrent_is_reused(client, fast_polling):
    client.find_torrent_by_hash.return_value = {"id": "OLD", "status": "downloaded"}
    client.torrent_info.return_value = PACK_INFO

    result = await ResolutionWorkflow(client, fast_polling).run(_series_request())

    assert result.ok
    assert result.provider_torrent_id == "OLD"
    client.add_magnet.assert_not_awaited()
    client.select_files.assert_not_awaited()


@pytest.mark.asyncio
async def test_dead_existing_torrent_is_resubmitted(client, fast_polling):
    client.find_torrent_by_hash.return_value = {"id": "OLD", "status": "dead"}
    client.torrent_info.return_value = PACK_INFO

    result = await ResolutionWorkflow(client, fast_polling).run(_series_request())

    assert result.provider_torrent_id == "RD1"
    client.add_magnet.assert_awaited_once()


@pytest.mark.asyncio
async def test_provider_rejection_fails(client, fast_polling):
    client.add_magnet.side_effect = ProviderRejected("infringing file", status_code=451)

    result = await ResolutionWorkflow(client, fast_polling).run(_series_request())

    assert result.state is ResolutionState.FAILED
    assert result.history == [ResolutionState.INIT, ResolutionState.FAILED]


@pytest.mark.asyncio
async def test_exhausted_transport_errors_fail(client, fast_polling):
    client.find_torrent_by_hash.side_effect = httpx.ConnectError("down")

    result = await ResolutionWorkflow(client, fast_polling).run(_series_request())

    assert result.state is ResolutionState.FAILED


@pytest.mark.asyncio
async def test_missing_episode_link_fails(client, fast_polling):
    client.torrent_info.return_value = PACK_INFO
    request = ResolutionWorkflowRequest(
        key=ResolutionKey(HASH, "series", "tt1:1:9"), season=1, episode=9
    )

    result = await ResolutionWorkflow(client, fast_polling).run(request)

    assert result.state is ResolutionState.FAILED
    client.unrestrict_link.assert_not_awaited()


def test_resolution_error_carries_result():
    result = WorkflowResult(state=ResolutionState.TIMEOUT, error="slow")

    error = ResolutionError(result)

    assert error.result is result
    assert "timeout" in str(error)


def test_provider_file_id():
    assert provider_file_id(PACK_INFO, "Show Name S01E02.mkv", 7) == 2
    assert provider_file_id(PACK_INFO, "Season 1/Show Name S01E01.mkv", 7) == 1
    assert provider_file_id(PACK_INFO, "unknown.mkv", 7) == 8
    assert provider_file_id({}, None, None) is None


def test_select_output_link_for_series_episode():
    assert (
        select_output_link(PACK_INFO, "series", 1, 1) == "https://real-debrid.com/d/E01"
    )
    assert select_output_link(PACK_INFO, "series", 1, 3) is None


def test_select_output_link_prefers_known_path():
    assert (
        select_output_link(PACK_INFO, "series", 1, 1, "/Show Name S01E02.mkv")
        == "https://real-debrid.com/d/E02"
    )


def test_select_output_link_for_movie_takes_largest_file():
    info = {
        "files": [
            {"id": 1, "path": "/Movie.Sample.mkv", "bytes": 10, "selected": 1},
            {"id": 2, "path": "/Movie.mkv", "bytes": 5000, "selected": 1},
        ],
        "links": ["https://real-debrid.com/d/sample", "https://real-debrid.com/d/movie"],
    }

    assert select_output_link(info, "movie") == "https://real-debrid.com/d/movie"


def test_select_output_link_single_file_without_episode_marker():
    info = {
        "filename": "Show Name S01",
        "files": [{"id": 1, "path": "/video.mkv", "bytes": 10, "selected": 1}],
        "links": ["https://real-debrid.com/d/only"],
    }

    assert select_output_link(info, "series", 1, 4) == "https://real-debrid.com/d/only"


E01_ONLY_INFO = {
    "id": "OLD",
    "filename": "Show Name S01",
    "status": "downloaded",
    "files": [
        {"id": 1, "path": "/Show Name S01E01.mkv", "bytes": 100, "selected": 1},
        {"id": 2, "path": "/Show Name S01E02.mkv", "bytes": 100, "selected": 0},
    ],
    "links": ["https://real-debrid.com/d/E01"],
}


def test_select_output_link_lone_file_of_other_episode():
    assert select_output_link(E01_ONLY_INFO, "series", 1, 5) is None


@pytest.mark.asyncio
async def test_existing_torrent_without_requested_file_is_resubmitted(client, fast_polling):
    client.find_torrent_by_hash.return_value = {"id": "OLD", "status": "downloaded"}
    client.torrent_info.side_effect = [E01_ONLY_INFO, PACK_INFO]

    result = await ResolutionWorkflow(client, fast_polling).run(_series_request())

    assert result.ok
    assert result.provider_torrent_id == "RD1"
    assert result.source_link == "https://real-debrid.com/d/E02"
    client.add_magnet.assert_awaited_once_with(HASH)
    client.select_files.assert_awaited_once_with("RD1", "all")
