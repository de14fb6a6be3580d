import sys
from pathlib import Path

import pytest

# Ensure root path is available for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from stream_resolver.services.torrent_data import (  # noqa: E402
    TorrentCandidate,
    TorrentFile,
)


@pytest.fixture
def make_candidate():
    def _make(
        name: str,
        info_hash: str = "a" * 40,
        seeders: int = 10,
        languages: tuple[str, ...] = (),
        files: list[TorrentFile] | None = None,
        content_title: str | None = None,
        size: int = 1024**3,
    ) -> TorrentCandidate:
        return TorrentCandidate(
            name=name,
            info_hash=info_hash,
            size=size,
            seeders=seeders,
            languages=languages,
            files=tuple(files) if files is not None else None,
            content_title=content_title,
        )

    return _make
