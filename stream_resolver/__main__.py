# stream_resolver/__main__.py

"""
Command-line entry point.

Run:
    python -m stream_resolver series tt0944947:1:2
    python -m stream_resolver movie tt0133093 --resolve
    python -m stream_resolver --config my.ini --top 5 series tt0903747:2:3

Lists the ranked streams for a movie or episode and, with ``--resolve``,
turns the best one into a direct download link.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from stream_resolver.config import DEFAULT_CONFIG_FILE, get_configuration, logger
from stream_resolver.services.stream_service import StreamService
from stream_resolver.services.torrent_data import MediaRequest


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stream_resolver",
        description="Find and resolve debrid streams for a movie or show episode.",
    )
    parser.add_argument(
        "content_type", choices=["movie", "series"], help="Kind of media requested"
    )
    parser.add_argument(
        "media_id",
        help="IMDb id, with ':season:episode' for series (e.g. 'tt0944947:1:2')",
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG_FILE, help="Path to the config.ini file"
    )
    parser.add_argument(
        "--top", type=int, default=10, help="How many ranked streams to list"
    )
    parser.add_argument(
        "--resolve",
        action="store_true",
        help="Resolve the best stream into a direct link",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


async def run(args: argparse.Namespace) -> int:
    try:
        request = MediaRequest.from_stremio_id(args.content_type, args.media_id)
    except ValueError as e:
        logger.error(f"Invalid media id '{args.media_id}': {e}")
        return 2

    service = StreamService.from_config(get_configuration(args.config))

    options = await service.find_streams(request)
    if not options:
        print("No streams available.")
        return 1

    for position, option in enumerate(options[: args.top], start=1):
        print(f"{position:>2}. {option.describe()}")

    if not args.resolve:
        return 0

    top = options[0]
    link = await service.resolve_stream(request, top.info_hash, top.scored)
    if not link:
        print("Could not resolve the best stream.")
        return 1
    print(link)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    logger.info(f"Starting stream lookup for {args.content_type} {args.media_id}...")
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
