# stream_resolver/config.py

import configparser
import json
import logging
import os
import sys
from typing import Any

# --- Constants ---
DEFAULT_CONFIG_FILE = "config.ini"
DEFAULT_RECORDS_FILE = "resolutions.json"
DEFAULT_PREFERRED_LANGUAGES = ["en"]
DEFAULT_SIMILARITY_THRESHOLD = 0.5
DEFAULT_MIN_SEEDERS = 1
DEFAULT_SEARCH_LIMIT = 100
MIN_TARGETED_RESULTS = 5
VIDEO_EXTENSIONS = (".mkv", ".mp4", ".avi", ".m4v", ".mov", ".ts", ".wmv", ".webm")

# Per-collaborator retry defaults: (max_attempts, initial_delay, max_delay, multiplier)
DEFAULT_RETRY_POLICIES: dict[str, dict[str, float]] = {
    "search": {
        "max_attempts": 3,
        "initial_delay": 1.0,
        "max_delay": 8.0,
        "multiplier": 2.0,
    },
    "metadata": {
        "max_attempts": 3,
        "initial_delay": 0.5,
        "max_delay": 4.0,
        "multiplier": 2.0,
    },
    "resolution": {
        "max_attempts": 4,
        "initial_delay": 1.0,
        "max_delay": 10.0,
        "multiplier": 2.0,
    },
    "polling": {
        "max_attempts": 30,
        "initial_delay": 2.0,
        "max_delay": 20.0,
        "multiplier": 1.5,
    },
}

# Setup basic logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)
logging.getLogger("httpx").setLevel(logging.WARNING)


def get_configuration(config_path: str = DEFAULT_CONFIG_FILE) -> dict[str, Any]:
    """
    Reads provider credentials, matching preferences, retry policies and the
    storage location from the config.ini file.

    Exits the process when a mandatory provider setting is missing, mirroring
    how an unusable configuration should stop startup early.
    """
    if not os.path.exists(config_path):
        logger.critical(
            f"Configuration file '{config_path}' not found. Please create it."
        )
        sys.exit(1)

    parser = configparser.ConfigParser()
    with open(config_path, encoding="utf-8") as f:
        parser.read_string(f.read())

    api_token = parser.get("realdebrid", "api_token", fallback=None)
    if not api_token or api_token == "PLACE_TOKEN_HERE":
        logger.critical(f"Real-Debrid api_token not found or not set in '{config_path}'.")
        sys.exit(1)

    graphql_url = parser.get("bitmagnet", "graphql_url", fallback=None)
    if not graphql_url:
        logger.critical(f"Bitmagnet graphql_url not found in '{config_path}'.")
        sys.exit(1)

    tmdb_api_key = parser.get("tmdb", "api_key", fallback=None) or None
    if not tmdb_api_key:
        logger.info("[CONFIG] No TMDB api_key configured. Using Cinemeta only.")

    records_file = parser.get(
        "storage", "records_file", fallback=DEFAULT_RECORDS_FILE
    ).strip()

    configuration = {
        "realdebrid": {"api_token": api_token.strip()},
        "bitmagnet": {"graphql_url": graphql_url.strip()},
        "tmdb": {"api_key": tmdb_api_key.strip() if tmdb_api_key else None},
        "matching": _load_matching_config(parser),
        "retry": _load_retry_policies(parser),
        "storage": {"records_file": os.path.expanduser(records_file)},
    }
    logger.info("[CONFIG] Configuration loaded successfully.")
    return configuration


def _load_matching_config(config: configparser.ConfigParser) -> dict[str, Any]:
    """Loads ranking preferences, falling back to defaults for absent keys."""
    languages_raw = config.get("matching", "preferred_languages", fallback=None)
    preferred_languages = list(DEFAULT_PREFERRED_LANGUAGES)
    if languages_raw:
        try:
            parsed = json.loads(languages_raw)
        except json.JSONDecodeError as e:
            logger.critical(f"Failed to parse preferred_languages JSON: {e}")
            raise ValueError(f"Invalid JSON in preferred_languages: {e}")
        if not isinstance(parsed, list):
            raise ValueError("preferred_languages must be a JSON list.")
        preferred_languages = [str(lang).strip().lower() for lang in parsed if lang]

    return {
        "preferred_languages": preferred_languages,
        "similarity_threshold": config.getfloat(
            "matching", "similarity_threshold", fallback=DEFAULT_SIMILARITY_THRESHOLD
        ),
        "min_seeders": config.getint(
            "matching", "min_seeders", fallback=DEFAULT_MIN_SEEDERS
        ),
        "search_limit": config.getint(
            "matching", "search_limit", fallback=DEFAULT_SEARCH_LIMIT
        ),
    }


def _load_retry_policies(
    config: configparser.ConfigParser,
) -> dict[str, dict[str, float]]:
    """
    Builds one policy per collaborator. Each ``[retry.<name>]`` section (or
    ``[polling]`` for status polling) may override any of the default fields.
    """
    policies: dict[str, dict[str, float]] = {}
    for name, defaults in DEFAULT_RETRY_POLICIES.items():
        section = "polling" if name == "polling" else f"retry.{name}"
        policy = dict(defaults)
        if config.has_section(section):
            policy["max_attempts"] = config.getint(
                section, "max_attempts", fallback=int(defaults["max_attempts"])
            )
            for field in ("initial_delay", "max_delay", "multiplier"):
                policy[field] = config.getfloat(section, field, fallback=defaults[field])
        if policy["max_attempts"] < 1:
            raise ValueError(f"[{section}] max_attempts must be at least 1.")
        policies[name] = policy
    return policies
