"""
Configuration - config directory, file names and tunables
"""

import os
import logging
from functools import lru_cache
from pathlib import Path


logger = logging.getLogger(__name__)

ENV_TOKEN_DIR = 'INBOXD_TOKEN_DIR'
ENV_NO_ANALYTICS = 'INBOXD_NO_ANALYTICS'
ENV_CREDENTIALS_PATH = 'GMAIL_CREDENTIALS_PATH'

# If modifying these scopes, re-run auth for every account.
SCOPES = ['https://www.googleapis.com/auth/gmail.modify']

# === File names ===

CREDENTIALS_FILE = 'credentials.json'
ACCOUNTS_FILE = 'accounts.json'
DELETION_LOG_FILE = 'deletion-log.json'
ARCHIVE_LOG_FILE = 'archive-log.json'
SENT_LOG_FILE = 'sent-log.json'
RULES_FILE = 'rules.json'
USAGE_LOG_FILE = 'usage-log.jsonl'


def token_file(account: str) -> str:
    return f'token-{account}.json'


def state_file(account: str) -> str:
    return f'state-{account}.json'


# === Tunables ===

SEEN_TTL_DAYS = 7
NOTIFY_MIN_INTERVAL_SECONDS = 30
USAGE_MAX_ENTRIES = 10_000
USAGE_TRIM_RATIO = 0.2
REQUEST_TIMEOUT_SECONDS = 30
TOKEN_REFRESH_THRESHOLD_SECONDS = 5 * 60
STATS_WINDOW_DAYS = 30
SUGGEST_MIN_DELETIONS = 3
NEVER_READ_MIN_DELETIONS = 2
FILTER_DEFAULT_LIMIT = 50
SHORT_PATTERN_LENGTH = 3
LARGE_BATCH_SIZE = 100


@lru_cache(maxsize=None)
def config_dir() -> Path:
    """Per-user data directory, resolved once per process"""
    override = os.getenv(ENV_TOKEN_DIR)
    if override:
        path = Path(override).expanduser()
    else:
        path = Path.home() / '.config' / 'inboxd'
    logger.debug(f"Using config directory {path}")
    return path


def analytics_enabled() -> bool:
    """Usage logging is on unless INBOXD_NO_ANALYTICS is 1 or true"""
    value = os.getenv(ENV_NO_ANALYTICS, '')
    return value.lower() not in ('1', 'true')
