"""Pure constants for fscrape. No side effects at import time."""

from pathlib import Path

# === Directories ===
DATA_DIR = Path("data")
DEFAULT_DATABASE_PATH = DATA_DIR / "fscrape.db"
DEFAULT_SESSIONS_DIR = DATA_DIR / "sessions"

# === HTTP ===
DEFAULT_USER_AGENT = "fscrape/0.1 (forum research scraper)"
DEFAULT_REQUEST_TIMEOUT = 30.0  # Per fetch_page call, seconds
REDDIT_BASE_URL = "https://www.reddit.com"
HACKERNEWS_BASE_URL = "https://hacker-news.firebaseio.com/v0"

# === Pagination ===
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100

# === Checkpointing ===
DEFAULT_PERSIST_EVERY_BATCHES = 1
DEFAULT_PERSIST_INTERVAL = 30.0  # seconds
MAX_SESSION_ERRORS = 50  # Error log entries kept per session

# === Progress ===
DEFAULT_MILESTONES = (25, 50, 75, 100)
DEFAULT_RATE_WINDOW = 60.0  # seconds of samples used for items/sec
DEFAULT_MAX_RATE_SAMPLES = 100

# === Retry ===
DEFAULT_MAX_RETRIES = 3
DEFAULT_JITTER = 0.1  # +/- fraction of the computed delay

# === Reddit limits ===
REDDIT_MAX_REQUESTS_PER_MINUTE = 60
REDDIT_MAX_REQUESTS_PER_HOUR = 1000
REDDIT_BACKOFF_MULTIPLIER = 2.0
REDDIT_INITIAL_DELAY = 1.0
REDDIT_MAX_DELAY = 60.0

# === HackerNews limits ===
HACKERNEWS_MAX_REQUESTS_PER_MINUTE = 30
HACKERNEWS_MAX_REQUESTS_PER_HOUR = 500
HACKERNEWS_BACKOFF_MULTIPLIER = 1.5
HACKERNEWS_INITIAL_DELAY = 1.0
HACKERNEWS_MAX_DELAY = 30.0
