import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


# Usually your project root is where pyproject.toml is
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.environ.get("TRIAGE_DATA_DIR", PROJECT_ROOT / "data"))
CREDENTIALS_FILE = Path(
    os.environ.get("TRIAGE_CREDENTIALS_FILE", PROJECT_ROOT / "credentials.json")
)
TOKEN_FILE = DATA_DIR / "token.json"  # Where the login token is saved

# Make sure DATA_DIR exists
DATA_DIR.mkdir(parents=True, exist_ok=True)

# 'gmail.modify' covers reading, labeling, archiving and trashing.
# 'gmail.send' is needed by the forward action.
SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.send",
]

DATABASE_URL = os.environ.get(
    "TRIAGE_DATABASE_URL", f"sqlite:///{DATA_DIR / 'triage.db'}"
)
DEFAULT_OWNER_ID = os.environ.get("TRIAGE_OWNER", "me")

# --- Rules ---
MAX_RULES_PER_OWNER = _env_int("TRIAGE_MAX_RULES_PER_OWNER", 100)
SYNC_ACTION_TIMEOUT_SECONDS = _env_float("TRIAGE_SYNC_ACTION_TIMEOUT_SECONDS", 10.0)

# --- Outbox ---
OUTBOX_BATCH_SIZE = _env_int("TRIAGE_OUTBOX_BATCH_SIZE", 10)
OUTBOX_MAX_RETRIES = _env_int("TRIAGE_OUTBOX_MAX_RETRIES", 3)
OUTBOX_CONCURRENCY = _env_int("TRIAGE_OUTBOX_CONCURRENCY", 4)
OUTBOX_POLL_INTERVAL_SECONDS = _env_float("TRIAGE_OUTBOX_POLL_INTERVAL_SECONDS", 5.0)
STALE_PROCESSING_TIMEOUT_SECONDS = _env_float(
    "TRIAGE_STALE_PROCESSING_TIMEOUT_SECONDS", 600.0
)

# Retry delay is min(BASE * 2**n, MAX), spread by +/- JITTER.
BACKOFF_BASE_SECONDS = _env_float("TRIAGE_BACKOFF_BASE_SECONDS", 1.0)
BACKOFF_MAX_SECONDS = _env_float("TRIAGE_BACKOFF_MAX_SECONDS", 300.0)
BACKOFF_JITTER = _env_float("TRIAGE_BACKOFF_JITTER", 0.2)

# --- Bulk actions ---
BATCH_MAX_ITEMS = _env_int("TRIAGE_BATCH_MAX_ITEMS", 100)
BATCH_CHUNK_SIZE = _env_int("TRIAGE_BATCH_CHUNK_SIZE", 10)
BATCH_CONCURRENCY = _env_int("TRIAGE_BATCH_CONCURRENCY", 4)
