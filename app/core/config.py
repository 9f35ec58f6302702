"""
Condition verifier configuration constants.

Constants are organized into:
- POLICY: Implementation choices where behaviour must be bounded but the
  exact value is a deployment decision
- OPERATIONAL: Deployment-specific settings (env vars)
"""

import os
import re
from pathlib import Path

# =============================================================================
# POLICY CONSTANTS
# =============================================================================

# Bounded wait on every Identity Ledger read.
# A hung ledger must not hang the whole request.
LEDGER_TIMEOUT_SECONDS: float = float(os.getenv("VERIFIER_LEDGER_TIMEOUT", "5.0"))

# Subject and verifier identifiers are 0x-prefixed 20-byte addresses
ADDRESS_PATTERN: re.Pattern = re.compile(
    os.getenv("VERIFIER_ADDRESS_PATTERN", r"^0x[0-9a-fA-F]{40}$")
)

# Maximum number of records returned by a single history query
HISTORY_PAGE_LIMIT: int = int(os.getenv("VERIFIER_HISTORY_PAGE_LIMIT", "50"))

# When True: the /verify response waits for persistence and notification
# to finish (their failures are still discarded).
# When False: both run as detached tasks after the response is prepared.
AWAIT_SIDE_EFFECTS: bool = os.getenv("VERIFIER_AWAIT_SIDE_EFFECTS", "true").lower() == "true"

# Timeout for a single notification push to an external channel
NOTIFY_TIMEOUT_SECONDS: float = float(os.getenv("VERIFIER_NOTIFY_TIMEOUT", "5.0"))

# Per-subscriber queue depth for the in-memory channel.
# A subscriber whose queue fills up is dropped as stale.
NOTIFY_QUEUE_SIZE: int = int(os.getenv("VERIFIER_NOTIFY_QUEUE_SIZE", "100"))


# =============================================================================
# OPERATIONAL SETTINGS (deployment-specific, via environment variables)
# =============================================================================

# Identity Ledger backend
# "web3": UserRegistry contract over JSON-RPC (production)
# "memory": dict-backed ledger, optionally seeded from VERIFIER_LEDGER_FIXTURES
LEDGER_BACKEND: str = os.getenv("VERIFIER_LEDGER_BACKEND", "web3").lower()

LEDGER_RPC_URL: str = os.getenv(
    "VERIFIER_LEDGER_RPC_URL", "https://ethereum-sepolia-rpc.publicnode.com"
)

# UserRegistry deployment on Sepolia
LEDGER_CONTRACT_ADDRESS: str = os.getenv(
    "VERIFIER_LEDGER_CONTRACT", "0x2B63013176D551b98045703f41A00f6BcCa04DdC"
)

LEDGER_FIXTURES_PATH: str = os.getenv("VERIFIER_LEDGER_FIXTURES", "")

# Notification channel backend
# "memory": in-process pub/sub feeding the /ws/verifier/{id} WebSocket
# "pusher": Pusher Channels HTTP API
NOTIFY_BACKEND: str = os.getenv("VERIFIER_NOTIFY_BACKEND", "memory").lower()

PUSHER_APP_ID: str = os.getenv("PUSHER_APP_ID", "")
PUSHER_KEY: str = os.getenv("PUSHER_KEY", "")
PUSHER_SECRET: str = os.getenv("PUSHER_SECRET", "")
PUSHER_CLUSTER: str = os.getenv("PUSHER_CLUSTER", "ap2")

# Admin endpoint visibility
# Default: True for dev, set to False in production deployments
ADMIN_ENDPOINT_ENABLED: bool = os.getenv("ADMIN_ENDPOINT_ENABLED", "true").lower() == "true"


# =============================================================================
# PERSISTENCE CONFIGURATION
# =============================================================================

def _get_data_dir() -> Path:
    """Determine data directory based on environment.

    Priority:
    1. VERIFIER_DATA_DIR env var (explicit override)
    2. /data/condition-verifier if it exists (Docker volume mount)
    3. ~/.condition-verifier (local development)
    4. /tmp/condition-verifier (container fallback when home unavailable)
    """
    env_path = os.getenv("VERIFIER_DATA_DIR")
    if env_path:
        return Path(env_path)

    docker_path = Path("/data/condition-verifier")
    if docker_path.exists():
        return docker_path

    try:
        home_path = Path.home() / ".condition-verifier"
        home_path.mkdir(parents=True, exist_ok=True)
        return home_path
    except (OSError, PermissionError):
        return Path("/tmp/condition-verifier")


def _get_database_url() -> str:
    """Get database URL from environment.

    Priority:
    1. VERIFIER_DATABASE_URL - explicit full connection string
    2. SQLite file in the data directory
    """
    if url := os.getenv("VERIFIER_DATABASE_URL"):
        return url
    return f"sqlite:///{_get_data_dir()}/verifications.db"


DATABASE_URL: str = _get_database_url()
