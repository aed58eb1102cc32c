"""Runtime configuration loaded from the environment."""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()

# Banking gateway (Open Banking aggregator) credentials and endpoints
GATEWAY_CLIENT_ID = os.getenv("GATEWAY_CLIENT_ID")
GATEWAY_CLIENT_SECRET = os.getenv("GATEWAY_CLIENT_SECRET")
GATEWAY_REDIRECT_URI = os.getenv("GATEWAY_REDIRECT_URI", "http://localhost:3000/api/v1/connections/callback")
GATEWAY_TOKEN_URL = os.getenv("GATEWAY_TOKEN_URL", "https://oauth.tarabutgateway.io/sandbox/token")
GATEWAY_API_URL = os.getenv("GATEWAY_API_URL", "https://api.sandbox.tarabutgateway.io")

# Retention windows (days)
DATA_RETENTION_DAYS = int(os.getenv("DATA_RETENTION_DAYS", "30"))
SOFT_DELETE_GRACE_DAYS = int(os.getenv("SOFT_DELETE_GRACE_DAYS", "90"))

# Consent defaults
CONSENT_DEFAULT_EXPIRY_DAYS = int(os.getenv("CONSENT_DEFAULT_EXPIRY_DAYS", "90"))
CONSENT_EXPIRY_WARNING_DAYS = int(os.getenv("CONSENT_EXPIRY_WARNING_DAYS", "7"))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class SyncConfig:
    """
    Thresholds and limits for bank data synchronization.

    The on-demand freshness thresholds and the scheduled-job staleness window
    are independent values.
    """
    token_buffer_minutes: int = 5

    # On-demand refresh: below fresh -> nothing, below balance_only -> balances only
    fresh_threshold_minutes: int = 15
    balance_only_threshold_minutes: int = 60

    # Scheduled job
    cron_skip_if_synced_hours: int = 12
    cron_batch_size: int = 5
    cron_rate_limit_per_minute: int = 10

    # Transaction window for accounts that were never synced
    default_transaction_days: int = 90

    # Per external call
    gateway_timeout_seconds: float = 30.0

    @property
    def batch_delay_seconds(self) -> float:
        """Delay between scheduled-job batches derived from the per-minute budget."""
        return 60.0 / self.cron_rate_limit_per_minute


def load_sync_config() -> SyncConfig:
    """Build a SyncConfig from SYNC_* environment variables."""
    return SyncConfig(
        token_buffer_minutes=_env_int("SYNC_TOKEN_BUFFER_MINUTES", 5),
        fresh_threshold_minutes=_env_int("SYNC_FRESH_THRESHOLD_MINUTES", 15),
        balance_only_threshold_minutes=_env_int("SYNC_BALANCE_ONLY_THRESHOLD_MINUTES", 60),
        cron_skip_if_synced_hours=_env_int("SYNC_CRON_SKIP_IF_SYNCED_HOURS", 12),
        cron_batch_size=_env_int("SYNC_CRON_BATCH_SIZE", 5),
        cron_rate_limit_per_minute=_env_int("SYNC_CRON_RATE_LIMIT_PER_MINUTE", 10),
        default_transaction_days=_env_int("SYNC_DEFAULT_TRANSACTION_DAYS", 90),
        gateway_timeout_seconds=_env_float("SYNC_GATEWAY_TIMEOUT_SECONDS", 30.0),
    )
