"""
fitsettle/config.py

Configuration constants and data classes for fitsettle.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


# Nostr event kind for published workouts
WORKOUT_EVENT_KIND = 1301

# Relays queried when nothing else is configured
DEFAULT_RELAYS: List[str] = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.primal.net",
    "wss://nostr.wine",
    "wss://relay.nostr.band",
]

# Event fetch settings
FETCH_TIMEOUT_SECONDS = 5.0
FETCH_LIMIT = 1000

# Leaderboard cache settings
LEADERBOARD_TTL_SECONDS = 5 * 60
LEADERBOARD_STALE_SECONDS = 60

# Payment settings
PAYMENT_TIMEOUT_SECONDS = 30.0
COINOS_API_URL = "https://coinos.io/api"
PAYMENT_MEMO_PREFIX = "RUNSTR Reward"

# Sqlite settlement store
DEFAULT_DB_PATH = os.path.join(os.path.expanduser("~"), ".fitsettle", "settlement.db")

ENV_PREFIX = "FITSETTLE_"


@dataclass
class RelayConfig:
    """Configuration for the Nostr event source."""

    relays: List[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    fetch_timeout: float = FETCH_TIMEOUT_SECONDS
    fetch_limit: int = FETCH_LIMIT
    verify_event_ids: bool = True
    per_participant: bool = False  # one subscription per author instead of one per relay


@dataclass
class CacheConfig:
    """Configuration for the leaderboard cache."""

    ttl: float = LEADERBOARD_TTL_SECONDS
    stale_after: float = LEADERBOARD_STALE_SECONDS
    enabled: bool = True


@dataclass
class PaymentConfig:
    """Configuration for the Lightning payment gateway."""

    api_url: str = COINOS_API_URL
    api_token: str = ""
    timeout: float = PAYMENT_TIMEOUT_SECONDS
    memo_prefix: str = PAYMENT_MEMO_PREFIX
    dry_run: bool = False


@dataclass
class SettlementConfig:
    """
    Complete configuration for a settlement engine.

    Usage:
        config = SettlementConfig.from_env()
        config = SettlementConfig(db_path=":memory:")
    """

    relay: RelayConfig = field(default_factory=RelayConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    payment: PaymentConfig = field(default_factory=PaymentConfig)

    # Settlement store (None = in-memory store)
    db_path: Optional[str] = None

    @classmethod
    def testing(cls) -> "SettlementConfig":
        """Create a configuration that never touches the network or disk."""
        return cls(
            relay=RelayConfig(relays=[], fetch_timeout=0.5),
            cache=CacheConfig(enabled=False),
            payment=PaymentConfig(dry_run=True),
            db_path=None,
        )

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "SettlementConfig":
        """
        Build a configuration from FITSETTLE_* environment variables.

        Recognised variables:
            FITSETTLE_RELAYS          comma separated relay urls
            FITSETTLE_FETCH_TIMEOUT   seconds
            FITSETTLE_FETCH_LIMIT     max events per query
            FITSETTLE_CACHE_TTL       seconds
            FITSETTLE_CACHE_STALE     seconds
            FITSETTLE_COINOS_URL      payment api base url
            FITSETTLE_COINOS_TOKEN    payment api bearer token
            FITSETTLE_PAYMENT_TIMEOUT seconds
            FITSETTLE_DRY_RUN         1/true to log payments instead of sending
            FITSETTLE_DB_PATH         sqlite path for the settlement store

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            SettlementConfig
        """
        env = os.environ if environ is None else environ

        def get(name: str, default=None):
            return env.get(ENV_PREFIX + name, default)

        config = cls()

        relays = get("RELAYS")
        if relays:
            config.relay.relays = [r.strip() for r in relays.split(",") if r.strip()]
        config.relay.fetch_timeout = float(get("FETCH_TIMEOUT", config.relay.fetch_timeout))
        config.relay.fetch_limit = int(get("FETCH_LIMIT", config.relay.fetch_limit))

        config.cache.ttl = float(get("CACHE_TTL", config.cache.ttl))
        config.cache.stale_after = float(get("CACHE_STALE", config.cache.stale_after))

        config.payment.api_url = get("COINOS_URL", config.payment.api_url)
        config.payment.api_token = get("COINOS_TOKEN", config.payment.api_token)
        config.payment.timeout = float(get("PAYMENT_TIMEOUT", config.payment.timeout))
        config.payment.dry_run = str(get("DRY_RUN", "")).lower() in ("1", "true", "yes")

        config.db_path = get("DB_PATH", config.db_path)
        return config
