"""Settings and logging setup — everything comes from the environment.

Missing values never fail at import or startup. A webhook that needs a
missing value raises ConfigurationError at request time, so a half-configured
deploy answers 500 instead of crashing the process.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from membersync.errors import ConfigurationError

logger = logging.getLogger(__name__)

_DEFAULT_TOLERANCE_SECONDS = 300
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def parse_price_tier_map(raw: str | None) -> dict[str, str]:
    """Parse PRICE_TIER_MAP into {price_id: tier}.

    Accepts a JSON object or a comma list of price_id=tier pairs.
    Malformed entries are dropped with a warning.
    """
    raw = (raw or "").strip()
    if not raw:
        return {}

    if raw.startswith("{"):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("PRICE_TIER_MAP is not valid JSON, ignoring it")
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            str(k).strip(): str(v).strip().lower()
            for k, v in data.items()
            if str(k).strip() and str(v).strip()
        }

    mapping: dict[str, str] = {}
    for item in raw.split(","):
        price_id, sep, tier = item.partition("=")
        if not sep or not price_id.strip() or not tier.strip():
            logger.warning("Ignoring malformed PRICE_TIER_MAP entry: %r", item)
            continue
        mapping[price_id.strip()] = tier.strip().lower()
    return mapping


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the webhook service."""

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_version: str = ""
    webhook_tolerance_seconds: int = _DEFAULT_TOLERANCE_SECONDS
    database_url: str = ""
    price_tiers: dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Settings":
        """Build settings from os.environ (after loading .env if present)."""
        if dotenv:
            load_dotenv()

        tolerance_raw = os.environ.get("STRIPE_WEBHOOK_TOLERANCE", "")
        try:
            tolerance = int(tolerance_raw) if tolerance_raw else _DEFAULT_TOLERANCE_SECONDS
        except ValueError:
            logger.warning(
                "STRIPE_WEBHOOK_TOLERANCE=%r is not an integer, using %ds",
                tolerance_raw,
                _DEFAULT_TOLERANCE_SECONDS,
            )
            tolerance = _DEFAULT_TOLERANCE_SECONDS

        return cls(
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY", "").strip(),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", "").strip(),
            stripe_api_version=os.environ.get("STRIPE_API_VERSION", "").strip(),
            webhook_tolerance_seconds=tolerance,
            database_url=os.environ.get("DATABASE_URL", "").strip(),
            price_tiers=parse_price_tier_map(os.environ.get("PRICE_TIER_MAP")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    def require_webhook_secret(self) -> str:
        if not self.stripe_webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set")
        return self.stripe_webhook_secret


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler once; later calls only adjust the level."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=_LOG_FORMAT)
    logging.getLogger("membersync").setLevel(getattr(logging, level.upper(), logging.INFO))
