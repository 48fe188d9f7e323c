import logging
import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///./leaps.db"
DEFAULT_LEARN_TAGS = ("elevate-ai-1-completed", "elevate-ai-2-completed")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_tags(raw: Optional[str]) -> frozenset[str]:
    tags = [t.strip().lower() for t in (raw or "").split(",")]
    tags = [t for t in tags if t]
    return frozenset(tags or DEFAULT_LEARN_TAGS)


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    learn_tags: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_LEARN_TAGS))
    kajabi_webhook_secret: Optional[str] = None
    allow_unsigned_webhooks: bool = False
    webhook_max_skew_seconds: int = 300
    amplify_peers_cap: int = 50
    amplify_students_cap: int = 200
    bulk_review_limit: int = 50
    strict_amplify_quota: bool = True
    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
        learn_tags=parse_tags(os.getenv("KAJABI_LEARN_TAGS")),
        kajabi_webhook_secret=os.getenv("KAJABI_WEBHOOK_SECRET") or None,
        allow_unsigned_webhooks=_env_bool("ALLOW_UNSIGNED_KAJABI_WEBHOOK", False),
        webhook_max_skew_seconds=_env_int("KAJABI_WEBHOOK_MAX_SKEW_SECONDS", 300),
        amplify_peers_cap=_env_int("AMPLIFY_PEERS_CAP_7D", 50),
        amplify_students_cap=_env_int("AMPLIFY_STUDENTS_CAP_7D", 200),
        bulk_review_limit=_env_int("BULK_REVIEW_LIMIT", 50),
        strict_amplify_quota=_env_bool("STRICT_AMPLIFY_QUOTA", True),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
