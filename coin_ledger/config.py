"""
Business-rule configuration for the coin ledger.

Operations receive a ``LedgerConfig`` snapshot instead of reading a live
global, so each call is deterministic for the config it was given.
"""

import json
import logging
import os
import threading
from decimal import Decimal
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class LedgerConfig(BaseModel):
    version: str = "default"
    min_bill_amount: Decimal = Field(default=Decimal("100"), ge=0)
    max_bill_age_days: int = Field(default=30, ge=0)
    min_minutes_between_submissions: int = Field(default=5, ge=0)
    max_pending_requests: int = Field(default=5, ge=1)
    welcome_bonus_amount: Decimal = Field(default=Decimal("100"), gt=0)
    block_redeem_with_pending_earn: bool = False
    lock_timeout_seconds: float = Field(default=5.0, gt=0)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        values: dict[str, Any] = {"version": os.getenv("COIN_LEDGER_CONFIG_VERSION", "env")}
        for name in cls.model_fields:
            if name == "version":
                continue
            raw = os.getenv(f"COIN_LEDGER_{name.upper()}")
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @classmethod
    def from_source(cls, source: "ConfigSource") -> "LedgerConfig":
        defaults = cls()
        return cls(
            version=f"rev-{source.revision}",
            min_bill_amount=source.get_config_value("MIN_BILL_AMOUNT", defaults.min_bill_amount),
            max_bill_age_days=source.get_config_value("MAX_BILL_AGE_DAYS", defaults.max_bill_age_days),
            min_minutes_between_submissions=source.get_config_value(
                "MIN_TIME_BETWEEN_SUBMISSIONS_MINUTES", defaults.min_minutes_between_submissions
            ),
            max_pending_requests=source.get_config_value("MAX_PENDING_REQUESTS", defaults.max_pending_requests),
            welcome_bonus_amount=source.get_config_value("WELCOME_BONUS_AMOUNT", defaults.welcome_bonus_amount),
            block_redeem_with_pending_earn=source.get_config_value(
                "BLOCK_REDEEM_WITH_PENDING_EARN", defaults.block_redeem_with_pending_earn
            ),
            lock_timeout_seconds=source.get_config_value("LOCK_TIMEOUT_SECONDS", defaults.lock_timeout_seconds),
        )


class ConfigSource(Protocol):
    revision: int

    def get_config_value(self, key: str, default: Any = None) -> Any: ...


DEFAULT_CONFIG_ENTRIES = [
    {"key": "MIN_BILL_AMOUNT", "value": "100", "type": "number", "category": "transaction"},
    {"key": "MAX_BILL_AGE_DAYS", "value": "30", "type": "number", "category": "transaction"},
    {"key": "FRAUD_PREVENTION_HOURS", "value": "24", "type": "number", "category": "transaction"},
    {"key": "MIN_TIME_BETWEEN_SUBMISSIONS_MINUTES", "value": "5", "type": "number", "category": "transaction"},
    {"key": "WELCOME_BONUS_AMOUNT", "value": "100", "type": "number", "category": "user"},
    {"key": "MAX_PENDING_REQUESTS", "value": "5", "type": "number", "category": "user"},
    {"key": "BLOCK_REDEEM_WITH_PENDING_EARN", "value": "false", "type": "boolean", "category": "user"},
]


class InMemoryConfigSource:
    """Key/value config table with typed values and a revision counter."""

    def __init__(self, entries: Optional[list[dict]] = None):
        self._entries: dict[str, dict] = {}
        self._lock = threading.Lock()
        self.revision = 0
        for entry in entries if entries is not None else DEFAULT_CONFIG_ENTRIES:
            self._entries[entry["key"]] = dict(entry)

    def get_config_value(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            logger.debug("Config key not found: %s, using default: %s", key, default)
            return default
        return self._parse(entry, default)

    def set_config_value(self, key: str, value: Any, type: Optional[str] = None, category: str = "general") -> None:
        config_type = type or self._infer_type(value)
        if isinstance(value, str):
            string_value = value
        elif isinstance(value, bool):
            string_value = "true" if value else "false"
        elif isinstance(value, Decimal):
            string_value = str(value)
        else:
            string_value = json.dumps(value)
        with self._lock:
            self._entries[key] = {"key": key, "value": string_value, "type": config_type, "category": category}
            self.revision += 1
        logger.info("Config value updated: %s = %s (revision %d)", key, string_value, self.revision)

    def snapshot(self) -> LedgerConfig:
        return LedgerConfig.from_source(self)

    @staticmethod
    def _infer_type(value: Any) -> str:
        if isinstance(value, bool):
            return "boolean"
        if isinstance(value, (int, float, Decimal)):
            return "number"
        if isinstance(value, str):
            return "string"
        return "json"

    @staticmethod
    def _parse(entry: dict, default: Any) -> Any:
        config_type = entry.get("type", "string")
        raw = entry["value"]
        if config_type == "number":
            number = Decimal(raw)
            return int(number) if number == number.to_integral_value() else number
        if config_type == "boolean":
            return raw.lower() == "true"
        if config_type == "json":
            try:
                return json.loads(raw)
            except json.JSONDecodeError as e:
                logger.error("Failed to parse JSON config %s: %s", entry["key"], e)
                return default
        return raw
