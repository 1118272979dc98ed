from __future__ import annotations

"""
ksqlkit.core.config
===================

Strongly-typed options for a `KsqlContext`.
- Optional JSON file loading; missing or unreadable files fall back to defaults.
- Derives millisecond fields from seconds to avoid repeated conversions.
- Small env overrides for convenience.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..runtime.error_policy import DEFAULT_MAX_RETRIES, ErrorAction, ErrorPolicy
from ..schema.statements import ValueFormat
from .log import get_logger
from .types import AUTO_OFFSET_RESET_PROP

_ENV_KEYS: dict[str, str] = {
    "KSQLDB_URL": "ksqldb_url",
    "KAFKA_BOOTSTRAP_SERVERS": "kafka_bootstrap",
    "SCHEMA_REGISTRY_URL": "schema_registry_url",
    "KSQLKIT_VALUE_FORMAT": "value_format",
    "KSQLKIT_DEAD_LETTER_TOPIC": "dead_letter_topic",
}

_OFFSET_RESETS = ("earliest", "latest")


def _try_load_json(path: Path | None) -> dict[str, Any]:
    if not path:
        return {}
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        get_logger("config").warning("options file unreadable, using defaults", path=str(path), exc_info=True)
    return {}


# ---------------------------------------------------------------------------


@dataclass
class KsqlOptions:
    """Context options loaded from JSON/env with derived millisecond fields."""

    # ---- Endpoints
    ksqldb_url: str = "http://localhost:8088"
    kafka_bootstrap: str = "localhost:9092"
    schema_registry_url: str | None = None

    # ---- Statements
    value_format: ValueFormat = ValueFormat.JSON
    default_partitions: int | None = None
    default_replicas: int | None = None
    streams_properties: dict[str, str] = field(default_factory=dict)

    # ---- Subscriptions
    auto_offset_reset: str = "earliest"
    consumer_group_prefix: str = "ksqlkit"

    # ---- Error routing
    error_action: ErrorAction = ErrorAction.SKIP
    dead_letter_topic: str | None = None
    max_retries: int = DEFAULT_MAX_RETRIES

    # ---- Timings (seconds)
    request_timeout_sec: float = 30.0

    # ---- Derived (ms)
    request_timeout_ms: int = 0

    # ---- Methods ------------------------------------------------------------

    def __post_init__(self) -> None:
        if not self.ksqldb_url:
            raise ValueError("ksqldb_url must be a non-empty string")
        if not self.kafka_bootstrap:
            raise ValueError("kafka_bootstrap must be a non-empty string")
        self.value_format = ValueFormat(self.value_format.upper())
        self.error_action = ErrorAction(self.error_action)
        if self.auto_offset_reset not in _OFFSET_RESETS:
            raise ValueError(f"auto_offset_reset must be one of {_OFFSET_RESETS}")
        for label, val in (("default_partitions", self.default_partitions), ("default_replicas", self.default_replicas)):
            if val is not None and val <= 0:
                raise ValueError(f"{label} must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.request_timeout_sec <= 0:
            raise ValueError("request_timeout_sec must be positive")
        # fail at load time rather than at the first subscribe()
        self.error_policy()
        self.request_timeout_ms = int(self.request_timeout_sec * 1000)

    def error_policy(self) -> ErrorPolicy:
        """Default policy for handles created by the owning context."""
        return ErrorPolicy(
            action=self.error_action,
            dead_letter_topic=self.dead_letter_topic if self.error_action is ErrorAction.DEAD_LETTER else None,
            max_retries=self.max_retries,
        )

    def statement_properties(self) -> dict[str, str]:
        """Streams properties sent with every statement."""
        return {AUTO_OFFSET_RESET_PROP: self.auto_offset_reset, **self.streams_properties}

    # Loader
    @classmethod
    def load(cls, path: Path | str | None = None, *, overrides: dict[str, Any] | None = None) -> KsqlOptions:
        """
        Load options from JSON file (if provided), then apply env and overrides.

        Env overrides:
          - KSQLDB_URL
          - KAFKA_BOOTSTRAP_SERVERS
          - SCHEMA_REGISTRY_URL
          - KSQLKIT_VALUE_FORMAT
          - KSQLKIT_DEAD_LETTER_TOPIC
        """
        data: dict[str, Any] = {}
        data.update(_try_load_json(Path(path) if path else None))
        for env, attr in _ENV_KEYS.items():
            if os.getenv(env):
                data[attr] = os.environ[env]
        if overrides:
            data.update(overrides)
        return cls(**data)
