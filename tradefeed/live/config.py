"""
Configuration types for the live trade feed.

Provides immutable, validated configuration dataclasses for all feed components.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from tradefeed.live.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_FEED_URL = "ws://localhost:3000"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ConnectionConfig:
    """Configuration for the streaming WebSocket connection."""

    url: str = DEFAULT_FEED_URL

    # Connection behavior
    connect_timeout_s: float = 30.0
    heartbeat_s: Optional[float] = 30.0  # aiohttp ping/pong keepalive

    # Backoff: cold start delay until the first successful open, warm delay after
    initial_reconnect_delay_s: float = 2.0
    warm_reconnect_delay_s: float = 5.0
    reconnect_growth: float = 1.1
    max_reconnect_delay_s: Optional[float] = 60.0  # None disables the cap

    def __post_init__(self) -> None:
        if not re.match(r"^wss?://", self.url):
            raise ConfigurationError(
                "url must start with ws:// or wss://",
                field="url",
                value=self.url,
            )
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.initial_reconnect_delay_s <= 0 or self.warm_reconnect_delay_s <= 0:
            raise ConfigurationError(
                "reconnect delays must be positive",
                field="initial_reconnect_delay_s",
                value=(self.initial_reconnect_delay_s, self.warm_reconnect_delay_s),
            )
        if self.reconnect_growth < 1:
            raise ConfigurationError(
                "reconnect_growth must be >= 1",
                field="reconnect_growth",
                value=self.reconnect_growth,
            )
        if self.max_reconnect_delay_s is not None and (
            self.max_reconnect_delay_s < self.warm_reconnect_delay_s
            or self.max_reconnect_delay_s < self.initial_reconnect_delay_s
        ):
            raise ConfigurationError(
                "max_reconnect_delay_s must not be below the base delays",
                field="max_reconnect_delay_s",
                value=self.max_reconnect_delay_s,
            )

    @property
    def http_base(self) -> str:
        """HTTP base derived from the feed URL (ws -> http, wss -> https)."""
        return re.sub(r"^ws(s?)://", r"http\1://", self.url).rstrip("/")


@dataclass(frozen=True)
class HistoryConfig:
    """Configuration for historical backfill requests."""

    request_timeout_s: float = 60.0
    chunk_size: int = 64 * 1024  # Bytes read per progress notification

    def __post_init__(self) -> None:
        if self.request_timeout_s <= 0:
            raise ConfigurationError(
                "request_timeout_s must be positive",
                field="request_timeout_s",
                value=self.request_timeout_s,
            )
        if self.chunk_size <= 0:
            raise ConfigurationError(
                "chunk_size must be positive",
                field="chunk_size",
                value=self.chunk_size,
            )


@dataclass(frozen=True)
class ClockConfig:
    """Configuration for clock-skew compensation."""

    skew_threshold_ms: int = 2000  # Offsets above this (absolute) are compensated

    def __post_init__(self) -> None:
        if self.skew_threshold_ms < 0:
            raise ConfigurationError(
                "skew_threshold_ms must be non-negative",
                field="skew_threshold_ms",
                value=self.skew_threshold_ms,
            )


@dataclass(frozen=True)
class FeedConfig:
    """
    Immutable top-level configuration for the trade feed.

    Example:
        config = FeedConfig(
            connection=ConnectionConfig(url="wss://feed.example.com"),
            initial_history_minutes=15,
            retention_s=3600,
        )
    """

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    clock: ClockConfig = field(default_factory=ClockConfig)

    # Emit per-exchange status alerts
    debug: bool = False

    # Housekeeping while connected: trim trades older than retention_s
    retention_s: Optional[float] = None
    housekeeping_interval_s: float = 60.0

    # Relative backfill (minutes) loaded by TradeFeed.start()
    initial_history_minutes: Optional[float] = None

    def __post_init__(self) -> None:
        if self.retention_s is not None and self.retention_s <= 0:
            raise ConfigurationError(
                "retention_s must be positive",
                field="retention_s",
                value=self.retention_s,
            )
        if self.housekeeping_interval_s <= 0:
            raise ConfigurationError(
                "housekeeping_interval_s must be positive",
                field="housekeeping_interval_s",
                value=self.housekeeping_interval_s,
            )
        if self.initial_history_minutes is not None and self.initial_history_minutes <= 0:
            raise ConfigurationError(
                "initial_history_minutes must be positive",
                field="initial_history_minutes",
                value=self.initial_history_minutes,
            )

    @property
    def url(self) -> str:
        return self.connection.url

    @property
    def http_base(self) -> str:
        return self.connection.http_base

    @classmethod
    def from_env(
        cls,
        prefix: str = "TRADEFEED_",
        environ: Optional[Mapping[str, str]] = None,
    ) -> "FeedConfig":
        """
        Build a config from environment variables.

        Recognised keys (after the prefix): URL, DEBUG, RETENTION_S,
        MAX_RECONNECT_DELAY_S, HISTORY_MINUTES. Unset keys keep their defaults.
        """
        if not prefix:
            raise ValueError("Environment prefix must be a non-empty string")
        env = os.environ if environ is None else environ

        def get(key: str) -> Optional[str]:
            value = env.get(f"{prefix}{key}")
            return value.strip() if value is not None and value.strip() else None

        def get_float(key: str) -> Optional[float]:
            raw = get(key)
            if raw is None:
                return None
            try:
                return float(raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"{prefix}{key} must be a number",
                    field=key.lower(),
                    value=raw,
                ) from e

        connection_kwargs: dict[str, object] = {}
        url = get("URL")
        if url is not None:
            connection_kwargs["url"] = url
        max_delay = get_float("MAX_RECONNECT_DELAY_S")
        if max_delay is not None:
            connection_kwargs["max_reconnect_delay_s"] = max_delay

        debug = (get("DEBUG") or "").lower() in _TRUE_VALUES

        config = cls(
            connection=ConnectionConfig(**connection_kwargs),  # type: ignore[arg-type]
            debug=debug,
            retention_s=get_float("RETENTION_S"),
            initial_history_minutes=get_float("HISTORY_MINUTES"),
        )
        logger.debug(f"Loaded feed config from env (prefix={prefix}): url={config.url}")
        return config
