"""Configuration system using pydantic-settings with environment variable loading.

Static settings come from the environment (and an optional .env file).
Values the user may change while the engine runs (trading mode, enable flags,
credentials, active symbols) live in an immutable SyncConfig snapshot that is
swapped through a ConfigNotifier, which pushes change events to subscribers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from tickersync.logging import get_logger
from tickersync.models import TradingMode

logger = get_logger(__name__)


class BrokerSettings(BaseSettings):
    """KIS Open API connection settings."""

    model_config = SettingsConfigDict(env_prefix="KIS_")

    enabled: bool = True
    mode: Literal["paper", "live"] = "paper"
    live_app_key: SecretStr = SecretStr("")
    live_app_secret: SecretStr = SecretStr("")
    paper_app_key: SecretStr = SecretStr("")
    paper_app_secret: SecretStr = SecretStr("")
    request_timeout: float = 10.0  # seconds, per REST call
    live_min_interval_ms: int = 100  # provider allows 20 TPS; stay at half
    paper_min_interval_ms: int = 600
    token_validity_hours: float = 12.0

    def min_interval_ms_for(self, mode: str) -> int:
        return self.live_min_interval_ms if mode == "live" else self.paper_min_interval_ms


class SecondarySettings(BaseSettings):
    """Public finance chart endpoint used when the brokerage path is unavailable."""

    model_config = SettingsConfigDict(env_prefix="SECONDARY_")

    enabled: bool = True
    base_url: str = "https://query1.finance.yahoo.com"
    market_suffix: str = ".KS"
    poll_interval: float = 60.0
    primary_fresh_seconds: float = 30.0  # do not publish over a primary update this recent
    request_timeout: float = 10.0


class SyncSettings(BaseSettings):
    """Failover reconciliation loop settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    symbols: list[str] = []
    reconcile_interval: float = 1.0
    stale_threshold: float = 30.0  # stream connected
    degraded_stale_threshold: float = 10.0  # stream not connected
    rest_poll_interval: float = 10.0
    rest_skip_if_fresh: float = 5.0
    initial_load_spacing: float = 1.0


class CacheSettings(BaseSettings):
    """Intraday chart cache and backfill settings.

    The gap thresholds are tuned to the exchange's regular session
    (09:00-15:30) and can be adjusted without code changes.
    """

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    db_path: str = "data/tickersync.db"
    retention_days: int = 5
    max_gap_minutes: int = 60
    late_open_cutoff: str = "093000"
    regular_open: str = "090000"
    regular_close: str = "153000"
    page_delay: float = 0.2
    max_pages: int = 30
    bucket_minutes: int = 10


class ApiSettings(BaseSettings):
    """Snapshot publishing API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "127.0.0.1"
    port: int = 8787
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    broker: BrokerSettings = BrokerSettings()
    secondary: SecondarySettings = SecondarySettings()
    sync: SyncSettings = SyncSettings()
    cache: CacheSettings = CacheSettings()
    api: ApiSettings = ApiSettings()


@dataclass(frozen=True)
class AppKeys:
    """App key/secret pair for one trading mode."""

    app_key: SecretStr = SecretStr("")
    app_secret: SecretStr = SecretStr("")

    @property
    def present(self) -> bool:
        return bool(self.app_key.get_secret_value() and self.app_secret.get_secret_value())


@dataclass(frozen=True)
class SyncConfig:
    """Immutable runtime configuration snapshot.

    Replaced wholesale on every change; components read the current snapshot
    from the ConfigNotifier instead of caching fields.
    """

    mode: TradingMode = TradingMode.PAPER
    broker_enabled: bool = True
    secondary_enabled: bool = True
    keys: dict[TradingMode, AppKeys] = field(default_factory=dict)
    active_symbols: tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, settings: AppSettings) -> SyncConfig:
        broker = settings.broker
        return cls(
            mode=TradingMode(broker.mode),
            broker_enabled=broker.enabled,
            secondary_enabled=settings.secondary.enabled,
            keys={
                TradingMode.LIVE: AppKeys(broker.live_app_key, broker.live_app_secret),
                TradingMode.PAPER: AppKeys(broker.paper_app_key, broker.paper_app_secret),
            },
            active_symbols=tuple(dict.fromkeys(settings.sync.symbols)),
        )

    def keys_for(self, mode: TradingMode | None = None) -> AppKeys:
        return self.keys.get(mode or self.mode, AppKeys())

    @property
    def broker_usable(self) -> bool:
        """Broker integration is enabled and has credentials for the active mode."""
        return self.broker_enabled and self.keys_for().present

    def connection_fingerprint(self) -> tuple:
        """Values whose change invalidates sessions, timers and the stream."""
        keys = self.keys_for()
        return (
            self.mode,
            keys.app_key.get_secret_value(),
            keys.app_secret.get_secret_value(),
            self.broker_enabled,
            self.secondary_enabled,
        )


ConfigListener = Callable[[SyncConfig, SyncConfig], Awaitable[None]]


class ConfigNotifier:
    """Holds the current SyncConfig and pushes changes to subscribers.

    Listeners are awaited in subscription order with (old, new) snapshots.
    A failing listener is logged and does not prevent the others from running.
    """

    def __init__(self, initial: SyncConfig) -> None:
        self._current = initial
        self._listeners: list[ConfigListener] = []
        self._lock = asyncio.Lock()

    @property
    def current(self) -> SyncConfig:
        return self._current

    def subscribe(self, listener: ConfigListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def update(self, **changes: object) -> SyncConfig:
        """Apply field changes and notify listeners if anything changed."""
        async with self._lock:
            old = self._current
            if "active_symbols" in changes:
                changes["active_symbols"] = tuple(dict.fromkeys(changes["active_symbols"]))  # type: ignore[arg-type]
            new = replace(old, **changes)  # type: ignore[arg-type]
            if new == old:
                return old
            self._current = new
            logger.info(
                "config_changed",
                mode=new.mode.value,
                broker_enabled=new.broker_enabled,
                secondary_enabled=new.secondary_enabled,
                symbols=len(new.active_symbols),
            )
            for listener in list(self._listeners):
                try:
                    await listener(old, new)
                except Exception:
                    logger.error("config_listener_failed", exc_info=True)
            return new
