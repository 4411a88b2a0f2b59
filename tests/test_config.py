"""Tests for settings and the runtime configuration notifier."""

from dataclasses import replace

import pytest
from pydantic import SecretStr

from tickersync.config import AppKeys, AppSettings, BrokerSettings, ConfigNotifier, SyncConfig
from tickersync.models import TradingMode


def test_from_settings(mock_settings: AppSettings) -> None:
    config = SyncConfig.from_settings(mock_settings)

    assert config.mode is TradingMode.PAPER
    assert config.active_symbols == ("005930", "0001")
    assert config.keys_for().app_key.get_secret_value() == "test-app-key"
    assert config.keys_for(TradingMode.LIVE).app_secret.get_secret_value() == "live-app-secret"
    assert config.broker_usable


def test_broker_usable_needs_both_key_halves() -> None:
    config = SyncConfig(keys={TradingMode.PAPER: AppKeys(SecretStr("key"), SecretStr(""))})
    assert not config.broker_usable


def test_min_interval_per_mode() -> None:
    settings = BrokerSettings(live_min_interval_ms=50, paper_min_interval_ms=500)
    assert settings.min_interval_ms_for("live") == 50
    assert settings.min_interval_ms_for("paper") == 500


def test_fingerprint_tracks_connection_fields(sync_config: SyncConfig) -> None:
    base = sync_config.connection_fingerprint()

    assert replace(sync_config, active_symbols=("000660",)).connection_fingerprint() == base
    assert replace(sync_config, mode=TradingMode.LIVE).connection_fingerprint() != base
    assert replace(sync_config, broker_enabled=False).connection_fingerprint() != base
    assert replace(sync_config, keys={}).connection_fingerprint() != base


def test_secrets_not_exposed_in_repr(mock_settings: AppSettings) -> None:
    assert "test-app-secret" not in repr(mock_settings.broker)


class TestConfigNotifier:
    @pytest.mark.asyncio
    async def test_update_notifies_with_old_and_new(self, sync_config: SyncConfig) -> None:
        notifier = ConfigNotifier(sync_config)
        calls: list[tuple[SyncConfig, SyncConfig]] = []

        async def listener(old: SyncConfig, new: SyncConfig) -> None:
            calls.append((old, new))

        notifier.subscribe(listener)
        updated = await notifier.update(mode=TradingMode.LIVE)

        assert notifier.current is updated
        assert calls == [(sync_config, updated)]
        assert updated.mode is TradingMode.LIVE

    @pytest.mark.asyncio
    async def test_no_change_no_event(self, sync_config: SyncConfig) -> None:
        notifier = ConfigNotifier(sync_config)
        calls: list = []

        async def listener(old: SyncConfig, new: SyncConfig) -> None:
            calls.append(new)

        notifier.subscribe(listener)
        result = await notifier.update(mode=TradingMode.PAPER)

        assert result is sync_config
        assert calls == []

    @pytest.mark.asyncio
    async def test_symbols_deduplicated_in_order(self, sync_config: SyncConfig) -> None:
        notifier = ConfigNotifier(sync_config)

        updated = await notifier.update(active_symbols=["0001", "005930", "0001"])

        assert updated.active_symbols == ("0001", "005930")

    @pytest.mark.asyncio
    async def test_failing_listener_isolated(self, sync_config: SyncConfig) -> None:
        notifier = ConfigNotifier(sync_config)
        seen: list = []

        async def broken(old: SyncConfig, new: SyncConfig) -> None:
            raise RuntimeError("boom")

        async def listener(old: SyncConfig, new: SyncConfig) -> None:
            seen.append(new.broker_enabled)

        notifier.subscribe(broken)
        notifier.subscribe(listener)
        await notifier.update(broker_enabled=False)

        assert seen == [False]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, sync_config: SyncConfig) -> None:
        notifier = ConfigNotifier(sync_config)
        seen: list = []

        async def listener(old: SyncConfig, new: SyncConfig) -> None:
            seen.append(new)

        unsubscribe = notifier.subscribe(listener)
        unsubscribe()
        await notifier.update(secondary_enabled=False)

        assert seen == []
