from __future__ import annotations

import json

import pytest

from opportunity_app.utils import envs


@pytest.fixture()
def settings_file(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    monkeypatch.setattr(envs, "SETTINGS_FILE", path)
    envs._invalidate_cache()
    yield path
    envs._invalidate_cache()


def test_defaults_without_file_or_env(settings_file) -> None:
    settings = envs.get_settings(force_reload=True)

    assert settings.exchange_base_url == "https://fapi.binance.com"
    assert settings.profile_min_candles == 20
    assert settings.volume_days == 7
    assert settings.volume_multiplier == 2.0
    assert settings.update_interval_seconds == 30


def test_environment_overrides_file(settings_file, monkeypatch) -> None:
    settings_file.write_text(json.dumps({"volume_days": 14, "ranking_top_n": 5}), encoding="utf-8")
    monkeypatch.setenv("OPPORTUNITY_VOLUME_DAYS", "3")
    monkeypatch.setenv("OPPORTUNITY_EXCHANGE_URL", "https://fapi.example/ ")

    settings = envs.get_settings(force_reload=True)

    assert settings.volume_days == 3
    assert settings.ranking_top_n == 5
    assert settings.exchange_base_url == "https://fapi.example"


def test_invalid_env_values_are_ignored(settings_file, monkeypatch) -> None:
    monkeypatch.setenv("OPPORTUNITY_VOLUME_TOP_K", "many")
    monkeypatch.setenv("OPPORTUNITY_VOLUME_MULTIPLIER", "abc")

    settings = envs.get_settings(force_reload=True)

    assert settings.volume_top_k == 50
    assert settings.volume_multiplier == 2.0


def test_minimums_are_enforced(settings_file, monkeypatch) -> None:
    monkeypatch.setenv("OPPORTUNITY_PROFILE_MIN_CANDLES", "5")
    monkeypatch.setenv("OPPORTUNITY_PROFILE_LOOKBACK_DAYS", "10")
    monkeypatch.setenv("OPPORTUNITY_UPDATE_INTERVAL_SECONDS", "1")

    settings = envs.get_settings(force_reload=True)

    assert settings.profile_min_candles == 20
    assert settings.profile_lookback_days == 20
    assert settings.update_interval_seconds == 5


def test_corrupt_file_falls_back_to_defaults(settings_file) -> None:
    settings_file.write_text("{broken", encoding="utf-8")

    assert envs.get_settings(force_reload=True).volume_top_k == 50


def test_update_settings_persists_and_invalidates_cache(settings_file) -> None:
    before = envs.get_settings(force_reload=True)

    updated = envs.update_settings(volume_multiplier=3.5, database_url="mysql+pymysql://u:pw@db/klines")

    assert before.volume_multiplier == 2.0
    assert updated.volume_multiplier == 3.5
    stored = json.loads(settings_file.read_text(encoding="utf-8"))
    assert stored["volume_multiplier"] == 3.5
    assert envs.get_settings() is updated
    assert updated.describe()["database_url"] == "mysql+pymysql://u:***@db/klines"


def test_update_settings_rejects_unknown_keys(settings_file) -> None:
    with pytest.raises(envs.SettingsError):
        envs.update_settings(leverage=10)

    assert not settings_file.exists()
