from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from pydantic import ValidationError
from pydantic.dataclasses import dataclass

from .file_io import atomic_write_json
from .locks import FileLockTimeout, acquire_lock
from .log import log, redact_url
from .paths import DATA_DIR, SETTINGS_FILE

__all__ = [
    "DATA_DIR",
    "Settings",
    "SettingsError",
    "get_settings",
    "update_settings",
]

CacheKey = Tuple[Optional[float], Tuple[Tuple[str, Optional[str]], ...]]


class SettingsError(ValueError):
    """Raised when an explicit settings update does not validate."""


@dataclass
class Settings:
    # exchange
    exchange_base_url: str = "https://fapi.binance.com"
    http_timeout_sec: float = 10.0
    http_max_attempts: int = 3

    # kline database
    database_url: str = ""
    kline_table: str = "kline_data"
    database_pool_size: int = 5

    # tradable symbols
    tradable_ttl_hours: float = 24.0

    # historical range profiles
    profile_lookback_days: int = 25
    profile_min_candles: int = 20
    profile_retention_days: int = 7
    profile_batch_size: int = 10

    # volume breakouts
    volume_days: int = 7
    volume_multiplier: float = 2.0
    volume_top_k: int = 50
    volume_batch_size: int = 10
    volume_batch_delay_sec: float = 0.1

    # rankings / refresh loop
    ranking_top_n: int = 10
    update_interval_seconds: int = 30

    def describe(self) -> Dict[str, Any]:
        """Return the settings with credentials masked, for logs and banners."""

        payload = asdict(self)
        payload["database_url"] = redact_url(self.database_url)
        return payload


_ENV_MAP = {
    "exchange_base_url": "OPPORTUNITY_EXCHANGE_URL",
    "http_timeout_sec": "OPPORTUNITY_HTTP_TIMEOUT_SEC",
    "http_max_attempts": "OPPORTUNITY_HTTP_MAX_ATTEMPTS",
    "database_url": "OPPORTUNITY_DATABASE_URL",
    "kline_table": "OPPORTUNITY_KLINE_TABLE",
    "database_pool_size": "OPPORTUNITY_DATABASE_POOL_SIZE",
    "tradable_ttl_hours": "OPPORTUNITY_TRADABLE_TTL_HOURS",
    "profile_lookback_days": "OPPORTUNITY_PROFILE_LOOKBACK_DAYS",
    "profile_min_candles": "OPPORTUNITY_PROFILE_MIN_CANDLES",
    "profile_retention_days": "OPPORTUNITY_PROFILE_RETENTION_DAYS",
    "profile_batch_size": "OPPORTUNITY_PROFILE_BATCH_SIZE",
    "volume_days": "OPPORTUNITY_VOLUME_DAYS",
    "volume_multiplier": "OPPORTUNITY_VOLUME_MULTIPLIER",
    "volume_top_k": "OPPORTUNITY_VOLUME_TOP_K",
    "volume_batch_size": "OPPORTUNITY_VOLUME_BATCH_SIZE",
    "volume_batch_delay_sec": "OPPORTUNITY_VOLUME_BATCH_DELAY_SEC",
    "ranking_top_n": "OPPORTUNITY_RANKING_TOP_N",
    "update_interval_seconds": "OPPORTUNITY_UPDATE_INTERVAL_SECONDS",
}

_INT_FIELDS = {
    "http_max_attempts",
    "database_pool_size",
    "profile_lookback_days",
    "profile_min_candles",
    "profile_retention_days",
    "profile_batch_size",
    "volume_days",
    "volume_top_k",
    "volume_batch_size",
    "ranking_top_n",
    "update_interval_seconds",
}

_FLOAT_FIELDS = {
    "http_timeout_sec",
    "tradable_ttl_hours",
    "volume_multiplier",
    "volume_batch_delay_sec",
}

# Lower bounds applied after merging; the lookback must leave room for the
# minimum candle count.
_MINIMUMS: Dict[str, float] = {
    "http_timeout_sec": 0.5,
    "http_max_attempts": 1,
    "database_pool_size": 1,
    "tradable_ttl_hours": 0.0,
    "profile_min_candles": 20,
    "profile_retention_days": 1,
    "profile_batch_size": 1,
    "volume_days": 1,
    "volume_multiplier": 0.0,
    "volume_top_k": 1,
    "volume_batch_size": 1,
    "volume_batch_delay_sec": 0.0,
    "ranking_top_n": 1,
    "update_interval_seconds": 5,
}

_CACHE: Dict[str, Any] = {"settings": None, "key": None}


def _cast_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _cast_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _bulk_cast(target: Dict[str, Any], keys: Iterable[str], caster: Callable[[Any], Any]) -> None:
    for name in keys:
        if name in target:
            cast = caster(target[name])
            if cast is None:
                target.pop(name)
            else:
                target[name] = cast


def _read_env() -> Dict[str, Optional[str]]:
    return {name: os.getenv(env_key) for name, env_key in _ENV_MAP.items()}


def _env_overrides(raw_env: Optional[Mapping[str, Optional[str]]] = None) -> Dict[str, Any]:
    raw = dict(raw_env if raw_env is not None else _read_env())
    overrides = {key: value for key, value in raw.items() if value not in (None, "")}
    _bulk_cast(overrides, _INT_FIELDS, _cast_int)
    _bulk_cast(overrides, _FLOAT_FIELDS, _cast_float)
    return overrides


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {f.name for f in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def _apply_minimums(payload: Dict[str, Any]) -> Dict[str, Any]:
    for name, minimum in _MINIMUMS.items():
        value = payload.get(name)
        if isinstance(value, (int, float)) and value < minimum:
            payload[name] = type(value)(minimum)
    lookback = payload.get("profile_lookback_days")
    min_candles = payload.get("profile_min_candles", 20)
    if isinstance(lookback, int) and lookback < min_candles:
        payload["profile_lookback_days"] = min_candles
    base_url = payload.get("exchange_base_url")
    if isinstance(base_url, str):
        payload["exchange_base_url"] = base_url.strip().rstrip("/")
    return payload


def _load_file(path: Optional[Path] = None) -> Dict[str, Any]:
    path = path or SETTINGS_FILE
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        log("settings.load.error", path=str(path), err=str(exc))
        return {}

    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        log("settings.load.invalid_json", path=str(path), err=str(exc))
        return {}
    if not isinstance(payload, dict):
        log("settings.load.invalid_shape", path=str(path))
        return {}
    return _filter_fields(payload)


def _file_mtime(path: Path) -> Optional[float]:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None


def _build(payload: Dict[str, Any]) -> Settings:
    return Settings(**_apply_minimums(_filter_fields(payload)))


def _invalidate_cache() -> None:
    _CACHE["settings"] = None
    _CACHE["key"] = None


def get_settings(force_reload: bool = False) -> Settings:
    """Return defaults merged with ``settings.json`` and ``OPPORTUNITY_*`` variables."""

    raw_env = _read_env()
    key: CacheKey = (_file_mtime(SETTINGS_FILE), tuple(sorted(raw_env.items())))

    cached = _CACHE.get("settings")
    if not force_reload and cached is not None and _CACHE.get("key") == key:
        return cached

    merged = asdict(Settings())
    merged.update(_load_file())
    merged.update(_env_overrides(raw_env))

    try:
        settings = _build(merged)
    except ValidationError as exc:
        log("settings.validation.failed", err=str(exc))
        settings = _build({**asdict(Settings()), **_env_overrides(raw_env)})

    _CACHE["settings"] = settings
    _CACHE["key"] = key
    return settings


def update_settings(**kwargs: Any) -> Settings:
    """Validate and persist ``kwargs`` into ``settings.json``."""

    unknown = set(kwargs) - {f.name for f in fields(Settings)}
    if unknown:
        raise SettingsError(f"unknown settings: {', '.join(sorted(unknown))}")

    try:
        with acquire_lock(SETTINGS_FILE):
            stored = _load_file()
            stored.update(kwargs)
            try:
                candidate = _build({**asdict(Settings()), **stored})
            except ValidationError as exc:
                raise SettingsError(str(exc)) from exc
            persisted = {key: getattr(candidate, key) for key in stored}
            atomic_write_json(SETTINGS_FILE, persisted)
    except FileLockTimeout as exc:
        log("settings.update.lock_timeout", err=str(exc))
        raise

    log("settings.update", fields=sorted(kwargs))
    _invalidate_cache()
    return get_settings(force_reload=True)
