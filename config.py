from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loadgen import DEFAULT_HEADERS
from logsink import LEVELS
from runner import RunConfig


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class MonitorConfig:
    mongodb_url: Optional[str] = None
    metrics_url: Optional[str] = None
    metric_names: Optional[list[str]] = None
    poll_interval_s: float = 5.0

    @property
    def enabled(self) -> bool:
        return bool(self.mongodb_url or self.metrics_url)


@dataclass(frozen=True)
class LoadTestConfig:
    run: RunConfig
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    log_dir: Path = Path("logs")
    prefix: str = "load_test"
    include_console: bool = True
    log_level: str = "INFO"
    output_dir: Optional[Path] = None


def _get(raw: dict[str, Any], key: str, kind: type | tuple[type, ...], default: Any) -> Any:
    value = raw.get(key, default)
    if value is None:
        return default
    # bool is an int subclass; "startUsers": true is a mistake, not 1.
    if isinstance(value, bool) and bool not in (kind if isinstance(kind, tuple) else (kind,)):
        raise ConfigError(f"'{key}' must not be a boolean")
    if not isinstance(value, kind):
        raise ConfigError(f"'{key}' has invalid type {type(value).__name__}")
    return value


def _int(raw: dict[str, Any], key: str, default: Optional[int]) -> Optional[int]:
    value = _get(raw, key, (int, float), default)
    if value is None:
        return None
    if isinstance(value, float) and not value.is_integer():
        raise ConfigError(f"'{key}' must be an integer, got {value}")
    return int(value)


def _float(raw: dict[str, Any], key: str, default: float) -> float:
    value = float(_get(raw, key, (int, float), default))
    # json.loads accepts NaN and Infinity; neither bounds a run.
    if not math.isfinite(value):
        raise ConfigError(f"'{key}' must be a finite number, got {value}")
    return value


def parse_config(raw: Any) -> LoadTestConfig:
    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be a JSON object")

    url = _get(raw, "apiUrl", str, None) or _get(raw, "url", str, None)
    if not url:
        raise ConfigError("'apiUrl' is required")
    if not url.startswith(("http://", "https://")):
        raise ConfigError(f"'apiUrl' must be an http(s) URL, got {url!r}")

    headers = _get(raw, "headers", dict, dict(DEFAULT_HEADERS))
    for name, value in headers.items():
        if not isinstance(value, str):
            raise ConfigError(f"Header '{name}' must be a string")

    metric_names = _get(raw, "metricNames", list, None)
    if metric_names is not None and not all(isinstance(name, str) for name in metric_names):
        raise ConfigError("'metricNames' must be a list of strings")

    output_dir = _get(raw, "outputDir", str, None)
    try:
        run = RunConfig(
            url=url,
            method=_get(raw, "method", str, "GET").upper(),
            payload=raw.get("payload"),
            headers=dict(headers),
            start_users=_int(raw, "startUsers", 1),
            max_users=_int(raw, "maxUsers", 100),
            increment_by=_int(raw, "incrementBy", 10),
            duration_per_step_s=_float(raw, "durationPerStep", 60.0),
            ramp_up_s=_float(raw, "rampUpTime", 10.0),
            timeout_s=_float(raw, "timeoutS", 30.0),
            max_connections=_int(raw, "maxConnections", None),
        )
        monitor = MonitorConfig(
            mongodb_url=_get(raw, "mongoDBUrl", str, None),
            metrics_url=_get(raw, "metricsUrl", str, None),
            metric_names=metric_names,
            poll_interval_s=_float(raw, "metricsIntervalS", 5.0),
        )
    except ConfigError:
        raise
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    if monitor.mongodb_url and monitor.metrics_url:
        raise ConfigError("Set only one of 'mongoDBUrl' and 'metricsUrl'")
    if monitor.poll_interval_s <= 0:
        raise ConfigError("'metricsIntervalS' must be > 0")
    log_level = _get(raw, "logLevel", str, "INFO").upper()
    if log_level not in LEVELS:
        raise ConfigError(f"'logLevel' must be one of {', '.join(LEVELS)}, got {log_level}")

    return LoadTestConfig(
        run=run,
        monitor=monitor,
        log_dir=Path(_get(raw, "logDir", str, "logs")),
        prefix=_get(raw, "prefix", str, "load_test"),
        include_console=_get(raw, "includeConsole", bool, True),
        log_level=log_level,
        output_dir=Path(output_dir) if output_dir else None,
    )


def load_config(path: Path | str) -> LoadTestConfig:
    config_path = Path(path)
    try:
        content = config_path.resolve().read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read the configuration file at '{config_path}': {exc}") from exc
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse the configuration file at '{config_path}': {exc}") from exc
    return parse_config(raw)
