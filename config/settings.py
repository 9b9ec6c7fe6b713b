"""
Configuration loader for the Integration Bridge.
Reads settings from YAML file with environment variable substitution,
then applies BRIDGE_* environment overrides.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


OVERFLOW_POLICIES = ("reject", "drop_oldest")

CERT_FOLDER = "/u01/ssl/"


class ConfigError(ValueError):
    """Raised when settings hold values the relay cannot run with."""


@dataclass
class RelayConfig:
    host: str = "0.0.0.0"
    port: int = 5000
    path: str = "/iot/integration"
    target_header: str = "WEDO-Target"
    concurrency: int = 1               # delivery lanes
    timeout_ms: int = 5000             # per-phase outbound timeout
    queue_max_depth: int = 0           # 0 = unbounded
    overflow_policy: str = "reject"    # "reject" | "drop_oldest"


@dataclass
class TLSConfig:
    enabled: bool = True
    cert_file: str = CERT_FOLDER + "certificate.fullchain.crt"
    key_file: str = CERT_FOLDER + "certificate.key"


@dataclass
class Settings:
    app_name: str = "IoTCS Integration Bridge"
    version: str = "1.0.0"
    verbose: bool = False
    log_json: bool = False
    relay: RelayConfig = field(default_factory=RelayConfig)
    tls: TLSConfig = field(default_factory=TLSConfig)


_settings: Optional[Settings] = None

# env var -> (section, attribute, caster)
_ENV_OVERRIDES = {
    "BRIDGE_HOST": ("relay", "host", str),
    "BRIDGE_PORT": ("relay", "port", int),
    "BRIDGE_PATH": ("relay", "path", str),
    "BRIDGE_TARGET_HEADER": ("relay", "target_header", str),
    "BRIDGE_CONCURRENCY": ("relay", "concurrency", int),
    "BRIDGE_TIMEOUT_MS": ("relay", "timeout_ms", int),
    "BRIDGE_QUEUE_MAX_DEPTH": ("relay", "queue_max_depth", int),
    "BRIDGE_OVERFLOW_POLICY": ("relay", "overflow_policy", str),
    "BRIDGE_TLS_ENABLED": ("tls", "enabled", "bool"),
    "BRIDGE_TLS_CERT": ("tls", "cert_file", str),
    "BRIDGE_TLS_KEY": ("tls", "key_file", str),
    "BRIDGE_VERBOSE": (None, "verbose", "bool"),
    "BRIDGE_LOG_JSON": (None, "log_json", "bool"),
}


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _cast(raw: Any, caster: Any, name: str) -> Any:
    try:
        if caster == "bool":
            return _as_bool(raw)
        return caster(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from e


def _apply_env_overrides(settings: Settings) -> None:
    for env_name, (section, attr, caster) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        target = getattr(settings, section) if section else settings
        setattr(target, attr, _cast(raw, caster, env_name))


def validate_settings(settings: Settings) -> Settings:
    """Reject values the relay cannot run with."""
    relay = settings.relay
    if relay.concurrency < 1:
        raise ConfigError(f"concurrency must be >= 1, got {relay.concurrency}")
    if relay.timeout_ms <= 0:
        raise ConfigError(f"timeout_ms must be > 0, got {relay.timeout_ms}")
    if relay.queue_max_depth < 0:
        raise ConfigError(f"queue_max_depth must be >= 0, got {relay.queue_max_depth}")
    if relay.overflow_policy not in OVERFLOW_POLICIES:
        raise ConfigError(
            f"overflow_policy must be one of {', '.join(OVERFLOW_POLICIES)}, "
            f"got {relay.overflow_policy!r}"
        )
    if not relay.path.startswith("/"):
        raise ConfigError(f"path must start with '/', got {relay.path!r}")
    if not relay.target_header.strip():
        raise ConfigError("target_header must not be empty")
    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then environment overrides.

    A path given explicitly (argument or BRIDGE_CONFIG) must exist; the
    default config/settings.yaml is optional.
    """
    global _settings

    if config_path is None:
        config_path = os.environ.get("BRIDGE_CONFIG") or None
    if config_path is None:
        config_path = str(Path(__file__).parent / "settings.yaml")
    elif not Path(config_path).is_file():
        raise ConfigError(f"Settings file not found: {config_path}")

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.verbose = _as_bool(raw.get("verbose", settings.verbose))
        settings.log_json = _as_bool(raw.get("log_json", settings.log_json))

        if "relay" in raw:
            r = raw["relay"] or {}
            defaults = RelayConfig()
            settings.relay = RelayConfig(
                host=r.get("host", defaults.host),
                port=_cast(r.get("port", defaults.port), int, "relay.port"),
                path=r.get("path", defaults.path),
                target_header=r.get("target_header", defaults.target_header),
                concurrency=_cast(r.get("concurrency", defaults.concurrency), int, "relay.concurrency"),
                timeout_ms=_cast(r.get("timeout_ms", defaults.timeout_ms), int, "relay.timeout_ms"),
                queue_max_depth=_cast(
                    r.get("queue_max_depth", defaults.queue_max_depth), int, "relay.queue_max_depth"
                ),
                overflow_policy=r.get("overflow_policy", defaults.overflow_policy),
            )

        if "tls" in raw:
            t = raw["tls"] or {}
            defaults = TLSConfig()
            settings.tls = TLSConfig(
                enabled=_as_bool(t.get("enabled", defaults.enabled)),
                cert_file=t.get("cert_file", defaults.cert_file),
                key_file=t.get("key_file", defaults.key_file),
            )

    _apply_env_overrides(settings)
    validate_settings(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
