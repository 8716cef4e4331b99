"""Configuration loading utilities for the provisioning dispatcher."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
ENV_CONFIG_PATH = "PROVISION_CONFIG"
ENV_PREFIX = "PROVISION_"


@dataclass
class GraphConfig:
    """Settings for the Microsoft Graph integration (app-only, multi-tenant)."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    default_usage_location: Optional[str] = None
    timeout: int = 30

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class ConnectWiseConfig:
    """Settings for ConnectWise Manage ticket notes."""

    base_url: str = "https://api-na.myconnectwise.net/v4_6_release/apis/3.0"
    company_id: Optional[str] = None
    public_key: Optional[str] = None
    private_key: Optional[str] = None
    client_id: Optional[str] = None
    internal_note: bool = True
    include_password_in_note: bool = False
    timeout: int = 30

    @property
    def has_credentials(self) -> bool:
        return bool(self.company_id and self.public_key and self.private_key and self.client_id)


@dataclass
class ExchangeConfig:
    """Settings for Exchange Online PowerShell (distribution lists, shared mailboxes)."""

    organization: Optional[str] = None
    certificate_thumbprint: Optional[str] = None
    app_id: Optional[str] = None
    powershell_path: str = "pwsh"
    timeout: int = 120

    @property
    def has_credentials(self) -> bool:
        return bool(self.organization and self.certificate_thumbprint and self.app_id)


@dataclass
class LicensingConfig:
    """License assignment switches and friendly-name aliases."""

    enabled: bool = True
    aliases: Dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineConfig:
    """Tuning for the dispatcher itself."""

    lookup_retries: int = 2
    retry_backoff_seconds: float = 1.0
    reuse_existing_user: bool = False
    password_length: int = 16


@dataclass
class SecurityConfig:
    key: Optional[str] = None


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    graph: GraphConfig = field(default_factory=GraphConfig)
    connectwise: ConnectWiseConfig = field(default_factory=ConnectWiseConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    licensing: LicensingConfig = field(default_factory=LicensingConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set PROVISION_ environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        loaded = yaml.safe_load(file) or {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return loaded


def _apply_environment_overrides(
    config_dict: Dict[str, Any], environ: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    source = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for key, value in source.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH and not resolved_path.exists():
        # Function hosts usually ship app settings only.
        config_dict: Dict[str, Any] = {}
    else:
        config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config_dict.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return value


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any, name: str) -> int:
    try:
        if isinstance(value, str):
            return int(value.strip())
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Configuration value '{name}' must be an integer.") from exc


def _to_float(value: Any, name: str) -> float:
    try:
        if isinstance(value, str):
            return float(value.strip())
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Configuration value '{name}' must be a number.") from exc


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _aliases(raw: Any) -> Dict[str, str]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration value 'licensing.aliases' must be a mapping.")
    return {
        str(name).strip().lower(): str(sku).strip()
        for name, sku in raw.items()
        if str(name).strip() and str(sku or "").strip()
    }


def build_config(config_dict: Dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from an already merged configuration mapping."""

    graph_section = _section(config_dict, "graph")
    defaults = GraphConfig()
    graph_config = GraphConfig(
        tenant_id=_optional_str(graph_section.get("tenant_id")),
        client_id=_optional_str(graph_section.get("client_id")),
        client_secret=_optional_str(graph_section.get("client_secret")),
        default_usage_location=_optional_str(graph_section.get("default_usage_location")),
        timeout=_to_int(graph_section.get("timeout", defaults.timeout), "graph.timeout"),
    )

    cw_section = _section(config_dict, "connectwise")
    cw_defaults = ConnectWiseConfig()
    connectwise_config = ConnectWiseConfig(
        base_url=(_optional_str(cw_section.get("base_url")) or cw_defaults.base_url).rstrip("/"),
        company_id=_optional_str(cw_section.get("company_id")),
        public_key=_optional_str(cw_section.get("public_key")),
        private_key=_optional_str(cw_section.get("private_key")),
        client_id=_optional_str(cw_section.get("client_id")),
        internal_note=_to_bool(cw_section.get("internal_note", cw_defaults.internal_note)),
        include_password_in_note=_to_bool(cw_section.get("include_password_in_note", False)),
        timeout=_to_int(cw_section.get("timeout", cw_defaults.timeout), "connectwise.timeout"),
    )

    exo_section = _section(config_dict, "exchange")
    exo_defaults = ExchangeConfig()
    exchange_config = ExchangeConfig(
        organization=_optional_str(exo_section.get("organization")),
        certificate_thumbprint=_optional_str(exo_section.get("certificate_thumbprint")),
        app_id=_optional_str(exo_section.get("app_id")) or graph_config.client_id,
        powershell_path=_optional_str(exo_section.get("powershell_path")) or exo_defaults.powershell_path,
        timeout=_to_int(exo_section.get("timeout", exo_defaults.timeout), "exchange.timeout"),
    )

    licensing_section = _section(config_dict, "licensing")
    licensing_config = LicensingConfig(
        enabled=_to_bool(licensing_section.get("enabled", True)),
        aliases=_aliases(licensing_section.get("aliases")),
    )

    pipeline_section = _section(config_dict, "pipeline")
    pipeline_defaults = PipelineConfig()
    pipeline_config = PipelineConfig(
        lookup_retries=max(
            0,
            _to_int(
                pipeline_section.get("lookup_retries", pipeline_defaults.lookup_retries),
                "pipeline.lookup_retries",
            ),
        ),
        retry_backoff_seconds=max(
            0.0,
            _to_float(
                pipeline_section.get("retry_backoff_seconds", pipeline_defaults.retry_backoff_seconds),
                "pipeline.retry_backoff_seconds",
            ),
        ),
        reuse_existing_user=_to_bool(pipeline_section.get("reuse_existing_user", False)),
        password_length=max(
            12,
            _to_int(
                pipeline_section.get("password_length", pipeline_defaults.password_length),
                "pipeline.password_length",
            ),
        ),
    )

    security_section = _section(config_dict, "security")
    logging_section = _section(config_dict, "logging")

    return AppConfig(
        graph=graph_config,
        connectwise=connectwise_config,
        exchange=exchange_config,
        licensing=licensing_config,
        pipeline=pipeline_config,
        security=SecurityConfig(key=_optional_str(security_section.get("key"))),
        logging=LoggingConfig(
            level=(_optional_str(logging_section.get("level")) or "INFO").upper()
        ),
    )


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    return build_config(_load_config_dict(path))


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "ConnectWiseConfig",
    "ExchangeConfig",
    "GraphConfig",
    "LicensingConfig",
    "LoggingConfig",
    "PipelineConfig",
    "SecurityConfig",
    "build_config",
    "load_config",
]
