"""
Project configuration consumed by the resolver and the artifact compiler.
"""
import logging
import os
import re
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field

from .errors import ConfigValidationError

logger = logging.getLogger(__name__)

EXPOSE_MODE_CLOUDFLARED = "cloudflared"
EXPOSE_MODE_DIRECT = "direct"
EXPOSE_MODE_LAN = "lan"
EXPOSE_MODES = (EXPOSE_MODE_LAN, EXPOSE_MODE_DIRECT, EXPOSE_MODE_CLOUDFLARED)

ROUTING_STRATEGY_PATH = "path"
ROUTING_STRATEGY_SUBDOMAIN = "subdomain"
ROUTING_STRATEGIES = (ROUTING_STRATEGY_SUBDOMAIN, ROUTING_STRATEGY_PATH)

CONFIG_FILE_NAME = ".sdbx.yaml"

DOMAIN_PATTERN = re.compile(r"^([a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$")

# Environment variable -> dotted config field
ENV_OVERRIDES = {
    "SDBX_DOMAIN": "domain",
    "SDBX_TIMEZONE": "timezone",
    "SDBX_EXPOSE_MODE": "expose.mode",
    "SDBX_ROUTING_STRATEGY": "routing.strategy",
    "SDBX_ROUTING_BASE_DOMAIN": "routing.base_domain",
    "SDBX_CONFIG_PATH": "config_path",
    "SDBX_DATA_PATH": "data_path",
    "SDBX_DOWNLOADS_PATH": "downloads_path",
    "SDBX_MEDIA_PATH": "media_path",
    "SDBX_VPN_ENABLED": "vpn_enabled",
    "SDBX_VPN_PROVIDER": "vpn_provider",
    "SDBX_VPN_COUNTRY": "vpn_country",
}


class TLSConfig(BaseModel):
    provider: str = "acme"
    email: str = ""
    cert_file: str = ""
    key_file: str = ""


class ExposeConfig(BaseModel):
    mode: str = EXPOSE_MODE_CLOUDFLARED
    tls: TLSConfig = Field(default_factory=TLSConfig)


class RoutingStrategyConfig(BaseModel):
    strategy: str = ROUTING_STRATEGY_SUBDOMAIN
    base_domain: str = "sdbx"


class ServiceRoutingOverride(BaseModel):
    """
    Per-service routing customization set by the operator.
    """
    routing: str = ""
    subdomain: str = ""
    path: str = ""


class ProjectConfig(BaseModel):
    """
    The operator's desired deployment: domain, exposure, routing, paths, VPN and addons.
    """
    domain: str = "sdbx.example.com"
    timezone: str = "Europe/Paris"
    expose: ExposeConfig = Field(default_factory=ExposeConfig)
    routing: RoutingStrategyConfig = Field(default_factory=RoutingStrategyConfig)

    config_path: str = "./config"
    data_path: str = "./data"
    downloads_path: str = "./data/downloads"
    media_path: str = "./data/media"

    puid: int = 1000
    pgid: int = 1000
    umask: str = "002"

    vpn_enabled: bool = False
    vpn_provider: str = ""
    vpn_username: str = ""
    vpn_country: str = ""

    addons: List[str] = []
    services: Dict[str, ServiceRoutingOverride] = {}

    def ensure_valid(self) -> None:
        """
        Checks every field that resolution depends on.

        :raises ConfigValidationError: On the first invalid field.
        """
        if not self.domain:
            raise ConfigValidationError("domain", "domain is required")
        if not DOMAIN_PATTERN.match(self.domain):
            raise ConfigValidationError("domain", "invalid domain format")

        if not self.timezone:
            raise ConfigValidationError("timezone", "timezone is required")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigValidationError(
                "timezone",
                f"invalid timezone {self.timezone!r} - must be a valid IANA timezone",
            )

        if self.expose.mode not in EXPOSE_MODES:
            raise ConfigValidationError("expose.mode", f"must be one of: {', '.join(EXPOSE_MODES)}")
        if self.routing.strategy not in ROUTING_STRATEGIES:
            raise ConfigValidationError("routing.strategy", f"must be one of: {', '.join(ROUTING_STRATEGIES)}")
        if self.routing.strategy == ROUTING_STRATEGY_PATH and not self.routing.base_domain:
            raise ConfigValidationError("routing.base_domain", "base_domain is required when using path routing")

        if self.vpn_enabled and not self.vpn_provider:
            raise ConfigValidationError("vpn_provider", "vpn_provider is required when VPN is enabled")

        for field in ("config_path", "media_path", "downloads_path"):
            if not getattr(self, field):
                raise ConfigValidationError(field, f"{field} cannot be empty")

        if not 0 <= self.puid <= 65535:
            raise ConfigValidationError("puid", "must be between 0 and 65535")
        if not 0 <= self.pgid <= 65535:
            raise ConfigValidationError("pgid", "must be between 0 and 65535")

        for name, override in self.services.items():
            if override.routing and override.routing not in ROUTING_STRATEGIES:
                raise ConfigValidationError(f"services.{name}.routing", f"must be one of: {', '.join(ROUTING_STRATEGIES)}")

    # Addons

    def is_addon_enabled(self, addon: str) -> bool:
        return addon in self.addons

    def enable_addon(self, addon: str) -> None:
        if addon not in self.addons:
            self.addons.append(addon)

    def disable_addon(self, addon: str) -> None:
        self.addons = [a for a in self.addons if a != addon]

    # Routing

    def service_routing_strategy(self, service: str) -> str:
        """Per-service strategy override, falling back to the global strategy."""
        override = self.services.get(service)
        if override and override.routing:
            return override.routing
        return self.routing.strategy

    def service_subdomain(self, service: str, default: Optional[str] = None) -> str:
        override = self.services.get(service)
        if override and override.subdomain:
            return override.subdomain
        return default or service

    def service_path(self, service: str, default: Optional[str] = None) -> str:
        override = self.services.get(service)
        if override and override.path:
            return override.path
        return default or f"/{service}"

    @property
    def is_cloudflared(self) -> bool:
        return self.expose.mode == EXPOSE_MODE_CLOUDFLARED

    @property
    def needs_tls(self) -> bool:
        return self.expose.mode == EXPOSE_MODE_DIRECT

    @property
    def is_path_routing(self) -> bool:
        return self.routing.strategy == ROUTING_STRATEGY_PATH


def load_config(path: str = CONFIG_FILE_NAME, env_file: Optional[str] = None) -> ProjectConfig:
    """
    Loads the project configuration.

    Values come from the YAML file, then from ``env_file`` (if given and present),
    then from the process environment; later layers win.

    :param path: Path to the YAML configuration file. A missing file yields defaults.
    :param env_file: Optional dotenv file with ``SDBX_*`` overrides.
    :return: The merged configuration (not yet validated).
    """
    data = {}
    if os.path.exists(path):
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        # Legacy flat key
        legacy_mode = data.pop("expose_mode", None)
        if legacy_mode and not (data.get("expose") or {}).get("mode"):
            data.setdefault("expose", {})["mode"] = legacy_mode
    else:
        logger.debug("No configuration file at %s, using defaults", path)

    overrides: Dict[str, Optional[str]] = {}
    if env_file and os.path.exists(env_file):
        overrides.update(dotenv_values(env_file))
    overrides.update({k: v for k, v in os.environ.items() if k in ENV_OVERRIDES})

    for env_name, value in overrides.items():
        field = ENV_OVERRIDES.get(env_name)
        if field is None or value is None:
            continue
        _set_dotted(data, field, value)

    return ProjectConfig.model_validate(data)


def save_config(config: ProjectConfig, path: str = CONFIG_FILE_NAME) -> None:
    """
    Writes the configuration as YAML, replacing the file atomically.
    """
    from ..UTILS.atomic_write import atomic_write_text

    data = config.model_dump(mode="json")
    if not data.get("services"):
        data.pop("services", None)
    atomic_write_text(path, yaml.safe_dump(data, sort_keys=False, default_flow_style=False))


def _set_dotted(data: Dict, dotted: str, value: str) -> None:
    parts = dotted.split(".")
    target = data
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    if parts[-1] == "vpn_enabled":
        target[parts[-1]] = value.strip().lower() in ("1", "true", "yes", "on")
    else:
        target[parts[-1]] = value
