"""
Models for the persisted source configuration (sources.yaml).
"""
import os
import re
from datetime import timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .. import API_VERSION

KIND_SOURCE_CONFIG = "SourceConfig"

SOURCE_TYPE_GIT = "git"
SOURCE_TYPE_LOCAL = "local"
SOURCE_TYPE_EMBEDDED = "embedded"
SOURCE_TYPES = (SOURCE_TYPE_GIT, SOURCE_TYPE_LOCAL, SOURCE_TYPE_EMBEDDED)

EMBEDDED_SOURCE_NAME = "embedded"
EMBEDDED_SOURCE_PRIORITY = -1

OFFICIAL_SOURCE_URL = "https://github.com/maiko/SDBX-Services.git"
DEFAULT_TTL = "24h"

_DURATION_PATTERN = re.compile(r"(\d+)([smhd])")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


class SourceDef(BaseModel):
    """
    A single configured source of service definitions.
    """
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: str = SOURCE_TYPE_LOCAL
    url: str = ""
    path: str = ""
    branch: str = ""
    ssh_key: str = ""
    priority: int = 0
    enabled: bool = True
    verified: bool = False


class CacheConfig(BaseModel):
    directory: str = ""
    ttl: str = DEFAULT_TTL


class TrustLevel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    allow_privileged: bool = Field(False, alias="allowPrivileged")
    allow_host_network: bool = Field(False, alias="allowHostNetwork")
    allow_capabilities: List[str] = Field([], alias="allowCapabilities")
    allowed_registries: List[str] = Field(["*"], alias="allowedRegistries")


class SecurityConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    allow_unverified: bool = Field(True, alias="allowUnverified")
    trust_levels: Dict[str, TrustLevel] = Field({}, alias="trustLevels")


class SourceConfigMetadata(BaseModel):
    version: int = 1


class SourceConfig(BaseModel):
    """
    The list of sources plus cache and trust settings.
    """
    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND_SOURCE_CONFIG
    metadata: SourceConfigMetadata = Field(default_factory=SourceConfigMetadata)
    sources: List[SourceDef] = []
    cache: CacheConfig = Field(default_factory=CacheConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    def get_source(self, name: str) -> Optional[SourceDef]:
        for source in self.sources:
            if source.name == name:
                return source
        return None

    @property
    def cache_dir(self) -> str:
        return self.cache.directory or default_cache_dir()

    @property
    def cache_ttl(self) -> timedelta:
        return parse_duration(self.cache.ttl or DEFAULT_TTL)


def default_cache_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".cache", "sdbx", "sources")


def default_source_config() -> SourceConfig:
    """
    The configuration used when no sources.yaml exists: a user-local
    override directory and the official git repository.
    """
    home = os.path.expanduser("~")
    return SourceConfig(
        sources=[
            SourceDef(
                name="local",
                type=SOURCE_TYPE_LOCAL,
                path=os.path.join(home, ".config", "sdbx", "services"),
                priority=100,
            ),
            SourceDef(
                name="official",
                type=SOURCE_TYPE_GIT,
                url=OFFICIAL_SOURCE_URL,
                branch="main",
                path="services",
                priority=0,
                verified=True,
            ),
        ],
        cache=CacheConfig(directory=default_cache_dir(), ttl=DEFAULT_TTL),
    )


def parse_duration(value: str) -> timedelta:
    """
    Parses durations like ``24h``, ``30m`` or ``1d12h``.

    :raises ValueError: If the string contains no recognised unit.
    """
    matches = _DURATION_PATTERN.findall(value.strip())
    if not matches or "".join(n + u for n, u in matches) != value.strip():
        raise ValueError(f"invalid duration: {value!r}")
    kwargs: Dict[str, int] = {}
    for amount, unit in matches:
        key = _DURATION_UNITS[unit]
        kwargs[key] = kwargs.get(key, 0) + int(amount)
    return timedelta(**kwargs)
