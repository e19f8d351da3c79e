"""
Models for the reproducibility lock file (.sdbx.lock).
"""
from dataclasses import dataclass, field
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from .. import API_VERSION

KIND_LOCK_FILE = "LockFile"
LOCK_FILE_NAME = ".sdbx.lock"
LOCK_FORMAT_VERSION = 1


class LockModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class LockFileMetadata(LockModel):
    version: int = LOCK_FORMAT_VERSION
    generated_at: str = Field("", alias="generatedAt")
    cli_version: str = Field("", alias="cliVersion")
    config_hash: str = Field("", alias="configHash")


class LockedSource(LockModel):
    url: str = ""
    commit: str = ""
    branch: str = ""
    fetched_at: str = Field("", alias="fetchedAt")


class LockedImage(LockModel):
    repository: str = ""
    tag: str = ""
    digest: str = ""


class LockedService(LockModel):
    source: str = ""
    definition_version: str = Field("", alias="definitionVersion")
    image: LockedImage = Field(default_factory=LockedImage)
    resolved_from: str = Field("", alias="resolvedFrom")
    enabled: bool = True


class LockFile(LockModel):
    """
    Pins of source revisions and service versions for one resolution.
    """
    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND_LOCK_FILE
    metadata: LockFileMetadata = Field(default_factory=LockFileMetadata)
    sources: Dict[str, LockedSource] = {}
    services: Dict[str, LockedService] = {}
    install_order: List[str] = Field([], alias="installOrder")

    def to_document(self) -> Dict:
        """
        Canonical mapping for serialization: camelCase keys, sorted maps,
        empty optional strings dropped.
        """
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": {
                "version": self.metadata.version,
                "generatedAt": self.metadata.generated_at,
                "cliVersion": self.metadata.cli_version,
                "configHash": self.metadata.config_hash,
            },
            "sources": {
                name: _drop_empty(self.sources[name].model_dump(by_alias=True), keep=("url", "commit"))
                for name in sorted(self.sources)
            },
            "services": {
                name: _service_document(self.services[name])
                for name in sorted(self.services)
            },
            "installOrder": list(self.install_order),
        }


def _service_document(service: LockedService) -> Dict:
    return {
        "source": service.source,
        "definitionVersion": service.definition_version,
        "image": _drop_empty(service.image.model_dump(), keep=("repository", "tag")),
        "resolvedFrom": service.resolved_from,
        "enabled": service.enabled,
    }


def _drop_empty(data: Dict, keep=()) -> Dict:
    return {k: v for k, v in data.items() if k in keep or v not in ("", None)}


@dataclass(frozen=True)
class LockFileDiff:
    """
    One difference between two lock files.

    ``scope`` is ``source`` or ``service``; ``kind`` is ``added``, ``removed`` or ``changed``.
    """
    scope: str
    name: str
    kind: str
    old: str = ""
    new: str = ""
    description: str = ""

    def __str__(self) -> str:
        if self.kind == "added":
            return f"+ {self.scope} {self.name}: {self.new}"
        if self.kind == "removed":
            return f"- {self.scope} {self.name}: {self.old}"
        return f"~ {self.scope} {self.name}: {self.description} {self.old} -> {self.new}"


@dataclass
class LockUpdateResult:
    """Outcome of a selective lock update; failed names keep their previous pin."""
    lock_file: LockFile
    failures: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LockVerificationResult:
    type: str
    name: str
    status: str
    message: str
    expected: str = ""
    actual: str = ""
