"""
The output of dependency resolution.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .service_definition import ServiceDefinition, ServiceOverride


@dataclass
class ResolvedService:
    """
    A service after source selection, overrides and conditional flattening.
    """
    name: str
    source: str
    source_path: str
    definition: ServiceDefinition
    definition_hash: str = ""
    overrides: List[ServiceOverride] = field(default_factory=list)
    final_definition: Optional[ServiceDefinition] = None
    dependencies: List[str] = field(default_factory=list)
    enabled: bool = False

    @property
    def effective(self) -> ServiceDefinition:
        return self.final_definition or self.definition


@dataclass(frozen=True)
class ResolutionError:
    """A non-fatal problem recorded against one service."""
    service: str
    message: str

    def __str__(self) -> str:
        return f"{self.service}: {self.message}"


@dataclass
class ResolutionGraph:
    services: Dict[str, ResolvedService] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    errors: List[ResolutionError] = field(default_factory=list)

    def enabled_services(self) -> List[ResolvedService]:
        """Enabled services in install order."""
        return [self.services[name] for name in self.order]

    def is_enabled(self, name: str) -> bool:
        service = self.services.get(name)
        return bool(service and service.enabled)
