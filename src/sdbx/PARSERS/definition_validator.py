"""
Structural and security checks for service definitions.
"""
import re
from dataclasses import dataclass
from typing import List, Optional

from ..MODELS.service_definition import CATEGORIES, ServiceDefinition
from ..MODELS.source_config import TrustLevel

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*[a-z0-9]$|^[a-z]$")
PATH_ROUTING_STRATEGIES = ("stripPrefix", "urlBase", "none", "")

ALLOWED_REGISTRIES = {"docker.io", "ghcr.io", "lscr.io", "quay.io", "gcr.io", "registry.k8s.io"}
DANGEROUS_CAPABILITIES = {"SYS_ADMIN", "SYS_PTRACE", "SYS_MODULE", "SYS_RAWIO", "SYS_TIME", "DAC_READ_SEARCH"}
DANGEROUS_DEVICES = ("/dev/mem", "/dev/kmem")


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    severity: str = SEVERITY_ERROR

    def __str__(self) -> str:
        return f"{self.severity}: {self.field}: {self.message}"


def has_errors(issues: List[ValidationIssue]) -> bool:
    return any(issue.severity == SEVERITY_ERROR for issue in issues)


class DefinitionValidator:
    """
    Reports problems in a definition without rejecting it outright.
    Errors make a definition unusable; warnings are advisory.
    """
    def validate(self, definition: ServiceDefinition, trust: Optional[TrustLevel] = None) -> List[ValidationIssue]:
        """
        Validates a definition.

        :param definition: The definition to check.
        :param trust: When given, additionally enforce the source's trust level.
        :return: All issues found, errors and warnings alike.
        """
        issues: List[ValidationIssue] = []
        issues.extend(self._metadata(definition))
        issues.extend(self._spec(definition))
        issues.extend(self._routing(definition))
        issues.extend(self._security(definition))
        if trust is not None:
            issues.extend(self._trust(definition, trust))
        return issues

    def _metadata(self, definition):
        issues = []
        meta = definition.metadata
        if not meta.name:
            issues.append(ValidationIssue("metadata.name", "name is required"))
        elif not NAME_PATTERN.match(meta.name):
            issues.append(ValidationIssue("metadata.name", "name must be lowercase alphanumeric with hyphens"))
        if not meta.version:
            issues.append(ValidationIssue("metadata.version", "version is required"))
        if not meta.category:
            issues.append(ValidationIssue("metadata.category", "category is required"))
        elif meta.category not in CATEGORIES:
            issues.append(ValidationIssue("metadata.category", f"invalid category: {meta.category}"))
        if not meta.description:
            issues.append(ValidationIssue("metadata.description", "description is recommended", SEVERITY_WARNING))
        return issues

    def _spec(self, definition):
        issues = []
        spec = definition.spec
        if not spec.image.repository:
            issues.append(ValidationIssue("spec.image.repository", "image repository is required"))
        if not spec.container.name_template:
            issues.append(ValidationIssue("spec.container.name_template", "container name template is required"))
        elif "{{" not in spec.container.name_template:
            issues.append(ValidationIssue(
                "spec.container.name_template", "container name template should reference {{ name }}", SEVERITY_WARNING,
            ))

        for i, volume in enumerate(spec.volumes):
            if not volume.host_path:
                issues.append(ValidationIssue(f"spec.volumes[{i}].hostPath", "hostPath is required"))
            if not volume.container_path:
                issues.append(ValidationIssue(f"spec.volumes[{i}].containerPath", "containerPath is required"))

        for i, env in enumerate(spec.environment.static):
            if not env.name:
                issues.append(ValidationIssue(f"spec.environment.static[{i}].name", "environment variable name is required"))
            if not env.value and env.value_from is None:
                issues.append(ValidationIssue(
                    f"spec.environment.static[{i}]", "environment variable must have value or valueFrom",
                ))
        for i, env in enumerate(spec.environment.conditional):
            if not env.name:
                issues.append(ValidationIssue(f"spec.environment.conditional[{i}].name", "environment variable name is required"))
            if not env.when:
                issues.append(ValidationIssue(
                    f"spec.environment.conditional[{i}].when", "conditional environment variable must have a 'when' condition",
                ))

        if spec.healthcheck is not None and not spec.healthcheck.test:
            issues.append(ValidationIssue("spec.healthcheck.test", "health check test command is required"))

        for i, dep in enumerate(spec.dependencies.conditional):
            if not dep.name:
                issues.append(ValidationIssue(f"spec.dependencies.conditional[{i}].name", "dependency name is required"))
        return issues

    def _routing(self, definition):
        issues = []
        routing = definition.routing
        if not routing.enabled:
            return issues
        if not 0 < routing.port <= 65535:
            issues.append(ValidationIssue("routing.port", "port must be between 1 and 65535"))
        if routing.subdomain and not NAME_PATTERN.match(routing.subdomain):
            issues.append(ValidationIssue("routing.subdomain", "subdomain must be lowercase alphanumeric with hyphens"))
        if routing.path and not routing.path.startswith("/"):
            issues.append(ValidationIssue("routing.path", "path must start with /"))
        if routing.path_routing.strategy not in PATH_ROUTING_STRATEGIES:
            issues.append(ValidationIssue(
                "routing.pathRouting.strategy", f"invalid strategy: {routing.path_routing.strategy}",
            ))
        return issues

    def _security(self, definition):
        issues = []
        container = definition.spec.container
        if container.privileged:
            issues.append(ValidationIssue("spec.container.privileged", "privileged mode is a security risk"))
        for cap in container.capabilities.add:
            if cap in DANGEROUS_CAPABILITIES:
                issues.append(ValidationIssue(
                    "spec.container.capabilities.add",
                    f"dangerous capability {cap} requires explicit approval",
                    SEVERITY_WARNING,
                ))
        if definition.spec.networking.mode == "host":
            issues.append(ValidationIssue(
                "spec.networking.mode", "host network mode bypasses network isolation", SEVERITY_WARNING,
            ))
        registry = definition.spec.image.registry or "docker.io"
        if registry not in ALLOWED_REGISTRIES:
            issues.append(ValidationIssue(
                "spec.image.registry", f"registry {registry} is not in allowed list", SEVERITY_WARNING,
            ))
        for device in container.devices:
            if any(bad in device for bad in DANGEROUS_DEVICES):
                issues.append(ValidationIssue("spec.container.devices", f"dangerous device mapping: {device}"))
        return issues

    def _trust(self, definition, trust: TrustLevel):
        issues = []
        container = definition.spec.container
        if container.privileged and not trust.allow_privileged:
            issues.append(ValidationIssue("spec.container.privileged", "privileged mode not allowed by trust level"))
        if definition.spec.networking.mode == "host" and not trust.allow_host_network:
            issues.append(ValidationIssue("spec.networking.mode", "host network not allowed by trust level"))

        if "*" not in trust.allow_capabilities:
            for cap in container.capabilities.add:
                if cap not in trust.allow_capabilities:
                    issues.append(ValidationIssue(
                        "spec.container.capabilities.add", f"capability {cap} not allowed by trust level",
                    ))

        if "*" not in trust.allowed_registries:
            registry = definition.spec.image.registry or "docker.io"
            if registry not in trust.allowed_registries:
                issues.append(ValidationIssue(
                    "spec.image.registry", f"registry {registry} not allowed by trust level",
                ))
        return issues
