"""
Models for service definitions, including containers, routing, conditions and integrations.
"""
from typing import List, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum

from .. import API_VERSION

KIND_SERVICE = "Service"
KIND_SERVICE_OVERRIDE = "ServiceOverride"

CATEGORIES = ("media", "downloads", "management", "utility", "networking", "auth")

SHARED_NETWORK_PREFIX = "service:"


class DefinitionModel(BaseModel):
    """
    Base for every definition model: immutable, camelCase aliases accepted.
    """
    model_config = ConfigDict(
        populate_by_name=True,
        frozen=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a container should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class ServiceMetadata(DefinitionModel):
    name: str = ""
    version: str = ""
    category: str = ""
    description: str = ""
    homepage: str = ""
    documentation: str = ""
    maintainer: str = ""
    tags: List[str] = []


class ImageSpec(DefinitionModel):
    repository: str = ""
    tag: str = "latest"
    registry: str = "docker.io"


class CapabilitiesSpec(DefinitionModel):
    add: List[str] = []
    drop: List[str] = []


class ContainerSpec(DefinitionModel):
    """
    Container runtime settings. Name and command are templates.
    """
    name_template: str = "sdbx-{{ name }}"
    restart: RestartPolicyCondition = RestartPolicyCondition.UNLESS_STOPPED
    privileged: bool = False
    command: Optional[Union[str, List[str]]] = None
    capabilities: CapabilitiesSpec = Field(default_factory=CapabilitiesSpec)
    devices: List[str] = []

    @field_validator("restart", mode="before")
    @classmethod
    def _restart_no(cls, value):
        # YAML reads a bare `no` as a boolean
        if value is False:
            return RestartPolicyCondition.NO
        return value


class ValueSource(DefinitionModel):
    secret_ref: str = Field("", alias="secretRef")
    config_ref: str = Field("", alias="configRef")


class EnvVar(DefinitionModel):
    name: str = ""
    value: str = ""
    value_from: Optional[ValueSource] = Field(None, alias="valueFrom")


class ConditionalEnvVar(EnvVar):
    """
    An environment variable included only when its gate expression is true.
    """
    when: str = ""


class EnvironmentSpec(DefinitionModel):
    static: List[EnvVar] = []
    conditional: List[ConditionalEnvVar] = []
    env_file: List[str] = Field([], alias="envFile")


class VolumeMount(DefinitionModel):
    """
    Defines a mapping between a host path template and a container path.
    """
    name: str = ""
    host_path: str = Field("", alias="hostPath")
    container_path: str = Field("", alias="containerPath")
    read_only: bool = Field(False, alias="readOnly")


class ConditionalPort(DefinitionModel):
    port: str = ""
    when: str = ""


class PortSpec(DefinitionModel):
    static: List[str] = []
    conditional: List[ConditionalPort] = []


class NetworkRef(DefinitionModel):
    name: str = ""
    when: str = ""


class NetworkSpec(DefinitionModel):
    """
    Network placement: bridge networks, a shared namespace or a custom mode.
    """
    networks: List[NetworkRef] = []
    mode: str = ""
    mode_template: str = Field("", alias="modeTemplate")


class HealthCheck(DefinitionModel):
    """
    Defines a command to run to check the health of a service.
    """
    test: List[str] = []
    interval: str = ""
    timeout: str = ""
    retries: int = 0
    start_period: str = ""

    @field_validator("test", mode="before")
    @classmethod
    def _split_test(cls, value):
        if isinstance(value, str):
            return ["CMD-SHELL", value]
        return value


class ConditionalDependency(DefinitionModel):
    name: str = ""
    condition: str = ""
    when: str = ""


class DependencySpec(DefinitionModel):
    required: List[str] = []
    optional: List[str] = []
    conditional: List[ConditionalDependency] = []


class ServiceSpec(DefinitionModel):
    image: ImageSpec = Field(default_factory=ImageSpec)
    container: ContainerSpec = Field(default_factory=ContainerSpec)
    environment: EnvironmentSpec = Field(default_factory=EnvironmentSpec)
    volumes: List[VolumeMount] = []
    ports: PortSpec = Field(default_factory=PortSpec)
    networking: NetworkSpec = Field(default_factory=NetworkSpec)
    healthcheck: Optional[HealthCheck] = None
    dependencies: DependencySpec = Field(default_factory=DependencySpec)


class PathRoutingConfig(DefinitionModel):
    strategy: str = ""
    url_base_env_var: str = Field("", alias="urlBaseEnvVar")


class AuthConfig(DefinitionModel):
    required: bool = False
    bypass: bool = False


class TraefikConfig(DefinitionModel):
    priority: Optional[int] = None
    middlewares: List[str] = []
    custom_labels: Dict[str, str] = Field({}, alias="customLabels")


class RoutingConfig(DefinitionModel):
    """
    How the service is exposed through the reverse proxy.
    """
    enabled: bool = False
    port: int = 0
    subdomain: str = ""
    path: str = ""
    force_subdomain: bool = Field(False, alias="forceSubdomain")
    path_routing: PathRoutingConfig = Field(default_factory=PathRoutingConfig, alias="pathRouting")
    auth: AuthConfig = Field(default_factory=AuthConfig)
    traefik: TraefikConfig = Field(default_factory=TraefikConfig)


class SecretDef(DefinitionModel):
    name: str
    type: str = "password"
    length: int = 0
    description: str = ""


class HomepageWidget(DefinitionModel):
    type: str = ""
    fields: Dict[str, str] = {}


class HomepageIntegration(DefinitionModel):
    enabled: bool = False
    group: str = ""
    icon: str = ""
    description: str = ""
    widget: Optional[HomepageWidget] = None


class ToggleIntegration(DefinitionModel):
    enabled: bool = False


class UnpackerrIntegration(DefinitionModel):
    enabled: bool = False
    url_env_var: str = Field("", alias="urlEnvVar")
    api_key_env_var: str = Field("", alias="apiKeyEnvVar")
    internal_url: str = Field("", alias="internalUrl")


class Integrations(DefinitionModel):
    homepage: Optional[HomepageIntegration] = None
    cloudflared: Optional[ToggleIntegration] = None
    watchtower: Optional[ToggleIntegration] = None
    unpackerr: Optional[UnpackerrIntegration] = None


class Conditions(DefinitionModel):
    """
    When a service should be included in a deployment.
    """
    always: bool = False
    require_addon: bool = Field(False, alias="requireAddon")
    require_config: str = Field("", alias="requireConfig")
    require_feature: str = Field("", alias="requireFeature")


class ServiceDefinition(DefinitionModel):
    """
    The full declarative definition of a single deployable service.
    """
    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND_SERVICE
    metadata: ServiceMetadata = Field(default_factory=ServiceMetadata)
    spec: ServiceSpec = Field(default_factory=ServiceSpec)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    secrets: List[SecretDef] = []
    integrations: Integrations = Field(default_factory=Integrations)
    conditions: Conditions = Field(default_factory=Conditions)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def version(self) -> str:
        return self.metadata.version

    @property
    def is_addon(self) -> bool:
        return self.conditions.require_addon


# Overrides

class ServiceSpecOverride(DefinitionModel):
    image: Optional[ImageSpec] = None
    environment_additional: List[EnvVar] = []
    volumes_additional: List[VolumeMount] = []

    @classmethod
    def from_raw(cls, raw: Dict) -> "ServiceSpecOverride":
        """Flattens the nested ``environment.additional`` / ``volumes.additional`` layout."""
        def additional(key):
            section = raw.get(key) or {}
            # Anything but a mapping is left for field validation to reject
            return section.get("additional", []) if isinstance(section, dict) else section

        return cls(
            image=raw.get("image"),
            environment_additional=additional("environment"),
            volumes_additional=additional("volumes"),
        )


class RoutingOverride(DefinitionModel):
    subdomain: Optional[str] = None
    path: Optional[str] = None


class ServiceOverride(DefinitionModel):
    """
    A partial change applied on top of the winning definition of a service.
    """
    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND_SERVICE_OVERRIDE
    name: str
    spec: Optional[ServiceSpecOverride] = None
    routing: Optional[RoutingOverride] = None

    def apply(self, base: ServiceDefinition) -> ServiceDefinition:
        """
        Returns a new definition with this override merged into ``base``.
        """
        spec = base.spec
        if self.spec is not None:
            updates = {}
            if self.spec.image is not None:
                image = self.spec.image
                merged = {}
                if image.repository:
                    merged["repository"] = image.repository
                if "tag" in image.model_fields_set and image.tag:
                    merged["tag"] = image.tag
                if "registry" in image.model_fields_set and image.registry:
                    merged["registry"] = image.registry
                updates["image"] = spec.image.model_copy(update=merged)
            if self.spec.environment_additional:
                updates["environment"] = spec.environment.model_copy(update={
                    "static": list(spec.environment.static) + list(self.spec.environment_additional),
                })
            if self.spec.volumes_additional:
                updates["volumes"] = list(spec.volumes) + list(self.spec.volumes_additional)
            spec = spec.model_copy(update=updates)

        routing = base.routing
        if self.routing is not None:
            changes = {}
            if self.routing.subdomain is not None:
                changes["subdomain"] = self.routing.subdomain
            if self.routing.path is not None:
                changes["path"] = self.routing.path
            routing = routing.model_copy(update=changes)

        return base.model_copy(update={"spec": spec, "routing": routing})
