# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Converters for generating a Docker Compose document from a resolution graph.
"""
import logging
from typing import Dict, List, Optional, Tuple

from ..MODELS.compose_file import (
    DEFAULT_DEPENDS_CONDITION,
    DEFAULT_NETWORKS,
    ComposeFile,
    ComposeHealthCheck,
    ComposeService,
)
from ..MODELS.project_config import ProjectConfig
from ..MODELS.resolution_graph import ResolutionGraph
from ..MODELS.service_definition import ServiceDefinition
from ..REGISTRY.image_reference import ImageReference
from ..UTILS.template_engine import TemplateEngine, secret_template
from .traefik_labels import build_labels, transfer_network_labels

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "proxy"
BRIDGE_MODE = "bridge"
SECRETS_DIR = "./secrets"


class ComposeGenerator:
    """
    Converts the enabled services of a resolution graph into a compose document.
    """

    def __init__(self, config: ProjectConfig, secrets: Optional[Dict[str, str]] = None):
        """
        :param config: The project configuration exposed to templates.
        :param secrets: Materialized secrets, name to value.
        """
        self.config = config
        self.engine = TemplateEngine(config, secrets)

    def generate(self, graph: ResolutionGraph) -> ComposeFile:
        """
        Builds the compose document, services in install order.

        :param graph: A resolved graph; disabled services are skipped.
        :return: The compose document.
        """
        compose = ComposeFile(networks={k: {"name": v} for k, v in DEFAULT_NETWORKS.items()})
        for resolved in graph.enabled_services():
            definition = resolved.effective
            compose.services[resolved.name] = self.convert_service(definition)
            for secret in definition.secrets:
                compose.secrets[secret.name] = {"file": f"{SECRETS_DIR}/{secret.name}.txt"}

        transfer_network_labels(compose.services)
        return compose

    def convert_service(self, definition: ServiceDefinition) -> ComposeService:
        """
        Converts one materialized definition.
        """
        name = definition.name
        spec = definition.spec
        container = spec.container
        networks, network_mode = self.build_networking(definition)

        service = ComposeService(
            image=ImageReference.from_spec(spec.image).compose_image,
            container_name=self.engine.render(container.name_template, name),
            restart=container.restart.value,
            environment=self.build_environment(definition),
            env_file=list(spec.environment.env_file),
            volumes=self.build_volumes(definition),
            ports=list(spec.ports.static),
            networks=networks,
            network_mode=network_mode,
            depends_on=self.build_depends_on(definition),
            labels=build_labels(definition, self.config),
            cap_add=list(container.capabilities.add),
            cap_drop=list(container.capabilities.drop),
            devices=list(container.devices),
            secrets=[s.name for s in definition.secrets],
            command=self.build_command(definition),
        )
        if spec.healthcheck is not None:
            check = spec.healthcheck
            service.healthcheck = ComposeHealthCheck(
                test=list(check.test),
                interval=check.interval,
                timeout=check.timeout,
                retries=check.retries,
                start_period=check.start_period,
            )
        return service

    def build_command(self, definition: ServiceDefinition):
        command = definition.spec.container.command
        if command is None:
            return None
        if isinstance(command, str):
            return self.engine.render(command, definition.name)
        return [self.engine.render(part, definition.name) for part in command]

    def build_environment(self, definition: ServiceDefinition) -> List[str]:
        name = definition.name
        environment = []
        for var in definition.spec.environment.static:
            value = var.value
            if var.value_from is not None and var.value_from.secret_ref:
                value = secret_template(var.value_from.secret_ref)
            environment.append(f"{var.name}={self.engine.render(value, name)}")
        return environment

    def build_volumes(self, definition: ServiceDefinition) -> List[str]:
        volumes = []
        for volume in definition.spec.volumes:
            mount = f"{self.engine.render(volume.host_path, definition.name)}:{volume.container_path}"
            if volume.read_only:
                mount += ":ro"
            volumes.append(mount)
        return volumes

    def build_networking(self, definition: ServiceDefinition) -> Tuple[List[str], str]:
        """
        :return: Bridge networks to join, or a network mode; never both.
        """
        networking = definition.spec.networking
        mode = self.engine.render(networking.mode, definition.name).strip()
        if mode in ("", BRIDGE_MODE):
            return [n.name or DEFAULT_NETWORK for n in networking.networks], ""
        return [], mode

    def build_depends_on(self, definition: ServiceDefinition) -> Dict[str, Dict[str, str]]:
        dependencies = definition.spec.dependencies
        depends_on = {dep: {"condition": DEFAULT_DEPENDS_CONDITION} for dep in dependencies.required}
        for dep in dependencies.conditional:
            depends_on[dep.name] = {"condition": dep.condition or DEFAULT_DEPENDS_CONDITION}
        return depends_on
