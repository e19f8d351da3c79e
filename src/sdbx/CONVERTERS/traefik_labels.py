"""
Container labels: watchtower opt-in, Traefik routing, and the post-pass that
moves routing labels onto the owner of a shared network namespace.
"""
import logging
from typing import Dict, List

from ..MODELS.compose_file import ComposeService
from ..MODELS.project_config import (
    ROUTING_STRATEGY_PATH,
    ROUTING_STRATEGY_SUBDOMAIN,
    ProjectConfig,
)
from ..MODELS.service_definition import SHARED_NETWORK_PREFIX, ServiceDefinition

logger = logging.getLogger(__name__)

WATCHTOWER_LABEL = "com.centurylinklabs.watchtower.enable=true"
TRAEFIK_ENABLE_LABEL = "traefik.enable=true"
TRAEFIK_PREFIX = "traefik."
AUTH_MIDDLEWARE = "authelia@file"
STRIP_PREFIX_STRATEGY = "stripPrefix"


def uses_subdomain(definition: ServiceDefinition, config: ProjectConfig) -> bool:
    if definition.routing.force_subdomain:
        return True
    return config.service_routing_strategy(definition.name) == ROUTING_STRATEGY_SUBDOMAIN


def router_rule(definition: ServiceDefinition, config: ProjectConfig) -> str:
    name = definition.name
    if uses_subdomain(definition, config):
        subdomain = config.service_subdomain(name, definition.routing.subdomain)
        return f"Host(`{subdomain}.{config.domain}`)"
    path = config.service_path(name, definition.routing.path)
    return f"Host(`{config.routing.base_domain}.{config.domain}`) && PathPrefix(`{path}`)"


def entrypoint(config: ProjectConfig) -> str:
    return "websecure" if config.needs_tls else "web"


def router_middlewares(definition: ServiceDefinition, config: ProjectConfig) -> List[str]:
    routing = definition.routing
    middlewares = []
    if (not uses_subdomain(definition, config)
            and config.service_routing_strategy(definition.name) == ROUTING_STRATEGY_PATH
            and routing.path_routing.strategy == STRIP_PREFIX_STRATEGY):
        middlewares.append(f"strip-{definition.name}@file")
    if routing.auth.required and not routing.auth.bypass:
        middlewares.append(AUTH_MIDDLEWARE)
    for middleware in routing.traefik.middlewares:
        if middleware not in middlewares:
            middlewares.append(middleware)
    return middlewares


def traefik_labels(definition: ServiceDefinition, config: ProjectConfig) -> List[str]:
    """
    Router and load balancer labels for a routed service.
    """
    name = definition.name
    routing = definition.routing
    labels = [
        TRAEFIK_ENABLE_LABEL,
        f"traefik.http.routers.{name}.rule={router_rule(definition, config)}",
        f"traefik.http.routers.{name}.entrypoints={entrypoint(config)}",
    ]
    if config.needs_tls:
        labels.append(f"traefik.http.routers.{name}.tls=true")

    middlewares = router_middlewares(definition, config)
    if middlewares:
        labels.append(f"traefik.http.routers.{name}.middlewares={','.join(middlewares)}")

    labels.append(f"traefik.http.services.{name}.loadbalancer.server.port={routing.port}")
    if routing.traefik.priority is not None:
        labels.append(f"traefik.http.routers.{name}.priority={routing.traefik.priority}")
    return labels


def build_labels(definition: ServiceDefinition, config: ProjectConfig) -> List[str]:
    """
    Every label of a service: watchtower first, then routing, then custom labels.
    """
    labels = []
    watchtower = definition.integrations.watchtower
    if watchtower is not None and watchtower.enabled:
        labels.append(WATCHTOWER_LABEL)
    if definition.routing.enabled:
        labels.extend(traefik_labels(definition, config))
    custom = definition.routing.traefik.custom_labels
    for key in sorted(custom):
        labels.append(f"{key}={custom[key]}")
    return labels


def transfer_network_labels(services: Dict[str, ComposeService]) -> None:
    """
    Moves the ``traefik.`` labels of every service running in another
    service's network namespace onto that owner, in place. Traefik routes
    to the namespace owner, so the labels only take effect there.
    """
    for name, service in services.items():
        if not service.network_mode.startswith(SHARED_NETWORK_PREFIX):
            continue
        owner_name = service.network_mode[len(SHARED_NETWORK_PREFIX):]
        owner = services.get(owner_name)
        if owner is None:
            logger.warning("Service %s shares the network of %s, which is not deployed", name, owner_name)
            continue

        moved = [label for label in service.labels if label.startswith(TRAEFIK_PREFIX)]
        if not moved:
            continue
        service.labels = [label for label in service.labels if not label.startswith(TRAEFIK_PREFIX)]
        for label in moved:
            if label == TRAEFIK_ENABLE_LABEL and label in owner.labels:
                continue
            owner.labels.append(label)
        logger.debug("Moved %d routing labels from %s to %s", len(moved), name, owner_name)
