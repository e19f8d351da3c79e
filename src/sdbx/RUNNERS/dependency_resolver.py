"""
Dependency resolution: which services are enabled, what they look like
after overrides and gates, and in which order they start.
"""
import hashlib
import heapq
import logging
from typing import Callable, Dict, List, Optional, Set

import yaml

from ..MODELS.errors import CircularDependencyError, ServiceNotFoundError
from ..MODELS.project_config import (
    EXPOSE_MODE_CLOUDFLARED,
    EXPOSE_MODE_DIRECT,
    EXPOSE_MODE_LAN,
    ROUTING_STRATEGY_PATH,
    ROUTING_STRATEGY_SUBDOMAIN,
    ProjectConfig,
)
from ..MODELS.resolution_graph import ResolutionError, ResolutionGraph, ResolvedService
from ..MODELS.service_definition import EnvVar, ServiceDefinition, ServiceOverride
from ..REGISTRY.service_registry import ServiceRegistry
from ..UTILS.cancellation import CancellationToken, check_cancelled
from ..UTILS.template_engine import TemplateEngine

logger = logging.getLogger(__name__)

CONFIG_PREDICATES: Dict[str, Callable[[ProjectConfig], bool]] = {
    "vpn_enabled": lambda c: c.vpn_enabled,
    "cloudflared": lambda c: c.expose.mode == EXPOSE_MODE_CLOUDFLARED,
    "direct": lambda c: c.expose.mode == EXPOSE_MODE_DIRECT,
    "lan": lambda c: c.expose.mode == EXPOSE_MODE_LAN,
    "path_routing": lambda c: c.routing.strategy == ROUTING_STRATEGY_PATH,
    "subdomain_routing": lambda c: c.routing.strategy == ROUTING_STRATEGY_SUBDOMAIN,
}


def definition_hash(definition: ServiceDefinition) -> str:
    data = yaml.safe_dump(definition.model_dump(mode="json", by_alias=True), sort_keys=True)
    return "sha256:" + hashlib.sha256(data.encode()).hexdigest()[:16]


def evaluate_predicate(predicate: str, config: ProjectConfig) -> bool:
    """
    Evaluates a named configuration predicate. Unknown names are satisfied.
    """
    check = CONFIG_PREDICATES.get(predicate)
    if check is None:
        logger.warning("Unknown condition %r, treating it as satisfied", predicate)
        return True
    return bool(check(config))


def topological_order(nodes: Set[str], edges: Dict[str, Set[str]]) -> List[str]:
    """
    Orders ``nodes`` so that every edge ``dependency -> dependent`` points
    forward. Among nodes that become ready together, names sort ascending.

    :param nodes: Node names.
    :param edges: Dependency name mapped to the names depending on it.
    :raises CircularDependencyError: If the nodes contain a cycle.
    """
    in_degree = {name: 0 for name in nodes}
    for dependency, dependents in edges.items():
        for dependent in dependents:
            in_degree[dependent] += 1

    ready = [name for name, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in edges.get(node, ()):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(nodes):
        raise CircularDependencyError([name for name, degree in in_degree.items() if degree > 0])
    return order


class DependencyResolver:
    """
    Resolves the enabled services of a deployment and their start order.
    """
    def __init__(self, registry: ServiceRegistry):
        self.registry = registry

    def evaluate_conditions(self, definition: ServiceDefinition, config: ProjectConfig) -> bool:
        """
        Whether a service belongs in the deployment for ``config``.
        """
        conditions = definition.conditions
        if conditions.always:
            return True
        if conditions.require_addon and not config.is_addon_enabled(definition.name):
            return False
        for predicate in (conditions.require_config, conditions.require_feature):
            if predicate and not evaluate_predicate(predicate, config):
                return False
        return True

    def materialize(self, definition: ServiceDefinition, overrides: List[ServiceOverride],
                    config: ProjectConfig, engine: TemplateEngine) -> ServiceDefinition:
        """
        Applies overrides, per-service routing settings and gates, returning
        a definition with no remaining conditional fields.
        """
        name = definition.name
        final = definition
        for override in overrides:
            final = override.apply(final)

        routing_updates = {}
        user = config.services.get(name)
        if user is not None:
            if user.subdomain:
                routing_updates["subdomain"] = user.subdomain
            if user.path:
                routing_updates["path"] = user.path

        spec = final.spec
        environment = spec.environment.model_copy(update={
            "static": list(spec.environment.static) + [
                EnvVar(name=e.name, value=e.value, valueFrom=e.value_from)
                for e in spec.environment.conditional if engine.evaluate(e.when, name)
            ],
            "conditional": [],
        })
        ports = spec.ports.model_copy(update={
            "static": list(spec.ports.static) + [p.port for p in spec.ports.conditional if engine.evaluate(p.when, name)],
            "conditional": [],
        })
        dependencies = spec.dependencies.model_copy(update={
            "conditional": [
                d.model_copy(update={"when": ""})
                for d in spec.dependencies.conditional if engine.evaluate(d.when, name)
            ],
        })
        networking_updates = {
            "networks": [
                n.model_copy(update={"when": ""})
                for n in spec.networking.networks if engine.evaluate(n.when, name)
            ],
        }
        if spec.networking.mode_template:
            networking_updates["mode"] = engine.render(spec.networking.mode_template, name).strip()
            networking_updates["mode_template"] = ""

        spec = spec.model_copy(update={
            "environment": environment,
            "ports": ports,
            "dependencies": dependencies,
            "networking": spec.networking.model_copy(update=networking_updates),
        })
        updates = {"spec": spec}
        if routing_updates:
            updates["routing"] = final.routing.model_copy(update=routing_updates)
        return final.model_copy(update=updates)

    def resolve(self, config: ProjectConfig, ctx: Optional[CancellationToken] = None,
                secrets: Optional[Dict[str, str]] = None) -> ResolutionGraph:
        """
        Resolves every service known to the registry against ``config``.

        :param config: The project configuration; validated first.
        :param ctx: Optional cancellation token, checked between services.
        :param secrets: Materialized secrets available to gate templates.
        :return: The resolution graph. Services excluded by missing or
            disabled dependencies are reported in ``graph.errors``.
        :raises ConfigValidationError: If ``config`` is invalid.
        :raises CircularDependencyError: If the enabled services contain a cycle.
        """
        config.ensure_valid()
        engine = TemplateEngine(config, secrets)
        graph = ResolutionGraph()

        names = self.registry.list_service_names(ctx)
        for addon in config.addons:
            if addon not in names:
                logger.warning("Addon %s is enabled but no source defines it", addon)

        hard_deps: Dict[str, List[str]] = {}
        for name in names:
            check_cancelled(ctx)
            try:
                definition, source = self.registry.find_service(name, ctx)
            except ServiceNotFoundError:
                graph.errors.append(ResolutionError(name, "no source provides a readable definition"))
                continue

            overrides = self.registry.load_overrides(name)
            final = self.materialize(definition, [o for _, o in overrides], config, engine)
            required = list(final.spec.dependencies.required)
            for dep in final.spec.dependencies.conditional:
                if dep.name not in required:
                    required.append(dep.name)
            hard_deps[name] = required

            graph.services[name] = ResolvedService(
                name=name,
                source=source.name,
                source_path=source.service_path(name) or "",
                definition=definition,
                definition_hash=definition_hash(definition),
                overrides=[o for _, o in overrides],
                final_definition=final,
                enabled=self.evaluate_conditions(definition, config),
            )

        self._exclude_unsatisfied(graph, hard_deps)

        enabled = {name for name, svc in graph.services.items() if svc.enabled}
        edges: Dict[str, Set[str]] = {}
        for name in enabled:
            # Optional dependencies never order or exclude
            deps = list(hard_deps[name])
            graph.services[name].dependencies = deps
            for dep in deps:
                edges.setdefault(dep, set()).add(name)

        graph.order = topological_order(enabled, edges)
        logger.debug("Resolved %d services: %s", len(graph.order), ", ".join(graph.order))
        return graph

    def _exclude_unsatisfied(self, graph: ResolutionGraph, hard_deps: Dict[str, List[str]]) -> None:
        # Repeat until stable so exclusions propagate to transitive dependents
        excluded: Set[str] = set()
        changed = True
        while changed:
            changed = False
            for name in sorted(graph.services):
                service = graph.services[name]
                if not service.enabled:
                    continue
                for dep in hard_deps.get(name, []):
                    target = graph.services.get(dep)
                    if target is None:
                        reason = "missing"
                    elif dep in excluded:
                        reason = "excluded"
                    elif not target.enabled:
                        reason = "disabled"
                    else:
                        continue
                    service.enabled = False
                    excluded.add(name)
                    graph.errors.append(ResolutionError(name, f"required dependency {dep} is {reason}"))
                    logger.warning("Excluding %s: required dependency %s is %s", name, dep, reason)
                    changed = True
                    break
