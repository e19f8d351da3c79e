"""
Unit tests for dependency resolution.
"""
import logging

import pytest

from sdbx.MODELS.errors import CircularDependencyError, ConfigValidationError
from sdbx.MODELS.project_config import ProjectConfig, ServiceRoutingOverride
from sdbx.REGISTRY.local_source import LocalSource
from sdbx.REGISTRY.service_registry import ServiceRegistry
from sdbx.RUNNERS.dependency_resolver import DependencyResolver, definition_hash, topological_order


@pytest.fixture
def make_resolver(tmp_path, no_embedded):
    def _make():
        source = LocalSource("test", str(tmp_path / "services"), priority=10)
        return DependencyResolver(ServiceRegistry([source, no_embedded]))
    return _make


@pytest.fixture
def services_root(tmp_path):
    return tmp_path / "services"


def assert_edges_point_forward(graph):
    position = {name: i for i, name in enumerate(graph.order)}
    for name in graph.order:
        for dep in graph.services[name].dependencies:
            assert position[dep] < position[name], f"{dep} must come before {name}"


class TestTopologicalOrder:
    def test_ties_sort_by_name(self):
        order = topological_order({"c", "b", "a"}, {})
        assert order == ["a", "b", "c"]

    def test_dependencies_first(self):
        order = topological_order({"app", "db", "cache"}, {"db": {"app"}, "cache": {"app"}})
        assert order == ["cache", "db", "app"]

    def test_cycle(self):
        with pytest.raises(CircularDependencyError) as excinfo:
            topological_order({"a", "b", "c"}, {"a": {"b"}, "b": {"a"}})
        assert excinfo.value.services == ["a", "b"]


def test_resolves_in_dependency_order(make_resolver, services_root, write_service, config):
    write_service(services_root, "db")
    write_service(services_root, "cache")
    write_service(services_root, "api", requires=["db", "cache"])
    write_service(services_root, "web", requires=["api"], optional=["cache", "ghost"])

    graph = make_resolver().resolve(config)

    assert graph.order == ["cache", "db", "api", "web"]
    assert graph.services["web"].dependencies == ["api"]
    assert graph.errors == []
    assert_edges_point_forward(graph)


def test_order_is_deterministic(make_resolver, services_root, write_service, config):
    for name in ("e", "d", "c", "b", "a"):
        write_service(services_root, name, requires=["z"] if name in ("a", "c") else [])
    write_service(services_root, "z")

    first = make_resolver().resolve(config).order
    assert make_resolver().resolve(config).order == first
    assert first == ["b", "d", "e", "z", "a", "c"]


def test_disabled_dependency_excludes_dependents(make_resolver, services_root, write_service, config):
    write_service(services_root, "vpn", conditions={"requireConfig": "vpn_enabled"})
    write_service(services_root, "torrent", requires=["vpn"])
    write_service(services_root, "indexer", requires=["torrent"])
    write_service(services_root, "media")

    graph = make_resolver().resolve(config)

    assert graph.order == ["media"]
    assert not graph.is_enabled("torrent")
    messages = {(e.service, e.message) for e in graph.errors}
    assert ("torrent", "required dependency vpn is disabled") in messages
    assert ("indexer", "required dependency torrent is excluded") in messages


def test_missing_dependency(make_resolver, services_root, write_service, config):
    write_service(services_root, "app", requires=["ghost"])
    write_service(services_root, "other")

    graph = make_resolver().resolve(config)

    assert graph.order == ["other"]
    assert [str(e) for e in graph.errors] == ["app: required dependency ghost is missing"]


def test_addons_require_opt_in(make_resolver, services_root, write_service, config):
    write_service(services_root, "sonarr", conditions={"requireAddon": True})

    assert make_resolver().resolve(config).order == []

    config.enable_addon("sonarr")
    assert make_resolver().resolve(config).order == ["sonarr"]


def test_unknown_addon_is_ignored(make_resolver, services_root, write_service, config, caplog):
    write_service(services_root, "app")
    config.enable_addon("ghost")

    with caplog.at_level(logging.WARNING):
        graph = make_resolver().resolve(config)

    assert graph.order == ["app"]
    assert graph.errors == []
    assert "no source defines it" in caplog.text


def test_unknown_predicate_is_satisfied(make_resolver, services_root, write_service, config, caplog):
    write_service(services_root, "app", conditions={"requireConfig": "quantum_enabled"})

    with caplog.at_level(logging.WARNING):
        graph = make_resolver().resolve(config)

    assert graph.order == ["app"]
    assert "quantum_enabled" in caplog.text


def test_require_feature_uses_config_predicates(make_resolver, services_root, write_service, config):
    write_service(services_root, "strip", conditions={"requireFeature": "path_routing"})
    assert make_resolver().resolve(config).order == []

    config.routing.strategy = "path"
    assert make_resolver().resolve(config).order == ["strip"]


def test_cycle_aborts(make_resolver, services_root, write_service, config):
    write_service(services_root, "a", requires=["b"])
    write_service(services_root, "b", requires=["a"])
    with pytest.raises(CircularDependencyError):
        make_resolver().resolve(config)


def test_mutual_optional_dependencies_do_not_cycle(make_resolver, services_root, write_service, config):
    write_service(services_root, "sonarr", optional=["radarr"])
    write_service(services_root, "radarr", optional=["sonarr"])
    write_service(services_root, "plex")

    graph = make_resolver().resolve(config)

    assert graph.order == ["plex", "radarr", "sonarr"]
    assert graph.services["sonarr"].dependencies == []
    assert graph.errors == []


def test_invalid_config_is_rejected(make_resolver, config):
    config.domain = ""
    with pytest.raises(ConfigValidationError):
        make_resolver().resolve(config)


def test_conditional_fields_are_materialized(make_resolver, services_root, write_service):
    write_service(services_root, "vpn")
    write_service(services_root, "client", spec={
        "environment": {"conditional": [
            {"name": "ON_VPN", "value": "1", "when": "{{ config.vpn_enabled }}"},
            {"name": "OFF_VPN", "value": "1", "when": "{{ not config.vpn_enabled }}"},
        ]},
        "ports": {"static": ["80:80"], "conditional": [{"port": "443:443", "when": "{{ config.vpn_enabled }}"}]},
        "networking": {
            "modeTemplate": "{% if config.vpn_enabled %}service:vpn{% else %}bridge{% endif %}",
            "networks": [{"name": "proxy", "when": "{{ not config.vpn_enabled }}"}],
        },
        "dependencies": {"conditional": [
            {"name": "vpn", "condition": "service_healthy", "when": "{{ config.vpn_enabled }}"},
        ]},
    })
    config = ProjectConfig(domain="example.com", timezone="UTC", vpn_enabled=True, vpn_provider="mullvad")

    graph = make_resolver().resolve(config)

    spec = graph.services["client"].effective.spec
    assert [e.name for e in spec.environment.static] == ["ON_VPN"]
    assert spec.environment.conditional == []
    assert spec.ports.static == ["80:80", "443:443"]
    assert spec.networking.mode == "service:vpn"
    assert spec.networking.networks == []
    assert [(d.name, d.condition) for d in spec.dependencies.conditional] == [("vpn", "service_healthy")]
    assert graph.order == ["vpn", "client"]


def test_overrides_and_config_routing_applied(make_resolver, services_root, write_service, config):
    write_service(services_root, "app", routing={"enabled": True, "port": 80})
    (services_root / "app" / "override.yaml").write_text(
        "apiVersion: sdbx.io/v1\nkind: ServiceOverride\nspec:\n  image:\n    tag: edge\n"
    )
    config.services = {"app": ServiceRoutingOverride(subdomain="portal")}

    resolved = make_resolver().resolve(config).services["app"]

    assert resolved.definition.spec.image.tag == "1.0.0"
    assert resolved.effective.spec.image.tag == "edge"
    assert resolved.effective.routing.subdomain == "portal"
    assert resolved.definition_hash == definition_hash(resolved.definition)
    assert resolved.definition_hash.startswith("sha256:")
