"""
Unit tests for the integration files generated beside the compose document.
"""
import pytest
import yaml

from sdbx.CONVERTERS.integrations import CATCH_ALL_SERVICE, TUNNEL_TARGET, IntegrationsGenerator
from sdbx.MODELS.project_config import ProjectConfig
from sdbx.REGISTRY.local_source import LocalSource
from sdbx.REGISTRY.service_registry import ServiceRegistry
from sdbx.RUNNERS.dependency_resolver import DependencyResolver


@pytest.fixture
def services_root(tmp_path):
    return tmp_path / "services"


@pytest.fixture
def resolve(services_root, no_embedded):
    def _resolve(config):
        source = LocalSource("test", str(services_root), priority=10)
        return DependencyResolver(ServiceRegistry([source, no_embedded])).resolve(config)
    return _resolve


def homepage(group, icon="app.png"):
    return {"homepage": {"enabled": True, "group": group, "icon": icon, "description": "desc"}}


ROUTED = {"enabled": True, "port": 80}


def test_homepage_groups_in_display_order(resolve, services_root, write_service, config):
    write_service(services_root, "zeta", routing=ROUTED, integrations=homepage("Extras"))
    write_service(services_root, "alpha", routing=ROUTED, integrations=homepage("Admin"))
    write_service(services_root, "sonarr", routing=ROUTED, integrations=homepage("Downloads"))
    write_service(services_root, "plex", routing=ROUTED, integrations=homepage("Media"))
    write_service(services_root, "misc", routing=ROUTED, integrations=homepage(""))
    write_service(services_root, "hidden", routing=ROUTED)

    groups = IntegrationsGenerator(config).homepage_services(resolve(config))

    assert [next(iter(g)) for g in groups] == ["Media", "Downloads", "Services", "Admin", "Extras"]
    plex = groups[0]["Media"][0]["plex"]
    assert plex == {
        "icon": "app.png",
        "href": "http://plex.example.com",
        "description": "desc",
        "container": "sdbx-plex",
    }


def test_homepage_href_under_path_routing(resolve, services_root, write_service):
    write_service(services_root, "plex", routing=ROUTED, integrations=homepage("Media"))
    config = ProjectConfig(domain="example.com", timezone="UTC", expose={"mode": "direct"},
                           routing={"strategy": "path", "base_domain": "box"})

    groups = IntegrationsGenerator(config).homepage_services(resolve(config))

    assert groups[0]["Media"][0]["plex"]["href"] == "https://box.example.com/plex"


def test_cloudflared_ingress(resolve, services_root, write_service, config):
    tunnel = {"cloudflared": {"enabled": True}}
    write_service(services_root, "a", routing=ROUTED, integrations=tunnel)
    write_service(services_root, "b", routing=ROUTED, integrations=tunnel)
    write_service(services_root, "c", routing=ROUTED)
    write_service(services_root, "d", integrations=tunnel)
    config.routing.strategy = "path"

    tunnel_config = IntegrationsGenerator(config).cloudflared_config(resolve(config))

    assert tunnel_config["ingress"] == [
        {"hostname": "sdbx.example.com", "service": TUNNEL_TARGET},
        {"service": CATCH_ALL_SERVICE},
    ]


def test_cloudflared_ingress_per_subdomain(resolve, services_root, write_service, config):
    tunnel = {"cloudflared": {"enabled": True}}
    write_service(services_root, "b", routing=ROUTED, integrations=tunnel)
    write_service(services_root, "a", routing=ROUTED, integrations=tunnel)

    ingress = IntegrationsGenerator(config).cloudflared_config(resolve(config))["ingress"]

    assert [rule.get("hostname") for rule in ingress] == ["a.example.com", "b.example.com", None]
    assert ingress[-1]["service"] == "http_status:404"


def test_traefik_middlewares(resolve, services_root, write_service, config):
    write_service(services_root, "app", routing=ROUTED)
    write_service(services_root, "pinned", routing={**ROUTED, "forceSubdomain": True})
    write_service(services_root, "raw", routing={**ROUTED, "pathRouting": {"strategy": "none"}})

    generator = IntegrationsGenerator(config)
    assert list(generator.traefik_middlewares(resolve(config))["http"]["middlewares"]) == ["authelia"]

    config.routing.strategy = "path"
    middlewares = generator.traefik_middlewares(resolve(config))["http"]["middlewares"]

    assert list(middlewares) == ["authelia", "strip-app"]
    assert middlewares["strip-app"] == {"stripPrefix": {"prefixes": ["/app"]}}
    forward = middlewares["authelia"]["forwardAuth"]
    assert forward["address"] == "http://authelia:9091/api/verify?rd=https://sdbx.example.com/auth/"
    assert forward["trustForwardHeader"] is True
    assert "Remote-User" in forward["authResponseHeaders"]


def test_authelia_rules(resolve, services_root, write_service, config):
    write_service(services_root, "app", routing={**ROUTED, "auth": {"required": True}})
    write_service(services_root, "public", routing={**ROUTED, "auth": {"bypass": True}})
    write_service(services_root, "worker")

    rules = IntegrationsGenerator(config).authelia_access_rules(resolve(config))

    assert rules == [
        {"domain": "app.example.com", "policy": "one_factor"},
        {"domain": "public.example.com", "policy": "bypass"},
    ]


def test_env_file(config):
    config.vpn_enabled = True
    config.vpn_provider = "mullvad"
    config.vpn_country = "Sweden"
    config.addons = ["sonarr", "radarr"]

    lines = IntegrationsGenerator(config).env_file().splitlines()

    for line in ("SDBX_DOMAIN=example.com", "SDBX_EXPOSE_MODE=lan", "SDBX_TIMEZONE=UTC",
                 "PUID=1000", "UMASK=002", "SDBX_VPN_PROVIDER=mullvad", "SDBX_VPN_COUNTRY=Sweden",
                 "PLEX_CLAIM=", "# Addons: sonarr, radarr"):
        assert line in lines
    assert not any(line.startswith("TRAEFIK_ACME_EMAIL") for line in lines)


def test_env_file_direct_mode():
    config = ProjectConfig(domain="example.com", timezone="UTC",
                           expose={"mode": "direct", "tls": {"email": "ops@example.com"}})

    text = IntegrationsGenerator(config).env_file()

    assert "TRAEFIK_ACME_EMAIL=ops@example.com" in text.splitlines()
    assert "SDBX_VPN_PROVIDER" not in text


def test_yaml_renderings_parse(resolve, services_root, write_service, config):
    write_service(services_root, "app", routing=ROUTED, integrations=homepage("Media"))
    graph = resolve(config)
    generator = IntegrationsGenerator(config)

    assert yaml.safe_load(generator.homepage_yaml(graph)) == generator.homepage_services(graph)
    assert yaml.safe_load(generator.cloudflared_yaml(graph)) == generator.cloudflared_config(graph)
    assert yaml.safe_load(generator.traefik_yaml(graph)) == generator.traefik_middlewares(graph)
