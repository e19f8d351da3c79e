"""
Converters for the integration files generated next to the compose document:
Homepage services, the cloudflared tunnel, Traefik dynamic middlewares,
Authelia access rules and the ``.env`` file.
"""
from typing import Any, Dict, List

import yaml
from jinja2 import Template

from ..MODELS.project_config import EXPOSE_MODE_LAN, ProjectConfig
from ..MODELS.resolution_graph import ResolutionGraph
from ..MODELS.service_definition import ServiceDefinition
from .traefik_labels import STRIP_PREFIX_STRATEGY, uses_subdomain

HOMEPAGE_GROUP_ORDER = ("Media", "Downloads", "Management", "Services")
DEFAULT_HOMEPAGE_GROUP = "Services"
TUNNEL_NAME = "sdbx"
TUNNEL_TARGET = "http://traefik:80"
CATCH_ALL_SERVICE = "http_status:404"
AUTH_RESPONSE_HEADERS = ["Remote-User", "Remote-Groups", "Remote-Name", "Remote-Email"]
POLICY_BYPASS = "bypass"
POLICY_ONE_FACTOR = "one_factor"

ENV_TEMPLATE = """# SDBX Environment Configuration
# Generated by sdbx generate

SDBX_DOMAIN={{ config.domain }}
SDBX_EXPOSE_MODE={{ config.expose.mode }}
SDBX_TIMEZONE={{ config.timezone }}

SDBX_CONFIG_PATH={{ config.config_path }}
SDBX_DATA_PATH={{ config.data_path }}
SDBX_DOWNLOADS_PATH={{ config.downloads_path }}
SDBX_MEDIA_PATH={{ config.media_path }}

PUID={{ config.puid }}
PGID={{ config.pgid }}
UMASK={{ config.umask }}
{% if config.vpn_enabled %}
SDBX_VPN_PROVIDER={{ config.vpn_provider }}
SDBX_VPN_COUNTRY={{ config.vpn_country }}
{% endif %}{% if direct %}
TRAEFIK_ACME_EMAIL={{ config.expose.tls.email }}
{% endif %}
# Get your Plex claim token from https://plex.tv/claim
PLEX_CLAIM=
{% if config.addons %}
# Addons: {{ config.addons | join(', ') }}
{% endif %}"""


def _dump(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


class IntegrationsGenerator:
    """
    Builds integration configs from the enabled services of a resolution graph.
    """

    def __init__(self, config: ProjectConfig):
        self.config = config
        self.env_template = Template(ENV_TEMPLATE, keep_trailing_newline=True)

    def hostname(self, definition: ServiceDefinition) -> str:
        """Public hostname a routed service is reached on."""
        if uses_subdomain(definition, self.config):
            subdomain = self.config.service_subdomain(definition.name, definition.routing.subdomain)
            return f"{subdomain}.{self.config.domain}"
        return f"{self.config.routing.base_domain}.{self.config.domain}"

    def service_url(self, definition: ServiceDefinition) -> str:
        scheme = "http" if self.config.expose.mode == EXPOSE_MODE_LAN else "https"
        url = f"{scheme}://{self.hostname(definition)}"
        if not uses_subdomain(definition, self.config):
            url += self.config.service_path(definition.name, definition.routing.path)
        return url

    def homepage_services(self, graph: ResolutionGraph) -> List[Dict[str, List[Dict[str, Any]]]]:
        """
        Homepage ``services.yaml`` content: a list of single-key group maps.
        """
        groups: Dict[str, List[Dict[str, Any]]] = {}
        for resolved in graph.enabled_services():
            definition = resolved.effective
            homepage = definition.integrations.homepage
            if homepage is None or not homepage.enabled:
                continue
            entry = {
                "icon": homepage.icon,
                "href": self.service_url(definition),
                "description": homepage.description,
                "container": f"sdbx-{definition.name}",
            }
            groups.setdefault(homepage.group or DEFAULT_HOMEPAGE_GROUP, []).append({definition.name: entry})

        ordered = [g for g in HOMEPAGE_GROUP_ORDER if g in groups]
        ordered += sorted(g for g in groups if g not in HOMEPAGE_GROUP_ORDER)
        return [{group: groups[group]} for group in ordered]

    def cloudflared_config(self, graph: ResolutionGraph) -> Dict[str, Any]:
        """
        Tunnel ingress: one rule per exposed hostname, then the catch-all.
        """
        ingress = []
        seen = set()
        for resolved in graph.enabled_services():
            definition = resolved.effective
            tunnel = definition.integrations.cloudflared
            if tunnel is None or not tunnel.enabled or not definition.routing.enabled:
                continue
            hostname = self.hostname(definition)
            if hostname in seen:
                continue
            seen.add(hostname)
            ingress.append({"hostname": hostname, "service": TUNNEL_TARGET})
        ingress.append({"service": CATCH_ALL_SERVICE})
        return {"tunnel": TUNNEL_NAME, "ingress": ingress}

    def traefik_middlewares(self, graph: ResolutionGraph) -> Dict[str, Any]:
        """
        Traefik dynamic configuration holding the forward-auth middleware and
        one strip-prefix middleware per path-routed service.
        """
        config = self.config
        if config.is_path_routing:
            redirect = f"https://{config.routing.base_domain}.{config.domain}/auth/"
        else:
            redirect = f"https://auth.{config.domain}/"

        middlewares: Dict[str, Any] = {
            "authelia": {
                "forwardAuth": {
                    "address": f"http://authelia:9091/api/verify?rd={redirect}",
                    "trustForwardHeader": True,
                    "authResponseHeaders": list(AUTH_RESPONSE_HEADERS),
                },
            },
        }
        for resolved in graph.enabled_services():
            definition = resolved.effective
            routing = definition.routing
            if not routing.enabled or uses_subdomain(definition, config):
                continue
            if routing.path_routing.strategy != STRIP_PREFIX_STRATEGY:
                continue
            middlewares[f"strip-{definition.name}"] = {
                "stripPrefix": {"prefixes": [config.service_path(definition.name, routing.path)]},
            }
        return {"http": {"middlewares": middlewares}}

    def authelia_access_rules(self, graph: ResolutionGraph) -> List[Dict[str, str]]:
        rules = []
        for resolved in graph.enabled_services():
            definition = resolved.effective
            if not definition.routing.enabled:
                continue
            policy = POLICY_BYPASS if definition.routing.auth.bypass else POLICY_ONE_FACTOR
            rules.append({"domain": self.hostname(definition), "policy": policy})
        return rules

    def env_file(self) -> str:
        return self.env_template.render(config=self.config, direct=self.config.needs_tls)

    # YAML renderings

    def homepage_yaml(self, graph: ResolutionGraph) -> str:
        return _dump(self.homepage_services(graph))

    def cloudflared_yaml(self, graph: ResolutionGraph) -> str:
        return _dump(self.cloudflared_config(graph))

    def traefik_yaml(self, graph: ResolutionGraph) -> str:
        return _dump(self.traefik_middlewares(graph))
