"""
Writes a complete deployment directory from the project configuration.
"""
import glob
import logging
import os
from typing import Dict, List, Optional

from ..MODELS.project_config import ProjectConfig
from ..MODELS.resolution_graph import ResolutionGraph
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.atomic_write import atomic_write_text
from ..UTILS.cancellation import CancellationToken, check_cancelled
from .integrations import IntegrationsGenerator
from .to_compose import ComposeGenerator

logger = logging.getLogger(__name__)

COMPOSE_FILE = "compose.yaml"
HOMEPAGE_FILE = os.path.join("configs", "homepage", "services.yaml")
TRAEFIK_FILE = os.path.join("configs", "traefik", "dynamic", "middlewares.yml")
CLOUDFLARED_FILE = os.path.join("configs", "cloudflared", "config.yml")
ENV_FILE = ".env"


def read_secrets(secrets_dir: str) -> Dict[str, str]:
    """
    Reads ``<secrets_dir>/*.txt`` into a name to value map. A missing
    directory yields no secrets.
    """
    secrets = {}
    for path in sorted(glob.glob(os.path.join(secrets_dir, "*.txt"))):
        name = os.path.splitext(os.path.basename(path))[0]
        with open(path, "r") as f:
            secrets[name] = f.read().strip()
    return secrets


class ProjectGenerator:
    """
    Resolves the project and writes the compose document and integration files.
    """

    def __init__(self, config: ProjectConfig, resolver: DependencyResolver, output_dir: str = "."):
        """
        :param config: The project configuration.
        :param resolver: Resolver bound to the service registry.
        :param output_dir: Deployment directory; secrets are read from its ``secrets`` folder.
        """
        self.config = config
        self.resolver = resolver
        self.output_dir = os.path.abspath(output_dir)

    def generate(self, ctx: Optional[CancellationToken] = None,
                 graph: Optional[ResolutionGraph] = None) -> List[str]:
        """
        Generates every deployment file.

        :param ctx: Optional cancellation token, checked before anything is written.
        :param graph: A graph to use instead of resolving the configuration.
        :return: Paths of the written files, relative to the output directory.
        """
        secrets = read_secrets(os.path.join(self.output_dir, "secrets"))
        if graph is None:
            graph = self.resolver.resolve(self.config, ctx, secrets)
        for error in graph.errors:
            logger.warning("%s", error)

        compose = ComposeGenerator(self.config, secrets).generate(graph)
        integrations = IntegrationsGenerator(self.config)
        files = {
            COMPOSE_FILE: compose.to_yaml(),
            HOMEPAGE_FILE: integrations.homepage_yaml(graph),
            TRAEFIK_FILE: integrations.traefik_yaml(graph),
        }
        if self.config.is_cloudflared:
            files[CLOUDFLARED_FILE] = integrations.cloudflared_yaml(graph)
        files[ENV_FILE] = integrations.env_file()

        check_cancelled(ctx)
        for relative, content in files.items():
            atomic_write_text(os.path.join(self.output_dir, relative), content)
            logger.info("Wrote %s", relative)
        return list(files)
