"""
Common behaviour for every source of service definitions.
"""
import logging
import os
import threading
from typing import Dict, List, Optional

from ..MODELS.errors import DefinitionParseError, ServiceNotFoundError
from ..MODELS.service_definition import ServiceDefinition, ServiceOverride
from ..PARSERS.definition_parser import OVERRIDE_FILE, DefinitionParser
from ..UTILS.cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)


class BaseSource:
    """
    A directory tree of ``<name>/service.yaml`` files with a priority.

    Subclasses provide :meth:`services_root` and, when their content can
    change, :meth:`update`. Reads and refreshes of one source are
    serialized by a re-entrant lock; different sources never block each other.
    """
    source_type = ""

    def __init__(self, name: str, priority: int = 0, enabled: bool = True,
                 parser: Optional[DefinitionParser] = None):
        self.name = name
        self.priority = priority
        self.enabled = enabled
        self.parser = parser or DefinitionParser()
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, priority={self.priority})"

    def is_enabled(self) -> bool:
        return self.enabled

    @property
    def revision(self) -> str:
        """Identifier of the content currently served (a commit for git sources)."""
        return ""

    @property
    def url(self) -> str:
        return ""

    @property
    def branch(self) -> str:
        return ""

    @property
    def fetched_at(self) -> str:
        return ""

    def services_root(self) -> str:
        raise NotImplementedError

    def _prepare(self, ctx: Optional[CancellationToken]) -> None:
        """Hook run before every read."""

    def update(self, ctx: Optional[CancellationToken] = None) -> None:
        """Refreshes the source content. Static sources have nothing to refresh."""
        check_cancelled(ctx)

    def list_services(self, ctx: Optional[CancellationToken] = None) -> List[str]:
        """
        Names of the services this source defines, sorted.
        """
        with self._lock:
            check_cancelled(ctx)
            self._prepare(ctx)
            return self.parser.discover_services(self.services_root())

    def service_path(self, name: str) -> Optional[str]:
        """Path of the service.yaml for ``name``, or None."""
        return self.parser.find_service_file(self.services_root(), name)

    def has_service(self, name: str) -> bool:
        with self._lock:
            return self.service_path(name) is not None

    def load_service(self, name: str, ctx: Optional[CancellationToken] = None) -> ServiceDefinition:
        """
        Loads the definition of a single service.

        :param name: The service name.
        :param ctx: Optional cancellation token.
        :return: The parsed definition.
        :raises ServiceNotFoundError: If this source does not define ``name``.
        :raises DefinitionParseError: If the definition file is malformed.
        """
        with self._lock:
            check_cancelled(ctx)
            self._prepare(ctx)
            path = self.service_path(name)
            if path is None:
                raise ServiceNotFoundError(name, self.name)
            definition = self.parser.load_service(path)
            if definition.name != name:
                logger.warning("%s declares metadata.name %r; serving it as %r", path, definition.name, name)
                definition = definition.model_copy(
                    update={"metadata": definition.metadata.model_copy(update={"name": name})}
                )
            return definition

    def load_all(self, ctx: Optional[CancellationToken] = None) -> Dict[str, ServiceDefinition]:
        """
        Loads every definition, skipping malformed files with a warning.
        """
        definitions = {}
        with self._lock:
            for name in self.list_services(ctx):
                try:
                    definitions[name] = self.load_service(name, ctx)
                except DefinitionParseError as e:
                    logger.warning("Skipping malformed definition in source %s: %s", self.name, e)
        return definitions

    def load_overrides(self, name: str) -> Optional[ServiceOverride]:
        """
        Loads the override.yaml beside ``name``'s definition, if any.
        A malformed override is ignored with a warning.
        """
        with self._lock:
            path = self.parser.find_service_file(self.services_root(), name, OVERRIDE_FILE)
            if path is None:
                return None
            try:
                override = self.parser.load_override(path)
            except DefinitionParseError as e:
                logger.warning("Ignoring override for %s in source %s: %s", name, self.name, e)
                return None
            if not override.name:
                override = override.model_copy(update={"name": name})
            return override

    def _existing_root(self, root: str) -> str:
        root = os.path.expanduser(root)
        if not os.path.isdir(root):
            logger.debug("Source %s root %s does not exist", self.name, root)
        return root
