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
Multi-source registry of service definitions.
Sources are consulted in descending priority; the first one defining a
service wins outright.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ..MODELS.errors import DefinitionParseError, OperationCancelled, ServiceNotFoundError, SourceError
from ..MODELS.service_definition import ServiceDefinition, ServiceOverride
from ..MODELS.source_config import (
    SOURCE_TYPE_EMBEDDED,
    SOURCE_TYPE_GIT,
    SOURCE_TYPE_LOCAL,
    SourceConfig,
    SourceDef,
)
from ..PARSERS.definition_parser import DefinitionParser
from ..PARSERS.definition_validator import DefinitionValidator, ValidationIssue
from ..UTILS.cancellation import CancellationToken, check_cancelled
from .base_source import BaseSource
from .embedded_source import EmbeddedSource
from .git_source import GitSource
from .local_source import LocalSource
from .source_cache import SourceCache

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_WORKERS = 4


@dataclass(frozen=True)
class ServiceInfo:
    """Summary of the winning definition of a service."""
    name: str
    version: str
    category: str
    description: str
    source: str
    is_addon: bool

    @classmethod
    def from_definition(cls, definition: ServiceDefinition, source: str) -> "ServiceInfo":
        return cls(
            name=definition.name,
            version=definition.version,
            category=definition.metadata.category,
            description=definition.metadata.description,
            source=source,
            is_addon=definition.is_addon,
        )


class ServiceRegistry:
    """
    Holds the configured sources and answers "which definition of X applies".
    """

    def __init__(self, sources: Iterable[BaseSource] = (),
                 validator: Optional[DefinitionValidator] = None,
                 source_config: Optional[SourceConfig] = None):
        """
        :param sources: Sources to register; the embedded source is added if absent.
        :param validator: Validator used by :meth:`validate`.
        :param source_config: Configuration providing per-source trust levels.
        """
        self._lock = threading.RLock()
        self._sources: List[BaseSource] = []
        self.validator = validator or DefinitionValidator()
        self.source_config = source_config
        for source in sources:
            self.add_source(source)
        if not any(s.source_type == SOURCE_TYPE_EMBEDDED for s in self._sources):
            self._sources.append(EmbeddedSource())
            self._sort()

    @classmethod
    def from_config(cls, config: SourceConfig, parser: Optional[DefinitionParser] = None) -> "ServiceRegistry":
        """
        Builds a registry from a source configuration.

        :raises SourceError: If a source has an unknown type.
        """
        parser = parser or DefinitionParser()
        cache = SourceCache(config.cache_dir, config.cache_ttl)
        sources = [create_source(d, cache, parser) for d in config.sources]
        return cls(sources, source_config=config)

    def _sort(self) -> None:
        # Stable: equal priorities keep registration order
        self._sources.sort(key=lambda s: -s.priority)

    @property
    def sources(self) -> List[BaseSource]:
        with self._lock:
            return list(self._sources)

    def enabled_sources(self) -> List[BaseSource]:
        with self._lock:
            return [s for s in self._sources if s.is_enabled()]

    def add_source(self, source: BaseSource) -> None:
        """
        :raises SourceError: If a source with the same name is already registered.
        """
        with self._lock:
            if any(s.name == source.name for s in self._sources):
                raise SourceError(source.name, "a source with this name already exists")
            self._sources.append(source)
            self._sort()

    def remove_source(self, name: str) -> BaseSource:
        """
        :raises SourceError: If the source is unknown or is the embedded source.
        """
        with self._lock:
            source = self.get_source(name)
            if source.source_type == SOURCE_TYPE_EMBEDDED:
                raise SourceError(name, "the embedded source cannot be removed")
            self._sources.remove(source)
            return source

    def get_source(self, name: str) -> BaseSource:
        with self._lock:
            for source in self._sources:
                if source.name == name:
                    return source
        raise SourceError(name, "no such source")

    def find_service(self, name: str, ctx: Optional[CancellationToken] = None) -> Tuple[ServiceDefinition, BaseSource]:
        """
        Returns the definition of ``name`` from the highest-priority enabled
        source that has a readable one, along with that source.

        :raises ServiceNotFoundError: If no enabled source defines ``name``.
        """
        for source in self.enabled_sources():
            check_cancelled(ctx)
            try:
                return source.load_service(name, ctx), source
            except ServiceNotFoundError:
                continue
            except OperationCancelled:
                raise
            except (DefinitionParseError, SourceError, OSError) as e:
                logger.warning("Skipping %s from source %s: %s", name, source.name, e)
        raise ServiceNotFoundError(name)

    def get_service(self, name: str, ctx: Optional[CancellationToken] = None) -> Tuple[ServiceDefinition, str]:
        """
        :return: The winning definition of ``name`` and the name of the source it came from.
        :raises ServiceNotFoundError: If no enabled source defines ``name``.
        """
        definition, source = self.find_service(name, ctx)
        return definition, source.name

    def load_overrides(self, name: str) -> List[Tuple[str, ServiceOverride]]:
        """
        Overrides for ``name`` from every enabled source, lowest priority first.
        """
        overrides = []
        for source in reversed(self.enabled_sources()):
            try:
                override = source.load_overrides(name)
            except (SourceError, OSError) as e:
                logger.warning("Cannot read overrides for %s from source %s: %s", name, source.name, e)
                continue
            if override is not None:
                overrides.append((source.name, override))
        return overrides

    def list_service_names(self, ctx: Optional[CancellationToken] = None) -> List[str]:
        """
        Every service name defined by at least one enabled source, sorted.
        Sources that cannot be read are reported and skipped.
        """
        names = set()
        for source in self.enabled_sources():
            check_cancelled(ctx)
            try:
                names.update(source.list_services(ctx))
            except OperationCancelled:
                raise
            except (SourceError, OSError) as e:
                logger.warning("Cannot list services from source %s: %s", source.name, e)
        return sorted(names)

    def list_services(self, ctx: Optional[CancellationToken] = None) -> List[ServiceInfo]:
        """
        One entry per service name, taken from the winning source, sorted by name.
        """
        infos = []
        for name in self.list_service_names(ctx):
            try:
                definition, source = self.get_service(name, ctx)
            except ServiceNotFoundError:
                continue
            infos.append(ServiceInfo.from_definition(definition, source))
        return infos

    def search_services(self, query: str = "", category: str = "",
                        ctx: Optional[CancellationToken] = None) -> List[ServiceInfo]:
        """
        Case-insensitive substring search over name, description and category.

        :param query: Text to look for; empty matches everything.
        :param category: If given, only services in this category.
        """
        needle = query.lower()
        results = []
        for info in self.list_services(ctx):
            if category and info.category != category:
                continue
            haystack = (info.name, info.description, info.category)
            if needle and not any(needle in field.lower() for field in haystack):
                continue
            results.append(info)
        return results

    def update(self, ctx: Optional[CancellationToken] = None, names: Optional[Iterable[str]] = None,
               max_workers: int = DEFAULT_UPDATE_WORKERS) -> Dict[str, Optional[str]]:
        """
        Refreshes sources concurrently.

        :param ctx: Optional cancellation token shared by every refresh.
        :param names: Sources to refresh; all enabled sources when omitted.
        :param max_workers: Upper bound on concurrent refreshes.
        :return: Source name mapped to an error message, or None on success.
        """
        if names is None:
            targets = self.enabled_sources()
            results: Dict[str, Optional[str]] = {}
        else:
            targets = []
            results = {}
            for name in names:
                try:
                    targets.append(self.get_source(name))
                except SourceError as e:
                    results[name] = str(e)

        if not targets:
            return results

        def refresh(source: BaseSource) -> Optional[str]:
            try:
                source.update(ctx)
            except (SourceError, OperationCancelled, OSError) as e:
                logger.warning("Failed to update source %s: %s", source.name, e)
                return str(e)
            return None

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(targets)))) as pool:
            futures = {source.name: pool.submit(refresh, source) for source in targets}
            for name, future in futures.items():
                results[name] = future.result()
        return results

    def validate(self, definition: ServiceDefinition, source: Optional[str] = None) -> List[ValidationIssue]:
        """
        Validates a definition, applying the trust level configured for ``source`` if any.
        """
        trust = None
        if source and self.source_config is not None:
            trust = self.source_config.security.trust_levels.get(source)
        return self.validator.validate(definition, trust)


def create_source(definition: SourceDef, cache: SourceCache,
                  parser: Optional[DefinitionParser] = None) -> BaseSource:
    """
    Instantiates the source described by a configuration entry.

    :raises SourceError: If the source type is unknown.
    """
    if definition.type == SOURCE_TYPE_LOCAL:
        return LocalSource(definition.name, definition.path, definition.priority, definition.enabled, parser)
    if definition.type == SOURCE_TYPE_GIT:
        return GitSource(
            definition.name,
            definition.url,
            cache,
            branch=definition.branch or "main",
            sub_path=definition.path,
            ssh_key=definition.ssh_key,
            priority=definition.priority,
            enabled=definition.enabled,
            verified=definition.verified,
            parser=parser,
        )
    if definition.type == SOURCE_TYPE_EMBEDDED:
        return EmbeddedSource(parser)
    raise SourceError(definition.name, f"unknown source type {definition.type!r}")
