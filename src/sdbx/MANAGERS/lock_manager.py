"""
Lock file generation, comparison, selective update and verification.
"""
import hashlib
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import yaml

from .. import __version__
from ..MODELS.errors import SourceError
from ..MODELS.lock_file import (
    LockedImage,
    LockedService,
    LockedSource,
    LockFile,
    LockFileDiff,
    LockFileMetadata,
    LockUpdateResult,
    LockVerificationResult,
)
from ..MODELS.project_config import ProjectConfig
from ..MODELS.resolution_graph import ResolutionGraph, ResolvedService
from ..PARSERS.definition_parser import DefinitionParser
from ..REGISTRY.base_source import BaseSource
from ..REGISTRY.service_registry import ServiceRegistry
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.cancellation import CancellationToken

logger = logging.getLogger(__name__)


def config_hash(config: ProjectConfig) -> str:
    data = yaml.safe_dump(config.model_dump(mode="json"), sort_keys=True)
    return "sha256:" + hashlib.sha256(data.encode()).hexdigest()[:32]


def _timestamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def pin_service(resolved: ResolvedService) -> LockedService:
    image = resolved.effective.spec.image
    return LockedService(
        source=resolved.source,
        definitionVersion=resolved.effective.version,
        image=LockedImage(repository=image.repository, tag=image.tag),
        resolvedFrom=resolved.source_path,
        enabled=resolved.enabled,
    )


def pin_source(source: BaseSource) -> LockedSource:
    return LockedSource(
        url=source.url,
        commit=source.revision,
        branch=source.branch,
        fetchedAt=source.fetched_at,
    )


def diff_lock_files(old: LockFile, new: LockFile) -> List[LockFileDiff]:
    """
    Compares two lock files by value.

    :return: Differences sorted by scope, then name. Empty when the pins are equal.
    """
    diffs = []
    for name in sorted(set(old.sources) | set(new.sources)):
        before, after = old.sources.get(name), new.sources.get(name)
        if before is None:
            diffs.append(LockFileDiff("source", name, "added", new=after.commit))
        elif after is None:
            diffs.append(LockFileDiff("source", name, "removed", old=before.commit))
        elif before.commit != after.commit:
            diffs.append(LockFileDiff("source", name, "changed", before.commit, after.commit, "commit"))

    for name in sorted(set(old.services) | set(new.services)):
        before, after = old.services.get(name), new.services.get(name)
        if before is None:
            diffs.append(LockFileDiff("service", name, "added", new=after.definition_version))
            continue
        if after is None:
            diffs.append(LockFileDiff("service", name, "removed", old=before.definition_version))
            continue
        fields = (
            ("version", before.definition_version, after.definition_version),
            ("image repository", before.image.repository, after.image.repository),
            ("image tag", before.image.tag, after.image.tag),
            ("image digest", before.image.digest, after.image.digest),
        )
        for description, old_value, new_value in fields:
            if old_value != new_value:
                diffs.append(LockFileDiff("service", name, "changed", old_value, new_value, description))

    return sorted(diffs, key=lambda d: (d.scope, d.name))


class LockManager:
    """
    Pins a resolution into a lock file and keeps it current.
    """
    def __init__(self, registry: ServiceRegistry, resolver: Optional[DependencyResolver] = None,
                 parser: Optional[DefinitionParser] = None, cli_version: str = __version__):
        self.registry = registry
        self.resolver = resolver or DependencyResolver(registry)
        self.parser = parser or DefinitionParser()
        self.cli_version = cli_version

    def generate_lock_file(self, config: ProjectConfig, ctx: Optional[CancellationToken] = None,
                           graph: Optional[ResolutionGraph] = None) -> LockFile:
        """
        Resolves ``config`` (unless a graph is supplied) and pins the result.

        Only enabled services are pinned, and only sources contributing at
        least one of them.
        """
        if graph is None:
            graph = self.resolver.resolve(config, ctx)

        lock = LockFile(
            metadata=LockFileMetadata(
                generatedAt=_timestamp(),
                cliVersion=self.cli_version,
                configHash=config_hash(config),
            ),
            installOrder=list(graph.order),
        )
        for resolved in graph.enabled_services():
            lock.services[resolved.name] = pin_service(resolved)
            if resolved.source not in lock.sources:
                lock.sources[resolved.source] = pin_source(self.registry.get_source(resolved.source))
        return lock

    def update_lock_file(self, config: ProjectConfig, existing: LockFile, names: Iterable[str],
                         ctx: Optional[CancellationToken] = None) -> LockUpdateResult:
        """
        Re-pins only ``names``, copying every other entry from ``existing``.

        A source pin is refreshed only when a re-pinned service comes from
        it and its revision moved. A requested service that no longer
        resolves keeps its old pin and is reported in ``failures``. The
        config hash is refreshed to ``config``.
        With no names, this is a fresh :meth:`generate_lock_file`.
        """
        names = list(dict.fromkeys(names))
        if not names:
            return LockUpdateResult(self.generate_lock_file(config, ctx))

        graph = self.resolver.resolve(config, ctx)
        lock = existing.model_copy(deep=True)
        failures = {}

        for name in names:
            resolved = graph.services.get(name)
            if resolved is None or not resolved.enabled:
                reasons = [e.message for e in graph.errors if e.service == name]
                if reasons:
                    failures[name] = "; ".join(reasons)
                elif resolved is None:
                    failures[name] = "service not found in any source"
                else:
                    failures[name] = "service is disabled by its conditions"
                logger.warning("Keeping previous pin for %s: %s", name, failures[name])
                continue

            lock.services[name] = pin_service(resolved)
            if name not in lock.install_order:
                lock.install_order.append(name)

            try:
                source = self.registry.get_source(resolved.source)
            except SourceError as e:
                failures[name] = str(e)
                continue
            current = pin_source(source)
            previous = existing.sources.get(source.name)
            if previous is None or previous.commit != current.commit:
                lock.sources[source.name] = current

        lock.metadata = lock.metadata.model_copy(update={
            "generated_at": _timestamp(),
            "config_hash": config_hash(config),
        })
        return LockUpdateResult(lock, failures)

    def diff(self, config: ProjectConfig, lock: LockFile,
             ctx: Optional[CancellationToken] = None) -> List[LockFileDiff]:
        """Differences between ``lock`` and what a fresh generate would pin."""
        return diff_lock_files(lock, self.generate_lock_file(config, ctx))

    def verify(self, config: ProjectConfig, lock: LockFile,
               ctx: Optional[CancellationToken] = None) -> List[LockVerificationResult]:
        """
        Compares a lock file against the current configuration and sources.

        :return: One result per mismatch; empty when the lock is current.
        """
        results = []
        current_hash = config_hash(config)
        if current_hash != lock.metadata.config_hash:
            results.append(LockVerificationResult(
                "config", "", "changed", "configuration has changed since the lock file was generated",
                lock.metadata.config_hash, current_hash,
            ))

        for name in sorted(lock.sources):
            locked = lock.sources[name]
            try:
                source = self.registry.get_source(name)
            except SourceError:
                results.append(LockVerificationResult("source", name, "missing", "source not found"))
                continue
            if source.revision != locked.commit:
                results.append(LockVerificationResult(
                    "source", name, "changed", "source revision has changed", locked.commit, source.revision,
                ))

        graph = self.resolver.resolve(config, ctx)
        for name in sorted(lock.services):
            locked = lock.services[name]
            if not locked.enabled:
                continue
            resolved = graph.services.get(name)
            if resolved is None or not resolved.enabled:
                results.append(LockVerificationResult("service", name, "missing", "service no longer resolves"))
                continue
            current = pin_service(resolved)
            checks = (
                ("service source changed", locked.source, current.source),
                ("service definition version changed", locked.definition_version, current.definition_version),
                ("image repository changed", locked.image.repository, current.image.repository),
                ("image tag changed", locked.image.tag, current.image.tag),
            )
            for message, expected, actual in checks:
                if expected != actual:
                    results.append(LockVerificationResult("service", name, "changed", message, expected, actual))
        return results

    def load_lock_file(self, path: str) -> LockFile:
        return self.parser.load_lock_file(path)

    def save_lock_file(self, lock: LockFile, path: str) -> None:
        self.parser.save_lock_file(lock, path)
