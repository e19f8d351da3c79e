"""
Exception types raised across the registry, resolver, lock and compiler layers.
"""
from typing import List, Optional


class SdbxError(Exception):
    """
    Base class for all errors raised by sdbx.
    """


class ConfigValidationError(SdbxError):
    """
    A user configuration field is missing or invalid.
    """
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"validation error [{field}]: {message}")


class SourceError(SdbxError):
    """
    A source could not be read or refreshed.
    """
    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"source {source}: {message}")


class GitCommandError(SourceError):
    """
    A git command exited with a non-zero status.
    """
    def __init__(self, source: str, args: List[str], output: str):
        self.args_list = args
        self.output = output.strip()
        super().__init__(source, f"git {' '.join(args)} failed: {self.output}")


class DefinitionParseError(SdbxError):
    """
    A definition file is malformed or has the wrong apiVersion/kind.
    """
    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class ServiceNotFoundError(SdbxError):
    """
    No enabled source defines the requested service.
    """
    def __init__(self, name: str, source: Optional[str] = None):
        self.name = name
        self.source = source
        where = f"source {source}" if source else "any source"
        super().__init__(f"service {name} not found in {where}")


class CircularDependencyError(SdbxError):
    """
    The enabled services contain a dependency cycle; no ordering exists.
    """
    def __init__(self, services: List[str]):
        self.services = sorted(services)
        super().__init__(f"circular dependency detected involving: {', '.join(self.services)}")


class LockFileError(SdbxError):
    """
    A lock file could not be read or written.
    """


class OperationCancelled(SdbxError):
    """
    A cancellation token was triggered while an operation was running.
    """
