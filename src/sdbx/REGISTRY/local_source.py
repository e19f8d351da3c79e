"""
Source backed by a directory on the local filesystem.
"""
from typing import Optional

from ..MODELS.source_config import SOURCE_TYPE_LOCAL
from ..PARSERS.definition_parser import DefinitionParser
from .base_source import BaseSource


class LocalSource(BaseSource):
    """
    Serves definitions straight from ``path``; edits are visible immediately.
    """
    source_type = SOURCE_TYPE_LOCAL

    def __init__(self, name: str, path: str, priority: int = 0, enabled: bool = True,
                 parser: Optional[DefinitionParser] = None):
        super().__init__(name, priority, enabled, parser)
        self.path = path

    @property
    def revision(self) -> str:
        return "local"

    @property
    def url(self) -> str:
        return self.path

    def services_root(self) -> str:
        return self._existing_root(self.path)
