"""
Source serving the core definitions shipped inside the package.
"""
from pathlib import Path
from typing import Optional

from .. import __version__
from ..MODELS.source_config import EMBEDDED_SOURCE_NAME, EMBEDDED_SOURCE_PRIORITY, SOURCE_TYPE_EMBEDDED
from ..PARSERS.definition_parser import DefinitionParser
from .base_source import BaseSource

EMBEDDED_ROOT = Path(__file__).parent / "services"


class EmbeddedSource(BaseSource):
    """
    The lowest-priority fallback; always present in a registry.
    """
    source_type = SOURCE_TYPE_EMBEDDED

    def __init__(self, parser: Optional[DefinitionParser] = None, root: Optional[str] = None):
        super().__init__(EMBEDDED_SOURCE_NAME, EMBEDDED_SOURCE_PRIORITY, True, parser)
        self.root = root or str(EMBEDDED_ROOT)

    @property
    def revision(self) -> str:
        return f"embedded-{__version__}"

    @property
    def url(self) -> str:
        return "embedded"

    def services_root(self) -> str:
        return self.root
