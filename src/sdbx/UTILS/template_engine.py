"""
Template rendering and gate evaluation for service definitions.
"""
import logging
from typing import Any, Dict, Optional

from jinja2 import DictLoader, StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

logger = logging.getLogger(__name__)


def is_template(text: str) -> bool:
    return "{{" in text or "{%" in text


def secret_template(secret_name: str) -> str:
    """The template expression that reads a materialized secret."""
    return '{{ secrets["%s"] }}' % secret_name


class TemplateEngine:
    """
    Renders definition templates against a fixed context.

    The context exposes ``config`` (the project configuration), ``secrets``
    (name to value) and ``name`` (the service being rendered). Undefined
    names are errors, so a missing secret or a typo in a field never
    renders as an empty string.
    """
    def __init__(self, config: Any = None, secrets: Optional[Dict[str, str]] = None):
        """
        :param config: The project configuration exposed as ``config``.
        :param secrets: Materialized secrets exposed as ``secrets``.
        """
        self.config = config
        self.secrets = dict(secrets or {})
        # No templates to include or import
        self._env = SandboxedEnvironment(loader=DictLoader({}), undefined=StrictUndefined, autoescape=False)
        self._compiled = {}

    def context(self, name: str = "") -> Dict[str, Any]:
        return {"config": self.config, "secrets": self.secrets, "name": name}

    def render_strict(self, template: str, name: str = "") -> str:
        """
        Renders a template.

        :param template: The template text.
        :param name: The service name exposed as ``name``.
        :return: The rendered string.
        :raises TemplateError: If the template is malformed or references an undefined value.
        """
        if not is_template(template):
            return template
        compiled = self._compiled.get(template)
        if compiled is None:
            compiled = self._env.from_string(template)
            self._compiled[template] = compiled
        return compiled.render(self.context(name))

    def render(self, template: str, name: str = "") -> str:
        """
        Renders a template, leaving the literal text in place on failure.
        """
        try:
            return self.render_strict(template, name)
        except TemplateError as e:
            logger.warning("Could not render template %r for %s: %s", template, name or "<global>", e)
            return template

    def evaluate(self, gate: str, name: str = "") -> bool:
        """
        Evaluates a ``when`` gate.

        An empty gate is true. A gate is true when it renders to ``true``
        (case-insensitive); a gate that fails to render is false.
        """
        if not gate or not gate.strip():
            return True
        try:
            result = self.render_strict(gate, name)
        except TemplateError as e:
            logger.warning("Could not evaluate condition %r for %s: %s", gate, name or "<global>", e)
            return False
        return result.strip().lower() == "true"
