"""
Prompt template engine.

Templates are registered under (id, version) and rendered by substituting
``{{name}}`` placeholders. Rendering is strict: a required placeholder
without a value is an error rather than an empty string, so a prompt never
goes out with silently missing case data.
"""
import json
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from caseai.core.errors import MissingVariableError, TemplateNotFoundError, ValidationError
from caseai.core.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class PromptTemplate(BaseModel):
    id: str
    version: str
    name: str
    description: str = ""
    operation: str
    system: Optional[str] = None
    user: str
    optional_variables: List[str] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def placeholders(self) -> List[str]:
        """Placeholder names in order of first appearance."""
        seen: Dict[str, None] = {}
        for text in (self.system or "", self.user):
            for match in PLACEHOLDER_PATTERN.finditer(text):
                seen.setdefault(match.group(1), None)
        return list(seen)

    def required_variables(self) -> List[str]:
        return [name for name in self.placeholders() if name not in self.optional_variables]


class RenderedPrompt(BaseModel):
    """A fully substituted prompt, ready for the model client."""

    template_id: str
    version: str
    operation: str
    system: Optional[str] = None
    user: str
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def messages(self) -> List[Dict[str, str]]:
        messages = []
        if self.system:
            messages.append({"role": "system", "content": self.system})
        messages.append({"role": "user", "content": self.user})
        return messages

    @property
    def text(self) -> str:
        """System and user turns as one string, as logged on the interaction."""
        if self.system:
            return f"{self.system}\n\n{self.user}"
        return self.user


def format_value(value: Any) -> str:
    """Render one variable value into prompt text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump(mode="json"), indent=2)
    if isinstance(value, Mapping):
        return json.dumps(value, indent=2, default=str)
    if isinstance(value, (list, tuple, set, frozenset)):
        return ", ".join(format_value(item) for item in value)
    return str(value)


def _version_key(version: str) -> Tuple:
    parts = []
    for part in version.split("."):
        parts.append((0, int(part), "") if part.isdigit() else (1, 0, part))
    return tuple(parts)


class PromptTemplateEngine:
    """Registry of prompt templates plus a strict renderer."""

    def __init__(self, templates: Optional[Iterable[PromptTemplate]] = None):
        self._templates: Dict[Tuple[str, str], PromptTemplate] = {}
        for template in templates or ():
            self.register(template)

    def register(self, template: PromptTemplate) -> None:
        unknown_optional = set(template.optional_variables) - set(template.placeholders())
        if unknown_optional:
            raise ValidationError(
                f"Template {template.id} lists optional variables it never uses: {', '.join(sorted(unknown_optional))}"
            )
        key = (template.id, template.version)
        if key in self._templates:
            logger.info("prompt_template_replaced", template_id=template.id, version=template.version)
        self._templates[key] = template

    def get_template(self, template_id: str, version: Optional[str] = None) -> PromptTemplate:
        if version is not None:
            template = self._templates.get((template_id, version))
            if template is None:
                raise TemplateNotFoundError(template_id, version)
            return template

        versions = [tpl for (tid, _), tpl in self._templates.items() if tid == template_id]
        if not versions:
            raise TemplateNotFoundError(template_id)
        return max(versions, key=lambda tpl: _version_key(tpl.version))

    def list_templates(self) -> List[PromptTemplate]:
        return sorted(self._templates.values(), key=lambda tpl: (tpl.id, _version_key(tpl.version)))

    def templates_for_operation(self, operation: str) -> List[PromptTemplate]:
        return [tpl for tpl in self.list_templates() if tpl.operation == operation]

    def render(
        self,
        template_id: str,
        version: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> RenderedPrompt:
        """
        Render a template.

        Raises:
            TemplateNotFoundError: unknown template id or version
            MissingVariableError: a required placeholder is absent or None
        """
        template = self.get_template(template_id, version)
        variables = variables or {}

        missing = [name for name in template.required_variables() if variables.get(name) is None]
        if missing:
            raise MissingVariableError(template.id, missing)

        def substitute(match: "re.Match[str]") -> str:
            return format_value(variables.get(match.group(1)))

        return RenderedPrompt(
            template_id=template.id,
            version=template.version,
            operation=template.operation,
            system=PLACEHOLDER_PATTERN.sub(substitute, template.system) if template.system else None,
            user=PLACEHOLDER_PATTERN.sub(substitute, template.user),
            parameters=dict(template.parameters),
        )
