"""Versioned role prompts.

Each template names the schema tag its output must satisfy; the parser keeps a
rule set per tag (``parser.SCHEMA_RULES``). Changing what a template asks the
model to return means bumping its version and tag and adding the matching rule
set in the same change.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .constants import (
    ROLE_COUNSELOR,
    ROLE_OBJECTIVES,
    ROLE_ONBOARDING,
    ROLE_PARSER,
    ROLE_SECRETARY,
    ROLE_SUMMARIZER,
)
from .errors import TemplateError
from .template_loader import TemplateLoader, get_template_loader


@dataclass(frozen=True)
class PromptTemplate:
    role: str
    version: str
    schema_tag: str
    uses_native_tools: bool = False

    @property
    def path(self) -> str:
        return f"prompts/{self.role}.{self.version}.md"


@dataclass(frozen=True)
class RenderedPrompt:
    role: str
    version: str
    schema_tag: str
    text: str
    uses_native_tools: bool = False


PROMPT_TEMPLATES: Dict[str, PromptTemplate] = {
    ROLE_ONBOARDING: PromptTemplate(ROLE_ONBOARDING, "v2", "onboarding.v2", uses_native_tools=True),
    ROLE_COUNSELOR: PromptTemplate(ROLE_COUNSELOR, "v3", "counselor.v3", uses_native_tools=True),
    ROLE_PARSER: PromptTemplate(ROLE_PARSER, "v1", "parser.v1"),
    ROLE_SECRETARY: PromptTemplate(ROLE_SECRETARY, "v2", "secretary.v2"),
    ROLE_OBJECTIVES: PromptTemplate(ROLE_OBJECTIVES, "v1", "objectives.v1"),
    ROLE_SUMMARIZER: PromptTemplate(ROLE_SUMMARIZER, "v1", "summary.v1"),
}

_CORRECTIVE_HINTS = {
    "onboarding.v2": "Reply to the student in plain text, and use only the registered tools with every required argument.",
    "counselor.v3": "Reply to the student in plain text, and use only the registered tools with every required argument.",
    "parser.v1": 'Return only a JSON object with an "entities", "intents" and "tools" list; each tool is {"name": ..., "args": {...}}.',
    "secretary.v2": 'Return only a JSON object with a boolean "can_handle" and, when it is true, a "response" string.',
    "objectives.v1": 'Return only a JSON object of the form {"objectives": ["..."]}.',
    "summary.v1": 'Return only a JSON object with a "digest" string.',
}


def render_prompt(role: str, variables: Mapping[str, Any], loader: Optional[TemplateLoader] = None) -> RenderedPrompt:
    template = PROMPT_TEMPLATES.get(role)
    if template is None:
        raise TemplateError(f"No prompt template for role '{role}'", None, {"role": role})
    text = (loader or get_template_loader()).render_template(template.path, dict(variables))
    return RenderedPrompt(
        role=role,
        version=template.version,
        schema_tag=template.schema_tag,
        text=text.strip(),
        uses_native_tools=template.uses_native_tools,
    )


def corrective_instruction(schema_tag: str, reason: str) -> str:
    hint = _CORRECTIVE_HINTS.get(schema_tag, "Follow the required output format exactly.")
    return f"Your previous response could not be used: {reason}. {hint}"
