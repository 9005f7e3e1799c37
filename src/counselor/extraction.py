from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .constants import ROLE_PARSER
from .errors import ProviderError
from .models import EntryMode, ToolCall
from .parser import OutputParser
from .prompts import render_prompt
from .providers import ModelGateway
from .runlog import RunLogger
from .store import ProfileStore
from .tools import registry_for_role


_DATA_KEYWORDS = [
    # tests
    "sat", "act", "psat", "score", r"1[0-6]\d{2}", r"\d{2}/36",
    # gpa
    "gpa", "grade point", r"\d\.\d",
    # activities and awards
    "president", "captain", "founder", "member", "club", "team", "volunteer",
    "award", "won", "winner", "finalist", "semifinalist", "national", "aime", "usamo",
    # schools
    "mit", "stanford", "harvard", "yale", "princeton", "college", "university",
    # identity
    "my name", "i'm in", "i am a", "junior", "senior", "sophomore", "freshman",
    "grade", "9th", "10th", "11th", "12th",
    # courses
    "taking", "ap ", "ib ", "honors", "course", "class", "transcript", "schedule",
    # programs
    "program", "summer", "internship", "research", "camp", "institute",
    "rsi", "ssp", "simr", "mostec", "tasp", "telluride", "yygs",
    "attending", "accepted to", "applied to", "applying",
    # goals
    "goal", "plan to", "want to", "hope to", "aiming", "target", "aspire",
]


def should_parse(message: str, mode: Optional[EntryMode] = None) -> bool:
    """Cheap gate in front of the parser role.

    Onboarding always parses since short answers like "10th grade" are the point.
    """
    if mode is EntryMode.ONBOARDING:
        return True
    if len(message) < 10 and not re.search(r"\d", message):
        return False
    lower = message.lower()
    for keyword in _DATA_KEYWORDS:
        if "\\" in keyword:
            if re.search(keyword, lower):
                return True
        elif keyword in lower:
            return True
    return False


@dataclass
class MessageExtraction:
    student_id: str
    parsed: bool = False
    entities: List[Dict[str, Any]] = field(default_factory=list)
    intents: List[str] = field(default_factory=list)
    calls: List[ToolCall] = field(default_factory=list)
    acknowledgment: Optional[str] = None
    questions: List[str] = field(default_factory=list)
    confidence: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "parsed": self.parsed,
            "entities": self.entities,
            "intents": self.intents,
            "tools": [{"name": c.name, "args": dict(c.arguments), "call_id": c.call_id} for c in self.calls],
            "acknowledgment": self.acknowledgment,
            "questions": self.questions,
            "confidence": self.confidence,
            "error": self.error,
        }


class MessageExtractor:
    """Runs the parser role over one student message without executing anything."""

    def __init__(self, profile_store: ProfileStore, gateway: ModelGateway, parser: OutputParser, logger: RunLogger) -> None:
        self.profile_store = profile_store
        self.gateway = gateway
        self.parser = parser
        self.logger = logger

    def extract(self, student_id: str, message: str, mode: EntryMode = EntryMode.GENERAL, tier: Optional[str] = None) -> MessageExtraction:
        result = MessageExtraction(student_id=student_id)
        if not should_parse(message, mode):
            return result

        profile = self.profile_store.get_profile(student_id) or {}
        tools_reg = registry_for_role(self.parser.registry, ROLE_PARSER)
        prompt = render_prompt(ROLE_PARSER, {
            "student_name": profile.get("preferred_name") or profile.get("first_name") or "unknown",
            "grade": profile.get("grade") or "grade unknown",
            "entry_mode": mode.value,
            "tool_names": ", ".join(tools_reg.names()),
        })
        try:
            gen = self.gateway.generate(
                ROLE_PARSER,
                [{"role": "system", "content": prompt.text}, {"role": "user", "content": message}],
                tier=tier,
            )
        except ProviderError as e:
            result.error = str(e)
            self.logger.log("extraction_failed", student_id=student_id, error=str(e))
            return result

        parsed = self.parser.parse(gen.output, prompt.schema_tag, tools_reg)
        if parsed.is_malformed:
            result.error = parsed.reason
            return result

        data = parsed.data
        result.parsed = True
        result.entities = [e for e in data.get("entities") or [] if isinstance(e, dict)]
        result.intents = [str(i) for i in data.get("intents") or []]
        result.calls = list(parsed.calls)
        result.acknowledgment = parsed.content or None
        result.questions = [str(q) for q in data.get("questions") or []]
        try:
            result.confidence = float(data.get("confidence") or 0.0)
        except (TypeError, ValueError):
            result.confidence = 0.0
        self.logger.log(
            "message_extracted",
            student_id=student_id,
            entities=len(result.entities),
            tools=[c.name for c in result.calls],
            confidence=result.confidence,
        )
        return result
