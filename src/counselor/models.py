from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EntryMode(str, Enum):
    GENERAL = "general"
    ONBOARDING = "onboarding"
    CHANCES = "chances"
    SCHOOLS = "schools"
    PLANNING = "planning"
    PROFILE = "profile"
    STORY = "story"


class ObjectiveStatus(str, Enum):
    PENDING = "pending"
    ADDRESSED = "addressed"
    DROPPED = "dropped"


class OutputKind(str, Enum):
    TEXT = "text"
    TOOL_CALLS = "toolCalls"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class EntryContext:
    """Session metadata captured once per turn; never mutated afterwards."""
    mode: EntryMode = EntryMode.GENERAL
    trigger: str = "message"
    created_at: str = field(default_factory=utc_now)
    initial_query: Optional[str] = None
    is_new_user: bool = False
    days_since_last_session: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["mode"] = self.mode.value
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EntryContext":
        return cls(
            mode=EntryMode(data.get("mode") or EntryMode.GENERAL.value),
            trigger=data.get("trigger") or "message",
            created_at=data.get("created_at") or utc_now(),
            initial_query=data.get("initial_query"),
            is_new_user=bool(data.get("is_new_user", False)),
            days_since_last_session=data.get("days_since_last_session"),
        )


@dataclass
class CounselorObjective:
    id: str
    text: str
    status: ObjectiveStatus = ObjectiveStatus.PENDING
    created_at: str = field(default_factory=utc_now)
    updated_at: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class TurnRecord:
    turn_id: str
    at: str
    student_message: str
    reply: str
    tools: List[str] = field(default_factory=list)


@dataclass
class ConversationSummary:
    """Rolling digest of older turns plus the most recent turns verbatim."""
    student_id: str
    digest: str = ""
    turns: List[TurnRecord] = field(default_factory=list)
    total_turns: int = 0
    version: int = 0
    updated_at: Optional[str] = None

    def render(self) -> str:
        parts: List[str] = []
        if self.digest.strip():
            parts.append("Earlier sessions:\n" + self.digest.strip())
        if self.turns:
            lines = ["Recent turns:"]
            for t in self.turns:
                lines.append(f"- Student: {t.student_message}")
                lines.append(f"  Counselor: {t.reply}")
                if t.tools:
                    lines.append(f"  (saved: {', '.join(t.tools)})")
            parts.append("\n".join(lines))
        return "\n\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: Mapping[str, Any]
    call_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "arguments": dict(self.arguments), "call_id": self.call_id}


@dataclass(frozen=True)
class ParsedModelOutput:
    """Tagged result of parsing one model response.

    ``text`` carries ``content``; ``toolCalls`` carries ``calls`` (and any
    accompanying ``content``); ``malformed`` carries ``raw`` and ``reason``.
    ``data`` holds the decoded JSON envelope for structured roles.
    """
    kind: OutputKind
    content: Optional[str] = None
    calls: Tuple[ToolCall, ...] = ()
    raw: Optional[str] = None
    reason: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, content: str, data: Optional[Mapping[str, Any]] = None) -> "ParsedModelOutput":
        return cls(kind=OutputKind.TEXT, content=content, data=dict(data or {}))

    @classmethod
    def tool_calls(cls, calls: List[ToolCall], content: Optional[str] = None, data: Optional[Mapping[str, Any]] = None) -> "ParsedModelOutput":
        return cls(kind=OutputKind.TOOL_CALLS, calls=tuple(calls), content=content, data=dict(data or {}))

    @classmethod
    def malformed(cls, raw: Optional[str], reason: str) -> "ParsedModelOutput":
        return cls(kind=OutputKind.MALFORMED, raw=raw or "", reason=reason or "unparseable output")

    @property
    def is_malformed(self) -> bool:
        return self.kind is OutputKind.MALFORMED


@dataclass
class Task:
    id: str
    goal_id: str
    title: str
    due_date: Optional[str] = None
    status: str = "pending"


@dataclass
class Goal:
    id: str
    student_id: str
    title: str
    category: str = "general"
    description: Optional[str] = None
    target_date: Optional[str] = None
    priority: Optional[str] = None
    status: str = "planning"
    display_order: int = 0
    created_at: str = field(default_factory=utc_now)
    tasks: List[Task] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
