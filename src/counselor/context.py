from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from .constants import CHARS_PER_TOKEN, DEFAULT_CONTEXT_CACHE_TTL, MIN_SECTION_TOKENS
from .errors import ContextUnavailable, StoreError
from .models import CounselorObjective, EntryContext, EntryMode, ObjectiveStatus
from .narrative import build_profile_narrative
from .runlog import RunLogger
from .store import ConversationStore, ProfileStore


PROFILE_NARRATIVE = "profile_narrative"
CONVERSATION_SUMMARY = "conversation_summary"
COUNSELOR_OBJECTIVES = "counselor_objectives"
ENTRY_CONTEXT = "entry_context"

SECTION_ORDER = [PROFILE_NARRATIVE, CONVERSATION_SUMMARY, COUNSELOR_OBJECTIVES, ENTRY_CONTEXT]
# first entry gives way first; anything not listed is never shrunk
COMPACTION_ORDER = [CONVERSATION_SUMMARY, PROFILE_NARRATIVE]

SECTION_TITLES = {
    PROFILE_NARRATIVE: "Student Profile",
    CONVERSATION_SUMMARY: "Conversation History",
    COUNSELOR_OBJECTIVES: "Session Objectives",
    ENTRY_CONTEXT: "Session Context",
}

SUMMARY_MARKER = "[older history compacted]\n"
NARRATIVE_MARKER = "\n[profile truncated]"

NO_OBJECTIVES_TEXT = "No objectives set for this session. Focus on what the student wants."

_MODE_GUIDANCE = {
    EntryMode.ONBOARDING: (
        "Student is in the ONBOARDING flow. Get to know them through natural conversation: "
        "name, grade, high school, what is on their mind about college. Keep it warm, never a checklist, "
        "and end with a follow-up question."
    ),
    EntryMode.CHANCES: (
        "Student came from CHANCES. They want to know their odds at specific schools. "
        "Be realistic but encouraging and point out what is missing from their profile."
    ),
    EntryMode.SCHOOLS: (
        "Student is building their SCHOOL LIST. Help balance reaches, targets and safeties "
        "against their stats and preferences."
    ),
    EntryMode.PLANNING: (
        "Student is in PLANNING. Help identify milestones and turn them into goals with concrete next steps and deadlines."
    ),
    EntryMode.PROFILE: (
        "Student is documenting their PROFILE. Help them articulate experiences and capture application-relevant detail."
    ),
    EntryMode.STORY: (
        "Student is exploring their STORY. Listen, ask thoughtful questions and connect themes; do not rush to data collection."
    ),
    EntryMode.GENERAL: "General conversation. Be ready to help with whatever the student needs.",
}


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN) if text else 0


@dataclass(frozen=True)
class ContextSection:
    name: str
    title: str
    content: str
    truncated: bool = False

    @property
    def size(self) -> int:
        return estimate_tokens(self.content)


@dataclass
class AssembledContext:
    student_id: str
    entry: EntryContext
    sections: List[ContextSection]
    budget: int
    pending_objectives: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    over_budget: bool = False

    @property
    def total_size(self) -> int:
        return sum(s.size for s in self.sections)

    def section(self, name: str) -> Optional[ContextSection]:
        for s in self.sections:
            if s.name == name:
                return s
        return None

    def render(self) -> str:
        return "\n\n".join(f"## {s.title}\n{s.content}" for s in self.sections if s.content)

    def template_vars(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"context": self.render(), "entry_mode": self.entry.mode.value}
        for name in SECTION_ORDER:
            sec = self.section(name)
            out[name] = sec.content if sec else ""
        return out


def render_objectives(objectives: List[CounselorObjective]) -> str:
    pending = [o for o in objectives if o.status is ObjectiveStatus.PENDING]
    if not pending:
        return NO_OBJECTIVES_TEXT
    lines = [f"{i}. [{o.id}] {o.text}" for i, o in enumerate(pending, start=1)]
    lines.append("When the conversation satisfies an objective, call mark_objective_addressed with its id.")
    return "\n".join(lines)


def render_entry_context(entry: EntryContext) -> str:
    parts = []
    if entry.is_new_user:
        parts.append("This is a NEW student, their first session.")
    elif entry.days_since_last_session is not None:
        days = entry.days_since_last_session
        if days == 0:
            parts.append("Returning student, last session was earlier today.")
        elif days == 1:
            parts.append("Returning student, last session was yesterday.")
        elif days <= 7:
            parts.append(f"Returning student, last session was {days} days ago.")
        else:
            parts.append(f"Returning student, not active in {days} days.")
    parts.append(_MODE_GUIDANCE.get(entry.mode, _MODE_GUIDANCE[EntryMode.GENERAL]))
    if entry.initial_query:
        parts.append(f'Opening question: "{entry.initial_query}"')
    parts.append(f"Session started {entry.created_at} (trigger: {entry.trigger}).")
    return "\n".join(parts)


def _truncate(section: ContextSection, target_tokens: int) -> ContextSection:
    """Shrink to ``target_tokens``; the summary keeps its tail, everything else its head."""
    max_chars = target_tokens * CHARS_PER_TOKEN
    if section.name == CONVERSATION_SUMMARY:
        keep = max(0, max_chars - len(SUMMARY_MARKER))
        content = SUMMARY_MARKER + section.content[len(section.content) - keep:] if keep else ""
    else:
        keep = max(0, max_chars - len(NARRATIVE_MARKER))
        content = section.content[:keep] + NARRATIVE_MARKER if keep else ""
    return replace(section, content=content, truncated=True)


def fit_to_budget(sections: List[ContextSection], budget: int) -> Tuple[List[ContextSection], List[str]]:
    """Compact sections in COMPACTION_ORDER until the total fits ``budget``.

    Sections outside COMPACTION_ORDER are returned untouched even when they
    alone exceed the budget.
    """
    out = list(sections)
    dropped: List[str] = []
    for name in COMPACTION_ORDER:
        total = sum(s.size for s in out)
        over = total - budget
        if over <= 0:
            break
        idx = next((i for i, s in enumerate(out) if s.name == name), None)
        if idx is None:
            continue
        target = out[idx].size - over
        if target < MIN_SECTION_TOKENS:
            dropped.append(name)
            del out[idx]
        else:
            out[idx] = _truncate(out[idx], target)
    return out, dropped


class ContextCache:
    """TTL cache of built profile narratives keyed by student."""

    def __init__(self, ttl: float = DEFAULT_CONTEXT_CACHE_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._items: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, student_id: str) -> Optional[str]:
        with self._lock:
            item = self._items.get(student_id)
            if item is None:
                return None
            expires, value = item
            if self._clock() >= expires:
                del self._items[student_id]
                return None
            return value

    def put(self, student_id: str, narrative: str) -> None:
        with self._lock:
            self._items[student_id] = (self._clock() + self.ttl, narrative)

    def invalidate(self, student_id: str) -> None:
        with self._lock:
            self._items.pop(student_id, None)


class ContextAssembler:

    def __init__(
        self,
        profile_store: ProfileStore,
        conversation_store: ConversationStore,
        logger: RunLogger,
        budget_tokens: int,
        cache: Optional[ContextCache] = None,
    ) -> None:
        self.profile_store = profile_store
        self.conversation_store = conversation_store
        self.logger = logger
        self.budget_tokens = budget_tokens
        self.cache = cache

    def profile_narrative(self, student_id: str) -> str:
        if self.cache is not None:
            cached = self.cache.get(student_id)
            if cached is not None:
                return cached
        try:
            profile = self.profile_store.get_profile(student_id)
            goals = self.profile_store.list_goals(student_id)
        except StoreError as e:
            raise ContextUnavailable(
                f"Profile store unavailable for {student_id}: {e}",
                student_id,
                {"operation": e.operation, **e.context},
            ) from e
        narrative = build_profile_narrative(profile, goals)
        if self.cache is not None:
            self.cache.put(student_id, narrative)
        return narrative

    def warm(self, student_id: str) -> str:
        if self.cache is not None:
            self.cache.invalidate(student_id)
        narrative = self.profile_narrative(student_id)
        self.logger.log("context_warmed", student_id=student_id, size=estimate_tokens(narrative))
        return narrative

    def assemble(self, student_id: str, entry: EntryContext) -> AssembledContext:
        narrative = self.profile_narrative(student_id)
        try:
            summary = self.conversation_store.get_summary(student_id)
            objectives = self.conversation_store.get_objectives(student_id)
        except StoreError as e:
            raise ContextUnavailable(
                f"Conversation store unavailable for {student_id}: {e}",
                student_id,
                {"operation": e.operation, **e.context},
            ) from e

        contents = {
            PROFILE_NARRATIVE: narrative,
            CONVERSATION_SUMMARY: summary.render() or "No previous conversations.",
            COUNSELOR_OBJECTIVES: render_objectives(objectives),
            ENTRY_CONTEXT: render_entry_context(entry),
        }
        sections = [ContextSection(name, SECTION_TITLES[name], contents[name]) for name in SECTION_ORDER]
        before = sum(s.size for s in sections)
        fitted, dropped = fit_to_budget(sections, self.budget_tokens)
        ctx = AssembledContext(
            student_id=student_id,
            entry=entry,
            sections=fitted,
            budget=self.budget_tokens,
            pending_objectives=[o.id for o in objectives if o.status is ObjectiveStatus.PENDING],
            dropped=dropped,
        )
        if ctx.total_size != before:
            self.logger.log(
                "context_compacted",
                student_id=student_id,
                before=before,
                after=ctx.total_size,
                budget=self.budget_tokens,
                truncated=[s.name for s in fitted if s.truncated],
                dropped=dropped,
            )
        if ctx.total_size > self.budget_tokens:
            # objectives + entry context alone exceed the budget; they are never cut
            ctx.over_budget = True
            self.logger.log("context_over_budget", student_id=student_id, size=ctx.total_size, budget=self.budget_tokens)
        return ctx
