from __future__ import annotations

import re
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from .constants import DEFAULT_OBJECTIVE_MAX, DEFAULT_OBJECTIVE_WORKERS, ROLE_OBJECTIVES
from .errors import CounselorError, MalformedOutput, ProviderError, StoreError, TemplateError
from .ids import new_id
from .locks import StudentLocks
from .models import CounselorObjective, Goal, ObjectiveStatus, utc_now
from .narrative import build_profile_narrative
from .parser import OutputParser
from .prompts import render_prompt
from .providers import ModelGateway
from .runlog import RunLogger
from .store import ConversationStore, ProfileStore


TRIGGER_LOGIN = "login"
TRIGGER_CONVERSATION_END = "conversation_end"


def _norm(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().rstrip(".!").lower()


def merge_objectives(
    existing: List[CounselorObjective],
    texts: List[str],
    trigger: str,
    limit: int = DEFAULT_OBJECTIVE_MAX,
) -> Tuple[List[CounselorObjective], List[str], List[str], List[str]]:
    """Apply a fresh generation to the stored list.

    Re-affirmed pending objectives keep their id and creation time, new texts
    become pending, and pending objectives left out become ``dropped``.
    Nothing is deleted. Returns (merged, added ids, kept ids, dropped ids).
    """
    wanted: List[str] = []
    seen = set()
    for t in texts:
        key = _norm(t)
        if key and key not in seen:
            seen.add(key)
            wanted.append(t.strip())
        if len(wanted) >= limit:
            break
    wanted_keys = {_norm(t) for t in wanted}

    now = utc_now()
    merged: List[CounselorObjective] = []
    kept: List[str] = []
    dropped: List[str] = []
    pending_keys = set()
    for obj in existing:
        if obj.status is ObjectiveStatus.PENDING:
            key = _norm(obj.text)
            if key in wanted_keys and key not in pending_keys:
                pending_keys.add(key)
                kept.append(obj.id)
            else:
                obj.status = ObjectiveStatus.DROPPED
                obj.updated_at = now
                dropped.append(obj.id)
        merged.append(obj)

    added: List[str] = []
    for text in wanted:
        if _norm(text) in pending_keys:
            continue
        obj = CounselorObjective(id=new_id("obj"), text=text, source=trigger)
        merged.append(obj)
        added.append(obj.id)
    return merged, added, kept, dropped


def upcoming_deadlines(goals: List[Goal], today: date, horizon_days: int = 60) -> List[str]:
    """Open goal and task dates within the horizon, soonest first, labelled by urgency."""
    items: List[Tuple[int, str]] = []
    for g in goals:
        if g.status == "completed":
            continue
        dated = [(g.target_date, f"goal '{g.title}'")]
        dated += [(t.due_date, f"task '{t.title}' ({g.title})") for t in g.tasks if t.status != "completed"]
        for when, label in dated:
            if not when:
                continue
            try:
                days = (date.fromisoformat(when[:10]) - today).days
            except ValueError:
                continue
            if days > horizon_days:
                continue
            if days < 0:
                tag = "overdue"
            elif days <= 7:
                tag = "urgent"
            elif days <= 30:
                tag = "soon"
            else:
                tag = "upcoming"
            items.append((days, f"- [{tag}] {label} due {when[:10]}"))
    return [line for _, line in sorted(items)][:5]


def heuristic_objectives(profile: Optional[Dict[str, Any]], goals: List[Goal]) -> List[str]:
    """Profile-gap objectives used when no model output is available."""
    if not profile:
        return [
            "Welcome them warmly and learn their name",
            "Understand what grade they're in and their timeline",
            "Find out what brings them here today",
        ]
    out: List[str] = []
    academics = profile.get("academics") or {}
    if not (academics.get("gpa_unweighted") or academics.get("gpa_weighted")):
        out.append("Learn their GPA if it comes up naturally")
    if not profile.get("testing"):
        out.append("Find out about standardized testing plans")
    if not profile.get("activities"):
        out.append("Discover their extracurricular activities")
    if not profile.get("schools"):
        out.append("Explore what schools interest them")
    in_progress = [g for g in goals if g.status == "in_progress"]
    if in_progress:
        out.append(f'Check progress on "{in_progress[0].title}"')
    if not out:
        out.append("Look for opportunities to deepen their profile")
    return out


@dataclass
class ObjectiveRun:
    student_id: str
    trigger: str
    objectives: List[CounselorObjective] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    used_model: bool = False
    error: Optional[str] = None


class ObjectiveGenerator:
    """Derives next-session objectives on login and conversation end."""

    def __init__(
        self,
        profile_store: ProfileStore,
        conversation_store: ConversationStore,
        gateway: ModelGateway,
        parser: OutputParser,
        locks: StudentLocks,
        logger: RunLogger,
        max_objectives: int = DEFAULT_OBJECTIVE_MAX,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.profile_store = profile_store
        self.conversation_store = conversation_store
        self.gateway = gateway
        self.parser = parser
        self.locks = locks
        self.logger = logger
        self.max_objectives = max_objectives
        self._today = today

    def _model_objectives(self, narrative: str, history: str, current: List[CounselorObjective], deadlines: List[str], tier: Optional[str]) -> List[str]:
        pending = [o.text for o in current if o.status is ObjectiveStatus.PENDING]
        prompt = render_prompt(ROLE_OBJECTIVES, {
            "today": self._today().isoformat(),
            "profile_narrative": narrative,
            "conversation_summary": history or "No conversations yet.",
            "current_objectives": "\n".join(f"- {t}" for t in pending) or "(none)",
            "deadlines": ("Upcoming deadlines:\n" + "\n".join(deadlines)) if deadlines else "",
            "max_objectives": self.max_objectives,
        })
        result = self.gateway.generate(
            ROLE_OBJECTIVES,
            [{"role": "system", "content": prompt.text}, {"role": "user", "content": "Write the objectives now."}],
            tier=tier,
        )
        parsed = self.parser.parse(result.output, prompt.schema_tag)
        if parsed.is_malformed:
            raise MalformedOutput(parsed.reason or "malformed objectives", parsed.raw, prompt.schema_tag)
        return [str(t) for t in parsed.data["objectives"]]

    def generate(self, student_id: str, trigger: str, tier: Optional[str] = None) -> ObjectiveRun:
        run = ObjectiveRun(student_id=student_id, trigger=trigger)
        # waits for any in-flight turn for this student
        with self.locks.section(student_id):
            try:
                profile = self.profile_store.get_profile(student_id)
                goals = self.profile_store.list_goals(student_id)
                summary = self.conversation_store.get_summary(student_id)
                existing = self.conversation_store.get_objectives(student_id)
            except StoreError as e:
                run.error = str(e)
                self.logger.log("objectives_failed", student_id=student_id, trigger=trigger, error=str(e))
                return run

            has_pending = any(o.status is ObjectiveStatus.PENDING for o in existing)
            try:
                texts = self._model_objectives(
                    build_profile_narrative(profile, goals),
                    summary.render(),
                    existing,
                    upcoming_deadlines(goals, self._today()),
                    tier,
                )
                run.used_model = True
            except (ProviderError, MalformedOutput, TemplateError) as e:
                run.error = str(e)
                self.logger.log("objectives_fallback", student_id=student_id, trigger=trigger, error=str(e))
                if has_pending:
                    run.objectives = existing
                    return run
                texts = heuristic_objectives(profile, goals)

            merged, run.added, run.kept, run.dropped = merge_objectives(existing, texts, trigger, self.max_objectives)
            try:
                self.conversation_store.save_objectives(student_id, merged)
            except StoreError as e:
                run.error = str(e)
                self.logger.log("objectives_failed", student_id=student_id, trigger=trigger, error=str(e))
                return run
            run.objectives = merged

        self.logger.log(
            "objectives_generated",
            student_id=student_id,
            trigger=trigger,
            used_model=run.used_model,
            added=run.added,
            kept=run.kept,
            dropped=run.dropped,
        )
        return run


class ObjectiveScheduler:
    """Thread pool for login and conversation-end jobs; failures are logged, never raised to the trigger."""

    def __init__(self, logger: RunLogger, max_workers: int = DEFAULT_OBJECTIVE_WORKERS) -> None:
        self.logger = logger
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="counselor-job")

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        return self._pool.submit(self._run, name, fn, *args, **kwargs)

    def _run(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except CounselorError as e:
            self.logger.log("job_failed", job=name, error=str(e), error_type=type(e).__name__)
            return None

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
