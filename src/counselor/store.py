"""Store contracts the engine consumes, plus thread-safe in-memory implementations.

Persistence internals are not the engine's concern: production deployments
implement ``ProfileStore`` and ``ConversationStore`` over their own database and
raise ``StoreError`` on any read/write failure. Each write is individually
atomic; nothing spans a whole turn.
"""
from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .errors import StoreError
from .ids import new_id
from .models import ConversationSummary, CounselorObjective, EntryContext, Goal, Task, utc_now


RECORD_COLLECTIONS = ("activities", "awards", "courses", "programs", "schools")


class ProfileStore(ABC):

    @abstractmethod
    def get_profile(self, student_id: str) -> Optional[Dict[str, Any]]:
        """Profile fields and record collections, or None for an unknown student."""

    @abstractmethod
    def update_profile(self, student_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def append_record(self, student_id: str, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def list_goals(self, student_id: str) -> List[Goal]:
        ...

    @abstractmethod
    def create_goal(self, goal: Goal) -> Goal:
        ...

    @abstractmethod
    def find_goal(self, student_id: str, goal_id: Optional[str] = None, title: Optional[str] = None) -> Optional[Goal]:
        ...

    @abstractmethod
    def add_task(self, student_id: str, task: Task) -> Task:
        ...


class ConversationStore(ABC):

    @abstractmethod
    def get_summary(self, student_id: str) -> ConversationSummary:
        ...

    @abstractmethod
    def save_summary(self, summary: ConversationSummary) -> None:
        ...

    @abstractmethod
    def get_objectives(self, student_id: str) -> List[CounselorObjective]:
        ...

    @abstractmethod
    def save_objectives(self, student_id: str, objectives: List[CounselorObjective]) -> None:
        ...

    @abstractmethod
    def append_entry_context(self, student_id: str, turn_id: str, entry: EntryContext) -> None:
        ...

    @abstractmethod
    def list_entry_contexts(self, student_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def append_turn_log(self, student_id: str, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def turn_log(self, student_id: str) -> List[Dict[str, Any]]:
        ...


class InMemoryProfileStore(ProfileStore):

    def __init__(self, profiles: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._lock = threading.Lock()
        self._profiles: Dict[str, Dict[str, Any]] = copy.deepcopy(profiles or {})
        self._goals: Dict[str, List[Goal]] = {}

    def get_profile(self, student_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            profile = self._profiles.get(student_id)
            return copy.deepcopy(profile) if profile is not None else None

    def update_profile(self, student_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            profile = self._profiles.setdefault(student_id, {})
            for key, value in fields.items():
                if isinstance(value, dict) and isinstance(profile.get(key), dict):
                    profile[key].update(value)
                else:
                    profile[key] = value
            profile["updated_at"] = utc_now()
            return copy.deepcopy(profile)

    def append_record(self, student_id: str, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        if collection not in RECORD_COLLECTIONS:
            raise StoreError(f"Unknown profile collection '{collection}'", "append_record", {"collection": collection})
        with self._lock:
            profile = self._profiles.setdefault(student_id, {})
            items = profile.setdefault(collection, [])
            stored = dict(record)
            stored.setdefault("id", new_id(collection[:-1] if collection.endswith("s") else collection))
            stored.setdefault("display_order", len(items))
            items.append(stored)
            return copy.deepcopy(stored)

    def list_goals(self, student_id: str) -> List[Goal]:
        with self._lock:
            return copy.deepcopy(self._goals.get(student_id, []))

    def create_goal(self, goal: Goal) -> Goal:
        with self._lock:
            goals = self._goals.setdefault(goal.student_id, [])
            goal.display_order = len(goals)
            goals.append(copy.deepcopy(goal))
            return copy.deepcopy(goal)

    def find_goal(self, student_id: str, goal_id: Optional[str] = None, title: Optional[str] = None) -> Optional[Goal]:
        with self._lock:
            for g in self._goals.get(student_id, []):
                if goal_id and g.id == goal_id:
                    return copy.deepcopy(g)
                if title and g.title.strip().lower() == title.strip().lower():
                    return copy.deepcopy(g)
        return None

    def add_task(self, student_id: str, task: Task) -> Task:
        with self._lock:
            for g in self._goals.get(student_id, []):
                if g.id == task.goal_id:
                    g.tasks.append(copy.deepcopy(task))
                    return copy.deepcopy(task)
        raise StoreError(f"Goal '{task.goal_id}' not found", "add_task", {"student_id": student_id})


class InMemoryConversationStore(ConversationStore):

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._summaries: Dict[str, ConversationSummary] = {}
        self._objectives: Dict[str, List[CounselorObjective]] = {}
        self._entries: Dict[str, List[Dict[str, Any]]] = {}
        self._turn_log: Dict[str, List[Dict[str, Any]]] = {}

    def get_summary(self, student_id: str) -> ConversationSummary:
        with self._lock:
            summary = self._summaries.get(student_id)
            if summary is None:
                return ConversationSummary(student_id=student_id)
            return copy.deepcopy(summary)

    def save_summary(self, summary: ConversationSummary) -> None:
        with self._lock:
            stored = copy.deepcopy(summary)
            stored.version += 1
            stored.updated_at = utc_now()
            self._summaries[summary.student_id] = stored
            summary.version = stored.version
            summary.updated_at = stored.updated_at

    def get_objectives(self, student_id: str) -> List[CounselorObjective]:
        with self._lock:
            return copy.deepcopy(self._objectives.get(student_id, []))

    def save_objectives(self, student_id: str, objectives: List[CounselorObjective]) -> None:
        with self._lock:
            self._objectives[student_id] = copy.deepcopy(objectives)

    def append_entry_context(self, student_id: str, turn_id: str, entry: EntryContext) -> None:
        with self._lock:
            self._entries.setdefault(student_id, []).append({"turn_id": turn_id, **entry.to_dict()})

    def list_entry_contexts(self, student_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._entries.get(student_id, []))

    def append_turn_log(self, student_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._turn_log.setdefault(student_id, []).append(copy.deepcopy(record))

    def turn_log(self, student_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._turn_log.get(student_id, []))
