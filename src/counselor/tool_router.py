from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .context import ContextCache
from .errors import InvalidArguments, UnknownTool, handle_tool_error
from .models import ToolCall
from .runlog import RunLogger
from .store import ProfileStore
from .tools import ToolContext, ToolRegistry


class CallStatus(str, Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


@dataclass
class CallResult:
    call_id: str
    name: str
    status: CallStatus
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    widget: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "data": self.data,
            "widget": self.widget,
            "error": self.error,
        }


@dataclass
class ExecutionReport:
    results: List[CallResult] = field(default_factory=list)
    critical_failure: bool = False
    addressed_objectives: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """True when at least one call did not execute."""
        return any(r.status not in (CallStatus.EXECUTED, CallStatus.DUPLICATE) for r in self.results)

    @property
    def executed(self) -> List[CallResult]:
        return [r for r in self.results if r.status is CallStatus.EXECUTED]


class ToolExecutionRouter:
    """Runs a turn's tool calls sequentially against the profile store."""

    def __init__(
        self,
        registry: ToolRegistry,
        profile_store: ProfileStore,
        logger: RunLogger,
        cache: Optional[ContextCache] = None,
    ) -> None:
        self.registry = registry
        self.profile_store = profile_store
        self.logger = logger
        self.cache = cache

    def execute(
        self,
        calls: Sequence[ToolCall],
        student_id: str,
        pending_objectives: Sequence[str] = (),
        turn_id: Optional[str] = None,
    ) -> ExecutionReport:
        report = ExecutionReport()
        ctx = ToolContext(student_id=student_id, profile_store=self.profile_store, pending_objectives=list(pending_objectives))
        seen: Dict[str, CallResult] = {}
        wrote = False

        for call in calls:
            if report.critical_failure:
                report.results.append(CallResult(call.call_id, call.name, CallStatus.SKIPPED, error="skipped after critical failure"))
                continue
            if call.call_id in seen:
                first = seen[call.call_id]
                report.results.append(CallResult(call.call_id, call.name, CallStatus.DUPLICATE, first.message, first.data, first.widget))
                self.logger.log("tool_call", turn_id=turn_id, student_id=student_id, name=call.name, call_id=call.call_id, status="duplicate")
                continue

            result = self._run_one(call, ctx)
            seen[call.call_id] = result
            report.results.append(result)
            self.logger.log(
                "tool_call",
                turn_id=turn_id,
                student_id=student_id,
                name=call.name,
                call_id=call.call_id,
                status=result.status.value,
                error=result.error,
            )

            if result.status is CallStatus.EXECUTED:
                wrote = True
                addressed = result.data.get("objective_id") if call.name == "mark_objective_addressed" else None
                if addressed and addressed not in report.addressed_objectives:
                    report.addressed_objectives.append(addressed)
            elif result.status is CallStatus.FAILED and self.registry.get(call.name).critical:
                report.critical_failure = True

        if wrote and self.cache is not None:
            self.cache.invalidate(student_id)
        return report

    def _run_one(self, call: ToolCall, ctx: ToolContext) -> CallResult:
        try:
            spec = self.registry.get(call.name)
            args = self.registry.validate(call.name, call.arguments)
        except UnknownTool as e:
            return CallResult(call.call_id, call.name, CallStatus.UNKNOWN_TOOL, error=str(e))
        except InvalidArguments as e:
            return CallResult(call.call_id, call.name, CallStatus.INVALID_ARGUMENTS, error=str(e))

        try:
            outcome = spec.handler(ctx, args)
        except Exception as e:
            err = handle_tool_error(e, call.name, call.call_id)
            if err.call_id is None:
                err.call_id = call.call_id
            return CallResult(call.call_id, call.name, CallStatus.FAILED, widget=spec.widget, error=str(err))
        return CallResult(call.call_id, call.name, CallStatus.EXECUTED, outcome.message, outcome.data, outcome.widget or spec.widget)
