from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .constants import ROLE_COUNSELOR, ROLE_ONBOARDING, ROLE_SECRETARY
from .context import AssembledContext, ContextAssembler
from .entitlement import EntitlementDecision, EntitlementGate
from .errors import ContextUnavailable, CounselorError, ProviderError, QuotaExceeded, StoreError
from .ids import new_id
from .locks import StudentLocks
from .models import EntryContext, EntryMode, ObjectiveStatus, OutputKind, ParsedModelOutput, TurnRecord, utc_now
from .parser import OutputParser
from .prompts import corrective_instruction, render_prompt
from .providers import ModelGateway, RawModelOutput, RetryEvent
from .runlog import RunLogger
from .store import ConversationStore
from .summary import SummaryCompactor
from .tool_router import ExecutionReport, ToolExecutionRouter
from .tools import registry_for_role


class TurnState(str, Enum):
    IDLE = "idle"
    ASSEMBLING_CONTEXT = "assembling_context"
    PROMPTING = "prompting"
    AWAITING_MODEL = "awaiting_model"
    PARSING = "parsing"
    EXECUTING_TOOLS = "executing_tools"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class FailureCode(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    CONTEXT_UNAVAILABLE = "context_unavailable"
    PROVIDER_ERROR = "provider_error"


FAILURE_MESSAGES = {
    FailureCode.QUOTA_EXCEEDED: "You've used all your messages for now. Upgrade your plan or come back tomorrow.",
    FailureCode.CONTEXT_UNAVAILABLE: "We couldn't load your profile just now. Please try again in a moment.",
    FailureCode.PROVIDER_ERROR: "Your counselor is unavailable right now. Please try again in a moment.",
}

DEGRADED_REPLY = "Sorry, I lost my train of thought there. Could you say that again?"


@dataclass
class TurnRequest:
    student_id: str
    message: str
    entry: EntryContext = field(default_factory=EntryContext)
    turn_id: str = field(default_factory=lambda: new_id("turn"))


@dataclass
class TurnOutcome:
    turn_id: str
    student_id: str
    state: TurnState = TurnState.IDLE
    transitions: List[TurnState] = field(default_factory=list)
    reply: str = ""
    role: Optional[str] = None
    output_kind: Optional[OutputKind] = None
    tool_report: Optional[ExecutionReport] = None
    degraded: bool = False
    reprompted: bool = False
    escalated: bool = False
    retry_events: List[RetryEvent] = field(default_factory=list)
    addressed_objectives: List[str] = field(default_factory=list)
    vendor: Optional[str] = None
    model: Optional[str] = None
    tier: Optional[str] = None
    failure: Optional[FailureCode] = None
    error: Optional[str] = None
    user_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is TurnState.DONE

    @property
    def partial(self) -> bool:
        report = self.tool_report
        return bool(report and (report.partial or report.critical_failure))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "student_id": self.student_id,
            "state": self.state.value,
            "transitions": [s.value for s in self.transitions],
            "reply": self.reply,
            "role": self.role,
            "output_kind": self.output_kind.value if self.output_kind else None,
            "tools": [r.to_dict() for r in self.tool_report.results] if self.tool_report else [],
            "partial": self.partial,
            "critical_failure": bool(self.tool_report and self.tool_report.critical_failure),
            "degraded": self.degraded,
            "reprompted": self.reprompted,
            "escalated": self.escalated,
            "retries": len(self.retry_events),
            "addressed_objectives": self.addressed_objectives,
            "vendor": self.vendor,
            "model": self.model,
            "failure": self.failure.value if self.failure else None,
            "error": self.error,
            "user_message": self.user_message,
        }


class ConversationLoopController:
    """Drives one conversation turn under the student's exclusive section."""

    def __init__(
        self,
        assembler: ContextAssembler,
        gateway: ModelGateway,
        parser: OutputParser,
        tool_router: ToolExecutionRouter,
        conversation_store: ConversationStore,
        entitlement: EntitlementGate,
        locks: StudentLocks,
        compactor: SummaryCompactor,
        logger: RunLogger,
        max_reprompts: int = 1,
        secretary_tiers: Sequence[str] = (),
    ) -> None:
        self.assembler = assembler
        self.gateway = gateway
        self.parser = parser
        self.tool_router = tool_router
        self.registry = tool_router.registry
        self.conversation_store = conversation_store
        self.entitlement = entitlement
        self.locks = locks
        self.compactor = compactor
        self.logger = logger
        self.max_reprompts = max_reprompts
        self.secretary_tiers = list(secretary_tiers)

    def _advance(self, outcome: TurnOutcome, state: TurnState) -> None:
        outcome.state = state
        outcome.transitions.append(state)
        self.logger.log("turn_state", turn_id=outcome.turn_id, student_id=outcome.student_id, state=state.value)

    def _fail(self, outcome: TurnOutcome, code: FailureCode, error: CounselorError) -> None:
        outcome.failure = code
        outcome.error = str(error)
        outcome.user_message = FAILURE_MESSAGES[code]
        if code is FailureCode.QUOTA_EXCEEDED and isinstance(error, QuotaExceeded) and error.reason:
            outcome.user_message = error.reason
        self._advance(outcome, TurnState.FAILED)
        self.logger.log("turn_failed", turn_id=outcome.turn_id, student_id=outcome.student_id, failure=code.value, error=str(error))

    def run_turn(self, request: TurnRequest, on_delta: Optional[Callable[[str], None]] = None) -> TurnOutcome:
        outcome = TurnOutcome(turn_id=request.turn_id, student_id=request.student_id)
        with self.locks.section(request.student_id):
            try:
                self._run(request, outcome, on_delta)
            except QuotaExceeded as e:
                self._fail(outcome, FailureCode.QUOTA_EXCEEDED, e)
            except ContextUnavailable as e:
                self._fail(outcome, FailureCode.CONTEXT_UNAVAILABLE, e)
            except ProviderError as e:
                self._fail(outcome, FailureCode.PROVIDER_ERROR, e)
        return outcome

    def _run(self, request: TurnRequest, outcome: TurnOutcome, on_delta: Optional[Callable[[str], None]]) -> None:
        decision = self.entitlement.check(request.student_id)
        outcome.tier = decision.tier
        if not decision.allowed:
            self.logger.log("entitlement_denied", turn_id=request.turn_id, student_id=request.student_id, tier=decision.tier, reason=decision.reason)
            raise QuotaExceeded(decision.reason or "Turn quota exceeded", decision.tier, decision.reason)

        self._advance(outcome, TurnState.ASSEMBLING_CONTEXT)
        ctx = self.assembler.assemble(request.student_id, request.entry)

        role = ROLE_ONBOARDING if request.entry.mode is EntryMode.ONBOARDING else ROLE_COUNSELOR
        parsed: Optional[ParsedModelOutput] = None
        if role == ROLE_COUNSELOR and decision.tier in self.secretary_tiers:
            parsed = self._try_secretary(request, ctx, outcome, decision)
        if parsed is None:
            outcome.role = role
            parsed = self._converse(role, request, ctx, outcome, decision, on_delta)
        outcome.output_kind = parsed.kind

        report: Optional[ExecutionReport] = None
        if parsed.kind is OutputKind.TOOL_CALLS:
            self._advance(outcome, TurnState.EXECUTING_TOOLS)
            report = self.tool_router.execute(parsed.calls, request.student_id, ctx.pending_objectives, request.turn_id)
            outcome.tool_report = report

        outcome.reply = (parsed.content or "").strip()
        if not outcome.reply and report is not None:
            done = [r.message for r in report.executed if r.message]
            outcome.reply = ("Got it. " + "; ".join(done) + ".") if done else ""

        self._advance(outcome, TurnState.PERSISTING)
        self._persist(request, outcome, report)
        self._advance(outcome, TurnState.DONE)
        self.logger.log(
            "turn_complete",
            turn_id=request.turn_id,
            student_id=request.student_id,
            role=outcome.role,
            kind=parsed.kind.value,
            partial=outcome.partial,
            degraded=outcome.degraded,
            retries=len(outcome.retry_events),
        )

    def _generate(
        self,
        role: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        outcome: TurnOutcome,
        decision: EntitlementDecision,
        on_delta: Optional[Callable[[str], None]] = None,
    ) -> RawModelOutput:
        self._advance(outcome, TurnState.AWAITING_MODEL)
        try:
            result = self.gateway.generate(
                role,
                messages,
                tools=tools,
                tool_choice="auto" if tools else None,
                tier=decision.tier,
                on_delta=on_delta,
                turn_id=outcome.turn_id,
            )
        except ProviderError as e:
            outcome.retry_events.extend(RetryEvent(**r) for r in e.context.get("retry_events", []))
            raise
        outcome.retry_events.extend(result.retry_events)
        outcome.vendor = result.vendor
        outcome.model = result.model
        return result.output

    def _converse(
        self,
        role: str,
        request: TurnRequest,
        ctx: AssembledContext,
        outcome: TurnOutcome,
        decision: EntitlementDecision,
        on_delta: Optional[Callable[[str], None]],
    ) -> ParsedModelOutput:
        self._advance(outcome, TurnState.PROMPTING)
        tools_reg = registry_for_role(self.registry, role)
        variables = ctx.template_vars()
        variables["tool_names"] = ", ".join(tools_reg.names())
        prompt = render_prompt(role, variables)
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": prompt.text},
            {"role": "user", "content": request.message},
        ]
        tools = tools_reg.provider_tools() if prompt.uses_native_tools else None

        raw = self._generate(role, messages, tools, outcome, decision, on_delta)
        self._advance(outcome, TurnState.PARSING)
        parsed = self.parser.parse(raw, prompt.schema_tag, tools_reg)

        reprompts = 0
        while parsed.is_malformed and reprompts < self.max_reprompts:
            reprompts += 1
            outcome.reprompted = True
            self.logger.log("turn_reprompt", turn_id=outcome.turn_id, schema=prompt.schema_tag, reason=parsed.reason)
            previous = raw.text or "(tool calls: " + ", ".join(str(c.get("name")) for c in raw.tool_calls) + ")"
            messages = messages + [
                {"role": "assistant", "content": previous},
                {"role": "user", "content": corrective_instruction(prompt.schema_tag, parsed.reason or "invalid output")},
            ]
            raw = self._generate(role, messages, tools, outcome, decision, on_delta)
            self._advance(outcome, TurnState.PARSING)
            parsed = self.parser.parse(raw, prompt.schema_tag, tools_reg)

        if parsed.is_malformed:
            outcome.degraded = True
            self.logger.log("turn_degraded", turn_id=outcome.turn_id, schema=prompt.schema_tag, reason=parsed.reason)
            return ParsedModelOutput.text((raw.text or "").strip() or DEGRADED_REPLY)
        return parsed

    def _try_secretary(
        self,
        request: TurnRequest,
        ctx: AssembledContext,
        outcome: TurnOutcome,
        decision: EntitlementDecision,
    ) -> Optional[ParsedModelOutput]:
        """Cheap first pass; None means escalate to the counselor."""
        self._advance(outcome, TurnState.PROMPTING)
        tools_reg = registry_for_role(self.registry, ROLE_SECRETARY)
        variables = ctx.template_vars()
        variables["tool_names"] = ", ".join(tools_reg.names())
        prompt = render_prompt(ROLE_SECRETARY, variables)
        messages = [
            {"role": "system", "content": prompt.text},
            {"role": "user", "content": request.message},
        ]
        try:
            raw = self._generate(ROLE_SECRETARY, messages, None, outcome, decision)
        except ProviderError as e:
            outcome.escalated = True
            self.logger.log("secretary_escalated", turn_id=outcome.turn_id, reason=f"provider error: {e}")
            return None
        self._advance(outcome, TurnState.PARSING)
        parsed = self.parser.parse(raw, prompt.schema_tag, tools_reg)
        if parsed.is_malformed or not parsed.data.get("can_handle"):
            outcome.escalated = True
            reason = parsed.reason if parsed.is_malformed else parsed.data.get("escalation_reason")
            self.logger.log("secretary_escalated", turn_id=outcome.turn_id, reason=reason)
            return None
        outcome.role = ROLE_SECRETARY
        return parsed

    def _persist(self, request: TurnRequest, outcome: TurnOutcome, report: Optional[ExecutionReport]) -> None:
        sid = request.student_id
        try:
            summary = self.conversation_store.get_summary(sid)
            record = TurnRecord(
                turn_id=request.turn_id,
                at=utc_now(),
                student_message=request.message,
                reply=outcome.reply,
                tools=[r.name for r in report.executed] if report else [],
            )
            summary, compacted = self.compactor.record(summary, record)
            self.conversation_store.save_summary(summary)
            if compacted:
                self.logger.log("summary_compacted", student_id=sid, turn_id=request.turn_id, digest_chars=len(summary.digest))

            if report is not None and report.addressed_objectives and not report.critical_failure:
                objectives = self.conversation_store.get_objectives(sid)
                now = utc_now()
                for obj in objectives:
                    if obj.id in report.addressed_objectives and obj.status is ObjectiveStatus.PENDING:
                        obj.status = ObjectiveStatus.ADDRESSED
                        obj.updated_at = now
                        outcome.addressed_objectives.append(obj.id)
                self.conversation_store.save_objectives(sid, objectives)

            self.conversation_store.append_entry_context(sid, request.turn_id, request.entry)
            self.conversation_store.append_turn_log(sid, {
                "turn_id": request.turn_id,
                "at": record.at,
                "role": outcome.role,
                "vendor": outcome.vendor,
                "model": outcome.model,
                "tools": [r.to_dict() for r in report.results] if report else [],
                "partial": outcome.partial,
                "degraded": outcome.degraded,
                "reprompted": outcome.reprompted,
                "retries": len(outcome.retry_events),
            })
        except StoreError as e:
            raise ContextUnavailable(f"Conversation store unavailable while persisting: {e}", sid, e.context) from e
        self.entitlement.record_turn(sid)
