from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from .constants import DEFAULT_TURN_NOTE_LENGTH, ROLE_SUMMARIZER
from .errors import MalformedOutput, ProviderError, TemplateError
from .locks import StudentLocks
from .models import ConversationSummary, TurnRecord
from .parser import OutputParser
from .prompts import render_prompt
from .providers import ModelGateway
from .runlog import RunLogger
from .store import ConversationStore


def _clip(text: str, n: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= n else text[: n - 3] + "..."


def turn_note(turn: TurnRecord) -> str:
    note = f"- {turn.at[:10]}: student: {_clip(turn.student_message, DEFAULT_TURN_NOTE_LENGTH)} / counselor: {_clip(turn.reply, DEFAULT_TURN_NOTE_LENGTH)}"
    if turn.tools:
        note += f" [saved: {', '.join(turn.tools)}]"
    return note


def bound_digest(digest: str, max_chars: int) -> str:
    """Keep the most recent ``max_chars`` of the digest, cut at a line boundary."""
    digest = digest.strip()
    if len(digest) <= max_chars:
        return digest
    tail = digest[-max_chars:]
    nl = tail.find("\n")
    if 0 <= nl < len(tail) - 1:
        tail = tail[nl + 1:]
    return tail.strip()


class SummaryCompactor:
    """Folds older turns into the digest once the rendered summary passes a size threshold."""

    def __init__(self, compact_chars: int, keep_turns: int, digest_max_chars: int) -> None:
        self.compact_chars = compact_chars
        self.keep_turns = keep_turns
        self.digest_max_chars = digest_max_chars

    def needs_compaction(self, summary: ConversationSummary) -> bool:
        return len(summary.render()) > self.compact_chars

    def fold(self, summary: ConversationSummary, keep: Optional[int] = None) -> ConversationSummary:
        keep = self.keep_turns if keep is None else keep
        older = summary.turns[:-keep] if keep else list(summary.turns)
        recent = summary.turns[-keep:] if keep else []
        if not older:
            return summary
        notes = "\n".join(turn_note(t) for t in older)
        digest = (summary.digest.rstrip() + "\n" + notes).strip()
        return replace(summary, digest=bound_digest(digest, self.digest_max_chars), turns=list(recent))

    def record(self, summary: ConversationSummary, turn: TurnRecord) -> Tuple[ConversationSummary, bool]:
        updated = replace(summary, turns=list(summary.turns) + [turn], total_turns=summary.total_turns + 1)
        if self.needs_compaction(updated):
            return self.fold(updated), True
        return updated, False


@dataclass
class SummaryRun:
    student_id: str
    summarized: bool = False
    used_model: bool = False
    folded_turns: int = 0
    error: Optional[str] = None


class ConversationSummarizer:
    """End-of-conversation rewrite of the digest by the summarizer model."""

    def __init__(
        self,
        conversation_store: ConversationStore,
        gateway: ModelGateway,
        parser: OutputParser,
        locks: StudentLocks,
        compactor: SummaryCompactor,
        logger: RunLogger,
    ) -> None:
        self.conversation_store = conversation_store
        self.gateway = gateway
        self.parser = parser
        self.locks = locks
        self.compactor = compactor
        self.logger = logger

    def _model_digest(self, summary: ConversationSummary, tier: Optional[str]) -> str:
        transcript = "\n".join(
            f"Student: {t.student_message}\nCounselor: {t.reply}" for t in summary.turns
        )
        prompt = render_prompt(ROLE_SUMMARIZER, {
            "previous_digest": summary.digest or "(none yet)",
            "transcript": transcript,
            "max_chars": self.compactor.digest_max_chars,
        })
        result = self.gateway.generate(
            ROLE_SUMMARIZER,
            [{"role": "system", "content": prompt.text}, {"role": "user", "content": "Update the notes now."}],
            tier=tier,
        )
        parsed = self.parser.parse(result.output, prompt.schema_tag)
        if parsed.is_malformed:
            raise MalformedOutput(parsed.reason or "malformed summary", parsed.raw, prompt.schema_tag)
        digest = str(parsed.data["digest"]).strip()
        commitments: List[str] = [c for c in parsed.data.get("open_commitments") or [] if isinstance(c, str) and c.strip()]
        if commitments:
            digest += "\nOpen commitments: " + "; ".join(commitments)
        return digest

    def summarize(self, student_id: str, tier: Optional[str] = None) -> SummaryRun:
        run = SummaryRun(student_id=student_id)
        with self.locks.section(student_id):
            summary = self.conversation_store.get_summary(student_id)
            if not summary.turns:
                return run
            run.folded_turns = len(summary.turns)
            try:
                digest = self._model_digest(summary, tier)
                summary = replace(summary, digest=bound_digest(digest, self.compactor.digest_max_chars), turns=[])
                run.used_model = True
            except (ProviderError, MalformedOutput, TemplateError) as e:
                run.error = str(e)
                self.logger.log("summary_fallback", student_id=student_id, error=str(e))
                summary = self.compactor.fold(summary, keep=0)
            self.conversation_store.save_summary(summary)
            run.summarized = True
        self.logger.log(
            "summary_compacted",
            student_id=student_id,
            used_model=run.used_model,
            folded_turns=run.folded_turns,
        )
        return run
