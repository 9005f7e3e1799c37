from __future__ import annotations

from concurrent.futures import Future
from typing import Callable, Dict, List, Optional

from .config import EngineConfig, load_engine_config
from .context import ContextAssembler, ContextCache
from .controller import ConversationLoopController, TurnOutcome, TurnRequest
from .entitlement import EntitlementGate, UsageLimitGate
from .extraction import MessageExtraction, MessageExtractor
from .locks import StudentLocks
from .models import CounselorObjective, EntryContext, EntryMode
from .objectives import TRIGGER_CONVERSATION_END, TRIGGER_LOGIN, ObjectiveGenerator, ObjectiveRun, ObjectiveScheduler
from .parser import OutputParser
from .providers import ModelGateway, ProviderAdapter
from .runlog import RunLogger
from .store import ConversationStore, InMemoryConversationStore, InMemoryProfileStore, ProfileStore
from .summary import ConversationSummarizer, SummaryCompactor
from .tool_router import ToolExecutionRouter
from .tools import default_registry


class CounselorEngine:
    """Wires the components together and exposes the student-facing operations."""

    def __init__(
        self,
        config: EngineConfig,
        profile_store: ProfileStore,
        conversation_store: ConversationStore,
        entitlement: EntitlementGate,
        logger: RunLogger,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.config = config
        self.profile_store = profile_store
        self.conversation_store = conversation_store
        self.entitlement = entitlement
        self.logger = logger

        self.locks = StudentLocks()
        self.registry = default_registry(config.disabled_tools)
        gateway_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.gateway = ModelGateway(config, logger, adapters=adapters, **gateway_kwargs)
        self.parser = OutputParser(self.registry, logger)
        self.cache = ContextCache(ttl=config.context.cache_ttl)
        self.assembler = ContextAssembler(
            profile_store, conversation_store, logger, config.context.budget_tokens, self.cache
        )
        self.tool_router = ToolExecutionRouter(self.registry, profile_store, logger, self.cache)
        self.compactor = SummaryCompactor(
            config.context.summary_compact_chars,
            config.context.summary_keep_turns,
            config.context.digest_max_chars,
        )
        self.controller = ConversationLoopController(
            self.assembler,
            self.gateway,
            self.parser,
            self.tool_router,
            conversation_store,
            entitlement,
            self.locks,
            self.compactor,
            logger,
            max_reprompts=config.max_reprompts,
            secretary_tiers=config.secretary_tiers,
        )
        self.summarizer = ConversationSummarizer(
            conversation_store, self.gateway, self.parser, self.locks, self.compactor, logger
        )
        self.objectives = ObjectiveGenerator(
            profile_store, conversation_store, self.gateway, self.parser, self.locks, logger,
            max_objectives=config.objective_max,
        )
        self.extractor = MessageExtractor(profile_store, self.gateway, self.parser, logger)
        self.scheduler = ObjectiveScheduler(logger)

    def _tier(self, student_id: str) -> str:
        return self.entitlement.check(student_id).tier

    def chat(
        self,
        student_id: str,
        message: str,
        entry: Optional[EntryContext] = None,
        on_delta: Optional[Callable[[str], None]] = None,
    ) -> TurnOutcome:
        request = TurnRequest(student_id=student_id, message=message, entry=entry or EntryContext())
        return self.controller.run_turn(request, on_delta=on_delta)

    def on_login(self, student_id: str) -> Future:
        """Warm the narrative cache now and schedule objective generation."""
        self.assembler.warm(student_id)
        return self.scheduler.submit(
            "objectives:login", self.objectives.generate, student_id, TRIGGER_LOGIN, self._tier(student_id)
        )

    def end_conversation(self, student_id: str) -> Future:
        tier = self._tier(student_id)

        def job() -> ObjectiveRun:
            self.summarizer.summarize(student_id, tier)
            return self.objectives.generate(student_id, TRIGGER_CONVERSATION_END, tier)

        return self.scheduler.submit("conversation_end", job)

    def parse_message(self, student_id: str, message: str, mode: EntryMode = EntryMode.ONBOARDING) -> MessageExtraction:
        return self.extractor.extract(student_id, message, mode, self._tier(student_id))

    def objectives_for(self, student_id: str) -> List[CounselorObjective]:
        return self.conversation_store.get_objectives(student_id)

    def shutdown(self, wait: bool = True) -> None:
        self.scheduler.shutdown(wait=wait)


def build_engine(
    config: Optional[EngineConfig] = None,
    profile_store: Optional[ProfileStore] = None,
    conversation_store: Optional[ConversationStore] = None,
    entitlement: Optional[EntitlementGate] = None,
    adapters: Optional[Dict[str, ProviderAdapter]] = None,
    logger: Optional[RunLogger] = None,
) -> CounselorEngine:
    """Build an engine from the environment, defaulting to in-memory stores."""
    config = config or load_engine_config()
    return CounselorEngine(
        config,
        profile_store or InMemoryProfileStore(),
        conversation_store or InMemoryConversationStore(),
        entitlement or UsageLimitGate(limits=config.tier_message_limits),
        logger or RunLogger(config.log_dir or "."),
        adapters=adapters,
    )
