"""
Tests for engine wiring: login warmup, conversation end jobs and message extraction.
"""

import unittest

from counselor.config import RoleRoute
from counselor.engine import CounselorEngine, build_engine
from counselor.entitlement import AllowAllGate, UsageLimitGate
from counselor.errors import ProviderError
from counselor.extraction import should_parse
from counselor.models import EntryMode, ObjectiveStatus
from counselor.store import InMemoryConversationStore, InMemoryProfileStore

from fakes import ScriptedAdapter, envelope, make_config, make_logger, text


class EngineTestCase(unittest.TestCase):

    def setUp(self):
        self.cfg = make_config(["primary"])
        self.logger = make_logger(self.cfg)
        self.profiles = InMemoryProfileStore({"s1": {"first_name": "Alex", "grade": "11th"}})
        self.conversations = InMemoryConversationStore()
        self.adapter = ScriptedAdapter("primary")
        self.engine = CounselorEngine(
            self.cfg, self.profiles, self.conversations, AllowAllGate(), self.logger,
            adapters={"primary": self.adapter}, sleep=lambda s: None,
        )
        self.addCleanup(self.engine.shutdown)


class EngineLifecycleTest(EngineTestCase):

    def test_login_warms_cache_and_generates_objectives(self):
        """Test that login caches the narrative and schedules objective generation."""
        self.adapter.push(envelope({"objectives": ["Ask about SAT plans"]}))
        run = self.engine.on_login("s1").result(timeout=5)
        self.assertIn("Alex", self.engine.cache.get("s1"))
        self.assertTrue(run.used_model)
        self.assertEqual([o.text for o in self.engine.objectives_for("s1")], ["Ask about SAT plans"])

    def test_login_failure_does_not_raise(self):
        """Test that a failed objective job still resolves and falls back."""
        self.adapter.push(ProviderError("401", "primary", retryable=False))
        run = self.engine.on_login("s1").result(timeout=5)
        self.assertFalse(run.used_model)
        self.assertTrue(self.engine.objectives_for("s1"))

    def test_end_conversation_summarizes_then_plans(self):
        """Test that ending a conversation folds the summary and refreshes objectives."""
        self.adapter.push(text("Hi Alex!"))
        self.engine.chat("s1", "hello")
        self.adapter.push(
            envelope({"digest": "Alex said hello."}),
            envelope({"objectives": ["Learn their GPA"]}),
        )
        run = self.engine.end_conversation("s1").result(timeout=5)
        summary = self.conversations.get_summary("s1")
        self.assertEqual(summary.turns, [])
        self.assertIn("Alex said hello.", summary.digest)
        self.assertEqual(run.objectives[0].text, "Learn their GPA")
        self.assertEqual(run.objectives[0].status, ObjectiveStatus.PENDING)
        self.assertIn("hello", self.adapter.requests[1].messages[0]["content"])

    def test_tier_passed_to_routes(self):
        """Test that the entitlement tier selects the tiered route."""
        gate = UsageLimitGate(tiers={"s1": "paid"})
        other = ScriptedAdapter("other", [text("premium reply")])
        self.cfg.routes["counselor:paid"] = RoleRoute(role="counselor", vendors=["other"])
        engine = CounselorEngine(
            self.cfg, self.profiles, self.conversations, gate, self.logger,
            adapters={"primary": self.adapter, "other": other}, sleep=lambda s: None,
        )
        self.addCleanup(engine.shutdown)
        outcome = engine.chat("s1", "hello")
        self.assertEqual(outcome.reply, "premium reply")
        self.assertEqual(outcome.tier, "paid")
        self.assertEqual(self.adapter.calls, 0)

    def test_build_engine_defaults(self):
        """Test that build_engine supplies in-memory stores and a usage gate."""
        engine = build_engine(self.cfg, adapters={"primary": self.adapter})
        self.addCleanup(engine.shutdown)
        self.assertIsInstance(engine.profile_store, InMemoryProfileStore)
        self.assertIsInstance(engine.entitlement, UsageLimitGate)
        self.assertEqual(engine.logger.log_dir, self.cfg.log_dir)


class MessageExtractionTest(EngineTestCase):

    def test_parse_message_returns_tools_without_executing(self):
        """Test that extraction proposes tool calls but writes nothing."""
        self.adapter.push(envelope({
            "entities": [{"type": "gpa", "value": "3.9"}],
            "intents": ["share_gpa"],
            "tools": [{"name": "save_gpa", "args": {"gpa_unweighted": 3.9}}],
            "acknowledgment": "A 3.9, nice!",
            "confidence": 0.8,
        }))
        result = self.engine.parse_message("s1", "My GPA is 3.9")
        self.assertTrue(result.parsed)
        self.assertEqual([c.name for c in result.calls], ["save_gpa"])
        self.assertEqual(result.acknowledgment, "A 3.9, nice!")
        self.assertEqual(result.confidence, 0.8)
        self.assertNotIn("academics", self.profiles.get_profile("s1"))
        self.assertIn("Alex", self.adapter.requests[0].messages[0]["content"])
        self.assertEqual(result.to_dict()["tools"][0]["args"], {"gpa_unweighted": 3.9})

    def test_skips_chatter_outside_onboarding(self):
        """Test that short chatter is not sent to the parser role."""
        result = self.engine.parse_message("s1", "ok thanks", EntryMode.GENERAL)
        self.assertFalse(result.parsed)
        self.assertEqual(self.adapter.calls, 0)

    def test_malformed_reply_reports_reason(self):
        """Test that a non-JSON parser reply is reported, not raised."""
        self.adapter.push(text("You have a 3.9 GPA."))
        result = self.engine.parse_message("s1", "My GPA is 3.9")
        self.assertFalse(result.parsed)
        self.assertTrue(result.error)

    def test_provider_failure_reports_error(self):
        """Test that a provider failure is captured on the result and logged."""
        self.adapter.push(ProviderError("401", "primary", retryable=False))
        result = self.engine.parse_message("s1", "My GPA is 3.9")
        self.assertFalse(result.parsed)
        self.assertEqual(len(self.logger.read("extraction_failed")), 1)


class ShouldParseTest(unittest.TestCase):

    def test_onboarding_always_parses(self):
        """Test that onboarding parses even very short answers."""
        self.assertTrue(should_parse("junior", EntryMode.ONBOARDING))

    def test_short_chatter_skipped(self):
        """Test that short messages without digits are skipped."""
        self.assertFalse(should_parse("ok cool"))

    def test_keywords_and_patterns(self):
        """Test keyword and score-pattern matches."""
        self.assertTrue(should_parse("I got a 1480 on my last try"))
        self.assertTrue(should_parse("I'm captain of the debate team"))
        self.assertFalse(should_parse("what should I think about next?"))
