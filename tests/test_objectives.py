"""
Tests for objective merging, deadline surfacing and the background generator.
"""

import threading
import unittest
from datetime import date

from counselor.errors import ProviderError
from counselor.locks import StudentLocks
from counselor.models import CounselorObjective, Goal, ObjectiveStatus, Task
from counselor.objectives import (
    TRIGGER_CONVERSATION_END,
    TRIGGER_LOGIN,
    ObjectiveGenerator,
    ObjectiveScheduler,
    heuristic_objectives,
    merge_objectives,
    upcoming_deadlines,
)
from counselor.parser import OutputParser
from counselor.providers import ModelGateway
from counselor.store import InMemoryConversationStore, InMemoryProfileStore
from counselor.tools import default_registry

from fakes import ScriptedAdapter, envelope, make_config, make_logger, text


class MergeObjectivesTest(unittest.TestCase):

    def test_reaffirmed_kept_missing_dropped_new_added(self):
        """Test the merge rules: keep re-affirmed, drop the rest, add new, preserve history."""
        existing = [
            CounselorObjective(id="obj_keep", text="Ask about SAT plans", created_at="2026-10-01T00:00:00"),
            CounselorObjective(id="obj_drop", text="Discuss summer programs"),
            CounselorObjective(id="obj_done", text="Learn their name", status=ObjectiveStatus.ADDRESSED),
        ]
        merged, added, kept, dropped = merge_objectives(existing, ["ask about SAT plans.", "Review the school list"], TRIGGER_LOGIN)
        by_id = {o.id: o for o in merged}
        self.assertEqual(kept, ["obj_keep"])
        self.assertEqual(dropped, ["obj_drop"])
        self.assertEqual(len(added), 1)
        self.assertEqual(by_id["obj_keep"].status, ObjectiveStatus.PENDING)
        self.assertEqual(by_id["obj_keep"].created_at, "2026-10-01T00:00:00")
        self.assertEqual(by_id["obj_drop"].status, ObjectiveStatus.DROPPED)
        self.assertEqual(by_id["obj_done"].status, ObjectiveStatus.ADDRESSED)
        self.assertEqual(by_id[added[0]].text, "Review the school list")
        self.assertEqual(by_id[added[0]].source, TRIGGER_LOGIN)
        self.assertEqual(len(merged), 4)

    def test_limit_and_dedup(self):
        """Test that duplicates collapse and the list is capped."""
        merged, added, _, _ = merge_objectives([], ["A", "a", "B", "C", "D", "E"], TRIGGER_LOGIN, limit=3)
        self.assertEqual([o.text for o in merged], ["A", "B", "C"])
        self.assertEqual(len(added), 3)


class DeadlineTest(unittest.TestCase):

    def test_labels_and_order(self):
        """Test that dated goals and tasks are labelled by urgency, soonest first."""
        goals = [
            Goal(id="g1", student_id="s", title="Early apps", target_date="2026-11-01",
                 tasks=[Task(id="t1", goal_id="g1", title="Draft essay", due_date="2026-10-20")]),
            Goal(id="g2", student_id="s", title="Old", target_date="2026-10-01"),
            Goal(id="g3", student_id="s", title="Far", target_date="2027-06-01"),
            Goal(id="g4", student_id="s", title="Done", target_date="2026-10-19", status="completed"),
        ]
        lines = upcoming_deadlines(goals, date(2026, 10, 18))
        self.assertEqual(len(lines), 3)
        self.assertIn("[overdue] goal 'Old'", lines[0])
        self.assertIn("[urgent] task 'Draft essay'", lines[1])
        self.assertIn("[soon] goal 'Early apps'", lines[2])


class HeuristicObjectivesTest(unittest.TestCase):

    def test_new_student(self):
        """Test the welcome objectives for a student without a profile."""
        self.assertIn("Welcome them warmly and learn their name", heuristic_objectives(None, []))

    def test_profile_gaps(self):
        """Test that missing profile areas become objectives."""
        out = heuristic_objectives({"academics": {"gpa_unweighted": 3.8}}, [])
        self.assertNotIn("Learn their GPA if it comes up naturally", out)
        self.assertIn("Find out about standardized testing plans", out)


class ObjectiveGeneratorTest(unittest.TestCase):

    def setUp(self):
        self.cfg = make_config(["primary"])
        self.logger = make_logger(self.cfg)
        self.profiles = InMemoryProfileStore({"s1": {"first_name": "Alex", "academics": {"gpa_unweighted": 3.8}}})
        self.conversations = InMemoryConversationStore()
        self.locks = StudentLocks()

    def _generator(self, adapter):
        gateway = ModelGateway(self.cfg, self.logger, adapters={"primary": adapter}, sleep=lambda s: None)
        return ObjectiveGenerator(
            self.profiles, self.conversations, gateway, OutputParser(default_registry(), self.logger),
            self.locks, self.logger, max_objectives=4, today=lambda: date(2026, 10, 18),
        )

    def test_generates_from_model(self):
        """Test that model objectives are merged and stored."""
        adapter = ScriptedAdapter("primary", [envelope({"objectives": ["Ask about SAT plans", "Explore summer programs"]})])
        run = self._generator(adapter).generate("s1", TRIGGER_LOGIN)
        self.assertTrue(run.used_model)
        stored = self.conversations.get_objectives("s1")
        self.assertEqual([o.text for o in stored], ["Ask about SAT plans", "Explore summer programs"])
        self.assertIn("Alex", adapter.requests[0].messages[0]["content"])
        self.assertEqual(len(self.logger.read("objectives_generated")), 1)

    def test_uses_objectives_route(self):
        """Test that generation goes through the objectives role route."""
        adapter = ScriptedAdapter("primary", [envelope({"objectives": ["x"]})])
        self.cfg.routes["objectives"].models = {"primary": "cheap-model"}
        self._generator(adapter).generate("s1", TRIGGER_LOGIN)
        self.assertEqual(adapter.requests[0].model, "cheap-model")

    def test_failure_keeps_existing_pending(self):
        """Test that a provider failure leaves existing pending objectives untouched."""
        self.conversations.save_objectives("s1", [CounselorObjective(id="obj_1", text="Ask about SAT plans")])
        adapter = ScriptedAdapter("primary", [ProviderError("401", "primary", retryable=False)])
        run = self._generator(adapter).generate("s1", TRIGGER_CONVERSATION_END)
        self.assertFalse(run.used_model)
        self.assertIsNotNone(run.error)
        stored = self.conversations.get_objectives("s1")
        self.assertEqual([(o.id, o.status) for o in stored], [("obj_1", ObjectiveStatus.PENDING)])

    def test_failure_without_pending_uses_heuristics(self):
        """Test that a malformed reply with nothing pending falls back to profile-gap objectives."""
        adapter = ScriptedAdapter("primary", [text("Just talk to them!")])
        run = self._generator(adapter).generate("s1", TRIGGER_LOGIN)
        self.assertFalse(run.used_model)
        texts = [o.text for o in self.conversations.get_objectives("s1")]
        self.assertIn("Find out about standardized testing plans", texts)

    def test_waits_for_in_flight_turn(self):
        """Test that generation blocks on the student's section instead of failing."""
        adapter = ScriptedAdapter("primary", [envelope({"objectives": ["x"]})])
        generator = self._generator(adapter)
        done = threading.Event()

        def run():
            generator.generate("s1", TRIGGER_LOGIN)
            done.set()

        with self.locks.section("s1"):
            worker = threading.Thread(target=run)
            worker.start()
            self.assertFalse(done.wait(0.2))
            self.assertEqual(adapter.calls, 0)
        worker.join(5)
        self.assertTrue(done.is_set())
        self.assertEqual(len(self.conversations.get_objectives("s1")), 1)


class ObjectiveSchedulerTest(unittest.TestCase):

    def test_job_errors_are_logged_not_raised(self):
        """Test that a failing job resolves to None and logs job_failed."""
        logger = make_logger(make_config())
        scheduler = ObjectiveScheduler(logger, max_workers=1)

        def job():
            raise ProviderError("boom", "primary")

        try:
            self.assertIsNone(scheduler.submit("explode", job).result(timeout=5))
        finally:
            scheduler.shutdown()
        self.assertEqual(logger.read("job_failed")[0]["job"], "explode")
