"""
Unit tests for execution state persistence.
"""

import json
import tempfile
import unittest
from pathlib import Path

from persistence.execution_state import (
    ExecutionState,
    ExecutionStatus,
    InMemoryExecutionStateStore,
    JSONExecutionStateStore,
)


class StateStoreContract:
    """Behaviour shared by every store implementation."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_create_and_get(self):
        """A created state can be read back."""
        state = self.store.create_state("quote", {"input": {"a": 1}, "vars": {}})
        loaded = self.store.get_state(state.id)
        self.assertEqual(loaded.flow_key, "quote")
        self.assertEqual(loaded.status, ExecutionStatus.RUNNING)
        self.assertEqual(loaded.context_snapshot["input"], {"a": 1})
        self.assertIsNone(loaded.last_completed_step_id)

    def test_explicit_id(self):
        """A caller-supplied id is kept."""
        state = self.store.create_state("quote", state_id="exec-1")
        self.assertEqual(state.id, "exec-1")
        self.assertIsNotNone(self.store.get_state("exec-1"))

    def test_checkpoint(self):
        """Checkpoints record the last completed step and snapshot."""
        state = self.store.create_state("quote")
        self.store.checkpoint(state.id, 0, "login", {"input": {}, "vars": {"t": 1}})
        self.store.checkpoint(state.id, 1, "subscriber")
        loaded = self.store.get_state(state.id)
        self.assertEqual(loaded.last_completed_step_id, "subscriber")
        self.assertEqual(loaded.current_step_index, 2)
        self.assertEqual(loaded.completed_steps, ["login", "subscriber"])
        self.assertEqual(loaded.context_snapshot["vars"], {"t": 1})

    def test_transitions(self):
        """Status transitions update the stored state."""
        state = self.store.create_state("quote")
        self.assertEqual(self.store.mark_paused(state.id).status, ExecutionStatus.PAUSED)
        self.assertIsNotNone(self.store.get_state(state.id).paused_at)
        self.assertEqual(self.store.mark_running(state.id).status, ExecutionStatus.RUNNING)
        failed = self.store.mark_failed(state.id, "boom")
        self.assertEqual(failed.status, ExecutionStatus.FAILED)
        self.assertEqual(failed.error, "boom")
        self.assertEqual(self.store.mark_completed(state.id).status, ExecutionStatus.COMPLETED)

    def test_update_unknown_state(self):
        """Updating an unknown id raises KeyError."""
        with self.assertRaises(KeyError):
            self.store.update_state("missing", status=ExecutionStatus.FAILED)

    def test_list_states(self):
        """States can be filtered by status and flow key."""
        a = self.store.create_state("quote")
        self.store.create_state("other")
        self.store.mark_paused(a.id)
        self.assertEqual(len(self.store.list_states()), 2)
        self.assertEqual([s.id for s in self.store.list_states(status="paused")], [a.id])
        self.assertEqual([s.flow_key for s in self.store.list_states(flow_key="other")], ["other"])

    def test_delete(self):
        """Deleting removes the state exactly once."""
        state = self.store.create_state("quote")
        self.assertTrue(self.store.delete_state(state.id))
        self.assertIsNone(self.store.get_state(state.id))
        self.assertFalse(self.store.delete_state(state.id))

    def test_returned_state_is_a_copy(self):
        """Mutating a returned state does not touch the store."""
        state = self.store.create_state("quote")
        state.completed_steps.append("tampered")
        self.assertEqual(self.store.get_state(state.id).completed_steps, [])


class TestInMemoryStore(StateStoreContract, unittest.TestCase):
    """Test the in-memory store."""

    def make_store(self):
        return InMemoryExecutionStateStore()


class TestJSONStore(StateStoreContract, unittest.TestCase):
    """Test the JSON file store."""

    def make_store(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        return JSONExecutionStateStore(Path(self.tmp.name) / "states")

    def test_one_file_per_execution(self):
        """Each execution is written to its own JSON file."""
        state = self.store.create_state("quote", {"input": {"a": 1}})
        path = Path(self.tmp.name) / "states" / f"{state.id}.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(data["flowKey"], "quote")
        self.assertEqual(data["status"], "running")
        self.assertEqual(data["contextSnapshot"], {"input": {"a": 1}})
        self.assertIn("lastCompletedStepId", data)

    def test_survives_new_instance(self):
        """States persist across store instances."""
        state = self.store.create_state("quote")
        self.store.mark_paused(state.id)
        reopened = JSONExecutionStateStore(Path(self.tmp.name) / "states")
        self.assertEqual(reopened.get_state(state.id).status, ExecutionStatus.PAUSED)

    def test_ignores_path_like_ids(self):
        """Ids containing path separators are never read or deleted."""
        self.assertIsNone(self.store.get_state("../escape"))
        self.assertFalse(self.store.delete_state("../escape"))


class TestExecutionStateDict(unittest.TestCase):
    """Test the camelCase dict form."""

    def test_round_trip(self):
        """to_dict and from_dict preserve every field."""
        state = ExecutionState(id="x", flow_key="f", completed_steps=["a"], last_completed_step_id="a")
        again = ExecutionState.from_dict(state.to_dict())
        self.assertEqual(again, state)


if __name__ == "__main__":
    unittest.main()
