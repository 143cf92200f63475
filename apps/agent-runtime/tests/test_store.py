import json
import os
import pathlib
import tempfile
import unittest

import fakes  # noqa: F401

from defi_agent.actions import STATUS_COMPLETED, ActionStep, Constraints, new_action
from defi_agent.errors import ActionNotFound, DefiError
from defi_agent.store import ActionStore


def _action(intent: str = "approve"):
    action = new_action(intent, "native", "eip155:1", Constraints(simulate=True))
    action.from_address = fakes.SENDER
    action.input_amount = "100"
    action.steps.append(
        ActionStep(step_id="approve-token", type="approval", chain_id="eip155:1", target=fakes.OTHER, data="0x")
    )
    return action


class ActionStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = pathlib.Path(self.tmp.name) / "state" / "actions.json"
        self.store = ActionStore(self.path)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_save_then_get_round_trips_action(self) -> None:
        action = _action()
        self.store.save(action)
        loaded = self.store.get(action.action_id)
        self.assertEqual(loaded.to_dict(), action.to_dict())

        doc = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(doc["version"], 1)
        self.assertIn(action.action_id, doc["actions"])
        if os.name != "nt":
            self.assertEqual(self.path.stat().st_mode & 0o777, 0o600)

    def test_missing_action_raises_not_found(self) -> None:
        with self.assertRaises(ActionNotFound) as ctx:
            self.store.get("act_missing")
        self.assertEqual(ctx.exception.details["actionId"], "act_missing")

    def test_list_filters_by_status_and_orders_newest_first(self) -> None:
        first = _action()
        first.updated_at = "2026-01-01T00:00:00.000000Z"
        second = _action("swap")
        second.updated_at = "2026-01-02T00:00:00.000000Z"
        second.status = STATUS_COMPLETED
        self.store.save(first)
        self.store.save(second)

        ids = [action.action_id for action in self.store.list()]
        self.assertEqual(ids, [second.action_id, first.action_id])
        completed = self.store.list(status="completed")
        self.assertEqual([action.action_id for action in completed], [second.action_id])
        self.assertEqual(len(self.store.list(limit=1)), 1)

    def test_non_positive_limit_falls_back_to_twenty(self) -> None:
        for index in range(25):
            action = _action()
            action.updated_at = f"2026-01-01T00:00:{index:02d}.000000Z"
            self.store.save(action)
        self.assertEqual(len(self.store.list(limit=0)), 20)
        self.assertEqual(len(self.store.list(limit=-3)), 20)
        self.assertEqual(len(self.store.list(limit=25)), 25)

    def test_save_overwrites_same_id(self) -> None:
        action = _action()
        self.store.save(action)
        action.status = STATUS_COMPLETED
        self.store.save(action)
        self.assertEqual(self.store.get(action.action_id).status, STATUS_COMPLETED)
        self.assertEqual(len(self.store.list()), 1)

    def test_corrupt_store_is_reported(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("[]", encoding="utf-8")
        with self.assertRaises(DefiError):
            self.store.list()


if __name__ == "__main__":
    unittest.main()
