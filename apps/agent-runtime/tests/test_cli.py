import io
import json
import os
import pathlib
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest import mock

import fakes

from defi_agent import cli
from defi_agent.actions import STATUS_COMPLETED
from defi_agent.builder import ActionBuilder
from defi_agent.providers.bungee import BungeeClient
from defi_agent.providers.lifi import LiFiClient
from defi_agent.providers.oneinch import OneInchClient
from defi_agent.providers.taikoswap import TaikoSwapClient
from defi_agent.settings import Settings
from defi_agent.store import ActionStore

PRIVATE_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
APPROVAL_PLAN = [
    "approvals",
    "plan",
    "--chain",
    "ethereum",
    "--asset",
    "USDC",
    "--amount",
    "100",
    "--spender",
    fakes.OTHER,
    "--from-address",
    fakes.SENDER,
]


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        base = pathlib.Path(self.tmp.name)
        settings = Settings(app_dir=base, actions_path=base / "actions.json", actions_lock_path=base / "actions.lock")
        self.rpc = fakes.FakeRpc()
        self.http = fakes.FakeHttp()
        self.signer = fakes.FakeSigner()
        builder = ActionBuilder(
            self.rpc,
            swap_providers={"taikoswap": TaikoSwapClient(self.rpc), "1inch": OneInchClient("", http=self.http)},
            bridge_providers={"lifi": LiFiClient(self.rpc, http=self.http), "bungee": BungeeClient(http=self.http)},
            http=self.http,
        )
        self.store = ActionStore(settings.actions_path, settings.actions_lock_path)
        self.runtime = cli.Runtime(
            settings=settings,
            rpc=self.rpc,
            store=self.store,
            builder=builder,
            signer_factory=lambda rpc, key_source, private_key: self.signer,
        )

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _run(self, argv: list[str]) -> tuple[int, dict]:
        buf = io.StringIO()
        with redirect_stdout(buf):
            code = cli.main(argv, runtime=self.runtime)
        self.assertIsInstance(code, int)
        raw = buf.getvalue().strip()
        self.assertTrue(raw, "expected JSON on stdout")
        self.assertEqual(len(raw.splitlines()), 1)
        return code, json.loads(raw)

    def test_plan_persists_action(self) -> None:
        code, payload = self._run(APPROVAL_PLAN)
        self.assertEqual(code, 0)
        self.assertTrue(payload["ok"])
        action = payload["action"]
        self.assertEqual(action["intent_type"], "approve")
        self.assertEqual(action["status"], "planned")
        self.assertEqual(self.store.get(action["action_id"]).input_amount, "100")

    def test_plan_then_submit_then_status(self) -> None:
        _, planned = self._run(APPROVAL_PLAN)
        action_id = planned["action"]["action_id"]

        code, submitted = self._run(["approvals", "submit", "--action-id", action_id])
        self.assertEqual(code, 0)
        self.assertEqual(submitted["action"]["status"], STATUS_COMPLETED)
        self.assertEqual(submitted["action"]["steps"][0]["tx_hash"], fakes.TX_HASH)

        code, again = self._run(["approvals", "submit", "--action-id", action_id])
        self.assertEqual(code, 0)
        self.assertEqual(again["warnings"], ["action already completed"])
        self.assertEqual(len(self.signer.sent), 1)

        code, status = self._run(["approvals", "status", "--action-id", action_id])
        self.assertEqual(status["action"]["status"], STATUS_COMPLETED)

    def test_status_rejects_other_intent(self) -> None:
        _, planned = self._run(APPROVAL_PLAN)
        code, payload = self._run(["swap", "status", "--action-id", planned["action"]["action_id"]])
        self.assertEqual(code, 2)
        self.assertEqual(payload["code"], "usage")
        self.assertIn("not a swap intent", payload["message"])

    def test_submit_with_other_signer_fails(self) -> None:
        _, planned = self._run(APPROVAL_PLAN)
        self.signer._address = fakes.OTHER
        code, payload = self._run(["approvals", "submit", "--action-id", planned["action"]["action_id"]])
        self.assertEqual(code, 17)
        self.assertEqual(payload["message"], "signer address does not match planned action sender")

    def test_run_uses_signer_as_sender(self) -> None:
        argv = [arg for arg in APPROVAL_PLAN if arg not in ("--from-address", fakes.SENDER)]
        argv[1] = "run"
        code, payload = self._run(argv)
        self.assertEqual(code, 0)
        self.assertEqual(payload["action"]["from_address"], fakes.SENDER)
        self.assertEqual(payload["action"]["status"], STATUS_COMPLETED)

    def test_run_rejects_mismatched_from_address(self) -> None:
        argv = list(APPROVAL_PLAN)
        argv[1] = "run"
        argv[argv.index(fakes.SENDER)] = fakes.OTHER
        argv[argv.index("--spender") + 1] = fakes.POOL
        code, payload = self._run(argv)
        self.assertEqual(code, 17)
        self.assertEqual(payload["code"], "signer")
        self.assertEqual(self.store.list(), [])

    def test_execution_failure_reports_action_id(self) -> None:
        self.rpc.receipt_status = "0x0"
        _, planned = self._run(APPROVAL_PLAN)
        action_id = planned["action"]["action_id"]
        code, payload = self._run(["approvals", "submit", "--action-id", action_id])
        self.assertEqual(code, 12)
        self.assertEqual(payload["details"]["actionId"], action_id)
        self.assertEqual(self.store.get(action_id).status, "failed")

    def test_unknown_action_is_usage_with_hint(self) -> None:
        code, payload = self._run(["actions", "show", "--action-id", "act_missing"])
        self.assertEqual(code, 2)
        self.assertIn("actionHint", payload)
        self.assertFalse(self.store.path.exists())

    def test_submit_unknown_action_leaves_store_untouched(self) -> None:
        code, payload = self._run(["approvals", "submit", "--action-id", "act_missing"])
        self.assertEqual(code, 2)
        self.assertEqual(payload["code"], "usage")
        self.assertFalse(self.store.path.exists())
        self.assertEqual(self.signer.sent, [])
        self.assertEqual(self.rpc.calls, [])

    def test_actions_list_and_estimate(self) -> None:
        _, planned = self._run(APPROVAL_PLAN)
        code, listed = self._run(["actions", "list", "--status", "planned"])
        self.assertEqual(code, 0)
        self.assertEqual(listed["count"], 1)

        code, estimated = self._run(["actions", "estimate", "--action-id", planned["action"]["action_id"]])
        self.assertEqual(code, 0)
        step = estimated["estimate"]["steps"][0]
        self.assertEqual(step["gas_limit"], "120000")
        self.assertEqual(estimated["estimate"]["totals_by_chain"][0]["chain_id"], "eip155:1")

    def test_unsupported_lend_protocol(self) -> None:
        code, payload = self._run(
            [
                "lend", "supply", "plan", "--protocol", "compound", "--chain", "ethereum", "--asset", "USDC",
                "--amount-decimal", "1.5", "--from-address", fakes.SENDER,
            ]
        )
        self.assertEqual(code, 13)
        self.assertEqual(payload["code"], "unsupported")

    def test_aave_supply_plan(self) -> None:
        code, payload = self._run(
            [
                "lend", "supply", "plan", "--protocol", "aave-v3", "--chain", "ethereum", "--asset", "USDC",
                "--amount-decimal", "1.5", "--from-address", fakes.SENDER,
            ]
        )
        self.assertEqual(code, 0)
        self.assertEqual(payload["action"]["intent_type"], "lend_supply")
        self.assertEqual(payload["action"]["input_amount"], "1500000")

    def test_bridge_address_asset_requires_to_asset(self) -> None:
        code, payload = self._run(
            [
                "bridge", "quote", "--provider", "lifi", "--from", "base", "--to", "arbitrum",
                "--asset", "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913", "--amount", "1000",
            ]
        )
        self.assertEqual(code, 2)
        self.assertIn("--to-asset", payload["message"])

    def test_bridge_plan_with_quote_only_provider(self) -> None:
        code, payload = self._run(
            [
                "bridge", "plan", "--provider", "bungee", "--from", "base", "--to", "arbitrum",
                "--asset", "USDC", "--amount", "1000", "--from-address", fakes.SENDER,
            ]
        )
        self.assertEqual(code, 13)
        self.assertIn("quote-only", payload["message"])

    def test_swap_quote(self) -> None:
        self.rpc.quotes = {3000: "5000\n0\n1\n100"}
        code, payload = self._run(
            ["swap", "quote", "--provider", "taikoswap", "--chain", "taiko", "--from-asset", "USDC", "--to-asset", "WETH", "--amount", "10"]
        )
        self.assertEqual(code, 0)
        self.assertEqual(payload["quote"]["estimated_out"]["amount_base_units"], "5000")

    def test_chains_and_providers_list(self) -> None:
        _, chains = self._run(["chains", "list"])
        self.assertIn("eip155:8453", [row["caip2"] for row in chains["chains"]])
        _, providers = self._run(["providers", "list"])
        self.assertEqual({row["name"] for row in providers["providers"]}, {"taikoswap", "1inch", "lifi", "bungee"})

    def test_wallet_import_refuses_overwrite(self) -> None:
        path = pathlib.Path(self.tmp.name) / "keystore.json"
        env = {"DEFI_WALLET_IMPORT_PRIVATE_KEY": PRIVATE_KEY, "DEFI_KEYSTORE_PASSWORD": "pw"}
        with mock.patch.dict(os.environ, env):
            code, payload = self._run(["wallet", "import", "--keystore-path", str(path)])
            self.assertEqual(code, 0)
            self.assertEqual(payload["address"], "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23")

            code, payload = self._run(["wallet", "import", "--keystore-path", str(path)])
            self.assertEqual(code, 2)
            self.assertEqual(payload["details"]["keystorePath"], str(path))

    def test_unexpected_exception_is_internal(self) -> None:
        with mock.patch.object(cli, "cmd_chains_list", side_effect=RuntimeError("boom")):
            code, payload = self._run(["chains", "list"])
        self.assertEqual(code, 1)
        self.assertEqual(payload["code"], "internal")

    def test_missing_command_prints_help(self) -> None:
        buf = io.StringIO()
        with redirect_stdout(buf):
            code = cli.main([], runtime=self.runtime)
        self.assertEqual(code, 2)
        self.assertIn("usage:", buf.getvalue())


if __name__ == "__main__":
    unittest.main()
