import io
import json
import pathlib
import subprocess
import unittest
import urllib.error
from unittest import mock

import fakes

from defi_agent import net, rpc
from defi_agent.errors import DefiError, ErrorCode, SubprocessTimeout
from defi_agent.settings import Settings


def _client() -> rpc.CastClient:
    base = pathlib.Path("/tmp/defi-agent-test")
    settings = Settings(app_dir=base, actions_path=base / "actions.json", actions_lock_path=base / "actions.json.lock")
    return rpc.CastClient(settings, cast_bin="cast")


class ParsingTests(unittest.TestCase):
    def test_parse_uint_text_handles_cast_output_forms(self) -> None:
        self.assertEqual(rpc.parse_uint_text("42"), 42)
        self.assertEqual(rpc.parse_uint_text("0x2a"), 42)
        self.assertEqual(rpc.parse_uint_text("20000000000000000000000 [2e22]"), 20000000000000000000000)
        with self.assertRaises(DefiError):
            rpc.parse_uint_text("nope")

    def test_extract_tx_hash_prefers_json_field(self) -> None:
        self.assertEqual(rpc.extract_tx_hash(json.dumps({"transactionHash": fakes.TX_HASH})), fakes.TX_HASH)
        self.assertEqual(rpc.extract_tx_hash("sent " + fakes.TX_HASH), fakes.TX_HASH)
        with self.assertRaises(DefiError):
            rpc.extract_tx_hash("")

    def test_receipt_status(self) -> None:
        self.assertTrue(rpc.receipt_succeeded({"status": "0x1"}))
        self.assertFalse(rpc.receipt_succeeded({"status": "0x0"}))


class CastClientTests(unittest.TestCase):
    def test_allowance_runs_cast_call(self) -> None:
        commands: list[list[str]] = []

        def fake_run(cmd: list[str], text: bool = True, capture_output: bool = True, **kwargs):  # type: ignore[override]
            commands.append(cmd)
            if cmd[1] == "call":
                return mock.Mock(returncode=0, stdout="1000000 [1e6]\n", stderr="")
            raise AssertionError(f"Unexpected command {cmd}")

        with mock.patch.object(rpc.subprocess, "run", side_effect=fake_run):
            value = _client().allowance("https://rpc.example", fakes.OTHER, fakes.SENDER, fakes.POOL)

        self.assertEqual(value, 1_000_000)
        self.assertEqual(commands[0][:4], ["cast", "call", fakes.OTHER, "allowance(address,address)(uint256)"])
        self.assertEqual(commands[0][-2:], ["--rpc-url", "https://rpc.example"])

    def test_send_transaction_builds_eip1559_command(self) -> None:
        commands: list[list[str]] = []

        def fake_run(cmd: list[str], text: bool = True, capture_output: bool = True, **kwargs):  # type: ignore[override]
            commands.append(cmd)
            return mock.Mock(returncode=0, stdout=json.dumps({"transactionHash": fakes.TX_HASH}), stderr="")

        tx = {
            "from": fakes.SENDER,
            "to": fakes.OTHER,
            "data": "0xdeadbeef",
            "value": 0,
            "nonce": 3,
            "gas": 21000,
            "maxFeePerGas": 30,
            "maxPriorityFeePerGas": 2,
        }
        with mock.patch.object(rpc.subprocess, "run", side_effect=fake_run):
            tx_hash = _client().send_transaction("https://rpc.example", "0x" + "11" * 32, tx)

        self.assertEqual(tx_hash, fakes.TX_HASH)
        cmd = commands[0]
        self.assertEqual(cmd[1], "send")
        self.assertIn("--priority-gas-price", cmd)
        self.assertEqual(cmd[cmd.index("--nonce") + 1], "3")
        self.assertEqual(cmd[-2:], [fakes.OTHER, "0xdeadbeef"])

    def test_failed_call_surfaces_stderr(self) -> None:
        with mock.patch.object(
            rpc.subprocess, "run", return_value=mock.Mock(returncode=1, stdout="", stderr="execution reverted")
        ):
            with self.assertRaises(DefiError) as ctx:
                _client().call_uint("https://rpc.example", fakes.OTHER, "totalSupply()(uint256)")
        self.assertEqual(ctx.exception.code, ErrorCode.UNAVAILABLE)
        self.assertIn("execution reverted", str(ctx.exception))

    def test_timeout_does_not_leak_command_line(self) -> None:
        with mock.patch.object(
            rpc.subprocess, "run", side_effect=subprocess.TimeoutExpired(cmd=["cast", "send"], timeout=30)
        ):
            with self.assertRaises(SubprocessTimeout) as ctx:
                _client().send_transaction(
                    "https://rpc.example",
                    "0x" + "11" * 32,
                    {"from": fakes.SENDER, "to": fakes.OTHER, "nonce": 0, "gas": 1, "maxFeePerGas": 1, "maxPriorityFeePerGas": 1},
                )
        self.assertNotIn("11" * 32, str(ctx.exception))

    def test_receipt_not_found_is_pending(self) -> None:
        with mock.patch.object(
            rpc.subprocess, "run", return_value=mock.Mock(returncode=1, stdout="", stderr="transaction not found")
        ):
            self.assertIsNone(_client().receipt("https://rpc.example", fakes.TX_HASH))


class HttpTests(unittest.TestCase):
    def _http_error(self, status: int, body: str) -> urllib.error.HTTPError:
        return urllib.error.HTTPError("https://api.example/x", status, "err", {}, io.BytesIO(body.encode("utf-8")))

    def test_status_codes_map_to_error_codes(self) -> None:
        for status, code in ((401, ErrorCode.AUTH), (429, ErrorCode.RATE_LIMITED), (500, ErrorCode.UNAVAILABLE)):
            with mock.patch.object(net.urllib.request, "urlopen", side_effect=self._http_error(status, '{"message":"x"}')):
                with self.assertRaises(DefiError) as ctx:
                    net.http_json_request("GET", "https://api.example/x")
            self.assertEqual(ctx.exception.code, code)
            self.assertEqual(ctx.exception.details["host"], "api.example")

    def test_query_is_encoded_without_empty_values(self) -> None:
        response = mock.MagicMock()
        response.__enter__.return_value.read.return_value = b'{"ok": true}'
        with mock.patch.object(net.urllib.request, "urlopen", return_value=response) as urlopen:
            body = net.http_json_request("GET", "https://api.example/q", query={"a": "1", "b": "", "c": None})
        self.assertEqual(body, {"ok": True})
        self.assertEqual(urlopen.call_args.args[0].full_url, "https://api.example/q?a=1")


if __name__ == "__main__":
    unittest.main()
