"""In-memory stand-ins for the cast client, signer and HTTP layer."""

from __future__ import annotations

import pathlib
import sys
from typing import Any

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(RUNTIME_ROOT) not in sys.path:
    sys.path.insert(0, str(RUNTIME_ROOT))

from defi_agent.errors import unavailable  # noqa: E402
from defi_agent.policy import APPROVE_SIGNATURE, selector  # noqa: E402

SENDER = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"
POOL = "0x87870Bca3F3fD6335C3F4ce8392D69350B4fA4E2"
TX_HASH = "0x" + "ab" * 32


def _word(value: str | int) -> str:
    if isinstance(value, int):
        return format(value, "064x")
    return value.lower().removeprefix("0x").rjust(64, "0")


class FakeRpc:
    """Answers the CastClient surface from fixed values and records every call."""

    def __init__(
        self,
        chain_id: int = 1,
        allowance: int = 0,
        address: str = POOL,
        quotes: dict[int, str] | None = None,
        receipt_status: str = "0x1",
    ):
        self.live_chain_id = chain_id
        self.allowance_value = allowance
        self.address_value = address
        self.quotes = quotes or {}
        self.receipt_status = receipt_status
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.simulate_error: Exception | None = None
        self.base_fee_value = 10 * 10**9
        self.base_fee_error: Exception | None = None
        self.sent: list[dict[str, Any]] = []

    def calldata(self, signature: str, args: list[str]) -> str:
        self.calls.append(("calldata", (signature, tuple(args))))
        if signature == APPROVE_SIGNATURE:
            return selector(signature) + _word(args[0]) + _word(int(args[1]))
        return selector(signature) + "ab" * 32

    def call(self, rpc_url: str, to: str, signature: str, args: list[str] | None = None) -> str:
        self.calls.append(("call", (rpc_url, to, signature, tuple(args or []))))
        params = (args or [""])[0]
        fee = int(params.strip("()").split(",")[3]) if params.count(",") >= 4 else 0
        if fee not in self.quotes:
            raise unavailable("execution reverted")
        return self.quotes[fee]

    def call_address(self, rpc_url: str, to: str, signature: str, args: list[str] | None = None) -> str:
        self.calls.append(("call_address", (rpc_url, to, signature)))
        return self.address_value

    def allowance(self, rpc_url: str, token: str, owner: str, spender: str) -> int:
        self.calls.append(("allowance", (token, owner, spender)))
        return self.allowance_value

    def chain_id(self, rpc_url: str) -> int:
        self.calls.append(("chain_id", (rpc_url,)))
        return self.live_chain_id

    def simulate(self, rpc_url: str, from_address: str, to: str, data: str, value: int = 0) -> str:
        self.calls.append(("simulate", (to, data)))
        if self.simulate_error is not None:
            raise self.simulate_error
        return "0x"

    def estimate_gas(self, rpc_url, from_address, to, data, value=0, block=None) -> int:
        self.calls.append(("estimate_gas", (to, data, block)))
        return 100_000

    def base_fee(self, rpc_url: str, block: str = "latest") -> int:
        self.calls.append(("base_fee", (block,)))
        if self.base_fee_error is not None:
            raise self.base_fee_error
        return self.base_fee_value

    def max_priority_fee(self, rpc_url: str) -> int:
        self.calls.append(("max_priority_fee", (rpc_url,)))
        return 1 * 10**9

    def nonce(self, rpc_url: str, address: str, block: str = "pending") -> int:
        self.calls.append(("nonce", (address, block)))
        return 7

    def receipt(self, rpc_url: str, tx_hash: str) -> dict[str, Any] | None:
        self.calls.append(("receipt", (tx_hash,)))
        return {"status": self.receipt_status, "transactionHash": tx_hash}


class FakeSigner:
    def __init__(self, address: str = SENDER, tx_hash: str = TX_HASH):
        self._address = address
        self.tx_hash = tx_hash
        self.sent: list[dict[str, Any]] = []

    def address(self) -> str:
        return self._address

    def send_transaction(self, rpc_url: str, tx: dict[str, Any]) -> str:
        self.sent.append(dict(tx))
        return self.tx_hash


class FakeHttp:
    """Returns queued JSON bodies and records each request."""

    def __init__(self, *responses: dict[str, Any]):
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def __call__(self, method: str, url: str, payload=None, headers=None, query=None, timeout: int = 20) -> dict[str, Any]:
        self.requests.append({"method": method, "url": url, "payload": payload, "headers": headers, "query": query})
        if not self.responses:
            raise AssertionError(f"unexpected request {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response
