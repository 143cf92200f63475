"""Drive a persisted action's steps to on-chain confirmation."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from . import net
from .actions import (
    STATUS_COMPLETED,
    STATUS_EXECUTING,
    STATUS_FAILED,
    STEP_BRIDGE,
    STEP_CONFIRMED,
    STEP_FAILED,
    STEP_SUBMITTED,
    Action,
    ActionStep,
)
from .errors import DefiError, ErrorCode, internal, unavailable, unsupported, usage
from .ids import BRIDGE_SETTLEMENT_URLS, same_address, to_checksum_address
from .policy import PolicyOptions, step_chain_id, validate_action_policy
from .rpc import CastClient, receipt_succeeded
from .signer import Signer
from .store import ActionStore

log = logging.getLogger(__name__)

GWEI = 10**9
FALLBACK_TIP_WEI = 2 * GWEI
FALLBACK_BASE_FEE_WEI = 1 * GWEI
LIFI_PENDING_CODES = {1003, 1011}

_DURATION_PART_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": Decimal("0.001"), "s": Decimal(1), "m": Decimal(60), "h": Decimal(3600)}


@dataclass
class ExecuteOptions:
    simulate: bool = True
    poll_interval: float = 2.0
    step_timeout: float = 120.0
    gas_multiplier: float = 1.2
    max_fee_gwei: str = ""
    max_priority_fee_gwei: str = ""
    allow_max_approval: bool = False
    unsafe_provider_tx: bool = False
    action_timeout: float | None = None

    def policy(self) -> PolicyOptions:
        return PolicyOptions(allow_max_approval=self.allow_max_approval, unsafe_provider_tx=self.unsafe_provider_tx)


def parse_duration(value: str, flag: str) -> float:
    """Parse durations like ``500ms``, ``2s``, ``2m`` or ``1m30s`` into seconds."""
    raw = (value or "").strip().lower()
    parts = _DURATION_PART_RE.findall(raw)
    if not raw or "".join(number + unit for number, unit in parts) != raw:
        raise usage(f"{flag} must be a duration like 2s or 2m", value=value)
    seconds = sum(Decimal(number) * _DURATION_UNITS[unit] for number, unit in parts)
    if seconds <= 0:
        raise usage(f"{flag} must be > 0")
    return float(seconds)


def parse_gwei(value: str, flag: str) -> int:
    clean = (value or "").strip()
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise usage(f"parse {flag}: invalid numeric value {value!r}") from exc
    if not amount.is_finite():
        raise usage(f"parse {flag}: invalid numeric value {value!r}")
    if amount < 0:
        raise usage(f"parse {flag}: value must be non-negative")
    wei = amount * GWEI
    if wei != wei.to_integral_value():
        raise usage(f"parse {flag}: value must resolve to an integer wei amount")
    return int(wei)


def build_execute_options(
    *,
    simulate: bool = True,
    poll_interval: str = "2s",
    step_timeout: str = "2m",
    gas_multiplier: float = 1.2,
    max_fee_gwei: str = "",
    max_priority_fee_gwei: str = "",
    allow_max_approval: bool = False,
    unsafe_provider_tx: bool = False,
    action_timeout: str = "",
) -> ExecuteOptions:
    if gas_multiplier <= 1:
        raise usage("--gas-multiplier must be > 1")
    if max_fee_gwei.strip():
        parse_gwei(max_fee_gwei, "--max-fee-gwei")
    if max_priority_fee_gwei.strip():
        parse_gwei(max_priority_fee_gwei, "--max-priority-fee-gwei")
    return ExecuteOptions(
        simulate=simulate,
        poll_interval=parse_duration(poll_interval, "--poll-interval"),
        step_timeout=parse_duration(step_timeout, "--step-timeout"),
        gas_multiplier=gas_multiplier,
        max_fee_gwei=max_fee_gwei.strip(),
        max_priority_fee_gwei=max_priority_fee_gwei.strip(),
        allow_max_approval=allow_max_approval,
        unsafe_provider_tx=unsafe_provider_tx,
        action_timeout=parse_duration(action_timeout, "--timeout") if action_timeout.strip() else None,
    )


def resolve_tip_cap(rpc: CastClient, rpc_url: str, override_gwei: str) -> int:
    if override_gwei.strip():
        return parse_gwei(override_gwei, "--max-priority-fee-gwei")
    try:
        return rpc.max_priority_fee(rpc_url)
    except DefiError as exc:
        log.warning("eth_maxPriorityFeePerGas unavailable, using 2 gwei tip: %s", exc)
        return FALLBACK_TIP_WEI


def resolve_base_fee(rpc: CastClient, rpc_url: str, block: str = "latest") -> int:
    try:
        base_fee = rpc.base_fee(rpc_url, block)
    except DefiError as exc:
        raise unavailable("fetch latest header") from exc
    if base_fee <= 0:
        # pre-London chains report no base fee
        log.info("no base fee at %s block, assuming 1 gwei", block)
        return FALLBACK_BASE_FEE_WEI
    return base_fee


def resolve_fee_cap(base_fee: int, tip_cap: int, override_gwei: str) -> int:
    if override_gwei.strip():
        fee_cap = parse_gwei(override_gwei, "--max-fee-gwei")
        if fee_cap < tip_cap:
            raise usage("--max-fee-gwei must be >= --max-priority-fee-gwei")
        return fee_cap
    return base_fee * 2 + tip_cap


def _mark_step_failed(action: Action, step: ActionStep, message: str) -> None:
    step.status = STEP_FAILED
    step.error = message
    action.status = STATUS_FAILED
    action.touch()


class _Deadline:
    def __init__(self, seconds: float | None):
        self.expires_at = time.monotonic() + seconds if seconds else None

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return self.expires_at - time.monotonic()

    def bound(self, seconds: float) -> float:
        remaining = self.remaining()
        return seconds if remaining is None else max(0.0, min(seconds, remaining))


def _query_lifi_status(endpoint: str, tx_hash: str, expected: dict[str, str], timeout: int) -> dict[str, Any] | None:
    query = {
        "txHash": tx_hash.strip().removeprefix("0x").removeprefix("0X"),
        "bridge": expected.get("settlement_bridge", "").strip(),
        "fromChain": expected.get("settlement_from_chain", "").strip(),
        "toChain": expected.get("settlement_to_chain", "").strip(),
    }
    try:
        body = net.http_json_request("GET", endpoint, query=query, timeout=timeout)
    except DefiError as exc:
        log.debug("lifi status lookup failed, still waiting: %s", exc)
        return None
    code = body.get("code")
    if code and not body.get("status"):
        if code in LIFI_PENDING_CODES:
            return None
        log.debug("lifi status returned code %s: %s", code, body.get("message"))
        return None
    return body


def _query_across_status(endpoint: str, tx_hash: str, expected: dict[str, str], timeout: int) -> dict[str, Any] | None:
    query = {
        "depositTxHash": tx_hash.strip(),
        "originChainId": expected.get("settlement_origin_chain", "").strip(),
        "recipient": expected.get("settlement_recipient", "").strip(),
    }
    try:
        body = net.http_json_request("GET", endpoint, query=query, timeout=timeout)
    except DefiError as exc:
        log.debug("across status lookup failed, still waiting: %s", exc)
        return None
    if str(body.get("error") or "").strip():
        return None
    return body


class Executor:
    """Runs one action against a signer, persisting after every transition."""

    def __init__(
        self,
        rpc: CastClient,
        signer: Signer,
        options: ExecuteOptions,
        store: ActionStore | None = None,
        http_timeout: int = 20,
    ):
        self.rpc = rpc
        self.signer = signer
        self.options = options
        self.store = store
        self.http_timeout = http_timeout

    def _persist(self, action: Action) -> None:
        action.touch()
        if self.store is not None:
            self.store.save(action)

    def run(self, action: Action) -> list[str]:
        if action.status == STATUS_COMPLETED:
            return ["action already completed"]
        if not action.steps:
            raise usage("action has no executable steps")

        signer_address = to_checksum_address(self.signer.address())
        if action.from_address.strip() and not same_address(action.from_address, signer_address):
            raise DefiError(
                ErrorCode.SIGNER,
                "signer address does not match planned action sender",
                details={"signer": signer_address, "fromAddress": action.from_address},
            )

        validate_action_policy(action, self.options.policy())

        action.from_address = signer_address
        action.status = STATUS_EXECUTING
        self._persist(action)
        deadline = _Deadline(self.options.action_timeout)

        for step in action.steps:
            if step.status == STEP_CONFIRMED:
                continue
            try:
                self._execute_step(action, step, deadline)
            except DefiError as exc:
                _mark_step_failed(action, step, str(exc))
                log.warning("action %s step %s failed: %s", action.action_id, step.step_id, exc)
                self._persist(action)
                raise
            except Exception as exc:
                err = internal(f"execute step {step.step_id}")
                _mark_step_failed(action, step, f"{err}: {exc}")
                log.error("action %s step %s crashed: %s", action.action_id, step.step_id, exc)
                self._persist(action)
                raise err from exc
            step.error = ""
            log.info("action %s step %s confirmed tx=%s", action.action_id, step.step_id, step.tx_hash)
            self._persist(action)

        action.status = STATUS_COMPLETED
        self._persist(action)
        return []

    def _execute_step(self, action: Action, step: ActionStep, deadline: _Deadline) -> None:
        remaining = deadline.remaining()
        if remaining is not None and remaining <= 0:
            raise DefiError(ErrorCode.ACTION_TIMEOUT, "timed out before executing step")
        if not step.rpc_url.strip():
            raise usage("missing rpc url for action step")
        if not step.target.strip():
            raise usage("missing target for action step")

        rpc_url = step.rpc_url.strip()
        live_chain_id = self.rpc.chain_id(rpc_url)
        expected = f"eip155:{live_chain_id}"
        if step.chain_id.strip() and step.chain_id.strip().lower() != expected:
            raise DefiError(ErrorCode.ACTION_PLAN, f"step chain mismatch: expected {expected}, got {step.chain_id}")
        step_chain_id(step)

        if not re.fullmatch(r"[0-9]+", step.value.strip() or "0"):
            raise usage("invalid step value")
        value = int(step.value.strip() or "0")
        sender = to_checksum_address(self.signer.address())

        if self.options.simulate:
            try:
                self.rpc.simulate(rpc_url, sender, step.target, step.data, value)
            except DefiError as exc:
                raise DefiError(ErrorCode.ACTION_SIM, "simulate step (eth_call)") from exc
        try:
            gas_estimate = self.rpc.estimate_gas(rpc_url, sender, step.target, step.data, value)
        except DefiError as exc:
            raise DefiError(ErrorCode.ACTION_SIM, "estimate gas") from exc
        gas_limit = int(gas_estimate * self.options.gas_multiplier)

        tip_cap = resolve_tip_cap(self.rpc, rpc_url, self.options.max_priority_fee_gwei)
        base_fee = resolve_base_fee(self.rpc, rpc_url)
        fee_cap = resolve_fee_cap(base_fee, tip_cap, self.options.max_fee_gwei)
        nonce = self.rpc.nonce(rpc_url, sender, "pending")

        tx = {
            "chainId": live_chain_id,
            "from": sender,
            "to": step.target,
            "data": step.data or "0x",
            "value": value,
            "nonce": nonce,
            "gas": gas_limit,
            "maxFeePerGas": fee_cap,
            "maxPriorityFeePerGas": tip_cap,
        }
        log.info("action %s step %s broadcasting nonce=%s gas=%s", action.action_id, step.step_id, nonce, gas_limit)
        tx_hash = self.signer.send_transaction(rpc_url, tx)
        step.status = STEP_SUBMITTED
        step.tx_hash = tx_hash
        self._persist(action)

        self._wait_for_receipt(rpc_url, tx_hash, deadline)
        if step.type == STEP_BRIDGE:
            self._verify_bridge_settlement(step, tx_hash, deadline)
        step.status = STEP_CONFIRMED

    def _wait_for_receipt(self, rpc_url: str, tx_hash: str, deadline: _Deadline) -> None:
        expires_at = time.monotonic() + deadline.bound(self.options.step_timeout)
        while True:
            try:
                receipt = self.rpc.receipt(rpc_url, tx_hash)
            except DefiError as exc:
                log.debug("receipt lookup for %s failed, still waiting: %s", tx_hash, exc)
                receipt = None
            if receipt is not None:
                if receipt_succeeded(receipt):
                    return
                raise unavailable("transaction reverted on-chain", txHash=tx_hash)
            if time.monotonic() >= expires_at:
                raise DefiError(ErrorCode.ACTION_TIMEOUT, "timed out waiting for receipt", details={"txHash": tx_hash})
            time.sleep(self.options.poll_interval)

    def _verify_bridge_settlement(self, step: ActionStep, tx_hash: str, deadline: _Deadline) -> None:
        provider = step.expected_outputs.get("settlement_provider", "").strip().lower()
        if not provider:
            return
        if provider not in BRIDGE_SETTLEMENT_URLS:
            raise unsupported(f'unsupported bridge settlement provider "{provider}"')
        endpoint = step.expected_outputs.get("settlement_status_endpoint", "").strip() or BRIDGE_SETTLEMENT_URLS[provider]

        expires_at = time.monotonic() + deadline.bound(self.options.step_timeout)
        while True:
            if provider == "lifi":
                if self._check_lifi(step, endpoint, tx_hash):
                    return
            elif self._check_across(step, endpoint, tx_hash):
                return
            if time.monotonic() >= expires_at:
                raise DefiError(ErrorCode.ACTION_TIMEOUT, "timed out waiting for bridge settlement")
            time.sleep(self.options.poll_interval)

    def _check_lifi(self, step: ActionStep, endpoint: str, tx_hash: str) -> bool:
        body = _query_lifi_status(endpoint, tx_hash, step.expected_outputs, self.http_timeout)
        if body is None:
            return False
        status = str(body.get("status") or "").strip().upper()
        receiving = body.get("receiving") if isinstance(body.get("receiving"), dict) else {}
        for key, raw in (
            ("settlement_status", status),
            ("settlement_substatus", body.get("substatus")),
            ("settlement_message", body.get("substatusMessage")),
            ("settlement_explorer_url", body.get("lifiExplorerLink")),
            ("destination_tx_hash", receiving.get("txHash")),
        ):
            text = str(raw or "").strip()
            if text:
                step.expected_outputs[key] = text
        if status == "DONE":
            return True
        if status in ("FAILED", "INVALID"):
            message = (
                str(body.get("substatusMessage") or "").strip()
                or str(body.get("message") or "").strip()
                or "LiFi transfer reported failure"
            )
            raise unavailable(f"bridge settlement failed: {message}")
        return False

    def _check_across(self, step: ActionStep, endpoint: str, tx_hash: str) -> bool:
        body = _query_across_status(endpoint, tx_hash, step.expected_outputs, self.http_timeout)
        if body is None:
            return False
        status = str(body.get("status") or "").strip().lower()
        for key, raw in (
            ("settlement_status", status),
            ("destination_tx_hash", body.get("fillTx")),
            ("refund_tx_hash", body.get("depositRefundTxHash")),
        ):
            text = str(raw or "").strip()
            if text:
                step.expected_outputs[key] = text
        if status == "filled":
            return True
        if status == "refunded":
            raise unavailable("bridge settlement refunded")
        return False


def execute_action(
    store: ActionStore | None,
    action: Action,
    signer: Signer,
    options: ExecuteOptions,
    rpc: CastClient,
    http_timeout: int = 20,
) -> list[str]:
    """Execute ``action`` in place and return any warnings."""
    return Executor(rpc, signer, options, store=store, http_timeout=http_timeout).run(action)
