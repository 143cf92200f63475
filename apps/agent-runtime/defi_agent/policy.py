"""Preflight checks applied to every step before anything is signed."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .actions import STEP_APPROVAL, STEP_BRIDGE, STEP_CONFIRMED, STEP_SWAP, Action, ActionStep
from .errors import DefiError, ErrorCode, internal, usage
from .ids import TAIKOSWAP_CONTRACTS, ZERO_ADDRESS, is_allowed_settlement_url, is_hex_address, keccak256, same_address

APPROVE_SIGNATURE = "approve(address,uint256)"
TAIKOSWAP_SWAP_SIGNATURE = "exactInputSingle((address,address,uint24,address,uint256,uint256,uint160))"
SETTLEMENT_PROVIDERS = ("lifi", "across")


def selector(signature: str) -> str:
    return "0x" + keccak256(signature.encode("ascii"))[:4].hex()


APPROVE_SELECTOR = selector(APPROVE_SIGNATURE)
TAIKOSWAP_SWAP_SELECTOR = selector(TAIKOSWAP_SWAP_SIGNATURE)


@dataclass
class PolicyOptions:
    allow_max_approval: bool = False
    unsafe_provider_tx: bool = False


def _plan_error(message: str) -> DefiError:
    return DefiError(ErrorCode.ACTION_PLAN, message)


def decode_approve_calldata(data: str) -> tuple[str, int]:
    """Return (spender, amount) from ``approve(address,uint256)`` calldata."""
    raw = (data or "").strip().lower()
    if not raw.startswith(APPROVE_SELECTOR):
        raise _plan_error("approval step must use ERC20 approve(spender,amount)")
    body = raw[len(APPROVE_SELECTOR):]
    if len(body) != 128 or not re.fullmatch(r"[0-9a-f]*", body):
        raise _plan_error("approval step calldata is invalid")
    spender_word, amount_word = body[:64], body[64:]
    if spender_word[:24] != "0" * 24:
        raise _plan_error("approval step calldata is invalid")
    return "0x" + spender_word[24:], int(amount_word, 16)


def _validate_approval(action: Action, step: ActionStep, options: PolicyOptions) -> None:
    spender, amount = decode_approve_calldata(step.data)
    if same_address(spender, ZERO_ADDRESS):
        raise _plan_error("approval step has invalid spender")
    if amount <= 0:
        raise _plan_error("approval step has invalid approval amount")
    if options.allow_max_approval:
        return
    requested_raw = (action.input_amount or "").strip()
    if not re.fullmatch(r"[0-9]+", requested_raw) or int(requested_raw) <= 0:
        raise _plan_error(
            "cannot validate approval bounds for non-numeric input amount; use --allow-max-approval to override"
        )
    requested = int(requested_raw)
    if amount > requested:
        raise _plan_error(
            f"approval amount {amount} exceeds requested input amount {requested}; "
            "use --allow-max-approval to override"
        )


def _validate_swap(action: Action, step: ActionStep, chain_id: int) -> None:
    if action.provider.strip().lower() != "taikoswap":
        return
    if not (step.data or "").lower().startswith(TAIKOSWAP_SWAP_SELECTOR):
        raise _plan_error("taikoswap swap step must call exactInputSingle")
    contracts = TAIKOSWAP_CONTRACTS.get(chain_id)
    if contracts is None:
        raise _plan_error("taikoswap swap step has unsupported chain")
    if not same_address(step.target, contracts[1]):
        raise _plan_error("taikoswap swap step target does not match canonical router")


def _validate_bridge(action: Action, step: ActionStep, options: PolicyOptions) -> None:
    if options.unsafe_provider_tx:
        return
    provider = step.expected_outputs.get("settlement_provider", "").strip().lower() or action.provider.strip().lower()
    if provider not in SETTLEMENT_PROVIDERS:
        raise _plan_error("bridge step has unknown settlement provider; use --unsafe-provider-tx to override")
    if action.provider.strip() and action.provider.strip().lower() != provider:
        raise _plan_error("bridge step provider does not match action provider")
    endpoint = step.expected_outputs.get("settlement_status_endpoint", "").strip()
    if not is_allowed_settlement_url(provider, endpoint):
        raise _plan_error("bridge step settlement endpoint is not allowed; use --unsafe-provider-tx to override")


def step_chain_id(step: ActionStep) -> int:
    match = re.fullmatch(r"eip155:([0-9]+)", (step.chain_id or "").strip().lower())
    if not match:
        raise _plan_error(f"step {step.step_id} has invalid chain id {step.chain_id!r}")
    return int(match.group(1))


def validate_step_policy(action: Action, step: ActionStep, chain_id: int, options: PolicyOptions) -> None:
    if step is None:
        raise internal("missing action step")
    if not is_hex_address(step.target):
        raise usage("invalid step target address")
    if step.type == STEP_APPROVAL:
        _validate_approval(action, step, options)
    elif step.type == STEP_SWAP:
        _validate_swap(action, step, chain_id)
    elif step.type == STEP_BRIDGE:
        _validate_bridge(action, step, options)


def validate_action_policy(action: Action, options: PolicyOptions) -> None:
    for step in action.steps:
        if step.status == STEP_CONFIRMED:
            continue
        validate_step_policy(action, step, step_chain_id(step), options)
