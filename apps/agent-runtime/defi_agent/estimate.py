from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from .actions import Action, utc_now
from .errors import DefiError, ErrorCode, usage
from .executor import FALLBACK_BASE_FEE_WEI, resolve_fee_cap, resolve_tip_cap
from .ids import ZERO_ADDRESS, is_hex_address
from .rpc import CastClient

log = logging.getLogger(__name__)

BLOCK_TAGS = ("pending", "latest")


@dataclass
class EstimateOptions:
    step_ids: list[str] = field(default_factory=list)
    gas_multiplier: float = 1.2
    max_fee_gwei: str = ""
    max_priority_fee_gwei: str = ""
    block_tag: str = "pending"


def _normalize_block_tag(value: str) -> str:
    tag = (value or "").strip().lower() or "pending"
    if tag not in BLOCK_TAGS:
        raise usage("--block-tag must be one of: pending,latest")
    return tag


def _estimate_gas(rpc: CastClient, rpc_url: str, sender: str, step_target: str, data: str, value: int, tag: str) -> int:
    try:
        return rpc.estimate_gas(rpc_url, sender, step_target, data, value, block=tag)
    except DefiError as exc:
        if tag == "pending":
            log.debug("pending-block gas estimate failed, retrying at latest: %s", exc)
            try:
                return rpc.estimate_gas(rpc_url, sender, step_target, data, value, block="latest")
            except DefiError:
                pass
        raise DefiError(ErrorCode.ACTION_SIM, "estimate gas") from exc


def _base_fee(rpc: CastClient, rpc_url: str, tag: str) -> int:
    for block in (tag, "latest") if tag == "pending" else (tag,):
        try:
            return rpc.base_fee(rpc_url, block)
        except DefiError as exc:
            log.debug("base fee at %s unavailable: %s", block, exc)
    return FALLBACK_BASE_FEE_WEI


def estimate_action_gas(action: Action, rpc: CastClient, options: EstimateOptions) -> dict[str, Any]:
    """Price every selected step without signing anything."""
    if not action.action_id.strip():
        raise usage("missing action id")
    if not action.steps:
        raise usage("action has no executable steps")
    if options.gas_multiplier <= 1:
        raise usage("--gas-multiplier must be > 1")
    tag = _normalize_block_tag(options.block_tag)

    sender = action.from_address.strip() or ZERO_ADDRESS
    if not is_hex_address(sender):
        raise usage("action has invalid from_address")

    wanted = {step_id.strip().lower() for step_id in options.step_ids if step_id.strip()}
    selected = [step for step in action.steps if not wanted or step.step_id.strip().lower() in wanted]
    if not selected:
        raise usage("no action steps matched the requested --step-ids filter")

    likely_by_chain: dict[str, int] = {}
    worst_by_chain: dict[str, int] = {}
    steps: list[dict[str, Any]] = []
    for step in selected:
        rpc_url = step.rpc_url.strip()
        if not rpc_url:
            raise usage(f"step {step.step_id} is missing rpc_url")
        if not is_hex_address(step.target.strip()):
            raise usage(f"step {step.step_id} has invalid target address")
        value_raw = step.value.strip() or "0"
        if not re.fullmatch(r"[0-9]+", value_raw):
            raise usage("parse step value: invalid base-units integer")

        chain_key = f"eip155:{rpc.chain_id(rpc_url)}"
        if step.chain_id.strip() and step.chain_id.strip().lower() != chain_key:
            raise DefiError(ErrorCode.ACTION_PLAN, f"step chain mismatch: expected {chain_key}, got {step.chain_id}")

        raw_gas = _estimate_gas(rpc, rpc_url, sender, step.target.strip(), step.data, int(value_raw), tag)
        gas_limit = int(raw_gas * options.gas_multiplier)
        if gas_limit == 0:
            raise DefiError(ErrorCode.ACTION_SIM, "estimate gas returned zero")

        tip_cap = resolve_tip_cap(rpc, rpc_url, options.max_priority_fee_gwei)
        base_fee = _base_fee(rpc, rpc_url, tag)
        fee_cap = resolve_fee_cap(base_fee, tip_cap, options.max_fee_gwei)
        effective = min(base_fee + tip_cap, fee_cap)
        likely_fee = gas_limit * effective
        worst_fee = gas_limit * fee_cap

        steps.append(
            {
                "step_id": step.step_id,
                "type": step.type,
                "status": step.status,
                "chain_id": chain_key,
                "gas_estimate_raw": str(raw_gas),
                "gas_limit": str(gas_limit),
                "base_fee_per_gas_wei": str(base_fee),
                "max_priority_fee_per_gas_wei": str(tip_cap),
                "max_fee_per_gas_wei": str(fee_cap),
                "effective_gas_price_wei": str(effective),
                "likely_fee_wei": str(likely_fee),
                "worst_case_fee_wei": str(worst_fee),
            }
        )
        likely_by_chain[chain_key] = likely_by_chain.get(chain_key, 0) + likely_fee
        worst_by_chain[chain_key] = worst_by_chain.get(chain_key, 0) + worst_fee

    return {
        "action_id": action.action_id,
        "estimated_at": utc_now(),
        "block_tag": tag,
        "steps": steps,
        "totals_by_chain": [
            {
                "chain_id": chain_key,
                "likely_fee_wei": str(likely_by_chain[chain_key]),
                "worst_case_fee_wei": str(worst_by_chain[chain_key]),
            }
            for chain_key in sorted(likely_by_chain)
        ],
    }
