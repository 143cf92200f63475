from __future__ import annotations

import re
from dataclasses import dataclass

from ..actions import STEP_APPROVAL, Action, ActionStep
from ..errors import usage
from ..ids import UINT256_MAX, Asset, is_hex_address, parse_positive_uint, resolve_rpc_url, to_checksum_address
from ..rpc import CastClient

APPROVE_SIGNATURE = "approve(address,uint256)"


@dataclass
class LendInputs:
    sender: str
    recipient: str
    on_behalf_of: str
    amount: int
    rpc_url: str
    token: str


def approval_step_id(token: str) -> str:
    return "approve-" + token.lower().removeprefix("0x")


def append_approval_if_needed(
    rpc: CastClient,
    action: Action,
    chain_id: str,
    rpc_url: str,
    token: str,
    owner: str,
    spender: str,
    amount: int,
    description: str,
    step_id: str | None = None,
) -> bool:
    """Append ``approve(spender, amount)`` when the live allowance is short."""
    if rpc.allowance(rpc_url, token, owner, spender) >= amount:
        return False
    action.steps.append(
        ActionStep(
            step_id=step_id or approval_step_id(token),
            type=STEP_APPROVAL,
            chain_id=chain_id,
            rpc_url=rpc_url,
            description=description,
            target=to_checksum_address(token),
            data=rpc.calldata(APPROVE_SIGNATURE, [spender, str(amount)]),
            value="0",
        )
    )
    return True


def require_address(value: str | None, message: str) -> str:
    raw = (value or "").strip()
    if not is_hex_address(raw):
        raise usage(message)
    return to_checksum_address(raw)


def normalize_lend_inputs(
    sender: str,
    recipient: str,
    on_behalf_of: str,
    asset: Asset,
    amount_base_units: str,
    rpc_url: str,
    chain_id: int,
) -> LendInputs:
    sender_addr = require_address(sender, "lend action requires sender address")
    recipient_addr = require_address(recipient.strip() or sender_addr, "invalid recipient address")
    on_behalf_addr = require_address(on_behalf_of.strip() or sender_addr, "invalid on-behalf-of address")
    token = require_address(asset.address, "lend asset must resolve to an ERC20 address")
    amount = parse_positive_uint(amount_base_units, "lend amount")
    return LendInputs(
        sender=sender_addr,
        recipient=recipient_addr,
        on_behalf_of=on_behalf_addr,
        amount=amount,
        rpc_url=resolve_rpc_url(rpc_url, chain_id),
        token=token,
    )


def normalize_address_list(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for value in values:
        for part in value.split(","):
            norm = part.strip()
            if not norm:
                continue
            if not is_hex_address(norm):
                raise usage(f"invalid address in --assets: {norm}")
            canonical = to_checksum_address(norm)
            if canonical in seen:
                continue
            seen.add(canonical)
            out.append(canonical)
    return out


def parse_reward_amount(value: str | None) -> int:
    clean = (value or "").strip()
    if not clean or clean.lower() == "max":
        return UINT256_MAX
    if not re.fullmatch(r"[0-9]+", clean) or not 0 < int(clean) <= UINT256_MAX:
        raise usage("reward amount must be a positive integer in base units or 'max'")
    return int(clean)
