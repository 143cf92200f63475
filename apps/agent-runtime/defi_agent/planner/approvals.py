from __future__ import annotations

from dataclasses import dataclass

from ..actions import INTENT_APPROVE, STEP_APPROVAL, Action, ActionStep, Constraints, new_action
from ..errors import usage
from ..ids import Asset, Chain, is_hex_address, parse_positive_uint, resolve_rpc_url, to_checksum_address
from ..rpc import CastClient
from .common import APPROVE_SIGNATURE


@dataclass
class ApprovalRequest:
    chain: Chain
    asset: Asset
    amount_base_units: str
    sender: str
    spender: str
    simulate: bool = True
    rpc_url: str = ""


def build_approval_action(rpc: CastClient, req: ApprovalRequest) -> Action:
    sender = req.sender.strip()
    if not sender:
        raise usage("approval requires sender address")
    if not is_hex_address(sender):
        raise usage("approval sender must be a valid EVM address")
    spender = req.spender.strip()
    if not spender:
        raise usage("approval requires spender address")
    if not is_hex_address(spender):
        raise usage("approval spender must be a valid EVM address")
    if not is_hex_address(req.asset.address):
        raise usage("approval requires ERC20 token address")
    amount = parse_positive_uint(req.amount_base_units, "approval amount")
    rpc_url = resolve_rpc_url(req.rpc_url, req.chain.chain_id)

    spender = to_checksum_address(spender)
    action = new_action(INTENT_APPROVE, "native", req.chain.caip2, Constraints(simulate=req.simulate))
    action.from_address = to_checksum_address(sender)
    action.to_address = spender
    action.input_amount = str(amount)
    action.metadata = {"asset_id": req.asset.asset_id, "spender": spender}
    action.steps.append(
        ActionStep(
            step_id="approve-token",
            type=STEP_APPROVAL,
            chain_id=req.chain.caip2,
            rpc_url=rpc_url,
            description=f"Approve {req.asset.symbol.upper() or 'token'} for spender",
            target=to_checksum_address(req.asset.address),
            data=rpc.calldata(APPROVE_SIGNATURE, [spender, str(amount)]),
            value="0",
        )
    )
    return action
