from __future__ import annotations

from dataclasses import dataclass, field

from ..actions import (
    INTENT_CLAIM_REWARDS,
    INTENT_COMPOUND_REWARDS,
    STEP_CLAIM,
    STEP_LEND_CALL,
    Action,
    ActionStep,
    Constraints,
    new_action,
    new_action_id,
)
from ..errors import DefiError, unavailable, unsupported, usage
from ..ids import (
    AAVE_POOL_ADDRESSES_PROVIDERS,
    ZERO_ADDRESS,
    Asset,
    Chain,
    is_hex_address,
    keccak256,
    resolve_rpc_url,
    same_address,
    to_checksum_address,
)
from ..rpc import CastClient
from .common import append_approval_if_needed, normalize_address_list, normalize_lend_inputs, parse_reward_amount, require_address

LEND_VERBS = ("supply", "withdraw", "borrow", "repay")

SUPPLY_SIGNATURE = "supply(address,uint256,address,uint16)"
WITHDRAW_SIGNATURE = "withdraw(address,uint256,address)"
BORROW_SIGNATURE = "borrow(address,uint256,uint256,uint16,address)"
REPAY_SIGNATURE = "repay(address,uint256,uint256,address)"
CLAIM_REWARDS_SIGNATURE = "claimRewards(address[],uint256,address,address)"
INCENTIVES_CONTROLLER_ID = "0x" + keccak256(b"INCENTIVES_CONTROLLER").hex()


@dataclass
class AaveLendRequest:
    verb: str
    chain: Chain
    asset: Asset
    amount_base_units: str
    sender: str
    recipient: str = ""
    on_behalf_of: str = ""
    interest_rate_mode: int = 0
    simulate: bool = True
    rpc_url: str = ""
    pool_address: str = ""
    pool_address_provider: str = ""


@dataclass
class AaveRewardsRequest:
    chain: Chain
    sender: str
    reward_token: str
    assets: list[str] = field(default_factory=list)
    recipient: str = ""
    amount_base_units: str = ""
    simulate: bool = True
    rpc_url: str = ""
    controller_address: str = ""
    pool_address: str = ""
    pool_address_provider: str = ""
    on_behalf_of: str = ""


def _provider_address(chain: Chain, override: str, missing_message: str) -> str:
    provider = override.strip() or AAVE_POOL_ADDRESSES_PROVIDERS.get(chain.chain_id, "")
    if not provider:
        raise unsupported(missing_message)
    if not is_hex_address(provider):
        raise usage("invalid --pool-address-provider")
    return provider


def _checked_lookup(rpc: CastClient, rpc_url: str, to: str, signature: str, args: list[str], what: str) -> str:
    try:
        found = rpc.call_address(rpc_url, to, signature, args)
    except DefiError as exc:
        raise unavailable(f"fetch {what}") from exc
    if same_address(found, ZERO_ADDRESS):
        raise unavailable(f"{what} is zero")
    return to_checksum_address(found)


def resolve_aave_pool_address(rpc: CastClient, rpc_url: str, chain: Chain, pool_address: str, pool_provider: str) -> str:
    if pool_address.strip():
        return require_address(pool_address, "invalid --pool-address")
    provider = _provider_address(
        chain,
        pool_provider,
        "aave pool address provider is unavailable for this chain; pass --pool-address or --pool-address-provider",
    )
    return _checked_lookup(rpc, rpc_url, provider, "getPool()(address)", [], "aave pool address")


def resolve_incentives_controller(
    rpc: CastClient, rpc_url: str, chain: Chain, controller_address: str, pool_provider: str
) -> str:
    if controller_address.strip():
        return require_address(controller_address, "invalid --controller-address")
    provider = _provider_address(
        chain, pool_provider, "aave incentives controller is unavailable for this chain; pass --controller-address"
    )
    return _checked_lookup(
        rpc, rpc_url, provider, "getAddress(bytes32)(address)", [INCENTIVES_CONTROLLER_ID], "incentives controller address"
    )


def _rate_mode(requested: int, verb: str) -> int:
    mode = requested or 2
    if mode not in (1, 2):
        raise usage(f"{verb} interest rate mode must be 1 (stable) or 2 (variable)")
    return mode


def build_aave_lend_action(rpc: CastClient, req: AaveLendRequest) -> Action:
    verb = req.verb.strip().lower()
    if verb not in LEND_VERBS:
        raise usage("unsupported lend action verb")
    inputs = normalize_lend_inputs(
        req.sender, req.recipient, req.on_behalf_of, req.asset, req.amount_base_units, req.rpc_url, req.chain.chain_id
    )
    pool = resolve_aave_pool_address(rpc, inputs.rpc_url, req.chain, req.pool_address, req.pool_address_provider)

    action = new_action(f"lend_{verb}", "aave", req.chain.caip2, Constraints(simulate=req.simulate))
    action.from_address = inputs.sender
    action.to_address = inputs.recipient
    action.input_amount = str(inputs.amount)
    action.metadata = {
        "protocol": "aave",
        "asset_id": req.asset.asset_id,
        "pool": pool,
        "on_behalf_of": inputs.on_behalf_of,
        "recipient": inputs.recipient,
        "rate_mode": req.interest_rate_mode,
        "lending_action": verb,
    }

    amount = str(inputs.amount)
    if verb == "supply":
        append_approval_if_needed(
            rpc, action, req.chain.caip2, inputs.rpc_url, inputs.token, inputs.sender, pool, inputs.amount,
            "Approve token for Aave supply",
        )
        data = rpc.calldata(SUPPLY_SIGNATURE, [inputs.token, amount, inputs.on_behalf_of, "0"])
        description = "Supply asset to Aave"
    elif verb == "withdraw":
        data = rpc.calldata(WITHDRAW_SIGNATURE, [inputs.token, amount, inputs.recipient])
        description = "Withdraw asset from Aave"
    elif verb == "borrow":
        mode = _rate_mode(req.interest_rate_mode, "borrow")
        data = rpc.calldata(BORROW_SIGNATURE, [inputs.token, amount, str(mode), "0", inputs.on_behalf_of])
        description = "Borrow asset from Aave"
    else:
        mode = _rate_mode(req.interest_rate_mode, "repay")
        append_approval_if_needed(
            rpc, action, req.chain.caip2, inputs.rpc_url, inputs.token, inputs.sender, pool, inputs.amount,
            "Approve token for Aave repay",
        )
        data = rpc.calldata(REPAY_SIGNATURE, [inputs.token, amount, str(mode), inputs.on_behalf_of])
        description = "Repay borrowed asset on Aave"

    action.steps.append(
        ActionStep(
            step_id=f"aave-{verb}",
            type=STEP_LEND_CALL,
            chain_id=req.chain.caip2,
            rpc_url=inputs.rpc_url,
            description=description,
            target=pool,
            data=data,
            value="0",
        )
    )
    return action


def build_aave_rewards_claim_action(rpc: CastClient, req: AaveRewardsRequest) -> Action:
    sender = require_address(req.sender, "rewards claim requires sender address")
    recipient = require_address(req.recipient.strip() or sender, "invalid rewards recipient address")
    reward_token = require_address(req.reward_token, "reward token must be an address")
    assets = normalize_address_list(req.assets)
    if not assets:
        raise usage("rewards claim requires at least one asset in --assets")

    rpc_url = resolve_rpc_url(req.rpc_url, req.chain.chain_id)
    controller = resolve_incentives_controller(rpc, rpc_url, req.chain, req.controller_address, req.pool_address_provider)
    amount = parse_reward_amount(req.amount_base_units)
    data = rpc.calldata(CLAIM_REWARDS_SIGNATURE, ["[" + ",".join(assets) + "]", str(amount), recipient, reward_token])

    action = new_action(INTENT_CLAIM_REWARDS, "aave", req.chain.caip2, Constraints(simulate=req.simulate))
    action.from_address = sender
    action.to_address = recipient
    action.input_amount = str(amount)
    action.metadata = {
        "protocol": "aave",
        "controller": controller,
        "reward_token": reward_token,
        "assets": assets,
        "amount_base_units": str(amount),
    }
    action.steps.append(
        ActionStep(
            step_id="aave-claim-rewards",
            type=STEP_CLAIM,
            chain_id=req.chain.caip2,
            rpc_url=rpc_url,
            description="Claim rewards from Aave incentives controller",
            target=controller,
            data=data,
            value="0",
        )
    )
    return action


def build_aave_rewards_compound_action(rpc: CastClient, req: AaveRewardsRequest) -> Action:
    """Claim rewards, then supply the claimed reward token back into the pool."""
    if req.amount_base_units.strip().lower() in ("", "max"):
        raise usage("compound requires an explicit --amount in base units (max is unsupported)")
    action = build_aave_rewards_claim_action(rpc, req)
    action.action_id = new_action_id()
    action.intent_type = INTENT_COMPOUND_REWARDS
    action.metadata["compound"] = True

    rpc_url = resolve_rpc_url(req.rpc_url, req.chain.chain_id)
    pool = resolve_aave_pool_address(rpc, rpc_url, req.chain, req.pool_address, req.pool_address_provider)
    amount = int(action.input_amount)
    sender = to_checksum_address(req.sender.strip())
    on_behalf_of = require_address(req.on_behalf_of.strip() or sender, "invalid on-behalf-of address")
    reward_token = to_checksum_address(req.reward_token.strip())

    append_approval_if_needed(
        rpc, action, req.chain.caip2, rpc_url, reward_token, sender, pool, amount,
        "Approve reward token for Aave supply",
    )
    action.steps.append(
        ActionStep(
            step_id="aave-compound-supply",
            type=STEP_LEND_CALL,
            chain_id=req.chain.caip2,
            rpc_url=rpc_url,
            description="Supply claimed reward token to Aave",
            target=pool,
            data=rpc.calldata(SUPPLY_SIGNATURE, [reward_token, str(amount), on_behalf_of, "0"]),
            value="0",
        )
    )
    action.metadata["pool"] = pool
    action.metadata["on_behalf_of"] = on_behalf_of
    return action
