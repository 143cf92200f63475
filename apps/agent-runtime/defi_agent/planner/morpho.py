from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable

from .. import net
from ..actions import STEP_LEND_CALL, Action, ActionStep, Constraints, new_action
from ..errors import unavailable, usage
from ..ids import Asset, Chain, is_hex_address, same_address, to_checksum_address
from ..rpc import CastClient
from .aave import LEND_VERBS
from .common import append_approval_if_needed, normalize_lend_inputs

MORPHO_GRAPHQL_ENDPOINT = "https://api.morpho.org/graphql"
MORPHO_HTTP_TIMEOUT_SEC = 10

MARKET_BY_ID_QUERY = """query Market($chain:Int!,$key:String!){
  markets(first: 1, where:{ chainId_in: [$chain], uniqueKey_in: [$key], listed: true }){
    items{
      uniqueKey
      irmAddress
      lltv
      morphoBlue{ address }
      oracle{ address }
      loanAsset{ address symbol decimals chain{ id } }
      collateralAsset{ address symbol decimals }
    }
  }
}"""

_MARKET_PARAMS = "(address,address,address,address,uint256)"
SIGNATURES = {
    "supply": f"supply({_MARKET_PARAMS},uint256,uint256,address,bytes)",
    "withdraw": f"withdraw({_MARKET_PARAMS},uint256,uint256,address,address)",
    "borrow": f"borrow({_MARKET_PARAMS},uint256,uint256,address,address)",
    "repay": f"repay({_MARKET_PARAMS},uint256,uint256,address,bytes)",
}
DESCRIPTIONS = {
    "supply": "Supply asset to Morpho market",
    "withdraw": "Withdraw supplied assets from Morpho market",
    "borrow": "Borrow asset from Morpho market",
    "repay": "Repay borrowed assets in Morpho market",
}

HttpRequest = Callable[..., dict[str, Any]]


@dataclass
class MorphoLendRequest:
    verb: str
    chain: Chain
    asset: Asset
    amount_base_units: str
    sender: str
    market_id: str
    recipient: str = ""
    on_behalf_of: str = ""
    simulate: bool = True
    rpc_url: str = ""


@dataclass
class MorphoMarket:
    market_id: str
    morpho: str
    loan_token: str
    collateral_token: str
    oracle: str
    irm: str
    lltv: int
    loan_symbol: str = ""
    collateral_symbol: str = ""

    def params_tuple(self) -> str:
        return f"({self.loan_token},{self.collateral_token},{self.oracle},{self.irm},{self.lltv})"


def normalize_market_id(market_id: str) -> str:
    clean = (market_id or "").strip()
    if not clean:
        raise usage("morpho lend execution requires --market-id")
    if not clean.lower().startswith("0x"):
        raise usage("morpho --market-id must be a 0x-prefixed bytes32 value")
    raw = clean[2:]
    if len(raw) != 64:
        raise usage("morpho --market-id must be a 32-byte hex value")
    if not re.fullmatch(r"[0-9a-fA-F]+", raw):
        raise usage("morpho --market-id must be valid hex")
    return "0x" + raw.lower()


def _address_field(value: Any, message: str) -> str:
    raw = str(value or "").strip()
    if not is_hex_address(raw):
        raise unavailable(message)
    return to_checksum_address(raw)


def fetch_morpho_market(chain_id: int, market_id: str, http: HttpRequest = net.http_json_request) -> MorphoMarket:
    body = http(
        "POST",
        MORPHO_GRAPHQL_ENDPOINT,
        {"query": MARKET_BY_ID_QUERY, "variables": {"chain": chain_id, "key": market_id}},
        timeout=MORPHO_HTTP_TIMEOUT_SEC,
    )
    errors = body.get("errors") or []
    if errors:
        first = errors[0] if isinstance(errors[0], dict) else {"message": str(errors[0])}
        raise unavailable(f"morpho graphql error: {first.get('message', '')}")
    items = (((body.get("data") or {}).get("markets") or {}).get("items")) or []
    if not items:
        raise usage("morpho market-id not found for selected chain")
    item = items[0]

    loan_asset = item.get("loanAsset") or {}
    collateral_asset = item.get("collateralAsset") or {}
    lltv_raw = str(item.get("lltv") or "").strip()
    if not re.fullmatch(r"[0-9]+", lltv_raw) or int(lltv_raw) <= 0:
        raise unavailable("morpho market returned invalid lltv")
    return MorphoMarket(
        market_id=market_id,
        morpho=_address_field((item.get("morphoBlue") or {}).get("address"), "morpho market missing executable morpho contract address"),
        loan_token=_address_field(loan_asset.get("address"), "morpho market missing loan token address"),
        collateral_token=_address_field(collateral_asset.get("address"), "morpho market missing collateral token address"),
        oracle=_address_field((item.get("oracle") or {}).get("address"), "morpho market missing oracle address"),
        irm=_address_field(item.get("irmAddress"), "morpho market missing irm address"),
        lltv=int(lltv_raw),
        loan_symbol=str(loan_asset.get("symbol") or "").strip().upper(),
        collateral_symbol=str(collateral_asset.get("symbol") or "").strip().upper(),
    )


def build_morpho_lend_action(rpc: CastClient, req: MorphoLendRequest, http: HttpRequest = net.http_json_request) -> Action:
    verb = req.verb.strip().lower()
    if verb not in LEND_VERBS:
        raise usage("unsupported lend action verb")
    inputs = normalize_lend_inputs(
        req.sender, req.recipient, req.on_behalf_of, req.asset, req.amount_base_units, req.rpc_url, req.chain.chain_id
    )
    market_id = normalize_market_id(req.market_id)
    market = fetch_morpho_market(req.chain.chain_id, market_id, http)
    if not same_address(market.loan_token, inputs.token):
        raise usage("selected morpho market loan token does not match --asset")

    action = new_action(f"lend_{verb}", "morpho", req.chain.caip2, Constraints(simulate=req.simulate))
    action.from_address = inputs.sender
    action.to_address = inputs.recipient
    action.input_amount = str(inputs.amount)
    action.metadata = {
        "protocol": "morpho",
        "asset_id": req.asset.asset_id,
        "market_id": market_id,
        "loan_token": market.loan_token,
        "collateral_token": market.collateral_token,
        "oracle": market.oracle,
        "irm": market.irm,
        "lltv": str(market.lltv),
        "morpho_address": market.morpho,
        "on_behalf_of": inputs.on_behalf_of,
        "recipient": inputs.recipient,
        "lending_action": verb,
        "market_loan_symbol": market.loan_symbol,
        "market_collat_symbol": market.collateral_symbol,
    }

    amount = str(inputs.amount)
    if verb in ("supply", "repay"):
        append_approval_if_needed(
            rpc, action, req.chain.caip2, inputs.rpc_url, market.loan_token, inputs.sender, market.morpho,
            inputs.amount, f"Approve token for Morpho {verb}",
        )
        args = [market.params_tuple(), amount, "0", inputs.on_behalf_of, "0x"]
    else:
        args = [market.params_tuple(), amount, "0", inputs.on_behalf_of, inputs.recipient]
    data = rpc.calldata(SIGNATURES[verb], args)

    action.steps.append(
        ActionStep(
            step_id=f"morpho-{verb}",
            type=STEP_LEND_CALL,
            chain_id=req.chain.caip2,
            rpc_url=inputs.rpc_url,
            description=DESCRIPTIONS[verb],
            target=market.morpho,
            data=data,
            value="0",
        )
    )
    return action
