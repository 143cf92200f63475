"""LiFi bridge quotes and executable bridge plans."""

from __future__ import annotations

import logging
import re
from typing import Any, Callable

from .. import net
from ..actions import INTENT_BRIDGE, STEP_APPROVAL, STEP_BRIDGE, Action, ActionStep, Constraints, new_action, utc_now
from ..errors import DefiError, ErrorCode, unavailable, usage
from ..ids import (
    BRIDGE_SETTLEMENT_URLS,
    ZERO_ADDRESS,
    is_hex_address,
    parse_positive_uint,
    resolve_rpc_url,
    same_address,
    to_checksum_address,
)
from ..rpc import CastClient
from ..planner.common import APPROVE_SIGNATURE
from . import (
    DEFAULT_SLIPPAGE_BPS,
    AmountInfo,
    BridgeExecutionOptions,
    BridgeQuote,
    BridgeQuoteRequest,
    ProviderInfo,
)

log = logging.getLogger(__name__)

LIFI_BASE_URL = "https://li.quest/v1"
QUOTE_PLACEHOLDER_ADDRESS = "0x0000000000000000000000000000000000000001"
NATIVE_PLACEHOLDER_ADDRESS = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"
BPS = 10_000

HttpRequest = Callable[..., dict[str, Any]]


def _first_non_empty(*values: Any) -> str:
    for value in values:
        text = str(value or "").strip()
        if text:
            return text
    return ""


def _format_slippage(bps: int) -> str:
    return f"{bps / BPS:.6f}"


def _normalize_optional_base_units(value: str) -> str:
    clean = (value or "").strip()
    if not clean:
        return ""
    return str(parse_positive_uint(clean, "bridge gas reserve amount"))


def _hex_to_decimal(value: Any) -> str:
    clean = str(value or "").strip()
    if not clean:
        return "0"
    digits = clean[2:] if clean.lower().startswith("0x") else clean
    if not re.fullmatch(r"[0-9a-fA-F]+", digits):
        raise DefiError(ErrorCode.ACTION_PLAN, f"parse bridge transaction value: invalid hex value {clean!r}")
    return str(int(digits, 16))


def _ensure_hex_prefix(value: str) -> str:
    clean = value.strip()
    return clean if clean.lower().startswith("0x") else "0x" + clean


def _sum_usd(items: Any) -> float:
    total = 0.0
    for item in items or []:
        try:
            total += float((item or {}).get("amountUSD") or 0)
        except (TypeError, ValueError):
            continue
    return total


def destination_native_estimate(steps: Any, destination_chain_id: int) -> AmountInfo | None:
    """Return the gas top-up amount a route delivers in the destination chain's native token."""
    for step in steps or []:
        action = (step or {}).get("action") or {}
        try:
            to_chain = int(action.get("toChainId") or 0)
        except (TypeError, ValueError):
            continue
        if to_chain != destination_chain_id:
            continue
        to_token = action.get("toToken") or {}
        address = str(to_token.get("address") or "").strip().lower()
        if address not in (ZERO_ADDRESS, NATIVE_PLACEHOLDER_ADDRESS):
            continue
        amount = str(((step.get("estimate") or {}).get("toAmount")) or "").strip()
        if not amount:
            continue
        decimals = int(to_token.get("decimals") or 0) or 18
        return AmountInfo.of(amount, decimals)
    return None


class LiFiClient:
    name = "lifi"

    def __init__(self, rpc: CastClient, http: HttpRequest = net.http_json_request, base_url: str = LIFI_BASE_URL, timeout: int = 20):
        self.rpc = rpc
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def info(self) -> ProviderInfo:
        return ProviderInfo(
            name=self.name,
            type="bridge",
            requires_key=False,
            capabilities=["bridge.quote", "bridge.plan", "bridge.execute"],
        )

    def _get_quote(self, query: dict[str, str]) -> dict[str, Any]:
        log.debug("lifi quote %s->%s amount=%s", query.get("fromChain"), query.get("toChain"), query.get("fromAmount"))
        return self.http("GET", f"{self.base_url}/quote", query=query, timeout=self.timeout)

    def quote_bridge(self, req: BridgeQuoteRequest) -> BridgeQuote:
        from_amount_for_gas = _normalize_optional_base_units(req.from_amount_for_gas)
        query = {
            "fromChain": str(req.from_chain.chain_id),
            "toChain": str(req.to_chain.chain_id),
            "fromToken": req.from_asset.address,
            "toToken": req.to_asset.address,
            "fromAmount": req.amount_base_units,
            "slippage": "0.005",
            "fromAddress": QUOTE_PLACEHOLDER_ADDRESS,
            "fromAmountForGas": from_amount_for_gas,
        }
        resp = self._get_quote(query)
        estimate = resp.get("estimate") or {}
        to_amount = str(estimate.get("toAmount") or "").strip()
        if not to_amount:
            raise unavailable("lifi quote missing output amount")

        fee_usd = _sum_usd(estimate.get("feeCosts")) + _sum_usd(estimate.get("gasCosts"))
        route = _first_non_empty((resp.get("toolDetails") or {}).get("name")) or f"{req.from_chain.slug}->{req.to_chain.slug}"
        return BridgeQuote(
            provider=self.name,
            from_chain_id=req.from_chain.caip2,
            to_chain_id=req.to_chain.caip2,
            from_asset_id=req.from_asset.asset_id,
            to_asset_id=req.to_asset.asset_id,
            input_amount=AmountInfo.of(req.amount_base_units, req.from_asset.decimals, req.amount_decimal),
            estimated_out=AmountInfo.of(to_amount, req.to_asset.decimals),
            route=route,
            fetched_at=utc_now(),
            estimated_fee_usd=fee_usd,
            estimated_time_s=int(estimate.get("executionDuration") or 0),
            source_url="https://li.quest",
            from_amount_for_gas=from_amount_for_gas,
            estimated_destination_native=destination_native_estimate(resp.get("includedSteps"), req.to_chain.chain_id),
        )

    def build_bridge_action(self, req: BridgeQuoteRequest, opts: BridgeExecutionOptions) -> Action:
        sender = opts.sender.strip()
        if not sender:
            raise usage("bridge execution requires sender address")
        if not is_hex_address(sender):
            raise usage("bridge execution sender must be a valid EVM address")
        recipient = opts.recipient.strip() or sender
        if not is_hex_address(recipient):
            raise usage("bridge execution recipient must be a valid EVM address")
        if not is_hex_address(req.from_asset.address) or not is_hex_address(req.to_asset.address):
            raise usage("bridge execution requires ERC20 token addresses for from/to assets")
        amount_in = parse_positive_uint(req.amount_base_units, "bridge amount")
        slippage = opts.slippage_bps if opts.slippage_bps > 0 else DEFAULT_SLIPPAGE_BPS
        if slippage >= BPS:
            raise usage("slippage bps must be less than 10000")
        from_amount_for_gas = _normalize_optional_base_units(opts.from_amount_for_gas or req.from_amount_for_gas)
        sender = to_checksum_address(sender)
        recipient = to_checksum_address(recipient)

        resp = self._get_quote(
            {
                "fromChain": str(req.from_chain.chain_id),
                "toChain": str(req.to_chain.chain_id),
                "fromToken": req.from_asset.address.lower(),
                "toToken": req.to_asset.address.lower(),
                "fromAmount": str(amount_in),
                "slippage": _format_slippage(slippage),
                "fromAddress": sender,
                "toAddress": recipient,
                "fromAmountForGas": from_amount_for_gas,
            }
        )
        tx_request = resp.get("transactionRequest") or {}
        tx_to = str(tx_request.get("to") or "").strip()
        tx_data = str(tx_request.get("data") or "").strip()
        if not tx_to or not tx_data:
            raise unavailable("lifi quote missing executable transaction payload")
        try:
            tx_chain = int(tx_request.get("chainId") or 0)
        except (TypeError, ValueError):
            tx_chain = -1
        if tx_chain and tx_chain != req.from_chain.chain_id:
            raise DefiError(ErrorCode.ACTION_PLAN, "lifi transaction chain does not match source chain")
        if not is_hex_address(tx_to):
            raise DefiError(ErrorCode.ACTION_PLAN, "lifi quote returned invalid transaction target")

        rpc_url = resolve_rpc_url(opts.rpc_url, req.from_chain.chain_id)
        estimate = resp.get("estimate") or {}
        tool_details = resp.get("toolDetails") or {}
        approval_address = str(estimate.get("approvalAddress") or "").strip()
        native_estimate = destination_native_estimate(resp.get("includedSteps"), req.to_chain.chain_id)

        action = new_action(
            INTENT_BRIDGE, self.name, req.from_chain.caip2, Constraints(slippage_bps=slippage, simulate=opts.simulate)
        )
        action.from_address = sender
        action.to_address = recipient
        action.input_amount = str(amount_in)
        action.metadata = {
            "to_chain_id": req.to_chain.caip2,
            "from_asset_id": req.from_asset.asset_id,
            "to_asset_id": req.to_asset.asset_id,
            "route": _first_non_empty(tool_details.get("name"), resp.get("tool")),
            "approval_spender": approval_address,
        }
        if from_amount_for_gas:
            action.metadata["from_amount_for_gas"] = from_amount_for_gas
        if native_estimate is not None:
            action.metadata["estimated_destination_native_base_units"] = native_estimate.amount_base_units

        if approval_address and not same_address(req.from_asset.address, ZERO_ADDRESS):
            if not is_hex_address(approval_address):
                raise DefiError(ErrorCode.ACTION_PLAN, "lifi quote returned invalid approval address")
            spender = to_checksum_address(approval_address)
            token = to_checksum_address(req.from_asset.address)
            try:
                allowance = self.rpc.allowance(rpc_url, token, sender, spender)
            except DefiError as exc:
                raise unavailable("read allowance") from exc
            if allowance < amount_in:
                action.steps.append(
                    ActionStep(
                        step_id="approve-bridge-token",
                        type=STEP_APPROVAL,
                        chain_id=req.from_chain.caip2,
                        rpc_url=rpc_url,
                        description="Approve bridge spender for source token",
                        target=token,
                        data=self.rpc.calldata(APPROVE_SIGNATURE, [spender, str(amount_in)]),
                        value="0",
                    )
                )

        expected = {
            "to_amount_min": _first_non_empty(estimate.get("toAmountMin"), estimate.get("toAmount")),
            "settlement_provider": self.name,
            "settlement_status_endpoint": BRIDGE_SETTLEMENT_URLS[self.name],
            "settlement_bridge": _first_non_empty(tool_details.get("key"), resp.get("tool")),
            "settlement_from_chain": str(req.from_chain.chain_id),
            "settlement_to_chain": str(req.to_chain.chain_id),
            "settlement_quote_response_id": str(resp.get("id") or ""),
        }
        if native_estimate is not None:
            expected["destination_native_estimated"] = native_estimate.amount_base_units
        action.steps.append(
            ActionStep(
                step_id="bridge-transfer",
                type=STEP_BRIDGE,
                chain_id=req.from_chain.caip2,
                rpc_url=rpc_url,
                description="Bridge transfer via LiFi route",
                target=to_checksum_address(tx_to),
                data=_ensure_hex_prefix(tx_data),
                value=_hex_to_decimal(tx_request.get("value")),
                expected_outputs=expected,
            )
        )
        return action
