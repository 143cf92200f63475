"""Quote-only Bungee bridge client.

Requests go to the public backend unless both an API key and an affiliate id
are configured, in which case the dedicated backend is used.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from .. import net
from ..actions import utc_now
from ..errors import unavailable
from ..ids import Chain
from . import AmountInfo, BridgeQuote, BridgeQuoteRequest, ProviderInfo

log = logging.getLogger(__name__)

BUNGEE_BASE_URL = "https://public-backend.bungee.exchange/api/v1"
BUNGEE_DEDICATED_BASE_URL = "https://dedicated-backend.bungee.exchange/api/v1"
DEFAULT_USER_ADDRESS = "0x0000000000000000000000000000000000000001"


def _bungee_chain_id(chain: Chain) -> int:
    # HyperEVM testnet quotes are served under chain id 999.
    if chain.chain_id == 998:
        return 999
    return chain.chain_id


def _positive_or(value: Any, fallback: int | None) -> int | None:
    try:
        number = int(value or 0)
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


def _output_decimals(output: dict[str, Any], fallback: int | None) -> int | None:
    return _positive_or((output.get("token") or {}).get("decimals"), _positive_or(output.get("decimals"), fallback))


def _error_message(raw: Any) -> str:
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    if isinstance(raw, dict) and str(raw.get("message") or "").strip():
        return str(raw["message"]).strip()
    return "bungee quote failed"


def _names(values: list[str]) -> str:
    return "+".join(sorted({value.strip().lower() for value in values if value and value.strip()}))


def auto_route_details(user_txs: list[dict[str, Any]], route_name: str) -> str:
    if route_name.strip():
        return route_name.strip().lower()
    parts: list[str] = []
    for tx in user_txs:
        step = str(tx.get("stepType") or "").strip().lower()
        if step == "swap":
            names = _names([str(r.get("usedDexName") or "") for r in tx.get("swapRoutes") or []])
            parts.append(f"swap({names})" if names else "swap")
        elif step == "bridge":
            used = [str(name) for r in tx.get("bridgeRoutes") or [] for name in r.get("usedBridgeNames") or []]
            names = _names(used)
            parts.append(f"bridge({names})" if names else "bridge")
        else:
            name = str((tx.get("routeDetails") or {}).get("name") or "").strip().lower()
            if name or step:
                parts.append(name or step)
    return "->".join(parts)


class BungeeClient:
    name = "bungee"

    def __init__(
        self,
        api_key: str = "",
        affiliate: str = "",
        http: Callable[..., dict[str, Any]] = net.http_json_request,
        timeout: int = 20,
    ):
        self.api_key = (api_key or "").strip()
        self.affiliate = (affiliate or "").strip()
        self.http = http
        self.timeout = timeout

    def info(self) -> ProviderInfo:
        return ProviderInfo(name=self.name, type="bridge", requires_key=False, capabilities=["bridge.quote"])

    def _dedicated(self) -> bool:
        return bool(self.api_key and self.affiliate)

    def quote_bridge(self, req: BridgeQuoteRequest) -> BridgeQuote:
        query = {
            "originChainId": str(_bungee_chain_id(req.from_chain)),
            "destinationChainId": str(_bungee_chain_id(req.to_chain)),
            "inputToken": req.from_asset.address,
            "outputToken": req.to_asset.address,
            "inputAmount": req.amount_base_units,
            "userAddress": DEFAULT_USER_ADDRESS,
            "receiverAddress": DEFAULT_USER_ADDRESS,
        }
        base = BUNGEE_DEDICATED_BASE_URL if self._dedicated() else BUNGEE_BASE_URL
        headers = {"x-api-key": self.api_key, "affiliate": self.affiliate} if self._dedicated() else None
        log.debug("bungee quote %s->%s dedicated=%s", query["originChainId"], query["destinationChainId"], self._dedicated())
        resp = self.http("GET", f"{base}/bungee/quote", headers=headers, query=query, timeout=self.timeout)
        if not resp.get("success"):
            raise unavailable(_error_message(resp.get("error")))

        result = resp.get("result") or {}
        output = result.get("output") or {}
        amount = str(output.get("amount") or "").strip()
        decimals = _output_decimals(output, req.to_asset.decimals)
        fee_usd = 0.0
        service_time = 0
        route = "bungee"
        auto = result.get("autoRoute")
        if isinstance(auto, dict):
            auto_output = auto.get("output") or {}
            amount = str(auto.get("outputAmount") or "").strip() or str(auto_output.get("amount") or "").strip() or amount
            decimals = _output_decimals(auto_output, decimals)
            fee_usd = float((auto.get("gasFee") or {}).get("feeInUsd") or 0)
            service_time = int(auto.get("estimatedTime") or 0)
            details = auto_route_details(auto.get("userTxs") or [], str((auto.get("routeDetails") or {}).get("name") or ""))
            if details:
                route = f"bungee:auto:{details}"
        if not amount:
            raise unavailable("bungee quote missing output amount")

        return BridgeQuote(
            provider=self.name,
            from_chain_id=req.from_chain.caip2,
            to_chain_id=req.to_chain.caip2,
            from_asset_id=req.from_asset.asset_id,
            to_asset_id=req.to_asset.asset_id,
            input_amount=AmountInfo.of(req.amount_base_units, req.from_asset.decimals, req.amount_decimal),
            estimated_out=AmountInfo.of(amount, decimals),
            route=route,
            fetched_at=utc_now(),
            estimated_fee_usd=fee_usd,
            estimated_time_s=service_time,
            source_url="https://www.bungee.exchange",
        )
