from __future__ import annotations

import logging
from typing import Any, Callable

from .. import net
from ..actions import utc_now
from ..errors import DefiError, ErrorCode, unavailable
from . import AmountInfo, ProviderInfo, SwapQuote, SwapQuoteRequest

log = logging.getLogger(__name__)

ONEINCH_BASE_URL = "https://api.1inch.dev"
API_KEY_ENV = "DEFI_1INCH_API_KEY"


class OneInchClient:
    """Quote-only 1inch aggregator client; every request needs an API key."""

    name = "1inch"

    def __init__(
        self,
        api_key: str,
        http: Callable[..., dict[str, Any]] = net.http_json_request,
        base_url: str = ONEINCH_BASE_URL,
        timeout: int = 20,
    ):
        self.api_key = (api_key or "").strip()
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def info(self) -> ProviderInfo:
        return ProviderInfo(name=self.name, type="swap", requires_key=True, capabilities=["swap.quote"])

    def quote_swap(self, req: SwapQuoteRequest) -> SwapQuote:
        if not self.api_key:
            raise DefiError(
                ErrorCode.AUTH,
                f"missing required API key for 1inch ({API_KEY_ENV})",
                f"Export {API_KEY_ENV} and retry.",
            )
        url = f"{self.base_url}/swap/v6.0/{req.chain.chain_id}/quote"
        query = {
            "src": req.from_asset.address,
            "dst": req.to_asset.address,
            "amount": req.amount_base_units,
            "includeGas": "true",
        }
        log.debug("1inch quote chain=%s amount=%s", req.chain.chain_id, req.amount_base_units)
        resp = self.http(
            "GET", url, headers={"Authorization": f"Bearer {self.api_key}"}, query=query, timeout=self.timeout
        )
        dst_amount = str(resp.get("dstAmount") or "").strip()
        if not dst_amount:
            raise unavailable("1inch quote missing destination amount")
        return SwapQuote(
            provider=self.name,
            chain_id=req.chain.caip2,
            from_asset_id=req.from_asset.asset_id,
            to_asset_id=req.to_asset.asset_id,
            input_amount=AmountInfo.of(req.amount_base_units, req.from_asset.decimals, req.amount_decimal),
            estimated_out=AmountInfo.of(dst_amount, req.to_asset.decimals),
            route="1inch",
            source_url="https://app.1inch.io",
            fetched_at=utc_now(),
        )
