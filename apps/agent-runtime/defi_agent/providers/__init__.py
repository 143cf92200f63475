"""Swap and bridge provider adapters and the capabilities they expose."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..actions import Action
from ..ids import Asset, Chain, format_units

DEFAULT_SLIPPAGE_BPS = 50


@dataclass
class ProviderInfo:
    name: str
    type: str
    requires_key: bool = False
    capabilities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AmountInfo:
    amount_base_units: str
    amount_decimal: str = ""
    decimals: int | None = None

    @classmethod
    def of(cls, base_units: str | int, decimals: int | None, decimal: str = "") -> "AmountInfo":
        text = str(base_units)
        if not decimal and decimals is not None:
            decimal = format_units(text, decimals)
        return cls(amount_base_units=text, amount_decimal=decimal, decimals=decimals)


@dataclass
class SwapQuoteRequest:
    chain: Chain
    from_asset: Asset
    to_asset: Asset
    amount_base_units: str
    amount_decimal: str = ""
    rpc_url: str = ""


@dataclass
class SwapExecutionOptions:
    sender: str
    recipient: str = ""
    slippage_bps: int = 0
    simulate: bool = True
    rpc_url: str = ""


@dataclass
class BridgeQuoteRequest:
    from_chain: Chain
    to_chain: Chain
    from_asset: Asset
    to_asset: Asset
    amount_base_units: str
    amount_decimal: str = ""
    from_amount_for_gas: str = ""


@dataclass
class BridgeExecutionOptions:
    sender: str
    recipient: str = ""
    slippage_bps: int = 0
    simulate: bool = True
    rpc_url: str = ""
    from_amount_for_gas: str = ""


@dataclass
class SwapQuote:
    provider: str
    chain_id: str
    from_asset_id: str
    to_asset_id: str
    input_amount: AmountInfo
    estimated_out: AmountInfo
    route: str
    fetched_at: str
    trade_type: str = "exact-input"
    estimated_gas_usd: float = 0.0
    price_impact_pct: float = 0.0
    source_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BridgeQuote:
    provider: str
    from_chain_id: str
    to_chain_id: str
    from_asset_id: str
    to_asset_id: str
    input_amount: AmountInfo
    estimated_out: AmountInfo
    route: str
    fetched_at: str
    estimated_fee_usd: float = 0.0
    estimated_time_s: int = 0
    source_url: str = ""
    from_amount_for_gas: str = ""
    estimated_destination_native: AmountInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class SwapQuoter(Protocol):
    def info(self) -> ProviderInfo: ...

    def quote_swap(self, req: SwapQuoteRequest) -> SwapQuote: ...


@runtime_checkable
class SwapExecutor(Protocol):
    def info(self) -> ProviderInfo: ...

    def quote_swap(self, req: SwapQuoteRequest) -> SwapQuote: ...

    def build_swap_action(self, req: SwapQuoteRequest, opts: SwapExecutionOptions) -> Action: ...


@runtime_checkable
class BridgeQuoter(Protocol):
    def info(self) -> ProviderInfo: ...

    def quote_bridge(self, req: BridgeQuoteRequest) -> BridgeQuote: ...


@runtime_checkable
class BridgeExecutor(Protocol):
    def info(self) -> ProviderInfo: ...

    def quote_bridge(self, req: BridgeQuoteRequest) -> BridgeQuote: ...

    def build_bridge_action(self, req: BridgeQuoteRequest, opts: BridgeExecutionOptions) -> Action: ...
