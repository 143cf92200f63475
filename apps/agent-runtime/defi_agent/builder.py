"""Route planning requests to the protocol planners and provider adapters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Union

from . import net
from .actions import Action
from .errors import unsupported, usage
from .ids import Asset, Chain
from .planner import (
    AaveLendRequest,
    AaveRewardsRequest,
    ApprovalRequest,
    MorphoLendRequest,
    build_aave_lend_action,
    build_aave_rewards_claim_action,
    build_aave_rewards_compound_action,
    build_approval_action,
    build_morpho_lend_action,
)
from .providers import (
    BridgeExecutionOptions,
    BridgeExecutor,
    BridgeQuote,
    BridgeQuoter,
    BridgeQuoteRequest,
    ProviderInfo,
    SwapExecutionOptions,
    SwapExecutor,
    SwapQuote,
    SwapQuoter,
    SwapQuoteRequest,
)
from .providers.bungee import BungeeClient
from .providers.lifi import LiFiClient
from .providers.oneinch import OneInchClient
from .providers.taikoswap import TaikoSwapClient
from .rpc import CastClient
from .settings import Settings

SwapProvider = Union[SwapQuoter, SwapExecutor]
BridgeProvider = Union[BridgeQuoter, BridgeExecutor]

NAME_ALIASES = {
    "aave-v3": "aave",
    "aavev3": "aave",
    "morpho-blue": "morpho",
    "li.fi": "lifi",
    "li-fi": "lifi",
    "oneinch": "1inch",
    "taiko-swap": "taikoswap",
}
LEND_PROTOCOLS = ("aave", "morpho")


def normalize_name(value: str | None) -> str:
    norm = (value or "").strip().lower()
    return NAME_ALIASES.get(norm, norm)


@dataclass
class LendRequest:
    protocol: str
    verb: str
    chain: Chain
    asset: Asset
    amount_base_units: str
    sender: str
    recipient: str = ""
    on_behalf_of: str = ""
    interest_rate_mode: int = 0
    market_id: str = ""
    simulate: bool = True
    rpc_url: str = ""
    pool_address: str = ""
    pool_address_provider: str = ""


class ActionBuilder:
    """Holds the provider handles for one process and builds actions from requests."""

    def __init__(
        self,
        rpc: CastClient,
        swap_providers: dict[str, SwapProvider],
        bridge_providers: dict[str, BridgeProvider],
        http: Callable[..., dict[str, Any]] = net.http_json_request,
    ):
        self.rpc = rpc
        self.swap_providers = swap_providers
        self.bridge_providers = bridge_providers
        self.http = http

    @classmethod
    def from_settings(
        cls, settings: Settings, rpc: CastClient, http: Callable[..., dict[str, Any]] = net.http_json_request
    ) -> "ActionBuilder":
        timeout = settings.http_timeout_sec
        return cls(
            rpc,
            swap_providers={
                "taikoswap": TaikoSwapClient(rpc),
                "1inch": OneInchClient(settings.api_keys.get("1inch", ""), http=http, timeout=timeout),
            },
            bridge_providers={
                "lifi": LiFiClient(rpc, http=http, timeout=timeout),
                "bungee": BungeeClient(
                    settings.api_keys.get("bungee", ""),
                    settings.api_keys.get("bungee_affiliate", ""),
                    http=http,
                    timeout=timeout,
                ),
            },
            http=http,
        )

    def provider_infos(self) -> list[ProviderInfo]:
        infos = [p.info() for p in self.swap_providers.values()] + [p.info() for p in self.bridge_providers.values()]
        return sorted(infos, key=lambda info: (info.type, info.name))

    def bridge_execution_providers(self) -> list[str]:
        return sorted(name for name, p in self.bridge_providers.items() if isinstance(p, BridgeExecutor))

    def swap_execution_providers(self) -> list[str]:
        return sorted(name for name, p in self.swap_providers.items() if isinstance(p, SwapExecutor))

    def _swap_provider(self, provider: str) -> tuple[str, SwapProvider]:
        name = normalize_name(provider)
        if not name:
            raise usage("--provider is required")
        handle = self.swap_providers.get(name)
        if handle is None:
            raise unsupported("unsupported swap provider", provider=name)
        return name, handle

    def _bridge_provider(self, provider: str) -> tuple[str, BridgeProvider]:
        name = normalize_name(provider)
        if not name:
            raise usage("--provider is required")
        handle = self.bridge_providers.get(name)
        if handle is None:
            raise unsupported("unsupported bridge provider", provider=name)
        return name, handle

    def quote_swap(self, provider: str, req: SwapQuoteRequest) -> SwapQuote:
        name, handle = self._swap_provider(provider)
        if not isinstance(handle, SwapQuoter):
            raise unsupported(f"provider {name} does not support swap quotes")
        return handle.quote_swap(req)

    def quote_bridge(self, provider: str, req: BridgeQuoteRequest) -> BridgeQuote:
        name, handle = self._bridge_provider(provider)
        if not isinstance(handle, BridgeQuoter):
            raise unsupported(f"provider {name} does not support bridge quotes")
        return handle.quote_bridge(req)

    def build_swap(self, provider: str, operation_kind: str, req: SwapQuoteRequest, opts: SwapExecutionOptions) -> Action:
        name, handle = self._swap_provider(provider)
        if not isinstance(handle, SwapExecutor):
            if operation_kind.strip().lower() in ("plan", "planning"):
                raise unsupported(f"provider {name} does not support swap planning")
            raise unsupported(f"provider {name} does not support swap execution")
        return handle.build_swap_action(req, opts)

    def build_bridge(self, provider: str, req: BridgeQuoteRequest, opts: BridgeExecutionOptions) -> Action:
        name, handle = self._bridge_provider(provider)
        if not isinstance(handle, BridgeExecutor):
            raise unsupported(
                f'bridge provider "{name}" is quote-only; execution providers: '
                + ", ".join(self.bridge_execution_providers())
            )
        return handle.build_bridge_action(req, opts)

    def build_lend(self, req: LendRequest) -> Action:
        protocol = normalize_name(req.protocol)
        if not protocol:
            raise usage("--protocol is required")
        if protocol == "aave":
            return build_aave_lend_action(
                self.rpc,
                AaveLendRequest(
                    verb=req.verb,
                    chain=req.chain,
                    asset=req.asset,
                    amount_base_units=req.amount_base_units,
                    sender=req.sender,
                    recipient=req.recipient,
                    on_behalf_of=req.on_behalf_of,
                    interest_rate_mode=req.interest_rate_mode,
                    simulate=req.simulate,
                    rpc_url=req.rpc_url,
                    pool_address=req.pool_address,
                    pool_address_provider=req.pool_address_provider,
                ),
            )
        if protocol == "morpho":
            return build_morpho_lend_action(
                self.rpc,
                MorphoLendRequest(
                    verb=req.verb,
                    chain=req.chain,
                    asset=req.asset,
                    amount_base_units=req.amount_base_units,
                    sender=req.sender,
                    market_id=req.market_id,
                    recipient=req.recipient,
                    on_behalf_of=req.on_behalf_of,
                    simulate=req.simulate,
                    rpc_url=req.rpc_url,
                ),
                http=self.http,
            )
        raise unsupported("lend execution currently supports protocol=aave|morpho")

    def _require_aave_rewards(self, protocol: str) -> None:
        norm = normalize_name(protocol)
        if not norm:
            raise usage("--protocol is required")
        if norm != "aave":
            raise unsupported("rewards execution currently supports only protocol=aave")

    def build_rewards_claim(self, protocol: str, req: AaveRewardsRequest) -> Action:
        self._require_aave_rewards(protocol)
        return build_aave_rewards_claim_action(self.rpc, req)

    def build_rewards_compound(self, protocol: str, req: AaveRewardsRequest) -> Action:
        self._require_aave_rewards(protocol)
        return build_aave_rewards_compound_action(self.rpc, req)

    def build_approval(self, req: ApprovalRequest) -> Action:
        return build_approval_action(self.rpc, req)
