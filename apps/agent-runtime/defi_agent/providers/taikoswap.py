"""TaikoSwap (Uniswap V3 fork) quotes and exact-input swap plans on Taiko chains."""

from __future__ import annotations

import logging

from ..actions import INTENT_SWAP, STEP_APPROVAL, STEP_SWAP, Action, ActionStep, Constraints, new_action, utc_now
from ..errors import DefiError, unavailable, unsupported, usage
from ..ids import TAIKOSWAP_CONTRACTS, Chain, is_hex_address, parse_positive_uint, resolve_rpc_url, to_checksum_address
from ..planner.common import APPROVE_SIGNATURE
from ..policy import TAIKOSWAP_SWAP_SIGNATURE
from ..rpc import CastClient, parse_uint_text
from . import (
    DEFAULT_SLIPPAGE_BPS,
    AmountInfo,
    ProviderInfo,
    SwapExecutionOptions,
    SwapQuote,
    SwapQuoteRequest,
)

log = logging.getLogger(__name__)

FEE_TIERS = (100, 500, 3000, 10000)
QUOTE_SIGNATURE = "quoteExactInputSingle((address,address,uint256,uint24,uint160))(uint256,uint160,uint32,uint256)"
SOURCE_URL = "https://swap.taiko.xyz"
BPS = 10_000


class TaikoSwapClient:
    name = "taikoswap"

    def __init__(self, rpc: CastClient):
        self.rpc = rpc

    def info(self) -> ProviderInfo:
        return ProviderInfo(
            name=self.name,
            type="swap",
            requires_key=False,
            capabilities=["swap.quote", "swap.plan", "swap.execute"],
        )

    def _chain_config(self, chain: Chain, rpc_override: str) -> tuple[str, str, str]:
        contracts = TAIKOSWAP_CONTRACTS.get(chain.chain_id)
        if contracts is None:
            raise unsupported("taikoswap only supports taiko mainnet/hoodi chains")
        quoter, router = contracts
        return resolve_rpc_url(rpc_override, chain.chain_id), quoter, router

    def _quote_best_fee(self, rpc_url: str, quoter: str, token_in: str, token_out: str, amount_in: int) -> tuple[int, int]:
        """Return (amount_out, fee) for the fee tier with the highest output."""
        best: tuple[int, int, int] | None = None
        for fee in FEE_TIERS:
            params = f"({token_in},{token_out},{amount_in},{fee},0)"
            try:
                lines = self.rpc.call(rpc_url, quoter, QUOTE_SIGNATURE, [params]).splitlines()
                amount_out = parse_uint_text(lines[0])
                gas_estimate = parse_uint_text(lines[3]) if len(lines) > 3 else 0
            except (DefiError, IndexError) as exc:
                log.debug("taikoswap quoter skipped fee tier %s: %s", fee, exc)
                continue
            if amount_out <= 0:
                continue
            if best is None or amount_out > best[0] or (amount_out == best[0] and gas_estimate < best[1]):
                best = (amount_out, gas_estimate, fee)
        if best is None:
            raise unavailable("taikoswap quote unavailable for token pair")
        return best[0], best[2]

    def quote_swap(self, req: SwapQuoteRequest) -> SwapQuote:
        rpc_url, quoter, _ = self._chain_config(req.chain, req.rpc_url)
        amount_in = parse_positive_uint(req.amount_base_units, "swap amount")
        token_in = to_checksum_address(req.from_asset.address)
        token_out = to_checksum_address(req.to_asset.address)
        quoted, fee = self._quote_best_fee(rpc_url, quoter, token_in, token_out, amount_in)
        return SwapQuote(
            provider=self.name,
            chain_id=req.chain.caip2,
            from_asset_id=req.from_asset.asset_id,
            to_asset_id=req.to_asset.asset_id,
            input_amount=AmountInfo.of(req.amount_base_units, req.from_asset.decimals, req.amount_decimal),
            estimated_out=AmountInfo.of(quoted, req.to_asset.decimals),
            route=f"taikoswap-v3-fee-{fee}",
            source_url=SOURCE_URL,
            fetched_at=utc_now(),
        )

    def build_swap_action(self, req: SwapQuoteRequest, opts: SwapExecutionOptions) -> Action:
        sender = opts.sender.strip()
        if not sender:
            raise usage("swap execution requires sender address")
        if not is_hex_address(sender):
            raise usage("swap execution sender must be a valid EVM address")
        rpc_url, quoter, router = self._chain_config(req.chain, opts.rpc_url or req.rpc_url)
        amount_in = parse_positive_uint(req.amount_base_units, "swap amount")
        recipient = opts.recipient.strip() or sender
        if not is_hex_address(recipient):
            raise usage("swap execution recipient must be a valid EVM address")
        sender = to_checksum_address(sender)
        recipient = to_checksum_address(recipient)
        token_in = to_checksum_address(req.from_asset.address)
        token_out = to_checksum_address(req.to_asset.address)

        quoted, fee = self._quote_best_fee(rpc_url, quoter, token_in, token_out, amount_in)
        slippage = opts.slippage_bps if opts.slippage_bps > 0 else DEFAULT_SLIPPAGE_BPS
        if slippage >= BPS:
            raise usage("slippage bps must be less than 10000")
        amount_out_min = quoted * (BPS - slippage) // BPS

        action = new_action(INTENT_SWAP, self.name, req.chain.caip2, Constraints(slippage_bps=slippage, simulate=opts.simulate))
        action.from_address = sender
        action.to_address = recipient
        action.input_amount = str(amount_in)
        action.metadata = {
            "token_in": token_in,
            "token_out": token_out,
            "fee": fee,
            "quoted_amount": str(quoted),
            "amount_out_min": str(amount_out_min),
        }

        try:
            allowance = self.rpc.allowance(rpc_url, token_in, sender, router)
        except DefiError as exc:
            raise unavailable("read allowance") from exc
        if allowance < amount_in:
            action.steps.append(
                ActionStep(
                    step_id="approve-token-in",
                    type=STEP_APPROVAL,
                    chain_id=req.chain.caip2,
                    rpc_url=rpc_url,
                    description="Approve token spending for swap router",
                    target=token_in,
                    data=self.rpc.calldata(APPROVE_SIGNATURE, [router, str(amount_in)]),
                    value="0",
                )
            )

        params = f"({token_in},{token_out},{fee},{recipient},{amount_in},{amount_out_min},0)"
        action.steps.append(
            ActionStep(
                step_id="swap-exact-input-single",
                type=STEP_SWAP,
                chain_id=req.chain.caip2,
                rpc_url=rpc_url,
                description="Swap exact input via TaikoSwap router",
                target=to_checksum_address(router),
                data=self.rpc.calldata(TAIKOSWAP_SWAP_SIGNATURE, [params]),
                value="0",
                expected_outputs={"amount_out_min": str(amount_out_min)},
            )
        )
        log.debug("taikoswap planned fee=%s quoted=%s min_out=%s", fee, quoted, amount_out_min)
        return action
