import unittest

import fakes

from defi_agent.builder import ActionBuilder, normalize_name
from defi_agent.errors import DefiError, ErrorCode
from defi_agent.ids import TAIKOSWAP_CONTRACTS, resolve_asset, resolve_chain
from defi_agent.policy import TAIKOSWAP_SWAP_SELECTOR, decode_approve_calldata
from defi_agent.providers import (
    BridgeExecutionOptions,
    BridgeExecutor,
    BridgeQuoteRequest,
    SwapExecutionOptions,
    SwapExecutor,
    SwapQuoteRequest,
)
from defi_agent.providers.bungee import BUNGEE_DEDICATED_BASE_URL, BungeeClient, auto_route_details
from defi_agent.providers.lifi import LiFiClient, destination_native_estimate
from defi_agent.providers.oneinch import OneInchClient
from defi_agent.providers.taikoswap import TaikoSwapClient

TAIKO = resolve_chain("taiko")
BASE = resolve_chain("base")
ARBITRUM = resolve_chain("arbitrum")


def _taiko_swap_request(amount: str = "1000000") -> SwapQuoteRequest:
    return SwapQuoteRequest(
        chain=TAIKO,
        from_asset=resolve_asset("USDC", TAIKO),
        to_asset=resolve_asset("WETH", TAIKO),
        amount_base_units=amount,
    )


def _bridge_request(**overrides) -> BridgeQuoteRequest:
    fields = dict(
        from_chain=BASE,
        to_chain=ARBITRUM,
        from_asset=resolve_asset("USDC", BASE),
        to_asset=resolve_asset("USDC", ARBITRUM),
        amount_base_units="5000000",
    )
    fields.update(overrides)
    return BridgeQuoteRequest(**fields)


def _lifi_quote(**overrides) -> dict:
    body = {
        "id": "quote-1",
        "tool": "across",
        "toolDetails": {"key": "across", "name": "Across"},
        "estimate": {
            "toAmount": "4990000",
            "toAmountMin": "4965000",
            "approvalAddress": "0x1231DEB6f5749EF6cE6943a275A1D3E7486F4EaE",
            "executionDuration": 60,
            "feeCosts": [{"amountUSD": "0.10"}],
            "gasCosts": [{"amountUSD": "0.05"}],
        },
        "transactionRequest": {
            "to": "0x1231DEB6f5749EF6cE6943a275A1D3E7486F4EaE",
            "data": "abcdef",
            "value": "0x0",
            "chainId": 8453,
        },
    }
    body.update(overrides)
    return body


class TaikoSwapTests(unittest.TestCase):
    def test_quote_picks_highest_output_fee_tier(self) -> None:
        rpc = fakes.FakeRpc(quotes={500: "900\n0\n1\n80000", 3000: "1000 [1e3]\n0\n1\n90000"})
        quote = TaikoSwapClient(rpc).quote_swap(_taiko_swap_request())
        self.assertEqual(quote.estimated_out.amount_base_units, "1000")
        self.assertEqual(quote.route, "taikoswap-v3-fee-3000")
        self.assertEqual(quote.chain_id, "eip155:167000")

    def test_equal_output_prefers_lower_gas(self) -> None:
        rpc = fakes.FakeRpc(quotes={500: "1000\n0\n1\n70000", 3000: "1000\n0\n1\n90000"})
        self.assertEqual(TaikoSwapClient(rpc).quote_swap(_taiko_swap_request()).route, "taikoswap-v3-fee-500")

    def test_no_pool_is_unavailable(self) -> None:
        with self.assertRaises(DefiError) as ctx:
            TaikoSwapClient(fakes.FakeRpc()).quote_swap(_taiko_swap_request())
        self.assertEqual(ctx.exception.code, ErrorCode.UNAVAILABLE)

    def test_other_chain_is_unsupported(self) -> None:
        req = _taiko_swap_request()
        req.chain = BASE
        with self.assertRaises(DefiError) as ctx:
            TaikoSwapClient(fakes.FakeRpc()).quote_swap(req)
        self.assertEqual(ctx.exception.code, ErrorCode.UNSUPPORTED)

    def test_plan_applies_slippage_and_approves_router(self) -> None:
        rpc = fakes.FakeRpc(allowance=0, quotes={3000: "2000000\n0\n1\n90000"})
        action = TaikoSwapClient(rpc).build_swap_action(
            _taiko_swap_request(), SwapExecutionOptions(sender=fakes.SENDER, slippage_bps=100)
        )
        router = TAIKOSWAP_CONTRACTS[167000][1]
        self.assertEqual([step.step_id for step in action.steps], ["approve-token-in", "swap-exact-input-single"])
        self.assertEqual(decode_approve_calldata(action.steps[0].data)[0].lower(), router.lower())
        swap = action.steps[1]
        self.assertTrue(swap.data.startswith(TAIKOSWAP_SWAP_SELECTOR))
        self.assertEqual(swap.target.lower(), router.lower())
        self.assertEqual(swap.expected_outputs["amount_out_min"], "1980000")
        self.assertEqual(action.constraints.slippage_bps, 100)

    def test_plan_defaults_slippage(self) -> None:
        rpc = fakes.FakeRpc(allowance=10**18, quotes={100: "10000\n0\n1\n1"})
        action = TaikoSwapClient(rpc).build_swap_action(_taiko_swap_request(), SwapExecutionOptions(sender=fakes.SENDER))
        self.assertEqual(action.metadata["amount_out_min"], "9950")
        self.assertEqual(len(action.steps), 1)


class LiFiTests(unittest.TestCase):
    def test_quote_sums_fees_and_reports_gas_top_up(self) -> None:
        quote_body = _lifi_quote(
            includedSteps=[
                {
                    "action": {"toChainId": 42161, "toToken": {"address": "0x" + "00" * 20, "decimals": 18}},
                    "estimate": {"toAmount": "1000000000000000"},
                }
            ]
        )
        http = fakes.FakeHttp(quote_body)
        quote = LiFiClient(fakes.FakeRpc(), http=http).quote_bridge(_bridge_request(from_amount_for_gas="100000"))

        self.assertAlmostEqual(quote.estimated_fee_usd, 0.15)
        self.assertEqual(quote.route, "Across")
        self.assertEqual(quote.estimated_time_s, 60)
        self.assertEqual(quote.from_amount_for_gas, "100000")
        self.assertEqual(quote.estimated_destination_native.amount_decimal, "0.001")
        self.assertEqual(http.requests[0]["query"]["slippage"], "0.005")

    def test_plan_builds_approval_and_bridge_step(self) -> None:
        http = fakes.FakeHttp(_lifi_quote())
        action = LiFiClient(fakes.FakeRpc(allowance=0), http=http).build_bridge_action(
            _bridge_request(), BridgeExecutionOptions(sender=fakes.SENDER, slippage_bps=30)
        )
        query = http.requests[0]["query"]
        self.assertEqual(query["slippage"], "0.003000")
        self.assertEqual(query["fromToken"], query["fromToken"].lower())
        self.assertEqual([step.step_id for step in action.steps], ["approve-bridge-token", "bridge-transfer"])
        bridge = action.steps[1]
        self.assertEqual(bridge.data, "0xabcdef")
        self.assertEqual(bridge.value, "0")
        self.assertEqual(bridge.expected_outputs["settlement_provider"], "lifi")
        self.assertEqual(bridge.expected_outputs["settlement_bridge"], "across")
        self.assertEqual(bridge.expected_outputs["to_amount_min"], "4965000")
        self.assertEqual(action.metadata["to_chain_id"], "eip155:42161")

    def test_plan_rejects_transaction_for_other_chain(self) -> None:
        body = _lifi_quote()
        body["transactionRequest"]["chainId"] = 1
        with self.assertRaises(DefiError) as ctx:
            LiFiClient(fakes.FakeRpc(), http=fakes.FakeHttp(body)).build_bridge_action(
                _bridge_request(), BridgeExecutionOptions(sender=fakes.SENDER)
            )
        self.assertEqual(ctx.exception.code, ErrorCode.ACTION_PLAN)

    def test_plan_without_payload_is_unavailable(self) -> None:
        body = _lifi_quote(transactionRequest={})
        with self.assertRaises(DefiError) as ctx:
            LiFiClient(fakes.FakeRpc(), http=fakes.FakeHttp(body)).build_bridge_action(
                _bridge_request(), BridgeExecutionOptions(sender=fakes.SENDER)
            )
        self.assertEqual(ctx.exception.code, ErrorCode.UNAVAILABLE)

    def test_destination_native_ignores_other_chains(self) -> None:
        steps = [{"action": {"toChainId": 10, "toToken": {"address": "0x" + "00" * 20}}, "estimate": {"toAmount": "5"}}]
        self.assertIsNone(destination_native_estimate(steps, 42161))


class QuoteOnlyProviderTests(unittest.TestCase):
    def test_oneinch_requires_api_key(self) -> None:
        with self.assertRaises(DefiError) as ctx:
            OneInchClient("").quote_swap(_taiko_swap_request())
        self.assertEqual(ctx.exception.code, ErrorCode.AUTH)

    def test_oneinch_quote_uses_bearer_header(self) -> None:
        http = fakes.FakeHttp({"dstAmount": "123"})
        quote = OneInchClient("secret", http=http).quote_swap(_taiko_swap_request())
        self.assertEqual(http.requests[0]["headers"], {"Authorization": "Bearer secret"})
        self.assertTrue(http.requests[0]["url"].endswith("/swap/v6.0/167000/quote"))
        self.assertEqual(quote.estimated_out.amount_base_units, "123")
        self.assertFalse(isinstance(OneInchClient("k"), SwapExecutor))

    def test_bungee_prefers_auto_route_output(self) -> None:
        http = fakes.FakeHttp(
            {
                "success": True,
                "result": {
                    "output": {"amount": "1"},
                    "autoRoute": {
                        "outputAmount": "4980000",
                        "estimatedTime": 30,
                        "gasFee": {"feeInUsd": 0.2},
                        "userTxs": [
                            {"stepType": "swap", "swapRoutes": [{"usedDexName": "Uniswap"}]},
                            {"stepType": "bridge", "bridgeRoutes": [{"usedBridgeNames": ["cctp", "across"]}]},
                        ],
                    },
                },
            }
        )
        quote = BungeeClient(http=http).quote_bridge(_bridge_request())
        self.assertEqual(quote.estimated_out.amount_base_units, "4980000")
        self.assertEqual(quote.route, "bungee:auto:swap(uniswap)->bridge(across+cctp)")
        self.assertEqual(quote.estimated_time_s, 30)
        self.assertIsNone(http.requests[0]["headers"])
        self.assertFalse(isinstance(BungeeClient(), BridgeExecutor))

    def test_bungee_dedicated_backend_needs_key_and_affiliate(self) -> None:
        http = fakes.FakeHttp({"success": True, "result": {"output": {"amount": "10"}}})
        BungeeClient("key", "aff", http=http).quote_bridge(_bridge_request())
        self.assertTrue(http.requests[0]["url"].startswith(BUNGEE_DEDICATED_BASE_URL))
        self.assertEqual(http.requests[0]["headers"], {"x-api-key": "key", "affiliate": "aff"})

    def test_bungee_failure_message_is_surfaced(self) -> None:
        http = fakes.FakeHttp({"success": False, "error": {"message": "no routes"}})
        with self.assertRaises(DefiError) as ctx:
            BungeeClient(http=http).quote_bridge(_bridge_request())
        self.assertEqual(str(ctx.exception), "no routes")

    def test_route_name_wins_over_user_txs(self) -> None:
        self.assertEqual(auto_route_details([{"stepType": "swap"}], " Relay "), "relay")


class ActionBuilderTests(unittest.TestCase):
    def _builder(self, http=None) -> ActionBuilder:
        rpc = fakes.FakeRpc()
        http = http or fakes.FakeHttp()
        return ActionBuilder(
            rpc,
            swap_providers={"taikoswap": TaikoSwapClient(rpc), "1inch": OneInchClient("", http=http)},
            bridge_providers={"lifi": LiFiClient(rpc, http=http), "bungee": BungeeClient(http=http)},
            http=http,
        )

    def test_aliases_normalize(self) -> None:
        self.assertEqual(normalize_name(" Li.Fi "), "lifi")
        self.assertEqual(normalize_name("aave-v3"), "aave")
        self.assertEqual(normalize_name("OneInch"), "1inch")

    def test_execution_provider_listing(self) -> None:
        builder = self._builder()
        self.assertEqual(builder.bridge_execution_providers(), ["lifi"])
        self.assertEqual(builder.swap_execution_providers(), ["taikoswap"])
        names = [info.name for info in builder.provider_infos()]
        self.assertEqual(names, ["bungee", "lifi", "1inch", "taikoswap"])

    def test_quote_only_bridge_provider_cannot_plan(self) -> None:
        with self.assertRaises(DefiError) as ctx:
            self._builder().build_bridge("bungee", _bridge_request(), BridgeExecutionOptions(sender=fakes.SENDER))
        self.assertEqual(ctx.exception.code, ErrorCode.UNSUPPORTED)
        self.assertIn("execution providers: lifi", str(ctx.exception))

    def test_quote_only_swap_provider_message_depends_on_operation(self) -> None:
        builder = self._builder()
        opts = SwapExecutionOptions(sender=fakes.SENDER)
        with self.assertRaises(DefiError) as ctx:
            builder.build_swap("1inch", "plan", _taiko_swap_request(), opts)
        self.assertIn("swap planning", str(ctx.exception))
        with self.assertRaises(DefiError) as ctx:
            builder.build_swap("1inch", "execute", _taiko_swap_request(), opts)
        self.assertIn("swap execution", str(ctx.exception))

    def test_unknown_and_missing_provider(self) -> None:
        builder = self._builder()
        with self.assertRaises(DefiError) as ctx:
            builder.quote_bridge("hop", _bridge_request())
        self.assertEqual(ctx.exception.code, ErrorCode.UNSUPPORTED)
        with self.assertRaises(DefiError) as ctx:
            builder.quote_swap("", _taiko_swap_request())
        self.assertEqual(ctx.exception.code, ErrorCode.USAGE)

    def test_rewards_only_for_aave(self) -> None:
        with self.assertRaises(DefiError) as ctx:
            self._builder().build_rewards_claim("morpho", None)
        self.assertEqual(ctx.exception.code, ErrorCode.UNSUPPORTED)


if __name__ == "__main__":
    unittest.main()
