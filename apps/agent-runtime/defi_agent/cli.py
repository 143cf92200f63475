#!/usr/bin/env python3
"""defi-agent command line: plan, persist and execute DeFi actions.

Every command prints exactly one compact JSON envelope on stdout. Failures use
``{"ok": false, "code", "message", "actionHint", "details"}`` and exit with the
code mapped from the error code; diagnostics go to stderr.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import pathlib
import sys
from dataclasses import dataclass
from typing import Any, Callable

from .actions import (
    ACTION_STATUSES,
    INTENT_APPROVE,
    INTENT_BRIDGE,
    INTENT_CLAIM_REWARDS,
    INTENT_COMPOUND_REWARDS,
    INTENT_SWAP,
    STATUS_COMPLETED,
    Action,
)
from .builder import ActionBuilder, LendRequest
from .errors import DefiError, ErrorCode, exit_code_for, usage
from .estimate import EstimateOptions, estimate_action_gas
from .executor import ExecuteOptions, build_execute_options, execute_action
from .ids import (
    CHAINS_BY_ID,
    DEFAULT_RPC_URLS,
    Asset,
    Chain,
    is_hex_address,
    normalize_amount,
    resolve_asset,
    resolve_chain,
    same_address,
    to_checksum_address,
)
from .planner import AaveRewardsRequest, ApprovalRequest
from .planner.aave import LEND_VERBS
from .providers import BridgeExecutionOptions, BridgeQuoteRequest, SwapExecutionOptions, SwapQuoteRequest
from .rpc import CastClient
from .settings import Settings, configure_logging
from .signer import (
    KEY_SOURCE_AUTO,
    KEY_SOURCES,
    Signer,
    default_keystore_path,
    load_local_signer,
    normalize_private_key_hex,
    validate_keystore_shape,
    write_keystore,
)
from .store import ActionStore

log = logging.getLogger(__name__)

ENV_WALLET_IMPORT_PRIVATE_KEY = "DEFI_WALLET_IMPORT_PRIVATE_KEY"
SIGNER_BACKENDS = ("local",)

SignerFactory = Callable[[CastClient, str, "str | None"], Signer]


@dataclass
class Runtime:
    """Process-wide handles, built once in ``main``."""

    settings: Settings
    rpc: CastClient
    store: ActionStore
    builder: ActionBuilder
    signer_factory: SignerFactory = load_local_signer

    @classmethod
    def from_settings(cls, settings: Settings) -> "Runtime":
        rpc = CastClient(settings)
        return cls(
            settings=settings,
            rpc=rpc,
            store=ActionStore(settings.actions_path, settings.actions_lock_path),
            builder=ActionBuilder.from_settings(settings, rpc),
        )


def emit(payload: dict) -> int:
    print(json.dumps(payload, separators=(",", ":")))
    return 0


def ok(message: str, **extra: object) -> int:
    payload = {"ok": True, "code": "ok", "message": message}
    payload.update(extra)
    return emit(payload)


def fail(code: str, message: str, action_hint: str | None = None, details: dict | None = None, exit_code: int = 1) -> int:
    payload: dict[str, object] = {"ok": False, "code": code, "message": message}
    if action_hint:
        payload["actionHint"] = action_hint
    if details:
        payload["details"] = details
    emit(payload)
    return exit_code


def fail_error(exc: DefiError) -> int:
    return fail(exc.code.value, str(exc), exc.action_hint, exc.details, exit_code=exit_code_for(exc))


def _action_ok(message: str, action: Action, warnings: list[str] | None = None) -> int:
    extra: dict[str, Any] = {"action": action.to_dict()}
    if warnings:
        extra["warnings"] = warnings
    return ok(message, **extra)


# --- shared argument resolution -------------------------------------------


def _resolve_amount(args: argparse.Namespace, asset: Asset) -> tuple[str, str]:
    return normalize_amount(getattr(args, "amount", None), getattr(args, "amount_decimal", None), asset.decimals)


def _execute_options(args: argparse.Namespace) -> ExecuteOptions:
    return build_execute_options(
        simulate=args.simulate,
        poll_interval=args.poll_interval,
        step_timeout=args.step_timeout,
        gas_multiplier=args.gas_multiplier,
        max_fee_gwei=args.max_fee_gwei,
        max_priority_fee_gwei=args.max_priority_fee_gwei,
        allow_max_approval=args.allow_max_approval,
        unsafe_provider_tx=args.unsafe_provider_tx,
        action_timeout=args.timeout,
    )


def _load_signer(args: argparse.Namespace, rt: Runtime) -> Signer:
    backend = (args.signer or "local").strip().lower()
    if backend not in SIGNER_BACKENDS:
        raise usage(f'unsupported signer backend "{args.signer}" (expected local)')
    return rt.signer_factory(rt.rpc, args.key_source, args.private_key)


def _run_sender(args: argparse.Namespace, signer: Signer) -> str:
    signer_address = to_checksum_address(signer.address())
    expected = (args.from_address or "").strip()
    if expected and not same_address(expected, signer_address):
        raise DefiError(
            ErrorCode.SIGNER,
            "signer address does not match --from-address",
            details={"signer": signer_address, "fromAddress": expected},
        )
    return signer_address


def _execute(rt: Runtime, action: Action, signer: Signer, options: ExecuteOptions) -> list[str]:
    try:
        return execute_action(rt.store, action, signer, options, rt.rpc, http_timeout=rt.settings.http_timeout_sec)
    except DefiError as exc:
        exc.details.setdefault("actionId", action.action_id)
        raise


def _plan_and_maybe_run(
    args: argparse.Namespace, rt: Runtime, build: Callable[[str], Action], run: bool, noun: str
) -> int:
    if not run:
        action = build(args.from_address or "")
        rt.store.save(action)
        return _action_ok(f"{noun} action planned.", action)

    signer = _load_signer(args, rt)
    sender = _run_sender(args, signer)
    options = _execute_options(args)
    action = build(sender)
    rt.store.save(action)
    warnings = _execute(rt, action, signer, options)
    return _action_ok(f"{noun} action executed.", action, warnings)


def _load_action(rt: Runtime, action_id: str, intent: str | tuple[str, ...]) -> Action:
    if not (action_id or "").strip():
        raise usage("--action-id is required")
    action = rt.store.get(action_id.strip())
    allowed = (intent,) if isinstance(intent, str) else intent
    if action.intent_type not in allowed:
        raise usage(
            f"action is not a {'/'.join(allowed)} intent",
            actionId=action.action_id,
            intentType=action.intent_type,
        )
    return action


def _submit(args: argparse.Namespace, rt: Runtime, intent: str | tuple[str, ...], noun: str) -> int:
    action = _load_action(rt, args.action_id, intent)
    if action.status == STATUS_COMPLETED:
        return _action_ok(f"{noun} action already completed.", action, ["action already completed"])
    signer = _load_signer(args, rt)
    signer_address = to_checksum_address(signer.address())
    expected = (args.from_address or "").strip()
    if expected and not same_address(expected, signer_address):
        raise DefiError(ErrorCode.SIGNER, "signer address does not match --from-address")
    if action.from_address.strip() and not same_address(action.from_address, signer_address):
        raise DefiError(
            ErrorCode.SIGNER,
            "signer address does not match planned action sender",
            details={"signer": signer_address, "fromAddress": action.from_address},
        )
    options = _execute_options(args)
    warnings = _execute(rt, action, signer, options)
    return _action_ok(f"{noun} action executed.", action, warnings)


def _status(args: argparse.Namespace, rt: Runtime, intent: str | tuple[str, ...], noun: str) -> int:
    action = _load_action(rt, args.action_id, intent)
    return _action_ok(f"{noun} action status fetched.", action)


# --- lend ------------------------------------------------------------------


def _lend_intent(args: argparse.Namespace) -> str:
    return f"lend_{args.lend_verb}"


def _lend_builder(args: argparse.Namespace, rt: Runtime) -> Callable[[str], Action]:
    chain = resolve_chain(args.chain)
    asset = resolve_asset(args.asset, chain)
    amount, _ = _resolve_amount(args, asset)

    def build(sender: str) -> Action:
        return rt.builder.build_lend(
            LendRequest(
                protocol=args.protocol,
                verb=args.lend_verb,
                chain=chain,
                asset=asset,
                amount_base_units=amount,
                sender=sender,
                recipient=args.recipient or "",
                on_behalf_of=args.on_behalf_of or "",
                interest_rate_mode=args.interest_rate_mode,
                market_id=args.market_id or "",
                simulate=args.simulate,
                rpc_url=args.rpc_url or "",
                pool_address=args.pool_address or "",
                pool_address_provider=args.pool_address_provider or "",
            )
        )

    return build


def cmd_lend_plan(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _lend_builder(args, rt), run=False, noun="Lend")


def cmd_lend_run(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _lend_builder(args, rt), run=True, noun="Lend")


def cmd_lend_submit(args: argparse.Namespace, rt: Runtime) -> int:
    return _submit(args, rt, _lend_intent(args), "Lend")


def cmd_lend_status(args: argparse.Namespace, rt: Runtime) -> int:
    return _status(args, rt, _lend_intent(args), "Lend")


# --- rewards ---------------------------------------------------------------


def _rewards_intent(args: argparse.Namespace) -> str:
    return INTENT_COMPOUND_REWARDS if args.rewards_verb == "compound" else INTENT_CLAIM_REWARDS


def _rewards_builder(args: argparse.Namespace, rt: Runtime) -> Callable[[str], Action]:
    chain = resolve_chain(args.chain)

    def build(sender: str) -> Action:
        req = AaveRewardsRequest(
            chain=chain,
            sender=sender,
            reward_token=args.reward_token,
            assets=list(args.assets or []),
            recipient=args.recipient or "",
            amount_base_units=args.amount or "",
            simulate=args.simulate,
            rpc_url=args.rpc_url or "",
            controller_address=args.controller_address or "",
            pool_address=args.pool_address or "",
            pool_address_provider=args.pool_address_provider or "",
            on_behalf_of=args.on_behalf_of or "",
        )
        if args.rewards_verb == "compound":
            return rt.builder.build_rewards_compound(args.protocol, req)
        return rt.builder.build_rewards_claim(args.protocol, req)

    return build


def cmd_rewards_plan(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _rewards_builder(args, rt), run=False, noun="Rewards")


def cmd_rewards_run(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _rewards_builder(args, rt), run=True, noun="Rewards")


def cmd_rewards_submit(args: argparse.Namespace, rt: Runtime) -> int:
    return _submit(args, rt, _rewards_intent(args), "Rewards")


def cmd_rewards_status(args: argparse.Namespace, rt: Runtime) -> int:
    return _status(args, rt, _rewards_intent(args), "Rewards")


# --- approvals -------------------------------------------------------------


def _approval_builder(args: argparse.Namespace, rt: Runtime) -> Callable[[str], Action]:
    chain = resolve_chain(args.chain)
    asset = resolve_asset(args.asset, chain)
    amount, _ = _resolve_amount(args, asset)

    def build(sender: str) -> Action:
        return rt.builder.build_approval(
            ApprovalRequest(
                chain=chain,
                asset=asset,
                amount_base_units=amount,
                sender=sender,
                spender=args.spender,
                simulate=args.simulate,
                rpc_url=args.rpc_url or "",
            )
        )

    return build


def cmd_approvals_plan(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _approval_builder(args, rt), run=False, noun="Approval")


def cmd_approvals_run(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _approval_builder(args, rt), run=True, noun="Approval")


def cmd_approvals_submit(args: argparse.Namespace, rt: Runtime) -> int:
    return _submit(args, rt, INTENT_APPROVE, "Approval")


def cmd_approvals_status(args: argparse.Namespace, rt: Runtime) -> int:
    return _status(args, rt, INTENT_APPROVE, "Approval")


# --- swap ------------------------------------------------------------------


def _swap_request(args: argparse.Namespace) -> SwapQuoteRequest:
    chain = resolve_chain(args.chain)
    from_asset = resolve_asset(args.from_asset, chain)
    to_asset = resolve_asset(args.to_asset, chain)
    amount, amount_decimal = _resolve_amount(args, from_asset)
    return SwapQuoteRequest(
        chain=chain,
        from_asset=from_asset,
        to_asset=to_asset,
        amount_base_units=amount,
        amount_decimal=amount_decimal,
        rpc_url=args.rpc_url or "",
    )


def _swap_builder(args: argparse.Namespace, rt: Runtime, operation: str) -> Callable[[str], Action]:
    req = _swap_request(args)

    def build(sender: str) -> Action:
        opts = SwapExecutionOptions(
            sender=sender,
            recipient=args.recipient or "",
            slippage_bps=args.slippage_bps,
            simulate=args.simulate,
            rpc_url=args.rpc_url or "",
        )
        return rt.builder.build_swap(args.provider, operation, req, opts)

    return build


def cmd_swap_quote(args: argparse.Namespace, rt: Runtime) -> int:
    quote = rt.builder.quote_swap(args.provider, _swap_request(args))
    return ok("Swap quote fetched.", quote=quote.to_dict())


def cmd_swap_plan(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _swap_builder(args, rt, "plan"), run=False, noun="Swap")


def cmd_swap_run(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _swap_builder(args, rt, "execute"), run=True, noun="Swap")


def cmd_swap_submit(args: argparse.Namespace, rt: Runtime) -> int:
    return _submit(args, rt, INTENT_SWAP, "Swap")


def cmd_swap_status(args: argparse.Namespace, rt: Runtime) -> int:
    return _status(args, rt, INTENT_SWAP, "Swap")


# --- bridge ----------------------------------------------------------------


def _bridge_request(args: argparse.Namespace) -> BridgeQuoteRequest:
    from_chain = resolve_chain(args.from_chain)
    to_chain = resolve_chain(args.to_chain)
    from_asset = resolve_asset(args.asset, from_chain)
    to_asset_input = (args.to_asset or "").strip()
    if not to_asset_input:
        if is_hex_address(args.asset.strip()) or "/" in args.asset:
            raise usage("--to-asset is required when --asset is an address or CAIP-19 id")
        to_asset_input = args.asset
    to_asset = resolve_asset(to_asset_input, to_chain)
    amount, amount_decimal = _resolve_amount(args, from_asset)
    return BridgeQuoteRequest(
        from_chain=from_chain,
        to_chain=to_chain,
        from_asset=from_asset,
        to_asset=to_asset,
        amount_base_units=amount,
        amount_decimal=amount_decimal,
        from_amount_for_gas=args.from_amount_for_gas or "",
    )


def _bridge_builder(args: argparse.Namespace, rt: Runtime) -> Callable[[str], Action]:
    req = _bridge_request(args)

    def build(sender: str) -> Action:
        opts = BridgeExecutionOptions(
            sender=sender,
            recipient=args.recipient or "",
            slippage_bps=args.slippage_bps,
            simulate=args.simulate,
            rpc_url=args.rpc_url or "",
            from_amount_for_gas=args.from_amount_for_gas or "",
        )
        return rt.builder.build_bridge(args.provider, req, opts)

    return build


def cmd_bridge_quote(args: argparse.Namespace, rt: Runtime) -> int:
    quote = rt.builder.quote_bridge(args.provider, _bridge_request(args))
    return ok("Bridge quote fetched.", quote=quote.to_dict())


def cmd_bridge_plan(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _bridge_builder(args, rt), run=False, noun="Bridge")


def cmd_bridge_run(args: argparse.Namespace, rt: Runtime) -> int:
    return _plan_and_maybe_run(args, rt, _bridge_builder(args, rt), run=True, noun="Bridge")


def cmd_bridge_submit(args: argparse.Namespace, rt: Runtime) -> int:
    return _submit(args, rt, INTENT_BRIDGE, "Bridge")


def cmd_bridge_status(args: argparse.Namespace, rt: Runtime) -> int:
    return _status(args, rt, INTENT_BRIDGE, "Bridge")


# --- actions ---------------------------------------------------------------


def cmd_actions_list(args: argparse.Namespace, rt: Runtime) -> int:
    if args.limit < 0:
        raise usage("--limit must be >= 0")
    actions = rt.store.list(status=args.status, limit=args.limit)
    return ok("Actions listed.", count=len(actions), actions=[action.to_dict() for action in actions])


def cmd_actions_show(args: argparse.Namespace, rt: Runtime) -> int:
    if not (args.action_id or "").strip():
        raise usage("--action-id is required")
    return _action_ok("Action fetched.", rt.store.get(args.action_id.strip()))


def cmd_actions_estimate(args: argparse.Namespace, rt: Runtime) -> int:
    if not (args.action_id or "").strip():
        raise usage("--action-id is required")
    action = rt.store.get(args.action_id.strip())
    step_ids = [part for value in args.step_ids or [] for part in value.split(",")]
    estimate = estimate_action_gas(
        action,
        rt.rpc,
        EstimateOptions(
            step_ids=step_ids,
            gas_multiplier=args.gas_multiplier,
            max_fee_gwei=args.max_fee_gwei,
            max_priority_fee_gwei=args.max_priority_fee_gwei,
            block_tag=args.block_tag,
        ),
    )
    return ok("Action gas estimated.", estimate=estimate)


# --- wallet ----------------------------------------------------------------


def _interactive() -> bool:
    return sys.stdin.isatty() and sys.stderr.isatty()


def _import_private_key_input() -> str:
    env_private_key = (os.environ.get(ENV_WALLET_IMPORT_PRIVATE_KEY) or "").strip()
    if env_private_key:
        return env_private_key
    if not _interactive():
        raise usage(
            f"wallet import requires {ENV_WALLET_IMPORT_PRIVATE_KEY} in non-interactive mode",
            envVar=ENV_WALLET_IMPORT_PRIVATE_KEY,
        )
    return getpass.getpass("Private key (hex, optional 0x): ")


def _import_passphrase() -> str:
    env_passphrase = (os.environ.get("DEFI_KEYSTORE_PASSWORD") or "").strip()
    if env_passphrase:
        return env_passphrase
    if not _interactive():
        raise usage("wallet import requires DEFI_KEYSTORE_PASSWORD in non-interactive mode")
    first = getpass.getpass("Keystore password: ").strip()
    second = getpass.getpass("Confirm keystore password: ").strip()
    if not first:
        raise usage("keystore password cannot be empty")
    if first != second:
        raise usage("keystore password confirmation mismatch")
    return first


def cmd_wallet_import(args: argparse.Namespace, rt: Runtime) -> int:
    path = pathlib.Path(args.keystore_path).expanduser() if args.keystore_path else default_keystore_path()
    if path.exists() and not args.force:
        raise DefiError(
            ErrorCode.USAGE,
            f"keystore already exists at '{path}'",
            "Pass --force to overwrite it.",
            {"keystorePath": str(path)},
        )
    private_key_hex = normalize_private_key_hex(_import_private_key_input())
    if private_key_hex is None:
        raise usage("private key must be 32-byte hex (64 chars, optional 0x prefix)")
    entry = write_keystore(path, private_key_hex, _import_passphrase())
    return ok("Wallet imported.", address=entry["address"], keystorePath=str(path))


def cmd_wallet_address(args: argparse.Namespace, rt: Runtime) -> int:
    if args.key_source == "keystore" and not args.private_key:
        path = default_keystore_path()
        try:
            entry = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise DefiError(
                ErrorCode.SIGNER,
                f"no keystore at '{path}'",
                "Run `defi-agent wallet import` first.",
            ) from exc
        except json.JSONDecodeError as exc:
            raise DefiError(ErrorCode.SIGNER, "keystore file is not valid JSON") from exc
        validate_keystore_shape(entry)
        return ok("Wallet address fetched.", address=to_checksum_address(entry["address"]), keySource="keystore")
    signer = _load_signer(args, rt)
    return ok("Wallet address fetched.", address=to_checksum_address(signer.address()), keySource=args.key_source)


# --- registry listings -----------------------------------------------------


def _chain_row(chain: Chain) -> dict[str, Any]:
    return {
        "name": chain.name,
        "slug": chain.slug,
        "chainId": chain.chain_id,
        "caip2": chain.caip2,
        "defaultRpcUrl": DEFAULT_RPC_URLS.get(chain.chain_id),
    }


def cmd_chains_list(args: argparse.Namespace, rt: Runtime) -> int:
    chains = [_chain_row(chain) for chain in sorted(CHAINS_BY_ID.values(), key=lambda c: c.chain_id)]
    return ok("Chains listed.", count=len(chains), chains=chains)


def cmd_providers_list(args: argparse.Namespace, rt: Runtime) -> int:
    providers = [info.to_dict() for info in rt.builder.provider_infos()]
    protocols = [
        {"name": "aave", "type": "lend", "capabilities": ["lend.plan", "lend.execute", "rewards.claim", "rewards.compound"]},
        {"name": "morpho", "type": "lend", "capabilities": ["lend.plan", "lend.execute"]},
    ]
    return ok("Providers listed.", providers=providers, protocols=protocols)


# --- parser ----------------------------------------------------------------


def _add_exec_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--signer", default="local")
    p.add_argument("--key-source", default=KEY_SOURCE_AUTO, choices=KEY_SOURCES)
    p.add_argument("--private-key")
    p.add_argument("--poll-interval", default="2s")
    p.add_argument("--step-timeout", default="2m")
    p.add_argument("--gas-multiplier", type=float, default=1.2)
    p.add_argument("--max-fee-gwei", default="")
    p.add_argument("--max-priority-fee-gwei", default="")
    p.add_argument("--allow-max-approval", action="store_true")
    p.add_argument("--unsafe-provider-tx", action="store_true")
    p.add_argument("--timeout", default="")


def _add_simulate_flag(p: argparse.ArgumentParser) -> None:
    p.add_argument("--simulate", action=argparse.BooleanOptionalAction, default=True)


def _add_amount_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--amount")
    p.add_argument("--amount-decimal")


def _add_lifecycle(
    parent_sub: argparse._SubParsersAction,
    add_plan_flags: Callable[[argparse.ArgumentParser, bool], None],
    handlers: dict[str, Callable[[argparse.Namespace, Runtime], int]],
    **defaults: Any,
) -> None:
    plan = parent_sub.add_parser("plan")
    add_plan_flags(plan, True)
    _add_simulate_flag(plan)
    plan.set_defaults(func=handlers["plan"], **defaults)

    run = parent_sub.add_parser("run")
    add_plan_flags(run, False)
    _add_simulate_flag(run)
    _add_exec_flags(run)
    run.set_defaults(func=handlers["run"], **defaults)

    submit = parent_sub.add_parser("submit")
    submit.add_argument("--action-id", required=True)
    submit.add_argument("--from-address")
    _add_simulate_flag(submit)
    _add_exec_flags(submit)
    submit.set_defaults(func=handlers["submit"], **defaults)

    status = parent_sub.add_parser("status")
    status.add_argument("--action-id", required=True)
    status.set_defaults(func=handlers["status"], **defaults)


def _lend_flags(p: argparse.ArgumentParser, sender_required: bool) -> None:
    p.add_argument("--protocol", required=True)
    p.add_argument("--chain", required=True)
    p.add_argument("--asset", required=True)
    _add_amount_flags(p)
    p.add_argument("--from-address", required=sender_required)
    p.add_argument("--recipient")
    p.add_argument("--on-behalf-of")
    p.add_argument("--interest-rate-mode", type=int, default=2)
    p.add_argument("--market-id")
    p.add_argument("--rpc-url")
    p.add_argument("--pool-address")
    p.add_argument("--pool-address-provider")


def _rewards_flags(p: argparse.ArgumentParser, sender_required: bool) -> None:
    p.add_argument("--protocol", required=True)
    p.add_argument("--chain", required=True)
    p.add_argument("--from-address", required=sender_required)
    p.add_argument("--assets", action="append", required=True)
    p.add_argument("--reward-token", required=True)
    p.add_argument("--amount")
    p.add_argument("--recipient")
    p.add_argument("--on-behalf-of")
    p.add_argument("--rpc-url")
    p.add_argument("--controller-address")
    p.add_argument("--pool-address")
    p.add_argument("--pool-address-provider")


def _approval_flags(p: argparse.ArgumentParser, sender_required: bool) -> None:
    p.add_argument("--chain", required=True)
    p.add_argument("--asset", required=True)
    _add_amount_flags(p)
    p.add_argument("--spender", required=True)
    p.add_argument("--from-address", required=sender_required)
    p.add_argument("--rpc-url")


def _swap_quote_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--provider", required=True)
    p.add_argument("--chain", required=True)
    p.add_argument("--from-asset", required=True)
    p.add_argument("--to-asset", required=True)
    _add_amount_flags(p)
    p.add_argument("--rpc-url")


def _swap_flags(p: argparse.ArgumentParser, sender_required: bool) -> None:
    _swap_quote_flags(p)
    p.add_argument("--from-address", required=sender_required)
    p.add_argument("--recipient")
    p.add_argument("--slippage-bps", type=int, default=0)


def _bridge_quote_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--provider", required=True)
    p.add_argument("--from", dest="from_chain", required=True)
    p.add_argument("--to", dest="to_chain", required=True)
    p.add_argument("--asset", required=True)
    p.add_argument("--to-asset")
    _add_amount_flags(p)
    p.add_argument("--from-amount-for-gas")


def _bridge_flags(p: argparse.ArgumentParser, sender_required: bool) -> None:
    _bridge_quote_flags(p)
    p.add_argument("--from-address", required=sender_required)
    p.add_argument("--recipient")
    p.add_argument("--slippage-bps", type=int, default=0)
    p.add_argument("--rpc-url")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="defi-agent", add_help=True)
    p.add_argument("--verbose", action="store_true", help="log debug diagnostics to stderr")
    sub = p.add_subparsers(dest="top")

    lend = sub.add_parser("lend")
    lend_sub = lend.add_subparsers(dest="lend_verb")
    for verb in LEND_VERBS:
        verb_parser = lend_sub.add_parser(verb)
        _add_lifecycle(
            verb_parser.add_subparsers(dest="lend_cmd"),
            _lend_flags,
            {"plan": cmd_lend_plan, "run": cmd_lend_run, "submit": cmd_lend_submit, "status": cmd_lend_status},
            lend_verb=verb,
        )

    rewards = sub.add_parser("rewards")
    rewards_sub = rewards.add_subparsers(dest="rewards_verb")
    for verb in ("claim", "compound"):
        verb_parser = rewards_sub.add_parser(verb)
        _add_lifecycle(
            verb_parser.add_subparsers(dest="rewards_cmd"),
            _rewards_flags,
            {"plan": cmd_rewards_plan, "run": cmd_rewards_run, "submit": cmd_rewards_submit, "status": cmd_rewards_status},
            rewards_verb=verb,
        )

    approvals = sub.add_parser("approvals")
    _add_lifecycle(
        approvals.add_subparsers(dest="approvals_cmd"),
        _approval_flags,
        {"plan": cmd_approvals_plan, "run": cmd_approvals_run, "submit": cmd_approvals_submit, "status": cmd_approvals_status},
    )

    swap = sub.add_parser("swap")
    swap_sub = swap.add_subparsers(dest="swap_cmd")
    swap_quote = swap_sub.add_parser("quote")
    _swap_quote_flags(swap_quote)
    swap_quote.set_defaults(func=cmd_swap_quote)
    _add_lifecycle(
        swap_sub,
        _swap_flags,
        {"plan": cmd_swap_plan, "run": cmd_swap_run, "submit": cmd_swap_submit, "status": cmd_swap_status},
    )

    bridge = sub.add_parser("bridge")
    bridge_sub = bridge.add_subparsers(dest="bridge_cmd")
    bridge_quote = bridge_sub.add_parser("quote")
    _bridge_quote_flags(bridge_quote)
    bridge_quote.set_defaults(func=cmd_bridge_quote)
    _add_lifecycle(
        bridge_sub,
        _bridge_flags,
        {"plan": cmd_bridge_plan, "run": cmd_bridge_run, "submit": cmd_bridge_submit, "status": cmd_bridge_status},
    )

    actions = sub.add_parser("actions")
    actions_sub = actions.add_subparsers(dest="actions_cmd")
    actions_list = actions_sub.add_parser("list")
    actions_list.add_argument("--status", choices=ACTION_STATUSES)
    actions_list.add_argument("--limit", type=int, default=20)
    actions_list.set_defaults(func=cmd_actions_list)

    actions_show = actions_sub.add_parser("show")
    actions_show.add_argument("--action-id", required=True)
    actions_show.set_defaults(func=cmd_actions_show)

    actions_estimate = actions_sub.add_parser("estimate")
    actions_estimate.add_argument("--action-id", required=True)
    actions_estimate.add_argument("--step-ids", action="append")
    actions_estimate.add_argument("--block-tag", default="pending")
    actions_estimate.add_argument("--gas-multiplier", type=float, default=1.2)
    actions_estimate.add_argument("--max-fee-gwei", default="")
    actions_estimate.add_argument("--max-priority-fee-gwei", default="")
    actions_estimate.set_defaults(func=cmd_actions_estimate)

    wallet = sub.add_parser("wallet")
    wallet_sub = wallet.add_subparsers(dest="wallet_cmd")
    w_import = wallet_sub.add_parser("import")
    w_import.add_argument("--keystore-path")
    w_import.add_argument("--force", action="store_true")
    w_import.set_defaults(func=cmd_wallet_import)

    w_address = wallet_sub.add_parser("address")
    w_address.add_argument("--signer", default="local")
    w_address.add_argument("--key-source", default="keystore", choices=KEY_SOURCES)
    w_address.add_argument("--private-key")
    w_address.set_defaults(func=cmd_wallet_address)

    chains = sub.add_parser("chains")
    chains_sub = chains.add_subparsers(dest="chains_cmd")
    chains_list = chains_sub.add_parser("list")
    chains_list.set_defaults(func=cmd_chains_list)

    providers = sub.add_parser("providers")
    providers_sub = providers.add_subparsers(dest="providers_cmd")
    providers_list = providers_sub.add_parser("list")
    providers_list.set_defaults(func=cmd_providers_list)

    return p


def main(argv: list[str] | None = None, runtime: Runtime | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 2

    try:
        rt = runtime or Runtime.from_settings(Settings.from_env())
        configure_logging("DEBUG" if args.verbose else rt.settings.log_level)
        return int(args.func(args, rt))
    except DefiError as exc:
        log.debug("command failed: %s", exc, exc_info=True)
        return fail_error(exc)
    except Exception as exc:
        log.exception("unexpected failure")
        return fail(ErrorCode.INTERNAL.value, str(exc) or type(exc).__name__, exit_code=exit_code_for(exc))


if __name__ == "__main__":
    raise SystemExit(main())
