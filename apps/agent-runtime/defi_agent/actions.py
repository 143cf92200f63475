from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

STATUS_PLANNED = "planned"
STATUS_EXECUTING = "executing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
ACTION_STATUSES = (STATUS_PLANNED, STATUS_EXECUTING, STATUS_COMPLETED, STATUS_FAILED)

STEP_PENDING = "pending"
STEP_SUBMITTED = "submitted"
STEP_CONFIRMED = "confirmed"
STEP_FAILED = "failed"

STEP_APPROVAL = "approval"
STEP_LEND_CALL = "lend_call"
STEP_CLAIM = "claim"
STEP_SWAP = "swap"
STEP_BRIDGE = "bridge"

INTENT_LEND_SUPPLY = "lend_supply"
INTENT_LEND_WITHDRAW = "lend_withdraw"
INTENT_LEND_BORROW = "lend_borrow"
INTENT_LEND_REPAY = "lend_repay"
INTENT_CLAIM_REWARDS = "claim_rewards"
INTENT_COMPOUND_REWARDS = "compound_rewards"
INTENT_APPROVE = "approve"
INTENT_SWAP = "swap"
INTENT_BRIDGE = "bridge"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def new_action_id() -> str:
    return "act_" + secrets.token_hex(16)


@dataclass
class Constraints:
    slippage_bps: int = 0
    deadline: str = ""
    simulate: bool = True

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"simulate": self.simulate}
        if self.slippage_bps:
            out["slippage_bps"] = self.slippage_bps
        if self.deadline:
            out["deadline"] = self.deadline
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "Constraints":
        raw = raw or {}
        return cls(
            slippage_bps=int(raw.get("slippage_bps") or 0),
            deadline=str(raw.get("deadline") or ""),
            simulate=bool(raw.get("simulate", True)),
        )


@dataclass
class ActionStep:
    step_id: str
    type: str
    chain_id: str
    target: str
    data: str
    description: str = ""
    rpc_url: str = ""
    value: str = "0"
    status: str = STEP_PENDING
    expected_outputs: dict[str, str] = field(default_factory=dict)
    tx_hash: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "step_id": self.step_id,
            "type": self.type,
            "status": self.status,
            "chain_id": self.chain_id,
            "rpc_url": self.rpc_url,
            "description": self.description,
            "target": self.target,
            "data": self.data,
            "value": self.value,
        }
        if self.expected_outputs:
            out["expected_outputs"] = dict(self.expected_outputs)
        if self.tx_hash:
            out["tx_hash"] = self.tx_hash
        if self.error:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ActionStep":
        return cls(
            step_id=str(raw.get("step_id") or ""),
            type=str(raw.get("type") or ""),
            status=str(raw.get("status") or STEP_PENDING),
            chain_id=str(raw.get("chain_id") or ""),
            rpc_url=str(raw.get("rpc_url") or ""),
            description=str(raw.get("description") or ""),
            target=str(raw.get("target") or ""),
            data=str(raw.get("data") or ""),
            value=str(raw.get("value") or "0"),
            expected_outputs={str(k): str(v) for k, v in (raw.get("expected_outputs") or {}).items()},
            tx_hash=str(raw.get("tx_hash") or ""),
            error=str(raw.get("error") or ""),
        )


@dataclass
class Action:
    """A planned intent and the ordered transactions that realize it."""

    action_id: str
    intent_type: str
    provider: str
    chain_id: str
    status: str = STATUS_PLANNED
    from_address: str = ""
    to_address: str = ""
    input_amount: str = ""
    created_at: str = ""
    updated_at: str = ""
    constraints: Constraints = field(default_factory=Constraints)
    metadata: dict[str, Any] = field(default_factory=dict)
    provider_data: dict[str, Any] | None = None
    steps: list[ActionStep] = field(default_factory=list)

    def touch(self) -> None:
        self.updated_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "action_id": self.action_id,
            "intent_type": self.intent_type,
            "provider": self.provider,
            "status": self.status,
            "chain_id": self.chain_id,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "input_amount": self.input_amount,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "constraints": self.constraints.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
        }
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        if self.provider_data is not None:
            out["provider_data"] = self.provider_data
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Action":
        return cls(
            action_id=str(raw.get("action_id") or ""),
            intent_type=str(raw.get("intent_type") or ""),
            provider=str(raw.get("provider") or ""),
            status=str(raw.get("status") or STATUS_PLANNED),
            chain_id=str(raw.get("chain_id") or ""),
            from_address=str(raw.get("from_address") or ""),
            to_address=str(raw.get("to_address") or ""),
            input_amount=str(raw.get("input_amount") or ""),
            created_at=str(raw.get("created_at") or ""),
            updated_at=str(raw.get("updated_at") or ""),
            constraints=Constraints.from_dict(raw.get("constraints")),
            metadata=dict(raw.get("metadata") or {}),
            provider_data=raw.get("provider_data"),
            steps=[ActionStep.from_dict(step) for step in raw.get("steps") or []],
        )


def new_action(intent_type: str, provider: str, chain_id: str, constraints: Constraints | None = None) -> Action:
    now = utc_now()
    return Action(
        action_id=new_action_id(),
        intent_type=intent_type,
        provider=provider,
        chain_id=chain_id,
        status=STATUS_PLANNED,
        created_at=now,
        updated_at=now,
        constraints=constraints or Constraints(),
    )
