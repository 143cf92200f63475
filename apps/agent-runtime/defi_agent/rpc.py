"""EVM RPC access over Foundry ``cast`` subprocesses."""

from __future__ import annotations

import json
import logging
import os
import pathlib
import re
import shutil
import subprocess
from typing import Any

from .errors import DefiError, ErrorCode, SubprocessTimeout, internal, unavailable
from .settings import Settings

log = logging.getLogger(__name__)

_HEX_DATA_RE = re.compile(r"0x[a-fA-F0-9]*")
_TX_HASH_RE = re.compile(r"0x[a-fA-F0-9]{64}")


def _find_cast_bin() -> str | None:
    # Services often run with a minimal PATH; fall back to the default Foundry install location.
    candidates: list[str] = []
    explicit = (os.environ.get("DEFI_CAST_BIN") or "").strip()
    if explicit:
        candidates.append(explicit)

    foundry_bin = (os.environ.get("FOUNDRY_BIN") or "").strip()
    if foundry_bin:
        candidates.append(str(pathlib.Path(foundry_bin) / "cast"))

    which_cast = shutil.which("cast")
    if which_cast:
        candidates.append(which_cast)

    candidates.append(str(pathlib.Path.home() / ".foundry" / "bin" / "cast"))

    for entry in candidates:
        try:
            path = pathlib.Path(entry).expanduser()
            if path.is_file() and os.access(path, os.X_OK):
                return str(path)
        except OSError:
            continue
    return None


def _require_cast_bin() -> str:
    cast_bin = _find_cast_bin()
    if not cast_bin:
        raise DefiError(
            ErrorCode.UNAVAILABLE,
            "Missing dependency: cast.",
            "Install Foundry (https://getfoundry.sh) or set DEFI_CAST_BIN.",
        )
    return cast_bin


def _run_subprocess(cmd: list[str], *, timeout_sec: int, kind: str) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(cmd, text=True, capture_output=True, timeout=timeout_sec)
    except subprocess.TimeoutExpired as exc:
        raise SubprocessTimeout(kind=kind, timeout_sec=timeout_sec, cmd=cmd) from exc


def _proc_error(proc: subprocess.CompletedProcess[str], fallback: str) -> str:
    stderr = (proc.stderr or "").strip()
    stdout = (proc.stdout or "").strip()
    return stderr or stdout or fallback


def parse_uint_text(value: str) -> int:
    raw = (value or "").strip().strip('"')
    if re.fullmatch(r"[0-9]+", raw):
        return int(raw)
    if re.fullmatch(r"0x[a-fA-F0-9]+", raw):
        return int(raw, 16)
    # cast appends a scientific-notation hint for large values, e.g. "20000000000000000000000 [2e22]".
    prefix = re.match(r"^(0x[a-fA-F0-9]+|[0-9]+)", raw)
    if prefix:
        token = prefix.group(1)
        if token.startswith("0x"):
            return int(token, 16)
        return int(token)
    raise unavailable(f"Unable to parse uint value: '{value}'.")


def extract_tx_hash(output: str) -> str:
    trimmed = (output or "").strip()
    if not trimmed:
        raise unavailable("cast send returned empty output.")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        parsed = None

    candidates: list[Any] = []
    if isinstance(parsed, dict):
        candidates.extend([parsed.get("transactionHash"), parsed.get("txHash"), parsed.get("hash")])
    elif isinstance(parsed, str):
        candidates.append(parsed)

    for value in candidates:
        if isinstance(value, str) and _TX_HASH_RE.fullmatch(value):
            return value

    match = _TX_HASH_RE.search(trimmed)
    if match:
        return match.group(0)
    raise unavailable("cast send output did not include a transaction hash.")


class CastClient:
    """Read, estimate and broadcast through the ``cast`` binary."""

    def __init__(self, settings: Settings, cast_bin: str | None = None):
        self.settings = settings
        self._cast_bin = cast_bin

    @property
    def cast_bin(self) -> str:
        if self._cast_bin is None:
            self._cast_bin = _require_cast_bin()
        return self._cast_bin

    def _run(self, args: list[str], *, kind: str = "cast_call", timeout_sec: int | None = None) -> str:
        cmd = [self.cast_bin, *args]
        proc = _run_subprocess(cmd, timeout_sec=timeout_sec or self.settings.cast_call_timeout_sec, kind=kind)
        if proc.returncode != 0:
            raise unavailable(_proc_error(proc, f"cast {args[0]} failed."))
        return (proc.stdout or "").strip()

    def calldata(self, signature: str, args: list[str]) -> str:
        cmd = [self.cast_bin, "calldata", signature, *args]
        proc = _run_subprocess(cmd, timeout_sec=self.settings.cast_call_timeout_sec, kind="cast_calldata")
        if proc.returncode != 0:
            raise internal(_proc_error(proc, f"cast calldata failed for {signature}."))
        data = (proc.stdout or "").strip()
        if not re.fullmatch(r"0x[a-fA-F0-9]+", data):
            raise internal(f"cast calldata returned malformed output for {signature}.")
        return data

    def call(self, rpc_url: str, to: str, signature: str, args: list[str] | None = None) -> str:
        return self._run(["call", to, signature, *(args or []), "--rpc-url", rpc_url])

    def call_uint(self, rpc_url: str, to: str, signature: str, args: list[str] | None = None) -> int:
        return parse_uint_text(self.call(rpc_url, to, signature, args))

    def call_address(self, rpc_url: str, to: str, signature: str, args: list[str] | None = None) -> str:
        out = self.call(rpc_url, to, signature, args)
        match = re.search(r"0x[a-fA-F0-9]{40}", out)
        if not match:
            raise unavailable(f"{signature} did not return an address.")
        return match.group(0)

    def allowance(self, rpc_url: str, token: str, owner: str, spender: str) -> int:
        return self.call_uint(rpc_url, token, "allowance(address,address)(uint256)", [owner, spender])

    def chain_id(self, rpc_url: str) -> int:
        return parse_uint_text(self._run(["chain-id", "--rpc-url", rpc_url]))

    def simulate(self, rpc_url: str, from_address: str, to: str, data: str, value: int = 0) -> str:
        """Dry-run a transaction with ``eth_call``; raises on revert."""
        return self._run(["call", "--from", from_address, "--value", str(value), to, data, "--rpc-url", rpc_url])

    def estimate_gas(
        self,
        rpc_url: str,
        from_address: str,
        to: str,
        data: str,
        value: int = 0,
        block: str | None = None,
    ) -> int:
        args = ["estimate", "--from", from_address, "--value", str(value), to, data, "--rpc-url", rpc_url]
        if block:
            args.extend(["--block", block])
        return parse_uint_text(self._run(args))

    def base_fee(self, rpc_url: str, block: str = "latest") -> int:
        return parse_uint_text(self._run(["base-fee", block, "--rpc-url", rpc_url]))

    def max_priority_fee(self, rpc_url: str) -> int:
        return parse_uint_text(self._run(["rpc", "eth_maxPriorityFeePerGas", "--rpc-url", rpc_url]))

    def nonce(self, rpc_url: str, address: str, block: str = "pending") -> int:
        return parse_uint_text(self._run(["nonce", address, "--block", block, "--rpc-url", rpc_url]))

    def send_transaction(self, rpc_url: str, private_key_hex: str, tx: dict[str, Any]) -> str:
        """Sign and broadcast one EIP-1559 transaction; returns the tx hash.

        ``tx`` carries ``from``, ``to``, ``data``, ``value``, ``nonce``, ``gas``,
        ``maxFeePerGas`` and ``maxPriorityFeePerGas`` as integers or strings.
        """
        data = str(tx.get("data") or "0x")
        if not _HEX_DATA_RE.fullmatch(data):
            raise internal("transaction data must be hex calldata.")
        send_cmd = [
            self.cast_bin,
            "send",
            "--async",
            "--json",
            "--rpc-url",
            rpc_url,
            "--private-key",
            private_key_hex,
            "--nonce",
            str(tx["nonce"]),
            "--gas-limit",
            str(tx["gas"]),
            "--gas-price",
            str(tx["maxFeePerGas"]),
            "--priority-gas-price",
            str(tx["maxPriorityFeePerGas"]),
            "--value",
            str(tx.get("value") or 0),
            "--from",
            str(tx["from"]),
            str(tx["to"]),
            data,
        ]
        proc = _run_subprocess(send_cmd, timeout_sec=self.settings.cast_send_timeout_sec, kind="cast_send")
        if proc.returncode != 0:
            raise unavailable(_proc_error(proc, "cast send failed."))
        return extract_tx_hash(proc.stdout)

    def receipt(self, rpc_url: str, tx_hash: str) -> dict[str, Any] | None:
        """Return the receipt object, or None while the transaction is not yet mined."""
        proc = _run_subprocess(
            [self.cast_bin, "receipt", "--json", "--async", "--rpc-url", rpc_url, tx_hash],
            timeout_sec=self.settings.cast_receipt_timeout_sec,
            kind="cast_receipt",
        )
        out = (proc.stdout or "").strip()
        if proc.returncode != 0:
            message = _proc_error(proc, "cast receipt failed.")
            if "not found" in message.lower():
                return None
            raise unavailable(message)
        if not out or out == "null":
            return None
        try:
            payload = json.loads(out)
        except json.JSONDecodeError as exc:
            raise unavailable("cast receipt returned malformed JSON.") from exc
        if not isinstance(payload, dict):
            return None
        return payload


def receipt_succeeded(receipt: dict[str, Any]) -> bool:
    return str(receipt.get("status", "0x0")).lower() in {"0x1", "1"}
