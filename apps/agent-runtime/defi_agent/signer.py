"""Local private-key signer and encrypted keystore handling."""

from __future__ import annotations

import base64
import binascii
import json
import os
import pathlib
import re
import secrets
import stat
from typing import Any, Protocol, runtime_checkable

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import DefiError, ErrorCode, usage
from .ids import is_hex_address, keccak256, same_address, to_checksum_address
from .rpc import CastClient
from .settings import default_app_dir

ENV_PRIVATE_KEY = "DEFI_PRIVATE_KEY"
ENV_PRIVATE_KEY_FILE = "DEFI_PRIVATE_KEY_FILE"
ENV_KEYSTORE_PATH = "DEFI_KEYSTORE_PATH"
ENV_KEYSTORE_PASSWORD = "DEFI_KEYSTORE_PASSWORD"
ENV_KEYSTORE_PASSWORD_FILE = "DEFI_KEYSTORE_PASSWORD_FILE"

KEY_SOURCE_AUTO = "auto"
KEY_SOURCE_ENV = "env"
KEY_SOURCE_FILE = "file"
KEY_SOURCE_KEYSTORE = "keystore"
KEY_SOURCES = (KEY_SOURCE_AUTO, KEY_SOURCE_ENV, KEY_SOURCE_FILE, KEY_SOURCE_KEYSTORE)

KEYSTORE_VERSION = 1
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536
ARGON2_PARALLELISM = 1
ARGON2_HASH_LEN = 32


@runtime_checkable
class Signer(Protocol):
    def address(self) -> str: ...

    def send_transaction(self, rpc_url: str, tx: dict[str, Any]) -> str: ...


def _signer_error(message: str, action_hint: str | None = None) -> DefiError:
    return DefiError(ErrorCode.SIGNER, message, action_hint)


def normalize_private_key_hex(value: str) -> str | None:
    stripped = value.strip()
    if stripped.startswith(("0x", "0X")):
        stripped = stripped[2:]
    if re.fullmatch(r"[a-fA-F0-9]{64}", stripped):
        return stripped.lower()
    return None


def derive_address(private_key_hex: str) -> str:
    private_value = int.from_bytes(bytes.fromhex(private_key_hex), byteorder="big")
    try:
        # cryptography validates the private key range for secp256k1.
        private_key = ec.derive_private_key(private_value, ec.SECP256K1())
    except ValueError as exc:
        raise _signer_error("private key is outside the secp256k1 range") from exc
    public_key_bytes = private_key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return to_checksum_address("0x" + keccak256(public_key_bytes[1:])[-20:].hex())


def _derive_aes_key(passphrase: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


def encrypt_private_key(private_key_hex: str, passphrase: str) -> dict[str, Any]:
    salt = secrets.token_bytes(16)
    nonce = secrets.token_bytes(12)
    ciphertext = AESGCM(_derive_aes_key(passphrase, salt)).encrypt(nonce, bytes.fromhex(private_key_hex), None)
    return {
        "enc": "aes-256-gcm",
        "kdf": "argon2id",
        "kdfParams": {
            "timeCost": ARGON2_TIME_COST,
            "memoryCost": ARGON2_MEMORY_COST,
            "parallelism": ARGON2_PARALLELISM,
            "hashLen": ARGON2_HASH_LEN,
        },
        "saltB64": base64.b64encode(salt).decode("ascii"),
        "nonceB64": base64.b64encode(nonce).decode("ascii"),
        "ciphertextB64": base64.b64encode(ciphertext).decode("ascii"),
    }


def _decode_crypto_payload(crypto: dict[str, Any]) -> tuple[bytes, bytes, bytes]:
    try:
        salt = base64.b64decode(str(crypto.get("saltB64", "")), validate=True)
        nonce = base64.b64decode(str(crypto.get("nonceB64", "")), validate=True)
        ciphertext = base64.b64decode(str(crypto.get("ciphertextB64", "")), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise _signer_error("Keystore crypto payload is not valid base64.") from exc
    if len(salt) != 16 or len(nonce) != 12 or len(ciphertext) < 16:
        raise _signer_error("Keystore crypto payload has invalid lengths.")
    return salt, nonce, ciphertext


def validate_keystore_shape(entry: Any) -> None:
    if not isinstance(entry, dict):
        raise _signer_error("Keystore is not a JSON object.")
    address = entry.get("address")
    if not isinstance(address, str) or not is_hex_address(address):
        raise _signer_error("Keystore address is missing or invalid.")
    crypto = entry.get("crypto")
    if not isinstance(crypto, dict):
        raise _signer_error("Keystore crypto payload is missing.")
    missing = [k for k in ("enc", "kdf", "kdfParams", "saltB64", "nonceB64", "ciphertextB64") if k not in crypto]
    if missing:
        raise _signer_error(f"Keystore crypto payload missing fields: {', '.join(missing)}")
    if crypto.get("enc") != "aes-256-gcm" or crypto.get("kdf") != "argon2id":
        raise _signer_error("Keystore crypto algorithm metadata is invalid.")
    _decode_crypto_payload(crypto)


def decrypt_keystore(entry: dict[str, Any], passphrase: str) -> str:
    """Return the private key hex stored in ``entry``; it must derive the stored address."""
    validate_keystore_shape(entry)
    salt, nonce, ciphertext = _decode_crypto_payload(entry["crypto"])
    try:
        plaintext = AESGCM(_derive_aes_key(passphrase, salt)).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise _signer_error("decrypt keystore: wrong password or corrupted keystore") from exc
    private_key_hex = plaintext.hex()
    if not same_address(derive_address(private_key_hex), entry["address"]):
        raise _signer_error("decrypted key does not match keystore address")
    return private_key_hex


def _is_secure_permissions(path: pathlib.Path, expected_mode: int) -> bool:
    if os.name == "nt":
        return True
    return stat.S_IMODE(path.stat().st_mode) == expected_mode


def _assert_secure_permissions(path: pathlib.Path, expected_mode: int, kind: str) -> None:
    if not path.exists():
        return
    if not _is_secure_permissions(path, expected_mode):
        raise _signer_error(
            f"Unsafe {kind} permissions for '{path}'. Expected {oct(expected_mode)} owner-only permissions.",
            f"Run: chmod {oct(expected_mode)[2:]} {path}",
        )


def write_keystore(path: pathlib.Path, private_key_hex: str, passphrase: str) -> dict[str, Any]:
    normalized = normalize_private_key_hex(private_key_hex)
    if normalized is None:
        raise usage("private key must be 32 bytes of hex")
    if not passphrase:
        raise usage("keystore password is required")
    entry = {
        "version": KEYSTORE_VERSION,
        "address": derive_address(normalized),
        "crypto": encrypt_private_key(normalized, passphrase),
    }
    path = pathlib.Path(path).expanduser()
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    path.write_text(json.dumps(entry, indent=2), encoding="utf-8")
    if os.name != "nt":
        os.chmod(path, 0o600)
    return entry


def default_private_key_file() -> pathlib.Path:
    base = (os.environ.get("XDG_CONFIG_HOME") or "").strip()
    root = pathlib.Path(base) if base else pathlib.Path.home() / ".config"
    return root / "defi" / "key.hex"


def default_keystore_path() -> pathlib.Path:
    explicit = _env(ENV_KEYSTORE_PATH)
    if explicit:
        return pathlib.Path(explicit).expanduser()
    return default_app_dir() / "keystore.json"


def _env(name: str) -> str:
    return (os.environ.get(name) or "").strip()


def _read_text(path: pathlib.Path, what: str) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise _signer_error(f"read {what}: {exc.strerror or exc}") from exc


def _parse_key(raw: str) -> str:
    normalized = normalize_private_key_hex(raw)
    if normalized is None:
        raise _signer_error("parse private key: expected 32 bytes of hex")
    return normalized


def _key_from_file(path: pathlib.Path) -> str:
    _assert_secure_permissions(path, 0o600, "private key file")
    return _parse_key(_read_text(path, "private key file"))


def _key_from_keystore(path: pathlib.Path) -> str:
    password = _env(ENV_KEYSTORE_PASSWORD)
    password_file = _env(ENV_KEYSTORE_PASSWORD_FILE)
    if not password and password_file:
        password = _read_text(pathlib.Path(password_file).expanduser(), "keystore password file")
    if not password:
        raise _signer_error(
            "keystore password is required",
            f"Set {ENV_KEYSTORE_PASSWORD} or {ENV_KEYSTORE_PASSWORD_FILE}.",
        )
    try:
        entry = json.loads(_read_text(path, "keystore file"))
    except json.JSONDecodeError as exc:
        raise _signer_error("keystore file is not valid JSON") from exc
    return decrypt_keystore(entry, password)


def resolve_private_key(key_source: str = KEY_SOURCE_AUTO, private_key: str | None = None) -> str:
    source = (key_source or KEY_SOURCE_AUTO).strip().lower()
    if source not in KEY_SOURCES:
        raise usage(f'unsupported key source "{key_source}" (expected {"|".join(KEY_SOURCES)})')
    if private_key and private_key.strip():
        return _parse_key(private_key)

    if source in (KEY_SOURCE_AUTO, KEY_SOURCE_ENV):
        env_key = _env(ENV_PRIVATE_KEY)
        if env_key:
            return _parse_key(env_key)
    if source in (KEY_SOURCE_AUTO, KEY_SOURCE_FILE):
        explicit = _env(ENV_PRIVATE_KEY_FILE)
        key_file = pathlib.Path(explicit).expanduser() if explicit else default_private_key_file()
        if explicit or key_file.is_file():
            return _key_from_file(key_file)
    if source in (KEY_SOURCE_AUTO, KEY_SOURCE_KEYSTORE):
        keystore_path = default_keystore_path()
        if _env(ENV_KEYSTORE_PATH) or keystore_path.is_file():
            return _key_from_keystore(keystore_path)

    raise _signer_error(
        f"missing signing key: set {ENV_PRIVATE_KEY} or {ENV_PRIVATE_KEY_FILE} or {ENV_KEYSTORE_PATH}",
        "Import a key with `defi-agent wallet import` or pass --private-key.",
    )


class LocalSigner:
    """Signs and broadcasts with an in-process private key via ``cast send``."""

    def __init__(self, private_key_hex: str, rpc: CastClient):
        self._private_key_hex = _parse_key(private_key_hex)
        self._address = derive_address(self._private_key_hex)
        self._rpc = rpc

    def address(self) -> str:
        return self._address

    def send_transaction(self, rpc_url: str, tx: dict[str, Any]) -> str:
        if not same_address(str(tx.get("from") or self._address), self._address):
            raise _signer_error("transaction sender does not match signer address")
        payload = dict(tx)
        payload["from"] = self._address
        return self._rpc.send_transaction(rpc_url, "0x" + self._private_key_hex, payload)

    def __repr__(self) -> str:
        return f"LocalSigner(address={self._address})"


def load_local_signer(rpc: CastClient, key_source: str = KEY_SOURCE_AUTO, private_key: str | None = None) -> LocalSigner:
    return LocalSigner(resolve_private_key(key_source, private_key), rpc)
