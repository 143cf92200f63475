"""Chain, asset, address and amount resolution.

Human inputs (chain slugs, token symbols, decimal amounts) are turned into the
canonical forms the planners put into calldata: CAIP-2 chain ids, checksummed
addresses and base-unit integers.
"""

from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass

from Crypto.Hash import keccak

from .errors import usage

UINT256_MAX = 2**256 - 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_ADDRESS_RE = re.compile(r"0x[a-fA-F0-9]{40}")
_CAIP2_RE = re.compile(r"eip155:([0-9]+)")
_DECIMAL_RE = re.compile(r"[0-9]+(\.[0-9]+)?")


@dataclass(frozen=True)
class Chain:
    name: str
    slug: str
    chain_id: int

    @property
    def caip2(self) -> str:
        return f"eip155:{self.chain_id}"


@dataclass(frozen=True)
class Asset:
    chain_id: str
    asset_id: str
    address: str
    symbol: str
    decimals: int | None


_CHAINS: list[tuple[str, str, int, tuple[str, ...]]] = [
    ("Ethereum", "ethereum", 1, ("mainnet",)),
    ("Optimism", "optimism", 10, ("op mainnet", "op-mainnet")),
    ("BSC", "bsc", 56, ()),
    ("Gnosis", "gnosis", 100, ("xdai",)),
    ("Polygon", "polygon", 137, ()),
    ("Sonic", "sonic", 146, ()),
    ("Fraxtal", "fraxtal", 252, ()),
    ("zkSync Era", "zksync", 324, ("zksync era", "zksync-era")),
    ("World Chain", "world-chain", 480, ("worldchain", "world chain")),
    ("Mantle", "mantle", 5000, ()),
    ("Base", "base", 8453, ()),
    ("Celo", "celo", 42220, ()),
    ("Arbitrum", "arbitrum", 42161, ("arbitrum one",)),
    ("Avalanche", "avalanche", 43114, ()),
    ("Ink", "ink", 57073, ()),
    ("Linea", "linea", 59144, ()),
    ("Berachain", "berachain", 80094, ()),
    ("Blast", "blast", 81457, ()),
    ("Taiko", "taiko", 167000, ("taiko alethia", "taiko-alethia")),
    ("Taiko Hoodi", "taiko-hoodi", 167013, ("taiko hoodi",)),
    ("Scroll", "scroll", 534352, ()),
]

CHAINS_BY_ID: dict[int, Chain] = {}
_CHAINS_BY_KEY: dict[str, Chain] = {}
for _name, _slug, _chain_id, _aliases in _CHAINS:
    _chain = Chain(name=_name, slug=_slug, chain_id=_chain_id)
    CHAINS_BY_ID[_chain_id] = _chain
    for _key in (_slug, *_aliases):
        _CHAINS_BY_KEY[_key] = _chain

DEFAULT_RPC_URLS: dict[int, str] = {
    1: "https://eth.llamarpc.com",
    10: "https://mainnet.optimism.io",
    56: "https://bsc-dataseed.binance.org",
    100: "https://rpc.gnosischain.com",
    137: "https://polygon-rpc.com",
    146: "https://rpc.soniclabs.com",
    252: "https://rpc.frax.com",
    324: "https://mainnet.era.zksync.io",
    480: "https://worldchain-mainnet.g.alchemy.com/public",
    5000: "https://rpc.mantle.xyz",
    8453: "https://mainnet.base.org",
    42220: "https://forno.celo.org",
    42161: "https://arb1.arbitrum.io/rpc",
    43114: "https://api.avax.network/ext/bc/C/rpc",
    57073: "https://rpc-gel.inkonchain.com",
    59144: "https://rpc.linea.build",
    80094: "https://rpc.berachain.com",
    81457: "https://rpc.blast.io",
    167000: "https://rpc.mainnet.taiko.xyz",
    167013: "https://rpc.hoodi.taiko.xyz",
    534352: "https://rpc.scroll.io",
}

# (symbol, address, decimals) bootstrap table for deterministic symbol lookup.
TOKENS: dict[int, list[tuple[str, str, int]]] = {
    1: [
        ("AAVE", "0x7fc66500c84a76ad7e9c93437bfc5ac33e2ddae9", 18),
        ("DAI", "0x6b175474e89094c44da98b954eedeac495271d0f", 18),
        ("GHO", "0x40d16fc0246ad3160ccc09b8d0d3a2cd28ae6c2f", 18),
        ("LINK", "0x514910771af9ca656af840dff83e8264ecf986ca", 18),
        ("MORPHO", "0x58d97b57bb95320f9a05dc918aef65434969c2b2", 18),
        ("USDC", "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", 6),
        ("USDT", "0xdac17f958d2ee523a2206206994597c13d831ec7", 6),
        ("WBTC", "0x2260fac5e5542a773aa44fbcfedf7c193bc2c599", 8),
        ("WETH", "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2", 18),
    ],
    10: [
        ("DAI", "0xda10009cbd5d07dd0cecc66161fc93d7c9000da1", 18),
        ("OP", "0x4200000000000000000000000000000000000042", 18),
        ("USDC", "0x7f5c764cbc14f9669b88837ca1490cca17c31607", 6),
        ("USDT", "0x94b008aa00579c1307b0ef2c499ad98a8ce58e58", 6),
        ("WBTC", "0x68f180fcce6836688e9084f035309e29bf0a2095", 8),
        ("WETH", "0x4200000000000000000000000000000000000006", 18),
    ],
    137: [
        ("DAI", "0x8f3cf7ad23cd3cadbd9735aff958023239c6a063", 18),
        ("USDC", "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359", 6),
        ("USDT", "0xc2132d05d31c914a87c6611c10748aeb04b58e8f", 6),
        ("WETH", "0x7ceb23fd6bc0add59e62ac25578270cff1b9f619", 18),
    ],
    8453: [
        ("AAVE", "0x63706e401c06ac8513145b7687a14804d17f814b", 18),
        ("CBBTC", "0xcbb7c0000ab88b473b1f5afd9ef808440eed33bf", 8),
        ("DAI", "0x50c5725949a6f0c72e6c4a641f24049a917db0cb", 18),
        ("GHO", "0x6bb7a212910682dcfdbd5bcbb3e28fb4e8da10ee", 18),
        ("MORPHO", "0xbaa5cc21fd487b8fcc2f632f3f4e8d37262a0842", 18),
        ("USDC", "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913", 6),
        ("USDT", "0xfde4c96c8593536e31f229ea8f37b2ada2699bb2", 6),
        ("WETH", "0x4200000000000000000000000000000000000006", 18),
    ],
    42161: [
        ("ARB", "0x912ce59144191c1204e64559fe8253a0e49e6548", 18),
        ("DAI", "0xda10009cbd5d07dd0cecc66161fc93d7c9000da1", 18),
        ("USDC", "0xaf88d065e77c8cc2239327c5edb3a432268e5831", 6),
        ("USDT", "0xfd086bc7cd5c481dcc9c85ebe478a1c0b69fcbb9", 6),
        ("WETH", "0x82af49447d8a07e3bd95bd0d56f35241523fbab1", 18),
    ],
    167000: [
        ("TAIKO", "0xa9d23408b9ba935c230493c40c73824df71a0975", 18),
        ("USDC", "0x07d83526730c7438048d55a4fc0b850e2aab6f0b", 6),
        ("USDT", "0x2def195713cf4a606b49d07e520e22c17899a736", 6),
        ("WETH", "0xa51894664a773981c6c112c43ce576f315d5b1b6", 18),
    ],
}

# Canonical Aave V3 PoolAddressesProvider per chain.
AAVE_POOL_ADDRESSES_PROVIDERS: dict[int, str] = {
    1: "0x2f39d218133AFaB8F2B819B1066c7E434Ad94E9e",
    10: "0xa97684ead0e402dC232d5A977953DF7ECBaB3CDb",
    137: "0xa97684ead0e402dC232d5A977953DF7ECBaB3CDb",
    8453: "0xe20fCBdBfFC4Dd138cE8b2E6FBb6CB49777ad64D",
    42161: "0xa97684ead0e402dC232d5A977953DF7ECBaB3CDb",
    43114: "0xa97684ead0e402dC232d5A977953DF7ECBaB3CDb",
}

# Uniswap V3-compatible (quoterV2, router) deployments used by TaikoSwap.
TAIKOSWAP_CONTRACTS: dict[int, tuple[str, str]] = {
    167000: ("0xcBa70D57be34aA26557B8E80135a9B7754680aDb", "0x1A0c3a0Cfd1791FAC7798FA2b05208B66aaadfeD"),
    167013: ("0xAC8D93657DCc5C0dE9d9AF2772aF9eA3A032a1C6", "0x482233e4DBD56853530fA1918157CE59B60dF230"),
}

BRIDGE_SETTLEMENT_URLS: dict[str, str] = {
    "lifi": "https://li.quest/v1/status",
    "across": "https://app.across.to/api/deposit/status",
}


def is_hex_address(value: str) -> bool:
    return bool(_ADDRESS_RE.fullmatch(value or ""))


def to_checksum_address(value: str) -> str:
    """EIP-55 checksum encoding."""
    raw = (value or "").strip()
    if not is_hex_address(raw):
        raise usage(f"invalid address: {value}")
    lower = raw[2:].lower()
    digest = keccak.new(digest_bits=256)
    digest.update(lower.encode("ascii"))
    hashed = digest.hexdigest()
    return "0x" + "".join(ch.upper() if int(hashed[i], 16) >= 8 else ch for i, ch in enumerate(lower))


def keccak256(data: bytes) -> bytes:
    digest = keccak.new(digest_bits=256)
    digest.update(data)
    return digest.digest()


def same_address(a: str, b: str) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


def resolve_chain(value: str) -> Chain:
    norm = (value or "").strip().lower()
    if not norm:
        raise usage("chain is required")
    if norm in _CHAINS_BY_KEY:
        return _CHAINS_BY_KEY[norm]
    caip = _CAIP2_RE.fullmatch(norm)
    if caip:
        chain_id = int(caip.group(1))
    elif re.fullmatch(r"[0-9]+", norm):
        chain_id = int(norm)
    else:
        raise usage(f"unsupported chain input: {value}")
    known = CHAINS_BY_ID.get(chain_id)
    if known is not None:
        return known
    return Chain(name=f"EVM-{chain_id}", slug=f"evm-{chain_id}", chain_id=chain_id)


def _lookup_token_by_address(chain: Chain, address: str) -> tuple[str, int] | None:
    for symbol, token_address, decimals in TOKENS.get(chain.chain_id, []):
        if same_address(token_address, address):
            return symbol, decimals
    return None


def _asset_from_address(chain: Chain, address: str) -> Asset:
    checksummed = to_checksum_address(address)
    known = _lookup_token_by_address(chain, checksummed)
    symbol, decimals = known if known else ("", None)
    return Asset(
        chain_id=chain.caip2,
        asset_id=f"{chain.caip2}/erc20:{checksummed.lower()}",
        address=checksummed,
        symbol=symbol,
        decimals=decimals,
    )


def resolve_asset(value: str, chain: Chain) -> Asset:
    norm = (value or "").strip()
    if not norm:
        raise usage("asset is required")
    if "/" in norm:
        prefix, _, rest = norm.partition("/")
        if ":" not in rest:
            raise usage(f"invalid CAIP-19 asset format: {value}")
        if prefix.lower() != chain.caip2:
            raise usage("asset chain does not match --chain", asset=value, chain=chain.caip2)
        namespace, _, address = rest.partition(":")
        if namespace.strip().lower() != "erc20":
            raise usage(f"unsupported asset namespace {namespace} for chain {chain.caip2}")
        if not is_hex_address(address.strip()):
            raise usage(f"invalid token address for chain {chain.caip2}")
        return _asset_from_address(chain, address.strip())
    if is_hex_address(norm):
        return _asset_from_address(chain, norm)

    matches = [entry for entry in TOKENS.get(chain.chain_id, []) if entry[0].lower() == norm.lower()]
    if not matches:
        raise usage(f"symbol {value} not found in registry for chain {chain.caip2}")
    if len(matches) > 1:
        addresses = ", ".join(sorted(entry[1] for entry in matches))
        raise usage(f"symbol {value} is ambiguous on chain {chain.caip2}, use address or CAIP-19 ({addresses})")
    symbol, address, decimals = matches[0]
    asset = _asset_from_address(chain, address)
    return Asset(asset.chain_id, asset.asset_id, asset.address, symbol.upper(), decimals)


def resolve_rpc_url(override: str | None, chain_id: int) -> str:
    if override and override.strip():
        return override.strip()
    default = DEFAULT_RPC_URLS.get(chain_id)
    if default:
        return default
    raise usage(f"no default rpc configured for chain id {chain_id}; provide --rpc-url")


def format_units(base_units: str | int, decimals: int) -> str:
    value = int(base_units)
    if decimals <= 0:
        return str(value)
    text = str(value).rjust(decimals + 1, "0")
    whole = text[:-decimals]
    frac = text[-decimals:].rstrip("0")
    return f"{whole}.{frac}" if frac else whole


def _normalize_decimal_text(value: str) -> str:
    whole, _, frac = value.partition(".")
    whole = whole.lstrip("0") or "0"
    frac = frac.rstrip("0")
    return f"{whole}.{frac}" if frac else whole


def normalize_amount(base_units: str | None, decimal: str | None, decimals: int | None) -> tuple[str, str]:
    """Return (base_units, decimal) from exactly one of the two amount forms."""
    base_raw = (base_units or "").strip()
    decimal_raw = (decimal or "").strip()
    if base_raw and decimal_raw:
        raise usage("use either --amount or --amount-decimal, not both")
    if not base_raw and not decimal_raw:
        raise usage("amount is required")

    if base_raw:
        if not re.fullmatch(r"[0-9]+", base_raw):
            raise usage("--amount must be a non-negative integer string in base units", amount=base_raw)
        value = int(base_raw)
        if value > UINT256_MAX:
            raise usage("--amount exceeds uint256")
        return str(value), format_units(value, decimals) if decimals is not None else str(value)

    if decimals is None:
        raise usage("token decimals are unknown for this asset; pass --amount in base units")
    if decimals < 0:
        raise usage("decimals must be >= 0")
    if not _DECIMAL_RE.fullmatch(decimal_raw):
        raise usage("--amount-decimal must be in decimal form like 1.23", amountDecimal=decimal_raw)
    whole, _, frac = decimal_raw.partition(".")
    if len(frac) > decimals:
        raise usage(f"decimal precision exceeds token decimals ({decimals})")
    value = int(whole + frac.ljust(decimals, "0"))
    if value > UINT256_MAX:
        raise usage("--amount-decimal exceeds uint256")
    return str(value), _normalize_decimal_text(decimal_raw)


def parse_positive_uint(value: str | int | None, label: str) -> int:
    text = str(value if value is not None else "").strip()
    if not re.fullmatch(r"[0-9]+", text):
        raise usage(f"{label} must be a positive integer in base units")
    amount = int(text)
    if amount <= 0:
        raise usage(f"{label} must be a positive integer in base units")
    if amount > UINT256_MAX:
        raise usage(f"{label} exceeds uint256")
    return amount


def settlement_url(provider: str) -> str | None:
    return BRIDGE_SETTLEMENT_URLS.get((provider or "").strip().lower())


def is_allowed_settlement_url(provider: str, endpoint: str) -> bool:
    allowed_raw = settlement_url(provider)
    if not allowed_raw:
        return False
    candidate = (endpoint or "").strip() or allowed_raw
    try:
        parsed = urllib.parse.urlsplit(candidate)
        allowed = urllib.parse.urlsplit(allowed_raw)
        parsed_port = parsed.port
    except ValueError:
        return False
    if parsed.username or parsed.password:
        return False
    if parsed.scheme.lower() != allowed.scheme.lower():
        return False
    if (parsed.hostname or "").lower() != (allowed.hostname or "").lower():
        return False
    default_port = 443 if allowed.scheme == "https" else 80
    if (parsed_port or default_port) != (allowed.port or default_port):
        return False
    return (parsed.path.rstrip("/") or "/") == (allowed.path.rstrip("/") or "/")
