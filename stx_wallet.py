"""
Stacks (STX) account derivation, addresses and Hiro API reads.

Implements:
- c32check address encoding/decoding
- STX key derivation from BIP-39 mnemonic (m/44'/5757'/0'/0/{index})
- mnemonic / raw private key import input, classified once
- address-prefix network detection
- wallet configuration from environment variables
- Hiro Stacks API client for balances and transaction history
"""

from __future__ import annotations

import hashlib
import hmac
import os
import re
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal

import requests
from bip_utils import (
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip39WordsNum,
)

# coincurve for secp256k1 public keys (installed with bip-utils)
import coincurve

from wallet_errors import WalletValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HIRO_MAINNET = "https://api.hiro.so"
HIRO_TESTNET = "https://api.testnet.hiro.so"

BIP44_STACKS_COIN_TYPE = 5757
STX_DERIVATION_PATH = f"m/44'/{BIP44_STACKS_COIN_TYPE}'/0'/0"

# Stacks address versions
ADDRESS_VERSION_MAINNET_SINGLE_SIG = 22  # 'SP'
ADDRESS_VERSION_TESTNET_SINGLE_SIG = 26  # 'ST'
ADDRESS_VERSION_MAINNET_MULTI_SIG = 20  # 'SM'
ADDRESS_VERSION_TESTNET_MULTI_SIG = 21  # 'SN'

MAINNET_PREFIXES = ("SP", "SM")
TESTNET_PREFIXES = ("ST", "SN")

MICRO_STX = Decimal("1000000")

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

MNEMONIC_WORD_COUNTS = (12, 15, 18, 21, 24)

# Well-known SIP-10 tokens on Stacks mainnet
WELL_KNOWN_TOKENS: dict[str, dict[str, Any]] = {
    "WELSH": {"contract": "SP3NE50GEXFG9SZGTT51P40X2CKYSZ5CC4ZTZ7A2G.welshcorgicoin-token", "decimals": 6},
    "USDA": {"contract": "SP2C2YFP12AJZB4MABJBST4K0HEYNH3YAJ7J6V0Z.usda-token", "decimals": 6},
    "sBTC": {"contract": "SP3K8BC0PPEVCV7NZ6QSRWPQ2JE9E5B6N3PA0KBR9.token-sbtc", "decimals": 8},
}

STXNetwork = Literal["mainnet", "testnet"]

# c32 alphabet (Crockford base32 variant)
C32_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}(01)?$")


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with a trailing Z."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


# ---------------------------------------------------------------------------
# c32check address encoding
# ---------------------------------------------------------------------------


def _c32_encode(data: bytes) -> str:
    """Encode bytes to c32 string."""
    if not data:
        return ""
    num = int.from_bytes(data, "big")
    if num == 0:
        return C32_ALPHABET[0] * len(data)

    result = []
    while num > 0:
        num, remainder = divmod(num, 32)
        result.append(C32_ALPHABET[remainder])
    # Add leading zeros
    for b in data:
        if b == 0:
            result.append(C32_ALPHABET[0])
        else:
            break
    return "".join(reversed(result))


def _c32_decode(c32_str: str) -> bytes:
    """Decode a c32 string to bytes."""
    c32_str = c32_str.upper()
    leading_zeros = 0
    for ch in c32_str:
        if ch == C32_ALPHABET[0]:
            leading_zeros += 1
        else:
            break

    num = 0
    for ch in c32_str:
        idx = C32_ALPHABET.find(ch)
        if idx < 0:
            raise ValueError(f"Invalid c32 character: {ch!r}")
        num = num * 32 + idx

    if num == 0:
        return b"\x00" * max(leading_zeros, 1)

    result = []
    while num > 0:
        result.append(num & 0xFF)
        num >>= 8
    result.reverse()

    return b"\x00" * leading_zeros + bytes(result)


def _c32_checksum(version: int, data: bytes) -> bytes:
    """Compute c32check checksum (double SHA256 of version + data)."""
    payload = bytes([version]) + data
    h1 = hashlib.sha256(payload).digest()
    h2 = hashlib.sha256(h1).digest()
    return h2[:4]


def c32_address(version: int, hash160_bytes: bytes) -> str:
    """
    Encode a Stacks address from version byte and hash160.

    Returns a c32check-encoded address string like 'SP...' or 'ST...'.
    """
    checksum = _c32_checksum(version, hash160_bytes)
    c32_str = _c32_encode(hash160_bytes + checksum)
    return "S" + C32_ALPHABET[version] + c32_str


def decode_c32_address(address: str) -> tuple[int, bytes]:
    """Decode a c32check address into version byte and hash160 bytes."""
    if not address or len(address) < 5 or address[0].upper() != "S":
        raise ValueError(f"Invalid Stacks address: {address}")

    version = C32_ALPHABET.find(address[1].upper())
    if version < 0:
        raise ValueError(f"Invalid Stacks address version: {address}")

    decoded = _c32_decode(address[2:])
    if len(decoded) < 4:
        raise ValueError(f"Invalid Stacks address (too short): {address}")

    hash160_bytes = decoded[:-4]
    checksum = decoded[-4:]

    # hash160 should be 20 bytes
    if len(hash160_bytes) < 20:
        hash160_bytes = b"\x00" * (20 - len(hash160_bytes)) + hash160_bytes
    elif len(hash160_bytes) > 20:
        hash160_bytes = hash160_bytes[-20:]

    if checksum != _c32_checksum(version, hash160_bytes):
        raise ValueError(f"Invalid Stacks address checksum: {address}")

    return version, hash160_bytes


def _hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    sha = hashlib.sha256(data).digest()
    return hashlib.new("ripemd160", sha).digest()


# ---------------------------------------------------------------------------
# Network detection
# ---------------------------------------------------------------------------


def detect_network(address: str, default: STXNetwork) -> STXNetwork:
    """
    Pick the network an address belongs to from its prefix.

    SP/SM are mainnet, ST/SN are testnet; anything else gets ``default``.
    """
    prefix = (address or "").strip()[:2].upper()
    if prefix in MAINNET_PREFIXES:
        return "mainnet"
    if prefix in TESTNET_PREFIXES:
        return "testnet"
    return default


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def _derive_child(
    parent_key: bytes, parent_chain: bytes, index: int
) -> tuple[bytes, bytes]:
    """BIP-32 child key derivation."""
    if index >= 0x80000000:
        # Hardened child
        data = b"\x00" + parent_key + struct.pack(">I", index)
    else:
        # Normal child
        pubkey = coincurve.PrivateKey(parent_key).public_key.format(compressed=True)
        data = pubkey + struct.pack(">I", index)

    I = hmac.new(parent_chain, data, hashlib.sha512).digest()
    child_key_int = (
        int.from_bytes(I[:32], "big") + int.from_bytes(parent_key, "big")
    ) % SECP256K1_ORDER
    return child_key_int.to_bytes(32, "big"), I[32:]


def _derive_stx_key_from_seed(seed: bytes, account_index: int = 0) -> bytes:
    """
    Derive a Stacks private key from a BIP-39 seed.

    Uses m/44'/5757'/0'/0/{account_index}. Returns the 32-byte private key.
    """
    I = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
    key, chain = I[:32], I[32:]

    path_components = [
        44 + 0x80000000,  # 44'
        BIP44_STACKS_COIN_TYPE + 0x80000000,  # 5757'
        0 + 0x80000000,  # 0'
        0,  # 0 (external chain)
    ]
    for child_index in path_components:
        key, chain = _derive_child(key, chain, child_index)

    # Finally derive the account index (non-hardened)
    key, _ = _derive_child(key, chain, account_index)
    return key


def _check_account_index(index: Any) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < 0x80000000:
        raise WalletValidationError(f"Invalid account index: {index!r}")
    return index


def derivation_path_for(index: int) -> str:
    return f"{STX_DERIVATION_PATH}/{index}"


def generate_mnemonic() -> str:
    """Generate a fresh 24-word BIP-39 mnemonic."""
    return Bip39MnemonicGenerator().FromWordsNumber(Bip39WordsNum.WORDS_NUM_24).ToStr()


def normalize_mnemonic(mnemonic: str) -> str:
    return " ".join(mnemonic.strip().lower().split())


def is_valid_mnemonic(mnemonic: str) -> bool:
    words = normalize_mnemonic(mnemonic).split(" ")
    if len(words) not in MNEMONIC_WORD_COUNTS:
        return False
    return Bip39MnemonicValidator().IsValid(" ".join(words))


def derive_private_key(mnemonic: str, index: int) -> str:
    """
    Derive the account private key as hex.

    The trailing "01" marks the key as compressed, the form Stacks SDKs
    expect for signing.
    """
    _check_account_index(index)
    seed = Bip39SeedGenerator(normalize_mnemonic(mnemonic)).Generate()
    seed_bytes = bytes(seed) if not isinstance(seed, bytes) else seed
    return _derive_stx_key_from_seed(seed_bytes, index).hex() + "01"


def _public_key_for(private_key_hex: str) -> bytes:
    raw = private_key_hex.lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    compressed = len(raw) == 66 and raw.endswith("01")
    privkey = coincurve.PrivateKey(bytes.fromhex(raw[:64]))
    return privkey.public_key.format(compressed=compressed)


def address_from_private_key(private_key_hex: str, network: STXNetwork) -> str:
    """Single-sig address for a private key on the given network."""
    version = (
        ADDRESS_VERSION_MAINNET_SINGLE_SIG
        if network == "mainnet"
        else ADDRESS_VERSION_TESTNET_SINGLE_SIG
    )
    return c32_address(version, _hash160(_public_key_for(private_key_hex)))


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@dataclass
class Account:
    """One derived identity inside a wallet. Public data only."""

    index: int
    label: str
    mainnet_address: str
    testnet_address: str
    created_at: str
    derivation_path: str

    def address_for(self, network: STXNetwork) -> str:
        return self.mainnet_address if network == "mainnet" else self.testnet_address

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "label": self.label,
            "mainnetAddress": self.mainnet_address,
            "testnetAddress": self.testnet_address,
            "createdAt": self.created_at,
            "derivationPath": self.derivation_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Account:
        if not isinstance(data, dict) or not isinstance(data.get("label"), str):
            raise TypeError("account entry needs a string label")
        return cls(
            index=int(data["index"]),
            label=data["label"],
            mainnet_address=data["mainnetAddress"],
            testnet_address=data["testnetAddress"],
            created_at=data.get("createdAt", ""),
            derivation_path=data.get("derivationPath", ""),
        )


def _account_from_key(private_key_hex: str, index: int, label: str, path: str) -> Account:
    return Account(
        index=index,
        label=label,
        mainnet_address=address_from_private_key(private_key_hex, "mainnet"),
        testnet_address=address_from_private_key(private_key_hex, "testnet"),
        created_at=utc_now_iso(),
        derivation_path=path,
    )


def derive_account(mnemonic: str, index: int, label: str | None = None) -> Account:
    """
    Derive account ``index`` of a mnemonic.

    Both addresses come from the same key; only the version byte differs.
    """
    private_key = derive_private_key(mnemonic, index)
    return _account_from_key(
        private_key, index, label or f"Account {index + 1}", derivation_path_for(index)
    )


def account_from_private_key(private_key_hex: str, label: str | None = None) -> Account:
    """The single account of a wallet imported from a raw private key."""
    return _account_from_key(private_key_hex, 0, label or "Account 1", "")


# ---------------------------------------------------------------------------
# Import input
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WalletSecret:
    """Secret material a wallet is built from: a mnemonic or a raw key."""

    kind: Literal["mnemonic", "rawKey"]
    value: str = field(repr=False)

    @classmethod
    def mnemonic(cls, phrase: str) -> WalletSecret:
        if not is_valid_mnemonic(phrase):
            raise WalletValidationError("Invalid mnemonic phrase")
        return cls("mnemonic", normalize_mnemonic(phrase))

    @classmethod
    def raw_key(cls, key_hex: str) -> WalletSecret:
        key = key_hex.strip()
        if key.lower().startswith("0x"):
            key = key[2:]
        if not _HEX_KEY_RE.match(key):
            raise WalletValidationError(
                "Invalid private key. Expected 64 hex characters, optionally followed by 01"
            )
        try:
            coincurve.PrivateKey(bytes.fromhex(key[:64]))
        except ValueError as exc:
            raise WalletValidationError("Invalid private key: out of range") from exc
        return cls("rawKey", key.lower())

    @classmethod
    def parse(cls, text: str) -> WalletSecret:
        """Classify user input as a mnemonic (several words) or a hex key."""
        if not isinstance(text, str) or not text.strip():
            raise WalletValidationError("Missing mnemonic or private key")
        if len(text.split()) > 1:
            return cls.mnemonic(text)
        return cls.raw_key(text)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class WalletConfig:
    """Configuration for the Stacks wallet keystore and session."""

    network: STXNetwork
    home_dir: Path
    auto_lock_minutes: int = 15
    api_url_override: str | None = None

    @property
    def wallets_dir(self) -> Path:
        return self.home_dir / "wallets"

    @property
    def wallet_index_path(self) -> Path:
        return self.home_dir / "wallets.json"

    @property
    def legacy_keystore_path(self) -> Path:
        return self.home_dir / "wallet.enc"

    def api_url_for(self, network: STXNetwork) -> str:
        if network == self.network and self.api_url_override:
            return self.api_url_override.rstrip("/")
        return HIRO_MAINNET if network == "mainnet" else HIRO_TESTNET

    @classmethod
    def from_env(cls) -> WalletConfig:
        """Build WalletConfig from environment variables."""
        raw_network = os.getenv("STX_NETWORK", "mainnet").strip().lower()
        network: STXNetwork = "testnet" if raw_network == "testnet" else "mainnet"

        home = os.getenv("STX_WALLET_HOME") or str(Path.home() / ".stacks-mcp")

        raw_minutes = os.getenv("STX_AUTO_LOCK_MINUTES", "15")
        try:
            auto_lock_minutes = int(raw_minutes)
        except ValueError as exc:
            raise WalletValidationError(
                f"STX_AUTO_LOCK_MINUTES must be an integer, got {raw_minutes!r}"
            ) from exc
        if auto_lock_minutes <= 0:
            raise WalletValidationError("STX_AUTO_LOCK_MINUTES must be greater than zero")

        return cls(
            network=network,
            home_dir=Path(home).expanduser(),
            auto_lock_minutes=auto_lock_minutes,
            api_url_override=os.getenv("STX_API_URL") or None,
        )


# ---------------------------------------------------------------------------
# Hiro API helpers
# ---------------------------------------------------------------------------


def _hiro_get(api_url: str, path: str, params: dict | None = None) -> Any:
    """GET request to Hiro Stacks API."""
    url = f"{api_url}{path}"
    resp = requests.get(url, params=params, timeout=10)
    resp.raise_for_status()
    return resp.json()


def _format_units(raw: int, decimals: int) -> str:
    return str(Decimal(raw) / (Decimal(10) ** decimals))


def stx_get_balance(api_url: str, address: str) -> dict[str, Any]:
    """Get STX balance and fungible/non-fungible token balances."""
    try:
        data = _hiro_get(api_url, f"/extended/v1/address/{address}/balances")
    except Exception as exc:
        raise RuntimeError(f"Failed to fetch balance for {address}: {exc}") from exc

    stx_data = data.get("stx", {})
    balance_ustx = int(stx_data.get("balance", 0))
    locked_ustx = int(stx_data.get("locked", 0))

    ft_data = data.get("fungible_tokens", {})
    fungible_tokens = [
        {"token_id": token_id, "balance": info.get("balance", "0")}
        for token_id, info in ft_data.items()
    ]

    # Well-known tokens with human-readable amounts
    tokens = []
    for symbol, token in WELL_KNOWN_TOKENS.items():
        prefix = f"{token['contract']}::"
        for token_id, info in ft_data.items():
            if not token_id.startswith(prefix):
                continue
            raw = int(info.get("balance", 0))
            if raw:
                tokens.append({
                    "symbol": symbol,
                    "contract": token["contract"],
                    "balance_raw": str(raw),
                    "balance": _format_units(raw, token["decimals"]),
                    "decimals": token["decimals"],
                })
            break

    nft_data = data.get("non_fungible_tokens", {})
    nfts = [
        {"token_id": token_id, "count": info.get("count", 0)}
        for token_id, info in nft_data.items()
    ]

    return {
        "address": address,
        "balance_ustx": balance_ustx,
        "balance_stx": str(Decimal(balance_ustx) / MICRO_STX),
        "locked_ustx": locked_ustx,
        "locked_stx": str(Decimal(locked_ustx) / MICRO_STX),
        "tokens": tokens,
        "fungible_tokens": fungible_tokens,
        "non_fungible_tokens": nfts,
    }


def _tx_status(raw: str) -> str:
    if raw == "success":
        return "success"
    if raw == "pending":
        return "pending"
    return "failed"


def stx_get_transactions(api_url: str, address: str, limit: int = 50) -> dict[str, Any]:
    """Get recent transactions for an address, newest first."""
    try:
        data = _hiro_get(
            api_url,
            f"/extended/v1/address/{address}/transactions",
            params={"limit": limit},
        )
    except Exception as exc:
        raise RuntimeError(f"Failed to fetch transactions for {address}: {exc}") from exc

    transactions = []
    for tx in data.get("results", []):
        transfer = tx.get("token_transfer") or {}
        transactions.append({
            "tx_id": tx.get("tx_id", ""),
            "type": tx.get("tx_type", ""),
            "status": _tx_status(tx.get("tx_status", "")),
            "sender": tx.get("sender_address", ""),
            "recipient": transfer.get("recipient_address"),
            "amount_ustx": int(transfer["amount"]) if transfer.get("amount") else None,
            "fee_ustx": int(tx.get("fee_rate", 0)),
            "block_height": tx.get("block_height"),
            "timestamp": tx.get("burn_block_time"),
        })

    return {
        "address": address,
        "transactions": transactions,
        "total": data.get("total", len(transactions)),
        "limit": limit,
    }
