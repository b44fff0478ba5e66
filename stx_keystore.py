"""
Encrypted keystore files for Stacks wallets.

Implements:
- scrypt + AES-256-GCM encryption of a wallet secret (mnemonic or raw key)
- a secondary SHA-256 integrity value checked before any decryption attempt
- per-wallet keystore files holding the envelope plus public account data
- whole-file JSON writes (temp file + rename) shared with the wallet index
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from stx_wallet import Account
from wallet_errors import (
    InvalidPasswordError,
    KeystoreFormatError,
    WalletNotFoundError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CIPHER_NAME = "aes-256-gcm"
KDF_NAME = "scrypt"

SALT_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16
KEY_BYTES = 32  # AES-256
MAC_BYTES = 32  # SHA-256

KEYSTORE_VERSION = 2

SECURE_FILE_MODE = 0o600

# Upper bounds on scrypt costs read back from disk
MAX_KDF_N = 2**20
MAX_KDF_R = 32
MAX_KDF_P = 16

SecretType = Literal["mnemonic", "rawKey"]


@dataclass(frozen=True)
class KdfParams:
    """scrypt cost parameters stored alongside every envelope."""

    n: int = 16384  # 2^14
    r: int = 8
    p: int = 1
    dklen: int = KEY_BYTES


DEFAULT_KDF_PARAMS = KdfParams()


# ---------------------------------------------------------------------------
# Crypto primitives
# ---------------------------------------------------------------------------


def _derive_key(password: str, salt: bytes, params: KdfParams) -> bytes:
    try:
        kdf = Scrypt(salt=salt, length=params.dklen, n=params.n, r=params.r, p=params.p)
        return kdf.derive(password.encode("utf-8"))
    except (MemoryError, ValueError) as exc:
        raise KeystoreFormatError(f"Cannot derive key with the stored kdfparams: {exc}") from exc


def _compute_mac(derived_key: bytes, combined: bytes) -> bytes:
    """SHA-256 over the second half of the derived key and ciphertext||tag."""
    return hashlib.sha256(derived_key[16:32] + combined).digest()


def encrypt_secret(
    secret: str,
    password: str,
    kdf_params: KdfParams = DEFAULT_KDF_PARAMS,
) -> dict[str, Any]:
    """
    Encrypt a secret under a password.

    A fresh salt and IV are drawn for every call. The returned envelope holds
    everything needed to re-derive the key except the password itself.
    """
    _check_kdf_params(kdf_params.n, kdf_params.r, kdf_params.p, kdf_params.dklen)

    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    derived_key = _derive_key(password, salt, kdf_params)

    # AESGCM appends the 16-byte tag to the ciphertext
    combined = AESGCM(derived_key).encrypt(iv, secret.encode("utf-8"), None)
    mac = _compute_mac(derived_key, combined)

    return {
        "cipher": CIPHER_NAME,
        "ciphertext": combined.hex(),
        "cipherparams": {"iv": iv.hex()},
        "kdf": KDF_NAME,
        "kdfparams": {
            "salt": salt.hex(),
            "n": kdf_params.n,
            "r": kdf_params.r,
            "p": kdf_params.p,
            "dklen": kdf_params.dklen,
        },
        "mac": mac.hex(),
    }


def decrypt_secret(envelope: dict[str, Any], password: str) -> str:
    """
    Decrypt an envelope produced by encrypt_secret.

    Raises KeystoreFormatError for a malformed envelope and
    InvalidPasswordError when the password is wrong or the data was altered.
    """
    parsed = _parse_envelope(envelope)

    derived_key = _derive_key(password, parsed["salt"], parsed["params"])
    expected_mac = _compute_mac(derived_key, parsed["combined"])
    if not hmac.compare_digest(expected_mac, parsed["mac"]):
        raise InvalidPasswordError()

    try:
        plaintext = AESGCM(derived_key).decrypt(parsed["iv"], parsed["combined"], None)
    except InvalidTag as exc:
        raise InvalidPasswordError() from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidPasswordError() from exc


def _check_kdf_params(n: Any, r: Any, p: Any, dklen: Any) -> None:
    for name, value in (("n", n), ("r", r), ("p", p), ("dklen", dklen)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise KeystoreFormatError(f"Invalid kdfparams.{name}: {value!r}")
    if n < 2 or n & (n - 1):
        raise KeystoreFormatError(f"Invalid kdfparams.n: {n} is not a power of two")
    for name, value, limit in (("n", n, MAX_KDF_N), ("r", r, MAX_KDF_R), ("p", p, MAX_KDF_P)):
        if value > limit:
            raise KeystoreFormatError(f"Invalid kdfparams.{name}: {value} exceeds {limit}")
    if dklen != KEY_BYTES:
        raise KeystoreFormatError(
            f"Invalid kdfparams.dklen: {CIPHER_NAME} needs {KEY_BYTES} bytes, got {dklen}"
        )


def _hex_field(value: Any, name: str) -> bytes:
    if not isinstance(value, str):
        raise KeystoreFormatError(f"Missing or non-string field: {name}")
    try:
        return bytes.fromhex(value)
    except ValueError as exc:
        raise KeystoreFormatError(f"Field {name} is not valid hex") from exc


def _parse_envelope(envelope: Any) -> dict[str, Any]:
    """Validate every envelope field before any key derivation happens."""
    if not isinstance(envelope, dict):
        raise KeystoreFormatError("Keystore crypto section must be an object")

    cipher = envelope.get("cipher")
    if cipher != CIPHER_NAME:
        raise KeystoreFormatError(f"Unsupported cipher: {cipher!r}")
    kdf = envelope.get("kdf")
    if kdf != KDF_NAME:
        raise KeystoreFormatError(f"Unsupported kdf: {kdf!r}")

    cipherparams = envelope.get("cipherparams")
    kdfparams = envelope.get("kdfparams")
    if not isinstance(cipherparams, dict) or not isinstance(kdfparams, dict):
        raise KeystoreFormatError("Keystore is missing cipherparams or kdfparams")

    iv = _hex_field(cipherparams.get("iv"), "cipherparams.iv")
    if len(iv) != IV_BYTES:
        raise KeystoreFormatError(f"IV must be {IV_BYTES} bytes, got {len(iv)}")

    salt = _hex_field(kdfparams.get("salt"), "kdfparams.salt")
    if len(salt) < SALT_BYTES:
        raise KeystoreFormatError(f"Salt must be at least {SALT_BYTES} bytes, got {len(salt)}")

    n, r, p, dklen = (kdfparams.get(k) for k in ("n", "r", "p", "dklen"))
    _check_kdf_params(n, r, p, dklen)

    combined = _hex_field(envelope.get("ciphertext"), "ciphertext")
    if len(combined) <= TAG_BYTES:
        raise KeystoreFormatError("Ciphertext is too short to contain an authentication tag")

    mac = _hex_field(envelope.get("mac"), "mac")
    if len(mac) != MAC_BYTES:
        raise KeystoreFormatError(f"MAC must be {MAC_BYTES} bytes, got {len(mac)}")

    return {
        "iv": iv,
        "salt": salt,
        "params": KdfParams(n=n, r=r, p=p, dklen=dklen),
        "combined": combined,
        "mac": mac,
    }


# ---------------------------------------------------------------------------
# JSON file helpers
# ---------------------------------------------------------------------------


def write_json_atomic(path: Path, data: Any) -> None:
    """Replace path with the JSON encoding of data in one rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    if os.name == "posix":
        os.chmod(tmp, SECURE_FILE_MODE)
    os.replace(tmp, path)


def read_json(path: Path) -> Any:
    """Read a JSON file. FileNotFoundError propagates to the caller."""
    with open(path, "r", encoding="utf-8") as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as exc:
            raise KeystoreFormatError(f"{Path(path).name} is not valid JSON: {exc}") from exc


# ---------------------------------------------------------------------------
# Keystore files
# ---------------------------------------------------------------------------


def keystore_file_name(wallet_id: str) -> str:
    return f"wallet-{wallet_id}.enc"


@dataclass
class WalletKeystore:
    """At-rest container for one wallet: encrypted secret plus public accounts."""

    wallet_id: str
    crypto: dict[str, Any]
    accounts: list[Account] = field(default_factory=list)
    secret_type: SecretType = "mnemonic"
    version: int = KEYSTORE_VERSION

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "walletId": self.wallet_id,
            "crypto": self.crypto,
            "accounts": [a.to_dict() for a in self.accounts],
        }
        if self.secret_type != "mnemonic":
            data["secretType"] = self.secret_type
        return data

    @classmethod
    def from_dict(cls, data: Any) -> WalletKeystore:
        if not isinstance(data, dict):
            raise KeystoreFormatError("Keystore file must contain a JSON object")
        wallet_id = data.get("walletId")
        if not isinstance(wallet_id, str) or not wallet_id:
            raise KeystoreFormatError("Keystore is missing walletId")
        accounts = data.get("accounts", [])
        if not isinstance(accounts, list):
            raise KeystoreFormatError("Keystore accounts must be a list")
        secret_type = data.get("secretType", "mnemonic")
        if secret_type not in ("mnemonic", "rawKey"):
            raise KeystoreFormatError(f"Unknown secretType: {secret_type!r}")
        try:
            parsed_accounts = [Account.from_dict(a) for a in accounts]
        except (KeyError, TypeError, ValueError) as exc:
            raise KeystoreFormatError(f"Malformed account entry in keystore: {exc}") from exc
        return cls(
            wallet_id=wallet_id,
            crypto=data.get("crypto") or {},
            accounts=parsed_accounts,
            secret_type=secret_type,
            version=int(data.get("version", KEYSTORE_VERSION)),
        )


class KeystoreStore:
    """Reads and writes wallet-<id>.enc files inside one directory."""

    def __init__(self, wallets_dir: Path) -> None:
        self.wallets_dir = Path(wallets_dir)

    def path_for(self, file_name: str) -> Path:
        if not file_name or Path(file_name).name != file_name:
            raise KeystoreFormatError(f"Invalid keystore file name: {file_name!r}")
        return self.wallets_dir / file_name

    def exists(self, file_name: str) -> bool:
        return self.path_for(file_name).exists()

    def read(self, file_name: str) -> WalletKeystore:
        path = self.path_for(file_name)
        try:
            data = read_json(path)
        except FileNotFoundError as exc:
            raise WalletNotFoundError(f"Keystore file {file_name} not found") from exc
        return WalletKeystore.from_dict(data)

    def write(self, file_name: str, keystore: WalletKeystore) -> Path:
        path = self.path_for(file_name)
        write_json_atomic(path, keystore.to_dict())
        return path

    def delete(self, file_name: str) -> bool:
        """Remove a keystore file. Returns False when it was already gone."""
        path = self.path_for(file_name)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Keystore file %s was already missing", file_name)
            return False
        return True
