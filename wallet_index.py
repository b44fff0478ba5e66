"""
Wallet index (wallets.json): metadata for every wallet, no secrets.

Every mutating call reads the whole file, changes it in memory and writes
the whole file back. There is no cross-process locking.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from stx_keystore import read_json, write_json_atomic
from stx_wallet import utc_now_iso
from wallet_errors import (
    DuplicateWalletError,
    KeystoreFormatError,
    WalletNotFoundError,
    WalletValidationError,
)

logger = logging.getLogger(__name__)

INDEX_VERSION = 1

_CAMEL_KEYS = {
    "id": "id",
    "label": "label",
    "created_at": "createdAt",
    "last_used": "lastUsed",
    "account_count": "accountCount",
    "default_account_index": "defaultAccountIndex",
    "keystore_file_name": "keystoreFileName",
}


@dataclass
class WalletMetadata:
    """A wallet as listed in the index."""

    id: str
    label: str
    created_at: str
    last_used: str
    account_count: int
    default_account_index: int
    keystore_file_name: str

    def to_dict(self) -> dict[str, Any]:
        return {_CAMEL_KEYS[k]: v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WalletMetadata:
        if not isinstance(data, dict):
            raise TypeError("wallet entry must be an object")
        for key in ("id", "label", "keystoreFileName"):
            if not isinstance(data.get(key), str):
                raise TypeError(f"wallet {key} must be a string")
        values = {k: data[camel] for k, camel in _CAMEL_KEYS.items()}
        values["account_count"] = int(values["account_count"])
        values["default_account_index"] = int(values["default_account_index"])
        return cls(**values)


@dataclass
class WalletIndex:
    version: int = INDEX_VERSION
    wallets: list[WalletMetadata] = field(default_factory=list)
    active_wallet_id: Optional[str] = None
    migrated: bool = False
    migrated_at: Optional[str] = None

    def find(self, wallet_id: str) -> Optional[WalletMetadata]:
        return next((w for w in self.wallets if w.id == wallet_id), None)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "wallets": [w.to_dict() for w in self.wallets],
            "activeWalletId": self.active_wallet_id,
            "migrated": self.migrated,
        }
        if self.migrated_at:
            data["migratedAt"] = self.migrated_at
        return data

    @classmethod
    def from_dict(cls, data: Any) -> WalletIndex:
        if not isinstance(data, dict) or not isinstance(data.get("wallets", []), list):
            raise KeystoreFormatError("Wallet index must be an object with a wallets list")
        try:
            wallets = [WalletMetadata.from_dict(w) for w in data.get("wallets", [])]
        except (KeyError, TypeError, ValueError) as exc:
            raise KeystoreFormatError(f"Malformed wallet entry in index: {exc}") from exc
        return cls(
            version=int(data.get("version", INDEX_VERSION)),
            wallets=wallets,
            active_wallet_id=data.get("activeWalletId"),
            migrated=bool(data.get("migrated", False)),
            migrated_at=data.get("migratedAt"),
        )


class WalletIndexStore:
    """CRUD over wallets.json."""

    def __init__(self, index_path: Path) -> None:
        self.index_path = Path(index_path)

    def exists(self) -> bool:
        return self.index_path.exists()

    @staticmethod
    def create_empty_index() -> WalletIndex:
        return WalletIndex()

    def load(self) -> WalletIndex:
        """Load the index, or an empty one on first run."""
        try:
            data = read_json(self.index_path)
        except FileNotFoundError:
            return self.create_empty_index()
        return WalletIndex.from_dict(data)

    def save(self, index: WalletIndex) -> None:
        write_json_atomic(self.index_path, index.to_dict())

    def _require(self, index: WalletIndex, wallet_id: str) -> WalletMetadata:
        wallet = index.find(wallet_id)
        if wallet is None:
            raise WalletNotFoundError(f"Wallet with ID {wallet_id} not found")
        return wallet

    def add_wallet(self, metadata: WalletMetadata) -> WalletIndex:
        index = self.load()
        if index.find(metadata.id) is not None:
            raise DuplicateWalletError(metadata.id)

        index.wallets.append(metadata)
        if index.active_wallet_id is None:
            index.active_wallet_id = metadata.id

        self.save(index)
        return index

    def remove_wallet(self, wallet_id: str) -> WalletIndex:
        index = self.load()
        wallet = self._require(index, wallet_id)
        index.wallets.remove(wallet)

        if index.active_wallet_id == wallet_id:
            index.active_wallet_id = index.wallets[0].id if index.wallets else None
            logger.info("Active wallet removed, active wallet is now %s", index.active_wallet_id)

        self.save(index)
        return index

    def update_wallet(self, wallet_id: str, **changes: Any) -> WalletIndex:
        """Update metadata fields. The id itself never changes."""
        index = self.load()
        wallet = self._require(index, wallet_id)

        changes.pop("id", None)
        known = {f.name for f in fields(WalletMetadata)}
        unknown = set(changes) - known
        if unknown:
            raise WalletValidationError(f"Unknown wallet fields: {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            setattr(wallet, name, value)

        self.save(index)
        return index

    def set_active_wallet(self, wallet_id: str) -> WalletIndex:
        index = self.load()
        wallet = self._require(index, wallet_id)
        index.active_wallet_id = wallet_id
        wallet.last_used = utc_now_iso()
        self.save(index)
        return index

    def get_wallet(self, wallet_id: str) -> Optional[WalletMetadata]:
        return self.load().find(wallet_id)

    def get_wallet_by_label(self, label: str) -> Optional[WalletMetadata]:
        wanted = label.lower()
        return next((w for w in self.load().wallets if w.label.lower() == wanted), None)

    def mark_migrated(self) -> WalletIndex:
        index = self.load()
        index.migrated = True
        index.migrated_at = utc_now_iso()
        self.save(index)
        return index
