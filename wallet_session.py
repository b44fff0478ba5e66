"""
Wallet session: the only holder of decrypted key material.

A WalletSession is created once per process and handed to every front-end
handler. It starts locked. ``unlock`` decrypts the active wallet's keystore and
keeps the active account's private key in memory until ``lock`` is called or
the auto-lock deadline passes. The deadline is checked lazily, against an
injectable clock, at the start of every operation that reads session state.

Wallet and account bookkeeping (create, import, switch, delete, export,
rename) lives here too, since it has to stay consistent with what is unlocked.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from stx_keystore import (
    DEFAULT_KDF_PARAMS,
    KdfParams,
    KeystoreStore,
    WalletKeystore,
    decrypt_secret,
    encrypt_secret,
    keystore_file_name,
)
from stx_wallet import (
    Account,
    STXNetwork,
    WalletConfig,
    WalletSecret,
    account_from_private_key,
    address_from_private_key,
    derive_account,
    derive_private_key,
    detect_network,
    generate_mnemonic,
    stx_get_balance,
    stx_get_transactions,
    utc_now_iso,
)
from wallet_errors import (
    InvalidPasswordError,
    WalletLockedError,
    WalletNotFoundError,
    WalletValidationError,
)
from wallet_index import WalletIndexStore, WalletMetadata

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_TRANSACTIONS_LIMIT = 50


def _check_password(password: Any, new: bool = False) -> None:
    if not isinstance(password, str) or not password:
        raise WalletValidationError("Password is required")
    if new and len(password) < MIN_PASSWORD_LENGTH:
        raise WalletValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


def _check_index(index: Any) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise WalletValidationError(f"Invalid account index: {index!r}")
    return index


def _check_label(label: Any) -> str:
    if not isinstance(label, str) or not label.strip():
        raise WalletValidationError("Label must be a non-empty string")
    return label.strip()


class WalletSession:
    """Locked/unlocked state machine over the on-disk wallets."""

    def __init__(
        self,
        config: WalletConfig,
        index_store: Optional[WalletIndexStore] = None,
        keystore_store: Optional[KeystoreStore] = None,
        clock: Callable[[], float] = time.time,
        kdf_params: Optional[KdfParams] = None,
    ) -> None:
        self.config = config
        self.index_store = index_store or WalletIndexStore(config.wallet_index_path)
        self.keystore_store = keystore_store or KeystoreStore(config.wallets_dir)
        self._clock = clock
        self._kdf_params = kdf_params or DEFAULT_KDF_PARAMS
        self._auto_lock_minutes = config.auto_lock_minutes
        self._mutex = threading.RLock()

        # Unlocked state, all None while locked
        self._secret: Optional[WalletSecret] = None
        self._private_key: Optional[str] = None
        self._addresses: Optional[dict[str, str]] = None
        self._unlocked_wallet_id: Optional[str] = None
        self._lock_deadline: Optional[float] = None

        # Next unlock target, restored from the index
        index = self.index_store.load()
        active = index.find(index.active_wallet_id) if index.active_wallet_id else None
        self._active_wallet_id: Optional[str] = active.id if active else None
        self._active_account_index = active.default_account_index if active else 0

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    @property
    def network(self) -> STXNetwork:
        return self.config.network

    @property
    def active_wallet_id(self) -> Optional[str]:
        return self._active_wallet_id

    @property
    def active_account_index(self) -> int:
        return self._active_account_index

    @property
    def auto_lock_minutes(self) -> int:
        return self._auto_lock_minutes

    @auto_lock_minutes.setter
    def auto_lock_minutes(self, minutes: int) -> None:
        """Applies to the next unlock. An armed deadline is left alone."""
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise WalletValidationError("Auto-lock minutes must be a positive integer")
        self._auto_lock_minutes = minutes

    def _clear(self) -> None:
        self._secret = None
        self._private_key = None
        self._addresses = None
        self._unlocked_wallet_id = None
        self._lock_deadline = None

    def _check_auto_lock(self) -> None:
        if self._private_key is None or self._lock_deadline is None:
            return
        if self._clock() >= self._lock_deadline:
            logger.info("Auto-lock deadline passed, locking wallet %s", self._unlocked_wallet_id)
            self._clear()

    def _require_unlocked(self) -> None:
        self._check_auto_lock()
        if self._private_key is None:
            raise WalletLockedError()

    def is_unlocked(self) -> bool:
        with self._mutex:
            self._check_auto_lock()
            return self._private_key is not None

    def lock(self) -> None:
        """Drop the private key and mnemonic from memory."""
        with self._mutex:
            was_unlocked = self._private_key is not None
            wallet_id = self._unlocked_wallet_id
            self._clear()
        if was_unlocked:
            logger.info("Wallet %s locked", wallet_id)

    def get_private_key(self) -> str:
        with self._mutex:
            self._require_unlocked()
            return self._private_key

    def get_address(self) -> str:
        """Active account address on the configured network."""
        with self._mutex:
            self._require_unlocked()
            return self._addresses[self.network]

    def get_address_for_network(self, network: STXNetwork) -> str:
        if network not in ("mainnet", "testnet"):
            raise WalletValidationError(f"Unknown network: {network!r}")
        with self._mutex:
            self._require_unlocked()
            return self._addresses[network]

    def get_wallet_info(self) -> dict[str, Any]:
        with self._mutex:
            self._require_unlocked()
            return {
                "address": self._addresses[self.network],
                "network": self.network,
                "wallet_id": self._unlocked_wallet_id,
                "account_index": self._active_account_index,
            }

    def locks_at(self) -> Optional[str]:
        """ISO timestamp of the auto-lock deadline, or None when locked."""
        with self._mutex:
            self._check_auto_lock()
            if self._lock_deadline is None:
                return None
            return datetime.fromtimestamp(self._lock_deadline, timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Unlock
    # ------------------------------------------------------------------

    def _require_wallet(self, wallet_id: Optional[str]) -> WalletMetadata:
        if not wallet_id:
            raise WalletNotFoundError(
                "No wallet specified. Please create or import a wallet first."
            )
        wallet = self.index_store.get_wallet(wallet_id)
        if wallet is None:
            raise WalletNotFoundError(f"Wallet {wallet_id} not found")
        return wallet

    def _private_key_for(self, secret: WalletSecret, account_index: int) -> str:
        if secret.kind == "rawKey":
            if account_index != 0:
                raise WalletNotFoundError(
                    f"Account index {account_index} out of range (0-0)"
                )
            return secret.value
        return derive_private_key(secret.value, account_index)

    def _load_into_memory(self, secret: WalletSecret, private_key: str) -> None:
        addresses = {
            "mainnet": address_from_private_key(private_key, "mainnet"),
            "testnet": address_from_private_key(private_key, "testnet"),
        }
        self._secret = secret
        self._private_key = private_key
        self._addresses = addresses

    def unlock(self, password: str, wallet_id: Optional[str] = None) -> dict[str, Any]:
        """
        Decrypt a wallet and make its active account usable.

        ``wallet_id`` defaults to the active wallet. On any failure the
        session is left exactly as it was and the error propagates unchanged.
        """
        _check_password(password)
        with self._mutex:
            target_id = wallet_id or self._active_wallet_id
            wallet = self._require_wallet(target_id)
            keystore = self.keystore_store.read(wallet.keystore_file_name)

            try:
                plaintext = decrypt_secret(keystore.crypto, password)
            except InvalidPasswordError:
                logger.warning("Unlock failed for wallet %s", target_id)
                raise

            secret = WalletSecret(kind=keystore.secret_type, value=plaintext)
            if target_id == self._active_wallet_id:
                account_index = self._active_account_index
            else:
                account_index = wallet.default_account_index
            if account_index >= len(keystore.accounts):
                logger.warning(
                    "Account %d missing from wallet %s keystore, using account 0",
                    account_index, target_id,
                )
                account_index = 0

            # Derive before touching state so a failure leaves us locked
            private_key = self._private_key_for(secret, account_index)
            self.index_store.set_active_wallet(target_id)

            self._clear()
            self._load_into_memory(secret, private_key)
            self._unlocked_wallet_id = target_id
            self._active_wallet_id = target_id
            self._active_account_index = account_index
            self._lock_deadline = self._clock() + self._auto_lock_minutes * 60

            logger.info(
                "Wallet %s unlocked (account %d, auto-lock in %d min)",
                target_id, account_index, self._auto_lock_minutes,
            )
            return {
                "wallet_id": target_id,
                "account_index": account_index,
                "mainnet_address": self._addresses["mainnet"],
                "testnet_address": self._addresses["testnet"],
                "current_address": self._addresses[self.network],
                "network": self.network,
            }

    # ------------------------------------------------------------------
    # Wallet management
    # ------------------------------------------------------------------

    def _activate(self, wallet_id: str, account_index: int) -> None:
        """Make a wallet/account the next unlock target. Locks first."""
        if self._private_key is not None:
            self.lock()
        self.index_store.set_active_wallet(wallet_id)
        self.index_store.update_wallet(wallet_id, default_account_index=account_index)
        self._active_wallet_id = wallet_id
        self._active_account_index = account_index

    def create_wallet(self, password: str, label: Optional[str] = None) -> dict[str, Any]:
        """Create a wallet from a fresh 24-word mnemonic."""
        mnemonic = generate_mnemonic()
        result = self.import_wallet(WalletSecret("mnemonic", mnemonic), password, label)
        result["mnemonic"] = mnemonic
        return result

    def import_wallet(
        self,
        secret: WalletSecret | str,
        password: str,
        label: Optional[str] = None,
    ) -> dict[str, Any]:
        """Import a wallet from a mnemonic or a raw private key."""
        if not isinstance(secret, WalletSecret):
            secret = WalletSecret.parse(secret)
        _check_password(password, new=True)
        if label is not None:
            label = _check_label(label)

        wallet_id = str(uuid.uuid4())
        file_name = keystore_file_name(wallet_id)
        if secret.kind == "mnemonic":
            account0 = derive_account(secret.value, 0)
        else:
            account0 = account_from_private_key(secret.value)

        envelope = encrypt_secret(secret.value, password, self._kdf_params)
        keystore = WalletKeystore(
            wallet_id=wallet_id,
            crypto=envelope,
            accounts=[account0],
            secret_type=secret.kind,
        )

        with self._mutex:
            # A malformed index must fail before any keystore file exists
            existing = self.index_store.load()
            if label is None:
                label = f"Wallet {len(existing.wallets) + 1}"
            path = self.keystore_store.write(file_name, keystore)
            now = utc_now_iso()
            try:
                self.index_store.add_wallet(WalletMetadata(
                    id=wallet_id,
                    label=label,
                    created_at=now,
                    last_used=now,
                    account_count=1,
                    default_account_index=0,
                    keystore_file_name=file_name,
                ))
            except Exception:
                self.keystore_store.delete(file_name)
                raise
            self._activate(wallet_id, 0)

        logger.info("Wallet %s (%s) stored from %s", wallet_id, label, secret.kind)
        return {
            "wallet_id": wallet_id,
            "label": label,
            "accounts": [account0],
            "keystore_path": str(path),
        }

    def list_wallets(self) -> list[WalletMetadata]:
        return self.index_store.load().wallets

    def get_active_wallet(self) -> Optional[WalletMetadata]:
        if not self._active_wallet_id:
            return None
        return self.index_store.get_wallet(self._active_wallet_id)

    def wallet_exists(self) -> bool:
        return bool(self.index_store.load().wallets)

    def switch_wallet(self, wallet_id: str, account_index: int = 0) -> None:
        """
        Point the session at another wallet/account.

        Allowed while locked: only the next unlock target changes.
        """
        _check_index(account_index)
        with self._mutex:
            wallet = self._require_wallet(wallet_id)
            if account_index >= wallet.account_count:
                raise WalletNotFoundError(
                    f"Account index {account_index} out of range (0-{wallet.account_count - 1})"
                )
            self._activate(wallet_id, account_index)
        logger.info("Switched to wallet %s, account %d", wallet_id, account_index)

    def delete_wallet(self, wallet_id: str, confirm: bool = False) -> None:
        if confirm is not True:
            raise WalletValidationError(
                "Deletion requires confirm=True. This action is irreversible."
            )
        with self._mutex:
            wallet = self._require_wallet(wallet_id)
            if self._unlocked_wallet_id == wallet_id:
                self.lock()

            index = self.index_store.remove_wallet(wallet_id)
            self.keystore_store.delete(wallet.keystore_file_name)

            if self._active_wallet_id == wallet_id:
                new_active = index.find(index.active_wallet_id) if index.active_wallet_id else None
                self._active_wallet_id = new_active.id if new_active else None
                self._active_account_index = new_active.default_account_index if new_active else 0
        logger.info("Wallet %s deleted", wallet_id)

    def export_wallet(self, wallet_id: Optional[str], password: str) -> str:
        """Return the decrypted mnemonic (or raw key). Session state is untouched."""
        _check_password(password)
        wallet = self._require_wallet(wallet_id or self._active_wallet_id)
        keystore = self.keystore_store.read(wallet.keystore_file_name)
        secret = decrypt_secret(keystore.crypto, password)
        logger.info("Wallet %s exported", wallet.id)
        return secret

    def rename_wallet(self, wallet_id: Optional[str], new_label: str) -> None:
        new_label = _check_label(new_label)
        with self._mutex:
            wallet = self._require_wallet(wallet_id or self._active_wallet_id)
            self.index_store.update_wallet(wallet.id, label=new_label, last_used=utc_now_iso())
        logger.info("Wallet %s renamed to %s", wallet.id, new_label)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, label: Optional[str] = None) -> Account:
        """Derive the next account of the unlocked wallet and store it."""
        if label is not None:
            label = _check_label(label)
        with self._mutex:
            self._require_unlocked()
            if self._secret.kind != "mnemonic":
                raise WalletValidationError(
                    "Wallets imported from a private key have a single account"
                )
            wallet = self._require_wallet(self._unlocked_wallet_id)
            keystore = self.keystore_store.read(wallet.keystore_file_name)

            new_index = max((a.index for a in keystore.accounts), default=-1) + 1
            account = derive_account(self._secret.value, new_index, label)
            keystore.accounts.append(account)
            self.keystore_store.write(wallet.keystore_file_name, keystore)
            self.index_store.update_wallet(
                wallet.id,
                account_count=len(keystore.accounts),
                last_used=utc_now_iso(),
            )
        logger.info("Account %d created in wallet %s", new_index, wallet.id)
        return account

    def list_accounts(self, wallet_id: Optional[str] = None) -> list[Account]:
        target_id = wallet_id or self._active_wallet_id
        if not target_id:
            raise WalletNotFoundError("No wallet specified or active")
        wallet = self._require_wallet(target_id)
        return self.keystore_store.read(wallet.keystore_file_name).accounts

    def get_active_account(self) -> Optional[Account]:
        if not self._active_wallet_id:
            return None
        accounts = self.list_accounts()
        return next((a for a in accounts if a.index == self._active_account_index), None)

    def switch_account(self, account_index: int) -> Account:
        """
        Make another account of the active wallet active.

        If that wallet is unlocked the in-memory key is replaced right away;
        otherwise only the next unlock target changes.
        """
        _check_index(account_index)
        with self._mutex:
            if not self._active_wallet_id:
                raise WalletNotFoundError("No active wallet")
            accounts = self.list_accounts()
            account = next((a for a in accounts if a.index == account_index), None)
            if account is None:
                raise WalletNotFoundError(
                    f"Account index {account_index} out of range (0-{len(accounts) - 1})"
                )

            self._check_auto_lock()
            if self._private_key is not None and self._unlocked_wallet_id == self._active_wallet_id:
                private_key = self._private_key_for(self._secret, account_index)
                self._load_into_memory(self._secret, private_key)

            self.index_store.update_wallet(
                self._active_wallet_id, default_account_index=account_index
            )
            self._active_account_index = account_index
        logger.info("Switched to account %d", account_index)
        return account

    def rename_account(self, account_index: int, new_label: str) -> None:
        _check_index(account_index)
        new_label = _check_label(new_label)
        with self._mutex:
            wallet = self._require_wallet(self._active_wallet_id)
            keystore = self.keystore_store.read(wallet.keystore_file_name)
            account = next((a for a in keystore.accounts if a.index == account_index), None)
            if account is None:
                raise WalletNotFoundError(f"Account index {account_index} out of range")
            account.label = new_label
            self.keystore_store.write(wallet.keystore_file_name, keystore)

    # ------------------------------------------------------------------
    # Chain reads
    # ------------------------------------------------------------------

    def _query_target(self, address: Optional[str]) -> tuple[str, STXNetwork]:
        target = (address or "").strip() or self.get_address()
        return target, detect_network(target, self.network)

    def get_balance(self, address: Optional[str] = None) -> dict[str, Any]:
        """
        Balances for ``address`` (default: the unlocked account).

        The Hiro endpoint follows the address prefix, not the configured
        network, so a testnet address is always queried on testnet.
        """
        target, network = self._query_target(address)
        result = stx_get_balance(self.config.api_url_for(network), target)
        result["network"] = network
        return result

    def get_transactions(self, address: Optional[str] = None, limit: int = 20) -> dict[str, Any]:
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_TRANSACTIONS_LIMIT:
            raise WalletValidationError(
                f"limit must be an integer between 1 and {MAX_TRANSACTIONS_LIMIT}"
            )
        target, network = self._query_target(address)
        result = stx_get_transactions(self.config.api_url_for(network), target, limit)
        result["network"] = network
        return result

    def status(self) -> dict[str, Any]:
        with self._mutex:
            unlocked = self.is_unlocked()
            return {
                "wallet_exists": self.wallet_exists(),
                "is_unlocked": unlocked,
                "address": self._addresses[self.network] if unlocked else None,
                "active_wallet_id": self._active_wallet_id,
                "active_account_index": self._active_account_index,
                "network": self.network,
                "auto_lock_minutes": self._auto_lock_minutes,
                "locks_at": self.locks_at(),
            }
