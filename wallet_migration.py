"""
Migration from the legacy single-wallet keystore (wallet.enc).

The legacy file holds only an encrypted private key, never the mnemonic, so
it cannot become a multi-account wallet automatically. Migration backs the
file up, starts an empty wallet index flagged as migrated, and leaves a
notice telling the user to re-import their mnemonic.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any

from stx_keystore import read_json
from stx_wallet import WalletConfig
from wallet_index import WalletIndexStore

logger = logging.getLogger(__name__)


def _notice_text(backup_path: Path) -> str:
    return "\n".join([
        "MIGRATION NOTICE:",
        "",
        "Your wallet has been migrated to the new multi-wallet system.",
        "",
        "IMPORTANT: The old wallet format only stored the encrypted private key, not the mnemonic phrase.",
        "To use multi-account features, re-import your wallet with your original 24-word mnemonic phrase.",
        "",
        f"Your old wallet has been backed up to: {backup_path}",
        "",
        "Next steps:",
        "1. Find your original 24-word mnemonic phrase",
        "2. Use wallet_import to import your wallet with the mnemonic",
        "3. Verify the addresses match your original wallet",
        "",
        "If you do not have your mnemonic phrase:",
        f"- Your old wallet backup is still available at: {backup_path}",
        "- Consider creating a new wallet and transferring your funds",
    ])


class WalletMigration:
    def __init__(self, config: WalletConfig, index_store: WalletIndexStore | None = None) -> None:
        self.legacy_path = config.legacy_keystore_path
        self.index_store = index_store or WalletIndexStore(config.wallet_index_path)

    @property
    def backup_path(self) -> Path:
        return self.legacy_path.with_name(self.legacy_path.name + ".bak")

    @property
    def notice_path(self) -> Path:
        return self.legacy_path.with_name(self.legacy_path.name + ".migration-notice.txt")

    def needs_migration(self) -> bool:
        """True when there is a legacy wallet.enc and no wallet index yet."""
        if self.index_store.exists():
            return False
        return self.legacy_path.exists()

    def migrate(self) -> dict[str, Any]:
        if not self.needs_migration():
            return {"migrated": False, "message": "No migration needed"}

        legacy = read_json(self.legacy_path)
        shutil.copyfile(self.legacy_path, self.backup_path)

        self.index_store.mark_migrated()

        self.notice_path.write_text(_notice_text(self.backup_path), encoding="utf-8")
        logger.info("Legacy wallet backed up to %s and index marked migrated", self.backup_path)

        return {
            "migrated": True,
            "requires_user_action": True,
            "backup_path": str(self.backup_path),
            "notice_path": str(self.notice_path),
            "legacy_address": legacy.get("address", "") if isinstance(legacy, dict) else "",
            "message": (
                "Migration completed. Re-import your wallet using your 24-word mnemonic phrase. "
                f"Read {self.notice_path} for detailed instructions."
            ),
        }

    def get_status(self) -> dict[str, Any]:
        index = self.index_store.load()
        return {
            "migrated": index.migrated,
            "migrated_at": index.migrated_at,
            "legacy_wallet_exists": self.legacy_path.exists(),
            "wallets_count": len(index.wallets),
        }
