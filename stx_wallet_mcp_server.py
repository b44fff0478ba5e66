#!/usr/bin/env python3
"""
MCP server for the Stacks multi-wallet keystore.

Wallet tools: create, import, unlock, lock, address, balance, transaction
history, status, list, switch, delete, export, rename, legacy migration.
Account tools: create, list, switch, rename.

Wraps wallet_session.WalletSession as MCP tools. One session exists per
process; every handler receives it explicitly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

# Load .env from current directory or parent directories
SERVER_DIR = Path(__file__).resolve().parent
load_dotenv(SERVER_DIR / ".env")
load_dotenv(SERVER_DIR.parent / ".env")

from stx_wallet import Account, WalletConfig  # noqa: E402
from wallet_migration import WalletMigration  # noqa: E402
from wallet_session import WalletSession  # noqa: E402

logger = logging.getLogger(__name__)

app = Server("stx_wallet")

_session: Optional[WalletSession] = None


def configure_logging(level: int = logging.INFO) -> None:
    """
    Send log records to stderr. stdout carries the MCP stdio protocol.

    Only configures the root logger once.
    """
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    root_logger.setLevel(level)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    root_logger.addHandler(handler)


def _get_session() -> WalletSession:
    global _session
    if _session is None:
        _session = WalletSession(WalletConfig.from_env())
    return _session


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ok_response(data: dict[str, Any]) -> List[TextContent]:
    data["success"] = True
    return [TextContent(type="text", text=json.dumps(data, default=str))]


def _error_response(message: str, **extra: Any) -> List[TextContent]:
    payload = {"success": False, "error": message}
    payload.update(extra)
    return [TextContent(type="text", text=json.dumps(payload, default=str))]


def _require_str(arguments: dict[str, Any], name: str) -> str:
    value = arguments.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Missing '{name}' parameter.")
    return value


def _optional_str(arguments: dict[str, Any], name: str) -> Optional[str]:
    value = arguments.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Invalid '{name}'. Must be a string.")
    return value.strip() or None


def _parse_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid '{name}'. Must be an integer.")
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid '{name}'. Must be an integer.") from exc
    if parsed < 0:
        raise ValueError(f"Invalid '{name}'. Must be zero or greater.")
    return parsed


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return False


def _account_view(account: Account, network: str, active_index: Optional[int] = None) -> dict[str, Any]:
    view = {
        "index": account.index,
        "label": account.label,
        "mainnet_address": account.mainnet_address,
        "testnet_address": account.testnet_address,
        "active_address": account.address_for(network),
        "derivation_path": account.derivation_path,
        "created_at": account.created_at,
    }
    if active_index is not None:
        view["is_active"] = account.index == active_index
    return view


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

_EMPTY_SCHEMA = {"type": "object", "properties": {}}


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        # -- Wallet lifecycle --
        Tool(
            name="wallet_create",
            description=(
                "Create a new Stacks wallet from a fresh 24-word mnemonic and store it "
                "in an encrypted keystore. Returns the mnemonic once: save it securely."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "password": {"type": "string", "description": "Password to encrypt the keystore (min 8 chars)"},
                    "label": {"type": "string", "description": "Optional wallet label"},
                },
                "required": ["password"],
            },
        ),
        Tool(
            name="wallet_import",
            description="Import a wallet from a BIP-39 mnemonic phrase or a hex private key.",
            inputSchema={
                "type": "object",
                "properties": {
                    "mnemonic": {"type": "string", "description": "Mnemonic phrase or 64/66-char hex private key"},
                    "password": {"type": "string", "description": "Password to encrypt the keystore (min 8 chars)"},
                    "label": {"type": "string", "description": "Optional wallet label"},
                },
                "required": ["mnemonic", "password"],
            },
        ),
        Tool(
            name="wallet_unlock",
            description=(
                "Unlock a wallet with its password so transactions can be signed. "
                "The wallet locks itself again after the configured auto-lock minutes."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "password": {"type": "string", "description": "Wallet password"},
                    "wallet_id": {"type": "string", "description": "Wallet ID (defaults to the active wallet)"},
                },
                "required": ["password"],
            },
        ),
        Tool(
            name="wallet_lock",
            description="Lock the wallet (clears the private key from memory).",
            inputSchema=_EMPTY_SCHEMA,
        ),
        Tool(
            name="wallet_get_address",
            description="Return the unlocked account's address on the configured network.",
            inputSchema=_EMPTY_SCHEMA,
        ),
        Tool(
            name="wallet_get_balance",
            description=(
                "Return STX and well-known token balances. The network is detected "
                "from the address prefix (SP/SM mainnet, ST/SN testnet)."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {"type": "string", "description": "Address to check (defaults to the unlocked account)"},
                },
            },
        ),
        Tool(
            name="wallet_get_transactions",
            description="Return recent transactions for an address, network detected from its prefix.",
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {"type": "string", "description": "Address to query (defaults to the unlocked account)"},
                    "limit": {"type": "integer", "description": "Max transactions to return (1-50, default 20)"},
                },
            },
        ),
        Tool(
            name="wallet_status",
            description="Report whether a wallet exists, whether it is unlocked, and the active wallet/account.",
            inputSchema=_EMPTY_SCHEMA,
        ),
        # -- Multi-wallet management --
        Tool(
            name="wallet_list",
            description="List all wallets with their metadata.",
            inputSchema=_EMPTY_SCHEMA,
        ),
        Tool(
            name="wallet_switch",
            description=(
                "Switch the active wallet and account. Locks the session; "
                "unlock again to sign transactions."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "wallet_id": {"type": "string", "description": "Wallet ID to switch to"},
                    "account_index": {"type": "integer", "description": "Account index to use (default 0)"},
                },
                "required": ["wallet_id"],
            },
        ),
        Tool(
            name="wallet_delete",
            description="Delete a wallet and its keystore permanently. Requires confirm: true.",
            inputSchema={
                "type": "object",
                "properties": {
                    "wallet_id": {"type": "string", "description": "Wallet ID to delete"},
                    "confirm": {"type": "boolean", "description": "Must be true to confirm deletion"},
                },
                "required": ["wallet_id", "confirm"],
            },
        ),
        Tool(
            name="wallet_export",
            description="Export a wallet's mnemonic phrase or private key. DANGEROUS: keep it secret.",
            inputSchema={
                "type": "object",
                "properties": {
                    "wallet_id": {"type": "string", "description": "Wallet ID (defaults to the active wallet)"},
                    "password": {"type": "string", "description": "Wallet password"},
                },
                "required": ["password"],
            },
        ),
        Tool(
            name="wallet_rename",
            description="Rename a wallet.",
            inputSchema={
                "type": "object",
                "properties": {
                    "wallet_id": {"type": "string", "description": "Wallet ID (defaults to the active wallet)"},
                    "new_label": {"type": "string", "description": "New label"},
                },
                "required": ["new_label"],
            },
        ),
        Tool(
            name="wallet_migrate",
            description="Migrate a legacy single-wallet keystore (wallet.enc) to the multi-wallet layout.",
            inputSchema=_EMPTY_SCHEMA,
        ),
        # -- Multi-account management --
        Tool(
            name="account_create",
            description="Derive and store the next account of the unlocked wallet.",
            inputSchema={
                "type": "object",
                "properties": {
                    "label": {"type": "string", "description": "Optional account label (e.g. 'Trading')"},
                },
            },
        ),
        Tool(
            name="account_list",
            description="List the accounts of a wallet.",
            inputSchema={
                "type": "object",
                "properties": {
                    "wallet_id": {"type": "string", "description": "Wallet ID (defaults to the active wallet)"},
                },
            },
        ),
        Tool(
            name="account_switch",
            description="Switch the active account of the active wallet.",
            inputSchema={
                "type": "object",
                "properties": {
                    "account_index": {"type": "integer", "description": "Account index (0, 1, 2, ...)"},
                },
                "required": ["account_index"],
            },
        ),
        Tool(
            name="account_rename",
            description="Rename an account of the active wallet.",
            inputSchema={
                "type": "object",
                "properties": {
                    "account_index": {"type": "integer", "description": "Account index to rename"},
                    "new_label": {"type": "string", "description": "New label"},
                },
                "required": ["account_index", "new_label"],
            },
        ),
    ]


_HANDLERS: dict[str, Any] = {}


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    handler = _HANDLERS.get(name)
    if handler is None:
        return _error_response(f"Unknown tool: {name}")

    try:
        session = await asyncio.to_thread(_get_session)
        return await handler(session, arguments)
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


# ---------------------------------------------------------------------------
# Handlers -- wallet lifecycle
# ---------------------------------------------------------------------------


async def _handle_wallet_create(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    password = _require_str(arguments, "password")
    label = _optional_str(arguments, "label")
    result = await asyncio.to_thread(session.create_wallet, password, label)
    account0 = result["accounts"][0]
    return _ok_response({
        "wallet_id": result["wallet_id"],
        "label": result["label"],
        "mainnet_address": account0.mainnet_address,
        "testnet_address": account0.testnet_address,
        "active_address": account0.address_for(session.network),
        "network": session.network,
        "keystore_path": result["keystore_path"],
        "mnemonic": result["mnemonic"],
        "message": "Wallet created successfully. IMPORTANT: Save your mnemonic phrase securely!",
    })


async def _handle_wallet_import(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    secret = _require_str(arguments, "mnemonic")
    password = _require_str(arguments, "password")
    label = _optional_str(arguments, "label")
    result = await asyncio.to_thread(session.import_wallet, secret, password, label)
    account0 = result["accounts"][0]
    return _ok_response({
        "wallet_id": result["wallet_id"],
        "label": result["label"],
        "mainnet_address": account0.mainnet_address,
        "testnet_address": account0.testnet_address,
        "active_address": account0.address_for(session.network),
        "network": session.network,
        "keystore_path": result["keystore_path"],
        "message": "Wallet imported successfully",
    })


async def _handle_wallet_unlock(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    password = _require_str(arguments, "password")
    wallet_id = _optional_str(arguments, "wallet_id")
    result = await asyncio.to_thread(session.unlock, password, wallet_id)
    result["auto_lock_minutes"] = session.auto_lock_minutes
    result["message"] = f"Wallet unlocked successfully. Current network: {result['network']}"
    return _ok_response(result)


async def _handle_wallet_lock(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    await asyncio.to_thread(session.lock)
    return _ok_response({"message": "Wallet locked successfully"})


async def _handle_wallet_get_address(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    info = await asyncio.to_thread(session.get_wallet_info)
    info["is_unlocked"] = True
    return _ok_response(info)


async def _handle_wallet_get_balance(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    address = _optional_str(arguments, "address")
    result = await asyncio.to_thread(session.get_balance, address)
    return _ok_response(result)


async def _handle_wallet_get_transactions(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    address = _optional_str(arguments, "address")
    limit = arguments.get("limit")
    limit = 20 if limit is None else _parse_int(limit, "limit")
    result = await asyncio.to_thread(session.get_transactions, address, limit)
    return _ok_response(result)


async def _handle_wallet_status(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    status = await asyncio.to_thread(session.status)
    return _ok_response(status)


# ---------------------------------------------------------------------------
# Handlers -- multi-wallet management
# ---------------------------------------------------------------------------


async def _handle_wallet_list(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    wallets = await asyncio.to_thread(session.list_wallets)
    active_id = session.active_wallet_id
    return _ok_response({
        "wallets": [
            {
                "id": w.id,
                "label": w.label,
                "account_count": w.account_count,
                "created_at": w.created_at,
                "last_used": w.last_used,
                "is_active": w.id == active_id,
            }
            for w in wallets
        ],
        "active_wallet_id": active_id,
        "total_wallets": len(wallets),
    })


async def _handle_wallet_switch(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    wallet_id = _require_str(arguments, "wallet_id")
    account_index = arguments.get("account_index")
    account_index = 0 if account_index is None else _parse_int(account_index, "account_index")
    await asyncio.to_thread(session.switch_wallet, wallet_id, account_index)
    return _ok_response({
        "wallet_id": wallet_id,
        "account_index": account_index,
        "message": f"Switched to wallet {wallet_id}, account {account_index}",
        "note": "Unlock the wallet to use it for transactions",
    })


async def _handle_wallet_delete(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    wallet_id = _require_str(arguments, "wallet_id")
    if not _parse_bool(arguments.get("confirm")):
        return _error_response(
            "Deletion requires confirm: true",
            warning="This action is irreversible. All accounts in this wallet will be deleted.",
        )
    await asyncio.to_thread(session.delete_wallet, wallet_id, True)
    return _ok_response({"message": f"Wallet {wallet_id} deleted successfully"})


async def _handle_wallet_export(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    password = _require_str(arguments, "password")
    wallet_id = _optional_str(arguments, "wallet_id")
    secret = await asyncio.to_thread(session.export_wallet, wallet_id, password)
    return _ok_response({
        "mnemonic": secret,
        "warning": "NEVER share this with anyone! Anyone with it can access your funds.",
        "recommendation": "Store it securely offline.",
    })


async def _handle_wallet_rename(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    new_label = _require_str(arguments, "new_label")
    wallet_id = _optional_str(arguments, "wallet_id")
    await asyncio.to_thread(session.rename_wallet, wallet_id, new_label)
    return _ok_response({"message": f"Wallet renamed to '{new_label.strip()}'"})


async def _handle_wallet_migrate(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    migration = WalletMigration(session.config, session.index_store)
    result = await asyncio.to_thread(migration.migrate)
    result["status"] = await asyncio.to_thread(migration.get_status)
    return _ok_response(result)


# ---------------------------------------------------------------------------
# Handlers -- multi-account management
# ---------------------------------------------------------------------------


async def _handle_account_create(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    label = _optional_str(arguments, "label")
    account = await asyncio.to_thread(session.create_account, label)
    return _ok_response({
        "account": _account_view(account, session.network),
        "message": f"Account '{account.label}' created successfully",
        "note": "Use account_switch to make this account active for transactions",
    })


async def _handle_account_list(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    wallet_id = _optional_str(arguments, "wallet_id")
    accounts = await asyncio.to_thread(session.list_accounts, wallet_id)
    active_index = None
    if wallet_id is None or wallet_id == session.active_wallet_id:
        active_index = session.active_account_index
    return _ok_response({
        "accounts": [_account_view(a, session.network, active_index) for a in accounts],
        "active_account_index": active_index,
        "total_accounts": len(accounts),
    })


async def _handle_account_switch(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    if arguments.get("account_index") is None:
        raise ValueError("Missing 'account_index' parameter.")
    account_index = _parse_int(arguments["account_index"], "account_index")
    account = await asyncio.to_thread(session.switch_account, account_index)
    unlocked = await asyncio.to_thread(session.is_unlocked)
    return _ok_response({
        "account": _account_view(account, session.network),
        "is_unlocked": unlocked,
        "message": f"Switched to account '{account.label}' (index {account.index})",
    })


async def _handle_account_rename(session: WalletSession, arguments: dict[str, Any]) -> List[TextContent]:
    if arguments.get("account_index") is None:
        raise ValueError("Missing 'account_index' parameter.")
    account_index = _parse_int(arguments["account_index"], "account_index")
    new_label = _require_str(arguments, "new_label")
    await asyncio.to_thread(session.rename_account, account_index, new_label)
    return _ok_response({"message": f"Account {account_index} renamed to '{new_label.strip()}'"})


_HANDLERS.update({
    "wallet_create": _handle_wallet_create,
    "wallet_import": _handle_wallet_import,
    "wallet_unlock": _handle_wallet_unlock,
    "wallet_lock": _handle_wallet_lock,
    "wallet_get_address": _handle_wallet_get_address,
    "wallet_get_balance": _handle_wallet_get_balance,
    "wallet_get_transactions": _handle_wallet_get_transactions,
    "wallet_status": _handle_wallet_status,
    "wallet_list": _handle_wallet_list,
    "wallet_switch": _handle_wallet_switch,
    "wallet_delete": _handle_wallet_delete,
    "wallet_export": _handle_wallet_export,
    "wallet_rename": _handle_wallet_rename,
    "wallet_migrate": _handle_wallet_migrate,
    "account_create": _handle_account_create,
    "account_list": _handle_account_list,
    "account_switch": _handle_account_switch,
    "account_rename": _handle_account_rename,
})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def main() -> None:
    configure_logging(getattr(logging, os.getenv("STX_LOG_LEVEL", "INFO").upper(), logging.INFO))
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
