"""Unit tests for Stacks derivation, addresses, config and Hiro reads."""

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import stx_wallet  # noqa: E402
from stx_wallet import WalletConfig, WalletSecret  # noqa: E402
from wallet_errors import WalletValidationError  # noqa: E402

MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
RAW_KEY = "11" * 32


# ---------------------------------------------------------------------------
# c32check encoding
# ---------------------------------------------------------------------------


def test_c32_address_versions_give_prefixes():
    hash160 = bytes(range(20))
    assert stx_wallet.c32_address(22, hash160).startswith("SP")
    assert stx_wallet.c32_address(26, hash160).startswith("ST")
    assert stx_wallet.c32_address(20, hash160).startswith("SM")
    assert stx_wallet.c32_address(21, hash160).startswith("SN")


def test_decode_c32_address_roundtrip():
    hash160 = b"\x01\x02\x03" + b"\x00" * 17
    addr = stx_wallet.c32_address(26, hash160)
    version, decoded = stx_wallet.decode_c32_address(addr)
    assert version == 26
    assert decoded == hash160


def test_decode_c32_address_bad_checksum():
    addr = stx_wallet.c32_address(22, bytes(range(20)))
    last = addr[-1]
    tampered = addr[:-1] + ("0" if last != "0" else "1")
    with pytest.raises(ValueError):
        stx_wallet.decode_c32_address(tampered)


def test_decode_c32_address_rejects_garbage():
    with pytest.raises(ValueError):
        stx_wallet.decode_c32_address("XP123")
    with pytest.raises(ValueError):
        stx_wallet.decode_c32_address("SPIIIIII")


# ---------------------------------------------------------------------------
# Network detection
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("address,expected", [
    ("SP3YF2YMAGQPRTDDGV5161KBPSK4PX9TZ2NKRZ3S0", "mainnet"),
    ("SM2J6ZY48GV1EZ5V2V5RB9MP66SW86PYKKQVX8X0G", "mainnet"),
    ("ST3YF2YMAGQPRTDDGV5161KBPSK4PX9TZ2PD4RMKX", "testnet"),
    ("SN2J6ZY48GV1EZ5V2V5RB9MP66SW86PYKKQVX8X0G", "testnet"),
    ("sp3yf2ymagqprtddgv5161kbpsk4px9tz2nkrz3s0", "mainnet"),
])
def test_detect_network_from_prefix(address, expected):
    other = "testnet" if expected == "mainnet" else "mainnet"
    assert stx_wallet.detect_network(address, other) == expected


def test_detect_network_falls_back_to_default():
    assert stx_wallet.detect_network("bc1qxyz", "testnet") == "testnet"
    assert stx_wallet.detect_network("", "mainnet") == "mainnet"


# ---------------------------------------------------------------------------
# Derivation
# ---------------------------------------------------------------------------


def test_derive_stx_key_from_seed_length():
    key = stx_wallet._derive_stx_key_from_seed(bytes(64), 0)
    assert len(key) == 32


def test_derive_private_key_is_deterministic_and_compressed():
    first = stx_wallet.derive_private_key(MNEMONIC, 0)
    second = stx_wallet.derive_private_key(MNEMONIC, 0)
    assert first == second
    assert len(first) == 66
    assert first.endswith("01")


def test_known_address_for_abandon_about_mnemonic():
    account = stx_wallet.derive_account(MNEMONIC, 0)
    assert account.mainnet_address == "SPC5KHM41H6WHAST7MWWDD807YSPRQKJ69FSH54J"
    assert stx_wallet.detect_network(account.testnet_address, "mainnet") == "testnet"


def test_distinct_indexes_give_distinct_keys():
    keys = {stx_wallet.derive_private_key(MNEMONIC, i) for i in range(3)}
    assert len(keys) == 3


def test_mnemonic_whitespace_and_case_are_normalized():
    messy = "  " + MNEMONIC.upper().replace(" ", "   ") + "\n"
    assert stx_wallet.derive_private_key(messy, 0) == stx_wallet.derive_private_key(MNEMONIC, 0)


def test_derive_private_key_rejects_bad_index():
    with pytest.raises(WalletValidationError):
        stx_wallet.derive_private_key(MNEMONIC, -1)
    with pytest.raises(WalletValidationError):
        stx_wallet.derive_private_key(MNEMONIC, 2**31)


def test_derive_account_addresses_share_hash160():
    account = stx_wallet.derive_account(MNEMONIC, 1)
    assert account.index == 1
    assert account.label == "Account 2"
    assert account.derivation_path == "m/44'/5757'/0'/0/1"
    assert account.mainnet_address.startswith("SP")
    assert account.testnet_address.startswith("ST")

    main_version, main_hash = stx_wallet.decode_c32_address(account.mainnet_address)
    test_version, test_hash = stx_wallet.decode_c32_address(account.testnet_address)
    assert (main_version, test_version) == (22, 26)
    assert main_hash == test_hash


def test_account_address_for_and_dict_roundtrip():
    account = stx_wallet.derive_account(MNEMONIC, 0, "Main")
    assert account.address_for("mainnet") == account.mainnet_address
    assert account.address_for("testnet") == account.testnet_address
    data = account.to_dict()
    assert data["mainnetAddress"] == account.mainnet_address
    assert stx_wallet.Account.from_dict(data) == account


def test_account_from_private_key():
    account = stx_wallet.account_from_private_key(RAW_KEY + "01")
    assert account.index == 0
    assert account.derivation_path == ""
    assert account.mainnet_address == stx_wallet.address_from_private_key(RAW_KEY + "01", "mainnet")


def test_uncompressed_key_gives_different_address():
    compressed = stx_wallet.address_from_private_key(RAW_KEY + "01", "mainnet")
    uncompressed = stx_wallet.address_from_private_key(RAW_KEY, "mainnet")
    assert compressed != uncompressed


def test_generate_mnemonic_is_valid_24_words():
    phrase = stx_wallet.generate_mnemonic()
    assert len(phrase.split()) == 24
    assert stx_wallet.is_valid_mnemonic(phrase)


def test_is_valid_mnemonic_rejects_bad_checksum_and_length():
    assert stx_wallet.is_valid_mnemonic(MNEMONIC)
    assert not stx_wallet.is_valid_mnemonic(" ".join(["abandon"] * 12))
    assert not stx_wallet.is_valid_mnemonic("abandon about")


# ---------------------------------------------------------------------------
# Import input
# ---------------------------------------------------------------------------


def test_wallet_secret_parse_mnemonic():
    secret = WalletSecret.parse("  " + MNEMONIC.upper() + " ")
    assert secret.kind == "mnemonic"
    assert secret.value == MNEMONIC
    assert MNEMONIC not in repr(secret)


@pytest.mark.parametrize("text", [RAW_KEY, RAW_KEY + "01", "0x" + RAW_KEY.upper()])
def test_wallet_secret_parse_raw_key(text):
    secret = WalletSecret.parse(text)
    assert secret.kind == "rawKey"
    assert secret.value == text.lower().removeprefix("0x")


@pytest.mark.parametrize("text", ["", "   ", "abcd", "zz" * 32, "00" * 32, "word " * 12])
def test_wallet_secret_parse_rejects(text):
    with pytest.raises(WalletValidationError):
        WalletSecret.parse(text)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_config_from_env_defaults(monkeypatch):
    for name in ("STX_NETWORK", "STX_WALLET_HOME", "STX_AUTO_LOCK_MINUTES", "STX_API_URL"):
        monkeypatch.delenv(name, raising=False)
    cfg = WalletConfig.from_env()
    assert cfg.network == "mainnet"
    assert cfg.home_dir == Path.home() / ".stacks-mcp"
    assert cfg.auto_lock_minutes == 15
    assert cfg.wallet_index_path == cfg.home_dir / "wallets.json"
    assert cfg.wallets_dir == cfg.home_dir / "wallets"
    assert cfg.legacy_keystore_path == cfg.home_dir / "wallet.enc"


def test_config_from_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("STX_NETWORK", "TESTNET")
    monkeypatch.setenv("STX_WALLET_HOME", str(tmp_path))
    monkeypatch.setenv("STX_AUTO_LOCK_MINUTES", "5")
    monkeypatch.setenv("STX_API_URL", "http://localhost:3999/")
    cfg = WalletConfig.from_env()
    assert cfg.network == "testnet"
    assert cfg.home_dir == tmp_path
    assert cfg.auto_lock_minutes == 5
    assert cfg.api_url_for("testnet") == "http://localhost:3999"
    assert cfg.api_url_for("mainnet") == stx_wallet.HIRO_MAINNET


@pytest.mark.parametrize("value", ["0", "-3", "soon"])
def test_config_rejects_bad_auto_lock(monkeypatch, value):
    monkeypatch.setenv("STX_AUTO_LOCK_MINUTES", value)
    with pytest.raises(WalletValidationError):
        WalletConfig.from_env()


def test_api_url_follows_network(tmp_path):
    cfg = WalletConfig(network="mainnet", home_dir=tmp_path)
    assert cfg.api_url_for("mainnet") == "https://api.hiro.so"
    assert cfg.api_url_for("testnet") == "https://api.testnet.hiro.so"


# ---------------------------------------------------------------------------
# Hiro reads
# ---------------------------------------------------------------------------


def test_stx_get_balance_parses_tokens(monkeypatch):
    calls = []
    welsh = stx_wallet.WELL_KNOWN_TOKENS["WELSH"]["contract"]

    def mock_get(api_url, path, params=None):
        calls.append((api_url, path))
        return {
            "stx": {"balance": "2500000", "locked": "1000000"},
            "fungible_tokens": {
                f"{welsh}::welshcorgicoin": {"balance": "1500000"},
                "SP000.other-token::other": {"balance": "7"},
            },
            "non_fungible_tokens": {"SP000.nft::punk": {"count": "2"}},
        }

    monkeypatch.setattr(stx_wallet, "_hiro_get", mock_get)
    result = stx_wallet.stx_get_balance("https://api.hiro.so", "SP3YF2YMAGQPRTDDGV5161KBPSK4PX9TZ2NKRZ3S0")

    assert calls == [(
        "https://api.hiro.so",
        "/extended/v1/address/SP3YF2YMAGQPRTDDGV5161KBPSK4PX9TZ2NKRZ3S0/balances",
    )]
    assert result["balance_ustx"] == 2500000
    assert result["balance_stx"] == "2.5"
    assert result["locked_ustx"] == 1000000
    assert [t["symbol"] for t in result["tokens"]] == ["WELSH"]
    assert result["tokens"][0]["balance"] == "1.5"
    assert len(result["fungible_tokens"]) == 2
    assert result["non_fungible_tokens"][0]["count"] == "2"


def test_stx_get_balance_wraps_errors(monkeypatch):
    def failing_get(api_url, path, params=None):
        raise ConnectionError("boom")

    monkeypatch.setattr(stx_wallet, "_hiro_get", failing_get)
    with pytest.raises(RuntimeError, match="Failed to fetch balance"):
        stx_wallet.stx_get_balance("https://api.hiro.so", "SP1")


def test_stx_get_transactions_normalizes_results(monkeypatch):
    def mock_get(api_url, path, params=None):
        assert params == {"limit": 2}
        return {
            "total": 10,
            "results": [
                {
                    "tx_id": "0xabc",
                    "tx_type": "token_transfer",
                    "tx_status": "success",
                    "sender_address": "SP1",
                    "token_transfer": {"recipient_address": "SP2", "amount": "500"},
                    "fee_rate": "180",
                    "block_height": 100,
                    "burn_block_time": 1700000000,
                },
                {
                    "tx_id": "0xdef",
                    "tx_type": "contract_call",
                    "tx_status": "abort_by_response",
                    "sender_address": "SP1",
                    "fee_rate": "300",
                },
            ],
        }

    monkeypatch.setattr(stx_wallet, "_hiro_get", mock_get)
    result = stx_wallet.stx_get_transactions("https://api.hiro.so", "SP1", limit=2)

    assert result["total"] == 10
    first, second = result["transactions"]
    assert first["status"] == "success"
    assert first["recipient"] == "SP2"
    assert first["amount_ustx"] == 500
    assert first["fee_ustx"] == 180
    assert second["status"] == "failed"
    assert second["amount_ustx"] is None
