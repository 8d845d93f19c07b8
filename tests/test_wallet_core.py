"""
Tests for unit conversion, chain lookup, key security and wallet storage.
"""

import json
from decimal import Decimal

import pytest

from errors import DecryptionFailure, UnsupportedChain
from wallet_core import (
    Wallet, WalletSecurity, WalletStorage, chain_for_token, format_amount, from_base_units,
    get_chain_explorer, get_chain_rpc, get_token, gwei_to_wei, new_wallet, to_base_units, to_decimal,
)


class TestUnits:
    def test_to_base_units(self):
        assert to_base_units("0.05", "bitcoin") == 5_000_000
        assert to_base_units("1", "ethereum") == 10**18
        assert to_base_units(Decimal("0.000000001"), "solana") == 1

    def test_to_base_units_rounds_down(self):
        assert to_base_units("0.123456789", "bitcoin") == 12_345_678

    def test_from_base_units(self):
        assert from_base_units(5_000_000, "bitcoin") == Decimal("0.05")
        assert from_base_units(Decimal("10000"), "bitcoin") == Decimal("0.0001")
        assert from_base_units(5000, "solana") == Decimal("0.000005")

    def test_token_decimals_override(self):
        assert to_base_units("12.5", "ethereum", 6) == 12_500_000
        assert from_base_units(1, "ethereum", 6) == Decimal("0.000001")

    def test_gwei_to_wei(self):
        assert gwei_to_wei(20) == 20 * 10**9
        assert gwei_to_wei(Decimal("0.08")) == 80_000_000

    def test_to_decimal_rejects_text(self):
        with pytest.raises(ValueError):
            to_decimal("abc")

    def test_format_amount(self):
        assert format_amount(Decimal("0.44990000")) == "0.4499"
        assert format_amount(Decimal("1E-8")) == "0.00000001"
        assert format_amount(Decimal("2.000")) == "2"
        assert format_amount(0) == "0"


class TestChainLookup:
    def test_token_symbols(self):
        assert chain_for_token("BTC") == "bitcoin"
        assert chain_for_token("eth") == "ethereum"
        assert chain_for_token("POL") == "polygon"
        assert chain_for_token("SOL") == "solana"

    def test_chain_name_as_token(self):
        assert chain_for_token("Arbitrum") == "arbitrum"

    def test_erc20_symbols(self):
        assert chain_for_token("usdt") == "ethereum"
        assert get_token("USDC")["contract"] == "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
        assert get_token("ETH") is None

    def test_unknown_token(self):
        with pytest.raises(UnsupportedChain):
            chain_for_token("DOGE")

    def test_custom_rpc_override(self):
        cfg = {"custom_rpc": {"ethereum": {"rpc": "https://my.node/", "explorer": "https://scan/{}"}}}
        assert get_chain_rpc("ethereum", cfg) == "https://my.node"
        assert get_chain_rpc("polygon", cfg) == "https://polygon-rpc.com"
        assert get_chain_explorer("ethereum", cfg) == "https://scan/{}"


class TestWalletSecurity:
    def test_roundtrip(self):
        enc = WalletSecurity.encrypt("deadbeef", "hunter2")
        assert WalletSecurity.decrypt(enc, "hunter2") == b"deadbeef"

    def test_wrong_password(self):
        enc = WalletSecurity.encrypt("deadbeef", "hunter2")
        with pytest.raises(DecryptionFailure):
            WalletSecurity.decrypt(enc, "wrong")

    @pytest.mark.parametrize("enc", ["", "not base64!!", "AAAA"])
    def test_garbage(self, enc):
        with pytest.raises(DecryptionFailure):
            WalletSecurity.decrypt(enc, "pw")

    def test_unlocked_yields_stripped_text(self):
        enc = WalletSecurity.encrypt("  abc123\n", "pw")
        with WalletSecurity.unlocked(enc, "pw") as secret:
            assert secret == "abc123"

    def test_new_wallet_encrypts_key(self):
        w = new_wallet("w1", "Bitcoin", " 1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa ", "secret-key", "pw", label="Savings")
        assert w.chain == "bitcoin"
        assert w.address == "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"
        assert "secret-key" not in w.encrypted_key_material
        assert WalletSecurity.decrypt(w.encrypted_key_material, "pw") == b"secret-key"


class TestWalletStorage:
    def test_roundtrip_drops_refresh_error(self, tmp_path):
        st = WalletStorage(tmp_path)
        w = Wallet("w1", "ethereum", "0xabc", label="Main", cached_balance=Decimal("0.5"),
                   balance_refreshed_at=123.0, refresh_error="timeout")
        st.save_wallets([w])
        [loaded] = st.load_wallets()
        assert loaded.cached_balance == Decimal("0.5")
        assert loaded.balance_refreshed_at == 123.0
        assert loaded.label == "Main"
        assert loaded.refresh_error is None

    def test_balances_stored_as_strings(self, tmp_path):
        st = WalletStorage(tmp_path)
        st.save_wallets([Wallet("w1", "bitcoin", "1abc", cached_balance=Decimal("0.00000001"))])
        raw = json.loads((tmp_path / "wallets.json").read_text())
        assert Decimal(raw[0]["cached_balance"]) == Decimal("0.00000001")
        assert isinstance(raw[0]["cached_balance"], str)

    def test_add_replaces_same_id(self, tmp_path):
        st = WalletStorage(tmp_path)
        st.add_wallet(Wallet("w1", "bitcoin", "1abc"))
        st.add_wallet(Wallet("w1", "bitcoin", "1def"))
        st.add_wallet(Wallet("w2", "bitcoin", "1ghi"))
        assert [w.address for w in st.load_wallets()] == ["1def", "1ghi"]
        st.delete_wallet("w1")
        assert [w.id for w in st.load_wallets()] == ["w2"]

    def test_no_temp_files_left(self, tmp_path):
        st = WalletStorage(tmp_path)
        st.save_wallets([Wallet("w1", "bitcoin", "1abc")])
        assert [p.name for p in tmp_path.iterdir()] == ["wallets.json"]

    def test_config_merged_over_defaults(self, tmp_path):
        st = WalletStorage(tmp_path)
        assert st.load_config()["staleness_seconds"] == 120
        st.save_config({"timeout": 3, "custom_rpc": {"bitcoin": {"rpc": "http://localhost:3000/api"}}})
        cfg = st.load_config()
        assert cfg["timeout"] == 3
        assert cfg["max_workers"] == 8
        assert cfg["custom_rpc"]["bitcoin"]["rpc"] == "http://localhost:3000/api"
