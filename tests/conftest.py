"""
Shared fixtures: an in-memory chain API, a controllable clock and a fast KDF.
"""

from decimal import Decimal

import pytest

from chains import ChainRegistry
from errors import BroadcastRejected, NetworkUnavailable
from wallet_core import WalletSecurity


class FakeApi:
    """Stands in for BlockchainAPI. Balances are keyed by lower-cased address, in base units.

    `fail` names methods that raise NetworkUnavailable; `broken` maps a lower-cased first
    argument (usually an address) to an exception raised for that argument only.
    """

    def __init__(self):
        self.config = {"etherscan_api_key": "test-key"}
        self.balances = {}
        self.token_balances = {}
        self.token_decimals = 6
        self.utxos = {}
        self.nonce = 0
        self.receipts = {}
        self.pending_txs = set()
        self.btc_statuses = {}
        self.sol_statuses = {}
        self.broken = {}
        self.gas_price_wei = 10**8
        self.oracle = (Decimal(10), Decimal(20), Decimal(30))
        self.gas_station = (Decimal(30), Decimal(40), Decimal(60))
        self.btc_fees = {"economyFee": Decimal(10), "halfHourFee": Decimal(40), "fastestFee": Decimal(80)}
        self.blockhash = "11111111111111111111111111111111"
        self.post_response = (200, "ab" * 32)
        self.submit_result = "0x" + "ab" * 32
        self.submit_error = None
        self.fail = set()
        self.calls = []
        self.submitted = []

    def _hit(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise NetworkUnavailable(f"{name}: connection refused")
        if args and str(args[0]).lower() in self.broken:
            raise self.broken[str(args[0]).lower()]

    def count(self, name):
        return sum(1 for c in self.calls if c[0] == name)

    def rpc_url(self, chain):
        return f"https://{chain}.node.test"

    # ── EVM ──
    def evm_balance_wei(self, chain, addr):
        self._hit("evm_balance_wei", addr)
        return self.balances.get(addr.lower(), 0)

    def evm_nonce(self, chain, addr):
        self._hit("evm_nonce", addr)
        return self.nonce

    def evm_gas_price_wei(self, chain):
        self._hit("evm_gas_price_wei")
        return self.gas_price_wei

    def etherscan_gas_oracle(self, chain_id):
        self._hit("etherscan_gas_oracle", chain_id)
        return self.oracle

    def polygon_gas_station(self):
        self._hit("polygon_gas_station")
        return self.gas_station

    def erc20_balance(self, chain, contract, addr):
        self._hit("erc20_balance", addr, contract)
        return self.token_balances.get(addr.lower(), 0)

    def erc20_decimals(self, chain, contract):
        self._hit("erc20_decimals", contract)
        return self.token_decimals

    def evm_tx_receipt(self, chain, tx_hash):
        self._hit("evm_tx_receipt", tx_hash)
        return self.receipts.get(tx_hash)

    def evm_tx_known(self, chain, tx_hash):
        self._hit("evm_tx_known", tx_hash)
        return tx_hash in self.pending_txs

    # ── Bitcoin ──
    def btc_balance_sats(self, addr, chain="bitcoin"):
        self._hit("btc_balance_sats", addr)
        return self.balances.get(addr.lower(), 0)

    def btc_utxos(self, addr, chain="bitcoin"):
        self._hit("btc_utxos", addr)
        return list(self.utxos.get(addr.lower(), []))

    def btc_fee_estimates(self, chain="bitcoin"):
        self._hit("btc_fee_estimates")
        return dict(self.btc_fees)

    def btc_tx_status(self, txid, chain="bitcoin"):
        self._hit("btc_tx_status", txid)
        return self.btc_statuses.get(txid)

    def post_raw(self, url, body):
        self._hit("post_raw", url)
        self.submitted.append(body)
        return self.post_response

    # ── Solana ──
    def sol_balance_lamports(self, addr, chain="solana"):
        self._hit("sol_balance_lamports", addr)
        return self.balances.get(addr.lower(), 0)

    def sol_latest_blockhash(self, chain="solana"):
        self._hit("sol_latest_blockhash")
        return self.blockhash

    def sol_signature_status(self, signature, chain="solana"):
        self._hit("sol_signature_status", signature)
        return self.sol_statuses.get(signature)

    # ── Submission ──
    def submit_rpc(self, url, method, params):
        self._hit("submit_rpc", method)
        self.submitted.append(params[0])
        if self.submit_error:
            raise BroadcastRejected(self.submit_error)
        return self.submit_result


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """Full-strength PBKDF2 makes every encrypt/decrypt take most of a second."""
    monkeypatch.setattr(WalletSecurity, "ITERATIONS", 1000)


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def registry(api):
    return ChainRegistry.default(api)


@pytest.fixture
def clock():
    return FakeClock()
