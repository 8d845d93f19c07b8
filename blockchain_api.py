"""
Blockchain API v1.0 - Public endpoint access for balances, UTXOs, fees, nonces, submission and status
"""

from decimal import Decimal

import requests
from eth_abi import encode as abi_encode
from eth_utils import to_checksum_address
from loguru import logger

from errors import BroadcastRejected, NetworkUnavailable
from wallet_core import UnspentOutput, get_chain_rpc

ETHERSCAN_V2 = "https://api.etherscan.io/v2/api"
POLYGON_GAS_STATION = "https://gasstation.polygon.technology/v2"

ERC20_BALANCE_OF = "0x70a08231"   # balanceOf(address)
ERC20_DECIMALS = "0x313ce567"     # decimals()


class BlockchainAPI:
    def __init__(self, config=None, session=None):
        self.config = config or {}
        self.s = session or requests.Session()
        self.s.headers.update({"User-Agent":"PrismWallet/1.0","Accept":"application/json"})
        self.timeout = self.config.get("timeout", 10)

    def rpc_url(self, chain):
        return get_chain_rpc(chain, self.config)

    # ── HTTP helpers ──────────────────────────────────────────

    def _get(self, url, missing_ok=False, **kw):
        """GET JSON. With `missing_ok` a 404 returns None instead of raising."""
        try:
            r = self.s.get(url, timeout=self.timeout, **kw)
        except requests.RequestException as e:
            raise NetworkUnavailable(f"{url}: {e}") from e
        if missing_ok and r.status_code == 404:
            return None
        if r.status_code != 200:
            raise NetworkUnavailable(f"{url}: HTTP {r.status_code}")
        try: return r.json()
        except ValueError as e:
            raise NetworkUnavailable(f"{url}: invalid JSON response") from e

    def _post(self, url, data):
        """POST JSON. Returns parsed JSON on any status so error bodies are visible."""
        try:
            r = self.s.post(url, json=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkUnavailable(f"{url}: {e}") from e
        try: return r.json()
        except ValueError as e:
            raise NetworkUnavailable(f"{url}: HTTP {r.status_code}, non-JSON response") from e

    def post_raw(self, url, body):
        """POST a text body; returns (status_code, text)."""
        try:
            r = self.s.post(url, data=body, timeout=self.timeout, headers={"Content-Type":"text/plain"})
        except requests.RequestException as e:
            raise NetworkUnavailable(f"{url}: {e}") from e
        return r.status_code, r.text

    def rpc(self, url, method, params):
        """JSON-RPC 2.0 read call."""
        resp = self._post(url, {"jsonrpc":"2.0","id":1,"method":method,"params":params})
        if not isinstance(resp, dict):
            raise NetworkUnavailable(f"{method}: malformed response")
        if "error" in resp:
            raise NetworkUnavailable(f"{method}: {_rpc_error_message(resp['error'])}")
        return resp.get("result")

    def submit_rpc(self, url, method, params):
        """JSON-RPC submission. An `error` member always wins over `result`."""
        resp = self._post(url, {"jsonrpc":"2.0","id":1,"method":method,"params":params})
        if not isinstance(resp, dict):
            raise BroadcastRejected(f"{method}: malformed response {str(resp)[:200]}")
        if resp.get("error") is not None:
            raise BroadcastRejected(_rpc_error_message(resp["error"]))
        result = resp.get("result")
        if not result:
            raise BroadcastRejected(f"{method}: no transaction id returned")
        return result

    # ── EVM ───────────────────────────────────────────────────

    def evm_balance_wei(self, chain, addr):
        return _hex_int(self.rpc(self.rpc_url(chain), "eth_getBalance", [addr, "latest"]), "eth_getBalance")

    def evm_nonce(self, chain, addr):
        return _hex_int(self.rpc(self.rpc_url(chain), "eth_getTransactionCount", [addr, "pending"]), "eth_getTransactionCount")

    def evm_gas_price_wei(self, chain):
        return _hex_int(self.rpc(self.rpc_url(chain), "eth_gasPrice", []), "eth_gasPrice")

    def evm_call(self, chain, to, data):
        return self.rpc(self.rpc_url(chain), "eth_call", [{"to":to, "data":data}, "latest"])

    def erc20_balance(self, chain, contract, addr):
        """Raw balanceOf(addr) in the token's smallest unit."""
        data = ERC20_BALANCE_OF + abi_encode(["address"], [to_checksum_address(addr)]).hex()
        return _hex_int(self.evm_call(chain, contract, data), "balanceOf")

    def erc20_decimals(self, chain, contract):
        return _hex_int(self.evm_call(chain, contract, ERC20_DECIMALS), "decimals")

    def evm_tx_receipt(self, chain, tx_hash):
        """Receipt dict, or None while the transaction is unmined."""
        r = self.rpc(self.rpc_url(chain), "eth_getTransactionReceipt", [tx_hash])
        if r is not None and not isinstance(r, dict):
            raise NetworkUnavailable("eth_getTransactionReceipt: malformed result")
        return r

    def evm_tx_known(self, chain, tx_hash):
        return self.rpc(self.rpc_url(chain), "eth_getTransactionByHash", [tx_hash]) is not None

    def etherscan_gas_oracle(self, chain_id):
        """(safe, propose, fast) gas prices in gwei from the Etherscan v2 gas tracker."""
        params = {"chainid":chain_id, "module":"gastracker", "action":"gasoracle"}
        key = self.config.get("etherscan_api_key", "")
        if key: params["apikey"] = key
        d = self._get(ETHERSCAN_V2, params=params)
        if not isinstance(d, dict): raise NetworkUnavailable("gas oracle: malformed response")
        res = d.get("result")
        if str(d.get("status")) != "1" or not isinstance(res, dict):
            raise NetworkUnavailable(f"gas oracle: {res or d.get('message', 'no result')}")
        return tuple(Decimal(str(res[k])) for k in ("SafeGasPrice", "ProposeGasPrice", "FastGasPrice"))

    def polygon_gas_station(self):
        d = self._get(POLYGON_GAS_STATION)
        return tuple(Decimal(str(d[k]["maxFee"])) for k in ("safeLow", "standard", "fast"))

    # ── Bitcoin ───────────────────────────────────────────────

    def btc_balance_sats(self, addr, chain="bitcoin"):
        d = self._get(f"{self.rpc_url(chain)}/address/{addr}")
        stats = d.get("chain_stats") if isinstance(d, dict) else None
        if not isinstance(stats, dict): raise NetworkUnavailable(f"address {addr}: no chain_stats in response")
        try:
            return int(stats.get("funded_txo_sum", 0)) - int(stats.get("spent_txo_sum", 0))
        except (TypeError, ValueError) as e:
            raise NetworkUnavailable(f"address {addr}: malformed chain_stats {stats!r}") from e

    def btc_utxos(self, addr, chain="bitcoin"):
        """Confirmed UTXOs in the order the endpoint returns them."""
        d = self._get(f"{self.rpc_url(chain)}/address/{addr}/utxo")
        if not isinstance(d, list): raise NetworkUnavailable(f"utxo {addr}: unexpected response")
        utxos = [UnspentOutput(u["txid"], int(u["vout"]), int(u["value"]))
                 for u in d if u.get("status", {}).get("confirmed", True)]
        logger.debug(f"Found {len(utxos)} confirmed UTXOs for {addr}")
        return utxos

    def btc_fee_estimates(self, chain="bitcoin"):
        """mempool.space recommended fees in sat/vB."""
        d = self._get(f"{self.rpc_url(chain)}/v1/fees/recommended")
        return {k: Decimal(str(d[k])) for k in ("economyFee", "halfHourFee", "fastestFee")}

    def btc_tx_status(self, txid, chain="bitcoin"):
        """{"confirmed": bool, ...} from /tx/{txid}/status, or None for an unknown txid."""
        d = self._get(f"{self.rpc_url(chain)}/tx/{txid}/status", missing_ok=True)
        if d is not None and not isinstance(d, dict):
            raise NetworkUnavailable(f"tx {txid}: unexpected status response")
        return d

    # ── Solana ────────────────────────────────────────────────

    def sol_balance_lamports(self, addr, chain="solana"):
        r = self.rpc(self.rpc_url(chain), "getBalance", [addr])
        if not isinstance(r, dict): raise NetworkUnavailable("getBalance: malformed result")
        try: return int(r.get("value", 0))
        except (TypeError, ValueError) as e:
            raise NetworkUnavailable(f"getBalance: malformed value {r.get('value')!r}") from e

    def sol_latest_blockhash(self, chain="solana"):
        r = self.rpc(self.rpc_url(chain), "getLatestBlockhash", [{"commitment":"finalized"}])
        try: return r["value"]["blockhash"]
        except (KeyError, TypeError) as e:
            raise NetworkUnavailable("getLatestBlockhash: malformed result") from e

    def sol_signature_status(self, signature, chain="solana"):
        """Status entry for one signature, or None when the cluster has no record of it."""
        r = self.rpc(self.rpc_url(chain), "getSignatureStatuses",
                     [[signature], {"searchTransactionHistory":True}])
        try: st = r["value"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise NetworkUnavailable("getSignatureStatuses: malformed result") from e
        if st is not None and not isinstance(st, dict):
            raise NetworkUnavailable("getSignatureStatuses: malformed result")
        return st


def _rpc_error_message(err):
    return err.get("message", str(err)) if isinstance(err, dict) else str(err)

def _hex_int(value, method):
    try: return int(value, 16)
    except (TypeError, ValueError) as e:
        raise NetworkUnavailable(f"{method}: malformed result {value!r}") from e
