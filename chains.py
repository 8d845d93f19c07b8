"""
Chain adapters v1.0 - One adapter per chain family behind a shared interface:
validate_address, get_balance, fetch_fee_rates, build_and_sign, broadcast, transaction_status.
Adding a chain means registering an adapter, not touching call sites.
"""

import re, json, base64
from decimal import Decimal

import base58
from bit import PrivateKey as BtcKey, wif_to_key
from bit.network.meta import Unspent
from bit.transaction import address_to_scriptpubkey
from eth_abi import encode as abi_encode
from eth_account import Account as EthAccount
from eth_utils import to_checksum_address
from loguru import logger
from solders.hash import Hash as SolHash
from solders.keypair import Keypair as SolKeypair
from solders.message import Message as SolMsg
from solders.pubkey import Pubkey as SolPubkey
from solders.system_program import TransferParams, transfer as sol_transfer
from solders.transaction import Transaction as SolTx

from errors import (
    BroadcastRejected, DecryptionFailure, InsufficientBalance, InvalidAddress, InvalidAmount,
    UnsupportedChain,
)
from utxo_selector import DUST_THRESHOLD, SINGLE_INPUT_TX_VBYTES, select_inputs
from wallet_core import (
    SUPPORTED_CHAINS, SignedTransaction, format_amount, from_base_units, get_chain,
    gwei_to_wei, to_base_units,
)

# ══════════════════════════════════════════════════════════════
#  CONSTANTS
# ══════════════════════════════════════════════════════════════
EVM_TRANSFER_GAS = 21000
ERC20_TRANSFER_GAS = 65000
ERC20_TRANSFER = bytes.fromhex("a9059cbb")  # transfer(address,uint256)
SOL_SIGNATURE_FEE = 5000  # lamports

# transaction_status() results
TX_PENDING, TX_CONFIRMED, TX_FAILED, TX_UNKNOWN = "pending", "confirmed", "failed", "unknown"

# Chains with no public gas oracle derive tiers from eth_gasPrice.
FEE_MULT = {"economy": Decimal("0.8"), "standard": Decimal("1.0"), "priority": Decimal("1.5")}

_EVM_RE = re.compile(r'^0x[0-9a-fA-F]{40}$')
_BTC_LEGACY_RE = re.compile(r'^[13][a-km-zA-HJ-NP-Z1-9]{24,33}$')
_BTC_BECH32_RE = re.compile(r'^bc1q[ac-hj-np-z02-9]{38,59}$')
_SOL_RE = re.compile(r'^[1-9A-HJ-NP-Za-km-z]{32,44}$')
_HEX_RE = re.compile(r'^(0x)?[0-9a-fA-F]+$')


def validate_address(address, chain):
    """(ok, reason) for `address` on `chain`. Pure classifier."""
    if not address or not address.strip():
        return False, "Address is required"
    cfg = SUPPORTED_CHAINS.get(str(chain).lower())
    if not cfg:
        return False, f"Unsupported chain: {chain}"
    return ADAPTER_FAMILIES[cfg["family"]].check_address(address.strip())


# ══════════════════════════════════════════════════════════════
#  BASE
# ══════════════════════════════════════════════════════════════
class ChainAdapter:
    family = None
    fee_unit = ""
    reference_size = 0

    def __init__(self, chain, api):
        self.chain = chain
        self.cfg = get_chain(chain)
        self.api = api

    @classmethod
    def check_address(cls, address):
        return False, f"Unsupported chain: {cls.family}"

    def validate_address(self, address):
        return validate_address(address, self.chain)

    def get_balance(self, address):
        raise NotImplementedError

    def fetch_fee_rates(self):
        """{tier: per-unit rate} from the live source. Raises on source failure."""
        raise NotImplementedError

    def fee_cost(self, rate, size=None):
        """Native-currency cost of a transaction of `size` units (default: the reference one) at `rate`."""
        raise NotImplementedError

    def transfer_size(self, token=None):
        """Fee-bearing size of one transfer: vbytes, gas or signatures."""
        if token is not None:
            raise UnsupportedChain(f"Token transfers are not supported on {self.chain}")
        return self.reference_size

    def build_and_sign(self, wallet, secret, recipient, amount, quote, token=None):
        raise UnsupportedChain(f"No transaction encoder for {self.chain}")

    def broadcast(self, signed):
        raise UnsupportedChain(f"No broadcaster for {self.chain}")

    def transaction_status(self, tx_id):
        raise UnsupportedChain(f"No status lookup for {self.chain}")

    def _require_balance(self, have, need, what="amount + fee", sym=None, decimals=None):
        if have < need:
            sym = sym or self.cfg["symbol"]
            fmt = lambda v: format_amount(from_base_units(v, self.chain, decimals), 18)
            raise InsufficientBalance(f"Insufficient balance. Have {fmt(have)} {sym}, need {fmt(need)} {sym} ({what})")


# ══════════════════════════════════════════════════════════════
#  EVM (ethereum / polygon / bsc / arbitrum / optimism / avalanche)
# ══════════════════════════════════════════════════════════════
class EvmAdapter(ChainAdapter):
    family = "evm"
    fee_unit = "gwei"
    reference_size = EVM_TRANSFER_GAS

    @classmethod
    def check_address(cls, address):
        return (True, "") if _EVM_RE.match(address) else (False, "Invalid EVM address")

    def __init__(self, chain, api):
        super().__init__(chain, api)
        self._decimals = {}

    def get_balance(self, address):
        return from_base_units(self.api.evm_balance_wei(self.chain, address), self.chain)

    def fetch_fee_rates(self):
        # Etherscan v2 rejects key-less calls
        if self.chain in ("ethereum", "bsc") and self.api.config.get("etherscan_api_key"):
            slow, std, fast = self.api.etherscan_gas_oracle(self.cfg["chain_id"])
        elif self.chain == "polygon":
            slow, std, fast = self.api.polygon_gas_station()
        else:
            gp = Decimal(self.api.evm_gas_price_wei(self.chain)) / Decimal(10) ** 9
            slow, std, fast = (gp * FEE_MULT[t] for t in ("economy", "standard", "priority"))
        return {"economy": slow, "standard": std, "priority": fast}

    def fee_cost(self, rate, size=None):
        return from_base_units(gwei_to_wei(rate) * (size or EVM_TRANSFER_GAS), self.chain)

    def transfer_size(self, token=None):
        if token is None: return EVM_TRANSFER_GAS
        if token["chain"] != self.chain:
            raise UnsupportedChain(f"{token['symbol']} is not issued on {self.chain}")
        return ERC20_TRANSFER_GAS

    # ── ERC-20 ──

    def token_decimals(self, token):
        c = token["contract"]
        if c not in self._decimals:
            self._decimals[c] = self.api.erc20_decimals(self.chain, c)
        return self._decimals[c]

    def get_token_balance(self, address, token):
        raw = self.api.erc20_balance(self.chain, token["contract"], address)
        return from_base_units(raw, self.chain, self.token_decimals(token))

    def build_and_sign(self, wallet, secret, recipient, amount, quote, token=None):
        try: acct = EthAccount.from_key(secret if secret.startswith("0x") else "0x" + secret)
        except (ValueError, TypeError) as e:
            raise DecryptionFailure("Decrypted key material is not a valid EVM private key") from e
        if acct.address.lower() != wallet.address.lower():
            raise DecryptionFailure("Private key does not match wallet address")

        gas = self.transfer_size(token)
        gas_price = gwei_to_wei(quote.per_unit_rate)
        fee_wei = gas_price * gas
        native = self.api.evm_balance_wei(self.chain, acct.address)
        if token is None:
            value, to, data = to_base_units(amount, self.chain), to_checksum_address(recipient), b""
            self._require_balance(native, value + fee_wei)
        else:
            dec = self.token_decimals(token)
            units = to_base_units(amount, self.chain, dec)
            if units <= 0:
                raise InvalidAmount(f"Amount is below the smallest {token['symbol']} unit")
            held = self.api.erc20_balance(self.chain, token["contract"], acct.address)
            self._require_balance(held, units, "amount", token["symbol"], dec)
            self._require_balance(native, fee_wei, "network fee")
            value, to = 0, to_checksum_address(token["contract"])
            data = ERC20_TRANSFER + abi_encode(["address", "uint256"], [to_checksum_address(recipient), units])

        nonce = self.api.evm_nonce(self.chain, acct.address)
        logger.debug(f"{self.chain}: nonce {nonce}, gas {gas} at {quote.per_unit_rate} gwei")
        tx = {"chainId":self.cfg["chain_id"], "nonce":nonce, "to":to,
              "value":value, "gas":gas, "gasPrice":gas_price}
        if data: tx["data"] = data
        signed = acct.sign_transaction(tx)
        details = {"nonce":nonce, "gas":gas, "gas_price_wei":gas_price}
        if token is not None: details["token"] = token["symbol"]
        return SignedTransaction(self.chain, "0x" + bytes(signed.raw_transaction).hex(), wallet.id,
                                 encoding="hex", fee=from_base_units(fee_wei, self.chain), details=details)

    def broadcast(self, signed):
        return self.api.submit_rpc(self.api.rpc_url(self.chain), "eth_sendRawTransaction", [signed.raw])

    def transaction_status(self, tx_id):
        receipt = self.api.evm_tx_receipt(self.chain, tx_id)
        if receipt is None:
            return TX_PENDING if self.api.evm_tx_known(self.chain, tx_id) else TX_UNKNOWN
        return TX_CONFIRMED if str(receipt.get("status")).lower() == "0x1" else TX_FAILED


# ══════════════════════════════════════════════════════════════
#  BITCOIN
# ══════════════════════════════════════════════════════════════
def _btc_key(secret):
    """bit PrivateKey from raw hex or mainnet WIF."""
    try:
        if _HEX_RE.match(secret) and len(secret.removeprefix("0x")) == 64:
            return BtcKey.from_hex(secret.removeprefix("0x"))
        key = wif_to_key(secret)
    except (ValueError, TypeError) as e:
        raise DecryptionFailure("Decrypted key material is not a valid Bitcoin private key") from e
    if not isinstance(key, BtcKey):
        raise DecryptionFailure("Decrypted key is not a mainnet Bitcoin key")
    return key


class BitcoinAdapter(ChainAdapter):
    family = "utxo"
    fee_unit = "sat/vB"
    reference_size = SINGLE_INPUT_TX_VBYTES

    @classmethod
    def check_address(cls, address):
        if _BTC_LEGACY_RE.match(address) or _BTC_BECH32_RE.match(address):
            return True, ""
        return False, "Invalid Bitcoin address"

    def get_balance(self, address):
        return from_base_units(self.api.btc_balance_sats(address, self.chain), self.chain)

    def fetch_fee_rates(self):
        d = self.api.btc_fee_estimates(self.chain)
        return {"economy": d["economyFee"], "standard": d["halfHourFee"], "priority": d["fastestFee"]}

    def fee_cost(self, rate, size=None):
        return from_base_units(Decimal(str(rate)) * (size or SINGLE_INPUT_TX_VBYTES), self.chain)

    def build_and_sign(self, wallet, secret, recipient, amount, quote, token=None):
        self.transfer_size(token)
        key = _btc_key(secret)
        if wallet.address == key.address: script_type = "p2pkh"
        elif wallet.address == key.segwit_address: script_type = "np2wkh"
        elif wallet.address.startswith("bc1"):
            raise UnsupportedChain("Signing from native SegWit (bc1) addresses is not supported")
        else:
            raise DecryptionFailure("Private key does not match wallet address")

        target = to_base_units(amount, self.chain)
        if target < DUST_THRESHOLD:
            raise InvalidAmount(f"Amount below Bitcoin dust limit ({DUST_THRESHOLD} sat)")

        utxos = self.api.btc_utxos(wallet.address, self.chain)
        self._require_balance(sum(u.value for u in utxos), target + to_base_units(quote.estimated_cost, self.chain))
        sel = select_inputs(utxos, target, quote.per_unit_rate)
        logger.debug(f"bitcoin: {len(sel.selected)} inputs, fee {sel.fee} sat, change {sel.change} sat")

        script = address_to_scriptpubkey(wallet.address).hex()
        unspents = [Unspent(u.value, 1, script, u.txid, u.vout, script_type) for u in sel.selected]
        outputs = [(recipient, target, "satoshi")]
        if sel.has_change:
            outputs.append((wallet.address, sel.change, "satoshi"))
        raw = key.create_transaction(outputs, fee=sel.fee, absolute_fee=True, leftover=wallet.address,
                                     combine=True, unspents=unspents)
        return SignedTransaction(self.chain, raw, wallet.id, encoding="hex",
                                 fee=from_base_units(sel.fee, self.chain),
                                 details={"inputs":len(sel.selected), "change_sats":sel.change})

    def broadcast(self, signed):
        status, body = self.api.post_raw(f"{self.api.rpc_url(self.chain)}/tx", signed.raw)
        text = (body or "").strip()
        err = _explicit_error(text)
        if err is not None:
            raise BroadcastRejected(err)
        if status < 200 or status >= 300:
            raise BroadcastRejected(text or f"HTTP {status}")
        if not re.fullmatch(r'[0-9a-fA-F]{64}', text):
            raise BroadcastRejected(f"Unexpected broadcast response: {text[:200]}")
        return text

    def transaction_status(self, tx_id):
        st = self.api.btc_tx_status(tx_id, self.chain)
        if st is None: return TX_UNKNOWN
        return TX_CONFIRMED if st.get("confirmed") else TX_PENDING


def _explicit_error(text):
    """Error message when `text` is a JSON object carrying an error field."""
    if not text.startswith("{"): return None
    try:
        d = json.loads(text)
    except ValueError:
        return None
    if isinstance(d, dict) and d.get("error") is not None:
        e = d["error"]
        return e.get("message", str(e)) if isinstance(e, dict) else str(e)
    return None


# ══════════════════════════════════════════════════════════════
#  SOLANA
# ══════════════════════════════════════════════════════════════
def _sol_keypair(secret):
    try:
        kb = bytes.fromhex(secret.removeprefix("0x")) if _HEX_RE.match(secret) else base58.b58decode(secret)
        if len(kb) == 64: return SolKeypair.from_bytes(kb)
        if len(kb) == 32: return SolKeypair.from_seed(kb)
    except ValueError as e:
        raise DecryptionFailure("Decrypted key material is not a valid Solana keypair") from e
    raise DecryptionFailure(f"Invalid SOL key length: {len(kb)}")


class SolanaAdapter(ChainAdapter):
    family = "solana"
    fee_unit = "lamports/signature"
    reference_size = 1

    @classmethod
    def check_address(cls, address):
        if not _SOL_RE.match(address): return False, "Invalid Solana address"
        # 32-44 base58 characters can still decode to the wrong length
        try: ok = len(base58.b58decode(address)) == 32
        except ValueError: ok = False
        return (True, "") if ok else (False, "Invalid Solana address")

    def get_balance(self, address):
        return from_base_units(self.api.sol_balance_lamports(address, self.chain), self.chain)

    def fetch_fee_rates(self):
        fee = Decimal(SOL_SIGNATURE_FEE)
        return {"economy": fee, "standard": fee, "priority": fee}

    def fee_cost(self, rate, size=None):
        return from_base_units(Decimal(str(rate)) * (size or self.reference_size), self.chain)

    def build_and_sign(self, wallet, secret, recipient, amount, quote, token=None):
        self.transfer_size(token)
        try: to_pubkey = SolPubkey.from_string(recipient)
        except ValueError as e:
            raise InvalidAddress("Invalid Solana address") from e
        kp = _sol_keypair(secret)
        if str(kp.pubkey()) != wallet.address:
            raise DecryptionFailure("Private key does not match wallet address")
        lamports = to_base_units(amount, self.chain)
        fee = int(quote.per_unit_rate) * self.reference_size
        self._require_balance(self.api.sol_balance_lamports(wallet.address, self.chain), lamports + fee)

        bh = SolHash.from_string(self.api.sol_latest_blockhash(self.chain))
        ix = sol_transfer(TransferParams(from_pubkey=kp.pubkey(), to_pubkey=to_pubkey, lamports=lamports))
        msg = SolMsg.new_with_blockhash([ix], kp.pubkey(), bh)
        tx = SolTx.new_unsigned(msg); tx.sign([kp], bh)
        return SignedTransaction(self.chain, base64.b64encode(bytes(tx)).decode(), wallet.id,
                                 encoding="base64", fee=from_base_units(fee, self.chain))

    def broadcast(self, signed):
        return self.api.submit_rpc(self.api.rpc_url(self.chain), "sendTransaction",
                                   [signed.raw, {"encoding":"base64", "preflightCommitment":"confirmed"}])

    def transaction_status(self, tx_id):
        st = self.api.sol_signature_status(tx_id, self.chain)
        if st is None: return TX_UNKNOWN
        if st.get("err") is not None: return TX_FAILED
        return TX_CONFIRMED if st.get("confirmationStatus") in ("confirmed", "finalized") else TX_PENDING


ADAPTER_FAMILIES = {"utxo": BitcoinAdapter, "evm": EvmAdapter, "solana": SolanaAdapter}


# ══════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════
class ChainRegistry:
    def __init__(self):
        self._adapters = {}

    def register(self, chain, adapter):
        self._adapters[chain.lower()] = adapter

    def get(self, chain):
        a = self._adapters.get(str(chain).lower())
        if a is None: raise UnsupportedChain(f"Unsupported chain: {chain}")
        return a

    def __contains__(self, chain):
        return str(chain).lower() in self._adapters

    @classmethod
    def default(cls, api):
        reg = cls()
        for name, cfg in SUPPORTED_CHAINS.items():
            reg.register(name, ADAPTER_FAMILIES[cfg["family"]](name, api))
        return reg
