"""
Prism Wallet Core v1.0
Chain registry, unit conversion, send-engine data model, key security and storage
"""

import os, json, base64, binascii, tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger

from errors import DecryptionFailure, UnsupportedChain

# ═══════════════════════════════════════════════════════════════
# CHAIN DEFINITIONS
# ═══════════════════════════════════════════════════════════════

_UTXO_CHAINS = {
    "bitcoin":  {"name":"Bitcoin","symbol":"BTC","decimals":8,
                 "rpc":"https://mempool.space/api",
                 "explorer":"https://mempool.space/tx/{}"},
}

_EVM_CHAINS = {
    "ethereum": {"name":"Ethereum","symbol":"ETH","decimals":18,"chain_id":1,
                 "rpc":"https://eth.llamarpc.com",
                 "explorer":"https://etherscan.io/tx/{}"},
    "polygon":  {"name":"Polygon","symbol":"MATIC","decimals":18,"chain_id":137,
                 "rpc":"https://polygon-rpc.com",
                 "explorer":"https://polygonscan.com/tx/{}"},
    "bsc":      {"name":"BNB Chain","symbol":"BNB","decimals":18,"chain_id":56,
                 "rpc":"https://bsc-dataseed1.binance.org",
                 "explorer":"https://bscscan.com/tx/{}"},
    "arbitrum": {"name":"Arbitrum One","symbol":"ETH","decimals":18,"chain_id":42161,
                 "rpc":"https://arb1.arbitrum.io/rpc",
                 "explorer":"https://arbiscan.io/tx/{}"},
    "optimism": {"name":"Optimism","symbol":"ETH","decimals":18,"chain_id":10,
                 "rpc":"https://mainnet.optimism.io",
                 "explorer":"https://optimistic.etherscan.io/tx/{}"},
    "avalanche":{"name":"Avalanche C-Chain","symbol":"AVAX","decimals":18,"chain_id":43114,
                 "rpc":"https://api.avax.network/ext/bc/C/rpc",
                 "explorer":"https://snowtrace.io/tx/{}"},
}

_SOLANA_CHAINS = {
    "solana":   {"name":"Solana","symbol":"SOL","decimals":9,
                 "rpc":"https://api.mainnet-beta.solana.com",
                 "explorer":"https://solscan.io/tx/{}"},
}

# Master registry
SUPPORTED_CHAINS = {}
for _name, _cfg in _UTXO_CHAINS.items():
    SUPPORTED_CHAINS[_name] = {**_cfg, "chain": _name, "family": "utxo"}
for _name, _cfg in _EVM_CHAINS.items():
    SUPPORTED_CHAINS[_name] = {**_cfg, "chain": _name, "family": "evm"}
for _name, _cfg in _SOLANA_CHAINS.items():
    SUPPORTED_CHAINS[_name] = {**_cfg, "chain": _name, "family": "solana"}

# Symbols shared by several chains resolve to the chain that issues them.
TOKEN_CHAINS = {"BTC":"bitcoin","ETH":"ethereum","MATIC":"polygon","POL":"polygon",
                "BNB":"bsc","AVAX":"avalanche","SOL":"solana"}

# ERC-20 contracts. Decimals are read from the contract at send time.
ERC20_TOKENS = {
    "USDT": {"name":"Tether","symbol":"USDT","chain":"ethereum",
             "contract":"0xdAC17F958D2ee523a2206206994597C13D831ec7"},
    "USDC": {"name":"USD Coin","symbol":"USDC","chain":"ethereum",
             "contract":"0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"},
}

FEE_TIERS = ("economy", "standard", "priority")


def get_chain(chain):
    cfg = SUPPORTED_CHAINS.get(str(chain).lower())
    if not cfg: raise UnsupportedChain(f"Unsupported chain: {chain}")
    return cfg

def chain_for_token(token):
    """Resolve a token symbol (or a chain name) to its chain."""
    t = str(token).strip()
    if t.lower() in SUPPORTED_CHAINS: return t.lower()
    chain = TOKEN_CHAINS.get(t.upper())
    if not chain and t.upper() in ERC20_TOKENS: chain = ERC20_TOKENS[t.upper()]["chain"]
    if not chain: raise UnsupportedChain(f"Unsupported token: {token}")
    return chain

def get_token(token):
    """ERC-20 entry for `token`, or None when it names a native asset."""
    return ERC20_TOKENS.get(str(token).strip().upper())

def get_chain_rpc(chain, config=None):
    """Get RPC/API URL, with custom override."""
    if config:
        custom = config.get("custom_rpc", {}).get(chain, {})
        if custom.get("rpc"):
            return custom["rpc"].rstrip("/")
    return get_chain(chain)["rpc"]

def get_chain_explorer(chain, config=None):
    """Get explorer tx URL template, with custom override."""
    if config:
        custom = config.get("custom_rpc", {}).get(chain, {})
        if custom.get("explorer"):
            return custom["explorer"]
    return SUPPORTED_CHAINS.get(chain, {}).get("explorer", "")


# ═══════════════════════════════════════════════════════════════
# UNITS
# ═══════════════════════════════════════════════════════════════

def to_decimal(value):
    if isinstance(value, Decimal): return value
    try: return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Not a number: {value!r}") from e

def _scale(chain, decimals):
    return Decimal(10) ** (get_chain(chain)["decimals"] if decimals is None else decimals)

def to_base_units(amount, chain, decimals=None):
    """Amount -> integer base units (satoshi, wei, lamport, token units). Rounds down.

    `decimals` overrides the chain's native precision for token amounts.
    """
    return int((to_decimal(amount) * _scale(chain, decimals)).to_integral_value(rounding=ROUND_DOWN))

def from_base_units(value, chain, decimals=None):
    return to_decimal(value) / _scale(chain, decimals)

def gwei_to_wei(gwei):
    return int((to_decimal(gwei) * Decimal(10) ** 9).to_integral_value(rounding=ROUND_DOWN))

def format_amount(value, places=8):
    """Fixed-point string without trailing zeros, never in exponent form."""
    q = to_decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    s = f"{q:f}"
    if "." in s: s = s.rstrip("0").rstrip(".")
    return "0" if s in ("-0", "") else s


# ═══════════════════════════════════════════════════════════════
# DATA MODEL
# ═══════════════════════════════════════════════════════════════

@dataclass
class Wallet:
    id: str
    chain: str
    address: str
    label: str = ""
    cached_balance: Decimal = Decimal(0)
    balance_refreshed_at: Optional[float] = None
    encrypted_key_material: str = ""
    # transient, never persisted: None when the last refresh succeeded
    refresh_error: Optional[str] = None

    def display_name(self):
        return f"{self.label} ({self.address})" if self.label else self.address

    def to_dict(self):
        return {"id":self.id, "chain":self.chain, "address":self.address, "label":self.label,
                "cached_balance":str(self.cached_balance),
                "balance_refreshed_at":self.balance_refreshed_at,
                "encrypted_key_material":self.encrypted_key_material}

    @classmethod
    def from_dict(cls, d):
        return cls(id=d["id"], chain=d["chain"], address=d["address"], label=d.get("label", ""),
                   cached_balance=to_decimal(d.get("cached_balance", "0")),
                   balance_refreshed_at=d.get("balance_refreshed_at"),
                   encrypted_key_material=d.get("encrypted_key_material", ""))


@dataclass(frozen=True)
class UnspentOutput:
    txid: str
    vout: int
    value: int


@dataclass(frozen=True)
class FeeQuote:
    chain: str
    tier: str
    per_unit_rate: Decimal
    unit: str
    estimated_cost: Decimal
    reference_size: int
    live: bool = True


@dataclass
class SendRequest:
    candidates: List[Wallet]
    token: str
    amount: Decimal
    recipient: str


@dataclass
class SendRecommendation:
    chosen_wallet: Wallet
    fee_quotes: Dict[str, FeeQuote]
    total_cost_at_standard: Decimal
    projected_remaining: Decimal
    sufficient: bool
    narrative: str


@dataclass
class SignedTransaction:
    chain: str
    raw: str
    wallet_id: str
    encoding: str = "hex"
    fee: Decimal = Decimal(0)
    broadcast_tx_id: Optional[str] = None
    details: dict = field(default_factory=dict)


class TxResult:
    __slots__ = ("tx_hash", "chain", "fee", "explorer_url")
    def __init__(self, tx_hash, chain, fee=Decimal(0), explorer_url=""):
        self.tx_hash = tx_hash
        self.chain = chain
        self.fee = fee
        self.explorer_url = explorer_url

    def __repr__(self):
        return f"TxResult({self.chain}:{self.tx_hash})"


# ═══════════════════════════════════════════════════════════════
# SECURITY
# ═══════════════════════════════════════════════════════════════

class WalletSecurity:
    SALT_SIZE = 16; ITERATIONS = 480000

    @staticmethod
    def derive_key(pw, salt):
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=WalletSecurity.ITERATIONS)
        return base64.urlsafe_b64encode(kdf.derive(pw.encode()))

    @staticmethod
    def encrypt(data, pw):
        s = os.urandom(WalletSecurity.SALT_SIZE)
        return base64.b64encode(s + Fernet(WalletSecurity.derive_key(pw, s)).encrypt(data.encode())).decode()

    @staticmethod
    def decrypt(enc, pw):
        if not enc: raise DecryptionFailure("No key material stored for this wallet")
        try:
            p = base64.b64decode(enc.encode(), validate=True)
            return Fernet(WalletSecurity.derive_key(pw, p[:WalletSecurity.SALT_SIZE])).decrypt(p[WalletSecurity.SALT_SIZE:])
        except (InvalidToken, binascii.Error, ValueError) as e:
            raise DecryptionFailure("Key material could not be decrypted") from e

    @staticmethod
    @contextmanager
    def unlocked(enc, pw):
        """Yield the decrypted secret as text; the plaintext buffer is wiped on exit."""
        buf = bytearray(WalletSecurity.decrypt(enc, pw))
        try:
            yield buf.decode().strip()
        finally:
            for i in range(len(buf)): buf[i] = 0
            del buf


def new_wallet(wallet_id, chain, address, private_key, pw, label=""):
    """Wallet record with its private key encrypted under `pw`."""
    get_chain(chain)
    return Wallet(id=wallet_id, chain=chain.lower(), address=address.strip(), label=label,
                  encrypted_key_material=WalletSecurity.encrypt(private_key, pw))


# ═══════════════════════════════════════════════════════════════
# STORAGE
# ═══════════════════════════════════════════════════════════════

DEFAULT_CONFIG = {
    "custom_rpc": {},
    "fee_fallbacks": {},
    "staleness_seconds": 120,
    "timeout": 10,
    "max_workers": 8,
    "etherscan_api_key": "",
}


class WalletStorage:
    def __init__(self, base_dir=None):
        self.base_dir = Path(base_dir) if base_dir else Path.home() / ".prism_wallet"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.wallets_file = self.base_dir / "wallets.json"
        self.config_file = self.base_dir / "config.json"

    def _atomic_write(self, path, payload):
        fd, tmp = tempfile.mkstemp(dir=self.base_dir, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f: json.dump(payload, f, indent=2)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp): os.unlink(tmp)
            raise

    def load_wallets(self):
        if not self.wallets_file.exists(): return []
        with open(self.wallets_file) as f: return [Wallet.from_dict(d) for d in json.load(f)]

    def save_wallets(self, wallets):
        """Replace the whole snapshot in one step."""
        self._atomic_write(self.wallets_file, [w.to_dict() for w in wallets])
        logger.debug(f"Saved {len(wallets)} wallets to {self.wallets_file}")

    def add_wallet(self, wallet):
        wallets = [w for w in self.load_wallets() if w.id != wallet.id]
        wallets.append(wallet)
        self.save_wallets(wallets)

    def delete_wallet(self, wid):
        self.save_wallets([w for w in self.load_wallets() if w.id != wid])

    def save_config(self, cfg):
        self._atomic_write(self.config_file, cfg)

    def load_config(self):
        cfg = json.loads(json.dumps(DEFAULT_CONFIG))
        if self.config_file.exists():
            with open(self.config_file) as f: cfg.update(json.load(f))
        return cfg
