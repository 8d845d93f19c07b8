"""
Transaction Engine v1.0 - Build, sign and broadcast sends on every registered chain.
Key material is decrypted only for the duration of one signing; builds are serialized per wallet.
"""

import threading
from collections import defaultdict
from contextlib import contextmanager

from loguru import logger

from errors import BroadcastRejected, InvalidAmount, UnsupportedChain
from wallet_core import WalletSecurity, chain_for_token, get_chain_explorer, get_token, to_decimal


class TxEngine:
    def __init__(self, registry, fee_oracle, config=None):
        self.registry = registry
        self.fee_oracle = fee_oracle
        self.config = config or {}
        # one lock per wallet id, kept for the engine's lifetime
        self._locks = defaultdict(threading.RLock)
        self._locks_guard = threading.Lock()

    @contextmanager
    def wallet_lock(self, wallet_id):
        """Critical section for one wallet: at most one build (and broadcast) in flight."""
        with self._locks_guard:
            lock = self._locks[wallet_id]
        with lock:
            yield

    def build(self, wallet, request, tier, secret):
        """Decrypt, build and sign `request` from `wallet` at fee `tier`."""
        chain = chain_for_token(request.token)
        if chain != wallet.chain:
            raise UnsupportedChain(f"Wallet {wallet.id} is on {wallet.chain}, not {chain}")
        try: amount = to_decimal(request.amount)
        except ValueError as e:
            raise InvalidAmount("Amount must be a number") from e
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmount("Amount must be greater than zero")
        adapter = self.registry.get(chain)
        token = get_token(request.token)

        with self.wallet_lock(wallet.id):
            quote = self.fee_oracle.get_quote(chain, tier, token)
            with WalletSecurity.unlocked(wallet.encrypted_key_material, secret) as key:
                signed = adapter.build_and_sign(wallet, key, request.recipient.strip(), amount, quote, token)
        what = f"{token['symbol']} transfer" if token else "transfer"
        logger.info(f"Signed {chain} {what} of {amount} from {wallet.address} (fee {signed.fee})")
        return signed

    def explorer_url(self, chain, tx_hash):
        tpl = get_chain_explorer(chain, self.config)
        return tpl.replace("{}", tx_hash) if tpl else ""


class Broadcaster:
    """Submits signed payloads. One attempt only: a failed submission may still have been accepted."""

    def __init__(self, registry):
        self.registry = registry

    def submit(self, signed):
        adapter = self.registry.get(signed.chain)
        try:
            tx_id = adapter.broadcast(signed)
        except BroadcastRejected as e:
            logger.error(f"{signed.chain} broadcast rejected: {e}")
            raise
        signed.broadcast_tx_id = tx_id
        logger.info(f"Broadcast {signed.chain} transaction: {tx_id}")
        return tx_id

