"""
Send Service v1.0 - The engine's boundary with the surrounding application.

Exposes recommend / execute / refresh_balances / transaction_status and consumes get_wallets(user_id).
Input errors are raised before anything is built; every other failure reaches the
caller unchanged after the notifier has been told. Nothing is retried.
"""

import time

from loguru import logger

from balance_cache import BalanceCache, STALENESS_SECONDS
from blockchain_api import BlockchainAPI
from chains import ChainRegistry, validate_address
from errors import DecryptionFailure, InvalidAddress, InvalidAmount, WalletError
from fee_oracle import FeeOracle
from recommender import SendRecommender
from tx_engine import Broadcaster, TxEngine
from wallet_core import DEFAULT_CONFIG, TxResult, chain_for_token, get_token, to_decimal


def validate_amount(amount, balance=None):
    """(ok, reason) for a requested send amount."""
    try: a = to_decimal(amount)
    except ValueError: return False, "Amount must be a number"
    if not a.is_finite(): return False, "Amount must be a number"
    if a <= 0: return False, "Amount must be greater than zero"
    if balance is not None and a > to_decimal(balance): return False, "Amount exceeds balance"
    return True, ""


class SendService:
    def __init__(self, get_wallets=None, storage=None, config=None, secret=None, notifier=None,
                 clock=time.time, api=None, registry=None):
        self.storage = storage
        self.config = config or (storage.load_config() if storage is not None else dict(DEFAULT_CONFIG))
        self.api = api or BlockchainAPI(self.config)
        self.registry = registry or ChainRegistry.default(self.api)
        self.fee_oracle = FeeOracle(self.registry, self.config)
        self.balance_cache = BalanceCache(self.registry, storage, clock=clock,
                                          staleness=self.config.get("staleness_seconds", STALENESS_SECONDS),
                                          max_workers=self.config.get("max_workers", 8))
        self.recommender = SendRecommender(self.fee_oracle, self.balance_cache)
        self.engine = TxEngine(self.registry, self.fee_oracle, self.config)
        self.broadcaster = Broadcaster(self.registry)
        self._get_wallets = get_wallets
        self.secret = secret
        self.notifier = notifier

    # ── Collaborator boundary ─────────────────────────────────

    def wallets_for(self, user_id=None):
        if self._get_wallets is None: return self.balance_cache.snapshot()
        return list(self._get_wallets(user_id))

    def refresh_balances(self, wallets):
        return self.balance_cache.refresh(wallets)

    def recommend(self, request):
        chain = chain_for_token(request.token)
        self._check_inputs(request, chain)
        return self.recommender.recommend(request)

    def execute(self, wallet, request, tier="standard", secret=None):
        """Build, sign and broadcast. Returns a TxResult; raises WalletError on any failure.

        A stale cached balance is refreshed before the amount is checked against it. Token
        amounts are checked against the on-chain token balance when the transfer is built.
        """
        chain = chain_for_token(request.token)
        self._check_inputs(request, chain)
        if get_token(request.token) is None:
            if not self.balance_cache.is_fresh(wallet):
                self.balance_cache.refresh([wallet])
            ok, reason = validate_amount(request.amount, wallet.cached_balance)
            if not ok: raise InvalidAmount(reason)
        secret = secret if secret is not None else self.secret
        try:
            if not secret:
                raise DecryptionFailure("No key secret supplied for signing")
            with self.engine.wallet_lock(wallet.id):
                signed = self.engine.build(wallet, request, tier, secret)
                tx_id = self.broadcaster.submit(signed)
        except WalletError as e:
            self._notify("failed", {"wallet_id":wallet.id, "chain":chain, "amount":str(request.amount),
                                    "recipient":request.recipient, "error":str(e)})
            raise
        result = TxResult(tx_id, chain, signed.fee, self.engine.explorer_url(chain, tx_id))
        self._notify("completed", {"wallet_id":wallet.id, "chain":chain, "amount":str(request.amount),
                                   "recipient":request.recipient, "tx_hash":tx_id,
                                   "explorer_url":result.explorer_url})
        return result

    def transaction_status(self, chain, tx_id):
        """pending / confirmed / failed / unknown for a broadcast transaction."""
        return self.registry.get(chain_for_token(chain)).transaction_status(tx_id.strip())

    # ── Internals ─────────────────────────────────────────────

    def _check_inputs(self, request, chain):
        ok, reason = validate_address(request.recipient, chain)
        if not ok: raise InvalidAddress(reason)
        ok, reason = validate_amount(request.amount)
        if not ok: raise InvalidAmount(reason)

    def _notify(self, event, payload):
        if self.notifier is None: return
        try:
            self.notifier(event, payload)
        except Exception:
            logger.exception(f"Notifier failed handling '{event}'")
