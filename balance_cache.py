"""
Balance Cache v1.0 - Staleness-driven balance refresh with last-known-good persistence
"""

import time, threading
from concurrent.futures import ThreadPoolExecutor

from loguru import logger

STALENESS_SECONDS = 120


class BalanceCache:
    """Known wallets keyed by id. A cached balance is trusted for `staleness` seconds."""

    def __init__(self, registry, storage=None, clock=time.time, staleness=STALENESS_SECONDS, max_workers=8):
        self.registry = registry
        self.storage = storage
        self.clock = clock
        self.staleness = staleness
        self.max_workers = max_workers
        self.lock = threading.Lock()
        self.wallets = {}
        if storage is not None:
            self.load()

    def load(self):
        """Seed the in-memory map from the persisted snapshot."""
        wallets = self.storage.load_wallets()
        with self.lock:
            self.wallets = {w.id: w for w in wallets}
        return wallets

    def snapshot(self):
        with self.lock:
            return list(self.wallets.values())

    def is_fresh(self, wallet, now=None):
        if wallet.balance_refreshed_at is None: return False
        now = self.clock() if now is None else now
        return now - wallet.balance_refreshed_at < self.staleness

    def _fetch(self, wallet):
        return self.registry.get(wallet.chain).get_balance(wallet.address)

    def refresh(self, wallets):
        """Re-query every stale wallet concurrently; fresh wallets pass through untouched.

        A failed fetch, whatever the error, keeps the prior balance and timestamp and sets
        `refresh_error`; the rest of the batch still completes.
        Returns the same wallet objects, updated in place.
        """
        wallets = list(wallets)
        now = self.clock()
        stale = [w for w in wallets if not self.is_fresh(w, now)]
        failed = 0
        if stale:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(stale))) as pool:
                futures = [(w, pool.submit(self._fetch, w)) for w in stale]
                for w, fut in futures:
                    try:
                        bal = fut.result()
                    except Exception as e:
                        failed += 1
                        w.refresh_error = str(e)
                        logger.warning(f"Balance refresh failed for {w.chain}:{w.address}: {e}")
                        continue
                    w.cached_balance = bal
                    w.balance_refreshed_at = now
                    w.refresh_error = None
            logger.info(f"Refreshed {len(stale) - failed}/{len(stale)} stale wallets"
                        + (f" ({failed} failed, kept last-known balance)" if failed else ""))

        with self.lock:
            for w in wallets: self.wallets[w.id] = w
            if self.storage is not None and stale:
                self.storage.save_wallets(list(self.wallets.values()))
        return wallets
