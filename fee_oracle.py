"""
Fee Oracle v1.0 - Live network fees normalized to economy / standard / priority quotes
"""

from decimal import Decimal

from loguru import logger

from errors import FeeEstimationUnsupported, WalletError
from wallet_core import FEE_TIERS, FeeQuote

# Conservative rates used when a fee source is down. sat/vB for bitcoin, gwei for EVM.
# Overridable per chain under config["fee_fallbacks"].
FEE_FALLBACKS = {
    "bitcoin":   {"economy": 15,  "standard": 25,  "priority": 40},
    "ethereum":  {"economy": 20,  "standard": 35,  "priority": 60},
    "polygon":   {"economy": 80,  "standard": 120, "priority": 200},
    "bsc":       {"economy": 3,   "standard": 5,   "priority": 8},
    "avalanche": {"economy": 25,  "standard": 35,  "priority": 50},
    "arbitrum":  {"economy": 0.1, "standard": 0.2, "priority": 0.3},
    "optimism":  {"economy": 0.1, "standard": 0.2, "priority": 0.3},
    "solana":    {"economy": 5000, "standard": 5000, "priority": 5000},
}


class FeeOracle:
    def __init__(self, registry, config=None):
        self.registry = registry
        self.config = config or {}

    def fallback_rates(self, chain):
        rates = dict(FEE_FALLBACKS.get(chain, {}))
        rates.update(self.config.get("fee_fallbacks", {}).get(chain, {}))
        return {t: Decimal(str(v)) for t, v in rates.items()}

    def _live_rates(self, adapter):
        rates = adapter.fetch_fee_rates()
        out = {}
        for t in FEE_TIERS:
            r = Decimal(str(rates[t]))
            if not r.is_finite() or r <= 0: raise ValueError(f"bad {t} rate {rates[t]!r}")
            out[t] = r
        return out

    def get_fee_quotes(self, chain, token=None):
        """{tier: FeeQuote} for `chain`. Source failures fall back to fixed rates (live=False).

        With an ERC-20 `token` the quotes are priced for a token transfer instead of a native one.
        """
        if chain not in self.registry:
            raise FeeEstimationUnsupported(f"Fee estimation not supported for {chain}")
        adapter = self.registry.get(chain)
        size = adapter.transfer_size(token)
        live = True
        try:
            rates = self._live_rates(adapter)
        except (WalletError, KeyError, ValueError, TypeError, ArithmeticError) as e:
            rates = self.fallback_rates(chain)
            if any(t not in rates for t in FEE_TIERS):
                raise FeeEstimationUnsupported(f"No fee data available for {chain}") from e
            live = False
            logger.warning(f"Fee source for {chain} unavailable ({e}); using fallback rates")
        logger.debug(f"{chain} fees ({adapter.fee_unit}): " +
                     ", ".join(f"{t}={rates[t]}" for t in FEE_TIERS) + ("" if live else " [fallback]"))
        return {t: FeeQuote(chain=chain, tier=t, per_unit_rate=rates[t], unit=adapter.fee_unit,
                            estimated_cost=adapter.fee_cost(rates[t], size),
                            reference_size=size, live=live)
                for t in FEE_TIERS}

    def get_quote(self, chain, tier, token=None):
        if tier not in FEE_TIERS:
            raise ValueError(f"Unknown fee tier: {tier} (expected one of {', '.join(FEE_TIERS)})")
        return self.get_fee_quotes(chain, token)[tier]
