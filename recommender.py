"""
Send Recommender v1.0 - Picks the source wallet for a send and explains the choice
"""

from concurrent.futures import ThreadPoolExecutor

from loguru import logger

from errors import NoEligibleWallet
from wallet_core import (
    FEE_TIERS, SUPPORTED_CHAINS, SendRecommendation, chain_for_token, format_amount, get_token, to_decimal,
)


class SendRecommender:
    def __init__(self, fee_oracle, balance_cache):
        self.fee_oracle = fee_oracle
        self.balance_cache = balance_cache

    def recommend(self, request):
        """Fee quotes, balance refresh and token holdings run side by side; all are awaited before planning."""
        chain = chain_for_token(request.token)
        token = get_token(request.token)
        candidates = [w for w in request.candidates if w.chain == chain]
        if not candidates:
            raise NoEligibleWallet(f"No {SUPPORTED_CHAINS[chain]['name']} wallet available for this send")
        with ThreadPoolExecutor(max_workers=3) as pool:
            f_quotes = pool.submit(self.fee_oracle.get_fee_quotes, chain, token)
            f_wallets = pool.submit(self.balance_cache.refresh, candidates)
            f_held = pool.submit(self._token_holdings, chain, token, candidates) if token else None
            quotes, wallets = f_quotes.result(), f_wallets.result()
            holdings = f_held.result() if f_held else None
        return plan_send(chain, wallets, quotes, request.amount, request.recipient, token, holdings)

    def _token_holdings(self, chain, token, wallets):
        """{wallet id: token balance}; None where the balance could not be read."""
        adapter = self.fee_oracle.registry.get(chain)
        held = {}
        for w in wallets:
            try:
                held[w.id] = adapter.get_token_balance(w.address, token)
            except Exception as e:
                logger.warning(f"{token['symbol']} balance read failed for {w.address}: {e}")
                held[w.id] = None
        return held


def plan_send(chain, wallets, quotes, amount, recipient, token=None, holdings=None):
    """Pure selection + narrative over already-fetched balances and quotes.

    For a token send the two legs are separate: `total_cost_at_standard` is the native
    network fee and `projected_remaining` is the token balance left after the send.
    """
    amount = to_decimal(amount)
    if token is not None:
        return _plan_token_send(chain, wallets, quotes, amount, recipient, token, holdings or {})
    needed = amount + quotes["standard"].estimated_cost

    qualifying = [w for w in wallets if w.cached_balance >= needed]
    # max() keeps the first wallet on equal balances
    chosen = max(qualifying or wallets, key=lambda w: w.cached_balance)
    sufficient = bool(qualifying)
    remaining = chosen.cached_balance - needed

    narrative = _narrative(chain, wallets, quotes, chosen, amount, recipient, needed, remaining, sufficient)
    return SendRecommendation(chosen_wallet=chosen, fee_quotes=dict(quotes), total_cost_at_standard=needed,
                              projected_remaining=remaining, sufficient=sufficient, narrative=narrative)


def _plan_token_send(chain, wallets, quotes, amount, recipient, token, holdings):
    fee = quotes["standard"].estimated_cost
    held = lambda w: holdings.get(w.id) or to_decimal(0)
    qualifying = [w for w in wallets if held(w) >= amount and w.cached_balance >= fee]
    chosen = max(qualifying or wallets, key=held)
    sufficient = bool(qualifying)
    remaining = held(chosen) - amount

    cfg = SUPPORTED_CHAINS[chain]
    sym, tsym = cfg["symbol"], token["symbol"]
    native = lambda v: f"{format_amount(v, 12)} {sym}"
    tok = lambda v: f"{format_amount(v, 18)} {tsym}"
    lines = [
        f"Send {tok(amount)} to {recipient} from {chosen.display_name()}.",
        f"{cfg['name']} network fees for a {tsym} transfer: {_tiers(quotes, native)}.",
        f"Network fee at standard: {native(fee)}, paid from the wallet's {native(chosen.cached_balance)}. "
        f"Projected remaining {tsym} balance: {tok(remaining)}.",
    ]
    if not sufficient:
        if held(chosen) < amount:
            lines.append(f"Insufficient funds: the largest {tsym} holding is {tok(held(chosen))} "
                         f"but this send needs {tok(amount)} (short {tok(amount - held(chosen))}).")
        else:
            lines.append(f"Insufficient funds: {chosen.display_name()} holds {native(chosen.cached_balance)}, "
                         f"short of the {native(fee)} network fee.")
    if len(wallets) > 1:
        total = sum((held(w) for w in wallets), to_decimal(0))
        lines.append(f"You hold {tsym} in {len(wallets)} wallets ({tok(total)} combined).")
    unread = [w.label or w.address for w in wallets if holdings.get(w.id) is None]
    if unread:
        lines.append(f"{tsym} balance could not be read for {', '.join(unread)}; counted as zero.")
    lines += _caveats(wallets, quotes)
    return SendRecommendation(chosen_wallet=chosen, fee_quotes=dict(quotes), total_cost_at_standard=fee,
                              projected_remaining=remaining, sufficient=sufficient, narrative="\n".join(lines))


def _tiers(quotes, fmt):
    return ", ".join(f"{t} {fmt(quotes[t].estimated_cost)} ({format_amount(quotes[t].per_unit_rate, 4)} {quotes[t].unit})"
                     for t in FEE_TIERS)


def _caveats(wallets, quotes):
    out = []
    unrefreshed = [w.label or w.address for w in wallets if w.refresh_error]
    if unrefreshed:
        out.append(f"Balance could not be refreshed for {', '.join(unrefreshed)}; using last known balance.")
    if not quotes["standard"].live:
        out.append("Fee figures are fallback estimates, not live network data.")
    return out


def _narrative(chain, wallets, quotes, chosen, amount, recipient, needed, remaining, sufficient):
    cfg = SUPPORTED_CHAINS[chain]
    sym = cfg["symbol"]
    places = min(cfg["decimals"], 12)
    fmt = lambda v: f"{format_amount(v, places)} {sym}"

    lines = [
        f"Send {fmt(amount)} to {recipient} from {chosen.display_name()}.",
        f"{cfg['name']} network fees: {_tiers(quotes, fmt)}.",
        f"Total at standard fee: {fmt(needed)}. Projected remaining balance: {fmt(remaining)}.",
    ]
    if not sufficient:
        lines.append(f"Insufficient funds: the largest {sym} wallet holds {fmt(chosen.cached_balance)} "
                     f"but this send needs {fmt(needed)} (short {fmt(needed - chosen.cached_balance)}).")
    if len(wallets) > 1:
        total = sum((w.cached_balance for w in wallets), to_decimal(0))
        hint = f"You hold {sym} in {len(wallets)} wallets ({fmt(total)} combined)."
        if not sufficient and total >= needed:
            hint += " Consolidating them into one wallet would cover this send."
        else:
            hint += " Consolidating them would cut future fees and leftover dust."
        lines.append(hint)
    return "\n".join(lines + _caveats(wallets, quotes))
