"""
UTXO selection for Bitcoin sends.

Greedy accumulate in the order the outputs are presented. This is not a coin
selection optimizer: no sorting, no branch-and-bound, no change avoidance
beyond the dust rule. The early-exit check uses a fixed single-input size;
the fee charged is recomputed from the real input count afterwards.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import List

from errors import InsufficientFunds
from wallet_core import UnspentOutput

DUST_THRESHOLD = 546
SINGLE_INPUT_TX_VBYTES = 250

TX_OVERHEAD_VBYTES = 10
INPUT_VBYTES = 148
OUTPUT_VBYTES = 34


@dataclass(frozen=True)
class Selection:
    selected: List[UnspentOutput]
    change: int
    fee: int

    @property
    def total(self):
        return sum(u.value for u in self.selected)

    @property
    def has_change(self):
        return self.change > 0


def estimate_vsize(n_inputs, n_outputs=2):
    return TX_OVERHEAD_VBYTES + INPUT_VBYTES * n_inputs + OUTPUT_VBYTES * n_outputs


def fee_for(vbytes, fee_rate):
    return int(math.ceil(Decimal(str(fee_rate)) * vbytes))


def select_inputs(available, target, fee_rate):
    """Pick inputs covering `target` sats at `fee_rate` sat/vB.

    Raises InsufficientFunds (nothing selected) when the outputs run out first.
    """
    target = int(target)
    assumed_fee = fee_for(SINGLE_INPUT_TX_VBYTES, fee_rate)
    required = target + assumed_fee

    selected, total = [], 0
    for utxo in available:
        selected.append(utxo)
        total += utxo.value
        if total >= required: break
    else:
        raise InsufficientFunds(total, required)

    fee = fee_for(estimate_vsize(len(selected)), fee_rate)
    change = total - target - fee
    if change < 0:
        raise InsufficientFunds(total, target + fee)
    if change < DUST_THRESHOLD:
        # absorbed into the fee
        fee += change
        change = 0
    return Selection(selected, change, fee)
