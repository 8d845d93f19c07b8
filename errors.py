"""
Send engine errors. Every failure carries a message that is shown to the user verbatim.
"""


class WalletError(Exception):
    """Base class for every error the send engine raises."""


class InvalidAddress(WalletError):
    pass


class InvalidAmount(WalletError):
    pass


class InsufficientFunds(WalletError):
    """UTXO selection could not cover target + fee."""

    def __init__(self, available, required, unit="sat"):
        self.available = available
        self.required = required
        super().__init__(f"Insufficient funds: available {available} {unit}, required {required} {unit}")


class InsufficientBalance(WalletError):
    """Balance dropped below amount + fee between recommendation and build."""


class FeeEstimationUnsupported(WalletError):
    pass


class UnsupportedChain(WalletError):
    pass


class DecryptionFailure(WalletError):
    pass


class BroadcastRejected(WalletError):
    pass


class NetworkUnavailable(WalletError):
    pass


class NoEligibleWallet(WalletError):
    pass
