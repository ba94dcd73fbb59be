"""
Token Models for the SPOT protocol.

Token is a plain fungible balance ledger used for claim shares, vault notes
and tranches. RebasingToken models the elastic-supply underlying (AMPL):
balances are stored as fixed "gons" and a supply rebase changes how many
gons make up one token, so every holder's balance moves proportionally.
"""

import logging

from errors import InsufficientBalance
from fixed_point import ONE
from ledger import Stateful

logger = logging.getLogger(__name__)


class Token(Stateful):
    """
    Fungible token with balances keyed by holder address.
    """

    _state_fields = ("balances", "total_supply")

    def __init__(self, ledger, name, symbol, decimals=9):
        self.ledger = ledger
        self.name = name
        self.symbol = symbol
        self.decimals = decimals

        # Mapping of addresses to token balances
        self.balances = {}

        # Total token supply
        self.total_supply = 0

        ledger.track(self)

    def __repr__(self):
        return f"<{type(self).__name__} {self.symbol}>"

    def balance_of(self, account):
        """Returns the token balance of the given account."""
        return self.balances.get(account, 0)

    def transfer(self, sender, recipient, amount):
        """
        Transfers tokens from sender to recipient.

        Args:
            sender: Address sending the tokens
            recipient: Address receiving the tokens
            amount: Amount of tokens to transfer, zero is a no-op

        Returns:
            True if successful

        Raises:
            ValueError: If the amount is negative
            InsufficientBalance: If the sender holds less than amount
        """
        if amount < 0:
            raise ValueError("Amount cannot be negative")
        if amount == 0:
            return True

        sender_balance = self.balance_of(sender)
        if sender_balance < amount:
            raise InsufficientBalance(
                f"{self.symbol}: {sender} holds {sender_balance}, needs {amount}"
            )

        self.balances[sender] = sender_balance - amount
        self.balances[recipient] = self.balance_of(recipient) + amount
        return True

    def mint(self, recipient, amount):
        """
        Mints new tokens to the recipient account.

        Args:
            recipient: Address receiving the minted tokens
            amount: Amount of tokens to mint
        """
        if amount < 0:
            raise ValueError("Amount cannot be negative")

        self.balances[recipient] = self.balance_of(recipient) + amount
        self.total_supply += amount
        return True

    def burn(self, account, amount):
        """
        Burns tokens from the given account.

        Args:
            account: Address to burn tokens from
            amount: Amount of tokens to burn

        Raises:
            InsufficientBalance: If the account holds less than amount
        """
        if amount < 0:
            raise ValueError("Amount cannot be negative")

        balance = self.balance_of(account)
        if balance < amount:
            raise InsufficientBalance(
                f"{self.symbol}: cannot burn {amount} from {account}, balance {balance}"
            )

        self.balances[account] = balance - amount
        self.total_supply -= amount
        return True


# Gons backing one token before the first rebase
INITIAL_GONS_PER_FRAGMENT = 10 ** 12


class RebasingToken(Token):
    """
    Elastic-supply token.

    Balances are held in gons. The number of gons per token is recomputed on
    every rebase, so a +10% rebase grows every balance by 10% without any
    transfer. Transfers move whole-token amounts exactly.
    """

    _state_fields = ("_gon_balances", "_total_gons", "gons_per_fragment", "total_supply")

    def __init__(self, ledger, name, symbol, decimals=9):
        self.ledger = ledger
        self.name = name
        self.symbol = symbol
        self.decimals = decimals

        # Mapping of addresses to gon balances
        self._gon_balances = {}
        self._total_gons = 0
        self.gons_per_fragment = INITIAL_GONS_PER_FRAGMENT

        self.total_supply = 0

        ledger.track(self)

    @property
    def balances(self):
        return {
            account: gons // self.gons_per_fragment
            for account, gons in self._gon_balances.items()
        }

    def balance_of(self, account):
        return self._gon_balances.get(account, 0) // self.gons_per_fragment

    def transfer(self, sender, recipient, amount):
        if amount < 0:
            raise ValueError("Amount cannot be negative")
        if amount == 0:
            return True

        sender_balance = self.balance_of(sender)
        if sender_balance < amount:
            raise InsufficientBalance(
                f"{self.symbol}: {sender} holds {sender_balance}, needs {amount}"
            )

        gons = amount * self.gons_per_fragment
        self._gon_balances[sender] = self._gon_balances[sender] - gons
        self._gon_balances[recipient] = self._gon_balances.get(recipient, 0) + gons
        return True

    def mint(self, recipient, amount):
        if amount < 0:
            raise ValueError("Amount cannot be negative")

        gons = amount * self.gons_per_fragment
        self._gon_balances[recipient] = self._gon_balances.get(recipient, 0) + gons
        self._total_gons += gons
        self.total_supply += amount
        return True

    def burn(self, account, amount):
        if amount < 0:
            raise ValueError("Amount cannot be negative")

        balance = self.balance_of(account)
        if balance < amount:
            raise InsufficientBalance(
                f"{self.symbol}: cannot burn {amount} from {account}, balance {balance}"
            )

        gons = amount * self.gons_per_fragment
        self._gon_balances[account] -= gons
        self._total_gons -= gons
        self.total_supply -= amount
        return True

    def rebase(self, supply_delta_perc):
        """
        Expands or contracts the supply by a fixed-point percentage.

        Args:
            supply_delta_perc: Signed supply change (e.g. ONE // 10 for +10%)

        Returns:
            The new total supply

        Raises:
            ValueError: If the rebase would wipe out the supply
        """
        if self.total_supply == 0:
            return 0

        delta = abs(self.total_supply * supply_delta_perc) // ONE
        new_supply = self.total_supply + delta if supply_delta_perc >= 0 else self.total_supply - delta
        if new_supply <= 0:
            raise ValueError("Rebase would reduce supply to zero")

        self.gons_per_fragment = self._total_gons // new_supply
        self.total_supply = new_supply

        self.ledger.emit(self.symbol, "Rebase", supply_delta_perc=supply_delta_perc, total_supply=new_supply)
        logger.info("%s rebased by %.4f%%, supply %d", self.symbol, supply_delta_perc * 100 / ONE, new_supply)
        return new_supply
