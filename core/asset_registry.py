"""
Asset Registry Model for the SPOT protocol.

An AssetRegistry is the ordered, de-duplicated set of backing assets held
by one owner (the perpetual tranche's reserve or the rollover vault). The
underlying is registered at construction and is never removed. Every other
asset is present exactly when its owner holds a nonzero balance of it.

Traversal is registration order, oldest first. Removing an entry keeps the
relative order of the rest.
"""

import logging

from errors import InsufficientBalance, UnrecognizedAsset
from ledger import Stateful

logger = logging.getLogger(__name__)


class AssetRegistry(Stateful):
    """
    Ordered, balance-tracked set of backing assets for a single owner.
    """

    _state_fields = ("_assets",)

    def __init__(self, ledger, owner_address, underlying, recognizer):
        """
        Args:
            ledger: Shared ledger
            owner_address: Address whose balances the registry tracks
            underlying: The denominating asset, always registered
            recognizer: Callable(asset) -> bool deciding which assets may be registered
        """
        self.ledger = ledger
        self.owner_address = owner_address
        self.underlying = underlying
        self.recognizer = recognizer

        self._assets = [underlying]

        ledger.track(self)

    def __contains__(self, asset):
        return any(a is asset for a in self._assets)

    def __iter__(self):
        return iter(list(self._assets))

    def __len__(self):
        return len(self._assets)

    @property
    def assets(self):
        """Registered assets, oldest first."""
        return tuple(self._assets)

    def at(self, index):
        return self._assets[index]

    def most_recent_first(self):
        return list(reversed(self._assets))

    def balance_of(self, asset):
        """Returns the owner's balance of asset."""
        return asset.balance_of(self.owner_address)

    def is_recognized(self, asset):
        return asset is self.underlying or bool(self.recognizer(asset))

    def register(self, asset):
        """
        Adds asset to the registry. Idempotent.

        Returns:
            True if the asset was added, False if it was already present

        Raises:
            UnrecognizedAsset: If the asset is not recognized
            InsufficientBalance: If the owner holds none of it
        """
        if asset in self:
            return False
        if not self.is_recognized(asset):
            raise UnrecognizedAsset(f"{self.owner_address}: {asset!r} is not a recognized asset")
        if self.balance_of(asset) <= 0:
            raise InsufficientBalance(f"{self.owner_address}: cannot register {asset!r} with zero balance")

        self._assets.append(asset)
        logger.debug("%s registered %r", self.owner_address, asset)
        return True

    def unregister(self, asset):
        """
        Removes asset if the owner no longer holds any of it.

        Returns:
            True if the asset was removed
        """
        if asset is self.underlying or asset not in self:
            return False
        if self.balance_of(asset) > 0:
            return False

        self._assets = [a for a in self._assets if a is not asset]
        logger.debug("%s unregistered %r", self.owner_address, asset)
        return True

    def sync(self, asset):
        """
        Reconciles membership with the owner's current balance.

        Returns:
            The owner's balance of asset
        """
        balance = self.balance_of(asset)
        if balance > 0:
            self.register(asset)
        else:
            self.unregister(asset)
        return balance
