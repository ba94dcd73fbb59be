"""
Pricing strategies for backing assets.

A pricing strategy returns a fixed-point price in [0, ONE] for any backing
asset. The underlying is always priced at ONE since its balance already
reflects rebasing.
"""

from bond_model import Tranche, compute_tranche_collateral
from fixed_point import ONE, PRICE_DECIMALS, clip, mul_div


class UnitPricingStrategy:
    """Prices every asset at ONE."""

    decimals = PRICE_DECIMALS

    def compute_price(self, asset):
        return ONE


class CDRPricingStrategy:
    """
    Prices a tranche at the collateral attributable to its class divided by
    its supply (its collateral-to-debt ratio), clipped to [0, ONE].

    Senior classes stay at ONE until the bond is under-collateralized enough
    to eat through the junior classes. Junior classes take losses first.
    """

    decimals = PRICE_DECIMALS

    def compute_price(self, asset):
        if not isinstance(asset, Tranche):
            return ONE

        supply = asset.total_supply
        if supply == 0:
            return ONE

        collateral = compute_tranche_collateral(asset.bond)[asset.index][1]
        return clip(mul_div(collateral, ONE, supply), 0, ONE)
