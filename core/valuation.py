"""
Valuation of registry holdings.

held value = balance * price, with price ONE for the underlying.
"""

from fixed_point import ONE, mul_div


def compute_price(registry, asset, pricing_strategy):
    if asset is registry.underlying:
        return ONE
    return pricing_strategy.compute_price(asset)


def value_of(registry, asset, pricing_strategy):
    """Value of the registry owner's holding of asset, in underlying units."""
    return mul_div(registry.balance_of(asset), compute_price(registry, asset, pricing_strategy), ONE)


def asset_values(registry, pricing_strategy):
    """Returns [(asset, value)] in registry order."""
    return [(asset, value_of(registry, asset, pricing_strategy)) for asset in registry]


def total_value(registry, pricing_strategy):
    return sum(value for _, value in asset_values(registry, pricing_strategy))
