"""
Shared test fixture: a small, fully wired SPOT protocol.
"""

import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from bond_model import BondIssuer
from fee_policy import FeePolicy
from ledger import Ledger
from perpetual_tranche import PerpetualTranche
from pricing_strategy import CDRPricingStrategy
from rollover_vault import RolloverVault
from tokens import RebasingToken

DAY = 24 * 60 * 60
BOND_DURATION = 28 * DAY
ISSUE_INTERVAL = 7 * DAY
MIN_TRANCHE_MATURITY = 7 * DAY

OWNER = "owner"
KEEPER = "keeper"


class MockPricingStrategy(CDRPricingStrategy):
    """CDR pricing with per-asset overrides."""

    def __init__(self):
        self.prices = {}

    def set_price(self, asset, price):
        self.prices[asset] = price

    def compute_price(self, asset):
        if asset in self.prices:
            return self.prices[asset]
        return super().compute_price(asset)


class MockFeePolicy(FeePolicy):
    """Fee policy with a fixed rollover fee and a fixed rebalance amount."""

    def __init__(self, owner=OWNER, protocol_fee_collector="protocol"):
        super().__init__(owner, protocol_fee_collector)
        self.rollover_fee_perc = 0
        self.rebalance_amount = 0

    def compute_perp_rollover_fee_perc(self, dr):
        return self.rollover_fee_perc

    def compute_rebalance_amount(self, perp_tvl, vault_tvl, senior_tr, perp_supply=None):
        return self.rebalance_amount


class ProtocolFixture:
    """
    Ledger, AMPL, a bond issuer, perp and the vault, wired together.

    Bonds mature after 28 days and are issued every 7 days. Perp accepts
    tranches maturing in 7 to 28 days.
    """

    def __init__(self, tranche_ratios=(200, 800), fee_policy=None, min_deployment_amt=0):
        self.ledger = Ledger(0)
        self.underlying = RebasingToken(self.ledger, "Ampleforth", "AMPL")
        self.issuer = BondIssuer(
            self.ledger, "issuer", self.underlying, tranche_ratios, BOND_DURATION, ISSUE_INTERVAL,
        )
        self.fee_policy = fee_policy or MockFeePolicy()
        self.pricing = MockPricingStrategy()

        self.perp = PerpetualTranche(
            self.ledger,
            "perp",
            self.underlying,
            self.issuer,
            self.fee_policy,
            self.pricing,
            owner=OWNER,
            keeper=KEEPER,
            min_tranche_maturity_sec=MIN_TRANCHE_MATURITY,
            max_tranche_maturity_sec=BOND_DURATION,
        )
        self.vault = RolloverVault(
            self.ledger,
            "vault",
            self.perp,
            owner=OWNER,
            keeper=KEEPER,
            min_deployment_amt=min_deployment_amt,
            rebalance_freq_sec=DAY,
        )
        self.perp.update_vault(OWNER, self.vault)

    def advance(self, seconds):
        self.ledger.update_time(seconds)

    def fund(self, account, amount):
        self.underlying.mint(account, amount)

    def deposit_bond(self):
        """Updates perp's state and returns its deposit bond."""
        self.perp.update_state()
        return self.perp.get_deposit_bond()

    def tranche(self, account, bond, amount):
        """Funds account with underlying and tranches it through bond."""
        self.fund(account, amount)
        return bond.deposit(account, amount)

    def mint_perps(self, account, underlying_amt):
        """Tranches underlying through the deposit bond and deposits the senior slice."""
        bond = self.deposit_bond()
        amounts = self.tranche(account, bond, underlying_amt)
        return self.perp.deposit(account, bond.tranche_at(0), amounts[0])

    def registry_consistent(self, registry):
        """Every registered asset but the underlying has a nonzero balance."""
        return all(
            registry.balance_of(asset) > 0
            for asset in registry
            if asset is not registry.underlying
        )
