"""
Unit tests for the pricing strategies.
"""

import unittest
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from bond_model import Bond
from fixed_point import ONE
from ledger import Ledger
from pricing_strategy import CDRPricingStrategy, UnitPricingStrategy
from tokens import RebasingToken


class TestCDRPricingStrategy(unittest.TestCase):
    def setUp(self):
        """Initialize a 20/80 bond holding 1000 AMPL"""
        self.ledger = Ledger()
        self.ampl = RebasingToken(self.ledger, "Ampleforth", "AMPL")
        self.bond = Bond(self.ledger, "bond", self.ampl, [200, 800], 1000)
        self.senior, self.junior = [t for t, _ in self.bond.tranches]
        self.pricing = CDRPricingStrategy()

        self.ampl.mint("alice", 1000)
        self.bond.deposit("alice", 1000)

    def test_par_at_issue(self):
        self.assertEqual(self.pricing.compute_price(self.senior), ONE)
        self.assertEqual(self.pricing.compute_price(self.junior), ONE)

    def test_non_tranche_priced_at_one(self):
        self.assertEqual(self.pricing.compute_price(self.ampl), ONE)

    def test_junior_absorbs_losses(self):
        """Test a -50% rebase marks the junior class down and leaves the senior at par"""
        self.ampl.rebase(-ONE // 2)
        self.assertEqual(self.pricing.compute_price(self.senior), ONE)
        self.assertEqual(self.pricing.compute_price(self.junior), 37500000)

    def test_price_capped_at_one(self):
        """Test surplus collateral never prices a tranche above par"""
        self.ampl.rebase(ONE)
        self.assertEqual(self.pricing.compute_price(self.junior), ONE)

    def test_mature_bond(self):
        """Test prices after maturity follow the collateral held per class"""
        self.ampl.rebase(-ONE // 2)
        self.ledger.update_time(1000)
        self.bond.mature()
        self.assertEqual(self.pricing.compute_price(self.junior), 37500000)

    def test_zero_supply(self):
        empty = Bond(self.ledger, "empty", self.ampl, [200, 800], 1000)
        self.assertEqual(self.pricing.compute_price(empty.tranche_at(1)), ONE)


class TestUnitPricingStrategy(unittest.TestCase):
    def test_unit_price(self):
        ledger = Ledger()
        ampl = RebasingToken(ledger, "Ampleforth", "AMPL")
        self.assertEqual(UnitPricingStrategy().compute_price(ampl), ONE)


if __name__ == '__main__':
    unittest.main()
