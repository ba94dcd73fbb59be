"""
Unit tests for bonds, tranches and the bond issuer.
"""

import unittest
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from bond_model import (
    Bond,
    BondIssuer,
    compute_redeemable_tranche_amounts,
    compute_tranche_collateral,
)
from errors import (
    BondMature,
    BondNotMature,
    InsufficientBalance,
    InvalidRedemptionRatio,
    UnacceptableParams,
)
from fixed_point import ONE
from ledger import Ledger
from tokens import RebasingToken

DAY = 24 * 60 * 60


class TestBond(unittest.TestCase):
    def setUp(self):
        """Initialize a three-class bond maturing at t=1000"""
        self.ledger = Ledger()
        self.ampl = RebasingToken(self.ledger, "Ampleforth", "AMPL")
        self.bond = Bond(self.ledger, "bond", self.ampl, [200, 300, 500], 1000)
        self.a, self.b, self.z = [t for t, _ in self.bond.tranches]

        self.ampl.mint("alice", 1000)
        self.ampl.mint("bob", 10000)

    def test_invalid_ratios(self):
        with self.assertRaises(UnacceptableParams):
            Bond(self.ledger, "bad", self.ampl, [200, 300], 1000)

    def test_deposit(self):
        """Test deposits mint tranches in ratio"""
        amounts = self.bond.deposit("alice", 1000)
        self.assertEqual(amounts, [200, 300, 500])
        self.assertEqual(self.bond.collateral_balance(), 1000)
        self.assertEqual(self.bond.total_debt(), 1000)
        self.assertEqual(self.z.balance_of("alice"), 500)
        self.assertEqual(self.z.symbol, "Z")

    def test_deposit_after_rebase(self):
        """Test later deposits are scaled by debt over collateral"""
        self.bond.deposit("alice", 1000)
        self.ampl.rebase(ONE)  # supply doubles
        self.assertEqual(self.bond.collateral_balance(), 2000)

        amounts = self.bond.deposit("bob", 2000)
        self.assertEqual(amounts, [200, 300, 500])

    def test_deposit_insufficient_balance(self):
        """Test a failed deposit leaves no tranches behind"""
        with self.assertRaises(InsufficientBalance):
            self.bond.deposit("carol", 100)
        self.assertEqual(self.bond.total_debt(), 0)

    def test_redeem_in_ratio(self):
        self.bond.deposit("alice", 1000)
        out = self.bond.redeem("alice", [20, 30, 50])
        self.assertEqual(out, 100)
        self.assertEqual(self.ampl.balance_of("alice"), 100)
        self.assertEqual(self.bond.total_debt(), 900)

    def test_redeem_invalid_ratio(self):
        self.bond.deposit("alice", 1000)
        with self.assertRaises(InvalidRedemptionRatio):
            self.bond.redeem("alice", [20, 30, 51])

    def test_mature_before_maturity(self):
        with self.assertRaises(BondNotMature):
            self.bond.mature("alice")

    def test_mature_is_idempotent(self):
        self.bond.deposit("alice", 1000)
        self.ledger.update_time(1000)
        self.assertTrue(self.bond.mature("alice"))
        self.assertFalse(self.bond.mature("alice"))
        with self.assertRaises(BondMature):
            self.bond.redeem("alice", [20, 30, 50])

    def test_waterfall_undercollateralized(self):
        """Test senior classes are repaid first when collateral is short"""
        self.bond.deposit("alice", 1000)
        self.ampl.rebase(-ONE // 2)
        self.ledger.update_time(1000)
        self.bond.mature()

        self.assertEqual(self.bond.redeem_mature("alice", self.a, 200), 200)
        self.assertEqual(self.bond.redeem_mature("alice", self.b, 150), 150)
        self.assertEqual(self.bond.redeem_mature("alice", self.z, 500), 0)

    def test_waterfall_overcollateralized(self):
        """Test the junior class takes the surplus"""
        self.bond.deposit("alice", 1000)
        self.ampl.rebase(ONE)
        shares = [c for _, c in compute_tranche_collateral(self.bond)]
        self.assertEqual(shares, [200, 300, 1500])

        self.ledger.update_time(1000)
        self.bond.mature()
        self.assertEqual(self.bond.redeem_mature("alice", self.z, 100), 300)

    def test_time_to_maturity(self):
        self.assertEqual(self.bond.time_to_maturity(), 1000)
        self.ledger.update_time(1500)
        self.assertEqual(self.bond.time_to_maturity(), 0)
        self.assertEqual(self.bond.duration, 1000)

    def test_redeemable_amounts(self):
        """Test the largest in-ratio set bounded by available amounts"""
        self.assertEqual(compute_redeemable_tranche_amounts(self.bond, [10, 100, 100]), [10, 15, 25])
        self.assertEqual(compute_redeemable_tranche_amounts(self.bond, [0, 100, 100]), [0, 0, 0])
        self.assertEqual(compute_redeemable_tranche_amounts(self.bond, [1, 100, 100]), [0, 0, 0])


class TestBondIssuer(unittest.TestCase):
    def setUp(self):
        self.ledger = Ledger()
        self.ampl = RebasingToken(self.ledger, "Ampleforth", "AMPL")
        self.issuer = BondIssuer(self.ledger, "issuer", self.ampl, [200, 800], 28 * DAY, 7 * DAY)

    def test_issues_once_per_window(self):
        """Test one bond per issue window"""
        first = self.issuer.get_latest_bond()
        self.assertIsNotNone(first)
        self.assertEqual(first.maturity_date, 28 * DAY)
        self.assertIs(self.issuer.get_latest_bond(), first)

        self.ledger.update_time(6 * DAY)
        self.assertIs(self.issuer.get_latest_bond(), first)

        self.ledger.update_time(2 * DAY)
        second = self.issuer.get_latest_bond()
        self.assertIsNot(second, first)
        self.assertEqual(second.creation_date, 7 * DAY)
        self.assertEqual(second.maturity_date, 35 * DAY)

    def test_is_instance(self):
        bond = self.issuer.get_latest_bond()
        self.assertTrue(self.issuer.is_instance(bond))
        outsider = Bond(self.ledger, "outsider", self.ampl, [200, 800], 28 * DAY)
        self.assertFalse(self.issuer.is_instance(outsider))

    def test_settled_bonds_are_retired(self):
        """Test a matured, fully redeemed bond stops being snapshotted"""
        bond = self.issuer.get_latest_bond()
        self.ampl.mint("alice", 1000)
        bond.deposit("alice", 1000)
        a, z = bond.tranche_at(0), bond.tranche_at(1)

        self.ledger.update_time(28 * DAY)
        bond.mature()
        bond.redeem_mature("alice", a, 200)
        tracked = self.ledger.component_count

        # The junior class is still outstanding
        self.assertFalse(bond.is_settled)
        self.assertEqual(self.issuer.retire_settled_bonds(), 0)

        bond.redeem_mature("alice", z, 800)
        self.assertTrue(bond.is_settled)

        # The new bond adds three components, the settled one drops three
        self.assertIsNot(self.issuer.get_latest_bond(), bond)
        self.assertEqual(self.ledger.component_count, tracked)
        self.assertTrue(self.issuer.is_instance(bond))
        self.assertEqual(self.issuer.retire_settled_bonds(), 0)


if __name__ == '__main__':
    unittest.main()
