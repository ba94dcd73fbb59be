"""
Unit tests for the fee policy.
"""

import unittest
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from errors import (
    InvalidPerc,
    InvalidSigmoidAsymptotes,
    InvalidTargetSRBounds,
    UnacceptableParams,
    UnauthorizedCall,
)
from fee_policy import MAX_DEVIATION_RATIO, FeePolicy
from fixed_point import ONE

OWNER = "owner"


class TestFeePolicyConfig(unittest.TestCase):
    def setUp(self):
        """Initialize a fresh fee policy for each test"""
        self.policy = FeePolicy(owner=OWNER, protocol_fee_collector="collector")

    def test_only_owner(self):
        """Test that updates from anyone but the owner are rejected"""
        with self.assertRaises(UnauthorizedCall):
            self.policy.update_perp_mint_fees("mallory", ONE // 100)
        with self.assertRaises(UnauthorizedCall):
            self.policy.update_protocol_fee_config("mallory", 0, "mallory")

    def test_transfer_ownership(self):
        self.policy.transfer_ownership(OWNER, "dao")
        self.policy.update_vault_mint_fees("dao", ONE // 100)
        self.assertEqual(self.policy.compute_vault_mint_fee_perc(), ONE // 100)
        with self.assertRaises(UnauthorizedCall):
            self.policy.update_vault_mint_fees(OWNER, 0)

    def test_invalid_perc(self):
        with self.assertRaises(InvalidPerc):
            self.policy.update_perp_burn_fees(OWNER, ONE + 1)
        with self.assertRaises(InvalidPerc):
            self.policy.update_vault_burn_fees(OWNER, -1)

    def test_invalid_sigmoid_asymptotes(self):
        """Test asymptotes must sit within +/- 1% and be ordered"""
        with self.assertRaises(InvalidSigmoidAsymptotes):
            self.policy.update_perp_rollover_fees(OWNER, -2 * ONE // 100, ONE // 100, ONE)
        with self.assertRaises(InvalidSigmoidAsymptotes):
            self.policy.update_perp_rollover_fees(OWNER, ONE // 200, -ONE // 200, ONE)

    def test_invalid_target_subscription_ratio(self):
        with self.assertRaises(InvalidTargetSRBounds):
            self.policy.update_target_subscription_ratio(OWNER, 3 * ONE)
        with self.assertRaises(InvalidTargetSRBounds):
            self.policy.update_target_subscription_ratio(OWNER, ONE // 2)

    def test_invalid_rebalance_config(self):
        with self.assertRaises(UnacceptableParams):
            self.policy.update_rebalance_config(OWNER, 0, ONE, (ONE, ONE))
        with self.assertRaises(UnacceptableParams):
            self.policy.update_rebalance_config(OWNER, 1, ONE, (ONE + 1, 2 * ONE))

    def test_swap_fee_updates(self):
        """Test vault swap fees start at 100% and only the owner can lower them"""
        self.assertEqual(self.policy.compute_underlying_to_perp_swap_fee_percs(2 * ONE), (0, ONE))
        self.assertEqual(self.policy.compute_perp_to_underlying_swap_fee_percs(2 * ONE), (0, ONE))

        with self.assertRaises(UnauthorizedCall):
            self.policy.update_vault_underlying_to_perp_swap_fee_perc("mallory", 0)
        with self.assertRaises(UnauthorizedCall):
            self.policy.update_vault_perp_to_underlying_swap_fee_perc("mallory", 0)
        with self.assertRaises(InvalidPerc):
            self.policy.update_vault_underlying_to_perp_swap_fee_perc(OWNER, ONE + 1)
        with self.assertRaises(InvalidPerc):
            self.policy.update_vault_perp_to_underlying_swap_fee_perc(OWNER, ONE + 1)


class TestFeePolicyComputations(unittest.TestCase):
    def setUp(self):
        """Initialize a fee policy with a 1.25 target subscription ratio"""
        self.policy = FeePolicy(owner=OWNER)
        self.policy.update_target_subscription_ratio(OWNER, (ONE * 125) // 100)

    def test_deviation_ratio(self):
        """Test dr at, above and below target"""
        self.assertEqual(self.policy.compute_deviation_ratio(100, 500, 200), ONE)
        self.assertEqual(self.policy.compute_deviation_ratio(100, 1000, 200), 2 * ONE)
        self.assertEqual(self.policy.compute_deviation_ratio(1000, 2500, 200), ONE // 2)

    def test_deviation_ratio_without_perp_value(self):
        self.assertEqual(self.policy.compute_deviation_ratio(0, 500, 200), MAX_DEVIATION_RATIO)

    def test_deviation_ratio_degenerate_bond(self):
        with self.assertRaises(UnacceptableParams):
            self.policy.compute_deviation_ratio(100, 500, 0)

    def test_mint_and_burn_fees(self):
        """Test mint fees apply at or below dr = 1 and burn fees above it"""
        self.policy.update_perp_mint_fees(OWNER, ONE // 100)
        self.policy.update_perp_burn_fees(OWNER, ONE // 50)

        self.assertEqual(self.policy.compute_perp_mint_fee_perc(ONE), ONE // 100)
        self.assertEqual(self.policy.compute_perp_mint_fee_perc(ONE + 1), 0)
        self.assertEqual(self.policy.compute_perp_burn_fee_perc(ONE), 0)
        self.assertEqual(self.policy.compute_perp_burn_fee_perc(ONE + 1), ONE // 50)

    def test_rollover_fee_curve(self):
        """Test the rollover fee is signed around dr = 1"""
        self.policy.update_perp_rollover_fees(OWNER, -900000, 900000, 3 * ONE)
        self.assertEqual(self.policy.compute_perp_rollover_fee_perc(0), -700000)
        self.assertEqual(self.policy.compute_perp_rollover_fee_perc(ONE), 0)
        self.assertEqual(self.policy.compute_perp_rollover_fee_perc(10 * ONE), 900000)

    def test_meld_fee_decays(self):
        """Test the meld fee decays linearly to zero at maturity"""
        self.policy.update_max_meld_fee_perc(OWNER, ONE // 10)
        self.assertEqual(self.policy.compute_meld_fee_perc(1000, 1000), ONE // 10)
        self.assertEqual(self.policy.compute_meld_fee_perc(500, 1000), ONE // 20)
        self.assertEqual(self.policy.compute_meld_fee_perc(0, 1000), 0)

    def test_rebalance_enrichment_capped(self):
        """Test an over-subscribed system enriches perp, capped by max_rebalance_perc"""
        amount = self.policy.compute_rebalance_amount(10 ** 6, 10 ** 7, 200, perp_supply=10 ** 6)
        self.assertEqual(amount, 25000)

    def test_rebalance_enrichment_uncapped(self):
        self.policy.update_rebalance_config(OWNER, 1, ONE, ((ONE * 95) // 100, (ONE * 105) // 100))
        amount = self.policy.compute_rebalance_amount(10 ** 6, 10 ** 7, 200, perp_supply=10 ** 6)
        self.assertEqual(amount, 833333)

    def test_rebalance_debasement(self):
        """Test an under-subscribed system debases perp"""
        self.policy.update_rebalance_config(OWNER, 1, ONE, ((ONE * 95) // 100, (ONE * 105) // 100))
        amount = self.policy.compute_rebalance_amount(10 ** 6, 25 * 10 ** 5, 200, perp_supply=10 ** 6)
        self.assertEqual(amount, -416667)

    def test_rebalance_inside_band(self):
        self.assertEqual(self.policy.compute_rebalance_amount(10 ** 6, 5 * 10 ** 6, 200, perp_supply=10 ** 6), 0)

    def test_underlying_to_perp_swap_fees(self):
        """Test swaps into perp are shut off when they leave dr at or below 1"""
        self.policy.update_vault_underlying_to_perp_swap_fee_perc(OWNER, ONE // 10)
        self.assertEqual(self.policy.compute_underlying_to_perp_swap_fee_percs((ONE * 101) // 100), (0, ONE // 10))
        self.assertEqual(self.policy.compute_underlying_to_perp_swap_fee_percs(ONE), (0, ONE))
        self.assertEqual(self.policy.compute_underlying_to_perp_swap_fee_percs(ONE // 2), (0, ONE))

    def test_perp_to_underlying_swap_fees(self):
        """Test swaps out of perp carry the perp burn fee above dr = 1"""
        self.policy.update_perp_burn_fees(OWNER, ONE // 10)
        self.policy.update_vault_perp_to_underlying_swap_fee_perc(OWNER, ONE // 20)
        self.assertEqual(self.policy.compute_perp_to_underlying_swap_fee_percs(ONE + 1), (ONE // 10, ONE // 20))
        self.assertEqual(self.policy.compute_perp_to_underlying_swap_fee_percs(ONE), (0, ONE // 20))

    def test_dr_norm_senior_tr(self):
        """Test the share of underlying that keeps dr at 1 when split between perp and vault"""
        self.assertEqual(self.policy.compute_dr_norm_senior_tr(200), 16666666)
        self.policy.update_target_subscription_ratio(OWNER, ONE)
        self.assertEqual(self.policy.compute_dr_norm_senior_tr(200), ONE // 5)
        self.assertEqual(FeePolicy(owner=OWNER).compute_dr_norm_senior_tr(200), 15822784)
        with self.assertRaises(UnacceptableParams):
            self.policy.compute_dr_norm_senior_tr(0)

    def test_rebalance_without_perp(self):
        self.assertEqual(self.policy.compute_rebalance_amount(0, 10 ** 7, 200), 0)
        self.assertEqual(self.policy.compute_rebalance_amount(10 ** 6, 10 ** 7, 200, perp_supply=0), 0)


if __name__ == '__main__':
    unittest.main()
