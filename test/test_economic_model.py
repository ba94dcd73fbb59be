"""
Integration tests for the SPOT protocol economic model.
"""

import unittest
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from economic_model import SECONDS_PER_DAY, UNIT, SpotProtocolEconomicModel


def registry_consistent(registry):
    return all(
        registry.balance_of(asset) > 0
        for asset in registry
        if asset is not registry.underlying
    )


class TestSpotProtocolEconomicModel(unittest.TestCase):
    def setUp(self):
        """Initialize a fresh model for each test"""
        self.model = SpotProtocolEconomicModel()

    def test_initialization(self):
        """Test that all components share one ledger and one underlying"""
        self.assertIs(self.model.perp.vault, self.model.vault)
        self.assertIs(self.model.vault.underlying, self.model.underlying)
        self.assertIs(self.model.perp.fee_policy, self.model.vault.fee_policy)
        self.assertEqual(self.model.perp.total_supply, 0)

    def test_bootstrap(self):
        """Test the seed deposits fund perp and deploy the vault"""
        self.model.bootstrap(vault_deposit=1000 * UNIT, perp_mint=600 * UNIT)

        self.assertEqual(self.model.perp.total_supply, 199800000000)
        self.assertEqual(self.model.perp.balance_of("seed_perp_minter"), 199800000000)
        self.assertEqual(self.model.vault.notes.balance_of("seed_vault_lp"), 1000 * UNIT * 10 ** 6)
        self.assertEqual(self.model.vault.deployed_count(), 2)
        self.assertEqual(len(self.model.perp_tvl_history), 1)

    def test_system_state(self):
        self.model.bootstrap(vault_deposit=1000 * UNIT, perp_mint=600 * UNIT)
        state = self.model.get_system_state()

        for key in ('time', 'underlying_supply', 'perp_supply', 'perp_tvl', 'perp_price',
                    'vault_tvl', 'note_price', 'deviation_ratio', 'reserve_count', 'deployed_count'):
            self.assertIn(key, state)
        self.assertEqual(state['perp_price'], 1.0)
        self.assertGreater(state['deviation_ratio'], 1.0)

    def test_update_time(self):
        self.model.update_time(SECONDS_PER_DAY)
        self.assertEqual(self.model.current_time, SECONDS_PER_DAY)

    def test_keeper_runs_without_deposits(self):
        """Test the keeper tolerates an empty system"""
        report = self.model.run_keeper()
        self.assertEqual(report, {'deployed': 0, 'rebalanced': 0})

    def test_simulate_market_scenario(self):
        """Test a short simulation keeps the registries consistent"""
        results = self.model.simulate_market_scenario(10, plot_results=False, seed=1)

        self.assertEqual(len(self.model.perp_tvl_history), 11)
        self.assertGreater(results['final_perp_supply'], 0)
        self.assertGreater(results['final_vault_tvl'], 0)
        self.assertTrue(registry_consistent(self.model.perp.reserve))
        self.assertTrue(registry_consistent(self.model.vault.assets))
        self.assertFalse(self.model.ledger.in_transaction)


if __name__ == '__main__':
    unittest.main()
