"""
Economic Model for the SPOT Protocol.

This main module combines all the individual components to create a complete
economic model of the SPOT perpetual tranche system: an elastic underlying,
a bond issuer, perp with its reserve, and the rollover vault. It can be used
to simulate market scenarios (random supply rebases plus user activity) and
to inspect how perp's backing and the vault's value evolve.
"""

import logging

import matplotlib.pyplot as plt
import numpy as np

from bond_model import BondIssuer
from errors import (
    InsufficientDeployment,
    LastRebalanceTooRecent,
    ProtocolError,
    UnacceptableDeployment,
)
from fee_policy import FeePolicy
from fixed_point import ONE
from ledger import Ledger
from perpetual_tranche import PerpetualTranche
from pricing_strategy import CDRPricingStrategy
from rollover_vault import RolloverVault
from tokens import RebasingToken

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

# One whole underlying token (9 decimals)
UNIT = 10 ** 9


class SpotProtocolEconomicModel:
    """
    Complete economic model of the SPOT protocol.
    Combines all components and provides simulation capabilities.
    """

    def __init__(
        self,
        tranche_ratios=(333, 667),
        bond_duration_days=28,
        issue_interval_days=7,
        min_tranche_maturity_days=7,
        rebalance_freq_days=1,
        start_time=0,
    ):
        self.ledger = Ledger(start_time)

        # Elastic underlying
        self.underlying = RebasingToken(self.ledger, "Ampleforth", "AMPL")

        # Collaborators
        self.bond_issuer = BondIssuer(
            self.ledger,
            "issuer",
            self.underlying,
            tranche_ratios,
            bond_duration_days * SECONDS_PER_DAY,
            issue_interval_days * SECONDS_PER_DAY,
        )
        self.fee_policy = FeePolicy(owner="owner", protocol_fee_collector="protocol")
        self.pricing_strategy = CDRPricingStrategy()

        # Perp and the vault
        self.perp = PerpetualTranche(
            self.ledger,
            "perp",
            self.underlying,
            self.bond_issuer,
            self.fee_policy,
            self.pricing_strategy,
            owner="owner",
            keeper="keeper",
            min_tranche_maturity_sec=min_tranche_maturity_days * SECONDS_PER_DAY,
            max_tranche_maturity_sec=bond_duration_days * SECONDS_PER_DAY,
        )
        self.vault = RolloverVault(
            self.ledger,
            "vault",
            self.perp,
            owner="owner",
            keeper="keeper",
            rebalance_freq_sec=rebalance_freq_days * SECONDS_PER_DAY,
        )
        self.perp.update_vault("owner", self.vault)

        # History tracking for simulations
        self.underlying_supply_history = []
        self.perp_tvl_history = []
        self.perp_price_history = []
        self.vault_tvl_history = []
        self.note_price_history = []
        self.deviation_ratio_history = []

    @property
    def current_time(self):
        return self.ledger.current_time

    def fund(self, account, amount):
        """Mints underlying to an account."""
        self.underlying.mint(account, amount)

    def mint_perps(self, user, underlying_amt):
        """
        Tranches underlying through perp's deposit bond and deposits the
        senior slice into perp. The user keeps the junior tranches.

        Args:
            user: Address of the user
            underlying_amt: Amount of underlying to tranche

        Returns:
            Amount of perps minted
        """
        self.perp.update_state(user)
        bond = self.perp.get_deposit_bond()
        if bond is None:
            raise UnacceptableDeployment("No deposit bond available")

        tranche_amts = bond.deposit(user, underlying_amt)
        return self.perp.deposit(user, bond.tranche_at(0), tranche_amts[0])

    def redeem_perps(self, user, perp_amt):
        return self.perp.redeem(user, perp_amt)

    def deposit_vault(self, user, underlying_amt):
        return self.vault.deposit(user, underlying_amt)

    def redeem_vault(self, user, note_amt):
        return self.vault.redeem(user, note_amt)

    def rebase(self, supply_delta_perc):
        return self.underlying.rebase(supply_delta_perc)

    def update_time(self, seconds):
        """
        Advances the simulation by the specified number of seconds.

        Args:
            seconds: Number of seconds to advance
        """
        self.ledger.update_time(seconds)

    def run_keeper(self):
        """
        Performs the periodic keeper duties: updates perp's state, recovers
        and redeploys the vault, and rebalances when due.

        Returns:
            Dictionary describing what happened
        """
        report = {'deployed': 0, 'rebalanced': 0}

        self.perp.update_state("keeper")

        try:
            report['deployed'] = self.vault.recover_and_redeploy("keeper")
        except (InsufficientDeployment, UnacceptableDeployment) as e:
            logger.debug("Deployment skipped: %s", e)
            self.vault.recover("keeper")

        try:
            report['rebalanced'] = self.vault.rebalance("keeper")
        except LastRebalanceTooRecent:
            pass

        return report

    def bootstrap(self, vault_deposit=1_000_000 * UNIT, perp_mint=500_000 * UNIT):
        """
        Seeds the system with an initial vault deposit and perp mint.
        """
        self.fund("seed_vault_lp", vault_deposit)
        self.fund("seed_perp_minter", perp_mint)
        self.deposit_vault("seed_vault_lp", vault_deposit)
        self.mint_perps("seed_perp_minter", perp_mint)
        self.run_keeper()
        self._update_history()

    def get_system_state(self):
        """
        Returns the current state of the system.

        Returns:
            Dictionary with system state
        """
        perp_tvl = self.perp.get_tvl()
        perp_supply = self.perp.total_supply
        vault_tvl = self.vault.get_tvl()
        note_supply = self.vault.notes.total_supply

        return {
            'time': self.current_time,
            'underlying_supply': self.underlying.total_supply,
            'perp_supply': perp_supply,
            'perp_tvl': perp_tvl,
            'perp_price': perp_tvl / perp_supply if perp_supply > 0 else 1.0,
            'vault_tvl': vault_tvl,
            'note_price': vault_tvl / note_supply if note_supply > 0 else 0.0,
            'deviation_ratio': self.perp.compute_deviation_ratio() / ONE,
            'reserve_count': self.perp.get_reserve_count(),
            'deployed_count': self.vault.deployed_count(),
        }

    def _update_history(self):
        """Updates history tracking for simulations."""
        state = self.get_system_state()

        self.underlying_supply_history.append(state['underlying_supply'] / UNIT)
        self.perp_tvl_history.append(state['perp_tvl'] / UNIT)
        self.perp_price_history.append(state['perp_price'])
        self.vault_tvl_history.append(state['vault_tvl'] / UNIT)
        self.note_price_history.append(state['note_price'] * UNIT)
        self.deviation_ratio_history.append(state['deviation_ratio'])

    def _simulate_user_activity(self, rng, step):
        """Random perp mints and redemptions from a pool of users."""
        user = f"user{rng.integers(0, 10)}"
        action = rng.random()

        try:
            if action < 0.4:
                amount = int(rng.uniform(1_000, 20_000)) * UNIT
                self.fund(user, amount)
                self.mint_perps(user, amount)
            elif action < 0.6:
                balance = self.perp.balance_of(user)
                if balance > 0:
                    self.redeem_perps(user, balance // 2)
            elif action < 0.7:
                amount = int(rng.uniform(5_000, 50_000)) * UNIT
                self.fund(user, amount)
                self.deposit_vault(user, amount)
        except ProtocolError as e:
            logger.warning("Step %d: %s action failed: %s", step, user, e)

    def simulate_market_scenario(self, days, rebase_volatility=0.02, plot_results=True, seed=None):
        """
        Runs a simulation with random supply rebases over the specified period.

        Each day the underlying rebases by a normally distributed percentage,
        users mint and redeem, and the keeper runs.

        Args:
            days: Number of days to simulate
            rebase_volatility: Standard deviation of the daily rebase
            plot_results: Whether to plot the results
            seed: Random seed

        Returns:
            Dictionary with simulation results
        """
        rng = np.random.default_rng(seed)

        if self.perp.total_supply == 0:
            self.bootstrap()

        # Reset history
        self.underlying_supply_history = []
        self.perp_tvl_history = []
        self.perp_price_history = []
        self.vault_tvl_history = []
        self.note_price_history = []
        self.deviation_ratio_history = []
        self._update_history()

        # Daily rebases, clipped to +/- 10%
        rebases = np.clip(rng.normal(0, rebase_volatility, days), -0.1, 0.1)
        time_points = np.zeros(days)

        for i in range(days):
            self.update_time(SECONDS_PER_DAY)
            self.rebase(int(rebases[i] * ONE))

            for _ in range(3):
                self._simulate_user_activity(rng, i)

            self.run_keeper()
            self._update_history()

            # Record time in days
            time_points[i] = self.current_time / SECONDS_PER_DAY

        # Plot results if requested
        if plot_results:
            fig, axs = plt.subplots(5, 1, figsize=(12, 20), sharex=True)

            axs[0].plot(time_points, self.underlying_supply_history[1:])
            axs[0].set_title('Underlying Supply')
            axs[0].set_ylabel('AMPL')

            axs[1].plot(time_points, self.perp_tvl_history[1:], label='perp')
            axs[1].plot(time_points, self.vault_tvl_history[1:], label='vault')
            axs[1].set_title('Total Value Locked')
            axs[1].set_ylabel('AMPL')
            axs[1].legend()

            axs[2].plot(time_points, self.perp_price_history[1:])
            axs[2].set_title('Perp Backing per Token')
            axs[2].set_ylabel('AMPL')

            axs[3].plot(time_points, self.note_price_history[1:])
            axs[3].set_title('Vault Value per Note')
            axs[3].set_ylabel('AMPL per 1e9 notes')

            axs[4].plot(time_points, self.deviation_ratio_history[1:])
            axs[4].axhline(1.0, color='grey', linestyle='--')
            axs[4].set_title('Deviation Ratio')
            axs[4].set_ylabel('Ratio')
            axs[4].set_xlabel('Days')

            plt.tight_layout()
            plt.show()

        final_state = self.get_system_state()
        return {
            'final_underlying_supply': final_state['underlying_supply'],
            'final_perp_supply': final_state['perp_supply'],
            'final_perp_tvl': final_state['perp_tvl'],
            'final_perp_price': final_state['perp_price'],
            'final_vault_tvl': final_state['vault_tvl'],
            'final_deviation_ratio': final_state['deviation_ratio'],
            'max_deviation_ratio': float(np.max(self.deviation_ratio_history)),
            'min_perp_price': float(np.min(self.perp_price_history)),
        }
