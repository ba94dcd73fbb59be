"""
Visualization simulation for the SPOT Protocol Economic Model.

This script runs a randomized market scenario and plots supply, value and
the deviation ratio over time.
"""

import logging
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from economic_model import SpotProtocolEconomicModel, UNIT
from fixed_point import ONE


def run_visualization_simulation():
    # Initialize the protocol
    model = SpotProtocolEconomicModel(tranche_ratios=(250, 750))

    # Charge a protocol fee on rebalances and a small meld fee
    model.fee_policy.update_protocol_fee_config("owner", ONE // 100, "protocol")
    model.fee_policy.update_max_meld_fee_perc("owner", ONE // 200)

    print("Bootstrapping the system...")
    model.bootstrap(vault_deposit=2_000_000 * UNIT, perp_mint=600_000 * UNIT)

    # Run a simulation with rebases and plot results
    print("\nRunning simulation with visualizations...")
    results = model.simulate_market_scenario(120, rebase_volatility=0.03, plot_results=True, seed=7)

    print("\nSimulation Results:")
    for key, value in results.items():
        print(f"  {key}: {value}")

    collector_perps = model.perp.balance_of("protocol")
    collector_notes = model.vault.notes.balance_of("protocol")
    print(f"  protocol fee perps: {collector_perps / UNIT:,.4f}")
    print(f"  protocol fee notes: {collector_notes:,}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    run_visualization_simulation()
