"""
Simple simulation for the SPOT Protocol Economic Model.

This script walks through one bond cycle step by step: seeding the vault,
minting perps, deploying, a negative rebase, rollovers once the first bond
goes stale, and redemptions.
"""

import logging
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from economic_model import SpotProtocolEconomicModel, SECONDS_PER_DAY, UNIT
from errors import ProtocolError
from fixed_point import ONE


def print_state(model, title):
    state = model.get_system_state()
    print(f"\n{title} (day {state['time'] // SECONDS_PER_DAY})")
    print(f"  Underlying supply: {state['underlying_supply'] / UNIT:,.2f} AMPL")
    print(f"  Perp supply: {state['perp_supply'] / UNIT:,.2f} SPOT")
    print(f"  Perp TVL: {state['perp_tvl'] / UNIT:,.2f} AMPL")
    print(f"  Perp backing per token: {state['perp_price']:.6f}")
    print(f"  Vault TVL: {state['vault_tvl'] / UNIT:,.2f} AMPL")
    print(f"  Deviation ratio: {state['deviation_ratio']:.4f}")
    print(f"  Reserve assets: {[repr(a) for a in model.perp.get_reserve_tokens()]}")
    print(f"  Vault assets: {[repr(a) for a in model.vault.get_vault_assets()]}")


def run_basic_simulation():
    model = SpotProtocolEconomicModel()

    print("Seeding the vault...")
    model.fund("vault_lp", 200_000 * UNIT)
    notes = model.deposit_vault("vault_lp", 200_000 * UNIT)
    print(f"vault_lp received {notes:,} notes")

    print("\nMinting perps...")
    for i in range(3):
        user = f"user{i}"
        amount = (i + 1) * 10_000 * UNIT
        model.fund(user, amount)
        minted = model.mint_perps(user, amount)
        print(f"{user} tranched {amount / UNIT:,.0f} AMPL and minted {minted / UNIT:,.2f} SPOT")

    print("\nDeploying the vault...")
    model.run_keeper()
    print_state(model, "After deployment")

    print("\nSimulating a 5% negative rebase")
    model.rebase(-ONE // 20)
    print_state(model, "After rebase")

    # Advance past the point where the first bond is no longer acceptable
    for _ in range(22):
        model.update_time(SECONDS_PER_DAY)
        report = model.run_keeper()
        if report['deployed'] or report['rebalanced']:
            print(f"Day {model.current_time // SECONDS_PER_DAY}: rolled {report['deployed'] / UNIT:,.2f}, "
                  f"rebalanced {report['rebalanced'] / UNIT:,.2f}")
    print_state(model, "After rollovers")

    print("\nRedeeming perps...")
    for i in range(3):
        user = f"user{i}"
        try:
            payouts = model.redeem_perps(user, model.perp.balance_of(user))
            for payout in payouts:
                print(f"{user} received {payout.amount / UNIT:,.2f} of {payout.token!r}")
        except ProtocolError as e:
            print(f"{user} could not redeem: {e}")

    print_state(model, "Final protocol state")


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    run_basic_simulation()
