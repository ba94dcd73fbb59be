"""
Fee Policy Model for the SPOT protocol.

The fee policy is the single place where fee percentages and the rebalance
amount are decided. Both the perpetual tranche and the rollover vault query
it; neither hard-codes any fee logic.

Fees depend on the deviation ratio (dr), which measures how well the vault
"subscribes" perp:

    subscription_ratio = (vault_tvl * senior_tr / (1000 - senior_tr)) / perp_tvl
    dr = subscription_ratio / target_subscription_ratio

When dr <= 1 the system wants fewer perps, so minting is charged. When
dr > 1 the system wants more perps, so burning is charged. The rollover fee
follows a sigmoid of dr: negative below 1 (rollers are paid, perp is
debased), positive above 1 (rollers pay, perp is enriched).
"""

import logging
from dataclasses import dataclass

from errors import (
    InvalidPerc,
    InvalidSigmoidAsymptotes,
    InvalidTargetSRBounds,
    UnacceptableParams,
    UnauthorizedCall,
)
from fixed_point import ONE, TRANCHE_RATIO_GRANULARITY, clip, mul_div, sigmoid

logger = logging.getLogger(__name__)

# Target subscription ratio and its bounds
DEFAULT_TARGET_SUBSCRIPTION_RATIO = (ONE * 133) // 100
TARGET_SR_LOWER_BOUND = ONE
TARGET_SR_UPPER_BOUND = 2 * ONE

# Rollover fee sigmoid asymptotes must sit within +/- 1%
SIGMOID_BOUND = ONE // 100
DEFAULT_ROLLOVER_FEE_LOWER = -253000    # -0.253%
DEFAULT_ROLLOVER_FEE_UPPER = 769000     # 0.769%
DEFAULT_ROLLOVER_FEE_GROWTH = 5 * ONE

# Deviation ratio reported when perp holds no value
MAX_DEVIATION_RATIO = 100 * ONE

# Rebalancing
DEFAULT_REBALANCE_LAG = 30
DEFAULT_MAX_REBALANCE_PERC = ONE // 40              # 2.5% of perp tvl per rebalance
DEFAULT_EQUILIBRIUM_DR = ((ONE * 95) // 100, (ONE * 105) // 100)


@dataclass
class SigmoidParams:
    """Parameters of the rollover fee curve."""
    lower: int
    upper: int
    growth: int


class FeePolicy:
    """
    Fee percentages and rebalance sizing for perp and the vault.
    """

    def __init__(self, owner="owner", protocol_fee_collector=None):
        self.owner = owner

        self.target_subscription_ratio = DEFAULT_TARGET_SUBSCRIPTION_RATIO

        # Perp fees
        self.perp_mint_fee_perc = 0
        self.perp_burn_fee_perc = 0
        self.perp_rollover_fee = SigmoidParams(
            DEFAULT_ROLLOVER_FEE_LOWER,
            DEFAULT_ROLLOVER_FEE_UPPER,
            DEFAULT_ROLLOVER_FEE_GROWTH,
        )

        # Vault fees
        self.vault_mint_fee_perc = 0
        self.vault_burn_fee_perc = 0
        self.max_meld_fee_perc = 0

        # Vault swap fees, swapping is disabled until these are lowered
        self.vault_underlying_to_perp_swap_fee_perc = ONE
        self.vault_perp_to_underlying_swap_fee_perc = ONE

        # Rebalance sizing
        self.rebalance_lag = DEFAULT_REBALANCE_LAG
        self.max_rebalance_perc = DEFAULT_MAX_REBALANCE_PERC
        self.equilibrium_dr = DEFAULT_EQUILIBRIUM_DR

        # Protocol fee taken on every rebalance
        self.protocol_share_perc = 0
        self.protocol_fee_collector = protocol_fee_collector or owner

    def _only_owner(self, caller):
        if caller != self.owner:
            raise UnauthorizedCall(f"FeePolicy: {caller} is not the owner")

    @staticmethod
    def _validate_perc(perc):
        if perc < 0 or perc > ONE:
            raise InvalidPerc(f"Percentage {perc} outside [0, {ONE}]")

    # Owner configuration

    def transfer_ownership(self, caller, new_owner):
        self._only_owner(caller)
        self.owner = new_owner

    def update_target_subscription_ratio(self, caller, target_sr):
        self._only_owner(caller)
        if target_sr < TARGET_SR_LOWER_BOUND or target_sr > TARGET_SR_UPPER_BOUND:
            raise InvalidTargetSRBounds(f"Target subscription ratio {target_sr} out of bounds")
        self.target_subscription_ratio = target_sr

    def update_perp_mint_fees(self, caller, perc):
        self._only_owner(caller)
        self._validate_perc(perc)
        self.perp_mint_fee_perc = perc

    def update_perp_burn_fees(self, caller, perc):
        self._only_owner(caller)
        self._validate_perc(perc)
        self.perp_burn_fee_perc = perc

    def update_perp_rollover_fees(self, caller, lower, upper, growth):
        """
        Updates the rollover fee sigmoid.

        Raises:
            InvalidSigmoidAsymptotes: Unless -1% <= lower <= upper <= 1%
        """
        self._only_owner(caller)
        if lower < -SIGMOID_BOUND or upper > SIGMOID_BOUND or lower > upper:
            raise InvalidSigmoidAsymptotes(f"Invalid asymptotes [{lower}, {upper}]")
        self.perp_rollover_fee = SigmoidParams(lower, upper, growth)

    def update_vault_mint_fees(self, caller, perc):
        self._only_owner(caller)
        self._validate_perc(perc)
        self.vault_mint_fee_perc = perc

    def update_vault_burn_fees(self, caller, perc):
        self._only_owner(caller)
        self._validate_perc(perc)
        self.vault_burn_fee_perc = perc

    def update_max_meld_fee_perc(self, caller, perc):
        self._only_owner(caller)
        self._validate_perc(perc)
        self.max_meld_fee_perc = perc

    def update_vault_underlying_to_perp_swap_fee_perc(self, caller, perc):
        self._only_owner(caller)
        self._validate_perc(perc)
        self.vault_underlying_to_perp_swap_fee_perc = perc

    def update_vault_perp_to_underlying_swap_fee_perc(self, caller, perc):
        self._only_owner(caller)
        self._validate_perc(perc)
        self.vault_perp_to_underlying_swap_fee_perc = perc

    def update_rebalance_config(self, caller, rebalance_lag, max_rebalance_perc, equilibrium_dr):
        """
        Updates rebalance sizing.

        Args:
            caller: Must be the owner
            rebalance_lag: Divisor applied to the gap to equilibrium (>= 1)
            max_rebalance_perc: Cap on the amount moved, as a share of perp tvl
            equilibrium_dr: (lower, upper) deviation ratio band where nothing moves
        """
        self._only_owner(caller)
        self._validate_perc(max_rebalance_perc)
        lower, upper = equilibrium_dr
        if rebalance_lag < 1 or lower > ONE or upper < ONE:
            raise UnacceptableParams("Invalid rebalance configuration")
        self.rebalance_lag = rebalance_lag
        self.max_rebalance_perc = max_rebalance_perc
        self.equilibrium_dr = (lower, upper)

    def update_protocol_fee_config(self, caller, protocol_share_perc, protocol_fee_collector):
        self._only_owner(caller)
        self._validate_perc(protocol_share_perc)
        self.protocol_share_perc = protocol_share_perc
        self.protocol_fee_collector = protocol_fee_collector

    # Fee computations

    def compute_deviation_ratio(self, perp_tvl, vault_tvl, senior_tr):
        """
        Computes the deviation ratio from the system's tvls.

        Args:
            perp_tvl: Value held by perp
            vault_tvl: Value held by the vault
            senior_tr: Senior tranche ratio of the deposit bond, in parts of 1000

        Returns:
            Fixed-point deviation ratio
        """
        if perp_tvl == 0:
            return MAX_DEVIATION_RATIO
        if senior_tr <= 0 or senior_tr >= TRANCHE_RATIO_GRANULARITY:
            raise UnacceptableParams(f"Invalid senior tranche ratio {senior_tr}")

        subscription = mul_div(vault_tvl, senior_tr, TRANCHE_RATIO_GRANULARITY - senior_tr)
        subscription_ratio = mul_div(subscription, ONE, perp_tvl)
        return mul_div(subscription_ratio, ONE, self.target_subscription_ratio)

    def compute_perp_mint_fee_perc(self, dr):
        return self.perp_mint_fee_perc if dr <= ONE else 0

    def compute_perp_burn_fee_perc(self, dr):
        return self.perp_burn_fee_perc if dr > ONE else 0

    def compute_perp_rollover_fee_perc(self, dr):
        """Signed rollover fee; zero at dr = 1."""
        params = self.perp_rollover_fee
        return sigmoid(dr, params.lower, params.upper, params.growth, ONE)

    def compute_vault_mint_fee_perc(self):
        return self.vault_mint_fee_perc

    def compute_vault_burn_fee_perc(self):
        return self.vault_burn_fee_perc

    def compute_meld_fee_perc(self, time_to_maturity, duration):
        """
        Meld fee, decaying linearly from max_meld_fee_perc at issue to zero
        at maturity.
        """
        if duration <= 0 or time_to_maturity <= 0:
            return 0
        return mul_div(self.max_meld_fee_perc, min(time_to_maturity, duration), duration)

    def compute_underlying_to_perp_swap_fee_percs(self, dr):
        """
        Fees for swapping underlying into perps through the vault, given the
        deviation ratio after the swap.

        Returns:
            (perp_fee_perc, vault_fee_perc). Swaps that would leave the
            system at or below dr = 1 are charged 100%.
        """
        if dr <= ONE:
            return 0, ONE
        return 0, self.vault_underlying_to_perp_swap_fee_perc

    def compute_perp_to_underlying_swap_fee_percs(self, dr):
        """(perp_fee_perc, vault_fee_perc) for swapping perps into underlying."""
        return self.compute_perp_burn_fee_perc(dr), self.vault_perp_to_underlying_swap_fee_perc

    def compute_dr_norm_senior_tr(self, senior_tr):
        """
        Share of fresh underlying that belongs in perp so that splitting it
        between perp and the vault leaves dr unchanged at 1.
        """
        if senior_tr <= 0 or senior_tr >= TRANCHE_RATIO_GRANULARITY:
            raise UnacceptableParams(f"Invalid senior tranche ratio {senior_tr}")
        junior_tr = TRANCHE_RATIO_GRANULARITY - senior_tr
        return mul_div(
            senior_tr * ONE,
            ONE,
            senior_tr * ONE + junior_tr * self.target_subscription_ratio,
        )

    def compute_rebalance_amount(self, perp_tvl, vault_tvl, senior_tr, perp_supply=None):
        """
        Signed value to move between perp and the vault.

        Positive means value flows from the vault into perp (perp enrichment),
        negative means value flows from perp to the vault (perp debasement).
        Nothing moves while dr sits inside the equilibrium band. Outside it,
        a 1/rebalance_lag share of the gap to dr = 1 is moved, capped at
        max_rebalance_perc of perp's tvl.

        Args:
            perp_tvl: Value held by perp
            vault_tvl: Value held by the vault
            senior_tr: Senior tranche ratio of the deposit bond
            perp_supply: Perp supply; nothing moves when it is zero

        Returns:
            Signed rebalance amount
        """
        if perp_tvl == 0 or perp_supply == 0:
            return 0

        dr = self.compute_deviation_ratio(perp_tvl, vault_tvl, senior_tr)
        lower, upper = self.equilibrium_dr
        if lower <= dr <= upper:
            return 0

        # perp tvl at which dr = 1 once the value has moved
        system_tvl = perp_tvl + vault_tvl
        junior_tr = TRANCHE_RATIO_GRANULARITY - senior_tr
        target_perp_tvl = mul_div(
            system_tvl * senior_tr,
            ONE,
            senior_tr * ONE + junior_tr * self.target_subscription_ratio,
        )

        gap = target_perp_tvl - perp_tvl
        amount = abs(gap) // self.rebalance_lag
        amount = clip(amount, 0, mul_div(perp_tvl, self.max_rebalance_perc, ONE))

        logger.debug(
            "dr=%d target_perp_tvl=%d perp_tvl=%d rebalance=%d",
            dr, target_perp_tvl, perp_tvl, amount if gap > 0 else -amount,
        )
        return amount if gap > 0 else -amount
