"""
Rollover Vault Model for the SPOT protocol.

This module simulates the RolloverVault contract, the liquidity provider
that keeps perp's reserve fresh. Depositors put underlying in and get vault
notes back. The vault then:

1. Deploys: tranches its idle underlying through perp's deposit bond and
   rolls the senior slice into perp in exchange for stale reserve assets
2. Recovers: redeems matured tranches (and immature tranche sets it holds
   in full ratio) back into underlying
3. Melds: lets users redeem a deployed bond early by supplying some tranche
   classes while the vault supplies the rest
4. Swaps: sells perps for underlying and buys them back, charging the
   fee policy's swap fees
5. Pairs: mints and redeems perps and notes together without fees
6. Rebalances: periodically moves value between perp and the vault, as
   directed by the fee policy, and mints the protocol's share

The vault's own holdings (underlying plus every deployed tranche) live in
an AssetRegistry, just like perp's reserve.
"""

import logging
import sys

import valuation
from asset_registry import AssetRegistry
from bond_model import Tranche, compute_redeemable_tranche_amounts, compute_tranche_collateral
from errors import (
    InsufficientBalance,
    InsufficientDeployment,
    InsufficientLiquidity,
    InvalidBond,
    LastRebalanceTooRecent,
    Paused,
    UnacceptableDeployment,
    UnacceptableParams,
    UnacceptableSwap,
    UnauthorizedCall,
    UnexpectedAsset,
    ValuelessAssets,
    require_non_negative,
)
from fixed_point import ONE, TRANCHE_RATIO_GRANULARITY, Rounding, mul_div
from ledger import Stateful, atomic
from perpetual_tranche import TokenAmount
from tokens import Token

logger = logging.getLogger(__name__)

# Notes minted per unit of underlying on the first deposit
INITIAL_RATE = 10 ** 6

DEFAULT_MIN_DEPLOYMENT_AMT = 0
DEFAULT_REBALANCE_FREQ_SEC = 24 * 60 * 60

# Last rebalance timestamp while rebalancing is paused
REBALANCE_PAUSED_TIMESTAMP = sys.maxsize


class RolloverVault(Stateful):
    """
    Simulates the RolloverVault contract.
    """

    _state_fields = ("last_rebalance_timestamp", "paused")

    def __init__(
        self,
        ledger,
        address,
        perp,
        name="Staked Ampleforth",
        symbol="stAMPL",
        owner="owner",
        keeper=None,
        min_deployment_amt=DEFAULT_MIN_DEPLOYMENT_AMT,
        reserved_underlying_bal=0,
        rebalance_freq_sec=DEFAULT_REBALANCE_FREQ_SEC,
    ):
        self.ledger = ledger
        self.address = address
        self.perp = perp
        self.underlying = perp.underlying

        # Roles
        self.owner = owner
        self.keeper = keeper or owner

        # Vault notes
        self.notes = Token(ledger, name, symbol, self.underlying.decimals)

        # Underlying plus every deployed tranche
        self.assets = AssetRegistry(ledger, address, self.underlying, self._is_recognized)

        # Configuration
        if rebalance_freq_sec <= 0:
            raise UnacceptableParams("Rebalance frequency must be positive")
        self.min_deployment_amt = min_deployment_amt
        self.reserved_underlying_bal = reserved_underlying_bal
        self.rebalance_freq_sec = rebalance_freq_sec

        self.last_rebalance_timestamp = ledger.current_time
        self.paused = False
        self._entered = False

        ledger.track(self)

    # ------------------------------------------------------------------
    # Access control and configuration
    # ------------------------------------------------------------------

    def _only_owner(self, caller):
        if caller != self.owner:
            raise UnauthorizedCall(f"{self.address}: {caller} is not the owner")

    def _only_keeper(self, caller):
        if caller != self.keeper:
            raise UnauthorizedCall(f"{self.address}: {caller} is not the keeper")

    def _require_not_paused(self):
        if self.paused:
            raise Paused(f"{self.address} is paused")

    def transfer_ownership(self, caller, new_owner):
        self._only_owner(caller)
        self.owner = new_owner

    def update_keeper(self, caller, keeper):
        self._only_owner(caller)
        self.keeper = keeper

    def update_min_deployment_amt(self, caller, amount):
        self._only_owner(caller)
        self.min_deployment_amt = amount

    def update_reserved_underlying_bal(self, caller, amount):
        self._only_owner(caller)
        self.reserved_underlying_bal = amount

    def update_rebalance_freq_sec(self, caller, seconds):
        self._only_owner(caller)
        if seconds <= 0:
            raise UnacceptableParams("Rebalance frequency must be positive")
        self.rebalance_freq_sec = seconds

    def pause(self, caller):
        self._only_keeper(caller)
        self.paused = True
        self.ledger.emit(self.address, "Paused", caller=caller)

    def unpause(self, caller):
        self._only_keeper(caller)
        self.paused = False
        self.ledger.emit(self.address, "Unpaused", caller=caller)

    def pause_rebalance(self, caller):
        """Stops rebalancing until unpause_rebalance."""
        self._only_keeper(caller)
        self.last_rebalance_timestamp = REBALANCE_PAUSED_TIMESTAMP

    def unpause_rebalance(self, caller):
        """Resumes rebalancing, immediately eligible."""
        self._only_keeper(caller)
        self.last_rebalance_timestamp = self.ledger.current_time - self.rebalance_freq_sec

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def fee_policy(self):
        return self.perp.fee_policy

    @property
    def pricing_strategy(self):
        return self.perp.pricing_strategy

    def _is_recognized(self, asset):
        if not isinstance(asset, Tranche):
            return False
        return asset.bond.collateral_token is self.underlying and asset.bond.index_of(asset) >= 0

    def get_vault_assets(self):
        """Underlying first, then deployed assets in registration order."""
        return list(self.assets)

    def deployed_assets(self):
        return [a for a in self.assets if a is not self.underlying]

    def deployed_count(self):
        return len(self.assets) - 1

    def is_deployed_bond(self, bond):
        return any(a.bond is bond for a in self.deployed_assets())

    def get_asset_value(self, asset):
        return valuation.value_of(self.assets, asset, self.pricing_strategy)

    def get_tvl(self):
        return valuation.total_value(self.assets, self.pricing_strategy)

    def usable_underlying(self):
        balance = self.assets.balance_of(self.underlying)
        return max(balance - self.reserved_underlying_bal, 0)

    def compute_mint_amt(self, underlying_amt):
        """Notes minted for depositing underlying_amt, net of fees."""
        notes = self._notes_for(underlying_amt)
        fee_perc = self.fee_policy.compute_vault_mint_fee_perc()
        return mul_div(notes, ONE - fee_perc, ONE)

    def _notes_for(self, underlying_amt):
        if underlying_amt == 0:
            return 0
        supply = self.notes.total_supply
        if supply == 0:
            return underlying_amt * INITIAL_RATE
        tvl = self.get_tvl()
        if tvl == 0:
            return 0
        return mul_div(underlying_amt, supply, tvl)

    def compute_redemption_amts(self, note_amt):
        """Vault slice paid out for burning note_amt, net of fees."""
        return self._redemption_slice(note_amt, self.fee_policy.compute_vault_burn_fee_perc())

    def _redemption_slice(self, note_amt, fee_perc):
        supply = self.notes.total_supply
        if note_amt == 0 or supply == 0:
            return [TokenAmount(asset, 0) for asset in self.assets]
        amounts = []
        for asset in self.assets:
            amt = mul_div(self.assets.balance_of(asset), note_amt, supply)
            amounts.append(TokenAmount(asset, mul_div(amt, ONE - fee_perc, ONE)))
        return amounts

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    @atomic
    def deposit(self, caller, underlying_amt):
        """
        Deposits underlying and mints notes.

        Returns:
            Amount of notes minted
        """
        self._require_not_paused()
        require_non_negative(underlying_amt)

        notes = self.compute_mint_amt(underlying_amt)
        if underlying_amt == 0 or notes == 0:
            return 0

        self.underlying.transfer(caller, self.address, underlying_amt)
        self.notes.mint(caller, notes)

        self.ledger.emit(self.address, "Deposited", caller=caller, amount=underlying_amt, notes=notes)
        return notes

    @atomic
    def redeem(self, caller, note_amt):
        """
        Burns notes for a proportional slice of every vault asset.

        Returns:
            List of TokenAmount paid out (nonzero only)
        """
        self._require_not_paused()
        require_non_negative(note_amt)

        if note_amt == 0:
            return []
        balance = self.notes.balance_of(caller)
        if note_amt > balance:
            raise InsufficientBalance(f"{self.address}: {caller} holds {balance} notes, redeeming {note_amt}")

        token_outs = self.compute_redemption_amts(note_amt)
        self.notes.burn(caller, note_amt)

        paid = []
        for out in token_outs:
            if out.amount > 0:
                out.token.transfer(self.address, caller, out.amount)
                paid.append(out)
            self.assets.sync(out.token)

        self.ledger.emit(self.address, "Redeemed", caller=caller, notes=note_amt)
        return paid

    # ------------------------------------------------------------------
    # Deploy and recover
    # ------------------------------------------------------------------

    @atomic
    def deploy(self, caller=None):
        """
        Tranches the usable underlying and rolls the senior slice into perp.

        Returns:
            Amount of senior tranches rolled into perp

        Raises:
            Paused: If the vault is paused
            InsufficientDeployment: If usable underlying is below the minimum
            UnacceptableDeployment: If perp has no acceptable deposit tranche
        """
        self._require_not_paused()
        return self._deploy()

    def _deploy(self):
        usable = self.usable_underlying()
        if usable == 0 or usable < self.min_deployment_amt:
            raise InsufficientDeployment(f"{self.address}: usable underlying {usable} below minimum {self.min_deployment_amt}")

        self.perp.update_state(self.address)
        bond = self.perp.get_deposit_bond()
        deposit_tranche = self.perp.get_deposit_tranche()
        if bond is None or not self.perp.is_deposit_tranche(deposit_tranche):
            raise UnacceptableDeployment(f"{self.address}: no acceptable deposit tranche")

        # Tranche all usable underlying
        bond.deposit(self.address, usable)
        for tranche, _ in bond.tranches:
            self.assets.sync(tranche)
        self.assets.sync(self.underlying)

        rolled = self._rollover(deposit_tranche)

        self.ledger.emit(self.address, "Deployed", bond=bond.address, underlying=usable, rolled=rolled)
        logger.info("%s deployed %d underlying, rolled %d into perp", self.address, usable, rolled)
        return rolled

    def _rollover(self, tranche_in):
        """
        Rolls tranche_in into perp for every rollable reserve asset, most
        recently registered first, until either side runs out.
        """
        rolled = 0
        for token_out in self.perp.reserve.most_recent_first():
            if tranche_in.balance_of(self.address) == 0:
                break
            if not self.perp.is_acceptable_rollover(tranche_in, token_out):
                logger.debug("%s skipping %r, not rollable", self.address, token_out)
                continue

            r = self.perp.rollover(self.address, tranche_in, token_out, tranche_in.balance_of(self.address))
            if r.tranche_in_amt == 0:
                continue

            rolled += r.tranche_in_amt
            self.assets.sync(token_out)
            self.assets.sync(tranche_in)
        return rolled

    @atomic
    def recover(self, caller=None, token=None):
        """
        Redeems deployed tranches back into underlying.

        Matured tranches are redeemed in full. Immature bonds are redeemed
        for as many complete tranche sets as the vault holds. With a token,
        only that deployed asset is recovered.

        Raises:
            Paused: If the vault is paused
            UnexpectedAsset: If token is given and is not a deployed asset
        """
        self._require_not_paused()
        if token is None:
            self._recover_all()
            return
        if token is self.underlying or token not in self.assets:
            raise UnexpectedAsset(f"{self.address}: {token!r} is not deployed")
        self._recover_asset(token)

    def _recover_all(self):
        for asset in self.deployed_assets():
            if asset not in self.assets:
                continue
            self._recover_asset(asset)

    def _recover_asset(self, tranche):
        bond = tranche.bond
        if bond.is_mature or self.ledger.current_time >= bond.maturity_date:
            bond.mature(self.address)
            balance = self.assets.balance_of(tranche)
            if balance > 0:
                bond.redeem_mature(self.address, tranche, balance)
            self.assets.sync(tranche)
            self.assets.sync(self.underlying)
            return
        self._redeem_immature(bond)

    def _redeem_immature(self, bond):
        """Redeems the largest complete tranche set the vault holds."""
        balances = [t.balance_of(self.address) for t, _ in bond.tranches]
        amounts = compute_redeemable_tranche_amounts(bond, balances)
        if sum(amounts) == 0:
            return 0

        collateral_out = bond.redeem(self.address, amounts)
        for tranche, _ in bond.tranches:
            self.assets.sync(tranche)
        self.assets.sync(self.underlying)
        return collateral_out

    @atomic
    def recover_and_redeploy(self, caller=None):
        """Recovers every deployed asset, then deploys."""
        self._require_not_paused()
        self._recover_all()
        return self._deploy()

    # ------------------------------------------------------------------
    # Meld
    # ------------------------------------------------------------------

    def _require_valid_meld_bond(self, bond, amounts):
        if bond.collateral_token is not self.underlying:
            raise InvalidBond(f"{bond.address}: collateral is not the underlying")
        if bond.tranche_count < 2:
            raise InvalidBond(f"{bond.address}: needs at least two tranches")
        if len(amounts) != bond.tranche_count:
            raise InvalidBond(f"{bond.address}: expected {bond.tranche_count} amounts")
        if bond.is_mature or self.ledger.current_time >= bond.maturity_date:
            raise InvalidBond(f"{bond.address}: mature")
        if not self.is_deployed_bond(bond):
            raise InvalidBond(f"{bond.address}: not deployed")

    def compute_tranche_unit_values(self, bond):
        """Waterfall collateral per tranche unit, as fixed point, per class."""
        values = []
        for tranche, collateral in compute_tranche_collateral(bond):
            supply = tranche.total_supply
            values.append(mul_div(collateral, ONE, supply) if supply > 0 else 0)
        return values

    @atomic
    def meld(self, caller, bond, amounts):
        """
        Redeems a deployed bond early, combining the caller's tranches with
        the vault's.

        The largest complete tranche set is formed from the caller's amounts
        first and the vault's holdings second. The set is redeemed for
        underlying. The caller is paid the waterfall value of the tranches
        they contributed, less a meld fee that decays to zero at maturity;
        the rest stays in the vault.

        Args:
            caller: Address supplying tranches
            bond: A bond the vault has deployed into
            amounts: Tranche amounts offered, one per class

        Returns:
            Underlying paid to the caller

        Raises:
            Paused: If the vault is paused
            InvalidBond: If the bond is not deployed, is mature, or is degenerate
            ValuelessAssets: If nothing can be redeemed
            InsufficientBalance: If the caller lacks an offered amount
            InvalidAmount: If an offered amount is negative
        """
        self._require_not_paused()
        self._require_valid_meld_bond(bond, amounts)
        require_non_negative(*amounts)

        if all(amt == 0 for amt in amounts):
            raise ValuelessAssets(f"{self.address}: nothing offered")

        for (tranche, _), amt in zip(bond.tranches, amounts):
            if tranche.balance_of(caller) < amt:
                raise InsufficientBalance(f"{self.address}: {caller} lacks {amt} of {tranche!r}")

        vault_balances = [t.balance_of(self.address) for t, _ in bond.tranches]
        available = [a + v for a, v in zip(amounts, vault_balances)]
        redeemable = compute_redeemable_tranche_amounts(bond, available)
        if sum(redeemable) == 0:
            raise ValuelessAssets(f"{self.address}: no complete tranche set")

        # Caller's tranches are used first
        used = [min(a, r) for a, r in zip(amounts, redeemable)]
        if sum(used) == 0:
            raise ValuelessAssets(f"{self.address}: caller tranches not needed")

        unit_values = self.compute_tranche_unit_values(bond)
        caller_value = sum(mul_div(u, v, ONE) for u, v in zip(used, unit_values))

        for (tranche, _), amt in zip(bond.tranches, used):
            tranche.transfer(caller, self.address, amt)

        underlying_out = bond.redeem(self.address, redeemable)
        caller_value = min(caller_value, underlying_out)

        fee_perc = self.fee_policy.compute_meld_fee_perc(bond.time_to_maturity(), bond.duration)
        payout = mul_div(caller_value, ONE - fee_perc, ONE)
        self.underlying.transfer(self.address, caller, payout)

        for tranche, _ in bond.tranches:
            self.assets.sync(tranche)
        self.assets.sync(self.underlying)

        self.ledger.emit(
            self.address, "Melded", caller=caller, bond=bond.address,
            tranche_amts=used, underlying_out=underlying_out, payout=payout,
        )
        return payout

    # ------------------------------------------------------------------
    # Swaps
    # ------------------------------------------------------------------

    def _system_state(self):
        return self.perp.total_supply, self.perp.get_tvl(), self.get_tvl(), self.perp.get_senior_tr()

    def compute_underlying_to_perp_swap_amt(self, underlying_amt_in):
        """
        Perps paid out for swapping in underlying_amt_in, net of fees.

        Fees are priced off the deviation ratio once the swapped value has
        moved into perp.

        Returns:
            (perp_amt_out, perp_fee_amt), where perp_fee_amt is minted and
            burnt on perp's behalf
        """
        perp_supply, perp_tvl, vault_tvl, senior_tr = self._system_state()
        if underlying_amt_in == 0 or perp_supply == 0 or perp_tvl == 0 or senior_tr == 0:
            return 0, 0

        perp_amt_out = mul_div(underlying_amt_in, perp_supply, perp_tvl)
        dr = self.fee_policy.compute_deviation_ratio(perp_tvl + underlying_amt_in, vault_tvl, senior_tr)
        perp_fee_perc, vault_fee_perc = self.fee_policy.compute_underlying_to_perp_swap_fee_percs(dr)

        perp_fee_amt = mul_div(perp_amt_out, perp_fee_perc, ONE, Rounding.UP)
        total_fee_perc = min(perp_fee_perc + vault_fee_perc, ONE)
        return mul_div(perp_amt_out, ONE - total_fee_perc, ONE), perp_fee_amt

    def compute_perp_to_underlying_swap_amt(self, perp_amt_in):
        """
        Underlying paid out for swapping in perp_amt_in, net of fees.

        Returns:
            (underlying_amt_out, perp_fee_amt), where perp_fee_amt is the
            part of perp_amt_in burnt before redemption
        """
        perp_supply, perp_tvl, vault_tvl, senior_tr = self._system_state()
        if perp_amt_in == 0 or perp_supply == 0 or senior_tr == 0:
            return 0, 0

        underlying_amt_out = mul_div(perp_amt_in, perp_tvl, perp_supply)
        dr = self.fee_policy.compute_deviation_ratio(perp_tvl - underlying_amt_out, vault_tvl, senior_tr)
        perp_fee_perc, vault_fee_perc = self.fee_policy.compute_perp_to_underlying_swap_fee_percs(dr)

        perp_fee_amt = mul_div(perp_amt_in, perp_fee_perc, ONE, Rounding.UP)
        total_fee_perc = min(perp_fee_perc + vault_fee_perc, ONE)
        return mul_div(underlying_amt_out, ONE - total_fee_perc, ONE), perp_fee_amt

    @atomic
    def swap_underlying_for_perps(self, caller, underlying_amt_in):
        """
        Sells perps to the caller for underlying.

        The vault tranches its own underlying through perp's deposit bond,
        mints perps with the senior slice and keeps the junior slices.

        Returns:
            Amount of perps paid out

        Raises:
            Paused: If the vault is paused
            InvalidAmount: If underlying_amt_in is negative
            UnacceptableSwap: If nothing would be paid out
            InsufficientLiquidity: If the vault ends below its reserved underlying
        """
        self._require_not_paused()
        require_non_negative(underlying_amt_in)
        self.perp.update_state(self.address)

        perp_amt_out, perp_fee_amt = self.compute_underlying_to_perp_swap_amt(underlying_amt_in)
        if underlying_amt_in == 0 or perp_amt_out == 0:
            raise UnacceptableSwap(f"{self.address}: swapping {underlying_amt_in} underlying pays nothing")

        self.underlying.transfer(caller, self.address, underlying_amt_in)
        minted = self._tranche_and_mint_perps(perp_amt_out + perp_fee_amt)

        # perp's fee and any rounding surplus are burnt
        self.perp.burn(self.address, minted - perp_amt_out)
        self.perp.transfer(self.address, caller, perp_amt_out)

        self._enforce_liquidity()
        self.ledger.emit(
            self.address, "SwappedUnderlyingForPerps", caller=caller,
            underlying_in=underlying_amt_in, perp_out=perp_amt_out, perp_fee=perp_fee_amt,
        )
        return perp_amt_out

    @atomic
    def swap_perps_for_underlying(self, caller, perp_amt_in):
        """
        Buys perps from the caller for underlying.

        The vault burns perp's fee share, redeems the rest of the perps for
        reserve tranches, and melds whatever complete tranche sets it then
        holds back into underlying.

        Returns:
            Amount of underlying paid out

        Raises:
            Paused: If the vault is paused
            InvalidAmount: If perp_amt_in is negative
            UnacceptableSwap: If nothing would be paid out
            InsufficientLiquidity: If the vault ends below its reserved underlying
        """
        self._require_not_paused()
        require_non_negative(perp_amt_in)
        self.perp.update_state(self.address)

        underlying_amt_out, perp_fee_amt = self.compute_perp_to_underlying_swap_amt(perp_amt_in)
        if perp_amt_in == 0 or underlying_amt_out == 0:
            raise UnacceptableSwap(f"{self.address}: swapping {perp_amt_in} perps pays nothing")

        self.perp.transfer(caller, self.address, perp_amt_in)
        self.perp.burn(self.address, perp_fee_amt)
        received = self.perp.redeem(self.address, perp_amt_in - perp_fee_amt)
        self._absorb_perp_assets(received)

        self.underlying.transfer(self.address, caller, underlying_amt_out)
        self.assets.sync(self.underlying)

        self._enforce_liquidity()
        self.ledger.emit(
            self.address, "SwappedPerpsForUnderlying", caller=caller,
            perp_in=perp_amt_in, underlying_out=underlying_amt_out, perp_fee=perp_fee_amt,
        )
        return underlying_amt_out

    def _perp_value(self, perp_amt):
        """Value backing perp_amt perps, rounded up."""
        supply = self.perp.total_supply
        if supply == 0:
            return perp_amt
        return mul_div(perp_amt, self.perp.get_tvl(), supply, Rounding.UP)

    def _tranche_and_mint_perps(self, perp_amt):
        """
        Tranches just enough underlying to mint at least perp_amt perps and
        mints them to the vault. Returns the amount minted.
        """
        if perp_amt == 0:
            return 0
        bond = self.perp.get_deposit_bond()
        senior = self.perp.get_deposit_tranche()
        if bond is None or not self.perp.is_deposit_tranche(senior):
            raise UnacceptableDeployment(f"{self.address}: no acceptable deposit tranche")

        price = self.perp.compute_price(senior)
        if price == 0:
            raise UnacceptableDeployment(f"{self.address}: deposit tranche is valueless")
        senior_amt = mul_div(self._perp_value(perp_amt), ONE, price, Rounding.UP)

        # Collateral per unit of debt scales the deposit once the bond is funded
        senior_collateral = senior_amt
        collateral, debt = bond.collateral_balance(), bond.total_debt()
        if collateral > 0 and debt > 0:
            senior_collateral = mul_div(senior_amt, collateral, debt, Rounding.UP)
        underlying_in = mul_div(senior_collateral, TRANCHE_RATIO_GRANULARITY, bond.tranches[0][1], Rounding.UP)

        bond.deposit(self.address, underlying_in)
        minted = self.perp.deposit(self.address, senior, senior_amt)

        for tranche, _ in bond.tranches:
            self.assets.sync(tranche)
        self.assets.sync(self.underlying)
        return minted

    def _enforce_liquidity(self):
        balance = self.assets.balance_of(self.underlying)
        if balance < self.reserved_underlying_bal:
            raise InsufficientLiquidity(
                f"{self.address}: underlying {balance} below reserve {self.reserved_underlying_bal}"
            )

    # ------------------------------------------------------------------
    # Paired mint and redeem
    # ------------------------------------------------------------------

    def compute_mint2_amts(self, underlying_amt_in):
        """
        Perps and notes minted for underlying_amt_in, split between perp and
        the vault so that the deviation ratio is left where it is at 1.

        Returns:
            (perp_amt, note_amt)
        """
        senior_tr = self.perp.get_senior_tr()
        if underlying_amt_in == 0 or senior_tr == 0:
            return 0, 0

        into_perp = mul_div(underlying_amt_in, self.fee_policy.compute_dr_norm_senior_tr(senior_tr), ONE)
        into_vault = underlying_amt_in - into_perp

        perp_supply = self.perp.total_supply
        perp_amt = into_perp
        if perp_supply > 0:
            perp_tvl = self.perp.get_tvl()
            perp_amt = mul_div(into_perp, perp_supply, perp_tvl) if perp_tvl > 0 else 0
        return perp_amt, self._notes_for(into_vault)

    @atomic
    def mint2(self, caller, underlying_amt_in):
        """
        Mints perps and notes together from underlying, fee-free.

        Returns:
            (perp_amt, note_amt) minted to the caller

        Raises:
            Paused: If the vault is paused
            InvalidAmount: If underlying_amt_in is negative
        """
        self._require_not_paused()
        require_non_negative(underlying_amt_in)
        self.perp.update_state(self.address)

        perp_amt, note_amt = self.compute_mint2_amts(underlying_amt_in)
        if perp_amt == 0 and note_amt == 0:
            return 0, 0

        self.underlying.transfer(caller, self.address, underlying_amt_in)
        minted = self._tranche_and_mint_perps(perp_amt)
        self.perp.burn(self.address, minted - perp_amt)
        self.perp.transfer(self.address, caller, perp_amt)
        self.notes.mint(caller, note_amt)
        self.assets.sync(self.underlying)

        self.ledger.emit(
            self.address, "Minted2", caller=caller,
            underlying_in=underlying_amt_in, perp_amt=perp_amt, note_amt=note_amt,
        )
        return perp_amt, note_amt

    def compute_redeem2_amts(self, perp_amt, note_amt):
        """
        Burns perps and notes as the same share of their supplies.

        The larger side is scaled down to the smaller side's share.

        Returns:
            (perp_amt, note_amt, outs) where outs lists the TokenAmount paid
            out, underlying first, zero amounts dropped
        """
        perp_supply = self.perp.total_supply
        note_supply = self.notes.total_supply
        if perp_supply == 0 or note_supply == 0:
            return 0, 0, []

        perp_amt_used = min(perp_amt, mul_div(note_amt, perp_supply, note_supply))
        note_amt_used = min(note_amt, mul_div(perp_amt, note_supply, perp_supply))

        outs = {self.underlying: 0}
        slices = (
            self.perp.compute_redemption_amts(perp_amt_used, self.address)
            + self._redemption_slice(note_amt_used, 0)
        )
        for out in slices:
            outs[out.token] = outs.get(out.token, 0) + out.amount
        return (
            perp_amt_used,
            note_amt_used,
            [TokenAmount(token, amt) for token, amt in outs.items() if amt > 0],
        )

    @atomic
    def redeem2(self, caller, perp_amt, note_amt):
        """
        Redeems perps and notes together, fee-free, for a slice of both perp's
        reserve and the vault's assets.

        Returns:
            (perp_amt, note_amt, outs) as realized

        Raises:
            Paused: If the vault is paused
            InvalidAmount: If an amount is negative
            InsufficientBalance: If the caller lacks the perps or notes burnt
        """
        self._require_not_paused()
        require_non_negative(perp_amt, note_amt)
        self.perp.update_state(self.address)

        perp_amt_used, note_amt_used, outs = self.compute_redeem2_amts(perp_amt, note_amt)
        if perp_amt_used == 0 and note_amt_used == 0:
            return 0, 0, []

        vault_outs = self._redemption_slice(note_amt_used, 0)
        self.notes.burn(caller, note_amt_used)

        self.perp.transfer(caller, self.address, perp_amt_used)
        perp_outs = self.perp.redeem(self.address, perp_amt_used)

        for out in perp_outs:
            out.token.transfer(self.address, caller, out.amount)
        for out in vault_outs:
            if out.amount > 0:
                out.token.transfer(self.address, caller, out.amount)
            self.assets.sync(out.token)

        self.ledger.emit(
            self.address, "Redeemed2", caller=caller,
            perp_amt=perp_amt_used, note_amt=note_amt_used,
            payouts={repr(o.token): o.amount for o in outs},
        )
        return perp_amt_used, note_amt_used, outs

    # ------------------------------------------------------------------
    # Rebalance
    # ------------------------------------------------------------------

    @atomic
    def rebalance(self, caller=None):
        """
        Moves value between perp and the vault as directed by the fee policy,
        then mints the protocol's share.

        Returns:
            Signed value moved; positive means perp was enriched

        Raises:
            Paused: If the vault is paused
            LastRebalanceTooRecent: If the cooldown has not elapsed or
                rebalancing is paused
        """
        self._require_not_paused()
        now = self.ledger.current_time
        if now - self.last_rebalance_timestamp < self.rebalance_freq_sec:
            raise LastRebalanceTooRecent(f"{self.address}: last rebalance at {self.last_rebalance_timestamp}")

        self.perp.update_state(self.address)

        perp_tvl = self.perp.get_tvl()
        vault_tvl = self.get_tvl()
        senior_tr = self.perp.get_senior_tr()

        amount = 0
        if senior_tr > 0:
            amount = self.fee_policy.compute_rebalance_amount(
                perp_tvl, vault_tvl, senior_tr, self.perp.total_supply,
            )

        moved = 0
        if amount > 0:
            moved = self._enrich_perp(amount)
        elif amount < 0:
            moved = -self._debase_perp(-amount)

        self._mint_protocol_fees(abs(moved))

        self.last_rebalance_timestamp = now
        self.ledger.emit(self.address, "Rebalanced", requested=amount, moved=moved)
        logger.info("%s rebalanced: requested %d, moved %d", self.address, amount, moved)
        return moved

    def _enrich_perp(self, value):
        """
        Tranches underlying so the senior slice is worth value and sends it
        to perp. Returns the value sent.
        """
        bond = self.perp.get_deposit_bond()
        senior = self.perp.get_deposit_tranche()
        if bond is None or not self.perp.is_deposit_tranche(senior):
            logger.debug("%s cannot enrich perp, no deposit tranche", self.address)
            return 0

        senior_ratio = bond.tranches[0][1]
        underlying_in = min(
            mul_div(value, TRANCHE_RATIO_GRANULARITY, senior_ratio, Rounding.UP),
            self.usable_underlying(),
        )
        if underlying_in == 0:
            return 0

        tranche_amts = bond.deposit(self.address, underlying_in)

        price = self.perp.compute_price(senior)
        senior_amt = min(tranche_amts[0], mul_div(value, ONE, price) if price > 0 else 0)
        if senior_amt > 0:
            senior.transfer(self.address, self.perp.address, senior_amt)
            self.perp.sync(self.address, senior)

        for tranche, _ in bond.tranches:
            self.assets.sync(tranche)
        self.assets.sync(self.underlying)

        return mul_div(senior_amt, price, ONE)

    def _debase_perp(self, value):
        """
        Pulls a proportional slice of perp's reserve worth value into the
        vault, then melds what it can back into underlying. Returns the
        value received.
        """
        received = self.perp.rebalance_to_vault(self.address, value)
        return self._absorb_perp_assets(received)

    def _absorb_perp_assets(self, received):
        """
        Registers assets received from perp and redeems every complete
        immature tranche set among them. Returns their value on receipt.
        """
        moved = 0
        bonds = []
        for out in received:
            moved += mul_div(out.amount, self.perp.compute_price(out.token), ONE)
            self.assets.sync(out.token)
            if isinstance(out.token, Tranche) and out.token.bond not in bonds:
                bonds.append(out.token.bond)

        for bond in bonds:
            if bond.is_mature or self.ledger.current_time >= bond.maturity_date:
                continue
            self._redeem_immature(bond)

        return moved

    def _mint_protocol_fees(self, moved):
        """Mints perps and notes worth the protocol's share of moved value."""
        perc = self.fee_policy.protocol_share_perc
        if perc == 0 or moved == 0:
            return

        fee_value = mul_div(moved, perc, ONE)
        perp_tvl = self.perp.get_tvl()
        vault_tvl = self.get_tvl()
        if fee_value == 0 or perp_tvl + vault_tvl == 0:
            return

        perp_fee_value = mul_div(fee_value, perp_tvl, perp_tvl + vault_tvl)
        vault_fee_value = fee_value - perp_fee_value

        self.perp.mint_protocol_fee(self.address, perp_fee_value)

        supply = self.notes.total_supply
        if vault_fee_value > 0 and supply > 0 and vault_fee_value < vault_tvl:
            minted = mul_div(supply, vault_fee_value, vault_tvl - vault_fee_value)
            collector = self.fee_policy.protocol_fee_collector
            self.notes.mint(collector, minted)
            self.ledger.emit(self.address, "ProtocolFeeMinted", collector=collector, value=vault_fee_value, minted=minted)
