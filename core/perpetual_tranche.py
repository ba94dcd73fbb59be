"""
Perpetual Tranche Model for the SPOT protocol.

This module simulates the PerpetualTranche contract: a perpetual-maturity
claim token (perp) backed by a rotating reserve of bond tranches.

The PerpetualTranche is responsible for:
1. Minting perps against the single accepted deposit tranche
2. Redeeming perps for a proportional slice of every reserve asset
3. Letting the rollover vault swap fresh tranches for stale reserve assets
4. Advancing the deposit bond and retiring matured tranches (update_state)
5. Accepting value transfers from and to the vault during rebalancing

Redemption never consults a price: a holder always gets exactly their share
of the pre-redemption reserve, minus fees and rounding dust. Minting and
rollover do use prices, from the pricing strategy collaborator.
"""

import logging
from dataclasses import dataclass
from typing import Any

import valuation
from bond_model import Tranche
from errors import (
    ExceededMaxMintPerTranche,
    ExceededMaxSupply,
    InsufficientBalance,
    Paused,
    UnacceptableParams,
    UnacceptableRollover,
    UnauthorizedCall,
    UnexpectedAsset,
    require_non_negative,
)
from asset_registry import AssetRegistry
from fixed_point import ONE, mul_div
from ledger import Stateful, atomic
from tokens import Token

logger = logging.getLogger(__name__)

# Tranches are acceptable for the reserve while their time to maturity
# lies in [min, max] seconds (inclusive)
DEFAULT_MIN_TRANCHE_MATURITY_SEC = 1
DEFAULT_MAX_TRANCHE_MATURITY_SEC = 365 * 24 * 60 * 60

# No cap
UNLIMITED = None


@dataclass
class TokenAmount:
    """An amount of a single token."""
    token: Any
    amount: int


@dataclass
class RolloverData:
    """Amounts exchanged in a rollover."""
    token_out_amt: int = 0
    tranche_in_amt: int = 0


class PerpetualTranche(Stateful):
    """
    Simulates the PerpetualTranche contract.
    """

    _state_fields = ("deposit_bond", "minted_per_tranche", "paused")

    def __init__(
        self,
        ledger,
        address,
        underlying,
        bond_issuer,
        fee_policy,
        pricing_strategy,
        name="SPOT",
        symbol="SPOT",
        owner="owner",
        keeper=None,
        min_tranche_maturity_sec=DEFAULT_MIN_TRANCHE_MATURITY_SEC,
        max_tranche_maturity_sec=DEFAULT_MAX_TRANCHE_MATURITY_SEC,
        max_supply=UNLIMITED,
        max_mint_amt_per_tranche=UNLIMITED,
    ):
        self.ledger = ledger
        self.address = address
        self.underlying = underlying

        # Collaborators
        self.bond_issuer = bond_issuer
        self.fee_policy = fee_policy
        self.pricing_strategy = pricing_strategy
        self.vault = None

        # Roles
        self.owner = owner
        self.keeper = keeper or owner

        # Claim shares
        self.token = Token(ledger, name, symbol, underlying.decimals)

        # Reserve of backing assets
        self.reserve = AssetRegistry(ledger, address, underlying, self._is_recognized)

        # Current deposit bond, its senior tranche is the deposit tranche
        self.deposit_bond = None

        # Perps minted against each tranche, never decremented
        self.minted_per_tranche = {}

        self.paused = False
        self._entered = False

        self._validate_maturity_window(min_tranche_maturity_sec, max_tranche_maturity_sec)
        self.min_tranche_maturity_sec = min_tranche_maturity_sec
        self.max_tranche_maturity_sec = max_tranche_maturity_sec
        self.max_supply = max_supply
        self.max_mint_amt_per_tranche = max_mint_amt_per_tranche

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

    def _is_vault(self, caller):
        return self.vault is not None and caller == self.vault.address

    def _only_vault(self, caller):
        if not self._is_vault(caller):
            raise UnauthorizedCall(f"{self.address}: {caller} is not the vault")

    def _require_not_paused(self):
        if self.paused:
            raise Paused(f"{self.address} is paused")

    @staticmethod
    def _validate_maturity_window(min_sec, max_sec):
        if min_sec < 0 or min_sec > max_sec:
            raise UnacceptableParams(f"Invalid tranche maturity window [{min_sec}, {max_sec}]")

    def transfer_ownership(self, caller, new_owner):
        self._only_owner(caller)
        self.owner = new_owner

    def update_keeper(self, caller, keeper):
        self._only_owner(caller)
        self.keeper = keeper

    def update_vault(self, caller, vault):
        self._only_owner(caller)
        if vault is not None and vault.underlying is not self.underlying:
            raise UnacceptableParams("Vault underlying does not match")
        self.vault = vault

    def update_bond_issuer(self, caller, bond_issuer):
        self._only_owner(caller)
        if bond_issuer.collateral_token is not self.underlying:
            raise UnacceptableParams("Bond issuer collateral does not match")
        self.bond_issuer = bond_issuer

    def update_fee_policy(self, caller, fee_policy):
        self._only_owner(caller)
        self.fee_policy = fee_policy

    def update_pricing_strategy(self, caller, pricing_strategy):
        self._only_owner(caller)
        self.pricing_strategy = pricing_strategy

    def update_tolerable_tranche_maturity(self, caller, min_sec, max_sec):
        self._only_owner(caller)
        self._validate_maturity_window(min_sec, max_sec)
        self.min_tranche_maturity_sec = min_sec
        self.max_tranche_maturity_sec = max_sec

    def update_max_supply(self, caller, max_supply):
        self._only_owner(caller)
        self.max_supply = max_supply

    def update_max_mint_amt_per_tranche(self, caller, max_mint_amt):
        self._only_owner(caller)
        self.max_mint_amt_per_tranche = max_mint_amt

    def pause(self, caller):
        self._only_keeper(caller)
        self.paused = True
        self.ledger.emit(self.address, "Paused", caller=caller)

    def unpause(self, caller):
        self._only_keeper(caller)
        self.paused = False
        self.ledger.emit(self.address, "Unpaused", caller=caller)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def total_supply(self):
        return self.token.total_supply

    def balance_of(self, account):
        return self.token.balance_of(account)

    def transfer(self, sender, recipient, amount):
        return self.token.transfer(sender, recipient, amount)

    def get_reserve_tokens(self):
        """Reserve assets, oldest registration first (underlying at index 0)."""
        return list(self.reserve)

    def get_reserve_count(self):
        return len(self.reserve)

    def get_asset_value(self, asset):
        """Value of perp's holding of asset."""
        return valuation.value_of(self.reserve, asset, self.pricing_strategy)

    def get_tvl(self):
        return valuation.total_value(self.reserve, self.pricing_strategy)

    def get_deposit_bond(self):
        return self.deposit_bond

    def get_deposit_tranche(self):
        if self.deposit_bond is None:
            return None
        return self.deposit_bond.tranche_at(0)

    def get_senior_tr(self):
        """Senior tranche ratio of the deposit bond, 0 if there is none."""
        if self.deposit_bond is None:
            return 0
        return self.deposit_bond.tranches[0][1]

    def compute_price(self, asset):
        return valuation.compute_price(self.reserve, asset, self.pricing_strategy)

    def compute_deviation_ratio(self):
        """
        Deviation ratio of the system as seen by the fee policy.

        Without a vault or a deposit bond the system is treated as balanced.
        """
        senior_tr = self.get_senior_tr()
        if self.vault is None or senior_tr == 0:
            return ONE
        return self.fee_policy.compute_deviation_ratio(self.get_tvl(), self.vault.get_tvl(), senior_tr)

    def _is_recognized(self, asset):
        if not isinstance(asset, Tranche):
            return False
        bond = asset.bond
        return (
            bond.collateral_token is self.underlying
            and bond.index_of(asset) >= 0
            and self.bond_issuer.is_instance(bond)
        )

    def _is_acceptable_bond(self, bond):
        if bond.collateral_token is not self.underlying:
            return False
        ttm = bond.maturity_date - self.ledger.current_time
        return self.min_tranche_maturity_sec <= ttm <= self.max_tranche_maturity_sec

    def is_acceptable_for_reserve(self, tranche):
        """
        Whether tranche can be held in the reserve right now: it is a
        recognized tranche whose bond matures inside the tolerable window.
        """
        return self._is_recognized(tranche) and self._is_acceptable_bond(tranche.bond)

    def is_deposit_tranche(self, tranche):
        return (
            self.deposit_bond is not None
            and tranche is self.deposit_bond.tranche_at(0)
            and self.is_acceptable_for_reserve(tranche)
        )

    def is_acceptable_rollover(self, tranche_in, token_out):
        """
        Whether tranche_in may be swapped for token_out.

        The tranche coming in must be the deposit tranche, or a reserve
        tranche that is still acceptable. The token going out must be in the
        reserve and be either the underlying or a tranche that is no longer
        acceptable. The two may not come from the same bond.
        """
        if not isinstance(tranche_in, Tranche):
            return False

        in_acceptable = self.is_deposit_tranche(tranche_in) or (
            tranche_in in self.reserve and self.is_acceptable_for_reserve(tranche_in)
        )
        if not in_acceptable:
            return False

        if token_out not in self.reserve:
            return False

        if token_out is not self.underlying:
            if not isinstance(token_out, Tranche) or self.is_acceptable_for_reserve(token_out):
                return False
            if token_out.bond is tranche_in.bond:
                return False

        return True

    # ------------------------------------------------------------------
    # Previews
    # ------------------------------------------------------------------

    def compute_mint_amt(self, tranche_in, tranche_in_amt, caller=None):
        """
        Perps minted for depositing tranche_in_amt of tranche_in, net of fees.

        The vault mints fee-free. Returns 0 if tranche_in is not the deposit
        tranche.
        """
        if not self.is_deposit_tranche(tranche_in) or tranche_in_amt == 0:
            return 0

        value_in = mul_div(tranche_in_amt, self.compute_price(tranche_in), ONE)
        supply = self.token.total_supply
        if supply == 0:
            mint_amt = value_in
        else:
            tvl = self.get_tvl()
            if tvl == 0:
                return 0
            mint_amt = mul_div(value_in, supply, tvl)

        if self._is_vault(caller):
            return mint_amt
        fee_perc = self.fee_policy.compute_perp_mint_fee_perc(self.compute_deviation_ratio())
        return mul_div(mint_amt, ONE - fee_perc, ONE)

    def compute_redemption_amts(self, perp_amt, caller=None):
        """
        Reserve slice paid out for burning perp_amt, net of fees. The vault
        redeems fee-free.

        Returns:
            List of TokenAmount in reserve order, zero amounts included
        """
        supply = self.token.total_supply
        if perp_amt == 0 or supply == 0:
            return [TokenAmount(asset, 0) for asset in self.reserve]

        fee_perc = 0
        if not self._is_vault(caller):
            fee_perc = self.fee_policy.compute_perp_burn_fee_perc(self.compute_deviation_ratio())
        amounts = []
        for asset in self.reserve:
            amt = mul_div(self.reserve.balance_of(asset), perp_amt, supply)
            amounts.append(TokenAmount(asset, mul_div(amt, ONE - fee_perc, ONE)))
        return amounts

    def compute_rollover_amt(self, tranche_in, token_out, tranche_in_amt_available):
        """
        Amounts exchanged when rolling tranche_in_amt_available of tranche_in
        into the reserve for token_out.

        A positive rollover fee reduces the token_out paid. A negative fee
        reduces the tranche_in charged. If the reserve does not hold enough
        token_out, the payout is capped at the reserve balance and the
        tranche_in charged is scaled down at the same rate, rounding down.

        Returns:
            RolloverData
        """
        if not self.is_acceptable_rollover(tranche_in, token_out) or tranche_in_amt_available == 0:
            return RolloverData()

        price_in = self.compute_price(tranche_in)
        price_out = self.compute_price(token_out)
        if price_in == 0 or price_out == 0:
            return RolloverData()

        tranche_in_amt = tranche_in_amt_available
        token_out_amt = mul_div(tranche_in_amt, price_in, price_out)

        fee_perc = self.fee_policy.compute_perp_rollover_fee_perc(self.compute_deviation_ratio())
        if fee_perc > 0:
            token_out_amt = mul_div(token_out_amt, ONE - fee_perc, ONE)
        elif fee_perc < 0:
            tranche_in_amt = mul_div(tranche_in_amt, ONE + fee_perc, ONE)

        token_out_balance = self.reserve.balance_of(token_out)
        if token_out_amt > token_out_balance:
            tranche_in_amt = mul_div(token_out_balance, tranche_in_amt, token_out_amt)
            token_out_amt = token_out_balance

        return RolloverData(token_out_amt=token_out_amt, tranche_in_amt=tranche_in_amt)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @atomic
    def deposit(self, caller, tranche_in, tranche_in_amt):
        """
        Deposits tranches and mints perps.

        Args:
            caller: Depositor address
            tranche_in: Must be the current deposit tranche
            tranche_in_amt: Amount of tranche_in to deposit

        Returns:
            Amount of perps minted

        Raises:
            Paused: If perp is paused
            UnexpectedAsset: If tranche_in is not the deposit tranche
            ExceededMaxSupply: If the total supply cap would be exceeded
            ExceededMaxMintPerTranche: If the per-tranche mint cap would be exceeded
            InsufficientBalance: If caller does not hold tranche_in_amt
            InvalidAmount: If tranche_in_amt is negative
        """
        self._require_not_paused()
        require_non_negative(tranche_in_amt)
        self._update_state()

        if not self.is_deposit_tranche(tranche_in):
            raise UnexpectedAsset(f"{self.address}: {tranche_in!r} is not the deposit tranche")

        mint_amt = self.compute_mint_amt(tranche_in, tranche_in_amt, caller)
        if tranche_in_amt == 0 or mint_amt == 0:
            return 0

        if self.max_supply is not None and self.token.total_supply + mint_amt > self.max_supply:
            raise ExceededMaxSupply(f"{self.address}: supply cap {self.max_supply} exceeded")

        minted = self.minted_per_tranche.get(tranche_in, 0) + mint_amt
        if self.max_mint_amt_per_tranche is not None and minted > self.max_mint_amt_per_tranche:
            raise ExceededMaxMintPerTranche(f"{self.address}: mint cap for {tranche_in!r} exceeded")

        # Transfer tranches in
        tranche_in.transfer(caller, self.address, tranche_in_amt)
        self._sync_reserve(tranche_in)

        # Mint perps
        self.minted_per_tranche[tranche_in] = minted
        self.token.mint(caller, mint_amt)

        self.ledger.emit(self.address, "Deposited", caller=caller, tranche=tranche_in.name, amount=tranche_in_amt, minted=mint_amt)
        return mint_amt

    @atomic
    def redeem(self, caller, perp_amt):
        """
        Burns perps for a proportional slice of every reserve asset.

        Args:
            caller: Redeemer address
            perp_amt: Amount of perps to burn

        Returns:
            List of TokenAmount actually paid out (nonzero only)

        Raises:
            Paused: If perp is paused
            InsufficientBalance: If caller holds fewer than perp_amt perps
            InvalidAmount: If perp_amt is negative
        """
        self._require_not_paused()
        require_non_negative(perp_amt)
        self._update_state()

        if perp_amt == 0:
            return []

        balance = self.token.balance_of(caller)
        if perp_amt > balance:
            raise InsufficientBalance(f"{self.address}: {caller} holds {balance} perps, redeeming {perp_amt}")

        token_outs = self.compute_redemption_amts(perp_amt, caller)

        # Burn perps
        self.token.burn(caller, perp_amt)

        # Transfer the reserve slice out
        paid = []
        for out in token_outs:
            if out.amount > 0:
                out.token.transfer(self.address, caller, out.amount)
                paid.append(out)
            self._sync_reserve(out.token)

        self.ledger.emit(
            self.address, "Redeemed", caller=caller, amount=perp_amt,
            payouts={repr(o.token): o.amount for o in paid},
        )
        return paid

    @atomic
    def burn(self, caller, perp_amt):
        """Burns the caller's perps with no payout; the reserve stays put."""
        require_non_negative(perp_amt)
        self.token.burn(caller, perp_amt)
        self.ledger.emit(self.address, "Burned", caller=caller, amount=perp_amt)
        return perp_amt

    @atomic
    def rollover(self, caller, tranche_in, token_out, tranche_in_amt_available):
        """
        Swaps tranche_in for token_out at the price-implied rate. Vault only.

        Returns:
            RolloverData with the realized amounts

        Raises:
            UnauthorizedCall: If caller is not the vault
            Paused: If perp is paused
            UnacceptableRollover: If the pair cannot be rolled over
            InvalidAmount: If tranche_in_amt_available is negative
        """
        self._only_vault(caller)
        self._require_not_paused()
        require_non_negative(tranche_in_amt_available)
        self._update_state()

        if not self.is_acceptable_rollover(tranche_in, token_out):
            raise UnacceptableRollover(f"{self.address}: cannot roll {tranche_in!r} for {token_out!r}")

        r = self.compute_rollover_amt(tranche_in, token_out, tranche_in_amt_available)
        if r.tranche_in_amt == 0 or r.token_out_amt == 0:
            return RolloverData()

        tranche_in.transfer(caller, self.address, r.tranche_in_amt)
        token_out.transfer(self.address, caller, r.token_out_amt)
        self._sync_reserve(tranche_in)
        self._sync_reserve(token_out)

        self.ledger.emit(
            self.address, "Rolledover", caller=caller,
            tranche_in=repr(tranche_in), token_out=repr(token_out),
            tranche_in_amt=r.tranche_in_amt, token_out_amt=r.token_out_amt,
        )
        return r

    @atomic
    def update_state(self, caller=None):
        """
        Advances the deposit bond and retires matured reserve tranches.

        Callable by anyone. Calling it twice at the same time is a no-op
        the second time.
        """
        self._require_not_paused()
        self._update_state()

    def _update_state(self):
        bond = self.bond_issuer.get_latest_bond()
        if (
            bond is not None
            and bond is not self.deposit_bond
            and self.bond_issuer.is_instance(bond)
            and self._is_acceptable_bond(bond)
            and (self.deposit_bond is None or bond.maturity_date >= self.deposit_bond.maturity_date)
        ):
            self.deposit_bond = bond
            self.ledger.emit(self.address, "UpdatedDepositBond", bond=bond.address)
            logger.info("%s deposit bond updated to %s", self.address, bond.address)

        # Convert matured tranches into the underlying
        retired = 0
        for asset in self.reserve:
            if not isinstance(asset, Tranche):
                continue
            bond = asset.bond
            if not bond.is_mature and self.ledger.current_time < bond.maturity_date:
                continue

            bond.mature(self.address)
            balance = self.reserve.balance_of(asset)
            if balance > 0:
                bond.redeem_mature(self.address, asset, balance)
            self._sync_reserve(asset)
            retired += 1

        if retired:
            self._sync_reserve(self.underlying)

    # ------------------------------------------------------------------
    # Vault hooks
    # ------------------------------------------------------------------

    @atomic
    def sync(self, caller, token):
        """Reconciles the reserve entry for token after a vault transfer."""
        self._only_vault(caller)
        self._require_not_paused()
        return self._sync_reserve(token)

    @atomic
    def rebalance_to_vault(self, caller, value):
        """
        Transfers value to the vault as an exact proportional slice of the
        reserve. Perp supply is unchanged.

        Returns:
            List of TokenAmount transferred (nonzero only)
        """
        self._only_vault(caller)
        self._require_not_paused()

        tvl = self.get_tvl()
        if value <= 0 or tvl == 0:
            return []
        value = min(value, tvl)

        transferred = []
        for asset in self.reserve:
            amt = mul_div(self.reserve.balance_of(asset), value, tvl)
            if amt > 0:
                asset.transfer(self.address, caller, amt)
                transferred.append(TokenAmount(asset, amt))
            self._sync_reserve(asset)

        self.ledger.emit(self.address, "RebalancedToVault", value=value)
        return transferred

    @atomic
    def mint_protocol_fee(self, caller, value):
        """
        Mints perps worth value to the protocol fee collector, diluting
        every holder.

        Returns:
            Amount of perps minted
        """
        self._only_vault(caller)

        supply = self.token.total_supply
        tvl = self.get_tvl()
        if value <= 0 or supply == 0 or value >= tvl:
            return 0

        minted = mul_div(supply, value, tvl - value)
        collector = self.fee_policy.protocol_fee_collector
        self.token.mint(collector, minted)

        self.ledger.emit(self.address, "ProtocolFeeMinted", collector=collector, value=value, minted=minted)
        return minted

    def _sync_reserve(self, token):
        balance = self.reserve.sync(token)
        self.ledger.emit(self.address, "ReserveSynced", token=repr(token), balance=balance)
        return balance
