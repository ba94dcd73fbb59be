"""
Bond and Tranche Model for the SPOT protocol.

A Bond takes collateral and splits it into ordered tranche classes by
seniority ratio. Before maturity, tranches can be redeemed for collateral
jointly, in exact ratio. At maturity the collateral is split across the
classes by waterfall: each senior class is repaid in full before the next
class receives anything, and the most junior class gets whatever is left.
After maturity each tranche redeems for its share of its class's collateral.

The BondIssuer creates new bonds on a fixed schedule.
"""

import logging
from functools import reduce
from math import gcd

from errors import BondMature, BondNotMature, InvalidRedemptionRatio, UnacceptableParams
from fixed_point import TRANCHE_RATIO_GRANULARITY
from ledger import Stateful, atomic
from tokens import Token

logger = logging.getLogger(__name__)

TRANCHE_LABELS = "ABCDEFGHIJKLMNOPQRSTUVWXY"


class Tranche(Token):
    """
    A fungible claim on one class of a bond's collateral.

    The tranche also has an address: after maturity, the collateral owed to
    its class is held there.
    """

    def __init__(self, ledger, bond, index, label):
        super().__init__(ledger, f"{bond.address}-{label}", label, bond.collateral_token.decimals)
        self.bond = bond
        self.index = index
        self.address = f"{bond.address}/tranche-{label}"

    def __repr__(self):
        return f"<Tranche {self.name}>"


class Bond(Stateful):
    """
    Fixed-maturity bond splitting collateral into tranche classes.
    """

    _state_fields = ("is_mature",)

    def __init__(self, ledger, address, collateral_token, tranche_ratios, maturity_date, creation_date=None):
        """
        Args:
            ledger: Shared ledger
            address: Bond address
            collateral_token: Token deposited as collateral
            tranche_ratios: Ordered seniority ratios summing to TRANCHE_RATIO_GRANULARITY
            maturity_date: Timestamp at which the bond can be matured
            creation_date: Issue timestamp (defaults to now)
        """
        if len(tranche_ratios) < 1:
            raise UnacceptableParams("Bond needs at least one tranche")
        if sum(tranche_ratios) != TRANCHE_RATIO_GRANULARITY:
            raise UnacceptableParams("Tranche ratios must sum to %d" % TRANCHE_RATIO_GRANULARITY)
        if len(tranche_ratios) > len(TRANCHE_LABELS):
            raise UnacceptableParams("Too many tranches")

        self.ledger = ledger
        self.address = address
        self.collateral_token = collateral_token
        self.creation_date = ledger.current_time if creation_date is None else creation_date
        self.maturity_date = maturity_date
        self.is_mature = False
        self._entered = False

        # Ordered list of (tranche, ratio), most senior first
        self.tranches = []
        for i, ratio in enumerate(tranche_ratios):
            label = TRANCHE_LABELS[i] if i < len(tranche_ratios) - 1 else "Z"
            self.tranches.append((Tranche(ledger, self, i, label), ratio))

        ledger.track(self)

    def __repr__(self):
        return f"<Bond {self.address} maturity={self.maturity_date}>"

    @property
    def tranche_count(self):
        return len(self.tranches)

    @property
    def ratios(self):
        return [ratio for _, ratio in self.tranches]

    @property
    def duration(self):
        return self.maturity_date - self.creation_date

    def tranche_at(self, index):
        return self.tranches[index][0]

    def index_of(self, tranche):
        """Returns the class index of tranche, or -1 if it is not one of ours."""
        for i, (t, _) in enumerate(self.tranches):
            if t is tranche:
                return i
        return -1

    def collateral_balance(self):
        """Collateral held by the bond (pre-maturity pool)."""
        return self.collateral_token.balance_of(self.address)

    def total_debt(self):
        """Sum of all tranche supplies."""
        return sum(t.total_supply for t, _ in self.tranches)

    def time_to_maturity(self):
        return max(self.maturity_date - self.ledger.current_time, 0)

    @property
    def is_settled(self):
        """Mature with every tranche redeemed; nothing about the bond can change."""
        return self.is_mature and self.total_debt() == 0

    @atomic
    def deposit(self, depositor, amount):
        """
        Deposits collateral and mints tranches in ratio.

        Once the bond holds collateral, tranche amounts are scaled by
        total_debt / collateral_balance so existing holders are not diluted.

        Args:
            depositor: Address depositing collateral
            amount: Amount of collateral

        Returns:
            List of tranche amounts minted, in seniority order

        Raises:
            BondMature: If the bond has matured
        """
        if self.is_mature:
            raise BondMature(f"{self.address}: deposit after maturity")

        collateral_balance = self.collateral_balance()
        total_debt = self.total_debt()

        amounts = []
        for tranche, ratio in self.tranches:
            tranche_amt = amount * ratio // TRANCHE_RATIO_GRANULARITY
            if collateral_balance > 0 and total_debt > 0:
                tranche_amt = tranche_amt * total_debt // collateral_balance
            amounts.append(tranche_amt)

        self.collateral_token.transfer(depositor, self.address, amount)
        for (tranche, _), tranche_amt in zip(self.tranches, amounts):
            tranche.mint(depositor, tranche_amt)

        self.ledger.emit(self.address, "Deposit", depositor=depositor, amount=amount, tranche_amts=amounts)
        return amounts

    @atomic
    def redeem(self, redeemer, amounts):
        """
        Redeems tranches for collateral before maturity.

        Amounts must be in exact tranche ratio. The collateral returned is
        sum(amounts) * collateral_balance / total_debt.

        Args:
            redeemer: Address holding the tranches
            amounts: Tranche amounts in seniority order

        Returns:
            Collateral amount paid out

        Raises:
            BondMature: If the bond has matured
            InvalidRedemptionRatio: If amounts are not in ratio
        """
        if self.is_mature:
            raise BondMature(f"{self.address}: use redeem_mature after maturity")
        if len(amounts) != len(self.tranches):
            raise InvalidRedemptionRatio("Amounts length does not match tranche count")

        ratios = self.ratios
        for amt, ratio in zip(amounts, ratios):
            if amt * ratios[0] != amounts[0] * ratio:
                raise InvalidRedemptionRatio(f"{self.address}: invalid redemption ratio {amounts}")

        total = sum(amounts)
        if total == 0:
            return 0

        collateral_out = total * self.collateral_balance() // self.total_debt()

        for (tranche, _), amt in zip(self.tranches, amounts):
            tranche.burn(redeemer, amt)
        self.collateral_token.transfer(self.address, redeemer, collateral_out)

        self.ledger.emit(self.address, "Redeem", redeemer=redeemer, amounts=list(amounts), collateral=collateral_out)
        return collateral_out

    @atomic
    def mature(self, caller=None):
        """
        Finalizes the bond, splitting collateral across classes by waterfall.

        Idempotent: maturing an already mature bond does nothing.

        Raises:
            BondNotMature: If called before the maturity date
        """
        if self.is_mature:
            return False
        if self.ledger.current_time < self.maturity_date:
            raise BondNotMature(f"{self.address}: matures at {self.maturity_date}")

        for tranche, collateral in compute_tranche_collateral(self):
            self.collateral_token.transfer(self.address, tranche.address, collateral)

        self.is_mature = True
        self.ledger.emit(self.address, "Mature", caller=caller)
        logger.info("Bond %s matured", self.address)
        return True

    @atomic
    def redeem_mature(self, redeemer, tranche, amount):
        """
        Redeems a matured tranche for its share of its class's collateral.

        Returns:
            Collateral amount paid out
        """
        if not self.is_mature:
            raise BondNotMature(f"{self.address}: not mature")
        if tranche.bond is not self or self.index_of(tranche) < 0:
            raise ValueError("Tranche does not belong to this bond")
        if amount == 0:
            return 0

        collateral_out = amount * self.collateral_token.balance_of(tranche.address) // tranche.total_supply

        tranche.burn(redeemer, amount)
        self.collateral_token.transfer(tranche.address, redeemer, collateral_out)

        self.ledger.emit(self.address, "RedeemMature", redeemer=redeemer, tranche=tranche.name, amount=amount, collateral=collateral_out)
        return collateral_out


def compute_tranche_collateral(bond):
    """
    Returns [(tranche, collateral)] attributable to each class.

    After maturity this is what each tranche address holds. Before maturity
    it is the waterfall over the bond's current collateral: every class but
    the last takes min(supply, remaining), the last takes the rest.
    """
    if bond.is_mature:
        return [(t, bond.collateral_token.balance_of(t.address)) for t, _ in bond.tranches]

    remaining = bond.collateral_balance()
    result = []
    for i, (tranche, _) in enumerate(bond.tranches):
        if i == len(bond.tranches) - 1:
            share = remaining
        else:
            share = min(tranche.total_supply, remaining)
        remaining -= share
        result.append((tranche, share))
    return result


def compute_redeemable_tranche_amounts(bond, available):
    """
    Largest exact in-ratio tranche set bounded by the available amounts.

    Args:
        bond: Bond whose ratios constrain the set
        available: Available amount per class, in seniority order

    Returns:
        List of amounts, one per class, in exact tranche ratio
    """
    ratios = bond.ratios
    unit = reduce(gcd, ratios)
    units = [ratio // unit for ratio in ratios]
    sets = min(amt // u for amt, u in zip(available, units))
    return [sets * u for u in units]


class BondIssuer(Stateful):
    """
    Issues bonds with a fixed tranche structure on a fixed schedule.
    """

    _state_fields = ("issued_bonds", "last_issue_window_timestamp")

    def __init__(
        self,
        ledger,
        address,
        collateral_token,
        tranche_ratios,
        max_maturity_duration,
        min_issue_time_interval,
        issue_window_offset=0,
    ):
        if max_maturity_duration <= 0 or min_issue_time_interval <= 0:
            raise UnacceptableParams("Durations must be positive")

        self.ledger = ledger
        self.address = address
        self.collateral_token = collateral_token
        self.tranche_ratios = list(tranche_ratios)
        self.max_maturity_duration = max_maturity_duration
        self.min_issue_time_interval = min_issue_time_interval
        self.issue_window_offset = issue_window_offset

        self.issued_bonds = []
        self.last_issue_window_timestamp = None

        # Total bonds ever created, used for addresses
        self._bond_counter = 0

        ledger.track(self)

    def _current_issue_window(self):
        now = self.ledger.current_time
        return now - ((now - self.issue_window_offset) % self.min_issue_time_interval)

    def issue(self):
        """
        Issues a new bond if the current issue window has none yet.

        Returns:
            The new Bond, or None if not yet due
        """
        window = self._current_issue_window()
        if self.last_issue_window_timestamp is not None and window <= self.last_issue_window_timestamp:
            return None

        self._bond_counter += 1
        bond = Bond(
            self.ledger,
            f"{self.address}:bond-{self._bond_counter}",
            self.collateral_token,
            self.tranche_ratios,
            window + self.max_maturity_duration,
            creation_date=window,
        )
        self.issued_bonds.append(bond)
        self.last_issue_window_timestamp = window
        self.retire_settled_bonds()

        self.ledger.emit(self.address, "BondIssued", bond=bond.address, maturity=bond.maturity_date)
        logger.info("Issued %s maturing at %d", bond.address, bond.maturity_date)
        return bond

    def retire_settled_bonds(self):
        """
        Stops snapshotting settled bonds and their tranches. They stay
        issued instances.

        Returns:
            Number of bonds newly retired
        """
        retired = 0
        for bond in self.issued_bonds:
            if not bond.is_settled:
                continue
            if self.ledger.untrack(bond):
                retired += 1
            for tranche, _ in bond.tranches:
                self.ledger.untrack(tranche)
        if retired:
            logger.debug("%s retired %d settled bonds", self.address, retired)
        return retired

    def get_latest_bond(self):
        """Issues a bond if one is due, then returns the newest bond."""
        self.issue()
        return self.issued_bonds[-1] if self.issued_bonds else None

    def is_instance(self, bond):
        return any(b is bond for b in self.issued_bonds)
