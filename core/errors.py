"""
Error taxonomy for the SPOT protocol model.

Every protocol error derives from ProtocolError, which is a ValueError so
callers that only care about "the operation was rejected" can keep catching
ValueError like the rest of the simulator does.
"""


class ProtocolError(ValueError):
    """Base class for every rejected protocol operation."""


# Authorization

class UnauthorizedCall(ProtocolError):
    """Caller is not permitted to invoke the operation."""


# Asset identity

class UnexpectedAsset(ProtocolError):
    """The asset is not the one the operation accepts."""


class UnrecognizedAsset(ProtocolError):
    """The asset is neither the underlying nor a recognized tranche."""


class InvalidBond(ProtocolError):
    """The bond is not deployed, is mature, or is structurally degenerate."""


class UnacceptableRollover(ProtocolError):
    """The tranche/token pair cannot be rolled over."""


# Capacity

class ExceededMaxSupply(ProtocolError):
    """Minting would push the total supply over the cap."""


class ExceededMaxMintPerTranche(ProtocolError):
    """Minting would push the supply minted against one tranche over the cap."""


# Liveness and state

class Paused(ProtocolError):
    """The component is paused."""


class LastRebalanceTooRecent(ProtocolError):
    """The rebalance cooldown has not elapsed (or rebalancing is paused)."""


class InsufficientDeployment(ProtocolError):
    """Not enough usable underlying to deploy."""


class UnacceptableDeployment(ProtocolError):
    """No acceptable deposit tranche to deploy into."""


class ValuelessAssets(ProtocolError):
    """The input assets amount to nothing redeemable."""


class BondNotMature(ProtocolError):
    """The bond cannot be matured before its maturity date."""


class BondMature(ProtocolError):
    """The operation is only valid before maturity."""


class InvalidRedemptionRatio(ProtocolError):
    """Pre-maturity redemption amounts are not in tranche ratio."""


class ReentrantCall(ProtocolError):
    """The operation was re-entered before it completed."""


# Arithmetic

class InsufficientBalance(ProtocolError):
    """The account does not hold enough tokens."""


class InvalidAmount(ProtocolError):
    """A token amount is negative."""


class UnacceptableSwap(ProtocolError):
    """The swap moves nothing in or nothing out."""


class InsufficientLiquidity(ProtocolError):
    """The operation would leave the vault below its reserved underlying."""


def require_non_negative(*amounts):
    """Raises InvalidAmount if any amount is negative."""
    for amount in amounts:
        if amount < 0:
            raise InvalidAmount(f"Negative amount {amount}")


# Configuration

class UnacceptableParams(ProtocolError):
    """Configuration parameters are out of bounds or inconsistent."""


class InvalidPerc(ProtocolError):
    """A percentage is outside [0, 1]."""


class InvalidSigmoidAsymptotes(ProtocolError):
    """Sigmoid asymptotes are out of bounds or inverted."""


class InvalidTargetSRBounds(ProtocolError):
    """The target subscription ratio is out of bounds."""
