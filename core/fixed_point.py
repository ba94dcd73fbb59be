"""
Fixed-point arithmetic for the SPOT protocol model.

Token amounts are plain integers. Prices, percentages and ratios such as the
deviation ratio are fixed-point integers scaled by ONE (8 decimals). Tranche
ratios are expressed in parts of TRANCHE_RATIO_GRANULARITY.

The sigmoid used for the rollover fee curve follows the on-chain behavior:
the fractional part of the exponent is quantized to 1/32 steps, each set
bit of the fraction multiplies in a precomputed root of two, and every
intermediate division truncates.
"""

from enum import Enum

PERC_DECIMALS = 8
PRICE_DECIMALS = 8
ONE = 10 ** PERC_DECIMALS
TRANCHE_RATIO_GRANULARITY = 1000

# Exponent bound for two_power, in whole units
MAX_TWO_POWER_EXP = 100

# Fractional exponent resolution for two_power
TWO_POWER_STEPS = 32

# 2^(1/2), 2^(1/4), 2^(1/8), 2^(1/16), 2^(1/32) with 18 decimals
ROOT_PRECISION = 10 ** 18
TWO_ROOTS = (
    1414213562373095048,
    1189207115002721066,
    1090507732665257659,
    1044273782427413840,
    1021897148654116678,
)


class Rounding(Enum):
    """Rounding direction for integer division."""
    DOWN = 0
    UP = 1


def mul_div(x, y, denominator, rounding=Rounding.DOWN):
    """
    Computes x * y / denominator on non-negative integers.

    Args:
        x: First factor
        y: Second factor
        denominator: Divisor, must be positive
        rounding: Rounding.DOWN floors the result, Rounding.UP ceils it

    Returns:
        Integer result

    Raises:
        ValueError: If the denominator is zero or an operand is negative
    """
    if denominator <= 0:
        raise ValueError("Denominator must be positive")
    if x < 0 or y < 0:
        raise ValueError("mul_div expects non-negative operands")

    product = x * y
    result = product // denominator
    if rounding == Rounding.UP and product % denominator > 0:
        result += 1
    return result


def trunc_div(x, y):
    """Integer division truncating toward zero, for signed operands."""
    if y == 0:
        raise ValueError("Division by zero")
    quotient = abs(x) // abs(y)
    return quotient if (x >= 0) == (y > 0) else -quotient


def clip(value, lower, upper):
    """Clamps value to [lower, upper]."""
    return max(lower, min(value, upper))


def two_power(exponent, one=ONE):
    """
    Computes 2^exponent for a fixed-point exponent.

    The whole part is exact. The fractional part is floored to the nearest
    1/32 step and applied one binary digit at a time, most significant
    first, truncating after each multiplication. Negative exponents return
    the truncated reciprocal.

    Args:
        exponent: Fixed-point exponent (signed)
        one: Fixed-point scale of both the exponent and the result

    Returns:
        Fixed-point result

    Raises:
        ValueError: If |exponent| exceeds MAX_TWO_POWER_EXP
    """
    if abs(exponent) > MAX_TWO_POWER_EXP * one:
        raise ValueError("two_power exponent too big")

    magnitude = abs(exponent)
    whole = magnitude // one
    steps = (magnitude % one) * TWO_POWER_STEPS // one

    result = (2 ** whole) * one
    for i, root in enumerate(TWO_ROOTS):
        if steps & (TWO_POWER_STEPS >> (i + 1)):
            result = result * root // ROOT_PRECISION

    if exponent < 0:
        return (one * one) // result
    return result


def sigmoid(x, lower, upper, growth, one=ONE):
    """
    Bounded sigmoid anchored at sigmoid(1) = 0.

        y = lower + (upper - lower) / (1 - (upper / lower) * 2^(growth * (1 - x)))

    Args:
        x: Fixed-point input (e.g. a deviation ratio)
        lower: Lower asymptote (negative)
        upper: Upper asymptote (positive)
        growth: Steepness of the curve
        one: Fixed-point scale

    Returns:
        Fixed-point output in [lower, upper]
    """
    if lower == 0:
        return lower

    exponent = trunc_div(growth * (one - x), one)

    # Far from the anchor the curve is flat at its asymptotes
    if exponent > MAX_TWO_POWER_EXP * one:
        return lower
    if exponent < -MAX_TWO_POWER_EXP * one:
        return upper

    power = two_power(exponent, one)
    denominator = one - trunc_div(upper * power, lower)
    return lower + trunc_div((upper - lower) * one, denominator)
