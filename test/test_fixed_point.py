"""
Unit tests for the fixed-point helpers.
"""

import unittest
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from fixed_point import ONE, Rounding, clip, mul_div, sigmoid, trunc_div, two_power


def perc(value):
    """Converts a decimal string to an 8-decimal fixed-point int."""
    whole, _, frac = value.lstrip("-").partition(".")
    result = int(whole) * ONE + int((frac + "0" * 8)[:8])
    return -result if value.startswith("-") else result


class TestMulDiv(unittest.TestCase):
    def test_rounding(self):
        """Test floor and ceiling division"""
        self.assertEqual(mul_div(10, 3, 4), 7)
        self.assertEqual(mul_div(10, 3, 4, Rounding.UP), 8)
        self.assertEqual(mul_div(10, 4, 4, Rounding.UP), 10)

    def test_invalid_operands(self):
        """Test that zero denominators and negative operands are rejected"""
        with self.assertRaises(ValueError):
            mul_div(1, 1, 0)
        with self.assertRaises(ValueError):
            mul_div(-1, 1, 1)

    def test_trunc_div(self):
        """Test signed division truncates toward zero"""
        self.assertEqual(trunc_div(7, 2), 3)
        self.assertEqual(trunc_div(-7, 2), -3)
        self.assertEqual(trunc_div(7, -2), -3)
        self.assertEqual(trunc_div(-7, -2), 3)

    def test_clip(self):
        self.assertEqual(clip(5, 0, 3), 3)
        self.assertEqual(clip(-1, 0, 3), 0)
        self.assertEqual(clip(2, 0, 3), 2)


class TestTwoPower(unittest.TestCase):
    def setUp(self):
        self.one = 10 ** 10

    def test_whole_exponents(self):
        """Test exact powers of two"""
        self.assertEqual(two_power(0, self.one), self.one)
        self.assertEqual(two_power(self.one, self.one), 2 * self.one)
        self.assertEqual(two_power(30 * self.one, self.one), 2 ** 30 * self.one)

    def test_fractional_exponents(self):
        """Test fractional exponents quantized to 1/32 steps"""
        self.assertEqual(two_power(22500000000, self.one), 47568284600)
        self.assertEqual(two_power(-22500000000, self.one), 2102241038)
        self.assertEqual(two_power(29687500000, self.one), 78285764964)
        # 2.99 falls in the same 1/32 step as 2.96875
        self.assertEqual(two_power(29900000000, self.one), 78285764964)

    def test_truncation_follows_fraction_bits(self):
        """Test each root of two is multiplied in at full precision before truncating"""
        self.assertEqual(two_power(25000000000, self.one), 56568542494)
        self.assertEqual(two_power(-6000000000, self.one), 6626183216)

    def test_exponent_bounds(self):
        """Test that huge exponents are rejected"""
        with self.assertRaises(ValueError):
            two_power(101 * self.one, self.one)
        with self.assertRaises(ValueError):
            two_power(-101 * self.one, self.one)


class TestSigmoid(unittest.TestCase):
    def check(self, x, y, lower="-0.01", upper="0.05", growth="4"):
        self.assertEqual(sigmoid(perc(x), perc(lower), perc(upper), perc(growth)), perc(y))

    def test_sigmoid_curve(self):
        """Test known points along the curve"""
        self.check("0", "-0.00925926")
        self.check("0.5", "-0.00714286")
        self.check("0.75", "-0.00454546")
        self.check("1", "0")
        self.check("1.01", "0.00018181")
        self.check("1.5", "0.01666666")
        self.check("2", "0.03571428")
        self.check("10", "0.05")

    def test_asymptotes(self):
        """Test the curve flattens at its asymptotes far from 1"""
        self.assertEqual(sigmoid(1000 * ONE, perc("-0.01"), perc("0.05"), perc("4")), perc("0.05"))
        self.assertEqual(sigmoid(0, perc("-0.01"), perc("0.05"), 50 * ONE), perc("-0.01"))

    def test_symmetric_asymptotes(self):
        self.check("0", "-0.007", "-0.009", "0.009", "3")
        self.check("10", "0.009", "-0.009", "0.009", "3")

    def test_zero_lower_asymptote(self):
        """Test a zero lower asymptote yields a flat zero curve"""
        self.assertEqual(sigmoid(0, 0, 0, ONE), 0)
        self.assertEqual(sigmoid(5 * ONE, 0, 0, ONE), 0)


if __name__ == '__main__':
    unittest.main()
