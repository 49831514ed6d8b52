"""
Unit tests for energy and width calibration.
"""

import unittest
import math
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gaussfit.calibration import (
    EnergyEquation,
    WidthEquation,
    EnergyMode,
    WidthMode,
    calibrate_energy,
    calibrate_width,
    apply_calibration,
    update_peaklist
)
from gaussfit.errors import DomainError, InvalidInputError, SingularSystemError
from gaussfit.models import PeakList


class TestEnergyEquation(unittest.TestCase):
    """Test channel/energy conversions."""

    def test_linear_mode_ignores_c(self):
        ex = EnergyEquation(1.0, 2.0, 5.0, mode='linear')
        self.assertAlmostEqual(ex.energy(10.0), 21.0)
        self.assertAlmostEqual(ex.channel(21.0), 10.0)

    def test_quadratic_round_trip(self):
        ex = EnergyEquation(1.0, 0.5, 1e-5)
        for channel in (0.0, 123.4, 2048.0, 4000.0):
            self.assertAlmostEqual(ex.channel(ex.energy(channel)), channel, places=6)

    def test_quadratic_out_of_range(self):
        ex = EnergyEquation(0.0, 1.0, -0.001)
        with self.assertRaises(DomainError):
            ex.channel(300.0)

    def test_zero_slope(self):
        ex = EnergyEquation(5.0, 0.0, 0.0)
        with self.assertRaises(DomainError):
            ex.channel(10.0)

    def test_vectorized_energy(self):
        ex = EnergyEquation(0.0, 0.5, 0.0)
        np.testing.assert_allclose(ex.energy(np.array([0.0, 2.0, 4.0])), [0.0, 1.0, 2.0])

    def test_apply_calibration_with_dict(self):
        energy = apply_calibration(100.0, {'a': 1.0, 'b': 2.0, 'c': 0.0})
        self.assertAlmostEqual(energy, 201.0)

    def test_dict_round_trip(self):
        ex = EnergyEquation(1.0, 2.0, 3.0, 0.5, 'linear')
        self.assertEqual(EnergyEquation.from_dict(ex.to_dict()), ex)


class TestWidthEquation(unittest.TestCase):
    """Test channel/width conversions."""

    def test_sqrt_mode(self):
        wx = WidthEquation(4.0, 0.0075)
        self.assertEqual(wx.mode, WidthMode.SQRT)
        self.assertAlmostEqual(wx.width(1600.0), 4.0)

    def test_linear_mode(self):
        wx = WidthEquation(1.0, 0.01, mode='linear')
        self.assertAlmostEqual(wx.width(300.0), 4.0)

    def test_sqrt_of_negative(self):
        wx = WidthEquation(-10.0, 0.01)
        with self.assertRaises(DomainError):
            wx.width(100.0)
        self.assertEqual(wx.width_or(100.0, 3.0), 3.0)


class TestCalibrationFitter(unittest.TestCase):
    """Test least-squares calibration fits."""

    def setUp(self):
        """Ten linearly related reference peaks."""
        self.channels = list(range(20, 120, 10))
        self.energies = [15, 31, 47, 63, 79, 95, 111, 127, 143, 159]

    def test_quadratic_fit_of_linear_data(self):
        ex = calibrate_energy(self.channels, self.energies, mode='quadratic')
        self.assertEqual(ex.mode, EnergyMode.QUADRATIC)
        self.assertAlmostEqual(ex.b, 1.6, places=6)
        self.assertAlmostEqual(ex.c, 0.0, places=8)
        self.assertAlmostEqual(ex.a, -17.0, places=5)
        self.assertAlmostEqual(ex.chi_sq, 0.0, places=8)

    def test_linear_fit(self):
        ex = calibrate_energy(self.channels, self.energies, mode='linear')
        self.assertAlmostEqual(ex.b, 1.6, places=6)
        self.assertEqual(ex.c, 0.0)

    def test_weighted_fit(self):
        sige = [0.5] * len(self.channels)
        ex = calibrate_energy(self.channels, self.energies, sige,
                              mode='linear', weighted=True)
        self.assertAlmostEqual(ex.b, 1.6, places=6)

    def test_weighted_fit_needs_positive_uncertainties(self):
        sige = [0.0] * len(self.channels)
        with self.assertRaises(InvalidInputError):
            calibrate_energy(self.channels, self.energies, sige, weighted=True)

    def test_too_few_points(self):
        with self.assertRaises(InvalidInputError):
            calibrate_energy([10.0, 20.0], [5.0, 10.0], mode='quadratic')

    def test_repeated_points_count_once(self):
        with self.assertRaises(InvalidInputError):
            calibrate_energy([10.0, 10.0, 10.0], [5.0, 5.0, 5.0], mode='linear')

    def test_singular_matrix(self):
        with self.assertRaises(SingularSystemError):
            calibrate_energy([10.0, 10.0], [5.0, 6.0], mode='linear')

    def test_mismatched_lengths(self):
        with self.assertRaises(InvalidInputError):
            calibrate_energy([10.0, 20.0, 30.0], [5.0, 6.0])

    def test_sqrt_width_fit(self):
        channels = np.arange(100.0, 4000.0, 400.0)
        widths = np.sqrt(4.0 + 0.0075 * channels)
        wx = calibrate_width(channels, widths, mode='sqrt')
        self.assertAlmostEqual(wx.alpha, 4.0, places=5)
        self.assertAlmostEqual(wx.beta, 0.0075, places=8)
        self.assertAlmostEqual(wx.width(1600.0), 4.0, places=5)

    def test_linear_width_fit(self):
        channels = [100.0, 200.0, 300.0]
        widths = [2.0, 3.0, 4.0]
        wx = calibrate_width(channels, widths, mode='linear')
        self.assertAlmostEqual(wx.alpha, 1.0, places=6)
        self.assertAlmostEqual(wx.beta, 0.01, places=8)

    def test_weighted_sqrt_width_fit(self):
        """A poorly known width barely moves a weighted sqrt fit."""
        channels = [100.0, 200.0, 300.0, 400.0]
        widths = [math.sqrt(4.0 + 0.0075 * x) for x in channels[:3]] + [10.0]
        sigw = [0.01, 0.01, 0.01, 1000.0]

        wx = calibrate_width(channels, widths, sigw, mode='sqrt', weighted=True)
        self.assertAlmostEqual(wx.alpha, 4.0, places=5)
        self.assertAlmostEqual(wx.beta, 0.0075, places=8)
        # squared widths carry sigma = sigw * 2 * width
        expected_chi_sq = ((100.0 - 7.0) / (1000.0 * 2.0 * 10.0)) ** 2 / 2
        self.assertAlmostEqual(wx.chi_sq, expected_chi_sq, delta=1e-7)

        unweighted = calibrate_width(channels, widths, sigw, mode='sqrt')
        self.assertGreater(abs(unweighted.beta - 0.0075), 0.01)


class TestUpdatePeakList(unittest.TestCase):
    """Test propagation of a calibration onto peaks."""

    def test_channel_and_energy_peaks(self):
        ex = EnergyEquation(0.0, 0.5, 0.0)
        peaks = PeakList(3)
        peaks.add_chanpeak(100.0)
        peaks.add_egypeak(661.7)
        update_peaklist(ex, peaks)

        by_type = {p.type.value: p for p in peaks}
        self.assertTrue(by_type['channel'].energy_valid)
        self.assertAlmostEqual(by_type['channel'].energy, 50.0)
        self.assertTrue(by_type['energy'].channel_valid)
        self.assertAlmostEqual(by_type['energy'].channel, 1323.4)
        self.assertEqual(peaks.channels(), sorted(peaks.channels()))

    def test_cleared_calibration(self):
        peaks = PeakList(2)
        peaks.add_chanpeak(100.0)
        peaks.add_egypeak(661.7)
        update_peaklist(EnergyEquation(0.0, 0.5, 0.0), peaks)
        update_peaklist(None, peaks)
        self.assertTrue(all(not p.energy_valid for p in peaks if p.type.value == 'channel'))
        self.assertTrue(all(not p.channel_valid for p in peaks if p.type.value == 'energy'))


if __name__ == '__main__':
    unittest.main()
