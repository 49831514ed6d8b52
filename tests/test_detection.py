"""
Unit tests for peak search and required peak pruning.
"""

import unittest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gaussfit.calibration import EnergyEquation, WidthEquation, update_peaklist
from gaussfit.detection import (
    square_wave_width,
    cross_correlation,
    refine_peak,
    search_peaks,
    prune_required
)
from gaussfit.errors import CapacityExceededError, InvalidInputError
from gaussfit.models import ChannelRange, PeakList, Spectrum
from gaussfit.utils import generate_synthetic_spectrum


class TestSquareWave(unittest.TestCase):
    """Test kernel width selection."""

    def test_odd_widths(self):
        self.assertEqual(square_wave_width(WidthEquation(16.0, 0.0), 100), 5)
        self.assertEqual(square_wave_width(WidthEquation(25.0, 0.0), 100), 5)
        self.assertEqual(square_wave_width(WidthEquation(36.0, 0.0), 100), 7)

    def test_minimum_width(self):
        self.assertEqual(square_wave_width(WidthEquation(1.0, 0.0), 100), 3)
        self.assertEqual(square_wave_width(WidthEquation(-5.0, 0.0), 100), 3)


class TestPeakSearch(unittest.TestCase):
    """Test the cross-correlation peak search."""

    def setUp(self):
        """Two isolated peaks on a flat background, without noise."""
        counts = generate_synthetic_spectrum(
            2048,
            peaks=[(500, 1000, 4.0), (1500, 800, 4.0)],
            background_level=50,
            poisson=False
        )
        self.spectrum = Spectrum(counts)
        self.wx = WidthEquation(16.0, 0.0)

    def test_finds_both_peaks(self):
        results = search_peaks(self.spectrum, self.spectrum.channel_range, self.wx, 10)
        channels = results.peaks.channels()
        self.assertEqual(len(channels), 2)
        self.assertAlmostEqual(channels[0], 500, delta=1.0)
        self.assertAlmostEqual(channels[1], 1500, delta=1.0)
        self.assertEqual(len(results.cross_correlation), self.spectrum.nchannels)

    def test_peaks_are_unfixed_channel_peaks(self):
        results = search_peaks(self.spectrum, self.spectrum.channel_range, self.wx, 10)
        for peak in results.peaks:
            self.assertTrue(peak.channel_valid)
            self.assertFalse(peak.energy_valid)
            self.assertFalse(peak.fixed_centroid)

    def test_refinements_reported(self):
        results = search_peaks(self.spectrum, self.spectrum.channel_range, self.wx, 10)
        self.assertEqual(len(results.refinements), 2)
        for refinement in results.refinements:
            self.assertTrue(refinement.use_refinement)
            self.assertGreater(refinement.net_area, 0)

    def test_high_threshold_finds_nothing(self):
        results = search_peaks(self.spectrum, self.spectrum.channel_range, self.wx, 100000)
        self.assertEqual(len(results.peaks), 0)

    def test_partial_range(self):
        results = search_peaks(self.spectrum, ChannelRange(1000, 2047), self.wx, 10)
        channels = results.peaks.channels()
        self.assertEqual(len(channels), 1)
        self.assertAlmostEqual(channels[0], 1500, delta=1.0)

    def test_capacity(self):
        with self.assertRaises(CapacityExceededError):
            search_peaks(self.spectrum, self.spectrum.channel_range, self.wx, 10, capacity=1)

    def test_bad_inputs(self):
        with self.assertRaises(InvalidInputError):
            search_peaks(self.spectrum, ChannelRange(0, 5000), self.wx, 10)
        with self.assertRaises(InvalidInputError):
            search_peaks(self.spectrum, self.spectrum.channel_range, self.wx, 0)

    def test_flat_spectrum_has_zero_correlation(self):
        spectrum = Spectrum(np.full(200, 100))
        values, _ = cross_correlation(spectrum, spectrum.channel_range, self.wx)
        self.assertTrue(np.all(values == 0))

    def test_refine_near_edge_keeps_raw_channel(self):
        refinement = refine_peak(self.spectrum, 3, 4.0)
        self.assertFalse(refinement.use_refinement)
        self.assertEqual(refinement.refined_channel, 3.0)


class TestPruneRequired(unittest.TestCase):
    """Test removal of required peaks that duplicate searched peaks."""

    def setUp(self):
        self.wx = WidthEquation(16.0, 0.0)
        self.ex = EnergyEquation(0.0, 1.0, 0.0)
        self.searched = PeakList(1)
        self.searched.add_chanpeak(100.0)

    def required(self, *energies):
        peaks = PeakList(len(energies))
        for energy in energies:
            peaks.add_egypeak(energy)
        update_peaklist(self.ex, peaks)
        return peaks

    def test_within_one_width_dropped(self):
        pruned = prune_required(self.wx, self.searched, self.required(103.9, 96.1))
        self.assertEqual(len(pruned), 0)

    def test_outside_one_width_kept(self):
        pruned = prune_required(self.wx, self.searched, self.required(104.1, 95.9, 300.0))
        self.assertEqual(pruned.channels(), [95.9, 104.1, 300.0])

    def test_invalid_channel_dropped(self):
        required = self.required(300.0)
        update_peaklist(None, required)
        self.assertEqual(len(prune_required(self.wx, self.searched, required)), 0)

    def test_bad_width_uses_three_channels(self):
        wx = WidthEquation(-1.0, 0.0, mode='linear')
        pruned = prune_required(wx, self.searched, self.required(102.5, 103.5))
        self.assertEqual(pruned.channels(), [103.5])


if __name__ == '__main__':
    unittest.main()
