"""
Unit tests for fit region search.
"""

import unittest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gaussfit.calibration import WidthEquation
from gaussfit.errors import CapacityExceededError, InvalidInputError
from gaussfit.models import ChannelRange, PeakList, Spectrum
from gaussfit.regions import (
    search_regions,
    pad_spans,
    split_region,
    exceeds_width
)
from gaussfit.utils import generate_synthetic_spectrum


class TestRegionSearch(unittest.TestCase):
    """Test region search on a noiseless two-peak spectrum."""

    def setUp(self):
        """Create test spectrum."""
        counts = generate_synthetic_spectrum(
            2048,
            peaks=[(500, 1000, 4.0), (1500, 800, 4.0)],
            background_level=50,
            poisson=False
        )
        self.spectrum = Spectrum(counts)
        self.wx = WidthEquation(16.0, 0.0)
        self.chanrange = self.spectrum.channel_range

    def search(self, peaks=None, mode='all', maxrgnwid=150, **kwargs):
        return search_regions(self.spectrum, self.chanrange, self.wx, 2.0, 3, 2,
                              peaks, mode, maxrgnwid, **kwargs)

    def assert_well_formed(self, regions, maxrgnwid):
        previous = None
        for region in regions:
            self.assertLessEqual(region.width, maxrgnwid)
            self.assertGreaterEqual(region.first, self.chanrange.first)
            self.assertLessEqual(region.last, self.chanrange.last)
            if previous is not None:
                self.assertGreater(region.first, previous.last)
            previous = region

    def test_each_peak_in_one_region(self):
        regions = self.search()
        self.assert_well_formed(regions, 150)
        for channel in (500, 1500):
            hits = [r for r in regions if r.contains(channel)]
            self.assertEqual(len(hits), 1)
            # padded by three peak widths on each side
            self.assertLessEqual(hits[0].first, channel - 12)
            self.assertGreaterEqual(hits[0].last, channel + 12)

    def test_all_mode_ignores_peaks(self):
        far = PeakList(1)
        far.add_chanpeak(1000.0)
        without = [(r.first, r.last) for r in self.search()]
        with_peaks = [(r.first, r.last) for r in self.search(far)]
        self.assertEqual(without, with_peaks)

    def test_forpks_keeps_regions_with_peaks(self):
        peaks = PeakList(1)
        peaks.add_chanpeak(500.0)
        regions = self.search(peaks, 'forpks')
        self.assertEqual(len(regions), 1)
        self.assertTrue(regions[0].contains(500))

    def test_forpks_without_matching_peaks(self):
        peaks = PeakList(1)
        peaks.add_chanpeak(1000.0)
        self.assertEqual(len(self.search(peaks, 'forpks')), 0)
        self.assertEqual(len(self.search(None, 'forpks')), 0)

    def test_flat_spectrum_has_no_regions(self):
        spectrum = Spectrum(np.full(1000, 100))
        regions = search_regions(spectrum, spectrum.channel_range, self.wx, 2.0, 3, 2)
        self.assertEqual(len(regions), 0)

    def test_max_region_width(self):
        regions = self.search(maxrgnwid=20)
        self.assert_well_formed(regions, 20)
        self.assertFalse(exceeds_width(regions, 20))
        for channel in (500, 1500):
            self.assertEqual(len([r for r in regions if r.contains(channel)]), 1)

    def test_capacity_exceeded(self):
        with self.assertRaises(CapacityExceededError) as ctx:
            self.search(capacity=1)
        self.assertEqual(len(ctx.exception.partial), 1)

    def test_bad_parameters(self):
        with self.assertRaises(InvalidInputError):
            self.search(maxrgnwid=3)
        with self.assertRaises(InvalidInputError):
            search_regions(self.spectrum, self.chanrange, self.wx, 0.0, 3, 2)
        with self.assertRaises(InvalidInputError):
            search_regions(self.spectrum, self.chanrange, self.wx, 2.0, -1, 2)
        with self.assertRaises(InvalidInputError):
            search_regions(self.spectrum, ChannelRange(0, 4096), self.wx, 2.0, 3, 2)


class TestRegionHelpers(unittest.TestCase):
    """Test padding, merging and splitting of spans."""

    def setUp(self):
        self.wx = WidthEquation(16.0, 0.0)
        self.chanrange = ChannelRange(0, 999)

    def test_padding(self):
        padded = pad_spans([ChannelRange(100, 110)], self.chanrange, self.wx, 3, 2)
        self.assertEqual(padded, [ChannelRange(88, 122)])

    def test_padding_clamped_to_range(self):
        padded = pad_spans([ChannelRange(5, 10)], self.chanrange, self.wx, 3, 2)
        self.assertEqual(padded, [ChannelRange(0, 22)])

    def test_close_neighbours_trimmed(self):
        spans = [ChannelRange(100, 110), ChannelRange(134, 144)]
        padded = pad_spans(spans, self.chanrange, self.wx, 3, 2)
        self.assertEqual(padded, [ChannelRange(88, 120), ChannelRange(124, 156)])

    def test_overlapping_neighbours_coalesced(self):
        spans = [ChannelRange(100, 110), ChannelRange(115, 125)]
        padded = pad_spans(spans, self.chanrange, self.wx, 3, 2)
        self.assertEqual(padded, [ChannelRange(88, 137)])

    def test_split_at_minimum(self):
        counts = np.full(100, 100)
        counts[30] = 5
        spectrum = Spectrum(counts)
        pieces = split_region(spectrum, ChannelRange(10, 60), 40)
        self.assertEqual(pieces, [ChannelRange(10, 30), ChannelRange(31, 60)])

    def test_split_not_needed(self):
        spectrum = Spectrum(np.full(100, 100))
        self.assertEqual(split_region(spectrum, ChannelRange(10, 20), 40),
                         [ChannelRange(10, 20)])


if __name__ == '__main__':
    unittest.main()
