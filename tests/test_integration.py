"""
Integration tests for the complete region fitting pipeline.
"""

import unittest
import tempfile
import shutil
import json
import numpy as np
import pandas as pd
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gaussfit import (
    Spectrum,
    ChannelRange,
    FitParms,
    EnergyEquation,
    WidthEquation,
    CycleReturn,
    search_peaks,
    search_regions,
    get_regnpks,
    fit_region
)
from gaussfit.main import main, parse_arguments, load_configuration, analyse_spectrum
from gaussfit.utils import DEFAULT_CONFIG, merge_config, generate_synthetic_spectrum


class TestEndToEndPipeline(unittest.TestCase):
    """Test complete analysis from spectrum to fitted regions."""

    def setUp(self):
        """Set up test environment."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.true_peaks = [(600, 1200, 4.0), (1400, 900, 4.0), (1412, 450, 4.0)]
        counts = generate_synthetic_spectrum(
            2048, peaks=self.true_peaks, background_level=40, poisson=True, seed=11
        )
        self.spectrum = Spectrum(counts)
        self.spectrum_file = self.temp_dir / 'spectrum.csv'
        pd.DataFrame({'channel': np.arange(2048), 'counts': counts}).to_csv(
            self.spectrum_file, index=False, header=False)
        self.ex = EnergyEquation(0.0, 0.5, 0.0)
        self.wx = WidthEquation(16.0, 0.0)

    def tearDown(self):
        """Clean up temporary files."""
        shutil.rmtree(self.temp_dir)

    def test_library_pipeline(self):
        peaks = search_peaks(self.spectrum, self.spectrum.channel_range, self.wx, 10).peaks
        regions = search_regions(self.spectrum, self.spectrum.channel_range, self.wx,
                                 2.0, 3, 2, peaks, 'forpks', 150)

        fitted = []
        for region in regions:
            region_peaks = get_regnpks(region, peaks)
            records = fit_region(region, self.spectrum, region_peaks, FitParms(),
                                 self.ex, self.wx)
            self.assertIn(records[-1].cycle_return, (CycleReturn.DONE, CycleReturn.CONTINUE))
            if records[-1].summary is not None:
                fitted.extend(records[-1].summary.channel)

        for channel, _, _ in self.true_peaks:
            self.assertTrue(any(abs(c - channel) < 1.0 for c in fitted),
                            f"No fitted peak near channel {channel}")

    def test_analyse_spectrum(self):
        config = merge_config(DEFAULT_CONFIG, {
            'energy_calibration': self.ex.to_dict(),
            'width_calibration': self.wx.to_dict(),
        })
        results = analyse_spectrum(self.spectrum, config, ChannelRange(0, 2047))
        self.assertGreaterEqual(len(results), 2)
        regions = [r.region for r in results]
        self.assertEqual(regions, sorted(regions, key=lambda r: r.first))

    def test_command_line(self):
        output_dir = self.temp_dir / 'out'
        status = main([str(self.spectrum_file),
                       '--energy-cal', '0', '0.5',
                       '--width-cal', '16', '0',
                       '--output-dir', str(output_dir),
                       '--output-prefix', 'test',
                       '--quiet'])
        self.assertEqual(status, 0)

        fits = list(output_dir.glob('test_fits_*.csv'))
        self.assertEqual(len(fits), 1)
        table = pd.read_csv(fits[0])
        for channel, _, _ in self.true_peaks:
            self.assertTrue((abs(table['channel'] - channel) < 1.0).any())
        self.assertEqual(len(list(output_dir.glob('test_report_*.txt'))), 1)
        self.assertGreaterEqual(len(list(output_dir.glob('test_region_*.png'))), 2)

    def test_missing_spectrum(self):
        status = main([str(self.temp_dir / 'missing.csv'), '--quiet'])
        self.assertEqual(status, 1)


class TestConfiguration(unittest.TestCase):
    """Test command line and file configuration."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_defaults(self):
        config = load_configuration(parse_arguments(['spectrum.csv']))
        self.assertEqual(config, DEFAULT_CONFIG)

    def test_command_line_overrides_file(self):
        config_file = self.temp_dir / 'config.json'
        with open(config_file, 'w') as f:
            json.dump({'fit': {'ncycle': 5, 'max_npeaks': 4}}, f)

        args = parse_arguments(['spectrum.csv', '--config', str(config_file),
                                '--ncycle', '7', '--energy-cal', '1', '2', '0.001'])
        config = load_configuration(args)
        self.assertEqual(config['fit']['ncycle'], 7)
        self.assertEqual(config['fit']['max_npeaks'], 4)
        self.assertEqual(config['energy_calibration']['c'], 0.001)
        self.assertEqual(config['energy_calibration']['mode'], 'quadratic')

    def test_bad_energy_calibration(self):
        args = parse_arguments(['spectrum.csv', '--energy-cal', '1'])
        with self.assertRaises(ValueError):
            load_configuration(args)

    def test_invalid_value(self):
        args = parse_arguments(['spectrum.csv', '--max-npeaks', '0'])
        with self.assertRaises(ValueError):
            load_configuration(args)


if __name__ == '__main__':
    unittest.main()
