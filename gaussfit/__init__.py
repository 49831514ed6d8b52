"""
GaussFit - Gamma Spectrum Region Fitting Library
================================================

A Python package for calibrating, searching and fitting gamma-ray
spectra: energy and width calibration, cross-correlation peak search,
region search and multi-Gaussian region fits run in add/delete cycles.

Basic Usage:
    from gaussfit import (Spectrum, ChannelRange, FitParms, EnergyEquation,
                          WidthEquation, search_peaks, search_regions,
                          get_regnpks, fit_region)

    spectrum = Spectrum(counts)
    ex = EnergyEquation(0.0, 0.5, 0.0)
    wx = WidthEquation(4.0, 0.0075)

    peaks = search_peaks(spectrum, spectrum.channel_range, wx, 10).peaks
    regions = search_regions(spectrum, spectrum.channel_range, wx, 2.0, 3, 2,
                             peaks, 'forpks')
    for region in regions:
        records = fit_region(region, spectrum, get_regnpks(region, peaks),
                             FitParms(), ex, wx)

Command Line Usage:
    python -m gaussfit spectrum.csv --energy-cal 0 0.5 --width-cal 4 0.0075
"""

__version__ = "0.1.0"

# Import main functions for easier access
from .errors import (GaussError, CapacityExceededError, ConvergenceError,
                     SingularSystemError, DomainError, InvalidInputError)
from .models import (ChannelRange, Spectrum, Peak, PeakList, Regions, FitParms,
                     PeakType, PeakWidthMode, CCType, RegionSearchMode, get_regnpks)
from .calibration import (EnergyEquation, WidthEquation, EnergyMode, WidthMode,
                          calibrate_energy, calibrate_width, apply_calibration,
                          update_peaklist)
from .detection import search_peaks, prune_required
from .regions import search_regions
from .fitting import FitRecord, CycleReturn, fit_region, best_records
from .io_module import load_spectrum, load_config, load_peaks, export_results
from .output import plot_fit_record, write_text_report

# Define what gets imported with "from gaussfit import *"
__all__ = [
    'GaussError',
    'CapacityExceededError',
    'ConvergenceError',
    'SingularSystemError',
    'DomainError',
    'InvalidInputError',
    'ChannelRange',
    'Spectrum',
    'Peak',
    'PeakList',
    'Regions',
    'FitParms',
    'PeakType',
    'PeakWidthMode',
    'CCType',
    'RegionSearchMode',
    'get_regnpks',
    'EnergyEquation',
    'WidthEquation',
    'EnergyMode',
    'WidthMode',
    'calibrate_energy',
    'calibrate_width',
    'apply_calibration',
    'update_peaklist',
    'search_peaks',
    'prune_required',
    'search_regions',
    'FitRecord',
    'CycleReturn',
    'fit_region',
    'best_records',
    'load_spectrum',
    'load_config',
    'load_peaks',
    'export_results',
    'plot_fit_record',
    'write_text_report',
]

# Package metadata
PACKAGE_DATA = {
    'name': 'gaussfit',
    'version': __version__,
    'description': 'Gamma spectrum calibration, peak search and region fitting',
    'python_requires': '>=3.7',
    'install_requires': [
        'numpy>=1.19.0',
        'scipy>=1.5.0',
        'matplotlib>=3.3.0',
        'pandas>=1.1.0',
    ],
    'optional_requires': {
        'test': ['pytest>=6.0', 'pytest-cov'],
    }
}
