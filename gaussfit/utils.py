"""
Utility functions for gamma spectroscopy analysis.

This module provides helper functions for logging, configuration
validation and synthetic test spectra.
"""

import logging
import sys
from typing import Dict, List, Any, Optional, Tuple
import copy

import numpy as np

from .models import CCType, PeakWidthMode, RegionSearchMode


DEFAULT_CONFIG: Dict[str, Any] = {
    'peak_search': {
        'threshold': 10,
    },
    'region_search': {
        'threshold': 2.0,
        'irw': 3,
        'irch': 2,
        'maxrgnwid': 150,
        'mode': 'forpks',
    },
    'fit': {
        'ncycle': 10,
        'nout': 1,
        'max_npeaks': 10,
        'max_resid': 20.0,
        'pkwd_mode': 'varies',
        'cc_type': 'larger',
        'nplots_per_chan': 4,
    },
    'energy_calibration': {'a': 0.0, 'b': 1.0, 'c': 0.0, 'mode': 'quadratic'},
    'width_calibration': {'alpha': 4.0, 'beta': 0.0, 'mode': 'sqrt'},
}


def setup_logger(name: str = 'gaussfit',
                 level: int = logging.INFO,
                 log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logger with console and optional file output.

    Parameters:
        name: Logger name
        level: Logging level
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers = []

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge two configurations section by section.

    Parameters:
        base: Starting configuration (not modified)
        override: Values that win over base

    Returns:
        New merged configuration
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def validate_parameters(config: Dict[str, Any]) -> bool:
    """
    Validate analysis parameters.

    Parameters:
        config: Configuration dictionary

    Returns:
        True if valid

    Raises:
        ValueError: If parameters are invalid
    """
    peak_search = config.get('peak_search', {})
    if peak_search.get('threshold', 10) <= 0:
        raise ValueError("peak_search.threshold must be positive")

    region_search = config.get('region_search', {})
    if region_search.get('threshold', 2.0) <= 0:
        raise ValueError("region_search.threshold must be positive")
    if region_search.get('irw', 3) < 0:
        raise ValueError("region_search.irw must not be negative")
    if region_search.get('irch', 2) < 0:
        raise ValueError("region_search.irch must not be negative")
    if region_search.get('maxrgnwid', 150) < 4:
        raise ValueError("region_search.maxrgnwid must be at least 4")
    valid_modes = [m.value for m in RegionSearchMode]
    if region_search.get('mode', 'forpks') not in valid_modes:
        raise ValueError(f"region_search.mode must be one of {valid_modes}")

    fit = config.get('fit', {})
    for key in ('ncycle', 'nout', 'max_npeaks', 'nplots_per_chan'):
        if fit.get(key, 1) < 1:
            raise ValueError(f"fit.{key} must be at least 1")
    if fit.get('max_resid', 20.0) <= 0:
        raise ValueError("fit.max_resid must be positive")
    valid_pkwd = [m.value for m in PeakWidthMode]
    if fit.get('pkwd_mode', 'varies') not in valid_pkwd:
        raise ValueError(f"fit.pkwd_mode must be one of {valid_pkwd}")
    valid_cc = [m.value for m in CCType]
    if fit.get('cc_type', 'larger') not in valid_cc:
        raise ValueError(f"fit.cc_type must be one of {valid_cc}")

    return True


def generate_synthetic_spectrum(num_channels: int = 4096,
                                peaks: Optional[List[Tuple[float, float, float]]] = None,
                                background_level: float = 10.0,
                                background_slope: float = 0.0,
                                poisson: bool = True,
                                seed: Optional[int] = None) -> np.ndarray:
    """
    Generate synthetic gamma spectrum for testing.

    Parameters:
        num_channels: Number of channels
        peaks: List of (channel, height, fwhm) tuples
        background_level: Background counts at channel 0
        background_slope: Background change per channel
        poisson: Apply Poisson noise; otherwise counts are rounded
        seed: Random seed for reproducibility

    Returns:
        Integer counts per channel
    """
    channels = np.arange(num_channels, dtype=float)
    expected = background_level + background_slope * channels

    if peaks is None:
        peaks = [
            (500, 1000, 4.0),
            (1000, 500, 5.0),
            (2000, 800, 6.0),
            (2012, 400, 6.0),   # Overlapping peak
        ]

    for channel, height, fwhm in peaks:
        sigma = fwhm / (2.0 * np.sqrt(2.0 * np.log(2.0)))
        expected += height * np.exp(-0.5 * ((channels - channel) / sigma) ** 2)

    expected = np.maximum(expected, 0)
    if poisson:
        rng = np.random.default_rng(seed)
        return rng.poisson(expected).astype(np.int64)
    return np.rint(expected).astype(np.int64)

