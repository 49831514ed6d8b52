"""
Input/Output operations for the gaussfit command-line host.

This module reads channel-count spectra from delimited text files,
reads and writes JSON configuration files and exports fit results.
The analysis engine itself never touches files.
"""

import json
from pathlib import Path
from typing import Dict, Any, List, Optional

import numpy as np
import pandas as pd

from .errors import InvalidInputError
from .fitting import FitRecord
from .models import Spectrum, PeakList


def load_spectrum(filepath: str) -> Spectrum:
    """
    Load a spectrum from a CSV or whitespace-delimited text file.

    One column is read as counts starting at channel 0. With two or more
    columns the first is the channel and the second the counts; channels
    must be consecutive integers.

    Parameters:
        filepath: Path to spectrum file

    Returns:
        Spectrum

    Raises:
        FileNotFoundError: If file doesn't exist
        InvalidInputError: If the data is not a valid spectrum
    """
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Spectrum file not found: {filepath}")

    separator = ',' if filepath.suffix.lower() == '.csv' else r'\s+'
    try:
        data = pd.read_csv(filepath, header=None, comment='#', sep=separator)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise InvalidInputError(f"Error reading spectrum file: {e}")

    data = data.apply(pd.to_numeric, errors='coerce').dropna()
    if len(data) == 0:
        raise InvalidInputError(f"Empty spectrum file: {filepath}")

    if data.shape[1] < 2:
        counts = data.iloc[:, 0].to_numpy()
        first = 0
    else:
        channels = data.iloc[:, 0].to_numpy().astype(np.int64)
        counts = data.iloc[:, 1].to_numpy()
        first = int(channels[0])
        if not np.array_equal(channels, np.arange(first, first + len(channels))):
            raise InvalidInputError("Spectrum channels must be consecutive integers")

    if np.any(counts < 0):
        raise InvalidInputError("Spectrum counts must be non-negative")

    return Spectrum(np.rint(counts).astype(np.int64), first)


def load_config(filepath: str) -> Dict[str, Any]:
    """
    Load configuration from JSON file.

    Parameters:
        filepath: Path to configuration file

    Returns:
        dict: Configuration dictionary
    """
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    try:
        with open(filepath, 'r') as f:
            config = json.load(f)
        return config
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in configuration file: {e}")


def save_config(config: Dict[str, Any], filepath: str):
    """
    Save configuration to JSON file.

    Parameters:
        config: Configuration dictionary
        filepath: Output file path
    """
    filepath = Path(filepath)

    with open(filepath, 'w') as f:
        json.dump(config, f, indent=2)


def load_peaks(filepath: str, capacity: Optional[int] = None) -> PeakList:
    """
    Load required peaks from a text file.

    Each line holds an energy in keV, optionally followed by its
    uncertainty. Lines starting with '#' are ignored.

    Parameters:
        filepath: Path to peak file
        capacity: Capacity of the returned list (defaults to the line count)

    Returns:
        PeakList of energy peaks
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Peak file not found: {filepath}")

    rows = []
    with open(filepath, 'r') as f:
        for line in f:
            fields = line.split('#', 1)[0].replace(',', ' ').split()
            if not fields:
                continue
            try:
                energy = float(fields[0])
                sige = float(fields[1]) if len(fields) > 1 else 0.0
            except ValueError:
                raise InvalidInputError(f"Bad peak line in {filepath}: {line.strip()}")
            rows.append((energy, sige))

    peaks = PeakList(len(rows) if capacity is None else capacity)
    for energy, sige in rows:
        peaks.add_egypeak(energy, sige)
    return peaks


def fit_results_table(records: List[FitRecord]) -> pd.DataFrame:
    """
    Flatten fit records into one row per fitted peak.

    Parameters:
        records: Fit records, typically the final record of each region

    Returns:
        DataFrame with region, cycle and per-peak summary columns
    """
    rows = []
    for record in records:
        if record.summary is None:
            continue
        for peak in record.summary.to_records():
            row = {
                'region_first': record.region.first,
                'region_last': record.region.last,
                'cycle': record.cycle,
                'cycle_return': record.cycle_return.name,
                'chi_sq': record.chi_sq,
            }
            row.update(peak)
            rows.append(row)
    return pd.DataFrame(rows)


def export_results(records: List[FitRecord], filepath: str, format: str = 'csv'):
    """
    Save fit results to file.

    Parameters:
        records: Fit records to export
        filepath: Output file path
        format: Output format ('csv', 'json')
    """
    filepath = Path(filepath)
    table = fit_results_table(records)

    if format == 'csv':
        table.to_csv(filepath, index=False)
    elif format == 'json':
        table.to_json(filepath, orient='records', indent=2)
    else:
        raise ValueError(f"Unsupported output format: {format}")
