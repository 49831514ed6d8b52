#!/usr/bin/env python3
"""
Main entry point for GaussFit command-line interface.

Runs the full analysis of one spectrum: peak search, region search and
a multi-peak fit of every region, then exports the results.
"""

import argparse
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List

from . import __version__
from .calibration import EnergyEquation, WidthEquation, update_peaklist
from .detection import search_peaks, prune_required
from .errors import GaussError
from .fitting import FitRecord, fit_region, best_records
from .io_module import load_spectrum, load_config, load_peaks, export_results
from .models import ChannelRange, FitParms, PeakList, get_regnpks
from .output import plot_fit_record, write_text_report
from .regions import search_regions
from .utils import DEFAULT_CONFIG, merge_config, setup_logger, validate_parameters


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='GaussFit - Gamma Spectrum Region Fitting',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        'spectrum',
        type=str,
        help='Path to spectrum file (CSV or whitespace-delimited text)'
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to JSON configuration file'
    )

    calibration_group = parser.add_argument_group('calibration')
    calibration_group.add_argument(
        '--energy-cal',
        type=float,
        nargs='+',
        metavar='COEF',
        default=None,
        help='Energy equation coefficients "a b [c]" where E = a + b*x + c*x^2'
    )
    calibration_group.add_argument(
        '--width-cal',
        type=float,
        nargs=2,
        metavar=('ALPHA', 'BETA'),
        default=None,
        help='Width equation coefficients where FWHM = sqrt(alpha + beta*x)'
    )
    calibration_group.add_argument(
        '--width-mode',
        choices=['linear', 'sqrt'],
        default=None,
        help='Width equation form (default: sqrt)'
    )

    search_group = parser.add_argument_group('search parameters')
    search_group.add_argument(
        '--first', type=int, default=None,
        help='First channel to analyse (default: spectrum start)'
    )
    search_group.add_argument(
        '--last', type=int, default=None,
        help='Last channel to analyse (default: spectrum end)'
    )
    search_group.add_argument(
        '--peak-threshold', type=int, default=None,
        help='Peak search threshold (default: 10)'
    )
    search_group.add_argument(
        '--required-peaks', type=str, default=None,
        help='File of peak energies (keV) that must be fitted'
    )
    search_group.add_argument(
        '--region-threshold', type=float, default=None,
        help='Region search threshold in standard deviations (default: 2)'
    )
    search_group.add_argument(
        '--irw', type=int, default=None,
        help='Region padding in peak widths (default: 3)'
    )
    search_group.add_argument(
        '--irch', type=int, default=None,
        help='Channels trimmed from pads of close regions (default: 2)'
    )
    search_group.add_argument(
        '--maxrgnwid', type=int, default=None,
        help='Maximum region width in channels (default: 150)'
    )

    fit_group = parser.add_argument_group('fit parameters')
    fit_group.add_argument('--ncycle', type=int, default=None,
                           help='Maximum fit cycles per region (default: 10)')
    fit_group.add_argument('--max-npeaks', type=int, default=None,
                           help='Maximum peaks per region (default: 10)')
    fit_group.add_argument('--max-resid', type=float, default=None,
                           help='Residual that triggers adding a peak (default: 20)')
    fit_group.add_argument('--pkwd-mode', choices=['varies', 'fixed'], default=None,
                           help='Whether the average peak width floats (default: varies)')
    fit_group.add_argument('--cc-type', choices=['larger', 'smaller', 'larger_inc'],
                           default=None, help='Convergence criteria (default: larger)')

    output_group = parser.add_argument_group('output parameters')
    output_group.add_argument(
        '--output-dir',
        type=str,
        default='.',
        help='Output directory for results (default: current directory)'
    )
    output_group.add_argument(
        '--output-prefix',
        type=str,
        default='',
        help='Prefix for output files (default: none)'
    )
    output_group.add_argument(
        '--no-plot',
        action='store_true',
        help='Skip generating region plots'
    )
    output_group.add_argument(
        '--plot-format',
        type=str,
        choices=['png', 'pdf', 'svg'],
        default='png',
        help='Format for region plots (default: png)'
    )
    output_group.add_argument(
        '--log-file',
        type=str,
        default=None,
        help='Also write log messages to this file'
    )

    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress all output except errors'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    return parser.parse_args(argv)


def load_configuration(args) -> Dict[str, Any]:
    """
    Load and merge configuration from defaults, file and command line.

    Parameters:
        args: Command line arguments

    Returns:
        dict: Merged configuration
    """
    config = DEFAULT_CONFIG
    if args.config:
        config = merge_config(config, load_config(args.config))

    energy = None
    if args.energy_cal:
        if len(args.energy_cal) not in (2, 3):
            raise ValueError("--energy-cal takes 2 or 3 coefficients")
        coefs = list(args.energy_cal) + [0.0]
        energy = {'a': coefs[0], 'b': coefs[1], 'c': coefs[2],
                  'mode': 'quadratic' if len(args.energy_cal) == 3 else 'linear'}

    width = {}
    if args.width_cal:
        width.update({'alpha': args.width_cal[0], 'beta': args.width_cal[1]})
    if args.width_mode:
        width['mode'] = args.width_mode

    cli_config = {
        'peak_search': {'threshold': args.peak_threshold},
        'region_search': {
            'threshold': args.region_threshold,
            'irw': args.irw,
            'irch': args.irch,
            'maxrgnwid': args.maxrgnwid,
        },
        'fit': {
            'ncycle': args.ncycle,
            'max_npeaks': args.max_npeaks,
            'max_resid': args.max_resid,
            'pkwd_mode': args.pkwd_mode,
            'cc_type': args.cc_type,
        },
        'energy_calibration': energy,
        'width_calibration': width,
    }

    # CLI overrides file, unset options leave it alone
    overrides = {}
    for key, value in cli_config.items():
        if isinstance(value, dict):
            value = {k: v for k, v in value.items() if v is not None}
            if value:
                overrides[key] = value
        elif value is not None:
            overrides[key] = value

    config = merge_config(config, overrides)
    validate_parameters(config)
    return config


def analyse_spectrum(spectrum, config: Dict[str, Any], chanrange: ChannelRange,
                     required: PeakList = None) -> List[FitRecord]:
    """
    Search, group and fit all peaks of a spectrum.

    Parameters:
        spectrum: Spectrum to analyse
        config: Merged configuration
        chanrange: Channels to analyse
        required: Energy peaks that must be fitted

    Returns:
        Best fit record of every region
    """
    logger = logging.getLogger('gaussfit')
    ex = EnergyEquation.from_dict(config['energy_calibration'])
    wx = WidthEquation.from_dict(config['width_calibration'])
    fit_config = config['fit']
    parms = FitParms(fit_config['ncycle'], fit_config['nout'], fit_config['max_npeaks'],
                     fit_config['pkwd_mode'], fit_config['cc_type'], fit_config['max_resid'])

    found = search_peaks(spectrum, chanrange, wx, config['peak_search']['threshold']).peaks

    all_peaks = PeakList(len(found) + (len(required) if required else 0), found)
    if required:
        update_peaklist(ex, required)
        for peak in prune_required(wx, found, required):
            all_peaks.add_peak(peak)
    update_peaklist(ex, all_peaks)

    rs = config['region_search']
    regions = search_regions(spectrum, chanrange, wx, rs['threshold'], rs['irw'],
                             rs['irch'], all_peaks, rs['mode'], rs['maxrgnwid'])
    logger.info(f"{len(all_peaks)} peaks in {len(regions)} regions")

    results = []
    for region in regions:
        region_peaks = get_regnpks(region, all_peaks, max(1, len(all_peaks)))
        if len(region_peaks) > parms.max_npeaks:
            logger.warning(f"{region} has {len(region_peaks)} peaks, "
                           f"fitting the first {parms.max_npeaks}")
            region_peaks = PeakList(parms.max_npeaks, list(region_peaks)[:parms.max_npeaks])
        try:
            records = fit_region(region, spectrum, region_peaks, parms, ex, wx,
                                 fit_config.get('nplots_per_chan', 1))
        except GaussError as e:
            logger.error(f"Fit of {region} failed: {e}")
            continue
        final = records[-1]
        if final.summary is None:
            best = best_records(records, 1)
            if best:
                final = best[0]
        results.append(final)

    return results


def main(argv=None):
    """Main execution function."""
    args = parse_arguments(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logger = setup_logger('gaussfit', level, args.log_file)

    try:
        config = load_configuration(args)
    except (ValueError, FileNotFoundError) as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        spectrum = load_spectrum(args.spectrum)
        required = load_peaks(args.required_peaks) if args.required_peaks else None
    except (GaussError, FileNotFoundError) as e:
        logger.error(f"Error loading input: {e}")
        return 1
    logger.info(f"Loaded {spectrum.nchannels} channels from {args.spectrum}")

    first = spectrum.first if args.first is None else args.first
    last = spectrum.last if args.last is None else args.last

    try:
        chanrange = ChannelRange(first, last)
        results = analyse_spectrum(spectrum, config, chanrange, required)
    except GaussError as e:
        logger.error(f"Analysis failed: {e}")
        return 1

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    prefix = args.output_prefix
    if prefix and not prefix.endswith('_'):
        prefix += '_'
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')

    results_file = output_dir / f'{prefix}fits_{timestamp}.csv'
    export_results(results, str(results_file))
    report_file = output_dir / f'{prefix}report_{timestamp}.txt'
    write_text_report(results, str(report_file))
    logger.info(f"Results saved to {results_file} and {report_file}")

    if not args.no_plot:
        plotted = [record for record in results if record.curve is not None]
        for record in plotted:
            plot_file = output_dir / (f'{prefix}region_{record.region.first}_'
                                      f'{record.region.last}.{args.plot_format}')
            plot_fit_record(record, str(plot_file))
        logger.info(f"Plotted {len(plotted)} regions to {output_dir}")

    return 0


def entry_point():
    """Entry point for console script."""
    sys.exit(main())


if __name__ == "__main__":
    entry_point()
