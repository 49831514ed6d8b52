"""
Output generation for region fits.

This module renders fit records as plots and plain-text reports.
"""

from typing import List, Optional
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.backends.backend_pdf import PdfPages

from .fitting import FitRecord


def plot_fit_record(record: FitRecord,
                    output_file: str,
                    show_components: bool = True,
                    log_scale: bool = False):
    """
    Plot the counts, fitted curve and residuals of one fit record.

    Parameters:
        record: Fit record with a curve
        output_file: Output file path (.pdf writes a PDF page)
        show_components: Whether to draw each peak component
        log_scale: Whether to use log scale for the counts axis
    """
    if record.curve is None:
        raise ValueError(f"Fit cycle {record.cycle} has no curve to plot")

    curve = record.curve
    region = record.region
    chans = np.arange(region.first, region.last + 1)
    counts = record.spectrum.counts_in(region)

    fig = plt.figure(figsize=(10, 7))
    gs = fig.add_gridspec(2, 1, height_ratios=[3, 1], hspace=0.05)
    ax1 = fig.add_subplot(gs[0])
    ax2 = fig.add_subplot(gs[1], sharex=ax1)

    ax1.errorbar(chans, counts, yerr=record.spectrum.sig_in(region), fmt='k.',
                 markersize=3, linewidth=0.5, label='Counts')
    ax1.plot(curve.channels, curve.fit, 'r-', linewidth=1.5, label='Fit')
    ax1.plot(curve.channels, curve.back, 'b--', linewidth=1, label='Background')

    if show_components:
        for i, component in enumerate(curve.components):
            ax1.fill_between(curve.channels, curve.back, component, alpha=0.2,
                             label=f'Peak {i+1}' if i < 5 else None)

    if record.summary is not None:
        for channel, outside in zip(record.summary.channel, record.summary.outside):
            if not outside:
                ax1.axvline(channel, color='g', linestyle=':', alpha=0.5, linewidth=0.8)

    ax1.set_ylabel('Counts', fontsize=11)
    if log_scale:
        ax1.set_yscale('log')
        ax1.set_ylim(bottom=0.5)
    ax1.grid(True, alpha=0.3, which='both')
    ax1.legend(loc='upper right', fontsize=9)
    ax1.set_title(f'{region}: cycle {record.cycle}, '
                  f'chi² = {record.chi_sq:.3f}', fontsize=12)
    plt.setp(ax1.get_xticklabels(), visible=False)

    ax2.bar(chans, curve.residuals, width=0.8, color='gray')
    ax2.axhline(y=0, color='r', linestyle='-', linewidth=1)
    ax2.set_ylabel('Residual (σ)', fontsize=11)
    ax2.set_xlabel('Channel', fontsize=11)
    ax2.grid(True, alpha=0.3)

    output_path = Path(output_file)
    if output_path.suffix.lower() == '.pdf':
        with PdfPages(output_file) as pdf:
            pdf.savefig(fig, bbox_inches='tight')
    else:
        plt.savefig(output_file, dpi=150, bbox_inches='tight')

    plt.close(fig)


def write_text_report(records: List[FitRecord],
                      output_file: str,
                      title: Optional[str] = None):
    """
    Write a formatted text report of region fits.

    Parameters:
        records: Fit records, one block each
        output_file: Output file path
        title: Optional heading
    """
    with open(output_file, 'w') as f:
        f.write("=" * 70 + "\n")
        f.write((title or "GAMMA SPECTRUM REGION FIT REPORT") + "\n")
        f.write("=" * 70 + "\n\n")

        for record in records:
            f.write(record.as_text() + "\n")
            f.write("-" * 70 + "\n")

        f.write("Flags: F = fixed centroid, N = negative height, "
                "O = outside region, P = positive/negative pair\n")
        f.write("=" * 70 + "\n")
