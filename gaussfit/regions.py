"""
Fit region search for gamma spectroscopy.

This module groups channels that stand significantly above a smoothed
background into spans, pads the spans by a multiple of the local peak
width, merges spans whose padding overlaps and splits regions that are
too wide to fit in one piece.
"""

from typing import List, Tuple, Optional, Union
import logging

import numpy as np

from .calibration import WidthEquation
from .errors import CapacityExceededError, InvalidInputError
from .models import ChannelRange, PeakList, Regions, RegionSearchMode, Spectrum

logger = logging.getLogger(__name__)

MIN_REGION_WIDTH = 4
MIN_PEAKWIDTH = 1
MAX_BACKGROUND_PASSES = 30
# Channels this close to the search range ends are never flagged
EDGE_CHANNELS = 5


def exceeds_width(regions: Regions, max_width: int) -> bool:
    """True if any region is wider than max_width channels."""
    return any(region.width > max_width for region in regions)


def _valid_peak_width(wx: WidthEquation, channel: float) -> float:
    return max(MIN_PEAKWIDTH, wx.width_or(channel, MIN_PEAKWIDTH))


def estimate_region_background(spectrum: Spectrum,
                               chanrange: ChannelRange,
                               wx: WidthEquation,
                               threshold: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Iteratively separate background channels from significant ones.

    Each pass smooths the spectrum with a moving average about 1.5 peak
    widths wide, using the current background estimate in place of the
    counts of already flagged channels, then flags every channel whose
    count reaches background + threshold * sigma.

    Parameters:
        spectrum: Spectrum
        chanrange: Channels to examine
        wx: Width equation
        threshold: Significance in count standard deviations

    Returns:
        tuple: (integer background per spectrum channel,
                boolean significance flag per spectrum channel)
    """
    counts = spectrum.counts
    n = spectrum.nchannels
    background = np.zeros(n, dtype=np.int64)
    flags = np.zeros(n, dtype=bool)

    bottom = max(0, chanrange.first + EDGE_CHANNELS - spectrum.first)
    top = min(n - 1, chanrange.last - EDGE_CHANNELS - spectrum.first)
    if bottom > top:
        return background, flags

    index = np.arange(bottom, top + 1)
    half = np.array([int((_valid_peak_width(wx, i + spectrum.first) + 0.1) * 1.5)
                     for i in index], dtype=np.int64)
    lo = np.maximum(0, index - half)
    hi = np.minimum(n - 1, index + half)
    cut = (threshold * spectrum.sig[index]).astype(np.int64)

    for _ in range(MAX_BACKGROUND_PASSES):
        source = np.where(flags, background, counts)
        cumulative = np.concatenate(([0], np.cumsum(source)))
        sums = cumulative[hi + 1] - cumulative[lo]
        background[index] = (sums + half) // (2 * half + 1)

        newly = (~flags[index]) & (counts[index] >= background[index] + cut) & (counts[index] > 1)
        if not np.any(newly):
            break
        flags[index[newly]] = True

    return background, flags


def _clean_flags(spectrum: Spectrum, chanrange: ChannelRange,
                 background: np.ndarray, flags: np.ndarray,
                 threshold: float, max_width: int):
    """
    Tidy single-channel features of the flag array in place.

    Isolated flagged channels are widened to three channels when they are
    significant, otherwise cleared. One-channel gaps between flagged
    channels are filled when the joined span stays within max_width.
    """
    counts = spectrum.counts
    sig = spectrum.sig
    n = spectrum.nchannels
    bottom = max(1, chanrange.first + EDGE_CHANNELS + 1 - spectrum.first)
    top = min(n - 2, chanrange.last - EDGE_CHANNELS - 1 - spectrum.first)

    for i in range(bottom, top + 1):
        if flags[i] and not flags[i - 1] and not flags[i + 1]:
            significant = (counts[i] >= background[i] + int(threshold * sig[i])
                           and counts[i - 1] >= background[i - 1]
                           and counts[i + 1] >= background[i + 1])
            if significant and _run_length(flags, i - 2, -1, bottom) + \
                    _run_length(flags, i + 2, 1, top) + 3 <= max_width:
                flags[i - 1] = True
                flags[i + 1] = True
            else:
                flags[i] = False

    run = 0
    for i in range(bottom, top + 1):
        if not flags[i] and flags[i - 1] and flags[i + 1]:
            if run + _run_length(flags, i + 1, 1, top) <= max_width:
                flags[i] = True
        run = run + 1 if flags[i] else 0


def _run_length(flags: np.ndarray, start: int, step: int, limit: int) -> int:
    """Number of consecutive flagged channels from start towards limit."""
    length = 0
    i = start
    while (i >= limit if step < 0 else i <= limit) and flags[i]:
        length += 1
        i += step
    return length


def _spans(spectrum: Spectrum, chanrange: ChannelRange,
           flags: np.ndarray) -> List[ChannelRange]:
    """Convert runs of flagged channels inside chanrange to ranges."""
    spans = []
    start = None
    for channel in range(chanrange.first, chanrange.last + 1):
        flagged = bool(flags[channel - spectrum.first])
        if flagged and start is None:
            start = channel
        elif not flagged and start is not None:
            spans.append(ChannelRange(start, channel - 1))
            start = None
    if start is not None:
        spans.append(ChannelRange(start, chanrange.last))
    return spans


def _is_peaked(spectrum: Spectrum, span: ChannelRange, background: np.ndarray,
               wx: WidthEquation, threshold: float) -> bool:
    """
    True if a span holds a peak-like excess over background.

    The channel of largest excess must exceed background by threshold
    standard deviations, and at most one channel within about half a
    peak width of it may be at or below background.
    """
    base = spectrum.first
    lo = span.first - base
    excess = spectrum.counts[lo:span.last - base + 1] - background[lo:span.last - base + 1]
    top = lo + int(np.argmax(excess))
    if excess.max() <= 0:
        return False

    half = max(MIN_PEAKWIDTH,
               int((_valid_peak_width(wx, top + base) + 0.5) / 2.0 - 1.0))
    window = slice(max(0, top - half), min(spectrum.nchannels, top + half + 2))
    below = int(np.sum(spectrum.counts[window] <= background[window]))

    cut = background[top] + int(threshold * spectrum.sig[top])
    return below <= 1 and spectrum.counts[top] > cut


def pad_spans(spans: List[ChannelRange], chanrange: ChannelRange,
              wx: WidthEquation, irw: int, irch: int) -> List[ChannelRange]:
    """
    Pad spans and merge the ones whose padding overlaps.

    Each span is padded by irw peak widths on both sides. When the padded
    spans of two neighbours would overlap, the facing pads are each
    reduced by irch channels; neighbours that still overlap are
    coalesced into one region.

    Parameters:
        spans: Ascending, non-overlapping spans
        chanrange: Search range; results are clamped to it
        wx: Width equation
        irw: Pad in peak widths
        irch: Channels removed from facing pads of close neighbours

    Returns:
        Ascending, non-overlapping padded regions
    """
    if not spans:
        return []

    pads = []
    for span in spans:
        pw = int(_valid_peak_width(wx, (span.first + span.last) / 2.0) + 0.5)
        pads.append(irw * pw)

    left = list(pads)
    right = list(pads)
    for i in range(len(spans) - 1):
        if spans[i].last + right[i] >= spans[i + 1].first - left[i + 1]:
            right[i] = max(0, right[i] - irch)
            left[i + 1] = max(0, left[i + 1] - irch)

    merged: List[List[int]] = []
    for span, lpad, rpad in zip(spans, left, right):
        first = max(chanrange.first, span.first - lpad)
        last = min(chanrange.last, span.last + rpad)
        if merged and first <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], last)
        else:
            merged.append([first, last])

    return [ChannelRange(first, last) for first, last in merged]


def split_region(spectrum: Spectrum, region: ChannelRange,
                 max_width: int) -> List[ChannelRange]:
    """
    Split a region until every piece is at most max_width channels.

    Each split is made after the lowest-count interior channel, the
    first such channel winning ties.
    """
    pieces = []
    pending = [region]
    while pending:
        current = pending.pop()
        if current.width <= max_width:
            pieces.append(current)
            continue
        interior = spectrum.counts[current.first + 1 - spectrum.first:
                                   current.last - spectrum.first]
        k = current.first + 1 + int(np.argmin(interior))
        pending.append(ChannelRange(k + 1, current.last))
        pending.append(ChannelRange(current.first, k))
    return sorted(pieces, key=lambda r: r.first)


def search_regions(spectrum: Spectrum,
                   chanrange: ChannelRange,
                   wx: WidthEquation,
                   threshold: float,
                   irw: int,
                   irch: int,
                   peaks: Optional[PeakList] = None,
                   mode: Union[str, RegionSearchMode] = RegionSearchMode.ALL,
                   maxrgnwid: int = 150,
                   capacity: Optional[int] = None) -> Regions:
    """
    Find fit regions in a channel range.

    Parameters:
        spectrum: Spectrum to search
        chanrange: Channels to search
        wx: Width equation
        threshold: Significance in count standard deviations; smaller
            finds more regions
        irw: Region padding in peak widths
        irch: Channels trimmed from the pads of close neighbours
        peaks: Peaks used by FORPKS mode
        mode: ALL returns every region; FORPKS only those holding a peak
        maxrgnwid: Maximum region width in channels
        capacity: Capacity of the returned Regions (defaults to the
            number of regions found)

    Returns:
        Regions sorted by first channel, without overlaps

    Raises:
        InvalidInputError: For bad ranges or parameters
        CapacityExceededError: If more regions are found than capacity;
            the error's partial attribute holds the regions that fit
    """
    mode = RegionSearchMode(mode)
    if (chanrange.first < spectrum.first or chanrange.last > spectrum.last
            or chanrange.first > chanrange.last):
        raise InvalidInputError(f"Bad channel range for region search: {chanrange}")
    if threshold <= 0:
        raise InvalidInputError(f"Bad region search threshold: {threshold}")
    if irw < 0 or irch < 0:
        raise InvalidInputError(f"Bad region padding: irw={irw}, irch={irch}")
    if maxrgnwid < MIN_REGION_WIDTH:
        raise InvalidInputError(
            f"Maximum region width must be at least {MIN_REGION_WIDTH}, got {maxrgnwid}")

    background, flags = estimate_region_background(spectrum, chanrange, wx, threshold)
    _clean_flags(spectrum, chanrange, background, flags, threshold, maxrgnwid)

    spans = [span for span in _spans(spectrum, chanrange, flags)
             if span.width >= MIN_REGION_WIDTH
             and _is_peaked(spectrum, span, background, wx, threshold)]

    found: List[ChannelRange] = []
    for region in pad_spans(spans, chanrange, wx, irw, irch):
        found.extend(split_region(spectrum, region, maxrgnwid))

    if mode == RegionSearchMode.FORPKS:
        channels = peaks.channels() if peaks is not None else []
        found = [region for region in found
                 if any(region.contains(channel) for channel in channels)]

    if capacity is None:
        capacity = len(found)
    regions = Regions(capacity)
    for region in found:
        try:
            regions.add(region)
        except CapacityExceededError as e:
            logger.warning(f"Region search found {len(found)} regions, "
                           f"room for {capacity}")
            raise CapacityExceededError(str(e), partial=regions)

    logger.info(f"Region search over {chanrange} found {len(regions)} regions "
                f"({mode.name})")
    return regions
