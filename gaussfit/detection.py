"""
Peak detection algorithms for gamma spectroscopy.

This module locates candidate peaks by cross-correlating the spectrum
with a square-wave kernel sized to the local peak width, refines each
candidate centroid with a parabola fitted to the log of its net counts,
and prunes required peaks that duplicate found ones.
"""

from typing import List, Tuple, Optional
import logging

import numpy as np

from .calibration import WidthEquation
from .errors import InvalidInputError
from .models import (ChannelRange, PeakList, PeakRefinement, PeakSearchResults,
                     Spectrum)

logger = logging.getLogger(__name__)

# Kernel width is recomputed every UPDATE_INTERVAL channels
UPDATE_INTERVAL = 10
MIN_PEAKWIDTH = 1
# Peaks at least this wide are located by their run above threshold
MAX_PEAKWIDTH = 10
MIN_SQWAV = 3 * MIN_PEAKWIDTH
MAX_FITWIDTH_ODD = 1001
BACKGROUND_CHANNELS = 5


def peak_width(wx: WidthEquation, channel: float) -> float:
    """Width at a channel, falling back to the minimum peak width."""
    return wx.width_or(channel, MIN_PEAKWIDTH)


def square_wave_width(wx: WidthEquation, channel: float) -> int:
    """
    Odd kernel block width for a channel.

    Parameters:
        wx: Width equation
        channel: Channel number

    Returns:
        Odd integer, at least MIN_SQWAV
    """
    pw = peak_width(wx, channel)
    if pw <= 0:
        return MIN_SQWAV
    sqwav = (int(pw) // 2) * 2 + 1
    return max(MIN_SQWAV, sqwav)


def cross_correlation(spectrum: Spectrum, chanrange: ChannelRange,
                      wx: WidthEquation) -> Tuple[np.ndarray, int]:
    """
    Square-wave cross-correlation of the count uncertainties.

    At each channel three consecutive blocks of kernel width are summed
    with weights -1, +2, -1, so a peak centred on the middle block gives
    a large positive value.

    Parameters:
        spectrum: Spectrum to scan
        chanrange: Channels to scan
        wx: Width equation giving the kernel width

    Returns:
        tuple: (values per spectrum channel, first channel not scanned)
    """
    values = np.zeros(spectrum.nchannels, dtype=np.int64)
    hi_channel = chanrange.last - int(3 * square_wave_width(wx, chanrange.last))

    sig = spectrum.sig.astype(np.int64)
    cumulative = np.concatenate(([0], np.cumsum(sig)))

    def block(start: int, stop: int) -> int:
        return int(cumulative[stop] - cumulative[start])

    sqwav = square_wave_width(wx, chanrange.first)
    next_update = UPDATE_INTERVAL * (chanrange.first // UPDATE_INTERVAL + 1)

    for chan in range(chanrange.first, hi_channel):
        if chan == next_update:
            sqwav = square_wave_width(wx, chan)
            next_update += UPDATE_INTERVAL

        start = chan - spectrum.first
        if start + 3 * sqwav > spectrum.nchannels:
            break
        values[start] = (-block(start, start + sqwav)
                         + 2 * block(start + sqwav, start + 2 * sqwav)
                         - block(start + 2 * sqwav, start + 3 * sqwav))

    return values, hi_channel


def _mark_raw_peak(raw_peaks: List[int], new_peak: int, pw: float):
    """Append a raw peak unless it is within one peak width of the last one."""
    if raw_peaks and raw_peaks[-1] + pw >= new_peak:
        return
    raw_peaks.append(new_peak)


def find_raw_peaks(values: np.ndarray, spectrum: Spectrum,
                   chanrange: ChannelRange, hi_channel: int,
                   wx: WidthEquation, threshold: int) -> List[int]:
    """
    Locate raw peak channels in the cross-correlation.

    Narrow peaks are local maxima above threshold. Wide peaks are placed
    at the middle of each run of values at or above threshold.

    Returns:
        Ascending list of raw peak channels
    """
    raw_peaks: List[int] = []
    pass_count = 0

    for chan in range(chanrange.first + 2, hi_channel):
        i = chan - spectrum.first
        pw = peak_width(wx, chan)
        sqwav = square_wave_width(wx, chan)

        if pw < MAX_PEAKWIDTH:
            if (values[i - 1] > threshold and values[i - 1] > values[i]
                    and values[i - 1] >= values[i - 2]):
                _mark_raw_peak(raw_peaks, chan - 1 + int(1.5 * sqwav), pw)
                pass_count = 0
        elif values[i] >= threshold:
            pass_count += 1
        elif pass_count > 0:
            _mark_raw_peak(raw_peaks,
                           int(chan - 0.5 * pass_count + 1.5 * sqwav), pw)
            pass_count = 0

    return raw_peaks


def refine_peak(spectrum: Spectrum, raw_channel: int, pw: float) -> PeakRefinement:
    """
    Refine a raw peak centroid.

    A parabola is fitted to ln(net counts) over a window one peak width
    wide; its vertex is the refined centroid. The background is the
    smaller of the mean counts just before and just after the window.

    Parameters:
        spectrum: Spectrum
        raw_channel: Raw peak channel
        pw: Peak width at the raw channel

    Returns:
        PeakRefinement; use_refinement is False when the vertex lies
        outside the window or the net area is not positive
    """
    pcw = min(MAX_FITWIDTH_ODD, int(pw))
    hpcw = max(pcw, 0) // 2
    pcw = 2 * hpcw + 1
    low = raw_channel - hpcw
    high = raw_channel + hpcw + 1
    window = ChannelRange(low, raw_channel + hpcw)
    refinement = PeakRefinement(raw_channel, window, refined_channel=float(raw_channel))

    if (raw_channel < spectrum.first + MAX_PEAKWIDTH
            or raw_channel > spectrum.last - MAX_PEAKWIDTH):
        return refinement
    if (low - BACKGROUND_CHANNELS < spectrum.first
            or high + BACKGROUND_CHANNELS > spectrum.last):
        return refinement

    counts = spectrum.counts
    base = spectrum.first
    pre_back = int(counts[low - BACKGROUND_CHANNELS - base:low - base].sum()) // BACKGROUND_CHANNELS
    post_back = int(counts[high + 1 - base:high + 1 + BACKGROUND_CHANNELS - base].sum()) // BACKGROUND_CHANNELS
    average_back = min(pre_back, post_back)

    net = counts[low - base:low - base + pcw].astype(float) - average_back
    refinement.net_area = float(net.sum())
    refinement.background = float(average_back * pcw)

    if pcw < 3:
        return refinement

    x = np.arange(pcw, dtype=float)
    y = np.log(np.maximum(1.0, net))
    curvature, slope, _ = np.polyfit(x, y, 2)
    if curvature == 0:
        return refinement

    refined = -slope / (2.0 * curvature) + low
    refinement.refined_channel = float(refined)
    refinement.use_refinement = (abs(raw_channel - refined) <= hpcw
                                 and refinement.net_area > 0)
    return refinement


def search_peaks(spectrum: Spectrum,
                 chanrange: ChannelRange,
                 wx: WidthEquation,
                 threshold: int,
                 capacity: Optional[int] = None) -> PeakSearchResults:
    """
    Search a channel range for peaks.

    Parameters:
        spectrum: Spectrum to search
        chanrange: Channels to search
        wx: Width equation
        threshold: Cross-correlation cut; smaller finds more peaks
        capacity: Capacity of the returned peak list (defaults to the
            number of peaks found)

    Returns:
        PeakSearchResults with channel peaks, refinements and the
        per-channel cross-correlation

    Raises:
        InvalidInputError: For a range outside the spectrum or threshold <= 0
        CapacityExceededError: If more peaks are found than capacity
    """
    if (chanrange.first < spectrum.first or chanrange.last > spectrum.last
            or chanrange.first > chanrange.last):
        raise InvalidInputError(f"Bad channel range for peak search: {chanrange}")
    if threshold <= 0:
        raise InvalidInputError(f"Bad peak search threshold: {threshold}")

    values, hi_channel = cross_correlation(spectrum, chanrange, wx)
    raw_peaks = find_raw_peaks(values, spectrum, chanrange, hi_channel, wx, threshold)

    refinements = [refine_peak(spectrum, raw, peak_width(wx, raw)) for raw in raw_peaks]

    if capacity is None:
        capacity = len(refinements)
    peaks = PeakList(capacity)
    results = PeakSearchResults(peaks, refinements, values)
    for refinement in refinements:
        if refinement.use_refinement:
            peaks.add_chanpeak(refinement.refined_channel)
        else:
            peaks.add_chanpeak(float(refinement.raw_channel))

    logger.info(f"Peak search over {chanrange} found {len(peaks)} peaks "
                f"(threshold={threshold})")
    return results


def prune_required(wx: WidthEquation,
                   searched_peaks: PeakList,
                   required_peaks: PeakList) -> PeakList:
    """
    Remove required peaks that duplicate searched peaks.

    A required peak is dropped when it lies strictly within one peak
    width of a searched peak, the width being taken at the searched
    peak's channel. Required peaks without a valid channel are dropped.

    Parameters:
        wx: Width equation
        searched_peaks: Peaks found by the search
        required_peaks: Peaks the user requires

    Returns:
        New sorted PeakList of surviving required peaks
    """
    searched = [(p.channel, wx.width_or(p.channel, 0.0))
                for p in searched_peaks if p.channel_valid]

    answer = PeakList(required_peaks.capacity)
    for peak in required_peaks:
        if not peak.channel_valid:
            continue
        keep = True
        for channel, width in searched:
            if width <= 0:
                width = 3.0
            if abs(peak.channel - channel) < width:
                keep = False
                break
        if keep:
            answer.add_peak(peak)

    logger.debug(f"Pruned {len(required_peaks) - len(answer)} required peaks")
    return answer
