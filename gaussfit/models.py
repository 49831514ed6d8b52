"""
Core data containers for gamma spectrum analysis.

This module provides the spectrum, channel range, peak and region
containers shared by the search, calibration and fitting modules.
Peak and region lists have a fixed capacity; adding past it raises
CapacityExceededError and leaves the list as it was.
"""

from typing import List, Iterator, Optional, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cmp_to_key
import math

import numpy as np

from .errors import CapacityExceededError, InvalidInputError


# Two channels or energies closer than this are the same peak
PEAK_THRESHOLD = 1e-5


class PeakType(Enum):
    """How a peak was defined."""
    CHANNEL = 'channel'
    ENERGY = 'energy'


class PeakWidthMode(Enum):
    """Whether the average peak width floats during a fit."""
    VARIES = 'varies'
    FIXED = 'fixed'


class CCType(Enum):
    """Convergence criteria for the region fit."""
    LARGER = 'larger'
    SMALLER = 'smaller'
    LARGER_INC = 'larger_inc'


class RegionSearchMode(Enum):
    """Region search output filter."""
    ALL = 'all'
    FORPKS = 'forpks'


@dataclass(frozen=True)
class ChannelRange:
    """Inclusive span of channels."""
    first: int
    last: int

    def __post_init__(self):
        if self.first > self.last:
            raise InvalidInputError(
                f"Invalid channel range: first ({self.first}) > last ({self.last})")

    @property
    def width(self) -> int:
        """Number of channels in the range."""
        return self.last - self.first + 1

    def contains(self, channel: float) -> bool:
        return self.first <= channel <= self.last

    def __str__(self) -> str:
        return f"Region [{self.first}, {self.last}]"


class Spectrum:
    """
    Channel-count spectrum.

    Counts are stored as a non-negative integer array; channel ``first``
    maps to index 0. The per-channel count uncertainty is derived from the
    counts whenever they are replaced.
    """

    def __init__(self, counts: Sequence[int], first: int = 0):
        """
        Initialize spectrum.

        Parameters:
            counts: Counts per channel
            first: Channel number of the first count
        """
        if first < 0:
            raise InvalidInputError(f"Negative first channel: {first}")
        self.first = int(first)
        self.counts = np.zeros(0, dtype=np.int64)
        self.sig = np.zeros(0, dtype=float)
        self.set_counts(counts)

    def set_counts(self, counts: Sequence[int]):
        """Replace the counts and recompute the count uncertainties."""
        counts = np.asarray(counts)
        if counts.ndim != 1 or len(counts) == 0:
            raise InvalidInputError("Spectrum counts must be a non-empty 1-D array")
        if np.any(counts < 0):
            raise InvalidInputError("Spectrum counts must be non-negative")
        self.counts = counts.astype(np.int64)
        self.sig = count_uncertainty(self.counts)

    @property
    def nchannels(self) -> int:
        return len(self.counts)

    @property
    def last(self) -> int:
        return self.first + len(self.counts) - 1

    @property
    def channel_range(self) -> ChannelRange:
        return ChannelRange(self.first, self.last)

    def _index(self, channel: int) -> int:
        if channel < self.first or channel > self.last:
            raise InvalidInputError(
                f"Channel {channel} is outside the spectrum [{self.first}, {self.last}]")
        return channel - self.first

    def count_at(self, channel: int) -> int:
        return int(self.counts[self._index(channel)])

    def sig_at(self, channel: int) -> float:
        return float(self.sig[self._index(channel)])

    def counts_in(self, region: ChannelRange) -> np.ndarray:
        """Counts for the channels of a region."""
        return self.counts[region.first - self.first:region.last - self.first + 1]

    def sig_in(self, region: ChannelRange) -> np.ndarray:
        """Count uncertainties for the channels of a region."""
        return self.sig[region.first - self.first:region.last - self.first + 1]


def count_uncertainty(counts: np.ndarray) -> np.ndarray:
    """
    Per-channel count uncertainty.

    Square root of the count, with low-count channels (count <= 10)
    smoothed over their neighbours so that empty channels do not get
    an uncertainty of zero.

    Parameters:
        counts: Channel counts

    Returns:
        Array of uncertainties, same length as counts
    """
    c = np.asarray(counts, dtype=float)
    n = len(c)
    sig = np.sqrt(np.maximum(c, 0.0))
    sig[sig <= 0] = 0.3

    for i in np.nonzero(c <= 10)[0]:
        if i < 2:
            window = c[i:i + 3]
            value = np.sqrt(window.sum() / len(window))
            sig[i] = value if value > 0 else 0.5773503
        elif i >= n - 2:
            window = c[i - 2:i + 1]
            value = np.sqrt(window.sum() / len(window))
            sig[i] = value if value > 0 else 0.5773503
        else:
            value = math.sqrt((c[i - 2] + c[i + 2] + 2 * (c[i - 1] + c[i + 1])
                               + 3 * c[i]) / 9.0)
            sig[i] = value if value > 0 else 0.3333333

    return sig


@dataclass
class Peak:
    """
    A peak defined either by channel or by energy.

    The derived quantity (energy for a channel peak, channel for an
    energy peak) is only meaningful when its *_valid flag is set.
    """
    type: PeakType = PeakType.CHANNEL
    channel: float = 0.0
    channel_valid: bool = False
    energy: float = 0.0
    energy_valid: bool = False
    sige: float = 0.0
    fixed_centroid: bool = False

    @classmethod
    def from_channel(cls, channel: float, fixed: bool = False) -> 'Peak':
        return cls(PeakType.CHANNEL, float(channel), True, 0.0, False, 0.0, fixed)

    @classmethod
    def from_energy(cls, energy: float, sige: float = 0.0) -> 'Peak':
        return cls(PeakType.ENERGY, 0.0, False, float(energy), True, float(sige), True)

    def compare(self, other: 'Peak') -> int:
        """
        Three-way comparison used to order and de-duplicate peaks.

        Returns:
            -1, 0 or 1
        """
        if self.type == other.type:
            use_channel = self.type == PeakType.CHANNEL
        else:
            use_channel = self.channel_valid and other.channel_valid

        if use_channel:
            delta = self.channel - other.channel
        else:
            delta = self.energy - other.energy

        if abs(delta) < PEAK_THRESHOLD:
            return 0
        return -1 if delta < 0 else 1


class PeakList:
    """
    Capacity-bounded sorted list of peaks.

    Peaks that compare equal to one already stored are ignored.
    """

    def __init__(self, capacity: int, peaks: Optional[Sequence[Peak]] = None):
        if capacity < 0:
            raise InvalidInputError(f"Negative peak list capacity: {capacity}")
        self.capacity = capacity
        self._peaks: List[Peak] = []
        for peak in peaks or []:
            self.add_peak(peak)

    def __len__(self) -> int:
        return len(self._peaks)

    def __iter__(self) -> Iterator[Peak]:
        return iter(self._peaks)

    def __getitem__(self, index: int) -> Peak:
        return self._peaks[index]

    def __repr__(self) -> str:
        return f"PeakList(capacity={self.capacity}, peaks={self._peaks!r})"

    @property
    def npeaks(self) -> int:
        return len(self._peaks)

    def add_peak(self, peak: Peak) -> bool:
        """
        Insert a copy of a peak in sorted position.

        Parameters:
            peak: Peak to copy

        Returns:
            True if added, False if an equal peak was already present

        Raises:
            CapacityExceededError: If the list is full
        """
        position = len(self._peaks)
        for i, existing in enumerate(self._peaks):
            order = peak.compare(existing)
            if order == 0:
                return False
            if order < 0:
                position = i
                break

        if len(self._peaks) >= self.capacity:
            raise CapacityExceededError(
                f"Peak list is full ({self.capacity} peaks)", partial=self)

        self._peaks.insert(position, replace(peak))
        return True

    def add_chanpeak(self, channel: float) -> bool:
        """Add an unfixed channel-defined peak."""
        return self.add_peak(Peak.from_channel(channel))

    def add_egypeak(self, energy: float, sige: float = 0.0) -> bool:
        """Add a fixed-centroid energy-defined peak."""
        return self.add_peak(Peak.from_energy(energy, sige))

    def resort(self):
        """Restore sorted order after peaks were changed in place."""
        self._peaks.sort(key=cmp_to_key(Peak.compare))

    def copy(self, capacity: Optional[int] = None) -> 'PeakList':
        return PeakList(self.capacity if capacity is None else capacity, self._peaks)

    def channels(self) -> List[float]:
        """Channels of the peaks whose channel is valid."""
        return [p.channel for p in self._peaks if p.channel_valid]


def get_regnpks(region: ChannelRange, peaks: PeakList,
                capacity: Optional[int] = None) -> PeakList:
    """
    Select the peaks whose valid channel lies inside a region.

    Parameters:
        region: Channel range to test against
        peaks: Candidate peaks
        capacity: Capacity of the returned list (defaults to that of peaks)

    Returns:
        New PeakList with the peaks inside the region

    Raises:
        CapacityExceededError: If capacity <= 0 or too many peaks match
    """
    if capacity is None:
        capacity = peaks.capacity
    if capacity <= 0:
        raise CapacityExceededError(
            f"No room for region peaks (capacity {capacity})", partial=PeakList(0))

    answer = PeakList(capacity)
    for peak in peaks:
        if peak.channel_valid and region.contains(peak.channel):
            answer.add_peak(peak)
    return answer


class Regions:
    """Capacity-bounded list of channel ranges."""

    def __init__(self, capacity: int, ranges: Optional[Sequence[ChannelRange]] = None):
        if capacity < 0:
            raise InvalidInputError(f"Negative regions capacity: {capacity}")
        self.capacity = capacity
        self._ranges: List[ChannelRange] = []
        for rng in ranges or []:
            self.add(rng)

    def __len__(self) -> int:
        return len(self._ranges)

    def __iter__(self) -> Iterator[ChannelRange]:
        return iter(self._ranges)

    def __getitem__(self, index: int) -> ChannelRange:
        return self._ranges[index]

    def __repr__(self) -> str:
        return f"Regions(capacity={self.capacity}, ranges={self._ranges!r})"

    @property
    def nregions(self) -> int:
        return len(self._ranges)

    def add(self, rng: ChannelRange):
        """
        Append a region.

        Raises:
            CapacityExceededError: If the list is full
        """
        if len(self._ranges) >= self.capacity:
            raise CapacityExceededError(
                f"Regions list is full ({self.capacity} regions)", partial=self)
        self._ranges.append(rng)


@dataclass
class FitParms:
    """Controls for the region fit cycles."""
    ncycle: int = 10
    nout: int = 1
    max_npeaks: int = 10
    pkwd_mode: PeakWidthMode = PeakWidthMode.VARIES
    cc_type: CCType = CCType.LARGER
    max_resid: float = 20.0

    def __post_init__(self):
        if self.ncycle < 1:
            raise InvalidInputError(f"ncycle must be at least 1, got {self.ncycle}")
        if self.nout < 1:
            raise InvalidInputError(f"nout must be at least 1, got {self.nout}")
        if self.max_npeaks < 1:
            raise InvalidInputError(f"max_npeaks must be at least 1, got {self.max_npeaks}")
        self.pkwd_mode = PeakWidthMode(self.pkwd_mode)
        self.cc_type = CCType(self.cc_type)


@dataclass
class PeakRefinement:
    """Centroid refinement details for one found peak."""
    raw_channel: int
    refine_region: ChannelRange
    net_area: float = 0.0
    background: float = 0.0
    refined_channel: float = 0.0
    use_refinement: bool = False

    @property
    def ratio(self) -> float:
        """Net area significance: net / sqrt(|net| + 2|background|)."""
        denominator = math.sqrt(abs(self.net_area) + 2 * abs(self.background))
        if denominator < PEAK_THRESHOLD:
            denominator = 1.0
        return self.net_area / denominator


@dataclass
class PeakSearchResults:
    """Output of the peak search."""
    peaks: PeakList
    refinements: List[PeakRefinement] = field(default_factory=list)
    cross_correlation: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
