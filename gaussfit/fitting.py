"""
Multi-peak region fitting for gamma spectroscopy.

This module fits a sum of Gaussian peaks on a linear background to the
channels of one region with Levenberg-Marquardt least squares. The fit
runs in cycles; after each cycle a peak may be deleted (two peaks have
collapsed onto each other) or added (a large residual remains) before
the next cycle starts. Every cycle produces a FitRecord holding the
fitted background, a per-peak Summary and a plottable Curve.
"""

from typing import List, Dict, Tuple, Optional, Any
from dataclasses import dataclass, field
from enum import Enum
import logging
import math
import warnings

import numpy as np
from scipy.optimize import least_squares

from .calibration import EnergyEquation, WidthEquation, update_peaklist
from .errors import InvalidInputError
from .models import (CCType, ChannelRange, FitParms, PeakList, PeakWidthMode,
                     Spectrum, PEAK_THRESHOLD)

logger = logging.getLogger(__name__)

MU_FACTOR = math.sqrt(4 * math.log(2))
MU_CONSTRAINT = 10.0
AREA_FACTOR_SQUARED = math.pi / (4 * math.log(2))

# Energy window (keV) for the annihilation peak
PK511_ENERGY = 511.0
PK511_THRESHOLD = 0.6
# New peaks must be at least this many channels from existing ones
ADD_PEAK_DELTA = 1
# Peaks closer than this fraction of the initial width are merged
DELETE_PEAK_FRACTION = 0.2
MIN_CONSTRAINED_HEIGHT = 10.0

OVERDEFINED_MESSAGE = "too many variables. overdefined."

TOLERANCES = {
    (CCType.LARGER, PeakWidthMode.VARIES): (1e-5, 3e-5),
    (CCType.LARGER, PeakWidthMode.FIXED): (1e-4, 1e-4),
    (CCType.SMALLER, PeakWidthMode.VARIES): (1e-5, 1e-5),
    (CCType.SMALLER, PeakWidthMode.FIXED): (1e-5, 1e-5),
    (CCType.LARGER_INC, PeakWidthMode.VARIES): (1e-5, 3e-5),
    (CCType.LARGER_INC, PeakWidthMode.FIXED): (1e-5, 3e-5),
}


class CycleReturn(Enum):
    """What the cycle control decided after a fit cycle."""
    DONE = 'done'
    DELETE = 'delete'
    ADD = 'add'
    CONTINUE = 'continue'


def convergence_tolerances(parms: FitParms) -> Tuple[float, float]:
    """(ftol, xtol) for the optimizer."""
    return TOLERANCES[(parms.cc_type, parms.pkwd_mode)]


# Peak shape

def mu(x: np.ndarray, centroid: float, fwhm: float) -> np.ndarray:
    """Scaled distance from the centroid; zero when the width is zero."""
    if fwhm == 0:
        return np.zeros_like(np.asarray(x, dtype=float))
    return (np.asarray(x, dtype=float) - centroid) * MU_FACTOR / fwhm


def gaussian(x: np.ndarray, height: float, centroid: float, fwhm: float) -> np.ndarray:
    """
    Gaussian peak parameterized by its FWHM.

    The exponent is clamped at 10 widths so far tails stay finite.

    Parameters:
        x: Channel numbers
        height: Peak height
        centroid: Peak center position
        fwhm: Full width at half maximum in channels

    Returns:
        Gaussian peak values
    """
    m = np.clip(mu(x, centroid, fwhm), -MU_CONSTRAINT, MU_CONSTRAINT)
    return height * np.exp(-(m * m))


# Fit state

@dataclass
class PeakState:
    """One fitted peak."""
    centroid: float
    height: float
    add_width_511: float = 0.0
    fixed: bool = False

    def fwhm(self, avg_wid: float) -> float:
        return abs(avg_wid + self.add_width_511)

    def area(self, avg_wid: float) -> float:
        return self.fwhm(avg_wid) * self.height * math.sqrt(AREA_FACTOR_SQUARED)

    def constrain(self, region: ChannelRange, initial_width: float):
        """Pull parameters back into a sane range before refitting."""
        if self.height < MIN_CONSTRAINED_HEIGHT and self.height != 0:
            self.height = MIN_CONSTRAINED_HEIGHT
        if self.add_width_511 < 0:
            self.add_width_511 = initial_width
        if self.centroid < region.first + 2:
            self.centroid = float(region.first + 2)
        if self.centroid > region.last - 2:
            self.centroid = float(region.last - 2)


@dataclass
class FitState:
    """
    Current parameter values of a region fit.

    The background is intercept + slope * (x - region.first).
    """
    region: ChannelRange
    intercept: float
    slope: float
    avg_wid: float
    initial_width: float
    peaks: List[PeakState] = field(default_factory=list)
    contains_511: bool = False

    @classmethod
    def initial(cls, spectrum: Spectrum, region: ChannelRange,
                ex: EnergyEquation, wx: WidthEquation,
                peaks: PeakList) -> 'FitState':
        """
        Starting values for the first cycle.

        Parameters:
            spectrum: Spectrum
            region: Fit region
            ex: Energy equation (for the 511 keV check)
            wx: Width equation giving the average width
            peaks: Input peaks; only those whose rounded channel is in
                the region are used

        Returns:
            FitState with at least one peak
        """
        intercept = (spectrum.count_at(region.last - 1) + spectrum.count_at(region.last)) / 2.0
        xmid = (region.first + region.last + 1) // 2
        avg_wid = wx.width_or(xmid, 1.0)
        state = cls(region, intercept, 0.0, avg_wid, avg_wid)

        for peak in peaks:
            if not peak.channel_valid:
                continue
            rounded = int(math.floor(peak.channel + 0.5))
            if region.contains(rounded):
                height = spectrum.count_at(rounded) - intercept
                state.add_peak(peak.channel, float(ex.energy(peak.channel)),
                               height, peak.fixed_centroid)

        if not state.peaks:
            counts = spectrum.counts_in(region)
            channel = region.first + int(np.argmax(counts))
            if counts.max() <= 0:
                channel = region.first
            if channel < region.first + 2 or channel > region.last - 2:
                channel = (region.first + region.last) // 2
            height = spectrum.count_at(channel) - intercept
            state.add_peak(float(channel), float(ex.energy(channel)), height)
            logger.debug(f"No input peaks in {region}; seeded one at channel {channel}")

        return state

    def copy(self) -> 'FitState':
        return FitState(self.region, self.intercept, self.slope, self.avg_wid,
                        self.initial_width,
                        [PeakState(p.centroid, p.height, p.add_width_511, p.fixed)
                         for p in self.peaks],
                        self.contains_511)

    def add_peak(self, centroid: float, energy: float, height: float,
                 fixed: bool = False) -> PeakState:
        """Append a peak; the first one near 511 keV gets extra width."""
        add_width = 0.0
        if not self.contains_511 and abs(energy - PK511_ENERGY) <= PK511_THRESHOLD:
            self.contains_511 = True
            add_width = self.avg_wid
        peak = PeakState(float(centroid), float(height), add_width, fixed)
        self.peaks.append(peak)
        return peak

    def delete_peak(self, peak: PeakState):
        self.peaks.remove(peak)
        if peak.add_width_511 != 0:
            self.contains_511 = False

    def varied(self, pkwd_mode: PeakWidthMode) -> List[Tuple[str, int]]:
        """
        Parameters that the optimizer may change, in vector order.

        Returns:
            List of (name, peak index) pairs; the index is -1 for the
            background and average width
        """
        slots = [('intercept', -1), ('slope', -1)]
        if pkwd_mode == PeakWidthMode.VARIES and any(not p.fixed for p in self.peaks):
            slots.append(('avg_wid', -1))
        many = len(self.peaks) > 1 or pkwd_mode == PeakWidthMode.FIXED
        for k, peak in enumerate(self.peaks):
            slots.append(('height', k))
            if not peak.fixed:
                slots.append(('centroid', k))
            if peak.add_width_511 != 0 and many:
                slots.append(('add_width_511', k))
        return slots

    def get_x(self, slots: List[Tuple[str, int]]) -> np.ndarray:
        values = []
        for name, k in slots:
            if k < 0:
                values.append(getattr(self, name))
            else:
                values.append(getattr(self.peaks[k], name))
        return np.array(values, dtype=float)

    def update(self, x: np.ndarray, slots: List[Tuple[str, int]]):
        for value, (name, k) in zip(x, slots):
            if k < 0:
                setattr(self, name, float(value))
            else:
                setattr(self.peaks[k], name, float(value))

    def background(self, x: np.ndarray) -> np.ndarray:
        return self.intercept + self.slope * (np.asarray(x, dtype=float) - self.region.first)

    def component(self, x: np.ndarray, k: int) -> np.ndarray:
        peak = self.peaks[k]
        return gaussian(x, peak.height, peak.centroid, peak.fwhm(self.avg_wid))

    def model(self, x: np.ndarray) -> np.ndarray:
        total = self.background(x)
        for k in range(len(self.peaks)):
            total = total + self.component(x, k)
        return total

    def model_jacobian(self, x: np.ndarray, slots: List[Tuple[str, int]]) -> np.ndarray:
        """Derivatives of the model with respect to the varied parameters."""
        x = np.asarray(x, dtype=float)
        columns = []
        shapes = []
        for peak in self.peaks:
            fwhm = peak.fwhm(self.avg_wid)
            m = mu(x, peak.centroid, fwhm)
            g = gaussian(x, peak.height, peak.centroid, fwhm)
            if fwhm != 0:
                d_width = 2.0 * g * m * m / fwhm
                d_centroid = 2.0 * g * m * MU_FACTOR / fwhm
            else:
                d_width = np.zeros_like(x)
                d_centroid = np.zeros_like(x)
            m_clipped = np.clip(m, -MU_CONSTRAINT, MU_CONSTRAINT)
            shapes.append({'height': np.exp(-(m_clipped * m_clipped)),
                           'centroid': d_centroid,
                           'add_width_511': d_width})

        for name, k in slots:
            if name == 'intercept':
                columns.append(np.ones_like(x))
            elif name == 'slope':
                columns.append(x - self.region.first)
            elif name == 'avg_wid':
                columns.append(sum(s['add_width_511'] for s in shapes))
            else:
                columns.append(shapes[k][name])
        return np.column_stack(columns)


# Results

@dataclass
class BackgroundLinear:
    """Fitted linear background; the intercept is at the region start."""
    intercept: float = 0.0
    sigi: float = 0.0
    slope: float = 0.0
    sigs: float = 0.0


@dataclass
class Summary:
    """
    Per-peak fit results, sorted by channel.

    All arrays have length npeaks. The ratio compares the net counts in
    the region with the summed peak areas.
    """
    channel: np.ndarray
    sigc: np.ndarray
    height: np.ndarray
    sigh: np.ndarray
    wid: np.ndarray
    sigw: np.ndarray
    area: np.ndarray
    siga: np.ndarray
    energy: np.ndarray
    sige: np.ndarray
    fixed: np.ndarray
    negpeak: np.ndarray
    outside: np.ndarray
    posneg: np.ndarray
    ratio: float = 0.0

    @property
    def npeaks(self) -> int:
        return len(self.channel)

    def to_records(self) -> List[Dict[str, Any]]:
        """One dictionary per peak."""
        names = ['channel', 'sigc', 'height', 'sigh', 'wid', 'sigw', 'area',
                 'siga', 'energy', 'sige', 'fixed', 'negpeak', 'outside', 'posneg']
        return [{name: getattr(self, name)[i].item() for name in names}
                for i in range(self.npeaks)]


@dataclass
class Curve:
    """
    Fitted model sampled for plotting.

    ``x`` holds offsets from the region start at 1/nplots_per_chan
    spacing; ``components`` has one row per peak (peak plus background);
    ``residuals`` are (count - fit) / sigma at each channel.
    """
    region: ChannelRange
    nplots_per_chan: int
    x: np.ndarray
    fit: np.ndarray
    back: np.ndarray
    components: np.ndarray
    residuals: np.ndarray
    fit_at_channels: np.ndarray

    @property
    def npoints(self) -> int:
        return len(self.x)

    @property
    def channels(self) -> np.ndarray:
        return self.x + self.region.first

    def residual_at(self, channel: int) -> float:
        return float(self.residuals[channel - self.region.first])

    def fit_at(self, channel: int) -> float:
        return float(self.fit_at_channels[channel - self.region.first])

    def max_y(self, channel: int, delta: int) -> float:
        """Largest fit or component value within delta channels of channel."""
        if not self.region.contains(channel):
            return 0.0
        lo = max(channel - delta, self.region.first)
        hi = min(channel + delta, self.region.last)
        chans = self.channels
        mask = (chans >= lo) & (chans <= hi)
        values = [0.0, float(np.max(self.fit[mask]))]
        if len(self.components):
            values.append(float(np.max(self.components[:, mask])))
        return max(values)


def render_curve(state: FitState, spectrum: Spectrum, nplots_per_chan: int) -> Curve:
    """
    Sample a fit state over its region.

    Parameters:
        state: Fitted parameters
        spectrum: Spectrum the fit was made to
        nplots_per_chan: Points per channel

    Returns:
        Curve with (nchannels - 1) * nplots_per_chan + 1 points
    """
    if nplots_per_chan < 1:
        raise InvalidInputError(f"nplots_per_chan must be at least 1, got {nplots_per_chan}")
    region = state.region
    npoints = (region.width - 1) * nplots_per_chan + 1
    offsets = np.arange(npoints) / float(nplots_per_chan)
    x = offsets + region.first

    back = state.background(x)
    if state.peaks:
        components = np.vstack([state.component(x, k) + back
                                for k in range(len(state.peaks))])
        fit = back + np.sum(components - back, axis=0)
    else:
        components = np.zeros((0, npoints))
        fit = back.copy()

    chans = np.arange(region.first, region.last + 1)
    fit_at_channels = state.model(chans)
    residuals = ((spectrum.counts_in(region) - fit_at_channels)
                 / spectrum.sig_in(region))

    return Curve(region, nplots_per_chan, offsets, fit, back, components,
                 residuals, fit_at_channels)


@dataclass
class FitRecord:
    """
    Outcome of one fit cycle.

    A failed cycle has cycle_exception set; its summary and curve are
    None unless the optimizer produced parameters before failing.
    """
    cycle: int
    region: ChannelRange
    spectrum: Spectrum
    input_peaks: PeakList
    parms: FitParms
    ex: EnergyEquation
    wx: WidthEquation
    chi_sq: float = 0.0
    cycle_return: CycleReturn = CycleReturn.CONTINUE
    cycle_exception: Optional[str] = None
    background: BackgroundLinear = field(default_factory=BackgroundLinear)
    summary: Optional[Summary] = None
    curve: Optional[Curve] = None
    state: Optional[FitState] = field(default=None, repr=False)

    @property
    def npeaks(self) -> int:
        return self.summary.npeaks if self.summary is not None else 0

    def render(self, nplots_per_chan: int) -> Curve:
        """Curve of this record at another sampling density."""
        if self.state is None:
            raise InvalidInputError(f"Cycle {self.cycle} has no fitted parameters")
        return render_curve(self.state, self.spectrum, nplots_per_chan)

    def as_text(self, digits: int = 3) -> str:
        """
        Describe the record as plain text.

        Parameters:
            digits: Decimal places for numbers

        Returns:
            Multi-line report with the inputs, the cycle outcome and one
            line per fitted peak
        """
        def num(value: float) -> str:
            return f"{value:.{digits}f}"

        parms = self.parms
        lines = [
            str(self.region),
            str(self.ex),
            str(self.wx),
            f"Max Cycles={parms.ncycle}; Max Fits Returned={parms.nout}; "
            f"Max Npeaks={parms.max_npeaks}; Max Residual={parms.max_resid}",
            f"Peak Width={parms.pkwd_mode.name}; Convergence Criteria={parms.cc_type.name}",
        ]

        if self.cycle_exception is not None:
            lines.append(f"Fit Cycle={self.cycle}; Cycle returned={self.cycle_return.name}; "
                         f"Failure: {self.cycle_exception}")
            if self.summary is None:
                return '\n'.join(lines)

        summary = self.summary
        lines.append(f"Fit Cycle={self.cycle}; Cycle returned={self.cycle_return.name}; "
                     f"Fit Chi Squared={num(self.chi_sq)}; Area Ratio={num(summary.ratio)}; "
                     f"NPeaks={summary.npeaks}")
        lines.append("Peak Record: chan, sigc, height, sigh, width, sigw, area, siga, "
                     "energy, sige, flags")
        for i in range(summary.npeaks):
            flags = ''.join(mark for mark, on in (('F', summary.fixed[i]),
                                                  ('N', summary.negpeak[i]),
                                                  ('O', summary.outside[i]),
                                                  ('P', summary.posneg[i])) if on)
            values = ', '.join(num(v) for v in (
                summary.channel[i], summary.sigc[i], summary.height[i], summary.sigh[i],
                summary.wid[i], summary.sigw[i], summary.area[i], summary.siga[i],
                summary.energy[i], summary.sige[i]))
            lines.append(f"Peak {i+1}: {values}" + (f", {flags}" if flags else ''))
        lines.append("background: intercept at start of region, slope")
        lines.append(f"background: {num(self.background.intercept)} +/- "
                     f"{num(self.background.sigi)}, {num(self.background.slope)} +/- "
                     f"{num(self.background.sigs)}")
        return '\n'.join(lines)

    def output_peaks(self) -> PeakList:
        """
        Fitted centroids as channel peaks.

        A peak whose centroid uncertainty is zero was not varied and is
        returned with a fixed centroid.
        """
        answer = PeakList(max(self.parms.max_npeaks, self.npeaks))
        if self.summary is None:
            return answer
        for channel in self.summary.channel:
            answer.add_chanpeak(float(channel))
        for peak in answer:
            index = int(np.argmin(np.abs(self.summary.channel - peak.channel)))
            peak.fixed_centroid = abs(self.summary.sigc[index]) < PEAK_THRESHOLD
        update_peaklist(self.ex, answer)
        return answer


def _uncertainties(state: FitState, slots: List[Tuple[str, int]],
                   covariance: np.ndarray) -> Dict[str, Any]:
    """Parameter uncertainties from the covariance matrix."""
    index = {slot: i for i, slot in enumerate(slots)}

    def sd(slot):
        i = index.get(slot)
        if i is None:
            return 0.0
        return math.sqrt(max(covariance[i, i], 0.0))

    def cov(a, b):
        i, j = index.get(a), index.get(b)
        if i is None or j is None:
            return 0.0
        return float(covariance[i, j])

    avg = ('avg_wid', -1)
    sig_avg = sd(avg)
    per_peak = []
    for k, peak in enumerate(state.peaks):
        h, c, add = ('height', k), ('centroid', k), ('add_width_511', k)
        t1 = sd(add) ** 2 + sig_avg ** 2 + 2.0 * cov(avg, add)
        t2 = sd(h) ** 2
        t3 = cov(h, add) + cov(avg, h)
        width = peak.fwhm(state.avg_wid)
        sta = AREA_FACTOR_SQUARED * (peak.height ** 2 * t1 + width ** 2 * t2
                                     + 2.0 * width * peak.height * t3)
        per_peak.append({
            'sigc': sd(c),
            'sigh': sd(h),
            'sigw': math.sqrt(t1) if t1 >= 0 else 0.0,
            'siga': math.sqrt(sta) if sta >= 0 else 0.0,
        })

    return {'sigi': sd(('intercept', -1)), 'sigs': sd(('slope', -1)),
            'peaks': per_peak}


def summarize(state: FitState, uncert: Dict[str, Any], spectrum: Spectrum,
              ex: EnergyEquation, input_peaks: PeakList) -> Summary:
    """
    Build the per-peak summary of a fitted state.

    Parameters:
        state: Fitted parameters
        uncert: Output of the uncertainty calculation
        spectrum: Spectrum
        ex: Energy equation
        input_peaks: Peaks the fit started from (for the fixed flag)

    Returns:
        Summary sorted by channel
    """
    region = state.region
    rows = []
    for peak, u in zip(state.peaks, uncert['peaks']):
        rows.append((peak.centroid, u['sigc'], peak.height, u['sigh'],
                     peak.fwhm(state.avg_wid), u['sigw'],
                     peak.area(state.avg_wid), u['siga'],
                     float(ex.energy(peak.centroid)),
                     ex.slope(peak.centroid) * u['sigc']))
    rows.sort(key=lambda row: row[0])
    data = np.array(rows, dtype=float).reshape(len(rows), 10)
    channel = data[:, 0]
    height = data[:, 2]

    fixed = np.zeros(len(rows), dtype=bool)
    for peak in input_peaks:
        if peak.fixed_centroid and peak.channel_valid:
            hits = np.nonzero(np.abs(channel - peak.channel) < PEAK_THRESHOLD)[0]
            if len(hits):
                fixed[hits[0]] = True

    outside = (channel < region.first) | (channel > region.last)
    negpeak = height < 0

    posneg = np.zeros(len(rows), dtype=bool)
    half_width = state.avg_wid / 2.0
    for i in np.nonzero(height < 0)[0]:
        for j in np.nonzero(height > 0)[0]:
            if abs(channel[i] - channel[j]) < half_width:
                posneg[i] = True
                posneg[j] = True

    average_background = state.intercept + state.slope * (region.last - region.first) / 2.0
    net = float(np.sum(spectrum.counts_in(region) - average_background))
    total_area = float(np.sum(data[:, 6]))
    ratio = net / total_area if total_area != 0 else 0.0

    return Summary(channel, data[:, 1], height, data[:, 3], data[:, 4],
                   data[:, 5], data[:, 6], data[:, 7], data[:, 8], data[:, 9],
                   fixed, negpeak, outside, posneg, ratio)


def _failed_record(cycle: int, inputs: Dict[str, Any], message: str) -> FitRecord:
    logger.warning(f"Fit cycle {cycle} in {inputs['region']} failed: {message}")
    return FitRecord(cycle, inputs['region'], inputs['spectrum'],
                     inputs['input_peaks'], inputs['parms'], inputs['ex'],
                     inputs['wx'], cycle_return=CycleReturn.DONE,
                     cycle_exception=message)


def run_cycle(cycle: int, inputs: Dict[str, Any], state: FitState) -> FitRecord:
    """
    Fit the current state once.

    Parameters:
        cycle: Cycle number, starting at 1
        inputs: Fixed fit inputs (region, spectrum, peaks, parms, equations)
        state: Starting parameters; left unchanged

    Returns:
        FitRecord with cycle_return CONTINUE, or a failed record
    """
    region = inputs['region']
    spectrum = inputs['spectrum']
    parms = inputs['parms']

    slots = state.varied(parms.pkwd_mode)
    nvary = len(slots)
    if region.width - nvary <= 1:
        return _failed_record(cycle, inputs, OVERDEFINED_MESSAGE)

    chans = np.arange(region.first, region.last + 1, dtype=float)
    counts = spectrum.counts_in(region).astype(float)
    sig = spectrum.sig_in(region)
    work = state.copy()

    def residuals(x):
        work.update(x, slots)
        return (counts - work.model(chans)) / sig

    def jacobian(x):
        work.update(x, slots)
        return -work.model_jacobian(chans, slots) / sig[:, None]

    ftol, xtol = convergence_tolerances(parms)
    try:
        result = least_squares(residuals, state.get_x(slots), jac=jacobian,
                               method='lm', ftol=ftol, xtol=xtol,
                               max_nfev=100 * (nvary + 1))
    except (ValueError, np.linalg.LinAlgError, FloatingPointError) as e:
        return _failed_record(cycle, inputs,
                              f"Exception in least squares optimizer: {e}")

    fitted = state.copy()
    fitted.update(result.x, slots)

    jac = result.jac
    try:
        covariance = np.linalg.inv(jac.T @ jac)
    except np.linalg.LinAlgError:
        warnings.warn(f"Singular fit matrix in {region}; using pseudo-inverse")
        covariance = np.linalg.pinv(jac.T @ jac)

    uncert = _uncertainties(fitted, slots, covariance)
    curve = render_curve(fitted, spectrum, inputs['nplots_per_chan'])
    chi_sq = float(np.sum(curve.residuals ** 2) / (region.width - nvary))

    record = FitRecord(
        cycle,
        region=region,
        spectrum=spectrum,
        input_peaks=inputs['input_peaks'],
        parms=parms,
        ex=inputs['ex'],
        wx=inputs['wx'],
        chi_sq=chi_sq,
        background=BackgroundLinear(fitted.intercept, uncert['sigi'],
                                    fitted.slope, uncert['sigs']),
        summary=summarize(fitted, uncert, spectrum, inputs['ex'],
                          inputs['input_peaks']),
        curve=curve,
        state=fitted,
    )

    if result.status == 0:
        record.cycle_return = CycleReturn.DONE
        record.cycle_exception = (f"Maximum number of function evaluations "
                                  f"({100 * (nvary + 1)}) exceeded")
        logger.warning(f"Fit cycle {cycle} in {region}: {record.cycle_exception}")

    logger.debug(f"Cycle {cycle}: {len(fitted.peaks)} peaks, chi_sq={chi_sq:.4g}, "
                 f"nfev={result.nfev}")
    return record


def _peak_to_delete(state: FitState, previous_counts: List[int]) -> Optional[PeakState]:
    """
    Find a peak that has collapsed onto a neighbour.

    The first pair of non-zero peaks closer than a fifth of the initial
    width loses its lower peak, unless a fit with one peak fewer was
    already made in an earlier cycle.
    """
    threshold = DELETE_PEAK_FRACTION * state.initial_width
    current = len(state.peaks)
    peaks = state.peaks
    for j in range(current - 1):
        if peaks[j].height == 0:
            continue
        for k in range(j + 1, current):
            if peaks[k].height == 0:
                continue
            if abs(peaks[j].centroid - peaks[k].centroid) < threshold:
                if len(previous_counts) > 1 and (current - 1) in previous_counts:
                    return None
                if peaks[k].height < peaks[j].height:
                    return peaks[k]
                return peaks[j]
    return None


def _add_peak(state: FitState, spectrum: Spectrum, curve: Curve,
              parms: FitParms, ex: EnergyEquation) -> bool:
    """Add a peak at the largest residual if it is worth fitting."""
    region = state.region
    if len(state.peaks) + 1 > parms.max_npeaks:
        return False

    max_residual = 0.0
    channel = 0
    for i, value in enumerate(curve.residuals):
        if value > max_residual:
            max_residual = float(value)
            channel = region.first + i
    if max_residual < parms.max_resid:
        return False

    if any(abs(p.centroid - channel) < ADD_PEAK_DELTA for p in state.peaks):
        return False
    if channel - 1 < region.first or channel + 1 >= region.last:
        return False
    if curve.residual_at(channel - 1) <= 0 and curve.residual_at(channel + 1) <= 0:
        return False

    height = spectrum.count_at(channel) - curve.fit_at(channel)
    state.add_peak(float(channel), float(ex.energy(channel)), height)
    logger.debug(f"Adding peak at channel {channel} (residual {max_residual:.3g})")
    return True


def check_fit(state: FitState, previous_counts: List[int], spectrum: Spectrum,
              curve: Curve, parms: FitParms, ex: EnergyEquation) -> CycleReturn:
    """
    Decide how the next cycle should differ.

    Deletes or adds a peak in state and constrains the older peaks.

    Returns:
        DELETE, ADD or DONE
    """
    doomed = _peak_to_delete(state, previous_counts)
    if doomed is not None:
        state.delete_peak(doomed)
        decision = CycleReturn.DELETE
        constrained = state.peaks
    elif _add_peak(state, spectrum, curve, parms, ex):
        decision = CycleReturn.ADD
        constrained = state.peaks[:-1]
    else:
        return CycleReturn.DONE

    for peak in constrained:
        peak.constrain(state.region, state.initial_width)
    return decision


def fit_region(region: ChannelRange,
               spectrum: Spectrum,
               peaks: PeakList,
               fitparms: FitParms,
               ex: EnergyEquation,
               wx: WidthEquation,
               nplots_per_chan: int = 1) -> List[FitRecord]:
    """
    Fit a region in cycles, adding and deleting peaks between cycles.

    Parameters:
        region: Channels to fit
        spectrum: Spectrum
        peaks: Starting peaks; peaks outside the region are ignored
        fitparms: Cycle budget, peak limit and convergence settings
        ex: Energy equation
        wx: Width equation
        nplots_per_chan: Curve points per channel

    Returns:
        One FitRecord per cycle, in cycle order. The last record is the
        final fit: DONE when the cycle control stopped, CONTINUE when the
        cycle budget ran out, or a failed record with cycle_exception set.

    Raises:
        InvalidInputError: For a region outside the spectrum, too many
            input peaks or a bad plot density
    """
    if region.first < spectrum.first or region.last > spectrum.last:
        raise InvalidInputError(f"{region} is outside the spectrum")
    if region.width < 2:
        raise InvalidInputError(f"{region} is too narrow to fit")
    if len(peaks) > fitparms.max_npeaks:
        raise InvalidInputError(
            f"Too many input peaks ({len(peaks)} > {fitparms.max_npeaks})")
    if nplots_per_chan < 1:
        raise InvalidInputError(f"nplots_per_chan must be at least 1, got {nplots_per_chan}")

    inputs = {
        'region': region,
        'spectrum': spectrum,
        'input_peaks': peaks.copy(),
        'parms': fitparms,
        'ex': ex,
        'wx': wx,
        'nplots_per_chan': nplots_per_chan,
    }

    state = FitState.initial(spectrum, region, ex, wx, peaks)
    records: List[FitRecord] = []
    previous_counts: List[int] = []

    for cycle in range(1, fitparms.ncycle + 1):
        record = run_cycle(cycle, inputs, state)
        records.append(record)
        if record.cycle_exception is not None:
            break
        previous_counts.append(len(record.output_peaks()))

        if cycle == fitparms.ncycle:
            break

        state = record.state.copy()
        record.cycle_return = check_fit(state, previous_counts, spectrum,
                                        record.curve, fitparms, ex)
        if record.cycle_return == CycleReturn.DONE:
            break

    last = records[-1]
    logger.info(f"Fit of {region} finished after {len(records)} cycles "
                f"({last.cycle_return.name}, {last.npeaks} peaks, chi_sq={last.chi_sq:.4g})")
    return records


def best_records(records: List[FitRecord], nout: int) -> List[FitRecord]:
    """
    Up to nout successful records with the smallest chi-squared.

    Parameters:
        records: Output of fit_region
        nout: Maximum number of records to return

    Returns:
        Records ordered by chi-squared, smallest first
    """
    fitted = [r for r in records if r.summary is not None]
    return sorted(fitted, key=lambda r: r.chi_sq)[:nout]
