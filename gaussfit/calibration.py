"""
Energy and width calibration for gamma spectroscopy.

This module provides the channel-to-energy and channel-to-width
calibration equations, their least-squares fitting from reference
peaks, and the propagation of a calibration onto a peak list.
"""

from typing import List, Dict, Tuple, Optional, Any, Sequence, Union
from dataclasses import dataclass
from enum import Enum
import logging
import math

import numpy as np

from .errors import DomainError, InvalidInputError, SingularSystemError
from .models import Peak, PeakList, PeakType, PEAK_THRESHOLD

logger = logging.getLogger(__name__)


class EnergyMode(Enum):
    """Energy equation polynomial order."""
    LINEAR = 'linear'
    QUADRATIC = 'quadratic'


class WidthMode(Enum):
    """Width equation form."""
    LINEAR = 'linear'
    SQRT = 'sqrt'


@dataclass
class CalibrationPoint:
    """Data class for calibration points."""
    channel: float
    value: float
    uncertainty: float = 0.0


@dataclass
class EnergyEquation:
    """
    Channel to energy equation: e(x) = a + b*x (+ c*x^2 when quadratic).

    The c coefficient is ignored in linear mode.
    """
    a: float = 0.0
    b: float = 1.0
    c: float = 0.0
    chi_sq: float = 0.0
    mode: EnergyMode = EnergyMode.QUADRATIC

    def __post_init__(self):
        self.mode = EnergyMode(self.mode)

    def energy(self, channel: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        """
        Convert channel(s) to energy.

        Parameters:
            channel: Channel number(s)

        Returns:
            Energy value(s) in keV
        """
        result = self.a + self.b * channel
        if self.mode == EnergyMode.QUADRATIC:
            result = result + self.c * channel * channel
        return result

    def channel(self, energy: float) -> float:
        """
        Convert energy to channel.

        Parameters:
            energy: Energy in keV

        Returns:
            Channel number (never negative for a quadratic equation)

        Raises:
            DomainError: If the equation cannot be inverted at this energy
        """
        if self.mode == EnergyMode.LINEAR or self.c == 0:
            if self.b == 0:
                raise DomainError("Energy equation slope is zero")
            return (energy - self.a) / self.b

        discriminant = self.b * self.b - 4.0 * self.c * (self.a - energy)
        if discriminant < 0:
            raise DomainError(
                f"Energy {energy} is outside the range of the energy equation")
        channel = (-self.b + math.sqrt(discriminant)) / (2.0 * self.c)
        return max(0.0, channel)

    def slope(self, channel: float) -> float:
        """Derivative de/dx at a channel."""
        if self.mode == EnergyMode.QUADRATIC:
            return self.b + 2.0 * self.c * channel
        return self.b

    def to_dict(self) -> Dict[str, Any]:
        return {'a': self.a, 'b': self.b, 'c': self.c,
                'chi_sq': self.chi_sq, 'mode': self.mode.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EnergyEquation':
        return cls(data.get('a', 0.0), data.get('b', 1.0), data.get('c', 0.0),
                   data.get('chi_sq', 0.0), data.get('mode', 'quadratic'))

    def __str__(self) -> str:
        if self.mode == EnergyMode.LINEAR:
            return f"e(x) = {self.a:g} + {self.b:g}x"
        return f"e(x) = {self.a:g} + {self.b:g}x + {self.c:g}x^2"


@dataclass
class WidthEquation:
    """
    Channel to peak width (FWHM in channels) equation.

    Linear mode: w(x) = alpha + beta*x. Sqrt mode: w(x) = sqrt(alpha + beta*x).
    """
    alpha: float = 0.0
    beta: float = 0.0
    chi_sq: float = 0.0
    mode: WidthMode = WidthMode.SQRT

    def __post_init__(self):
        self.mode = WidthMode(self.mode)

    def width(self, channel: float) -> float:
        """
        Peak width at a channel.

        Raises:
            DomainError: In sqrt mode when alpha + beta*channel < 0
        """
        t = self.alpha + self.beta * channel
        if self.mode == WidthMode.LINEAR:
            return t
        if t < 0:
            raise DomainError(f"Width equation is negative at channel {channel}")
        return math.sqrt(t)

    def width_or(self, channel: float, default: float) -> float:
        """Peak width at a channel, or default if the equation fails there."""
        try:
            return self.width(channel)
        except DomainError:
            return default

    def to_dict(self) -> Dict[str, Any]:
        return {'alpha': self.alpha, 'beta': self.beta,
                'chi_sq': self.chi_sq, 'mode': self.mode.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WidthEquation':
        return cls(data.get('alpha', 0.0), data.get('beta', 0.0),
                   data.get('chi_sq', 0.0), data.get('mode', 'sqrt'))

    def __str__(self) -> str:
        if self.mode == WidthMode.LINEAR:
            return f"w(x) = {self.alpha:g} + {self.beta:g}x"
        return f"w(x) = sqrt({self.alpha:g} + {self.beta:g}x)"


def update_peaklist(ex: Optional[EnergyEquation], peaks: PeakList):
    """
    Fill in the derived quantity of every peak.

    Channel peaks get an energy, energy peaks get a channel. With no
    equation the derived quantities are marked invalid.

    Parameters:
        ex: Energy equation, or None if the calibration was cleared
        peaks: Peak list, updated in place
    """
    for peak in peaks:
        if peak.type == PeakType.CHANNEL:
            if ex is None:
                peak.energy_valid = False
            else:
                peak.energy = float(ex.energy(peak.channel))
                peak.sige = 0.0
                peak.energy_valid = True
        else:
            if ex is None:
                peak.channel_valid = False
                continue
            try:
                peak.channel = ex.channel(peak.energy)
                peak.channel_valid = True
            except DomainError as e:
                logger.debug(f"Cannot place {peak.energy} keV peak: {e}")
                peak.channel_valid = False
    peaks.resort()


def apply_calibration(channels: Union[float, np.ndarray],
                      calibration: Union[Dict[str, Any], EnergyEquation]) -> Union[float, np.ndarray]:
    """
    Convert channels to energies.

    Parameters:
        channels: Channel number(s)
        calibration: Energy equation or its dictionary form

    Returns:
        Energy value(s) in keV
    """
    if isinstance(calibration, dict):
        calibration = EnergyEquation.from_dict(calibration)
    return calibration.energy(np.asarray(channels, dtype=float))


def _unique_points(points: List[CalibrationPoint]) -> List[CalibrationPoint]:
    """Sort points by channel and drop repeated (channel, value) pairs."""
    unique: List[CalibrationPoint] = []
    for point in sorted(points, key=lambda p: (p.channel, p.value)):
        duplicate = any(abs(point.channel - u.channel) < PEAK_THRESHOLD and
                        abs(point.value - u.value) < PEAK_THRESHOLD
                        for u in unique)
        if not duplicate:
            unique.append(point)
    return unique


def _make_points(channels: Sequence[float], values: Sequence[float],
                 uncertainties: Optional[Sequence[float]]) -> List[CalibrationPoint]:
    if len(channels) == 0:
        raise InvalidInputError("No calibration data provided")
    if len(channels) != len(values):
        raise InvalidInputError(
            f"Got {len(channels)} channels but {len(values)} values")
    if uncertainties is None:
        uncertainties = [0.0] * len(channels)
    elif len(uncertainties) != len(channels):
        raise InvalidInputError(
            f"Got {len(channels)} channels but {len(uncertainties)} uncertainties")
    return [CalibrationPoint(float(c), float(v), float(s))
            for c, v, s in zip(channels, values, uncertainties)]


def linear_least_squares(x: np.ndarray, y: np.ndarray, sigma: np.ndarray,
                         ncoef: int) -> Tuple[np.ndarray, float]:
    """
    Weighted polynomial least squares through the normal equations.

    The normal matrix is scaled by the square roots of its diagonal
    before inversion.

    Parameters:
        x: Abscissae
        y: Ordinates
        sigma: Ordinate uncertainties (weights are 1/sigma^2)
        ncoef: Number of polynomial coefficients (2 or 3)

    Returns:
        tuple: (coefficients lowest order first, reduced chi-squared)

    Raises:
        InvalidInputError: If there are fewer points than coefficients
        SingularSystemError: If the normal matrix cannot be inverted
    """
    n = len(x)
    if n < ncoef:
        raise InvalidInputError(
            f"At least {ncoef} calibration points required, got {n}")
    if np.any(sigma <= 0):
        raise InvalidInputError("Calibration uncertainties must be positive")

    weights = 1.0 / (sigma * sigma)
    basis = np.vstack([x ** k for k in range(ncoef)]).T
    alpha = basis.T @ (basis * weights[:, None])
    beta = basis.T @ (y * weights)

    diag = np.diag(alpha)
    scale = np.outer(diag, diag)
    if np.any(scale <= 0):
        raise SingularSystemError("Calibration matrix has a zero diagonal")
    scale = np.sqrt(scale)

    try:
        inverse = np.linalg.inv(alpha / scale) / scale
    except np.linalg.LinAlgError as e:
        raise SingularSystemError(f"Calibration matrix is singular: {e}")

    coefficients = inverse @ beta
    if not np.all(np.isfinite(coefficients)):
        raise SingularSystemError("Calibration matrix is singular")

    residuals = (y - basis @ coefficients) / sigma
    chi_sq = 0.0
    if n > ncoef:
        chi_sq = float(np.sum(residuals ** 2) / (n - ncoef))

    return coefficients, chi_sq


def calibrate_energy(channels: Sequence[float],
                     energies: Sequence[float],
                     sige: Optional[Sequence[float]] = None,
                     mode: Union[str, EnergyMode] = EnergyMode.QUADRATIC,
                     weighted: bool = False) -> EnergyEquation:
    """
    Fit an energy equation to reference peaks.

    Parameters:
        channels: Peak channels
        energies: Peak energies in keV
        sige: Energy uncertainties (used only when weighted)
        mode: Linear or quadratic equation
        weighted: Weight points by 1/sige^2

    Returns:
        Fitted EnergyEquation including its chi-squared
    """
    mode = EnergyMode(mode)
    points = _unique_points(_make_points(channels, energies, sige))
    ncoef = 3 if mode == EnergyMode.QUADRATIC else 2

    x = np.array([p.channel for p in points])
    y = np.array([p.value for p in points])
    if weighted:
        sigma = np.array([p.uncertainty for p in points])
    else:
        sigma = np.ones(len(points))

    coefficients, chi_sq = linear_least_squares(x, y, sigma, ncoef)
    c = coefficients[2] if ncoef == 3 else 0.0

    equation = EnergyEquation(float(coefficients[0]), float(coefficients[1]),
                              float(c), chi_sq, mode)
    logger.info(f"Energy calibration {equation} (chi_sq={chi_sq:.4g}, "
                f"{len(points)} points)")
    return equation


def calibrate_width(channels: Sequence[float],
                    widths: Sequence[float],
                    sigw: Optional[Sequence[float]] = None,
                    mode: Union[str, WidthMode] = WidthMode.SQRT,
                    weighted: bool = False) -> WidthEquation:
    """
    Fit a width equation to reference peak widths.

    In sqrt mode the squared widths are fitted, since w^2 is linear in
    the channel; the weighted uncertainty becomes sigw * 2 * width.

    Parameters:
        channels: Peak channels
        widths: Peak FWHM in channels
        sigw: Width uncertainties (used only when weighted)
        mode: Linear or sqrt equation
        weighted: Weight points by their uncertainties

    Returns:
        Fitted WidthEquation including its chi-squared
    """
    mode = WidthMode(mode)
    points = _unique_points(_make_points(channels, widths, sigw))

    x = np.array([p.channel for p in points])
    wid = np.array([p.value for p in points])
    if mode == WidthMode.SQRT:
        y = wid * wid
    else:
        y = wid
    if weighted:
        sigma = np.array([p.uncertainty for p in points]) * 2.0 * wid
    else:
        sigma = np.ones(len(points))

    coefficients, chi_sq = linear_least_squares(x, y, sigma, 2)

    equation = WidthEquation(float(coefficients[0]), float(coefficients[1]),
                             chi_sq, mode)
    logger.info(f"Width calibration {equation} (chi_sq={chi_sq:.4g}, "
                f"{len(points)} points)")
    return equation
