"""
Description:
    Warm-up adaptation of the step size and the metric.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2

Step size: Nesterov dual averaging toward a target acceptance δ
    H̄_m = (1 - 1/(m + t0)) H̄_{m-1} + (δ - α_m)/(m + t0)
    log ε_m = μ - sqrt(m)/γ H̄_m,  μ = log(10 ε_0)
    log ε̄_m = m^{-κ} log ε_m + (1 - m^{-κ}) log ε̄_{m-1}
The final step size is exp(log ε̄).

Metric: Welford running mean and (co)variance of the warm-up draws,
shrunk toward a small multiple of the identity
    Σ̂ = n/(n + n_shrink) Σ + shrink_eps n_shrink/(n + n_shrink) I

Schedule (Stan): an initial step-size-only buffer, metric windows that
double in length, a terminal step-size-only buffer. At the end of every
window the metric is re-estimated and dual averaging restarts.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import jax.numpy as jnp

from metric import UnitEuclideanMetric, DiagEuclideanMetric, DenseEuclideanMetric
from exceptions import NonPositiveDefiniteMetric

_log = logging.getLogger("ahmc")

# ============================================================================
# Step size
# ============================================================================

@dataclass
class NesterovDualAveraging:
    δ: float # target acceptance
    ε: float # current step size
    γ: float = 0.05
    t0: float = 10.0
    κ: float = 0.75
    μ: float = field(init=False)
    m: int = field(init=False)
    H_bar: float = field(init=False)
    x: float = field(init=False) # log ε
    x_bar: float = field(init=False) # averaged log ε

    def __post_init__(self):
        if not 0.0 < self.δ < 1.0:
            raise ValueError(f"Target acceptance must be in (0, 1), got {self.δ}")
        if not (self.ε > 0 and math.isfinite(self.ε)):
            raise ValueError(f"Step size must be positive and finite, got {self.ε}")
        self.reset()

    def reset(self, ε: Optional[float] = None) -> None:
        """Restart the recursion around ε (default: the current step size)"""
        if ε is not None:
            self.ε = float(ε)
        self.μ = math.log(10 * self.ε)
        self.m = 0
        self.H_bar = 0.0
        self.x = math.log(self.ε)
        self.x_bar = 0.0

    def adapt(self, α: float) -> float:
        """Feed one acceptance statistic, return the next step size"""
        α = 0.0 if math.isnan(α) else min(1.0, float(α))
        self.m += 1
        η_H = 1.0 / (self.m + self.t0)
        self.H_bar = (1.0 - η_H) * self.H_bar + η_H * (self.δ - α)
        self.x = self.μ - math.sqrt(self.m) / self.γ * self.H_bar
        η_x = self.m ** (-self.κ)
        self.x_bar = η_x * self.x + (1.0 - η_x) * self.x_bar
        self.ε = math.exp(min(self.x, 700.0))
        return self.ε

    def finalize(self) -> float:
        """Switch to the averaged step size exp(log ε̄)"""
        if self.m > 0:
            self.ε = math.exp(min(self.x_bar, 700.0))
        return self.ε

    @property
    def step_size(self) -> float:
        return self.ε

# ============================================================================
# Metric
# ============================================================================

class UnitMassMatrix:
    """Keeps M = I"""

    def __init__(self, metric):
        self.metric = metric
        self.n = 0

    def reset(self) -> None:
        self.n = 0

    def push(self, x) -> None:
        self.n += 1

    def get_estimation(self):
        return None

    def update(self):
        return self.metric

class WelfordVar:
    """Running diagonal variance for a DiagEuclideanMetric"""

    def __init__(
        self,
        metric,
        n_min: int = 10,
        n_shrink: float = 5.0,
        shrink_eps: float = 1e-3,
    ):
        self.metric = metric
        self.dim = metric.dim
        self.n_min = max(int(n_min), 2)
        self.n_shrink = float(n_shrink)
        self.shrink_eps = float(shrink_eps)
        self.reset()

    def reset(self) -> None:
        self.n = 0
        self.mean = jnp.zeros(self.dim)
        self.M2 = jnp.zeros(self.dim)

    def push(self, x) -> None:
        x = jnp.asarray(x)
        if x.shape != (self.dim,):
            raise ValueError(f"Expected a sample of shape ({self.dim},), got {x.shape}")
        if not bool(jnp.all(jnp.isfinite(x))):
            raise ValueError("Cannot push a non-finite sample")
        self.n += 1
        δ = x - self.mean
        self.mean = self.mean + δ / self.n
        self.M2 = self.M2 + δ * (x - self.mean)

    def sample_var(self) -> jnp.ndarray:
        """Unbiased sample variance of the pushed draws"""
        if self.n < 2:
            raise ValueError("Need at least 2 samples for a variance")
        return self.M2 / (self.n - 1)

    def get_estimation(self) -> jnp.ndarray:
        n = self.n
        σ2 = self.sample_var()
        w = n / (n + self.n_shrink)
        σ2 = w * σ2 + self.shrink_eps * (1.0 - w)
        if not bool(jnp.all(jnp.isfinite(σ2))):
            raise NonPositiveDefiniteMetric("Variance accumulator is not finite")
        return σ2

    def update(self):
        """Renew the metric from the estimate once n_min draws are in"""
        if self.n >= self.n_min:
            try:
                self.metric = self.metric.renew(self.get_estimation())
            except NonPositiveDefiniteMetric:
                _log.warning("Variance estimate is not positive, keeping the previous metric")
        return self.metric

class WelfordCov:
    """Running covariance for a DenseEuclideanMetric"""

    def __init__(
        self,
        metric,
        n_min: int = 10,
        n_shrink: float = 5.0,
        shrink_eps: float = 1e-3,
    ):
        self.metric = metric
        self.dim = metric.dim
        self.n_min = max(int(n_min), 2)
        self.n_shrink = float(n_shrink)
        self.shrink_eps = float(shrink_eps)
        self.reset()

    def reset(self) -> None:
        self.n = 0
        self.mean = jnp.zeros(self.dim)
        self.M2 = jnp.zeros((self.dim, self.dim))

    def push(self, x) -> None:
        x = jnp.asarray(x)
        if x.shape != (self.dim,):
            raise ValueError(f"Expected a sample of shape ({self.dim},), got {x.shape}")
        if not bool(jnp.all(jnp.isfinite(x))):
            raise ValueError("Cannot push a non-finite sample")
        self.n += 1
        δ = x - self.mean
        self.mean = self.mean + δ / self.n
        self.M2 = self.M2 + jnp.outer(δ, x - self.mean)

    def sample_cov(self) -> jnp.ndarray:
        """Unbiased sample covariance of the pushed draws"""
        if self.n < 2:
            raise ValueError("Need at least 2 samples for a covariance")
        return self.M2 / (self.n - 1)

    def get_estimation(self) -> jnp.ndarray:
        """
        Shrunk covariance, always symmetric positive definite.

        With fewer than dim + 1 draws the covariance is singular, so only
        its diagonal is used. A Cholesky failure falls back the same way.
        """
        n = self.n
        Σ = self.sample_cov()
        if not bool(jnp.all(jnp.isfinite(Σ))):
            raise NonPositiveDefiniteMetric("Covariance accumulator is not finite")
        w = n / (n + self.n_shrink)
        shrink = self.shrink_eps * (1.0 - w)
        if n < self.dim + 1:
            _log.debug("%d draws for dimension %d, using a diagonal estimate", n, self.dim)
            return jnp.diag(w * jnp.diag(Σ) + shrink)
        Σ = w * Σ + shrink * jnp.eye(self.dim)
        Σ = 0.5 * (Σ + Σ.T)
        try:
            DenseEuclideanMetric(Σ)
        except NonPositiveDefiniteMetric:
            _log.warning("Covariance estimate is not positive definite, using its diagonal")
            return jnp.diag(jnp.diag(Σ))
        return Σ

    def update(self):
        """Renew the metric from the estimate once n_min draws are in"""
        if self.n >= self.n_min:
            try:
                self.metric = self.metric.renew(self.get_estimation())
            except NonPositiveDefiniteMetric:
                _log.warning("Covariance estimate is not finite, keeping the previous metric")
        return self.metric

# ============================================================================
# Default adaptors
# ============================================================================

def StepSizeAdaptor(
    δ: float,
    integrator,
    γ: float = 0.05,
    t0: float = 10.0,
    κ: float = 0.75,
) -> NesterovDualAveraging:
    """Dual averaging started from the integrator's nominal step size"""
    return NesterovDualAveraging(δ=δ, ε=integrator.nom_step_size, γ=γ, t0=t0, κ=κ)

def MassMatrixAdaptor(
    metric,
    n_min: int = 10,
    n_shrink: float = 5.0,
    shrink_eps: float = 1e-3,
):
    """Estimator matching the metric kind"""
    if isinstance(metric, UnitEuclideanMetric):
        return UnitMassMatrix(metric)
    if isinstance(metric, DiagEuclideanMetric):
        return WelfordVar(metric, n_min=n_min, n_shrink=n_shrink, shrink_eps=shrink_eps)
    if isinstance(metric, DenseEuclideanMetric):
        return WelfordCov(metric, n_min=n_min, n_shrink=n_shrink, shrink_eps=shrink_eps)
    raise TypeError(f"No mass matrix adaptor for {type(metric).__name__}")

# ============================================================================
# Composite adaptors
# ============================================================================

class NaiveHMCAdaptor:
    """Adapt step size and metric at every iteration, no windows"""

    def __init__(self, pc, ssa: NesterovDualAveraging):
        self.pc = pc
        self.ssa = ssa

    @property
    def metric(self):
        return self.pc.metric

    def adapt(self, θ, α: float) -> Tuple[float, object]:
        ε = self.ssa.adapt(α)
        self.pc.push(θ)
        return ε, self.pc.update()

    def finalize(self) -> Tuple[float, object]:
        return self.ssa.finalize(), self.pc.metric

def make_windows(
    n_adapts: int,
    init_buffer: int = 75,
    term_buffer: int = 50,
    window_size: int = 25,
) -> List[Tuple[int, int]]:
    """
    Stan-like warm-up windows [start, end) for metric estimation.

    A window is stretched to the terminal buffer when the next doubled
    window would not fit.
    """
    if n_adapts < 20:
        _log.info("%d adaptation steps is too few for metric windows, adapting the step size only", n_adapts)
        return []
    if init_buffer + window_size + term_buffer > n_adapts:
        init_buffer = int(0.15 * n_adapts)
        term_buffer = int(0.1 * n_adapts)
        window_size = n_adapts - (init_buffer + term_buffer)
        _log.info(
            "Adaptation buffers rescaled to init_buffer=%d, window_size=%d, term_buffer=%d",
            init_buffer, window_size, term_buffer,
        )
    end_middle = n_adapts - term_buffer
    windows = []
    start, size = init_buffer, window_size
    while start < end_middle:
        end = start + size
        if end + 2 * size >= end_middle:
            end = end_middle
        windows.append((start, end))
        start, size = end, 2 * size
    return windows

def describe_windows(windows: List[Tuple[int, int]]) -> str:
    if not windows:
        return "no metric windows"
    return "metric windows: " + " ".join(f"[{a},{b})" for a, b in windows)

class StanHMCAdaptor:
    """Windowed adaptation: step-size buffer, doubling metric windows, step-size buffer"""

    def __init__(
        self,
        pc,
        ssa: NesterovDualAveraging,
        n_adapts: int,
        init_buffer: int = 75,
        term_buffer: int = 50,
        window_size: int = 25,
    ):
        self.pc = pc
        self.ssa = ssa
        self.n_adapts = int(n_adapts)
        self.windows = make_windows(self.n_adapts, init_buffer, term_buffer, window_size)
        self.i = 0
        _log.debug(describe_windows(self.windows))

    @property
    def metric(self):
        return self.pc.metric

    def in_window(self, i: int) -> bool:
        return any(a <= i < b for a, b in self.windows)

    def is_window_end(self, i: int) -> bool:
        return any(i == b - 1 for _, b in self.windows)

    def adapt(self, θ, α: float) -> Tuple[float, object]:
        """
        One warm-up iteration.

        Args:
            θ: draw of this iteration
            α: its acceptance statistic

        Returns:
            (step size, metric) for the next iteration; the finalized pair
            after the last adaptation step
        """
        if self.i >= self.n_adapts:
            return self.finalize()
        i = self.i
        ε = self.ssa.adapt(α)
        if self.in_window(i):
            self.pc.push(θ)
        if self.is_window_end(i):
            self.pc.update()
            self.pc.reset()
            self.ssa.reset(ε)
            _log.debug("Window ending at iteration %d: ε = %g, %r", i, ε, self.pc.metric)
        self.i += 1
        if self.i == self.n_adapts:
            return self.finalize()
        return self.ssa.step_size, self.pc.metric

    def finalize(self) -> Tuple[float, object]:
        return self.ssa.finalize(), self.pc.metric
