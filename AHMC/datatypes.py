"""
Description:
    Core data structures for AHMC.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2

All modules import from here to ensure type consistency and avoid indexing bugs.
"""
import math
from typing import NamedTuple, Callable, Optional, Tuple, Any
import jax.numpy as jnp

class QP(NamedTuple):
    """Phase space state(q,p)"""
    q: jnp.ndarray # position
    p: jnp.ndarray # momentum

    @property
    def dim(self) -> int:
        """Dimension of configuration space"""
        return self.q.shape[0]

class HamiltonianState(NamedTuple):
    """
    Phase space point with cached oracle output.

    logdensity and grad are log π(q) and ∇ log π(q); they are computed once
    per position so integrator sub-steps never call the oracle twice.
    """
    qp: QP
    logdensity: float # log π(q), may be -inf
    grad: jnp.ndarray # ∇ log π(q)
    kinetic: float # K(p)

    @property
    def energy(self) -> float:
        """H(q,p) = -log π(q) + K(p), +inf when not finite"""
        H = -self.logdensity + self.kinetic
        return H if math.isfinite(H) else math.inf

    @property
    def log_joint(self) -> float:
        return -self.energy

class Termination(NamedTuple):
    """Why a (sub)trajectory stopped growing"""
    dynamic: bool = False # U-turn
    numerical: bool = False # divergence

    def __or__(self, other: "Termination") -> "Termination":
        return Termination(
            dynamic=self.dynamic or other.dynamic,
            numerical=self.numerical or other.numerical,
        )

    @property
    def terminated(self) -> bool:
        return self.dynamic or self.numerical

class TransitionStats(NamedTuple):
    """Per-iteration statistics returned by a transition"""
    step_size: float
    n_leapfrog_steps: int
    acceptance_rate: float # mean Metropolis acceptance over the trajectory
    tree_depth: int
    divergent: bool
    energy: float # H at the returned point
    numerical_error: bool # non-finite energy met along the trajectory
    energy_error: float # H(returned) - H0
    max_energy_error: float
    log_density: float
    is_accept: bool
    turning: bool
    reached_max_depth: bool

class SamplerOutput(NamedTuple):
    samples: jnp.ndarray # (n_samples, dim) - positions only
    stats: TransitionStats # fields stacked along the first axis
    step_size: float # final (frozen) step size
    metric: Any # final (frozen) metric

class SamplerConfig(NamedTuple):
    """Recognised options for building and running a sampler"""
    target_accept: float = 0.8 # δ
    max_depth: int = 10
    max_delta_h: float = 1000.0 # divergence threshold on H - H0
    step_size: Optional[float] = None # None: search with find_good_eps
    jitter: float = 0.0 # relative half-width for JitteredLeapfrog
    temper_alpha: float = 1.0 # momentum tempering factor α
    gamma: float = 0.05
    kappa: float = 0.75
    t0: float = 10.0
    n_shrink: float = 5.0 # Welford shrinkage weight
    shrink_eps: float = 1e-3 # Welford shrinkage target scale
    n_min: int = 10 # minimum draws before a metric update
    init_buffer: int = 75
    term_buffer: int = 50
    window_size: int = 25
    metric: str = "diag" # unit | diag | dense
    integrator: str = "leapfrog" # leapfrog | jittered | tempered
    trajectory: str = "nuts" # nuts | static | hmcda
    termination: str = "generalised" # classic | generalised
    kernel: str = "multinomial" # multinomial | slice | endpoint
    n_leapfrog: int = 10 # static trajectory length
    trajectory_length: float = 2.0 # HMCDA λ
    n_adapts: int = 1000

# Type aliases for clarity
LogDensity = Callable[[jnp.ndarray], float]
Gradient = Callable[[jnp.ndarray], Tuple[float, jnp.ndarray]] # returns (log π, ∇ log π)
MassMatrix = jnp.ndarray
PrecisionMatrix = jnp.ndarray
Key = jnp.ndarray
