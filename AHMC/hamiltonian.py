"""
Description:
    Hamiltonian structures.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2
"""
import math
from typing import NamedTuple, Any, Optional, Tuple
import jax
import jax.numpy as jnp
import numpy as np

from datatypes import QP, HamiltonianState, LogDensity, Gradient, Key, PrecisionMatrix
from exceptions import InvalidOracleOutput

def check_oracle_output(
    q: jnp.ndarray,
    ℓπ,
    dℓπ,
) -> Tuple[float, jnp.ndarray]:
    """
    Validate (log π(q), ∇ log π(q)) returned by the oracle at a finite q.

    log π = -inf is a legal answer and gets a zero gradient.
    """
    ℓπ = float(ℓπ)
    if ℓπ == -math.inf:
        return ℓπ, jnp.zeros_like(q)
    if not math.isfinite(ℓπ):
        raise InvalidOracleOutput(f"log density returned {ℓπ} at a finite position")
    dℓπ = jnp.asarray(dℓπ)
    if dℓπ.shape != q.shape:
        raise InvalidOracleOutput(
            f"gradient has shape {dℓπ.shape}, position has shape {q.shape}"
        )
    if not np.all(np.isfinite(np.asarray(dℓπ))):
        raise InvalidOracleOutput("gradient is not finite at a finite log density")
    return ℓπ, dℓπ

class Hamiltonian(NamedTuple):
    """
    Hamiltonian(q,p) = U(q) + K(p)
    For standard HMC:
        U(q) = -log π(q)
        K(p) = 0.5 *  p.T@ M^{-1}@ p

    value_and_grad(q) returns (log π(q), ∇ log π(q)); it is the only place
    the oracle is called. traceable says the oracle is written in jax and may
    be traced inside jax.lax.scan; otherwise integration stays step by step.
    """
    metric: Any
    logdensity: LogDensity
    value_and_grad: Gradient
    traceable: bool = True

    @property
    def dim(self) -> int:
        return self.metric.dim

    def evaluate(self, q: jnp.ndarray) -> Tuple[float, jnp.ndarray]:
        """
        Call the oracle at q and check its output.

        A non-finite q (integrator blow-up) is not passed to the oracle and
        counts as log π = -inf. log π = -inf is a legal answer; the gradient
        is then replaced by zeros. Anything else non-finite raises.
        """
        if not bool(jnp.all(jnp.isfinite(q))):
            return -math.inf, jnp.zeros_like(q)
        return check_oracle_output(q, *self.value_and_grad(q))

    def potential(self, q: jnp.ndarray) -> float:
        """U(q) = -log π(q)"""
        return -self.evaluate(q)[0]

    def gradient(self, q: jnp.ndarray) -> jnp.ndarray:
        """∂U/∂q = -∇ log π(q)"""
        return -self.evaluate(q)[1]

    def kinetic(self, p: jnp.ndarray) -> float:
        return self.metric.kinetic_energy(p)

    def velocity(self, p: jnp.ndarray) -> jnp.ndarray:
        """∂K/∂p = M^{-1} p"""
        return self.metric.velocity(p)

    def phasepoint(
        self,
        q: jnp.ndarray,
        p: jnp.ndarray,
        logdensity: Optional[float] = None,
        grad: Optional[jnp.ndarray] = None,
    ) -> HamiltonianState:
        """Build a phase point, reusing a cached (log π, ∇ log π) when given"""
        if logdensity is None or grad is None:
            logdensity, grad = self.evaluate(q)
        kinetic = self.kinetic(p)
        if math.isnan(kinetic):
            kinetic = math.inf
        return HamiltonianState(qp=QP(q=q, p=p), logdensity=logdensity, grad=grad, kinetic=kinetic)

    def energy(self, z: HamiltonianState) -> float:
        """total energy H(q,p) = U(q) + K(p)"""
        return z.energy

    def refresh(self, key: Key, z: HamiltonianState) -> HamiltonianState:
        """Resample momentum p ~ N(0, M), keeping q and its cached gradient"""
        p = self.metric.sample_momentum(key)
        return self.phasepoint(z.qp.q, p, z.logdensity, z.grad)

    def with_metric(self, metric) -> "Hamiltonian":
        return self._replace(metric=metric)

def is_divergent(H0: float, H: float, max_delta_h: float) -> bool:
    """Energy error beyond max_delta_h, or a non-finite energy"""
    return not (H - H0 <= max_delta_h)

# Hamiltonian constructors

def make_hamiltonian(
    metric,
    logdensity: LogDensity,
    gradient=None,
    traceable: bool = True,
) -> Hamiltonian:
    """
    Hamiltonian(q,p) = U(q) + K(p) from a log density oracle.

    Args:
        metric: Euclidean metric
        logdensity: q -> log π(q)
        gradient: q -> ∇ log π(q); built with jax autodiff when omitted
        traceable: False for oracles that are not jax code (numpy, external
            models); they are then called once per leapfrog step from python

    Returns:
        Hamiltonian
    """
    if gradient is None:
        value_and_grad = jax.jit(jax.value_and_grad(logdensity))
    else:
        def value_and_grad(q):
            return logdensity(q), gradient(q)
    return Hamiltonian(
        metric=metric,
        logdensity=logdensity,
        value_and_grad=value_and_grad,
        traceable=traceable,
    )

def gaussian_hamiltonian(
    precision: PrecisionMatrix,
    metric,
) -> Hamiltonian:
    """
    Hamiltonian(q,p) = U(q) + K(p)
    For a centred Gaussian target:
        U(q) = 0.5 * q.T@ P@ q
        K(p) = 0.5 *  p.T@ M^{-1}@ p
    """
    precision = jnp.asarray(precision)

    def logdensity(q):
        return -0.5 * jnp.dot(q, precision @ q)

    def gradient(q):
        return -(precision @ q)

    return make_hamiltonian(metric, jax.jit(logdensity), jax.jit(gradient))
