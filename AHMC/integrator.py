"""
Description:
    Numerical integrators for Hamiltonian dynamics.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2

All integrators share the interface
    nom_step_size, step_size, jitter(key), set_nom_step_size(ε),
    step(h, z, n_steps=1, full_trajectory=False)
A negative n_steps integrates backward in time with step -ε.
"""
import math
from functools import partial
from typing import NamedTuple, List, Union
import jax
import jax.numpy as jnp
import jax.random as jr
import numpy as np

from datatypes import QP, HamiltonianState, Key
from hamiltonian import Hamiltonian, check_oracle_output

def lf_step(
        h: Hamiltonian,
        z: HamiltonianState,
        τ: float
) -> HamiltonianState:
    """
    Single lf integration step.

    Does p-first. τ may be negative; lf_step(h, lf_step(h, z, τ), -τ)
    returns z up to rounding.

    note: the gradient at z is cached on the state, so one oracle call per step
    """
    # Half step momentum
    p_half = z.qp.p + 0.5 * τ * z.grad

    # Full step position
    q_new = z.qp.q + τ * h.velocity(p_half)
    ℓπ, dℓπ = h.evaluate(q_new)

    # Half step momentum
    p_new = p_half + 0.5 * τ * dℓπ

    return h.phasepoint(q_new, p_new, ℓπ, dℓπ)

def temper(p, i: int, is_half: bool, n_steps: int, α: float):
    """
    Momentum tempering of step i in 1..n_steps.

    Each step is tempered twice, before (is_half) and after the position
    update. The 2n tempers are counted as i_temper = 2(i-1) + 1 + is_half;
    the first n multiply p by sqrt(α), the last n divide it.
    """
    if i > n_steps:
        raise IndexError(f"Step {i} exceeds the trajectory length {n_steps}")
    i_temper = 2 * (i - 1) + 1 + int(is_half)
    sqrt_α = math.sqrt(α)
    return p * sqrt_α if i_temper <= n_steps else p / sqrt_α

def _integrate_eager(
    h: Hamiltonian,
    z: HamiltonianState,
    τ: float,
    n: int,
    α: float,
) -> List[HamiltonianState]:
    """Step by step from python, for oracles jax cannot trace"""
    trajectory = []
    for i in range(1, n + 1):
        if α != 1.0:
            z = h.phasepoint(z.qp.q, temper(z.qp.p, i, True, n, α), z.logdensity, z.grad)
        z = lf_step(h, z, τ)
        if α != 1.0:
            z = h.phasepoint(z.qp.q, temper(z.qp.p, i, False, n, α), z.logdensity, z.grad)
        trajectory.append(z)
        if not math.isfinite(z.energy):
            break
    return trajectory

@partial(jax.jit, static_argnames=["value_and_grad", "kind", "length"])
def _lf_scan(value_and_grad, kind, length, M_inv, q, p, grad, τ, α, n):
    """
    length leapfrog steps under scan; the carry freezes once a step reaches
    a non-finite energy or i > n, so only the first n outputs are meaningful.
    """
    dtype = jnp.result_type(q, p, grad, M_inv)
    q, p, grad = q.astype(dtype), p.astype(dtype), grad.astype(dtype)
    sqrt_α = jnp.sqrt(α)

    def velocity(p):
        return M_inv @ p if kind == "dense" else M_inv * p

    def scale(p, i_temper):
        return jnp.where(i_temper <= n, p * sqrt_α, p / sqrt_α)

    def body_fn(carry, i):
        q, p, grad, stopped = carry
        p_half = scale(p, 2 * i) + 0.5 * τ * grad
        q_new = q + τ * velocity(p_half)
        finite_q = jnp.all(jnp.isfinite(q_new))
        ℓπ, dℓπ = value_and_grad(jnp.where(finite_q, q_new, jnp.zeros_like(q_new)))
        ℓπ = jnp.where(finite_q, ℓπ, -jnp.inf)
        dℓπ = jnp.where(ℓπ == -jnp.inf, jnp.zeros_like(q_new), dℓπ)
        p_new = scale(p_half + 0.5 * τ * dℓπ, 2 * i - 1)
        kinetic = 0.5 * jnp.dot(p_new, velocity(p_new))
        frozen = stopped | (i > n)
        carry = (
            jnp.where(frozen, q, q_new).astype(dtype),
            jnp.where(frozen, p, p_new).astype(dtype),
            jnp.where(frozen, grad, dℓπ).astype(dtype),
            frozen | ~jnp.isfinite(kinetic - ℓπ),
        )
        return carry, (q_new, p_new, ℓπ, dℓπ, kinetic)

    init = (q, p, grad, jnp.array(False))
    _, states = jax.lax.scan(body_fn, init, jnp.arange(1, length + 1))
    return states

def _integrate_scan(
    h: Hamiltonian,
    z: HamiltonianState,
    τ: float,
    n: int,
    α: float,
) -> List[HamiltonianState]:
    """
    The same steps as _integrate_eager in one jitted scan. The scan length is
    n rounded up to a power of two so that varying n compiles rarely.
    """
    length = 1 << (n - 1).bit_length()
    qs, ps, ℓπs, dℓπs, kinetics = _lf_scan(
        h.value_and_grad, h.metric.kind, length,
        h.metric.M_inv, z.qp.q, z.qp.p, z.grad, τ, α, n,
    )
    finite_q = np.all(np.isfinite(np.asarray(qs)), axis=1)
    ℓπs, kinetics = np.asarray(ℓπs), np.asarray(kinetics)
    trajectory = []
    for k in range(n):
        q = qs[k]
        if finite_q[k]:
            ℓπ, dℓπ = check_oracle_output(q, ℓπs[k], dℓπs[k])
        else:
            ℓπ, dℓπ = -math.inf, jnp.zeros_like(q)
        kinetic = float(kinetics[k])
        if math.isnan(kinetic):
            kinetic = math.inf
        trajectory.append(HamiltonianState(QP(q=q, p=ps[k]), ℓπ, dℓπ, kinetic))
        if not math.isfinite(trajectory[-1].energy):
            break
    return trajectory

def integrate(
    h: Hamiltonian,
    z: HamiltonianState,
    ε: float,
    n_steps: int,
    α: float = 1.0,
    full_trajectory: bool = False,
) -> Union[HamiltonianState, List[HamiltonianState]]:
    """
    Run |n_steps| (tempered when α != 1) leapfrog steps from z, stopping
    early at the first non-finite energy.

    Returns:
        the last state, or every state after z when full_trajectory
    """
    τ = ε if n_steps > 0 else -ε
    n = abs(n_steps)
    if n == 0:
        return [] if full_trajectory else z
    if h.traceable:
        trajectory = _integrate_scan(h, z, τ, n, α)
    else:
        trajectory = _integrate_eager(h, z, τ, n, α)
    return trajectory if full_trajectory else trajectory[-1]

class Leapfrog(NamedTuple):
    """Fixed step size leapfrog"""
    ε: float

    @property
    def nom_step_size(self) -> float:
        return self.ε

    @property
    def step_size(self) -> float:
        return self.ε

    def jitter(self, key: Key) -> "Leapfrog":
        return self

    def set_nom_step_size(self, ε: float) -> "Leapfrog":
        return self._replace(ε=float(ε))

    def step(self, h, z, n_steps: int = 1, full_trajectory: bool = False):
        return integrate(h, z, self.ε, n_steps, full_trajectory=full_trajectory)

class JitteredLeapfrog(NamedTuple):
    """
    Leapfrog whose step size is redrawn once per trajectory as
        ε = ε0 * (1 + jitter_range * U(-1, 1))
    which breaks resonances with periodic targets.
    """
    ε0: float
    jitter_range: float
    ε: float

    @property
    def nom_step_size(self) -> float:
        return self.ε0

    @property
    def step_size(self) -> float:
        return self.ε

    def jitter(self, key: Key) -> "JitteredLeapfrog":
        u = float(jr.uniform(key, minval=-1.0, maxval=1.0))
        return self._replace(ε=self.ε0 * (1.0 + self.jitter_range * u))

    def set_nom_step_size(self, ε: float) -> "JitteredLeapfrog":
        return self._replace(ε0=float(ε), ε=float(ε))

    def step(self, h, z, n_steps: int = 1, full_trajectory: bool = False):
        return integrate(h, z, self.ε, n_steps, full_trajectory=full_trajectory)

class TemperedLeapfrog(NamedTuple):
    """
    Leapfrog with momentum tempering.

    Over an n-step trajectory the momentum is tempered 2n times, before and
    after every step: the first n tempers multiply it by sqrt(α), the last n
    divide it. The scalings cancel for every n, so running the trajectory
    again with -ε undoes it.
    """
    ε: float
    α: float

    @property
    def nom_step_size(self) -> float:
        return self.ε

    @property
    def step_size(self) -> float:
        return self.ε

    def jitter(self, key: Key) -> "TemperedLeapfrog":
        return self

    def set_nom_step_size(self, ε: float) -> "TemperedLeapfrog":
        return self._replace(ε=float(ε))

    def temper(self, p: jnp.ndarray, i: int, is_half: bool, n_steps: int) -> jnp.ndarray:
        return temper(p, i, is_half, n_steps, self.α)

    def step(self, h, z, n_steps: int = 1, full_trajectory: bool = False):
        return integrate(h, z, self.ε, n_steps, self.α, full_trajectory)

def make_integrator(
    kind: str,
    step_size: float,
    jitter: float = 0.0,
    temper_alpha: float = 1.0,
):
    """
    Build an integrator from its tag.

    Args:
        kind: "leapfrog", "jittered" or "tempered"
        step_size: nominal step size ε > 0
        jitter: relative half-width of the step size jitter, in [0, 1)
        temper_alpha: tempering factor α > 0

    Returns:
        Integrator
    """
    if not (step_size > 0 and math.isfinite(step_size)):
        raise ValueError(f"step_size must be positive and finite, got {step_size}")
    step_size = float(step_size)
    if kind == "leapfrog":
        return Leapfrog(ε=step_size)
    if kind == "jittered":
        if not 0.0 <= jitter < 1.0:
            raise ValueError(f"jitter must be in [0, 1), got {jitter}")
        return JitteredLeapfrog(ε0=step_size, jitter_range=float(jitter), ε=step_size)
    if kind == "tempered":
        if not temper_alpha > 0:
            raise ValueError(f"temper_alpha must be positive, got {temper_alpha}")
        return TemperedLeapfrog(ε=step_size, α=float(temper_alpha))
    raise ValueError(f"Unknown integrator {kind!r}")
