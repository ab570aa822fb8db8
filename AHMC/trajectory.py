"""
Description:
    Trajectories and transition kernels: NUTS, static HMC and HMCDA.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2

NUTS grows a binary tree of leapfrog states by doubling, in a uniformly
drawn direction, until a U-turn, a divergence, or max_depth. Each new
subtree is built recursively; the subtree values (edges, weights, sums)
are returned up the call stack and combined at every merge, nothing is
accumulated in shared state.

Termination criteria:
    ClassicNoUTurn:     (q+ - q-) . M^{-1}p- < 0  or  (q+ - q-) . M^{-1}p+ < 0
    GeneralisedNoUTurn: ρ . M^{-1}p- <= 0  or  ρ . M^{-1}p+ <= 0, ρ = Σ p,
                        checked on the whole tree and across the boundary
                        of its two halves

Transition kernels:
    MultinomialTS: states weighted by exp(H0 - H)
    SliceTS:       states with log u <= -H, u ~ U(0, exp(-H0))
    EndPointTS:    Metropolis accept/reject of the last state (static only)

References
----------
[1] M. D. Hoffman and A. Gelman (2014). "The No-U-Turn Sampler." JMLR 15:1593-1623.
[2] M. Betancourt (2017). "A Conceptual Introduction to Hamiltonian Monte Carlo." arXiv:1701.02434.
"""
import logging
import math
from typing import NamedTuple, Any, Tuple
import jax.numpy as jnp
import jax.random as jr
import numpy as np

from datatypes import HamiltonianState, Termination, TransitionStats, Key
from hamiltonian import Hamiltonian, is_divergent
from integrator import lf_step, TemperedLeapfrog
from rng import randcat_logp

_log = logging.getLogger("ahmc")

def _energy_error(H0: float, H: float) -> float:
    ΔH = H - H0
    return ΔH if math.isfinite(ΔH) else math.inf

def _accept_prob(ΔH: float) -> float:
    """min(1, exp(-ΔH)), 0 for a non-finite error"""
    if not math.isfinite(ΔH):
        return 0.0
    return math.exp(min(0.0, -ΔH))

def _uniform(key: Key) -> float:
    return float(jr.uniform(key))

# ============================================================================
# Termination criteria
# ============================================================================

class ClassicNoUTurn:
    """Hoffman & Gelman U-turn check on the tree end points only"""
    kind = "classic"

    def is_turning(self, h: Hamiltonian, tree, left=None, right=None) -> bool:
        dq = tree.zright.qp.q - tree.zleft.qp.q
        return (
            float(jnp.dot(dq, h.velocity(tree.zleft.qp.p))) < 0
            or float(jnp.dot(dq, h.velocity(tree.zright.qp.p))) < 0
        )

def _rho_turning(h: Hamiltonian, zleft, zright, rho) -> bool:
    return not (
        float(jnp.dot(rho, h.velocity(zleft.qp.p))) > 0
        and float(jnp.dot(rho, h.velocity(zright.qp.p))) > 0
    )

class GeneralisedNoUTurn:
    """
    Betancourt's momentum-sum criterion.

    With the two halves of a merged tree available, also checks the spans
    (left.zleft .. right.zleft) and (left.zright .. right.zright), which
    catches U-turns the whole-tree check misses on near-periodic dynamics.
    """
    kind = "generalised"

    def is_turning(self, h: Hamiltonian, tree, left=None, right=None) -> bool:
        if _rho_turning(h, tree.zleft, tree.zright, tree.rho):
            return True
        if left is None or right is None:
            return False
        if _rho_turning(h, left.zleft, right.zleft, left.rho + right.zleft.qp.p):
            return True
        return _rho_turning(h, left.zright, right.zright, left.zright.qp.p + right.rho)

# ============================================================================
# Transition kernels
# ============================================================================

class MultinomialState(NamedTuple):
    zcand: HamiltonianState
    log_weight: float # log Σ exp(H0 - H) over the (sub)tree

class MultinomialTS:
    """Multinomial sampling with weights exp(H0 - H)"""
    kind = "multinomial"

    def init(self, key: Key, z0: HamiltonianState) -> MultinomialState:
        return MultinomialState(zcand=z0, log_weight=0.0)

    def leaf(self, s0: MultinomialState, z: HamiltonianState, H0: float) -> MultinomialState:
        return MultinomialState(zcand=z, log_weight=-_energy_error(H0, z.energy))

    def is_divergent(self, s0, H0: float, H: float, max_delta_h: float) -> bool:
        return is_divergent(H0, H, max_delta_h)

    def combine(self, key: Key, s1: MultinomialState, s2: MultinomialState) -> MultinomialState:
        """Uniform progressive sampling inside a subtree"""
        ℓw = float(np.logaddexp(s1.log_weight, s2.log_weight))
        if ℓw == -math.inf:
            return MultinomialState(zcand=s1.zcand, log_weight=ℓw)
        zcand = s2.zcand if _uniform(key) < math.exp(s2.log_weight - ℓw) else s1.zcand
        return MultinomialState(zcand=zcand, log_weight=ℓw)

    def accept(self, key: Key, s: MultinomialState, s_new: MultinomialState) -> bool:
        """Biased progressive sampling when appending a new subtree"""
        if s_new.log_weight == -math.inf:
            return False
        return _uniform(key) < math.exp(min(0.0, s_new.log_weight - s.log_weight))

    def merge(self, zcand, s1: MultinomialState, s2: MultinomialState) -> MultinomialState:
        return MultinomialState(zcand=zcand, log_weight=float(np.logaddexp(s1.log_weight, s2.log_weight)))

class SliceState(NamedTuple):
    zcand: HamiltonianState
    log_u: float # log slice variable, fixed for the whole transition
    n: int # number of states inside the slice

class SliceTS:
    """Slice sampling: u ~ U(0, exp(-H0)), states with log u <= -H are valid"""
    kind = "slice"

    def init(self, key: Key, z0: HamiltonianState) -> SliceState:
        log_u = math.log1p(-_uniform(key)) - z0.energy
        return SliceState(zcand=z0, log_u=log_u, n=1)

    def leaf(self, s0: SliceState, z: HamiltonianState, H0: float) -> SliceState:
        n = 1 if s0.log_u <= -z.energy else 0
        return SliceState(zcand=z, log_u=s0.log_u, n=n)

    def is_divergent(self, s0: SliceState, H0: float, H: float, max_delta_h: float) -> bool:
        return not (s0.log_u < max_delta_h - H)

    def combine(self, key: Key, s1: SliceState, s2: SliceState) -> SliceState:
        n = s1.n + s2.n
        if n == 0:
            return SliceState(zcand=s1.zcand, log_u=s1.log_u, n=0)
        zcand = s2.zcand if _uniform(key) < s2.n / n else s1.zcand
        return SliceState(zcand=zcand, log_u=s1.log_u, n=n)

    def accept(self, key: Key, s: SliceState, s_new: SliceState) -> bool:
        if s_new.n == 0:
            return False
        return _uniform(key) < min(1.0, s_new.n / s.n)

    def merge(self, zcand, s1: SliceState, s2: SliceState) -> SliceState:
        return SliceState(zcand=zcand, log_u=s1.log_u, n=s1.n + s2.n)

class EndPointTS:
    """Metropolis accept/reject of the trajectory end point"""
    kind = "endpoint"

# ============================================================================
# Binary tree
# ============================================================================

class BinaryTree(NamedTuple):
    """Contiguous sub-trajectory"""
    zleft: HamiltonianState
    zright: HamiltonianState
    rho: jnp.ndarray # Σ p over the states
    sum_alpha: float # Σ min(1, exp(H0 - H))
    n_alpha: int # number of leapfrog steps
    max_energy_error: float # energy error with the largest magnitude
    numerical_error: bool # a non-finite energy was met

def combine(left: BinaryTree, right: BinaryTree) -> BinaryTree:
    """Merge two adjacent trees, left being earlier in time"""
    max_err = left.max_energy_error
    if abs(right.max_energy_error) > abs(max_err):
        max_err = right.max_energy_error
    return BinaryTree(
        zleft=left.zleft,
        zright=right.zright,
        rho=left.rho + right.rho,
        sum_alpha=left.sum_alpha + right.sum_alpha,
        n_alpha=left.n_alpha + right.n_alpha,
        max_energy_error=max_err,
        numerical_error=left.numerical_error or right.numerical_error,
    )

def build_tree(
    key: Key,
    nuts: "NUTS",
    h: Hamiltonian,
    integrator,
    z: HamiltonianState,
    s0,
    v: int,
    j: int,
    H0: float,
) -> Tuple[BinaryTree, Any, Termination]:
    """
    Build a subtree of 2^j leapfrog steps starting next to z in direction v.

    Args:
        key: random key for the candidate draws inside the subtree
        nuts: NUTS settings (criterion, kernel, max_delta_h)
        h: Hamiltonian
        integrator: integrator with the step size of this transition
        z: edge state to extend from
        s0: kernel state of the initial point (slice variable)
        v: +1 forward, -1 backward in time
        j: depth of the subtree
        H0: energy of the initial point

    Returns:
        (tree, kernel state, termination); building stops at the first
        terminated half, whose values are returned as they are
    """
    if j == 0:
        z1 = integrator.step(h, z, v)
        H1 = z1.energy
        ΔH = _energy_error(H0, H1)
        tree = BinaryTree(
            zleft=z1,
            zright=z1,
            rho=z1.qp.p,
            sum_alpha=_accept_prob(ΔH),
            n_alpha=1,
            max_energy_error=ΔH,
            numerical_error=not math.isfinite(H1),
        )
        s = nuts.kernel.leaf(s0, z1, H0)
        termination = Termination(
            dynamic=False,
            numerical=nuts.kernel.is_divergent(s0, H0, H1, nuts.max_delta_h),
        )
        return tree, s, termination

    k_inner, k_outer, k_combine = jr.split(key, 3)
    # Inner half, starting from z
    tree1, s1, term1 = build_tree(k_inner, nuts, h, integrator, z, s0, v, j - 1, H0)
    if term1.terminated:
        return tree1, s1, term1
    # Outer half, starting from the far edge of the inner half
    z_edge = tree1.zright if v == 1 else tree1.zleft
    tree2, s2, term2 = build_tree(k_outer, nuts, h, integrator, z_edge, s0, v, j - 1, H0)

    left, right = (tree1, tree2) if v == 1 else (tree2, tree1)
    tree = combine(left, right)
    s = nuts.kernel.combine(k_combine, s1, s2)
    termination = term2 | Termination(
        dynamic=nuts.termination.is_turning(h, tree, left, right)
    )
    return tree, s, termination

# ============================================================================
# Trajectories
# ============================================================================

class NUTS(NamedTuple):
    """No-U-Turn trajectory"""
    termination: Any = GeneralisedNoUTurn()
    kernel: Any = MultinomialTS()
    max_depth: int = 10
    max_delta_h: float = 1000.0

    def sample(self, key: Key, h: Hamiltonian, integrator, z0: HamiltonianState):
        if isinstance(integrator, TemperedLeapfrog):
            raise ValueError("Tempering needs a known trajectory length; use a static trajectory")
        H0 = z0.energy
        key, k_init = jr.split(key)
        s = self.kernel.init(k_init, z0)
        tree = BinaryTree(
            zleft=z0,
            zright=z0,
            rho=z0.qp.p,
            sum_alpha=0.0,
            n_alpha=0,
            max_energy_error=0.0,
            numerical_error=False,
        )
        termination = Termination()
        zcand = z0
        j = 0
        while not termination.terminated and j < self.max_depth:
            key, k_dir, k_tree, k_mh = jr.split(key, 4)
            v = 1 if bool(jr.bernoulli(k_dir)) else -1
            if v == -1:
                tree_new, s_new, term_new = build_tree(k_tree, self, h, integrator, tree.zleft, s, v, j, H0)
                left, right = tree_new, tree
            else:
                tree_new, s_new, term_new = build_tree(k_tree, self, h, integrator, tree.zright, s, v, j, H0)
                left, right = tree, tree_new

            # Only a subtree that finished cleanly may provide the candidate
            if not term_new.terminated:
                j += 1
                if self.kernel.accept(k_mh, s, s_new):
                    zcand = s_new.zcand

            # Statistics include the rejected subtree's steps
            tree = combine(left, right)
            s = self.kernel.merge(zcand, s, s_new)
            termination = termination | term_new | Termination(
                dynamic=self.termination.is_turning(h, tree, left, right)
            )

        stats = TransitionStats(
            step_size=integrator.step_size,
            n_leapfrog_steps=tree.n_alpha,
            acceptance_rate=tree.sum_alpha / tree.n_alpha,
            tree_depth=j,
            divergent=termination.numerical,
            energy=zcand.energy,
            numerical_error=tree.numerical_error,
            energy_error=_energy_error(H0, zcand.energy),
            max_energy_error=tree.max_energy_error,
            log_density=zcand.logdensity,
            is_accept=zcand is not z0,
            turning=termination.dynamic,
            reached_max_depth=not termination.terminated and j >= self.max_depth,
        )
        return zcand, stats

def _sample_static(
    key: Key,
    kernel,
    max_delta_h: float,
    n_steps: int,
    h: Hamiltonian,
    integrator,
    z0: HamiltonianState,
):
    """Fixed number of leapfrog steps, end point or multinomial selection"""
    H0 = z0.energy
    if isinstance(kernel, MultinomialTS):
        if isinstance(integrator, TemperedLeapfrog):
            raise ValueError("Tempering is only defined for end point static trajectories")
        # Split the steps between both time directions so the selection is reversible
        k_split, k_cat = jr.split(key)
        n_fwd = int(jr.randint(k_split, (), 0, n_steps + 1))
        zs_fwd = integrator.step(h, z0, n_fwd, full_trajectory=True) if n_fwd > 0 else []
        n_bwd = n_steps - n_fwd
        zs_bwd = integrator.step(h, z0, -n_bwd, full_trajectory=True) if n_bwd > 0 else []
        steps = zs_bwd + zs_fwd
        zs = list(reversed(zs_bwd)) + [z0] + zs_fwd
        ℓws = jnp.array([-_energy_error(H0, z.energy) for z in zs])
        z = zs[randcat_logp(k_cat, ℓws)]
        alphas = [_accept_prob(_energy_error(H0, s.energy)) for s in steps]
        acceptance_rate = sum(alphas) / len(alphas) if alphas else 1.0
        is_accept = z is not z0
    elif isinstance(kernel, EndPointTS):
        steps = integrator.step(h, z0, n_steps, full_trajectory=True)
        z_end = steps[-1]
        complete = len(steps) == n_steps
        acceptance_rate = _accept_prob(_energy_error(H0, z_end.energy)) if complete else 0.0
        is_accept = _uniform(key) < acceptance_rate
        z = z_end if is_accept else z0
    else:
        raise ValueError(f"Static trajectories do not support the {kernel.kind!r} kernel")

    errors = [_energy_error(H0, s.energy) for s in steps]
    max_err = max(errors, key=abs) if errors else 0.0
    stats = TransitionStats(
        step_size=integrator.step_size,
        n_leapfrog_steps=len(steps),
        acceptance_rate=acceptance_rate,
        tree_depth=0,
        divergent=any(is_divergent(H0, s.energy, max_delta_h) for s in steps),
        energy=z.energy,
        numerical_error=any(not math.isfinite(s.energy) for s in steps),
        energy_error=_energy_error(H0, z.energy),
        max_energy_error=max_err,
        log_density=z.logdensity,
        is_accept=is_accept,
        turning=False,
        reached_max_depth=False,
    )
    return z, stats

class StaticTrajectory(NamedTuple):
    """Exactly n_steps leapfrog steps, no U-turn check"""
    n_steps: int = 10
    kernel: Any = EndPointTS()
    max_delta_h: float = 1000.0

    def sample(self, key: Key, h: Hamiltonian, integrator, z0: HamiltonianState):
        return _sample_static(key, self.kernel, self.max_delta_h, self.n_steps, h, integrator, z0)

class HMCDA(NamedTuple):
    """Static trajectory of fixed integration time λ; n_steps = max(1, floor(λ/ε))"""
    λ: float = 2.0
    kernel: Any = EndPointTS()
    max_delta_h: float = 1000.0

    def n_steps(self, ε: float) -> int:
        return max(1, math.floor(self.λ / ε))

    def sample(self, key: Key, h: Hamiltonian, integrator, z0: HamiltonianState):
        n_steps = self.n_steps(integrator.step_size)
        return _sample_static(key, self.kernel, self.max_delta_h, n_steps, h, integrator, z0)

# ============================================================================
# Entry points
# ============================================================================

def transition(
    key: Key,
    h: Hamiltonian,
    integrator,
    trajectory,
    θ0: jnp.ndarray,
) -> Tuple[jnp.ndarray, TransitionStats]:
    """
    One MCMC transition from position θ0.

    Args:
        key: random key, consumed entirely by this transition
        h: Hamiltonian
        integrator: integrator (jittered once per call if it jitters)
        trajectory: NUTS, StaticTrajectory or HMCDA
        θ0: current position

    Returns:
        (new position, TransitionStats)
    """
    k_jitter, k_mom, k_traj = jr.split(key, 3)
    integrator = integrator.jitter(k_jitter)
    θ0 = jnp.asarray(θ0)
    ℓπ, dℓπ = h.evaluate(θ0)
    if ℓπ == -math.inf:
        raise ValueError("Initial position has zero density")
    z0 = h.phasepoint(θ0, h.metric.sample_momentum(k_mom), ℓπ, dℓπ)
    z, stats = trajectory.sample(k_traj, h, integrator, z0)
    return z.qp.q, stats

def find_good_eps(
    key: Key,
    h: Hamiltonian,
    θ: jnp.ndarray,
    init_eps: float = 1.0,
    a_cross: float = 0.5,
    max_n_iters: int = 100,
) -> float:
    """
    Heuristic initial step size.

    Doubles (or halves) ε until the one-step acceptance ratio
    exp(H0 - H1) crosses a_cross.
    """
    θ = jnp.asarray(θ)
    ℓπ, dℓπ = h.evaluate(θ)
    if ℓπ == -math.inf:
        raise ValueError("Initial position has zero density")
    z = h.phasepoint(θ, h.metric.sample_momentum(key), ℓπ, dℓπ)
    H0 = z.energy
    log_a = math.log(a_cross)

    def log_ratio(ε):
        return -_energy_error(H0, lf_step(h, z, ε).energy)

    ε = float(init_eps)
    direction = 1 if log_ratio(ε) > log_a else -1
    for _ in range(max_n_iters):
        ε_new = 2.0 * ε if direction == 1 else 0.5 * ε
        ΔH = log_ratio(ε_new)
        if direction == 1 and not ΔH > log_a:
            break
        if direction == -1 and not ΔH < log_a:
            ε = ε_new
            break
        ε = ε_new
    else:
        _log.warning("find_good_eps reached %d iterations, returning ε = %g", max_n_iters, ε)
    _log.info("Found initial step size %g", ε)
    return ε

# ============================================================================
# Constructors
# ============================================================================

TERMINATIONS = {"classic": ClassicNoUTurn, "generalised": GeneralisedNoUTurn}
KERNELS = {"multinomial": MultinomialTS, "slice": SliceTS, "endpoint": EndPointTS}

def make_trajectory(
    kind: str = "nuts",
    termination: str = "generalised",
    kernel: str = "multinomial",
    max_depth: int = 10,
    max_delta_h: float = 1000.0,
    n_leapfrog: int = 10,
    trajectory_length: float = 2.0,
    integrator: str = "leapfrog",
):
    """
    Build a trajectory from its tags, checking the options.

    integrator names the integrator it will run with: a tempered leapfrog
    only fits a static or hmcda trajectory with an endpoint kernel.
    """
    if kernel not in KERNELS:
        raise ValueError(f"Unknown transition kernel {kernel!r}")
    if not max_delta_h > 0:
        raise ValueError(f"max_delta_h must be positive, got {max_delta_h}")
    ts = KERNELS[kernel]()
    if integrator == "tempered" and not isinstance(ts, EndPointTS):
        raise ValueError(
            f"The tempered integrator needs an endpoint kernel, got {kind!r} with {kernel!r}"
        )
    if kind == "nuts":
        if termination not in TERMINATIONS:
            raise ValueError(f"Unknown termination criterion {termination!r}")
        if isinstance(ts, EndPointTS):
            raise ValueError("NUTS needs a multinomial or slice kernel")
        if max_depth < 1:
            raise ValueError(f"max_depth must be positive, got {max_depth}")
        return NUTS(
            termination=TERMINATIONS[termination](),
            kernel=ts,
            max_depth=int(max_depth),
            max_delta_h=float(max_delta_h),
        )
    if isinstance(ts, SliceTS):
        raise ValueError("Static trajectories need an endpoint or multinomial kernel")
    if kind == "static":
        if n_leapfrog < 1:
            raise ValueError(f"n_leapfrog must be positive, got {n_leapfrog}")
        return StaticTrajectory(n_steps=int(n_leapfrog), kernel=ts, max_delta_h=float(max_delta_h))
    if kind == "hmcda":
        if not trajectory_length > 0:
            raise ValueError(f"trajectory_length must be positive, got {trajectory_length}")
        return HMCDA(λ=float(trajectory_length), kernel=ts, max_delta_h=float(max_delta_h))
    raise ValueError(f"Unknown trajectory {kind!r}")
