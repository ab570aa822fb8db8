"""
Description:
    MCMC sampling loop: warm-up adaptation, then frozen sampling.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2

Chains never share an adaptor or a metric: sample_chains deep-copies the
adaptor for every chain and gives every chain its own key.
"""
import copy
import logging
from typing import List, Optional, Tuple

import jax.numpy as jnp
import jax.random as jr
from tqdm import tqdm

from datatypes import SamplerConfig, SamplerOutput, TransitionStats, LogDensity
from adaptation import MassMatrixAdaptor, StepSizeAdaptor, StanHMCAdaptor
from diagnostics import summarize
from hamiltonian import make_hamiltonian
from integrator import make_integrator
from metric import make_metric
from rng import as_key, check_keys
from trajectory import transition, find_good_eps, make_trajectory

_log = logging.getLogger("ahmc")

def stack_stats(stats: List[TransitionStats]) -> TransitionStats:
    """List of per-iteration stats -> TransitionStats of arrays"""
    return TransitionStats(*[jnp.asarray(column) for column in zip(*stats)])

def _report(stats: TransitionStats) -> None:
    summary = summarize(stats)
    if summary.get("n_divergent", 0) > 0:
        _log.warning(
            "%d of %d transitions diverged", summary["n_divergent"], summary["n_iterations"]
        )
    if summary.get("n_max_depth", 0) > 0:
        _log.warning(
            "%d of %d transitions reached the maximum tree depth",
            summary["n_max_depth"], summary["n_iterations"],
        )

def _warmup_length(adaptor, n_adapts: Optional[int], n_samples: int) -> int:
    """Number of adaptation iterations, checked against the adaptor's schedule"""
    if adaptor is None:
        return 0
    planned = getattr(adaptor, "n_adapts", None)
    if n_adapts is None:
        if planned is None:
            raise ValueError(f"{type(adaptor).__name__} needs n_adapts")
        n_adapts = planned
    elif planned is not None and n_adapts != planned:
        raise ValueError(
            f"n_adapts = {n_adapts} disagrees with the adaptor's windows for {planned} iterations"
        )
    if n_adapts > n_samples:
        _log.warning(
            "Only %d of the %d adaptation iterations fit in %d samples",
            n_samples, n_adapts, n_samples,
        )
    return min(n_adapts, n_samples)

def sample(
    key,
    h,
    integrator,
    trajectory,
    θ0: jnp.ndarray,
    n_samples: int,
    adaptor=None,
    n_adapts: Optional[int] = None,
    drop_warmup: bool = False,
    progress: bool = False,
) -> SamplerOutput:
    """
    Run one chain.

    Args:
        key: random key or int seed; split into one key per iteration
        h: Hamiltonian
        integrator: integrator holding the initial step size
        trajectory: NUTS, StaticTrajectory or HMCDA
        θ0: initial position
        n_samples: total number of iterations, warm-up included
        adaptor: StanHMCAdaptor or NaiveHMCAdaptor, None for no adaptation
        n_adapts: number of warm-up iterations; defaults to the adaptor's own
            n_adapts and must agree with it when both are given
        drop_warmup: leave the warm-up draws out of the output
        progress: show a progress bar

    Returns:
        SamplerOutput
    """
    keys = jr.split(as_key(key), n_samples)
    n_adapts = _warmup_length(adaptor, n_adapts, n_samples)
    θ = jnp.asarray(θ0)
    _log.info(
        "Sampling %d iterations (%d adaptation) with %s, ε = %g",
        n_samples, n_adapts, type(trajectory).__name__, integrator.nom_step_size,
    )

    samples, stats = [], []
    for i in tqdm(range(n_samples), disable=not progress, desc="Sampling"):
        θ, s = transition(keys[i], h, integrator, trajectory, θ)
        if i < n_adapts:
            ε, metric = adaptor.adapt(θ, s.acceptance_rate)
            if i == n_adapts - 1:
                ε, metric = adaptor.finalize()
                _log.info("Finished %d adaptation steps, ε = %g, %r", n_adapts, ε, metric)
            integrator = integrator.set_nom_step_size(ε)
            h = h.with_metric(metric)
        if drop_warmup and i < n_adapts:
            continue
        samples.append(θ)
        stats.append(s)

    if stats:
        stacked = stack_stats(stats)
        _report(stacked)
        positions = jnp.stack(samples)
    else:
        stacked = TransitionStats(*[jnp.asarray([]) for _ in TransitionStats._fields])
        positions = jnp.zeros((0, θ.shape[0]))
    return SamplerOutput(
        samples=positions,
        stats=stacked,
        step_size=integrator.nom_step_size,
        metric=h.metric,
    )

def sample_chains(
    keys,
    h,
    integrator,
    trajectory,
    θ0s: jnp.ndarray,
    n_samples: int,
    adaptor=None,
    n_adapts: Optional[int] = None,
    drop_warmup: bool = False,
    progress: bool = False,
) -> List[SamplerOutput]:
    """
    Run independent chains, one key and one adaptor copy per chain.

    Args:
        keys: array of keys, exactly one per chain
        θ0s: (n_chains, dim) initial positions

    Returns:
        One SamplerOutput per chain
    """
    θ0s = jnp.atleast_2d(jnp.asarray(θ0s))
    n_chains = θ0s.shape[0]
    keys = check_keys(keys, n_chains)
    outputs = []
    for c in range(n_chains):
        _log.info("Chain %d of %d", c + 1, n_chains)
        outputs.append(sample(
            keys[c], h, integrator, trajectory, θ0s[c], n_samples,
            adaptor=copy.deepcopy(adaptor),
            n_adapts=n_adapts,
            drop_warmup=drop_warmup,
            progress=progress,
        ))
    return outputs

def from_config(
    config: SamplerConfig,
    dim: int,
    logdensity: LogDensity,
    gradient=None,
    key=None,
    θ0: Optional[jnp.ndarray] = None,
    traceable: bool = True,
) -> Tuple:
    """
    Build (hamiltonian, integrator, trajectory, adaptor) from a SamplerConfig.

    The trajectory is checked first, so a bad combination fails before any
    oracle call. When config.step_size is None the initial step size is
    searched with find_good_eps, which needs key and θ0. traceable=False
    keeps a non-jax oracle out of jax tracing.
    """
    trajectory = make_trajectory(
        kind=config.trajectory,
        termination=config.termination,
        kernel=config.kernel,
        max_depth=config.max_depth,
        max_delta_h=config.max_delta_h,
        n_leapfrog=config.n_leapfrog,
        trajectory_length=config.trajectory_length,
        integrator=config.integrator,
    )
    metric = make_metric(config.metric, dim)
    h = make_hamiltonian(metric, logdensity, gradient, traceable)
    step_size = config.step_size
    if step_size is None:
        if key is None or θ0 is None:
            raise ValueError("Searching for an initial step size needs a key and θ0")
        step_size = find_good_eps(as_key(key), h, θ0)
    integrator = make_integrator(config.integrator, step_size, config.jitter, config.temper_alpha)
    ssa = StepSizeAdaptor(config.target_accept, integrator, γ=config.gamma, t0=config.t0, κ=config.kappa)
    pc = MassMatrixAdaptor(metric, n_min=config.n_min, n_shrink=config.n_shrink, shrink_eps=config.shrink_eps)
    adaptor = StanHMCAdaptor(
        pc, ssa, config.n_adapts,
        init_buffer=config.init_buffer,
        term_buffer=config.term_buffer,
        window_size=config.window_size,
    )
    return h, integrator, trajectory, adaptor

def extract_positions(output: SamplerOutput, n_drop: int = 0) -> jnp.ndarray:
    """
    (n_samples - n_drop, dim) array of positions
    """
    return output.samples[n_drop:]

def compute_accept_rate(output: SamplerOutput) -> float:
    """
    Mean acceptance statistic in [0, 1]
    """
    return float(jnp.mean(output.stats.acceptance_rate))
