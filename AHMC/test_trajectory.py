"""
Tests for the NUTS tree builder, termination criteria, transition kernels,
static trajectories and categorical draws.
"""

import math
import jax
import jax.numpy as jnp
import jax.random as jr
import numpy as np
import pytest

# Enable 64-bit precision
jax.config.update("jax_enable_x64", True)

from exceptions import StreamLengthMismatch
from hamiltonian import gaussian_hamiltonian, make_hamiltonian
from integrator import Leapfrog, TemperedLeapfrog
from metric import UnitEuclideanMetric, DiagEuclideanMetric
from rng import categorical_index, randcat, randcat_logp, split_chains
from target import gen_half_normal
from trajectory import (
    NUTS, HMCDA, StaticTrajectory, BinaryTree, ClassicNoUTurn, GeneralisedNoUTurn,
    MultinomialTS, MultinomialState, SliceTS, SliceState, EndPointTS,
    build_tree, combine, transition, find_good_eps, make_trajectory,
)


def _std_normal(dim):
    return gaussian_hamiltonian(jnp.eye(dim), UnitEuclideanMetric(dim))


def _leaf(h, q, p):
    z = h.phasepoint(jnp.array(q), jnp.array(p))
    return BinaryTree(
        zleft=z, zright=z, rho=z.qp.p, sum_alpha=1.0, n_alpha=1,
        max_energy_error=0.0, numerical_error=False,
    )


# ============================================================================
# Termination criteria
# ============================================================================

def test_classic_no_u_turn():
    h = _std_normal(1)
    left, right = _leaf(h, [0.0], [1.0]), _leaf(h, [1.0], [-1.0])
    assert ClassicNoUTurn().is_turning(h, combine(left, right))

    left, right = _leaf(h, [0.0], [1.0]), _leaf(h, [1.0], [0.5])
    assert not ClassicNoUTurn().is_turning(h, combine(left, right))

    # Either end turning is enough
    left, right = _leaf(h, [0.0], [-0.2]), _leaf(h, [1.0], [1.0])
    assert ClassicNoUTurn().is_turning(h, combine(left, right))


def test_generalised_no_u_turn():
    h = _std_normal(1)
    tree = combine(_leaf(h, [0.0], [1.0]), _leaf(h, [1.0], [-1.0]))
    # ρ = 0, so ρ . p <= 0 at both ends
    assert GeneralisedNoUTurn().is_turning(h, tree)

    left, right = _leaf(h, [0.0], [1.0]), _leaf(h, [1.0], [0.5])
    tree = combine(left, right)
    assert not GeneralisedNoUTurn().is_turning(h, tree, left, right)


def test_generalised_criterion_uses_metric():
    """The momentum is mapped through M^{-1} before the dot product"""
    h = gaussian_hamiltonian(jnp.eye(2), DiagEuclideanMetric(jnp.array([1.0, 100.0])))
    left = _leaf(h, [0.0, 0.0], [1.0, 0.5])
    right = _leaf(h, [0.1, 0.0], [1.0, -0.7])
    tree = combine(left, right)
    # Euclidean ρ . p > 0 but ρ . M^{-1} p < 0
    assert float(jnp.dot(tree.rho, left.zleft.qp.p)) > 0
    assert GeneralisedNoUTurn().is_turning(h, tree, left, right)


def test_combine_keeps_largest_energy_error():
    h = _std_normal(1)
    left = _leaf(h, [0.0], [1.0])._replace(max_energy_error=-3.0, sum_alpha=0.5)
    right = _leaf(h, [1.0], [1.0])._replace(max_energy_error=2.0, numerical_error=True)
    tree = combine(left, right)
    assert tree.max_energy_error == -3.0
    assert tree.n_alpha == 2
    assert tree.sum_alpha == 1.5
    assert tree.numerical_error
    assert tree.zleft is left.zleft and tree.zright is right.zright


# ============================================================================
# Transition kernels
# ============================================================================

def test_multinomial_zero_weight():
    h = _std_normal(1)
    z1, z2 = _leaf(h, [0.0], [1.0]).zleft, _leaf(h, [1.0], [1.0]).zleft
    ts = MultinomialTS()
    s1 = MultinomialState(zcand=z1, log_weight=-math.inf)
    s2 = MultinomialState(zcand=z2, log_weight=-math.inf)
    s = ts.combine(jr.PRNGKey(0), s1, s2)
    assert s.log_weight == -math.inf and s.zcand is z1
    assert not ts.accept(jr.PRNGKey(0), MultinomialState(z1, 0.0), s2)

    # A subtree with all the weight always wins
    s2 = MultinomialState(zcand=z2, log_weight=0.0)
    assert all(ts.combine(k, s1, s2).zcand is z2 for k in jr.split(jr.PRNGKey(1), 20))


def test_multinomial_combine_frequency():
    """Inside a subtree the candidate is drawn in proportion to the weights"""
    h = _std_normal(1)
    z1, z2 = _leaf(h, [0.0], [1.0]).zleft, _leaf(h, [1.0], [1.0]).zleft
    ts = MultinomialTS()
    s1 = MultinomialState(zcand=z1, log_weight=math.log(0.25))
    s2 = MultinomialState(zcand=z2, log_weight=math.log(0.75))
    n = 2000
    hits = sum(ts.combine(k, s1, s2).zcand is z2 for k in jr.split(jr.PRNGKey(2), n))
    assert abs(hits / n - 0.75) < 0.04


def test_slice_divergence():
    h = _std_normal(1)
    z0 = h.phasepoint(jnp.array([0.5]), jnp.array([0.3]))
    ts = SliceTS()
    s0 = SliceState(zcand=z0, log_u=-z0.energy - 0.1, n=1)
    assert not ts.is_divergent(s0, z0.energy, z0.energy + 10.0, 1000.0)
    assert ts.is_divergent(s0, z0.energy, z0.energy + 1500.0, 1000.0)
    assert ts.is_divergent(s0, z0.energy, math.inf, 1000.0)

    # States with log u <= -H are inside the slice
    assert ts.leaf(s0, z0, z0.energy).n == 1
    z_far = h.phasepoint(jnp.array([5.0]), jnp.array([0.3]))
    assert ts.leaf(s0, z_far, z0.energy).n == 0


def test_slice_init_is_below_energy():
    h = _std_normal(2)
    z0 = h.phasepoint(jnp.array([0.5, -0.2]), jnp.array([0.3, 1.0]))
    for k in jr.split(jr.PRNGKey(3), 10):
        s = SliceTS().init(k, z0)
        assert s.log_u <= -z0.energy
        assert s.n == 1


# ============================================================================
# Tree building
# ============================================================================

def test_build_tree_edges():
    """A depth-j subtree holds 2^j consecutive leapfrog states"""
    h = _std_normal(2)
    z0 = h.phasepoint(jnp.array([0.3, -0.4]), jnp.array([1.0, 0.2]))
    nuts = NUTS()
    lf = Leapfrog(ε=0.05)
    s0 = nuts.kernel.init(jr.PRNGKey(0), z0)

    tree, _, term = build_tree(jr.PRNGKey(1), nuts, h, lf, z0, s0, 1, 2, z0.energy)
    assert not term.terminated
    assert tree.n_alpha == 4
    assert np.allclose(tree.zleft.qp.q, lf.step(h, z0, 1).qp.q)
    assert np.allclose(tree.zright.qp.q, lf.step(h, z0, 4).qp.q)

    tree, _, _ = build_tree(jr.PRNGKey(1), nuts, h, lf, z0, s0, -1, 2, z0.energy)
    assert np.allclose(tree.zright.qp.q, lf.step(h, z0, -1).qp.q)
    assert np.allclose(tree.zleft.qp.q, lf.step(h, z0, -4).qp.q)
    assert 0.9 < tree.sum_alpha / tree.n_alpha <= 1.0


@pytest.mark.parametrize("termination", [GeneralisedNoUTurn(), ClassicNoUTurn()])
@pytest.mark.parametrize("seed", range(5))
def test_nuts_terminates_on_u_turn(termination, seed):
    h = _std_normal(2)
    θ0 = jnp.array([1.0, -0.5])
    θ, stats = transition(jr.PRNGKey(seed), h, Leapfrog(ε=0.1), NUTS(termination=termination), θ0)

    assert stats.turning
    assert not stats.divergent
    assert not stats.reached_max_depth
    assert stats.tree_depth < 10
    assert stats.n_leapfrog_steps < 2**10
    assert np.all(np.isfinite(θ))


def test_nuts_divergence():
    """A huge step size diverges on the first leaf, and the chain stays put"""
    h = _std_normal(2)
    θ0 = jnp.array([1.0, -0.5])
    θ, stats = transition(jr.PRNGKey(0), h, Leapfrog(ε=100.0), NUTS(), θ0)

    assert stats.divergent
    assert not stats.is_accept
    assert stats.tree_depth == 0
    assert stats.n_leapfrog_steps == 1
    assert np.allclose(θ, θ0)


def test_nuts_max_depth():
    h = _std_normal(2)
    θ0 = jnp.array([1.0, -0.5])
    _, stats = transition(jr.PRNGKey(0), h, Leapfrog(ε=1e-3), NUTS(max_depth=3), θ0)

    assert stats.reached_max_depth
    assert not stats.turning
    assert stats.tree_depth == 3
    assert stats.n_leapfrog_steps == 7
    assert stats.acceptance_rate > 0.99


def test_nuts_slice_kernel():
    h = _std_normal(3)
    θ0 = jnp.array([1.0, -0.5, 0.2])
    for k in jr.split(jr.PRNGKey(4), 5):
        θ, stats = transition(k, h, Leapfrog(ε=0.2), NUTS(kernel=SliceTS()), θ0)
        assert not stats.divergent
        assert 0.0 <= stats.acceptance_rate <= 1.0
        assert np.all(np.isfinite(θ))


def test_transition_is_deterministic():
    h = _std_normal(3)
    θ0 = jnp.array([1.0, -0.5, 0.2])
    θa, sa = transition(jr.PRNGKey(9), h, Leapfrog(ε=0.3), NUTS(), θ0)
    θb, sb = transition(jr.PRNGKey(9), h, Leapfrog(ε=0.3), NUTS(), θ0)
    assert np.array_equal(θa, θb)
    assert sa == sb


def test_zero_density_start():
    h = make_hamiltonian(UnitEuclideanMetric(1), *gen_half_normal())
    with pytest.raises(ValueError):
        transition(jr.PRNGKey(0), h, Leapfrog(ε=0.1), NUTS(), jnp.array([-1.0]))


def test_half_normal_boundary():
    """Leaving the support gives zero weight; the sampler keeps going"""
    h = make_hamiltonian(UnitEuclideanMetric(1), *gen_half_normal())
    θ = jnp.array([0.05])
    for k in jr.split(jr.PRNGKey(5), 30):
        θ, stats = transition(k, h, Leapfrog(ε=0.3), NUTS(), θ)
        assert float(θ[0]) > 0


# ============================================================================
# Static trajectories
# ============================================================================

def test_static_endpoint():
    h = _std_normal(2)
    θ0 = jnp.array([1.0, -0.5])
    θ, stats = transition(jr.PRNGKey(0), h, Leapfrog(ε=0.1), StaticTrajectory(n_steps=10), θ0)

    assert stats.n_leapfrog_steps == 10
    assert stats.tree_depth == 0
    assert stats.acceptance_rate > 0.9
    assert not stats.divergent
    if stats.is_accept:
        assert not np.allclose(θ, θ0)
    else:
        assert np.allclose(θ, θ0)


def test_static_multinomial():
    h = _std_normal(2)
    θ0 = jnp.array([1.0, -0.5])
    trajectory = StaticTrajectory(n_steps=8, kernel=MultinomialTS())
    for k in jr.split(jr.PRNGKey(1), 5):
        θ, stats = transition(k, h, Leapfrog(ε=0.1), trajectory, θ0)
        assert stats.n_leapfrog_steps == 8
        assert stats.acceptance_rate > 0.9
        assert np.all(np.isfinite(θ))


def test_static_divergence_rejects():
    h = _std_normal(2)
    θ0 = jnp.array([1.0, -0.5])
    θ, stats = transition(jr.PRNGKey(0), h, Leapfrog(ε=100.0), StaticTrajectory(n_steps=3), θ0)
    assert stats.divergent
    assert stats.acceptance_rate == 0.0
    assert np.allclose(θ, θ0)


def test_hmcda_n_steps():
    assert HMCDA(λ=2.0).n_steps(0.3) == 6
    assert HMCDA(λ=2.0).n_steps(0.25) == 8
    assert HMCDA(λ=2.0).n_steps(5.0) == 1

    h = _std_normal(2)
    _, stats = transition(jr.PRNGKey(0), h, Leapfrog(ε=0.25), HMCDA(λ=2.0), jnp.array([1.0, -0.5]))
    assert stats.n_leapfrog_steps == 8


def test_tempering_needs_static_endpoint():
    h = _std_normal(2)
    θ0 = jnp.array([1.0, -0.5])
    tempered = TemperedLeapfrog(ε=0.1, α=1.05)
    with pytest.raises(ValueError):
        transition(jr.PRNGKey(0), h, tempered, NUTS(), θ0)
    with pytest.raises(ValueError):
        transition(jr.PRNGKey(0), h, tempered, StaticTrajectory(n_steps=4, kernel=MultinomialTS()), θ0)

    _, stats = transition(jr.PRNGKey(0), h, tempered, StaticTrajectory(n_steps=4), θ0)
    assert stats.n_leapfrog_steps == 4


def test_tempered_hmcda_odd_length():
    """floor(2.0 / 0.6) = 3 tempered steps keep the energy error small"""
    h = _std_normal(2)
    θ0 = jnp.array([1.0, -0.5])
    tempered = TemperedLeapfrog(ε=0.6, α=1.21)
    trajectory = make_trajectory("hmcda", kernel="endpoint", trajectory_length=2.0, integrator="tempered")
    _, stats = transition(jr.PRNGKey(4), h, tempered, trajectory, θ0)
    assert stats.n_leapfrog_steps == 3
    assert not stats.divergent
    assert np.isfinite(stats.energy)


def test_make_trajectory():
    assert isinstance(make_trajectory("nuts"), NUTS)
    nuts = make_trajectory("nuts", termination="classic", kernel="slice", max_depth=6)
    assert isinstance(nuts.termination, ClassicNoUTurn)
    assert isinstance(nuts.kernel, SliceTS)
    assert nuts.max_depth == 6
    static = make_trajectory("static", kernel="endpoint", n_leapfrog=7)
    assert static.n_steps == 7 and isinstance(static.kernel, EndPointTS)
    assert make_trajectory("hmcda", kernel="multinomial", trajectory_length=1.5).λ == 1.5


@pytest.mark.parametrize("kwargs", [
    dict(kind="leapfrog"),
    dict(kind="nuts", kernel="gibbs"),
    dict(kind="nuts", termination="strict"),
    dict(kind="nuts", kernel="endpoint"),
    dict(kind="nuts", max_depth=0),
    dict(kind="nuts", max_delta_h=0.0),
    dict(kind="static", kernel="slice"),
    dict(kind="static", kernel="endpoint", n_leapfrog=0),
    dict(kind="hmcda", kernel="endpoint", trajectory_length=-1.0),
    dict(kind="nuts", integrator="tempered"),
    dict(kind="static", kernel="multinomial", integrator="tempered"),
    dict(kind="hmcda", kernel="multinomial", integrator="tempered"),
])
def test_make_trajectory_rejects(kwargs):
    with pytest.raises(ValueError):
        make_trajectory(**kwargs)


# ============================================================================
# Step size search
# ============================================================================

def test_find_good_eps():
    h = _std_normal(2)
    ε = find_good_eps(jr.PRNGKey(0), h, jnp.array([1.0, -0.5]))
    assert 0.05 < ε < 16.0

    h = gaussian_hamiltonian(100.0 * jnp.eye(2), UnitEuclideanMetric(2))
    ε_narrow = find_good_eps(jr.PRNGKey(0), h, jnp.array([0.1, -0.05]))
    assert ε_narrow < ε


def test_find_good_eps_zero_density():
    h = make_hamiltonian(UnitEuclideanMetric(1), lambda q: -jnp.inf, lambda q: jnp.zeros(1))
    with pytest.raises(ValueError):
        find_good_eps(jr.PRNGKey(0), h, jnp.array([0.0]))


# ============================================================================
# Categorical draws
# ============================================================================

def test_randcat_deterministic():
    assert randcat_logp(jr.PRNGKey(0), jnp.array([-jnp.inf, 0.0, -jnp.inf])) == 1
    assert randcat_logp(jr.PRNGKey(1), jnp.array([5.0, -jnp.inf])) == 0
    assert randcat(jr.PRNGKey(2), jnp.array([0.0, 0.0, 1.0])) == 2

    logp = jnp.array([[0.0, -jnp.inf], [-jnp.inf, 0.0], [-jnp.inf, 3.0]])
    idx = randcat_logp(split_chains(jr.PRNGKey(3), 3), logp)
    assert np.array_equal(np.asarray(idx), [0, 1, 1])


def test_categorical_index_skips_zero_mass():
    """A draw at the top of [0, 1) never lands on a trailing zero-mass category"""
    p = jnp.exp(jnp.array([0.0, -1.0, -jnp.inf]) - jnp.log(1.0 + jnp.exp(-1.0)))
    top = np.nextafter(1.0, 0.0)
    assert int(categorical_index(p, top)) == 1
    assert int(categorical_index(p, 1.0)) == 1
    assert int(categorical_index(jnp.array([0.0, 1.0, 0.0]), 0.0)) == 1
    assert int(categorical_index(jnp.array([0.5, 0.5]), 0.5)) == 1

    P = jnp.array([[0.3, 0.7, 0.0], [0.0, 0.0, 1.0], [1.0, 0.0, 0.0]])
    idx = categorical_index(P, jnp.array([top, 0.0, top]))
    assert np.array_equal(np.asarray(idx), [1, 2, 0])

    logp = jnp.tile(jnp.array([0.0, 0.0, -jnp.inf]), (500, 1))
    idx = np.asarray(randcat_logp(split_chains(jr.PRNGKey(9), 500), logp))
    assert idx.max() <= 1


def test_randcat_frequencies():
    n = 20000
    p = jnp.array([0.2, 0.5, 0.3])
    logp = jnp.tile(jnp.log(p) + 4.0, (n, 1))
    idx = np.asarray(randcat_logp(split_chains(jr.PRNGKey(0), n), logp))
    freq = np.bincount(idx, minlength=3) / n
    assert np.allclose(freq, p, atol=0.02)


def test_randcat_stream_mismatch():
    logp = jnp.zeros((4, 3))
    with pytest.raises(StreamLengthMismatch):
        randcat_logp(split_chains(jr.PRNGKey(0), 3), logp)
