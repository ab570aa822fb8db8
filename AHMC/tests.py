"""
Test suite for the AHMC integrators, metrics and Hamiltonian.

Compares the leapfrog integrator against its analytical solution for a
simple harmonic oscillator, and checks reversibility, energy drift and the
metric and oracle contracts.
"""

import math
import jax
import jax.numpy as jnp
import jax.random as jr
import numpy as np
import pytest

# Enable 64-bit precision
jax.config.update("jax_enable_x64", True)

from exceptions import InvalidOracleOutput, NonPositiveDefiniteMetric
from hamiltonian import gaussian_hamiltonian, make_hamiltonian, is_divergent
from integrator import lf_step, make_integrator, Leapfrog, JitteredLeapfrog, TemperedLeapfrog
from metric import UnitEuclideanMetric, DiagEuclideanMetric, DenseEuclideanMetric, make_metric
from target import gen_gaussian, gen_half_normal


# ============================================================================
# Analytical Solutions
# ============================================================================

def leapfrog_analytic(x: np.ndarray, tau: float) -> np.ndarray:
    """
    Analytical p-first leapfrog step for simple harmonic oscillator
    """
    LF_step = np.array([
        [1 - tau**2/2, tau],
        [-tau + tau**3/4, 1 - tau**2/2]
    ])
    return LF_step @ x


def tridiagonal_precision(dim: int, off: float) -> jnp.ndarray:
    """Unit diagonal with a constant first off-diagonal"""
    return jnp.eye(dim) + off * (jnp.eye(dim, k=1) + jnp.eye(dim, k=-1))


def flat(z) -> np.ndarray:
    """[q, p] of a phase point"""
    return np.concatenate([np.asarray(z.qp.q), np.asarray(z.qp.p)])


def _random_state(h, key, dim):
    k_q, k_p = jr.split(key)
    q = jr.normal(k_q, shape=(dim,))
    return h.phasepoint(q, h.metric.sample_momentum(k_p))


# ============================================================================
# Tests
# ============================================================================

def test_leapfrog():
    """Test leapfrog integrator against analytical solution"""
    dim = 1
    tau = 0.1
    h = gaussian_hamiltonian(jnp.eye(dim), UnitEuclideanMetric(dim))

    key = jax.random.PRNGKey(1)
    x0_flat = jax.random.normal(key, shape=(2 * dim,))
    z0 = h.phasepoint(x0_flat[:dim], x0_flat[dim:])

    z1 = lf_step(h, z0, tau)
    x_lf_flat = flat(z1)
    x_analytic = leapfrog_analytic(np.array(x0_flat), tau)

    print(f"Leapfrog (numerical): {x_lf_flat}")
    print(f"Leapfrog (analytic) : {x_analytic}")
    print(f"Energy error (LF)   : {abs(z1.energy - z0.energy):.2e}")

    assert np.allclose(x_lf_flat, x_analytic, atol=1e-12), "Leapfrog test failed!"


def test_leapfrog_caches_gradient():
    """The state after a step carries log π and ∇ log π at the new position"""
    dim = 3
    logdensity, gradient = gen_gaussian(dim, precision_matrix=tridiagonal_precision(dim, 0.3))
    h = make_hamiltonian(DiagEuclideanMetric(jnp.array([1.0, 2.0, 0.5])), logdensity, gradient)
    z0 = _random_state(h, jr.PRNGKey(0), dim)
    z1 = lf_step(h, z0, 0.2)

    assert np.isclose(z1.logdensity, float(logdensity(z1.qp.q)))
    assert np.allclose(z1.grad, gradient(z1.qp.q))
    assert np.allclose(h.gradient(z1.qp.q), -gradient(z1.qp.q))


@pytest.mark.parametrize("metric", [
    UnitEuclideanMetric(3),
    DiagEuclideanMetric(jnp.array([0.5, 1.0, 3.0])),
    DenseEuclideanMetric(jnp.array([[2.0, 0.3, 0.1], [0.3, 1.0, -0.2], [0.1, -0.2, 0.7]])),
])
@pytest.mark.parametrize("eps", [0.01, 0.3, 1.1])
def test_reversibility(metric, eps):
    """step(step(z, ε), -ε) == z"""
    h = gaussian_hamiltonian(tridiagonal_precision(3, 0.4), metric)
    z0 = _random_state(h, jr.PRNGKey(7), 3)

    z1 = lf_step(h, z0, eps)
    z2 = lf_step(h, z1, -eps)
    assert np.allclose(z2.qp.q, z0.qp.q, atol=1e-12)
    assert np.allclose(z2.qp.p, z0.qp.p, atol=1e-12)

    lf = Leapfrog(ε=eps / 4)
    zN = lf.step(h, z0, 25)
    zback = lf.step(h, zN, -25)
    assert np.allclose(flat(zback), flat(z0), atol=1e-9)


def test_jittered_reversibility():
    """A jittered step size is drawn once, then stepping is exactly reversible"""
    h = gaussian_hamiltonian(jnp.eye(2), UnitEuclideanMetric(2))
    z0 = _random_state(h, jr.PRNGKey(3), 2)
    lf = JitteredLeapfrog(ε0=0.2, jitter_range=0.5, ε=0.2).jitter(jr.PRNGKey(11))

    assert 0.1 <= lf.step_size <= 0.3
    assert lf.nom_step_size == 0.2
    zN = lf.step(h, z0, 10)
    zback = lf.step(h, zN, -10)
    assert np.allclose(flat(zback), flat(z0), atol=1e-10)


@pytest.mark.parametrize("n_steps", [1, 3, 4, 6])
def test_tempered_reversibility(n_steps):
    """A tempered trajectory of any length is undone by running it with -ε"""
    h = gaussian_hamiltonian(jnp.eye(2), UnitEuclideanMetric(2))
    z0 = h.phasepoint(jnp.array([0.3, -0.2]), jnp.array([1.0, 0.5]))
    lf = TemperedLeapfrog(ε=0.1, α=1.21)

    zN = lf.step(h, z0, n_steps)
    zback = lf.step(h, zN, -n_steps)
    assert np.allclose(flat(zback), flat(z0), atol=1e-10)
    assert np.isfinite(zN.energy)


def test_tempered_scaling_schedule():
    """The first n of the 2n tempers multiply by sqrt(α), the rest divide"""
    lf = TemperedLeapfrog(ε=0.1, α=4.0)
    p = jnp.ones(2)
    # n = 4: tempers 1..4 happen during steps 1 and 2
    assert np.allclose(lf.temper(p, 1, True, 4), 2.0 * p)
    assert np.allclose(lf.temper(p, 2, False, 4), 2.0 * p)
    assert np.allclose(lf.temper(p, 2, True, 4), 2.0 * p)
    assert np.allclose(lf.temper(p, 3, False, 4), 0.5 * p)
    # n = 3: step 2 straddles the middle
    assert np.allclose(lf.temper(p, 2, True, 3), 0.5 * p)
    assert np.allclose(lf.temper(p, 2, False, 3), 2.0 * p)
    # n = 1: divide before the step, multiply after
    assert np.allclose(lf.temper(p, 1, True, 1), 0.5 * p)
    assert np.allclose(lf.temper(p, 1, False, 1), 2.0 * p)
    with pytest.raises(IndexError):
        lf.temper(p, 5, True, 4)


@pytest.mark.parametrize("integrator, n_steps", [
    (Leapfrog(ε=0.2), 7),
    (TemperedLeapfrog(ε=0.2, α=1.1), 5),
])
def test_scan_matches_eager(integrator, n_steps):
    """The jitted scan takes the same steps as the python loop"""
    metric = DenseEuclideanMetric(jnp.array([[2.0, 0.3, 0.1], [0.3, 1.0, -0.2], [0.1, -0.2, 0.7]]))
    logdensity, gradient = gen_gaussian(3, precision_matrix=tridiagonal_precision(3, 0.3))
    h_scan = make_hamiltonian(metric, logdensity, gradient)
    h_eager = make_hamiltonian(metric, logdensity, gradient, traceable=False)
    z0 = _random_state(h_scan, jr.PRNGKey(2), 3)

    zs_scan = integrator.step(h_scan, z0, n_steps, full_trajectory=True)
    zs_eager = integrator.step(h_eager, z0, n_steps, full_trajectory=True)
    assert len(zs_scan) == len(zs_eager) == n_steps
    for a, b in zip(zs_scan, zs_eager):
        assert np.allclose(flat(a), flat(b), atol=1e-10)
        assert np.isclose(a.logdensity, b.logdensity)
        assert np.allclose(a.grad, b.grad)
        assert np.isclose(a.energy, b.energy)


@pytest.mark.parametrize("traceable", [True, False])
def test_integration_stops_at_the_same_step(traceable):
    h = make_hamiltonian(UnitEuclideanMetric(1), *gen_half_normal(), traceable=traceable)
    z0 = h.phasepoint(jnp.array([1.0]), jnp.array([-0.5]))
    zs = Leapfrog(ε=0.3).step(h, z0, 20, full_trajectory=True)

    assert 1 < len(zs) < 20
    assert zs[-1].energy == math.inf
    assert all(np.isfinite(z.energy) for z in zs[:-1])
    assert np.all(np.asarray(zs[-1].grad) == 0)


def test_numpy_oracle_is_not_traced():
    def logdensity(q):
        return -0.5 * float(np.dot(np.asarray(q), np.asarray(q)))

    def gradient(q):
        return -np.asarray(q)

    h = make_hamiltonian(UnitEuclideanMetric(2), logdensity, gradient, traceable=False)
    h_jax = gaussian_hamiltonian(jnp.eye(2), UnitEuclideanMetric(2))
    z0 = h_jax.phasepoint(jnp.array([0.5, -1.0]), jnp.array([0.2, 0.7]))

    z = Leapfrog(ε=0.1).step(h, h.phasepoint(z0.qp.q, z0.qp.p), 6)
    assert np.allclose(flat(z), flat(Leapfrog(ε=0.1).step(h_jax, z0, 6)), atol=1e-10)


@pytest.mark.parametrize("traceable", [True, False])
def test_oracle_nan_mid_trajectory_is_fatal(traceable):
    def logdensity(q):
        return jnp.where(q[0] > 1.0, jnp.nan, -0.5 * jnp.dot(q, q))

    def gradient(q):
        return -q

    h = make_hamiltonian(UnitEuclideanMetric(1), logdensity, gradient, traceable=traceable)
    z0 = h.phasepoint(jnp.array([0.0]), jnp.array([2.0]))
    with pytest.raises(InvalidOracleOutput):
        Leapfrog(ε=0.2).step(h, z0, 10)


def test_energy_conservation():
    """Energy error is O(ε²) and does not grow with the number of steps"""
    dim = 5
    h = gaussian_hamiltonian(jnp.eye(dim), UnitEuclideanMetric(dim))
    z0 = _random_state(h, jr.PRNGKey(42), dim)
    H0 = z0.energy

    def max_error(eps, N):
        zs = Leapfrog(ε=eps).step(h, z0, N, full_trajectory=True)
        return max(abs(z.energy - H0) for z in zs)

    err_100 = max_error(0.1, 100)
    err_1000 = max_error(0.1, 1000)
    err_half = max_error(0.05, 200)

    print(f"Max error, 100 steps  : {err_100:.2e}")
    print(f"Max error, 1000 steps : {err_1000:.2e}")
    print(f"Max error, eps / 2    : {err_half:.2e}")

    assert err_100 < 0.1**2 * (1 + H0)
    assert err_1000 < 1.5 * err_100 + 1e-12, "Energy error drifts with N"
    assert 3.0 < err_100 / err_half < 5.0, "Energy error is not second order"


def test_integration_stops_at_infinite_energy():
    h = make_hamiltonian(UnitEuclideanMetric(1), *gen_half_normal())
    z0 = h.phasepoint(jnp.array([0.1]), jnp.array([-1.0]))
    zs = Leapfrog(ε=0.5).step(h, z0, 10, full_trajectory=True)

    assert len(zs) == 1
    assert zs[-1].energy == math.inf
    assert is_divergent(z0.energy, zs[-1].energy, 1000.0)


def test_make_integrator():
    assert isinstance(make_integrator("leapfrog", 0.1), Leapfrog)
    assert isinstance(make_integrator("jittered", 0.1, jitter=0.2), JitteredLeapfrog)
    assert isinstance(make_integrator("tempered", 0.1, temper_alpha=1.05), TemperedLeapfrog)
    assert make_integrator("leapfrog", 0.1).set_nom_step_size(0.4).step_size == 0.4
    with pytest.raises(ValueError):
        make_integrator("leapfrog", -0.1)
    with pytest.raises(ValueError):
        make_integrator("jittered", 0.1, jitter=1.5)
    with pytest.raises(ValueError):
        make_integrator("midpoint", 0.1)


# ============================================================================
# Metrics
# ============================================================================

def test_kinetic_energy():
    p = jnp.array([1.0, -2.0, 0.5])
    M_inv_diag = jnp.array([2.0, 0.5, 4.0])
    M_inv_dense = jnp.array([[2.0, 0.3, 0.0], [0.3, 1.0, 0.1], [0.0, 0.1, 0.5]])

    assert np.isclose(UnitEuclideanMetric(3).kinetic_energy(p), 0.5 * 5.25)
    assert np.isclose(DiagEuclideanMetric(M_inv_diag).kinetic_energy(p), 0.5 * (2.0 + 2.0 + 1.0))
    expected = 0.5 * float(p @ M_inv_dense @ p)
    assert np.isclose(DenseEuclideanMetric(M_inv_dense).kinetic_energy(p), expected)


@pytest.mark.parametrize("metric", [
    DiagEuclideanMetric(jnp.array([0.25, 4.0])),
    DenseEuclideanMetric(jnp.array([[1.0, 0.6], [0.6, 2.0]])),
])
def test_momentum_covariance(metric):
    """p ~ N(0, M) with M = inv(M_inv)"""
    keys = jr.split(jr.PRNGKey(0), 40000)
    P = jax.vmap(metric.sample_momentum)(keys)
    M = np.linalg.inv(np.diag(metric.M_inv) if metric.M_inv.ndim == 1 else metric.M_inv)

    assert np.allclose(np.cov(np.asarray(P).T), M, atol=0.06 * np.max(np.abs(M)))


@pytest.mark.parametrize("M_inv", [
    jnp.array([1.0, 0.0]),
    jnp.array([1.0, -2.0]),
    jnp.array([1.0, jnp.nan]),
    jnp.ones((2, 2)),
])
def test_diag_metric_rejects_non_spd(M_inv):
    with pytest.raises(NonPositiveDefiniteMetric):
        DiagEuclideanMetric(M_inv)


@pytest.mark.parametrize("M_inv", [
    jnp.array([[1.0, 2.0], [2.0, 1.0]]), # indefinite
    jnp.array([[1.0, 0.5], [0.0, 1.0]]), # not symmetric
    jnp.array([[1.0, 1.0], [1.0, 1.0]]), # singular
    jnp.array([[jnp.inf, 0.0], [0.0, 1.0]]),
    jnp.ones(3),
])
def test_dense_metric_rejects_non_spd(M_inv):
    with pytest.raises(NonPositiveDefiniteMetric):
        DenseEuclideanMetric(M_inv)


def test_renew_validates():
    metric = make_metric("diag", 2)
    assert np.allclose(metric.renew(jnp.array([2.0, 3.0])).M_inv, [2.0, 3.0])
    with pytest.raises(NonPositiveDefiniteMetric):
        metric.renew(jnp.array([2.0, -3.0]))
    assert make_metric("unit", 2).renew(jnp.array([2.0, 3.0])).kind == "unit"
    with pytest.raises(ValueError):
        make_metric("riemannian", 2)


# ============================================================================
# Oracle contract
# ============================================================================

def test_oracle_nan_is_fatal():
    h = make_hamiltonian(UnitEuclideanMetric(2), lambda q: jnp.nan, lambda q: jnp.zeros(2))
    with pytest.raises(InvalidOracleOutput):
        h.evaluate(jnp.zeros(2))


def test_oracle_bad_gradient_is_fatal():
    h = make_hamiltonian(UnitEuclideanMetric(2), lambda q: 0.0, lambda q: jnp.array([jnp.nan, 0.0]))
    with pytest.raises(InvalidOracleOutput):
        h.evaluate(jnp.zeros(2))
    h = make_hamiltonian(UnitEuclideanMetric(2), lambda q: 0.0, lambda q: jnp.zeros(3))
    with pytest.raises(InvalidOracleOutput):
        h.evaluate(jnp.zeros(2))


def test_oracle_minus_inf_is_legal():
    h = make_hamiltonian(UnitEuclideanMetric(2), lambda q: -jnp.inf, lambda q: jnp.full(2, jnp.nan))
    ℓπ, dℓπ = h.evaluate(jnp.zeros(2))
    assert ℓπ == -math.inf
    assert np.all(np.asarray(dℓπ) == 0)
    assert h.phasepoint(jnp.zeros(2), jnp.ones(2)).energy == math.inf


def test_autodiff_gradient():
    """Without a gradient oracle the Hamiltonian differentiates log π"""
    P = tridiagonal_precision(3, 0.2)
    logdensity, gradient = gen_gaussian(3, precision_matrix=P)
    h = make_hamiltonian(UnitEuclideanMetric(3), logdensity)
    q = jnp.array([0.3, -1.0, 2.0])
    ℓπ, dℓπ = h.evaluate(q)
    assert np.isclose(ℓπ, float(logdensity(q)))
    assert np.allclose(dℓπ, gradient(q))


if __name__ == "__main__":
    # Check configuration
    print("JAX Configuration:")
    print(f"64-bit precision enabled: {jax.config.jax_enable_x64}")
    print()

    test_leapfrog()
    test_energy_conservation()
    test_tempered_reversibility(3)

    print("\n" + "=" * 70)
    print("All tests PASSED! ✓")
    print("=" * 70)
