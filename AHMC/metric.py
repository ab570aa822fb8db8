"""
Description:
    Euclidean metrics (mass matrices) for HMC.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2

Each metric stores the inverse mass matrix M^{-1}, which is what the
adaptors estimate (the posterior (co)variance).
    p ~ N(0, M)
    K(p) = 0.5 * p.T @ M^{-1} @ p
    dq/dt = ∂K/∂p = M^{-1} @ p
"""
import jax.numpy as jnp
import jax.random as jr
from jax.scipy.linalg import solve_triangular

from datatypes import Key
from exceptions import NonPositiveDefiniteMetric

def _as_float(M_inv) -> jnp.ndarray:
    M_inv = jnp.asarray(M_inv)
    if not jnp.issubdtype(M_inv.dtype, jnp.floating):
        M_inv = M_inv.astype(float)
    return M_inv

class UnitEuclideanMetric:
    """M = I"""
    kind = "unit"

    def __init__(self, dim: int):
        if dim < 1:
            raise ValueError(f"dim must be positive, got {dim}")
        self.dim = int(dim)

    @property
    def M_inv(self) -> jnp.ndarray:
        return jnp.ones(self.dim)

    def sample_momentum(self, key: Key) -> jnp.ndarray:
        return jr.normal(key, shape=(self.dim,))

    def velocity(self, p: jnp.ndarray) -> jnp.ndarray:
        return p

    def kinetic_energy(self, p: jnp.ndarray) -> float:
        return float(0.5 * jnp.dot(p, p))

    def renew(self, M_inv=None) -> "UnitEuclideanMetric":
        return self

    def __repr__(self):
        return f"UnitEuclideanMetric(dim={self.dim})"

class DiagEuclideanMetric:
    """M^{-1} = diag(M_inv)"""
    kind = "diag"

    def __init__(self, M_inv):
        M_inv = _as_float(M_inv)
        if M_inv.ndim != 1:
            raise NonPositiveDefiniteMetric(
                f"Diagonal metric needs a vector, got shape {M_inv.shape}"
            )
        if not bool(jnp.all(jnp.isfinite(M_inv) & (M_inv > 0))):
            raise NonPositiveDefiniteMetric(
                "Diagonal metric entries must be finite and strictly positive"
            )
        self.M_inv = M_inv
        self.sqrt_M_inv = jnp.sqrt(M_inv)
        self.dim = M_inv.shape[0]

    @classmethod
    def identity(cls, dim: int) -> "DiagEuclideanMetric":
        return cls(jnp.ones(dim))

    def sample_momentum(self, key: Key) -> jnp.ndarray:
        z = jr.normal(key, shape=(self.dim,), dtype=self.M_inv.dtype)
        return z / self.sqrt_M_inv

    def velocity(self, p: jnp.ndarray) -> jnp.ndarray:
        return self.M_inv * p

    def kinetic_energy(self, p: jnp.ndarray) -> float:
        return float(0.5 * jnp.sum(p * p * self.M_inv))

    def renew(self, M_inv) -> "DiagEuclideanMetric":
        return DiagEuclideanMetric(M_inv)

    def __repr__(self):
        return f"DiagEuclideanMetric(dim={self.dim})"

class DenseEuclideanMetric:
    """
    Full M^{-1}, with its Cholesky factor L (M^{-1} = L @ L.T) cached.

    Momentum is drawn as p = L^{-T} z, so Cov(p) = (L @ L.T)^{-1} = M.
    """
    kind = "dense"

    def __init__(self, M_inv):
        M_inv = _as_float(M_inv)
        if M_inv.ndim != 2 or M_inv.shape[0] != M_inv.shape[1]:
            raise NonPositiveDefiniteMetric(
                f"Dense metric needs a square matrix, got shape {M_inv.shape}"
            )
        if not bool(jnp.all(jnp.isfinite(M_inv))):
            raise NonPositiveDefiniteMetric("Dense metric has non-finite entries")
        scale = float(jnp.max(jnp.abs(M_inv)))
        if not bool(jnp.allclose(M_inv, M_inv.T, rtol=0.0, atol=1e-10 * max(scale, 1.0))):
            raise NonPositiveDefiniteMetric("Dense metric is not symmetric")
        L = jnp.linalg.cholesky(M_inv)
        # jnp.linalg.cholesky returns NaNs instead of raising
        if not bool(jnp.all(jnp.isfinite(L))) or not bool(jnp.all(jnp.diag(L) > 0)):
            raise NonPositiveDefiniteMetric("Dense metric is not positive definite")
        self.M_inv = M_inv
        self.L = L
        self.dim = M_inv.shape[0]

    @classmethod
    def identity(cls, dim: int) -> "DenseEuclideanMetric":
        return cls(jnp.eye(dim))

    def sample_momentum(self, key: Key) -> jnp.ndarray:
        z = jr.normal(key, shape=(self.dim,), dtype=self.M_inv.dtype)
        return solve_triangular(self.L.T, z, lower=False)

    def velocity(self, p: jnp.ndarray) -> jnp.ndarray:
        return self.M_inv @ p

    def kinetic_energy(self, p: jnp.ndarray) -> float:
        return float(0.5 * jnp.dot(p, self.M_inv @ p))

    def renew(self, M_inv) -> "DenseEuclideanMetric":
        return DenseEuclideanMetric(M_inv)

    def __repr__(self):
        return f"DenseEuclideanMetric(dim={self.dim})"

METRICS = {
    "unit": UnitEuclideanMetric,
    "diag": DiagEuclideanMetric,
    "dense": DenseEuclideanMetric,
}

def make_metric(kind: str, dim: int):
    """Identity metric of the requested kind"""
    if kind not in METRICS:
        raise ValueError(f"Unknown metric {kind!r}, expected one of {sorted(METRICS)}")
    if kind == "unit":
        return UnitEuclideanMetric(dim)
    return METRICS[kind].identity(dim)
