"""
Description:
    Target distribution generators.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2
"""
from typing import Callable, Tuple
import jax
import jax.numpy as jnp
from datatypes import LogDensity, PrecisionMatrix

def gen_gaussian(
        dim: int = 2,
        precision_matrix: PrecisionMatrix = None,
        cov: jnp.ndarray = None,
        mean: jnp.ndarray = None,
) -> Tuple[LogDensity, Callable[[jnp.ndarray], jnp.ndarray]]:
    """Unnormalised Gaussian log density and its gradient"""
    if precision_matrix is not None and cov is not None:
        raise ValueError(
            "Please supply either a precision_matrix or a cov, not both"
        )

    if precision_matrix is None and cov is not None:
        precision_matrix = jnp.linalg.inv(cov)

    if precision_matrix is None and cov is None:
        precision_matrix = jnp.eye(dim)

    precision_matrix = jnp.asarray(precision_matrix)
    μ = jnp.zeros(precision_matrix.shape[0]) if mean is None else jnp.asarray(mean)

    @jax.jit
    def logdensity(q: jnp.ndarray) -> float:
        """Gaussian target log density (unnormalized)"""
        d = q - μ
        return -0.5 * jnp.dot(d, precision_matrix @ d)

    @jax.jit
    def gradient(q: jnp.ndarray) -> jnp.ndarray:
        return -(precision_matrix @ (q - μ))

    return logdensity, gradient

def gen_half_normal(
        boundary: float = 0.0,
) -> Tuple[LogDensity, Callable[[jnp.ndarray], jnp.ndarray]]:
    """
    Standard normal restricted to q[0] > boundary.

    log π = -inf outside the support, with a zero gradient there
    """
    @jax.jit
    def logdensity(q: jnp.ndarray) -> float:
        return jnp.where(q[0] > boundary, -0.5 * jnp.dot(q, q), -jnp.inf)

    @jax.jit
    def gradient(q: jnp.ndarray) -> jnp.ndarray:
        return jnp.where(q[0] > boundary, -q, jnp.zeros_like(q))

    return logdensity, gradient
