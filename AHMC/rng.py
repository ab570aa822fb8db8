"""
Description:
    Random streams and categorical draws.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2

Every chain owns one jax.random key. Batched draws take one key per chain,
so chain c always consumes its own stream no matter how many chains run.
"""
import jax
import jax.numpy as jnp
import jax.random as jr
from jax.scipy.special import logsumexp

from datatypes import Key
from exceptions import StreamLengthMismatch

def as_key(seed_or_key) -> Key:
    """Accept an int seed or an existing key"""
    if isinstance(seed_or_key, int):
        return jr.PRNGKey(seed_or_key)
    return seed_or_key

def split_chains(key: Key, n_chains: int) -> jnp.ndarray:
    """One independent key per chain"""
    return jr.split(as_key(key), n_chains)

def check_keys(keys: jnp.ndarray, n_chains: int) -> jnp.ndarray:
    """Raise StreamLengthMismatch unless there is exactly one key per chain"""
    n_keys = len(keys)
    if n_keys != n_chains:
        raise StreamLengthMismatch(
            f"Got {n_keys} random streams for {n_chains} chains"
        )
    return keys

def categorical_index(P: jnp.ndarray, u: jnp.ndarray) -> jnp.ndarray:
    """
    Index of the category a uniform draw u in [0, 1) falls into.

    Works on the last axis of P, so a matrix P takes one u per row. The
    index is the first category whose cumulative mass exceeds u * total;
    rounding never lands it on a zero-mass category, it is clamped to the
    last category with positive mass.
    """
    P = jnp.asarray(P)
    u = jnp.asarray(u, dtype=P.dtype)
    C = jnp.cumsum(P, axis=-1)
    idx = jnp.sum(C <= u[..., None] * C[..., -1:], axis=-1)
    last = P.shape[-1] - 1 - jnp.argmax(P[..., ::-1] > 0, axis=-1)
    return jnp.minimum(idx, last)

def randcat(key: Key, p: jnp.ndarray) -> int:
    """
    Draw an index from the categorical distribution p.

    Walks the cumulative distribution until it passes a single uniform draw.
    """
    u = jr.uniform(key, dtype=p.dtype)
    return int(categorical_index(p, u))

def randcat_logp(key, logp: jnp.ndarray):
    """
    Categorical draw from unnormalised log probabilities.

    Args:
        key: a single key for a vector logp, or one key per row for a
            (n_chains, n_categories) matrix logp
        logp: unnormalised log probabilities

    Returns:
        An int for vector input, an int array of shape (n_chains,) otherwise
    """
    logp = jnp.asarray(logp)
    if logp.ndim == 1:
        return randcat(key, jnp.exp(logp - logsumexp(logp)))

    n_chains = logp.shape[0]
    keys = check_keys(key, n_chains)
    P = jnp.exp(logp - logsumexp(logp, axis=1, keepdims=True))
    u = jax.vmap(lambda k: jr.uniform(k, dtype=P.dtype))(keys)
    return categorical_index(P, u)
