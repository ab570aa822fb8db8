"""
Description:
    MCMC diagnostics and metrics.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2
"""
import numpy as np
from typing import Dict

from datatypes import TransitionStats

def summarize(stats: TransitionStats) -> Dict[str, float]:
    """
    Aggregate stacked TransitionStats.

    Divergences and max-depth hits are counted here rather than raised
    during sampling.
    """
    n = int(np.asarray(stats.n_leapfrog_steps).shape[0])
    if n == 0:
        return {"n_iterations": 0}
    return {
        "n_iterations": n,
        "n_divergent": int(np.sum(np.asarray(stats.divergent))),
        "n_numerical_error": int(np.sum(np.asarray(stats.numerical_error))),
        "n_max_depth": int(np.sum(np.asarray(stats.reached_max_depth))),
        "mean_acceptance": float(np.mean(np.asarray(stats.acceptance_rate))),
        "mean_tree_depth": float(np.mean(np.asarray(stats.tree_depth))),
        "n_leapfrog_steps": int(np.sum(np.asarray(stats.n_leapfrog_steps))),
        "step_size": float(np.asarray(stats.step_size)[-1]),
    }
