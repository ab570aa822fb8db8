"""
Description:
    Errors raised by AHMC.
    USE THE CORRECT ENVIRONMENT:  AHMC

Author: John Gallagher
Created: 2026-10-18
Last Modified: 2026-10-18
Version: 0.2

Divergences, U-turns and max-depth hits are not errors: they are reported
in TransitionStats. Only violations that leave no safe recovery raise.
"""

class HMCError(Exception):
    """Base class for AHMC errors"""

class InvalidOracleOutput(HMCError, FloatingPointError):
    """Log density or gradient is NaN/Inf at a finite position (other than log π = -inf)"""

class NonPositiveDefiniteMetric(HMCError, ValueError):
    """Mass matrix is not symmetric positive definite"""

class StreamLengthMismatch(HMCError, ValueError):
    """Number of random streams differs from the number of chains"""
