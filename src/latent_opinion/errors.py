"""Exception and warning types raised by the latent opinion pipeline."""


class DataError(ValueError):
    """Malformed or inconsistent observation data. Fatal before any model evaluation."""


class TrajectoryIndexError(IndexError):
    """An observation did not resolve to a latent trajectory point."""


class ModelConstraintViolation(ArithmeticError):
    """A reconstructed quantity left its domain during one density evaluation.

    Never escapes ``engine.log_density``: the proposal is reported as rejected
    (log density of -inf) instead.
    """


class SamplingAborted(RuntimeError):
    """Sampling stopped before every chain produced all requested draws."""


class ConvergenceFailure(UserWarning):
    """Run-level warning: divergences, low E-BFMI, or R-hat above threshold."""
