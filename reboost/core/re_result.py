import numpy as np


class PredictionResult:
    """
    Prediction split into its fixed and random effect parts.

    The parts are kept separate so that callers can decide how to combine them
    and how to report uncertainty.

    Parameters
    ----------
    random_effect_mean : np.ndarray
        Posterior mean of the random effects, shape (n,).
    fixed_effect : np.ndarray or None
        Tree ensemble prediction, shape (n,). None when only the random effects
        model was queried.
    random_effect_var : np.ndarray or None
        Posterior variance of the random effects, shape (n,).
    random_effect_cov : np.ndarray or None
        Posterior covariance of the random effects, shape (n, n).
    error_var : float or None
        Variance of the independent error term.
    """
    __slots__ = ('fixed_effect', 'random_effect_mean', 'random_effect_var', 'random_effect_cov', 'error_var')

    def __init__(self, random_effect_mean: np.ndarray, fixed_effect: np.ndarray | None = None,
                 random_effect_var: np.ndarray | None = None, random_effect_cov: np.ndarray | None = None,
                 error_var: float | None = None):
        self.random_effect_mean = random_effect_mean
        self.fixed_effect = fixed_effect
        self.random_effect_cov = random_effect_cov
        if random_effect_var is None and random_effect_cov is not None:
            random_effect_var = np.diag(random_effect_cov).copy()
        self.random_effect_var = random_effect_var
        self.error_var = error_var

    @property
    def response_mean(self) -> np.ndarray:
        """Fixed effect plus random effects posterior mean."""
        if self.fixed_effect is None:
            return self.random_effect_mean
        return self.fixed_effect + self.random_effect_mean

    @property
    def response_var(self) -> np.ndarray | None:
        """Predictive variance of a new observation (random effects plus error)."""
        if self.random_effect_var is None:
            return None
        return self.random_effect_var + (0.0 if self.error_var is None else self.error_var)

    def with_fixed_effect(self, fixed_effect: np.ndarray):
        """Copy of the result with ``fixed_effect`` attached."""
        return PredictionResult(self.random_effect_mean, fixed_effect, self.random_effect_var,
                                self.random_effect_cov, self.error_var)

    def __repr__(self):
        parts = ['random_effect_mean']
        parts += [name for name in ('fixed_effect', 'random_effect_var', 'random_effect_cov') if getattr(self, name) is not None]
        return f"PredictionResult(n={len(self.random_effect_mean)}, fields={parts})"
