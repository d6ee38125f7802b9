import numpy as np
from ..exceptions import InvalidParameterError

# ====================== Correlation Functions ======================
# Each entry maps a scaled distance r = d / ρ to (k(r), ∂k/∂log ρ).

def _exponential(r: np.ndarray):
    k = np.exp(-r)
    return k, r * k

def _gaussian(r: np.ndarray):
    r2 = r * r
    k = np.exp(-r2)
    return k, 2.0 * r2 * k

def _matern32(r: np.ndarray):
    s = np.sqrt(3.0) * r
    e = np.exp(-s)
    return (1.0 + s) * e, s * s * e

def _matern52(r: np.ndarray):
    s = np.sqrt(5.0) * r
    e = np.exp(-s)
    return (1.0 + s + s * s / 3.0) * e, s * s * (1.0 + s) / 3.0 * e

KERNELS = {
    'exponential': _exponential,
    'gaussian': _gaussian,
    'matern32': _matern32,
    'matern52': _matern52,
}

# Mean distance divided by this factor gives a range at which the correlation is 0.05.
EFFECTIVE_RANGE_FACTOR = {
    'exponential': 3.0,
    'gaussian': np.sqrt(3.0),
    'matern32': 2.7389,
    'matern52': 2.6464,
}

COMPONENT_KINDS = ('grouped', 'kernel')


class CovarianceComponent:
    """
    Learned state of one random effect component.

    A closed tagged variant: ``kind`` is either ``'grouped'`` (a grouping factor,
    optionally nested in the preceding columns and optionally scaled by a random
    slope covariate) or ``'kernel'`` (a Gaussian process over coordinates,
    optionally scaled by a covariate). The object is data-agnostic; it stores
    which data columns it reads and its current covariance parameters.

    Parameters
    ----------
    kind : str
        One of ``COMPONENT_KINDS``.
    name : str
        Prefix used for parameter names.
    column : int or None
        Grouping column in ``group_data`` (grouped components only).
    nested : bool, default=False
        Whether the grouping column is nested in all preceding columns.
    covariate : int or None
        Column of the random coefficient data scaling the incidence matrix.
        None implies an intercept effect.
    cov_function : str or None
        Kernel tag in ``KERNELS`` (kernel components only).
    params : array-like or None
        Initial parameters: ``[var]`` for grouped, ``[var, range]`` for kernel.
    """
    __slots__ = ('kind', 'name', 'column', 'nested', 'covariate', 'cov_function', 'params')

    def __init__(self, kind: str, name: str, column: int | None = None, nested: bool = False,
                 covariate: int | None = None, cov_function: str | None = None, params=None):
        if kind not in COMPONENT_KINDS:
            raise InvalidParameterError(f"Unknown component kind '{kind}'. Available kinds are {list(COMPONENT_KINDS)}.")
        if kind == 'grouped' and column is None:
            raise InvalidParameterError("A grouped component requires a grouping column.")
        if kind == 'kernel' and cov_function not in KERNELS:
            raise InvalidParameterError(f"Unknown covariance function '{cov_function}'. Available functions are {list(KERNELS)}.")
        self.kind = kind
        self.name = name
        self.column = column
        self.nested = nested
        self.covariate = covariate
        self.cov_function = cov_function
        self.params = np.ones(self.n_params)
        if params is not None:
            self.set_params(params)

    @property
    def n_params(self) -> int:
        return 1 if self.kind == 'grouped' else 2

    @property
    def param_names(self) -> list[str]:
        if self.kind == 'grouped':
            return [f"{self.name}_var"]
        return [f"{self.name}_var", f"{self.name}_range"]

    def set_params(self, new_params):
        """
        Update the covariance parameters after validating them.

        Parameters
        ----------
        new_params : array-like
            Strictly positive, finite values of length ``n_params``.
        """
        new_params = np.asarray(new_params, dtype=np.float64).ravel()
        if new_params.shape != (self.n_params,):
            raise InvalidParameterError(f"Parameter shape mismatch for '{self.name}'. Expected {(self.n_params,)}, got {new_params.shape}")
        if not np.all(np.isfinite(new_params)):
            raise InvalidParameterError(f"Parameters of '{self.name}' must be finite, got {new_params}")
        if new_params[0] <= 0:
            raise InvalidParameterError(f"Variance of '{self.name}' must be positive, got {new_params[0]}")
        if self.kind == 'kernel' and new_params[1] <= 0:
            raise InvalidParameterError(f"Range of '{self.name}' must be positive, got {new_params[1]}")
        self.params = new_params.copy()

    def correlation(self, dist: np.ndarray, params=None):
        """
        Kernel correlation and its derivative w.r.t. log range at distances ``dist``.
        """
        rho = (self.params if params is None else params)[1]
        return KERNELS[self.cov_function](dist / rho)

    def __repr__(self):
        extra = f", cov_function='{self.cov_function}'" if self.kind == 'kernel' else f", column={self.column}"
        return f"CovarianceComponent(kind='{self.kind}', name='{self.name}'{extra}, params={self.params})"
