import numpy as np
from scipy import sparse
from scipy.spatial.distance import cdist, pdist, squareform
from ..exceptions import InvalidParameterError
from .terms import CovarianceComponent


class RandomEffectData:
    """
    Random effects inputs of one dataset (training or prediction).

    Parameters
    ----------
    group_data : array-like or None
        Grouping factors of shape (n,) or (n, k). Any hashable labels are accepted.
    group_rand_coef_data : array-like or None
        Covariates for grouped random slopes, shape (n,) or (n, p_g).
    gp_coords : array-like or None
        Gaussian process coordinates, shape (n,) or (n, d).
    gp_rand_coef_data : array-like or None
        Covariates for Gaussian process random coefficients, shape (n,) or (n, p_gp).
    """
    __slots__ = ('n', 'group_data', 'group_rand_coef_data', 'gp_coords', 'gp_rand_coef_data')

    def __init__(self, group_data=None, group_rand_coef_data=None, gp_coords=None, gp_rand_coef_data=None):
        self.group_data = self._as_2d(group_data)
        self.group_rand_coef_data = self._as_2d(group_rand_coef_data, float)
        self.gp_coords = self._as_2d(gp_coords, float)
        self.gp_rand_coef_data = self._as_2d(gp_rand_coef_data, float)

        sizes = {arr.shape[0] for arr in (self.group_data, self.group_rand_coef_data, self.gp_coords, self.gp_rand_coef_data)
                 if arr is not None}
        if not sizes:
            raise InvalidParameterError("Either group_data or gp_coords must be provided.")
        if len(sizes) > 1:
            raise InvalidParameterError(f"All random effects inputs must have the same number of rows, got {sorted(sizes)}.")
        self.n = sizes.pop()
        if self.gp_coords is not None and not np.all(np.isfinite(self.gp_coords)):
            raise InvalidParameterError("gp_coords must be finite.")

    @staticmethod
    def _as_2d(arr, dtype=None):
        if arr is None:
            return None
        arr = np.asarray(arr, dtype=dtype)
        if arr.ndim == 1:
            arr = arr[:, None]
        if arr.ndim != 2:
            raise InvalidParameterError(f"Random effects inputs must be 1D or 2D, got {arr.ndim}D.")
        return arr

    def subset(self, indices: np.ndarray):
        """
        Return the rows ``indices`` as a new RandomEffectData.
        """
        take = lambda arr: None if arr is None else arr[indices]
        return RandomEffectData(take(self.group_data), take(self.group_rand_coef_data),
                                take(self.gp_coords), take(self.gp_rand_coef_data))


def group_keys(group_data: np.ndarray, column: int, nested: bool) -> np.ndarray:
    """
    Grouping keys of one column. Nested columns are keyed by all preceding columns too.
    """
    if not nested or column == 0:
        return group_data[:, column]
    keys = np.empty(group_data.shape[0], dtype=object)
    for i, row in enumerate(group_data[:, :column + 1]):
        keys[i] = tuple(row)
    return keys


class RealizedComponent:
    """
    Transient realization of a covariance component for a specific dataset.

    Binds a learned ``CovarianceComponent`` to the incidence matrix Z built from
    the data. Realizations of prediction data keep a reference to the training
    realization so that grouping levels and locations can be matched.

    Parameters
    ----------
    component : CovarianceComponent
        The learned component state.
    data : RandomEffectData
        Random effects inputs.
    reference : RealizedComponent or None
        Training realization. None implies that ``data`` is the training data.
    """
    def __init__(self, component: CovarianceComponent, data: RandomEffectData, reference=None):
        self.component = component
        self.kind = component.kind
        self.n = data.n
        self.reference = reference
        self.weights = self._covariate(data)

        if self.kind == 'grouped':
            if data.group_data is None or component.column >= data.group_data.shape[1]:
                raise InvalidParameterError(f"Component '{component.name}' requires grouping column {component.column}.")
            keys = group_keys(data.group_data, component.column, component.nested)
            self.levels, level_indices = np.unique(keys, return_inverse=True)
            level_indices = np.asarray(level_indices).ravel()
            if reference is None and len(self.levels) < 2:
                raise InvalidParameterError(f"Grouping variable of '{component.name}' must have at least 2 distinct levels, got {len(self.levels)}.")
            self.Z = self.design_Z(level_indices, len(self.levels), self.weights)
            if reference is not None:
                self.Z_ref = self.design_Z(self._align(keys, reference.levels), len(reference.levels), self.weights)
        else:
            if data.gp_coords is None:
                raise InvalidParameterError(f"Component '{component.name}' requires gp_coords.")
            self.locs, loc_indices = np.unique(data.gp_coords, axis=0, return_inverse=True)
            loc_indices = np.asarray(loc_indices).ravel()
            self.Z = self.design_Z(loc_indices, self.locs.shape[0], self.weights)
            self._dist = None

        self.o = self.Z.shape[1]

    def _covariate(self, data: RandomEffectData):
        if self.component.covariate is None:
            return None
        source = data.group_rand_coef_data if self.kind == 'grouped' else data.gp_rand_coef_data
        if source is None or self.component.covariate >= source.shape[1]:
            raise InvalidParameterError(f"Component '{self.component.name}' requires random coefficient column {self.component.covariate}.")
        return source[:, self.component.covariate]

    @staticmethod
    def _align(keys: np.ndarray, levels: np.ndarray) -> np.ndarray:
        """
        Map keys to positions in ``levels``; unseen keys map to -1.
        """
        index = {level: i for i, level in enumerate(levels)}
        return np.fromiter((index.get(key, -1) for key in keys), dtype=np.int64, count=len(keys))

    @staticmethod
    def design_Z(level_indices: np.ndarray, o: int, weights: np.ndarray | None):
        """
        Construct the sparse incidence matrix Z.

        Parameters
        ----------
        level_indices : np.ndarray
            Level (or location) index per sample; negative entries give an empty row.
        o : int
            Number of levels or unique locations.
        weights : np.ndarray or None
            Random coefficient covariate. None implies a 0/1 incidence matrix.

        Returns
        -------
        Z : scipy.sparse.csr_array
            Incidence matrix of shape (n, o).
        """
        n = level_indices.shape[0]
        data = np.ones(n) if weights is None else np.asarray(weights, dtype=np.float64)
        rows = np.arange(n)
        keep = level_indices >= 0
        return sparse.csr_array((data[keep], (rows[keep], level_indices[keep])), shape=(n, o))

    @property
    def dist(self) -> np.ndarray:
        """Pairwise distances between unique locations (kernel components)."""
        if self._dist is None:
            self._dist = squareform(pdist(self.locs))
        return self._dist

    def mean_distance(self, max_points: int = 1000, seed: int = 0) -> float:
        """
        Average distance between unique locations, on a subsample for large data.
        """
        locs = self.locs
        if locs.shape[0] > max_points:
            rng = np.random.default_rng(seed)
            locs = locs[rng.choice(locs.shape[0], size=max_points, replace=False)]
        if locs.shape[0] < 2:
            return 1.0
        mean_dist = pdist(locs).mean()
        return mean_dist if mean_dist > 0 else 1.0

    def _check_params(self, params):
        return self.component.params if params is None else params

# ====================== Covariance Blocks ======================

    @staticmethod
    def _sandwich(Z_left, C: np.ndarray, Z_right) -> np.ndarray:
        """Z_left C Z_rightᵀ as a dense array."""
        return Z_left @ (Z_right @ C.T).T

    def cov_matrix(self, params=None, dense: bool = True):
        """
        Covariance block Zₖ Covₖ Zₖᵀ of shape (n, n).

        Grouped blocks are sparse unless ``dense`` is requested.
        """
        params = self._check_params(params)
        if self.kind == 'grouped':
            cov = params[0] * (self.Z @ self.Z.T)
            return cov.toarray() if dense else sparse.csr_array(cov)
        corr, _ = self.component.correlation(self.dist, params)
        return self._sandwich(self.Z, params[0] * corr, self.Z)

    def cov_grads(self, params=None, dense: bool = True) -> list:
        """
        Derivatives of the covariance block w.r.t. the log parameters.
        """
        params = self._check_params(params)
        if self.kind == 'grouped':
            return [self.cov_matrix(params, dense)]
        corr, dcorr = self.component.correlation(self.dist, params)
        return [self._sandwich(self.Z, params[0] * corr, self.Z),
                self._sandwich(self.Z, params[0] * dcorr, self.Z)]

    def cross_cov(self, params=None) -> np.ndarray:
        """
        Covariance between this (prediction) realization and the training realization.

        Returns
        -------
        np.ndarray
            Dense matrix of shape (n_new, n_train).
        """
        train = self.reference
        params = self._check_params(params)
        if self.kind == 'grouped':
            return (params[0] * (self.Z_ref @ train.Z.T)).toarray()
        corr, _ = self.component.correlation(cdist(self.locs, train.locs), params)
        return self._sandwich(self.Z, params[0] * corr, train.Z)

    def prior_var(self, params=None) -> np.ndarray:
        """Prior variance of the component at every sample."""
        params = self._check_params(params)
        w2 = np.ones(self.n) if self.weights is None else self.weights ** 2
        return params[0] * w2

    def mean_contribution(self, alpha: np.ndarray, params=None) -> np.ndarray:
        """
        Posterior mean of the component at this realization's samples.

        Computes Σₖ(new, train) α with α = Σ⁻¹ r, without forming the cross-covariance.
        """
        train = self.reference
        params = self._check_params(params)
        projected = train.Z.T @ alpha
        if self.kind == 'grouped':
            return params[0] * (self.Z_ref @ projected)
        corr, _ = self.component.correlation(cdist(self.locs, train.locs), params)
        return self.Z @ (params[0] * (corr @ projected))
