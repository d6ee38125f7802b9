import numpy as np
from scipy import sparse
from scipy.linalg import cho_factor, cho_solve
from scipy.sparse.linalg import splu
from ..exceptions import FactorizationError
from .covariance import CompositeCovarianceModel
from .random_effect import RealizedComponent

LOG_2PI = np.log(2.0 * np.pi)


class DenseFactorization:
    """
    Cholesky factorization of a dense marginal covariance Σ.

    Parameters
    ----------
    Sigma : np.ndarray
        Symmetric matrix of shape (n, n).

    Raises
    ------
    FactorizationError
        If Σ is not finite or not positive-definite.
    """
    def __init__(self, Sigma: np.ndarray):
        if not np.all(np.isfinite(Sigma)):
            raise FactorizationError("Covariance matrix contains non-finite entries.")
        try:
            self.cho = cho_factor(Sigma, lower=True, check_finite=False)
        except np.linalg.LinAlgError as err:
            raise FactorizationError(f"Covariance matrix is not positive-definite: {err}") from err
        self.n = Sigma.shape[0]
        self._inverse = None

    def solve(self, b: np.ndarray) -> np.ndarray:
        """Σ⁻¹ b for a vector or a dense matrix."""
        return cho_solve(self.cho, b, check_finite=False)

    def logdet(self) -> float:
        return 2.0 * np.sum(np.log(np.diag(self.cho[0])))

    def inverse(self) -> np.ndarray:
        if self._inverse is None:
            self._inverse = self.solve(np.eye(self.n))
        return self._inverse

    def inv_diag(self) -> np.ndarray:
        return np.diag(self.inverse()).copy()


class WoodburyFactorization:
    """
    Factorization of Σ = s I + Z D Zᵀ for grouped random effects.

    Only the m × m matrix M = D⁻¹ + ZᵀZ / s is factorized (m = total number of
    levels), using a sparse LU decomposition in symmetric mode, so no dense
    n × n matrix is formed.

    Σ⁻¹ = (I - Z M⁻¹ Zᵀ / s) / s
    log|Σ| = n log s + log|D| + log|M|

    Parameters
    ----------
    Z : scipy.sparse.csc_array
        Stacked incidence matrix of shape (n, m).
    d : np.ndarray
        Diagonal of D, shape (m,).
    nugget : float
        Error variance plus jitter, s.
    """
    def __init__(self, Z, d: np.ndarray, nugget: float):
        if not (np.all(np.isfinite(d)) and np.all(d > 0) and np.isfinite(nugget) and nugget > 0):
            raise FactorizationError("Variances must be positive and finite.")
        self.Z = Z
        self.d = d
        self.s = nugget
        self.n, self.m = Z.shape
        self.G = sparse.csc_array(Z.T @ Z)
        M = sparse.csc_array(sparse.diags_array(1.0 / d) + self.G / nugget)
        try:
            self.lu = splu(M, permc_spec='MMD_AT_PLUS_A', diag_pivot_thresh=0.0, options=dict(SymmetricMode=True))
        except RuntimeError as err:
            raise FactorizationError(f"Sparse factorization failed: {err}") from err
        u_diag = self.lu.U.diagonal()
        if not np.all(np.isfinite(u_diag)) or np.any(u_diag <= 0):
            raise FactorizationError("Covariance matrix is not positive-definite.")
        self._logdet_M = np.sum(np.log(u_diag))
        self._Minv = None

    def solve(self, b: np.ndarray) -> np.ndarray:
        """Σ⁻¹ b for a vector or a dense matrix."""
        inner = self.lu.solve(np.asarray(self.Z.T @ b))
        return (b - self.Z @ inner / self.s) / self.s

    def logdet(self) -> float:
        return self.n * np.log(self.s) + np.sum(np.log(self.d)) + self._logdet_M

    @property
    def Minv(self) -> np.ndarray:
        """Dense M⁻¹ of shape (m, m)."""
        if self._Minv is None:
            self._Minv = self.lu.solve(np.eye(self.m))
        return self._Minv

    def inv_diag(self) -> np.ndarray:
        ZMinv = self.Z @ self.Minv
        row_sums = np.asarray(self.Z.multiply(ZMinv).sum(axis=1)).ravel()
        return (1.0 - row_sums / self.s) / self.s


class LikelihoodEngine:
    """
    Marginal log-likelihood, its gradient and the Fisher information w.r.t. log θ.

    The engine reads θ from the covariance model and caches the factorization
    tagged with the model's version, and Σ⁻¹r tagged with (version, residual
    version). Block-sparse models use the Woodbury representation unless
    ``force_dense`` is set.

    Parameters
    ----------
    model : CompositeCovarianceModel
        Covariance model owning θ.
    realized : tuple of RealizedComponent
        Training realization of the components.
    force_dense : bool, default=False
        Always use the dense Cholesky path.
    """
    def __init__(self, model: CompositeCovarianceModel, realized: tuple[RealizedComponent], force_dense: bool = False):
        self.model = model
        self.realized = realized
        self.n = realized[0].n
        self.use_woodbury = model.is_block_sparse and not force_dense
        self._factor = None
        self._factor_version = -1
        self._grads = None
        self._grads_version = -1
        self._residual = None
        self._residual_version = 0
        self._alpha = None
        self._alpha_key = None

    # ====================== Cache Management ======================

    def __getstate__(self):
        # Sparse LU factors cannot be pickled; they are rebuilt on demand.
        state = self.__dict__.copy()
        state['_factor'], state['_factor_version'] = None, -1
        state['_grads'], state['_grads_version'] = None, -1
        state['_alpha'], state['_alpha_key'] = None, None
        return state

    def set_residual(self, residual: np.ndarray):
        """
        Set the residual r = y - offset. The version only changes with the values.
        """
        residual = np.asarray(residual, dtype=np.float64).ravel()
        if residual.shape != (self.n,):
            raise ValueError(f"Residual shape mismatch. Expected {(self.n,)}, got {residual.shape}")
        if self._residual is None or not np.array_equal(residual, self._residual):
            self._residual = residual.copy()
            self._residual_version += 1
        return self

    @property
    def residual(self) -> np.ndarray:
        if self._residual is None:
            raise RuntimeError("No residual has been set.")
        return self._residual

    def _set_log_theta(self, log_theta):
        if log_theta is not None:
            self.model.set_log_theta(log_theta)

    @property
    def is_current(self) -> bool:
        """Whether the realization matches the model's current component list."""
        return tuple(re.component for re in self.realized) == tuple(self.model.components)

    def factorize(self, log_theta=None):
        """
        Factorize Σ(θ), reusing the cached factor if θ is unchanged.

        Raises
        ------
        FactorizationError
            If Σ is not positive-definite after jitter.
        RuntimeError
            If components were added or removed after the engine was built.
        """
        if not self.is_current:
            raise RuntimeError("The covariance components changed after the likelihood engine was built; "
                               "realize the components again and build a new engine.")
        self._set_log_theta(log_theta)
        if self._factor is None or self._factor_version != self.model.version:
            self._factor = None
            if self.use_woodbury:
                Z, d = self.model.incidence(self.realized)
                factor = WoodburyFactorization(Z, d, self.model.nugget)
            else:
                factor = DenseFactorization(self.model.assemble(self.realized, dense=True))
            self._factor = factor
            self._factor_version = self.model.version
        return self._factor

    def alpha(self, log_theta=None) -> np.ndarray:
        """Σ⁻¹ r."""
        factor = self.factorize(log_theta)
        key = (self.model.version, self._residual_version)
        if self._alpha is None or self._alpha_key != key:
            self._alpha = factor.solve(self.residual)
            self._alpha_key = key
        return self._alpha

    def _grad_matrices(self):
        if self._grads is None or self._grads_version != self.model.version:
            self._grads = self.model.grad_matrices(self.realized)
            self._grads_version = self.model.version
        return self._grads

    # ====================== Likelihood & Derivatives ======================

    def log_likelihood(self, log_theta=None) -> float:
        """
        ℓ = -½ rᵀΣ⁻¹r - ½ log|Σ| - (n/2) log 2π
        """
        factor = self.factorize(log_theta)
        alpha = self.alpha()
        return -0.5 * (self.residual @ alpha + factor.logdet() + self.n * LOG_2PI)

    def gradient(self, log_theta=None) -> np.ndarray:
        """
        ∂ℓ/∂log θₖ = ½ [rᵀΣ⁻¹ ∂ₖΣ Σ⁻¹r - tr(Σ⁻¹ ∂ₖΣ)]
        """
        factor = self.factorize(log_theta)
        alpha = self.alpha()
        if self.use_woodbury:
            return self._gradient_woodbury(factor, alpha)
        Sigma_inv = factor.inverse()
        return np.array([0.5 * (alpha @ (dS @ alpha) - np.sum(Sigma_inv * dS)) for dS in self._grad_matrices()])

    def fisher_information(self, log_theta=None) -> np.ndarray:
        """
        Iᵢⱼ = ½ tr(Σ⁻¹ ∂ᵢΣ Σ⁻¹ ∂ⱼΣ), symmetric positive semi-definite.
        """
        factor = self.factorize(log_theta)
        if self.use_woodbury:
            return self._fisher_woodbury(factor)
        Sigma_inv = factor.inverse()
        P = [Sigma_inv @ dS for dS in self._grad_matrices()]
        p = len(P)
        fisher = np.empty((p, p))
        for i in range(p):
            for j in range(i, p):
                fisher[i, j] = fisher[j, i] = 0.5 * np.sum(P[i] * P[j].T)
        return fisher

    def inv_diag(self, log_theta=None) -> np.ndarray:
        """diag(Σ⁻¹)."""
        return self.factorize(log_theta).inv_diag()

    def solve(self, b: np.ndarray, log_theta=None) -> np.ndarray:
        """Σ⁻¹ b."""
        return self.factorize(log_theta).solve(b)

    # ====================== Woodbury Derivatives ======================

    def _column_slices(self) -> list[slice]:
        slices, start = [], 0
        for re in self.realized:
            slices.append(slice(start, start + re.o))
            start += re.o
        return slices

    def _woodbury_blocks(self, factor: WoodburyFactorization):
        """
        Dense m × m blocks: G = ZᵀZ, M⁻¹G, A = M⁻¹D⁻¹/s and S = ZᵀΣ⁻¹Z = G A.
        """
        G = factor.G.toarray()
        MinvG = factor.Minv @ G
        A = factor.Minv / factor.d[None, :] / factor.s
        S = G @ A
        S = 0.5 * (S + S.T)
        return G, MinvG, A, S

    def _gradient_woodbury(self, factor: WoodburyFactorization, alpha: np.ndarray) -> np.ndarray:
        s = factor.s
        sig2 = self.model.error_var
        _, MinvG, _, S = self._woodbury_blocks(factor)
        grad = np.empty(self.model.n_params)
        tr_Sigma_inv = (self.n - np.trace(MinvG) / s) / s
        grad[0] = 0.5 * sig2 * (alpha @ alpha - tr_Sigma_inv)
        Zt_alpha = factor.Z.T @ alpha
        for k, cols in enumerate(self._column_slices()):
            theta_k = self.model.components[k].params[0]
            grad[k + 1] = 0.5 * theta_k * (np.sum(Zt_alpha[cols] ** 2) - np.trace(S[cols, cols]))
        return grad

    def _fisher_woodbury(self, factor: WoodburyFactorization) -> np.ndarray:
        s = factor.s
        sig2 = self.model.error_var
        G, MinvG, A, S = self._woodbury_blocks(factor)
        T = A.T @ G @ A
        slices = self._column_slices()
        thetas = [comp.params[0] for comp in self.model.components]
        p = self.model.n_params
        fisher = np.empty((p, p))
        tr_Sigma_inv2 = (self.n - 2.0 * np.trace(MinvG) / s + np.sum(MinvG * MinvG.T) / s ** 2) / s ** 2
        fisher[0, 0] = 0.5 * sig2 ** 2 * tr_Sigma_inv2
        for k, cols in enumerate(slices):
            fisher[0, k + 1] = fisher[k + 1, 0] = 0.5 * sig2 * thetas[k] * np.trace(T[cols, cols])
            for j in range(k, len(slices)):
                value = 0.5 * thetas[k] * thetas[j] * np.sum(S[cols, slices[j]] ** 2)
                fisher[k + 1, j + 1] = fisher[j + 1, k + 1] = value
        return fisher
