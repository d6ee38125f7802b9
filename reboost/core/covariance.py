import numpy as np
from scipy import sparse
from ..exceptions import InvalidParameterError
from .terms import CovarianceComponent
from .random_effect import RandomEffectData, RealizedComponent


class CompositeCovarianceModel:
    """
    Sum of covariance components plus independent error.

    Σ(θ) = Σₖ Zₖ Covₖ(θₖ) Zₖᵀ + (σ² + jitter) I

    The model owns the hyperparameter vector θ = [σ², θ₁, ..., θ_K]. Every change
    of θ or of the component list increments ``version``, which cached
    factorizations are tagged with.

    Parameters
    ----------
    components : sequence of CovarianceComponent
        Random effect components, at least one.
    error_var : float, default=1.0
        Variance σ² of the independent error term.
    jitter : float, default=1e-10
        Fixed diagonal epsilon that keeps Σ numerically positive-definite.
    """
    def __init__(self, components, error_var: float = 1.0, jitter: float = 1e-10):
        self.components: list[CovarianceComponent] = list(components)
        if not self.components:
            raise InvalidParameterError("At least one random effect component is required.")
        if jitter < 0:
            raise InvalidParameterError(f"jitter must be non-negative, got {jitter}")
        self._check_error_var(error_var)
        self.error_var = float(error_var)
        self.jitter = float(jitter)
        self.version = 0

    @staticmethod
    def _check_error_var(error_var):
        if not np.isfinite(error_var) or error_var <= 0:
            raise InvalidParameterError(f"Error variance must be positive and finite, got {error_var}")

    # ====================== Hyperparameters ======================

    @property
    def n_params(self) -> int:
        return 1 + sum(comp.n_params for comp in self.components)

    @property
    def param_names(self) -> list[str]:
        names = ['error_var']
        for comp in self.components:
            names.extend(comp.param_names)
        return names

    @property
    def nugget(self) -> float:
        """Diagonal added to the random effect covariance: σ² + jitter."""
        return self.error_var + self.jitter

    @property
    def is_block_sparse(self) -> bool:
        """True if every component is a grouped effect."""
        return all(comp.kind == 'grouped' for comp in self.components)

    def param_slices(self) -> list[slice]:
        """Position of each component's parameters in θ."""
        slices, start = [], 1
        for comp in self.components:
            slices.append(slice(start, start + comp.n_params))
            start += comp.n_params
        return slices

    def get_theta(self) -> np.ndarray:
        return np.concatenate([[self.error_var]] + [comp.params for comp in self.components])

    def set_theta(self, theta):
        """
        Set θ on the natural scale. Validation happens before any state changes.
        """
        theta = np.asarray(theta, dtype=np.float64).ravel()
        if theta.shape != (self.n_params,):
            raise InvalidParameterError(f"θ shape mismatch. Expected {(self.n_params,)}, got {theta.shape}")
        if not np.all(np.isfinite(theta)) or np.any(theta <= 0):
            raise InvalidParameterError(f"All covariance parameters must be positive and finite, got {theta}")
        if np.array_equal(theta, self.get_theta()):
            return self
        self.error_var = float(theta[0])
        for comp, sl in zip(self.components, self.param_slices()):
            comp.set_params(theta[sl])
        self.version += 1
        return self

    def get_log_theta(self) -> np.ndarray:
        return np.log(self.get_theta())

    def set_log_theta(self, log_theta):
        log_theta = np.asarray(log_theta, dtype=np.float64)
        if not np.all(np.isfinite(log_theta)):
            raise InvalidParameterError(f"log θ must be finite, got {log_theta}")
        return self.set_theta(np.exp(log_theta))

    def add_component(self, component: CovarianceComponent):
        """
        Append a component. θ grows by the component's parameters; caches are invalidated.
        """
        if any(comp.name == component.name for comp in self.components):
            raise InvalidParameterError(f"A component named '{component.name}' already exists.")
        self.components.append(component)
        self.version += 1
        return self

    def remove_component(self, name: str):
        """
        Remove the component called ``name``; caches are invalidated.
        """
        remaining = [comp for comp in self.components if comp.name != name]
        if len(remaining) == len(self.components):
            raise InvalidParameterError(f"No component named '{name}'.")
        if not remaining:
            raise InvalidParameterError("Cannot remove the last random effect component.")
        self.components = remaining
        self.version += 1
        return self

    # ====================== Realization & Assembly ======================

    def realize(self, data: RandomEffectData, reference: tuple[RealizedComponent] | None = None) -> tuple[RealizedComponent]:
        """
        Bind every component to ``data``. ``reference`` is the training realization
        when ``data`` holds prediction inputs.
        """
        if reference is None:
            return tuple(RealizedComponent(comp, data) for comp in self.components)
        if len(reference) != len(self.components):
            raise InvalidParameterError("Reference realization does not match the current components.")
        return tuple(RealizedComponent(comp, data, ref) for comp, ref in zip(self.components, reference))

    def component_covariance(self, realized: tuple[RealizedComponent], k: int, dense: bool = True):
        """Covariance block of component ``k`` without error and jitter."""
        return realized[k].cov_matrix(dense=dense)

    def assemble(self, realized: tuple[RealizedComponent], dense: bool | None = None):
        """
        Total covariance Σ(θ) including error variance and jitter.

        Parameters
        ----------
        realized : tuple of RealizedComponent
            Training realization.
        dense : bool or None
            Force the output format. None gives a sparse array for block-sparse
            models and a dense array otherwise.

        Returns
        -------
        np.ndarray or scipy.sparse.csr_array
            Matrix of shape (n, n).
        """
        dense = (not self.is_block_sparse) if dense is None else dense
        n = realized[0].n
        if dense:
            Sigma = np.zeros((n, n))
            for re in realized:
                Sigma += re.cov_matrix(dense=True)
            Sigma[np.diag_indices_from(Sigma)] += self.nugget
            return Sigma
        Sigma = sparse.csr_array(self.nugget * sparse.eye_array(n, format='csr'))
        for re in realized:
            Sigma = Sigma + re.cov_matrix(dense=False)
        return sparse.csr_array(Sigma)

    def grad_matrices(self, realized: tuple[RealizedComponent]) -> list[np.ndarray]:
        """
        Dense derivatives ∂Σ/∂log θᵢ in θ order.
        """
        n = realized[0].n
        grads = [self.error_var * np.eye(n)]
        for re in realized:
            grads.extend(re.cov_grads(dense=True))
        return grads

    def incidence(self, realized: tuple[RealizedComponent]):
        """
        Stacked incidence matrix Z = [Z₁, ..., Z_K] and the diagonal of D for
        block-sparse models.

        Returns
        -------
        Z : scipy.sparse.csc_array
            Shape (n, m) with m the total number of levels.
        d : np.ndarray
            Variance of each column of Z.
        """
        if not self.is_block_sparse:
            raise InvalidParameterError("The incidence representation requires grouped components only.")
        Z = sparse.csc_array(sparse.hstack([re.Z for re in realized], format='csc'))
        d = np.concatenate([np.full(re.o, re.component.params[0]) for re in realized])
        return Z, d

    def __repr__(self):
        params = ", ".join(f"{name}={value:.4g}" for name, value in zip(self.param_names, self.get_theta()))
        return f"CompositeCovarianceModel({params})"
