import numpy as np
from sklearn.exceptions import NotFittedError
from ..exceptions import InvalidParameterError
from .terms import CovarianceComponent, EFFECTIVE_RANGE_FACTOR
from .random_effect import RandomEffectData, RealizedComponent
from .covariance import CompositeCovarianceModel
from .likelihood import LikelihoodEngine
from .optimizer import CovarianceOptimizer, OptimizerConfig, OptimizerResult
from .re_result import PredictionResult


class REModel:
    """
    Random effects model: grouped random effects and / or a Gaussian process.

    The model is bound to its training inputs at construction. Covariance
    parameters are estimated by maximizing the marginal likelihood of the
    residual y - offset, where the offset is the fixed effect (e.g. the tree
    ensemble prediction).

    Parameters
    ----------
    group_data : array-like or None
        Grouping factors of shape (n,) or (n, k); one random intercept per column.
    group_rand_coef_data : array-like or None
        Covariates of shape (n,) or (n, p) for grouped random slopes.
    ind_effect_group_rand_coef : list of int or None
        Grouping column of each random slope covariate. Defaults to column 0.
    nested_groups : bool, default=False
        Treat every grouping column as nested in the preceding columns.
        False implies crossed random effects.
    gp_coords : array-like or None
        Coordinates of shape (n,) or (n, d) for a Gaussian process.
    cov_function : str, default='exponential'
        Kernel: 'exponential', 'gaussian', 'matern32' or 'matern52'.
    gp_rand_coef_data : array-like or None
        Covariates of shape (n,) or (n, p) for Gaussian process random coefficients.
    jitter : float, default=1e-10
        Diagonal epsilon added to the covariance matrix.
    force_dense : bool, default=False
        Use dense Cholesky factorization even if all effects are grouped.
    """
    def __init__(self, group_data=None, group_rand_coef_data=None, ind_effect_group_rand_coef=None, nested_groups: bool = False,
                 gp_coords=None, cov_function: str = 'exponential', gp_rand_coef_data=None, jitter: float = 1e-10,
                 force_dense: bool = False):
        self.data = RandomEffectData(group_data, group_rand_coef_data, gp_coords, gp_rand_coef_data)
        self.n = self.data.n
        self.nested_groups = nested_groups
        self.ind_effect_group_rand_coef = ind_effect_group_rand_coef
        self.cov_function = cov_function
        self.jitter = jitter
        self.force_dense = force_dense

        self.cov_model = CompositeCovarianceModel(self._build_components(), jitter=jitter)
        self.optimizer_config = OptimizerConfig()
        self._y = None
        self._offset = None
        self._bind(self.cov_model.realize(self.data))

    def _build_components(self) -> list[CovarianceComponent]:
        data = self.data
        components = []
        if data.group_data is not None:
            k = data.group_data.shape[1]
            for j in range(k):
                components.append(CovarianceComponent('grouped', f"group_{j + 1}", column=j, nested=self.nested_groups and j > 0))
            if data.group_rand_coef_data is not None:
                p = data.group_rand_coef_data.shape[1]
                slope_groups = [0] * p if self.ind_effect_group_rand_coef is None else list(self.ind_effect_group_rand_coef)
                if len(slope_groups) != p:
                    raise InvalidParameterError(f"Length of ind_effect_group_rand_coef ({len(slope_groups)}) must match "
                                                f"the number of random slope covariates ({p}).")
                for i, g in enumerate(slope_groups):
                    if not 0 <= g < k:
                        raise InvalidParameterError(f"ind_effect_group_rand_coef refers to grouping column {g}, but only {k} are available.")
                    components.append(CovarianceComponent('grouped', f"group_{g + 1}_slope_{i + 1}", column=g,
                                                          nested=self.nested_groups and g > 0, covariate=i))
        elif data.group_rand_coef_data is not None:
            raise InvalidParameterError("group_rand_coef_data requires group_data.")

        if data.gp_coords is not None:
            components.append(CovarianceComponent('kernel', 'gp', cov_function=self.cov_function))
            if data.gp_rand_coef_data is not None:
                for i in range(data.gp_rand_coef_data.shape[1]):
                    components.append(CovarianceComponent('kernel', f"gp_slope_{i + 1}", cov_function=self.cov_function, covariate=i))
        elif data.gp_rand_coef_data is not None:
            raise InvalidParameterError("gp_rand_coef_data requires gp_coords.")
        return components

    # ====================== Configuration ======================

    def set_optimizer_config(self, **options):
        """
        Set optimizer options.

        Recognized options: optimizer_cov ('gradient_descent' or 'fisher_scoring'),
        lr_cov, use_nesterov_acc, acc_rate_cov, delta_rel_conv, maxit, trace,
        convergence_criterion, max_step_halvings, max_factorization_failures.
        """
        self.optimizer_config = self.optimizer_config.update(**options)
        self._fit_inputs = None
        return self

    @property
    def param_names(self) -> list[str]:
        return self.cov_model.param_names

    def get_cov_pars(self) -> dict:
        """Current covariance parameters by name."""
        return dict(zip(self.cov_model.param_names, self.cov_model.get_theta()))

    def set_cov_pars(self, cov_pars):
        """
        Set covariance parameters (natural scale, in ``param_names`` order).
        They are used as starting values of the next fit.
        """
        self._sync_components()
        self.cov_model.set_theta(cov_pars)
        self._cov_pars_initialized = True
        return self

    # ====================== Components ======================

    def _bind(self, realized):
        """
        Bind the realization and a new likelihood engine. Parameters are
        initialized again from the data at the next fit.
        """
        self.realized = tuple(realized)
        self.engine = LikelihoodEngine(self.cov_model, self.realized, self.force_dense)
        self.optim_result_: OptimizerResult | None = None
        self._cov_pars_initialized = False
        self._fit_inputs = None

    def _sync_components(self):
        # Components may have been changed on cov_model directly.
        if not self.engine.is_current:
            self._bind(self.cov_model.realize(self.data))

    def add_component(self, component: CovarianceComponent):
        """
        Add a random effect component reading this model's training inputs.

        θ grows by the component's parameters, the factorization cache is
        discarded and all parameters are re-initialized at the next fit.
        """
        self._sync_components()
        realized = RealizedComponent(component, self.data)
        self.cov_model.add_component(component)
        self._bind(self.realized + (realized,))
        return self

    def remove_component(self, name: str):
        """
        Remove the component called ``name``; see ``add_component``.
        """
        self._sync_components()
        self.cov_model.remove_component(name)
        self._bind([re for re in self.realized if re.component.name != name])
        return self

    def _init_cov_pars(self, residual: np.ndarray):
        """
        Data-driven starting values: half of the residual variance for the error,
        the other half shared by the components; ranges with correlation 0.05
        at the mean distance.
        """
        var = np.var(residual)
        var = var if var > 0 else 1.0
        theta = [var / 2.0]
        n_comp = len(self.cov_model.components)
        for comp, re in zip(self.cov_model.components, self.realized):
            theta.append(var / 2.0 / n_comp)
            if comp.kind == 'kernel':
                theta.append(re.mean_distance() / EFFECTIVE_RANGE_FACTOR[comp.cov_function])
        self.cov_model.set_theta(theta)
        self._cov_pars_initialized = True

    def _check_vector(self, values, name: str) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64).ravel()
        if values.shape != (self.n,):
            raise InvalidParameterError(f"{name} must have shape {(self.n,)}, got {values.shape}")
        if not np.all(np.isfinite(values)):
            raise InvalidParameterError(f"{name} must be finite.")
        return values

    # ====================== Estimation ======================

    def fit(self, y, offset=None):
        """
        Estimate the covariance parameters for the residual r = y - offset.

        Starts from the current parameters (data-driven values on first use).
        Repeating a call with identical inputs and unchanged parameters is a no-op.

        Parameters
        ----------
        y : array-like
            Response of shape (n,).
        offset : array-like or None
            Fixed effect of shape (n,). None implies zero.

        Returns
        -------
        self : REModel
        """
        self._sync_components()
        y = self._check_vector(y, 'y')
        offset = np.zeros(self.n) if offset is None else self._check_vector(offset, 'offset')
        if self._fit_inputs is not None:
            prev_y, prev_offset, prev_version = self._fit_inputs
            if prev_version == self.cov_model.version and np.array_equal(prev_y, y) and np.array_equal(prev_offset, offset):
                return self

        residual = y - offset
        if not self._cov_pars_initialized:
            self._init_cov_pars(residual)
        self.engine.set_residual(residual)
        optimizer = CovarianceOptimizer(self.optimizer_config)
        self.optim_result_ = optimizer.run(self.engine, self.cov_model.get_log_theta())
        self.cov_model.set_log_theta(self.optim_result_.log_theta)

        self._y, self._offset = y.copy(), offset.copy()
        self._fit_inputs = (self._y, self._offset, self.cov_model.version)
        return self

    def compute_grad_hess(self, y, F):
        """
        Gradient and Hessian of the negative marginal log-likelihood w.r.t. F.

        -ℓ(F) = ½ (y - F)ᵀΣ⁻¹(y - F) + const, hence

            gradient = -Σ⁻¹(y - F)
            hessian  = diag(Σ⁻¹)

        ``F`` is recorded as the current training score used by ``predict``.

        Parameters
        ----------
        y : array-like
            Response of shape (n,).
        F : array-like
            Current fixed effect (ensemble prediction) of shape (n,).

        Returns
        -------
        grad : np.ndarray
            Shape (n,).
        hess : np.ndarray
            Shape (n,).
        """
        self._sync_components()
        y = self._check_vector(y, 'y')
        F = self._check_vector(F, 'F')
        residual = y - F
        if not self._cov_pars_initialized:
            self._init_cov_pars(residual)
        self.engine.set_residual(residual)
        grad = -self.engine.alpha()
        hess = self.engine.inv_diag()
        self._y, self._offset = y.copy(), F.copy()
        return grad, hess

    def neg_log_likelihood(self, y, offset=None, cov_pars=None) -> float:
        """
        Negative marginal log-likelihood of y - offset, at ``cov_pars`` if given.
        """
        self._sync_components()
        y = self._check_vector(y, 'y')
        offset = np.zeros(self.n) if offset is None else self._check_vector(offset, 'offset')
        if cov_pars is not None:
            self.set_cov_pars(cov_pars)
        self.engine.set_residual(y - offset)
        return -self.engine.log_likelihood()

    # ====================== Prediction ======================

    def predict(self, group_data_pred=None, group_rand_coef_data_pred=None, gp_coords_pred=None, gp_rand_coef_data_pred=None,
                offset=None, predict_var: bool = False, predict_cov: bool = False) -> PredictionResult:
        """
        Posterior of the random effects at new inputs.

        mean = Σ(new, train) Σ⁻¹ r
        cov  = Σ(new, new) - Σ(new, train) Σ⁻¹ Σ(train, new)

        Parameters
        ----------
        group_data_pred, group_rand_coef_data_pred, gp_coords_pred, gp_rand_coef_data_pred : array-like or None
            Prediction inputs. If all are None, predictions are made at the training inputs.
        offset : array-like or None
            Training score F, so that r = y - F. None uses the score of the last
            ``fit`` or ``compute_grad_hess`` call.
        predict_var : bool, default=False
            Compute posterior variances.
        predict_cov : bool, default=False
            Compute the full posterior covariance matrix, O(n_new² n) for dense models.

        Returns
        -------
        PredictionResult
            Random effects mean and, if requested, variance / covariance.
        """
        self._sync_components()
        if self._y is None:
            raise NotFittedError("The random effects model has no training response yet. Call fit or compute_grad_hess first.")
        offset = self._offset if offset is None else self._check_vector(offset, 'offset')
        self.engine.set_residual(self._y - offset)
        alpha = self.engine.alpha()

        pred_inputs = (group_data_pred, group_rand_coef_data_pred, gp_coords_pred, gp_rand_coef_data_pred)
        data = self.data if all(arr is None for arr in pred_inputs) else RandomEffectData(*pred_inputs)
        realized_new = self.cov_model.realize(data, reference=self.realized)

        mean = np.zeros(data.n)
        for re in realized_new:
            mean += re.mean_contribution(alpha)

        var, cov = None, None
        if predict_var or predict_cov:
            cross = np.zeros((data.n, self.n))
            for re in realized_new:
                cross += re.cross_cov()
            Sigma_inv_cross_T = self.engine.solve(cross.T)
            if predict_cov:
                cov = np.zeros((data.n, data.n))
                for re in realized_new:
                    cov += re.cov_matrix(dense=True)
                cov -= cross @ Sigma_inv_cross_T
                cov = 0.5 * (cov + cov.T)
            else:
                var = np.zeros(data.n)
                for re in realized_new:
                    var += re.prior_var()
                var -= np.sum(cross * Sigma_inv_cross_T.T, axis=1)
                var = np.maximum(var, 0.0)
        return PredictionResult(mean, random_effect_var=var, random_effect_cov=cov, error_var=self.cov_model.error_var)

    # ====================== Reporting ======================

    def summary(self, verbose: bool = True) -> dict:
        """
        Covariance parameters and convergence diagnostics of the last fit.
        """
        result = self.optim_result_
        info = {
            'cov_pars': self.get_cov_pars(),
            'log_likelihood': None if result is None else result.log_likelihood,
            'n_iter': 0 if result is None else result.n_iter,
            'status': 'not_fitted' if result is None else result.status,
            'converged': False if result is None else result.converged,
            'optimizer': self.optimizer_config.optimizer_cov,
            'num_data': self.n,
        }
        if verbose:
            indent1 = "   "
            indent2 = "       "
            print("\nRandom Effects Model Summary")
            print("=" * 50)
            print(indent1 + f"Optimizer: {info['optimizer']}")
            print(indent1 + f"Iterations: {info['n_iter']}")
            print(indent1 + f"Status: {info['status']}")
            print(indent1 + f"Converged: {info['converged']}")
            if info['log_likelihood'] is not None:
                print(indent1 + f"Log-Likelihood: {info['log_likelihood']:.3f}")
            print(indent1 + f"No. Samples: {self.n}")
            print(indent1 + f"No. Components: {len(self.cov_model.components)}")
            print("-" * 50)
            print(indent1 + "Covariance Parameters")
            print(indent2 + "{:<25} {:>12}".format("Parameter", "Estimate"))
            for name, value in info['cov_pars'].items():
                print(indent2 + "{:<25} {:>12.5g}".format(name, value))
            print("\n")
        return info

    def subset(self, indices):
        """
        Fresh model with the same configuration on the rows ``indices``.

        The new model has its own parameters, factorization cache and optimizer
        state; only the component structure and the optimizer configuration are copied.
        """
        data = self.data.subset(np.asarray(indices))
        model = REModel(data.group_data, data.group_rand_coef_data, self.ind_effect_group_rand_coef, self.nested_groups,
                        data.gp_coords, self.cov_function, data.gp_rand_coef_data, self.jitter, self.force_dense)
        components = [CovarianceComponent(comp.kind, comp.name, comp.column, comp.nested, comp.covariate, comp.cov_function)
                      for comp in self.cov_model.components]
        model.cov_model = CompositeCovarianceModel(components, jitter=self.jitter)
        model._bind(model.cov_model.realize(model.data))
        model.optimizer_config = self.optimizer_config
        return model

    def __repr__(self):
        return f"REModel(n={self.n}, {self.cov_model!r})"
