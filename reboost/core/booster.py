import numpy as np
from sklearn.base import BaseEstimator, RegressorMixin
from sklearn.metrics import r2_score
from sklearn.utils.validation import check_array, check_is_fitted
from tqdm import tqdm
from ..exceptions import ConfigurationConflictError, InvalidParameterError
from ..utils.tree_learner import SklearnTreeLearner
from .metric import get_metric
from .re_model import REModel
from .re_result import PredictionResult


class EarlyStopping:
    """
    Patience counter on a validation metric.

    Parameters
    ----------
    patience : int
        Rounds without improvement before stopping.
    higher_better : bool, default=False
        Whether larger metric values are better.
    """
    def __init__(self, patience: int, higher_better: bool = False):
        if patience < 1:
            raise InvalidParameterError(f"patience must be at least 1, got {patience}")
        self.patience = patience
        self.higher_better = higher_better
        self.best_score = -np.inf if higher_better else np.inf
        self.best_iteration = 0
        self._no_improvement_count = 0
        self.should_stop = False

    def update(self, score: float, iteration: int) -> bool:
        """
        Record the metric of ``iteration`` (1-based). Returns True once training should stop.
        """
        improved = score > self.best_score if self.higher_better else score < self.best_score
        if improved:
            self.best_score = score
            self.best_iteration = iteration
            self._no_improvement_count = 0
        else:
            self._no_improvement_count += 1
        if self._no_improvement_count >= self.patience:
            self.should_stop = True
        return self.should_stop


class REBoostRegressor(RegressorMixin, BaseEstimator):
    """
    Tree boosting with a random effects model for the residual dependence.

    The response is modeled as y = F(X) + b + ε where F is a tree ensemble
    (fixed effect) and b + ε ~ N(0, Σ(θ)) is described by ``re_model``. In every
    round the trees are fit to the gradient (and Hessian) of the negative
    marginal log-likelihood w.r.t. F, and θ is re-estimated for the updated F.

    Parameters
    ----------
    re_model : REModel
        Random effects model bound to the training data.
    n_estimators : int, default=100
        Number of boosting rounds.
    learning_rate : float, default=0.1
        Shrinkage of every tree.
    tree_learner : object or None
        Object with ``fit_tree(gradient, hessian, X)`` returning a fitted
        regressor. None implies ``SklearnTreeLearner()``.
    train_re_every : int, default=1
        Re-estimate θ every this many rounds; 0 estimates θ only once before boosting.
    newton_boosting : bool, default=True
        Use the Hessian diag(Σ⁻¹) in the tree fit; otherwise plain gradient steps.
    early_stopping_rounds : int or None, default=None
        Stop when the first validation metric has not improved for this many rounds.
    metric : str or list of str, default='l2'
        Validation metrics: 'l2', 'rmse', 'l1' or 'neg_log_likelihood'.
    use_re_model_for_validation : bool, default=True
        Add the random effects prediction to validation scores.
    verbose : bool, default=False
        Show a progress bar.
    """
    def __init__(self, re_model: REModel, n_estimators: int = 100, learning_rate: float = 0.1, tree_learner=None,
                 train_re_every: int = 1, newton_boosting: bool = True, early_stopping_rounds: int | None = None,
                 metric='l2', use_re_model_for_validation: bool = True, verbose: bool = False):
        self.re_model = re_model
        self.n_estimators = n_estimators
        self.learning_rate = learning_rate
        self.tree_learner = tree_learner
        self.train_re_every = train_re_every
        self.newton_boosting = newton_boosting
        self.early_stopping_rounds = early_stopping_rounds
        self.metric = metric
        self.use_re_model_for_validation = use_re_model_for_validation
        self.verbose = verbose

    def _validate_params(self):
        if not isinstance(self.re_model, REModel):
            raise InvalidParameterError(f"re_model must be an REModel, got {type(self.re_model).__name__}")
        if self.n_estimators < 1:
            raise InvalidParameterError(f"n_estimators must be at least 1, got {self.n_estimators}")
        if not self.learning_rate > 0:
            raise InvalidParameterError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.train_re_every < 0:
            raise InvalidParameterError(f"train_re_every must be non-negative, got {self.train_re_every}")
        if self.early_stopping_rounds is not None and self.early_stopping_rounds < 1:
            raise InvalidParameterError(f"early_stopping_rounds must be at least 1, got {self.early_stopping_rounds}")

    @property
    def metric_names(self) -> list[str]:
        return [self.metric] if isinstance(self.metric, str) else list(self.metric)

    def _prepare_eval_sets(self, X, y, eval_set, eval_train):
        """
        Normalize ``eval_set`` to a list of (name, X, metrics, re_pred_data).
        """
        if eval_train and self.use_re_model_for_validation:
            raise ConfigurationConflictError("Random effects predictions cannot be used to evaluate the training data. "
                                             "Set use_re_model_for_validation=False to use eval_train.")
        prepared = []
        if eval_train:
            prepared.append(('training', check_array(X), [get_metric(name, y, is_training=True) for name in self.metric_names], None))
        for i, entry in enumerate(eval_set or []):
            if len(entry) not in (2, 3):
                raise InvalidParameterError("eval_set entries must be (X_val, y_val) or (X_val, y_val, re_pred_data).")
            X_val, y_val = entry[0], entry[1]
            re_pred_data = entry[2] if len(entry) == 3 else None
            is_training = X_val is X or y_val is y
            if is_training and self.use_re_model_for_validation:
                raise ConfigurationConflictError(f"eval_set[{i}] is the training data; random effects predictions cannot be "
                                                 "used to evaluate it.")
            if self.use_re_model_for_validation and re_pred_data is None:
                raise InvalidParameterError(f"eval_set[{i}] needs random effects prediction data when "
                                            "use_re_model_for_validation=True.")
            X_val = check_array(X_val)
            metrics = [get_metric(name, y_val, is_training=is_training) for name in self.metric_names]
            prepared.append((f"valid_{i}", X_val, metrics, re_pred_data))
        return prepared

    def fit(self, X, y, eval_set=None, eval_train: bool = False):
        """
        Fit the tree ensemble and the random effects model.

        Parameters
        ----------
        X : array-like, shape (n_samples, n_features)
            Fixed effects covariates, rows aligned with ``re_model``'s data.
        y : array-like, shape (n_samples,)
            Response.
        eval_set : list of tuple or None
            Validation sets ``(X_val, y_val)`` or ``(X_val, y_val, re_pred_data)`` where
            ``re_pred_data`` holds the ``REModel.predict`` inputs of the validation rows.
        eval_train : bool, default=False
            Also evaluate the metrics on the training data.

        Returns
        -------
        self : REBoostRegressor
            Fitted estimator.
        """
        self._validate_params()
        X_in, y_in = X, y
        X = check_array(X)
        y = np.asarray(y, dtype=np.float64).ravel()
        if X.shape[0] != y.shape[0] or y.shape[0] != self.re_model.n:
            raise InvalidParameterError(f"X ({X.shape[0]} rows), y ({y.shape[0]}) and re_model ({self.re_model.n}) "
                                        "must have the same number of samples.")
        self.n_features_in_ = X.shape[1]
        tree_learner = SklearnTreeLearner() if self.tree_learner is None else self.tree_learner
        eval_sets = self._prepare_eval_sets(X_in, y_in, eval_set, eval_train)
        monitor = None
        if self.early_stopping_rounds is not None:
            if not any(name != 'training' for name, *_ in eval_sets):
                raise InvalidParameterError("early_stopping_rounds requires at least one validation set in eval_set.")
            first_metric = next(metrics[0] for name, _, metrics, _ in eval_sets if name != 'training')
            monitor = EarlyStopping(self.early_stopping_rounds, first_metric.higher_better)

        self.init_score_ = float(np.mean(y))
        F = np.full(y.shape[0], self.init_score_)
        eval_scores = [np.full(X_val.shape[0], self.init_score_) for _, X_val, _, _ in eval_sets]
        self.evals_result_ = {name: {metric.name: [] for metric in metrics} for name, _, metrics, _ in eval_sets}
        self.estimators_ = []

        self.re_model.fit(y, F)

        pbar = tqdm(range(1, self.n_estimators + 1), desc="Boosting", disable=not self.verbose,
                    bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} {elapsed}")
        for it in pbar:
            grad, hess = self.re_model.compute_grad_hess(y, F)
            if not self.newton_boosting:
                hess = np.ones_like(grad)
            tree = tree_learner.fit_tree(grad, hess, X)
            F += self.learning_rate * tree.predict(X)
            self.estimators_.append(tree)

            if self.train_re_every > 0 and it % self.train_re_every == 0:
                self.re_model.fit(y, F)

            for j, (name, X_val, metrics, re_pred_data) in enumerate(eval_sets):
                eval_scores[j] += self.learning_rate * tree.predict(X_val)
                use_re = self.use_re_model_for_validation and name != 'training'
                re_prediction = None
                if use_re:
                    # One posterior solve per validation set, shared by all metrics.
                    re_prediction = self.re_model.predict(**re_pred_data, offset=F,
                                                          predict_var=any(metric.needs_variance for metric in metrics))
                for metric in metrics:
                    value = metric.eval(eval_scores[j], self.re_model, use_re, re_prediction=re_prediction)
                    self.evals_result_[name][metric.name].append(value)

            if monitor is not None:
                first_valid = next(name for name, *_ in eval_sets if name != 'training')
                first_metric = self.metric_names[0]
                if monitor.update(self.evals_result_[first_valid][first_metric][-1], it):
                    pbar.set_description(f"Early stopping | Best iteration {monitor.best_iteration}")
                    break

        if monitor is not None:
            self.best_iteration_ = monitor.best_iteration
            if self.best_iteration_ < len(self.estimators_):
                # θ keeps its latest estimate; only the trees are discarded.
                self.estimators_ = self.estimators_[:self.best_iteration_]
                F = self._predict_fixed(X)
        else:
            self.best_iteration_ = len(self.estimators_)
        self.train_score_ = F
        return self

    def _predict_fixed(self, X) -> np.ndarray:
        score = np.full(X.shape[0], self.init_score_)
        for tree in self.estimators_:
            score += self.learning_rate * tree.predict(X)
        return score

    def predict_fixed_effect(self, X) -> np.ndarray:
        """Tree ensemble prediction only."""
        check_is_fitted(self, 'estimators_')
        return self._predict_fixed(check_array(X))

    def predict(self, X, group_data_pred=None, group_rand_coef_data_pred=None, gp_coords_pred=None,
                gp_rand_coef_data_pred=None, predict_var: bool = False, predict_cov: bool = False) -> PredictionResult:
        """
        Predict the fixed effect and the random effects posterior.

        Parameters
        ----------
        X : array-like, shape (n_samples, n_features)
            Fixed effects covariates.
        group_data_pred, group_rand_coef_data_pred, gp_coords_pred, gp_rand_coef_data_pred : array-like or None
            Random effects inputs of the same rows. If all are None, the rows
            must be the training rows.
        predict_var : bool, default=False
            Compute posterior variances of the random effects.
        predict_cov : bool, default=False
            Compute the full posterior covariance of the random effects.

        Returns
        -------
        PredictionResult
            Fixed effect and random effects parts, kept separate.
        """
        check_is_fitted(self, 'estimators_')
        X = check_array(X)
        fixed = self._predict_fixed(X)
        result = self.re_model.predict(group_data_pred, group_rand_coef_data_pred, gp_coords_pred, gp_rand_coef_data_pred,
                                       offset=self.train_score_, predict_var=predict_var, predict_cov=predict_cov)
        if result.random_effect_mean.shape[0] != X.shape[0]:
            raise InvalidParameterError(f"X has {X.shape[0]} rows but the random effects inputs have "
                                        f"{result.random_effect_mean.shape[0]}.")
        return result.with_fixed_effect(fixed)

    def score(self, X, y, sample_weight=None, **re_pred_data):
        """
        Coefficient of determination of the response mean prediction.
        """
        pred = self.predict(X, **re_pred_data)
        return r2_score(y, pred.response_mean, sample_weight=sample_weight)
