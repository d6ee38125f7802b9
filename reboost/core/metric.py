import numpy as np
from ..exceptions import ConfigurationConflictError, InvalidParameterError

LOG_2PI = np.log(2.0 * np.pi)


class Metric:
    """
    Evaluation metric for regression scores.

    A metric is bound to one dataset: its labels and optional sample weights.
    The value is the (weighted) average of point losses. Subclasses define
    ``loss_on_point`` and, if needed, ``finalize``.

    Parameters
    ----------
    label : array-like
        Observed response, shape (n,).
    weights : array-like or None
        Sample weights, shape (n,). None implies equal weights.
    is_training : bool, default=False
        Whether the metric evaluates the training data. Random effects
        predictions are not allowed on training data.
    """
    name = None
    higher_better = False
    needs_variance = False

    def __init__(self, label, weights=None, is_training: bool = False):
        self.label = np.asarray(label, dtype=np.float64).ravel()
        self.num_data = self.label.shape[0]
        if weights is None:
            self.weights = None
            self.sum_weights = float(self.num_data)
        else:
            self.weights = np.asarray(weights, dtype=np.float64).ravel()
            if self.weights.shape != self.label.shape:
                raise InvalidParameterError(f"weights must have shape {self.label.shape}, got {self.weights.shape}")
            if np.any(self.weights < 0):
                raise InvalidParameterError("weights must be non-negative.")
            self.sum_weights = self.weights.sum()
            if self.sum_weights <= 0:
                raise InvalidParameterError("Sum of weights must be positive.")
        self.is_training = is_training

    @property
    def factor_to_bigger_better(self) -> float:
        """+1 if larger values are better, -1 otherwise."""
        return 1.0 if self.higher_better else -1.0

    def loss_on_point(self, label: np.ndarray, score: np.ndarray, variance: np.ndarray | None = None) -> np.ndarray:
        raise NotImplementedError

    def finalize(self, average_loss: float) -> float:
        return average_loss

    def _average(self, losses: np.ndarray) -> float:
        if self.weights is None:
            return float(np.sum(losses) / self.sum_weights)
        return float(np.sum(losses * self.weights) / self.sum_weights)

    def eval(self, score, re_model=None, use_re_model: bool = False, re_pred_data: dict | None = None,
             re_prediction=None) -> float:
        """
        Evaluate the metric.

        Parameters
        ----------
        score : array-like
            Fixed effect prediction, shape (n,).
        re_model : REModel or None
            Random effects model whose posterior mean is added to ``score``.
        use_re_model : bool, default=False
            Whether to add the random effects prediction.
        re_pred_data : dict or None
            Keyword arguments of ``REModel.predict`` for this dataset.
        re_prediction : PredictionResult or None
            Random effects prediction already computed for this dataset. It is used
            instead of calling ``re_model.predict``; it must carry variances if the
            metric needs them.

        Returns
        -------
        float
            Metric value.

        Raises
        ------
        ConfigurationConflictError
            If random effects predictions are requested on training data.
        """
        score = np.asarray(score, dtype=np.float64).ravel()
        if score.shape != self.label.shape:
            raise InvalidParameterError(f"score must have shape {self.label.shape}, got {score.shape}")
        variance = None
        if use_re_model:
            if self.is_training:
                raise ConfigurationConflictError("Random effects predictions cannot be used to evaluate the training data. "
                                                 "Set use_re_model_for_validation=False or drop the training data from the evaluation.")
            pred = re_prediction
            if pred is None:
                if re_model is None:
                    raise InvalidParameterError("use_re_model requires a random effects model or prediction.")
                pred = re_model.predict(**(re_pred_data or {}), predict_var=self.needs_variance)
            if pred.random_effect_mean.shape != score.shape:
                raise InvalidParameterError("Random effects prediction data does not match the evaluation data.")
            score = score + pred.random_effect_mean
            variance = pred.response_var
        elif self.needs_variance and re_model is not None:
            variance = np.full(self.num_data, re_model.cov_model.error_var)
        return self.finalize(self._average(self.loss_on_point(self.label, score, variance)))

    def __repr__(self):
        return f"{type(self).__name__}(num_data={self.num_data})"


class L2Metric(Metric):
    name = 'l2'

    def loss_on_point(self, label, score, variance=None):
        return (score - label) ** 2


class RMSEMetric(L2Metric):
    name = 'rmse'

    def finalize(self, average_loss):
        return np.sqrt(average_loss)


class L1Metric(Metric):
    name = 'l1'

    def loss_on_point(self, label, score, variance=None):
        return np.abs(score - label)


class GaussianNLLMetric(Metric):
    """
    Negative Gaussian log-density of the labels under the predictive
    distribution. Without a predictive variance the mean squared error of
    the scores is plugged in.
    """
    name = 'neg_log_likelihood'
    needs_variance = True

    def loss_on_point(self, label, score, variance=None):
        resid2 = (score - label) ** 2
        if variance is None:
            variance = np.full(label.shape, max(resid2.mean(), 1e-12))
        variance = np.maximum(variance, 1e-12)
        return 0.5 * (LOG_2PI + np.log(variance) + resid2 / variance)


METRICS = {cls.name: cls for cls in (L2Metric, RMSEMetric, L1Metric, GaussianNLLMetric)}


def get_metric(name: str, label, weights=None, is_training: bool = False) -> Metric:
    """
    Build the metric called ``name`` for the given labels.
    """
    if name not in METRICS:
        raise InvalidParameterError(f"Unknown metric '{name}'. Available metrics are {list(METRICS)}.")
    return METRICS[name](label, weights, is_training)
