import numpy as np
from sklearn.exceptions import ConvergenceWarning as _SklearnConvergenceWarning


class InvalidParameterError(ValueError):
    """
    Raised when a covariance component, grouping structure or option is invalid.

    Examples are non-positive variances or ranges, unknown covariance functions
    and grouping variables with fewer than two distinct levels.
    """


class FactorizationError(np.linalg.LinAlgError):
    """
    Raised when the marginal covariance is not positive-definite after jitter.
    """


class ConfigurationConflictError(ValueError):
    """
    Raised for mutually exclusive settings, e.g. scoring the training data with
    the random effects model folded into the prediction.
    """


class ConvergenceWarning(_SklearnConvergenceWarning):
    """
    Non-fatal warning for covariance parameter estimation that did not converge.
    """
