from .core.re_model import REModel
from .core.booster import REBoostRegressor, EarlyStopping
from .core.re_result import PredictionResult
from .core.metric import Metric, get_metric
from .utils.tree_learner import SklearnTreeLearner
from .utils.cv import cv
from .exceptions import InvalidParameterError, FactorizationError, ConfigurationConflictError, ConvergenceWarning

__version__ = '0.1.0'
__all__ = ['REModel', 'REBoostRegressor', 'EarlyStopping', 'PredictionResult', 'Metric', 'get_metric',
           'SklearnTreeLearner', 'cv', 'InvalidParameterError', 'FactorizationError', 'ConfigurationConflictError',
           'ConvergenceWarning']
