import numpy as np
from joblib import Parallel, delayed, parallel_config
from sklearn.base import clone
from sklearn.model_selection import GroupKFold, KFold
from ..exceptions import InvalidParameterError
from ..core.metric import METRICS


def re_pred_data(data) -> dict:
    """
    ``REModel.predict`` keyword arguments holding the random effects inputs of ``data``.
    """
    return {'group_data_pred': data.group_data, 'group_rand_coef_data_pred': data.group_rand_coef_data,
            'gp_coords_pred': data.gp_coords, 'gp_rand_coef_data_pred': data.gp_rand_coef_data}


def _fit_fold(estimator, X: np.ndarray, y: np.ndarray, train_idx: np.ndarray, test_idx: np.ndarray, metric) -> dict:
    """
    Fit one fold on its own random effects model and return its validation history.
    """
    re_model = estimator.re_model
    fold_estimator = clone(estimator).set_params(re_model=re_model.subset(train_idx), metric=metric, verbose=False)
    pred_data = re_pred_data(re_model.data.subset(test_idx)) if estimator.use_re_model_for_validation else None
    eval_entry = (X[test_idx], y[test_idx]) if pred_data is None else (X[test_idx], y[test_idx], pred_data)
    fold_estimator.fit(X[train_idx], y[train_idx], eval_set=[eval_entry])
    return fold_estimator.evals_result_['valid_0']


def cv(estimator, X, y, nfold: int = 5, folds=None, groups=None, metric=None, n_jobs: int = 1, backend: str = 'loky',
       seed: int = 0) -> dict:
    """
    Cross-validate a REBoostRegressor.

    Every fold trains a clone of ``estimator`` with a fresh random effects model
    on the fold's training rows, so folds share no state and run as independent
    joblib tasks.

    Parameters
    ----------
    estimator : REBoostRegressor
        Unfitted template; its ``re_model`` holds the random effects inputs of all rows.
    X : array-like, shape (n_samples, n_features)
        Fixed effects covariates.
    y : array-like, shape (n_samples,)
        Response.
    nfold : int, default=5
        Number of folds if ``folds`` is None.
    folds : iterable of (train_idx, test_idx), splitter or None
        Explicit folds, or an object with a ``split`` method.
    groups : array-like or None
        Group labels for ``GroupKFold``; ignored if ``folds`` is given.
    metric : str, list of str or None
        Metrics to record. None uses the estimator's.
    n_jobs : int, default=1
        Parallel jobs, one fold per task.
    backend : str, default='loky'
        Joblib backend.
    seed : int, default=0
        Shuffling seed of ``KFold``.

    Returns
    -------
    dict
        ``{metric: {'mean': ..., 'std': ...}}`` per boosting round, plus
        ``best_iteration`` (1-based) and ``best_score`` of the first metric.
    """
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64).ravel()
    if X.shape[0] != y.shape[0] or y.shape[0] != estimator.re_model.n:
        raise InvalidParameterError("X, y and the random effects model must have the same number of samples.")
    metric = estimator.metric if metric is None else metric
    metric_names = [metric] if isinstance(metric, str) else list(metric)

    if folds is None:
        if nfold < 2:
            raise InvalidParameterError(f"nfold must be at least 2, got {nfold}")
        splitter = GroupKFold(n_splits=nfold) if groups is not None else KFold(n_splits=nfold, shuffle=True, random_state=seed)
        folds = splitter.split(X, y, groups)
    elif hasattr(folds, 'split'):
        folds = folds.split(X, y, groups)
    folds = [(np.asarray(train_idx), np.asarray(test_idx)) for train_idx, test_idx in folds]

    with parallel_config(backend=backend, n_jobs=n_jobs):
        histories = Parallel()(delayed(_fit_fold)(estimator, X, y, train_idx, test_idx, metric_names)
                               for train_idx, test_idx in folds)

    results = {}
    for name in metric_names:
        # Folds may stop early at different rounds.
        n_rounds = min(len(history[name]) for history in histories)
        values = np.array([history[name][:n_rounds] for history in histories])
        results[name] = {'mean': values.mean(axis=0), 'std': values.std(axis=0)}

    first = metric_names[0]
    mean = results[first]['mean']
    best = int(np.argmax(mean) if METRICS[first].higher_better else np.argmin(mean))
    results['best_iteration'] = best + 1
    results['best_score'] = float(mean[best])
    return results
