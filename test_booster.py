import pickle
import numpy as np
import pytest
from sklearn.base import clone
from reboost import (REModel, REBoostRegressor, EarlyStopping, SklearnTreeLearner, ConfigurationConflictError,
                     InvalidParameterError, get_metric, cv)


def simulate(n=300, n_groups=15, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.uniform(size=(n, 2))
    groups = rng.integers(0, n_groups, size=n)
    b = rng.standard_normal(n_groups)
    f = 2.0 * np.sin(np.pi * X[:, 0]) + X[:, 1] ** 2
    y = f + b[groups] + 0.3 * rng.standard_normal(n)
    return X, groups, y


def test_boosting_end_to_end():
    X, groups, y = simulate()
    X_train, X_test = X[:250], X[250:]
    re_model = REModel(group_data=groups[:250])
    booster = REBoostRegressor(re_model, n_estimators=30, learning_rate=0.2,
                               tree_learner=SklearnTreeLearner(max_depth=3, min_samples_leaf=10, random_state=0))
    booster.fit(X_train, y[:250])

    assert len(booster.estimators_) == 30
    assert booster.best_iteration_ == 30
    pred = booster.predict(X_test, group_data_pred=groups[250:], predict_var=True)
    assert pred.fixed_effect.shape == (50,)
    assert pred.random_effect_mean.shape == (50,)
    assert np.all(pred.random_effect_var > 0)
    assert np.mean((pred.response_mean - y[250:]) ** 2) < np.var(y[250:])
    # The random effects improve on the trees alone.
    assert np.mean((pred.response_mean - y[250:]) ** 2) < np.mean((pred.fixed_effect - y[250:]) ** 2)

    train_pred = booster.predict(X_train)
    np.testing.assert_allclose(train_pred.fixed_effect, booster.train_score_)
    assert re_model.get_cov_pars()['group_1_var'] > 0.1
    assert booster.score(X_test, y[250:], group_data_pred=groups[250:]) > 0.5


def test_gradient_boosting_and_single_re_fit():
    X, groups, y = simulate(n=150, seed=1)
    re_model = REModel(group_data=groups)
    booster = REBoostRegressor(re_model, n_estimators=10, train_re_every=0, newton_boosting=False)
    booster.fit(X, y)
    result = re_model.optim_result_
    assert result is not None
    assert booster.predict(X).response_mean.shape == (150,)


def test_validation_on_training_data_conflicts():
    X, groups, y = simulate(n=100, seed=2)
    booster = REBoostRegressor(REModel(group_data=groups), n_estimators=5)
    with pytest.raises(ConfigurationConflictError):
        booster.fit(X, y, eval_set=[(X, y, {'group_data_pred': groups})])
    with pytest.raises(ConfigurationConflictError):
        booster.fit(X, y, eval_train=True)

    metric = get_metric('l2', y, is_training=True)
    with pytest.raises(ConfigurationConflictError):
        metric.eval(np.zeros(100), booster.re_model, use_re_model=True)

    booster.set_params(use_re_model_for_validation=False)
    booster.fit(X, y, eval_train=True)
    assert len(booster.evals_result_['training']['l2']) == 5


def test_early_stopping_monitor():
    monitor = EarlyStopping(patience=2)
    scores = [5.0, 4.0, 3.0, 3.5, 3.6, 2.0]
    stopped_at = None
    for it, score in enumerate(scores, start=1):
        if monitor.update(score, it):
            stopped_at = it
            break
    assert stopped_at == 5
    assert monitor.best_iteration == 3
    assert monitor.best_score == 3.0

    monitor = EarlyStopping(patience=1, higher_better=True)
    assert not monitor.update(0.5, 1)
    assert monitor.update(0.4, 2)
    with pytest.raises(InvalidParameterError):
        EarlyStopping(patience=0)


def test_early_stopping_truncates_trees():
    X, groups, y = simulate(n=300, seed=3)
    train, valid = np.arange(200), np.arange(200, 300)
    booster = REBoostRegressor(REModel(group_data=groups[train]), n_estimators=100, learning_rate=0.5,
                               early_stopping_rounds=3, metric=['l2', 'rmse'])
    booster.fit(X[train], y[train], eval_set=[(X[valid], y[valid], {'group_data_pred': groups[valid]})])

    history = booster.evals_result_['valid_0']['l2']
    assert len(booster.estimators_) == booster.best_iteration_
    assert len(history) - booster.best_iteration_ <= 3
    assert booster.best_iteration_ == int(np.argmin(history)) + 1
    np.testing.assert_allclose(booster.evals_result_['valid_0']['rmse'], np.sqrt(history))
    np.testing.assert_allclose(booster.train_score_, booster.predict_fixed_effect(X[train]))


def test_metrics():
    label = np.array([1.0, 2.0, 3.0, 4.0])
    score = np.array([1.0, 2.0, 2.0, 6.0])
    assert get_metric('l2', label).eval(score) == pytest.approx(1.25)
    assert get_metric('rmse', label).eval(score) == pytest.approx(np.sqrt(1.25))
    assert get_metric('l1', label).eval(score) == pytest.approx(0.75)
    assert get_metric('l2', label, weights=[0.0, 0.0, 1.0, 1.0]).eval(score) == pytest.approx(2.5)
    nll = get_metric('neg_log_likelihood', label)
    assert not nll.higher_better and nll.factor_to_bigger_better == -1.0
    expected = 0.5 * (np.log(2 * np.pi) + np.log(1.25) + 1.0)
    assert nll.eval(score) == pytest.approx(expected)
    with pytest.raises(InvalidParameterError):
        get_metric('auc', label)
    with pytest.raises(InvalidParameterError):
        get_metric('l2', label).eval(score[:2])


def test_clone_and_pickle():
    X, groups, y = simulate(n=120, seed=4)
    booster = REBoostRegressor(REModel(group_data=groups), n_estimators=5)
    cloned = clone(booster)
    assert cloned.re_model is not booster.re_model
    assert cloned.get_params()['n_estimators'] == 5

    booster.fit(X, y)
    loaded = pickle.loads(pickle.dumps(booster))
    np.testing.assert_allclose(loaded.predict(X).response_mean, booster.predict(X).response_mean)


def test_invalid_inputs():
    X, groups, y = simulate(n=80, seed=5)
    with pytest.raises(InvalidParameterError):
        REBoostRegressor(REModel(group_data=groups), n_estimators=0).fit(X, y)
    with pytest.raises(InvalidParameterError):
        REBoostRegressor(REModel(group_data=groups[:40])).fit(X, y)
    with pytest.raises(InvalidParameterError):
        REBoostRegressor(REModel(group_data=groups), n_estimators=2).fit(X, y, eval_set=[(X[:10], y[:10])])


def test_cross_validation():
    X, groups, y = simulate(n=150, seed=6)
    booster = REBoostRegressor(REModel(group_data=groups), n_estimators=5, learning_rate=0.3)
    result = cv(booster, X, y, nfold=3, metric=['l2', 'l1'], seed=1)
    assert result['l2']['mean'].shape == (5,)
    assert result['l1']['std'].shape == (5,)
    assert 1 <= result['best_iteration'] <= 5
    assert result['best_score'] == pytest.approx(result['l2']['mean'][result['best_iteration'] - 1])

    grouped = cv(booster, X, y, nfold=3, groups=groups)
    assert grouped['l2']['mean'].shape == (5,)


def test_early_stopping_requires_validation_set():
    X, groups, y = simulate(n=100, seed=5)
    booster = REBoostRegressor(REModel(group_data=groups), n_estimators=5, early_stopping_rounds=2)
    with pytest.raises(InvalidParameterError):
        booster.fit(X, y)
    booster.set_params(use_re_model_for_validation=False)
    with pytest.raises(InvalidParameterError):
        booster.fit(X, y, eval_train=True)


def test_one_random_effects_prediction_per_round():
    X, groups, y = simulate(n=200, seed=6)
    train, valid = np.arange(150), np.arange(150, 200)
    re_model = REModel(group_data=groups[train])
    calls = []
    predict = re_model.predict

    def counting_predict(*args, **kwargs):
        calls.append(kwargs.get('predict_var'))
        return predict(*args, **kwargs)

    re_model.predict = counting_predict
    booster = REBoostRegressor(re_model, n_estimators=4, metric=['l2', 'rmse', 'neg_log_likelihood'])
    booster.fit(X[train], y[train], eval_set=[(X[valid], y[valid], {'group_data_pred': groups[valid]})])

    assert calls == [True] * 4
    history = booster.evals_result_['valid_0']
    np.testing.assert_allclose(history['rmse'], np.sqrt(history['l2']))
