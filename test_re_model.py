import pickle
import numpy as np
import pytest
from scipy.spatial.distance import pdist, squareform
from sklearn.exceptions import NotFittedError
from reboost import REModel, InvalidParameterError
from reboost.core.terms import CovarianceComponent


def simulate_gp(n_locs, error_var, gp_var, gp_range, reps=1, seed=0):
    rng = np.random.default_rng(seed)
    locs = rng.uniform(size=(n_locs, 2))
    K = gp_var * np.exp(-squareform(pdist(locs)) / gp_range)
    b = np.linalg.cholesky(K + 1e-10 * np.eye(n_locs)) @ rng.standard_normal(n_locs)
    coords = np.repeat(locs, reps, axis=0)
    y = np.repeat(b, reps) + np.sqrt(error_var) * rng.standard_normal(n_locs * reps)
    return coords, y


def simulate_groups(n=300, n_groups=20, group_var=1.0, error_var=0.5, seed=0):
    rng = np.random.default_rng(seed)
    groups = rng.integers(0, n_groups, size=n)
    b = np.sqrt(group_var) * rng.standard_normal(n_groups)
    y = b[groups] + np.sqrt(error_var) * rng.standard_normal(n)
    return groups, y


def test_gp_estimates_within_order_of_magnitude():
    true_theta = np.array([0.01, 0.0625, 0.2])
    coords, y = simulate_gp(100, *true_theta, reps=2, seed=42)
    model = REModel(gp_coords=coords, cov_function='exponential')
    model.fit(y)
    theta = np.array(list(model.get_cov_pars().values()))
    assert np.all(theta > true_theta / 10)
    assert np.all(theta < true_theta * 10)
    assert model.cov_model.param_names == ['error_var', 'gp_var', 'gp_range']


def test_grouped_estimates_and_summary(capsys):
    groups, y = simulate_groups(seed=1)
    model = REModel(group_data=groups)
    model.fit(y)
    info = model.summary()
    captured = capsys.readouterr()
    assert 'Random Effects Model Summary' in captured.out
    assert info['converged']
    assert info['status'] == 'converged'
    assert info['num_data'] == 300
    assert 0.25 < info['cov_pars']['error_var'] < 1.0
    assert 0.2 < info['cov_pars']['group_1_var'] < 5.0
    assert info['log_likelihood'] == pytest.approx(-model.neg_log_likelihood(y))


def test_fit_is_idempotent():
    groups, y = simulate_groups(n=100, seed=2)
    model = REModel(group_data=groups)
    model.fit(y)
    result, theta = model.optim_result_, model.cov_model.get_theta()
    model.fit(y.copy())
    assert model.optim_result_ is result
    np.testing.assert_array_equal(model.cov_model.get_theta(), theta)

    model.fit(y, offset=np.full(100, 0.1))
    assert model.optim_result_ is not result


def test_grad_hess_match_dense_inverse():
    groups, y = simulate_groups(n=60, seed=3)
    F = np.linspace(-1.0, 1.0, 60)
    model = REModel(group_data=groups)
    model.set_cov_pars([0.5, 1.5])
    grad, hess = model.compute_grad_hess(y, F)

    Sigma_inv = np.linalg.inv(model.cov_model.assemble(model.realized, dense=True))
    np.testing.assert_allclose(grad, -Sigma_inv @ (y - F), rtol=1e-8, atol=1e-12)
    np.testing.assert_allclose(hess, np.diag(Sigma_inv), rtol=1e-8)
    assert np.all(hess > 0)


def test_posterior_mean_interpolates_without_noise():
    rng = np.random.default_rng(4)
    coords = rng.uniform(size=(30, 2))
    y = np.sin(4 * coords[:, 0]) + coords[:, 1]
    model = REModel(gp_coords=coords)
    model.set_cov_pars([1e-8, 1.0, 0.3])
    model.compute_grad_hess(y, np.zeros(30))

    pred = model.predict(predict_var=True)
    np.testing.assert_allclose(pred.random_effect_mean, y, atol=1e-3)
    assert np.all(pred.random_effect_var < 1e-4)
    np.testing.assert_allclose(pred.response_var, pred.random_effect_var + 1e-8)


def test_predict_new_inputs():
    groups, y = simulate_groups(n=120, n_groups=10, seed=5)
    model = REModel(group_data=groups)
    model.fit(y)
    group_var = model.get_cov_pars()['group_1_var']

    new_groups = np.array([0, 0, 99])
    pred = model.predict(group_data_pred=new_groups, predict_cov=True)
    assert pred.random_effect_cov.shape == (3, 3)
    np.testing.assert_allclose(pred.random_effect_var, np.diag(pred.random_effect_cov))
    # Unseen level: prior mean and prior variance.
    assert pred.random_effect_mean[2] == 0.0
    assert pred.random_effect_var[2] == pytest.approx(group_var)
    assert pred.random_effect_cov[0, 2] == pytest.approx(0.0)
    assert pred.random_effect_cov[0, 1] == pytest.approx(pred.random_effect_var[0])
    # Seen level: shrunk towards the group mean.
    assert pred.random_effect_var[0] < group_var
    assert pred.random_effect_mean[0] == pytest.approx(pred.random_effect_mean[1])

    var_only = model.predict(group_data_pred=new_groups, predict_var=True)
    np.testing.assert_allclose(var_only.random_effect_var, pred.random_effect_var, rtol=1e-8)
    assert var_only.random_effect_cov is None
    assert model.predict(group_data_pred=new_groups).random_effect_var is None


def test_predict_gp_with_random_coefficients():
    rng = np.random.default_rng(6)
    coords = rng.uniform(size=(50, 2))
    slope = rng.standard_normal(50)
    y = np.cos(3 * coords[:, 0]) * slope + 0.1 * rng.standard_normal(50)
    model = REModel(gp_coords=coords, gp_rand_coef_data=slope, cov_function='matern32')
    model.set_optimizer_config(maxit=20)
    model.fit(y)
    assert model.param_names == ['error_var', 'gp_var', 'gp_range', 'gp_slope_1_var', 'gp_slope_1_range']

    new_coords = rng.uniform(size=(5, 2))
    pred = model.predict(gp_coords_pred=new_coords, gp_rand_coef_data_pred=np.zeros(5), predict_var=True)
    assert pred.random_effect_mean.shape == (5,)
    assert np.all(pred.random_effect_var >= 0)
    assert np.all(np.isfinite(pred.random_effect_mean))


def test_predict_requires_training_response():
    groups, _ = simulate_groups(n=50, seed=7)
    model = REModel(group_data=groups)
    with pytest.raises(NotFittedError):
        model.predict()


def test_invalid_configuration():
    groups, y = simulate_groups(n=50, seed=8)
    model = REModel(group_data=groups)
    with pytest.raises(InvalidParameterError):
        model.set_optimizer_config(optimizer_cov='bfgs')
    with pytest.raises(InvalidParameterError):
        model.set_optimizer_config(unknown_option=1)
    with pytest.raises(InvalidParameterError):
        model.fit(y[:10])
    with pytest.raises(InvalidParameterError):
        model.set_cov_pars([1.0, 0.0])
    with pytest.raises(InvalidParameterError):
        REModel(gp_coords=np.zeros((5, 2)) + np.arange(5)[:, None], cov_function='linear')


def test_subset_and_pickle():
    groups, y = simulate_groups(n=100, seed=9)
    model = REModel(group_data=groups, nested_groups=False)
    model.set_optimizer_config(optimizer_cov='gradient_descent', maxit=200)
    model.fit(y)

    sub = model.subset(np.arange(50))
    assert sub.n == 50
    assert sub.optim_result_ is None
    assert sub.optimizer_config.optimizer_cov == 'gradient_descent'
    assert sub.engine is not model.engine

    loaded = pickle.loads(pickle.dumps(model))
    np.testing.assert_allclose(loaded.predict().random_effect_mean, model.predict().random_effect_mean)


def test_remove_and_add_components_after_fit():
    groups, y = simulate_groups(n=200, seed=4)
    coords = np.random.default_rng(4).uniform(size=(200, 2))
    model = REModel(group_data=groups, gp_coords=coords)
    model.fit(y)
    assert not model.engine.use_woodbury

    model.remove_component('gp')
    assert model.optim_result_ is None
    assert model.cov_model.param_names == ['error_var', 'group_1_var']
    assert model.engine.use_woodbury
    model.fit(y)
    assert model.optim_result_.theta.shape == (2,)

    model.add_component(CovarianceComponent('kernel', 'gp2', cov_function='gaussian'))
    assert model.cov_model.param_names == ['error_var', 'group_1_var', 'gp2_var', 'gp2_range']
    assert not model.engine.use_woodbury
    model.fit(y)
    assert model.optim_result_.theta.shape == (4,)
    grad, hess = model.compute_grad_hess(y, np.zeros(200))
    assert grad.shape == hess.shape == (200,)
    assert np.all(hess > 0)
    assert model.predict().random_effect_mean.shape == (200,)

    with pytest.raises(InvalidParameterError):
        model.add_component(CovarianceComponent('kernel', 'gp2', cov_function='exponential'))
    with pytest.raises(InvalidParameterError):
        model.remove_component('gp')


def test_components_changed_on_covariance_model():
    coords, y = simulate_gp(60, 0.1, 1.0, 0.3, seed=2)
    groups = np.random.default_rng(2).integers(0, 6, size=60)
    model = REModel(group_data=groups, gp_coords=coords)
    model.fit(y)
    model.cov_model.remove_component('gp')
    model.fit(y)
    assert list(model.get_cov_pars()) == ['error_var', 'group_1_var']
    assert model.neg_log_likelihood(y) == pytest.approx(-model.optim_result_.log_likelihood)
