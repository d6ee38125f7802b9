import numpy as np
import pytest
from scipy.spatial.distance import pdist, squareform
from reboost import REModel, InvalidParameterError, FactorizationError, ConvergenceWarning
from reboost.core.optimizer import CovarianceOptimizer, OptimizerConfig, OptimizerState, ConvergenceMonitor


def simulate_gp(n, error_var, gp_var, gp_range, seed=0):
    rng = np.random.default_rng(seed)
    coords = rng.uniform(size=(n, 2))
    K = gp_var * np.exp(-squareform(pdist(coords)) / gp_range)
    L = np.linalg.cholesky(K + 1e-10 * np.eye(n))
    y = L @ rng.standard_normal(n) + np.sqrt(error_var) * rng.standard_normal(n)
    return coords, y


class QuadraticEngine:
    """ℓ(x) = -|x - c|², Fisher information 2I."""
    n = 1

    def __init__(self, center):
        self.center = np.asarray(center, dtype=float)

    def log_likelihood(self, log_theta):
        return -np.sum((log_theta - self.center) ** 2)

    def gradient(self, log_theta):
        return -2.0 * (log_theta - self.center)

    def fisher_information(self, log_theta):
        return 2.0 * np.eye(self.center.shape[0])


class BrokenEngine(QuadraticEngine):
    """Only the starting point can be factorized."""
    def __init__(self, center, start):
        super().__init__(center)
        self.start = np.asarray(start, dtype=float)

    def log_likelihood(self, log_theta):
        if not np.array_equal(log_theta, self.start):
            raise FactorizationError("not positive-definite")
        return super().log_likelihood(log_theta)


def test_config_validation():
    config = OptimizerConfig()
    assert config.learning_rate == 1.0
    assert OptimizerConfig(optimizer_cov='gradient_descent').learning_rate == 0.1
    assert config.update(lr_cov=0.5).learning_rate == 0.5
    assert not config.uses_momentum
    assert config.update(optimizer_cov='gradient_descent').uses_momentum
    with pytest.raises(InvalidParameterError):
        config.update(learning_rate=0.5)
    with pytest.raises(InvalidParameterError):
        OptimizerConfig(optimizer_cov='newton')
    with pytest.raises(InvalidParameterError):
        OptimizerConfig(lr_cov=-1.0)
    with pytest.raises(InvalidParameterError):
        OptimizerConfig(acc_rate_cov=1.0)


def test_fisher_scoring_solves_quadratic():
    center = np.array([0.5, -1.0, 2.0])
    result = CovarianceOptimizer(OptimizerConfig()).run(QuadraticEngine(center), np.zeros(3))
    assert result.converged
    np.testing.assert_allclose(result.log_theta, center, atol=1e-10)
    np.testing.assert_allclose(result.theta, np.exp(center))


def test_max_iterations_warns():
    config = OptimizerConfig(optimizer_cov='gradient_descent', use_nesterov_acc=False, maxit=3)
    with pytest.warns(ConvergenceWarning):
        result = CovarianceOptimizer(config).run(QuadraticEngine([1.0, 1.0]), np.zeros(2))
    assert result.status == 'max_iter_reached'
    assert result.n_iter == 3
    assert np.all(np.diff(result.history) > 0)


def test_divergence_keeps_last_valid_parameters():
    start = np.zeros(2)
    config = OptimizerConfig(max_factorization_failures=2, max_step_halvings=3)
    with pytest.warns(ConvergenceWarning):
        result = CovarianceOptimizer(config).run(BrokenEngine([1.0, 1.0], start), start)
    assert result.status == 'diverged'
    assert not result.converged
    np.testing.assert_array_equal(result.log_theta, start)
    assert np.isfinite(result.log_likelihood)


def test_initial_factorization_failure():
    start = np.zeros(2)
    with pytest.warns(ConvergenceWarning):
        result = CovarianceOptimizer().run(BrokenEngine([1.0, 1.0], np.ones(2)), start)
    assert result.status == 'diverged'
    assert result.n_iter == 0
    np.testing.assert_array_equal(result.log_theta, start)


def test_monitor_relative_change():
    monitor = ConvergenceMonitor(tol=1e-3)
    assert not monitor.update(-100.0, np.zeros(2))
    assert not monitor.update(-90.0, np.ones(2))
    assert monitor.update(-89.99, np.ones(2))
    assert monitor._best_log_likelihood == -89.99


@pytest.mark.parametrize('options', [
    {'optimizer_cov': 'gradient_descent', 'use_nesterov_acc': False},
    {'optimizer_cov': 'gradient_descent', 'use_nesterov_acc': True},
    {'optimizer_cov': 'fisher_scoring'},
])
def test_never_decreases_from_generating_parameters(options):
    true_theta = [0.01, 0.0625, 0.2]
    coords, y = simulate_gp(80, *true_theta, seed=7)
    model = REModel(gp_coords=coords)
    model.set_cov_pars(true_theta)
    model.set_optimizer_config(maxit=50, **options)
    ll0 = -model.neg_log_likelihood(y)

    model.fit(y)
    result = model.optim_result_
    tol = 1e-8 * abs(ll0)
    assert result.log_likelihood >= ll0 - tol
    assert np.all(np.diff(result.history) >= -tol)
    assert np.all(np.isfinite(result.theta))


def test_trace_logging(caplog):
    coords, y = simulate_gp(30, 0.1, 1.0, 0.3, seed=1)
    model = REModel(gp_coords=coords)
    model.set_optimizer_config(trace=True, maxit=5)
    with caplog.at_level('INFO', logger='reboost.core.optimizer'):
        model.fit(y)
    assert any('log-likelihood' in record.getMessage() for record in caplog.records)


def test_gradient_descent_rate_recovers_after_halving():
    config = OptimizerConfig(optimizer_cov='gradient_descent', use_nesterov_acc=False, lr_cov=1.5)
    engine = QuadraticEngine([1.0, 1.0])
    state = OptimizerState(log_theta=np.zeros(2), log_theta_prev=np.zeros(2), log_likelihood=-2.0, lr=1.5,
                           monitor=ConvergenceMonitor(), n_iter=1)
    # The full step overshoots to 3c, the halved one to 1.5c is accepted.
    assert CovarianceOptimizer(config)._step(engine, state) == 'accepted'
    np.testing.assert_allclose(state.log_theta, [1.5, 1.5])
    assert state.lr == 1.5


def test_parameter_change_criterion():
    rng = np.random.default_rng(3)
    groups = rng.integers(0, 25, size=400)
    y = rng.standard_normal(25)[groups] + 0.7 * rng.standard_normal(400)

    by_ll = REModel(group_data=groups)
    by_ll.fit(y)
    by_params = REModel(group_data=groups)
    by_params.set_optimizer_config(convergence_criterion='relative_change_in_parameters')
    by_params.fit(y)

    result = by_params.optim_result_
    assert result.status == 'converged'
    assert result.n_iter < 50
    np.testing.assert_allclose(result.theta, by_ll.optim_result_.theta, rtol=1e-2)
