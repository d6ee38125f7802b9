import logging
import warnings
from dataclasses import dataclass, field, fields, replace
import numpy as np
from ..exceptions import ConvergenceWarning, FactorizationError, InvalidParameterError

logger = logging.getLogger(__name__)

OPTIMIZERS = ('gradient_descent', 'fisher_scoring')
CONVERGENCE_CRITERIA = ('relative_change_in_log_likelihood', 'relative_change_in_parameters')

# Largest change of any log parameter in a single step.
MAX_LOG_STEP = 5.0


@dataclass(frozen=True)
class OptimizerConfig:
    """
    Options of the covariance parameter optimizer.

    Parameters
    ----------
    optimizer_cov : str, default='fisher_scoring'
        'gradient_descent' or 'fisher_scoring'.
    lr_cov : float or None
        Learning rate. None gives 0.1 for gradient descent and 1.0 for Fisher scoring.
        Fisher scoring restarts from this rate in every iteration. Gradient descent
        halves it while a step fails to increase the log-likelihood and doubles it
        again, at most back to this rate, after every accepted step.
    use_nesterov_acc : bool, default=True
        Nesterov acceleration (gradient descent only).
    acc_rate_cov : float, default=0.5
        Momentum rate of the Nesterov look-ahead point.
    delta_rel_conv : float, default=1e-6
        Convergence tolerance on the relative change.
    maxit : int, default=1000
        Maximum number of iterations.
    trace : bool, default=False
        Log every iteration at INFO level.
    convergence_criterion : str, default='relative_change_in_log_likelihood'
        Quantity monitored for convergence.
    max_step_halvings : int, default=10
        Step halvings tried before an iteration is abandoned.
    max_factorization_failures : int, default=5
        Consecutive iterations without a factorizable candidate before giving up.
    """
    optimizer_cov: str = 'fisher_scoring'
    lr_cov: float | None = None
    use_nesterov_acc: bool = True
    acc_rate_cov: float = 0.5
    delta_rel_conv: float = 1e-6
    maxit: int = 1000
    trace: bool = False
    convergence_criterion: str = 'relative_change_in_log_likelihood'
    max_step_halvings: int = 10
    max_factorization_failures: int = 5

    def __post_init__(self):
        if self.optimizer_cov not in OPTIMIZERS:
            raise InvalidParameterError(f"Unknown optimizer '{self.optimizer_cov}'. Available optimizers are {list(OPTIMIZERS)}.")
        if self.convergence_criterion not in CONVERGENCE_CRITERIA:
            raise InvalidParameterError(f"convergence_criterion must be one of {list(CONVERGENCE_CRITERIA)}")
        if self.lr_cov is not None and not self.lr_cov > 0:
            raise InvalidParameterError(f"lr_cov must be positive, got {self.lr_cov}")
        if not 0 <= self.acc_rate_cov < 1:
            raise InvalidParameterError(f"acc_rate_cov must be in [0, 1), got {self.acc_rate_cov}")
        if not self.delta_rel_conv > 0:
            raise InvalidParameterError(f"delta_rel_conv must be positive, got {self.delta_rel_conv}")
        if self.maxit < 0 or self.max_step_halvings < 0 or self.max_factorization_failures < 1:
            raise InvalidParameterError("maxit and max_step_halvings must be non-negative, max_factorization_failures positive.")

    @property
    def learning_rate(self) -> float:
        if self.lr_cov is not None:
            return self.lr_cov
        return 0.1 if self.optimizer_cov == 'gradient_descent' else 1.0

    @property
    def uses_momentum(self) -> bool:
        return self.optimizer_cov == 'gradient_descent' and self.use_nesterov_acc and self.acc_rate_cov > 0

    def update(self, **options):
        """
        Return a copy with ``options`` replaced. Unknown options are rejected.
        """
        known = {f.name for f in fields(self)}
        unknown = set(options) - known
        if unknown:
            raise InvalidParameterError(f"Unknown optimizer options {sorted(unknown)}. Recognized options are {sorted(known)}.")
        return replace(self, **options)


class ConvergenceMonitor:
    """
    Tracks convergence state during the optimizer iterations.

    Keeps the log-likelihood history and the best parameters seen so far.
    """
    def __init__(self, criterion: str = 'relative_change_in_log_likelihood', tol: float = 1e-6):
        self.criterion = criterion
        self.tol = tol
        self.log_likelihood = []
        self.track_change = []
        self.is_converged = False
        self._best_log_likelihood = -np.inf
        self._best_log_theta = None
        self._prev_log_theta = None

    def update(self, current_log_likelihood: float, current_log_theta: np.ndarray) -> bool:
        """
        Record an accepted iterate.

        Returns
        -------
        is_converged : bool
            Whether the relative change fell below the tolerance.
        """
        self.log_likelihood.append(current_log_likelihood)
        if current_log_likelihood > self._best_log_likelihood:
            self._best_log_likelihood = current_log_likelihood
            self._best_log_theta = current_log_theta.copy()

        if len(self.log_likelihood) >= 2:
            if self.criterion == 'relative_change_in_log_likelihood':
                prev = self.log_likelihood[-2]
                change = np.abs((current_log_likelihood - prev) / max(np.abs(prev), 1e-12))
            else:
                theta, prev_theta = np.exp(current_log_theta), np.exp(self._prev_log_theta)
                change = np.linalg.norm(theta - prev_theta) / np.linalg.norm(prev_theta)
            self.track_change.append(change)
            self.is_converged = change <= self.tol
        self._prev_log_theta = current_log_theta.copy()
        return self.is_converged


@dataclass
class OptimizerState:
    """
    Mutable state of one optimizer call. Never shared between calls.
    """
    log_theta: np.ndarray
    log_theta_prev: np.ndarray
    log_likelihood: float
    lr: float
    monitor: ConvergenceMonitor
    n_iter: int = 0
    factorization_failures: int = 0
    status: str = 'init'


@dataclass
class OptimizerResult:
    """
    Outcome of one optimizer call.

    ``status`` is one of 'converged', 'max_iter_reached' or 'diverged'.
    """
    log_theta: np.ndarray
    log_likelihood: float
    n_iter: int
    status: str
    history: list = field(default_factory=list)

    @property
    def theta(self) -> np.ndarray:
        return np.exp(self.log_theta)

    @property
    def converged(self) -> bool:
        return self.status == 'converged'


class CovarianceOptimizer:
    """
    Maximizes the marginal log-likelihood over log θ for a fixed residual.

    Gradient descent (optionally with Nesterov acceleration) takes steps along
    the gradient of the per-sample log-likelihood; Fisher scoring solves the
    Fisher information system for the step direction. Candidates that lower the
    log-likelihood or cannot be factorized are rejected and the step is halved.

    Parameters
    ----------
    config : OptimizerConfig
        Optimizer options.
    """
    def __init__(self, config: OptimizerConfig | None = None):
        self.config = OptimizerConfig() if config is None else config

    def run(self, engine, log_theta0: np.ndarray) -> OptimizerResult:
        """
        Run the optimizer from ``log_theta0``.

        Parameters
        ----------
        engine : LikelihoodEngine
            Provides ``log_likelihood``, ``gradient`` and ``fisher_information`` at a log θ,
            with the residual already set.
        log_theta0 : np.ndarray
            Starting point, must be factorizable.

        Returns
        -------
        OptimizerResult
            The last accepted parameters; never non-finite.
        """
        cfg = self.config
        log_theta0 = np.asarray(log_theta0, dtype=np.float64).copy()
        try:
            ll0 = engine.log_likelihood(log_theta0)
        except FactorizationError as err:
            warnings.warn(f"Covariance is not factorizable at the initial parameters ({err}); parameters are left unchanged.",
                          ConvergenceWarning)
            return OptimizerResult(log_theta0, np.nan, 0, 'diverged')

        monitor = ConvergenceMonitor(cfg.convergence_criterion, cfg.delta_rel_conv)
        monitor.update(ll0, log_theta0)
        state = OptimizerState(log_theta=log_theta0, log_theta_prev=log_theta0.copy(), log_likelihood=ll0,
                               lr=cfg.learning_rate, monitor=monitor)
        if cfg.trace:
            logger.info("Initial: log-likelihood %.6f, parameters %s", ll0, np.exp(log_theta0))

        while state.n_iter < cfg.maxit:
            state.n_iter += 1
            outcome = self._step(engine, state)
            if outcome == 'stationary':
                state.status = 'converged'
                break
            if outcome == 'failed':
                if state.factorization_failures >= cfg.max_factorization_failures:
                    state.status = 'diverged'
                    break
                continue
            if cfg.trace:
                logger.info("Iteration %d: log-likelihood %.6f, parameters %s, lr %.4g",
                            state.n_iter, state.log_likelihood, np.exp(state.log_theta), state.lr)
            if monitor.update(state.log_likelihood, state.log_theta):
                state.status = 'converged'
                break
        else:
            state.status = 'converged' if cfg.maxit == 0 else 'max_iter_reached'

        if state.status == 'diverged':
            warnings.warn(f"Covariance parameter estimation diverged after {state.n_iter} iterations: "
                          f"the covariance could not be factorized {state.factorization_failures} times in a row. "
                          "The last valid parameters are kept.", ConvergenceWarning)
        elif state.status == 'max_iter_reached':
            warnings.warn(f"Covariance parameter estimation did not converge in {cfg.maxit} iterations. "
                          "Consider increasing maxit or the learning rate.", ConvergenceWarning)
        if cfg.trace:
            logger.info("Finished with status '%s' after %d iterations: log-likelihood %.6f",
                        state.status, state.n_iter, state.log_likelihood)

        # Leave the model at the returned parameters.
        engine.log_likelihood(state.log_theta)
        return OptimizerResult(state.log_theta.copy(), state.log_likelihood, state.n_iter, state.status,
                               list(monitor.log_likelihood))

    def _direction(self, engine, log_theta: np.ndarray) -> np.ndarray:
        grad = engine.gradient(log_theta)
        if self.config.optimizer_cov == 'gradient_descent':
            direction = grad / engine.n
        else:
            fisher = engine.fisher_information(log_theta)
            try:
                direction = np.linalg.solve(fisher, grad)
            except np.linalg.LinAlgError:
                direction = np.linalg.lstsq(fisher, grad, rcond=None)[0]
        if not np.all(np.isfinite(direction)):
            raise FactorizationError("Non-finite search direction.")
        return direction

    def _step(self, engine, state: OptimizerState) -> str:
        """
        One iteration. Returns 'accepted', 'stationary' or 'failed'.
        """
        cfg = self.config
        theta = state.log_theta
        use_momentum = cfg.uses_momentum and state.n_iter > 1
        start = theta + cfg.acc_rate_cov * (theta - state.log_theta_prev) if use_momentum else theta
        try:
            direction = self._direction(engine, start)
        except (FactorizationError, InvalidParameterError):
            use_momentum, start = False, theta
            direction = self._direction(engine, start)

        lr = state.lr
        tol = 1e-10 * max(1.0, abs(state.log_likelihood))
        factorization_failed = False
        halvings = 0
        while halvings <= cfg.max_step_halvings:
            step = lr * direction
            largest = np.max(np.abs(step)) if step.size else 0.0
            if largest > MAX_LOG_STEP:
                step *= MAX_LOG_STEP / largest
            candidate = start + step
            new_ll = None
            try:
                new_ll = engine.log_likelihood(candidate)
            except FactorizationError:
                factorization_failed = True
            except InvalidParameterError:
                pass
            if new_ll is not None and np.isfinite(new_ll) and new_ll >= state.log_likelihood - tol:
                state.log_theta_prev = theta
                state.log_theta = candidate
                state.log_likelihood = new_ll
                state.factorization_failures = 0
                if cfg.optimizer_cov == 'gradient_descent':
                    # A halved rate doubles back after every accepted step, up to lr_cov.
                    state.lr = min(2.0 * lr, cfg.learning_rate)
                else:
                    state.lr = cfg.learning_rate
                return 'accepted'
            if use_momentum:
                # Retry from the current iterate before shrinking the step.
                use_momentum, start = False, theta
                direction = self._direction(engine, start)
                continue
            lr *= 0.5
            halvings += 1

        state.lr = lr
        if factorization_failed:
            state.factorization_failures += 1
            # Momentum is discarded after a failed iteration.
            state.log_theta_prev = theta
            return 'failed'
        return 'stationary'
