"""
Levenberg-Marquardt estimation of the platform pose from measured cable lengths.

Each iteration linearizes the residuals around the current pose, solves the damped normal equations
    (J^T J + lambda * diag(J^T J)) delta = -J^T r
and keeps the step only if it lowers the mean squared residual.
Rejected steps raise the damping (closer to gradient descent, shorter steps) and are retried from the same pose.
Accepted steps lower it again (closer to Gauss-Newton).
"""
import logging
from dataclasses import dataclass, field, fields, asdict

import numpy as np
import scipy.linalg

from cable_pose.errors import DegenerateGeometry, SingularSystem, SolverFailed, InvalidInput
from cable_pose.kinematics import CableModel, as_pose, JACOBIAN_METHODS

logger = logging.getLogger(__name__)

CONVERGED = 'converged'
MAX_ITERATIONS = 'max_iterations'
CANCELLED = 'cancelled'

# guards the relative error decrease against division by zero
EPSILON = 1e-300


@dataclass
class SolverSettings:
    max_iterations: int = 100
    initial_damping: float = 1e-3
    damping_increase: float = 10.0
    damping_decrease: float = 0.1
    min_damping: float = 1e-15
    # converged when the mean squared residual (mm^2) gets this small
    error_tolerance: float = 1e-18
    # converged when an accepted step lowers the error by less than this fraction
    relative_tolerance: float = 1e-10
    # converged when the step norm (mixed mm and rad) gets this small
    step_tolerance: float = 1e-8
    # a rejected step below step_tolerance only counts as converged when
    # |J^T r| <= gradient_tolerance * |J| * |r|, ie the residual is nearly orthogonal to every direction the pose can move
    gradient_tolerance: float = 1e-6
    # bounded retries within one iteration
    max_rejections: int = 20
    max_singular_retries: int = 10
    # normal equations with a larger condition number are treated as singular
    max_condition: float = 1e14
    # lower bound on the marquardt scaling, relative to the largest diagonal entry of J^T J
    diagonal_floor: float = 1e-12
    jacobian_method: str = 'analytic'

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            allowed = (int, float) if f.type is float else f.type
            if isinstance(value, bool) or not isinstance(value, allowed):
                raise InvalidInput(f'{f.name} must be {f.type.__name__}, got {value!r}', field=f.name)
        if self.max_iterations < 0:
            raise InvalidInput(f'max_iterations must not be negative, got {self.max_iterations}', field='max_iterations')
        if self.initial_damping <= 0:
            raise InvalidInput('initial_damping must be positive', field='initial_damping')
        if self.damping_increase <= 1:
            raise InvalidInput('damping_increase must be greater than 1', field='damping_increase')
        if not 0 < self.damping_decrease < 1:
            raise InvalidInput('damping_decrease must be between 0 and 1', field='damping_decrease')
        if self.jacobian_method not in JACOBIAN_METHODS:
            raise InvalidInput(f'jacobian_method must be one of {JACOBIAN_METHODS}', field='jacobian_method')

    @classmethod
    def from_dict(cls, d):
        if not isinstance(d, dict):
            raise InvalidInput(f'solver settings must be an object, got {type(d).__name__}', field='solver')
        known = {f.name for f in fields(cls)}
        unknown = set(d) - known
        if unknown:
            raise InvalidInput(f'unknown solver settings {sorted(unknown)}', field='solver')
        return cls(**d)

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class SolveResult:
    pose: np.ndarray
    # mean squared residual at the final pose, mm^2
    error: float
    # number of accepted iterations
    iterations: int
    # error after each accepted iteration. the initial error is not included.
    error_trace: tuple
    status: str
    initial_error: float
    damping: float
    # per cable residual at the final pose, mm
    final_residuals: np.ndarray = field(repr=False)

    @property
    def converged(self):
        return self.status == CONVERGED

    def to_dict(self):
        return {
            'pose': self.pose.tolist(),
            'error': float(self.error),
            'iterations': int(self.iterations),
            'residuals': [float(e) for e in self.error_trace],
            'status': self.status,
            'initialError': float(self.initial_error),
        }


def solve_damped_normal_equations(jtj, gradient, damping, settings):
    """
    Solve (J^T J + damping * diag(J^T J)) delta = -J^T r
    raises SingularSystem if the system cannot be solved reliably

    The system is solved, and its conditioning judged, in coordinates where diag(J^T J) is one.
    A column of J that is all zero leaves only the damping on its row.
    """
    diag = np.diag(jtj)
    if not (np.all(np.isfinite(jtj)) and np.all(np.isfinite(gradient))):
        raise SingularSystem('normal equations contain non-finite values', damping=damping)
    scale = np.sqrt(np.maximum(diag, settings.diagonal_floor * max(diag.max(), 1.0)))
    a = jtj / np.outer(scale, scale) + damping * np.eye(len(diag))
    cond = np.linalg.cond(a)
    if not cond <= settings.max_condition:
        raise SingularSystem(f'normal equations are ill conditioned, cond={cond:.3g}', damping=damping)
    try:
        factor = scipy.linalg.cho_factor(a)
    except np.linalg.LinAlgError as e:
        raise SingularSystem(f'normal equations are not positive definite: {e}', damping=damping)
    return scipy.linalg.cho_solve(factor, -gradient / scale) / scale


def levenberg_marquardt(model, initial_guess, settings=None, should_stop=None):
    """
    Find the pose minimizing the mean squared residual of the model.

    model: a CableModel, or anything with residuals(pose) and jacobian(pose, method)
    initial_guess: 6 vector [x,y,z,roll,pitch,yaw]
    settings: SolverSettings
    should_stop: optional callable checked between iterations. when it returns True
        the solve ends early with status 'cancelled' and the best pose found so far.

    returns a SolveResult whose status is 'converged', 'max_iterations' or 'cancelled'
    raises DegenerateGeometry, SingularSystem or SolverFailed
    """
    if settings is None:
        settings = SolverSettings()
    pose = as_pose(initial_guess).copy()
    damping = settings.initial_damping
    iteration = 0

    try:
        residuals = model.residuals(pose)
    except DegenerateGeometry as e:
        e.iteration = iteration
        e.damping = damping
        raise
    error = float(np.mean(residuals**2))
    initial_error = error
    trace = []
    logger.debug(f'initial error {error:.6g} at pose {pose}')

    def result(status):
        logger.info(f'solve finished: {status} after {iteration} iterations, error={error:.6g}')
        return SolveResult(
            pose=pose.copy(),
            error=error,
            iterations=iteration,
            error_trace=tuple(trace),
            status=status,
            initial_error=initial_error,
            damping=damping,
            final_residuals=residuals.copy(),
        )

    if error <= settings.error_tolerance:
        return result(CONVERGED)

    while True:
        if iteration >= settings.max_iterations:
            return result(MAX_ITERATIONS)
        if should_stop is not None and should_stop():
            logger.info('stop requested')
            return result(CANCELLED)

        try:
            jac = model.jacobian(pose, method=settings.jacobian_method)
        except DegenerateGeometry as e:
            # a finite difference jacobian fails at a perturbed pose, report the pose it was taken around
            e.pose = pose.copy()
            e.iteration = iteration
            e.damping = damping
            raise
        jtj = jac.T @ jac
        gradient = jac.T @ residuals
        stationary = np.linalg.norm(gradient) <= settings.gradient_tolerance * np.linalg.norm(jac) * np.linalg.norm(residuals)

        rejections = 0
        singular_retries = 0
        while True:
            try:
                delta = solve_damped_normal_equations(jtj, gradient, damping, settings)
            except SingularSystem as e:
                singular_retries += 1
                if singular_retries > settings.max_singular_retries:
                    e.pose = pose.copy()
                    e.iteration = iteration
                    e.damping = damping
                    logger.error(f'giving up on singular normal equations at iteration {iteration}: {e}')
                    raise e
                logger.debug(f'{e}, raising damping to {damping * settings.damping_increase:.3g}')
                damping *= settings.damping_increase
                continue

            step = float(np.linalg.norm(delta))
            candidate = pose + delta
            try:
                candidate_residuals = model.residuals(candidate)
            except DegenerateGeometry as e:
                # report the last pose that could be evaluated, not the candidate
                e.pose = pose.copy()
                e.iteration = iteration
                e.damping = damping
                raise
            candidate_error = float(np.mean(candidate_residuals**2))

            if candidate_error < error:
                break

            if step < settings.step_tolerance and stationary:
                # no representable step lowers the error and the gradient vanishes, this is a minimum
                logger.debug(f'step {step:.3g} rejected at a stationary point')
                return result(CONVERGED)
            rejections += 1
            if rejections > settings.max_rejections:
                logger.error(f'no step lowered the error at iteration {iteration}, damping={damping:.3g}')
                raise SolverFailed(
                    f'no step lowered the error after {settings.max_rejections} damping increases',
                    pose=pose, iteration=iteration, damping=damping)
            damping *= settings.damping_increase

        previous_error = error
        pose = candidate
        residuals = candidate_residuals
        error = candidate_error
        iteration += 1
        trace.append(error)
        damping = max(damping * settings.damping_decrease, settings.min_damping)
        logger.debug(f'iteration {iteration} error={error:.6g} step={step:.3g} damping={damping:.3g}')

        if error <= settings.error_tolerance:
            return result(CONVERGED)
        if (previous_error - error) / max(previous_error, EPSILON) < settings.relative_tolerance:
            return result(CONVERGED)
        if step < settings.step_tolerance:
            return result(CONVERGED)


def solve(request, settings=None, should_stop=None):
    """Solve one SolveRequest. Every call builds its own model so concurrent solves share nothing."""
    model = CableModel(request.anchors, request.attachments, request.cable_lengths)
    return levenberg_marquardt(model, request.initial_guess, settings, should_stop)
