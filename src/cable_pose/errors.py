"""
Errors raised while estimating a platform pose.

Every error keeps whatever state is known at the time it is raised (offending cable,
last valid pose, iteration index, damping factor) so a failed solve can be diagnosed
without running it again. to_dict() gives the shape sent back to clients.
"""
import numpy as np


class PoseSolveError(Exception):
    kind = 'PoseSolveError'

    def __init__(self, message, cable_index=None, pose=None, iteration=None, damping=None, field=None):
        super().__init__(message)
        self.message = message
        self.cable_index = cable_index
        self.pose = None if pose is None else np.array(pose, dtype=float)
        self.iteration = iteration
        self.damping = damping
        self.field = field

    def to_dict(self):
        d = {'kind': self.kind, 'message': self.message}
        if self.field is not None:
            d['field'] = self.field
        if self.cable_index is not None:
            d['cable_index'] = int(self.cable_index)
        if self.pose is not None:
            d['pose'] = self.pose.tolist()
        if self.iteration is not None:
            d['iteration'] = int(self.iteration)
        if self.damping is not None:
            d['damping'] = float(self.damping)
        return d


class InvalidInput(PoseSolveError):
    """Malformed or inconsistent input. Rejected before any iteration runs."""
    kind = 'InvalidInput'


class DegenerateGeometry(PoseSolveError):
    """A predicted cable length came out zero or non-finite."""
    kind = 'DegenerateGeometry'


class SolverFailed(PoseSolveError):
    """The solver could not find a step that lowers the error within its retry budget."""
    kind = 'SolverFailed'


class SingularSystem(SolverFailed):
    """The damped normal equations could not be solved even after growing the damping."""
    kind = 'SingularSystem'
