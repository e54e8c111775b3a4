"""Pose estimation for cable suspended platforms."""
from cable_pose.errors import (
    PoseSolveError,
    InvalidInput,
    DegenerateGeometry,
    SolverFailed,
    SingularSystem,
)
from cable_pose.kinematics import CableModel, rotation_matrix, synthesize_cable_lengths
from cable_pose.request import SolveRequest
from cable_pose.solver import SolverSettings, SolveResult, levenberg_marquardt, solve

__all__ = [
    'PoseSolveError',
    'InvalidInput',
    'DegenerateGeometry',
    'SolverFailed',
    'SingularSystem',
    'CableModel',
    'rotation_matrix',
    'synthesize_cable_lengths',
    'SolveRequest',
    'SolverSettings',
    'SolveResult',
    'levenberg_marquardt',
    'solve',
]
