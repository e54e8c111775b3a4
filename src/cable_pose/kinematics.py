"""
Forward kinematics of a platform hung from cables.

Given a candidate pose of the platform, predict how long each cable would have to be
and compare that to the measured lengths. The difference is the residual the solver drives to zero.

distances are in millimeters
angles are in radians
a pose is a 6 vector (x, y, z, roll, pitch, yaw) with rotation R = Rz(yaw) @ Ry(pitch) @ Rx(roll)
"""
import numbers

import numpy as np
from math import sin, cos
from scipy.spatial.transform import Rotation

from cable_pose.errors import InvalidInput, DegenerateGeometry

# central difference step sizes for the numerical jacobian
TRANSLATION_STEP = 1e-6 # mm
ANGLE_STEP = 1e-6 # rad

JACOBIAN_METHODS = ('analytic', 'central')


def rotation_matrix(roll, pitch, yaw):
    """Rz(yaw) @ Ry(pitch) @ Rx(roll). Intrinsic ZYX in scipy's terms."""
    return Rotation.from_euler('ZYX', [yaw, pitch, roll]).as_matrix()

def elementary_rotations(roll, pitch, yaw):
    """
    Returns the three elementary rotations and their derivatives with respect to their own angle
    as ((Rx, dRx), (Ry, dRy), (Rz, dRz))
    """
    cr, sr = cos(roll), sin(roll)
    cp, sp = cos(pitch), sin(pitch)
    cy, sy = cos(yaw), sin(yaw)
    rx = np.array([[1, 0, 0], [0, cr, -sr], [0, sr, cr]], dtype=float)
    drx = np.array([[0, 0, 0], [0, -sr, -cr], [0, cr, -sr]], dtype=float)
    ry = np.array([[cp, 0, sp], [0, 1, 0], [-sp, 0, cp]], dtype=float)
    dry = np.array([[-sp, 0, cp], [0, 0, 0], [-cp, 0, -sp]], dtype=float)
    rz = np.array([[cy, -sy, 0], [sy, cy, 0], [0, 0, 1]], dtype=float)
    drz = np.array([[-sy, -cy, 0], [cy, -sy, 0], [0, 0, 0]], dtype=float)
    return (rx, drx), (ry, dry), (rz, drz)


def check_numbers(values, field):
    """
    Raise InvalidInput unless values is a number or a nested list of numbers.
    numpy would otherwise quietly turn strings like "5" and booleans into floats.
    """
    if isinstance(values, np.ndarray):
        if values.dtype.kind not in 'iuf':
            raise InvalidInput(f'{field} must contain only numbers, got an array of {values.dtype}', field=field)
    elif isinstance(values, (list, tuple)):
        for v in values:
            check_numbers(v, field)
    elif isinstance(values, bool) or not isinstance(values, numbers.Real):
        raise InvalidInput(f'{field} must contain only numbers, got {values!r}', field=field)

def as_points(values, field):
    """Convert to an (N,3) float array or raise InvalidInput naming the field"""
    check_numbers(values, field)
    try:
        arr = np.array(values, dtype=float)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f'{field} must contain only numbers: {e}', field=field)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise InvalidInput(f'{field} must be a list of 3 element points, got shape {arr.shape}', field=field)
    bad = np.flatnonzero(~np.all(np.isfinite(arr), axis=1))
    if len(bad) > 0:
        raise InvalidInput(f'{field} contains a non-finite value', field=field, cable_index=bad[0])
    return arr

def as_pose(values, field='initialGuess'):
    check_numbers(values, field)
    try:
        pose = np.array(values, dtype=float)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f'{field} must contain only numbers: {e}', field=field)
    if pose.shape != (6,):
        raise InvalidInput(f'{field} must have 6 elements [x,y,z,roll,pitch,yaw], got shape {pose.shape}', field=field)
    if not np.all(np.isfinite(pose)):
        raise InvalidInput(f'{field} contains a non-finite value', field=field)
    return pose

def check_geometry(anchors, attachments, cable_lengths):
    """
    Validate and convert one cable geometry.
    returns (anchors (N,3), attachments (N,3), cable_lengths (N,)) as float arrays
    """
    anchors = as_points(anchors, 'anchors')
    attachments = as_points(attachments, 'attachments')
    check_numbers(cable_lengths, 'cableLengths')
    try:
        lengths = np.array(cable_lengths, dtype=float)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f'cableLengths must contain only numbers: {e}', field='cableLengths')
    if lengths.ndim != 1:
        raise InvalidInput(f'cableLengths must be a flat list, got shape {lengths.shape}', field='cableLengths')

    n = len(anchors)
    if n < 3:
        raise InvalidInput(f'at least 3 cables are required, got {n}', field='anchors')
    if len(attachments) != n:
        raise InvalidInput(f'{len(attachments)} attachments given for {n} anchors', field='attachments')
    if len(lengths) != n:
        raise InvalidInput(f'{len(lengths)} cable lengths given for {n} anchors', field='cableLengths')

    bad = np.flatnonzero(~np.isfinite(lengths))
    if len(bad) > 0:
        raise InvalidInput('cableLengths contains a non-finite value', field='cableLengths', cable_index=bad[0])
    bad = np.flatnonzero(lengths <= 0)
    if len(bad) > 0:
        raise InvalidInput(f'cable length must be positive, got {lengths[bad[0]]}', field='cableLengths', cable_index=bad[0])
    return anchors, attachments, lengths


def attachment_points_world(pose, attachments):
    """Transform platform frame attachment points (N,3) into the world frame"""
    rot = rotation_matrix(pose[3], pose[4], pose[5])
    return attachments @ rot.T + pose[:3]

def synthesize_cable_lengths(anchors, attachments, pose):
    """
    The cable lengths a platform at this pose would measure.
    Used to build problems with a known answer.
    """
    anchors = as_points(anchors, 'anchors')
    attachments = as_points(attachments, 'attachments')
    world = attachment_points_world(np.asarray(pose, dtype=float), attachments)
    return np.linalg.norm(world - anchors, axis=1)


class CableModel:
    def __init__(self, anchors, attachments, cable_lengths):
        """
        Residual model of one cable robot measurement.

        anchors: (N,3) anchor points in the world frame
        attachments: (N,3) attachment points in the platform frame. row i is on the same cable as anchor i
        cable_lengths: (N,) measured cable lengths

        The arrays are copied and made read-only, so a model can be handed to another thread
        without anything else being able to change it underneath.
        """
        anchors, attachments, lengths = check_geometry(anchors, attachments, cable_lengths)
        for arr in (anchors, attachments, lengths):
            arr.setflags(write=False)
        self.anchors = anchors
        self.attachments = attachments
        self.cable_lengths = lengths

    @property
    def n_cables(self):
        return len(self.anchors)

    def _cable_vectors(self, pose):
        """vectors from each anchor to its transformed attachment point, and their lengths"""
        pose = np.asarray(pose, dtype=float)
        vectors = attachment_points_world(pose, self.attachments) - self.anchors
        with np.errstate(invalid='ignore', over='ignore'):
            lengths = np.linalg.norm(vectors, axis=1)
        bad = np.flatnonzero(~np.isfinite(lengths) | (lengths == 0))
        if len(bad) > 0:
            i = bad[0]
            raise DegenerateGeometry(
                f'predicted length of cable {i} is {lengths[i]}, anchor and attachment coincide or pose is not finite',
                cable_index=i, pose=pose)
        return vectors, lengths

    def predicted_lengths(self, pose):
        return self._cable_vectors(pose)[1]

    def residuals(self, pose):
        """predicted minus measured length for every cable"""
        return self.predicted_lengths(pose) - self.cable_lengths

    def error(self, pose):
        """mean squared residual"""
        r = self.residuals(pose)
        return float(np.mean(r**2))

    def jacobian(self, pose, method='analytic'):
        """
        Derivative of the residual vector with respect to (x, y, z, roll, pitch, yaw).
        shape (N, 6)
        """
        if method == 'analytic':
            return self._analytic_jacobian(pose)
        if method == 'central':
            return self._central_jacobian(pose)
        raise ValueError(f'unknown jacobian method {method}, expected one of {JACOBIAN_METHODS}')

    def _analytic_jacobian(self, pose):
        pose = np.asarray(pose, dtype=float)
        vectors, lengths = self._cable_vectors(pose)
        # unit vector along each cable, pointing from the anchor to the platform
        units = vectors / lengths[:, np.newaxis]

        (rx, drx), (ry, dry), (rz, drz) = elementary_rotations(*pose[3:])
        d_roll = rz @ ry @ drx
        d_pitch = rz @ dry @ rx
        d_yaw = drz @ ry @ rx

        jac = np.empty((self.n_cables, 6), dtype=float)
        jac[:, 0:3] = units
        jac[:, 3] = np.sum(units * (self.attachments @ d_roll.T), axis=1)
        jac[:, 4] = np.sum(units * (self.attachments @ d_pitch.T), axis=1)
        jac[:, 5] = np.sum(units * (self.attachments @ d_yaw.T), axis=1)
        return jac

    def _central_jacobian(self, pose):
        pose = np.asarray(pose, dtype=float)
        steps = np.array([TRANSLATION_STEP] * 3 + [ANGLE_STEP] * 3)
        jac = np.empty((self.n_cables, 6), dtype=float)
        for k in range(6):
            offset = np.zeros(6)
            offset[k] = steps[k]
            forward = self.predicted_lengths(pose + offset)
            backward = self.predicted_lengths(pose - offset)
            jac[:, k] = (forward - backward) / (2 * steps[k])
        return jac
