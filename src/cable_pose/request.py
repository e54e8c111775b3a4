"""
Validation of solve requests arriving as loosely typed JSON.

The wire format uses the keys anchors, attachments, cableLengths and initialGuess.
snake_case spellings are accepted too.
"""
import json
from dataclasses import dataclass

import numpy as np

from cable_pose.errors import InvalidInput
from cable_pose.kinematics import check_geometry, as_pose

KEY_ALIASES = {
    'anchors': ('anchors',),
    'attachments': ('attachments',),
    'cableLengths': ('cableLengths', 'cable_lengths'),
    'initialGuess': ('initialGuess', 'initial_guess'),
}


def _lookup(payload, name, required=True):
    for key in KEY_ALIASES[name]:
        if key in payload:
            value = payload[key]
            if not isinstance(value, (list, tuple, np.ndarray)):
                raise InvalidInput(f'{name} must be a list, got {type(value).__name__}', field=name)
            return value
    if required:
        raise InvalidInput(f'missing required field {name}', field=name)
    return None


@dataclass(frozen=True)
class SolveRequest:
    anchors: np.ndarray
    attachments: np.ndarray
    cable_lengths: np.ndarray
    initial_guess: np.ndarray

    @classmethod
    def from_dict(cls, payload):
        """
        Build a request from decoded JSON. Raises InvalidInput on any shape, count or value problem
        before anything reaches the solver. A missing initialGuess means all zeros.
        """
        if not isinstance(payload, dict):
            raise InvalidInput(f'request must be a JSON object, got {type(payload).__name__}')
        anchors, attachments, lengths = check_geometry(
            _lookup(payload, 'anchors'),
            _lookup(payload, 'attachments'),
            _lookup(payload, 'cableLengths'),
        )
        guess = _lookup(payload, 'initialGuess', required=False)
        initial_guess = np.zeros(6) if guess is None else as_pose(guess)
        return cls(anchors, attachments, lengths, initial_guess)

    @classmethod
    def from_json(cls, text):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidInput(f'request is not valid JSON: {e}')
        return cls.from_dict(payload)

    @property
    def n_cables(self):
        return len(self.anchors)

    def to_dict(self):
        return {
            'anchors': self.anchors.tolist(),
            'attachments': self.attachments.tolist(),
            'cableLengths': self.cable_lengths.tolist(),
            'initialGuess': self.initial_guess.tolist(),
        }
