import json
import logging
from pathlib import Path

from cable_pose.errors import InvalidInput
from cable_pose.solver import SolverSettings

# human readable on purpose, so tolerances can be tuned without touching code

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'configuration.json'

logger = logging.getLogger(__name__)

class ServerSettings:
    def __init__(self):
        self.host = '0.0.0.0'
        self.port = 8765
        # seconds a single solve may run before it is stopped and reported as a timeout
        self.solve_timeout = 120.0
        # number of past runs kept in memory
        self.history_size = 64
        # report running out of iterations as an error instead of a result
        self.fail_on_max_iterations = False

    def update(self, d):
        for key, value in d.items():
            if not hasattr(self, key):
                raise InvalidInput(f'unknown server setting {key}', field='server')
            current = getattr(self, key)
            allowed = (int, float) if isinstance(current, float) else type(current)
            if isinstance(value, bool) != isinstance(current, bool) or not isinstance(value, allowed):
                raise InvalidInput(f'server setting {key} must be {type(current).__name__}, got {value!r}', field=key)
            setattr(self, key, value)

    def to_dict(self):
        return dict(vars(self))

class Config:
    def __init__(self, path=None):
        # looked up at call time so tests can point DEFAULT_CONFIG_PATH somewhere else
        self.path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
        # default configuration
        self.solver = SolverSettings()
        self.server = ServerSettings()
        try:
            self.reload()
        except FileNotFoundError:
            logger.info(f'No {self.path} file exists, using defaults')

    def reload(self):
        with open(self.path) as f:
            try:
                conf = json.load(f)
            except json.JSONDecodeError as e:
                raise InvalidInput(f'{self.path} is not valid JSON: {e}')
        self.solver = SolverSettings.from_dict(conf.get('solver', {}))
        self.server = ServerSettings()
        self.server.update(conf.get('server', {}))

    def write(self):
        conf = {
            'solver': self.solver.to_dict(),
            'server': self.server.to_dict(),
        }
        with open(self.path, 'w') as outf:
            outf.write(json.dumps(conf, indent=2))
