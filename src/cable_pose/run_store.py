import uuid
from collections import deque
from datetime import datetime, timezone

SUCCESS = 'SUCCESS'
FAILED = 'FAILED'
TIMEOUT = 'TIMEOUT'

class RunRecord:
    """One request/response pair handled by the server"""
    def __init__(self, input_json, result_json, status, notes=None):
        self.id = uuid.uuid4().hex
        self.created_at = datetime.now(timezone.utc).isoformat()
        self.input_json = input_json
        self.result_json = result_json
        self.status = status
        self.notes = notes

    def to_dict(self):
        return {
            'id': self.id,
            'createdAt': self.created_at,
            'inputJson': self.input_json,
            'resultJson': self.result_json,
            'status': self.status,
            'notes': self.notes,
        }

class RunStore:
    """
    Keeps the most recent runs in memory. When full, the oldest run is dropped.
    Anything that wants runs to outlive the process can implement add/list/get over real storage.
    """
    def __init__(self, size=64):
        self.size = size
        self.runs = deque(maxlen=size)

    def add(self, record):
        self.runs.append(record)
        return record

    def list(self):
        """newest first"""
        return list(reversed(self.runs))

    def get(self, run_id):
        for record in self.runs:
            if record.id == run_id:
                return record
        return None

    def __len__(self):
        return len(self.runs)
