"""
checkpoint.py
-------------
Description: A minimal, serializable snapshot of unfinished batch work. Resuming is just running the saved stages
             over the saved pending items again; no orchestrator state is ever pickled.
"""

import os
import json
from datetime import datetime
from typing import List, Dict, Any, Optional

from gaittoolbox import config
from gaittoolbox.data_unit import WorkItem
from gaittoolbox.exceptions import ConfigurationError
from gaittoolbox.stages import Stage

CHECKPOINT_VERSION = 1


class Checkpoint:
    dataset_name: str
    stages: List[Stage]
    pending: List[WorkItem]
    completed_count: int
    failures: List[Dict[str, Any]]
    reason: Optional[Dict[str, Any]]
    created: str

    def __init__(self,
                 dataset_name: str,
                 stages: List[Stage],
                 pending: List[WorkItem],
                 completed_count: int = 0,
                 failures: Optional[List[Dict[str, Any]]] = None,
                 reason: Optional[Dict[str, Any]] = None,
                 created: Optional[str] = None):
        self.dataset_name = dataset_name
        self.stages = list(stages)
        self.pending = [(int(subject), tuple(int(v) for v in values)) for subject, values in pending]
        self.completed_count = completed_count
        self.failures = failures if failures is not None else []
        self.reason = reason
        self.created = created if created is not None else datetime.now().strftime(config.CHECKPOINT_TIMESTAMP_FORMAT)

    def to_json(self) -> Dict[str, Any]:
        return {
            'version': CHECKPOINT_VERSION,
            'dataset': self.dataset_name,
            'created': self.created,
            'stages': [stage.name for stage in self.stages],
            'pending': [{'subject': subject, 'parameters': list(values)} for subject, values in self.pending],
            'completedCount': self.completed_count,
            'failures': self.failures,
            'reason': self.reason,
        }

    @staticmethod
    def from_json(blob: Dict[str, Any]) -> 'Checkpoint':
        try:
            if blob.get('version', CHECKPOINT_VERSION) != CHECKPOINT_VERSION:
                raise ConfigurationError(f'Unsupported checkpoint version {blob.get("version")}.')
            return Checkpoint(
                dataset_name=blob['dataset'],
                stages=[Stage.parse(stage) for stage in blob['stages']],
                pending=[(item['subject'], item['parameters']) for item in blob['pending']],
                completed_count=blob.get('completedCount', 0),
                failures=blob.get('failures', []),
                reason=blob.get('reason'),
                created=blob.get('created'))
        except (KeyError, TypeError) as e:
            raise ConfigurationError(f'Checkpoint is malformed: {e}')

    def file_name(self) -> str:
        return f'{config.CHECKPOINT_PREFIX}{self.created}.json'

    def save(self, folder: str) -> str:
        path = os.path.join(folder, self.file_name())
        with open(path, 'w') as f:
            json.dump(self.to_json(), f, indent=2)
        return path

    @staticmethod
    def load(path: str) -> 'Checkpoint':
        try:
            with open(path) as f:
                blob = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f'Could not read the checkpoint at {path}: {e}')
        return Checkpoint.from_json(blob)

    def __repr__(self) -> str:
        return f'Checkpoint({self.dataset_name!r}, stages={[s.name for s in self.stages]}, ' \
               f'pending={len(self.pending)} items)'


def latest_checkpoint(folder: str) -> Optional[str]:
    """
    Timestamps sort lexically, so the newest checkpoint is the last one by name.
    """
    if not os.path.isdir(folder):
        return None
    names = sorted(name for name in os.listdir(folder)
                   if name.startswith(config.CHECKPOINT_PREFIX) and name.endswith('.json'))
    if len(names) == 0:
        return None
    return os.path.join(folder, names[-1])
