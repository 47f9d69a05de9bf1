"""
adjustment.py
-------------
Description: The dataset-wide record of the one-time model adjustment pass: which subjects have adjusted models, and
             whether every subject of the dataset has been adjusted.
"""

import os
import json
import time
from typing import List, Sequence

from gaittoolbox import config
from gaittoolbox.exceptions import ConfigurationError


class ModelAdjustmentState:
    """
    Backed by a small JSON flag file in the dataset root. If the file is missing, no subject has been adjusted. Only
    the sequential adjustment pre-pass ever writes this file, and 'completed' is only set once every subject of the
    dataset has been adjusted.
    """
    path: str

    def __init__(self, dataset_root: str):
        self.path = os.path.join(dataset_root, config.ADJUSTMENT_FLAG_FILE_NAME)

    def read(self) -> dict:
        if not os.path.exists(self.path):
            return {'completed': False, 'adjusted_subjects': [], 'adjusted_models': []}
        try:
            with open(self.path) as f:
                return json.load(f)
        except ValueError as e:
            raise ConfigurationError(f'The model adjustment flag file at {self.path} is corrupt: {e}')

    @property
    def completed(self) -> bool:
        return bool(self.read().get('completed', False))

    @property
    def adjusted_subjects(self) -> List[int]:
        return [int(s) for s in self.read().get('adjusted_subjects', [])]

    @property
    def adjusted_models(self) -> List[str]:
        return list(self.read().get('adjusted_models', []))

    def is_adjusted(self, subject: int) -> bool:
        blob = self.read()
        return bool(blob.get('completed', False)) or int(subject) in [int(s) for s in blob.get('adjusted_subjects', [])]

    def mark_adjusted(self, subjects: Sequence[int], adjusted_models: Sequence[str], all_subjects: Sequence[int]):
        """
        Adds subjects to the adjusted set. The dataset is marked completed once the set covers all_subjects.
        """
        blob = self.read()
        adjusted = sorted(set(int(s) for s in blob.get('adjusted_subjects', [])) | set(int(s) for s in subjects))
        models = list(blob.get('adjusted_models', []))
        models += [m for m in adjusted_models if m not in models]
        blob = {
            'completed': set(int(s) for s in all_subjects) <= set(adjusted),
            'timestamp': time.time() * 1000,
            'adjusted_subjects': adjusted,
            'adjusted_models': models
        }
        with open(self.path, 'w') as f:
            json.dump(blob, f, indent=2)
