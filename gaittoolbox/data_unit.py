"""
data_unit.py
------------
Description: A DataUnit is one addressable cell of a dataset: one subject, under one combination of context
             parameter values. Every path belonging to the unit is derived from (subject, parameter values,
             descriptor) on demand, and which stages have completed is probed from the filesystem.
"""

import os
from typing import List, Dict, Tuple, Optional, Sequence

from gaittoolbox.descriptor import DatasetDescriptor
from gaittoolbox.filesystem import FileSystem, LocalFileSystem
from gaittoolbox.helpers import matches_suffix
from gaittoolbox.stages import Stage

WorkItem = Tuple[int, Tuple[int, ...]]


class DataUnit:
    descriptor: DatasetDescriptor
    subject: int
    parameter_values: Tuple[int, ...]
    fs: FileSystem

    def __init__(self,
                 descriptor: DatasetDescriptor,
                 subject: int,
                 parameter_values: Sequence[int],
                 fs: Optional[FileSystem] = None):
        # Both of these raise a ConfigurationError for anything outside the declared ranges
        self.subject = descriptor.validate_subject(subject)
        self.parameter_values = descriptor.parameters.validate(parameter_values)
        self.descriptor = descriptor
        self.fs = fs if fs is not None else LocalFileSystem()
        self._completed: Optional[Dict[Stage, bool]] = None

    @staticmethod
    def from_named(descriptor: DatasetDescriptor, subject: int, fs: Optional[FileSystem] = None,
                   **named_values: int) -> 'DataUnit':
        values = descriptor.parameters.tuple_from_named(named_values)
        return DataUnit(descriptor, subject, values, fs)

    @property
    def key(self) -> WorkItem:
        return self.subject, self.parameter_values

    def __eq__(self, other) -> bool:
        return isinstance(other, DataUnit) and self.key == other.key and \
            self.descriptor.root == other.descriptor.root

    def __hash__(self):
        return hash(self.key)

    def __str__(self) -> str:
        return f'{self.descriptor.subject_prefix}{self.subject} ' \
               f'({self.descriptor.parameters.format(self.parameter_values)})'

    def __repr__(self) -> str:
        return f'DataUnit({self.subject}, {list(self.parameter_values)})'

    # Paths

    @property
    def subject_folder(self) -> str:
        return os.path.join(self.descriptor.root, f'{self.descriptor.subject_prefix}{self.subject}')

    @property
    def parameter_path(self) -> str:
        # e.g. Speed2/Assistance1
        parts = [f'{p.name}{v}' for p, v in zip(self.descriptor.parameters.parameters, self.parameter_values)]
        return os.path.join(*parts)

    @property
    def raw_data_folder(self) -> str:
        return os.path.join(self.subject_folder, self.descriptor.data_folder_name, self.parameter_path)

    @property
    def motion_folder(self) -> str:
        return os.path.join(self.raw_data_folder, self.descriptor.motion_folder_name)

    @property
    def forces_folder(self) -> str:
        return os.path.join(self.raw_data_folder, self.descriptor.forces_folder_name)

    @property
    def results_folder(self) -> str:
        return os.path.join(self.subject_folder, self.descriptor.results_folder_name, self.parameter_path)

    def stage_folder(self, stage: Stage) -> str:
        return os.path.join(self.results_folder, self.descriptor.result_folders[stage])

    @property
    def model_folder(self) -> str:
        return os.path.join(self.subject_folder, self.descriptor.model_folder_name)

    @property
    def model_value(self) -> int:
        return self.parameter_values[self.descriptor.model_parameter_index]

    @property
    def model_path(self) -> str:
        return os.path.join(self.model_folder, self.descriptor.model_map[self.model_value])

    @property
    def adjusted_model_path(self) -> str:
        base, ext = os.path.splitext(self.model_path)
        return base + self.descriptor.adjustment_suffix + ext

    @property
    def load_descriptor_path(self) -> str:
        return os.path.join(self.model_folder, self.descriptor.load_map[self.model_value])

    def paths(self) -> Dict[str, str]:
        """
        A snapshot of every derived path, useful for debugging a descriptor.
        """
        result = {
            'raw_data_folder': self.raw_data_folder,
            'motion_folder': self.motion_folder,
            'forces_folder': self.forces_folder,
            'results_folder': self.results_folder,
            'model_path': self.model_path,
            'adjusted_model_path': self.adjusted_model_path,
            'load_descriptor_path': self.load_descriptor_path,
        }
        for stage in Stage:
            result[stage.name + '_folder'] = self.stage_folder(stage)
        return result

    # Input files

    def list_files(self, folder: str, suffix: str, prefix: str = '') -> List[str]:
        return [os.path.join(folder, name) for name in self.fs.listdir(folder)
                if matches_suffix(name, suffix, prefix) and not self.fs.is_dir(os.path.join(folder, name))]

    def marker_files(self) -> List[str]:
        return self.list_files(self.motion_folder, '.trc')

    def force_files(self) -> List[str]:
        return self.list_files(self.forces_folder, '.mot')

    # Stage completion

    def _probe(self, stage: Stage) -> bool:
        if stage == Stage.ADJUSTMENT:
            return self.fs.is_nonempty(self.adjusted_model_path)
        return self.fs.is_nonempty(self.stage_folder(stage))

    def refresh_state(self) -> Dict[Stage, bool]:
        self._completed = {stage: self._probe(stage) for stage in Stage}
        return dict(self._completed)

    def stage_completed(self, stage: Stage) -> bool:
        if self._completed is None:
            self.refresh_state()
        return self._completed[stage]

    def completed_stages(self) -> List[Stage]:
        return [stage for stage in Stage if self.stage_completed(stage)]
