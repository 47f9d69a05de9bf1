"""
results.py
----------
Description: Loads the results of processed data units back into memory, addressed by the same (subject, parameter
             values) coordinates used to process them.
"""

import os
import enum
from typing import List, Dict, Optional, Sequence, Iterable

import numpy as np
import pandas as pd

from gaittoolbox.data_unit import DataUnit, WorkItem
from gaittoolbox.descriptor import DatasetDescriptor
from gaittoolbox.exceptions import MalformedResultLayout, ConfigurationError
from gaittoolbox.helpers import files_with_suffix, stretch_vector
from gaittoolbox.simulation import IK_PREFIX, IK_SUFFIX, MARKER_DATA_FOLDER, INPUT_MARKERS_SUFFIX, \
    OUTPUT_MARKERS_SUFFIX, RRA_KINEMATICS_SUFFIX, BK_POSITIONS_SUFFIX, CMC_STATES_SUFFIX
from gaittoolbox.stages import Stage


class ResultCategory(enum.Enum):
    GRF = 'GRF'
    IK = 'IK'
    RRA = 'RRA'
    BK = 'BK'
    ID = 'ID'
    CMC = 'CMC'
    INPUT_MARKERS = 'InputMarkers'
    OUTPUT_MARKERS = 'OutputMarkers'

    @staticmethod
    def parse(value) -> 'ResultCategory':
        if isinstance(value, ResultCategory):
            return value
        key = str(value).strip()
        for category in ResultCategory:
            if key.upper() == category.name or key.lower() == category.value.lower():
                return category
        # 'Markers' on its own means the markers that went in to IK
        if key.lower() == 'markers':
            return ResultCategory.INPUT_MARKERS
        raise ConfigurationError(f'Unrecognised result category "{value}". Expected one of: '
                                 f'{", ".join(c.value for c in ResultCategory)}.')


# Convert a STO or MOT file to a pandas DataFrame.
def storage2pandas(storage_file: str) -> pd.DataFrame:
    header = -1
    with open(storage_file, 'r') as f:
        for i, line in enumerate(f):
            if line.count('endheader') != 0:
                header = i
                break
    return pd.read_csv(storage_file, sep=r'\s+', skiprows=header + 1)


# Convert a TRC marker file to a pandas DataFrame, with one column per marker axis (e.g. RASI_X, RASI_Y, RASI_Z).
def trc2pandas(trc_file: str) -> pd.DataFrame:
    with open(trc_file, 'r') as f:
        lines = f.readlines()
    if len(lines) < 5:
        raise ValueError(f'{trc_file} is too short to be a TRC file.')
    names = lines[3].rstrip('\r\n').split('\t')
    columns = names[:2]
    for name in names[2:]:
        name = name.strip()
        if name == '':
            continue
        columns += [name + '_X', name + '_Y', name + '_Z']
    data = pd.read_csv(trc_file, sep=r'\s+', skiprows=5, header=None)
    data = data.iloc[:, :len(columns)]
    data.columns = columns[:data.shape[1]]
    return data


def read_result_file(path: str) -> pd.DataFrame:
    if path.lower().endswith('.trc'):
        return trc2pandas(path)
    return storage2pandas(path)


class ResultTable:
    """
    Loaded results, keyed by (subject, parameter values). Each entry maps a category to one DataFrame per trial. A
    table is append-only, and only ever holds units for which every requested category loaded.
    """
    descriptor: DatasetDescriptor
    categories: List[ResultCategory]
    entries: Dict[WorkItem, Dict[ResultCategory, List[pd.DataFrame]]]
    failures: List[MalformedResultLayout]

    def __init__(self, descriptor: DatasetDescriptor, categories: List[ResultCategory]):
        self.descriptor = descriptor
        self.categories = categories
        self.entries = {}
        self.failures = []

    def add(self, item: WorkItem, payload: Dict[ResultCategory, List[pd.DataFrame]]):
        if item in self.entries:
            raise KeyError(f'Results for {item} have already been loaded.')
        self.entries[item] = payload

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, item) -> bool:
        return self._key(*item) in self.entries

    def __getitem__(self, item) -> Dict[ResultCategory, List[pd.DataFrame]]:
        return self.entries[self._key(*item)]

    def _key(self, subject: int, values: Sequence[int]) -> WorkItem:
        return int(subject), tuple(int(v) for v in values)

    def keys(self) -> List[WorkItem]:
        return list(self.entries.keys())

    def get(self, subject: int, values: Sequence[int], category) -> List[pd.DataFrame]:
        return self.entries[self._key(subject, values)][ResultCategory.parse(category)]

    def lookup(self, subject: int, category, **named_values: int) -> List[pd.DataFrame]:
        values = self.descriptor.parameters.tuple_from_named(named_values)
        return self.get(subject, values, category)

    def stretched(self, subject: int, values: Sequence[int], category, column: str,
                  desired_size: int = 101) -> np.ndarray:
        """
        One row per trial, with the column resampled to desired_size points (e.g. percent of the gait cycle).
        """
        frames = self.get(subject, values, category)
        return np.vstack([stretch_vector(frame[column].to_numpy(), desired_size) for frame in frames])


class ResultAggregator:
    descriptor: DatasetDescriptor

    def __init__(self, descriptor: DatasetDescriptor):
        self.descriptor = descriptor

    def category_files(self, unit: DataUnit, category: ResultCategory) -> List[str]:
        if category == ResultCategory.GRF:
            return files_with_suffix(unit.forces_folder, '.mot')
        if category == ResultCategory.IK:
            return files_with_suffix(unit.stage_folder(Stage.IK), IK_SUFFIX, prefix=IK_PREFIX)
        if category == ResultCategory.RRA:
            return files_with_suffix(unit.stage_folder(Stage.RRA), RRA_KINEMATICS_SUFFIX)
        if category == ResultCategory.BK:
            return files_with_suffix(unit.stage_folder(Stage.BK), BK_POSITIONS_SUFFIX)
        if category == ResultCategory.CMC:
            return files_with_suffix(unit.stage_folder(Stage.CMC), CMC_STATES_SUFFIX)
        if category == ResultCategory.INPUT_MARKERS:
            return files_with_suffix(os.path.join(unit.stage_folder(Stage.IK), MARKER_DATA_FOLDER),
                                     INPUT_MARKERS_SUFFIX)
        if category == ResultCategory.OUTPUT_MARKERS:
            return files_with_suffix(os.path.join(unit.stage_folder(Stage.IK), MARKER_DATA_FOLDER),
                                     OUTPUT_MARKERS_SUFFIX)
        return self.id_files(unit)

    def id_files(self, unit: DataUnit) -> List[str]:
        """
        Inverse dynamics writes one folder per sub-run, and each of those must hold exactly one output file.
        """
        folder = unit.stage_folder(Stage.ID)
        if not os.path.isdir(folder):
            return []
        files: List[str] = []
        for name in sorted(os.listdir(folder)):
            sub_run = os.path.join(folder, name)
            if not os.path.isdir(sub_run):
                continue
            outputs = [f for f in sorted(os.listdir(sub_run)) if os.path.isfile(os.path.join(sub_run, f))]
            if len(outputs) != 1:
                raise MalformedResultLayout(unit, f'Expected exactly one output file in {sub_run}, found '
                                                  f'{len(outputs)}: {outputs}')
            files.append(os.path.join(sub_run, outputs[0]))
        return files

    def load_unit(self, unit: DataUnit, categories: List[ResultCategory]) -> Dict[ResultCategory, List[pd.DataFrame]]:
        payload: Dict[ResultCategory, List[pd.DataFrame]] = {}
        for category in categories:
            paths = self.category_files(unit, category)
            if len(paths) == 0:
                raise MalformedResultLayout(unit, f'No {category.value} results found for {unit}.')
            try:
                payload[category] = [read_result_file(path) for path in paths]
            except (ValueError, OSError, pd.errors.ParserError) as e:
                raise MalformedResultLayout(unit, f'Could not read {category.value} results for {unit}: {e}')
        return payload

    def load(self, categories: Iterable, work_list: Optional[Sequence[WorkItem]] = None) -> ResultTable:
        """
        Load the requested categories for every unit in the work list (the whole dataset by default). A unit that
        fails to load is left out of the table; its error is collected in table.failures and reported once the
        whole pass is done.
        """
        if isinstance(categories, (str, ResultCategory)):
            categories = [categories]
        categories = [ResultCategory.parse(c) for c in categories]
        if work_list is None:
            work_list = [(subject, values) for subject in self.descriptor.subjects
                         for values in self.descriptor.parameters.combinations()]

        table = ResultTable(self.descriptor, categories)
        print(f'Loading {", ".join(c.value for c in categories)} results for {len(work_list)} element(s)',
              flush=True)
        for subject, values in work_list:
            unit = DataUnit(self.descriptor, subject, values)
            try:
                payload = self.load_unit(unit, categories)
            except MalformedResultLayout as e:
                table.failures.append(e)
                continue
            table.add(unit.key, payload)

        if len(table.failures) > 0:
            print(f'Failed to load results for {len(table.failures)} element(s):', flush=True)
            for failure in table.failures:
                print(f'  {failure.unit}: {failure.original_message.strip()}', flush=True)
        print(f'Loaded results for {len(table)} element(s)', flush=True)
        return table
