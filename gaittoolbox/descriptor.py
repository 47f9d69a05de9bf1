"""
descriptor.py
-------------
Description: The static description of a dataset: its subjects, context parameters, models and folder naming
             conventions. A DatasetDescriptor is validated once when it is built, and is read-only afterwards.
"""

import os
import json
import itertools
import xml.etree.ElementTree as ET
from typing import List, Dict, Tuple, Iterator, Optional, Sequence

from gaittoolbox import config
from gaittoolbox.exceptions import ConfigurationError
from gaittoolbox.stages import Stage


class ContextParameter:
    name: str
    values: Tuple[int, ...]

    def __init__(self, name: str, values: Sequence[int]):
        if not name:
            raise ConfigurationError('Context parameters must have a name.')
        values = tuple(int(v) for v in values)
        if len(values) == 0:
            raise ConfigurationError(f'Context parameter "{name}" has no permitted values.')
        if len(set(values)) != len(values):
            raise ConfigurationError(f'Context parameter "{name}" lists a value more than once: {list(values)}')
        self.name = name
        self.values = values

    def __eq__(self, other) -> bool:
        return isinstance(other, ContextParameter) and self.name == other.name and self.values == other.values

    def __repr__(self) -> str:
        return f'ContextParameter({self.name!r}, {list(self.values)})'


class ContextParameterSpace:
    """
    An ordered list of named parameters, each with an enumerated set of permitted integer levels. A parameter tuple
    addresses one combination of levels, with one value per parameter in declaration order.
    """
    parameters: List[ContextParameter]

    def __init__(self, parameters: List[ContextParameter]):
        self.parameters = list(parameters)
        self._index: Dict[str, int] = {}
        for i, parameter in enumerate(self.parameters):
            if parameter.name in self._index:
                raise ConfigurationError(f'Context parameter "{parameter.name}" is declared more than once.')
            self._index[parameter.name] = i

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.parameters]

    @property
    def size(self) -> int:
        total = 1
        for parameter in self.parameters:
            total *= len(parameter.values)
        return total

    def __len__(self) -> int:
        return len(self.parameters)

    def index_of(self, name: str) -> int:
        if name not in self._index:
            raise ConfigurationError(f'Context parameter name "{name}" not recognised. Known parameters are: '
                                     f'{", ".join(self.names)}.')
        return self._index[name]

    def validate(self, values: Sequence[int]) -> Tuple[int, ...]:
        values = tuple(int(v) for v in values)
        if len(values) != len(self.parameters):
            raise ConfigurationError(f'Got {len(values)} parameter values {list(values)}, but this dataset has '
                                     f'{len(self.parameters)} context parameters ({", ".join(self.names)}).')
        for parameter, value in zip(self.parameters, values):
            if value not in parameter.values:
                raise ConfigurationError(f'Value {value} is not a permitted level of "{parameter.name}" '
                                         f'(permitted: {list(parameter.values)}).')
        return values

    def tuple_from_named(self, named: Dict[str, int]) -> Tuple[int, ...]:
        values: List[Optional[int]] = [None] * len(self.parameters)
        for name, value in named.items():
            values[self.index_of(name)] = value
        missing = [self.parameters[i].name for i, v in enumerate(values) if v is None]
        if len(missing) > 0:
            raise ConfigurationError('Missing a value for context parameter(s): ' + ', '.join(missing))
        return self.validate(values)

    def restrict(self, ranges: Dict[str, Sequence[int]]) -> 'ContextParameterSpace':
        """
        Returns a sub-space where the named parameters are limited to the given values. Every requested value must
        be permitted by this space.
        """
        restricted = [p for p in self.parameters]
        for name, values in ranges.items():
            i = self.index_of(name)
            for value in values:
                if int(value) not in self.parameters[i].values:
                    raise ConfigurationError(f'Value {value} is not a permitted level of "{name}" '
                                             f'(permitted: {list(self.parameters[i].values)}).')
            restricted[i] = ContextParameter(name, values)
        return ContextParameterSpace(restricted)

    def combinations(self) -> Iterator[Tuple[int, ...]]:
        # itertools.product varies the last parameter fastest
        return itertools.product(*[p.values for p in self.parameters])

    def format(self, values: Sequence[int]) -> str:
        return ', '.join(f'{p.name}={v}' for p, v in zip(self.parameters, values))


class DatasetDescriptor:
    name: str
    root: str
    subject_prefix: str
    data_folder_name: str
    model_folder_name: str
    results_folder_name: str
    motion_folder_name: str
    forces_folder_name: str
    adjustment_suffix: str
    subjects: Tuple[int, ...]
    parameters: ContextParameterSpace
    model_parameter: str
    model_map: Dict[int, str]
    load_map: Dict[int, str]
    result_folders: Dict[Stage, str]

    def __init__(self,
                 name: str,
                 root: str,
                 subject_prefix: str,
                 data_folder_name: str,
                 model_folder_name: str,
                 subjects: Sequence[int],
                 parameters: ContextParameterSpace,
                 model_parameter: str,
                 model_map: Dict[int, str],
                 load_map: Dict[int, str],
                 results_folder_name: str = config.DEFAULT_RESULTS_FOLDER_NAME,
                 motion_folder_name: str = config.DEFAULT_MOTION_FOLDER_NAME,
                 forces_folder_name: str = config.DEFAULT_FORCES_FOLDER_NAME,
                 adjustment_suffix: str = config.DEFAULT_ADJUSTMENT_SUFFIX,
                 result_folders: Optional[Dict[Stage, str]] = None):
        self.name = name
        self.root = os.path.abspath(root)
        self.subject_prefix = subject_prefix
        self.data_folder_name = data_folder_name
        self.model_folder_name = model_folder_name
        self.results_folder_name = results_folder_name
        self.motion_folder_name = motion_folder_name
        self.forces_folder_name = forces_folder_name
        self.adjustment_suffix = adjustment_suffix
        self.subjects = tuple(int(s) for s in subjects)
        self.parameters = parameters
        self.model_parameter = model_parameter
        self.model_map = {int(k): v for k, v in model_map.items()}
        self.load_map = {int(k): v for k, v in load_map.items()}
        self.result_folders = {stage: config.DEFAULT_RESULT_FOLDERS[stage.name] for stage in Stage}
        if result_folders is not None:
            self.result_folders.update(result_folders)
        self.validate()

    def validate(self):
        if not self.name:
            raise ConfigurationError('The dataset must have a name.')
        for label, value in [('SubjectPrefix', self.subject_prefix),
                             ('DataFolderName', self.data_folder_name),
                             ('ModelFolderName', self.model_folder_name),
                             ('ResultsFolderName', self.results_folder_name)]:
            if not value:
                raise ConfigurationError(f'The descriptor is missing {label}.')
        if len(self.subjects) == 0:
            raise ConfigurationError('The dataset must declare at least one subject.')
        if len(set(self.subjects)) != len(self.subjects):
            raise ConfigurationError(f'Subjects are listed more than once: {list(self.subjects)}')
        if len(self.parameters) == 0:
            raise ConfigurationError('The dataset must declare at least one context parameter.')
        model_parameter = self.parameters.parameters[self.model_parameter_index]
        for value in model_parameter.values:
            if value not in self.model_map:
                raise ConfigurationError(f'No model file is declared for {self.model_parameter}={value}.')
            if value not in self.load_map:
                raise ConfigurationError(f'No load descriptor is declared for {self.model_parameter}={value}.')
        if not self.adjustment_suffix:
            raise ConfigurationError('The adjustment suffix must not be empty, or adjusted models would overwrite '
                                     'the originals.')
        if len(set(self.result_folders.values())) != len(self.result_folders):
            raise ConfigurationError('Every stage must write its results to a different folder.')

    @property
    def model_parameter_index(self) -> int:
        return self.parameters.index_of(self.model_parameter)

    def validate_subject(self, subject: int) -> int:
        subject = int(subject)
        if subject not in self.subjects:
            raise ConfigurationError(f'Subject {subject} is not part of the dataset "{self.name}" '
                                     f'(subjects: {list(self.subjects)}).')
        return subject

    def model_variants(self) -> List[int]:
        """
        The distinct model files used by this dataset, as the first model parameter value that selects each one.
        """
        seen: Dict[str, int] = {}
        for value in self.parameters.parameters[self.model_parameter_index].values:
            seen.setdefault(self.model_map[value], value)
        return list(seen.values())

    def __repr__(self) -> str:
        return f'DatasetDescriptor({self.name!r}, subjects={list(self.subjects)}, ' \
               f'parameters={self.parameters.parameters})'


def _text(element: ET.Element, tag: str, default: Optional[str] = None) -> str:
    child = element.find(tag)
    if child is None or child.text is None or child.text.strip() == '':
        if default is not None:
            return default
        raise ConfigurationError(f'The dataset descriptor is missing the <{tag}> element.')
    return child.text.strip()


def _int_list(text: str, what: str) -> List[int]:
    try:
        return [int(v) for v in text.replace(',', ' ').split()]
    except ValueError:
        raise ConfigurationError(f'Could not parse the integer list "{text}" for {what}.')


def _value_map(element: ET.Element, group: str, tag: str) -> Dict[int, str]:
    parent = element.find(group)
    if parent is None:
        raise ConfigurationError(f'The dataset descriptor is missing the <{group}> element.')
    result: Dict[int, str] = {}
    for child in parent.findall(tag):
        name = _text(child, 'Name')
        for value in _int_list(_text(child, 'ParameterValues'), name):
            if value in result:
                raise ConfigurationError(f'Parameter value {value} is mapped to more than one <{tag}>.')
            result[value] = name
    return result


def parse_descriptor_xml(path: str, root: Optional[str] = None) -> DatasetDescriptor:
    try:
        document = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as e:
        raise ConfigurationError(f'Could not read the dataset descriptor at {path}: {e}')

    parameters_element = document.find('Parameters')
    if parameters_element is None:
        raise ConfigurationError('The dataset descriptor is missing the <Parameters> element.')
    parameters = ContextParameterSpace([
        ContextParameter(_text(p, 'Name'), _int_list(_text(p, 'Values'), _text(p, 'Name')))
        for p in parameters_element.findall('Parameter')])

    result_folders: Dict[Stage, str] = {}
    folders_element = document.find('ResultFolders')
    if folders_element is not None:
        for child in folders_element:
            result_folders[Stage.parse(child.tag)] = (child.text or '').strip()

    return DatasetDescriptor(
        name=_text(document, 'Name'),
        root=root if root is not None else os.path.dirname(os.path.abspath(path)),
        subject_prefix=_text(document, 'SubjectPrefix'),
        data_folder_name=_text(document, 'DataFolderName'),
        model_folder_name=_text(document, 'ModelFolderName'),
        results_folder_name=_text(document, 'ResultsFolderName', config.DEFAULT_RESULTS_FOLDER_NAME),
        motion_folder_name=_text(document, 'MotionFolderName', config.DEFAULT_MOTION_FOLDER_NAME),
        forces_folder_name=_text(document, 'ForcesFolderName', config.DEFAULT_FORCES_FOLDER_NAME),
        adjustment_suffix=_text(document, 'AdjustmentSuffix', config.DEFAULT_ADJUSTMENT_SUFFIX),
        subjects=_int_list(_text(document, 'Subjects'), 'Subjects'),
        parameters=parameters,
        model_parameter=_text(document, 'ModelParameter'),
        model_map=_value_map(document, 'Models', 'Model'),
        load_map=_value_map(document, 'Loads', 'Load'),
        result_folders=result_folders)


def parse_descriptor_json(path: str, root: Optional[str] = None) -> DatasetDescriptor:
    try:
        with open(path) as f:
            blob = json.load(f)
    except (ValueError, OSError) as e:
        raise ConfigurationError(f'Could not read the dataset descriptor at {path}: {e}')
    try:
        parameters = ContextParameterSpace([ContextParameter(p['name'], p['values']) for p in blob['parameters']])
        result_folders = {Stage.parse(k): v for k, v in blob.get('resultFolders', {}).items()}
        return DatasetDescriptor(
            name=blob['name'],
            root=root if root is not None else os.path.dirname(os.path.abspath(path)),
            subject_prefix=blob['subjectPrefix'],
            data_folder_name=blob['dataFolderName'],
            model_folder_name=blob['modelFolderName'],
            results_folder_name=blob.get('resultsFolderName', config.DEFAULT_RESULTS_FOLDER_NAME),
            motion_folder_name=blob.get('motionFolderName', config.DEFAULT_MOTION_FOLDER_NAME),
            forces_folder_name=blob.get('forcesFolderName', config.DEFAULT_FORCES_FOLDER_NAME),
            adjustment_suffix=blob.get('adjustmentSuffix', config.DEFAULT_ADJUSTMENT_SUFFIX),
            subjects=blob['subjects'],
            parameters=parameters,
            model_parameter=blob['modelParameter'],
            model_map=blob['models'],
            load_map=blob['loads'],
            result_folders=result_folders)
    except KeyError as e:
        raise ConfigurationError(f'The dataset descriptor at {path} is missing the "{e.args[0]}" field.')
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f'The dataset descriptor at {path} is malformed: {e}')


def load_descriptor(path: str) -> DatasetDescriptor:
    """
    Load a descriptor from a file, or from the root folder of a dataset containing DatasetDescriptor.xml (or .json).
    """
    if os.path.isdir(path):
        root = path
        for file_name in [config.DESCRIPTOR_FILE_NAME, config.DESCRIPTOR_JSON_FILE_NAME]:
            if os.path.exists(os.path.join(root, file_name)):
                return load_descriptor(os.path.join(root, file_name))
        raise ConfigurationError(f'No {config.DESCRIPTOR_FILE_NAME} found in {root}')
    if path.endswith('.json'):
        return parse_descriptor_json(path)
    return parse_descriptor_xml(path)
