import os
import threading
from typing import List, Dict, Tuple, Callable, Optional, Sequence

from gaittoolbox.data_unit import DataUnit
from gaittoolbox.descriptor import load_descriptor, DatasetDescriptor
from gaittoolbox.filesystem import FileSystem
from gaittoolbox.helpers import trial_name
from gaittoolbox.simulation import SimulationEngine, IK_PREFIX, IK_SUFFIX, MARKER_DATA_FOLDER, \
    INPUT_MARKERS_SUFFIX, OUTPUT_MARKERS_SUFFIX, RRA_KINEMATICS_SUFFIX, ID_OUTPUT_FILE, BK_POSITIONS_SUFFIX, \
    CMC_STATES_SUFFIX, ADJUSTMENT_FOLDER, ADJUSTED_MODEL_FILE


STO_TEMPLATE = 'results\nversion=1\nnRows=4\nnColumns=3\ninDegrees=no\nendheader\n' \
               'time\tq1\tq2\n0.00\t0.0\t1.0\n0.01\t1.0\t2.0\n0.02\t2.0\t3.0\n0.03\t3.0\t4.0\n'

TRC_TEMPLATE = 'PathFileType\t4\t(X/Y/Z)\tmarkers.trc\n' \
               'DataRate\tCameraRate\tNumFrames\tNumMarkers\tUnits\tOrigDataRate\tOrigDataStartFrame\t' \
               'OrigNumFrames\n' \
               '100\t100\t3\t2\tmm\t100\t1\t3\n' \
               'Frame#\tTime\tRASI\t\t\tLASI\t\t\n' \
               '\t\tX1\tY1\tZ1\tX2\tY2\tZ2\n' \
               '\n' \
               '1\t0.00\t1.0\t2.0\t3.0\t4.0\t5.0\t6.0\n' \
               '2\t0.01\t1.1\t2.1\t3.1\t4.1\t5.1\t6.1\n' \
               '3\t0.02\t1.2\t2.2\t3.2\t4.2\t5.2\t6.2\n'

DESCRIPTOR_TEMPLATE = '''<?xml version="1.0" encoding="UTF-8"?>
<DatasetDescriptor>
    <Name>{name}</Name>
    <SubjectPrefix>S</SubjectPrefix>
    <DataFolderName>Data</DataFolderName>
    <ModelFolderName>Models</ModelFolderName>
    <ResultsFolderName>Results</ResultsFolderName>
    <AdjustmentSuffix>_adjusted</AdjustmentSuffix>
    <Subjects>{subjects}</Subjects>
    <Parameters>
{parameters}
    </Parameters>
    <ModelParameter>{model_parameter}</ModelParameter>
    <Models>
{models}
    </Models>
    <Loads>
{loads}
    </Loads>
</DatasetDescriptor>
'''


def write_file(path: str, text: str):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        f.write(text)


def write_descriptor(root: str,
                     name: str = 'TestDataset',
                     subjects: Sequence[int] = (1, 2),
                     parameters: Sequence[Tuple[str, Sequence[int]]] = (('Speed', (1, 2, 3)),),
                     model_parameter: str = 'Speed',
                     models: Optional[Dict[str, Sequence[int]]] = None,
                     loads: Optional[Dict[str, Sequence[int]]] = None) -> str:
    model_values = dict(parameters)[model_parameter]
    if models is None:
        models = {'model.osim': model_values}
    if loads is None:
        loads = {'loads.xml': model_values}
    parameter_xml = '\n'.join(f'        <Parameter><Name>{n}</Name><Values>{" ".join(map(str, v))}</Values>'
                              f'</Parameter>' for n, v in parameters)
    model_xml = '\n'.join(f'        <Model><Name>{n}</Name><ParameterValues>{" ".join(map(str, v))}'
                          f'</ParameterValues></Model>' for n, v in models.items())
    load_xml = '\n'.join(f'        <Load><Name>{n}</Name><ParameterValues>{" ".join(map(str, v))}'
                         f'</ParameterValues></Load>' for n, v in loads.items())
    path = os.path.join(root, 'DatasetDescriptor.xml')
    write_file(path, DESCRIPTOR_TEMPLATE.format(name=name, subjects=' '.join(map(str, subjects)),
                                                parameters=parameter_xml, model_parameter=model_parameter,
                                                models=model_xml, loads=load_xml))
    return path


def make_dataset(root: str, n_trials: int = 2, **kwargs) -> DatasetDescriptor:
    """
    Writes a descriptor plus model files and raw input data for every unit of the dataset, and loads it back.
    """
    write_descriptor(root, **kwargs)
    descriptor = load_descriptor(root)
    for subject in descriptor.subjects:
        model_folder = os.path.join(root, f'{descriptor.subject_prefix}{subject}', descriptor.model_folder_name)
        for file_name in set(descriptor.model_map.values()) | set(descriptor.load_map.values()):
            write_file(os.path.join(model_folder, file_name), f'<OpenSimDocument name="{file_name}"/>\n')
        for values in descriptor.parameters.combinations():
            unit = DataUnit(descriptor, subject, values)
            for i in range(n_trials):
                write_file(os.path.join(unit.motion_folder, trial_name(i) + '.trc'), TRC_TEMPLATE)
                write_file(os.path.join(unit.forces_folder, trial_name(i) + '.mot'), STO_TEMPLATE)
    return descriptor


class FakeEngine(SimulationEngine):
    """
    Writes placeholder output files following the same naming conventions as the OpenSim engine. fail_if is called
    with (method name, output folder) and makes the call raise error_type when it returns True.
    """

    def __init__(self, fail_if: Optional[Callable[[str, str], bool]] = None, write_output: bool = True,
                 error_type: type = RuntimeError):
        self.fail_if = fail_if
        self.error_type = error_type
        self.write_output = write_output
        self.calls: List[Tuple[str, str, str]] = []
        self.lock = threading.Lock()

    def _record(self, method: str, model: str, output_folder: str):
        with self.lock:
            self.calls.append((method, model, output_folder))
        if self.fail_if is not None and self.fail_if(method, output_folder):
            raise self.error_type(f'Simulated engine failure in {method} for {output_folder}')

    def calls_to(self, method: str) -> List[Tuple[str, str, str]]:
        return [call for call in self.calls if call[0] == method]

    def _write(self, path: str, text: str = STO_TEMPLATE) -> str:
        if self.write_output:
            write_file(path, text)
        return path

    def run_ik(self, model, marker_files, output_folder):
        self._record('run_ik', model, output_folder)
        written = []
        for i, marker_file in enumerate(marker_files):
            name = trial_name(i)
            written.append(self._write(os.path.join(output_folder, IK_PREFIX + name + IK_SUFFIX)))
            self._write(os.path.join(output_folder, MARKER_DATA_FOLDER, name + INPUT_MARKERS_SUFFIX), TRC_TEMPLATE)
            self._write(os.path.join(output_folder, MARKER_DATA_FOLDER, name + OUTPUT_MARKERS_SUFFIX))
        return written

    def run_adjustment_rra(self, model, ik_file, grf_file, load_descriptor, output_folder):
        self._record('run_adjustment_rra', model, output_folder)
        return self._write(os.path.join(output_folder, ADJUSTMENT_FOLDER, ADJUSTED_MODEL_FILE),
                           '<OpenSimDocument name="adjusted"/>\n')

    def run_rra(self, model, ik_files, grf_files, load_descriptor, output_folder):
        self._record('run_rra', model, output_folder)
        return [self._write(os.path.join(output_folder, trial_name(i) + RRA_KINEMATICS_SUFFIX))
                for i in range(len(ik_files))]

    def run_id(self, model, kinematics_files, grf_files, load_descriptor, output_folder):
        self._record('run_id', model, output_folder)
        return [self._write(os.path.join(output_folder, trial_name(i), ID_OUTPUT_FILE))
                for i in range(len(kinematics_files))]

    def run_body_kinematics(self, model, kinematics_files, output_folder):
        self._record('run_body_kinematics', model, output_folder)
        return [self._write(os.path.join(output_folder, trial_name(i) + BK_POSITIONS_SUFFIX))
                for i in range(len(kinematics_files))]

    def run_cmc(self, model, kinematics_files, grf_files, load_descriptor, output_folder):
        self._record('run_cmc', model, output_folder)
        return [self._write(os.path.join(output_folder, trial_name(i) + CMC_STATES_SUFFIX))
                for i in range(len(kinematics_files))]


class InMemoryFileSystem(FileSystem):
    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files) if files is not None else {}
        self.dirs = set()

    def _prefix(self, path: str) -> str:
        return path.rstrip(os.sep) + os.sep

    def exists(self, path: str) -> bool:
        return path in self.files or self.is_dir(path)

    def is_dir(self, path: str) -> bool:
        if path in self.files:
            return False
        prefix = self._prefix(path)
        return path in self.dirs or any(p.startswith(prefix) for p in list(self.files) + list(self.dirs))

    def listdir(self, path: str) -> List[str]:
        prefix = self._prefix(path)
        children = set()
        for p in list(self.files) + list(self.dirs):
            if p.startswith(prefix):
                children.add(p[len(prefix):].split(os.sep)[0])
        return sorted(children)

    def makedirs(self, path: str):
        self.dirs.add(path.rstrip(os.sep))

    def copy_file(self, source: str, destination: str):
        self.files[destination] = self.files[source]
