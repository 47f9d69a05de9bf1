"""
simulation.py
-------------
Description: The interface to the external musculoskeletal simulation engine. The batch engine only ever talks to a
             SimulationEngine; the numerical work happens inside OpenSim.
"""

import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from typing import List

from gaittoolbox import config
from gaittoolbox.helpers import trial_name, files_with_suffix

# Output naming conventions shared with the stage runner and the result loaders.
IK_PREFIX = 'ik'
IK_SUFFIX = '.mot'
MARKER_DATA_FOLDER = 'MarkerData'
INPUT_MARKERS_SUFFIX = 'raw_marker_locations.trc'
OUTPUT_MARKERS_SUFFIX = 'ik_model_marker_locations.sto'
RRA_KINEMATICS_SUFFIX = '_Kinematics_q.sto'
ID_OUTPUT_FILE = 'id.sto'
BK_POSITIONS_SUFFIX = '_BodyKinematics_pos_global.sto'
CMC_STATES_SUFFIX = '_states.sto'
ADJUSTMENT_FOLDER = 'adjustment'
ADJUSTED_MODEL_FILE = 'model_adjusted.osim'


class SimulationEngine(ABC):
    """
    Each method runs one analysis over every trial of a unit, writes its outputs beneath output_folder, and returns
    the paths of the files it wrote. Failures are raised as exceptions.
    """

    @abstractmethod
    def run_ik(self, model: str, marker_files: List[str], output_folder: str) -> List[str]:
        pass

    @abstractmethod
    def run_adjustment_rra(self, model: str, ik_file: str, grf_file: str, load_descriptor: str,
                           output_folder: str) -> str:
        """
        Runs RRA with mass adjustment on a single trial, and returns the path of the adjusted model file.
        """
        pass

    @abstractmethod
    def run_rra(self, model: str, ik_files: List[str], grf_files: List[str], load_descriptor: str,
                output_folder: str) -> List[str]:
        pass

    @abstractmethod
    def run_id(self, model: str, kinematics_files: List[str], grf_files: List[str], load_descriptor: str,
               output_folder: str) -> List[str]:
        """
        Writes one sub-run folder per trial, each containing exactly one output file.
        """
        pass

    @abstractmethod
    def run_body_kinematics(self, model: str, kinematics_files: List[str], output_folder: str) -> List[str]:
        pass

    @abstractmethod
    def run_cmc(self, model: str, kinematics_files: List[str], grf_files: List[str], load_descriptor: str,
                output_folder: str) -> List[str]:
        pass


class OpenSimEngine(SimulationEngine):
    """
    Runs each analysis with the OpenSim tools, configured from default setup files found in the folder named by the
    GAITTOOLBOX_DEFAULTS environment variable (IK/settings.xml, RRA/settings.xml, ID/settings.xml, BK/settings.xml,
    CMC/settings.xml).
    """

    def __init__(self, defaults_folder: str = None):
        self.defaults_folder = defaults_folder if defaults_folder is not None else config.defaults_folder()

    def _settings(self, tool: str) -> str:
        path = os.path.join(self.defaults_folder, tool, 'settings.xml')
        if not os.path.exists(path):
            raise FileNotFoundError(f'Missing the default {tool} settings file at {path}. Set the '
                                    f'{config.DEFAULTS_ENV_VAR} environment variable to the folder holding the '
                                    f'default tool settings.')
        return path

    @staticmethod
    def _osim():
        import opensim as osim
        osim.Logger.setLevelString('Error')
        return osim

    def _time_range(self, path: str):
        osim = self._osim()
        if path.lower().endswith('.trc'):
            times = osim.TimeSeriesTableVec3(path).getIndependentColumn()
            return times[0], times[-1]
        storage = osim.Storage(path)
        return storage.getFirstTime(), storage.getLastTime()

    def _external_loads(self, load_descriptor: str, grf_file: str, folder: str, name: str) -> str:
        osim = self._osim()
        loads = osim.ExternalLoads(load_descriptor, True)
        loads.setDataFileName(grf_file)
        path = os.path.join(folder, name + '_external_loads.xml')
        loads.printToXML(path)
        return path

    def run_ik(self, model: str, marker_files: List[str], output_folder: str) -> List[str]:
        osim = self._osim()
        marker_folder = os.path.join(output_folder, MARKER_DATA_FOLDER)
        os.makedirs(marker_folder, exist_ok=True)
        written: List[str] = []
        for i, marker_file in enumerate(marker_files):
            name = trial_name(i)
            tool = osim.InverseKinematicsTool(self._settings('IK'))
            osim_model = osim.Model(model)
            osim_model.initSystem()
            tool.setModel(osim_model)
            start, end = self._time_range(marker_file)
            output = os.path.join(output_folder, IK_PREFIX + name + IK_SUFFIX)
            tool.setMarkerDataFileName(os.path.abspath(marker_file))
            tool.setStartTime(start)
            tool.setEndTime(end)
            tool.set_report_marker_locations(True)
            tool.setResultsDir(marker_folder)
            tool.setOutputMotionFileName(output)
            tool.run()

            # Keep the input markers alongside the model markers, so the two can be compared later.
            raw_copy = os.path.join(marker_folder, name + INPUT_MARKERS_SUFFIX)
            shutil.copyfile(marker_file, raw_copy)
            model_markers = os.path.join(marker_folder, OUTPUT_MARKERS_SUFFIX)
            if os.path.exists(model_markers):
                shutil.move(model_markers, os.path.join(marker_folder, name + OUTPUT_MARKERS_SUFFIX))
            written.append(output)
        return written

    def run_adjustment_rra(self, model: str, ik_file: str, grf_file: str, load_descriptor: str,
                           output_folder: str) -> str:
        osim = self._osim()
        save_dir = os.path.join(output_folder, ADJUSTMENT_FOLDER)
        os.makedirs(save_dir, exist_ok=True)
        adjusted = os.path.join(save_dir, ADJUSTED_MODEL_FILE)
        with tempfile.TemporaryDirectory() as tmpdirname:
            tool = osim.RRATool(self._settings('RRA'), False)
            start, end = self._time_range(ik_file)
            tool.setName('adjustment')
            tool.setModelFilename(model)
            tool.setDesiredKinematicsFileName(ik_file)
            tool.setExternalLoadsFileName(self._external_loads(load_descriptor, grf_file, tmpdirname, 'adjustment'))
            tool.setInitialTime(start)
            tool.setFinalTime(end)
            tool.setResultsDir(save_dir)
            tool.setAdjustCOMToReduceResiduals(True)
            tool.setAdjustedCOMBody('torso')
            tool.setOutputModelFileName(adjusted)
            tool.run()
        return adjusted

    def run_rra(self, model: str, ik_files: List[str], grf_files: List[str], load_descriptor: str,
                output_folder: str) -> List[str]:
        osim = self._osim()
        with tempfile.TemporaryDirectory() as tmpdirname:
            for i, (ik_file, grf_file) in enumerate(zip(ik_files, grf_files)):
                name = trial_name(i)
                tool = osim.RRATool(self._settings('RRA'), False)
                start, end = self._time_range(ik_file)
                tool.setName(name)
                tool.setModelFilename(model)
                tool.setDesiredKinematicsFileName(ik_file)
                tool.setExternalLoadsFileName(self._external_loads(load_descriptor, grf_file, tmpdirname, name))
                tool.setInitialTime(start)
                tool.setFinalTime(end)
                tool.setResultsDir(output_folder)
                tool.setAdjustCOMToReduceResiduals(False)
                tool.run()
        return files_with_suffix(output_folder, RRA_KINEMATICS_SUFFIX)

    def run_id(self, model: str, kinematics_files: List[str], grf_files: List[str], load_descriptor: str,
               output_folder: str) -> List[str]:
        osim = self._osim()
        written: List[str] = []
        with tempfile.TemporaryDirectory() as tmpdirname:
            for i, (kinematics_file, grf_file) in enumerate(zip(kinematics_files, grf_files)):
                name = trial_name(i)
                sub_run = os.path.join(output_folder, name)
                os.makedirs(sub_run, exist_ok=True)
                tool = osim.InverseDynamicsTool(self._settings('ID'))
                start, end = self._time_range(kinematics_file)
                tool.setModelFileName(model)
                tool.setCoordinatesFileName(kinematics_file)
                tool.setExternalLoadsFileName(self._external_loads(load_descriptor, grf_file, tmpdirname, name))
                tool.setStartTime(start)
                tool.setEndTime(end)
                tool.setResultsDir(sub_run)
                tool.setOutputGenForceFileName(ID_OUTPUT_FILE)
                tool.run()
                written.append(os.path.join(sub_run, ID_OUTPUT_FILE))
        return written

    def run_body_kinematics(self, model: str, kinematics_files: List[str], output_folder: str) -> List[str]:
        osim = self._osim()
        for i, kinematics_file in enumerate(kinematics_files):
            tool = osim.AnalyzeTool(self._settings('BK'), False)
            start, end = self._time_range(kinematics_file)
            tool.setName(trial_name(i))
            tool.setModelFilename(model)
            tool.setCoordinatesFileName(kinematics_file)
            tool.setInitialTime(start)
            tool.setFinalTime(end)
            tool.setResultsDir(output_folder)
            tool.run()
        return files_with_suffix(output_folder, BK_POSITIONS_SUFFIX)

    def run_cmc(self, model: str, kinematics_files: List[str], grf_files: List[str], load_descriptor: str,
                output_folder: str) -> List[str]:
        osim = self._osim()
        with tempfile.TemporaryDirectory() as tmpdirname:
            for i, (kinematics_file, grf_file) in enumerate(zip(kinematics_files, grf_files)):
                name = trial_name(i)
                tool = osim.CMCTool(self._settings('CMC'), False)
                start, end = self._time_range(kinematics_file)
                tool.setName(name)
                tool.setModelFilename(model)
                tool.setDesiredKinematicsFileName(kinematics_file)
                tool.setExternalLoadsFileName(self._external_loads(load_descriptor, grf_file, tmpdirname, name))
                tool.setInitialTime(start)
                tool.setFinalTime(end)
                tool.setResultsDir(output_folder)
                tool.run()
        return files_with_suffix(output_folder, CMC_STATES_SUFFIX)
