"""
stage_runner.py
---------------
Description: Runs a single analysis stage against a single DataUnit, after checking that every stage it depends on
             has completed. The runner holds no mutable state of its own, so one instance can be shared between
             worker threads operating on different units.
"""

import traceback
import textwrap
from typing import List

from gaittoolbox.adjustment import ModelAdjustmentState
from gaittoolbox.data_unit import DataUnit
from gaittoolbox.exceptions import Error, PrerequisiteNotMet, AlreadyAdjusted, StageFailure
from gaittoolbox.simulation import SimulationEngine, IK_PREFIX, IK_SUFFIX, RRA_KINEMATICS_SUFFIX
from gaittoolbox.stages import Stage, DATASET_WIDE, prerequisites


# This metaclass wraps the stage methods of the StageRunner so that anything the simulation engine raises comes out
# as a StageFailure for that stage and unit. Errors raised by the toolbox itself pass through untouched.
class ExceptionHandlingMeta(type):
    # Only the methods in this map will be wrapped with a try-except block.
    EXCEPTION_MAP = {
        'run_ik': Stage.IK,
        'run_adjustment': Stage.ADJUSTMENT,
        'run_rra': Stage.RRA,
        'run_id': Stage.ID,
        'run_body_kinematics': Stage.BK,
        'run_cmc': Stage.CMC
    }

    def __new__(cls, name, bases, attrs):
        for attr_name, attr_value in attrs.items():
            if attr_name not in cls.EXCEPTION_MAP:
                continue
            if callable(attr_value):
                attrs[attr_name] = cls.wrap_method(attr_value)
        return super().__new__(cls, name, bases, attrs)

    @staticmethod
    def wrap_method(method):
        stage = ExceptionHandlingMeta.EXCEPTION_MAP[method.__name__]

        def wrapper(self, unit, *args, **kwargs):
            try:
                return method(self, unit, *args, **kwargs)
            except Error:
                raise
            except Exception as e:
                stack_trace = textwrap.indent(traceback.format_exc(), '  ')
                msg = f"Exception caught in {method.__name__}: {e}\n{stack_trace}"
                raise StageFailure(stage, unit, msg) from e

        wrapper.__name__ = method.__name__
        wrapper.__doc__ = method.__doc__
        return wrapper


class StageRunner(metaclass=ExceptionHandlingMeta):
    engine: SimulationEngine
    adjustment_state: ModelAdjustmentState

    def __init__(self, engine: SimulationEngine, adjustment_state: ModelAdjustmentState):
        self.engine = engine
        self.adjustment_state = adjustment_state

    def run(self, stage: Stage, unit: DataUnit):
        """
        Run one stage on one unit. Raises PrerequisiteNotMet (before touching the filesystem) if a required stage has
        not completed, and StageFailure if the engine fails or leaves no output behind.
        """
        stage = Stage.parse(stage)
        self.check_prerequisites(stage, unit)
        print(f'[{unit}] Running {stage.label}', flush=True)
        if stage == Stage.IK:
            self.run_ik(unit)
        elif stage == Stage.ADJUSTMENT:
            self.run_adjustment(unit)
        elif stage == Stage.RRA:
            self.run_rra(unit)
        elif stage == Stage.ID:
            self.run_id(unit)
        elif stage == Stage.BK:
            self.run_body_kinematics(unit)
        elif stage == Stage.CMC:
            self.run_cmc(unit)

        unit.refresh_state()
        if not unit.stage_completed(stage):
            raise StageFailure(stage, unit, f'{stage.label} finished without writing any output to the expected '
                                            f'location for {unit}.')
        print(f'[{unit}] Finished {stage.label}', flush=True)

    def is_satisfied(self, stage: Stage, unit: DataUnit) -> bool:
        if stage in DATASET_WIDE:
            # The subject must be recorded as adjusted, and this unit's adjusted model must exist
            return self.adjustment_state.is_adjusted(unit.subject) and unit.stage_completed(stage)
        return unit.stage_completed(stage)

    def check_prerequisites(self, stage: Stage, unit: DataUnit):
        if stage == Stage.ADJUSTMENT:
            # Kinematics is run on demand by the adjustment step, so the only thing to rule out is a repeat.
            if self.adjustment_state.is_adjusted(unit.subject):
                raise AlreadyAdjusted(f'Refusing to adjust the model for {unit} a second time.')
            return
        requires_all, requires_any = prerequisites(stage)
        for required in requires_all:
            if not self.is_satisfied(required, unit):
                raise PrerequisiteNotMet(stage, required, f'{stage.label} on {unit} requires {required.label}.')
        if len(requires_any) > 0 and not any(self.is_satisfied(s, unit) for s in requires_any):
            raise PrerequisiteNotMet(stage, requires_any[-1],
                                     f'{stage.label} on {unit} requires one of: '
                                     f'{", ".join(s.label for s in requires_any)}.')

    # Inputs

    def model_for(self, unit: DataUnit) -> str:
        if self.is_satisfied(Stage.ADJUSTMENT, unit):
            return unit.adjusted_model_path
        return unit.model_path

    def ik_files(self, unit: DataUnit) -> List[str]:
        return unit.list_files(unit.stage_folder(Stage.IK), IK_SUFFIX, prefix=IK_PREFIX)

    def rra_files(self, unit: DataUnit) -> List[str]:
        return unit.list_files(unit.stage_folder(Stage.RRA), RRA_KINEMATICS_SUFFIX)

    def _require_inputs(self, stage: Stage, unit: DataUnit, files: List[str], what: str, folder: str) -> List[str]:
        if len(files) == 0:
            raise StageFailure(stage, unit, f'No {what} found in {folder}.')
        return files

    def _output_folder(self, stage: Stage, unit: DataUnit) -> str:
        folder = unit.stage_folder(stage)
        unit.fs.makedirs(folder)
        return folder

    # Stages

    def run_ik(self, unit: DataUnit):
        marker_files = self._require_inputs(Stage.IK, unit, unit.marker_files(), 'marker (.trc) files',
                                            unit.motion_folder)
        self.engine.run_ik(unit.model_path, marker_files, self._output_folder(Stage.IK, unit))

    def run_adjustment(self, unit: DataUnit):
        if not unit.stage_completed(Stage.IK):
            self.run(Stage.IK, unit)
        ik_files = self._require_inputs(Stage.ADJUSTMENT, unit, self.ik_files(unit), 'IK results',
                                        unit.stage_folder(Stage.IK))
        grf_files = self._require_inputs(Stage.ADJUSTMENT, unit, unit.force_files(), 'force (.mot) files',
                                         unit.forces_folder)
        adjusted_model = self.engine.run_adjustment_rra(unit.model_path, ik_files[0], grf_files[0],
                                                        unit.load_descriptor_path,
                                                        self._output_folder(Stage.ADJUSTMENT, unit))
        unit.fs.copy_file(adjusted_model, unit.adjusted_model_path)

    def run_rra(self, unit: DataUnit):
        ik_files = self._require_inputs(Stage.RRA, unit, self.ik_files(unit), 'IK results',
                                        unit.stage_folder(Stage.IK))
        grf_files = self._require_inputs(Stage.RRA, unit, unit.force_files(), 'force (.mot) files',
                                         unit.forces_folder)
        self.engine.run_rra(unit.adjusted_model_path, ik_files, grf_files, unit.load_descriptor_path,
                            self._output_folder(Stage.RRA, unit))

    def run_id(self, unit: DataUnit):
        kinematics = self._require_inputs(Stage.ID, unit, self.rra_files(unit), 'RRA kinematics',
                                          unit.stage_folder(Stage.RRA))
        grf_files = self._require_inputs(Stage.ID, unit, unit.force_files(), 'force (.mot) files',
                                         unit.forces_folder)
        self.engine.run_id(unit.adjusted_model_path, kinematics, grf_files, unit.load_descriptor_path,
                           self._output_folder(Stage.ID, unit))

    def run_body_kinematics(self, unit: DataUnit):
        # Prefer the RRA kinematics (and the adjusted model) when they exist.
        if unit.stage_completed(Stage.RRA):
            model = unit.adjusted_model_path
            kinematics = self.rra_files(unit)
        else:
            model = self.model_for(unit)
            kinematics = self.ik_files(unit)
        kinematics = self._require_inputs(Stage.BK, unit, kinematics, 'kinematics', unit.results_folder)
        self.engine.run_body_kinematics(model, kinematics, self._output_folder(Stage.BK, unit))

    def run_cmc(self, unit: DataUnit):
        kinematics = self._require_inputs(Stage.CMC, unit, self.rra_files(unit), 'RRA kinematics',
                                          unit.stage_folder(Stage.RRA))
        grf_files = self._require_inputs(Stage.CMC, unit, unit.force_files(), 'force (.mot) files',
                                         unit.forces_folder)
        self.engine.run_cmc(self.model_for(unit), kinematics, grf_files, unit.load_descriptor_path,
                            self._output_folder(Stage.CMC, unit))
