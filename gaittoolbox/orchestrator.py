"""
orchestrator.py
---------------
Description: The batch scheduler. Expands a dataset into work items (subject x parameter values), runs an ordered
             list of stages over each item on a fixed pool of worker threads, stops early when memory runs low or a
             stage fails, and writes a checkpoint of the unfinished work so the batch can be resumed.
"""

import enum
import queue
import threading
import traceback
from typing import List, Dict, Tuple, Optional, Sequence, Union, Any

from gaittoolbox import config
from gaittoolbox.adjustment import ModelAdjustmentState
from gaittoolbox.checkpoint import Checkpoint
from gaittoolbox.data_unit import DataUnit, WorkItem
from gaittoolbox.descriptor import DatasetDescriptor
from gaittoolbox.exceptions import Error, ConfigurationError, PrerequisiteNotMet, AlreadyAdjusted
from gaittoolbox.filesystem import FileSystem, LocalFileSystem
from gaittoolbox.progress import ProgressReporter
from gaittoolbox.resources import MemoryGuard
from gaittoolbox.simulation import SimulationEngine
from gaittoolbox.stage_runner import StageRunner
from gaittoolbox.stages import Stage, parse_stage_list

ParameterRanges = Union[Dict[str, Sequence[int]], Sequence[Sequence[int]], None]


class ProcessingStatus(enum.Enum):
    PENDING = 0
    IN_PROGRESS = 1
    COMPLETED = 2
    FAILED = 3


class BatchReport:
    """
    The outcome of one call to BatchOrchestrator.run(). Every item of the work list is either completed, or pending
    (failed or never attempted) and saved in the checkpoint.
    """
    stages: List[Stage]
    work_list: List[WorkItem]
    status: Dict[WorkItem, ProcessingStatus]
    failures: Dict[WorkItem, BaseException]
    checkpoint_path: Optional[str]
    aborted: bool

    def __init__(self, stages: List[Stage], work_list: List[WorkItem]):
        self.stages = stages
        self.work_list = work_list
        self.status = {item: ProcessingStatus.PENDING for item in work_list}
        self.failures = {}
        self.checkpoint_path = None
        self.aborted = False

    @property
    def completed(self) -> List[WorkItem]:
        return [item for item in self.work_list if self.status[item] == ProcessingStatus.COMPLETED]

    @property
    def failed(self) -> List[WorkItem]:
        return [item for item in self.work_list if self.status[item] == ProcessingStatus.FAILED]

    @property
    def pending(self) -> List[WorkItem]:
        return [item for item in self.work_list if self.status[item] != ProcessingStatus.COMPLETED]

    @property
    def success(self) -> bool:
        return len(self.pending) == 0

    def __repr__(self) -> str:
        return f'BatchReport(completed={len(self.completed)}, failed={len(self.failed)}, ' \
               f'pending={len(self.pending)}, aborted={self.aborted})'


def _error_detail(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, Error):
        return error.get_error_dict()
    return {
        'type': error.__class__.__name__,
        'message': str(error),
        'original_message': ''.join(traceback.format_exception(type(error), error, error.__traceback__))
    }


def _failure_record(item: WorkItem, error: BaseException) -> Dict[str, Any]:
    return {'subject': item[0], 'parameters': list(item[1]), 'error': _error_detail(error)}


class BatchOrchestrator:
    descriptor: DatasetDescriptor
    runner: StageRunner
    num_workers: int
    memory_guard: MemoryGuard
    progress: ProgressReporter
    checkpoint_folder: str

    def __init__(self,
                 descriptor: DatasetDescriptor,
                 engine: SimulationEngine,
                 num_workers: int = config.DEFAULT_NUM_WORKERS,
                 memory_guard: Optional[MemoryGuard] = None,
                 progress: Optional[ProgressReporter] = None,
                 fs: Optional[FileSystem] = None,
                 checkpoint_folder: Optional[str] = None,
                 skip_completed_stages: bool = False):
        if num_workers < 1:
            raise ConfigurationError(f'At least one worker is required, got {num_workers}.')
        self.descriptor = descriptor
        self.runner = StageRunner(engine, ModelAdjustmentState(descriptor.root))
        self.num_workers = num_workers
        self.memory_guard = memory_guard if memory_guard is not None else MemoryGuard()
        self.progress = progress if progress is not None else ProgressReporter()
        self.fs = fs if fs is not None else LocalFileSystem()
        self.checkpoint_folder = checkpoint_folder if checkpoint_folder is not None else descriptor.root
        self.skip_completed_stages = skip_completed_stages
        self.last_report: Optional[BatchReport] = None

    # Work lists

    def expand_work_list(self, subjects: Optional[Sequence[int]] = None,
                         parameter_ranges: ParameterRanges = None) -> List[WorkItem]:
        """
        The cross product of the subjects and every combination of parameter values. Subjects vary slowest, then
        parameters in their declared order, with the last parameter varying fastest. Leaving out subjects or a
        parameter's range uses everything the descriptor declares.
        """
        if subjects is None:
            subjects = self.descriptor.subjects
        subjects = [self.descriptor.validate_subject(subject) for subject in subjects]
        if len(set(subjects)) != len(subjects):
            raise ConfigurationError(f'Subjects are listed more than once: {subjects}')

        space = self.descriptor.parameters
        if parameter_ranges is not None:
            if not isinstance(parameter_ranges, dict):
                if len(parameter_ranges) != len(space):
                    raise ConfigurationError(f'Got {len(parameter_ranges)} parameter ranges, but this dataset has '
                                             f'{len(space)} context parameters ({", ".join(space.names)}).')
                parameter_ranges = dict(zip(space.names, parameter_ranges))
            space = space.restrict(parameter_ranges)

        return [(subject, values) for subject in subjects for values in space.combinations()]

    def validate_work_list(self, work_list: Sequence[Tuple[int, Sequence[int]]]) -> List[WorkItem]:
        validated: List[WorkItem] = []
        for subject, values in work_list:
            validated.append((self.descriptor.validate_subject(subject), self.descriptor.parameters.validate(values)))
        if len(set(validated)) != len(validated):
            raise ConfigurationError('The work list contains the same element more than once, so two workers could '
                                     'end up writing to the same folder.')
        return validated

    def make_unit(self, item: WorkItem) -> DataUnit:
        return DataUnit(self.descriptor, item[0], item[1], self.fs)

    def describe(self, item: WorkItem) -> str:
        return str(self.make_unit(item))

    def survey(self, work_list: Optional[Sequence[WorkItem]] = None) -> Dict[WorkItem, Dict[Stage, bool]]:
        """
        Probe the filesystem for which stages have completed on each item.
        """
        if work_list is None:
            work_list = self.expand_work_list()
        return {item: self.make_unit(item).refresh_state() for item in self.validate_work_list(work_list)}

    # Model adjustment

    def perform_model_adjustment(self, subjects: Optional[Sequence[int]] = None,
                                 reference_values: Optional[Dict[str, int]] = None) -> List[str]:
        """
        The one-time model adjustment pass. This runs sequentially, subject by subject, for each distinct model
        variant, and must finish before any parallel batch uses the adjusted models. The trial used for each variant
        takes the first permitted value of every other parameter, unless reference_values says otherwise.

        Subjects that were adjusted by an earlier pass are skipped. Each subject is recorded as adjusted once all of
        its model variants are done, and the dataset is only marked as adjusted once every subject is.
        """
        state = self.runner.adjustment_state
        if subjects is None:
            subjects = self.descriptor.subjects
        subjects = [self.descriptor.validate_subject(subject) for subject in subjects]
        remaining = [subject for subject in subjects if not state.is_adjusted(subject)]
        if len(remaining) == 0:
            raise AlreadyAdjusted(f'Model adjustment was already completed for subject(s) {subjects} of dataset '
                                  f'"{self.descriptor.name}".')
        for subject in subjects:
            if subject not in remaining:
                print(f'[{self.descriptor.subject_prefix}{subject}] Models already adjusted, skipping', flush=True)

        space = self.descriptor.parameters
        base = [p.values[0] for p in space.parameters]
        if reference_values is not None:
            for name, value in reference_values.items():
                base[space.index_of(name)] = value
        model_index = self.descriptor.model_parameter_index

        self.progress.message('Beginning model adjustment.')
        adjusted_models: List[str] = []
        for subject in remaining:
            subject_models: List[str] = []
            for model_value in self.descriptor.model_variants():
                values = list(base)
                values[model_index] = model_value
                unit = DataUnit(self.descriptor, subject, values, self.fs)
                if unit.stage_completed(Stage.ADJUSTMENT):
                    print(f'[{unit}] Adjusted model already exists at {unit.adjusted_model_path}, skipping',
                          flush=True)
                else:
                    self.runner.run(Stage.ADJUSTMENT, unit)
                subject_models.append(unit.adjusted_model_path)
            state.mark_adjusted([subject], subject_models, self.descriptor.subjects)
            adjusted_models += subject_models
        self.progress.message('Model adjustment complete.')
        return adjusted_models

    # Batch processing

    def process_item(self, item: WorkItem, stages: List[Stage]):
        unit = self.make_unit(item)
        unit.refresh_state()
        for stage in stages:
            if self.skip_completed_stages and unit.stage_completed(stage):
                print(f'[{unit}] {stage.label} already completed, skipping', flush=True)
                continue
            self.runner.run(stage, unit)

    def _worker(self, worker_id: int, stages: List[Stage], work_queue: queue.Queue, messages: queue.Queue):
        item = None
        try:
            while True:
                item = work_queue.get()
                if item is None:
                    break
                messages.put(('started', worker_id, item, None))
                try:
                    self.process_item(item, stages)
                except Exception as e:
                    messages.put(('failed', worker_id, item, e))
                else:
                    messages.put(('completed', worker_id, item, None))
                item = None
        except BaseException as e:
            # Anything escaping process_item kills this worker, so tell the supervisor before exiting
            messages.put(('crashed', worker_id, item, e))

    def run(self, stages, work_list: Optional[Sequence[Tuple[int, Sequence[int]]]] = None) -> BatchReport:
        """
        Apply the stages, in order, to every item of the work list (the whole dataset if no work list is given).

        Items are handed out one at a time, as workers become free. A PrerequisiteNotMet on an item only fails that
        item. Any other error, or running low on memory, stops new items from being dispatched; items already in
        flight are allowed to finish, a checkpoint holding every unfinished item is written, and the original error
        is re-raised.
        """
        stages = parse_stage_list(stages)
        if Stage.ADJUSTMENT in stages:
            raise ConfigurationError('Model adjustment cannot be part of a parallel batch. Run '
                                     'perform_model_adjustment() first.')
        if work_list is None:
            work_list = self.expand_work_list()
        work_list = self.validate_work_list(work_list)

        report = BatchReport(stages, work_list)
        self.last_report = report
        self.progress.begin(len(work_list))

        work_queue: queue.Queue = queue.Queue()
        messages: queue.Queue = queue.Queue()
        remaining = iter(work_list)

        def dispatch() -> bool:
            item = next(remaining, None)
            if item is None:
                return False
            work_queue.put(item)
            return True

        workers = [threading.Thread(target=self._worker, args=(i, stages, work_queue, messages), daemon=True)
                   for i in range(min(self.num_workers, max(len(work_list), 1)))]
        for worker in workers:
            worker.start()

        # Only this thread ever touches the report or the progress reporter.
        abort: Optional[BaseException] = None
        abort_item: Optional[WorkItem] = None
        in_flight = 0
        alive = len(workers)
        for _ in workers:
            if dispatch():
                in_flight += 1
        while in_flight > 0 and alive > 0:
            kind, worker_id, item, payload = messages.get()
            if kind == 'started':
                report.status[item] = ProcessingStatus.IN_PROGRESS
                continue
            if kind == 'crashed':
                alive -= 1
                if abort is None:
                    abort, abort_item = payload, item
                if item is None:
                    continue
            in_flight -= 1
            if kind == 'completed':
                report.status[item] = ProcessingStatus.COMPLETED
                self.progress.advance()
            elif kind == 'failed':
                report.status[item] = ProcessingStatus.FAILED
                report.failures[item] = payload
                if isinstance(payload, PrerequisiteNotMet):
                    print(f'[{self.describe(item)}] Skipped: {payload.message}', flush=True)
                elif abort is None:
                    abort, abort_item = payload, item
            elif kind == 'crashed':
                report.status[item] = ProcessingStatus.FAILED
                report.failures[item] = payload
                # The crashed worker takes nothing more from the queue
                continue
            # Sample memory after every finished item, whether it completed or failed
            if abort is None:
                try:
                    self.memory_guard.check()
                except Error as e:
                    abort, abort_item = e, item
            if abort is None and dispatch():
                in_flight += 1
        for _ in workers:
            work_queue.put(None)
        for worker in workers:
            worker.join()

        pending = report.pending
        if len(pending) > 0:
            checkpoint = Checkpoint(
                dataset_name=self.descriptor.name,
                stages=stages,
                pending=pending,
                completed_count=len(report.completed),
                failures=[_failure_record(item, error) for item, error in report.failures.items()],
                reason=_error_detail(abort) if abort is not None else None)
            report.checkpoint_path = checkpoint.save(self.checkpoint_folder)

        if abort is not None:
            report.aborted = True
            self.progress.failed(self.describe(abort_item) if abort_item is not None else 'worker thread')
            if report.checkpoint_path is not None:
                self.progress.message(f'Checkpoint of {len(pending)} unfinished element(s) written to '
                                      f'{report.checkpoint_path}')
            raise abort

        if len(report.failures) > 0:
            self.progress.message(f'{len(report.failures)} element(s) failed. Checkpoint written to '
                                  f'{report.checkpoint_path}')
        else:
            self.progress.complete()
        return report

    def resume(self, checkpoint_path: str) -> BatchReport:
        checkpoint = Checkpoint.load(checkpoint_path)
        if checkpoint.dataset_name != self.descriptor.name:
            raise ConfigurationError(f'The checkpoint at {checkpoint_path} belongs to dataset '
                                     f'"{checkpoint.dataset_name}", not "{self.descriptor.name}".')
        self.progress.message(f'Resuming {len(checkpoint.pending)} element(s) from {checkpoint_path}')
        return self.run(checkpoint.stages, checkpoint.pending)
