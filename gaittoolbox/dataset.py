"""
dataset.py
----------
Description: The entry point used by processing scripts. A Dataset opens a dataset root folder, optionally narrows
             it down to a subset of subjects and parameter values, and then adjusts models, processes stages, resumes
             interrupted batches, and loads results over that subset.

             Typical use:

                 dataset = Dataset('/data/exo', engine=OpenSimEngine(), Assistance=[1, 2])
                 dataset.perform_model_adjustment()
                 dataset.process(['IK', 'RRA', 'BK', 'ID'])
                 results = dataset.load(['GRF', 'IK', 'BK', 'ID'])
"""

from typing import List, Dict, Optional, Sequence

from gaittoolbox import config
from gaittoolbox.checkpoint import latest_checkpoint
from gaittoolbox.data_unit import DataUnit, WorkItem
from gaittoolbox.descriptor import DatasetDescriptor, load_descriptor
from gaittoolbox.exceptions import ConfigurationError
from gaittoolbox.orchestrator import BatchOrchestrator, BatchReport
from gaittoolbox.progress import ProgressReporter
from gaittoolbox.resources import MemoryGuard
from gaittoolbox.results import ResultAggregator, ResultTable
from gaittoolbox.simulation import SimulationEngine, OpenSimEngine


class Dataset:
    descriptor: DatasetDescriptor
    subjects: List[int]
    parameter_ranges: Dict[str, Sequence[int]]
    orchestrator: BatchOrchestrator
    aggregator: ResultAggregator

    def __init__(self,
                 root: str,
                 subjects: Optional[Sequence[int]] = None,
                 engine: Optional[SimulationEngine] = None,
                 descriptor: Optional[DatasetDescriptor] = None,
                 num_workers: int = config.DEFAULT_NUM_WORKERS,
                 memory_threshold: float = config.DEFAULT_MEMORY_THRESHOLD,
                 progress: Optional[ProgressReporter] = None,
                 **parameter_ranges: Sequence[int]):
        self.descriptor = descriptor if descriptor is not None else load_descriptor(root)
        self.subjects = list(subjects) if subjects is not None else list(self.descriptor.subjects)
        for name in parameter_ranges:
            self.descriptor.parameters.index_of(name)
        self.parameter_ranges = {name: list(values) for name, values in parameter_ranges.items()}
        self.orchestrator = BatchOrchestrator(
            self.descriptor,
            engine if engine is not None else OpenSimEngine(),
            num_workers=num_workers,
            memory_guard=MemoryGuard(memory_threshold),
            progress=progress)
        self.aggregator = ResultAggregator(self.descriptor)
        # Fail on a bad subset straight away, rather than at the start of a long batch.
        self.work_list()

    @property
    def name(self) -> str:
        return self.descriptor.name

    def work_list(self) -> List[WorkItem]:
        return self.orchestrator.expand_work_list(self.subjects, self.parameter_ranges or None)

    def unit(self, subject: int, **named_values: int) -> DataUnit:
        return DataUnit.from_named(self.descriptor, subject, **named_values)

    def perform_model_adjustment(self, **reference_values: int) -> List[str]:
        return self.orchestrator.perform_model_adjustment(self.subjects, reference_values or None)

    def process(self, stages) -> BatchReport:
        return self.orchestrator.run(stages, self.work_list())

    def resume(self, checkpoint_path: Optional[str] = None) -> BatchReport:
        """
        Resume from a checkpoint, or from the most recent checkpoint in the dataset root if none is given.
        """
        if checkpoint_path is None:
            checkpoint_path = latest_checkpoint(self.orchestrator.checkpoint_folder)
            if checkpoint_path is None:
                raise ConfigurationError(f'No checkpoint found in {self.orchestrator.checkpoint_folder}.')
        return self.orchestrator.resume(checkpoint_path)

    def status(self):
        return self.orchestrator.survey(self.work_list())

    def load(self, categories) -> ResultTable:
        return self.aggregator.load(categories, self.work_list())

    def __repr__(self) -> str:
        return f'Dataset({self.name!r}, subjects={self.subjects}, parameters={self.parameter_ranges})'
