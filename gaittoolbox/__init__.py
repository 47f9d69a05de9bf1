from gaittoolbox.stages import Stage
from gaittoolbox.descriptor import ContextParameter, ContextParameterSpace, DatasetDescriptor, load_descriptor
from gaittoolbox.data_unit import DataUnit
from gaittoolbox.simulation import SimulationEngine, OpenSimEngine
from gaittoolbox.stage_runner import StageRunner
from gaittoolbox.checkpoint import Checkpoint
from gaittoolbox.orchestrator import BatchOrchestrator, BatchReport, ProcessingStatus
from gaittoolbox.results import ResultAggregator, ResultTable, ResultCategory
from gaittoolbox.dataset import Dataset
