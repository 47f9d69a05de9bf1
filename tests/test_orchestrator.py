import os
import shutil
import tempfile
import unittest
from typing import List, Tuple

from gaittoolbox.checkpoint import Checkpoint
from gaittoolbox.exceptions import ConfigurationError, StageFailure, ResourceExhausted, AlreadyAdjusted
from gaittoolbox.orchestrator import BatchOrchestrator, ProcessingStatus
from gaittoolbox.progress import ProgressReporter
from gaittoolbox.resources import MemoryGuard
from gaittoolbox.stages import Stage
from tests.fakes import FakeEngine, make_dataset


def plenty_of_memory():
    return 8 * 1024 ** 3, 16 * 1024 ** 3


class LowMemoryAfter:
    """
    Reports plenty of memory for the first n samples, then 5% available.
    """
    def __init__(self, n: int):
        self.n = n
        self.samples = 0

    def __call__(self):
        self.samples += 1
        if self.samples > self.n:
            return 5, 100
        return 50, 100


class WorkerCrash(BaseException):
    pass


class TestBatchOrchestrator(unittest.TestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.descriptor = make_dataset(self.root, n_trials=1)
        self.engine = FakeEngine()
        self.counts: List[Tuple[int, int]] = []
        self.orchestrator = self.make_orchestrator(self.engine)

    def tearDown(self):
        shutil.rmtree(self.root)

    def make_orchestrator(self, engine, num_workers=1, sampler=plenty_of_memory, **kwargs):
        progress = ProgressReporter(callback=lambda count, total: self.counts.append((count, total)), verbose=False)
        return BatchOrchestrator(self.descriptor, engine, num_workers=num_workers,
                                 memory_guard=MemoryGuard(0.10, sampler), progress=progress, **kwargs)

    def checkpoints(self) -> List[str]:
        return sorted(f for f in os.listdir(self.root) if f.startswith('checkpoint_'))

    def test_expand_two_subjects_three_speeds(self):
        work_list = self.orchestrator.expand_work_list([1, 2], {'Speed': [1, 2, 3]})
        self.assertEqual(work_list, [(1, (1,)), (1, (2,)), (1, (3,)), (2, (1,)), (2, (2,)), (2, (3,))])
        self.assertEqual(self.orchestrator.expand_work_list(), work_list)

    def test_expand_size_is_product(self):
        shutil.rmtree(self.root)
        self.root = tempfile.mkdtemp()
        self.descriptor = make_dataset(self.root, n_trials=1, subjects=[1, 2, 3],
                                       parameters=[('Foot', [1, 2]), ('Context', [1, 2, 3, 4]),
                                                   ('Assistance', [1, 2, 3])],
                                       model_parameter='Assistance')
        orchestrator = self.make_orchestrator(self.engine)
        work_list = orchestrator.expand_work_list()
        self.assertEqual(len(work_list), 3 * 2 * 4 * 3)
        self.assertEqual(len(set(work_list)), len(work_list))
        self.assertEqual(work_list[0], (1, (1, 1, 1)))
        self.assertEqual(work_list[1], (1, (1, 1, 2)))
        self.assertEqual(work_list[-1], (3, (2, 4, 3)))
        self.assertEqual(len(orchestrator.expand_work_list([2], [[1], [1, 2], [3]])), 2)

    def test_expand_rejects_unknown_values(self):
        with self.assertRaises(ConfigurationError):
            self.orchestrator.expand_work_list([3])
        with self.assertRaises(ConfigurationError):
            self.orchestrator.expand_work_list([1], {'Speed': [4]})
        with self.assertRaises(ConfigurationError):
            self.orchestrator.expand_work_list([1], {'Cadence': [1]})

    def test_run_processes_every_item(self):
        orchestrator = self.make_orchestrator(self.engine, num_workers=3)
        report = orchestrator.run(['IK', 'BK'])
        self.assertTrue(report.success)
        self.assertEqual(len(report.completed), 6)
        self.assertIsNone(report.checkpoint_path)
        self.assertEqual(len(self.engine.calls_to('run_ik')), 6)
        self.assertEqual(len(self.engine.calls_to('run_body_kinematics')), 6)
        self.assertEqual([count for count, total in self.counts], list(range(7)))
        self.assertEqual(self.checkpoints(), [])

    def test_stages_run_in_order_per_item(self):
        self.orchestrator.run([Stage.IK, Stage.BK], [(1, [1])])
        self.assertEqual([c[0] for c in self.engine.calls], ['run_ik', 'run_body_kinematics'])

    def test_adjustment_is_not_allowed_in_a_batch(self):
        with self.assertRaises(ConfigurationError):
            self.orchestrator.run(['IK', 'ADJUSTMENT'])
        self.assertEqual(self.engine.calls, [])

    def test_duplicate_work_items_rejected(self):
        with self.assertRaises(ConfigurationError):
            self.orchestrator.run(['IK'], [(1, [1]), (1, (1,))])

    def test_missing_prerequisites_fail_items_without_aborting(self):
        report = self.orchestrator.run(['IK', 'RRA'])
        self.assertFalse(report.aborted)
        self.assertEqual(len(report.failed), 6)
        self.assertEqual(len(self.engine.calls_to('run_ik')), 6)
        for error in report.failures.values():
            self.assertEqual(error.missing, Stage.ADJUSTMENT)
        checkpoint = Checkpoint.load(report.checkpoint_path)
        self.assertEqual(checkpoint.pending, report.work_list)
        self.assertEqual(checkpoint.stages, [Stage.IK, Stage.RRA])

    def test_stage_failure_aborts_and_checkpoints(self):
        engine = FakeEngine(fail_if=lambda method, folder: os.path.join('S1', 'Results', 'Speed2') in folder)
        orchestrator = self.make_orchestrator(engine)
        work_list = orchestrator.expand_work_list()
        with self.assertRaises(StageFailure):
            orchestrator.run(['IK'], work_list)
        report = orchestrator.last_report
        self.assertTrue(report.aborted)
        self.assertEqual(report.status[(1, (2,))], ProcessingStatus.FAILED)
        self.assertEqual(report.status[(1, (1,))], ProcessingStatus.COMPLETED)
        # Dispatch stopped early, so most of the dataset was never attempted
        self.assertIn(ProcessingStatus.PENDING, report.status.values())

        checkpoint = Checkpoint.load(report.checkpoint_path)
        self.assertEqual(os.path.dirname(report.checkpoint_path), self.descriptor.root)
        self.assertIn((1, (2,)), checkpoint.pending)
        self.assertEqual(set(checkpoint.pending) | set(report.completed), set(work_list))
        self.assertEqual(set(checkpoint.pending) & set(report.completed), set())
        self.assertEqual(checkpoint.reason['type'], 'StageFailure')

    def test_memory_pressure_aborts_without_losing_items(self):
        orchestrator = self.make_orchestrator(self.engine, num_workers=2, sampler=LowMemoryAfter(2))
        work_list = orchestrator.expand_work_list()
        with self.assertRaises(ResourceExhausted):
            orchestrator.run(['IK'], work_list)
        report = orchestrator.last_report
        self.assertTrue(report.aborted)
        self.assertGreaterEqual(len(report.completed), 3)
        self.assertLess(len(report.completed), len(work_list))
        checkpoint = Checkpoint.load(report.checkpoint_path)
        self.assertEqual(set(checkpoint.pending) | set(report.completed), set(work_list))
        self.assertEqual(len(checkpoint.pending) + len(report.completed), len(work_list))
        self.assertEqual(checkpoint.reason['type'], 'ResourceExhausted')

    def test_resume_processes_exactly_the_pending_items(self):
        engine = FakeEngine(fail_if=lambda method, folder: os.path.join('S2', 'Results', 'Speed1') in folder)
        orchestrator = self.make_orchestrator(engine)
        with self.assertRaises(StageFailure):
            orchestrator.run(['IK'])
        first = orchestrator.last_report
        completed = set(first.completed)
        pending = first.pending

        resumed_engine = FakeEngine()
        resumed = self.make_orchestrator(resumed_engine)
        report = resumed.resume(first.checkpoint_path)
        self.assertTrue(report.success)
        self.assertEqual(report.work_list, pending)
        touched = {call[2] for call in resumed_engine.calls}
        expected = {resumed.make_unit(item).stage_folder(Stage.IK) for item in pending}
        self.assertEqual(touched, expected)
        for item in completed:
            self.assertNotIn(resumed.make_unit(item).stage_folder(Stage.IK), touched)

    def test_resume_rejects_other_datasets(self):
        path = Checkpoint('SomethingElse', [Stage.IK], [(1, (1,))]).save(self.root)
        with self.assertRaises(ConfigurationError):
            self.orchestrator.resume(path)

    def test_model_adjustment_pre_pass(self):
        adjusted = self.orchestrator.perform_model_adjustment()
        # One model variant, two subjects
        self.assertEqual(len(adjusted), 2)
        self.assertEqual(len(self.engine.calls_to('run_adjustment_rra')), 2)
        state = self.orchestrator.runner.adjustment_state
        self.assertTrue(state.completed)
        self.assertEqual(state.adjusted_subjects, [1, 2])
        with self.assertRaises(AlreadyAdjusted):
            self.orchestrator.perform_model_adjustment()

        report = self.orchestrator.run(['IK', 'RRA', 'ID'])
        self.assertTrue(report.success)
        self.assertEqual(len(self.engine.calls_to('run_id')), 6)

    def test_model_adjustment_of_a_subset(self):
        self.orchestrator.perform_model_adjustment([1])
        state = self.orchestrator.runner.adjustment_state
        self.assertFalse(state.completed)
        self.assertTrue(state.is_adjusted(1))
        self.assertFalse(state.is_adjusted(2))

        # Subject 2 has no adjusted model yet, so its RRA is skipped rather than aborting the batch
        report = self.orchestrator.run(['IK', 'RRA'], [(1, [1]), (2, [1])])
        self.assertFalse(report.aborted)
        self.assertEqual(report.completed, [(1, (1,))])
        self.assertEqual(report.failures[(2, (1,))].missing, Stage.ADJUSTMENT)

        adjusted = self.orchestrator.perform_model_adjustment()
        self.assertEqual(len(adjusted), 1)
        self.assertTrue(state.completed)
        self.assertEqual(len(self.engine.calls_to('run_adjustment_rra')), 2)
        with self.assertRaises(AlreadyAdjusted):
            self.orchestrator.perform_model_adjustment([2])

    def test_worker_crash_checkpoints_and_reraises(self):
        engine = FakeEngine(fail_if=lambda method, folder: True, error_type=WorkerCrash)
        orchestrator = self.make_orchestrator(engine)
        with self.assertRaises(WorkerCrash):
            orchestrator.run(['IK'], [(1, [1]), (1, [2])])
        report = orchestrator.last_report
        self.assertTrue(report.aborted)
        self.assertEqual(report.status[(1, (1,))], ProcessingStatus.FAILED)
        self.assertEqual(report.status[(1, (2,))], ProcessingStatus.PENDING)
        checkpoint = Checkpoint.load(report.checkpoint_path)
        self.assertEqual(checkpoint.pending, [(1, (1,)), (1, (2,))])
        self.assertEqual(checkpoint.reason['type'], 'WorkerCrash')

    def test_memory_is_checked_after_failed_items(self):
        orchestrator = self.make_orchestrator(self.engine, sampler=LowMemoryAfter(0))
        with self.assertRaises(ResourceExhausted):
            orchestrator.run(['RRA'])
        report = orchestrator.last_report
        self.assertEqual(len(report.failed), 1)
        self.assertEqual(len(Checkpoint.load(report.checkpoint_path).pending), 6)

    def test_skip_completed_stages(self):
        self.orchestrator.run(['IK'])
        orchestrator = self.make_orchestrator(self.engine, skip_completed_stages=True)
        orchestrator.run(['IK', 'BK'])
        self.assertEqual(len(self.engine.calls_to('run_ik')), 6)
        self.assertEqual(len(self.engine.calls_to('run_body_kinematics')), 6)

    def test_survey(self):
        self.orchestrator.run(['IK'], [(2, [3])])
        survey = self.orchestrator.survey()
        self.assertTrue(survey[(2, (3,))][Stage.IK])
        self.assertFalse(survey[(2, (2,))][Stage.IK])


if __name__ == '__main__':
    unittest.main()
