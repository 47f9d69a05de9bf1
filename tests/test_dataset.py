import os
import shutil
import tempfile
import unittest

from gaittoolbox.dataset import Dataset
from gaittoolbox.exceptions import ConfigurationError, StageFailure
from gaittoolbox.progress import ProgressReporter
from gaittoolbox.stages import Stage
from tests.fakes import FakeEngine, make_dataset


class TestDataset(unittest.TestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        make_dataset(self.root, subjects=[1, 2, 3],
                     parameters=[('Foot', [1, 2]), ('Assistance', [1, 2, 3])],
                     model_parameter='Assistance',
                     models={'model.osim': [1], 'model_apo.osim': [2, 3]},
                     loads={'normal.xml': [1], 'apo.xml': [2, 3]})

    def tearDown(self):
        shutil.rmtree(self.root)

    def open(self, engine, **kwargs) -> Dataset:
        return Dataset(self.root, engine=engine, num_workers=2, memory_threshold=0.0,
                       progress=ProgressReporter(verbose=False), **kwargs)

    def test_subset(self):
        dataset = self.open(FakeEngine(), subjects=[1, 3], Assistance=[2, 3])
        self.assertEqual(dataset.name, 'TestDataset')
        self.assertEqual(dataset.work_list(), [(1, (1, 2)), (1, (1, 3)), (1, (2, 2)), (1, (2, 3)),
                                               (3, (1, 2)), (3, (1, 3)), (3, (2, 2)), (3, (2, 3))])
        self.assertEqual(dataset.unit(3, Foot=2, Assistance=1).key, (3, (2, 1)))

    def test_bad_subset_fails_immediately(self):
        with self.assertRaises(ConfigurationError):
            self.open(FakeEngine(), subjects=[4])
        with self.assertRaises(ConfigurationError):
            self.open(FakeEngine(), Cadence=[1])

    def test_end_to_end(self):
        engine = FakeEngine()
        dataset = self.open(engine, subjects=[2], Foot=[1])
        adjusted = dataset.perform_model_adjustment()
        # One adjusted model per distinct model file
        self.assertEqual(sorted(os.path.basename(path) for path in adjusted),
                         ['model_adjusted.osim', 'model_apo_adjusted.osim'])

        report = dataset.process(['IK', 'RRA', 'BK', 'ID'])
        self.assertTrue(report.success)
        self.assertEqual(len(report.completed), 3)
        for stages in dataset.status().values():
            self.assertTrue(stages[Stage.ID])
            self.assertFalse(stages[Stage.CMC])

        table = dataset.load(['GRF', 'IK', 'BK', 'ID'])
        self.assertEqual(len(table), 3)
        self.assertEqual(len(table.lookup(2, 'ID', Foot=1, Assistance=3)), 2)

    def test_resume_from_latest_checkpoint(self):
        with self.assertRaises(ConfigurationError):
            self.open(FakeEngine()).resume()

        failing = FakeEngine(fail_if=lambda method, folder: os.path.join('S1', 'Results', 'Foot2') in folder)
        dataset = self.open(failing, subjects=[1])
        with self.assertRaises(StageFailure):
            dataset.process(['IK'])

        engine = FakeEngine()
        report = self.open(engine, subjects=[1]).resume()
        self.assertTrue(report.success)
        self.assertTrue(all(item[1][0] == 2 for item in report.work_list))
        self.assertEqual(len(engine.calls_to('run_ik')), len(report.work_list))


if __name__ == '__main__':
    unittest.main()
