"""
config.py
---------
Description: Default names and policy values used across the batch engine.
"""

import os

import psutil

# The descriptor file expected in the root folder of every dataset.
DESCRIPTOR_FILE_NAME = 'DatasetDescriptor.xml'
DESCRIPTOR_JSON_FILE_NAME = 'DatasetDescriptor.json'

# Folder naming conventions used when a descriptor leaves them out.
DEFAULT_RESULTS_FOLDER_NAME = 'Results'
DEFAULT_MOTION_FOLDER_NAME = 'Motion'
DEFAULT_FORCES_FOLDER_NAME = 'Forces'
DEFAULT_ADJUSTMENT_SUFFIX = '_adjusted'

# Per-stage result folders, keyed by the short stage name.
DEFAULT_RESULT_FOLDERS = {
    'IK': 'IK_Results',
    'ADJUSTMENT': 'AdjustmentRRA_Results',
    'RRA': 'RRA_Results',
    'ID': 'ID_Results',
    'BK': 'BodyKinematics_Results',
    'CMC': 'CMC_Results',
}

# Dataset-wide flag file written by the model adjustment pre-pass.
ADJUSTMENT_FLAG_FILE_NAME = '_model_adjustment.json'

# Checkpoints are written to the dataset root as <prefix><timestamp>.json
CHECKPOINT_PREFIX = 'checkpoint_'
CHECKPOINT_TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S-%f'

# Batch processing stops once available memory drops below this fraction of the total.
DEFAULT_MEMORY_THRESHOLD = 0.10

DEFAULT_NUM_WORKERS = psutil.cpu_count(logical=True) or os.cpu_count() or 1

# Folder holding the default OpenSim tool setup files (IK/settings.xml, RRA/settings.xml, ...)
DEFAULTS_ENV_VAR = 'GAITTOOLBOX_DEFAULTS'


def defaults_folder() -> str:
    folder = os.environ.get(DEFAULTS_ENV_VAR)
    if folder is None:
        folder = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'defaults')
    return folder
