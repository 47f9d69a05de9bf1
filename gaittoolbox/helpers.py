"""
helpers.py
----------
Description: Small helper functions shared by the stage runner and the result loaders.
"""
import os
from typing import List

import numpy as np
from scipy.interpolate import interp1d

# Trial files are numbered from 1, and zero padded to 3 digits to avoid ordering issues.
TRIAL_NAME_FORMAT = '{:03d}'


def trial_name(index: int) -> str:
    return TRIAL_NAME_FORMAT.format(index + 1)


def matches_suffix(name: str, suffix: str, prefix: str = '') -> bool:
    # Case-insensitive, so 001.MOT and 001.mot are both force files
    name = name.lower()
    return name.endswith(suffix.lower()) and name.startswith(prefix.lower())


def files_with_suffix(folder: str, suffix: str, prefix: str = '') -> List[str]:
    if not os.path.isdir(folder):
        return []
    return [os.path.join(folder, name) for name in sorted(os.listdir(folder))
            if matches_suffix(name, suffix, prefix) and os.path.isfile(os.path.join(folder, name))]


def stretch_vector(data: np.ndarray, desired_size: int) -> np.ndarray:
    """
    Stretch or compress a 1D signal to a desired number of evenly spaced samples, by linear interpolation. This is
    used to put trials of different lengths on a common (e.g. percent of gait cycle) axis.
    """
    data = np.asarray(data, dtype=float)
    if data.ndim == 2 and 1 in data.shape:
        data = data.reshape(-1)
    if data.ndim != 1:
        raise ValueError('Input must be a row or column vector, got shape ' + str(data.shape))
    if desired_size < 2:
        raise ValueError('desired_size must be at least 2')
    if len(data) == 1:
        return np.full(desired_size, data[0])
    x = np.arange(len(data))
    z = np.linspace(0, len(data) - 1, desired_size)
    return interp1d(x, data)(z)
