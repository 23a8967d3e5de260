"""
Shared fixtures for the simmr test suite.

The reference data are the 10-observation, 4-source, 2-tracer example with
corrections and concentration dependence used throughout the simmr
documentation.
"""

import numpy as np
import pytest

from simmr import MCMCConfig, load


SOURCE_NAMES = ['Source A', 'Source B', 'Source C', 'Source D']
TRACER_NAMES = ['d13C', 'd15N']

MIXTURES = np.array([
    [-10.13, 11.59],
    [-10.72, 11.01],
    [-11.39, 10.59],
    [-11.18, 10.97],
    [-10.81, 11.52],
    [-10.70, 11.89],
    [-10.54, 11.73],
    [-10.48, 10.89],
    [-9.93, 11.05],
    [-9.37, 12.30],
])
SOURCE_MEANS = np.array([[-14.00, 3.06], [-15.10, 7.05], [-11.03, 13.72], [-14.44, 5.96]])
SOURCE_SDS = np.array([[0.48, 0.46], [0.38, 0.39], [0.48, 0.42], [0.43, 0.48]])
CORRECTION_MEANS = np.array([[2.63, 3.28], [1.59, 2.34], [3.41, 2.14], [3.04, 2.36]])
CORRECTION_SDS = np.array([[0.41, 0.46], [0.44, 0.48], [0.34, 0.46], [0.46, 0.66]])
CONCENTRATION = np.array([[0.02, 0.02], [0.10, 0.10], [0.12, 0.09], [0.04, 0.05]])


def make_dataset(mixtures=MIXTURES, group=None, **overrides):
    arguments = dict(
        mixtures=mixtures,
        source_names=SOURCE_NAMES,
        source_means=SOURCE_MEANS,
        source_sds=SOURCE_SDS,
        correction_means=CORRECTION_MEANS,
        correction_sds=CORRECTION_SDS,
        concentration_means=CONCENTRATION,
        group=group,
        tracer_names=TRACER_NAMES,
    )
    arguments.update(overrides)
    return load(**arguments)


def make_grouped_mixtures(sizes, seed=7):
    """Mixtures around the reference data, one block of rows per group."""
    rng = np.random.default_rng(seed)
    n_obs = sum(sizes)
    rows = rng.integers(0, len(MIXTURES), size=n_obs)
    mixtures = MIXTURES[rows] + rng.normal(0.0, 0.3, size=(n_obs, 2))
    group = np.repeat(np.arange(1, len(sizes) + 1), sizes)
    return mixtures, group


@pytest.fixture(name="make_dataset")
def make_dataset_fixture():
    """Factory building the reference dataset with overrides."""
    return make_dataset


@pytest.fixture(name="make_grouped_mixtures")
def make_grouped_mixtures_fixture():
    return make_grouped_mixtures


@pytest.fixture
def dataset():
    return make_dataset()


@pytest.fixture
def solo_dataset():
    return make_dataset(mixtures=MIXTURES[:1])


@pytest.fixture
def quick_config():
    """Short runs for fast tests (not for inference)."""
    return MCMCConfig(iterations=300, burn=200, thin=3, n_chains=2, random_seed=1)
