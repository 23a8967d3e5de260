"""
simmr: Bayesian stable isotope mixing models

Estimate the proportional contribution of sources to observed mixtures
(e.g. diet sources from isotope ratios) with a hierarchical Bayesian model
fitted by a self-contained adaptive MCMC sampler.
"""

from .version import __version__, __author__, __description__
from .config import MCMCConfig, PriorSpec
from .data import MixtureDataset, load
from .exceptions import InitializationError, InputError, SamplingError
from .output import SimmrResult
from .pipeline import MixingPipeline, simmr_mcmc

__all__ = [
    'MixtureDataset',
    'load',
    'PriorSpec',
    'MCMCConfig',
    'simmr_mcmc',
    'MixingPipeline',
    'SimmrResult',
    'InputError',
    'SamplingError',
    'InitializationError',
    '__version__',
    '__author__',
    '__description__',
]
