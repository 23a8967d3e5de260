"""Sampler engine: adaptive Metropolis-within-Gibbs"""

from .sampler import StepSizeAdapter, metropolis_accept, run_chain, run_chains

__all__ = ['StepSizeAdapter', 'metropolis_accept', 'run_chain', 'run_chains']
