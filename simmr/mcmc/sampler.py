"""
Adaptive Metropolis-within-Gibbs sampler

Runs independent Markov chains for any model exposing the block interface
of :class:`simmr.model.MixingModel`:

- ``metropolis_blocks``: names of blocks updated by random-walk Metropolis.
  Each block's elements are conditionally independent, so one proposal per
  element is accepted or rejected separately, all in one vectorised step.
- ``conditional_log_density(state, block)``: per-element log-density
- ``replace`` / ``merge``: build proposals and keep accepted elements
- ``gibbs_update(state, rng)``: exact conditional draws
- ``log_density(state)``, ``initial_state(rng)``, ``draw(state, ...)``

Step sizes adapt during burn-in only (Robbins-Monro on the log step size
toward a target acceptance rate) and are frozen afterwards, so the retained
draws come from a fixed Markov kernel.

"""

import math
from concurrent.futures import ProcessPoolExecutor
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..config import MCMCConfig
from ..exceptions import InitializationError, SamplingError

# Consecutive iterations with no finite proposal before a block is declared stuck
MAX_NONFINITE_STREAK = 1000


class StepSizeAdapter:
    """
    Per-element random-walk step sizes with Robbins-Monro adaptation.

    Parameters
    ----------
    shape : tuple
        Shape of the accept mask of the block (one step size per element)
    target : float
        Target acceptance rate
    initial_scale : float, optional (default=0.1)
    """

    def __init__(self, shape, target: float, initial_scale: float = 0.1):
        self.target = target
        self.log_scale = np.full(shape, np.log(initial_scale))
        self.n_proposed = 0
        self.n_accepted = np.zeros(shape)

    @property
    def scale(self) -> np.ndarray:
        return np.exp(self.log_scale)

    def adapt(self, accept: np.ndarray, iteration: int):
        gain = min(1.0, 10.0 / math.sqrt(iteration + 1.0))
        self.log_scale += gain * (accept - self.target)
        np.clip(self.log_scale, -15.0, 5.0, out=self.log_scale)

    def record(self, accept: np.ndarray):
        self.n_proposed += 1
        self.n_accepted += accept

    def reset_counts(self):
        self.n_proposed = 0
        self.n_accepted = np.zeros_like(self.n_accepted)

    def acceptance_rate(self) -> float:
        if self.n_proposed == 0:
            return float('nan')
        return float(np.mean(self.n_accepted) / self.n_proposed)


def metropolis_accept(log_ratio: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Vectorised Metropolis decision; non-finite ratios are rejected."""
    log_u = np.log(rng.uniform(size=np.shape(log_ratio)))
    with np.errstate(invalid='ignore'):
        return np.isfinite(log_ratio) & (log_u < log_ratio)


def _step_noise(values: np.ndarray, scale: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    # Broadcast one step size per element over any trailing axes
    extra = values.ndim - scale.ndim
    return rng.standard_normal(values.shape) * scale.reshape(scale.shape + (1,) * extra)


def run_chain(
    model,
    config: MCMCConfig,
    seed,
    individual_effects: bool = False
) -> Dict[str, np.ndarray]:
    """
    Run a single chain.

    Parameters
    ----------
    model : MixingModel
        Model exposing the block interface
    config : MCMCConfig
        Iterations, burn-in, thinning and adaptation targets
    seed : int or np.random.SeedSequence
        Seed of this chain's random stream
    individual_effects : bool, optional (default=False)
        If True, also record per-observation proportions ``p_ind``

    Returns
    -------
    chain : Dict[str, np.ndarray]
        ``p`` (n_draws, K), ``sigma`` (n_draws, J), optionally ``p_ind``
        (n_draws, N, K), ``acceptance`` mapping block name to the
        post-burn acceptance rate, and ``step_size`` mapping block name to
        the per-element step sizes used after burn-in

    Raises
    ------
    InitializationError
        If the log-density is not finite at the initial state
    SamplingError
        If a block keeps producing non-finite proposals or the chain state
        becomes non-finite
    """
    rng = np.random.default_rng(seed)
    group = getattr(model, 'group', None)

    state = model.initial_state(rng)
    initial_log_density = model.log_density(state)
    if not np.isfinite(initial_log_density):
        raise InitializationError(
            "Log-density is not finite at the initial state; check priors and data",
            group=group,
            parameter='log_density',
            value=initial_log_density
        )

    adapters = {}
    for block in model.metropolis_blocks:
        target = (
            config.target_accept_rows
            if block in model.multivariate_blocks
            else config.target_accept
        )
        current = model.conditional_log_density(state, block)
        adapters[block] = StepSizeAdapter(current.shape, target)
    nonfinite_streak = {block: 0 for block in model.metropolis_blocks}

    records: Dict[str, List[np.ndarray]] = {}

    total = config.burn + config.iterations
    for iteration in range(total):
        burning = iteration < config.burn
        if iteration == config.burn:
            for adapter in adapters.values():
                adapter.reset_counts()

        for block in model.metropolis_blocks:
            adapter = adapters[block]
            values = model.block_values(state, block)
            proposed = model.replace(
                state, block, values + _step_noise(values, adapter.scale, rng)
            )
            proposed_density = model.conditional_log_density(proposed, block)
            log_ratio = proposed_density - model.conditional_log_density(state, block)
            accept = metropolis_accept(log_ratio, rng)

            if np.any(np.isfinite(proposed_density)):
                nonfinite_streak[block] = 0
            else:
                nonfinite_streak[block] += 1
                if nonfinite_streak[block] >= MAX_NONFINITE_STREAK:
                    raise SamplingError(
                        f"No finite proposal for {MAX_NONFINITE_STREAK} consecutive iterations",
                        group=group,
                        parameter=block,
                        value=float(np.max(proposed_density))
                    )

            state = model.merge(state, proposed, block, accept)
            adapter.record(accept)
            if burning:
                adapter.adapt(accept, iteration)

        state = model.gibbs_update(state, rng)

        if burning:
            continue
        kept = iteration - config.burn
        if kept % config.thin:
            continue

        draw = model.draw(state, individual_effects)
        for name, value in draw.items():
            if not np.all(np.isfinite(value)):
                raise SamplingError(
                    "Non-finite parameter value during sampling",
                    group=group,
                    parameter=name,
                    value=value.tolist()
                )
            records.setdefault(name, []).append(value)

    chain = {name: np.stack(values) for name, values in records.items()}
    chain['acceptance'] = {
        block: adapter.acceptance_rate() for block, adapter in adapters.items()
    }
    chain['step_size'] = {
        block: adapter.scale for block, adapter in adapters.items()
    }
    return chain


def _run_chain_task(args):
    return run_chain(*args)


def run_chains(
    model,
    config: MCMCConfig,
    seed_sequence: np.random.SeedSequence,
    individual_effects: bool = False
) -> List[Dict[str, np.ndarray]]:
    """
    Run ``config.n_chains`` independent chains.

    Each chain gets its own child of ``seed_sequence``, so the chains are
    identical whether they run sequentially or on a process pool.

    Parameters
    ----------
    model : MixingModel
    config : MCMCConfig
        ``cores`` > 1 runs the chains on a ``ProcessPoolExecutor``
    seed_sequence : np.random.SeedSequence
    individual_effects : bool, optional (default=False)

    Returns
    -------
    chains : List[Dict[str, np.ndarray]]
        One raw chain per requested chain, in chain order. Either every
        chain completes or an exception propagates; partial runs are not
        returned.
    """
    seeds: Sequence[np.random.SeedSequence] = seed_sequence.spawn(config.n_chains)
    tasks = [(model, config, seed, individual_effects) for seed in seeds]

    workers: Optional[int] = config.cores
    if workers is None or workers == 1 or config.n_chains == 1:
        return [_run_chain_task(task) for task in tasks]

    workers = min(workers, config.n_chains)
    executor = ProcessPoolExecutor(max_workers=workers)
    try:
        futures = [executor.submit(_run_chain_task, task) for task in tasks]
        chains = [future.result() for future in futures]
    except BaseException:
        # Interrupted or failed: drop every pending chain
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)
    return chains
