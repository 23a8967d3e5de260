"""simmr Pipeline - Main User Interface"""

import time
import warnings
from typing import Dict, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from .config import MCMCConfig, PriorSpec, resolve_mcmc, resolve_prior
from .data import MixtureDataset
from .exceptions import InputError, SamplingError
from .mcmc.sampler import run_chains
from .model.mixing_model import MixingModel
from .output import SimmrResult, package_chain


def _warn(message: str, collected: List[str]):
    warnings.warn(message, UserWarning, stacklevel=3)
    collected.append(message)


def group_seed(random_seed: Optional[int], group: int) -> np.random.SeedSequence:
    """Seed of a group's chains; depends only on the root seed and the group id."""
    if random_seed is None:
        return np.random.SeedSequence()
    return np.random.SeedSequence([random_seed, group])


def simmr_mcmc(
    dataset: MixtureDataset,
    prior_control: Union[PriorSpec, Mapping, None] = None,
    mcmc_control: Union[MCMCConfig, Mapping, None] = None,
    individual_effects: bool = False,
    strict: bool = False,
    verbose: bool = True
) -> SimmrResult:
    """
    Fit the hierarchical mixing model to every group of a dataset via MCMC.

    Parameters
    ----------
    dataset : MixtureDataset
        Validated dataset, see :func:`simmr.load`
    prior_control : PriorSpec or mapping, optional
        Prior means and sd of the CLR scores (``{'means': ..., 'sd': ...}``).
        Default: means 0, sd 1 for every source.
    mcmc_control : MCMCConfig or mapping, optional
        ``iterations`` (or ``iter``), ``burn``, ``thin``, ``n_chains`` (or
        ``n.chain``), ``random_seed``, ``cores``.
        Default: 10000 iterations, 1000 burn, thin 10, 4 chains.
    individual_effects : bool, optional (default=False)
        If True, also record per-observation proportions
    strict : bool, optional (default=False)
        If True, a sampling failure in any group is raised immediately.
        Otherwise it is recorded in ``result.errors`` and the remaining
        groups still run.
    verbose : bool, optional (default=True)
        If True, print progress

    Returns
    -------
    result : SimmrResult

    Raises
    ------
    InputError
        If the dataset or configuration is invalid. Nothing is sampled.

    Notes
    -----
    If convergence diagnostics are not satisfactory, increase ``iterations``,
    ``burn`` and ``thin`` by a factor of 10.
    """
    if not isinstance(dataset, MixtureDataset):
        raise InputError(
            "dataset must be a MixtureDataset; build one with simmr.load()"
        )

    prior = resolve_prior(dataset.n_sources, prior_control)
    config = resolve_mcmc(mcmc_control)

    collected_warnings: List[str] = []
    if config.n_chains == 1:
        _warn(
            "Running only 1 MCMC chain: between-chain convergence "
            "diagnostics (R̂) will be unavailable",
            collected_warnings
        )

    sizes = dataset.group_sizes()
    for group, size in sizes.items():
        if 2 <= size <= 3:
            _warn(
                f"Group {dataset.group_names[group - 1]} has only {size} observations. "
                "Either put each observation in an individual group or use "
                "informative prior information",
                collected_warnings
            )

    if verbose:
        print(f"\n{'=' * 70}")
        print(f"simmr MCMC: {dataset.n_obs} observations, {dataset.n_sources} sources, "
              f"{dataset.n_tracers} tracers, {dataset.n_groups} group(s)")
        print(f"  Chains: {config.n_chains}, iterations: {config.iterations}, "
              f"burn: {config.burn}, thin: {config.thin}")
        print(f"  Retained draws per chain: {config.n_draws}")
        print(f"{'=' * 70}")

    output: Dict[int, List[pd.DataFrame]] = {}
    group_rows: Dict[int, np.ndarray] = {}
    errors: Dict[int, Exception] = {}
    acceptance: Dict[int, List[Dict[str, float]]] = {}

    for group in range(1, dataset.n_groups + 1):
        rows = dataset.group_rows(group)
        group_rows[group] = rows

        if verbose and dataset.n_groups > 1:
            print(f"\nRunning for group {dataset.group_names[group - 1]}")

        model = MixingModel.for_group(dataset, rows, prior, group=group)
        if verbose and model.solo:
            print("Only 1 mixture value, performing a simmr solo run...")

        start = time.time()
        try:
            raw_chains = run_chains(
                model,
                config,
                group_seed(config.random_seed, group),
                individual_effects=individual_effects
            )
        except SamplingError as exc:
            if strict:
                raise
            errors[group] = exc
            _warn(f"Sampling failed for group {group}: {exc}", collected_warnings)
            continue

        output[group] = [
            package_chain(raw, dataset, rows, individual_effects)
            for raw in raw_chains
        ]
        acceptance[group] = [raw['acceptance'] for raw in raw_chains]

        if verbose:
            print(f"✓ MCMC sampling completed in {time.time() - start:.1f}s")
            rates = ", ".join(
                f"{block}={np.mean([a[block] for a in acceptance[group]]):.2f}"
                for block in model.metropolis_blocks
            )
            print(f"  Acceptance rates: {rates}")

    return SimmrResult(
        input=dataset,
        output=output,
        individual_effects=individual_effects,
        group_rows=group_rows,
        warnings=collected_warnings,
        errors=errors,
        acceptance=acceptance
    )


class MixingPipeline:
    """
    End-to-end simmr workflow: fit, check convergence, summarise draws.

    Parameters
    ----------
    prior : PriorSpec or mapping, optional
        Prior on the CLR scores. Default: means 0, sd 1.
    quick_mode : bool, default=False
        If True, uses faster MCMC settings for prototyping.
        Set False for production use.
    individual_effects : bool, default=False
        If True, records per-observation proportions.
    random_seed : int, default=42
        Random seed for reproducibility.
    cores : int, optional
        Worker processes for the chains.

    Examples
    --------
    >>> from simmr import MixingPipeline, load
    >>> dataset = load(mixtures=mix, source_names=names,
    ...                source_means=s_means, source_sds=s_sds)
    >>> pipeline = MixingPipeline(quick_mode=True).fit(dataset)
    >>> pipeline.get_convergence_diagnostics()
    """

    def __init__(
        self,
        prior: Union[PriorSpec, Mapping, None] = None,
        quick_mode: bool = False,
        individual_effects: bool = False,
        random_seed: int = 42,
        cores: Optional[int] = None
    ):
        self.prior = prior
        self.quick_mode = quick_mode
        self.individual_effects = individual_effects
        self.random_seed = random_seed
        self.cores = cores

        # Will be set during fit()
        self.result_ = None

    @property
    def mcmc_config(self) -> MCMCConfig:
        if self.quick_mode:
            return MCMCConfig.quick(random_seed=self.random_seed, cores=self.cores)
        return MCMCConfig(random_seed=self.random_seed, cores=self.cores)

    def fit(
        self,
        dataset: MixtureDataset,
        validate_convergence: bool = False,
        verbose: bool = True
    ) -> 'MixingPipeline':
        """
        Fit every group of ``dataset``.

        Parameters
        ----------
        dataset : MixtureDataset
        validate_convergence : bool, default=False
            If True, raises if any group's R̂ ≥ 1.01.
        verbose : bool, default=True

        Returns
        -------
        self : MixingPipeline
        """
        self.result_ = simmr_mcmc(
            dataset,
            prior_control=self.prior,
            mcmc_control=self.mcmc_config,
            individual_effects=self.individual_effects,
            verbose=verbose
        )

        if validate_convergence:
            self._validate_convergence(verbose=verbose)

        return self

    def posterior_means(self, group: int = 1) -> pd.Series:
        """Posterior mean of every column of a group's chains."""
        if self.result_ is None:
            raise RuntimeError("Pipeline not fitted. Call .fit() first.")
        return self.result_.draws(group).drop(columns=['chain', 'draw']).mean()

    def get_convergence_diagnostics(self) -> pd.DataFrame:
        """
        Return MCMC convergence diagnostics (R̂, ESS) for every group.

        Returns
        -------
        diagnostics : pd.DataFrame
            Columns: group, parameter, r_hat, ess_bulk, ess_tail
        """
        if self.result_ is None:
            raise RuntimeError("Model not fitted yet.")

        import arviz as az

        frames = []
        for group in self.result_.groups:
            summary = az.summary(
                self.result_.to_inference_data(group),
                var_names=['p', 'sigma'],
                kind='diagnostics'
            )
            summary = summary.reset_index().rename(columns={'index': 'parameter'})
            summary.insert(0, 'group', group)
            frames.append(summary[['group', 'parameter', 'r_hat', 'ess_bulk', 'ess_tail']])
        return pd.concat(frames, ignore_index=True)

    def _validate_convergence(self, verbose: bool = True):
        """Check MCMC convergence and raise error if failed."""
        for group in self.result_.groups:
            diagnostics = self.result_.check_convergence(group, verbose=verbose)

            if not diagnostics['rhat_ok']:
                raise RuntimeError(
                    f"MCMC convergence failed for group {group}! R̂ ≥ 1.01 detected.\n"
                    f"Max R̂ = {diagnostics['rhat_max']:.4f}\n\n"
                    "Try increasing MCMC iterations: MixingPipeline(quick_mode=False)"
                )

            if not diagnostics['ess_ok']:
                warnings.warn(
                    f"Low effective sample size in group {group} "
                    f"(ESS = {diagnostics['ess_min']:.0f}). "
                    "Consider increasing MCMC iterations for more reliable inference."
                )
