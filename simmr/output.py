"""
Output packaging for simmr runs.

Raw chains carry positional arrays; this module gives every column its
name (source names, ``sd_<tracer>``, ``p_ind[<obs>,<source>]``) and collects
all groups into a :class:`SimmrResult`. No numbers are changed here.
"""

from typing import Dict, List, Optional, Sequence

import arviz as az
import numpy as np
import pandas as pd

from .data import MixtureDataset


def individual_column(observation: int, source_name: str) -> str:
    """Column name of one per-observation proportion (``observation`` is 1-based)."""
    return f"p_ind[{observation},{source_name}]"


def column_names(
    dataset: MixtureDataset,
    rows: Sequence[int],
    individual_effects: bool = False
) -> List[str]:
    """
    Column names of a packaged chain.

    Parameters
    ----------
    dataset : MixtureDataset
    rows : Sequence[int]
        Dataset row indices of the group, in model order
    individual_effects : bool, optional (default=False)

    Returns
    -------
    names : List[str]
        Source names, then ``sd_<tracer>`` per tracer, then (if requested)
        one ``p_ind[<obs>,<source>]`` per observation and source,
        observation-major. ``<obs>`` is the 1-based dataset row number.
    """
    names = list(dataset.source_names)
    names += [f"sd_{tracer}" for tracer in dataset.tracer_names]
    if individual_effects:
        for row in rows:
            names += [individual_column(int(row) + 1, source) for source in dataset.source_names]
    return names


def package_chain(
    raw: Dict[str, np.ndarray],
    dataset: MixtureDataset,
    rows: Sequence[int],
    individual_effects: bool = False
) -> pd.DataFrame:
    """
    Turn one raw chain into a named data frame.

    Parameters
    ----------
    raw : Dict[str, np.ndarray]
        Output of :func:`simmr.mcmc.run_chain`
    dataset : MixtureDataset
    rows : Sequence[int]
        Dataset row indices of the group
    individual_effects : bool, optional (default=False)

    Returns
    -------
    chain : pd.DataFrame, shape (n_draws, K + J [+ N*K])
        Indexed by draw number, draw order preserved
    """
    blocks = [raw['p'], raw['sigma']]
    if individual_effects:
        p_ind = raw['p_ind']
        blocks.append(p_ind.reshape(p_ind.shape[0], -1))

    values = np.concatenate(blocks, axis=1)
    frame = pd.DataFrame(
        values,
        columns=column_names(dataset, rows, individual_effects)
    )
    frame.index.name = 'draw'
    return frame


class SimmrResult:
    """
    Posterior chains of a simmr run, for every group.

    Parameters
    ----------
    input : MixtureDataset
        Dataset the run was fitted to
    output : Dict[int, List[pd.DataFrame]]
        Group id to one data frame per chain. Groups whose run failed are
        absent (see ``errors``).
    individual_effects : bool
        Whether ``p_ind`` columns were recorded
    group_rows : Dict[int, np.ndarray]
        Dataset row indices of each group
    warnings : List[str], optional
        Configuration warnings raised during the run
    errors : Dict[int, Exception], optional
        Fatal per-group failures
    acceptance : Dict[int, List[Dict[str, float]]], optional
        Post-burn acceptance rate per block, per chain

    Examples
    --------
    >>> result = simmr_mcmc(dataset)
    >>> result.draws(1)[dataset.source_names].mean()
    >>> result.check_convergence(1)
    """

    def __init__(
        self,
        input: MixtureDataset,
        output: Dict[int, List[pd.DataFrame]],
        individual_effects: bool,
        group_rows: Dict[int, np.ndarray],
        warnings: Optional[List[str]] = None,
        errors: Optional[Dict[int, Exception]] = None,
        acceptance: Optional[Dict[int, List[Dict[str, float]]]] = None
    ):
        self.input = input
        self.output = dict(sorted(output.items()))
        self.individual_effects = individual_effects
        self.group_rows = group_rows
        self.warnings = list(warnings or [])
        self.errors = dict(errors or {})
        self.acceptance = dict(acceptance or {})
        self.convergence_ = {}

    @property
    def groups(self) -> List[int]:
        """Ids of the groups with results."""
        return list(self.output)

    def chains(self, group: int = 1) -> List[pd.DataFrame]:
        if group in self.errors:
            raise RuntimeError(
                f"Group {group} has no results: {self.errors[group]}"
            )
        if group not in self.output:
            raise KeyError(f"Unknown group: {group}. Available: {self.groups}")
        return self.output[group]

    def draws(self, group: int = 1) -> pd.DataFrame:
        """All chains of a group stacked, with a ``chain`` column."""
        frames = []
        for index, chain in enumerate(self.chains(group)):
            frame = chain.reset_index()
            frame.insert(0, 'chain', index)
            frames.append(frame)
        return pd.concat(frames, ignore_index=True)

    def individual_draws(self, group: int, observation: int) -> pd.DataFrame:
        """
        Per-observation proportions of one observation.

        Parameters
        ----------
        group : int
        observation : int
            1-based dataset row number

        Returns
        -------
        draws : pd.DataFrame
            Columns named by source, all chains stacked
        """
        if not self.individual_effects:
            raise ValueError(
                "Individual proportions were not recorded. "
                "Run simmr_mcmc(..., individual_effects=True)."
            )
        columns = {
            individual_column(observation, source): source
            for source in self.input.source_names
        }
        draws = self.draws(group)
        missing = set(columns) - set(draws.columns)
        if missing:
            raise KeyError(f"Observation {observation} is not part of group {group}")
        return draws[['chain', 'draw', *columns]].rename(columns=columns)

    def to_inference_data(self, group: int = 1) -> az.InferenceData:
        """
        Convert a group's chains to ArviZ ``InferenceData``.

        Variables: ``p`` (chain, draw, source), ``sigma`` (chain, draw,
        tracer) and, if recorded, ``p_ind`` (chain, draw, obs, source).
        """
        chains = self.chains(group)
        sources = self.input.source_names
        sd_columns = [f"sd_{tracer}" for tracer in self.input.tracer_names]

        posterior = {
            'p': np.stack([chain[sources].to_numpy() for chain in chains]),
            'sigma': np.stack([chain[sd_columns].to_numpy() for chain in chains]),
        }
        coords = {'source': sources, 'tracer': list(self.input.tracer_names)}
        dims = {'p': ['source'], 'sigma': ['tracer']}

        if self.individual_effects:
            rows = self.group_rows[group]
            p_ind = np.stack([
                chain.iloc[:, len(sources) + len(sd_columns):].to_numpy()
                for chain in chains
            ])
            posterior['p_ind'] = p_ind.reshape(
                p_ind.shape[0], p_ind.shape[1], len(rows), len(sources)
            )
            coords['obs'] = [int(row) + 1 for row in rows]
            dims['p_ind'] = ['obs', 'source']

        return az.from_dict(posterior=posterior, coords=coords, dims=dims)

    def check_convergence(
        self,
        group: int = 1,
        verbose: bool = True
    ) -> Dict[str, float]:
        """
        Check convergence of a group's chains using R̂ and ESS diagnostics.

        Parameters
        ----------
        group : int, optional (default=1)
        verbose : bool, optional (default=True)
            If True, print a convergence summary

        Returns
        -------
        convergence : Dict
            - 'rhat_ok': All R̂ < 1.01
            - 'rhat_max': Largest R̂ (NaN with a single chain)
            - 'ess_ok': All bulk ESS > 400
            - 'ess_min': Smallest bulk ESS
            - 'all_ok': Both criteria met
        """
        trace = self.to_inference_data(group)

        rhat = az.rhat(trace, var_names=['p', 'sigma'])
        rhat_values = np.concatenate([rhat[var].values.ravel() for var in rhat.data_vars])
        ess = az.ess(trace, var_names=['p', 'sigma'])
        ess_values = np.concatenate([ess[var].values.ravel() for var in ess.data_vars])

        # Constant columns (e.g. a pinned solo sigma) give NaN diagnostics
        rhat_max = float(np.nanmax(rhat_values)) if np.any(np.isfinite(rhat_values)) else float('nan')
        ess_min = float(np.nanmin(ess_values)) if np.any(np.isfinite(ess_values)) else float('nan')
        rhat_ok = bool(rhat_max < 1.01)
        ess_ok = bool(ess_min > 400)

        if verbose:
            print(f"\n{'=' * 70}")
            print(f"CONVERGENCE DIAGNOSTICS (group {self.input.group_names[group - 1]})")
            print(f"{'=' * 70}")
            print(f"  Max R̂: {rhat_max:.4f}  (criterion < 1.01) "
                  f"{'✓ PASS' if rhat_ok else '✗ FAIL'}")
            print(f"  Min ESS: {ess_min:.0f}  (criterion > 400) "
                  f"{'✓ PASS' if ess_ok else '✗ FAIL'}")
            if not rhat_ok:
                print("  → Increase iterations, burn and thin by a factor of 10")

        self.convergence_[group] = {
            'rhat_ok': rhat_ok,
            'rhat_max': rhat_max,
            'ess_ok': ess_ok,
            'ess_min': ess_min,
            'all_ok': rhat_ok and ess_ok
        }
        return self.convergence_[group]

    def __repr__(self) -> str:
        n_chains = len(next(iter(self.output.values()))) if self.output else 0
        return (
            f"SimmrResult(groups={self.groups}, chains={n_chains}, "
            f"individual_effects={self.individual_effects}, "
            f"failed_groups={sorted(self.errors)})"
        )
