"""
Run configuration for simmr.

Both classes are frozen value objects: build them (or let ``simmr_mcmc``
build them from plain mappings) before a run starts. Nothing here reads
from the dataset being fitted.
"""

import math
from dataclasses import dataclass
from typing import Mapping, Optional, Union

import numpy as np

from .exceptions import InputError


@dataclass(frozen=True, eq=False)
class PriorSpec:
    """
    Prior on the latent centralised log-ratio (CLR) scores of the sources.

    Parameters
    ----------
    means : np.ndarray, shape (K,)
        Prior means of the CLR scores
    sd : np.ndarray, shape (K,)
        Prior standard deviations of the CLR scores. Also used as the
        half-Cauchy scale of the between-observation spread.
    sigma_upper : float, optional (default=1000.0)
        Upper bound of the Uniform prior on the residual scale per tracer
    solo_sigma_upper : float, optional (default=0.001)
        Upper bound used instead of ``sigma_upper`` when a group holds a
        single observation
    """

    means: np.ndarray
    sd: np.ndarray
    sigma_upper: float = 1000.0
    solo_sigma_upper: float = 0.001

    def __post_init__(self):
        object.__setattr__(self, 'means', np.asarray(self.means, dtype=np.float64).ravel())
        object.__setattr__(self, 'sd', np.asarray(self.sd, dtype=np.float64).ravel())

    @classmethod
    def default(cls, n_sources: int) -> "PriorSpec":
        """Uninformative prior: means 0, sd 1 for every source."""
        return cls(means=np.zeros(n_sources), sd=np.ones(n_sources))

    @classmethod
    def from_mapping(cls, n_sources: int, control: Mapping) -> "PriorSpec":
        """Build from a ``{'means': ..., 'sd': ...}`` mapping, filling defaults."""
        unknown = set(control) - {'means', 'sd', 'sigma_upper', 'solo_sigma_upper'}
        if unknown:
            raise InputError(f"Unknown prior_control keys: {sorted(unknown)}")

        default = cls.default(n_sources)
        return cls(
            means=control.get('means', default.means),
            sd=control.get('sd', default.sd),
            sigma_upper=control.get('sigma_upper', default.sigma_upper),
            solo_sigma_upper=control.get('solo_sigma_upper', default.solo_sigma_upper)
        )

    def sigma_bound(self, solo: bool) -> float:
        return self.solo_sigma_upper if solo else self.sigma_upper

    def validate(self, n_sources: int) -> "PriorSpec":
        if self.means.shape != (n_sources,):
            raise InputError(
                f"prior means must have length {n_sources}, got {self.means.shape[0]}"
            )
        if self.sd.shape != (n_sources,):
            raise InputError(
                f"prior sd must have length {n_sources}, got {self.sd.shape[0]}"
            )
        if not np.all(np.isfinite(self.means)):
            raise InputError("prior means must be finite")
        if not np.all(np.isfinite(self.sd)) or np.any(self.sd <= 0):
            raise InputError(f"prior sd must be finite and positive. Got: {self.sd}")
        for name in ('sigma_upper', 'solo_sigma_upper'):
            value = getattr(self, name)
            if not (math.isfinite(value) and value > 0):
                raise InputError(f"{name} must be finite and positive. Got: {value}")
        return self


@dataclass(frozen=True)
class MCMCConfig:
    """
    MCMC run settings.

    Parameters
    ----------
    iterations : int, optional (default=10000)
        Number of post-burn iterations per chain
    burn : int, optional (default=1000)
        Number of adaptation iterations, discarded
    thin : int, optional (default=10)
        Keep every ``thin``-th post-burn iteration
    n_chains : int, optional (default=4)
        Number of independent chains. One chain is accepted but makes
        between-chain convergence diagnostics unavailable.
    random_seed : int, optional (default=42)
        Root seed. Identical seeds give identical chains.
    cores : int, optional (default=None)
        Worker processes for running chains. None or 1 runs sequentially.
    target_accept : float, optional (default=0.44)
        Acceptance rate the one-dimensional blocks adapt toward. The
        multivariate per-observation block uses ``target_accept_rows``.
    target_accept_rows : float, optional (default=0.30)
    """

    iterations: int = 10000
    burn: int = 1000
    thin: int = 10
    n_chains: int = 4
    random_seed: Optional[int] = 42
    cores: Optional[int] = None
    target_accept: float = 0.44
    target_accept_rows: float = 0.30

    # Accept the R argument names as aliases
    _ALIASES = {'iter': 'iterations', 'n.chain': 'n_chains', 'chains': 'n_chains'}

    @classmethod
    def quick(cls, **overrides) -> "MCMCConfig":
        """Faster settings for prototyping (not for published results)."""
        settings = dict(iterations=1000, burn=500, thin=1, n_chains=2)
        settings.update(overrides)
        return cls(**settings)

    @classmethod
    def from_mapping(cls, control: Mapping) -> "MCMCConfig":
        settings = {}
        for key, value in control.items():
            key = cls._ALIASES.get(key, key)
            if key not in cls.__dataclass_fields__:
                raise InputError(f"Unknown mcmc_control key: {key!r}")
            settings[key] = value
        return cls(**settings)

    @property
    def n_draws(self) -> int:
        """Number of retained draws per chain."""
        return int(math.ceil(self.iterations / self.thin))

    def validate(self) -> "MCMCConfig":
        for name, minimum in (('iterations', 1), ('burn', 0), ('thin', 1), ('n_chains', 1)):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise InputError(f"{name} must be an integer. Got: {value!r}")
            if value < minimum:
                raise InputError(f"{name} must be >= {minimum}. Got: {value}")
        for name, minimum in (('random_seed', 0), ('cores', 1)):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise InputError(f"{name} must be an integer or None. Got: {value!r}")
            if value < minimum:
                raise InputError(f"{name} must be >= {minimum} or None. Got: {value}")
        for name in ('target_accept', 'target_accept_rows'):
            value = getattr(self, name)
            if not 0 < value < 1:
                raise InputError(f"{name} must be in (0, 1). Got: {value}")
        return self


def resolve_prior(
    n_sources: int,
    prior_control: Union[PriorSpec, Mapping, None]
) -> PriorSpec:
    if prior_control is None:
        prior = PriorSpec.default(n_sources)
    elif isinstance(prior_control, PriorSpec):
        prior = prior_control
    else:
        prior = PriorSpec.from_mapping(n_sources, prior_control)
    return prior.validate(n_sources)


def resolve_mcmc(mcmc_control: Union[MCMCConfig, Mapping, None]) -> MCMCConfig:
    if mcmc_control is None:
        config = MCMCConfig()
    elif isinstance(mcmc_control, MCMCConfig):
        config = mcmc_control
    else:
        config = MCMCConfig.from_mapping(mcmc_control)
    return config.validate()
