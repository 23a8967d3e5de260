"""
Hierarchical stable isotope mixing model

Explicit log-posterior of the concentration-dependent mixing model with
source and correction uncertainty, individual-level CLR effects and a
residual scale per tracer. Sampling happens on an unconstrained scale:

    f           (N, K)  individual CLR scores
    mu_f        (K,)    population CLR means
    log_sigma_f (K,)    log of the between-observation CLR spread
    sigma_logit (J,)    logit of sigma / sig_upp

Three-level hierarchy:
Level 1 (Population): mu_f ~ Normal(prior_means, prior_sd),
                      sigma_f ~ HalfCauchy(prior_sd)
Level 2 (Observation): f[i] ~ Normal(mu_f, sigma_f), p_ind[i] = softmax(f[i])
Level 3 (Tracers): y[i, j] ~ Normal(mix_mean[i, j], mix_var[i, j])

"""

from dataclasses import dataclass, replace as dataclass_replace
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.special import expit, log_expit, logsumexp

from ..config import PriorSpec
from ..data import MixtureDataset

LOG_2PI = np.log(2.0 * np.pi)

# Floor on the mixture variance; only reached if every source sd is ~0
VARIANCE_FLOOR = 1e-12


def softmax(scores: np.ndarray, axis: int = -1) -> np.ndarray:
    """Map unconstrained scores to the open simplex, computed in log space."""
    return np.exp(scores - logsumexp(scores, axis=axis, keepdims=True))


def normal_logpdf(x, mean, sd) -> np.ndarray:
    z = (x - mean) / sd
    return -0.5 * (LOG_2PI + z * z) - np.log(sd)


def half_cauchy_logpdf(x, scale) -> np.ndarray:
    return np.log(2.0 / np.pi) - np.log(scale) - np.log1p((x / scale) ** 2)


@dataclass(frozen=True)
class MixingState:
    """
    One point of the Markov chain on the unconstrained scale.

    ``mix_mean`` and ``source_var`` are derived from ``f`` and cached so
    that updates of the other blocks do not recompute the mixing weights.
    """

    f: np.ndarray
    mu_f: np.ndarray
    log_sigma_f: np.ndarray
    sigma_logit: np.ndarray
    mix_mean: np.ndarray
    source_var: np.ndarray

    @property
    def sigma_f(self) -> np.ndarray:
        return np.exp(self.log_sigma_f)


class MixingModel:
    """
    Mixing model for a single group of observations.

    Parameters
    ----------
    y : np.ndarray, shape (N, J)
        Mixture observations of this group
    source_means, source_sds : np.ndarray, shape (K, J)
    correction_means, correction_sds : np.ndarray, shape (K, J)
    concentration_means : np.ndarray, shape (K, J)
    prior : PriorSpec
        Prior on the CLR scores and residual scale bounds
    group : int, optional
        Group id, used only for error messages

    Attributes
    ----------
    solo : bool
        True when the group holds a single observation; the residual scale
        is then bounded by ``prior.solo_sigma_upper``
    sigma_upper : float
        Upper bound of the Uniform prior on sigma for this group
    """

    # Blocks updated by Metropolis steps; elements of "f" are rows of K scores
    metropolis_blocks = ('f', 'log_sigma_f', 'sigma_logit')
    multivariate_blocks = ('f',)

    def __init__(
        self,
        y: np.ndarray,
        source_means: np.ndarray,
        source_sds: np.ndarray,
        correction_means: np.ndarray,
        correction_sds: np.ndarray,
        concentration_means: np.ndarray,
        prior: PriorSpec,
        group: Optional[int] = None
    ):
        self.y = np.asarray(y, dtype=np.float64)
        self.N_, self.J_ = self.y.shape
        self.K_ = source_means.shape[0]
        self.group = group

        self.prior_means = prior.means
        self.prior_sd = prior.sd
        self.solo = self.N_ == 1
        self.sigma_upper = prior.sigma_bound(self.solo)

        # Corrected source means and total source variance, shape (K, J)
        self.source_total_mean = source_means + correction_means
        self.source_total_var = source_sds ** 2 + correction_sds ** 2
        self.log_q = np.log(concentration_means)

    @classmethod
    def for_group(
        cls,
        dataset: MixtureDataset,
        rows: Sequence[int],
        prior: PriorSpec,
        group: Optional[int] = None
    ) -> "MixingModel":
        """Build the model for the given dataset rows."""
        return cls(
            y=dataset.subset(rows),
            source_means=dataset.source_means,
            source_sds=dataset.source_sds,
            correction_means=dataset.correction_means,
            correction_sds=dataset.correction_sds,
            concentration_means=dataset.concentration_means,
            prior=prior,
            group=group
        )

    # ---- Transforms ----

    def sigma(self, sigma_logit: np.ndarray) -> np.ndarray:
        """Residual scale, strictly inside (0, sigma_upper)."""
        return self.sigma_upper * expit(sigma_logit)

    def mixing_moments(self, f: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Mixture mean and source-driven variance for each observation.

        Parameters
        ----------
        f : np.ndarray, shape (..., K)
            CLR scores

        Returns
        -------
        mix_mean : np.ndarray, shape (..., J)
        source_var : np.ndarray, shape (..., J)
            Variance excluding the residual term sigma^2
        """
        log_p = f - logsumexp(f, axis=-1, keepdims=True)

        # Concentration-weighted mixing weights, normalised per tracer
        log_w = log_p[..., :, None] + self.log_q
        log_w = log_w - logsumexp(log_w, axis=-2, keepdims=True)
        w = np.exp(log_w)

        mix_mean = np.sum(w * self.source_total_mean, axis=-2)
        source_var = np.sum(w * w * self.source_total_var, axis=-2)
        return mix_mean, source_var

    # ---- Densities ----

    def _log_lik_terms(
        self,
        mix_mean: np.ndarray,
        source_var: np.ndarray,
        sigma: np.ndarray
    ) -> np.ndarray:
        var = np.maximum(source_var + sigma ** 2, VARIANCE_FLOOR)
        resid = self.y - mix_mean
        return -0.5 * (LOG_2PI + np.log(var) + resid * resid / var)

    def pointwise_log_lik(self, f: np.ndarray, sigma: np.ndarray) -> np.ndarray:
        """Log-likelihood of each observation and tracer, shape (N, J)."""
        mix_mean, source_var = self.mixing_moments(f)
        return self._log_lik_terms(mix_mean, source_var, sigma)

    def _sigma_log_prior(self, sigma_logit: np.ndarray) -> np.ndarray:
        # Uniform(0, sig_upp) density times the logistic Jacobian
        return log_expit(sigma_logit) + log_expit(-sigma_logit)

    def _sigma_f_log_prior(self, log_sigma_f: np.ndarray) -> np.ndarray:
        # HalfCauchy density times the exp Jacobian
        return half_cauchy_logpdf(np.exp(log_sigma_f), self.prior_sd) + log_sigma_f

    def log_density(self, state: MixingState) -> float:
        """Unnormalised log-posterior on the unconstrained scale."""
        sigma = self.sigma(state.sigma_logit)
        log_lik = self.pointwise_log_lik(state.f, sigma)
        log_prior = (
            np.sum(normal_logpdf(state.f, state.mu_f, state.sigma_f))
            + np.sum(normal_logpdf(state.mu_f, self.prior_means, self.prior_sd))
            + np.sum(self._sigma_f_log_prior(state.log_sigma_f))
            + np.sum(self._sigma_log_prior(state.sigma_logit))
        )
        return float(np.sum(log_lik) + log_prior)

    def conditional_log_density(self, state: MixingState, block: str) -> np.ndarray:
        """
        Conditional log-density of each element of a block, up to a constant.

        Elements of a block are conditionally independent given the other
        blocks, so they can be accepted or rejected separately.

        Returns
        -------
        log_density : np.ndarray
            Shape (N,) for ``f``, (K,) for ``log_sigma_f``, (J,) for
            ``sigma_logit``
        """
        if block == 'f':
            sigma = self.sigma(state.sigma_logit)
            log_lik = self._log_lik_terms(state.mix_mean, state.source_var, sigma)
            log_prior = normal_logpdf(state.f, state.mu_f, state.sigma_f)
            return log_lik.sum(axis=1) + log_prior.sum(axis=1)

        if block == 'log_sigma_f':
            log_prior = normal_logpdf(state.f, state.mu_f, state.sigma_f)
            return log_prior.sum(axis=0) + self._sigma_f_log_prior(state.log_sigma_f)

        if block == 'sigma_logit':
            sigma = self.sigma(state.sigma_logit)
            log_lik = self._log_lik_terms(state.mix_mean, state.source_var, sigma)
            return log_lik.sum(axis=0) + self._sigma_log_prior(state.sigma_logit)

        raise ValueError(f"Unknown block: {block!r}")

    # ---- State handling ----

    def make_state(
        self,
        f: np.ndarray,
        mu_f: np.ndarray,
        log_sigma_f: np.ndarray,
        sigma_logit: np.ndarray
    ) -> MixingState:
        mix_mean, source_var = self.mixing_moments(f)
        return MixingState(
            f=f,
            mu_f=mu_f,
            log_sigma_f=log_sigma_f,
            sigma_logit=sigma_logit,
            mix_mean=mix_mean,
            source_var=source_var
        )

    def replace(self, state: MixingState, block: str, values: np.ndarray) -> MixingState:
        """Return a copy of ``state`` with ``block`` set to ``values``."""
        if block == 'f':
            mix_mean, source_var = self.mixing_moments(values)
            return dataclass_replace(state, f=values, mix_mean=mix_mean, source_var=source_var)
        return dataclass_replace(state, **{block: values})

    def merge(
        self,
        current: MixingState,
        proposed: MixingState,
        block: str,
        accept: np.ndarray
    ) -> MixingState:
        """Take accepted elements of ``block`` from ``proposed``."""
        if not np.any(accept):
            return current
        if np.all(accept):
            return proposed

        if block == 'f':
            rows = accept[:, None]
            return dataclass_replace(
                current,
                f=np.where(rows, proposed.f, current.f),
                mix_mean=np.where(rows, proposed.mix_mean, current.mix_mean),
                source_var=np.where(rows, proposed.source_var, current.source_var)
            )
        values = np.where(accept, getattr(proposed, block), getattr(current, block))
        return dataclass_replace(current, **{block: values})

    def block_values(self, state: MixingState, block: str) -> np.ndarray:
        return getattr(state, block)

    def gibbs_update(self, state: MixingState, rng: np.random.Generator) -> MixingState:
        """
        Exact draw of mu_f from its Normal full conditional.

        With f[i, k] ~ Normal(mu_f[k], sigma_f[k]) and a Normal prior on
        mu_f[k], the conditional is Normal with precision
        1/prior_sd^2 + N/sigma_f^2.
        """
        prior_precision = 1.0 / self.prior_sd ** 2
        data_precision = self.N_ / state.sigma_f ** 2
        precision = prior_precision + data_precision
        mean = (
            self.prior_means * prior_precision
            + state.f.sum(axis=0) / state.sigma_f ** 2
        ) / precision
        mu_f = mean + rng.standard_normal(self.K_) / np.sqrt(precision)
        return dataclass_replace(state, mu_f=mu_f)

    def initial_state(self, rng: np.random.Generator) -> MixingState:
        """Random starting point drawn around the prior."""
        mu_f = rng.normal(self.prior_means, self.prior_sd)
        log_sigma_f = np.log(self.prior_sd) + rng.normal(0.0, 0.5, size=self.K_)
        f = mu_f + np.exp(log_sigma_f) * rng.standard_normal((self.N_, self.K_))

        # Start sigma in the lower part of its range, where the data live
        start_upper = min(self.sigma_upper, 1.0)
        sigma = start_upper * rng.uniform(0.05, 0.95, size=self.J_)
        sigma_logit = np.log(sigma) - np.log(self.sigma_upper - sigma)

        return self.make_state(f, mu_f, log_sigma_f, sigma_logit)

    def draw(self, state: MixingState, individual_effects: bool = False) -> Dict[str, np.ndarray]:
        """Constrained parameter values recorded for one retained iteration."""
        draw = {
            'p': softmax(state.mu_f),
            'sigma': self.sigma(state.sigma_logit),
        }
        if individual_effects:
            draw['p_ind'] = softmax(state.f, axis=1)
        return draw

    def __repr__(self) -> str:
        return (
            f"MixingModel(group={self.group}, N={self.N_}, K={self.K_}, "
            f"J={self.J_}, solo={self.solo}, sigma_upper={self.sigma_upper})"
        )
