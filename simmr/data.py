"""
Mixture datasets for simmr.

A ``MixtureDataset`` holds the mixture observations together with the
source, correction and concentration matrices. It is validated once, when it
is built, and treated as read-only afterwards.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .exceptions import InputError


class MixtureDataset:
    """
    Validated mixture data: N observations of J tracers, K sources.

    Use :func:`load` to build one from raw arrays or data frames.

    Attributes
    ----------
    mixtures : np.ndarray, shape (N, J)
    source_names : List[str]
    tracer_names : List[str]
    source_means, source_sds : np.ndarray, shape (K, J)
    correction_means, correction_sds : np.ndarray, shape (K, J)
    concentration_means : np.ndarray, shape (K, J)
    group : np.ndarray, shape (N,)
        Integer group labels in 1..n_groups
    group_names : List[str]
        Display name per group id (index g-1)
    """

    def __init__(
        self,
        mixtures: np.ndarray,
        source_names: List[str],
        tracer_names: List[str],
        source_means: np.ndarray,
        source_sds: np.ndarray,
        correction_means: np.ndarray,
        correction_sds: np.ndarray,
        concentration_means: np.ndarray,
        group: np.ndarray,
        n_groups: int,
        group_names: List[str]
    ):
        self.mixtures = _frozen_copy('mixtures', mixtures, np.float64)
        self.source_names = list(source_names)
        self.tracer_names = list(tracer_names)
        self.source_means = _frozen_copy('source_means', source_means, np.float64)
        self.source_sds = _frozen_copy('source_sds', source_sds, np.float64)
        self.correction_means = _frozen_copy('correction_means', correction_means, np.float64)
        self.correction_sds = _frozen_copy('correction_sds', correction_sds, np.float64)
        self.concentration_means = _frozen_copy(
            'concentration_means', concentration_means, np.float64
        )
        self.group = _frozen_copy('group', group, np.int64)
        self.n_groups = n_groups
        self.group_names = list(group_names)

        self._validate()

    @property
    def n_obs(self) -> int:
        return self.mixtures.shape[0]

    @property
    def n_tracers(self) -> int:
        return len(self.tracer_names)

    @property
    def n_sources(self) -> int:
        return len(self.source_names)

    def group_rows(self, group_id: int) -> np.ndarray:
        """Row indices (dataset order) of the observations in ``group_id``."""
        if not 1 <= group_id <= self.n_groups:
            raise InputError(
                f"Invalid group id: {group_id}. Must be in [1, {self.n_groups}]"
            )
        return np.flatnonzero(self.group == group_id)

    def group_sizes(self) -> Dict[int, int]:
        return {g: int(np.sum(self.group == g)) for g in range(1, self.n_groups + 1)}

    def _validate(self):
        K, J, N = self.n_sources, self.n_tracers, self.n_obs

        if K < 2:
            raise InputError(f"At least 2 sources are required. Got: {K}")
        if N < 1:
            raise InputError("At least 1 mixture observation is required")
        if self.mixtures.ndim != 2 or self.mixtures.shape[1] != J:
            raise InputError(
                f"mixtures shape mismatch. Expected (N, {J}), got {self.mixtures.shape}"
            )
        if len(set(self.source_names)) != K:
            raise InputError(f"source_names must be unique. Got: {self.source_names}")
        if len(set(self.tracer_names)) != J:
            raise InputError(f"tracer_names must be unique. Got: {self.tracer_names}")

        matrices = {
            'source_means': self.source_means,
            'source_sds': self.source_sds,
            'correction_means': self.correction_means,
            'correction_sds': self.correction_sds,
            'concentration_means': self.concentration_means,
        }
        for name, matrix in matrices.items():
            if matrix.shape != (K, J):
                raise InputError(
                    f"{name} shape mismatch. Expected ({K}, {J}) for "
                    f"{K} sources and {J} tracers, got {matrix.shape}"
                )
            if not np.all(np.isfinite(matrix)):
                raise InputError(f"{name} contains non-finite values")

        if not np.all(np.isfinite(self.mixtures)):
            raise InputError("mixtures contains missing or non-finite values")
        if np.any(self.source_sds <= 0):
            raise InputError(
                f"source_sds must be positive. Got minimum {self.source_sds.min()}"
            )
        # Zero is the neutral default for corrections
        if np.any(self.correction_sds < 0):
            raise InputError(
                f"correction_sds must be non-negative. Got minimum {self.correction_sds.min()}"
            )
        if np.any(self.concentration_means <= 0):
            raise InputError(
                f"concentration_means must be positive. Got minimum "
                f"{self.concentration_means.min()}"
            )

        if self.group.shape != (N,):
            raise InputError(
                f"group must have length {N} (one label per observation), "
                f"got {self.group.shape[0] if self.group.ndim else 0}"
            )
        if self.n_groups < 1:
            raise InputError(f"n_groups must be >= 1. Got: {self.n_groups}")
        outside = self.group[(self.group < 1) | (self.group > self.n_groups)]
        if outside.size:
            raise InputError(
                f"group labels outside [1, {self.n_groups}]: {sorted(set(outside.tolist()))}"
            )
        unused = sorted(set(range(1, self.n_groups + 1)) - set(self.group.tolist()))
        if unused:
            raise InputError(f"group ids with no observations: {unused}")
        if len(self.group_names) != self.n_groups:
            raise InputError(
                f"group_names must have length {self.n_groups}, got {len(self.group_names)}"
            )

    def subset(self, rows: Sequence[int]) -> np.ndarray:
        """Mixture values of the given rows, shape (len(rows), J)."""
        return self.mixtures[np.asarray(rows, dtype=np.intp)]

    def to_frame(self) -> pd.DataFrame:
        """Mixtures as a data frame with tracer columns and a ``group`` column."""
        frame = pd.DataFrame(self.mixtures, columns=self.tracer_names)
        frame['group'] = self.group
        return frame

    def __repr__(self) -> str:
        return (
            f"MixtureDataset(n_obs={self.n_obs}, n_sources={self.n_sources}, "
            f"n_tracers={self.n_tracers}, n_groups={self.n_groups})"
        )


def _frozen_copy(name: str, value, dtype) -> np.ndarray:
    """Private read-only copy of an input array."""
    try:
        array = np.array(value, dtype=dtype)
    except (TypeError, ValueError) as exc:
        raise InputError(f"{name} must be numeric: {exc}") from exc
    array.setflags(write=False)
    return array


def _as_matrix(name: str, value, default: Optional[float], shape) -> np.ndarray:
    if value is None:
        if default is None:
            raise InputError(f"{name} is required")
        return np.full(shape, default, dtype=np.float64)
    if isinstance(value, pd.DataFrame):
        value = value.values
    try:
        matrix = np.array(value, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InputError(f"{name} must be numeric: {exc}") from exc
    if matrix.ndim == 1 and shape[1] == 1:
        matrix = matrix.reshape(-1, 1)
    if matrix.ndim != 2:
        raise InputError(f"{name} must be a 2-d matrix, got {matrix.ndim} dimensions")
    return matrix


def _encode_groups(group, n_obs: int, n_groups: Optional[int]):
    """Map group labels to integer ids 1..G, returning (ids, n_groups, names)."""
    if group is None:
        return np.ones(n_obs, dtype=np.int64), 1, ['1']

    labels = np.asarray(group.values if isinstance(group, pd.Series) else group)
    if labels.ndim != 1:
        raise InputError("group must be one-dimensional")

    if np.issubdtype(labels.dtype, np.integer):
        ids = labels.astype(np.int64)
        if n_groups is None:
            n_groups = int(ids.max()) if ids.size else 0
        return ids, int(n_groups), [str(g) for g in range(1, int(n_groups) + 1)]

    if np.issubdtype(labels.dtype, np.floating):
        if not np.all(np.isfinite(labels)) or np.any(labels != np.round(labels)):
            raise InputError("numeric group labels must be whole numbers")
        return _encode_groups(labels.astype(np.int64), n_obs, n_groups)

    # Non-numeric labels are treated as categories in sorted order
    names = sorted(set(labels.tolist()), key=str)
    if n_groups is not None and n_groups != len(names):
        raise InputError(
            f"n_groups={n_groups} but {len(names)} distinct group labels were given"
        )
    lookup = {name: index + 1 for index, name in enumerate(names)}
    ids = np.array([lookup[label] for label in labels.tolist()], dtype=np.int64)
    return ids, len(names), [str(name) for name in names]


def load(
    mixtures,
    source_names: Sequence[str],
    source_means,
    source_sds,
    correction_means=None,
    correction_sds=None,
    concentration_means=None,
    group=None,
    tracer_names: Optional[Sequence[str]] = None,
    n_groups: Optional[int] = None
) -> MixtureDataset:
    """
    Build a validated :class:`MixtureDataset`.

    Parameters
    ----------
    mixtures : array-like or pd.DataFrame, shape (N, J)
        Tracer measurements, one row per observation. Column names of a data
        frame are used as tracer names.
    source_names : Sequence[str]
        K source names. Their number fixes the number of sources.
    source_means, source_sds : array-like, shape (K, J)
        Source means and standard deviations per tracer
    correction_means, correction_sds : array-like, shape (K, J), optional
        Additive correction (e.g. trophic enrichment) and its sd.
        Default 0.
    concentration_means : array-like, shape (K, J), optional
        Concentration dependence weights. Default 1.
    group : array-like, shape (N,), optional
        Group label per observation. Integer labels must use 1..n_groups;
        other labels are mapped to ids in sorted order. Default: one group.
    tracer_names : Sequence[str], optional
        J tracer names. Default: data frame columns or ``tracer_1..``.
    n_groups : int, optional
        Declared number of groups. Default: largest integer label.

    Returns
    -------
    dataset : MixtureDataset

    Raises
    ------
    InputError
        On any dimension mismatch, invalid value or group label.

    Examples
    --------
    >>> dataset = load(
    ...     mixtures=[[-10.13, 11.59], [-10.72, 11.01]],
    ...     source_names=['A', 'B'],
    ...     source_means=[[-14.0, 3.06], [-15.1, 7.05]],
    ...     source_sds=[[0.48, 0.46], [0.38, 0.39]],
    ...     tracer_names=['d13C', 'd15N']
    ... )
    """
    if tracer_names is None and isinstance(mixtures, pd.DataFrame):
        tracer_names = [str(c) for c in mixtures.columns]

    mix = _as_matrix('mixtures', mixtures, None, (0, 0))
    n_obs, n_tracers = mix.shape

    if tracer_names is None:
        tracer_names = [f"tracer_{j + 1}" for j in range(n_tracers)]
    tracer_names = [str(t) for t in tracer_names]
    if len(tracer_names) != n_tracers:
        raise InputError(
            f"tracer_names has {len(tracer_names)} entries but mixtures has "
            f"{n_tracers} columns"
        )

    source_names = [str(s) for s in source_names]
    shape = (len(source_names), n_tracers)

    group_ids, n_groups, group_names = _encode_groups(group, n_obs, n_groups)

    return MixtureDataset(
        mixtures=mix,
        source_names=source_names,
        tracer_names=tracer_names,
        source_means=_as_matrix('source_means', source_means, None, shape),
        source_sds=_as_matrix('source_sds', source_sds, None, shape),
        correction_means=_as_matrix('correction_means', correction_means, 0.0, shape),
        correction_sds=_as_matrix('correction_sds', correction_sds, 0.0, shape),
        concentration_means=_as_matrix('concentration_means', concentration_means, 1.0, shape),
        group=group_ids,
        n_groups=n_groups,
        group_names=group_names
    )
