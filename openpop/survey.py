"""
Survey data tensors for repeated-count surveys across sites, seasons and visits
"""

import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple

# Placeholder written into missing observation-level covariate slots.
COVARIATE_PLACEHOLDER = 1.0

OBSERVATION_COVARIATES = ("hour", "flower_abundance")
SITE_COVARIATES = ("habitat",)
SEASON_COVARIATES = ("mean_flower_abundance",)


def _as_count_tensor(y) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split a count tensor into integer counts and an observed mask.

    Missing slots may be given as NaN, None or through a numpy masked array.
    Missing counts are stored as 0 in the returned counts, but they are
    never read without the mask.
    """
    if isinstance(y, np.ma.MaskedArray):
        mask = np.ma.getmaskarray(y)
        values = np.array(np.ma.getdata(y), dtype=float)
        values[mask] = np.nan
    else:
        values = np.array(y, dtype=float)

    if values.ndim != 3:
        raise ValueError(
            f"y must be a 3D tensor [n_sites, n_seasons, n_visits], got shape {values.shape}"
        )

    observed = ~np.isnan(values)
    obs_values = values[observed]
    if np.any(obs_values < 0):
        raise ValueError("y must contain non-negative counts")
    if np.any(obs_values != np.round(obs_values)):
        raise ValueError("y must contain integer counts")

    counts = np.where(observed, values, 0.0).astype(np.int64)
    return counts, observed


class SurveyData:
    """
    Immutable container of detection counts y[site, season, visit] and their covariates.

    Parameters
    ----------
    y : array-like, shape (n_sites, n_seasons, n_visits)
        Counts, with NaN / None / masked entries for unobserved slots.
    hour, flower_abundance : array-like, shape (n_sites, n_seasons, n_visits), optional
        Observation-level covariates. Missing entries are backfilled with
        ``placeholder`` since the model cannot consume missing covariates.
    habitat : sequence, shape (n_sites,), optional
        Categorical site-level covariate.
    mean_flower_abundance : array-like, shape (n_sites, n_seasons), optional
        Season-level covariate; must be fully observed.
    n_sites, n_seasons, n_visits : int, optional
        Declared dimensions; checked against the tensor when given.
    placeholder : float
        Neutral value for missing observation-level covariates.
    """

    def __init__(
        self,
        y,
        hour=None,
        flower_abundance=None,
        habitat: Optional[Sequence] = None,
        mean_flower_abundance=None,
        n_sites: Optional[int] = None,
        n_seasons: Optional[int] = None,
        n_visits: Optional[int] = None,
        placeholder: float = COVARIATE_PLACEHOLDER,
    ):
        counts, observed = _as_count_tensor(y)
        shape = counts.shape

        declared = {"n_sites": n_sites, "n_seasons": n_seasons, "n_visits": n_visits}
        for axis, (name, value) in enumerate(declared.items()):
            if value is not None and value != shape[axis]:
                raise ValueError(
                    f"{name}={value} is inconsistent with y of shape {shape}"
                )
        if shape[0] < 1 or shape[1] < 1 or shape[2] < 1:
            raise ValueError(f"y must have at least one site, season and visit, got {shape}")

        self.counts = counts
        self.observed = observed
        self.placeholder = float(placeholder)
        self._continuous: Dict[str, np.ndarray] = {}

        for name, values in (("hour", hour), ("flower_abundance", flower_abundance)):
            if values is None:
                continue
            arr = np.array(values, dtype=float)
            if arr.shape != shape:
                raise ValueError(f"{name} must have shape {shape}, got {arr.shape}")
            arr[np.isnan(arr)] = self.placeholder
            self._continuous[name] = arr

        if mean_flower_abundance is not None:
            arr = np.array(mean_flower_abundance, dtype=float)
            if arr.shape != shape[:2]:
                raise ValueError(
                    f"mean_flower_abundance must have shape {shape[:2]}, got {arr.shape}"
                )
            if np.isnan(arr).any():
                raise ValueError("mean_flower_abundance must be fully observed (no NaNs)")
            self._continuous["mean_flower_abundance"] = arr

        self.habitat: Optional[np.ndarray] = None
        self.habitat_levels: List[str] = []
        if habitat is not None:
            labels = np.array([str(h) for h in habitat])
            if labels.shape != (shape[0],):
                raise ValueError(f"habitat must have shape ({shape[0]},), got {labels.shape}")
            self.habitat = labels
            self.habitat_levels = sorted(set(labels.tolist()))

        self.counts.setflags(write=False)
        self.observed.setflags(write=False)
        for arr in self._continuous.values():
            arr.setflags(write=False)

    @property
    def n_sites(self) -> int:
        return self.counts.shape[0]

    @property
    def n_seasons(self) -> int:
        return self.counts.shape[1]

    @property
    def n_visits(self) -> int:
        return self.counts.shape[2]

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.counts.shape

    @property
    def y(self) -> np.ndarray:
        """Counts as float with NaN in missing slots."""
        return np.where(self.observed, self.counts, np.nan)

    def covariate(self, name: str) -> np.ndarray:
        if name == "habitat":
            if self.habitat is None:
                raise KeyError("habitat")
            return self.habitat
        return self._continuous[name]

    def has_covariate(self, name: str) -> bool:
        if name == "habitat":
            return self.habitat is not None
        return name in self._continuous

    @property
    def covariate_names(self) -> List[str]:
        names = [n for n in SITE_COVARIATES if self.has_covariate(n)]
        names += [n for n in SEASON_COVARIATES + OBSERVATION_COVARIATES if self.has_covariate(n)]
        return names

    def max_counts(self) -> np.ndarray:
        """Maximum observed count per site and season, 0 where nothing was observed."""
        return self.counts.max(axis=2)

    def n_observed(self) -> int:
        return int(self.observed.sum())

    def covariate_block(self, name: str, shape: Tuple[int, ...]) -> Tuple[np.ndarray, List[str]]:
        """
        Design columns of one covariate broadcast to a process shape.

        ``shape`` is (n_sites,) for initial abundance, (n_sites, n_seasons - 1)
        for transitions (indexed by the season the transition starts from) and
        (n_sites, n_seasons, n_visits) for detection.

        Returns
        -------
        X : np.ndarray
            Array of shape ``shape + (k,)``.
        labels : list of str
            Column labels; categorical covariates expand to one dummy column
            per non-reference level, e.g. ``habitat:meadow``.
        """
        n_sites = self.n_sites
        if name == "habitat":
            if self.habitat is None:
                raise ValueError("habitat covariate was not supplied")
            levels = self.habitat_levels[1:]
            dummies = np.zeros((n_sites, len(levels)))
            for i, level in enumerate(levels):
                dummies[:, i] = self.habitat == level
            expand = (slice(None),) + (None,) * (len(shape) - 1)
            X = np.broadcast_to(dummies[expand], shape + (len(levels),)).copy()
            return X, [f"habitat:{level}" for level in levels]

        if not self.has_covariate(name):
            raise ValueError(f"{name} covariate was not supplied")
        values = self._continuous[name]

        if name in SEASON_COVARIATES:
            if len(shape) == 1:
                block = values[:, 0]
            elif len(shape) == 2:
                block = values[:, : shape[1]]
            else:
                block = np.broadcast_to(values[:, :, None], shape)
        else:
            if len(shape) != 3:
                raise ValueError(f"{name} is an observation-level covariate")
            block = values

        block = np.asarray(block, dtype=float)
        if block.shape != shape:
            raise ValueError(f"{name} cannot be broadcast to shape {shape}")
        return block[..., None].copy(), [name]

    def with_missing(self, site: int, season: int, visit: int) -> "SurveyData":
        """Copy of the data with one more count slot marked missing."""
        y = self.y
        y[site, season, visit] = np.nan
        return SurveyData(
            y,
            hour=self._continuous.get("hour"),
            flower_abundance=self._continuous.get("flower_abundance"),
            habitat=self.habitat,
            mean_flower_abundance=self._continuous.get("mean_flower_abundance"),
            placeholder=self.placeholder,
        )

    def __repr__(self) -> str:
        return (
            f"SurveyData(n_sites={self.n_sites}, n_seasons={self.n_seasons}, "
            f"n_visits={self.n_visits}, observed={self.n_observed()}, "
            f"covariates={self.covariate_names})"
        )
