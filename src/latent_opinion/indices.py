"""Index construction: ragged country-year survey coverage to flat arrays.

Each country gets a latent trajectory running from its first surveyed year
through the global final year (right-padded, never left-padded). All
trajectories live back to back in one flat array of length R, addressed
through a per-country offset table:

    country i  ->  points [traj_start[i], traj_start[i] + traj_length[i])

Every observation carries the flat index of its (country, year) point, so the
model never touches a nested or country-by-year structure.

Item-country cells are ordered by item, then country, so the cells of each
item form one contiguous block of length ``cell_block_length[item]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from latent_opinion.errors import DataError, TrajectoryIndexError
from latent_opinion.models import Observation

# Keeps the logit of the pooled response rate finite when every count is 0 or s.
_RATE_CLIP = 1e-3


@dataclass(frozen=True, eq=False)
class OpinionIndices:
    """Immutable index structures and dimensions for one dataset.

    All integer ids are 0-based. Per-observation arrays have length n_obs,
    per-point arrays length n_points (R), per-cell arrays length n_cells.
    """

    countries: tuple[str, ...]
    items: tuple[str, ...]
    cells: tuple[str, ...]
    item_projects: tuple[str, ...]
    first_year: int
    final_year: int

    # per observation
    obs_country: np.ndarray
    obs_item: np.ndarray
    obs_cell: np.ndarray
    obs_year: np.ndarray
    obs_point: np.ndarray
    response_count: np.ndarray
    sample_size: np.ndarray

    # per country
    first_observed_year: np.ndarray
    traj_start: np.ndarray
    traj_length: np.ndarray

    # per trajectory point
    point_country: np.ndarray
    point_year: np.ndarray

    # per cell / per item
    cell_item: np.ndarray
    cell_country: np.ndarray
    cell_block_length: np.ndarray

    logit_mean_rate: float

    @property
    def n_obs(self) -> int:
        return len(self.response_count)

    @property
    def n_countries(self) -> int:
        return len(self.countries)

    @property
    def n_items(self) -> int:
        return len(self.items)

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    @property
    def n_points(self) -> int:
        return len(self.point_country)

    @property
    def n_years(self) -> int:
        return self.final_year - self.first_year + 1

    @property
    def cell_block_start(self) -> np.ndarray:
        return np.concatenate([[0], np.cumsum(self.cell_block_length)[:-1]]).astype(np.int64)

    @property
    def offsets_one_based(self) -> np.ndarray:
        """Offset table in 1-based positions (first point of each country)."""
        return self.traj_start + 1

    def trajectory_slice(self, country_idx: int) -> slice:
        start = int(self.traj_start[country_idx])
        return slice(start, start + int(self.traj_length[country_idx]))

    def point_labels(self) -> list[str]:
        """Human-readable ``country:year`` label for every trajectory point."""
        return [
            f"{self.countries[c]}:{y}"
            for c, y in zip(self.point_country.tolist(), self.point_year.tolist())
        ]


# ── Validation ───────────────────────────────────────────────────────────────


def _as_int(value: object, name: str, n: int) -> int:
    if value is None:
        raise DataError(f"Observation {n}: missing {name}")
    if isinstance(value, bool):
        raise DataError(f"Observation {n}: {name} must be an integer, got {value!r}")
    try:
        as_float = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise DataError(f"Observation {n}: {name} must be an integer, got {value!r}") from None
    if not np.isfinite(as_float) or as_float != int(as_float):
        raise DataError(f"Observation {n}: {name} must be an integer, got {value!r}")
    return int(as_float)


def _validate(obs: Observation, n: int) -> tuple[int, int, int]:
    """Check one observation, returning (year, x, s) as ints."""
    for name in ("country", "item"):
        value = getattr(obs, name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise DataError(f"Observation {n}: missing {name}")
    year = _as_int(obs.year, "year", n)
    x = _as_int(obs.response_count, "response_count", n)
    s = _as_int(obs.sample_size, "sample_size", n)
    if s <= 0:
        raise DataError(f"Observation {n}: sample_size must be positive, got {s}")
    if x < 0:
        raise DataError(f"Observation {n}: response_count must be >= 0, got {x}")
    if x > s:
        raise DataError(
            f"Observation {n}: response_count {x} exceeds sample_size {s} "
            f"({obs.country}, {year}, {obs.item})"
        )
    return year, x, s


# ── Builder ──────────────────────────────────────────────────────────────────


def build_indices(
    observations: Sequence[Observation],
    first_year: int | None = None,
    final_year: int | None = None,
    verbose: bool = True,
) -> OpinionIndices:
    """Build flat index arrays from a list of observations.

    ``first_year``/``final_year`` bound the modeled period and default to the
    observed range. Raises DataError for malformed observations and
    TrajectoryIndexError if an observation cannot be placed on a trajectory.
    """
    if not observations:
        raise DataError("No observations supplied")

    checked = [_validate(obs, n) for n, obs in enumerate(observations)]
    years = np.array([c[0] for c in checked], dtype=np.int64)
    x = np.array([c[1] for c in checked], dtype=np.int64)
    s = np.array([c[2] for c in checked], dtype=np.int64)

    first_year = int(years.min()) if first_year is None else int(first_year)
    final_year = int(years.max()) if final_year is None else int(final_year)
    if final_year < first_year:
        raise DataError(f"final_year {final_year} precedes first_year {first_year}")
    out_of_range = (years < first_year) | (years > final_year)
    if out_of_range.any():
        n = int(np.flatnonzero(out_of_range)[0])
        raise DataError(
            f"Observation {n}: year {years[n]} outside modeled range "
            f"[{first_year}, {final_year}]"
        )

    # Dense ids: countries and items in sorted label order
    countries = tuple(sorted({obs.country for obs in observations}))
    items = tuple(sorted({obs.item for obs in observations}))
    country_to_idx = {c: i for i, c in enumerate(countries)}
    item_to_idx = {k: i for i, k in enumerate(items)}

    obs_country = np.array([country_to_idx[o.country] for o in observations], dtype=np.int64)
    obs_item = np.array([item_to_idx[o.item] for o in observations], dtype=np.int64)

    # Cells: one per observed (item, country) pair, sorted by item then country
    cell_pair: dict[str, tuple[int, int]] = {}
    for n, obs in enumerate(observations):
        pair = (int(obs_item[n]), int(obs_country[n]))
        label = obs.cell_label
        if cell_pair.setdefault(label, pair) != pair:
            raise DataError(
                f"Observation {n}: cell {label!r} used for more than one item-country pair"
            )
    if len(set(cell_pair.values())) != len(cell_pair):
        raise DataError("Each item-country pair must map to a single cell label")
    cells = tuple(sorted(cell_pair, key=lambda label: cell_pair[label]))
    cell_to_idx = {label: p for p, label in enumerate(cells)}
    cell_item = np.array([cell_pair[label][0] for label in cells], dtype=np.int64)
    cell_country = np.array([cell_pair[label][1] for label in cells], dtype=np.int64)
    obs_cell = np.array([cell_to_idx[o.cell_label] for o in observations], dtype=np.int64)
    cell_block_length = np.bincount(cell_item, minlength=len(items)).astype(np.int64)

    # Trajectories: first observed year through the global final year
    n_countries = len(countries)
    first_observed = np.full(n_countries, final_year + 1, dtype=np.int64)
    np.minimum.at(first_observed, obs_country, years)
    traj_length = final_year - first_observed + 1
    traj_start = np.concatenate([[0], np.cumsum(traj_length)[:-1]]).astype(np.int64)
    n_points = int(traj_length.sum())

    point_country = np.repeat(np.arange(n_countries, dtype=np.int64), traj_length)
    point_year = (
        np.arange(n_points, dtype=np.int64)
        - np.repeat(traj_start, traj_length)
        + np.repeat(first_observed, traj_length)
    )

    obs_point = _resolve_points(obs_country, years, traj_start, traj_length, first_observed)
    if not (
        np.array_equal(point_country[obs_point], obs_country)
        and np.array_equal(point_year[obs_point], years)
    ):
        raise TrajectoryIndexError("Resolved trajectory points disagree with observations")

    # Pooled mean response rate centers the intercept-mean prior
    mean_rate = float(np.clip(np.mean(x / s), _RATE_CLIP, 1.0 - _RATE_CLIP))
    logit_mean_rate = float(np.log(mean_rate / (1.0 - mean_rate)))

    projects: dict[str, str] = {}
    for obs in observations:
        projects.setdefault(obs.item, obs.project)
    item_projects = tuple(projects[k] for k in items)

    arrays = (
        obs_country, obs_item, obs_cell, years, obs_point, x, s,
        first_observed, traj_start, traj_length, point_country, point_year,
        cell_item, cell_country, cell_block_length,
    )
    for arr in arrays:
        arr.setflags(write=False)

    indices = OpinionIndices(
        countries=countries,
        items=items,
        cells=cells,
        item_projects=item_projects,
        first_year=first_year,
        final_year=final_year,
        obs_country=obs_country,
        obs_item=obs_item,
        obs_cell=obs_cell,
        obs_year=years,
        obs_point=obs_point,
        response_count=x,
        sample_size=s,
        first_observed_year=first_observed,
        traj_start=traj_start,
        traj_length=traj_length,
        point_country=point_country,
        point_year=point_year,
        cell_item=cell_item,
        cell_country=cell_country,
        cell_block_length=cell_block_length,
        logit_mean_rate=logit_mean_rate,
    )

    if verbose:
        n_full = n_countries * indices.n_years
        print(
            f"  {indices.n_obs:,} observations: {n_countries} countries x "
            f"{indices.n_years} years ({first_year}-{final_year})"
        )
        print(f"  Items: {len(items)}, item-country cells: {len(cells)}")
        print(
            f"  Trajectory points: {n_points:,} / {n_full:,} "
            f"({100 * n_points / n_full:.1f}% of the full panel)"
        )
        print(f"  Mean response rate: {mean_rate:.3f} (logit {logit_mean_rate:+.3f})")

    return indices


def _resolve_points(
    obs_country: np.ndarray,
    obs_year: np.ndarray,
    traj_start: np.ndarray,
    traj_length: np.ndarray,
    first_observed: np.ndarray,
) -> np.ndarray:
    """Map each observation's (country, year) to its flat trajectory index."""
    step = obs_year - first_observed[obs_country]
    bad = (step < 0) | (step >= traj_length[obs_country])
    if bad.any():
        n = int(np.flatnonzero(bad)[0])
        raise TrajectoryIndexError(
            f"Observation {n} (country {obs_country[n]}, year {obs_year[n]}) "
            "has no trajectory point"
        )
    return traj_start[obs_country] + step
