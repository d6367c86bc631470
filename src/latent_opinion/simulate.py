"""Synthetic survey panels drawn from the model with known parameters.

Used for simulation-based calibration: fit the model to data generated from
known (theta, lambda, gamma, sigma) values and check how often the posterior
intervals cover them.
"""

from __future__ import annotations

import arviz as az
import numpy as np

from latent_opinion.engine import reconstruct, simulate_replicates
from latent_opinion.indices import build_indices
from latent_opinion.models import Observation
from latent_opinion.posterior import stack_draws

DEFAULT_TRUTH = {
    "sigma_theta": 0.15,
    "sigma_delta": 0.3,
    "tau": np.array([0.5, 0.25]),
    "rho": 0.3,
    "mu_lambda": -0.3,
    "phi": 60.0,
}


def _coverage_plan(
    n_countries: int,
    n_years: int,
    n_items: int,
    survey_prob: float,
    rng: np.random.Generator,
) -> list[tuple[int, int, int]]:
    """Ragged (country, year offset, item) survey schedule.

    Each country enters in the first half of the period and is surveyed in
    at least two distinct years, on a random subset of items.
    """
    plan = []
    for i in range(n_countries):
        entry = int(rng.integers(0, max(1, n_years // 2)))
        years = [t for t in range(entry, n_years) if rng.random() < survey_prob]
        years = sorted({entry, *years, n_years - 1 if entry < n_years - 1 else entry})
        items_i = rng.choice(n_items, size=int(rng.integers(1, n_items + 1)), replace=False)
        for t in years:
            for k in items_i:
                plan.append((i, t, int(k)))
    return plan


def simulate_dataset(
    n_countries: int = 8,
    n_years: int = 12,
    n_items: int = 4,
    sample_size: int = 1000,
    survey_prob: float = 0.5,
    first_year: int = 2000,
    seed: int = 0,
    truth: dict | None = None,
) -> tuple[list[Observation], dict[str, np.ndarray]]:
    """Generate a ragged panel of beta-binomial survey counts.

    Returns (observations, true values). True values hold the raw parameter
    draw in engine layout plus the natural quantities theta, lambda, gamma,
    delta, aligned with ``build_indices(observations)``.
    """
    if n_years < 2:
        raise ValueError("n_years must be at least 2")
    rng = np.random.default_rng(seed)
    hyper = {**DEFAULT_TRUTH, **(truth or {})}

    plan = _coverage_plan(n_countries, n_years, n_items, survey_prob, rng)
    countries = [f"C{i:02d}" for i in range(n_countries)]
    items = [f"Q{k:02d}" for k in range(n_items)]
    placeholder = [
        Observation(
            country=countries[i],
            year=first_year + t,
            item=items[k],
            cell=None,
            response_count=0,
            sample_size=sample_size,
            project=f"P{k % 2}",
        )
        for i, t, k in plan
    ]
    indices = build_indices(placeholder, first_year, first_year + n_years - 1, verbose=False)

    rho = float(hyper["rho"])
    params = {
        "theta_init": rng.standard_normal(indices.n_countries),
        "theta_innov": rng.standard_normal(indices.n_points),
        "sigma_theta": np.asarray(hyper["sigma_theta"], dtype=np.float64),
        "item_z": rng.standard_normal((indices.n_items, 2)),
        "tau": np.asarray(hyper["tau"], dtype=np.float64),
        "Omega": np.array([[1.0, rho], [rho, 1.0]]),
        "mu_lambda": np.asarray(hyper["mu_lambda"], dtype=np.float64),
        "cell_z": rng.standard_normal(indices.n_cells),
        "sigma_delta": np.asarray(hyper["sigma_delta"], dtype=np.float64),
        "phi": np.asarray(hyper["phi"], dtype=np.float64),
    }
    derived = reconstruct(params, indices)
    counts = simulate_replicates(derived, indices, rng)

    # build_indices keeps input order, so counts line up with the plan
    observations = [
        Observation(
            country=obs.country,
            year=obs.year,
            item=obs.item,
            cell=None,
            response_count=int(x),
            sample_size=obs.sample_size,
            project=obs.project,
        )
        for obs, x in zip(placeholder, counts)
    ]
    true_values = {
        **params,
        "theta": derived.theta,
        "lambda": derived.lam,
        "gamma": derived.gam,
        "delta": derived.delta,
    }
    return observations, true_values


def interval_coverage(draws: np.ndarray, truth: np.ndarray, prob: float = 0.95) -> float:
    """Fraction of true values inside their central posterior interval.

    ``draws`` has shape (n_draws, *truth.shape).
    """
    tail = 100.0 * (1.0 - prob) / 2.0
    lower, upper = np.percentile(draws, [tail, 100.0 - tail], axis=0)
    truth = np.asarray(truth)
    return float(np.mean((truth >= lower) & (truth <= upper)))


def _standardize_per_draw(
    theta: np.ndarray, lam: np.ndarray, gam: np.ndarray
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Put each draw (leading axis) on its own standardized theta scale."""
    mean = theta.mean(axis=-1, keepdims=True)
    sd = theta.std(axis=-1, keepdims=True)
    return (theta - mean) / sd, lam + gam * mean, gam * sd


def calibration_coverage(
    idata: az.InferenceData,
    truth: dict[str, np.ndarray],
    prob: float = 0.95,
) -> dict[str, float]:
    """Interval coverage of the true theta, lambda, gamma and delta.

    Theta is identified only up to location and scale, so every posterior
    draw and the truth are each standardized on their own before comparing;
    item intercepts and slopes are re-expressed on that scale. Cell effects
    do not depend on the theta scale. ``pooled`` is the coverage across all
    of these elements together.
    """
    theta, lam, gam = _standardize_per_draw(
        stack_draws(idata, "theta"), stack_draws(idata, "lambda"), stack_draws(idata, "gamma")
    )
    true_theta, true_lam, true_gam = _standardize_per_draw(
        np.asarray(truth["theta"])[None, :],
        np.asarray(truth["lambda"])[None, :],
        np.asarray(truth["gamma"])[None, :],
    )
    pairs = {
        "theta": (theta, true_theta[0]),
        "lambda": (lam, true_lam[0]),
        "gamma": (gam, true_gam[0]),
        "delta": (stack_draws(idata, "delta"), np.asarray(truth["delta"])),
    }
    coverage = {name: interval_coverage(d, t, prob) for name, (d, t) in pairs.items()}
    n_total = sum(t.size for _, t in pairs.values())
    coverage["pooled"] = float(
        sum(coverage[name] * t.size for name, (_, t) in pairs.items()) / n_total
    )
    return coverage
