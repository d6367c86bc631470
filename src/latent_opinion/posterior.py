"""Posterior processing: standardized country-year opinion and item curves.

theta is only identified up to location and scale, so every trajectory
draw is standardized by the pooled mean and SD of all theta values (all
draws, all points). Item parameters are rescaled so that each item's
characteristic curve is unchanged:

    invlogit(lambda + gamma * theta) == invlogit(lambda' + gamma' * theta_std)
    lambda' = lambda + gamma * mean(theta),  gamma' = gamma * sd(theta)
"""

from __future__ import annotations

from typing import Iterator

import arviz as az
import numpy as np
import polars as pl

from latent_opinion.config import INTERVAL_PROB, PPC_REPLICATIONS, RANDOM_SEED
from latent_opinion.engine import (
    parameter_shapes,
    reconstruct,
    simulate_replicates,
)
from latent_opinion.indices import OpinionIndices


def stack_draws(idata: az.InferenceData, var_name: str) -> np.ndarray:
    """Posterior draws of one variable as (n_chains * n_draws, *var_shape)."""
    da = idata.posterior[var_name]
    other_dims = [d for d in da.dims if d not in ("chain", "draw")]
    return da.stack(sample=("chain", "draw")).transpose("sample", *other_dims).values


def draw_parameters(
    idata: az.InferenceData,
    indices: OpinionIndices,
    draw_idx: np.ndarray | None = None,
) -> Iterator[dict[str, np.ndarray]]:
    """Yield raw parameter dicts (engine layout) for the selected pooled draws."""
    stacked = {name: stack_draws(idata, name) for name in parameter_shapes(indices)}
    n_total = next(iter(stacked.values())).shape[0]
    if draw_idx is None:
        draw_idx = np.arange(n_total)
    for d in draw_idx:
        yield {name: values[int(d)] for name, values in stacked.items()}


# ── Standardization ──────────────────────────────────────────────────────────


def standardize_theta(theta_draws: np.ndarray) -> tuple[np.ndarray, float, float]:
    """Standardize trajectory draws by their pooled mean and SD.

    Returns (theta_std, mean, sd).
    """
    theta_draws = np.asarray(theta_draws, dtype=np.float64)
    mean = float(theta_draws.mean())
    sd = float(theta_draws.std())
    if not sd > 0:
        raise ValueError("theta draws have zero spread; cannot standardize")
    return (theta_draws - mean) / sd, mean, sd


def rescale_item_parameters(
    lam: np.ndarray,
    gam: np.ndarray,
    theta_mean: float,
    theta_sd: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Re-express item intercepts/slopes on the standardized theta scale."""
    lam = np.asarray(lam, dtype=np.float64)
    gam = np.asarray(gam, dtype=np.float64)
    return lam + gam * theta_mean, gam * theta_sd


def summarize_trajectories(
    theta_std: np.ndarray,
    interval_prob: float = INTERVAL_PROB,
) -> dict[str, np.ndarray]:
    """Per-point posterior mean, SD and central interval across draws."""
    tail = 100.0 * (1.0 - interval_prob) / 2.0
    lower, upper = np.percentile(theta_std, [tail, 100.0 - tail], axis=0)
    return {
        "mean": theta_std.mean(axis=0),
        "sd": theta_std.std(axis=0),
        "lower": lower,
        "upper": upper,
    }


# ── Tables ───────────────────────────────────────────────────────────────────


def opinion_estimates(idata: az.InferenceData, indices: OpinionIndices) -> pl.DataFrame:
    """Standardized opinion estimate for every (country, year) trajectory point.

    Includes years after a country's last survey (extrapolated up to the
    final modeled year). Columns: country, year, point_estimate, lower_95,
    upper_95, std_dev, observed.
    """
    theta_std, theta_mean, theta_sd = standardize_theta(stack_draws(idata, "theta"))
    summary = summarize_trajectories(theta_std)

    surveyed = set(zip(indices.obs_country.tolist(), indices.obs_year.tolist()))
    rows = []
    for i, country in enumerate(indices.countries):
        start = int(indices.traj_start[i])
        first = int(indices.first_observed_year[i])
        for step in range(int(indices.traj_length[i])):
            r = start + step
            year = first + step
            rows.append(
                {
                    "country": country,
                    "year": year,
                    "point_estimate": float(summary["mean"][r]),
                    "lower_95": float(summary["lower"][r]),
                    "upper_95": float(summary["upper"][r]),
                    "std_dev": float(summary["sd"][r]),
                    "observed": (i, year) in surveyed,
                }
            )

    print(
        f"  {len(rows):,} country-year estimates "
        f"(theta pooled mean {theta_mean:+.3f}, sd {theta_sd:.3f})"
    )
    return pl.DataFrame(rows)


def item_parameters(idata: az.InferenceData, indices: OpinionIndices) -> pl.DataFrame:
    """Posterior summaries of item intercepts and slopes on the standardized scale.

    Rescaling is applied per draw with the pooled theta mean/SD, so every
    draw's characteristic curves are preserved. Columns: item, intercept,
    slope, source_project, intercept_sd, slope_sd.
    """
    _, theta_mean, theta_sd = standardize_theta(stack_draws(idata, "theta"))
    lam_std, gam_std = rescale_item_parameters(
        stack_draws(idata, "lambda"), stack_draws(idata, "gamma"), theta_mean, theta_sd
    )
    return pl.DataFrame(
        {
            "item": list(indices.items),
            "intercept": lam_std.mean(axis=0),
            "slope": gam_std.mean(axis=0),
            "source_project": list(indices.item_projects),
            "intercept_sd": lam_std.std(axis=0),
            "slope_sd": gam_std.std(axis=0),
        }
    ).sort("slope", descending=True)


def fitted_probabilities(idata: az.InferenceData, indices: OpinionIndices) -> pl.DataFrame:
    """Posterior mean fitted response probability for every observation."""
    eta_sum = np.zeros(indices.n_obs)
    n = 0
    for params in draw_parameters(idata, indices):
        eta_sum += reconstruct(params, indices).eta
        n += 1
    return pl.DataFrame(
        {
            "country": [indices.countries[c] for c in indices.obs_country.tolist()],
            "year": indices.obs_year,
            "item": [indices.items[k] for k in indices.obs_item.tolist()],
            "observed_rate": indices.response_count / indices.sample_size,
            "fitted_rate": eta_sum / n,
        }
    )


# ── Posterior predictive check ───────────────────────────────────────────────


def posterior_predictive_check(
    idata: az.InferenceData,
    indices: OpinionIndices,
    n_reps: int = PPC_REPLICATIONS,
    seed: int = RANDOM_SEED,
) -> dict:
    """Compare the observed pooled response rate with replicated datasets.

    Returns observed and replicated rates plus a Bayesian p-value.
    """
    rng = np.random.default_rng(seed)
    n_total = idata.posterior.sizes["chain"] * idata.posterior.sizes["draw"]
    picks = rng.integers(0, n_total, size=min(n_reps, n_total))

    total_s = float(indices.sample_size.sum())
    observed_rate = float(indices.response_count.sum()) / total_s
    replicated = np.array(
        [
            simulate_replicates(reconstruct(params, indices), indices, rng).sum() / total_s
            for params in draw_parameters(idata, indices, picks)
        ]
    )
    p_value = float(np.mean(replicated >= observed_rate))

    print(f"    Observed response rate: {observed_rate:.3f}")
    print(f"    Replicated rate: {replicated.mean():.3f} +/- {replicated.std():.3f}")
    print(f"    Bayesian p-value: {p_value:.3f}")
    if 0.1 <= p_value <= 0.9:
        print("    Result: WELL-CALIBRATED (p in [0.1, 0.9])")
    else:
        print("    Result: POTENTIAL MISFIT (p outside [0.1, 0.9])")

    return {
        "observed_rate": observed_rate,
        "replicated_rate_mean": float(replicated.mean()),
        "replicated_rate_sd": float(replicated.std()),
        "bayesian_p": p_value,
        "n_replications": int(len(replicated)),
    }
