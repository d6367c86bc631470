"""PyMC graph of the dynamic latent opinion model.

Mirrors ``engine.reconstruct`` step for step with the same raw variable
names, so posterior draws can be handed straight back to the NumPy engine.
PyMC compiles the graph into the log density + gradient that NUTS consumes.
"""

from __future__ import annotations

from typing import Callable

import numpy as np
import pymc as pm
import pytensor.tensor as pt
from pymc.blocking import DictToArrayBijection, RaveledVars

from latent_opinion.config import (
    GAMMA_MEAN,
    LKJ_ETA,
    MU_LAMBDA_SD,
    PHI_RATE,
    PHI_SHAPE,
    SIGMA_DELTA_SD,
    SIGMA_THETA_SD,
    TAU_SD,
)
from latent_opinion.indices import OpinionIndices

ITEM_PARAMS = ["intercept", "slope"]


def build_opinion_graph(indices: OpinionIndices) -> pm.Model:
    """Build the non-centered dynamic beta-binomial IRT model (no sampling).

    Model structure:
        sigma_theta -> theta (ragged random walk)
        tau, Omega, mu_lambda -> (lambda, gamma) per item
        sigma_delta -> delta per item-country cell
        phi, eta -> BetaBinomial likelihood

    Returns:
        PyMC model ready for ``pm.sample``.
    """
    coords = {
        "country": list(indices.countries),
        "point": indices.point_labels(),
        "item": list(indices.items),
        "cell": list(indices.cells),
        "item_param": ITEM_PARAMS,
        "item_param_bis": ITEM_PARAMS,
        "obs_id": np.arange(indices.n_obs),
    }

    point_country = indices.point_country
    # Flat index of the cumulative sum just before each point's trajectory begins
    segment_base = indices.traj_start[point_country]

    with pm.Model(coords=coords) as model:
        # --- Latent trajectories: non-centered ragged random walk ---
        sigma_theta = pm.HalfNormal("sigma_theta", sigma=SIGMA_THETA_SD)
        theta_init = pm.Normal("theta_init", mu=0, sigma=1, dims="country")
        theta_innov = pm.Normal("theta_innov", mu=0, sigma=1, dims="point")

        walk = pt.concatenate([pt.zeros(1), pt.cumsum(sigma_theta * theta_innov)])
        theta = pm.Deterministic(
            "theta",
            theta_init[point_country] + walk[1:] - walk[segment_base],
            dims="point",
        )

        # --- Item intercepts and slopes: correlated, non-centered ---
        chol, corr, stds = pm.LKJCholeskyCov(
            "item_chol",
            n=2,
            eta=LKJ_ETA,
            sd_dist=pm.HalfNormal.dist(sigma=TAU_SD, shape=2),
            compute_corr=True,
            store_in_trace=False,
        )
        pm.Deterministic("tau", stds, dims="item_param")
        pm.Deterministic("Omega", corr, dims=("item_param", "item_param_bis"))
        mu_lambda = pm.Normal("mu_lambda", mu=indices.logit_mean_rate, sigma=MU_LAMBDA_SD)
        item_z = pm.Normal("item_z", mu=0, sigma=1, dims=("item", "item_param"))

        item_pairs = pt.stack([mu_lambda, pt.as_tensor(GAMMA_MEAN)]) + pt.dot(item_z, chol.T)
        lam = pm.Deterministic("lambda", item_pairs[:, 0], dims="item")
        gam = pm.Deterministic("gamma", item_pairs[:, 1], dims="item")

        # --- Item-country effects: i.i.d., one scale for every cell ---
        sigma_delta = pm.HalfNormal("sigma_delta", sigma=SIGMA_DELTA_SD)
        cell_z = pm.Normal("cell_z", mu=0, sigma=1, dims="cell")
        delta = pm.Deterministic("delta", sigma_delta * cell_z, dims="cell")

        # --- Likelihood ---
        phi = pm.Gamma("phi", alpha=PHI_SHAPE, beta=PHI_RATE)
        eta = pm.math.invlogit(
            lam[indices.obs_item]
            + delta[indices.obs_cell]
            + gam[indices.obs_item] * theta[indices.obs_point]
        )
        pm.BetaBinomial(
            "x",
            n=indices.sample_size,
            alpha=phi * eta,
            beta=phi * (1.0 - eta),
            observed=indices.response_count,
            dims="obs_id",
        )

    return model


def density_oracle(
    model: pm.Model,
) -> tuple[Callable[[np.ndarray], float], Callable[[np.ndarray], np.ndarray], np.ndarray]:
    """Compile flat-vector log density and gradient functions for a model.

    The vector lives on PyMC's unconstrained (transformed) scale. Returns
    (logp, dlogp, initial_vector). Both functions are pure: they close over
    compiled graphs only and keep no state between calls.
    """
    initial = DictToArrayBijection.map(model.initial_point())
    point_map_info = initial.point_map_info
    logp_fn = model.compile_logp()
    dlogp_fn = model.compile_dlogp()

    def logp(vector: np.ndarray) -> float:
        point = DictToArrayBijection.rmap(RaveledVars(np.asarray(vector), point_map_info))
        value = float(logp_fn(point))
        return value if np.isfinite(value) else -np.inf

    def dlogp(vector: np.ndarray) -> np.ndarray:
        point = DictToArrayBijection.rmap(RaveledVars(np.asarray(vector), point_map_info))
        return np.asarray(dlogp_fn(point))

    return logp, dlogp, np.asarray(initial.data)
