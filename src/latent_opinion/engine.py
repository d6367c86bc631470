"""Pure NumPy rendition of the dynamic latent opinion model.

Every function here is a stateless function of (parameters, indices), so the
same indices can be shared read-only across any number of concurrent callers.

Raw (non-centered) parameters:

    theta_init   (J,)    standard-normal starting values per country
    theta_innov  (R,)    standard-normal random-walk innovations per point
    sigma_theta  ()      innovation SD
    item_z       (K, 2)  standard-normal item noise
    tau          (2,)    item intercept/slope scales
    Omega        (2, 2)  item intercept/slope correlation matrix
    mu_lambda    ()      item intercept mean
    cell_z       (P,)    standard-normal item-country noise
    sigma_delta  ()      item-country effect SD
    phi          ()      beta-binomial dispersion

Natural quantities are never sampled directly; ``reconstruct`` derives them:

    theta[first point of i] = theta_init[i] + sigma_theta * theta_innov[first]
    theta[t]                = theta[t-1]    + sigma_theta * theta_innov[t]
    (lambda_k, gamma_k)     = (mu_lambda, 1) + item_z[k] @ L.T,  L L' = diag(tau) Omega diag(tau)
    delta_p                 = sigma_delta * cell_z[p]
    eta_n                   = invlogit(lambda_k + delta_p + gamma_k * theta_r)
    x_n ~ BetaBinomial(s_n, phi * eta_n, phi * (1 - eta_n))
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

import numpy as np
from scipy import stats
from scipy.special import betaln, expit

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
from latent_opinion.errors import ModelConstraintViolation
from latent_opinion.indices import OpinionIndices

CORR_TOL = 1e-8

Params = Mapping[str, np.ndarray]


def parameter_shapes(indices: OpinionIndices) -> dict[str, tuple[int, ...]]:
    """Ordered name -> shape layout of the flat parameter vector."""
    return {
        "theta_init": (indices.n_countries,),
        "theta_innov": (indices.n_points,),
        "sigma_theta": (),
        "item_z": (indices.n_items, 2),
        "tau": (2,),
        "Omega": (2, 2),
        "mu_lambda": (),
        "cell_z": (indices.n_cells,),
        "sigma_delta": (),
        "phi": (),
    }


def pack(params: Params, indices: OpinionIndices) -> np.ndarray:
    """Flatten a parameter dict into one vector."""
    parts = []
    for name, shape in parameter_shapes(indices).items():
        value = np.asarray(params[name], dtype=np.float64)
        if value.shape != shape:
            raise ValueError(f"{name}: expected shape {shape}, got {value.shape}")
        parts.append(value.ravel())
    return np.concatenate(parts)


def unpack(vector: np.ndarray, indices: OpinionIndices) -> dict[str, np.ndarray]:
    """Split a flat parameter vector back into named arrays."""
    vector = np.asarray(vector, dtype=np.float64)
    shapes = parameter_shapes(indices)
    sizes = {name: int(np.prod(shape, dtype=np.int64)) for name, shape in shapes.items()}
    total = sum(sizes.values())
    if vector.ndim != 1 or vector.size != total:
        raise ValueError(f"Parameter vector has {vector.size} entries, layout needs {total}")
    params: dict[str, np.ndarray] = {}
    pos = 0
    for name, shape in shapes.items():
        params[name] = vector[pos : pos + sizes[name]].reshape(shape)
        pos += sizes[name]
    return params


@dataclass(frozen=True, eq=False)
class DerivedQuantities:
    """Natural-scale quantities reconstructed from one parameter draw."""

    theta: np.ndarray  # (R,)
    lam: np.ndarray  # (K,) item intercepts
    gam: np.ndarray  # (K,) item slopes
    delta: np.ndarray  # (P,)
    eta: np.ndarray  # (N,) fitted response probabilities
    shape1: np.ndarray  # (N,)
    shape2: np.ndarray  # (N,)


# ── Reconstruction ───────────────────────────────────────────────────────────


def _scalar(params: Params, name: str) -> float:
    value = float(np.asarray(params[name]))
    if not np.isfinite(value):
        raise ModelConstraintViolation(f"{name} is not finite")
    return value


def _nonnegative(params: Params, name: str) -> float:
    value = _scalar(params, name)
    if value < 0:
        raise ModelConstraintViolation(f"{name} must be non-negative, got {value}")
    return value


def reconstruct_theta(
    theta_init: np.ndarray,
    theta_innov: np.ndarray,
    sigma_theta: float,
    indices: OpinionIndices,
) -> np.ndarray:
    """Random-walk trajectories laid out in the flat point array."""
    theta = np.empty(indices.n_points)
    for i in range(indices.n_countries):
        span = indices.trajectory_slice(i)
        theta[span] = theta_init[i] + np.cumsum(sigma_theta * theta_innov[span])
    return theta


def item_cholesky(tau: np.ndarray, omega: np.ndarray) -> np.ndarray:
    """Lower Cholesky factor of diag(tau) @ omega @ diag(tau) for a 2x2 correlation.

    Computed in closed form so a zero scale (PSD, not PD) is still valid.
    """
    tau = np.asarray(tau, dtype=np.float64)
    omega = np.asarray(omega, dtype=np.float64)
    if tau.shape != (2,) or omega.shape != (2, 2):
        raise ModelConstraintViolation("item covariance must be 2x2")
    if not (np.all(np.isfinite(tau)) and np.all(np.isfinite(omega))):
        raise ModelConstraintViolation("item covariance is not finite")
    if np.any(tau < 0):
        raise ModelConstraintViolation(f"tau must be non-negative, got {tau}")
    if not np.allclose(np.diag(omega), 1.0, atol=CORR_TOL):
        raise ModelConstraintViolation("Omega must have a unit diagonal")
    if abs(omega[0, 1] - omega[1, 0]) > CORR_TOL:
        raise ModelConstraintViolation("Omega must be symmetric")
    rho = omega[0, 1]
    if abs(rho) > 1.0:
        raise ModelConstraintViolation(f"Omega is not positive semi-definite (rho={rho})")
    return np.array(
        [
            [tau[0], 0.0],
            [tau[1] * rho, tau[1] * np.sqrt(1.0 - rho * rho)],
        ]
    )


def reconstruct_items(
    item_z: np.ndarray,
    mu_lambda: float,
    tau: np.ndarray,
    omega: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Correlated item intercepts and slopes, returned as (lambda, gamma)."""
    chol = item_cholesky(tau, omega)
    pairs = np.array([mu_lambda, GAMMA_MEAN]) + np.asarray(item_z) @ chol.T
    return pairs[:, 0], pairs[:, 1]


def reconstruct_cells(
    cell_z: np.ndarray,
    sigma_delta: float,
    indices: OpinionIndices,
) -> np.ndarray:
    """Item-country effects, filled one contiguous item block at a time."""
    delta = np.empty(indices.n_cells)
    for start, length in zip(indices.cell_block_start, indices.cell_block_length):
        block = slice(int(start), int(start + length))
        delta[block] = sigma_delta * cell_z[block]
    return delta


def reconstruct(params: Params, indices: OpinionIndices) -> DerivedQuantities:
    """Derive all natural-scale quantities from one raw parameter draw.

    Raises ModelConstraintViolation when any quantity leaves its domain.
    """
    sigma_theta = _nonnegative(params, "sigma_theta")
    sigma_delta = _nonnegative(params, "sigma_delta")
    phi = _scalar(params, "phi")
    if phi <= 0:
        raise ModelConstraintViolation(f"phi must be positive, got {phi}")
    mu_lambda = _scalar(params, "mu_lambda")

    theta = reconstruct_theta(
        np.asarray(params["theta_init"]), np.asarray(params["theta_innov"]), sigma_theta, indices
    )
    lam, gam = reconstruct_items(params["item_z"], mu_lambda, params["tau"], params["Omega"])
    delta = reconstruct_cells(np.asarray(params["cell_z"]), sigma_delta, indices)

    linear = (
        lam[indices.obs_item]
        + delta[indices.obs_cell]
        + gam[indices.obs_item] * theta[indices.obs_point]
    )
    eta = expit(linear)
    if not np.all((eta > 0.0) & (eta < 1.0)):
        raise ModelConstraintViolation("response probability left the open interval (0, 1)")

    return DerivedQuantities(
        theta=theta,
        lam=lam,
        gam=gam,
        delta=delta,
        eta=eta,
        shape1=phi * eta,
        shape2=phi * (1.0 - eta),
    )


# ── Density ──────────────────────────────────────────────────────────────────


def lkj_corr_logpdf(omega: np.ndarray, eta: float = LKJ_ETA) -> float:
    """Normalized LKJ(eta) log density of a 2x2 correlation matrix.

    For d = 2 the density of rho is (1 - rho^2)^(eta - 1) / (2^(2 eta - 1) B(eta, eta)).
    """
    rho = float(np.asarray(omega)[0, 1])
    if abs(rho) >= 1.0:
        return -np.inf
    log_norm = (2.0 * eta - 1.0) * np.log(2.0) + betaln(eta, eta)
    return float((eta - 1.0) * np.log1p(-rho * rho) - log_norm)


def log_prior(params: Params, indices: OpinionIndices) -> float:
    """Sum of all prior log densities at a raw parameter draw."""
    lp = stats.gamma.logpdf(_scalar(params, "phi"), a=PHI_SHAPE, scale=1.0 / PHI_RATE)
    lp += stats.halfnorm.logpdf(_scalar(params, "sigma_theta"), scale=SIGMA_THETA_SD)
    lp += stats.halfnorm.logpdf(_scalar(params, "sigma_delta"), scale=SIGMA_DELTA_SD)
    lp += stats.halfnorm.logpdf(np.asarray(params["tau"]), scale=TAU_SD).sum()
    lp += lkj_corr_logpdf(params["Omega"])
    lp += stats.norm.logpdf(
        _scalar(params, "mu_lambda"), loc=indices.logit_mean_rate, scale=MU_LAMBDA_SD
    )
    lp += stats.norm.logpdf(np.asarray(params["theta_init"])).sum()
    lp += stats.norm.logpdf(np.asarray(params["theta_innov"])).sum()
    lp += stats.norm.logpdf(np.asarray(params["item_z"])).sum()
    cell_z = np.asarray(params["cell_z"])
    for start, length in zip(indices.cell_block_start, indices.cell_block_length):
        lp += stats.norm.logpdf(cell_z[int(start) : int(start + length)]).sum()
    return float(lp)


def pointwise_log_likelihood(
    derived: DerivedQuantities,
    indices: OpinionIndices,
) -> np.ndarray:
    """Beta-binomial log-likelihood of every observation."""
    return stats.betabinom.logpmf(
        indices.response_count, indices.sample_size, derived.shape1, derived.shape2
    )


def log_density(params: Params | np.ndarray, indices: OpinionIndices) -> float:
    """Log joint density (likelihood + priors) of one raw parameter draw.

    Accepts a parameter dict or a flat vector in ``parameter_shapes`` order.
    A draw violating any constraint returns -inf (rejected) instead of raising.
    """
    if isinstance(params, np.ndarray):
        params = unpack(params, indices)
    try:
        derived = reconstruct(params, indices)
        total = log_prior(params, indices) + float(
            pointwise_log_likelihood(derived, indices).sum()
        )
    except ModelConstraintViolation:
        return -np.inf
    if not np.isfinite(total):
        return -np.inf
    return total


def simulate_replicates(
    derived: DerivedQuantities,
    indices: OpinionIndices,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw one replicated count per observation from the fitted beta-binomial."""
    p = rng.beta(derived.shape1, derived.shape2)
    return rng.binomial(indices.sample_size, p)


def beta_binomial_variance(n: np.ndarray, eta: np.ndarray, phi: float) -> np.ndarray:
    """Variance of x under the (n, phi * eta, phi * (1 - eta)) parameterization.

    Equals n eta (1 - eta) (phi + n) / (phi + 1), which tends to the binomial
    variance as phi grows.
    """
    n = np.asarray(n, dtype=np.float64)
    eta = np.asarray(eta, dtype=np.float64)
    return n * eta * (1.0 - eta) * (phi + n) / (phi + 1.0)
