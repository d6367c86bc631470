"""Shared fixtures for latent opinion tests.

- Small hand-built observation sets (the two-country scenario)
- A simulated ragged panel with known parameters
- A factory for fake posterior InferenceData built from the true parameters,
  so posterior processing can be tested without running MCMC
"""

import arviz as az
import numpy as np
import pytest

from latent_opinion.engine import parameter_shapes, reconstruct
from latent_opinion.indices import build_indices
from latent_opinion.models import Observation
from latent_opinion.simulate import simulate_dataset


def make_obs(
    country: str,
    year: int,
    item: str = "Q1",
    x: int = 40,
    s: int = 100,
    cell: str | None = None,
    project: str = "unknown",
) -> Observation:
    return Observation(
        country=country,
        year=year,
        item=item,
        cell=cell,
        response_count=x,
        sample_size=s,
        project=project,
    )


# ── Hand-built data ──────────────────────────────────────────────────────────


@pytest.fixture
def two_country_obs() -> list[Observation]:
    """Country A surveyed in years 1 and 2, country B only in year 3; one item."""
    return [
        make_obs("A", 1, x=30),
        make_obs("A", 2, x=35),
        make_obs("B", 3, x=60),
    ]


@pytest.fixture
def two_country_indices(two_country_obs):
    return build_indices(two_country_obs, first_year=1, final_year=3, verbose=False)


@pytest.fixture
def panel_obs() -> list[Observation]:
    """Three countries, three items, ragged coverage over 2000-2005."""
    return [
        make_obs("FRA", 2000, "trust", 500, 1000, project="EVS"),
        make_obs("FRA", 2002, "trust", 520, 1000, project="EVS"),
        make_obs("FRA", 2002, "support", 700, 1200, project="WVS"),
        make_obs("DEU", 2001, "support", 800, 1100, project="WVS"),
        make_obs("DEU", 2004, "support", 760, 1000, project="WVS"),
        make_obs("DEU", 2004, "satisfied", 300, 900, project="ESS"),
        make_obs("ITA", 2003, "satisfied", 250, 1000, project="ESS"),
        make_obs("ITA", 2005, "trust", 410, 1000, project="EVS"),
    ]


@pytest.fixture
def panel_indices(panel_obs):
    return build_indices(panel_obs, verbose=False)


@pytest.fixture
def panel_params(panel_indices) -> dict[str, np.ndarray]:
    """A valid raw parameter draw for panel_indices."""
    rng = np.random.default_rng(7)
    shapes = parameter_shapes(panel_indices)
    params = {name: rng.standard_normal(shape) for name, shape in shapes.items()}
    params.update(
        sigma_theta=np.asarray(0.3),
        sigma_delta=np.asarray(0.2),
        tau=np.array([0.6, 0.4]),
        Omega=np.array([[1.0, 0.25], [0.25, 1.0]]),
        mu_lambda=np.asarray(-0.2),
        phi=np.asarray(80.0),
    )
    return params


# ── Simulated data + fake posterior ──────────────────────────────────────────


@pytest.fixture(scope="session")
def simulated():
    """Simulated panel: (observations, truth, indices)."""
    observations, truth = simulate_dataset(
        n_countries=5, n_years=8, n_items=3, sample_size=800, seed=11
    )
    indices = build_indices(observations, verbose=False)
    return observations, truth, indices


@pytest.fixture(scope="session")
def fake_idata_factory():
    """Build InferenceData whose draws jitter around a known raw parameter set.

    Deterministic quantities (theta, lambda, gamma, delta) are reconstructed
    per draw, exactly as the PyMC graph would record them.
    """

    def _make(indices, truth, n_chains: int = 2, n_draws: int = 40, seed: int = 3):
        rng = np.random.default_rng(seed)
        shapes = parameter_shapes(indices)
        raw = {name: np.empty((n_chains, n_draws, *shape)) for name, shape in shapes.items()}
        derived = {
            "theta": np.empty((n_chains, n_draws, indices.n_points)),
            "lambda": np.empty((n_chains, n_draws, indices.n_items)),
            "gamma": np.empty((n_chains, n_draws, indices.n_items)),
            "delta": np.empty((n_chains, n_draws, indices.n_cells)),
        }
        for c in range(n_chains):
            for d in range(n_draws):
                params = {}
                for name, shape in shapes.items():
                    value = np.array(truth[name], dtype=np.float64)
                    if name == "Omega":
                        rho = float(np.clip(value[0, 1] + 0.05 * rng.standard_normal(), -0.9, 0.9))
                        value = np.array([[1.0, rho], [rho, 1.0]])
                    elif name in ("sigma_theta", "sigma_delta", "tau", "phi"):
                        value = value * np.exp(0.05 * rng.standard_normal(shape))
                    else:
                        value = value + 0.1 * rng.standard_normal(shape)
                    params[name] = value
                    raw[name][c, d] = value
                out = reconstruct(params, indices)
                derived["theta"][c, d] = out.theta
                derived["lambda"][c, d] = out.lam
                derived["gamma"][c, d] = out.gam
                derived["delta"][c, d] = out.delta

        energy = rng.standard_normal((n_chains, n_draws))
        return az.from_dict(
            posterior={**raw, **derived},
            sample_stats={
                "diverging": np.zeros((n_chains, n_draws), dtype=bool),
                "energy": energy,
            },
        )

    return _make
