"""
Parameter recovery on simulated panels with real NUTS sampling.

Fits the model to several panels drawn from known parameters and checks that
the sampler converges and that the 95% intervals cover the true trajectories,
item parameters and cell effects at close to the nominal rate. Slow:
deselected by default.

Run: uv run pytest tests/test_calibration.py -v -m slow
"""

import warnings

import numpy as np
import pytest

from latent_opinion.errors import ConvergenceFailure
from latent_opinion.indices import build_indices
from latent_opinion.models import RunConfig
from latent_opinion.posterior import opinion_estimates, stack_draws
from latent_opinion.sampling import check_convergence, sample_opinion_model
from latent_opinion.simulate import calibration_coverage, simulate_dataset

pytestmark = pytest.mark.slow

SEEDS = [21, 22, 23, 24]


@pytest.fixture(scope="module")
def fits():
    """One fitted simulation per seed: {seed: (idata, indices, truth)}."""
    out = {}
    for seed in SEEDS:
        observations, truth = simulate_dataset(
            n_countries=5, n_years=7, n_items=3, sample_size=1500, seed=seed
        )
        indices = build_indices(observations, verbose=False)
        config = RunConfig(n_chains=2, n_tune=500, n_samples=500, base_seed=seed)
        idata, _ = sample_opinion_model(indices, config, progressbar=False)
        out[seed] = (idata, indices, truth)
    return out


class TestRecovery:
    """Each fit converges and tracks its truth."""

    @pytest.mark.parametrize("seed", SEEDS)
    def test_converges(self, fits, seed):
        idata, _, _ = fits[seed]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceFailure)
            report = check_convergence(idata)
        assert report.n_divergences <= 5
        assert report.rhat_max < 1.05

    def test_log_likelihood_stored(self, fits):
        idata, indices, _ = fits[SEEDS[0]]
        assert "x" in idata.log_likelihood
        assert idata.log_likelihood["x"].shape[-1] == indices.n_obs

    @pytest.mark.parametrize("seed", SEEDS)
    def test_estimates_track_truth(self, fits, seed):
        idata, indices, truth = fits[seed]
        estimates = opinion_estimates(idata, indices)
        corr = np.corrcoef(estimates["point_estimate"].to_numpy(), truth["theta"])[0, 1]
        assert corr > 0.9

    @pytest.mark.parametrize("seed", SEEDS)
    def test_item_slopes_positive(self, fits, seed):
        """Slopes are centered on 1, which fixes the direction of theta."""
        idata, _, _ = fits[seed]
        assert np.all(stack_draws(idata, "gamma").mean(axis=0) > 0)


class TestCalibration:
    """Interval coverage across repeated simulations."""

    @pytest.mark.parametrize("seed", SEEDS)
    def test_single_fit_coverage(self, fits, seed):
        idata, _, truth = fits[seed]
        assert calibration_coverage(idata, truth)["pooled"] >= 0.75

    def test_pooled_coverage_near_nominal(self, fits):
        """Theta, lambda, gamma and delta together, over every simulation."""
        covered = 0.0
        total = 0
        for idata, _, truth in fits.values():
            n = sum(np.size(truth[name]) for name in ("theta", "lambda", "gamma", "delta"))
            covered += calibration_coverage(idata, truth)["pooled"] * n
            total += n
        assert covered / total >= 0.88

    def test_theta_coverage_over_simulations(self, fits):
        rates = [calibration_coverage(idata, truth)["theta"] for idata, _, truth in fits.values()]
        assert np.mean(rates) >= 0.85
