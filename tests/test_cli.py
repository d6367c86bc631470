"""
Tests for the command-line pipeline in cli.py.

Uses monkeypatch to replace sample_opinion_model with a fake that returns
InferenceData built around a fixed parameter draw, so the full pipeline
(load, index, diagnose, summarize, save) runs end to end without MCMC.

Run: uv run pytest tests/test_cli.py -v
"""

import csv
import json

import numpy as np
import polars as pl
import pytest

from latent_opinion.cli import build_parser, main
from latent_opinion.engine import parameter_shapes
from latent_opinion.errors import DataError

pytestmark = pytest.mark.filterwarnings("ignore::latent_opinion.errors.ConvergenceFailure")

# ── Helpers ──────────────────────────────────────────────────────────────────


@pytest.fixture
def fake_sampler(monkeypatch, fake_idata_factory):
    """Patch sample_opinion_model to capture its inputs without sampling."""
    calls = []

    def _sample(indices, config, progressbar=True):
        rng = np.random.default_rng(0)
        truth = {
            name: rng.standard_normal(shape)
            for name, shape in parameter_shapes(indices).items()
        }
        truth.update(
            sigma_theta=np.asarray(0.3),
            sigma_delta=np.asarray(0.2),
            tau=np.array([0.5, 0.3]),
            Omega=np.eye(2),
            mu_lambda=np.asarray(0.0),
            phi=np.asarray(50.0),
        )
        calls.append({"indices": indices, "config": config})
        idata = fake_idata_factory(
            indices, truth, n_chains=config.n_chains, n_draws=config.n_samples
        )
        return idata, 0.1

    monkeypatch.setattr("latent_opinion.cli.sample_opinion_model", _sample)
    return calls


def _write_csv(path, rows) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(
            f, fieldnames=["country", "year", "item", "response_count", "sample_size", "project"]
        )
        writer.writeheader()
        writer.writerows(rows)


@pytest.fixture
def survey_csv(tmp_path):
    path = tmp_path / "surveys.csv"
    _write_csv(
        path,
        [
            {"country": "FRA", "year": 2000, "item": "trust", "response_count": 500,
             "sample_size": 1000, "project": "EVS"},
            {"country": "FRA", "year": 2002, "item": "trust", "response_count": 520,
             "sample_size": 1000, "project": "EVS"},
            {"country": "DEU", "year": 2001, "item": "support", "response_count": 800,
             "sample_size": 1100, "project": "WVS"},
            {"country": "DEU", "year": 2004, "item": "trust", "response_count": 610,
             "sample_size": 1000, "project": "EVS"},
            {"country": "ITA", "year": 2004, "item": "support", "response_count": 300,
             "sample_size": 900, "project": "WVS"},
        ],
    )
    return path


# ── Argument parsing ─────────────────────────────────────────────────────────


class TestParser:
    """Defaults and flags."""

    def test_defaults(self):
        args = build_parser().parse_args(["data.csv"])
        assert args.n_samples == 1000
        assert args.n_tune == 1000
        assert args.n_chains == 4
        assert args.target_accept == 0.90
        assert args.max_treedepth == 12
        assert args.seed == 42
        assert args.first_year is None
        assert not args.simulate

    def test_year_bounds(self):
        args = build_parser().parse_args(
            ["data.csv", "--first-year", "1990", "--final-year", "2020"]
        )
        assert (args.first_year, args.final_year) == (1990, 2020)

    def test_data_required_without_simulate(self, tmp_path):
        with pytest.raises(SystemExit):
            main(["--results-root", str(tmp_path)])


# ── End-to-end pipeline ──────────────────────────────────────────────────────


class TestPipeline:
    """Full run with the sampler replaced."""

    def test_csv_run_writes_outputs(self, survey_csv, tmp_path, fake_sampler):
        results = tmp_path / "results"
        main([str(survey_csv), "--results-root", str(results), "--n-samples", "20",
              "--n-chains", "2", "--skip-ppc"])

        run_dir = results / "surveys" / "latest"
        data_dir = run_dir / "data"
        for name in ("opinion_estimates", "item_parameters", "fitted_rates"):
            assert (data_dir / f"{name}.parquet").exists()
            assert (data_dir / f"{name}.csv").exists()
        assert (data_dir / "idata.nc").exists()
        assert (run_dir / "diagnostics.json").exists()
        assert (run_dir / "run_log.txt").exists()
        assert (results / "surveys" / "README.md").exists()

    def test_single_year_country_dropped(self, survey_csv, tmp_path, fake_sampler):
        main([str(survey_csv), "--results-root", str(tmp_path), "--n-samples", "20",
              "--n-chains", "2", "--skip-ppc"])
        assert fake_sampler[0]["indices"].countries == ("DEU", "FRA")

    def test_keep_single_year(self, survey_csv, tmp_path, fake_sampler):
        main([str(survey_csv), "--results-root", str(tmp_path), "--n-samples", "20",
              "--n-chains", "2", "--skip-ppc", "--keep-single-year"])
        assert fake_sampler[0]["indices"].countries == ("DEU", "FRA", "ITA")

    def test_sampler_config_from_flags(self, survey_csv, tmp_path, fake_sampler):
        main([str(survey_csv), "--results-root", str(tmp_path), "--n-samples", "20",
              "--n-tune", "15", "--n-chains", "2", "--target-accept", "0.95",
              "--max-treedepth", "10", "--seed", "7", "--skip-ppc"])
        config = fake_sampler[0]["config"]
        assert (config.n_samples, config.n_tune, config.n_chains) == (20, 15, 2)
        assert config.target_accept == 0.95
        assert config.max_treedepth == 10
        assert config.base_seed == 7
        assert len(config.chain_seeds) == 2

    def test_final_year_extends_trajectories(self, survey_csv, tmp_path, fake_sampler):
        main([str(survey_csv), "--results-root", str(tmp_path), "--n-samples", "20",
              "--n-chains", "2", "--skip-ppc", "--final-year", "2006"])
        estimates = pl.read_parquet(tmp_path / "surveys" / "latest" / "data"
                                    / "opinion_estimates.parquet")
        assert estimates["year"].max() == 2006
        fra = estimates.filter(pl.col("country") == "FRA")
        assert fra["year"].to_list() == list(range(2000, 2007))

    def test_manifest_contents(self, survey_csv, tmp_path, fake_sampler):
        main([str(survey_csv), "--results-root", str(tmp_path), "--n-samples", "20",
              "--n-chains", "2"])
        manifest = json.loads((tmp_path / "surveys" / "latest" / "manifest.json").read_text())
        assert manifest["dimensions"]["n_countries"] == 2
        assert manifest["sampling"]["n_chains"] == 2
        assert len(manifest["sampling"]["chain_seeds"]) == 2
        assert "ppc" in manifest
        assert manifest["priors"]["phi"] == "Gamma(3.0, rate=0.04)"

    def test_run_info_records_status(self, survey_csv, tmp_path, fake_sampler):
        main([str(survey_csv), "--results-root", str(tmp_path), "--n-samples", "20",
              "--n-chains", "2", "--skip-ppc"])
        info = json.loads((tmp_path / "surveys" / "latest" / "run_info.json").read_text())
        assert info["status"] == "completed"
        assert info["dataset"] == "surveys"

    def test_simulated_run(self, tmp_path, fake_sampler):
        main(["--simulate", "--sim-countries", "4", "--sim-years", "6", "--sim-items", "2",
              "--results-root", str(tmp_path), "--n-samples", "20", "--n-chains", "2",
              "--skip-ppc"])
        assert fake_sampler[0]["indices"].n_countries == 4
        assert (tmp_path / "simulated" / "latest" / "data" / "opinion_estimates.csv").exists()

    def test_bad_counts_fail_before_sampling(self, tmp_path, fake_sampler):
        path = tmp_path / "bad.csv"
        _write_csv(
            path,
            [
                {"country": "A", "year": 2000, "item": "q", "response_count": 50,
                 "sample_size": 40, "project": "P"},
                {"country": "A", "year": 2001, "item": "q", "response_count": 10,
                 "sample_size": 40, "project": "P"},
            ],
        )
        with pytest.raises(DataError, match="exceeds"):
            main([str(path), "--results-root", str(tmp_path)])
        assert fake_sampler == []
        info = json.loads((tmp_path / "bad" / "latest" / "run_info.json").read_text())
        assert info["status"].startswith("failed: DataError")
