"""Command-line interface for latent opinion estimation.

Usage:
  latent-opinion surveys.csv [--first-year 1988] [--final-year 2020]
      [--n-samples 1000] [--n-tune 1000] [--n-chains 4] [--seed 42]
  latent-opinion --simulate [--sim-countries 8] [--sim-years 12] [--sim-items 4]

Outputs (in results/<dataset>/<date>/):
  - data/opinion_estimates.{parquet,csv}  one row per country-year
  - data/item_parameters.{parquet,csv}    rescaled item intercepts/slopes
  - data/fitted_rates.{parquet,csv}       observed vs fitted response rates
  - data/idata.nc                         full posterior (ArviZ NetCDF)
  - diagnostics.json, manifest.json, run_info.json, run_log.txt
"""

import argparse
from pathlib import Path

from latent_opinion.config import (
    DEFAULT_N_CHAINS,
    DEFAULT_N_SAMPLES,
    DEFAULT_N_TUNE,
    LKJ_ETA,
    MAX_TREEDEPTH,
    MU_LAMBDA_SD,
    PHI_RATE,
    PHI_SHAPE,
    RANDOM_SEED,
    TARGET_ACCEPT,
)
from latent_opinion.data import load_observations
from latent_opinion.indices import build_indices
from latent_opinion.models import RunConfig
from latent_opinion.output import save_json, save_tables
from latent_opinion.posterior import (
    fitted_probabilities,
    item_parameters,
    opinion_estimates,
    posterior_predictive_check,
)
from latent_opinion.run_context import RunContext
from latent_opinion.sampling import check_convergence, sample_opinion_model
from latent_opinion.simulate import simulate_dataset

OPINION_PRIMER = """\
# Dynamic Latent Opinion Estimates

Country-year estimates of a latent public-opinion trait from aggregated,
irregularly spaced survey marginals (x of s respondents giving the target
response to survey item k in country i, year t).

## Model

```
theta[i, t]   = theta[i, t-1] + sigma_theta * z[i, t]       -- random walk per country
(lambda, gamma)_k = (mu_lambda, 1) + z_k L'                  -- correlated item parameters
delta[k, i]   = sigma_delta * z[k, i]                        -- item-country bias
eta           = invlogit(lambda_k + delta[k, i] + gamma_k * theta[i, t])
x ~ BetaBinomial(s, phi * eta, phi * (1 - eta))
```

Trajectories start at each country's first survey year and run to the final
modeled year. Estimates are standardized (pooled mean 0, SD 1 across all
draws and country-years); item parameters are rescaled to the same scale.
"""


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="latent-opinion",
        description="Estimate smooth country-year latent opinion from sparse survey data.",
    )
    parser.add_argument(
        "data",
        nargs="?",
        type=Path,
        default=None,
        help="Survey CSV (country, year, item, response_count, sample_size[, cell, project])",
    )
    parser.add_argument("--first-year", type=int, default=None, help="First modeled year")
    parser.add_argument("--final-year", type=int, default=None, help="Final modeled year")
    parser.add_argument(
        "--n-samples", type=int, default=DEFAULT_N_SAMPLES, help="Retained draws per chain"
    )
    parser.add_argument(
        "--n-tune", type=int, default=DEFAULT_N_TUNE, help="Warmup draws per chain (discarded)"
    )
    parser.add_argument(
        "--n-chains", type=int, default=DEFAULT_N_CHAINS, help="Number of MCMC chains"
    )
    parser.add_argument(
        "--target-accept",
        type=float,
        default=TARGET_ACCEPT,
        help=f"NUTS target acceptance rate (default: {TARGET_ACCEPT})",
    )
    parser.add_argument(
        "--max-treedepth",
        type=int,
        default=MAX_TREEDEPTH,
        help=f"NUTS maximum tree depth (default: {MAX_TREEDEPTH})",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=RANDOM_SEED,
        help="Base seed; one independent seed per chain is derived from it",
    )
    parser.add_argument(
        "--keep-single-year",
        action="store_true",
        help="Keep countries surveyed in only one year",
    )
    parser.add_argument(
        "--results-root",
        type=Path,
        default=Path("results"),
        help="Root directory for run outputs (default: results/)",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Fit a simulated panel instead of reading a CSV",
    )
    parser.add_argument("--sim-countries", type=int, default=8)
    parser.add_argument("--sim-years", type=int, default=12)
    parser.add_argument("--sim-items", type=int, default=4)
    parser.add_argument("--skip-ppc", action="store_true", help="Skip posterior predictive check")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.data is None and not args.simulate:
        parser.error("a survey CSV is required unless --simulate is given")

    config = RunConfig(
        n_chains=args.n_chains,
        n_tune=args.n_tune,
        n_samples=args.n_samples,
        target_accept=args.target_accept,
        max_treedepth=args.max_treedepth,
        base_seed=args.seed,
    )
    dataset = "simulated" if args.simulate else args.data.stem

    with RunContext(
        dataset=dataset,
        params=vars(args),
        results_root=args.results_root,
        primer=OPINION_PRIMER,
    ) as ctx:
        print(f"Latent opinion estimation: {dataset}")
        print(f"Output:    {ctx.run_dir}")
        print(
            f"Samples:   {config.n_samples} draws, {config.n_tune} tune, "
            f"{config.n_chains} chains"
        )

        print_header("PHASE 1: LOADING DATA")
        if args.simulate:
            observations, _ = simulate_dataset(
                n_countries=args.sim_countries,
                n_years=args.sim_years,
                n_items=args.sim_items,
                seed=args.seed,
            )
            print(f"  Simulated {len(observations):,} observations")
        else:
            observations = load_observations(args.data, drop_single_year=not args.keep_single_year)

        print_header("PHASE 2: INDEX CONSTRUCTION")
        indices = build_indices(observations, args.first_year, args.final_year)

        print_header("PHASE 3: MCMC SAMPLING")
        idata, sampling_time = sample_opinion_model(indices, config)

        print_header("PHASE 4: CONVERGENCE DIAGNOSTICS")
        diagnostics = check_convergence(idata)

        print_header("PHASE 5: POSTERIOR PROCESSING")
        estimates = opinion_estimates(idata, indices)
        items = item_parameters(idata, indices)
        fitted = fitted_probabilities(idata, indices)

        ppc: dict = {}
        if not args.skip_ppc:
            print_header("PHASE 6: POSTERIOR PREDICTIVE CHECK")
            ppc = posterior_predictive_check(idata, indices)

        print_header("PHASE 7: SAVING OUTPUTS")
        save_tables(
            ctx.data_dir,
            {
                "opinion_estimates": estimates,
                "item_parameters": items,
                "fitted_rates": fitted,
            },
        )
        nc_path = ctx.data_dir / "idata.nc"
        idata.to_netcdf(str(nc_path))
        print(f"  Saved: {nc_path.name}")
        save_json(diagnostics.to_dict(), ctx.run_dir / "diagnostics.json")

        manifest = {
            "model": "dynamic beta-binomial latent trait",
            "priors": {
                "phi": f"Gamma({PHI_SHAPE}, rate={PHI_RATE})",
                "sigma_theta": "HalfNormal(1)",
                "sigma_delta": "HalfNormal(1)",
                "tau": "HalfNormal(1)",
                "Omega": f"LKJ({LKJ_ETA})",
                "mu_lambda": f"Normal({indices.logit_mean_rate:.3f}, {MU_LAMBDA_SD})",
            },
            "sampling": {
                "n_samples": config.n_samples,
                "n_tune": config.n_tune,
                "n_chains": config.n_chains,
                "target_accept": config.target_accept,
                "max_treedepth": config.max_treedepth,
                "chain_seeds": list(config.chain_seeds),
                "sampling_time_s": sampling_time,
            },
            "dimensions": {
                "n_obs": indices.n_obs,
                "n_countries": indices.n_countries,
                "n_items": indices.n_items,
                "n_cells": indices.n_cells,
                "n_points": indices.n_points,
                "first_year": indices.first_year,
                "final_year": indices.final_year,
            },
            "converged": diagnostics.passed,
        }
        if ppc:
            manifest["ppc"] = ppc
        save_json(manifest, ctx.run_dir / "manifest.json")

        print_header("DONE")
        print(f"  All outputs in: {ctx.run_dir}")
        if not diagnostics.passed:
            print("  Convergence checks failed; re-run with more iterations or higher target_accept")
