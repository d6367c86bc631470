"""NUTS sampling and convergence diagnostics for the opinion model.

The sampler itself is PyMC's; this module configures it (per-chain seeds,
target acceptance, tree depth), refuses partial runs, and turns ArviZ
diagnostics into a pass/fail report.
"""

from __future__ import annotations

import time
import warnings
from dataclasses import asdict, dataclass, field

import arviz as az
import numpy as np
import pymc as pm

from latent_opinion.config import (
    EBFMI_THRESHOLD,
    ESS_THRESHOLD,
    MAX_DIVERGENCES,
    RHAT_THRESHOLD,
)
from latent_opinion.errors import ConvergenceFailure, SamplingAborted
from latent_opinion.graph import build_opinion_graph
from latent_opinion.indices import OpinionIndices
from latent_opinion.models import RunConfig

# Variables whose R-hat/ESS decide convergence (raw draws plus the
# reconstructed quantities reported downstream)
DIAGNOSTIC_VARS = [
    "theta",
    "lambda",
    "gamma",
    "delta",
    "sigma_theta",
    "sigma_delta",
    "tau",
    "Omega",
    "mu_lambda",
    "phi",
]


def sample_opinion_model(
    indices: OpinionIndices,
    config: RunConfig,
    progressbar: bool = True,
) -> tuple[az.InferenceData, float]:
    """Build the opinion model and sample it with NUTS.

    Pointwise log-likelihood is stored in the ``log_likelihood`` group.
    Raises SamplingAborted (and discards the draws) if sampling is interrupted
    or returns fewer chains or draws than requested.

    Returns (InferenceData, sampling_time_seconds).
    """
    model = build_opinion_graph(indices)

    print(
        f"  Sampling: {config.n_samples} draws, {config.n_tune} tune, {config.n_chains} chains"
    )
    print(
        f"  target_accept={config.target_accept}, max_treedepth={config.max_treedepth}, "
        f"seeds={list(config.chain_seeds)}"
    )
    t0 = time.time()
    try:
        with model:
            idata = pm.sample(
                draws=config.n_samples,
                tune=config.n_tune,
                chains=config.n_chains,
                random_seed=list(config.chain_seeds),
                nuts={
                    "target_accept": config.target_accept,
                    "max_treedepth": config.max_treedepth,
                },
                idata_kwargs={"log_likelihood": True},
                progressbar=progressbar,
            )
    except KeyboardInterrupt:
        raise SamplingAborted("Sampling interrupted; partial draws discarded") from None
    sampling_time = time.time() - t0

    require_complete(idata, config)
    print(f"  Sampling complete in {sampling_time:.1f}s")
    return idata, sampling_time


def require_complete(idata: az.InferenceData, config: RunConfig) -> None:
    """Raise SamplingAborted unless every chain holds every requested draw."""
    posterior = getattr(idata, "posterior", None)
    if posterior is None:
        raise SamplingAborted("No posterior group in sampler output")
    n_chains = posterior.sizes.get("chain", 0)
    n_draws = posterior.sizes.get("draw", 0)
    if n_chains != config.n_chains or n_draws != config.n_samples:
        raise SamplingAborted(
            f"Incomplete run: {n_chains}/{config.n_chains} chains, "
            f"{n_draws}/{config.n_samples} draws; partial draws discarded"
        )


# ── Diagnostics ──────────────────────────────────────────────────────────────


@dataclass
class DiagnosticReport:
    """Convergence summary for one run."""

    rhat_max: float
    rhat_by_var: dict[str, float]
    ess_bulk_min: float
    divergences_per_chain: list[int]
    ebfmi_per_chain: list[float]
    rhat_threshold: float = RHAT_THRESHOLD
    ebfmi_threshold: float = EBFMI_THRESHOLD
    # Flattened R-hat of every element, keyed by variable
    rhat_by_param: dict[str, list[float]] = field(default_factory=dict)

    @property
    def n_divergences(self) -> int:
        return int(sum(self.divergences_per_chain))

    @property
    def rhat_undefined(self) -> list[str]:
        """Variables whose R-hat could not be computed (e.g. a single chain)."""
        return [name for name, value in self.rhat_by_var.items() if not np.isfinite(value)]

    @property
    def passed(self) -> bool:
        return (
            self.n_divergences <= MAX_DIVERGENCES
            and all(v > self.ebfmi_threshold for v in self.ebfmi_per_chain)
            and np.isfinite(self.rhat_max)
            and self.rhat_max <= self.rhat_threshold
        )

    def failures(self) -> list[str]:
        problems = []
        if self.n_divergences > MAX_DIVERGENCES:
            problems.append(f"{self.n_divergences} divergent transitions")
        low = [i for i, v in enumerate(self.ebfmi_per_chain) if v <= self.ebfmi_threshold]
        if low:
            problems.append(f"E-BFMI <= {self.ebfmi_threshold} on chains {low}")
        undefined = self.rhat_undefined
        if undefined or not np.isfinite(self.rhat_max):
            problems.append(
                f"R-hat undefined for {undefined or ['all variables']} "
                f"(needs at least 2 chains)"
            )
        finite = {k: v for k, v in self.rhat_by_var.items() if np.isfinite(v)}
        if finite and max(finite.values()) > self.rhat_threshold:
            worst = max(finite, key=finite.__getitem__)
            problems.append(f"R-hat {finite[worst]:.4f} > {self.rhat_threshold} (worst: {worst})")
        return problems

    def to_dict(self) -> dict:
        out = asdict(self)
        # NaN is not valid JSON
        out["rhat_max"] = _finite_or_none(self.rhat_max)
        out["rhat_by_var"] = {k: _finite_or_none(v) for k, v in self.rhat_by_var.items()}
        out["rhat_by_param"] = {
            k: [_finite_or_none(v) for v in values] for k, values in self.rhat_by_param.items()
        }
        out["n_divergences"] = self.n_divergences
        out["passed"] = self.passed
        out["failures"] = self.failures()
        return out


def _finite_or_none(value: float) -> float | None:
    return float(value) if np.isfinite(value) else None


def check_convergence(
    idata: az.InferenceData,
    var_names: list[str] | None = None,
) -> DiagnosticReport:
    """Run R-hat, ESS, divergence and E-BFMI checks.

    Issues a ConvergenceFailure warning when the run is not acceptable; the
    caller decides whether to re-run with more iterations or a higher
    target acceptance.
    """
    if var_names is None:
        var_names = [v for v in DIAGNOSTIC_VARS if v in idata.posterior]

    rhat = az.rhat(idata, var_names=var_names)
    rhat_by_param = {
        name: [float(v) for v in np.ravel(rhat[name].values)] for name in var_names
    }
    # Any undefined element makes the whole variable undefined
    rhat_by_var = {
        name: float(np.max(values)) if np.all(np.isfinite(values)) else float("nan")
        for name, values in rhat_by_param.items()
    }
    rhat_max = float("nan") if any(np.isnan(v) for v in rhat_by_var.values()) else max(
        rhat_by_var.values()
    )

    ess = az.ess(idata, var_names=var_names, method="bulk")
    ess_bulk_min = min(float(np.nanmin(ess[name].values)) for name in var_names)

    diverging = idata.sample_stats["diverging"]
    divergences_per_chain = [int(v) for v in diverging.sum(dim="draw").values]
    ebfmi_per_chain = [float(v) for v in az.bfmi(idata)]

    report = DiagnosticReport(
        rhat_max=rhat_max,
        rhat_by_var=rhat_by_var,
        ess_bulk_min=ess_bulk_min,
        divergences_per_chain=divergences_per_chain,
        ebfmi_per_chain=ebfmi_per_chain,
        rhat_by_param=rhat_by_param,
    )

    for name, value in rhat_by_var.items():
        status = "OK" if value <= RHAT_THRESHOLD else "WARNING"
        print(f"  R-hat ({name}): max = {value:.4f}  {status}")
    ess_status = "OK" if ess_bulk_min > ESS_THRESHOLD else "LOW"
    print(f"  ESS (bulk):   min = {ess_bulk_min:.0f}  {ess_status}")
    for i, (d, b) in enumerate(zip(divergences_per_chain, ebfmi_per_chain)):
        print(
            f"  Chain {i}: divergences = {d}  E-BFMI = {b:.3f}  "
            f"{'OK' if d == 0 and b > EBFMI_THRESHOLD else 'WARNING'}"
        )

    if report.passed:
        print("  CONVERGENCE: ALL CHECKS PASSED")
    else:
        print("  CONVERGENCE: SOME CHECKS FAILED (more iterations or higher target_accept)")
        warnings.warn(
            "Convergence checks failed: " + "; ".join(report.failures()),
            ConvergenceFailure,
            stacklevel=2,
        )
    return report
