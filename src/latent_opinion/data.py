"""Loading aggregated survey observations from CSV."""

from pathlib import Path

import polars as pl

from latent_opinion.errors import DataError
from latent_opinion.models import Observation

REQUIRED_COLUMNS = ["country", "year", "item", "response_count", "sample_size"]
OPTIONAL_COLUMNS = ["cell", "project"]


def read_survey_table(path: Path) -> pl.DataFrame:
    """Read and type-check the raw survey CSV.

    Required columns: country, year, item, response_count, sample_size.
    Optional: cell (item-country cell label), project (survey project).
    """
    df = pl.read_csv(path, infer_schema_length=10000)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise DataError(f"{path}: missing required column(s) {missing}")

    null_counts = df.select(pl.col(REQUIRED_COLUMNS).null_count()).row(0, named=True)
    with_nulls = {c: n for c, n in null_counts.items() if n > 0}
    if with_nulls:
        raise DataError(f"{path}: missing values in {with_nulls}")

    df = df.with_columns(pl.col("country").cast(pl.Utf8), pl.col("item").cast(pl.Utf8))
    for col in ("year", "response_count", "sample_size"):
        try:
            values = df[col].cast(pl.Float64, strict=True)
        except (pl.exceptions.ComputeError, pl.exceptions.InvalidOperationError) as e:
            raise DataError(f"{path}: non-numeric values in {col} ({e})") from None
        bad = ~values.is_finite() | (values != values.round())
        if bad.any():
            rows = bad.arg_true().to_list()[:5]
            raise DataError(f"{path}: non-integer values in {col} at rows {rows}")
        df = df.with_columns(values.cast(pl.Int64).alias(col))
    return df


def drop_single_year_countries(df: pl.DataFrame) -> pl.DataFrame:
    """Remove countries whose surveys all fall in a single year."""
    n_years = df.group_by("country").agg(pl.col("year").n_unique().alias("n_years"))
    keep = n_years.filter(pl.col("n_years") > 1)["country"]
    dropped = n_years.filter(pl.col("n_years") <= 1)["country"].sort().to_list()
    if dropped:
        print(f"  Dropped {len(dropped)} single-year countries: {', '.join(dropped)}")
    return df.filter(pl.col("country").is_in(keep.to_list()))


def observations_from_frame(df: pl.DataFrame) -> list[Observation]:
    """Convert a survey table into Observation records."""
    has_cell = "cell" in df.columns
    has_project = "project" in df.columns
    observations = []
    for row in df.iter_rows(named=True):
        observations.append(
            Observation(
                country=row["country"],
                year=row["year"],
                item=row["item"],
                cell=row["cell"] if has_cell else None,
                response_count=row["response_count"],
                sample_size=row["sample_size"],
                project=(row["project"] or "unknown") if has_project else "unknown",
            )
        )
    return observations


def load_observations(path: Path, drop_single_year: bool = True) -> list[Observation]:
    """Read a survey CSV and return its observations, ready for ``build_indices``."""
    df = read_survey_table(path)
    print(f"  Loaded {df.height:,} rows from {path}")
    if drop_single_year:
        df = drop_single_year_countries(df)
    if df.height == 0:
        raise DataError(f"{path}: no observations left after filtering")
    return observations_from_frame(df)
