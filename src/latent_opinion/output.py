"""Parquet/CSV/JSON output for estimation results."""

import json
from pathlib import Path

import polars as pl


def save_tables(
    output_dir: Path,
    tables: dict[str, pl.DataFrame],
) -> None:
    """Save each named table as both parquet and CSV."""
    print("\n" + "=" * 60)
    print("Saving tables...")
    print("=" * 60)

    for name, df in tables.items():
        parquet_file = output_dir / f"{name}.parquet"
        csv_file = output_dir / f"{name}.csv"
        df.write_parquet(parquet_file)
        df.write_csv(csv_file)
        print(f"  {csv_file} ({df.height} rows)")


def save_json(payload: dict, path: Path) -> None:
    with open(path, "w") as f:
        json.dump(payload, f, indent=2, default=str)
    print(f"  Saved: {path.name}")
