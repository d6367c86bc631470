"""Run context for structured estimation output.

Every estimation run gets:
  - An output directory: results/<dataset>/<date>/ with a data/ subdirectory
  - Console output streamed to run_log.txt while the run executes
  - Run metadata (run_info.json): source revision, library versions,
    timestamps, parameters
  - A `latest` symlink pointing to the most recent run

Usage:
    with RunContext(dataset="democracy_support", params=vars(args)) as ctx:
        estimates.write_parquet(ctx.data_dir / "opinion_estimates.parquet")
"""

from __future__ import annotations

import io
import json
import subprocess
import sys
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from types import TracebackType


class _RunLog:
    """Stdout replacement that also writes each chunk to run_log.txt as it arrives.

    Sampling runs can be long; the log on disk stays current if the process
    is killed mid-run.
    """

    def __init__(self, console: io.TextIOBase, path: Path) -> None:
        self.console = console
        self.path = path
        self._file = open(path, "w", encoding="utf-8")

    def write(self, data: str) -> int:
        self.console.write(data)
        self._file.write(data)
        if "\n" in data:
            self._file.flush()
        return len(data)

    def flush(self) -> None:
        self.console.flush()
        self._file.flush()

    def close(self) -> None:
        self._file.close()


def _source_revision() -> dict[str, str | bool | None]:
    """Commit of the checkout this package runs from, and whether it has local edits."""
    here = Path(__file__).resolve().parent
    revision: dict[str, str | bool | None] = {"commit": None, "dirty": None}
    try:
        head = subprocess.run(
            ["git", "-C", str(here), "rev-parse", "HEAD"],
            capture_output=True, text=True, timeout=5,
        )
        if head.returncode != 0:
            return revision
        status = subprocess.run(
            ["git", "-C", str(here), "status", "--porcelain"],
            capture_output=True, text=True, timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return revision
    revision["commit"] = head.stdout.strip()
    revision["dirty"] = bool(status.stdout.strip())
    return revision


def _library_versions() -> dict[str, str]:
    versions = {}
    for dist in ("pymc", "pytensor", "arviz", "numpy", "scipy", "polars"):
        try:
            versions[dist] = metadata.version(dist)
        except metadata.PackageNotFoundError:
            versions[dist] = "not installed"
    return versions


class RunContext:
    """Context manager that sets up structured output for an estimation run.

    Attributes:
        dataset: Name of the input dataset (used as the results subdirectory).
        params: Run parameters to record in run_info.json.
        run_dir: Root of this run's output (results/<dataset>/<date>/).
        data_dir: Directory for parquet/CSV/NetCDF outputs.
    """

    def __init__(
        self,
        dataset: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
    ) -> None:
        self.dataset = dataset
        self.params = params or {}

        root = results_root or Path("results")
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        self.run_dir = root / dataset / today
        self.data_dir = self.run_dir / "data"

        self._dataset_dir = root / dataset
        self._today = today
        self._primer = primer
        self._log: _RunLog | None = None
        self._original_stdout: io.TextIOBase | None = None
        self._start_time: datetime | None = None
        self.status = "running"

    def __enter__(self) -> RunContext:
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self.status = f"failed: {exc_type.__name__}: {exc_val}"
        elif self.status == "running":
            self.status = "completed"
        self.finalize()

    def setup(self) -> None:
        """Create directories, write primer, and start log capture."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(exist_ok=True)

        if self._primer:
            readme = self._dataset_dir / "README.md"
            readme.write_text(self._primer, encoding="utf-8")

        self._original_stdout = sys.stdout
        self._log = _RunLog(sys.stdout, self.run_dir / "run_log.txt")
        sys.stdout = self._log  # type: ignore[assignment]
        self._start_time = datetime.now(timezone.utc)

    def finalize(self) -> None:
        """Close run_log.txt, write run_info.json, and update latest symlink."""
        if self._original_stdout is not None:
            sys.stdout = self._original_stdout  # type: ignore[assignment]
        if self._log is not None:
            self._log.close()
            self._log = None

        end_time = datetime.now(timezone.utc)
        run_info = {
            "dataset": self.dataset,
            "run_date": self._today,
            "status": self.status,
            "timestamp_start": (self._start_time.isoformat() if self._start_time else None),
            "timestamp_end": end_time.isoformat(),
            "source": _source_revision(),
            "python_version": sys.version,
            "libraries": _library_versions(),
            "params": self.params,
        }
        with open(self.run_dir / "run_info.json", "w") as f:
            json.dump(run_info, f, indent=2, default=str)

        # Relative symlink so the results tree stays portable
        latest = self._dataset_dir / "latest"
        if latest.is_symlink() or latest.exists():
            latest.unlink()
        latest.symlink_to(self._today)
