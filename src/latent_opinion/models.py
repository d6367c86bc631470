"""Data classes for survey observations and run configuration."""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from latent_opinion.config import (
    DEFAULT_N_CHAINS,
    DEFAULT_N_SAMPLES,
    DEFAULT_N_TUNE,
    MAX_TREEDEPTH,
    RANDOM_SEED,
    TARGET_ACCEPT,
)


@dataclass(frozen=True)
class Observation:
    """One aggregated survey result: x of s respondents gave the target response."""
    country: str
    year: int
    item: str
    cell: Optional[str]  # item-country cell label; None derives "item|country"
    response_count: int
    sample_size: int
    project: str = "unknown"  # survey project the item was fielded in

    @property
    def cell_label(self) -> str:
        if self.cell is None:
            return f"{self.item}|{self.country}"
        return self.cell


def spawn_chain_seeds(base_seed: int, n_chains: int) -> tuple[int, ...]:
    """Derive one independent seed per chain from a single base seed."""
    children = np.random.SeedSequence(base_seed).spawn(n_chains)
    return tuple(int(child.generate_state(1)[0]) for child in children)


@dataclass(frozen=True)
class RunConfig:
    """Sampler settings for one estimation run."""
    n_chains: int = DEFAULT_N_CHAINS
    n_tune: int = DEFAULT_N_TUNE
    n_samples: int = DEFAULT_N_SAMPLES
    target_accept: float = TARGET_ACCEPT
    max_treedepth: int = MAX_TREEDEPTH
    base_seed: int = RANDOM_SEED
    chain_seeds: tuple[int, ...] = field(default=())

    def __post_init__(self) -> None:
        if self.n_chains < 1:
            raise ValueError(f"n_chains must be >= 1, got {self.n_chains}")
        if not 0.0 < self.target_accept < 1.0:
            raise ValueError(f"target_accept must lie in (0, 1), got {self.target_accept}")
        if not self.chain_seeds:
            # frozen: bypass __setattr__ to fill the derived default
            object.__setattr__(
                self, "chain_seeds", spawn_chain_seeds(self.base_seed, self.n_chains)
            )
        elif len(self.chain_seeds) != self.n_chains:
            raise ValueError(
                f"Expected {self.n_chains} chain seeds, got {len(self.chain_seeds)}"
            )
