"""Latent opinion - smooth country-year public opinion from sparse survey data."""

__version__ = "0.1.0"

from latent_opinion.indices import OpinionIndices as OpinionIndices
from latent_opinion.indices import build_indices as build_indices
from latent_opinion.models import Observation as Observation
from latent_opinion.models import RunConfig as RunConfig
