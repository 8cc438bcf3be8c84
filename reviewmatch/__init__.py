"""
reviewmatch: propensity and text-similarity matching for review data on Apache Spark.

reviewmatch derives a treatment label from review star ratings, fits a
logistic propensity model, and builds comparable treatment/control groups
either by nearest-neighbor propensity matching or by a caliper on the
propensity score combined with cosine similarity of review word counts.
"""

from .balance import balance_report
from .caliper import ScoreIndex, assign_partition, caliper_radius
from .config import PipelineConfig, PrepareConfig
from .features import generate_features
from .loveplot import love_plot
from .nearest import EffectEstimate, nearest_neighbor_match
from .pipeline import prepare_inputs, run_pipeline
from .propensity import (
    PropensityFitError,
    fit_propensity,
    read_scored_records,
    write_scored_records,
)
from .terms import TermMatrix, build_term_matrix, read_term_matrix, write_term_matrix
from .textmatch import match_anchor, text_caliper_match

__version__ = "0.1.0"
__all__ = [
    "generate_features",
    "build_term_matrix",
    "TermMatrix",
    "read_term_matrix",
    "write_term_matrix",
    "fit_propensity",
    "PropensityFitError",
    "read_scored_records",
    "write_scored_records",
    "assign_partition",
    "caliper_radius",
    "ScoreIndex",
    "match_anchor",
    "text_caliper_match",
    "nearest_neighbor_match",
    "EffectEstimate",
    "balance_report",
    "love_plot",
    "PipelineConfig",
    "PrepareConfig",
    "prepare_inputs",
    "run_pipeline",
]
