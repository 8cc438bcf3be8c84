"""
Batch-run configuration for reviewmatch.

Every public function takes its settings as keyword arguments; these
dataclasses only collect them for the two batch stages so a run can be
described by a JSON file and reproduced.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class _ConfigMixin:
    """JSON loading and dumping shared by the config dataclasses."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown {cls.__name__} option(s): {unknown}")
        config = cls(**data)
        config.validate()
        return config

    @classmethod
    def from_json(cls, path: Union[str, Path]):
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self, path: Union[str, Path]) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    def validate(self) -> None:
        pass


@dataclass
class PrepareConfig(_ConfigMixin):
    """Settings for turning a cleaned review table into the two interchange files."""

    input_path: str = ""
    input_format: str = "parquet"
    features_path: str = "features"
    terms_path: str = "terms"
    id_col: str = "review_id"
    stars_col: str = "stars"
    text_col: str = "text"
    numeric_cols: List[str] = field(default_factory=list)
    categorical_cols: List[str] = field(default_factory=list)
    binned_cols: List[str] = field(default_factory=list)
    quadratic_cols: List[str] = field(default_factory=list)
    outcome_cols: List[str] = field(default_factory=list)
    treatment_threshold: float = 4.0
    n_bins: int = 4
    min_count: int = 10
    max_count: int = 1000
    sample_frac: float = 1.0
    sample_seed: int = 42
    verbose: bool = True

    def validate(self) -> None:
        if self.input_format not in ("parquet", "csv", "json"):
            raise ValueError(f"input_format must be parquet, csv or json, got {self.input_format!r}")
        if not 0.0 < self.sample_frac <= 1.0:
            raise ValueError(f"sample_frac must be in (0, 1], got {self.sample_frac}")


@dataclass
class PipelineConfig(_ConfigMixin):
    """Settings for the propensity, matching and balance stages."""

    features_path: str = "features"
    terms_path: str = "terms"
    output_dir: str = "output"
    covariate_cols: Optional[List[str]] = None
    outcome_col: Optional[str] = None
    max_iter: int = 100
    tol: float = 1e-6
    estimands: List[str] = field(default_factory=lambda: ["ATT", "ATC", "ATE"])
    ties: bool = False
    nearest_caliper: Optional[float] = None
    partition_method: str = "treatment"
    direction: str = "both"
    caliper_multiplier: float = 0.1
    seed: Optional[int] = None
    chunk_size: int = 5000
    checkpoint_dir: Optional[str] = None
    num_tasks: Optional[int] = None
    n_boot: int = 500
    balance_seed: int = 42
    verbose: bool = True

    def validate(self) -> None:
        for estimand in self.estimands:
            if estimand not in ("ATT", "ATC", "ATE"):
                raise ValueError(f"Unknown estimand in config: {estimand!r}")
        if self.partition_method not in ("treatment", "position"):
            raise ValueError(f"partition_method must be treatment or position, got {self.partition_method!r}")
        if self.direction not in ("first_to_second", "second_to_first", "both"):
            raise ValueError(f"Unknown direction in config: {self.direction!r}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
