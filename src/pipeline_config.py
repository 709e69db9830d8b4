import logging
import os
from dataclasses import asdict, dataclass, replace
from typing import Optional

import pandas as pd

from pipeline_errors import ParameterError

log = logging.getLogger(__name__)


MINING_ALGORITHMS = ("apriori", "fpgrowth", "eclat")
COMMUNITY_ALGORITHM_NAMES = (
    "greedy_modularity",
    "louvain",
    "label_propagation",
    "edge_betweenness",
    "fluid_communities",
)
WORKER_KINDS = ("thread", "process")


# ─────────────────────────────────────────────────────────────────
# RUN PARAMETERS
# ─────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class PipelineConfig:
    """
    Parameters consumed at the start of a batch run.

    Attributes:
        min_support: Itemset must appear in at least this fraction of baskets.
        min_confidence: Minimum P(consequent | antecedent) for a rule.
        min_lift: Rules below this lift are dropped after mining (0 keeps all).
        max_itemset_len: Longest itemset to mine (None = unbounded).
        mining_algorithm: "apriori", "fpgrowth" or "eclat".
        max_graph_rules: Only the top-K rules by support enter the rule graph.
        community_algorithm: Algorithm used to split the largest component.
        random_seed: Seed for community detection and correspondence analysis.
        analysis_date: RFM cutoff; None = last invoice + snapshot_offset_days.
        snapshot_offset_days: Days added after the last invoice date.
        n_quantiles: Number of RFM score buckets.
        ca_components: Dimensions kept by correspondence analysis.
        n_workers: Worker count for the parallel phases (1 = inline).
        worker_kind: "thread" or "process".
        db_url: Optional SQLAlchemy URL the output tables are loaded into.
    """

    min_support: float = 0.01
    min_confidence: float = 0.3
    min_lift: float = 0.0
    max_itemset_len: Optional[int] = None
    mining_algorithm: str = "apriori"
    max_graph_rules: int = 500
    community_algorithm: str = "greedy_modularity"
    random_seed: int = 42
    analysis_date: Optional[str] = None
    snapshot_offset_days: int = 1
    n_quantiles: int = 5
    ca_components: int = 2
    n_workers: int = 1
    worker_kind: str = "thread"
    db_url: Optional[str] = None

    def validate(self) -> "PipelineConfig":
        """Raise ParameterError for the first out-of-range parameter."""
        if not 0 < self.min_support <= 1:
            raise ParameterError(
                f"min_support must be in (0, 1], got {self.min_support}", stage="config"
            )
        if not 0 <= self.min_confidence <= 1:
            raise ParameterError(
                f"min_confidence must be in [0, 1], got {self.min_confidence}", stage="config"
            )
        if self.min_lift < 0:
            raise ParameterError(f"min_lift must be >= 0, got {self.min_lift}", stage="config")
        if self.max_itemset_len is not None and self.max_itemset_len < 2:
            raise ParameterError(
                f"max_itemset_len must be >= 2 or None, got {self.max_itemset_len}",
                stage="config",
            )
        if self.mining_algorithm not in MINING_ALGORITHMS:
            raise ParameterError(
                f"Unknown mining_algorithm '{self.mining_algorithm}'. "
                f"Choose one of {MINING_ALGORITHMS}",
                stage="config",
            )
        if self.max_graph_rules <= 0:
            raise ParameterError(
                f"max_graph_rules must be positive, got {self.max_graph_rules}", stage="config"
            )
        if self.community_algorithm not in COMMUNITY_ALGORITHM_NAMES:
            raise ParameterError(
                f"Unknown community_algorithm '{self.community_algorithm}'. "
                f"Choose one of {COMMUNITY_ALGORITHM_NAMES}",
                stage="config",
            )
        if self.snapshot_offset_days < 0:
            raise ParameterError("snapshot_offset_days must be >= 0", stage="config")
        if self.n_quantiles < 2:
            raise ParameterError(
                f"n_quantiles must be >= 2, got {self.n_quantiles}", stage="config"
            )
        if self.ca_components < 1:
            raise ParameterError("ca_components must be >= 1", stage="config")
        if self.n_workers < 1:
            raise ParameterError(f"n_workers must be >= 1, got {self.n_workers}", stage="config")
        if self.worker_kind not in WORKER_KINDS:
            raise ParameterError(
                f"worker_kind must be one of {WORKER_KINDS}, got '{self.worker_kind}'",
                stage="config",
            )
        if self.analysis_date is not None:
            try:
                pd.Timestamp(self.analysis_date)
            except (ValueError, TypeError) as e:
                raise ParameterError(
                    f"analysis_date is not a valid date: {self.analysis_date!r}", stage="config"
                ) from e
        return self

    def with_overrides(self, **overrides) -> "PipelineConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """
        Build a config from BASKET_* environment variables.

        e.g. BASKET_MIN_SUPPORT=0.02, BASKET_COMMUNITY_ALGORITHM=louvain.
        DB_URL supplies the output database.
        """
        casts = {
            "min_support": float,
            "min_confidence": float,
            "min_lift": float,
            "max_itemset_len": int,
            "mining_algorithm": str,
            "max_graph_rules": int,
            "community_algorithm": str,
            "random_seed": int,
            "analysis_date": str,
            "snapshot_offset_days": int,
            "n_quantiles": int,
            "ca_components": int,
            "n_workers": int,
            "worker_kind": str,
        }
        values = {}
        for name, cast in casts.items():
            raw = os.getenv(f"BASKET_{name.upper()}")
            if raw is None or raw == "":
                continue
            try:
                values[name] = cast(raw)
            except ValueError as e:
                raise ParameterError(
                    f"BASKET_{name.upper()}={raw!r} is not a valid {cast.__name__}",
                    stage="config",
                ) from e

        db_url = os.getenv("DB_URL")
        if db_url:
            values["db_url"] = db_url

        if values:
            log.info(f"  Config overrides from environment: {sorted(values)}")
        return cls(**values)
