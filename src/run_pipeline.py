import argparse
import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from data_cleaning import basket_lines, clean_transactions, load_transactions, product_descriptions
from load_to_database import get_engine, persist_to_database, redact_url, staged_tables_csv
from market_basket import itemsets_to_table, mine_rules, rules_to_table
from pipeline_config import COMMUNITY_ALGORITHM_NAMES, MINING_ALGORITHMS, PipelineConfig
from pipeline_errors import ComputationError, PipelineError
from product_groups import compare_community_algorithms, partition_product_groups
from rfm_analysis import customer_segments, segment_summary
from rule_graph import build_rule_graph
from segment_crosstab import (
    build_contingency_table,
    contingency_long,
    correspondence_analysis,
    group_basket_overlap,
    label_transactions,
)
from worker_pool import WorkerPool

log = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Every table produced by one batch run, keyed by output table name."""
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)

    def __getitem__(self, name: str) -> pd.DataFrame:
        return self.tables[name]


@contextmanager
def stage(name: str):
    """Tag unexpected failures inside a stage with the stage name."""
    try:
        yield
    except PipelineError:
        raise
    except Exception as e:
        raise ComputationError(f"{type(e).__name__}: {e}", stage=name) from e


# ─────────────────────────────────────────────────────────────────
# BATCH
# ─────────────────────────────────────────────────────────────────

def run_batch(sales: pd.DataFrame,
              config: PipelineConfig,
              pool: Optional[WorkerPool] = None) -> BatchResult:
    """
    Run every analysis stage on one cleaned transaction snapshot.

    Steps:
        1. Basket extract + rule mining
        2. Rule graph
        3. Product groups (components, sub-clusters of the largest)
        4. RFM customer segments
        5. Segment × group contingency, overlap and correspondence analysis

    Nothing is written here; the caller persists the returned tables.

    Args:
        sales (pd.DataFrame): Output of clean_transactions()
        config (PipelineConfig): Validated run parameters
        pool (WorkerPool): Started pool for the parallel phases

    Returns:
        BatchResult: All output tables
    """
    config.validate()
    pool = pool or WorkerPool(1)
    result = BatchResult()

    print("\n[1/5] Mining association rules ...")
    with stage("rules"):
        lines = basket_lines(sales)
        itemsets, rules = mine_rules(lines, config, pool)
    result.tables["frequent_itemsets"] = itemsets_to_table(itemsets)
    result.tables["association_rules"] = rules_to_table(rules)

    print("\n[2/5] Building rule graph ...")
    with stage("graph"):
        graph = build_rule_graph(rules, max_rules=config.max_graph_rules)

    print("\n[3/5] Partitioning products into groups ...")
    with stage("partition"):
        groups = partition_product_groups(graph, config.community_algorithm, config.random_seed)
        comparison = compare_community_algorithms(graph, config.random_seed)
        described = groups.merge(product_descriptions(sales), on="StockCode", how="left")
    result.tables["product_groups"] = described[
        ["StockCode", "Description", "ComponentID", "SubclusterID", "GroupLabel", "GroupSize"]
    ]
    result.tables["community_comparison"] = comparison

    print("\n[4/5] Scoring RFM segments ...")
    with stage("rfm"):
        segments = customer_segments(
            sales,
            analysis_date=config.analysis_date,
            offset_days=config.snapshot_offset_days,
            n_quantiles=config.n_quantiles,
        )
        summary = segment_summary(segments)
    result.tables["customer_segments"] = segments
    result.tables["segment_summary"] = summary

    print("\n[5/5] Cross-tabulating segments against product groups ...")
    with stage("crosstab"):
        labelled = label_transactions(sales, groups, segments)
        table = build_contingency_table(labelled)
        overlap = group_basket_overlap(lines, groups, pool)
        coordinates, inertia = correspondence_analysis(
            table, n_components=config.ca_components, seed=config.random_seed
        )
    result.tables["segment_group_counts"] = contingency_long(table)
    result.tables["group_basket_overlap"] = overlap
    result.tables["ca_coordinates"] = coordinates
    result.tables["ca_inertia"] = inertia

    return result


def run_pipeline(input_path: Path, output_dir: Path, config: PipelineConfig) -> BatchResult:
    """
    Load → validate → analyse → persist.

    Parameters, input and the database connection are checked before any
    work starts. Outputs are staged only after every stage has succeeded;
    the database load runs next, and the CSVs are published only once it
    has committed, so a failed load leaves `output_dir` as it was.
    """
    print("\n" + "=" * 60)
    print("  PRODUCT GROUPS × CUSTOMER SEGMENTS PIPELINE")
    print("=" * 60)

    config.validate()
    settings = config.as_dict()
    if settings["db_url"]:
        settings["db_url"] = redact_url(settings["db_url"])
    log.info(f"  Config : {settings}")

    engine = get_engine(config.db_url) if config.db_url else None
    try:
        print("\n[0/5] Loading and cleaning transactions ...")
        sales = clean_transactions(load_transactions(input_path))

        with WorkerPool(config.n_workers, config.worker_kind) as pool:
            result = run_batch(sales, config, pool)

        print("\nSaving outputs ...")
        with stage("persist"):
            with staged_tables_csv(result.tables, output_dir):
                if engine is not None:
                    persist_to_database(engine, result.tables)
    finally:
        if engine is not None:
            engine.dispose()

    groups = result["product_groups"]
    segments = result["customer_segments"]
    print("\n" + "=" * 60)
    print("  SUMMARY")
    print("=" * 60)
    print(f"  Rules mined       : {len(result['association_rules']):,}")
    print(f"  Grouped products  : {len(groups):,} in {groups['GroupLabel'].nunique():,} groups")
    print(f"  Segmented buyers  : {len(segments):,} in {segments['Segment'].nunique():,} segments")
    print(f"  Outputs           : {Path(output_dir).resolve()}")
    return result


# ─────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mine product groups from basket rules and cross them with RFM segments"
    )
    parser.add_argument("--input", required=True, type=Path,
                        help="Transaction CSV (InvoiceNo, StockCode, Quantity, ...)")
    parser.add_argument("--output-dir", type=Path, default=Path("data") / "processed")
    parser.add_argument("--min-support", type=float)
    parser.add_argument("--min-confidence", type=float)
    parser.add_argument("--min-lift", type=float)
    parser.add_argument("--max-itemset-len", type=int)
    parser.add_argument("--mining-algorithm", choices=MINING_ALGORITHMS)
    parser.add_argument("--max-graph-rules", type=int)
    parser.add_argument("--community-algorithm", choices=COMMUNITY_ALGORITHM_NAMES)
    parser.add_argument("--seed", dest="random_seed", type=int)
    parser.add_argument("--analysis-date", help="RFM cutoff date, e.g. 2011-12-10")
    parser.add_argument("--workers", dest="n_workers", type=int)
    parser.add_argument("--worker-kind", choices=("thread", "process"))
    parser.add_argument("--db-url", help="SQLAlchemy URL to load the output tables into")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    overrides = {
        k: v for k, v in vars(args).items()
        if k not in ("input", "output_dir", "verbose")
    }
    try:
        config = PipelineConfig.from_env().with_overrides(**overrides)
        run_pipeline(args.input, args.output_dir, config)
    except PipelineError as e:
        log.error(f"Pipeline failed at stage '{e.stage}': {e.args[0]}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
