import logging
import warnings
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
import pandas as pd

from pipeline_errors import InputError, ParameterError, UnassignedEntityWarning

log = logging.getLogger(__name__)


UNCLASSIFIED_LABEL = "Unclassified"
NO_HISTORY_LABEL = "No History"

SEGMENT_COLUMNS = [
    "CustomerID", "LastPurchaseDate", "Recency", "Frequency", "Monetary",
    "R_Score", "F_Score", "M_Score", "RFM_Score", "Segment",
]


# ─────────────────────────────────────────────────────────────────
# 1. SEGMENT RULES
#    Ordered list, evaluated top to bottom; the first rule whose three
#    inclusive ranges all contain the customer's scores wins.
# ─────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class SegmentRule:
    label: str
    recency: Tuple[int, int]
    frequency: Tuple[int, int]
    monetary: Tuple[int, int]

    def matches(self, r: int, f: int, m: int) -> bool:
        return (
            self.recency[0] <= r <= self.recency[1]
            and self.frequency[0] <= f <= self.frequency[1]
            and self.monetary[0] <= m <= self.monetary[1]
        )


DEFAULT_SEGMENT_RULES = (
    SegmentRule("Champions",          (4, 5), (4, 5), (4, 5)),
    SegmentRule("Loyal Customers",    (2, 5), (3, 5), (3, 5)),
    SegmentRule("Potential Loyalist", (3, 5), (1, 3), (1, 3)),
    SegmentRule("New Customers",      (4, 5), (1, 1), (1, 1)),
    SegmentRule("Promising",          (3, 4), (1, 1), (1, 1)),
    SegmentRule("Need Attention",     (2, 3), (2, 3), (2, 3)),
    SegmentRule("About To Sleep",     (2, 3), (1, 2), (1, 2)),
    SegmentRule("At Risk",            (1, 2), (2, 5), (2, 5)),
    SegmentRule("Cannot Lose Them",   (1, 1), (4, 5), (4, 5)),
    SegmentRule("Lost",               (1, 2), (1, 2), (1, 2)),
)


def assign_segment(r: int, f: int, m: int,
                   rules: Sequence[SegmentRule] = DEFAULT_SEGMENT_RULES) -> str:
    """
    Label of the first rule matching the (R, F, M) score triple.

    Args:
        r (int): Recency score (higher = more recent)
        f (int): Frequency score
        m (int): Monetary score
        rules: Ordered segment rules

    Returns:
        str: Segment label, or UNCLASSIFIED_LABEL when nothing matches
    """
    for rule in rules:
        if rule.matches(r, f, m):
            return rule.label
    return UNCLASSIFIED_LABEL


# ─────────────────────────────────────────────────────────────────
# 2. RAW METRICS
# ─────────────────────────────────────────────────────────────────

def resolve_analysis_date(df: pd.DataFrame, analysis_date=None,
                          offset_days: int = 1) -> pd.Timestamp:
    """
    The "analysis today" for recency.

    Uses the explicit date if given, else last invoice date + offset_days,
    so reruns on the same snapshot give the same recency values.
    """
    if analysis_date is not None:
        return pd.Timestamp(analysis_date)
    if df.empty:
        raise InputError("Cannot derive an analysis date from no transactions", stage="rfm")
    return df["InvoiceDate"].max().normalize() + pd.Timedelta(days=offset_days)


def compute_rfm(df: pd.DataFrame, analysis_date: pd.Timestamp) -> pd.DataFrame:
    """
    Raw Recency, Frequency, Monetary per customer from transactions
    strictly before `analysis_date`.

    Args:
        df (pd.DataFrame): Purchase rows with CustomerID, InvoiceNo,
                           InvoiceDate, TotalAmount
        analysis_date (pd.Timestamp): Cutoff

    Returns:
        pd.DataFrame: One row per customer, sorted by CustomerID
    """
    history = df[(df["InvoiceDate"] < analysis_date) & df["CustomerID"].notna()]
    log.info(f"  Analysis date : {analysis_date.date()}  ({len(history):,} rows before cutoff)")
    if history.empty:
        return pd.DataFrame(columns=["CustomerID", "LastPurchaseDate", "Frequency",
                                     "Monetary", "Recency"])

    rfm = (
        history.groupby("CustomerID")
        .agg(
            LastPurchaseDate=("InvoiceDate", "max"),
            Frequency=("InvoiceNo", "nunique"),   # unique orders, not row count
            Monetary=("TotalAmount", "sum"),
        )
        .reset_index()
        .sort_values("CustomerID")
        .reset_index(drop=True)
    )
    rfm["Recency"] = (analysis_date - rfm["LastPurchaseDate"]).dt.days

    if not rfm.empty:
        log.info(f"  Customers     : {len(rfm):,}")
        log.info(f"  Recency range : {rfm['Recency'].min()}d - {rfm['Recency'].max()}d")
        log.info(f"  Frequency     : 1 - {rfm['Frequency'].max()} orders")
        log.info(f"  Monetary      : {rfm['Monetary'].min():.2f} - {rfm['Monetary'].max():,.2f}")
    return rfm


# ─────────────────────────────────────────────────────────────────
# 3. SCORES
# ─────────────────────────────────────────────────────────────────

def quantile_score(values: pd.Series, n: int = 5, ascending: bool = True) -> pd.Series:
    """
    Score values 1..n against the population's quantile cut points.

    Bins are right-closed like pd.qcut, so for distinct cut points the
    scores equal pd.qcut(values, q=n, labels=1..n). Equal values always
    share a score. When several cut points coincide (many one-order
    customers, say) the bins between them stay empty instead of being
    renumbered, so a score keeps its 1..n meaning.
    With ascending=False the smallest value gets the highest score.
    """
    if values.empty:
        return pd.Series(dtype=int, index=values.index)
    cuts = values.quantile(np.linspace(0, 1, n + 1)[1:-1]).to_numpy()
    below = np.searchsorted(cuts, values.to_numpy(), side="left")
    scores = below + 1 if ascending else n - below
    return pd.Series(scores, index=values.index, dtype=int)


def score_rfm(rfm: pd.DataFrame, n: int = 5) -> pd.DataFrame:
    """
    Convert raw R, F, M values into 1..n quantile scores.

    Recency is inverted: fewer days since the last purchase = higher score.
    Frequency is ranked first (method="first") before scoring, because
    most customers share the same few order counts; ties resolve in row
    order, which callers keep sorted by customer id.

    Returns:
        pd.DataFrame: rfm with R_Score, F_Score, M_Score and the composite
                      RFM_Score string (e.g. "543")
    """
    if n < 2:
        raise ParameterError(f"n_quantiles must be >= 2, got {n}", stage="rfm")
    rfm = rfm.copy()
    rfm["R_Score"] = quantile_score(rfm["Recency"], n, ascending=False)
    rfm["F_Score"] = quantile_score(rfm["Frequency"].rank(method="first"), n)
    rfm["M_Score"] = quantile_score(rfm["Monetary"], n)
    rfm["RFM_Score"] = (
        rfm["R_Score"].astype(str) + rfm["F_Score"].astype(str) + rfm["M_Score"].astype(str)
    )
    return rfm


def apply_segments(rfm: pd.DataFrame,
                   rules: Sequence[SegmentRule] = DEFAULT_SEGMENT_RULES) -> pd.DataFrame:
    """Attach the Segment label of every scored customer."""
    rfm = rfm.copy()
    rfm["Segment"] = [
        assign_segment(r, f, m, rules)
        for r, f, m in zip(rfm["R_Score"], rfm["F_Score"], rfm["M_Score"])
    ]

    n_unclassified = int((rfm["Segment"] == UNCLASSIFIED_LABEL).sum())
    if n_unclassified:
        msg = f"{n_unclassified:,} customers matched no segment rule → '{UNCLASSIFIED_LABEL}'"
        log.warning(f"  {msg}")
        warnings.warn(msg, UnassignedEntityWarning, stacklevel=2)

    log.info("  Segment distribution:")
    for seg, cnt in rfm["Segment"].value_counts().sort_index().items():
        pct = cnt / len(rfm) * 100
        log.info(f"    {seg:<22} : {cnt:>5,} customers  ({pct:.1f}%)")
    return rfm


# ─────────────────────────────────────────────────────────────────
# 4. TABLES
# ─────────────────────────────────────────────────────────────────

def customer_segments(df: pd.DataFrame,
                      analysis_date=None,
                      offset_days: int = 1,
                      n_quantiles: int = 5,
                      rules: Sequence[SegmentRule] = DEFAULT_SEGMENT_RULES) -> pd.DataFrame:
    """
    Customer → segment table with raw and scored R/F/M values.

    Customers seen only on or after the analysis date have no history to
    score; they are listed with NO_HISTORY_LABEL and empty metrics.

    Returns:
        pd.DataFrame: SEGMENT_COLUMNS, one row per customer, sorted by CustomerID
    """
    cutoff = resolve_analysis_date(df, analysis_date, offset_days)
    rfm = compute_rfm(df, cutoff)
    if not rfm.empty:
        rfm = apply_segments(score_rfm(rfm, n_quantiles), rules)

    known = df["CustomerID"].dropna().unique()
    unseen = sorted(set(known) - set(rfm["CustomerID"]))
    if unseen:
        log.info(f"  {len(unseen):,} customers have no purchases before the cutoff "
                 f"→ '{NO_HISTORY_LABEL}'")
        rfm = pd.concat(
            [rfm, pd.DataFrame({"CustomerID": unseen, "Segment": NO_HISTORY_LABEL})],
            ignore_index=True,
        )

    for col in SEGMENT_COLUMNS:
        if col not in rfm.columns:
            rfm[col] = np.nan
    for col in ["Recency", "Frequency", "R_Score", "F_Score", "M_Score"]:
        rfm[col] = rfm[col].astype("Int64")
    rfm["Monetary"] = rfm["Monetary"].astype(float).round(2)

    return rfm[SEGMENT_COLUMNS].sort_values("CustomerID").reset_index(drop=True)


def segment_summary(segments: pd.DataFrame) -> pd.DataFrame:
    """
    Segment-level KPI table: customer count, revenue share, recency, frequency.
    Sorted by total revenue descending.
    """
    scored = segments.dropna(subset=["Monetary"])
    total_revenue = scored["Monetary"].sum()
    total_customers = len(scored)

    summary = (
        scored.groupby("Segment")
        .agg(
            Customers=("CustomerID", "count"),
            Total_Revenue=("Monetary", "sum"),
            Avg_Revenue=("Monetary", "mean"),
            Avg_Recency_Days=("Recency", "mean"),
            Avg_Frequency=("Frequency", "mean"),
        )
        .reset_index()
    )
    if summary.empty:
        return summary

    summary["Customer_Share_%"] = (summary["Customers"] / total_customers * 100).round(1)
    summary["Revenue_Share_%"] = (summary["Total_Revenue"] / total_revenue * 100).round(1)
    for col in ["Total_Revenue", "Avg_Revenue"]:
        summary[col] = summary[col].astype(float).round(2)
    for col in ["Avg_Recency_Days", "Avg_Frequency"]:
        summary[col] = summary[col].astype(float).round(1)

    return (
        summary.sort_values(["Total_Revenue", "Segment"], ascending=[False, True])
        .reset_index(drop=True)
    )
