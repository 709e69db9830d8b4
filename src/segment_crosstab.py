import logging
import warnings
from itertools import combinations
from typing import Iterable, Optional, Tuple

import numpy as np
import pandas as pd
import prince

from pipeline_errors import UnassignedEntityWarning
from product_groups import group_label_key
from rfm_analysis import NO_HISTORY_LABEL
from worker_pool import WorkerPool

log = logging.getLogger(__name__)


UNGROUPED_LABEL = "Ungrouped"


# ─────────────────────────────────────────────────────────────────
# 1. JOIN LABELS ONTO TRANSACTIONS
# ─────────────────────────────────────────────────────────────────

def label_transactions(df: pd.DataFrame,
                       product_groups: pd.DataFrame,
                       segments: pd.DataFrame) -> pd.DataFrame:
    """
    Attach GroupLabel (by StockCode) and Segment (by CustomerID) to every
    transaction line.

    Items outside every product group get UNGROUPED_LABEL; customers
    without a segment get NO_HISTORY_LABEL. Both fallbacks are reported
    with an UnassignedEntityWarning.
    """
    labelled = (
        df.merge(product_groups[["StockCode", "GroupLabel"]], on="StockCode", how="left")
          .merge(segments[["CustomerID", "Segment"]], on="CustomerID", how="left")
    )

    ungrouped = labelled.loc[labelled["GroupLabel"].isna(), "StockCode"].nunique()
    unsegmented = labelled.loc[labelled["Segment"].isna(), "CustomerID"].nunique(dropna=False)
    labelled["GroupLabel"] = labelled["GroupLabel"].fillna(UNGROUPED_LABEL)
    labelled["Segment"] = labelled["Segment"].fillna(NO_HISTORY_LABEL)

    for count, what, label in [(ungrouped, "items", UNGROUPED_LABEL),
                               (unsegmented, "customers", NO_HISTORY_LABEL)]:
        if count:
            msg = f"{count:,} {what} fall outside every group/segment → '{label}'"
            log.info(f"  {msg}")
            warnings.warn(msg, UnassignedEntityWarning, stacklevel=2)
    return labelled


# ─────────────────────────────────────────────────────────────────
# 2. CONTINGENCY TABLE
# ─────────────────────────────────────────────────────────────────

def build_contingency_table(labelled: pd.DataFrame,
                            exclude_groups: Iterable[str] = (UNGROUPED_LABEL,)) -> pd.DataFrame:
    """
    Segment × product-group counts of transaction lines.

    Args:
        labelled (pd.DataFrame): Output of label_transactions()
        exclude_groups: Group labels left out of the table

    Returns:
        pd.DataFrame: Rows = segments (sorted), columns = group labels
                      (C1.S1, C1.S2, ..., C2, ...)
    """
    kept = labelled[~labelled["GroupLabel"].isin(list(exclude_groups))]
    if kept.empty:
        log.warning("  No grouped transaction lines, contingency table is empty")
        return pd.DataFrame(dtype=int)

    table = pd.crosstab(kept["Segment"], kept["GroupLabel"])
    table = table.reindex(index=sorted(table.index),
                          columns=sorted(table.columns, key=group_label_key))
    table.index.name = "Segment"
    table.columns.name = "GroupLabel"

    log.info(f"  Contingency table : {table.shape[0]} segments × {table.shape[1]} groups "
             f"({int(table.values.sum()):,} lines)")
    return table


def contingency_long(table: pd.DataFrame) -> pd.DataFrame:
    """
    Long form of the contingency table with derived proportions.

    Proportion        = count / grand total
    RowProportion     = count / segment total
    ColumnProportion  = count / group total
    """
    columns = ["Segment", "GroupLabel", "Count", "Proportion",
               "RowProportion", "ColumnProportion"]
    if table.empty:
        return pd.DataFrame(columns=columns)

    total = table.values.sum()
    row_totals = table.sum(axis=1)
    col_totals = table.sum(axis=0)

    rows = []
    for segment in table.index:
        for group in table.columns:
            count = int(table.at[segment, group])
            rows.append((
                segment, group, count,
                round(count / total, 6),
                round(count / row_totals[segment], 6) if row_totals[segment] else 0.0,
                round(count / col_totals[group], 6) if col_totals[group] else 0.0,
            ))
    return pd.DataFrame(rows, columns=columns)


# ─────────────────────────────────────────────────────────────────
# 3. GROUP / BASKET OVERLAP
# ─────────────────────────────────────────────────────────────────

def _group_invoices(unit: tuple) -> Tuple[str, frozenset]:
    label, items, invoices_of = unit
    touched = set()
    for item in items:
        touched |= invoices_of.get(item, frozenset())
    return label, frozenset(touched)


def group_basket_overlap(lines: pd.DataFrame,
                         product_groups: pd.DataFrame,
                         pool: Optional[WorkerPool] = None) -> pd.DataFrame:
    """
    How many baskets touch each group, and each pair of groups together.

    Each group is an independent unit on the pool; the pairwise counts
    are reduced afterwards in a single thread.

    Returns:
        pd.DataFrame: GroupA, GroupB, Baskets. GroupA == GroupB rows hold
                      the per-group basket count; pairs with no shared
                      basket are omitted
    """
    columns = ["GroupA", "GroupB", "Baskets"]
    if lines.empty or product_groups.empty:
        return pd.DataFrame(columns=columns)

    grouped_items = set(product_groups["StockCode"])
    relevant = lines[lines["StockCode"].isin(grouped_items)]
    invoices_of = {
        item: frozenset(invoices)
        for item, invoices in relevant.groupby("StockCode")["InvoiceNo"]
    }

    labels = sorted(product_groups["GroupLabel"].unique(), key=group_label_key)
    items_of = product_groups.groupby("GroupLabel")["StockCode"].apply(list)
    units = [(label, items_of[label], invoices_of) for label in labels]

    pool = pool or WorkerPool(1)
    touched = dict(pool.map(_group_invoices, units, stage="overlap"))

    rows = [(label, label, len(touched[label])) for label in labels]
    for a, b in combinations(labels, 2):
        shared = len(touched[a] & touched[b])
        if shared:
            rows.append((a, b, shared))

    overlap = pd.DataFrame(rows, columns=columns)
    log.info(f"  Group overlap : {len(labels)} groups, "
             f"{len(overlap) - len(labels)} co-occurring pairs")
    return overlap


# ─────────────────────────────────────────────────────────────────
# 4. CORRESPONDENCE ANALYSIS
# ─────────────────────────────────────────────────────────────────

def correspondence_analysis(table: pd.DataFrame,
                            n_components: int = 2,
                            seed: int = 42) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Low-dimensional segment / group coordinates from the contingency table.

    Empty rows and columns are dropped first. The number of dimensions is
    capped at min(rows, columns) - 1; a table smaller than 2 × 2 has no
    decomposition and yields empty frames.

    Args:
        table (pd.DataFrame): Output of build_contingency_table()
        n_components (int): Dimensions to keep
        seed (int): Random state for the SVD

    Returns:
        tuple: (coordinates, inertia)
               coordinates: Kind ("segment"/"group"), Label, Dim1..DimK
               inertia:     Dimension, Eigenvalue, InertiaShare
    """
    coord_cols = ["Kind", "Label"]
    inertia_cols = ["Dimension", "Eigenvalue", "InertiaShare"]

    if not table.empty:
        table = table.loc[table.sum(axis=1) > 0, table.sum(axis=0) > 0]
    k = min(n_components, min(table.shape) - 1) if not table.empty else 0
    if k < 1:
        msg = f"Contingency table {table.shape} too small for correspondence analysis"
        log.warning(f"  {msg}")
        return pd.DataFrame(columns=coord_cols), pd.DataFrame(columns=inertia_cols)

    data = table.astype(float)
    data.index = data.index.astype(str)
    data.columns = data.columns.astype(str)

    ca = prince.CA(n_components=k, n_iter=10, random_state=seed)
    ca = ca.fit(data)

    dims = [f"Dim{i}" for i in range(1, k + 1)]
    row_coords = ca.row_coordinates(data).iloc[:, :k]
    col_coords = ca.column_coordinates(data).iloc[:, :k]
    row_coords.columns = dims
    col_coords.columns = dims

    coordinates = pd.concat([
        row_coords.rename_axis("Label").reset_index().assign(Kind="segment"),
        col_coords.rename_axis("Label").reset_index().assign(Kind="group"),
    ], ignore_index=True)[coord_cols + dims]
    coordinates[dims] = coordinates[dims].round(6)

    eigenvalues = np.asarray(ca.eigenvalues_, dtype=float)[:k]
    inertia = pd.DataFrame({
        "Dimension": dims,
        "Eigenvalue": eigenvalues.round(6),
        "InertiaShare": (eigenvalues / ca.total_inertia_).round(6),
    })

    shares = ", ".join(f"{d} {s:.1%}" for d, s in zip(dims, inertia["InertiaShare"]))
    log.info(f"  Correspondence analysis : {shares}")
    return coordinates, inertia
