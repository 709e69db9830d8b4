import logging
from typing import Iterable, Optional, Tuple

import numpy as np
import pandas as pd
from mlxtend.frequent_patterns import apriori, association_rules, fpgrowth

from pipeline_config import PipelineConfig
from pipeline_errors import ComputationError, ParameterError
from worker_pool import WorkerPool

log = logging.getLogger(__name__)


ITEMSET_COLUMNS = ["support", "itemsets", "length"]
RULE_COLUMNS = [
    "antecedents", "consequents",
    "antecedent support", "consequent support",
    "support", "confidence", "lift", "leverage", "conviction",
]


# ─────────────────────────────────────────────────────────────────
# 1. BASKETS
# ─────────────────────────────────────────────────────────────────

def build_basket_matrix(lines: pd.DataFrame,
                        invoice_col: str = "InvoiceNo",
                        item_col: str = "StockCode") -> pd.DataFrame:
    """
    Build the invoice × item binary matrix the miners work on.

    Each row = one basket, each column = one item, True if the item
    appears in the basket. Duplicate lines collapse to a single True,
    so quantity plays no part. Rows and columns are sorted so the same
    extract always produces the same matrix.

    Args:
        lines (pd.DataFrame): Long-form (invoice, item) extract
        invoice_col (str): Basket id column
        item_col (str): Item id column

    Returns:
        pd.DataFrame: Boolean basket matrix (empty if the extract is
                      empty or lacks the two columns)
    """
    if lines is None or invoice_col not in lines.columns or item_col not in lines.columns:
        log.warning("  Basket extract is malformed, returning an empty basket matrix")
        return pd.DataFrame(dtype=bool)

    pairs = lines[[invoice_col, item_col]].dropna()
    if pairs.empty:
        return pd.DataFrame(dtype=bool)

    basket = (
        pairs.astype(str)
        .groupby([invoice_col, item_col])
        .size()
        .unstack(fill_value=0)
        .astype(bool)
        .sort_index()
        .sort_index(axis=1)
    )
    basket.columns.name = None
    basket.index.name = None

    log.info(f"  Basket matrix : {basket.shape[0]:,} baskets × {basket.shape[1]:,} items")
    log.info(f"  Matrix density: {basket.values.mean()*100:.2f}% non-zero")
    return basket


def itemset_support(basket: pd.DataFrame, itemset: Iterable[str]) -> float:
    """
    Fraction of baskets containing every item of `itemset`.

    Supp(∅) = 1 by definition; an empty basket collection gives 0.
    """
    itemset = frozenset(itemset)
    if not itemset:
        return 1.0
    if basket.shape[0] == 0 or not itemset.issubset(basket.columns):
        return 0.0
    return float(basket[sorted(itemset)].all(axis=1).sum() / basket.shape[0])


# ─────────────────────────────────────────────────────────────────
# 2. FREQUENT ITEMSETS
# ─────────────────────────────────────────────────────────────────

def _empty_itemsets() -> pd.DataFrame:
    return pd.DataFrame({"support": pd.Series(dtype=float),
                         "itemsets": pd.Series(dtype=object),
                         "length": pd.Series(dtype=int)})


def _eclat_extend(prefix: Tuple[str, ...], prefix_tids: np.ndarray, tail: list,
                  n_baskets: int, min_support: float, max_len: Optional[int],
                  found: list) -> None:
    if max_len is not None and len(prefix) >= max_len:
        return
    extensions = []
    for item, tids in tail:
        joint = prefix_tids & tids
        count = int(joint.sum())
        if count / n_baskets >= min_support:
            extensions.append((item, joint))
            found.append((prefix + (item,), count))
    for i, (item, tids) in enumerate(extensions):
        _eclat_extend(prefix + (item,), tids, extensions[i + 1:],
                      n_baskets, min_support, max_len, found)


def _eclat_branch(unit: tuple) -> list:
    """One top-level prefix of the eclat search: every frequent superset of `item`."""
    item, tids, tail, n_baskets, min_support, max_len = unit
    found = []
    _eclat_extend((item,), tids, tail, n_baskets, min_support, max_len, found)
    return found


def eclat(basket: pd.DataFrame,
          min_support: float = 0.01,
          max_len: Optional[int] = None,
          pool: Optional[WorkerPool] = None) -> pd.DataFrame:
    """
    Frequent itemsets by vertical tid-vector intersection.

    Every item becomes a boolean vector over baskets; the support of an
    itemset is the popcount of the AND of its items' vectors. The search
    is depth-first over prefixes in item order, and each top-level prefix
    is an independent unit of work on the pool.

    Produces the same itemsets and supports as apriori/fpgrowth.
    """
    n_baskets = basket.shape[0]
    if n_baskets == 0:
        return _empty_itemsets()

    singles = []
    rows = []
    for item in basket.columns:
        tids = basket[item].to_numpy(dtype=bool)
        count = int(tids.sum())
        if count / n_baskets >= min_support:
            singles.append((item, tids))
            rows.append(((item,), count))

    units = [
        (item, tids, singles[i + 1:], n_baskets, min_support, max_len)
        for i, (item, tids) in enumerate(singles)
    ]
    pool = pool or WorkerPool(1)
    for found in pool.map(_eclat_branch, units, stage="itemsets"):
        rows.extend(found)

    if not rows:
        return _empty_itemsets()
    return pd.DataFrame({
        "support": [count / n_baskets for _, count in rows],
        "itemsets": [frozenset(items) for items, _ in rows],
    })


def find_frequent_itemsets(basket: pd.DataFrame,
                           min_support: float = 0.01,
                           algorithm: str = "apriori",
                           max_len: Optional[int] = None,
                           pool: Optional[WorkerPool] = None) -> pd.DataFrame:
    """
    Find every itemset whose support is at least `min_support`.

    apriori    : mlxtend level-wise search, candidates pruned by the
                 apriori property
    fpgrowth   : mlxtend FP-tree search
    eclat      : vertical tid-vector intersection (see eclat())

    Args:
        basket (pd.DataFrame): Boolean basket matrix
        min_support (float): Minimum support threshold in (0, 1]
        algorithm (str): "apriori", "fpgrowth" or "eclat"
        max_len (int): Longest itemset to return (None = unbounded)
        pool (WorkerPool): Pool for the eclat branches

    Returns:
        pd.DataFrame: support, itemsets (frozenset), length, ordered by
                      length, then support desc, then item ids
    """
    if not 0 < min_support <= 1:
        raise ParameterError(f"min_support must be in (0, 1], got {min_support}",
                             stage="itemsets")
    if basket.shape[0] == 0 or basket.shape[1] == 0:
        log.warning("  Empty basket matrix: no frequent itemsets")
        return _empty_itemsets()

    log.info(f"  Running {algorithm} (min_support={min_support}) ...")
    if algorithm == "apriori":
        itemsets = apriori(basket, min_support=min_support, use_colnames=True,
                           max_len=max_len, verbose=0)
    elif algorithm == "fpgrowth":
        itemsets = fpgrowth(basket, min_support=min_support, use_colnames=True,
                            max_len=max_len, verbose=0)
    elif algorithm == "eclat":
        itemsets = eclat(basket, min_support=min_support, max_len=max_len, pool=pool)
    else:
        raise ParameterError(f"Unknown mining algorithm '{algorithm}'", stage="itemsets")

    if itemsets.empty:
        log.info("  Frequent itemsets found : 0")
        return _empty_itemsets()

    itemsets = itemsets[["support", "itemsets"]].copy()
    itemsets["itemsets"] = itemsets["itemsets"].apply(frozenset)
    itemsets["length"] = itemsets["itemsets"].apply(len)
    itemsets["_key"] = itemsets["itemsets"].apply(lambda s: tuple(sorted(s)))
    itemsets = (
        itemsets.sort_values(["length", "support", "_key"], ascending=[True, False, True])
        .drop(columns="_key")
        .reset_index(drop=True)
    )

    log.info(f"  Frequent itemsets found : {len(itemsets):,}")
    log.info(f"  Pairs (length=2)        : {(itemsets['length']==2).sum():,}")
    log.info(f"  Triplets (length=3)     : {(itemsets['length']==3).sum():,}")
    return itemsets


# ─────────────────────────────────────────────────────────────────
# 3. RULES
# ─────────────────────────────────────────────────────────────────

def rule_metrics(supp_xy: float, supp_x: float, supp_y: float) -> Tuple[float, float]:
    """
    Confidence and lift of X ⇒ Y from the three supports.

    confidence = Supp(X∪Y) / Supp(X)
    lift       = Supp(X∪Y) / (Supp(X) · Supp(Y))

    Raises:
        ComputationError: If Supp(X) or Supp(Y) is exactly 0
    """
    if supp_x == 0 or supp_y == 0:
        raise ComputationError(
            f"lift undefined: antecedent support={supp_x}, consequent support={supp_y}",
            stage="rules",
        )
    return supp_xy / supp_x, supp_xy / (supp_x * supp_y)


def _check_supports(candidates: list, support_of: dict) -> None:
    """Every candidate needs non-zero support on both sides of its first split."""
    for itemset, supp_xy in candidates:
        first = min(itemset)
        x = frozenset({first})
        rule_metrics(supp_xy, support_of.get(x, 0.0), support_of.get(itemset - x, 0.0))


def _empty_rules() -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype=object if c in ("antecedents", "consequents") else float)
                         for c in RULE_COLUMNS})


def rule_text(items: Iterable[str]) -> str:
    return ", ".join(sorted(items))


def generate_rules(itemsets: pd.DataFrame,
                   min_confidence: float = 0.3,
                   n_baskets: int = 1) -> pd.DataFrame:
    """
    Generate association rules from frequent itemsets with mlxtend.

    Every itemset of size ≥ 2 is split into all non-empty antecedent /
    consequent partitions, e.g. {A, B, C} gives A→BC, B→AC, C→AB,
    AB→C, AC→B, BC→A. Splits below `min_confidence` are dropped.
    Itemsets of size 1 produce no rules.

    Args:
        itemsets (pd.DataFrame): Output of find_frequent_itemsets()
        min_confidence (float): Minimum confidence in [0, 1]
        n_baskets (int): Number of baskets the itemsets were mined from

    Returns:
        pd.DataFrame: RULE_COLUMNS, ordered by antecedent then consequent text
    """
    if not 0 <= min_confidence <= 1:
        raise ParameterError(f"min_confidence must be in [0, 1], got {min_confidence}",
                             stage="rules")
    if itemsets.empty:
        return _empty_rules()

    support_of = dict(zip(itemsets["itemsets"], itemsets["support"]))
    candidates = [(s, supp) for s, supp in support_of.items() if len(s) >= 2]
    if not candidates:
        log.info("  No itemsets of size ≥ 2, no rules")
        return _empty_rules()
    _check_supports(candidates, support_of)

    rules = association_rules(
        itemsets[["support", "itemsets"]],
        num_itemsets=n_baskets,
        metric="confidence",
        min_threshold=min_confidence,
    )
    if rules.empty:
        return _empty_rules()

    rules = rules[RULE_COLUMNS].copy()
    rules["antecedents"] = rules["antecedents"].apply(frozenset)
    rules["consequents"] = rules["consequents"].apply(frozenset)
    rules["_a"] = rules["antecedents"].apply(rule_text)
    rules["_c"] = rules["consequents"].apply(rule_text)
    rules = (
        rules.sort_values(["_a", "_c"])
        .drop(columns=["_a", "_c"])
        .reset_index(drop=True)
    )
    log.info(f"  Rules generated   : {len(rules):,}  (confidence≥{min_confidence})")
    return rules


def sort_rules(rules: pd.DataFrame) -> pd.DataFrame:
    """Presentation order: lift desc, then confidence and support desc, then rule text."""
    if rules.empty:
        return rules
    keyed = rules.assign(
        _a=rules["antecedents"].apply(rule_text),
        _c=rules["consequents"].apply(rule_text),
    )
    return (
        keyed.sort_values(["lift", "confidence", "support", "_a", "_c"],
                          ascending=[False, False, False, True, True])
        .drop(columns=["_a", "_c"])
        .reset_index(drop=True)
    )


def mine_rules(lines: pd.DataFrame,
               config: PipelineConfig,
               pool: Optional[WorkerPool] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Baskets → frequent itemsets → rules.

    An empty or malformed extract yields empty itemset and rule frames
    rather than an error.

    Returns:
        tuple: (itemsets, rules), rules sorted by lift descending
    """
    basket = build_basket_matrix(lines)
    itemsets = find_frequent_itemsets(
        basket,
        min_support=config.min_support,
        algorithm=config.mining_algorithm,
        max_len=config.max_itemset_len,
        pool=pool,
    )
    rules = generate_rules(itemsets, min_confidence=config.min_confidence,
                           n_baskets=basket.shape[0])

    if config.min_lift > 0 and not rules.empty:
        rules = rules[rules["lift"] >= config.min_lift].reset_index(drop=True)
        log.info(f"  Rules after lift≥{config.min_lift} : {len(rules):,}")
    return itemsets, sort_rules(rules)


# ─────────────────────────────────────────────────────────────────
# 4. TABLES
# ─────────────────────────────────────────────────────────────────

def lift_label(lift: float) -> str:
    if lift >= 5:
        return "Very Strong"
    elif lift >= 3:
        return "Strong"
    elif lift >= 2:
        return "Moderate"
    else:
        return "Weak"


def rules_to_table(rules: pd.DataFrame) -> pd.DataFrame:
    """Flatten frozensets into readable columns for CSV / SQL export."""
    columns = ["antecedents_str", "consequents_str", "rule_str",
               "support", "confidence", "lift", "leverage", "conviction", "strength"]
    if rules.empty:
        return pd.DataFrame(columns=columns)

    table = pd.DataFrame({
        "antecedents_str": rules["antecedents"].apply(rule_text),
        "consequents_str": rules["consequents"].apply(rule_text),
    })
    table["rule_str"] = table["antecedents_str"] + "  →  " + table["consequents_str"]
    for col in ["support", "confidence", "lift", "leverage", "conviction"]:
        table[col] = rules[col].round(6)
    table["strength"] = rules["lift"].apply(lift_label)
    return table[columns]


def itemsets_to_table(itemsets: pd.DataFrame) -> pd.DataFrame:
    table = itemsets.copy()
    table["itemsets"] = table["itemsets"].apply(rule_text)
    table["support"] = table["support"].round(6)
    return table[ITEMSET_COLUMNS]
