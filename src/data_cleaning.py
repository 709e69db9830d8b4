import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from pipeline_errors import InputError

log = logging.getLogger(__name__)


REQUIRED_COLUMNS = {
    "InvoiceNo", "StockCode", "Quantity", "InvoiceDate", "UnitPrice", "CustomerID",
}


# ─────────────────────────────────────────────────────────────────
# LOAD
# ─────────────────────────────────────────────────────────────────

def load_transactions(path: Path) -> pd.DataFrame:
    """
    Load the cleaned transaction extract and validate its columns.

    Args:
        path (Path): CSV with InvoiceNo, StockCode, Description, Quantity,
                     InvoiceDate, UnitPrice, CustomerID (Country optional)

    Returns:
        pd.DataFrame: Raw rows, InvoiceDate parsed, ids kept as strings

    Raises:
        InputError: If the file is missing, lacks columns or has no rows
    """
    path = Path(path)
    if not path.exists():
        raise InputError(f"Input not found: {path}", stage="load")

    log.info(f"Loading {path.name} ...")
    df = pd.read_csv(
        path,
        encoding="latin-1",
        dtype={"InvoiceNo": str, "StockCode": str, "CustomerID": str},
        low_memory=False,
    )
    validate_transactions(df)

    try:
        df["InvoiceDate"] = pd.to_datetime(df["InvoiceDate"])
    except (ValueError, TypeError) as e:
        raise InputError(f"InvoiceDate could not be parsed: {e}", stage="load") from e

    log.info(f"  Rows      : {len(df):,}")
    log.info(f"  Invoices  : {df['InvoiceNo'].nunique():,}")
    log.info(f"  Date range: {df['InvoiceDate'].min().date()} → {df['InvoiceDate'].max().date()}")
    return df


def validate_transactions(df: pd.DataFrame) -> None:
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise InputError(f"Missing columns: {sorted(missing)}", stage="load")
    if df.empty:
        raise InputError("Transaction file has no rows", stage="load")


# ─────────────────────────────────────────────────────────────────
# CLEAN
# ─────────────────────────────────────────────────────────────────

def _normalise_id(series: pd.Series) -> pd.Series:
    # CustomerID often arrives as a float column ("17850.0")
    s = series.astype("string").str.strip()
    return s.str.replace(r"\.0$", "", regex=True)


def clean_transactions(df: pd.DataFrame,
                       quantity_quantile: Optional[float] = None) -> pd.DataFrame:
    """
    Keep purchase rows only.

    - cancelled invoices (InvoiceNo starting with "C") are dropped
    - Quantity > 0 and UnitPrice > 0 (returns and credits excluded)
    - rows without an item id are dropped
    - TotalAmount = Quantity * UnitPrice

    Args:
        df (pd.DataFrame): Output of load_transactions()
        quantity_quantile (float): If set, drop lines whose quantity is
                                   above this quantile (bulk outliers)

    Returns:
        pd.DataFrame: Purchase rows with string ids

    Raises:
        InputError: If no purchase rows survive
    """
    validate_transactions(df)
    df = df.copy()

    df["InvoiceNo"] = _normalise_id(df["InvoiceNo"])
    df["StockCode"] = _normalise_id(df["StockCode"]).str.upper()
    df["CustomerID"] = _normalise_id(df["CustomerID"])
    if "Description" in df.columns:
        df["Description"] = df["Description"].astype("string").str.strip().str.upper()

    n_before = len(df)
    sales = df[~df["InvoiceNo"].fillna("").str.startswith("C")]
    sales = sales.dropna(subset=["InvoiceNo", "StockCode"])
    sales = sales[sales["StockCode"] != ""]
    sales = sales[(sales["Quantity"] > 0) & (sales["UnitPrice"] > 0)]

    if quantity_quantile is not None and not sales.empty:
        sales = sales[sales["Quantity"] <= sales["Quantity"].quantile(quantity_quantile)]

    if sales.empty:
        raise InputError("No purchase rows left after removing returns and credits",
                         stage="clean")

    sales = sales.copy()
    sales["TotalAmount"] = sales["Quantity"] * sales["UnitPrice"]
    sales = sales.reset_index(drop=True)

    log.info(f"  Purchase rows : {len(sales):,}  (dropped {n_before - len(sales):,})")
    log.info(f"  Customers     : {sales['CustomerID'].nunique():,}")
    log.info(f"  Products      : {sales['StockCode'].nunique():,}")
    return sales


# ─────────────────────────────────────────────────────────────────
# DERIVED EXTRACTS
# ─────────────────────────────────────────────────────────────────

def basket_lines(df: pd.DataFrame) -> pd.DataFrame:
    """Long-form (InvoiceNo, StockCode) extract, one row per basket-item pair."""
    lines = (
        df[["InvoiceNo", "StockCode"]]
        .dropna()
        .drop_duplicates()
        .sort_values(["InvoiceNo", "StockCode"])
        .reset_index(drop=True)
    )
    log.info(f"  Basket lines  : {len(lines):,} over {lines['InvoiceNo'].nunique():,} baskets")
    return lines


def product_descriptions(df: pd.DataFrame) -> pd.DataFrame:
    """
    Item-id -> description lookup.

    The most frequent description per StockCode wins; ties go to the
    alphabetically first description.
    """
    if "Description" not in df.columns:
        return pd.DataFrame({"StockCode": pd.Series(dtype=str),
                             "Description": pd.Series(dtype=str)})

    counts = (
        df.dropna(subset=["Description"])
        .groupby(["StockCode", "Description"])
        .size()
        .reset_index(name="n")
        .sort_values(["StockCode", "n", "Description"], ascending=[True, False, True])
    )
    return (
        counts.drop_duplicates("StockCode")[["StockCode", "Description"]]
        .reset_index(drop=True)
    )
