import pandas as pd
import pytest

from pipeline_config import PipelineConfig


START = pd.Timestamp("2011-01-03 10:00")

# (customer, day offset, items)
BASKETS = [
    ("C01", 0, "ABC"),
    ("C01", 10, "AB"),
    ("C02", 3, "BC"),
    ("C02", 40, "ABC"),
    ("C03", 5, "DE"),
    ("C03", 50, "DE"),
    ("C04", 7, "AB"),
    ("C05", 60, "DEF"),
    ("C06", 15, "ABC"),
    ("C07", 80, "DE"),
    ("C08", 20, "Z"),
    ("C09", 90, "AC"),
    ("C10", 95, "DEF"),
    ("C04", 70, "BC"),
    ("C06", 85, "DE"),
]

# C09 and C10 only buy on or after this date
ANALYSIS_DATE = "2011-03-28"


def _rows(baskets):
    rows = []
    for n, (customer, day, items) in enumerate(baskets, start=1):
        for k, item in enumerate(items, start=1):
            rows.append({
                "InvoiceNo": str(536000 + n),
                "StockCode": item,
                "Description": f"ITEM {item}",
                "Quantity": k,
                "InvoiceDate": START + pd.Timedelta(days=day),
                "UnitPrice": 2.5,
                "CustomerID": customer,
                "Country": "United Kingdom",
            })
    return rows


@pytest.fixture
def raw_transactions():
    """Purchases plus a cancelled invoice and a zero-price line."""
    rows = _rows(BASKETS)
    rows.append({
        "InvoiceNo": "C536999", "StockCode": "A", "Description": "ITEM A", "Quantity": -1,
        "InvoiceDate": START, "UnitPrice": 2.5, "CustomerID": "C01", "Country": "United Kingdom",
    })
    rows.append({
        "InvoiceNo": "536998", "StockCode": "POST", "Description": "POSTAGE", "Quantity": 1,
        "InvoiceDate": START, "UnitPrice": 0.0, "CustomerID": "C02", "Country": "United Kingdom",
    })
    return pd.DataFrame(rows)


@pytest.fixture
def sales():
    df = pd.DataFrame(_rows(BASKETS))
    df["TotalAmount"] = df["Quantity"] * df["UnitPrice"]
    return df


@pytest.fixture
def transactions_csv(tmp_path, raw_transactions):
    path = tmp_path / "cleaned_sales_data.csv"
    raw_transactions.to_csv(path, index=False)
    return path


@pytest.fixture
def worked_example_lines():
    baskets = {
        "1": ["milk", "bread"],
        "2": ["bread", "butter"],
        "3": ["beer"],
        "4": ["milk", "bread", "butter"],
        "5": ["bread", "butter"],
    }
    return pd.DataFrame(
        [(invoice, item) for invoice, items in baskets.items() for item in items],
        columns=["InvoiceNo", "StockCode"],
    )


@pytest.fixture
def config():
    return PipelineConfig(
        min_support=0.1,
        min_confidence=0.3,
        max_graph_rules=200,
        analysis_date=ANALYSIS_DATE,
    )


@pytest.fixture
def analysis_date():
    return pd.Timestamp(ANALYSIS_DATE)
