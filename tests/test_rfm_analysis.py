import pandas as pd
import pytest

from pipeline_errors import InputError, ParameterError, UnassignedEntityWarning
from rfm_analysis import (
    DEFAULT_SEGMENT_RULES,
    NO_HISTORY_LABEL,
    UNCLASSIFIED_LABEL,
    SegmentRule,
    apply_segments,
    assign_segment,
    compute_rfm,
    customer_segments,
    quantile_score,
    resolve_analysis_date,
    score_rfm,
    segment_summary,
)


# ── rules ───────────────────────────────────────────────────────

def test_first_matching_rule_wins():
    rules = [
        SegmentRule("First", (1, 5), (1, 5), (1, 5)),
        SegmentRule("Second", (1, 5), (1, 5), (1, 5)),
    ]
    assert assign_segment(3, 3, 3, rules) == "First"


def test_earlier_default_rule_shadows_later_one():
    # (5, 1, 1) is inside both Potential Loyalist and New Customers
    assert assign_segment(5, 1, 1) == "Potential Loyalist"
    assert assign_segment(5, 5, 5) == "Champions"
    assert assign_segment(1, 1, 1) == "Lost"


def test_uncovered_triple_is_unclassified():
    assert assign_segment(2, 1, 3) == UNCLASSIFIED_LABEL


def test_unclassified_customers_raise_a_warning():
    rfm = pd.DataFrame({"CustomerID": ["1"], "R_Score": [2], "F_Score": [1], "M_Score": [3]})
    with pytest.warns(UnassignedEntityWarning):
        segmented = apply_segments(rfm, DEFAULT_SEGMENT_RULES)
    assert segmented["Segment"].tolist() == [UNCLASSIFIED_LABEL]


# ── metrics and scores ──────────────────────────────────────────

def test_quantile_score_ranges():
    values = pd.Series([10, 20, 30, 40, 50])
    assert quantile_score(values, 5).tolist() == [1, 2, 3, 4, 5]
    assert quantile_score(values, 5, ascending=False).tolist() == [5, 4, 3, 2, 1]


def test_quantile_score_matches_qcut_on_distinct_values():
    values = pd.Series([3.5, 120.0, 18.0, 7.25, 64.0, 250.0, 41.0, 9.0, 1.0, 33.0])
    expected = pd.qcut(values, q=5, labels=[1, 2, 3, 4, 5]).astype(int)
    assert quantile_score(values, 5).tolist() == expected.tolist()
    reversed_ = pd.qcut(values, q=5, labels=[5, 4, 3, 2, 1]).astype(int)
    assert quantile_score(values, 5, ascending=False).tolist() == reversed_.tolist()


def test_equal_values_share_a_score():
    assert quantile_score(pd.Series([10] * 6), 3).nunique() == 1
    assert quantile_score(pd.Series([10] * 6), 3, ascending=False).nunique() == 1

    scores = quantile_score(pd.Series([1, 1, 1, 1, 1, 1, 1, 2, 3, 4]), 5)
    assert scores.tolist() == [1, 1, 1, 1, 1, 1, 1, 4, 5, 5]


def test_tied_customers_get_the_same_recency_and_monetary_score():
    rfm = pd.DataFrame({
        "CustomerID": [f"C{i:02d}" for i in range(10)],
        "Recency": [10] * 10,
        "Frequency": [1] * 10,
        "Monetary": [50.0] * 10,
    })
    scored = score_rfm(rfm)
    assert scored["R_Score"].nunique() == 1
    assert scored["M_Score"].nunique() == 1
    assert sorted(scored["F_Score"]) == [1, 1, 2, 2, 3, 3, 4, 4, 5, 5]


def test_compute_rfm_uses_only_history_before_cutoff(sales, analysis_date):
    rfm = compute_rfm(sales, analysis_date)
    assert "C09" not in set(rfm["CustomerID"])
    c06 = rfm.set_index("CustomerID").loc["C06"]
    assert c06["Frequency"] == 1
    assert c06["LastPurchaseDate"] == pd.Timestamp("2011-01-18 10:00")
    assert (rfm["Recency"] >= 0).all()


def test_monetary_and_frequency(sales, analysis_date):
    rfm = compute_rfm(sales, analysis_date).set_index("CustomerID")
    # C01: ABC (1+2+3) + AB (1+2) units at 2.5
    assert rfm.loc["C01", "Frequency"] == 2
    assert rfm.loc["C01", "Monetary"] == pytest.approx(22.5)


def test_recency_is_inverted(sales, analysis_date):
    scored = score_rfm(compute_rfm(sales, analysis_date))
    most_recent = scored.loc[scored["Recency"].idxmin()]
    assert most_recent["R_Score"] == scored["R_Score"].max()
    for col in ["R_Score", "F_Score", "M_Score"]:
        assert scored[col].between(1, 5).all()
    assert scored["RFM_Score"].str.len().eq(3).all()


def test_too_few_quantiles(sales, analysis_date):
    with pytest.raises(ParameterError):
        score_rfm(compute_rfm(sales, analysis_date), n=1)


def test_default_analysis_date_is_day_after_last_invoice(sales):
    assert resolve_analysis_date(sales) == pd.Timestamp("2011-04-09")


def test_analysis_date_needs_data():
    with pytest.raises(InputError):
        resolve_analysis_date(pd.DataFrame({"InvoiceDate": pd.Series(dtype="datetime64[ns]")}))


# ── customer table ──────────────────────────────────────────────

def test_every_customer_gets_exactly_one_label(sales, analysis_date):
    segments = customer_segments(sales, analysis_date=analysis_date)
    assert segments["CustomerID"].is_unique
    assert set(segments["CustomerID"]) == set(sales["CustomerID"])
    assert segments["Segment"].notna().all()


def test_customers_without_history(sales, analysis_date):
    segments = customer_segments(sales, analysis_date=analysis_date).set_index("CustomerID")
    assert segments.loc["C09", "Segment"] == NO_HISTORY_LABEL
    assert segments.loc["C10", "Segment"] == NO_HISTORY_LABEL
    assert pd.isna(segments.loc["C10", "R_Score"])
    assert segments.loc["C01", "Segment"] != NO_HISTORY_LABEL


def test_segments_are_reproducible(sales):
    first = customer_segments(sales)
    second = customer_segments(sales.sample(frac=1, random_state=3))
    pd.testing.assert_frame_equal(first, second)


def test_segment_summary(sales, analysis_date):
    segments = customer_segments(sales, analysis_date=analysis_date)
    summary = segment_summary(segments)
    assert NO_HISTORY_LABEL not in set(summary["Segment"])
    assert summary["Customers"].sum() == 8
    assert summary["Revenue_Share_%"].sum() == pytest.approx(100, abs=1.0)
    assert summary["Total_Revenue"].is_monotonic_decreasing
