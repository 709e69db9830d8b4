import numpy as np
import pandas as pd
import pytest

from market_basket import (
    RULE_COLUMNS,
    build_basket_matrix,
    find_frequent_itemsets,
    generate_rules,
    itemset_support,
    lift_label,
    mine_rules,
    rule_metrics,
    rules_to_table,
)
from pipeline_config import PipelineConfig
from pipeline_errors import ComputationError, ParameterError
from worker_pool import WorkerPool


def _rule(rules, antecedent, consequent):
    match = rules[(rules["antecedents"] == frozenset(antecedent))
                  & (rules["consequents"] == frozenset(consequent))]
    assert len(match) == 1
    return match.iloc[0]


def _rule_set(rules):
    return {
        (tuple(sorted(r.antecedents)), tuple(sorted(r.consequents)),
         round(r.support, 9), round(r.confidence, 9), round(r.lift, 9))
        for r in rules.itertuples(index=False)
    }


# ── baskets ─────────────────────────────────────────────────────

def test_basket_matrix_is_boolean_and_sorted(worked_example_lines):
    basket = build_basket_matrix(worked_example_lines)
    assert basket.shape == (5, 4)
    assert list(basket.columns) == ["beer", "bread", "butter", "milk"]
    assert basket.dtypes.eq(bool).all()


def test_basket_matrix_ignores_quantity_duplicates():
    lines = pd.DataFrame({"InvoiceNo": ["1", "1", "2"], "StockCode": ["A", "A", "B"]})
    basket = build_basket_matrix(lines)
    assert basket.loc["1", "A"]
    assert basket.values.sum() == 2


@pytest.mark.parametrize("lines", [
    pd.DataFrame(columns=["InvoiceNo", "StockCode"]),
    pd.DataFrame({"Invoice": ["1"], "Item": ["A"]}),
    None,
])
def test_empty_or_malformed_extract_gives_no_rules(lines):
    itemsets, rules = mine_rules(lines, PipelineConfig(min_support=0.1))
    assert itemsets.empty
    assert rules.empty


# ── supports ────────────────────────────────────────────────────

def test_worked_example_support(worked_example_lines):
    basket = build_basket_matrix(worked_example_lines)
    assert itemset_support(basket, {"milk", "bread"}) == pytest.approx(0.4)
    assert itemset_support(basket, {"bread"}) == pytest.approx(0.8)
    assert itemset_support(basket, set()) == 1.0
    assert itemset_support(basket, {"caviar"}) == 0.0


def test_support_is_a_fraction_and_antimonotone(sales):
    basket = build_basket_matrix(sales)
    itemsets = find_frequent_itemsets(basket, min_support=0.1)
    assert itemsets["support"].between(0, 1).all()

    support_of = dict(zip(itemsets["itemsets"], itemsets["support"]))
    for itemset, supp in support_of.items():
        for item in itemset:
            subset = itemset - {item}
            if subset:
                assert support_of[subset] >= supp


def test_invalid_min_support_raises(worked_example_lines):
    basket = build_basket_matrix(worked_example_lines)
    with pytest.raises(ParameterError):
        find_frequent_itemsets(basket, min_support=0)
    with pytest.raises(ParameterError):
        find_frequent_itemsets(basket, min_support=0.2, algorithm="magic")


# ── rules ───────────────────────────────────────────────────────

def test_worked_example_rules(worked_example_lines):
    config = PipelineConfig(min_support=0.2, min_confidence=0.3)
    _, rules = mine_rules(worked_example_lines, config)

    forward = _rule(rules, {"milk", "bread"}, {"butter"})
    assert forward.confidence == pytest.approx(0.5)
    assert forward.lift == pytest.approx(0.8333, abs=1e-4)

    backward = _rule(rules, {"butter"}, {"milk", "bread"})
    assert backward.confidence == pytest.approx(1 / 3)
    assert backward.lift == pytest.approx(forward.lift)


def test_rules_respect_thresholds(sales):
    config = PipelineConfig(min_support=0.1, min_confidence=0.6)
    _, rules = mine_rules(sales, config)
    assert not rules.empty
    assert (rules["support"] >= 0.1).all()
    assert (rules["confidence"] >= 0.6).all()
    assert rules["lift"].is_monotonic_decreasing


def test_lift_is_symmetric(sales):
    _, rules = mine_rules(sales, PipelineConfig(min_support=0.1, min_confidence=0.0))
    lifts = {(r.antecedents, r.consequents): r.lift for r in rules.itertuples(index=False)}
    for (x, y), lift in lifts.items():
        assert lifts[(y, x)] == pytest.approx(lift)


def test_min_lift_filter(sales):
    _, rules = mine_rules(sales, PipelineConfig(min_support=0.1, min_confidence=0.0, min_lift=2))
    assert (rules["lift"] >= 2).all()


def test_size_one_itemsets_give_no_rules():
    itemsets = pd.DataFrame({
        "support": [0.5, 0.4],
        "itemsets": [frozenset({"A"}), frozenset({"B"})],
        "length": [1, 1],
    })
    assert generate_rules(itemsets, min_confidence=0.0).empty


def test_rules_keep_the_metric_columns(worked_example_lines):
    _, rules = mine_rules(worked_example_lines, PipelineConfig(min_support=0.2))
    assert list(rules.columns) == RULE_COLUMNS
    assert rules["antecedents"].map(type).eq(frozenset).all()
    rule = _rule(rules, {"milk", "bread"}, {"butter"})
    assert rule.leverage == pytest.approx(0.2 - 0.4 * 0.6)
    assert rule.conviction == pytest.approx((1 - 0.6) / (1 - 0.5))


def test_missing_subset_support_is_an_error():
    itemsets = pd.DataFrame({
        "support": [0.5, 0.4],
        "itemsets": [frozenset({"A"}), frozenset({"A", "B"})],
        "length": [1, 2],
    })
    with pytest.raises(ComputationError) as err:
        generate_rules(itemsets, min_confidence=0.0, n_baskets=10)
    assert err.value.stage == "rules"


def test_rule_metrics_zero_support_is_an_error():
    with pytest.raises(ComputationError) as err:
        rule_metrics(0.1, 0.0, 0.5)
    assert err.value.stage == "rules"


def test_certain_rule_has_infinite_conviction():
    lines = pd.DataFrame({"InvoiceNo": ["1", "1", "2", "2", "3"],
                          "StockCode": ["A", "B", "A", "B", "C"]})
    _, rules = mine_rules(lines, PipelineConfig(min_support=0.3, min_confidence=0.5))
    rule = _rule(rules, {"A"}, {"B"})
    assert rule.confidence == 1.0
    assert np.isinf(rule.conviction)


def test_max_itemset_len(sales):
    basket = build_basket_matrix(sales)
    itemsets = find_frequent_itemsets(basket, min_support=0.1, max_len=2)
    assert itemsets["length"].max() == 2


# ── algorithm agreement ─────────────────────────────────────────

@pytest.mark.parametrize("algorithm", ["fpgrowth", "eclat"])
def test_miners_agree_with_apriori(sales, algorithm):
    reference = PipelineConfig(min_support=0.1, min_confidence=0.2)
    ref_itemsets, ref_rules = mine_rules(sales, reference)
    itemsets, rules = mine_rules(
        sales, PipelineConfig(min_support=0.1, min_confidence=0.2, mining_algorithm=algorithm)
    )
    assert set(itemsets["itemsets"]) == set(ref_itemsets["itemsets"])
    assert _rule_set(rules) == _rule_set(ref_rules)


def test_parallel_eclat_matches_inline(sales):
    config = PipelineConfig(min_support=0.1, min_confidence=0.2, mining_algorithm="eclat")
    _, inline = mine_rules(sales, config)
    with WorkerPool(3) as pool:
        _, parallel = mine_rules(sales, config, pool)
    pd.testing.assert_frame_equal(inline, parallel)


# ── tables ──────────────────────────────────────────────────────

def test_rules_table_is_flat_text(worked_example_lines):
    _, rules = mine_rules(worked_example_lines, PipelineConfig(min_support=0.2))
    table = rules_to_table(rules)
    assert "bread, milk  →  butter" in set(table["rule_str"])
    assert table["antecedents_str"].map(type).eq(str).all()


@pytest.mark.parametrize("lift,label", [(6, "Very Strong"), (3, "Strong"), (2.5, "Moderate"), (1.1, "Weak")])
def test_lift_label(lift, label):
    assert lift_label(lift) == label
