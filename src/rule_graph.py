"""
Projection of association rules onto an item/rule graph.

Item nodes are keyed ("item", <StockCode>) and carry no metrics.
Rule nodes are keyed ("rule", <n>) and carry support, confidence and
lift; those attributes are what tells the two kinds apart when the
graph is read back. Every edge joins a rule node to one of its items,
so the graph is bipartite by construction.
"""
import logging
from typing import List, Optional

import networkx as nx
import pandas as pd

from market_basket import rule_text
from pipeline_errors import ParameterError

log = logging.getLogger(__name__)


ITEM = "item"
RULE = "rule"
RULE_METRICS = ("support", "confidence", "lift")


def select_rules(rules: pd.DataFrame, max_rules: Optional[int] = None) -> pd.DataFrame:
    """
    Keep the `max_rules` highest-support rules.

    Ties on support are broken by lift, confidence, then rule text, so
    truncation is reproducible.
    """
    if max_rules is not None and max_rules <= 0:
        raise ParameterError(f"max_rules must be positive, got {max_rules}", stage="graph")
    if rules.empty:
        return rules

    keyed = rules.assign(
        _a=rules["antecedents"].apply(rule_text),
        _c=rules["consequents"].apply(rule_text),
    )
    ranked = (
        keyed.sort_values(["support", "lift", "confidence", "_a", "_c"],
                          ascending=[False, False, False, True, True])
        .drop(columns=["_a", "_c"])
        .reset_index(drop=True)
    )
    if max_rules is not None and len(ranked) > max_rules:
        log.info(f"  Truncating {len(ranked):,} rules to the top {max_rules:,} by support")
        ranked = ranked.head(max_rules)
    return ranked


def build_rule_graph(rules: pd.DataFrame, max_rules: Optional[int] = None) -> nx.Graph:
    """
    Map a rule set onto one undirected graph.

    For each rule: one node per distinct item across antecedent and
    consequent (created once, shared between rules), one fresh node for
    the rule itself (never deduplicated), and an edge from the rule node
    to each of its items.

    Args:
        rules (pd.DataFrame): Mined rules (antecedents, consequents, support, ...)
        max_rules (int): Optional ceiling; only the top-K rules by support are used

    Returns:
        nx.Graph: Bipartite item/rule graph
    """
    graph = nx.Graph()
    selected = select_rules(rules, max_rules)

    for n, rule in enumerate(selected.itertuples(index=False), start=1):
        rule_node = (RULE, n)
        graph.add_node(
            rule_node,
            kind=RULE,
            support=float(rule.support),
            confidence=float(rule.confidence),
            lift=float(rule.lift),
        )
        for item in sorted(set(rule.antecedents) | set(rule.consequents)):
            item_node = (ITEM, item)
            if item_node not in graph:
                graph.add_node(item_node, kind=ITEM)
            graph.add_edge(rule_node, item_node)

    summary = graph_summary(graph)
    log.info(f"  Rule graph : {summary['items']:,} item nodes, "
             f"{summary['rules']:,} rule nodes, {summary['edges']:,} edges")
    return graph


def is_rule_node(data: dict) -> bool:
    return all(metric in data for metric in RULE_METRICS)


def item_nodes(graph: nx.Graph, nodes=None) -> List[tuple]:
    """Item nodes (optionally restricted to `nodes`), sorted by item id."""
    candidates = graph.nodes if nodes is None else nodes
    return sorted(n for n in candidates if not is_rule_node(graph.nodes[n]))


def rule_nodes(graph: nx.Graph) -> List[tuple]:
    return sorted(n for n, data in graph.nodes(data=True) if is_rule_node(data))


def item_id(node: tuple) -> str:
    return node[1]


def graph_summary(graph: nx.Graph) -> dict:
    n_rules = len(rule_nodes(graph))
    return {
        "nodes": graph.number_of_nodes(),
        "items": graph.number_of_nodes() - n_rules,
        "rules": n_rules,
        "edges": graph.number_of_edges(),
    }
