import logging
from typing import Callable, Dict, Iterable, List, Set

import networkx as nx
import pandas as pd
from networkx.algorithms import community as nx_community

from pipeline_errors import ComputationError, ParameterError
from rule_graph import item_id, item_nodes

log = logging.getLogger(__name__)


GROUP_COLUMNS = ["StockCode", "ComponentID", "SubclusterID", "GroupLabel", "GroupSize"]

# Girvan-Newman is cut at the best of its first few levels, and only
# compared on components small enough for repeated betweenness passes
EDGE_BETWEENNESS_MAX_LEVELS = 12
EDGE_BETWEENNESS_MAX_COMPARE_NODES = 400


# ─────────────────────────────────────────────────────────────────
# 1. CANONICAL GRAPH
# ─────────────────────────────────────────────────────────────────

def canonical_graph(graph: nx.Graph, nodes: Iterable = None) -> nx.Graph:
    """
    Copy of the (induced sub)graph with nodes and edges inserted in
    sorted order. Multi-edges collapse and edge weights are dropped.
    """
    keep = set(graph.nodes) if nodes is None else set(nodes)
    copy = nx.Graph()
    for node in sorted(keep):
        copy.add_node(node, **graph.nodes[node])
    edges = sorted(
        tuple(sorted((u, v)))
        for u, v in graph.edges(keep)
        if u in keep and v in keep
    )
    copy.add_edges_from(edges)
    return copy


def _group_key(graph: nx.Graph, nodes: Set) -> tuple:
    # larger item count first, then lowest item label
    items = item_nodes(graph, nodes)
    first = item_id(items[0]) if items else "\uffff"
    return (-len(items), first)


# ─────────────────────────────────────────────────────────────────
# 2. CONNECTED COMPONENTS
# ─────────────────────────────────────────────────────────────────

def connected_components(graph: nx.Graph) -> List[Set]:
    """
    Disjoint components, ordered so that position i holds component id i+1.

    Ordered by descending item-node count, ties broken by lowest item
    label, so identical graphs always get identical ids.
    """
    components = [set(c) for c in nx.connected_components(graph)]
    return sorted(components, key=lambda c: _group_key(graph, c))


# ─────────────────────────────────────────────────────────────────
# 3. COMMUNITY DETECTION STRATEGIES
# ─────────────────────────────────────────────────────────────────

def _greedy_modularity(graph: nx.Graph, seed: int) -> List[Set]:
    return [set(c) for c in nx_community.greedy_modularity_communities(graph)]


def _louvain(graph: nx.Graph, seed: int) -> List[Set]:
    return [set(c) for c in nx_community.louvain_communities(graph, seed=seed)]


def _label_propagation(graph: nx.Graph, seed: int) -> List[Set]:
    return [set(c) for c in nx_community.asyn_lpa_communities(graph, seed=seed)]


def _edge_betweenness(graph: nx.Graph, seed: int) -> List[Set]:
    best = [set(graph.nodes)]
    best_q = nx_community.modularity(graph, best)
    levels = nx_community.girvan_newman(graph)
    for level, communities in enumerate(levels, start=1):
        communities = [set(c) for c in communities]
        q = nx_community.modularity(graph, communities)
        if q > best_q:
            best, best_q = communities, q
        if level >= EDGE_BETWEENNESS_MAX_LEVELS:
            break
    return best


def _fluid_communities(graph: nx.Graph, seed: int) -> List[Set]:
    """
    Fluid communities run per connected component, each asked for as many
    communities as greedy modularity finds in it.
    """
    communities = []
    for component in connected_components(graph):
        sub = canonical_graph(graph, component)
        if sub.number_of_nodes() < 2:
            communities.append(set(component))
            continue
        k = len(nx_community.greedy_modularity_communities(sub))
        communities.extend(set(c) for c in nx_community.asyn_fluidc(sub, k, seed=seed))
    return communities


COMMUNITY_ALGORITHMS: Dict[str, Callable[[nx.Graph, int], List[Set]]] = {
    "greedy_modularity": _greedy_modularity,
    "louvain": _louvain,
    "label_propagation": _label_propagation,
    "edge_betweenness": _edge_betweenness,
    "fluid_communities": _fluid_communities,
}


def partition_communities(graph: nx.Graph, algorithm: str = "greedy_modularity",
                          seed: int = 42) -> List[Set]:
    """
    Run one community-detection strategy on a canonical copy of `graph`.

    Args:
        graph (nx.Graph): Graph to split
        algorithm (str): Key of COMMUNITY_ALGORITHMS
        seed (int): Random seed for the stochastic strategies

    Returns:
        list[set]: Communities in canonical order (largest item count first)

    Raises:
        ParameterError: Unknown algorithm
        ComputationError: Result is not a complete, disjoint partition
    """
    if algorithm not in COMMUNITY_ALGORITHMS:
        raise ParameterError(
            f"Unknown community algorithm '{algorithm}'. "
            f"Choose one of {sorted(COMMUNITY_ALGORITHMS)}",
            stage="partition",
        )
    if graph.number_of_nodes() == 0:
        return []

    canonical = canonical_graph(graph)
    if canonical.number_of_edges() == 0:
        communities = [{n} for n in canonical.nodes]
    else:
        communities = COMMUNITY_ALGORITHMS[algorithm](canonical, seed)

    seen = set()
    for c in communities:
        if seen & c:
            raise ComputationError(f"{algorithm} placed a node in two communities",
                                   stage="partition")
        seen |= c
    if seen != set(canonical.nodes):
        raise ComputationError(f"{algorithm} left {len(set(canonical.nodes) - seen)} "
                               "nodes unassigned", stage="partition")

    return sorted(communities, key=lambda c: _group_key(canonical, c))


# ─────────────────────────────────────────────────────────────────
# 4. TWO-LEVEL PRODUCT GROUPS
# ─────────────────────────────────────────────────────────────────

def group_label(component_id: int, subcluster_id=None) -> str:
    if subcluster_id is None or pd.isna(subcluster_id):
        return f"C{component_id}"
    return f"C{component_id}.S{int(subcluster_id)}"


def partition_product_groups(graph: nx.Graph,
                             algorithm: str = "greedy_modularity",
                             seed: int = 42) -> pd.DataFrame:
    """
    Group the items of a rule graph.

    1. Connected components get ids 1..n (largest first).
    2. Only component 1 is split by `algorithm` into sub-clusters 1..k
       (largest first); communities holding only rule nodes are dropped.
       Every other component passes through whole.
    3. Rule nodes are discarded; each item keeps its group label and the
       item count of that group.

    Returns:
        pd.DataFrame: StockCode, ComponentID, SubclusterID (nullable),
                      GroupLabel, GroupSize, sorted by GroupLabel order
    """
    components = connected_components(graph)
    if not components:
        log.warning("  Rule graph is empty: no product groups")
        return pd.DataFrame({
            "StockCode": pd.Series(dtype=str),
            "ComponentID": pd.Series(dtype="Int64"),
            "SubclusterID": pd.Series(dtype="Int64"),
            "GroupLabel": pd.Series(dtype=str),
            "GroupSize": pd.Series(dtype="Int64"),
        })

    rows = []
    for component_id, nodes in enumerate(components, start=1):
        items = item_nodes(graph, nodes)
        if component_id == 1:
            subclusters = [
                c for c in partition_communities(graph.subgraph(nodes), algorithm, seed)
                if item_nodes(graph, c)
            ]
            for sub_id, community in enumerate(subclusters, start=1):
                sub_items = item_nodes(graph, community)
                for node in sub_items:
                    rows.append((item_id(node), component_id, sub_id, len(sub_items)))
            log.info(f"  Component 1 : {len(items):,} items split into "
                     f"{len(subclusters)} sub-clusters ({algorithm})")
        else:
            for node in items:
                rows.append((item_id(node), component_id, None, len(items)))

    groups = pd.DataFrame(rows, columns=["StockCode", "ComponentID", "SubclusterID", "GroupSize"])
    groups["ComponentID"] = groups["ComponentID"].astype("Int64")
    groups["SubclusterID"] = groups["SubclusterID"].astype("Int64")
    groups["GroupSize"] = groups["GroupSize"].astype("Int64")
    groups["GroupLabel"] = [
        group_label(c, s) for c, s in zip(groups["ComponentID"], groups["SubclusterID"])
    ]
    groups = (
        groups.sort_values(["ComponentID", "SubclusterID", "StockCode"], na_position="first")
        .reset_index(drop=True)[GROUP_COLUMNS]
    )

    log.info(f"  Components  : {len(components):,}")
    log.info(f"  Groups      : {groups['GroupLabel'].nunique():,} over {len(groups):,} items")
    return groups


def compare_community_algorithms(graph: nx.Graph, seed: int = 42,
                                 algorithms: Iterable[str] = None) -> pd.DataFrame:
    """
    Run every strategy on the largest component and tabulate the outcome.

    One row per algorithm: number of communities with items, modularity
    of the full partition, and the largest / smallest item counts.
    """
    algorithms = list(algorithms or COMMUNITY_ALGORITHMS)
    columns = ["Algorithm", "Communities", "Modularity", "LargestGroup", "SmallestGroup"]
    components = connected_components(graph)
    if not components:
        return pd.DataFrame(columns=columns)

    largest = canonical_graph(graph, components[0])
    rows = []
    for name in algorithms:
        if (name == "edge_betweenness"
                and largest.number_of_nodes() > EDGE_BETWEENNESS_MAX_COMPARE_NODES):
            log.info(f"  {name:<18} : skipped ({largest.number_of_nodes():,} nodes)")
            continue
        communities = partition_communities(largest, name, seed)
        sizes = [len(item_nodes(largest, c)) for c in communities]
        sizes = [s for s in sizes if s > 0]
        q = nx_community.modularity(largest, communities) if largest.number_of_edges() else 0.0
        rows.append((name, len(sizes), round(q, 6), max(sizes), min(sizes)))
        log.info(f"  {name:<18} : {len(sizes):>3} groups | modularity {q:.3f}")
    return pd.DataFrame(rows, columns=columns)


def group_label_key(label: str) -> tuple:
    """Sort key ordering C1.S1, C1.S2, ..., C1.S10, C2, C3 numerically."""
    head, _, sub = str(label).partition(".S")
    try:
        return (int(head.lstrip("C")), int(sub) if sub else 0, "")
    except ValueError:
        return (float("inf"), 0, str(label))
