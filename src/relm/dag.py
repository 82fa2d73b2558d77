# dag.py
from __future__ import annotations

import heapq
from typing import Dict, List, Sequence, Set, Tuple

from .errors import DependencyCycleError, UnresolvedReferenceError
from .model import RenderedResource


def build_dag(resources: Sequence[RenderedResource]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from rendered resources.

    Requires:
      - resource.key: str (unique within the pass)
      - resource.references: keys that must be applied BEFORE this resource
    """
    keys = [r.key for r in resources]
    if len(set(keys)) != len(keys):
        dupes = sorted({k for k in keys if keys.count(k) > 1})
        raise ValueError(f"Duplicate resources found: {dupes}")

    key_set = set(keys)
    adj: Dict[str, Set[str]] = {k: set() for k in key_set}
    indeg: Dict[str, int] = {k: 0 for k in key_set}

    for res in resources:
        for ref in res.references:
            if ref not in key_set:
                raise UnresolvedReferenceError(reference=ref, source=res.source, resource=res.key)
            # Edge ref -> res.key (ref must be applied before res)
            if res.key not in adj[ref]:
                adj[ref].add(res.key)
                indeg[res.key] += 1

    return adj, indeg


def _find_cycle(stuck: Set[str], by_key: Dict[str, RenderedResource]) -> List[str]:
    """
    Every stuck node still has a stuck predecessor, so walking predecessors
    from any stuck node must eventually revisit one. That loop is a cycle.
    """
    start = min(stuck, key=lambda k: by_key[k].index)
    path: List[str] = []
    seen: Dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        preds = [p for p in by_key[node].references if p in stuck]
        node = min(preds, key=lambda k: by_key[k].index)
    loop = path[seen[node]:]
    # walked backwards along "applied before" edges; report in apply direction
    loop.reverse()
    return loop + [loop[0]]


def order(resources: Sequence[RenderedResource]) -> List[RenderedResource]:
    """
    Topologically order resources so every referenced resource comes before
    its referrers. Ties go to declaration order, so output is stable run to run.

    Raises:
        DependencyCycleError: naming the resources on the cycle
    """
    resources = list(resources)
    by_key = {r.key: r for r in resources}
    adj, indeg = build_dag(resources)
    indeg = dict(indeg)  # copy (we mutate it)

    ready = [(by_key[k].index, k) for k, d in indeg.items() if d == 0]
    heapq.heapify(ready)

    out: List[RenderedResource] = []
    while ready:
        _idx, key = heapq.heappop(ready)
        out.append(by_key[key])
        for child in adj[key]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(ready, (by_key[child].index, child))

    if len(out) != len(resources):
        stuck = {k for k, d in indeg.items() if d > 0}
        raise DependencyCycleError(
            cycle=_find_cycle(stuck, by_key),
            stuck=sorted(stuck, key=lambda k: by_key[k].index),
        )

    return out



def teardown_order(resources: Sequence[RenderedResource]) -> List[RenderedResource]:
    """Referrers before the resources they reference: `order` reversed."""
    return list(reversed(order(resources)))
