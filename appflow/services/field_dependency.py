"""
Field dependency graph: which fields a targeted revision really touches.

When staff ask an applicant to revise field X, every field whose
visibility or requirement depends on X (directly or transitively) may
legitimately change too: answering "yes" to "participated before?"
reveals "which year?", which in turn reveals "details".  The graph has
an edge X → Y whenever Y's showWhen / requireWhen rules reference X.

Nodes live in an arena (a list indexed by int); field ids and answer keys
are aliases resolving to the same node index.  Graphs are immutable once
built and cached per form version.
"""

import logging
import threading
from collections import deque

from appflow.services.form_schema import FieldDefinition, get_field_schema_provider

logger = logging.getLogger(__name__)

_graph_cache: dict[str, "FieldDependencyGraph"] = {}
_cache_lock = threading.Lock()


class FieldDependencyGraph:
    def __init__(self, fields: list[FieldDefinition]):
        self._ids: list[str] = []
        self._keys: list[str] = []
        self._alias: dict[str, int] = {}
        self._edges: list[set[int]] = []

        for field_def in fields:
            index = len(self._ids)
            self._ids.append(field_def.id)
            self._keys.append(field_def.answer_key)
            self._edges.append(set())
            # ids win over keys when a key collides with another field's id
            self._alias.setdefault(field_def.id, index)
        for index, key in enumerate(self._keys):
            self._alias.setdefault(key, index)

        for index, field_def in enumerate(fields):
            for ref in field_def.controlling_keys():
                source = self._alias.get(ref)
                if source is None:
                    logger.debug("Field %s references unknown field %r", field_def.id, ref)
                    continue
                if source != index:
                    self._edges[source].add(index)

    def __len__(self):
        return len(self._ids)

    def __contains__(self, id_or_key):
        return id_or_key in self._alias

    def canonical(self, id_or_key: str) -> str | None:
        """Canonical field id for an id or answer key; None when unknown."""
        index = self._alias.get(id_or_key)
        return self._ids[index] if index is not None else None

    def answer_key(self, id_or_key: str) -> str | None:
        index = self._alias.get(id_or_key)
        return self._keys[index] if index is not None else None

    def dependents(self, id_or_key: str) -> set[str]:
        """Direct dependents of one field."""
        index = self._alias.get(id_or_key)
        if index is None:
            return set()
        return {self._ids[i] for i in self._edges[index]}

    def expand(self, target_field_ids) -> set[str]:
        """Closure of *target_field_ids* under the dependency edges.

        Known seeds are returned as canonical ids; unknown seeds pass through
        unchanged.  Cycles terminate because every node is visited once.
        """
        result: set[str] = set()
        visited: set[int] = set()
        queue: deque[int] = deque()

        for seed in target_field_ids:
            index = self._alias.get(seed)
            if index is None:
                result.add(seed)
                continue
            if index not in visited:
                visited.add(index)
                queue.append(index)

        while queue:
            current = queue.popleft()
            result.add(self._ids[current])
            for nxt in self._edges[current]:
                if nxt not in visited:
                    visited.add(nxt)
                    queue.append(nxt)
        return result


def get_dependency_graph(form_version_id: str) -> FieldDependencyGraph:
    """Graph for a form version, built on first use and cached."""
    with _cache_lock:
        graph = _graph_cache.get(form_version_id)
    if graph is not None:
        return graph

    graph = FieldDependencyGraph(get_field_schema_provider().get_fields(form_version_id))
    with _cache_lock:
        # Another thread may have built it meanwhile; keep the first one
        graph = _graph_cache.setdefault(form_version_id, graph)
    return graph


def invalidate_graph_cache(form_version_id: str | None = None) -> None:
    with _cache_lock:
        if form_version_id is None:
            _graph_cache.clear()
        else:
            _graph_cache.pop(form_version_id, None)
