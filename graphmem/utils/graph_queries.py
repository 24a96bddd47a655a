"""
Parameterized Gremlin traversals for the entity/relation graph.

Every traversal that reads or drops data is restricted to one owner here, so
callers never assemble owner filters themselves. Values travel as bytecode
arguments; no query text is ever concatenated.
"""

import json
from typing import Any, Dict

from gremlin_python.process.graph_traversal import GraphTraversal, GraphTraversalSource, __
from gremlin_python.process.traversal import Cardinality, T

ENTITY_LABEL = 'Entity'
RELATION_LABEL = 'Relation'


class GraphQueries:
    """Builds (but does not run) the traversals used by NeptuneClient."""

    def __init__(self, g: GraphTraversalSource):
        self.g = g

    def probe(self) -> GraphTraversal:
        return self.g.V().limit(1).count()

    def upsert_entity(self, entity_id: str, user_id: str, name: str, entity_type: str, now: str) -> GraphTraversal:
        """Create the vertex if absent, else refresh its updated_at. Yields True when created."""
        return self.g.V(entity_id).fold().coalesce(
            __.unfold().property(Cardinality.single, 'updated_at', now).constant(False),
            __.add_v(ENTITY_LABEL)
              .property(T.id, entity_id)
              .property(Cardinality.single, 'user_id', user_id)
              .property(Cardinality.single, 'name', name)
              .property(Cardinality.single, 'entity_type', entity_type)
              .property(Cardinality.single, 'created_at', now)
              .property(Cardinality.single, 'updated_at', now)
              .constant(True))

    def upsert_relation(self,
                        relation_id: str,
                        user_id: str,
                        source_id: str,
                        source_name: str,
                        relationship: str,
                        destination_id: str,
                        destination_name: str,
                        metadata: Dict[str, Any],
                        now: str) -> GraphTraversal:
        """Create the edge if absent, else refresh its updated_at. Yields True when created."""
        return self.g.E(relation_id).fold().coalesce(
            __.unfold().property('updated_at', now).constant(False),
            __.V(source_id).has('user_id', user_id)
              .add_e(RELATION_LABEL).to(__.V(destination_id).has('user_id', user_id))
              .property(T.id, relation_id)
              .property('user_id', user_id)
              .property('relationship_type', relationship)
              .property('source_id', source_id)
              .property('source_name', source_name)
              .property('destination_id', destination_id)
              .property('destination_name', destination_name)
              .property('metadata', json.dumps(metadata or {}))
              .property('is_private', bool((metadata or {}).get('isPrivate', False)))
              .property('created_at', now)
              .property('updated_at', now)
              .constant(True))

    def count_relation(self, relation_id: str, user_id: str) -> GraphTraversal:
        return self.g.E(relation_id).has('user_id', user_id).count()

    def delete_relation(self, relation_id: str, user_id: str) -> GraphTraversal:
        return self.g.E(relation_id).has('user_id', user_id).drop()

    def entity_relations(self, entity_id: str, user_id: str) -> GraphTraversal:
        """Incoming and outgoing relations of one entity."""
        return self.g.V(entity_id).has('user_id', user_id)\
            .both_e(RELATION_LABEL).has('user_id', user_id)\
            .value_map(True)

    def owner_relations(self, user_id: str, limit: int) -> GraphTraversal:
        """Outgoing relations of every entity the owner holds."""
        return self.g.V().has(ENTITY_LABEL, 'user_id', user_id)\
            .out_e(RELATION_LABEL).has('user_id', user_id)\
            .limit(limit)\
            .value_map(True)

    def owner_relation_edges(self, user_id: str) -> GraphTraversal:
        return self.g.V().has(ENTITY_LABEL, 'user_id', user_id)\
            .both_e(RELATION_LABEL).has('user_id', user_id)\
            .dedup()

    def owner_entities(self, user_id: str) -> GraphTraversal:
        return self.g.V().has(ENTITY_LABEL, 'user_id', user_id)
