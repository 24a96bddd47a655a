"""
Core data models for the long-term memory system.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# Fixed namespace so that entity and relation ids are stable across processes
GRAPHMEM_NAMESPACE = uuid.UUID('6f1c1a8e-3d2b-5b8e-9a57-2f0b5d1c4e11')

SCOPE_FIELDS = ('user_id', 'agent_id', 'run_id', 'actor_id', 'role')


class ScopeError(ValueError):
    """Raised when a request lacks the scope identifiers it needs."""
    pass


@dataclass
class Scope:
    """Owner scope that partitions every memory record into isolated tenants."""
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    run_id: Optional[str] = None
    actor_id: Optional[str] = None
    role: Optional[str] = None

    def require_owner(self) -> str:
        """Return the owner identifier or raise ScopeError if it is missing."""
        if not self.user_id or not str(self.user_id).strip():
            raise ScopeError('user_id is required for graph memory operations')
        return self.user_id

    def require_any(self) -> None:
        """Raise ScopeError unless at least one of user_id, agent_id or run_id is set."""
        if not any([self.user_id, self.agent_id, self.run_id]):
            raise ScopeError('One of user_id, agent_id or run_id is required')

    def as_filters(self) -> Dict[str, str]:
        """Equality filters for every scope field that is set."""
        return {name: getattr(self, name) for name in SCOPE_FIELDS if getattr(self, name)}


def entity_id_for(user_id: str, name: str) -> str:
    """Deterministic entity id, unique per (name, owner)."""
    return str(uuid.uuid5(GRAPHMEM_NAMESPACE, f'entity:{user_id}:{name}'))


def relation_id_for(source_id: str, relationship: str, destination_id: str) -> str:
    """Deterministic relation id, unique per (source, target, relationship_type)."""
    return str(uuid.uuid5(GRAPHMEM_NAMESPACE, f'relation:{source_id}:{relationship}:{destination_id}'))


def content_hash(content: str) -> str:
    """MD5 hex digest used for cheap equality checks between memory texts."""
    return hashlib.md5(content.encode('utf-8')).hexdigest()


@dataclass
class Entity:
    """Represents an entity node within a user's graph."""
    id: str
    user_id: str  # Each entity belongs to a specific user's graph
    name: str  # Normalized: lowercase, spaces replaced with underscores
    entity_type: str
    embedding: List[float]  # Overwritten in place on re-mention
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def for_owner(cls, user_id: str, name: str, entity_type: str, embedding: List[float]) -> 'Entity':
        return cls(id=entity_id_for(user_id, name), user_id=user_id, name=name, entity_type=entity_type, embedding=embedding)

    def index_payload(self) -> Dict[str, Any]:
        """Fields written to the entity index on first insert; the vector is stored separately."""
        return {'name': self.name, 'entity_type': self.entity_type, 'user_id': self.user_id}


@dataclass
class Relation:
    """Represents a source-relationship-destination edge within a user's graph.

    A relation carries no embedding of its own; it is found through the
    embeddings of its endpoint entities.
    """
    id: str
    source: str
    source_id: str
    relationship: str
    destination: str
    destination_id: str
    user_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    similarity: Optional[float] = None  # Set when retrieved as a neighbor

    @property
    def is_private(self) -> bool:
        return bool(self.metadata.get('isPrivate', False))

    def as_line(self) -> str:
        return f'{self.source} -- {self.relationship} -- {self.destination}'


@dataclass
class MemoryRecord:
    """Represents a flat (non-graph) memory."""
    id: str
    content: str
    hash: str
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    run_id: Optional[str] = None
    actor_id: Optional[str] = None
    role: Optional[str] = None
    memory_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    score: Optional[float] = None

    @classmethod
    def from_document(cls, doc_id: str, document: Dict[str, Any], score: Optional[float] = None) -> 'MemoryRecord':
        return cls(id=doc_id,
                   content=document.get('content', ''),
                   hash=document.get('hash', ''),
                   user_id=document.get('user_id'),
                   agent_id=document.get('agent_id'),
                   run_id=document.get('run_id'),
                   actor_id=document.get('actor_id'),
                   role=document.get('role'),
                   memory_type=document.get('memory_type'),
                   metadata=document.get('metadata') or {},
                   created_at=document.get('created_at'),
                   updated_at=document.get('updated_at'),
                   score=score)

    @property
    def is_private(self) -> bool:
        return bool(self.metadata.get('isPrivate', False))

    def to_item(self) -> Dict[str, Any]:
        """Public representation returned by the flat memory engine."""
        item = {
            'id': self.id,
            'memory': self.content,
            'hash': self.hash,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'metadata': dict(self.metadata),
        }
        if self.score is not None:
            item['score'] = self.score
        for name in SCOPE_FIELDS:
            if getattr(self, name):
                item[name] = getattr(self, name)
        return item


@dataclass
class CandidateSet:
    """Transient per-request bundle; never persisted and discarded after the call."""
    entity_type_map: Dict[str, str] = field(default_factory=dict)
    proposed_relations: List[Dict[str, Any]] = field(default_factory=list)
    neighbors: List[Relation] = field(default_factory=list)


class AddStage(Enum):
    """Stages of a graph add call, in execution order."""
    EXTRACT = 'extract'
    NORMALIZE = 'normalize'
    DERIVE_RELATIONS = 'derive_relations'
    CLASSIFY_PRIVACY = 'classify_privacy'
    FETCH_NEIGHBORS = 'fetch_neighbors'
    RESOLVE_CONFLICTS = 'resolve_conflicts'
    DELETE = 'delete'
    INSERT = 'insert'
    DONE = 'done'


class MemoryEvent(Enum):
    """Decision taken for a flat memory candidate."""
    ADD = 'ADD'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'
    NOOP = 'NOOP'
