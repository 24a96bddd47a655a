"""
Graph Memory Service: consolidates new text into a per-user entity/relation graph.

An add call runs EXTRACT -> NORMALIZE -> DERIVE_RELATIONS -> CLASSIFY_PRIVACY ->
FETCH_NEIGHBORS -> RESOLVE_CONFLICTS -> DELETE -> INSERT -> DONE. Model output is
best effort and degrades to empty results; store failures abort the call.
"""

import concurrent.futures
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import AddStage, CandidateSet, Entity, Relation, Scope, entity_id_for, relation_id_for
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.bm25_rerank import BM25Rerank
from ..utils.config import AppConfig
from ..utils.llm_base import LLMBase
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, NeptuneError
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from .entity_extraction import EntityExtractionService, normalize_token
from .privacy import PrivacyClassifier
from .tools import DELETE_MEMORY_TOOL_GRAPH

logger = get_logger(__name__)

DELETE_RELATIONS_SYSTEM_PROMPT = """
You are a graph memory manager specializing in identifying, managing, and optimizing relationships within graph-based memories.
Your task is to decide which existing relationships must be deleted in light of new information.

Input:
1. Existing graph memories, one per line, formatted as "source -- relationship -- destination".
2. New information to be merged into the graph.

Guidelines:
1. Delete a relationship only when it is outdated or contradicted by the new information.
2. Never delete a relationship just because the new information uses the same relationship type with a different
   destination. Two facts that can both be true must coexist.
   Example: "alice -- loves_to_eat -- pizza" stays when the new information is "Alice also loves to eat burger".
3. When in doubt, keep the relationship.
4. For any self reference ('I', 'me', 'my' ...) use "USER_ID" as the node.

Call the delete_graph_memory tool once for every relationship that must be deleted. Call nothing when no deletion
is needed."""

DELETE_USER_PROMPT = 'Here are the existing memories: {existing} \n\n New Information: {data}'

SOURCE_TYPE_DEFAULT = 'known'
DESTINATION_TYPE_DEFAULT = 'unknown'


class GraphMemoryError(Exception):
    """Custom exception for graph memory errors."""
    pass


class GraphMemoryService:
    """Entity/relation memory with model-mediated conflict resolution."""

    def __init__(self,
                 config: AppConfig,
                 llm: Optional[LLMBase] = None,
                 embedder: Optional[BedrockEmbed] = None,
                 graph: Optional[NeptuneClient] = None,
                 entity_index: Optional[OpenSearchClient] = None):
        """
        Initialize the graph memory service. Call initialize() before any other operation.

        Args:
            config: AppConfig; the graph section holds the engine tunables
            llm: Reasoning model adapter (defaults to BedrockLLM)
            embedder: Embedding adapter exposing embed(text) (defaults to BedrockEmbed)
            graph: Graph store (defaults to NeptuneClient)
            entity_index: Entity vector index (defaults to OpenSearchClient of kind 'entity')
        """
        self.config = config.graph
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.embedder = embedder or BedrockEmbed(config.bedrock_embed)
        self.graph = graph or NeptuneClient(config.neptune)
        self.entity_index = entity_index or OpenSearchClient(config.opensearch, kind='entity')

        self.extraction = EntityExtractionService(self.llm)
        self.privacy = PrivacyClassifier(self.llm)
        self.reranker = BM25Rerank()
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.config.max_workers,
                                                              thread_name_prefix='graphmem-embed')
        self._initialized = False

        logger.info('Initialized GraphMemoryService')

    def initialize(self) -> None:
        """
        Validate both backing stores.

        Raises:
            SchemaError: If the entity index does not have the expected shape
            OpenSearchError, NeptuneError: If a store cannot be reached
        """
        self.entity_index.initialize()
        self.graph.initialize()
        self._initialized = True
        logger.info('GraphMemoryService ready')

    def close(self) -> None:
        self.executor.shutdown(wait=False)
        self.graph.close()

    def _require_ready(self, scope: Scope) -> str:
        if not self._initialized:
            raise GraphMemoryError('GraphMemoryService is not initialized; call initialize() first')
        return scope.require_owner()

    @staticmethod
    def _stage(stage: AddStage, user_id: str, detail: str = '') -> None:
        logger.debug(f'[{user_id}] add stage {stage.name} {detail}'.rstrip())

    def _embed_many(self, texts: Sequence[str]) -> Dict[str, List[float]]:
        """Embed texts concurrently within the embedding budget, leaving out failures and timeouts."""
        futures = {self.executor.submit(self.embedder.embed, text): text for text in dict.fromkeys(texts)}
        done, not_done = concurrent.futures.wait(futures, timeout=self.config.embedding_timeout)

        vectors = {}
        for future in done:
            text = futures[future]
            try:
                vectors[text] = future.result()
            except Exception as e:
                logger.warning(f'Embedding failed for "{text}", skipping it: {e}')
        for future in not_done:
            future.cancel()
            logger.warning(f'Embedding timed out after {self.config.embedding_timeout}s for "{futures[future]}", skipping it')
        return vectors

    def _fetch_neighbors(self, names: Sequence[str], user_id: str, limit: int) -> List[Relation]:
        """
        Relations touching entities semantically close to the given names.

        Args:
            names: Normalized entity names
            user_id: Owner
            limit: Maximum number of similar entities per name

        Returns:
            Relations ordered by descending similarity, each relation once with its best similarity
        """
        if not names:
            return []

        vectors = self._embed_many(names)
        by_id: Dict[str, Relation] = {}
        try:
            for name in names:
                if name not in vectors:
                    continue
                hits = self.entity_index.search(vectors[name],
                                                limit=limit,
                                                filters={'user_id': user_id},
                                                min_similarity=self.config.similarity_threshold)
                for hit in hits:
                    for relation in self.graph.get_entity_relations(hit['id'], user_id):
                        relation.similarity = hit['similarity']
                        known = by_id.get(relation.id)
                        if known is None or known.similarity < relation.similarity:
                            by_id[relation.id] = relation
        except (OpenSearchError, NeptuneError) as e:
            logger.error(f'Neighbor lookup failed for user {user_id}: {e}')
            raise GraphMemoryError(f'Neighbor lookup failed: {e}') from e

        return sorted(by_id.values(), key=lambda r: r.similarity, reverse=True)

    def _resolve_conflicts(self, neighbors: List[Relation], text: str, user_id: str) -> List[Dict[str, str]]:
        """Ask the model which existing relations the new text makes obsolete."""
        if not neighbors:
            return []

        existing = '\n'.join(relation.as_line() for relation in neighbors)
        prompt = self.config.custom_delete_prompt or DELETE_RELATIONS_SYSTEM_PROMPT
        messages = [
            {'role': 'system', 'content': prompt.replace('USER_ID', user_id)},
            {'role': 'user', 'content': DELETE_USER_PROMPT.format(existing=existing, data=text)},
        ]

        to_delete = []
        try:
            response = self.llm.generate_response(messages=messages, tools=[DELETE_MEMORY_TOOL_GRAPH])
            for call in response.calls_named(DELETE_MEMORY_TOOL_GRAPH['name']):
                args = call.parsed_arguments()
                if not all(args.get(key) for key in ('source', 'relationship', 'destination')):
                    logger.warning(f'Ignoring incomplete deletion decision: {args}')
                    continue
                to_delete.append({
                    'source': normalize_token(args['source']),
                    'relationship': normalize_token(args['relationship']),
                    'destination': normalize_token(args['destination']),
                })
        except (BedrockLLMError, ValueError, TypeError) as e:
            logger.warning(f'Conflict resolution degraded to no deletions: {e}')
            return []

        return to_delete

    def _apply_deletions(self, to_delete: List[Dict[str, str]], user_id: str) -> List[Dict[str, Any]]:
        results = []
        for item in to_delete:
            relation_id = relation_id_for(entity_id_for(user_id, item['source']), item['relationship'],
                                          entity_id_for(user_id, item['destination']))
            try:
                count = self.graph.delete_relation(relation_id, user_id)
            except NeptuneError as e:
                logger.error(f'Failed to delete relation {item}: {e}')
                raise GraphMemoryError(f'Relation deletion failed: {e}') from e
            results.append({**item, 'deleted': count})
        return results

    def _upsert_entity(self, name: str, entity_type: str, vector: List[float], user_id: str) -> str:
        entity = Entity.for_owner(user_id, name, entity_type, vector)
        self.entity_index.upsert(entity.id, entity.embedding, insert_payload=entity.index_payload())
        self.graph.upsert_entity(entity.id, entity.user_id, entity.name, entity.entity_type)
        return entity.id

    def _apply_insertions(self, relations: List[Dict[str, Any]], entity_type_map: Dict[str, str],
                          user_id: str) -> List[Dict[str, Any]]:
        results = []
        for item in relations:
            source, relationship, destination = item['source'], item['relationship'], item['destination']
            source_type = entity_type_map.get(source) or SOURCE_TYPE_DEFAULT
            destination_type = entity_type_map.get(destination) or DESTINATION_TYPE_DEFAULT

            vectors = self._embed_many([source, destination])
            if source not in vectors or destination not in vectors:
                logger.warning(f'Skipping relation {source} -- {relationship} -- {destination}: endpoint embedding unavailable')
                continue

            try:
                source_id = self._upsert_entity(source, source_type, vectors[source], user_id)
                destination_id = self._upsert_entity(destination, destination_type, vectors[destination], user_id)
                relation_id = relation_id_for(source_id, relationship, destination_id)
                created = self.graph.upsert_relation(relation_id, user_id, source_id, source, relationship, destination_id,
                                                     destination, item.get('metadata') or {})
            except (OpenSearchError, NeptuneError) as e:
                logger.error(f'Failed to write relation {source} -- {relationship} -- {destination}: {e}')
                raise GraphMemoryError(f'Relation insertion failed: {e}') from e

            results.append({
                'source': source,
                'relationship': relationship,
                'destination': destination,
                'relation_id': relation_id,
                'created': created,
            })
        return results

    def add(self, text: str, scope: Scope) -> Dict[str, List[Dict[str, Any]]]:
        """Consolidate a text into the owner's graph.

        Args:
            text: New information
            scope: Owner scope, user_id is required

        Returns:
            {'added': [...], 'deleted': [...], 'relations': [...]}

        Raises:
            ScopeError: If scope has no user_id
            GraphMemoryError: If the service is not initialized or a store write fails
        """
        user_id = self._require_ready(scope)
        candidates = CandidateSet()

        self._stage(AddStage.EXTRACT, user_id)
        # Extraction already returns normalized names and types
        candidates.entity_type_map = self.extraction.extract_entities(text, scope)
        self._stage(AddStage.NORMALIZE, user_id, f'{len(candidates.entity_type_map)} entities')

        self._stage(AddStage.DERIVE_RELATIONS, user_id)
        relations = self.extraction.extract_relations(text, scope, candidates.entity_type_map, self.config.custom_prompt)

        self._stage(AddStage.CLASSIFY_PRIVACY, user_id, f'{len(relations)} relations')
        candidates.proposed_relations = self.privacy.classify_relations(relations)

        self._stage(AddStage.FETCH_NEIGHBORS, user_id)
        candidates.neighbors = self._fetch_neighbors(list(candidates.entity_type_map), user_id, self.config.neighbor_limit)

        self._stage(AddStage.RESOLVE_CONFLICTS, user_id, f'{len(candidates.neighbors)} neighbors')
        to_delete = self._resolve_conflicts(candidates.neighbors, text, user_id)

        self._stage(AddStage.DELETE, user_id, f'{len(to_delete)} relations')
        deleted = self._apply_deletions(to_delete, user_id)

        self._stage(AddStage.INSERT, user_id, f'{len(candidates.proposed_relations)} relations')
        added = self._apply_insertions(candidates.proposed_relations, candidates.entity_type_map, user_id)

        self._stage(AddStage.DONE, user_id)
        logger.info(f'Graph add for user {user_id}: {len(added)} relations written, {len(deleted)} deletions')
        return {'added': added, 'deleted': deleted, 'relations': candidates.proposed_relations}

    def search(self, query: str, scope: Scope, limit: int = 100, filter_private: bool = False) -> List[Dict[str, str]]:
        """Find relations relevant to a query.

        Args:
            query: Query text
            scope: Owner scope, user_id is required
            limit: Bound on the candidate pool before reranking
            filter_private: Drop relations flagged as private

        Returns:
            At most search_top_k {'source', 'relationship', 'destination'} dicts, most relevant first
        """
        user_id = self._require_ready(scope)

        entity_type_map = self.extraction.extract_entities(query, scope)
        neighbors = self._fetch_neighbors(list(entity_type_map), user_id, limit)
        if filter_private:
            neighbors = [relation for relation in neighbors if not relation.is_private]
        if not neighbors:
            return []

        documents = [[relation.source, relation.relationship, relation.destination] for relation in neighbors]
        ranked = self.reranker.rerank(query.lower().split(), documents, top_k=self.config.search_top_k)

        results = [{'source': r['document'][0], 'relationship': r['document'][1], 'destination': r['document'][2]} for r in ranked]
        logger.info(f'Returned {len(results)} graph search results for user {user_id}')
        return results

    def get_all(self, scope: Scope, limit: int = 100, filter_private: bool = False) -> List[Dict[str, str]]:
        """Every outgoing relation of the owner's entities, without reranking."""
        user_id = self._require_ready(scope)

        try:
            relations = self.graph.get_all_relations(user_id, limit)
        except NeptuneError as e:
            logger.error(f'Failed to list relations for user {user_id}: {e}')
            raise GraphMemoryError(f'Listing relations failed: {e}') from e

        results = []
        for relation in relations:
            if filter_private and relation.is_private:
                continue
            results.append({'source': relation.source, 'relationship': relation.relationship, 'target': relation.destination})

        logger.info(f'Retrieved {len(results)} relationships for user {user_id}')
        return results

    def delete_all(self, scope: Scope) -> Dict[str, int]:
        """Remove the owner's relations, then its entities, from both stores."""
        user_id = self._require_ready(scope)

        try:
            relation_count, entity_count = self.graph.delete_all(user_id)
            self.entity_index.delete_all({'user_id': user_id})
        except (OpenSearchError, NeptuneError) as e:
            logger.error(f'Failed to delete graph memories for user {user_id}: {e}')
            raise GraphMemoryError(f'Graph deletion failed: {e}') from e

        return {'deleted_relations': relation_count, 'deleted_entities': entity_count}
