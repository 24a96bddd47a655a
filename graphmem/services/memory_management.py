"""
Memory Management Service for flat (non-graph) fact memories.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Union

from ..models.core import MemoryEvent, MemoryRecord, Scope, content_hash
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import AppConfig
from ..utils.json_utils import load_json_object
from ..utils.llm_base import LLMBase
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from .graph_memory import GraphMemoryError, GraphMemoryService
from .privacy import PrivacyClassifier

logger = get_logger(__name__)

FACT_EXTRACTION_PROMPT = """
You are a personal information organizer. You read a conversation and write down the facts worth remembering about
the user: preferences, personal details, plans, relationships, professional details, health and wellness, and
anything else that will help personalize future conversations.

Rules:
- Today's date is {today}.
- Keep each fact short and self-contained, written in the language the user used.
- Only record facts that are stated in the conversation, never assumptions.
- Ignore small talk, greetings and the assistant's own opinions.
- If nothing is worth remembering, return an empty list.

Return a JSON object of the form {{"facts": ["fact 1", "fact 2"]}}."""

UPDATE_MEMORY_PROMPT = """
You are a smart memory manager. You compare a newly learned fact with the existing memories most similar to it and
decide what to do with each memory:

- ADD: the fact is new information; add it as a new memory.
- UPDATE: the fact refines or corrects an existing memory; replace that memory's text. Keep the memory's id.
- DELETE: the fact contradicts an existing memory; delete that memory.
- NOOP: the memory already says the same thing, or is unrelated; leave it unchanged.

Only use the ids listed among the existing memories. Never invent ids; ADD entries need no id.

Return a JSON object of the form
{"memory": [{"id": "<id or empty for ADD>", "text": "<memory text>", "event": "ADD|UPDATE|DELETE|NOOP", "old_memory": "<previous text, for UPDATE>"}]}"""

NEIGHBOR_FILTER_FIELDS = ('user_id', 'agent_id', 'run_id')


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


class MemoryManagementService:
    """Flat memory store: extracted facts, deduplicated against their nearest neighbors."""

    def __init__(self,
                 config: AppConfig,
                 llm: Optional[LLMBase] = None,
                 embedder: Optional[BedrockEmbed] = None,
                 memory_index: Optional[OpenSearchClient] = None,
                 graph: Optional[GraphMemoryService] = None):
        """
        Initialize the memory management service. Call initialize() before any other operation.

        Args:
            config: AppConfig; the memory section holds the engine tunables
            llm: Reasoning model adapter (defaults to BedrockLLM)
            embedder: Embedding adapter exposing embed(text) and embed_query(text) (defaults to BedrockEmbed)
            memory_index: Flat memory vector index (defaults to OpenSearchClient of kind 'memory')
            graph: Graph memory service, only used when enable_graph is set
        """
        self.config = config.memory
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.embedder = embedder or BedrockEmbed(config.bedrock_embed)
        self.index = memory_index or OpenSearchClient(config.opensearch, kind='memory')
        self.privacy = PrivacyClassifier(self.llm)

        self.graph = None
        if self.config.enable_graph:
            self.graph = graph or GraphMemoryService(config, llm=self.llm, embedder=self.embedder)

        self.telemetry_id = None
        self._initialized = False

        logger.info(f'Initialized MemoryManagementService (graph {"enabled" if self.graph else "disabled"})')

    def initialize(self) -> None:
        """Validate the memory index, read the telemetry id and initialize the graph service when enabled."""
        self.index.initialize()
        self.telemetry_id = self.index.get_owner_id()
        if self.graph is not None:
            self.graph.initialize()
        self._initialized = True
        logger.info('MemoryManagementService ready')

    def close(self) -> None:
        """Release the graph service's worker threads and connection when the graph is enabled."""
        if self.graph is not None:
            self.graph.close()

    def _require_ready(self) -> None:
        if not self._initialized:
            raise MemoryManagementError('MemoryManagementService is not initialized; call initialize() first')

    @staticmethod
    def _normalize_messages(messages: Union[str, List[Dict[str, str]]]) -> List[Dict[str, str]]:
        if isinstance(messages, str):
            return [{'role': 'user', 'content': messages}]
        return [m for m in messages if isinstance(m, dict) and (m.get('content') or '').strip()]

    @staticmethod
    def _conversation_text(messages: List[Dict[str, str]]) -> str:
        return '\n'.join(f'{m.get("role", "user")}: {m["content"]}' for m in messages if m.get('role') != 'system')

    def _payload(self, content: str, scope: Scope, metadata: Dict[str, Any], role: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            'content': content,
            'hash': content_hash(content),
            'metadata': metadata,
        }
        payload.update(scope.as_filters())
        if role:
            payload['role'] = role
        return payload

    def _embed(self, text: str) -> Optional[List[float]]:
        try:
            return self.embedder.embed(text)
        except Exception as e:
            logger.warning(f'Embedding failed for "{text}", skipping it: {e}')
            return None

    def _insert(self, content: str, vector: List[float], payload: Dict[str, Any]) -> str:
        memory_id = str(uuid.uuid4())
        self.index.insert([vector], [memory_id], [payload])
        return memory_id

    def _extract_facts(self, conversation: str) -> List[str]:
        """Ask the model for the facts in a conversation; any failure yields no facts."""
        system_prompt = self.config.custom_fact_prompt or FACT_EXTRACTION_PROMPT.format(
            today=datetime.now(timezone.utc).date().isoformat())
        messages = [
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': f'Input:\n{conversation}'},
        ]

        try:
            response = self.llm.generate_response(messages=messages, response_format={'type': 'json_object'})
            facts = load_json_object(response.text).get('facts', [])
            if not isinstance(facts, list):
                raise ValueError('"facts" is not a list')
        except (BedrockLLMError, ValueError, TypeError) as e:
            logger.warning(f'Fact extraction degraded to no facts: {e}')
            return []

        return [str(fact).strip() for fact in facts if str(fact).strip()]

    def _decide(self, fact: str, neighbors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Ask the model what to do with each neighbor; any failure yields no decisions."""
        existing = [{'id': str(alias), 'text': hit['document'].get('content', '')} for alias, hit in enumerate(neighbors)]
        messages = [
            {'role': 'system', 'content': UPDATE_MEMORY_PROMPT},
            {'role': 'user', 'content': f'Existing memories:\n{json.dumps(existing)}\n\nNew fact:\n{fact}'},
        ]

        try:
            response = self.llm.generate_response(messages=messages, response_format={'type': 'json_object'})
            decisions = load_json_object(response.text).get('memory', [])
            if not isinstance(decisions, list):
                raise ValueError('"memory" is not a list')
        except (BedrockLLMError, ValueError, TypeError) as e:
            logger.warning(f'Memory decision degraded to no decisions: {e}')
            return []

        return [d for d in decisions if isinstance(d, dict)]

    def _apply_decisions(self, fact: str, vector: List[float], is_private: bool, neighbors: List[Dict[str, Any]],
                         decisions: List[Dict[str, Any]], scope: Scope, metadata: Dict[str, Any],
                         stored_hashes: Set[str]) -> List[Dict[str, Any]]:
        aliases = {str(alias): hit for alias, hit in enumerate(neighbors)}
        handled = set()
        events = []

        for decision in decisions:
            try:
                event = MemoryEvent(str(decision.get('event', '')).upper())
            except ValueError:
                logger.warning(f'Discarding decision with unknown event: {decision}')
                continue
            text = (decision.get('text') or fact).strip()

            if event == MemoryEvent.ADD:
                text_hash = content_hash(text)
                if text_hash in stored_hashes:
                    logger.debug(f'Skipping ADD of already stored memory "{text}"')
                    continue
                item_metadata = {**metadata, 'isPrivate': is_private}
                add_vector = vector if text == fact else self._embed(text)
                if add_vector is None:
                    continue
                memory_id = self._insert(text, add_vector, self._payload(text, scope, item_metadata))
                stored_hashes.add(text_hash)
                events.append({'id': memory_id, 'memory': text, 'event': event.value, 'metadata': item_metadata})
                continue

            alias = str(decision.get('id', ''))
            if alias not in aliases or alias in handled:
                logger.warning(f'Discarding {event.value} decision for unknown memory id "{alias}"')
                continue
            handled.add(alias)
            target = aliases[alias]
            old_memory = target['document'].get('content', '')

            if event == MemoryEvent.UPDATE:
                update_vector = vector if text == fact else self._embed(text)
                if update_vector is None:
                    continue
                item_metadata = {**(target['document'].get('metadata') or {}), **metadata, 'isPrivate': is_private}
                self.index.update(target['id'], update_vector, {
                    'content': text,
                    'hash': content_hash(text),
                    'metadata': item_metadata
                })
                stored_hashes.discard(target['document'].get('hash'))
                stored_hashes.add(content_hash(text))
                events.append({'id': target['id'], 'memory': text, 'event': event.value, 'previous_memory': old_memory})
            elif event == MemoryEvent.DELETE:
                self.index.delete(target['id'])
                stored_hashes.discard(target['document'].get('hash'))
                events.append({'id': target['id'], 'memory': old_memory, 'event': event.value})
            else:
                events.append({'id': target['id'], 'memory': old_memory, 'event': event.value})

        return events

    def _add_inferred(self, messages: List[Dict[str, str]], scope: Scope, metadata: Dict[str, Any]) -> List[Dict[str, Any]]:
        facts = self._extract_facts(self._conversation_text(messages))
        if not facts:
            logger.debug('No facts extracted')
            return []
        flags = self.privacy.classify_facts(facts)

        neighbor_filters = {k: v for k, v in scope.as_filters().items() if k in NEIGHBOR_FILTER_FIELDS}
        # Hashes known to be stored for this scope, including the ones written during this call
        stored_hashes: Set[str] = set()
        events = []
        for fact, is_private in zip(facts, flags):
            vector = self._embed(fact)
            if vector is None:
                continue

            neighbors = self.index.search(vector, limit=self.config.search_limit, filters=neighbor_filters)
            stored_hashes.update(hit['document'].get('hash') for hit in neighbors if hit['document'].get('hash'))
            fact_hash = content_hash(fact)
            duplicate = next((hit for hit in neighbors if hit['document'].get('hash') == fact_hash), None)
            if duplicate is not None:
                logger.debug(f'Fact already stored as {duplicate["id"]}')
                events.append({'id': duplicate['id'], 'memory': fact, 'event': MemoryEvent.NOOP.value})
                continue

            if not neighbors:
                decisions = [{'event': MemoryEvent.ADD.value, 'text': fact}]
            else:
                decisions = self._decide(fact, neighbors)
            events.extend(self._apply_decisions(fact, vector, is_private, neighbors, decisions, scope, metadata, stored_hashes))

        return events

    def _add_verbatim(self, messages: List[Dict[str, str]], scope: Scope, metadata: Dict[str, Any]) -> List[Dict[str, Any]]:
        events = []
        for message in messages:
            if message.get('role') == 'system':
                continue
            content = message['content'].strip()
            vector = self._embed(content)
            if vector is None:
                continue
            memory_id = self._insert(content, vector, self._payload(content, scope, dict(metadata), role=message.get('role')))
            events.append({'id': memory_id, 'memory': content, 'event': MemoryEvent.ADD.value, 'role': message.get('role')})
        return events

    def add(self,
            messages: Union[str, List[Dict[str, str]]],
            scope: Scope,
            metadata: Optional[Dict[str, Any]] = None,
            infer: bool = True) -> Dict[str, Any]:
        """Store new memories from a text or a conversation.

        Args:
            messages: A string or a list of {'role', 'content'} dicts
            scope: At least one of user_id, agent_id or run_id is required
            metadata: Extra fields stored with every new memory (optional)
            infer: Extract facts and deduplicate them; when False, messages are stored verbatim

        Returns:
            {'results': [events], 'relations': graph result (only when the graph is enabled)}

        Raises:
            ScopeError: If the scope has no identifier
            MemoryManagementError: If the service is not initialized or a store operation fails
        """
        self._require_ready()
        scope.require_any()
        messages = self._normalize_messages(messages)
        metadata = dict(metadata or {})

        try:
            if infer:
                events = self._add_inferred(messages, scope, metadata)
            else:
                events = self._add_verbatim(messages, scope, metadata)

            result = {'results': events}
            if self.graph is not None and scope.user_id:
                result['relations'] = self.graph.add(self._conversation_text(messages), scope)
        except (OpenSearchError, GraphMemoryError) as e:
            logger.error(f'Memory add failed: {e}')
            raise MemoryManagementError(f'Memory add failed: {e}') from e

        logger.info(f'Memory add produced {len(events)} events')
        return result

    def search(self, query: str, scope: Scope, limit: int = 100, filter_private: bool = False) -> Dict[str, Any]:
        """Semantic search over the scope's memories.

        Returns:
            {'results': [items with score], 'relations': [...] (only when the graph is enabled)}
        """
        self._require_ready()
        scope.require_any()

        try:
            vector = self.embedder.embed_query(query)
        except Exception as e:
            logger.error(f'Query embedding failed: {e}')
            raise MemoryManagementError(f'Memory search failed: {e}') from e

        try:
            hits = self.index.search(vector, limit=limit, filters=scope.as_filters())
            records = [MemoryRecord.from_document(hit['id'], hit['document'], hit['similarity']) for hit in hits]
            if filter_private:
                records = [record for record in records if not record.is_private]

            result = {'results': [record.to_item() for record in records]}
            if self.graph is not None and scope.user_id:
                result['relations'] = self.graph.search(query, scope, limit=limit, filter_private=filter_private)
        except (OpenSearchError, GraphMemoryError) as e:
            logger.error(f'Memory search failed: {e}')
            raise MemoryManagementError(f'Memory search failed: {e}') from e

        return result

    def get(self, memory_id: str) -> Optional[Dict[str, Any]]:
        """Return one memory item, or None if it does not exist."""
        self._require_ready()
        try:
            hit = self.index.get(memory_id)
        except OpenSearchError as e:
            raise MemoryManagementError(f'Memory get failed: {e}') from e
        return MemoryRecord.from_document(hit['id'], hit['document']).to_item() if hit else None

    def get_all(self, scope: Scope, limit: int = 100, filter_private: bool = False) -> Dict[str, Any]:
        """List the scope's memories, newest first."""
        self._require_ready()
        scope.require_any()

        try:
            hits, _ = self.index.list(filters=scope.as_filters(), limit=limit)
            records = [MemoryRecord.from_document(hit['id'], hit['document']) for hit in hits]
            if filter_private:
                records = [record for record in records if not record.is_private]

            result = {'results': [record.to_item() for record in records]}
            if self.graph is not None and scope.user_id:
                result['relations'] = self.graph.get_all(scope, limit=limit, filter_private=filter_private)
        except (OpenSearchError, GraphMemoryError) as e:
            logger.error(f'Memory listing failed: {e}')
            raise MemoryManagementError(f'Memory listing failed: {e}') from e

        return result

    def update(self, memory_id: str, data: str) -> Dict[str, str]:
        """Replace a memory's content, hash and embedding.

        Raises:
            MemoryManagementError: If the memory does not exist or the write fails
        """
        self._require_ready()

        try:
            if self.index.get(memory_id) is None:
                raise MemoryManagementError(f'Memory {memory_id} not found')
            vector = self.embedder.embed(data)
            self.index.update(memory_id, vector, {'content': data, 'hash': content_hash(data)})
        except MemoryManagementError:
            raise
        except Exception as e:
            logger.error(f'Memory update failed for {memory_id}: {e}')
            raise MemoryManagementError(f'Memory update failed: {e}') from e

        return {'message': 'Memory updated successfully!'}

    def delete(self, memory_id: str) -> Dict[str, str]:
        """Delete one memory; deleting an unknown id is not an error."""
        self._require_ready()
        try:
            deleted = self.index.delete(memory_id)
        except OpenSearchError as e:
            logger.error(f'Memory deletion failed for {memory_id}: {e}')
            raise MemoryManagementError(f'Memory deletion failed: {e}') from e

        return {'message': 'Memory deleted successfully!' if deleted else 'Memory not found'}

    def delete_all(self, scope: Scope) -> Dict[str, str]:
        """Delete every memory of the scope, and its graph when the graph is enabled."""
        self._require_ready()
        scope.require_any()

        try:
            deleted = self.index.delete_all(scope.as_filters())
            if self.graph is not None and scope.user_id:
                self.graph.delete_all(scope)
        except (OpenSearchError, GraphMemoryError) as e:
            logger.error(f'Memory deletion failed: {e}')
            raise MemoryManagementError(f'Memory deletion failed: {e}') from e

        logger.info(f'Deleted {deleted} memories')
        return {'message': 'Memories deleted successfully!'}

    def reset(self) -> None:
        """Drop and recreate the memory index."""
        self._require_ready()
        try:
            self.index.reset()
        except OpenSearchError as e:
            raise MemoryManagementError(f'Memory reset failed: {e}') from e
        logger.warning('Memory index reset')
