"""
Entity and relation extraction through the reasoning model, with token normalization.
"""

from typing import Any, Dict, List, Optional

from ..models.core import Scope
from ..utils.bedrock_llm import BedrockLLMError
from ..utils.llm_base import LLMBase
from ..utils.logging_config import get_logger
from .tools import EXTRACT_ENTITIES_TOOL, RELATIONS_TOOL

logger = get_logger(__name__)

ENTITY_SYSTEM_PROMPT = """
You are a smart assistant who understands entities and their types in a given text.
If the user message contains a self reference such as 'I', 'me' or 'my', use {user_id} as the entity instead.
Extract all the entities from the text. ***DO NOT*** answer the question itself if the given text is a question."""

RELATIONS_SYSTEM_PROMPT = """
You are an advanced algorithm that builds knowledge graphs by extracting structured information from text.
Your goal is to capture complete and accurate relationships between entities.

Key principles:
1. Only extract information that is explicitly stated in the text.
2. Relationships connect a source entity to a destination entity with a concise, consistent, timeless
   relationship label such as 'works_at' or 'lives_in', never a tense-specific one like 'worked_at'.
3. For any self reference ('I', 'me', 'my' ...) use "{user_id}" as the entity; never create an entity for the pronoun.
{custom_instruction}
Entity consistency: use the most complete identifier for an entity everywhere it appears so that the graph stays coherent.

Call the establish_relationships tool with every relationship you find."""


def normalize_token(value: Any) -> str:
    """Canonical key form: lowercase with spaces replaced by underscores."""
    return str(value).strip().lower().replace(' ', '_')


def normalize_relations(relations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Normalize source, relationship and destination of each relation, dropping incomplete ones."""
    normalized = []
    for item in relations:
        if not isinstance(item, dict):
            continue
        if not all(item.get(key) for key in ('source', 'relationship', 'destination')):
            logger.warning(f'Dropping incomplete relation: {item}')
            continue
        normalized.append({
            **item,
            'source': normalize_token(item['source']),
            'relationship': normalize_token(item['relationship']),
            'destination': normalize_token(item['destination']),
        })
    return normalized


class EntityExtractionService:
    """Extract entities and relationships from text using tool calls."""

    def __init__(self, llm: LLMBase):
        """
        Initialize the entity extraction service.

        Args:
            llm: Reasoning model adapter
        """
        self.llm = llm

    def extract_entities(self, text: str, scope: Scope) -> Dict[str, str]:
        """Extract the entity -> entity_type map of a text.

        Args:
            text: Input text
            scope: Owner scope; self references resolve to its user_id

        Returns:
            Normalized entity -> type map, empty when the model output is absent or malformed
        """
        messages = [
            {'role': 'system', 'content': ENTITY_SYSTEM_PROMPT.format(user_id=scope.user_id)},
            {'role': 'user', 'content': text},
        ]

        entity_type_map = {}
        try:
            response = self.llm.generate_response(messages=messages, tools=[EXTRACT_ENTITIES_TOOL])
            for call in response.calls_named(EXTRACT_ENTITIES_TOOL['name']):
                for item in call.parsed_arguments().get('entities', []):
                    if not isinstance(item, dict) or not item.get('entity'):
                        continue
                    entity_type_map[normalize_token(item['entity'])] = normalize_token(item.get('entity_type') or 'unknown')
        except (BedrockLLMError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f'Entity extraction degraded to an empty result: {e}')
            return {}

        logger.debug(f'Entity type map: {entity_type_map}')
        return entity_type_map

    def extract_relations(self,
                          text: str,
                          scope: Scope,
                          entity_type_map: Dict[str, str],
                          custom_prompt: Optional[str] = None) -> List[Dict[str, Any]]:
        """Derive source-relationship-destination triples from a text.

        Args:
            text: Input text
            scope: Owner scope; self references resolve to its user_id
            entity_type_map: Entities found by extract_entities
            custom_prompt: Extra instruction appended to the rule list (optional)

        Returns:
            Normalized relations, empty when the model output is absent or malformed
        """
        custom_instruction = f'4. {custom_prompt}\n' if custom_prompt else ''
        system_prompt = RELATIONS_SYSTEM_PROMPT.format(user_id=scope.user_id, custom_instruction=custom_instruction)

        if custom_prompt:
            user_content = text
        else:
            user_content = f'List of entities: {", ".join(entity_type_map)}. \n\nText: {text}'

        messages = [
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': user_content},
        ]

        try:
            response = self.llm.generate_response(messages=messages, tools=[RELATIONS_TOOL])
            calls = response.calls_named(RELATIONS_TOOL['name'])
            relations = calls[0].parsed_arguments().get('entities', []) if calls else []
            if not isinstance(relations, list):
                raise ValueError(f'Expected a list of relations, got {type(relations).__name__}')
        except (BedrockLLMError, ValueError, TypeError) as e:
            logger.warning(f'Relation extraction degraded to an empty result: {e}')
            return []

        relations = normalize_relations(relations)
        logger.debug(f'Extracted {len(relations)} relations')
        return relations
