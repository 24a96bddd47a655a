"""
Privacy classification of relations and facts through the reasoning model.

Both classifiers fail open: when the model call fails or its output cannot be
read, every item is labelled as not private.
"""

import json
from typing import Any, Dict, List

from ..utils.bedrock_llm import BedrockLLMError
from ..utils.llm_base import LLMBase
from ..utils.logging_config import get_logger
from .entity_extraction import normalize_token
from .tools import CLASSIFY_FACTS_PRIVACY_TOOL, CLASSIFY_PRIVACY_TOOL

logger = get_logger(__name__)

PRIVACY_CRITERIA = """
Mark an item as private (isPrivate = true) when any of these apply:
- It exposes personally identifiable information: real name, email address, phone number, home address, government ids.
- It reveals sensitive personal details: intimate relationships, family matters, physical or mental health.
- It discloses precise location data such as current whereabouts or coordinates.
- It leaks the content of private conversations or messages.
- It reveals preferences people usually keep to themselves: political views, religious beliefs, sexual orientation.

Otherwise mark it as not private (isPrivate = false)."""

RELATIONS_PRIVACY_PROMPT = """
You review graph relationships extracted from a conversation and decide for each one whether it must stay private.
You receive a JSON array of {"source", "relation", "target"} objects. Call the classify_privacy tool with the same
objects, in the same order, each augmented with an "isPrivate" boolean.
""" + PRIVACY_CRITERIA

FACTS_PRIVACY_PROMPT = """
You review short facts remembered about a user and decide for each one whether it must stay private.
You receive a JSON array of facts. Call the classify_facts_privacy tool with one {"fact", "isPrivate"} object per
fact, in the same order.
""" + PRIVACY_CRITERIA


class PrivacyClassifier:
    """Annotates relations and facts with an isPrivate flag."""

    def __init__(self, llm: LLMBase):
        self.llm = llm

    def _call(self, prompt: str, payload: List[Any], tool: Dict[str, Any], result_key: str) -> List[Dict[str, Any]]:
        messages = [{'role': 'user', 'content': f'{prompt}\n\nItems to classify: {json.dumps(payload)}'}]
        response = self.llm.generate_response(messages=messages, tools=[tool])
        calls = response.calls_named(tool['name'])
        if not calls:
            raise ValueError(f'No {tool["name"]} call in response')
        items = calls[0].parsed_arguments().get(result_key, [])
        if not isinstance(items, list):
            raise ValueError(f'Expected a list under "{result_key}"')
        return [item for item in items if isinstance(item, dict)]

    def classify_relations(self, relations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Attach metadata={'isPrivate': bool} to every relation with a single model call.

        Args:
            relations: Normalized relations with source, relationship and destination

        Returns:
            New relation dicts carrying the privacy metadata, in input order
        """
        if not relations:
            return []

        payload = [{'source': r['source'], 'relation': r['relationship'], 'target': r['destination']} for r in relations]

        try:
            classified = self._call(RELATIONS_PRIVACY_PROMPT, payload, CLASSIFY_PRIVACY_TOOL, 'relations')
        except (BedrockLLMError, ValueError, TypeError) as e:
            logger.warning(f'Privacy classification failed, marking {len(relations)} relations as not private: {e}')
            return [{**relation, 'metadata': {'isPrivate': False}} for relation in relations]

        by_triple = {}
        for item in classified:
            key = (normalize_token(item.get('source', '')), normalize_token(item.get('relation', '')),
                   normalize_token(item.get('target', '')))
            by_triple[key] = item

        results = []
        for index, relation in enumerate(relations):
            item = by_triple.get((relation['source'], relation['relationship'], relation['destination']))
            if item is None and index < len(classified):
                item = classified[index]
            is_private = bool(item.get('isPrivate', False)) if item else False
            results.append({**relation, 'metadata': {'isPrivate': is_private}})

        logger.debug(f'Classified {len(results)} relations, {sum(r["metadata"]["isPrivate"] for r in results)} private')
        return results

    def classify_facts(self, facts: List[str]) -> List[bool]:
        """
        Classify plain-text facts with a single model call.

        Returns:
            One flag per fact, all False when classification fails
        """
        if not facts:
            return []

        try:
            classified = self._call(FACTS_PRIVACY_PROMPT, facts, CLASSIFY_FACTS_PRIVACY_TOOL, 'facts')
        except (BedrockLLMError, ValueError, TypeError) as e:
            logger.warning(f'Privacy classification failed, marking {len(facts)} facts as not private: {e}')
            return [False] * len(facts)

        by_fact = {item.get('fact'): bool(item.get('isPrivate', False)) for item in classified}
        flags = []
        for index, fact in enumerate(facts):
            if fact in by_fact:
                flags.append(by_fact[fact])
            elif index < len(classified):
                flags.append(bool(classified[index].get('isPrivate', False)))
            else:
                flags.append(False)
        return flags
