"""
Tests for entity and relation extraction.
"""

import pytest

from graphmem.models.core import Scope
from graphmem.services.entity_extraction import EntityExtractionService, normalize_relations, normalize_token
from graphmem.utils.bedrock_llm import BedrockLLMError
from graphmem.utils.llm_base import LLMResponse, ToolCall
from tests.fakes import FakeLLM


@pytest.fixture
def scope():
    return Scope(user_id='u1')


@pytest.mark.parametrize('raw, expected', [
    ('Alice', 'alice'),
    ('New York City', 'new_york_city'),
    ('  OpenAI ', 'openai'),
    ('works at', 'works_at'),
])
def test_normalize_token(raw, expected):
    """Tokens are lowercased with spaces turned into underscores."""
    assert normalize_token(raw) == expected


def test_normalize_relations_drops_incomplete():
    """Relations missing an element are dropped; the rest are normalized."""
    relations = [
        {'source': 'Alice', 'relationship': 'Works At', 'destination': 'Acme Corp'},
        {'source': 'Alice', 'relationship': '', 'destination': 'Bob'},
        {'source': 'Alice', 'destination': 'Bob'},
        'not a relation',
    ]

    assert normalize_relations(relations) == [{'source': 'alice', 'relationship': 'works_at', 'destination': 'acme_corp'}]


def test_extract_entities_normalizes_keys_and_types(scope):
    """Entity names and types come back normalized."""
    llm = FakeLLM(tool_handlers={
        'extract_entities': {
            'entities': [{
                'entity': 'Sarah Connor',
                'entity_type': 'Person'
            }, {
                'entity': 'Cyberdyne'
            }, {
                'entity_type': 'orphan'
            }]
        }
    })

    assert EntityExtractionService(llm).extract_entities('text', scope) == {'sarah_connor': 'person', 'cyberdyne': 'unknown'}


def test_extract_entities_prompt_names_owner(scope):
    """The system prompt maps self references to the owner id."""
    llm = FakeLLM(tool_handlers={'extract_entities': {'entities': []}})

    EntityExtractionService(llm).extract_entities('I like tea', scope)

    messages = llm.calls[0]['messages']
    assert 'use u1 as the entity' in messages[0]['content']
    assert messages[1] == {'role': 'user', 'content': 'I like tea'}


@pytest.mark.parametrize('handler', [
    BedrockLLMError('throttled'),
    LLMResponse(tool_calls=[ToolCall(name='extract_entities', arguments='[1, 2]')]),
    LLMResponse(tool_calls=[ToolCall(name='extract_entities', arguments='{"entities": 5}')]),
    None,
])
def test_extract_entities_degrades_to_empty(handler, scope):
    """Failures and malformed output yield an empty map."""
    llm = FakeLLM(tool_handlers={'extract_entities': handler})

    assert EntityExtractionService(llm).extract_entities('text', scope) == {}


def test_extract_relations_lists_entities(scope):
    """Without a custom prompt the entity list precedes the text."""
    llm = FakeLLM(tool_handlers={
        'establish_relationships': {
            'entities': [{
                'source': 'Alice',
                'relationship': 'knows',
                'destination': 'Bob'
            }]
        }
    })

    relations = EntityExtractionService(llm).extract_relations('Alice knows Bob', scope, {'alice': 'person', 'bob': 'person'})

    assert relations == [{'source': 'alice', 'relationship': 'knows', 'destination': 'bob'}]
    assert llm.calls[0]['messages'][1]['content'] == 'List of entities: alice, bob. \n\nText: Alice knows Bob'


def test_extract_relations_custom_prompt(scope):
    """A custom prompt becomes rule 4 and the raw text is sent."""
    llm = FakeLLM(tool_handlers={'establish_relationships': {'entities': []}})

    EntityExtractionService(llm).extract_relations('Alice knows Bob', scope, {}, custom_prompt='Ignore pets')

    messages = llm.calls[0]['messages']
    assert '4. Ignore pets' in messages[0]['content']
    assert messages[1]['content'] == 'Alice knows Bob'


def test_extract_relations_degrades_to_empty(scope):
    """A failing model call yields no relations."""
    llm = FakeLLM(tool_handlers={'establish_relationships': BedrockLLMError('down')})

    assert EntityExtractionService(llm).extract_relations('text', scope, {}) == []
