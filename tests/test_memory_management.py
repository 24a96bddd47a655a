"""
Tests for the flat memory engine: fact extraction, deduplication decisions and CRUD.
"""

import json

import pytest

from graphmem.models.core import Scope, ScopeError, content_hash
from graphmem.services.graph_memory import GraphMemoryService
from graphmem.services.memory_management import MemoryManagementError, MemoryManagementService
from graphmem.utils.bedrock_llm import BedrockLLMError
from tests.fakes import FakeEmbedder, FakeGraphStore, FakeVectorIndex, make_config


class FlatOracle:
    """JSON-mode answers: facts for extraction calls, scripted decisions for dedup calls."""

    def __init__(self, facts=None, decisions=None):
        self.facts = facts or []
        self.decisions = decisions
        self.decision_prompts = []

    def __call__(self, messages):
        content = messages[-1]['content']
        if 'New fact:' in content:
            self.decision_prompts.append(content)
            if isinstance(self.decisions, BaseException):
                raise self.decisions
            if isinstance(self.decisions, str):
                return self.decisions
            return {'memory': self.decisions or []}
        return {'facts': self.facts}


@pytest.fixture
def u1():
    return Scope(user_id='u1')


@pytest.fixture
def flat_oracle(fake_llm):
    oracle = FlatOracle()
    fake_llm.text_handler = oracle
    return oracle


def json_calls(llm):
    return [call for call in llm.calls if call['response_format']]


class TestInferredAdd:
    """Fact extraction followed by per-fact decisions."""

    def test_first_fact_is_added_without_decision(self, memory_service, memory_index, fake_llm, flat_oracle, u1):
        """With no neighbors a fact is stored directly."""
        flat_oracle.facts = ['Likes pizza']

        result = memory_service.add('I like pizza', u1)

        assert [(e['event'], e['memory']) for e in result['results']] == [('ADD', 'Likes pizza')]
        document = memory_index.docs[result['results'][0]['id']]
        assert document['user_id'] == 'u1'
        assert document['hash'] == content_hash('Likes pizza')
        assert document['metadata'] == {'isPrivate': False}
        assert flat_oracle.decision_prompts == []
        assert 'relations' not in result

    def test_conversation_is_sent_with_roles(self, memory_service, fake_llm, flat_oracle, u1):
        """Fact extraction sees each non-system turn prefixed by its role."""
        messages = [{
            'role': 'system',
            'content': 'be nice'
        }, {
            'role': 'user',
            'content': 'I like pizza'
        }, {
            'role': 'assistant',
            'content': 'Noted!'
        }]

        memory_service.add(messages, u1)

        prompt = json_calls(fake_llm)[0]['messages'][-1]['content']
        assert 'user: I like pizza\nassistant: Noted!' in prompt
        assert 'be nice' not in prompt

    def test_exact_duplicate_is_noop(self, memory_service, memory_index, flat_oracle, u1):
        """A fact whose hash is already stored yields NOOP without a decision call."""
        flat_oracle.facts = ['Likes pizza']
        first = memory_service.add('I like pizza', u1)

        second = memory_service.add('I really like pizza', u1)

        assert second['results'] == [{'id': first['results'][0]['id'], 'memory': 'Likes pizza', 'event': 'NOOP'}]
        assert len(memory_index.docs) == 1
        assert flat_oracle.decision_prompts == []

    def test_update_decision_uses_aliases(self, memory_service, memory_index, flat_oracle, u1):
        """The model sees integer aliases and the update lands on the real id."""
        flat_oracle.facts = ['Likes pizza']
        memory_id = memory_service.add('I like pizza', u1)['results'][0]['id']
        flat_oracle.facts = ['Loves pepperoni pizza']
        flat_oracle.decisions = [{'id': '0', 'text': 'Loves pepperoni pizza', 'event': 'UPDATE', 'old_memory': 'Likes pizza'}]

        result = memory_service.add('I love pepperoni pizza', u1)

        assert result['results'] == [{
            'id': memory_id,
            'memory': 'Loves pepperoni pizza',
            'event': 'UPDATE',
            'previous_memory': 'Likes pizza'
        }]
        assert memory_index.docs[memory_id]['content'] == 'Loves pepperoni pizza'
        assert memory_index.docs[memory_id]['hash'] == content_hash('Loves pepperoni pizza')
        prompt = flat_oracle.decision_prompts[0]
        assert json.dumps([{'id': '0', 'text': 'Likes pizza'}]) in prompt
        assert memory_id not in prompt

    def test_delete_decision_removes_memory(self, memory_service, memory_index, flat_oracle, u1):
        """A DELETE decision removes the aliased memory."""
        flat_oracle.facts = ['Likes pizza']
        memory_id = memory_service.add('I like pizza', u1)['results'][0]['id']
        flat_oracle.facts = ['Hates pizza']
        flat_oracle.decisions = [{'id': '0', 'text': 'Likes pizza', 'event': 'DELETE'}]

        result = memory_service.add('I hate pizza now', u1)

        assert result['results'] == [{'id': memory_id, 'memory': 'Likes pizza', 'event': 'DELETE'}]
        assert memory_index.docs == {}

    def test_add_decision_stores_new_memory(self, memory_service, memory_index, flat_oracle, u1):
        """An ADD decision next to existing memories inserts a new record."""
        flat_oracle.facts = ['Likes pizza']
        memory_service.add('I like pizza', u1)
        flat_oracle.facts = ['Works at Acme']
        flat_oracle.decisions = [{'text': 'Works at Acme', 'event': 'ADD'}, {'id': '0', 'text': 'Likes pizza', 'event': 'NOOP'}]

        result = memory_service.add('I work at Acme', u1)

        assert [e['event'] for e in result['results']] == ['ADD', 'NOOP']
        assert {doc['content'] for doc in memory_index.docs.values()} == {'Likes pizza', 'Works at Acme'}

    def test_repeated_and_echoed_add_decisions_store_once(self, memory_service, memory_index, flat_oracle, u1):
        """ADDs of a text already stored, or already added in the same call, write nothing."""
        flat_oracle.facts = ['Likes tea']
        memory_service.add('I like tea', u1)
        flat_oracle.facts = ['Likes coffee']
        flat_oracle.decisions = [
            {'text': 'Likes coffee', 'event': 'ADD'},
            {'text': 'Likes coffee', 'event': 'ADD'},
            {'text': 'Likes tea', 'event': 'ADD'},
        ]

        result = memory_service.add('I like coffee too', u1)

        assert [(e['event'], e['memory']) for e in result['results']] == [('ADD', 'Likes coffee')]
        assert sorted(doc['content'] for doc in memory_index.docs.values()) == ['Likes coffee', 'Likes tea']

    def test_unknown_and_repeated_aliases_are_discarded(self, memory_service, memory_index, flat_oracle, u1):
        """Decisions on ids the model was not shown, or shown once already, are ignored."""
        flat_oracle.facts = ['Likes pizza']
        memory_id = memory_service.add('I like pizza', u1)['results'][0]['id']
        flat_oracle.facts = ['Likes pasta']
        flat_oracle.decisions = [
            {'id': '7', 'text': 'x', 'event': 'DELETE'},
            {'id': memory_id, 'text': 'x', 'event': 'DELETE'},
            {'id': '0', 'text': 'Likes pizza and pasta', 'event': 'UPDATE'},
            {'id': '0', 'text': 'Likes pizza', 'event': 'DELETE'},
            {'id': '0', 'text': 'x', 'event': 'MERGE'},
        ]

        result = memory_service.add('I like pasta', u1)

        assert [e['event'] for e in result['results']] == ['UPDATE']
        assert memory_index.docs[memory_id]['content'] == 'Likes pizza and pasta'

    def test_decision_failure_changes_nothing(self, memory_service, memory_index, flat_oracle, u1):
        """Unreadable decisions leave the store as it was."""
        flat_oracle.facts = ['Likes pizza']
        memory_service.add('I like pizza', u1)
        flat_oracle.facts = ['Likes pasta']
        flat_oracle.decisions = 'this is not json'

        result = memory_service.add('I like pasta', u1)

        assert result['results'] == []
        assert len(memory_index.docs) == 1

    def test_extraction_failure_yields_no_events(self, memory_service, memory_index, fake_llm, u1):
        """A failing fact extraction call is absorbed."""
        fake_llm.text_handler = BedrockLLMError('throttled')

        assert memory_service.add('I like pizza', u1) == {'results': []}
        assert memory_index.docs == {}

    def test_private_facts_are_flagged(self, memory_service, memory_index, fake_llm, flat_oracle, u1):
        """The privacy flag of each fact is stored in its metadata."""
        flat_oracle.facts = ['Email is a@b.co', 'Likes tea']
        fake_llm.tool_handlers['classify_facts_privacy'] = {
            'facts': [{
                'fact': 'Email is a@b.co',
                'isPrivate': True
            }, {
                'fact': 'Likes tea',
                'isPrivate': False
            }]
        }
        flat_oracle.decisions = [{'text': 'Likes tea', 'event': 'ADD'}]

        memory_service.add('My email is a@b.co, I like tea', u1, metadata={'source': 'chat'})

        flags = {doc['content']: doc['metadata'] for doc in memory_index.docs.values()}
        assert flags == {
            'Email is a@b.co': {
                'source': 'chat',
                'isPrivate': True
            },
            'Likes tea': {
                'source': 'chat',
                'isPrivate': False
            }
        }

    def test_embedding_failure_skips_fact(self, app_config, fake_llm, memory_index, flat_oracle, u1):
        """A fact that cannot be embedded is skipped."""
        service = MemoryManagementService(app_config,
                                          llm=fake_llm,
                                          embedder=FakeEmbedder(failures={'Likes pizza'}),
                                          memory_index=memory_index)
        service.initialize()
        flat_oracle.facts = ['Likes pizza', 'Likes tea']

        result = service.add('I like pizza and tea', u1)

        assert [e['memory'] for e in result['results']] == ['Likes tea']


class TestVerbatimAdd:
    """infer=False stores messages as they are."""

    def test_messages_are_stored_with_roles(self, memory_service, memory_index, fake_llm, u1):
        """Each non-system message becomes one memory with its role."""
        messages = [{
            'role': 'system',
            'content': 'be nice'
        }, {
            'role': 'user',
            'content': 'I like pizza'
        }, {
            'role': 'assistant',
            'content': 'Noted!'
        }]

        result = memory_service.add(messages, u1, infer=False)

        assert [(e['event'], e['memory'], e['role']) for e in result['results']] == [('ADD', 'I like pizza', 'user'),
                                                                                      ('ADD', 'Noted!', 'assistant')]
        assert {doc['role'] for doc in memory_index.docs.values()} == {'user', 'assistant'}
        assert fake_llm.calls == []


class TestPreconditions:
    """Rejected calls."""

    def test_missing_scope_raises_before_model_calls(self, memory_service, fake_llm):
        """At least one scope identifier is required."""
        with pytest.raises(ScopeError):
            memory_service.add('I like pizza', Scope())
        assert fake_llm.calls == []

    def test_agent_scope_is_enough(self, memory_service, memory_index, flat_oracle):
        """An agent id alone is a valid scope for flat memories."""
        flat_oracle.facts = ['Prefers short answers']

        memory_service.add('Keep it short', Scope(agent_id='agent-1'))

        assert [doc['agent_id'] for doc in memory_index.docs.values()] == ['agent-1']

    def test_uninitialized_service_raises(self, app_config, fake_llm, embedder, u1):
        """Operations before initialize() fail."""
        service = MemoryManagementService(app_config, llm=fake_llm, embedder=embedder, memory_index=FakeVectorIndex())

        with pytest.raises(MemoryManagementError, match='not initialized'):
            service.add('I like pizza', u1)

    def test_initialize_reads_telemetry_id(self, memory_service):
        """The index owner document provides the telemetry id."""
        assert memory_service.telemetry_id == 'telemetry-owner'

    def test_store_failure_raises(self, memory_service, memory_index, flat_oracle, u1):
        """A failing index write surfaces as MemoryManagementError."""
        flat_oracle.facts = ['Likes pizza']
        memory_index.fail_on.add('insert')

        with pytest.raises(MemoryManagementError, match='Memory add failed'):
            memory_service.add('I like pizza', u1)


class TestRetrieval:
    """Search, get and listing."""

    def test_search_returns_scored_items(self, memory_service, embedder, flat_oracle, u1):
        """Search results carry their similarity and scope fields."""
        flat_oracle.facts = ['Likes pizza']
        memory_service.add('I like pizza', u1)
        embedder.vectors['what food?'] = embedder.vectors['Likes pizza']

        results = memory_service.search('what food?', u1)['results']

        assert len(results) == 1
        assert results[0]['memory'] == 'Likes pizza'
        assert results[0]['score'] == pytest.approx(1.0)
        assert results[0]['user_id'] == 'u1'
        assert embedder.query_calls == ['what food?']

    def test_search_is_scoped(self, memory_service, flat_oracle, u1):
        """Another user's memories never show up."""
        flat_oracle.facts = ['Likes pizza']
        memory_service.add('I like pizza', u1)

        assert memory_service.search('pizza', Scope(user_id='u2'))['results'] == []

    def test_search_filters_private(self, memory_service, fake_llm, flat_oracle, u1):
        """Private memories are hidden only when asked to."""
        flat_oracle.facts = ['Email is a@b.co']
        fake_llm.tool_handlers['classify_facts_privacy'] = {'facts': [{'fact': 'Email is a@b.co', 'isPrivate': True}]}
        memory_service.add('My email is a@b.co', u1)

        assert memory_service.search('email', u1, filter_private=True)['results'] == []
        assert len(memory_service.search('email', u1)['results']) == 1

    def test_search_embedding_failure_raises(self, app_config, fake_llm, memory_index, u1):
        """A query that cannot be embedded fails the search."""
        service = MemoryManagementService(app_config,
                                          llm=fake_llm,
                                          embedder=FakeEmbedder(failures={'pizza'}),
                                          memory_index=memory_index)
        service.initialize()

        with pytest.raises(MemoryManagementError, match='Memory search failed'):
            service.search('pizza', u1)

    def test_get_all_newest_first_with_limit(self, memory_service, u1):
        """Listing is ordered newest first and bounded by limit."""
        for text in ('first', 'second', 'third'):
            memory_service.add(text, u1, infer=False)

        results = memory_service.get_all(u1, limit=2)['results']

        assert [item['memory'] for item in results] == ['third', 'second']

    def test_get_returns_item_or_none(self, memory_service, u1):
        """get returns the public item shape, or None for unknown ids."""
        memory_id = memory_service.add('I like pizza', u1, infer=False)['results'][0]['id']

        item = memory_service.get(memory_id)

        assert item['memory'] == 'I like pizza'
        assert item['hash'] == content_hash('I like pizza')
        assert memory_service.get('missing') is None


class TestMutation:
    """Update, delete, delete_all and reset."""

    def test_update_rewrites_content_and_hash(self, memory_service, memory_index, u1):
        """update replaces the text and its hash."""
        memory_id = memory_service.add('I like pizza', u1, infer=False)['results'][0]['id']

        assert memory_service.update(memory_id, 'I like pasta') == {'message': 'Memory updated successfully!'}
        assert memory_index.docs[memory_id]['content'] == 'I like pasta'
        assert memory_index.docs[memory_id]['hash'] == content_hash('I like pasta')

    def test_update_unknown_id_raises(self, memory_service):
        """Updating a missing memory is an error."""
        with pytest.raises(MemoryManagementError, match='not found'):
            memory_service.update('missing', 'text')

    def test_delete_reports_outcome(self, memory_service, u1):
        """delete reports whether the memory existed."""
        memory_id = memory_service.add('I like pizza', u1, infer=False)['results'][0]['id']

        assert memory_service.delete(memory_id) == {'message': 'Memory deleted successfully!'}
        assert memory_service.delete(memory_id) == {'message': 'Memory not found'}

    def test_delete_all_only_touches_scope(self, memory_service, u1):
        """delete_all leaves other owners' memories in place."""
        memory_service.add('mine', u1, infer=False)
        memory_service.add('theirs', Scope(user_id='u2'), infer=False)

        assert memory_service.delete_all(u1) == {'message': 'Memories deleted successfully!'}
        assert memory_service.get_all(u1)['results'] == []
        assert len(memory_service.get_all(Scope(user_id='u2'))['results']) == 1

    def test_reset_clears_index(self, memory_service, memory_index, u1):
        """reset empties the whole index."""
        memory_service.add('mine', u1, infer=False)

        memory_service.reset()

        assert memory_index.docs == {}


class TestGraphEnabled:
    """Flat memory with the graph engine alongside."""

    @pytest.fixture
    def graph_store(self):
        return FakeGraphStore()

    @pytest.fixture
    def service(self, fake_llm, embedder, memory_index, graph_store, flat_oracle):
        config = make_config()
        config.memory.enable_graph = True
        graph = GraphMemoryService(config, llm=fake_llm, embedder=embedder, graph=graph_store, entity_index=FakeVectorIndex())
        service = MemoryManagementService(config, llm=fake_llm, embedder=embedder, memory_index=memory_index, graph=graph)
        service.initialize()
        yield service
        graph.close()

    def test_add_reports_graph_changes(self, service, graph_store, oracle, flat_oracle, u1):
        """The graph result is returned under 'relations'."""
        flat_oracle.facts = ['Works at Acme']
        oracle.script('user: I work at Acme', {'u1': 'person', 'Acme': 'company'}, [('u1', 'works_at', 'Acme')])

        result = service.add('I work at Acme', u1)

        assert [e['event'] for e in result['results']] == ['ADD']
        assert [item['destination'] for item in result['relations']['added']] == ['acme']
        assert graph_store.triples('u1') == {('u1', 'works_at', 'acme')}

    def test_get_all_and_delete_all_include_graph(self, service, graph_store, oracle, flat_oracle, u1):
        """Listing includes relations and deletion clears the graph too."""
        flat_oracle.facts = ['Works at Acme']
        oracle.script('user: I work at Acme', {'u1': 'person', 'Acme': 'company'}, [('u1', 'works_at', 'Acme')])
        service.add('I work at Acme', u1)

        assert service.get_all(u1)['relations'] == [{'source': 'u1', 'relationship': 'works_at', 'target': 'acme'}]

        service.delete_all(u1)

        assert graph_store.relations == {}
        assert service.get_all(u1) == {'results': [], 'relations': []}

    def test_close_releases_graph_service(self, service, graph_store):
        """Closing the flat service closes the graph service it owns."""
        service.close()

        assert graph_store.closed
        with pytest.raises(RuntimeError):
            service.graph.executor.submit(print)
