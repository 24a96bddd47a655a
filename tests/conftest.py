"""Shared fixtures wiring the in-memory fakes into the services."""

import pytest

from graphmem.services.graph_memory import GraphMemoryService
from graphmem.services.memory_management import MemoryManagementService
from tests.fakes import FakeEmbedder, FakeGraphStore, FakeLLM, FakeVectorIndex, ScriptedOracle, make_config


@pytest.fixture
def app_config():
    return make_config()


@pytest.fixture
def oracle():
    return ScriptedOracle()


@pytest.fixture
def fake_llm(oracle):
    return FakeLLM(tool_handlers=oracle.handlers())


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def graph_store():
    return FakeGraphStore()


@pytest.fixture
def entity_index():
    return FakeVectorIndex()


@pytest.fixture
def memory_index():
    return FakeVectorIndex()


@pytest.fixture
def graph_service(app_config, fake_llm, embedder, graph_store, entity_index):
    service = GraphMemoryService(app_config, llm=fake_llm, embedder=embedder, graph=graph_store, entity_index=entity_index)
    service.initialize()
    yield service
    service.close()


@pytest.fixture
def memory_service(app_config, fake_llm, embedder, memory_index):
    service = MemoryManagementService(app_config, llm=fake_llm, embedder=embedder, memory_index=memory_index)
    service.initialize()
    return service
