"""Shared fixtures for all test modules."""

import pytest

from local_rag.config import RAGConfig
from local_rag.models import SearchResult
from tests.fakes import PARIS_TEXT, FakeChunkStore, make_chunk


@pytest.fixture(autouse=True)
def _reset_fake_store():
    FakeChunkStore.saved = {}
    yield
    FakeChunkStore.saved = {}


@pytest.fixture
def knowledge_base(tmp_path):
    kb = tmp_path / "knowledge-base"
    kb.mkdir()
    (kb / "france.txt").write_text(PARIS_TEXT)
    return kb


@pytest.fixture
def config(tmp_path, knowledge_base):
    return RAGConfig(
        knowledge_base_dir=knowledge_base,
        index_path=tmp_path / "index",
        chunk_size=200,
        chunk_overlap=20,
        top_k=3,
    )


@pytest.fixture
def sample_search_results():
    return [
        SearchResult(chunk=make_chunk("The Eiffel Tower is in Paris."), score=0.92),
        SearchResult(chunk=make_chunk("Lyon is known for its cuisine."), score=0.85),
    ]
