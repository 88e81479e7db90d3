"""Tests for local_rag.embeddings — mock SentenceTransformer."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from tests.fakes import SAMPLE_EMBEDDING


@pytest.fixture(autouse=True)
def _clear_model_cache():
    from local_rag.embeddings import _load_model

    _load_model.cache_clear()
    yield
    _load_model.cache_clear()


def _mock_model(vectors=None, dimension=3):
    model = MagicMock()
    model.get_sentence_embedding_dimension.return_value = dimension
    model.encode.return_value = np.array(vectors if vectors is not None else [SAMPLE_EMBEDDING])
    return model


class TestLocalEmbeddingsInit:
    @patch("local_rag.embeddings.SentenceTransformer")
    def test_loads_default_model(self, mock_cls):
        from local_rag.embeddings import LocalEmbeddings

        emb = LocalEmbeddings()
        mock_cls.assert_called_once_with("sentence-transformers/all-MiniLM-L6-v2")
        assert emb.model_name == "sentence-transformers/all-MiniLM-L6-v2"

    @patch("local_rag.embeddings.SentenceTransformer")
    def test_model_is_loaded_once_per_name(self, mock_cls):
        from local_rag.embeddings import LocalEmbeddings

        LocalEmbeddings("BAAI/bge-small-en-v1.5")
        LocalEmbeddings("BAAI/bge-small-en-v1.5")
        mock_cls.assert_called_once_with("BAAI/bge-small-en-v1.5")

    @patch("local_rag.embeddings.SentenceTransformer")
    def test_moves_model_to_requested_device(self, mock_cls):
        from local_rag.embeddings import LocalEmbeddings

        emb = LocalEmbeddings(device="cpu")
        mock_cls.return_value.to.assert_called_once_with("cpu")
        assert emb._model is mock_cls.return_value.to.return_value

    @patch("local_rag.embeddings.SentenceTransformer")
    def test_from_config(self, mock_cls):
        from local_rag.config import RAGConfig
        from local_rag.embeddings import LocalEmbeddings

        emb = LocalEmbeddings.from_config(RAGConfig(embedding_model="BAAI/bge-small-en-v1.5"))
        mock_cls.assert_called_once_with("BAAI/bge-small-en-v1.5")
        assert emb.model_name == "BAAI/bge-small-en-v1.5"
        mock_cls.return_value.to.assert_not_called()

    @patch("local_rag.embeddings.SentenceTransformer")
    def test_dimension_comes_from_model(self, mock_cls):
        from local_rag.embeddings import LocalEmbeddings

        mock_cls.return_value = _mock_model(dimension=384)
        assert LocalEmbeddings().dimension == 384


class TestEmbedTexts:
    @patch("local_rag.embeddings.SentenceTransformer")
    async def test_empty_input_returns_empty(self, mock_cls):
        from local_rag.embeddings import LocalEmbeddings

        emb = LocalEmbeddings()
        assert await emb.embed_texts([]) == []
        mock_cls.return_value.encode.assert_not_called()

    @patch("local_rag.embeddings.SentenceTransformer")
    async def test_returns_lists_of_floats_in_order(self, mock_cls):
        from local_rag.embeddings import LocalEmbeddings

        mock_cls.return_value = _mock_model(vectors=[[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        emb = LocalEmbeddings(batch_size=8)

        result = await emb.embed_texts(["first", "second"])

        assert result == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
        args, kwargs = mock_cls.return_value.encode.call_args
        assert args[0] == ["first", "second"]
        assert kwargs["batch_size"] == 8
        assert kwargs["normalize_embeddings"] is True


class TestEmbedQuery:
    @patch("local_rag.embeddings.SentenceTransformer")
    async def test_embed_query_returns_single_embedding(self, mock_cls):
        from local_rag.embeddings import LocalEmbeddings

        mock_cls.return_value = _mock_model()
        emb = LocalEmbeddings()

        result = await emb.embed_query("what is this?")

        assert result == pytest.approx(SAMPLE_EMBEDDING)
        assert mock_cls.return_value.encode.call_args.args[0] == ["what is this?"]
