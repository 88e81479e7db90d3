"""Exception hierarchy for the RAG system."""


class RAGError(Exception):
    """Base class for all errors raised by the RAG system."""


class InvalidInputError(RAGError):
    """Raised when a query is empty or malformed."""


class InitializationError(RAGError):
    """Raised when loading the model, embedder or chunk store fails."""


class RetrievalError(RAGError):
    """Raised when embedding a query or searching the index fails."""


class GenerationError(RAGError):
    """Raised when the language model fails to produce an answer."""


class PersistenceError(RAGError):
    """Raised when the index cannot be saved or loaded."""


class IndexAbsentError(PersistenceError):
    """No usable index exists at the location; a fresh build is expected."""


class IndexCorruptError(PersistenceError):
    """An index exists at the location but cannot be read."""


class StreamCancelledError(RAGError):
    """Raised to a consumer still pulling from a cancelled token stream."""
