"""
Knowledge-base loading and chunking.

Files are read in sorted order so that the same directory always produces
the same chunk sequence. Splitting is recursive over a list of separators:
paragraphs first, then lines, then words, then single characters, and the
resulting pieces are merged back up to ``chunk_size`` with ``chunk_overlap``
characters carried from one chunk into the next.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".txt", ".md")
DEFAULT_SEPARATORS = ("\n\n", "\n", " ", "")


@dataclass(frozen=True)
class Document:
    """Raw text of one knowledge-base file."""

    content: str
    source_id: str


@dataclass(frozen=True)
class DocumentChunk:
    """A split span of a document, not yet embedded."""

    text: str
    source_id: str


def load_documents(
    directory: Path,
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS,
) -> list[Document]:
    """Load every file with a matching extension from ``directory``.

    A file that cannot be read is logged and skipped. A missing directory
    raises FileNotFoundError.
    """
    directory = Path(directory).resolve()
    if not directory.is_dir():
        raise FileNotFoundError(f"Knowledge base directory not found: {directory}")

    documents = []
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix.lower() not in extensions:
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Error reading file %s: %s", path, exc)
            continue
        documents.append(Document(content=content, source_id=str(path)))

    logger.info("Loaded %d documents from %s", len(documents), directory)
    return documents


def _join(parts: list[str], separator: str) -> str | None:
    text = separator.join(parts).strip()
    return text or None


def _merge_splits(splits: list[str], separator: str, chunk_size: int, chunk_overlap: int) -> list[str]:
    """Greedily merge small pieces into chunks, keeping a tail for overlap."""
    chunks: list[str] = []
    current: list[str] = []
    total = 0
    sep_len = len(separator)

    for piece in splits:
        piece_len = len(piece)
        if current and total + piece_len + sep_len > chunk_size:
            text = _join(current, separator)
            if text is not None:
                chunks.append(text)
            # drop from the front until the tail fits in the overlap window
            while current and (
                total > chunk_overlap
                or (total + piece_len + sep_len > chunk_size and total > 0)
            ):
                total -= len(current[0]) + (sep_len if len(current) > 1 else 0)
                current.pop(0)
        current.append(piece)
        total += piece_len + (sep_len if len(current) > 1 else 0)

    text = _join(current, separator)
    if text is not None:
        chunks.append(text)
    return chunks


def split_text(
    text: str,
    chunk_size: int = 1000,
    chunk_overlap: int = 200,
    separators: tuple[str, ...] = DEFAULT_SEPARATORS,
) -> list[str]:
    """Split ``text`` into chunks of at most ``chunk_size`` characters."""
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")

    separator = separators[-1]
    remaining: tuple[str, ...] = ()
    for i, candidate in enumerate(separators):
        if candidate == "" or candidate in text:
            separator = candidate
            remaining = separators[i + 1:]
            break

    splits = text.split(separator) if separator else list(text)
    splits = [s for s in splits if s]

    chunks: list[str] = []
    pending: list[str] = []
    for piece in splits:
        if len(piece) <= chunk_size:
            pending.append(piece)
            continue
        if pending:
            chunks.extend(_merge_splits(pending, separator, chunk_size, chunk_overlap))
            pending = []
        if remaining:
            chunks.extend(split_text(piece, chunk_size, chunk_overlap, remaining))
        else:
            chunks.append(piece)
    if pending:
        chunks.extend(_merge_splits(pending, separator, chunk_size, chunk_overlap))
    return chunks


def load_and_split(
    directory: Path,
    chunk_size: int = 1000,
    chunk_overlap: int = 200,
) -> list[DocumentChunk]:
    """Load the knowledge base and split every document into chunks."""
    documents = load_documents(directory)
    chunks = [
        DocumentChunk(text=text, source_id=doc.source_id)
        for doc in documents
        for text in split_text(doc.content, chunk_size, chunk_overlap)
    ]
    logger.info("Split %d documents into %d chunks", len(documents), len(chunks))
    return chunks
