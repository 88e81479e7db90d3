#!/usr/bin/env python3
"""CLI entry point for the local RAG system."""

import argparse
import asyncio
import logging

import uvicorn
from dotenv import load_dotenv

from local_rag.config import RAGConfig
from local_rag.coordinator import InitializationCoordinator
from local_rag.errors import RAGError
from local_rag.rag_pipeline import RAGPipeline
from local_rag.server import create_app

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

EXIT_WORDS = {"exit", "quit"}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


async def serve_command(config: RAGConfig) -> None:
    """Run the HTTP server."""
    app = create_app(config=config)
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.host, port=config.port, log_level=config.log_level.lower())
    )
    logger.info("Application is running on: http://%s:%d", config.host, config.port)
    await server.serve()


async def index_command(config: RAGConfig, rebuild: bool) -> None:
    """Build the vector index from the knowledge base."""
    coordinator = InitializationCoordinator(config)
    if rebuild:
        count = await coordinator.rebuild_index()
        print(f"Rebuilt index with {count} chunks at {config.index_path}.")
        return
    await coordinator.ensure_ready()
    count = coordinator.components.chunk_store.count
    print(f"Index ready with {count} chunks at {config.index_path}.")
    await coordinator.close()


async def query_command(config: RAGConfig, query: str, top_k: int | None) -> None:
    """Stream one answer to stdout."""
    coordinator = InitializationCoordinator(config)
    pipeline = RAGPipeline(coordinator)
    await coordinator.ensure_ready()

    print(f"Querying: {query}\n")
    print("Answer: ", end="", flush=True)

    async for chunk in pipeline.answer_stream(query, top_k):
        print(chunk, end="", flush=True)
    print()
    await coordinator.close()


async def chat_command(config: RAGConfig, top_k: int | None) -> None:
    """Interactive question/answer loop."""
    coordinator = InitializationCoordinator(config)
    pipeline = RAGPipeline(coordinator)
    await coordinator.ensure_ready()

    print("=" * 60)
    print("RAG Chat System Ready!")
    print('Type your questions (or "exit" to quit)')
    print("=" * 60)

    try:
        while True:
            query = await asyncio.to_thread(input, "You: ")
            if query.strip().lower() in EXIT_WORDS:
                print("\nGoodbye!")
                break
            if not query.strip():
                continue
            try:
                answer = await pipeline.answer(query, top_k)
                print(f"\nAI: {answer}\n")
            except RAGError as exc:
                print(f"Error: {exc}\n")
    except EOFError:
        print()
    finally:
        await coordinator.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Local RAG System",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="Read configuration from this .env file",
    )

    subparsers = parser.add_subparsers(
        dest="command", help="Command to execute"
    )

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", type=str, default=None, help="Bind address (default: HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: PORT or 3000)")

    index_parser = subparsers.add_parser("index", help="Build vector index")
    index_parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Discard the existing index and re-embed the knowledge base",
    )

    query_parser = subparsers.add_parser("query", help="Ask a single question")
    query_parser.add_argument(
        "query",
        type=str,
        help="Query string",
    )
    query_parser.add_argument(
        "--top-k",
        type=int,
        default=None,
        help="Number of chunks to retrieve (default: TOP_K or 3)",
    )

    chat_parser = subparsers.add_parser("chat", help="Interactive chat")
    chat_parser.add_argument(
        "--top-k",
        type=int,
        default=None,
        help="Number of chunks to retrieve (default: TOP_K or 3)",
    )
    return parser


async def main() -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    overrides = {}
    if args.command == "serve":
        overrides = {"host": args.host, "port": args.port}
    config = RAGConfig.from_env(args.env_file, **overrides)
    configure_logging(config.log_level)

    if args.command == "serve":
        await serve_command(config)
    elif args.command == "index":
        await index_command(config, args.rebuild)
    elif args.command == "query":
        await query_command(config, args.query, args.top_k)
    elif args.command == "chat":
        await chat_command(config, args.top_k)


if __name__ == "__main__":
    asyncio.run(main())
