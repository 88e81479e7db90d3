"""Tests for local_rag.coordinator — constructor injection of fake loaders."""

import asyncio
import json

import pytest

from local_rag.coordinator import InitializationCoordinator, SystemState, build_chunk_store
from local_rag.errors import IndexCorruptError, InitializationError
from tests.fakes import FakeChunkStore, FakeEmbedder, FakeGenerator, fake_coordinator, make_chunk


class CountingLoader:
    """Loader that counts calls and can be made to fail or block."""

    def __init__(self, result, fail_times=0, gate=None):
        self.result = result
        self.calls = 0
        self.fail_times = fail_times
        self.gate = gate

    def __call__(self, config):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.calls <= self.fail_times:
            raise FileNotFoundError(f"model file missing: {config.model_path}")
        return self.result


class TestEnsureReady:
    async def test_starts_uninitialized(self, config):
        coordinator = fake_coordinator(config)
        assert coordinator.state is SystemState.UNINITIALIZED
        assert not coordinator.is_ready()

    async def test_transitions_to_ready(self, config):
        coordinator = fake_coordinator(config)
        await coordinator.ensure_ready()
        assert coordinator.state is SystemState.READY
        assert coordinator.is_ready()
        components = coordinator.components
        assert components.generator is not None
        assert components.embedder is not None
        assert components.chunk_store is not None

    async def test_ready_returns_immediately_without_reloading(self, config):
        loader = CountingLoader(FakeGenerator())
        coordinator = fake_coordinator(config, load_generator=loader)
        await coordinator.ensure_ready()
        await coordinator.ensure_ready()
        assert loader.calls == 1

    async def test_concurrent_callers_share_one_initialization(self, config):
        import threading

        gate = threading.Event()
        gen_loader = CountingLoader(FakeGenerator(), gate=gate)
        emb_loader = CountingLoader(FakeEmbedder())
        coordinator = fake_coordinator(config, load_generator=gen_loader, load_embedder=emb_loader)

        waiters = [asyncio.ensure_future(coordinator.ensure_ready()) for _ in range(10)]
        await asyncio.sleep(0.01)
        assert coordinator.state is SystemState.INITIALIZING
        gate.set()
        await asyncio.gather(*waiters)

        assert gen_loader.calls == 1
        assert emb_loader.calls == 1
        assert coordinator.is_ready()

    async def test_concurrent_callers_all_receive_the_failure(self, config):
        import threading

        gate = threading.Event()
        loader = CountingLoader(FakeGenerator(), fail_times=1, gate=gate)
        coordinator = fake_coordinator(config, load_generator=loader)

        waiters = [asyncio.ensure_future(coordinator.ensure_ready()) for _ in range(5)]
        await asyncio.sleep(0.01)
        gate.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert loader.calls == 1
        assert all(isinstance(r, InitializationError) for r in results)
        assert len({id(r) for r in results}) == 1

    async def test_failure_resets_and_next_call_retries(self, config):
        loader = CountingLoader(FakeGenerator(), fail_times=1)
        coordinator = fake_coordinator(config, load_generator=loader)

        with pytest.raises(InitializationError, match="model file missing"):
            await coordinator.ensure_ready()
        assert coordinator.state is SystemState.UNINITIALIZED
        assert not coordinator.is_ready()

        await coordinator.ensure_ready()
        assert loader.calls == 2
        assert coordinator.is_ready()

    async def test_failure_drops_partial_components(self, config):
        emb_loader = CountingLoader(FakeEmbedder(), fail_times=1)
        coordinator = fake_coordinator(config, load_embedder=emb_loader)
        with pytest.raises(InitializationError):
            await coordinator.ensure_ready()
        with pytest.raises(RuntimeError, match="not initialized"):
            coordinator.components

    async def test_cancelled_waiter_does_not_cancel_shared_attempt(self, config):
        import threading

        gate = threading.Event()
        coordinator = fake_coordinator(
            config, load_generator=CountingLoader(FakeGenerator(), gate=gate)
        )
        first = asyncio.ensure_future(coordinator.ensure_ready())
        second = asyncio.ensure_future(coordinator.ensure_ready())
        await asyncio.sleep(0.01)
        first.cancel()
        gate.set()
        await second
        assert coordinator.is_ready()

    async def test_components_before_ready_raises(self, config):
        coordinator = fake_coordinator(config)
        with pytest.raises(RuntimeError):
            coordinator.components


class TestReadiness:
    async def test_reports_false_before_initialization(self, config):
        coordinator = fake_coordinator(config)
        status = coordinator.readiness()
        assert status.initialized is False
        assert status.ready is False

    async def test_reports_true_after_initialization(self, config):
        coordinator = fake_coordinator(config)
        await coordinator.ensure_ready()
        status = coordinator.readiness()
        assert status.initialized is True
        assert status.ready is True

    async def test_returns_to_false_after_failed_attempt(self, config):
        coordinator = fake_coordinator(config, load_generator=CountingLoader(None, fail_times=1))
        with pytest.raises(InitializationError):
            await coordinator.ensure_ready()
        assert coordinator.readiness().model_dump() == {"initialized": False, "ready": False}


class TestChunkStoreSetup:
    async def test_builds_and_persists_when_index_absent(self, config):
        embedder = FakeEmbedder()
        coordinator = fake_coordinator(config, embedder=embedder)
        await coordinator.ensure_ready()

        store = coordinator.components.chunk_store
        assert store.persisted
        assert [c.text for c in store.chunks] == ["Paris is the capital of France."]
        assert store.chunks[0].source_id.endswith("france.txt")
        assert embedder.texts == ["Paris is the capital of France."]

    async def test_loads_existing_index_without_reembedding(self, config):
        existing = FakeChunkStore(config.index_path, config.embedding_model)
        existing.add([make_chunk("already indexed")])
        existing.persist()

        embedder = FakeEmbedder()
        coordinator = fake_coordinator(config, embedder=embedder)
        await coordinator.ensure_ready()

        assert coordinator.components.chunk_store is existing
        assert embedder.texts == []

    async def test_empty_knowledge_base_yields_empty_store(self, config):
        for f in config.knowledge_base_dir.iterdir():
            f.unlink()
        coordinator = fake_coordinator(config)
        await coordinator.ensure_ready()
        assert coordinator.components.chunk_store.count == 0

    async def test_missing_knowledge_base_is_initialization_failure(self, config, tmp_path):
        config = config.model_copy(update={"knowledge_base_dir": tmp_path / "nope"})
        coordinator = fake_coordinator(config)
        with pytest.raises(InitializationError, match="Knowledge base directory not found"):
            await coordinator.ensure_ready()
        assert coordinator.state is SystemState.UNINITIALIZED

    async def test_corrupt_index_is_fatal_not_rebuilt(self, config):
        class CorruptStore(FakeChunkStore):
            created = 0

            @classmethod
            def load(cls, index_path, embedding_model):
                raise IndexCorruptError("manifest unreadable")

            @classmethod
            def create(cls, index_path, embedding_model):
                cls.created += 1
                return super().create(index_path, embedding_model)

        coordinator = InitializationCoordinator(
            config,
            load_generator=lambda cfg: FakeGenerator(),
            load_embedder=lambda cfg: FakeEmbedder(),
            chunk_store_cls=CorruptStore,
        )
        with pytest.raises(InitializationError, match="manifest unreadable"):
            await coordinator.ensure_ready()
        assert CorruptStore.created == 0

    async def test_dimension_mismatch_is_fatal(self, config):
        existing = FakeChunkStore(config.index_path, config.embedding_model)
        existing.add([make_chunk("four dims", vector=[0.1, 0.2, 0.3, 0.4])])
        existing.persist()

        coordinator = fake_coordinator(config)
        with pytest.raises(InitializationError, match="dimension"):
            await coordinator.ensure_ready()
        assert not coordinator.is_ready()

    async def test_build_chunk_store_splits_long_documents(self, config):
        long_text = "\n\n".join(f"Paragraph {i} " + "word " * 30 for i in range(5))
        (config.knowledge_base_dir / "long.md").write_text(long_text)
        store = await build_chunk_store(config, FakeEmbedder(), FakeChunkStore)
        assert store.count > 2
        assert all(len(c.text) <= config.chunk_size for c in store.chunks)


class TestRebuildAndClose:
    async def test_rebuild_replaces_store_when_ready(self, config):
        coordinator = fake_coordinator(config)
        await coordinator.ensure_ready()
        old_store = coordinator.components.chunk_store

        (config.knowledge_base_dir / "italy.txt").write_text("Rome is the capital of Italy.")
        count = await coordinator.rebuild_index()

        assert count == 2
        assert coordinator.components.chunk_store is not old_store

    async def test_rebuild_without_initialization_uses_fresh_embedder(self, config):
        coordinator = fake_coordinator(config)
        count = await coordinator.rebuild_index()
        assert count == 1
        assert not coordinator.is_ready()

    async def test_close_releases_generator(self, config):
        generator = FakeGenerator()
        coordinator = fake_coordinator(config, generator=generator)
        await coordinator.ensure_ready()
        await coordinator.close()
        assert generator.closed
        assert coordinator.state is SystemState.UNINITIALIZED
