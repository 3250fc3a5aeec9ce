"""Unit tests for the concurrent URL materializer."""

import asyncio

import pytest

from geophoto.materializer import ConcurrentURLMaterializer


class SlowResolver:
    """Resolver that records how many lookups run at once."""

    def __init__(self, failing=(), delays=None):
        self.failing = set(failing)
        self.delays = delays or {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def download_url(self, path):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(path, 0.001))
            if path in self.failing:
                raise RuntimeError(f"cannot resolve {path}")
            return f"https://cdn.example.com/{path}"
        finally:
            self.in_flight -= 1


class TestConcurrentURLMaterializer:
    """Test ordering, concurrency bound and failure handling."""

    @pytest.mark.asyncio
    async def test_output_is_index_aligned(self):
        paths = [f"p{i}.jpg" for i in range(17)]
        # Early paths finish last so completion order differs from input order.
        delays = {path: 0.02 - i * 0.001 for i, path in enumerate(paths)}
        resolver = SlowResolver(delays=delays)

        urls = await ConcurrentURLMaterializer(resolver, pool_size=6).materialize(paths)

        assert urls == [f"https://cdn.example.com/{path}" for path in paths]
        assert resolver.max_in_flight <= 6

    @pytest.mark.asyncio
    async def test_pool_is_saturated(self):
        resolver = SlowResolver()

        await ConcurrentURLMaterializer(resolver, pool_size=6).materialize([f"p{i}" for i in range(17)])

        assert resolver.max_in_flight == 6

    @pytest.mark.asyncio
    async def test_fewer_paths_than_workers(self):
        resolver = SlowResolver()

        urls = await ConcurrentURLMaterializer(resolver, pool_size=6).materialize(["a", "b"])

        assert urls == ["https://cdn.example.com/a", "https://cdn.example.com/b"]
        assert resolver.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await ConcurrentURLMaterializer(SlowResolver()).materialize([]) == []

    @pytest.mark.asyncio
    async def test_failures_become_none(self):
        resolver = SlowResolver(failing={"b"})
        materializer = ConcurrentURLMaterializer(resolver, pool_size=2)

        urls = await materializer.materialize(["a", "b", "c"])

        assert urls == ["https://cdn.example.com/a", None, "https://cdn.example.com/c"]
        assert await materializer.resolved_pairs(["a", "b", "c"]) == [
            ("a", "https://cdn.example.com/a"),
            ("c", "https://cdn.example.com/c"),
        ]
        assert await materializer.resolved_urls(["b", "c"]) == ["https://cdn.example.com/c"]

    @pytest.mark.asyncio
    async def test_progress_reported_every_ten(self):
        calls = []
        materializer = ConcurrentURLMaterializer(
            SlowResolver(), pool_size=6, progress=lambda done, total: calls.append((done, total))
        )

        await materializer.materialize([f"p{i}" for i in range(25)])

        assert calls == [(10, 25), (20, 25)]

    @pytest.mark.asyncio
    async def test_async_progress_callback(self):
        calls = []

        async def progress(done, total):
            calls.append((done, total))

        materializer = ConcurrentURLMaterializer(SlowResolver(), pool_size=3, progress=progress)

        await materializer.materialize([f"p{i}" for i in range(10)])
        await asyncio.sleep(0)

        assert calls == [(10, 10)]

    @pytest.mark.asyncio
    async def test_failing_progress_callback_is_ignored(self):
        def progress(done, total):
            raise ValueError("ui gone")

        materializer = ConcurrentURLMaterializer(SlowResolver(), pool_size=6, progress=progress)

        urls = await materializer.materialize([f"p{i}" for i in range(12)])

        assert len(urls) == 12
        assert all(urls)

    def test_rejects_empty_pool(self):
        with pytest.raises(ValueError):
            ConcurrentURLMaterializer(SlowResolver(), pool_size=0)
