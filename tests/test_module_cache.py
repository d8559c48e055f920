"""
Tests for the module cache, the Python evaluator and teardown ordering.
"""

import asyncio
import types

import pytest

from polyfetch.core.errors import SourceFetchFailedError, TransportError
from polyfetch.core.evaluator import PythonEvaluator
from polyfetch.core.globals_registry import GlobalRegistry
from polyfetch.core.module_cache import ModuleCache, ModuleStatus
from polyfetch.core.response import BufferedResponse
from polyfetch.core.teardown import TeardownRegistry

BASE = "hyper://site/"


class SourceServer:
    """In-memory module host that records every request."""

    def __init__(self, sources=None, delay=0.0):
        self.sources = dict(sources or {})
        self.delay = delay
        self.requests = []

    async def fetch(self, url):
        self.requests.append(url)
        await asyncio.sleep(self.delay)
        if url not in self.sources:
            return BufferedResponse.error(404, f"Not found: {url}", url=url)
        return BufferedResponse.from_text(self.sources[url], url=url)


# ===== FIXTURES =====

@pytest.fixture
def server():
    """Provide an empty module host."""
    return SourceServer(delay=0.01)


@pytest.fixture
def cache(server):
    """Provide a module cache fetching from the in-memory host."""
    return ModuleCache(server.fetch, PythonEvaluator(), base_url=BASE)


# ===== LOADING TESTS =====

@pytest.mark.unit
class TestModuleLoading:
    """Test fetch, evaluate and cache"""

    @pytest.mark.asyncio
    async def test_load_evaluates_module(self, server, cache):
        server.sources[BASE + "a.py"] = "value = 40 + 2\n"

        record = await cache.load("./a.py")

        assert record.url == BASE + "a.py"
        assert record.status == ModuleStatus.EVALUATED
        assert record.namespace["value"] == 42
        assert record.module.__url__ == BASE + "a.py"
        assert cache.has("a.py")

    @pytest.mark.asyncio
    async def test_fragment_variants_share_one_record(self, server, cache):
        server.sources[BASE + "a.py"] = "value = 1\n"

        first = await cache.load("./a.py#one")
        second = await cache.load(BASE + "a.py#two")

        assert first is second
        assert server.requests == [BASE + "a.py"]

    @pytest.mark.asyncio
    async def test_concurrent_loads_fetch_once(self, server, cache):
        server.sources[BASE + "a.py"] = "value = 1\n"

        records = await asyncio.gather(*(cache.load("./a.py") for _ in range(4)))

        assert all(record is records[0] for record in records)
        assert server.requests == [BASE + "a.py"]
        stats = cache.stats()
        assert stats["fetches"] == 1
        assert stats["evaluations"] == 1
        assert stats["misses"] == 1
        assert stats["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_dependencies_resolve_against_importer(self, server, cache):
        server.sources[BASE + "lib/a.py"] = '__imports__ = {"b": "./b.py"}\nvalue = b.value * 2\n'
        server.sources[BASE + "lib/b.py"] = "value = 21\n"

        record = await cache.load("lib/a.py")

        assert record.namespace["value"] == 42
        assert record.dependencies == [BASE + "lib/b.py"]
        assert cache.has(BASE + "lib/b.py")

    @pytest.mark.asyncio
    async def test_dynamic_import(self, server, cache):
        server.sources[BASE + "a.py"] = 'other = await import_module("./b.py")\nvalue = other.value + 1\n'
        server.sources[BASE + "b.py"] = "value = 1\n"

        record = await cache.load("a.py")
        assert record.namespace["value"] == 2

    @pytest.mark.asyncio
    async def test_top_level_await(self, server, cache):
        server.sources[BASE + "a.py"] = "import asyncio\nvalue = await asyncio.sleep(0, result='later')\n"

        record = await cache.load("a.py")
        assert record.namespace["value"] == "later"

    @pytest.mark.asyncio
    async def test_exports(self, server, cache):
        server.sources[BASE + "a.py"] = '__imports__ = {"b": "./b.py"}\nx = 1\n_hidden = 2\n'
        server.sources[BASE + "b.py"] = '__all__ = ["y"]\ny = 1\nz = 2\n'

        assert await cache.import_top_level("a.py") == {"x": 1}
        assert await cache.import_top_level("b.py") == {"y": 1}


@pytest.mark.unit
class TestCycles:
    """Test cyclic imports complete without deadlock"""

    @pytest.mark.asyncio
    async def test_two_module_cycle(self, server, cache):
        server.sources[BASE + "a.py"] = (
            '__imports__ = {"b": "./b.py"}\n'
            'name = "a"\n'
            "def partner():\n"
            "    return b.name\n"
        )
        server.sources[BASE + "b.py"] = (
            '__imports__ = {"a": "./a.py"}\n'
            'name = "b"\n'
            "def partner():\n"
            "    return a.name\n"
        )

        a = await asyncio.wait_for(cache.load("a.py"), timeout=5)
        b = cache.get("b.py")

        assert a.namespace["partner"]() == "b"
        assert b.namespace["partner"]() == "a"
        assert sorted(server.requests) == [BASE + "a.py", BASE + "b.py"]

    @pytest.mark.asyncio
    async def test_self_import(self, server, cache):
        server.sources[BASE + "a.py"] = '__imports__ = {"me": "./a.py"}\nvalue = 1\n'

        record = await asyncio.wait_for(cache.load("a.py"), timeout=5)
        assert record.namespace["me"] is record.module

    @pytest.mark.asyncio
    async def test_three_module_cycle(self, server, cache):
        server.sources[BASE + "a.py"] = '__imports__ = {"b": "./b.py"}\n'
        server.sources[BASE + "b.py"] = '__imports__ = {"c": "./c.py"}\n'
        server.sources[BASE + "c.py"] = '__imports__ = {"a": "./a.py"}\n'

        a = await asyncio.wait_for(cache.load("a.py"), timeout=5)
        c = cache.get("c.py")

        assert c.namespace["a"] is a.module
        assert len(server.requests) == 3


@pytest.mark.unit
class TestFailures:
    """Test failures propagate and are never cached"""

    @pytest.mark.asyncio
    async def test_missing_source(self, server, cache):
        with pytest.raises(SourceFetchFailedError) as exc_info:
            await cache.load("missing.py")

        assert exc_info.value.status == 404
        assert isinstance(exc_info.value, TransportError)
        assert not cache.has("missing.py")
        assert cache.in_flight() == {}

    @pytest.mark.asyncio
    async def test_failure_is_retried_on_next_load(self, server, cache):
        with pytest.raises(SourceFetchFailedError):
            await cache.load("later.py")

        server.sources[BASE + "later.py"] = "value = 1\n"
        record = await cache.load("later.py")

        assert record.namespace["value"] == 1
        assert server.requests == [BASE + "later.py", BASE + "later.py"]

    @pytest.mark.asyncio
    async def test_evaluation_error_passes_through(self, server, cache):
        server.sources[BASE + "bad.py"] = "raise KeyError('boom')\n"

        results = await asyncio.gather(cache.load("bad.py"), cache.load("bad.py"), return_exceptions=True)

        assert all(isinstance(r, KeyError) for r in results)
        assert server.requests == [BASE + "bad.py"]
        assert not cache.has("bad.py")

    @pytest.mark.asyncio
    async def test_syntax_error(self, server, cache):
        server.sources[BASE + "broken.py"] = "def broken(:\n"
        with pytest.raises(SyntaxError):
            await cache.load("broken.py")

    @pytest.mark.asyncio
    async def test_dependency_failure_fails_importer(self, server, cache):
        server.sources[BASE + "a.py"] = '__imports__ = {"b": "./b.py"}\n'

        with pytest.raises(SourceFetchFailedError):
            await cache.load("a.py")
        assert not cache.has("a.py")


# ===== EVALUATOR TESTS =====

@pytest.mark.unit
class TestPythonEvaluator:
    """Test snippet evaluation and REPL helpers"""

    @pytest.mark.asyncio
    async def test_run_returns_last_expression(self):
        evaluator = PythonEvaluator()
        context = {}
        assert await evaluator.run("x = 2\nx * 21", context) == 42
        assert context["x"] == 2

    @pytest.mark.asyncio
    async def test_run_statement_returns_none(self):
        assert await PythonEvaluator().run("y = 1", {}) is None

    @pytest.mark.asyncio
    async def test_run_top_level_await(self):
        context = {"asyncio": asyncio}
        assert await PythonEvaluator().run("await asyncio.sleep(0, result=5)", context) == 5

    @pytest.mark.asyncio
    async def test_globals_are_injected(self):
        globals_registry = GlobalRegistry()
        globals_registry.register("answer", 42)
        evaluator = PythonEvaluator(globals_registry)
        module = types.ModuleType("mem://a.py")

        async def resolve(specifier):
            raise AssertionError("no imports expected")

        await evaluator.evaluate(module, "doubled = answer * 2\n", resolve)

        assert module.doubled == 84
        assert evaluator.exports(module) == {"doubled": 84}

    def test_imports_must_be_literal(self):
        import ast

        tree = ast.parse("__imports__ = make_imports()\n")
        with pytest.raises(ValueError):
            PythonEvaluator.declared_imports(tree, "mem://a.py")

    def test_is_incomplete(self):
        evaluator = PythonEvaluator()
        assert evaluator.is_incomplete("def f():")
        assert evaluator.is_incomplete("for item in items:")
        assert not evaluator.is_incomplete("x = 1")
        assert not evaluator.is_incomplete("def f(:")


# ===== TEARDOWN TESTS =====

@pytest.mark.unit
class TestTeardown:
    """Test LIFO cleanup"""

    @pytest.mark.asyncio
    async def test_lifo_and_once(self):
        order = []
        teardown = TeardownRegistry()
        for name in ("first", "second", "third"):
            async def action(name=name):
                order.append(name)
            teardown.register(action)

        await teardown.run()
        await teardown.run()

        assert order == ["third", "second", "first"]
        assert teardown.ran

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_others(self):
        order = []
        teardown = TeardownRegistry()

        async def ok():
            order.append("ok")

        async def broken():
            raise RuntimeError("cleanup failed")

        teardown.register(ok)
        teardown.register(broken)

        with pytest.raises(RuntimeError):
            await teardown.run()
        assert order == ["ok"]

    @pytest.mark.asyncio
    async def test_late_registration_runs_immediately(self):
        teardown = TeardownRegistry()
        await teardown.run()

        released = []

        async def late():
            released.append("late")

        teardown.register(late)
        assert len(teardown) == 0

        await asyncio.gather(*teardown.pending)
        assert released == ["late"]
        assert teardown.pending == set()

    @pytest.mark.asyncio
    async def test_late_failure_is_logged(self):
        teardown = TeardownRegistry()
        await teardown.run()

        async def broken():
            raise RuntimeError("cleanup failed")

        teardown.register(broken)
        await asyncio.gather(*teardown.pending)
        assert teardown.pending == set()
