"""
Tests for the Runtime: fetch routing, evaluation context and lifecycle.
"""

import asyncio
from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from polyfetch import PolyfetchConfig, Runtime
from polyfetch.core.errors import (
    AlreadyClosedError,
    DuplicateSchemeError,
    LifecycleError,
    NotInitializedError,
    UnknownSchemeError,
)
from polyfetch.core.response import BufferedResponse
from polyfetch.core.urls import path_to_file_url


async def echo_handler(url, options):
    """Answer with everything the handler received."""
    return BufferedResponse.from_json({
        "url": url,
        "method": options.get("method", "GET"),
        "headers": options.get("headers") or {},
    })


# ===== FIXTURES =====

@pytest.fixture
def project_dir(tmp_path):
    """Create a small project folder of modules and data."""
    (tmp_path / "hello.txt").write_text("hello world")
    (tmp_path / "helper.py").write_text('PREFIX = "hello"\n')
    (tmp_path / "mod.py").write_text(
        '__imports__ = {"helper": "./helper.py"}\n'
        "VALUE = 7\n"
        "def greet(name):\n"
        '    return f"{helper.PREFIX} {name}"\n'
    )
    return tmp_path


@pytest.fixture
def runtime(project_dir):
    """Provide a runtime rooted at the project folder with an echo: scheme."""
    runtime = Runtime(root=path_to_file_url(project_dir))
    runtime.protocols.register("echo:", echo_handler)
    return runtime


# ===== CONSTRUCTION TESTS =====

@pytest.mark.unit
class TestRuntimeSetup:
    """Test protocol registration from config"""

    def test_default_protocols(self):
        runtime = Runtime()
        schemes = runtime.protocols.schemes()
        for scheme in ("http:", "https:", "file:", "hyper:", "ipfs:", "ipns:", "ipld:"):
            assert scheme in schemes
        assert runtime.root.startswith("file://")
        assert runtime.root.endswith("/")

    def test_lazy_backends_not_started(self):
        runtime = Runtime()
        assert not runtime.protocols.get("ipfs:").resolved
        assert not runtime.protocols.get("hyper:").resolved
        assert len(runtime.teardown) == 0

    def test_disabled_protocols(self):
        config = PolyfetchConfig(http=False, https=False, file=False)
        config.ipfs.enabled = False
        config.hyper.enabled = False

        runtime = Runtime(config)
        assert runtime.protocols.schemes() == []

    @pytest.mark.asyncio
    async def test_disabled_scheme_then_reenabled(self):
        runtime = Runtime(https=False)
        assert not runtime.protocols.has("https:")

        with pytest.raises(UnknownSchemeError):
            await runtime.fetch("https://example.com/x")

        runtime.protocols.register("https:", echo_handler)
        response = await runtime.fetch("https://example.com/x")

        assert response.ok
        assert (await response.json())["url"] == "https://example.com/x"
        await runtime.close()

    def test_enabled_scheme_is_taken(self):
        runtime = Runtime()
        with pytest.raises(DuplicateSchemeError):
            runtime.protocols.register("https:", echo_handler)

    def test_overrides_copy_config(self):
        config = PolyfetchConfig()
        runtime = Runtime(config, http=False)
        assert runtime.config.http is False
        assert config.http is True

    def test_nested_overrides_are_validated(self):
        config = PolyfetchConfig()
        runtime = Runtime(config, ipfs={"enabled": False}, llm={"model": "llama3.2:3b"})

        assert runtime.config.ipfs.enabled is False
        assert runtime.config.ipfs.api_addr == config.ipfs.api_addr
        assert runtime.config.llm.model == "llama3.2:3b"
        assert runtime.config.llm.base_url == config.llm.base_url
        assert config.ipfs.enabled is True
        for scheme in ("ipfs:", "ipns:", "ipld:"):
            assert not runtime.protocols.has(scheme)

    def test_invalid_override(self):
        with pytest.raises(ValidationError):
            Runtime(PolyfetchConfig(), hyper={"port": "not a port"})
        with pytest.raises(ValidationError):
            Runtime(fetch_timeout="soon")


# ===== FETCH TESTS =====

@pytest.mark.unit
class TestFetch:
    """Test request normalization"""

    @pytest.mark.asyncio
    async def test_fetch_relative_file(self, runtime):
        response = await runtime.fetch("hello.txt")
        assert response.ok
        assert await response.text() == "hello world"
        await runtime.close()

    @pytest.mark.asyncio
    async def test_fetch_with_options(self, runtime):
        response = await runtime.fetch("echo://host/path", {"method": "post", "headers": {"X-Test": "1"}})
        data = await response.json()
        assert data == {"url": "echo://host/path", "method": "post", "headers": {"X-Test": "1"}}

    @pytest.mark.asyncio
    async def test_fetch_request_mapping(self, runtime):
        response = await runtime.fetch({"url": "echo://host/", "method": "PUT"})
        assert (await response.json())["method"] == "PUT"

    @pytest.mark.asyncio
    async def test_init_overrides_request_fields(self, runtime):
        request = SimpleNamespace(url="echo://host/", method="PUT", headers={"A": "1"}, body=None)
        response = await runtime.fetch(request, {"method": "DELETE"})
        data = await response.json()
        assert data["method"] == "DELETE"
        assert data["headers"] == {"A": "1"}

    @pytest.mark.asyncio
    async def test_fetch_requires_url(self, runtime):
        with pytest.raises(ValueError):
            await runtime.fetch("")
        with pytest.raises(ValueError):
            await runtime.fetch({"method": "GET"})

    @pytest.mark.asyncio
    async def test_unknown_scheme(self, runtime):
        with pytest.raises(UnknownSchemeError):
            await runtime.fetch("gopher://host/")

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, project_dir):
        runtime = Runtime(root=path_to_file_url(project_dir), fetch_timeout=0.01)

        async def slow(url, options):
            await asyncio.sleep(1)
            return BufferedResponse()

        runtime.protocols.register("slow:", slow)
        with pytest.raises(asyncio.TimeoutError):
            await runtime.fetch("slow://host/")


# ===== EVALUATION TESTS =====

@pytest.mark.unit
class TestEvaluation:
    """Test eval and module imports through the runtime"""

    @pytest.mark.asyncio
    async def test_eval_before_init(self, runtime):
        with pytest.raises(NotInitializedError):
            await runtime.eval("1 + 1")
        with pytest.raises(NotInitializedError):
            await runtime.import_url("mod.py")

    @pytest.mark.asyncio
    async def test_eval(self, runtime):
        await runtime.init()
        assert await runtime.eval("400 + 20") == 420
        await runtime.close()

    @pytest.mark.asyncio
    async def test_context_is_shared(self, runtime):
        await runtime.init()
        await runtime.eval("counter = 5")
        assert await runtime.eval("counter + 1") == 6
        await runtime.close()

    @pytest.mark.asyncio
    async def test_globals_in_context(self, runtime):
        await runtime.init()
        assert runtime.context["fetch"] == runtime.fetch
        assert runtime.context["llm"] is runtime.llm

        text = await runtime.eval("(await (await fetch('hello.txt')).text()).upper()")
        assert text == "HELLO WORLD"
        await runtime.close()

    @pytest.mark.asyncio
    async def test_import_url(self, runtime):
        await runtime.init()
        exports = await runtime.import_url("mod.py")

        assert exports["VALUE"] == 7
        assert exports["greet"]("there") == "hello there"
        assert "helper" not in exports
        assert "fetch" not in exports
        await runtime.close()

    @pytest.mark.asyncio
    async def test_import_module_record(self, runtime, project_dir):
        await runtime.init()
        record = await runtime.import_module("mod.py")

        assert record.url == path_to_file_url(project_dir) + "mod.py"
        assert record.dependencies == [path_to_file_url(project_dir) + "helper.py"]
        await runtime.close()

    @pytest.mark.asyncio
    async def test_import_from_eval(self, runtime):
        await runtime.init()
        value = await runtime.eval("(await import_module('./mod.py')).VALUE")
        assert value == 7
        assert runtime.modules.stats()["fetches"] == 2
        await runtime.close()

    @pytest.mark.asyncio
    async def test_evaluation_error_is_not_wrapped(self, runtime, project_dir):
        (project_dir / "bad.py").write_text("raise LookupError('nope')\n")
        await runtime.init()
        with pytest.raises(LookupError):
            await runtime.import_url("bad.py")
        await runtime.close()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, project_dir):
        async with Runtime(root=path_to_file_url(project_dir)) as runtime:
            assert await runtime.eval("1") == 1
        assert runtime.closed


# ===== LIFECYCLE TESTS =====

@pytest.mark.unit
class TestClose:
    """Test teardown on close"""

    @pytest.mark.asyncio
    async def test_teardown_lifo(self, runtime):
        order = []

        async def first():
            order.append("first")

        async def second():
            order.append("second")

        runtime.add_teardown(first)
        runtime.add_teardown(second)
        await runtime.close()
        await runtime.close()

        assert order == ["second", "first"]

    @pytest.mark.asyncio
    async def test_closed_runtime_rejects_calls(self, runtime):
        await runtime.init()
        await runtime.close()

        with pytest.raises(AlreadyClosedError):
            await runtime.fetch("echo://host/")
        with pytest.raises(AlreadyClosedError):
            await runtime.eval("1")
        with pytest.raises(LifecycleError):
            await runtime.init()

    @pytest.mark.asyncio
    async def test_close_clears_modules(self, runtime):
        await runtime.init()
        await runtime.import_url("mod.py")
        assert runtime.modules.stats()["size"] == 2

        await runtime.close()
        assert runtime.modules.stats()["size"] == 0
        assert runtime.context is None
