"""
Execution environment for fetched source.

The module cache only talks to an Evaluator through four calls:

    await evaluate(module, source, resolve)   # link + evaluate one module
    await run(code, context)                  # evaluate a snippet
    exports(module)                           # exported bindings
    is_incomplete(code)                       # REPL continuation check

PythonEvaluator is the default: modules are plain Python source. A module
declares the modules it links against with a literal mapping

    __imports__ = {"util": "./util.py", "chat": "hyper://example/chat.py"}

Each specifier is resolved relative to the module's own URL and bound
under its name before the body runs. Top-level ``await`` is allowed, and
``import_module(specifier)`` is available for dynamic imports.
"""

import ast
import codeop
import inspect
import logging
import types
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from polyfetch.core.globals_registry import GlobalRegistry

logger = logging.getLogger(__name__)

ImportResolver = Callable[[str], Awaitable[types.ModuleType]]

IMPORTS_NAME = "__imports__"
INJECTED_NAME = "__injected__"
_FLAGS = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT


class Evaluator(ABC):
    """Contract between the module cache and an execution environment."""

    @abstractmethod
    async def evaluate(self, module: types.ModuleType, source: str, resolve: ImportResolver) -> None:
        """
        Link and evaluate source into an already-created module object.

        The module object is registered with the cache before this is
        called, so cyclic importers can hold a reference to it while it is
        still being evaluated.
        """

    @abstractmethod
    async def run(self, code: str, context: Dict[str, Any], filename: str = "<eval>") -> Any:
        """Evaluate a snippet in a shared context and return its completion value."""

    def exports(self, module: types.ModuleType) -> Dict[str, Any]:
        """Snapshot of a module's exported names."""
        names = getattr(module, "__all__", None)
        if names is not None:
            return {name: getattr(module, name) for name in names}
        return {
            name: value
            for name, value in vars(module).items()
            if not name.startswith("_")
        }

    def is_incomplete(self, code: str) -> bool:
        return False


class PythonEvaluator(Evaluator):
    """
    Evaluates Python source modules.

    Args:
        globals_registry: Values injected into every namespace (fetch, llm, ...)
    """

    def __init__(self, globals_registry: Optional[GlobalRegistry] = None):
        self.globals_registry = globals_registry or GlobalRegistry()
        self._compiler = codeop.CommandCompiler()
        self._compiler.compiler.flags |= _FLAGS

    def _inject(self, module: types.ModuleType, resolve: ImportResolver) -> set:
        url = module.__name__
        namespace = module.__dict__

        async def import_module(specifier: str) -> types.ModuleType:
            return await resolve(specifier)

        injected = self.globals_registry.create_context()
        injected["import_module"] = import_module
        namespace.update(injected)
        namespace["__file__"] = url
        namespace["__url__"] = url
        return set(injected)

    @staticmethod
    def declared_imports(tree: ast.Module, url: str) -> Dict[str, str]:
        """Read the literal __imports__ mapping from a parsed module, if any."""
        for node in tree.body:
            if isinstance(node, ast.Assign):
                targets = node.targets
            elif isinstance(node, ast.AnnAssign) and node.value is not None:
                targets = [node.target]
            else:
                continue

            if not any(isinstance(t, ast.Name) and t.id == IMPORTS_NAME for t in targets):
                continue

            try:
                value = ast.literal_eval(node.value)
            except ValueError:
                raise ValueError(f"{IMPORTS_NAME} in {url} must be a literal mapping")

            if not isinstance(value, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in value.items()
            ):
                raise ValueError(f"{IMPORTS_NAME} in {url} must map names to URL strings")
            return value

        return {}

    async def evaluate(self, module: types.ModuleType, source: str, resolve: ImportResolver) -> None:
        url = module.__name__
        tree = ast.parse(source, filename=url)
        imports = self.declared_imports(tree, url)

        injected = self._inject(module, resolve)

        # link
        for name, specifier in imports.items():
            module.__dict__[name] = await resolve(specifier)
        injected.update(imports)
        module.__dict__[INJECTED_NAME] = frozenset(injected)

        # evaluate
        code = compile(tree, url, "exec", flags=_FLAGS)
        result = eval(code, module.__dict__)
        if code.co_flags & inspect.CO_COROUTINE:
            await result

        logger.debug(f"Evaluated module {url} ({len(imports)} static imports)")

    async def run(self, code: str, context: Dict[str, Any], filename: str = "<eval>") -> Any:
        tree = ast.parse(code, filename=filename)

        last_expr = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last_expr = ast.Expression(tree.body.pop().value)

        if tree.body:
            compiled = compile(tree, filename, "exec", flags=_FLAGS)
            result = eval(compiled, context)
            if compiled.co_flags & inspect.CO_COROUTINE:
                await result

        if last_expr is None:
            return None

        compiled = compile(last_expr, filename, "eval", flags=_FLAGS)
        value = eval(compiled, context)
        if compiled.co_flags & inspect.CO_COROUTINE:
            value = await value
        return value

    def exports(self, module: types.ModuleType) -> Dict[str, Any]:
        names = getattr(module, "__all__", None)
        if names is not None:
            return {name: getattr(module, name) for name in names}

        injected = getattr(module, INJECTED_NAME, frozenset())
        return {
            name: value
            for name, value in vars(module).items()
            if not name.startswith("_") and name not in injected
        }

    def is_incomplete(self, code: str) -> bool:
        """
        True when code is a valid prefix that needs more lines.

        Real syntax errors return False so that running the code surfaces
        the real SyntaxError.
        """
        try:
            return self._compiler(code, "<repl>", "single") is None
        except (SyntaxError, OverflowError, ValueError):
            return False
