#!/usr/bin/env python3
"""
Polyfetch command-line interface.

Commands:
- run <script>: import a module by URL or path (--autoclose to exit afterwards)
- eval <code>: evaluate a snippet and print its value
- repl: interactive loop with multi-line input

Protocol flags (--no-http, --no-https, --no-file, --no-ipfs, --no-hyper) and
--root apply to every command.
"""

import argparse
import asyncio
import logging
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from polyfetch import __version__
from polyfetch.config import load_config
from polyfetch.core.runtime import Runtime
from polyfetch.core.urls import has_scheme, path_to_file_url

PROMPT = ">>> "
CONTINUATION_PROMPT = "... "


class PolyfetchCLI:
    """Command-line front end for the runtime."""

    def create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog="polyfetch",
            description="Run Python code fetched over web and peer-to-peer protocols",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument("--version", action="version", version=f"polyfetch {__version__}")
        parser.add_argument("--no-http", action="store_true", help="Disable loading from HTTP")
        parser.add_argument("--no-https", action="store_true", help="Disable loading from HTTPS")
        parser.add_argument("--no-file", action="store_true", help="Disable loading local files")
        parser.add_argument("--no-ipfs", action="store_true", help="Disable loading from IPFS")
        parser.add_argument("--no-hyper", action="store_true", help="Disable loading from hypercore-protocol")
        parser.add_argument("--root", help="Folder or URL that relative URLs resolve against (defaults to current folder)")
        parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

        subparsers = parser.add_subparsers(dest="command", help="Commands")

        run_parser = subparsers.add_parser("run", help="Import and run a module")
        run_parser.add_argument("script", nargs="?", help="Module URL or path")
        run_parser.add_argument(
            "-a", "--autoclose",
            action="store_true",
            help="Close the runtime once the module has been evaluated",
        )

        eval_parser = subparsers.add_parser("eval", help="Evaluate code and print the result")
        eval_parser.add_argument("code", nargs="?", help="Python code")

        subparsers.add_parser("repl", help="Interactive loop")

        return parser

    def config_overrides(self, args) -> Dict[str, Any]:
        overrides: Dict[str, Any] = {}
        if args.no_http:
            overrides["http"] = False
        if args.no_https:
            overrides["https"] = False
        if args.no_file:
            overrides["file"] = False
        if args.no_ipfs:
            overrides["ipfs"] = {"enabled": False}
        if args.no_hyper:
            overrides["hyper"] = {"enabled": False}
        if args.root:
            overrides["root"] = args.root if has_scheme(args.root) else path_to_file_url(Path(args.root))
        return overrides

    async def init_runtime(self, args) -> Runtime:
        config = load_config(self.config_overrides(args))
        runtime = Runtime(config)
        await runtime.init()
        return runtime

    # ===== COMMANDS =====

    async def run_script(self, args) -> int:
        if not args.script:
            logger.error("Must specify script to execute")
            return 1

        runtime = await self.init_runtime(args)
        try:
            await runtime.import_url(args.script)
            if not args.autoclose:
                logger.info("Module evaluated, press Ctrl+C to exit")
                await asyncio.Event().wait()
        finally:
            await runtime.close()
        return 0

    async def eval_code(self, args) -> int:
        if not args.code:
            logger.error("Must specify code to evaluate")
            return 1

        runtime = await self.init_runtime(args)
        try:
            result = await runtime.eval(args.code)
            if result is not None:
                print(result)
        finally:
            await runtime.close()
        return 0

    async def repl(self, args) -> int:
        runtime = await self.init_runtime(args)
        lines: List[str] = []
        try:
            while True:
                prompt = CONTINUATION_PROMPT if lines else PROMPT
                try:
                    line = await asyncio.to_thread(input, prompt)
                except EOFError:
                    print()
                    break

                lines.append(line)
                source = "\n".join(lines)
                if runtime.evaluator.is_incomplete(source):
                    continue
                lines = []

                if not source.strip():
                    continue
                try:
                    result = await runtime.eval(source)
                except Exception:
                    traceback.print_exc()
                    continue
                if result is not None:
                    print(repr(result))
        finally:
            await runtime.close()
        return 0

    async def run_async(self, args) -> int:
        """Run CLI command asynchronously."""
        if args.command == "run":
            return await self.run_script(args)
        elif args.command == "eval":
            return await self.eval_code(args)
        elif args.command == "repl":
            return await self.repl(args)
        else:
            logger.error(f"Unknown command: {args.command}. Use --help for usage.")
            return 1

    def configure_logging(self, verbose: bool) -> None:
        logger.remove()
        logger.add(
            sys.stderr,
            level="DEBUG" if verbose else "INFO",
            format="<level>{level: <8}</level> {message}",
        )
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.WARNING,
            format="%(levelname)-8s %(name)s: %(message)s",
        )

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run CLI (entry point)."""
        parser = self.create_parser()
        args = parser.parse_args(argv)

        if not args.command:
            parser.print_help()
            return 1

        self.configure_logging(args.verbose)
        try:
            return asyncio.run(self.run_async(args))
        except KeyboardInterrupt:
            return 130


def main():
    """CLI entry point."""
    cli = PolyfetchCLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
