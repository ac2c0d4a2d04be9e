"""Entry point: python -m honcho_sync <event>

Reads the host's event record (JSON) from stdin, runs one hook handler and
prints the hook output (JSON) to stdout. Always exits 0: a failing hook
must never block the host.

Events: session-start, user-prompt, post-tool-use, pre-compact, stop,
session-end, flush.
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import os
import sys
from pathlib import Path

from honcho_sync.config import detect_host
from honcho_sync.hooks import HANDLERS, HookEvent, HookRunner
from honcho_sync.service import ServiceFactory
from honcho_sync.state import LocalState

logger = logging.getLogger("honcho_sync")


def _setup_logging(level: str, log_file: Path | None) -> None:
    handler: logging.Handler
    if log_file is not None:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
        level = "WARNING"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[handler],
    )


def load_service_factory(reference: str | None) -> ServiceFactory | None:
    """Resolve a ``module:callable`` reference to a service factory."""
    if not reference:
        return None
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        logger.warning("HONCHO_SYNC_SERVICE must look like 'module:callable', got %r", reference)
        return None
    try:
        return getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        logger.warning("Could not load service factory %s: %s", reference, e)
        return None


async def _dispatch(runner: HookRunner, command: str, event: HookEvent) -> dict | None:
    if command == "flush":
        count = await runner.flush()
        return {"systemMessage": f"Uploaded {count} queued messages"} if count else None
    result = await HANDLERS[command](runner, event)
    return result.to_output()


def run(command: str, stdin_text: str, environ=None) -> dict | None:
    environ = os.environ if environ is None else environ
    try:
        data = json.loads(stdin_text) if stdin_text.strip() else {}
    except json.JSONDecodeError as e:
        logger.warning("Ignoring malformed hook input: %s", e)
        data = {}
    if not isinstance(data, dict):
        data = {}

    state = LocalState.open(host=detect_host(data, environ), environ=environ)
    config = state.config.load()
    log_file = state.activity_log if config is not None and config.logging_enabled else None
    _setup_logging(environ.get("HONCHO_LOG_LEVEL", "INFO"), log_file)

    event = HookEvent.from_dict(data, default_cwd=os.getcwd())
    runner = HookRunner(state, load_service_factory(environ.get("HONCHO_SYNC_SERVICE")))
    logger.debug("Running %s for %s", command, event.cwd)
    return asyncio.run(_dispatch(runner, command, event))


def main() -> None:
    commands = [*HANDLERS, "flush"]
    command = sys.argv[1] if len(sys.argv) > 1 else ""
    if command not in commands:
        print(f"Usage: python -m honcho_sync [{'|'.join(commands)}]", file=sys.stderr)
        sys.exit(0)

    try:
        output = run(command, sys.stdin.read())
    except Exception:
        logger.exception("Hook %s failed", command)
        output = None
    if output:
        print(json.dumps(output))
    sys.exit(0)


if __name__ == "__main__":
    main()
