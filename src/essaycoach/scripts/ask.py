"""CLI helper that streams one feedback exchange through the full pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Sequence

from ..ai.client import AIClient
from ..ai.normalization import NORMALIZERS
from ..ai.prompts import build_step_prompt
from ..ai.transport import OpenAITransport
from ..conversation.persistence import JsonFilePersistence
from ..conversation.registry import SessionRegistry, context_id
from ..conversation.store import ConversationStore
from ..services.settings import SettingsStore, redact_secret
from ..utils.logging import setup_logging

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Send a prompt to the AI tutor, printing commentary live and the final JSON result."
    )
    parser.add_argument("prompt", nargs="?", help="Prompt text. Reads --file or stdin when omitted.")
    parser.add_argument("--file", type=Path, help="File containing the prompt text.")
    parser.add_argument(
        "--step",
        choices=sorted(NORMALIZERS),
        help="Workflow step; appends its output format and normalizes the result.",
    )
    parser.add_argument("--chat", action="store_true", help="Plain chat answer without a final JSON block.")
    parser.add_argument("--context", help="Explicit context id. Defaults to one built from --step/--topic/--slot.")
    parser.add_argument("--topic", default="cli", help="Topic id used to build the context id.")
    parser.add_argument("--slot", help="Slot id used to build the context id.")
    parser.add_argument("--no-history", action="store_true", help="Do not send earlier turns of the context.")
    parser.add_argument("--clear", action="store_true", help="Clear the history of the context and exit.")
    parser.add_argument("--settings", type=Path, help="Path to the settings JSON file.")
    parser.add_argument("--model", help="Model identifier override.")
    parser.add_argument("--base-url", help="API base URL override.")
    parser.add_argument("--api-key", help="API key override (not saved).")
    parser.add_argument("--data-dir", help="Directory holding conversation histories.")
    parser.add_argument("--idle-timeout", type=float, help="Seconds without output before cancelling.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    overrides: dict[str, Any] = {
        "model": args.model,
        "base_url": args.base_url,
        "api_key": args.api_key,
        "data_dir": args.data_dir,
        "idle_timeout": args.idle_timeout,
        "debug_logging": True if args.debug else None,
    }
    settings = SettingsStore(args.settings).load(overrides=overrides)
    setup_logging(logging.DEBUG if settings.debug_logging else logging.INFO)
    LOGGER.debug("essaycoach-ask: model=%s, api_key=%s", settings.model, redact_secret(settings.api_key))

    key = args.context or context_id(args.step or "chat", args.topic, args.slot)
    if args.clear:
        return asyncio.run(_clear(settings.data_dir, key))

    prompt = _load_prompt(args.prompt, args.file)
    if not prompt:
        print("No prompt provided.", file=sys.stderr)
        return 1
    if not settings.api_key:
        print("No API key configured; set ESSAYCOACH_API_KEY or pass --api-key.", file=sys.stderr)
        return 2

    return asyncio.run(_ask(args, settings, key, prompt))


async def _clear(data_dir: str, key: str) -> int:
    store = ConversationStore(JsonFilePersistence(data_dir))
    await store.clear(key)
    print(f"Cleared history for {key}")
    return 0


async def _ask(args: argparse.Namespace, settings: Any, key: str, prompt: str) -> int:
    client = AIClient(settings.client_settings())
    registry = SessionRegistry(
        OpenAITransport(client),
        ConversationStore(JsonFilePersistence(settings.data_dir)),
        idle_timeout=settings.idle_timeout,
        history_limit=settings.history_limit,
    )
    session = registry.session(key)
    structured = not args.chat
    if structured and args.step:
        prompt = build_step_prompt(args.step, prompt)

    printer = _PreviewPrinter()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel)
    except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows event loops
        pass

    try:
        result = await session.send(
            prompt,
            structured=structured,
            normalizer=NORMALIZERS.get(args.step) if structured and args.step else None,
            on_preview=printer.update,
            use_history=not args.no_history,
        )
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):  # pragma: no cover
            pass
        await client.aclose()

    printer.finish()
    if result.cancelled:
        print(f"[cancelled: {result.cancel_reason}]", file=sys.stderr)
        return 130
    if result.error is not None:
        print(f"Error: {result.error.message}", file=sys.stderr)
        if result.error.suggestion:
            print(f"Hint: {result.error.suggestion}", file=sys.stderr)
        return 1
    if result.json is not None:
        print(json.dumps(result.json, ensure_ascii=False, indent=2))
    return 0


class _PreviewPrinter:
    """Writes only the newly streamed part of the commentary to stdout."""

    def __init__(self) -> None:
        self._shown = ""

    def update(self, text: str) -> None:
        if not text.startswith(self._shown):
            # Text already written to stdout cannot be withdrawn.
            return
        sys.stdout.write(text[len(self._shown) :])
        sys.stdout.flush()
        self._shown = text

    def finish(self) -> None:
        if self._shown and not self._shown.endswith("\n"):
            sys.stdout.write("\n")
        sys.stdout.flush()


def _load_prompt(inline: str | None, path: Path | None) -> str:
    if inline:
        return inline.strip()
    if path:
        return path.read_text(encoding="utf-8").strip()
    if sys.stdin.isatty():
        return ""
    return sys.stdin.read().strip()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
