#!/usr/bin/env python3
"""
Switchboard CLI: one line in, four carriers out.

Every command has a short name and a standard alias:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    ask             chat, send      Send one prompt, stream the reply
    history         list, ls        List stored conversations
    show            view            Print one conversation
    dump            export          Export conversations (json/jsonl/markdown)
    forget          delete, rm      Delete a conversation
    tap             log, tail       Show recent wire log entries
"""

import argparse
import asyncio
import base64
import json
import logging
import mimetypes
import signal
import sys
from pathlib import Path

from switchboard import __version__

logger = logging.getLogger(__name__)

C_DIM = "\033[2m"
C_RESET = "\033[0m"


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def _setup_logging(cfg: dict, verbose: bool = False):
    log_cfg = cfg.get("logging", {})
    level_name = "DEBUG" if verbose else log_cfg.get("level", "WARNING")
    level = getattr(logging, str(level_name).upper(), logging.WARNING)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _load(args) -> dict:
    from switchboard.config import load_config

    try:
        cfg = load_config(args.config)
    except FileNotFoundError as e:
        print(f"  ✗  {e}", file=sys.stderr)
        print("     Pass --config or set SWITCHBOARD_CONFIG", file=sys.stderr)
        sys.exit(2)
    _setup_logging(cfg, verbose=args.verbose)
    return cfg


def _history(cfg: dict):
    from switchboard.config import storage_policy_from_config
    from switchboard.storage import HistoryStore, SQLiteKeyValueStore

    st = cfg.get("storage", {})
    policy = storage_policy_from_config(cfg)
    kv = SQLiteKeyValueStore(st.get("path", "./data/history.db"), quota_bytes=policy.quota_bytes)
    return HistoryStore(kv, policy)


def _read_attachment(path: str):
    from switchboard.models import Attachment

    p = Path(path)
    mime = mimetypes.guess_type(p.name)[0] or "application/octet-stream"
    return Attachment(data=base64.b64encode(p.read_bytes()).decode("ascii"), mime_type=mime, name=p.name)


class _StreamPrinter:
    """Prints only the new suffix of each cumulative update."""

    def __init__(self, show_thoughts: bool = False):
        self.show_thoughts = show_thoughts
        self.text_len = 0
        self.thoughts_len = 0

    def __call__(self, text: str, thoughts: str | None):
        if self.show_thoughts and thoughts and len(thoughts) > self.thoughts_len:
            sys.stdout.write(f"{C_DIM}{thoughts[self.thoughts_len:]}{C_RESET}")
            self.thoughts_len = len(thoughts)
        if len(text) > self.text_len:
            if self.text_len == 0 and self.thoughts_len:
                sys.stdout.write("\n\n")
            sys.stdout.write(text[self.text_len:])
            self.text_len = len(text)
        sys.stdout.flush()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _interrupt_handler(token, gate):
    """Ctrl-C cancels the in-flight request and mutes late stream updates."""

    def _on_interrupt():
        gate.mark_cancelled()
        token.cancel()

    return _on_interrupt


async def _ask(args, cfg: dict) -> int:
    from switchboard.cancellation import UpdateGate
    from switchboard.config import document_settings_from_config, settings_from_config
    from switchboard.models import ChatRequest
    from switchboard.providers import ProviderDispatcher
    from switchboard.wiretap import WireLog

    settings = settings_from_config(cfg, args.provider)
    provider = args.provider or cfg.get("provider", "web")
    history = _history(cfg)
    wire = WireLog(cfg.get("wiretap", {}).get("path", "./data/wire.jsonl"))

    text = " ".join(args.prompt)
    files = tuple(_read_attachment(p) for p in args.file or [])
    conv = history.get(args.resume) if args.resume else None

    request = ChatRequest(
        text=text,
        model=args.model or "",
        system_instruction=args.system,
        history=tuple(conv.messages) if conv else (),
        files=files,
        session_id=conv.id if conv else "",
        continuation_context=conv.continuation_context if conv else None,
    )

    dispatcher = ProviderDispatcher(document_settings=document_settings_from_config(cfg))
    printer = _StreamPrinter(show_thoughts=args.thoughts)

    def status(msg: str):
        print(f"  {C_DIM}{msg}{C_RESET}", file=sys.stderr)

    gate = UpdateGate()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _interrupt_handler(request.cancellation, gate))
        trapped = True
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler unavailable; Ctrl-C falls back to KeyboardInterrupt")
        trapped = False

    wire.log_prompt(text, provider, request.model, request.session_id)
    try:
        result = await dispatcher.dispatch(
            request, settings, on_update=gate.wrap(printer), on_status=status
        )
    finally:
        if trapped:
            loop.remove_signal_handler(signal.SIGINT)
        sys.stdout.write("\n")
    wire.log_result(result, provider, request.model, request.session_id)
    wire.close()

    if not result.ok:
        print(f"  ✗  {result.error_text}", file=sys.stderr)
        return 1

    for img in result.images:
        if img.get("url"):
            print(f"  🖼  {img['url']}")

    if args.no_save:
        return 0
    if conv:
        history.append_user(conv.id, text, [f.data_url for f in files] or None)
        saved = history.append_result(conv.id, result)
    else:
        saved = history.save_interaction(text, result, list(files))
    print(f"  {C_DIM}conv:{saved.id}{C_RESET}", file=sys.stderr)
    return 0


def cmd_ask(args):
    """Send one prompt and stream the reply."""
    from switchboard.errors import CancellationError, SwitchboardError

    cfg = _load(args)
    try:
        code = asyncio.run(_ask(args, cfg))
    except (KeyboardInterrupt, CancellationError):
        print(f"\n  {C_DIM}[cancelled]{C_RESET}", file=sys.stderr)
        code = 130
    except SwitchboardError as e:
        print(f"  ✗  {e.message}", file=sys.stderr)
        code = 1
    sys.exit(code)


def cmd_history(args):
    """List stored conversations, newest first."""
    from datetime import datetime

    history = _history(_load(args))
    conversations = history.list()[: args.limit]
    if not conversations:
        print("  No conversations yet.")
        return
    for conv in conversations:
        when = datetime.fromtimestamp(conv.timestamp / 1000).strftime("%Y-%m-%d %H:%M")
        print(f"  {conv.id[:12]}  {C_DIM}{when}{C_RESET}  {conv.title}  {C_DIM}({len(conv.messages)} msgs){C_RESET}")


def _find(history, prefix: str):
    from switchboard.errors import ConversationNotFound

    matches = [c for c in history.list() if c.id.startswith(prefix)]
    if len(matches) != 1:
        raise ConversationNotFound(
            f"No conversation matching '{prefix}'" if not matches else f"'{prefix}' is ambiguous"
        )
    return matches[0]


def cmd_show(args):
    """Print one conversation as Markdown."""
    from switchboard.errors import ConversationNotFound
    from switchboard.storage.history import to_markdown

    history = _history(_load(args))
    try:
        conv = _find(history, args.id)
    except ConversationNotFound as e:
        print(f"  ✗  {e.message}")
        sys.exit(1)
    print(to_markdown(conv))


def cmd_dump(args):
    """Export conversations."""
    from switchboard.errors import ConversationNotFound

    history = _history(_load(args))
    try:
        conv_id = _find(history, args.id).id if args.id else None
    except ConversationNotFound as e:
        print(f"  ✗  {e.message}")
        sys.exit(1)

    data = history.export(conv_id, fmt=args.format)
    with open(args.output, "w", encoding="utf-8") as f:
        if args.format == "markdown":
            f.write(data)
        elif args.format == "jsonl":
            for record in data:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        else:
            json.dump(data, f, indent=2 if args.pretty else None, ensure_ascii=False)

    count = 1 if conv_id else len(history.list())
    print(f"  📦 Exported {count} conversation(s) to {args.output}")


def cmd_forget(args):
    """Delete a conversation."""
    from switchboard.errors import ConversationNotFound

    history = _history(_load(args))
    try:
        conv = _find(history, args.id)
    except ConversationNotFound as e:
        print(f"  ✗  {e.message}")
        sys.exit(1)
    history.delete(conv.id)
    print(f"  🗑  Deleted {conv.id} ({conv.title})")


def cmd_tap(args):
    """Show recent wire log entries."""
    from switchboard.wiretap import tap

    log_path = args.log
    if log_path is None:
        log_path = _load(args).get("wiretap", {}).get("path", "./data/wire.jsonl")
    tap(log_path, last_n=args.last, follow=args.follow, role_filter=args.role, raw=args.raw)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="switchboard",
        description="Switchboard: one line in, four carriers out.",
        epilog="Run 'switchboard <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", "-V", action="version", version=f"switchboard {__version__}")
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_ask(p):
        p.add_argument("prompt", nargs="+", help="Prompt text")
        p.add_argument("--provider", "-p", choices=["official", "web", "openai", "grok"], default=None,
                       help="Override the configured provider")
        p.add_argument("--model", "-m", default=None, help="Model id (or configId::modelId)")
        p.add_argument("--system", "-s", default=None, help="System instruction")
        p.add_argument("--file", "-f", action="append", default=None, help="Attach a file (repeatable)")
        p.add_argument("--resume", "-r", default=None, help="Continue a stored conversation by id")
        p.add_argument("--thoughts", "-t", action="store_true", help="Stream thinking as well")
        p.add_argument("--no-save", action="store_true", help="Don't write to history")

    _add_command(sub, ["ask", "chat", "send"], "Send one prompt and stream the reply", cmd_ask, setup_ask)

    def setup_history(p):
        p.add_argument("--limit", "-n", type=int, default=20, help="Show at most N conversations")

    _add_command(sub, ["history", "list", "ls"], "List stored conversations", cmd_history, setup_history)

    def setup_id(p):
        p.add_argument("id", help="Conversation id (a unique prefix is enough)")

    _add_command(sub, ["show", "view"], "Print one conversation", cmd_show, setup_id)
    _add_command(sub, ["forget", "delete", "rm"], "Delete a conversation", cmd_forget, setup_id)

    def setup_dump(p):
        p.add_argument("--output", "-o", default="conversations_export.json", help="Output file")
        p.add_argument("--format", choices=["json", "jsonl", "markdown"], default="json", help="Export format")
        p.add_argument("--id", default=None, help="Export only this conversation")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["dump", "export"], "Export conversations", cmd_dump, setup_dump)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries")
        p.add_argument("--role", choices=["user", "assistant", "error"], default=None, help="Filter by role")
        p.add_argument("--follow", action="store_true", help="Keep watching for new entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"], "Show recent wire log entries", cmd_tap, setup_tap)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
