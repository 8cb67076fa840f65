"""
Wire log: a JSONL record of every prompt sent and every reply received.

Separate from the debug log. One line per event, so `switchboard tap` (or
jq) can show exactly what went to which provider and what came back,
including failures and whether the reply carried thoughts.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 2000

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"       # cyan
C_ASSISTANT = "\033[93m"  # yellow
C_PROVIDER = "\033[95m"   # magenta
C_ERROR = "\033[91m"      # red
C_MUTED = "\033[90m"      # gray

ROLE_COLORS = {
    "user": C_USER,
    "assistant": C_ASSISTANT,
    "error": C_ERROR,
}


def _clip(content: str) -> str:
    if len(content) <= MAX_CONTENT_CHARS:
        return content
    half = MAX_CONTENT_CHARS // 2
    dropped = len(content) - MAX_CONTENT_CHARS
    return f"{content[:half]}\n\n[... {dropped} chars truncated ...]\n\n{content[-half:]}"


class WireLog:
    """
    Append-only JSONL writer.

    Format:
        {"ts": "...", "dir": "outbound|inbound", "role": "user|assistant|error",
         "provider": "...", "model": "...", "conv": "...", "len": 123,
         "content": "...", "thoughts_len": 0}
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1, encoding="utf-8")

    def log(
        self,
        direction: str,
        role: str,
        content: str,
        provider: str = "",
        model: str = "",
        conversation_id: str = "",
        thoughts: str | None = None,
    ):
        self._ensure_open()
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "role": role,
            "provider": provider,
            "model": model,
            "conv": conversation_id[:16] if conversation_id else "",
            "len": len(content),
            "content": _clip(content),
        }
        if thoughts:
            entry["thoughts_len"] = len(thoughts)
        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def log_prompt(self, text: str, provider: str, model: str = "", conversation_id: str = ""):
        self.log("outbound", "user", text, provider=provider, model=model, conversation_id=conversation_id)

    def log_result(self, result, provider: str, model: str = "", conversation_id: str = ""):
        """Record a ChatResult; failures go in as role "error"."""
        if result.ok:
            self.log("inbound", "assistant", result.text, provider=provider, model=model,
                     conversation_id=conversation_id, thoughts=result.thoughts)
        else:
            self.log("inbound", "error", result.error_text or "", provider=provider, model=model,
                     conversation_id=conversation_id)

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def read_entries(log_path: str | Path, last_n: int = 20, role_filter: str | None = None) -> list[dict]:
    """Last `last_n` parseable entries, optionally only one role."""
    path = Path(log_path)
    if not path.exists():
        return []
    entries = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if role_filter and entry.get("role") != role_filter:
                continue
            entries.append(entry)
    return entries[-last_n:] if last_n > 0 else entries


def _format_entry(entry: dict, raw: bool = False) -> str:
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    role = entry.get("role", "?")
    color = ROLE_COLORS.get(role, C_RESET)
    arrow = "──▶" if entry.get("dir") == "outbound" else "◀──"

    header = f"  {C_MUTED}{time_str}{C_RESET} {C_DIM}{arrow}{C_RESET} {color}{C_BOLD}{role.upper()}{C_RESET}"
    target = "/".join(p for p in (entry.get("provider"), entry.get("model")) if p)
    if target:
        header += f"  {C_PROVIDER}[{target}]{C_RESET}"
    header += f"  {C_DIM}({entry.get('len', 0)} chars"
    if entry.get("thoughts_len"):
        header += f", {entry['thoughts_len']} thinking"
    header += f"){C_RESET}"
    if entry.get("conv"):
        header += f"  {C_DIM}conv:{entry['conv']}{C_RESET}"

    lines = [header]
    content = entry.get("content", "")
    if content:
        body = content.split("\n")
        lines.extend(f"      {line}" for line in body[:15])
        if len(body) > 15:
            lines.append(f"      {C_DIM}[... {len(body) - 15} more lines]{C_RESET}")
    lines.append(f"  {C_MUTED}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def tap(
    log_path: str,
    last_n: int = 20,
    follow: bool = False,
    role_filter: str | None = None,
    raw: bool = False,
):
    """Print recent wire entries; with follow=True keep printing new ones."""
    path = Path(log_path)
    if not path.exists():
        print(f"  ✗  No wire log found at {path}")
        return

    for entry in read_entries(path, last_n, role_filter):
        print(_format_entry(entry, raw=raw))

    if not follow:
        return

    try:
        with open(path, encoding="utf-8") as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if role_filter and entry.get("role") != role_filter:
                    continue
                print(_format_entry(entry, raw=raw))
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[tap closed]{C_RESET}")
