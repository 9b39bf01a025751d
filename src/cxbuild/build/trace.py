"""Build trace and compilation database output.

``build_trace.json`` is in the Chrome trace event format (load it in
chrome://tracing or Perfetto). ``compile_commands.json`` follows the Clang
JSON compilation database format.
"""

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

TRACE_FILE_NAME = "build_trace.json"
COMPILE_COMMANDS_NAME = "compile_commands.json"


@dataclass
class TraceEvent:
    """One completed span of build work."""

    name: str
    category: str
    start: float
    elapsed: float
    thread: str = "main"


def write_json_atomic(path: Path, payload) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_suffix(f".{os.getpid()}.{threading.get_ident()}.tmp")
    with open(temp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    os.replace(temp, path)
    return path


def write_chrome_trace(path: Path, events: Iterable[TraceEvent]) -> Path:
    """Write complete ("X") events with microsecond timestamps."""
    events = list(events)
    origin = min((e.start for e in events), default=0.0)
    threads: Dict[str, int] = {}
    trace_events: List[dict] = []
    for event in sorted(events, key=lambda e: e.start):
        tid = threads.setdefault(event.thread, len(threads) + 1)
        trace_events.append({
            "name": event.name,
            "cat": event.category,
            "ph": "X",
            "ts": int((event.start - origin) * 1_000_000),
            "dur": max(1, int(event.elapsed * 1_000_000)),
            "pid": os.getpid(),
            "tid": tid,
        })
    return write_json_atomic(path, {"traceEvents": trace_events, "displayTimeUnit": "ms"})


def write_compile_commands(path: Path, directory: Path, entries: Sequence[tuple]) -> Path:
    """Write a compilation database.

    Args:
        path: Output file
        directory: Working directory the commands run from
        entries: (source, object_path, command) tuples
    """
    database = [
        {
            "directory": str(directory),
            "file": str(source),
            "output": str(object_path),
            "arguments": list(command),
        }
        for source, object_path, command in sorted(entries, key=lambda e: str(e[0]))
    ]
    return write_json_atomic(path, database)
