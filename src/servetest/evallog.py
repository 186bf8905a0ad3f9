"""Per-eval request/response logs.

A :class:`RunLogger` owns the log directory of one run. Each job obtains its
own :class:`EvalLog` handle from :meth:`RunLogger.eval`, writes to it while the
case runs, and the handle is flushed to ``<name>.log`` (plus
``<name>.stream.jsonl`` for streamed responses) when the job ends. Handles are
never shared, so concurrent evals cannot interleave their logs.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class EvalRecord:
    """Summary of a finished eval, kept by the parent logger."""

    name: str
    passed: bool
    message: str
    log_file: Path
    stream_file: Path | None = None


class RunLogger:
    """Creates the run's log directory and hands out per-eval handles.

    Logs are grouped by model: ``<root>/<model>/<timestamp>/``.

    Args:
        model: Model under test; used as a directory name.
        root: Parent directory of all runs.
    """

    def __init__(self, model: str, root: str | Path = "logs"):
        timestamp = datetime.now().strftime("%Y-%m-%d_%H%M%S")
        self.model = model
        self.dir = Path(root) / _safe_name(model) / timestamp
        self.dir.mkdir(parents=True, exist_ok=True)
        self.records: list[EvalRecord] = []
        logger.debug(f"Writing eval logs to {self.dir}")

    def start_eval(self, name: str) -> EvalLog:
        return EvalLog(self, name)

    @contextmanager
    def eval(self, name: str) -> Iterator[EvalLog]:
        """Scope a handle to one eval; the log is written on exit."""
        handle = self.start_eval(name)
        try:
            yield handle
        finally:
            handle.end()

    def log_path(self, name: str) -> Path:
        return self.dir / f"{_safe_name(name)}.log"

    def _register(self, record: EvalRecord) -> None:
        self.records.append(record)


class EvalLog:
    """Log buffer for a single eval."""

    def __init__(self, parent: RunLogger, name: str):
        self.parent = parent
        self.name = name
        self.passed = False
        self.message = ""
        self.stream_chunks = ""
        self.closed = False
        self._lines: list[str] = [
            f"=== Eval: {name} ===",
            f"Started: {datetime.now().astimezone().isoformat()}",
            "",
        ]

    def log_request(self, method: str, url: str, body: Any) -> None:
        self._lines += [">>> REQUEST", f"{method} {url}", "", _format_json(body), ""]

    def log_response(self, status: int, body: str) -> None:
        self._lines += ["<<< RESPONSE", f"Status: {status}", "", _format_json(body), ""]

    def log_stream_response(self, status: int, raw: str) -> None:
        self._lines += ["<<< STREAM RESPONSE", f"Status: {status}", "", raw]

    def log_stream_chunks(self, jsonl: str) -> None:
        """Keep the decoded chunks for the replay file.

        A later stream in the same eval is appended after the earlier ones.
        """
        self.stream_chunks += jsonl

    def log_error(self, error: BaseException) -> None:
        self._lines += [f"!!! ERROR: {error}", ""]

    def log_validation(self, description: str, expected: Any, actual: Any) -> None:
        self._lines += [
            f"--- VALIDATION: {description}",
            f"Expected: {expected}",
            f"Actual:   {actual}",
            "",
        ]

    def log_result(self, passed: bool, message: str) -> None:
        self.passed = passed
        self.message = message
        self._lines.append(f"=== Result: {'PASSED' if passed else 'FAILED'} ===")
        if message:
            self._lines.append(message)

    def text(self) -> str:
        return "\n".join(self._lines) + "\n"

    def end(self) -> None:
        """Write the log files and register the eval with the parent.

        Calling ``end`` more than once has no further effect.
        """
        if self.closed:
            return
        self.closed = True

        log_file = self.parent.log_path(self.name)
        log_file.write_text(self.text(), encoding="utf-8")

        stream_file = None
        if self.stream_chunks:
            stream_file = self.parent.dir / f"{_safe_name(self.name)}.stream.jsonl"
            stream_file.write_text(self.stream_chunks, encoding="utf-8")

        self.parent._register(EvalRecord(
            name=self.name,
            passed=self.passed,
            message=self.message,
            log_file=log_file,
            stream_file=stream_file,
        ))


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("_") or "unnamed"


def _format_json(body: Any) -> str:
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except ValueError:
            return body.decode("utf-8", "replace") if isinstance(body, bytes) else body
    return json.dumps(body, indent=2, ensure_ascii=False)
