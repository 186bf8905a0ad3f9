import sys
from typing import TextIO

from servetest.evallog import RunLogger
from servetest.evals.base import EvalCase, Result

PASS_MARK = "✓"
FAIL_MARK = "✗"


class ConsolePresenter:
    """Prints run progress for a human reader.

    The runner calls the presenter from one place only (the sequential loop
    or the parallel aggregator), so lines are never interleaved.

    Args:
        out: Stream to write to.
        verbose: Point at the log file of each failed eval.
        run_logger: Owner of the per-eval logs, if any.
    """

    def __init__(
        self,
        out: TextIO | None = None,
        verbose: bool = False,
        run_logger: RunLogger | None = None,
    ):
        self.out = out or sys.stdout
        self.verbose = verbose
        self.run_logger = run_logger

    def _print(self, text: str = "") -> None:
        print(text, file=self.out, flush=True)

    def header(self, base_url: str, model: str) -> None:
        self._print("LLM Serving Tests")
        self._print("=================")
        self._print(f"Server: {base_url}")
        self._print(f"Model: {model}")
        self._print()

    def category(self, name: str) -> None:
        self._print(name)

    def result(self, result: Result, parallel: bool = False) -> None:
        ms = int(result.duration * 1000)
        suffix = f" [{result.category}]" if parallel else ""
        indent = "" if parallel else "  "
        if result.passed:
            self._print(f"{indent}{PASS_MARK} {result.name} ({ms}ms){suffix}")
            return
        self._print(f"{indent}{FAIL_MARK} {result.name} - {result.message}{suffix}")
        if self.verbose and self.run_logger is not None:
            self._print(f"    See log: {self.run_logger.log_path(result.name)}")

    def summary(self, results: list[Result]) -> None:
        passed = sum(1 for r in results if r.passed)
        self._print()
        self._print(f"Results: {passed}/{len(results)} passed")
        if self.run_logger is not None:
            self._print()
            self._print(f"Logs written to: {self.run_logger.dir}")

    def listing(self, entries: list[tuple[str, EvalCase]]) -> None:
        """Print planned jobs grouped by category.

        Args:
            entries: ``(job name, case)`` pairs in run order.
        """
        current = None
        for name, case in entries:
            if case.category != current:
                if current is not None:
                    self._print()
                current = case.category
                self._print(current)
            marker = " (disabled by default)" if case.default_disabled else ""
            self._print(f"  {name:<45} [{case.tier.value}]{marker}")
