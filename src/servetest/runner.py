import asyncio
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace

from servetest.client import Client
from servetest.config import DEFAULT_MODE, Mode, RunMode, RunnerConfig, Tier
from servetest.console import ConsolePresenter
from servetest.errors import ClientError
from servetest.evallog import EvalLog, RunLogger
from servetest.evals import all_evals
from servetest.evals.base import EvalCase, EvalContext, EvalFailure, Result
from servetest.instrumentation import eval_span, record_error, record_result

logger = logging.getLogger(__name__)


def select_cases(
    cases: list[EvalCase],
    name_filter: str = "",
    tier: Tier | None = None,
    include_all: bool = False,
) -> list[EvalCase]:
    """Filter registered cases by name, tier and default enablement.

    Args:
        cases: Registered cases in registration order.
        name_filter: Substring the case name must contain; empty keeps all.
        tier: Highest tier to keep; ``None`` keeps every tier.
        include_all: Keep cases that are disabled by default.
    """
    selected = []
    for case in cases:
        if name_filter and name_filter not in case.name:
            continue
        if tier is not None and not tier.includes(case.tier):
            continue
        if case.default_disabled and not include_all:
            continue
        selected.append(case)
    return selected


@dataclass(frozen=True)
class Job:
    """One case to run in one delivery mode under a unique result name."""

    case: EvalCase
    mode: Mode
    name: str


def expand_jobs(cases: list[EvalCase], mode: RunMode) -> list[Job]:
    """Expand selected cases into jobs.

    With ``RunMode.BOTH`` a mode-capable case becomes two jobs whose names
    carry the mode. Cases that cannot switch modes always run once in the
    default mode.
    """
    jobs = []
    for case in cases:
        if not case.supports_modes:
            jobs.append(Job(case=case, mode=DEFAULT_MODE, name=case.name))
            continue
        modes = mode.modes
        for m in modes:
            name = f"{case.name}_{m.value}" if len(modes) > 1 else case.name
            jobs.append(Job(case=case, mode=m, name=name))
    return jobs


def group_by_category(jobs: list[Job]) -> list[Job]:
    """Stable-group jobs by category, categories in order of first appearance."""
    order: dict[str, list[Job]] = {}
    for job in jobs:
        order.setdefault(job.case.category, []).append(job)
    return [job for group in order.values() for job in group]


async def _unless_failed(aw, aggregator: asyncio.Task):
    """Await *aw*, re-raising the aggregator's error if it dies first.

    Workers and the sentinel both block on the bounded result queue, which
    only the aggregator drains.
    """
    task = asyncio.ensure_future(aw)
    try:
        await asyncio.wait({task, aggregator}, return_when=asyncio.FIRST_COMPLETED)
        if not task.done():
            # The aggregator only returns after the sentinel.
            aggregator.result()
        return task.result()
    finally:
        task.cancel()


class Runner:
    """Runs the selected evals and collects one result per job.

    With ``config.jobs <= 1`` jobs run one at a time in registration order,
    grouped by category. Otherwise a pool of ``config.jobs`` worker tasks
    pulls jobs from a shared queue and hands results to a single aggregator
    task, which is the only place results are printed and recorded.

    Failures never stop the run: every selected job produces exactly one
    result, and no job is retried.

    Args:
        client: Shared client for the server under test.
        config: Selection and execution settings.
        cases: Registered cases; defaults to :func:`all_evals`.
        logger: Per-eval log sink, or ``None`` to disable file logs.
        presenter: Console output; defaults to stdout.
    """

    def __init__(
        self,
        client: Client,
        config: RunnerConfig,
        cases: list[EvalCase] | None = None,
        logger: RunLogger | None = None,
        presenter: ConsolePresenter | None = None,
    ):
        self.client = client
        self.config = config
        self.cases = cases if cases is not None else all_evals()
        self.logger = logger
        self.presenter = presenter or ConsolePresenter(
            verbose=config.verbose,
            run_logger=logger,
        )

    def jobs(self) -> list[Job]:
        selected = select_cases(
            self.cases,
            name_filter=self.config.name_filter,
            tier=self.config.tier,
            include_all=self.config.include_all,
        )
        return group_by_category(expand_jobs(selected, self.config.mode))

    async def run(self) -> list[Result]:
        jobs = self.jobs()
        logger.info(f"Running {len(jobs)} job(s) with {self.config.jobs} worker(s)")
        if self.config.jobs <= 1:
            return await self._run_sequential(jobs)
        return await self._run_parallel(jobs)

    @staticmethod
    def all_passed(results: list[Result]) -> bool:
        return all(r.passed for r in results)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _run_sequential(self, jobs: list[Job]) -> list[Result]:
        results = []
        current_category = None
        for job in jobs:
            if job.case.category != current_category:
                current_category = job.case.category
                self.presenter.category(current_category)
            result = await self.run_job(job)
            self.presenter.result(result)
            results.append(result)
        return results

    async def _run_parallel(self, jobs: list[Job]) -> list[Result]:
        job_queue: asyncio.Queue[Job | None] = asyncio.Queue()
        result_queue: asyncio.Queue[Result | None] = asyncio.Queue(
            maxsize=self.config.jobs,
        )
        results: list[Result] = []

        for job in jobs:
            job_queue.put_nowait(job)
        n_workers = min(self.config.jobs, max(len(jobs), 1))
        for _ in range(n_workers):
            job_queue.put_nowait(None)

        aggregator = asyncio.create_task(self._aggregate(result_queue, results))
        workers = asyncio.gather(*[
            asyncio.create_task(self._worker(job_queue, result_queue))
            for _ in range(n_workers)
        ])
        try:
            await _unless_failed(workers, aggregator)
            await _unless_failed(result_queue.put(None), aggregator)
            await aggregator
        finally:
            workers.cancel()
            aggregator.cancel()
            await asyncio.gather(workers, aggregator, return_exceptions=True)
        return results

    async def _worker(
        self,
        job_queue: "asyncio.Queue[Job | None]",
        result_queue: "asyncio.Queue[Result | None]",
    ) -> None:
        while True:
            job = await job_queue.get()
            if job is None:
                return
            result = await self.run_job(job)
            await result_queue.put(result)

    async def _aggregate(
        self,
        result_queue: "asyncio.Queue[Result | None]",
        results: list[Result],
    ) -> None:
        while True:
            result = await result_queue.get()
            if result is None:
                return
            self.presenter.result(result, parallel=True)
            results.append(result)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_job(self, job: Job) -> Result:
        """Run one job in its own log scope and return its stamped result."""
        case = job.case.with_mode(job.mode)
        with self._eval_log(job.name) as log:
            ctx = EvalContext(mode=job.mode, log=log)
            client = self.client.with_log(log)

            async with eval_span(job.name, job.mode.value) as span:
                start = time.perf_counter()
                try:
                    result = await case.run(ctx, client)
                except EvalFailure as e:
                    result = case.fail(str(e))
                except ClientError as e:
                    record_error(span, e)
                    result = case.fail(f"request failed: {e}")
                except Exception as e:
                    logger.error(f"Eval {job.name} raised: {e!r}")
                    record_error(span, e)
                    if log is not None:
                        log.log_error(e)
                    result = case.fail(f"unexpected error: {type(e).__name__}: {e}")
                duration = time.perf_counter() - start
                record_result(span, result.passed, result.message)

            result = replace(
                result,
                name=job.name,
                category=case.category,
                duration=duration,
                mode=job.mode,
            )
            if log is not None:
                log.log_result(result.passed, result.message)

        logger.debug(f"{job.name}: passed={result.passed} in {duration:.3f}s")
        return result

    @contextmanager
    def _eval_log(self, name: str) -> Iterator[EvalLog | None]:
        if self.logger is None:
            yield None
            return
        with self.logger.eval(name) as log:
            yield log
