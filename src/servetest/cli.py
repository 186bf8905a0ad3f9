"""Command line entry point: ``llm-serve-test``.

Examples::

    llm-serve-test --base-url http://localhost:8080/v1 --model qwen3
    llm-serve-test run --base-url ... --model ... --tier reasoning --mode both -j 4
    llm-serve-test list --all --mode both
"""

import argparse
import asyncio
import logging
import sys

from servetest.client import Client
from servetest.config import RunMode, RunnerConfig, Tier, build_config, parse_tier
from servetest.console import ConsolePresenter
from servetest.errors import ConfigError
from servetest.evallog import RunLogger
from servetest.runner import Runner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _add_selection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--filter", default="", dest="name_filter",
        help="only run evals whose name contains this substring",
    )
    parser.add_argument(
        "--tier", default=None, choices=[t.value for t in Tier],
        help="highest model tier to test (default: all tiers)",
    )
    parser.add_argument(
        "--all", action="store_true", dest="include_all",
        help="include evals that are disabled by default",
    )
    parser.add_argument(
        "--mode", default=RunMode.BLOCKING.value,
        choices=[m.value for m in RunMode],
        help="delivery mode(s) to exercise",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llm-serve-test",
        description="Test an OpenAI-compatible LLM inference server.",
    )
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="run evals against a server (default)")
    run.add_argument("--base-url", required=True, help="e.g. http://localhost:8080/v1")
    run.add_argument("--model", required=True)
    run.add_argument("--api-key", default=None, help="default: $OPENAI_API_KEY")
    run.add_argument("--timeout", type=float, default=30.0, help="request timeout in seconds")
    _add_selection_args(run)
    run.add_argument("-j", "--jobs", type=int, default=1, help="number of concurrent evals")
    run.add_argument(
        "--extra", action="append", default=[], metavar="KEY=VALUE",
        help="extra request field; use KEY:=JSON for non-string values (repeatable)",
    )
    run.add_argument("--log-dir", default="logs", help="root directory for eval logs")
    run.add_argument("--no-log", action="store_true", help="do not write eval logs")
    run.add_argument("-v", "--verbose", action="store_true", help="show log paths of failed evals")
    run.add_argument("--debug", action="store_true", help="enable debug logging")
    run.add_argument("--trace", action="store_true", help="export OpenTelemetry spans to the console")

    ls = sub.add_parser("list", help="list the evals a run would execute")
    _add_selection_args(ls)
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in ("run", "list", "-h", "--help"):
        argv.insert(0, "run")
    return build_parser().parse_args(argv)


def setup_tracing(service_name: str) -> None:
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        ConsoleSpanExporter, SimpleSpanProcessor,
    )

    from servetest.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


async def run(args: argparse.Namespace, presenter: ConsolePresenter | None = None) -> int:
    client_config, runner_config = build_config(
        base_url=args.base_url,
        model=args.model,
        api_key=args.api_key,
        timeout=args.timeout,
        extra=args.extra,
        name_filter=args.name_filter,
        tier=args.tier,
        include_all=args.include_all,
        mode=args.mode,
        jobs=args.jobs,
        verbose=args.verbose,
    )
    logger.debug(f"Client config: {client_config!r}")

    run_logger = None
    if not args.no_log:
        run_logger = RunLogger(client_config.model, root=args.log_dir)

    presenter = presenter or ConsolePresenter(
        verbose=runner_config.verbose,
        run_logger=run_logger,
    )
    presenter.header(client_config.base_url, client_config.model)

    client = Client(client_config)
    try:
        runner = Runner(
            client, runner_config, logger=run_logger, presenter=presenter,
        )
        results = await runner.run()
    finally:
        await client.close()

    presenter.summary(results)
    return EXIT_OK if Runner.all_passed(results) else EXIT_FAILED


def list_evals(args: argparse.Namespace, presenter: ConsolePresenter | None = None) -> int:
    runner_config = RunnerConfig(
        name_filter=args.name_filter,
        tier=parse_tier(args.tier),
        include_all=args.include_all,
        mode=RunMode(args.mode),
    )
    presenter = presenter or ConsolePresenter()
    jobs = Runner(None, runner_config, presenter=presenter).jobs()
    presenter.listing([(job.name, job.case) for job in jobs])
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    level = logging.DEBUG if getattr(args, "debug", False) else logging.WARNING
    logging.basicConfig(
        format="%(asctime)s:%(name)s:%(levelname)s:%(message)s",
        level=level,
    )

    try:
        if args.command == "list":
            return list_evals(args)
        if args.trace:
            setup_tracing("llm-serve-test")
        return asyncio.run(run(args))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_FAILED
