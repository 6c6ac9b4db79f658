from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from .calllog import close_call_log, configure_call_log
from .clients import ClientFactory
from .engine.charts import render_charts
from .engine.collector import (
    MetricsCollector,
    RunSummary,
    ThresholdMonitor,
    format_summary,
    summarize,
)
from .engine.config import Workload, format_duration
from .engine.scheduler import Scheduler
from .errors import ConfigError, FixtureLoadError
from .fixtures import load_fixture
from .settings import DEFAULT_BASE_URL, DEFAULT_CHALLENGE_ID, DEFAULT_NAMESPACE, DEFAULT_RPC_ADDRESS, RunSettings
from .workloads import WORKLOADS, build_workload

LOGGER = logging.getLogger("loadsim.main")

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_THRESHOLDS_FAILED = 99


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synthetic workload driver for the challenge service")
    parser.add_argument(
        "workload",
        nargs="?",
        default=os.environ.get("LOADSIM_WORKLOAD"),
        help=f"Workload to run ({', '.join(sorted(WORKLOADS))})",
    )
    parser.add_argument("--base-url", default=os.environ.get("BASE_URL", DEFAULT_BASE_URL))
    parser.add_argument(
        "--rpc-address", default=os.environ.get("EVENT_HANDLER_ADDR", DEFAULT_RPC_ADDRESS)
    )
    parser.add_argument(
        "--rpc-transport",
        default=os.environ.get("RPC_TRANSPORT", "grpc"),
        help="Persistent-connection transport for events: grpc or kafka",
    )
    parser.add_argument(
        "--rpc-secure",
        default=os.environ.get("RPC_SECURE", "false"),
        help="Use TLS for the persistent connections",
    )
    parser.add_argument("--target-rps", default=os.environ.get("TARGET_RPS"))
    parser.add_argument("--target-eps", default=os.environ.get("TARGET_EPS"))
    parser.add_argument("--target-vus", default=os.environ.get("TARGET_VUS"))
    parser.add_argument("--iterations", default=os.environ.get("ITERATIONS"))
    parser.add_argument(
        "--duration",
        default=os.environ.get("LOADSIM_DURATION"),
        help="Squeeze every stage to this window, e.g. 30s or 4m30s",
    )
    parser.add_argument("--namespace", default=os.environ.get("NAMESPACE", DEFAULT_NAMESPACE))
    parser.add_argument(
        "--challenge-id", default=os.environ.get("CHALLENGE_ID", DEFAULT_CHALLENGE_ID)
    )
    parser.add_argument(
        "--fixtures",
        default=os.environ.get("LOADSIM_FIXTURES", "fixtures"),
        help="Fixture directory or JSON file",
    )
    parser.add_argument("--seed", default=os.environ.get("LOADSIM_SEED"))
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("LOADSIM_OUTPUT_DIR"),
        help="Directory to store run artefacts (samples CSV, summary JSON, charts)",
    )
    parser.add_argument("--http-timeout", default=os.environ.get("HTTP_TIMEOUT", "30s"))
    parser.add_argument("--rpc-timeout", default=os.environ.get("RPC_TIMEOUT", "10s"))
    parser.add_argument("--graceful-stop", default=os.environ.get("GRACEFUL_STOP", "30s"))
    parser.add_argument(
        "--threshold-interval",
        default=os.environ.get("THRESHOLD_INTERVAL", "10s"),
        help="How often thresholds are re-evaluated during the run (0 disables)",
    )
    parser.add_argument(
        "--call-log",
        default=os.environ.get("LOADSIM_CALL_LOG"),
        help="File receiving one entry per failed or slow call",
    )
    parser.add_argument(
        "--slow-call-ms",
        default=os.environ.get("SLOW_CALL_MS", "1000"),
        help="Calls slower than this many milliseconds are written to the call log",
    )
    parser.add_argument("--charts", action="store_true", help="Render PNG charts into the output directory")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned stages and thresholds without generating traffic",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOADSIM_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        settings = RunSettings.from_namespace(args)
        fixture = load_fixture(settings.fixtures)
        workload = build_workload(settings, fixture)
    except (ConfigError, FixtureLoadError) as exc:
        LOGGER.error("Startup failed: %s", exc)
        return EXIT_STARTUP_FAILURE

    LOGGER.info("Workload: %s (%s)", workload.name, workload.description)
    LOGGER.info("Target: %s, events via %s at %s", settings.base_url, settings.rpc_transport.value, settings.rpc_address)
    LOGGER.info("Fixture: %d identities from %s", len(fixture), settings.fixtures)

    if settings.dry_run:
        _print_plan(workload)
        return EXIT_OK

    if settings.call_log:
        configure_call_log(settings.call_log)
        LOGGER.info("Failed and slow calls logged to %s", settings.call_log)

    collector = MetricsCollector()
    scheduler = Scheduler(
        workload.profile,
        fixture,
        collector,
        ClientFactory(settings.target()),
        seed=settings.seed,
        slow_call_ms=settings.slow_call_ms,
    )
    monitor = ThresholdMonitor(collector, workload.thresholds, settings.threshold_interval)
    monitor.start()
    try:
        scheduler.start()
        try:
            reports = scheduler.wait()
        except KeyboardInterrupt:
            LOGGER.warning("Interrupted; draining in-flight sessions")
            scheduler.cancel()
            reports = scheduler.wait()
    finally:
        monitor.stop()
        close_call_log()

    summary = summarize(collector, workload.thresholds, reports, namespace=settings.namespace)
    summary.extra["workload"] = workload.name
    print(format_summary(summary))

    if settings.output_dir:
        _write_outputs(settings.output_dir, collector, summary, charts=settings.charts)

    if summary.missed_arrivals:
        LOGGER.warning("%d arrivals missed: the driver ran out of free virtual users", summary.missed_arrivals)
    if not summary.passed:
        LOGGER.warning("One or more thresholds failed")
        return EXIT_THRESHOLDS_FAILED
    LOGGER.info("All thresholds passed")
    return EXIT_OK


def _write_outputs(output_dir: Path, collector: MetricsCollector, summary: RunSummary, charts: bool) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    samples = collector.build_dataframe()

    samples_path = output_dir / "samples.csv"
    samples.to_csv(samples_path, index=False)
    LOGGER.info("Saved %d samples to %s", len(samples), samples_path)

    if charts:
        summary.extra["charts"] = [str(path) for path in render_charts(samples, output_dir)]

    manifest_path = output_dir / "summary.json"
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(summary.to_dict(), f, indent=2, default=str)
    LOGGER.info("Run summary written to %s", manifest_path)


def _print_plan(workload: Workload) -> None:
    print(f"Workload: {workload.name} ({workload.description})")
    for entry in workload.profile.schedule():
        stage = entry.stage
        window = f"{format_duration(entry.offset)}-{format_duration(entry.end)}"
        if stage.is_arrival_rate:
            detail = (
                f"rate={stage.start_rate:g}->{stage.end_rate:g}/s, "
                f"vus={stage.preallocated_concurrency}..{stage.max_concurrency}"
            )
        else:
            detail = f"vus={stage.concurrency}, iterations={stage.iterations_per_worker}"
        print(f"  - {stage.name}: mode={stage.mode.value}, window={window}, {detail}, session={stage.session.name}")
    if workload.thresholds:
        print("Thresholds:")
        for threshold in workload.thresholds:
            print(f"  - {threshold}")


if __name__ == "__main__":
    sys.exit(main())
