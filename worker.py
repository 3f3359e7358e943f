"""Fundraising email pipeline entrypoint.

``serve`` runs the scheduler and the task worker until SIGINT/SIGTERM.
``trigger`` enqueues one task run for a running worker to pick up.
``run`` executes one task in-process, sleeping through waits and retries.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from typing import Any

from config import AppConfig, get_config
from models import TaskStatus
from pipeline.observability import LogContext, get_logger
from pipeline.runtime_paths import bootstrap_runtime_paths
from pipeline.task_runtime import TaskRuntime
from pipeline.tasks import build_task_runtime
from scheduler import SchedulerRuntime


def _build_runtime(config: AppConfig) -> TaskRuntime:
    row_store, task_store = bootstrap_runtime_paths(config)
    return build_task_runtime(config, row_store=row_store, task_store=task_store)


def _parse_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"--payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SystemExit("--payload must be a JSON object")
    return payload


def _install_signal_handlers(scheduler: SchedulerRuntime, stop: threading.Event) -> None:
    def _shutdown(_signum: int, _frame: Any) -> None:
        scheduler.shutdown()
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)


def serve(config: AppConfig) -> int:
    runtime = _build_runtime(config)
    scheduler = SchedulerRuntime(config=config, runtime=runtime)
    stop = threading.Event()
    _install_signal_handlers(scheduler, stop)
    scheduler.start()

    get_logger().info(
        "worker_started",
        context=LogContext(),
        tasks=list(runtime.task_names),
        timezone=config.timezone,
    )
    stop.wait()
    return 0


def trigger(config: AppConfig, task_name: str, payload: dict[str, Any]) -> int:
    record = _build_runtime(config).trigger(task_name, payload)
    print(json.dumps({"run_id": record.run_id, "task_name": record.task_name}))
    return 0


def run(config: AppConfig, task_name: str, payload: dict[str, Any]) -> int:
    record = _build_runtime(config).run_inline(task_name, payload)
    print(
        json.dumps(
            {
                "run_id": record.run_id,
                "status": record.status.value,
                "attempt": record.attempt,
                "result": record.result,
                "error": record.last_error,
            },
            indent=2,
            default=str,
        )
    )
    return 0 if record.status == TaskStatus.COMPLETED else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fundraising email pipeline worker")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run scheduled jobs and the task worker")
    for name, help_text in (
        ("trigger", "Enqueue a task run for the worker"),
        ("run", "Run a task inline and print its result"),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("task", help="Task name, e.g. generate-user-drafts")
        command.add_argument("--payload", default="{}", help="JSON object payload")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the worker CLI."""
    args = build_parser().parse_args(argv)
    config = get_config()
    if args.command == "serve":
        return serve(config)
    payload = _parse_payload(args.payload)
    if args.command == "trigger":
        return trigger(config, args.task, payload)
    return run(config, args.task, payload)


if __name__ == "__main__":
    sys.exit(main())
