from __future__ import annotations

import argparse
import os
import time

from change_orchestrator.config import Settings, configure_logging
from change_orchestrator.service import build_service
from change_orchestrator.storage import PostgresOrchestratorStorage


def _parse_args() -> argparse.Namespace:
    settings = Settings()
    parser = argparse.ArgumentParser(
        description=(
            "Run the timer sweep: expire stale approvals, resume executions whose "
            "phase wait elapsed and force-cancel executions past their deadline."
        )
    )
    parser.add_argument(
        "--database-url",
        default=settings.resolved_database_url() or os.getenv("ORCHESTRATOR_DATABASE_URL", ""),
        help="PostgreSQL connection URL.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.sweep_interval_s,
        help="Seconds between sweeps.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    if not args.database_url:
        raise SystemExit(
            "Missing database URL. Set CHANGE_ORCHESTRATOR_DATABASE_URL or pass --database-url."
        )
    settings = Settings()
    configure_logging(settings.log_level)
    storage = PostgresOrchestratorStorage(args.database_url)
    storage.migrate()
    service = build_service(settings, storage=storage)

    while True:
        result = service.tick()
        print(
            f"Sweep complete: expired={len(result['expired_tasks'])} "
            f"driven={len(result['driven_executions'])}"
        )
        if args.once:
            return
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
