"""Standalone sync worker process."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)

from fastapi_erpsync.adapter import ErpAdapter
from fastapi_erpsync.config import ErpSyncConfig
from fastapi_erpsync.contrib.dolibarr import DolibarrErpClient
from fastapi_erpsync.contrib.filesystem import FilesystemBlobStorage
from fastapi_erpsync.contrib.sqlalchemy.models import Base
from fastapi_erpsync.contrib.sqlalchemy.queue import SQLAlchemySyncJobQueue
from fastapi_erpsync.contrib.sqlalchemy.store import (
    SQLAlchemyConfirmationStore,
)
from fastapi_erpsync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fastapi-erpsync-worker",
        description="Push delivery confirmations to the ERP.",
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single cycle and exit."
    )
    parser.add_argument(
        "--limit", type=int, default=0, help="Maximum jobs per cycle."
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=0,
        help="Seconds between periodic cycles.",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the sync tables before starting.",
    )
    return parser


def apply_overrides(
    config: ErpSyncConfig, args: argparse.Namespace
) -> ErpSyncConfig:
    update: dict[str, object] = {}
    if args.limit and args.limit > 0:
        update["batch_size"] = args.limit
    if args.interval and args.interval > 0:
        update["poll_interval_seconds"] = args.interval
    return config.model_copy(update=update) if update else config


@dataclass
class WorkerRuntime:
    engine: AsyncEngine
    erp_client: DolibarrErpClient
    orchestrator: SyncOrchestrator

    async def aclose(self) -> None:
        await self.erp_client.aclose()
        await self.engine.dispose()


def build_runtime(config: ErpSyncConfig) -> WorkerRuntime:
    """Wire the SQLAlchemy backends, Dolibarr client and orchestrator."""
    engine = create_async_engine(config.database_url)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    store = SQLAlchemyConfirmationStore(session_factory)
    queue = SQLAlchemySyncJobQueue(
        session_factory, lease_seconds=config.claim_lease_seconds
    )
    erp_client = DolibarrErpClient.from_config(
        config, FilesystemBlobStorage(config.blob_root)
    )
    adapter = ErpAdapter(
        erp_client,
        timeout_seconds=config.push_timeout_seconds,
        delivered_status=config.erp_delivered_status,
    )
    orchestrator = SyncOrchestrator(store, queue, adapter, config=config)
    return WorkerRuntime(engine, erp_client, orchestrator)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def run(
    config: ErpSyncConfig, *, once: bool, create_tables: bool
) -> int:
    runtime = build_runtime(config)
    try:
        if create_tables:
            await init_db(runtime.engine)
        orchestrator = runtime.orchestrator
        if once:
            await orchestrator.sweep()
            report = await orchestrator.run_cycle()
            logger.info(
                "Sync cycle finished: claimed=%d succeeded=%d retried=%d"
                " failed=%d discarded=%d errors=%d skipped=%s",
                report.claimed,
                report.succeeded,
                report.retried,
                report.failed,
                report.discarded,
                report.errors,
                report.skipped,
            )
            return 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await orchestrator.run_forever(stop_event)
        return 0
    finally:
        await runtime.aclose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = apply_overrides(ErpSyncConfig(), args)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    return asyncio.run(
        run(config, once=args.once, create_tables=args.init_db)
    )


if __name__ == "__main__":
    raise SystemExit(main())
