import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.infra.db import get_session_factory
from app.infra.logging import configure_logging
from app.infra.metrics import configure_metrics, metrics
from app.jobs import subscription_jobs
from app.jobs.heartbeat import record_heartbeat
from app.settings import settings

logger = logging.getLogger(__name__)

JOB_NAMES = ("subscription-jobs", "subscription-invoices")


async def _run_job(
    name: str,
    session_factory: async_sessionmaker,
    runner: Callable[[async_sessionmaker], Awaitable[dict[str, int]]],
) -> dict[str, int]:
    result = await runner(session_factory)
    logger.info("job_complete", extra={"extra": {"job": name, **result}})
    metrics.record_sweep(name, "ok")
    return result


def _job_runner(name: str, business_id: str | None = None) -> Callable:
    if name == "subscription-jobs":
        return lambda factory: subscription_jobs.run_subscription_jobs(factory, business_id=business_id)
    if name == "subscription-invoices":
        return lambda factory: subscription_jobs.run_subscription_invoices(factory, business_id=business_id)
    raise ValueError(f"unknown_job:{name}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run subscription sweeps")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument("--interval", type=int, default=300, help="Seconds between loops when not using --once")
    parser.add_argument("--business-id", dest="business_id", default=None, help="Only sweep one business")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()

    job_names = args.jobs or list(JOB_NAMES)
    runners = [_job_runner(name, business_id=args.business_id) for name in job_names]

    while True:
        status = "ok"
        for name, runner in zip(job_names, runners):
            try:
                await _run_job(name, session_factory, runner)
            except Exception as exc:  # noqa: BLE001
                status = "error"
                metrics.record_sweep(name, "error")
                logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        await record_heartbeat(session_factory, status=status)
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
