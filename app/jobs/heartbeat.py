from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.ops.db_models import JobHeartbeat

RUNNER_NAME = "subscription-runner"


async def record_heartbeat(
    session_factory: async_sessionmaker, name: str = RUNNER_NAME, *, status: str = "ok"
) -> None:
    now = datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, name)
        if heartbeat is None:
            heartbeat = JobHeartbeat(name=name, last_heartbeat=now, last_status=status, loops=1)
            session.add(heartbeat)
        else:
            heartbeat.last_heartbeat = now
            heartbeat.last_status = status
            heartbeat.loops += 1
        await session.commit()


async def latest_heartbeat(session: AsyncSession, name: str = RUNNER_NAME) -> JobHeartbeat | None:
    stmt = select(JobHeartbeat).where(JobHeartbeat.name == name).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()
