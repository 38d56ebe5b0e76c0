import logging
import time
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.jobs.heartbeat import latest_heartbeat

router = APIRouter()
logger = logging.getLogger(__name__)

_HEADS_TTL_SECONDS = 60
_heads_cache: dict[str, Any] = {"loaded_at": 0.0, "heads": None}


def _expected_heads() -> list[str] | None:
    """Alembic heads shipped with the code, or None when migrations are not packaged."""

    now = time.monotonic()
    if now - _heads_cache["loaded_at"] < _HEADS_TTL_SECONDS:
        return _heads_cache["heads"]

    root = Path(__file__).resolve().parents[2]
    ini_path = root / "alembic.ini"
    heads: list[str] | None = None
    if ini_path.exists() and (root / "alembic").exists():
        try:
            cfg = Config(str(ini_path))
            cfg.set_main_option("script_location", str(root / "alembic"))
            heads = list(ScriptDirectory.from_config(cfg).get_heads())
        except Exception as exc:  # noqa: BLE001
            logger.warning("migrations_heads_unavailable", extra={"extra": {"reason": type(exc).__name__}})
            heads = []
    _heads_cache.update({"loaded_at": now, "heads": heads})
    return heads


async def _current_revision(session) -> str | None:
    try:
        row = (await session.execute(text("SELECT version_num FROM alembic_version"))).first()
    except SQLAlchemyError:
        return None
    return row[0] if row else None


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    heads = _expected_heads()
    database: dict[str, Any] = {"ok": False, "migrations_current": False, "expected_heads": heads or []}
    runner: dict[str, Any] | None = None

    if session_factory is None:
        database["message"] = "database session factory unavailable"
    else:
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
                revision = await _current_revision(session)
                heartbeat = await latest_heartbeat(session)
        except Exception as exc:  # noqa: BLE001
            logger.debug("database_check_failed", exc_info=exc)
            database.update({"message": "database check failed", "error": exc.__class__.__name__})
        else:
            database.update(
                {
                    "ok": True,
                    "message": "database reachable",
                    "current_version": revision,
                    # Without packaged migrations there is nothing to compare against.
                    "migrations_current": heads is None or revision in heads,
                }
            )
            if heartbeat is not None:
                runner = {
                    "name": heartbeat.name,
                    "last_heartbeat": heartbeat.last_heartbeat.isoformat(),
                    "last_status": heartbeat.last_status,
                    "loops": heartbeat.loops,
                }

    ready = database["ok"] and database["migrations_current"]
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ok" if ready else "unhealthy", "database": database, "runner": runner},
    )
