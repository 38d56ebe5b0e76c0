"""Business-scoped document numbers.

Numbers are monotonic per business but gap tolerant: a rolled back transaction
may burn a number, and nothing downstream relies on the sequence being dense.
"""

from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from app.domain.numbering.db_models import NumberSequence
from app.infra.db import dialect_name

logger = logging.getLogger(__name__)

SUBSCRIPTION_SEQUENCE = "subscription"
NUMBER_ALLOCATION_ATTEMPTS = 5
_SUFFIX_RE = re.compile(r"(\d+)\D*$")

T = TypeVar("T")


def format_number(prefix: str, number: int, width: int) -> str:
    return f"{prefix}-{number:0{width}d}"


def parse_suffix(value: str | None) -> int:
    if not value:
        return 0
    match = _SUFFIX_RE.search(value)
    return int(match.group(1)) if match else 0


async def next_sequence_number(
    session: AsyncSession,
    business_id: str,
    kind: str = SUBSCRIPTION_SEQUENCE,
    *,
    prefix: str = "SUB",
    width: int = 5,
) -> str:
    dialect = dialect_name(session)
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert_fn(NumberSequence).values(business_id=business_id, kind=kind, last_number=1)
    upsert = stmt.on_conflict_do_update(
        index_elements=[NumberSequence.business_id, NumberSequence.kind],
        set_={"last_number": NumberSequence.last_number + 1},
    )
    result = await session.execute(upsert.returning(NumberSequence.last_number))
    number = int(result.scalar_one())
    return format_number(prefix, number, width)


async def next_suffix_number(
    session: AsyncSession,
    number_column: InstrumentedAttribute,
    business_column: InstrumentedAttribute,
    business_id: str,
    *,
    prefix: str,
    width: int = 6,
) -> str:
    """Allocate the number after the numeric suffix of the latest existing one."""

    stmt = (
        select(number_column)
        .where(business_column == business_id)
        .order_by(func.length(number_column).desc(), number_column.desc())
        .limit(1)
    )
    latest = await session.scalar(stmt)
    return format_number(prefix, parse_suffix(latest) + 1, width)


async def add_with_unique_number(
    session: AsyncSession,
    allocate: Callable[[], Awaitable[str]],
    build: Callable[[str], T],
    *,
    attempts: int = NUMBER_ALLOCATION_ATTEMPTS,
) -> T:
    """Insert a numbered row, retrying when a concurrent writer took the number.

    On PostgreSQL each attempt runs inside a SAVEPOINT so a unique violation
    only discards the attempt. SQLite serializes writers, so a single attempt
    is made there.
    """

    if dialect_name(session) != "postgresql":
        record = build(await allocate())
        session.add(record)
        await session.flush()
        return record

    for attempt in range(1, attempts + 1):
        number = await allocate()
        record = build(number)
        try:
            async with session.begin_nested():
                session.add(record)
        except IntegrityError:
            logger.warning(
                "number_allocation_conflict",
                extra={"extra": {"number": number, "attempt": attempt}},
            )
            continue
        return record
    raise RuntimeError("Unable to allocate a unique document number")
