"""
Async Postgres store: orders, items, item_orders (membership) + state_transitions (append-only log).
A trigger runs in one transaction: lock subject rows FOR UPDATE, validate, insert transitions, update flags.
"""
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg
from asyncpg.exceptions import LockNotAvailableError

from circa.config import settings
from circa.models import Item, ItemMembership, Order, SubjectKind, Transition, TransitionMetadata
from circa.store import LockTimeout, Session, Store, SubjectNotFound

_pool: asyncpg.Pool | None = None

_TABLES = {SubjectKind.ORDER: "orders", SubjectKind.ITEM: "items"}


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id BIGINT PRIMARY KEY,
                variant VARCHAR(20) NOT NULL DEFAULT 'standard',
                open BOOLEAN NOT NULL DEFAULT TRUE,
                confirmed BOOLEAN NOT NULL DEFAULT FALSE,
                access_date_start DATE,
                location_id BIGINT,
                assignees JSONB NOT NULL DEFAULT '[]'
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS items (
                id BIGINT PRIMARY KEY,
                uri VARCHAR(255),
                source VARCHAR(20) NOT NULL DEFAULT 'unknown',
                obsolete BOOLEAN NOT NULL DEFAULT FALSE,
                is_digital BOOLEAN NOT NULL DEFAULT FALSE,
                permanent_location_id BIGINT,
                current_location_id BIGINT
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS item_orders (
                order_id BIGINT NOT NULL REFERENCES orders(id),
                item_id BIGINT NOT NULL REFERENCES items(id),
                active BOOLEAN NOT NULL DEFAULT TRUE,
                PRIMARY KEY (order_id, item_id)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS state_transitions (
                id BIGSERIAL PRIMARY KEY,
                subject_kind VARCHAR(10) NOT NULL,
                subject_id BIGINT NOT NULL,
                event VARCHAR(50) NOT NULL,
                to_state VARCHAR(50) NOT NULL,
                order_id BIGINT,
                metadata JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_state_transitions_subject
            ON state_transitions(subject_kind, subject_id, created_at);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_state_transitions_item_order
            ON state_transitions(subject_id, order_id) WHERE subject_kind = 'item';
        """)


def _order(row: asyncpg.Record) -> Order:
    data = dict(row)
    data["assignees"] = json.loads(data["assignees"])
    return Order(**data)


def _transition(row: asyncpg.Record) -> Transition:
    return Transition(
        id=row["id"],
        subject_kind=SubjectKind(row["subject_kind"]),
        subject_id=row["subject_id"],
        event=row["event"],
        to_state=row["to_state"],
        metadata=TransitionMetadata.model_validate_json(row["metadata"]),
        created_at=row["created_at"],
    )


class PostgresSession(Session):

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def lock(self, kind: SubjectKind, subject_id: int) -> None:
        try:
            row = await self.conn.fetchrow(
                f"SELECT id FROM {_TABLES[kind]} WHERE id = $1 FOR UPDATE;",
                subject_id,
            )
        except LockNotAvailableError:
            raise LockTimeout(kind, subject_id)
        if row is None:
            raise SubjectNotFound(kind, subject_id)

    async def get_order(self, order_id: int) -> Order:
        row = await self.conn.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        if row is None:
            raise SubjectNotFound(SubjectKind.ORDER, order_id)
        return _order(row)

    async def get_item(self, item_id: int) -> Item:
        row = await self.conn.fetchrow("SELECT * FROM items WHERE id = $1;", item_id)
        if row is None:
            raise SubjectNotFound(SubjectKind.ITEM, item_id)
        return Item(**dict(row))

    async def add_order(self, order: Order) -> Order:
        await self.conn.execute(
            """
            INSERT INTO orders (id, variant, open, confirmed, access_date_start, location_id, assignees)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb);
            """,
            order.id,
            order.variant.value,
            order.open,
            order.confirmed,
            order.access_date_start,
            order.location_id,
            json.dumps(order.assignees),
        )
        return order

    async def add_item(self, item: Item) -> Item:
        await self.conn.execute(
            """
            INSERT INTO items (id, uri, source, obsolete, is_digital, permanent_location_id, current_location_id)
            VALUES ($1, $2, $3, $4, $5, $6, $7);
            """,
            item.id,
            item.uri,
            item.source,
            item.obsolete,
            item.is_digital,
            item.permanent_location_id,
            item.current_location_id,
        )
        return item

    async def save_order(self, order: Order) -> None:
        await self.conn.execute(
            """
            UPDATE orders SET open = $2, confirmed = $3, access_date_start = $4, location_id = $5,
                assignees = $6::jsonb
            WHERE id = $1;
            """,
            order.id,
            order.open,
            order.confirmed,
            order.access_date_start,
            order.location_id,
            json.dumps(order.assignees),
        )

    async def save_item(self, item: Item) -> None:
        await self.conn.execute(
            """
            UPDATE items SET obsolete = $2, permanent_location_id = $3, current_location_id = $4
            WHERE id = $1;
            """,
            item.id,
            item.obsolete,
            item.permanent_location_id,
            item.current_location_id,
        )

    async def memberships_for_order(self, order_id: int) -> list[ItemMembership]:
        rows = await self.conn.fetch(
            "SELECT order_id, item_id, active FROM item_orders WHERE order_id = $1 ORDER BY item_id;",
            order_id,
        )
        return [ItemMembership(**dict(r)) for r in rows]

    async def memberships_for_item(self, item_id: int) -> list[ItemMembership]:
        rows = await self.conn.fetch(
            "SELECT order_id, item_id, active FROM item_orders WHERE item_id = $1 ORDER BY order_id;",
            item_id,
        )
        return [ItemMembership(**dict(r)) for r in rows]

    async def save_membership(self, membership: ItemMembership) -> None:
        await self.conn.execute(
            """
            INSERT INTO item_orders (order_id, item_id, active) VALUES ($1, $2, $3)
            ON CONFLICT (order_id, item_id) DO UPDATE SET active = EXCLUDED.active;
            """,
            membership.order_id,
            membership.item_id,
            membership.active,
        )

    async def transitions(self, kind: SubjectKind, subject_id: int) -> list[Transition]:
        rows = await self.conn.fetch(
            """
            SELECT * FROM state_transitions
            WHERE subject_kind = $1 AND subject_id = $2
            ORDER BY created_at ASC, id ASC;
            """,
            kind.value,
            subject_id,
        )
        return [_transition(r) for r in rows]

    async def transitions_for_order(self, item_id: int, order_id: int) -> list[Transition]:
        rows = await self.conn.fetch(
            """
            SELECT * FROM state_transitions
            WHERE subject_kind = 'item' AND subject_id = $1 AND order_id = $2
            ORDER BY created_at ASC, id ASC;
            """,
            item_id,
            order_id,
        )
        return [_transition(r) for r in rows]

    async def append_transition(self, transition: Transition) -> Transition:
        transition_id = await self.conn.fetchval(
            """
            INSERT INTO state_transitions (subject_kind, subject_id, event, to_state, order_id, metadata, created_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            RETURNING id;
            """,
            transition.subject_kind.value,
            transition.subject_id,
            transition.event,
            transition.to_state,
            transition.order_id,
            transition.metadata.model_dump_json(),
            transition.created_at,
        )
        return transition.model_copy(update={"id": transition_id})


class PostgresStore(Store):

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        async with self.pool.acquire() as conn:
            yield PostgresSession(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Session]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                # bounded lock waits; SET LOCAL does not take bind parameters
                timeout_ms = int(settings.lock_timeout_seconds * 1000)
                await conn.execute(f"SET LOCAL lock_timeout = '{timeout_ms}ms';")
                yield PostgresSession(conn)
