"""Work queue interface for scrape items.

At-least-once delivery backed by Postgres. A received message is leased
for ``visibility_timeout`` seconds; if the consumer neither acks nor
retries it before the lease runs out, it becomes visible again.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from psycopg2.extras import DictCursor

from ..db import connect, get_dsn
from ..models import WorkItem, utcnow

LOGGER = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    """A delivered work item plus its delivery metadata."""

    item: WorkItem
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    retry_count: int = 0  # Deliveries before this one
    enqueued_at: Optional[datetime] = None
    lease_token: Optional[str] = None  # Identifies the receive that holds the message


class WorkQueue(Protocol):
    """Abstract work queue interface."""

    def send(self, item: WorkItem) -> str:
        """Add item to queue.

        Returns
        -------
        str
            Message ID
        """
        ...

    def receive(self, batch_size: int = 10) -> List[QueueMessage]:
        """Lease up to ``batch_size`` visible messages.

        Parameters
        ----------
        batch_size : int
            Number of messages to fetch

        Returns
        -------
        list[QueueMessage]
            Messages ready for processing
        """
        ...

    def ack(self, message_id: str, lease_token: Optional[str] = None) -> bool:
        """Remove a message permanently.

        Returns
        -------
        bool
            False when ``lease_token`` no longer holds the message
        """
        ...

    def retry(
        self, message_id: str, delay_seconds: float = 0.0, lease_token: Optional[str] = None
    ) -> bool:
        """Release a message for redelivery.

        Parameters
        ----------
        message_id : str
            Message ID
        delay_seconds : float
            Seconds before the message becomes visible again
        lease_token : str, optional
            Only release the message if this lease still holds it

        Returns
        -------
        bool
            False when the lease was lost to another receive
        """
        ...

    def depth(self) -> int:
        """Number of messages not yet acked."""
        ...


class PostgresWorkQueue:
    """Postgres-based work queue using ``FOR UPDATE SKIP LOCKED`` leases."""

    def __init__(
        self,
        conn_string: Optional[str] = None,
        visibility_timeout: float = 300.0,
    ) -> None:
        """Initialize Postgres queue.

        Parameters
        ----------
        conn_string : str, optional
            PostgreSQL connection string
        visibility_timeout : float
            Seconds a received message stays leased
        """
        self.conn_string = get_dsn(conn_string)
        self.visibility_timeout = visibility_timeout
        self._ensure_table()

    def _ensure_table(self) -> None:
        """Create queue table if not exists."""
        create_sql = """
        CREATE TABLE IF NOT EXISTS scrape_messages (
            message_id TEXT PRIMARY KEY,
            body JSONB NOT NULL,
            priority INTEGER DEFAULT 5,
            retry_count INTEGER NOT NULL DEFAULT 0,
            enqueued_at TIMESTAMPTZ DEFAULT NOW(),
            visible_at TIMESTAMPTZ DEFAULT NOW(),
            leased_at TIMESTAMPTZ,
            lease_token TEXT,
            acked_at TIMESTAMPTZ
        );

        ALTER TABLE scrape_messages ADD COLUMN IF NOT EXISTS lease_token TEXT;

        CREATE INDEX IF NOT EXISTS idx_scrape_messages_visible
            ON scrape_messages(acked_at, visible_at, priority DESC, enqueued_at);
        """

        with connect(self.conn_string) as conn:
            with conn.cursor() as cur:
                cur.execute(create_sql)

        LOGGER.info("Ensured scrape_messages table exists")

    def send(self, item: WorkItem) -> str:
        """Add item to queue."""
        message_id = uuid.uuid4().hex
        insert_sql = """
        INSERT INTO scrape_messages (message_id, body, priority)
        VALUES (%s, %s::jsonb, %s)
        """

        with connect(self.conn_string) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    insert_sql,
                    (message_id, json.dumps(item.model_dump(mode="json")), item.priority),
                )

        LOGGER.debug("Enqueued message %s: %s", message_id, item.label())
        return message_id

    def receive(self, batch_size: int = 10) -> List[QueueMessage]:
        """Lease visible messages, skipping rows locked by other consumers."""
        # retry_count counts earlier deliveries, so it is read before the bump
        select_sql = """
        UPDATE scrape_messages AS m
        SET leased_at = NOW(),
            lease_token = %s,
            visible_at = NOW() + make_interval(secs => %s),
            retry_count = CASE WHEN m.leased_at IS NULL THEN 0 ELSE m.retry_count + 1 END
        WHERE m.message_id IN (
            SELECT message_id
            FROM scrape_messages
            WHERE acked_at IS NULL
              AND visible_at <= NOW()
            ORDER BY priority DESC, enqueued_at ASC
            LIMIT %s
            FOR UPDATE SKIP LOCKED
        )
        RETURNING m.message_id, m.body, m.retry_count, m.enqueued_at
        """

        lease_token = uuid.uuid4().hex
        messages = []
        with connect(self.conn_string) as conn:
            with conn.cursor(cursor_factory=DictCursor) as cur:
                cur.execute(select_sql, (lease_token, self.visibility_timeout, batch_size))
                for row in cur.fetchall():
                    messages.append(
                        QueueMessage(
                            item=WorkItem(**row["body"]),
                            message_id=row["message_id"],
                            retry_count=row["retry_count"],
                            enqueued_at=row["enqueued_at"],
                            lease_token=lease_token,
                        )
                    )

        if messages:
            LOGGER.info("Received %d message(s)", len(messages))

        return messages

    def ack(self, message_id: str, lease_token: Optional[str] = None) -> bool:
        """Mark message as acknowledged.

        With a ``lease_token`` the ack only applies while that receive still
        holds the message; an expired lease that was re-leased is left alone.
        """
        update_sql = """
        UPDATE scrape_messages
        SET acked_at = NOW()
        WHERE message_id = %s
          AND acked_at IS NULL
          AND (%s::text IS NULL OR lease_token = %s)
        """

        with connect(self.conn_string) as conn:
            with conn.cursor() as cur:
                cur.execute(update_sql, (message_id, lease_token, lease_token))
                held = cur.rowcount > 0

        if held:
            LOGGER.debug("Acked message %s", message_id)
        else:
            LOGGER.warning("Lease lost on message %s, ack skipped", message_id)
        return held

    def retry(
        self, message_id: str, delay_seconds: float = 0.0, lease_token: Optional[str] = None
    ) -> bool:
        """Make message visible again after ``delay_seconds``."""
        update_sql = """
        UPDATE scrape_messages
        SET visible_at = NOW() + make_interval(secs => %s)
        WHERE message_id = %s
          AND acked_at IS NULL
          AND (%s::text IS NULL OR lease_token = %s)
        """

        with connect(self.conn_string) as conn:
            with conn.cursor() as cur:
                cur.execute(update_sql, (delay_seconds, message_id, lease_token, lease_token))
                held = cur.rowcount > 0

        if held:
            LOGGER.debug("Scheduled retry for message %s in %.0fs", message_id, delay_seconds)
        else:
            LOGGER.warning("Lease lost on message %s, retry skipped", message_id)
        return held

    def depth(self) -> int:
        with connect(self.conn_string) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM scrape_messages WHERE acked_at IS NULL")
                return cur.fetchone()[0]

    def get_stats(self) -> Dict[str, int]:
        """Get queue statistics."""
        stats_sql = """
        SELECT
            COUNT(*) FILTER (WHERE acked_at IS NULL AND visible_at <= NOW()) AS visible,
            COUNT(*) FILTER (WHERE acked_at IS NULL AND visible_at > NOW()) AS in_flight,
            COUNT(*) FILTER (WHERE acked_at IS NOT NULL) AS acked
        FROM scrape_messages
        """

        with connect(self.conn_string) as conn:
            with conn.cursor(cursor_factory=DictCursor) as cur:
                cur.execute(stats_sql)
                row = cur.fetchone()

        return {key: row[key] for key in ("visible", "in_flight", "acked")}

    def purge_acked(self, older_than_days: int = 7) -> int:
        """Remove old acknowledged messages.

        Parameters
        ----------
        older_than_days : int
            Remove messages acked more than N days ago

        Returns
        -------
        int
            Number of messages removed
        """
        delete_sql = """
        DELETE FROM scrape_messages
        WHERE acked_at IS NOT NULL
          AND acked_at < %s - make_interval(days => %s)
        """

        with connect(self.conn_string) as conn:
            with conn.cursor() as cur:
                cur.execute(delete_sql, (utcnow(), older_than_days))
                count = cur.rowcount

        if count > 0:
            LOGGER.info("Purged %d acked message(s)", count)

        return count
