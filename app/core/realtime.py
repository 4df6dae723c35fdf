"""
Realtime table-change broadcasting.

Dashboard clients open a WebSocket, subscribe to one or more tables and
refetch when an INSERT/UPDATE/DELETE event arrives.

Services queue events on their database session with ``queue()``. The
session owner (``get_db`` / ``get_db_session``) pushes them with
``publish_pending()`` once the transaction has committed, so a client never
refetches a row that is not visible yet. Events queued inside a savepoint or
transaction that rolls back are dropped. Delivery is best effort: there is
no replay and a connection that fails on send is dropped.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from fastapi import WebSocket
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from app.database import CustomJSONEncoder


logger = logging.getLogger(__name__)

TABLES = {"orders", "inventory", "returns", "dispatches", "notifications", "pos_sessions", "pos_sales", "automated_alerts", "stock_transfers"}

PENDING_EVENTS_KEY = "realtime_pending_events"


def _sync_session(session: Union[AsyncSession, Session]) -> Session:
    return session.sync_session if isinstance(session, AsyncSession) else session


def _within(transaction: Optional[SessionTransaction], ancestor: SessionTransaction) -> bool:
    while transaction is not None:
        if transaction is ancestor:
            return True
        transaction = transaction.parent
    return False


@event.listens_for(Session, "after_soft_rollback")
def _drop_rolled_back_events(session: Session, previous_transaction: SessionTransaction) -> None:
    pending = session.info.get(PENDING_EVENTS_KEY)
    if not pending:
        return
    kept = [item for item in pending if not _within(item[0], previous_transaction)]
    if len(kept) != len(pending):
        logger.debug("Dropped %d realtime events after rollback", len(pending) - len(kept))
    session.info[PENDING_EVENTS_KEY] = kept


class ConnectionManager:
    def __init__(self):
        self.active: Dict[WebSocket, Set[str]] = {}

    async def connect(self, websocket: WebSocket, tables: Optional[Iterable[str]] = None):
        await websocket.accept()
        subscribed = {t for t in (tables or []) if t in TABLES} or set(TABLES)
        self.active[websocket] = subscribed
        logger.debug("Realtime client connected, tables=%s", sorted(subscribed))

    def disconnect(self, websocket: WebSocket):
        self.active.pop(websocket, None)

    def subscribe(self, websocket: WebSocket, tables: Iterable[str]):
        if websocket in self.active:
            self.active[websocket].update(t for t in tables if t in TABLES)

    @property
    def connection_count(self) -> int:
        return len(self.active)

    # ==================== TRANSACTIONAL QUEUE ====================

    def queue(self, session: Union[AsyncSession, Session], table: str, event_type: str, record: Dict[str, Any]) -> None:
        """Hold a change event on ``session`` until its transaction commits."""
        sync_session = _sync_session(session)
        transaction = (
            sync_session.get_nested_transaction()
            or sync_session.get_transaction()
            or sync_session.begin()
        )
        sync_session.info.setdefault(PENDING_EVENTS_KEY, []).append((transaction, table, event_type, record))

    def discard_pending(self, session: Union[AsyncSession, Session]) -> None:
        _sync_session(session).info.pop(PENDING_EVENTS_KEY, None)

    async def publish_pending(self, session: Union[AsyncSession, Session]) -> int:
        """Push every event queued on ``session``. Call after commit."""
        pending = _sync_session(session).info.pop(PENDING_EVENTS_KEY, [])
        delivered = 0
        for _, table, event_type, record in pending:
            delivered += await self.publish(table, event_type, record)
        return delivered

    # ==================== DELIVERY ====================

    async def publish(self, table: str, event_type: str, record: Dict[str, Any]) -> int:
        """Push a change event to every client subscribed to ``table``.

        Returns the number of clients the event was delivered to.
        """
        if not self.active:
            return 0

        message = json.dumps(
            {
                "table": table,
                "event": event_type,
                "record": record,
                "commit_timestamp": datetime.now(timezone.utc).isoformat(),
            },
            cls=CustomJSONEncoder,
        )

        delivered = 0
        dead: List[WebSocket] = []
        for ws, tables in list(self.active.items()):
            if table not in tables:
                continue
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception as e:
                logger.debug("Dropping realtime client after send failure: %s", e)
                dead.append(ws)

        for ws in dead:
            self.disconnect(ws)
        return delivered


manager = ConnectionManager()
