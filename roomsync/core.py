import inspect
import uuid
import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta
from sqlalchemy import create_engine, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from roomsync.errors import BackendError, DuplicateEntry
from roomsync.logger import setup_logger
from roomsync.model import BaseModel, Change, TABLES, utcnow
from roomsync.records import ChangeEvent

# Set up the logger
logger = setup_logger(name="RoomSync")

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE", "*")


def row_to_dict(obj):
    return {column.name: getattr(obj, column.name) for column in obj.__table__.columns}


def _jsonable(row):
    return {key: value.isoformat() if isinstance(value, datetime) else value for key, value in row.items()}


class Binding:
    def __init__(self, event, table, callback, filter=None):
        if event not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event}")
        self.event = event
        self.table = table
        self.callback = callback
        self.filter = dict(filter or {})

    def matches(self, change):
        if self.table != change.table:
            return False
        if self.event != "*" and self.event != change.event_type:
            return False
        row = change.row
        return all(row.get(column) == value for column, value in self.filter.items())


class Channel:
    """A named group of change-feed bindings that is subscribed and released as one."""

    def __init__(self, client, name):
        self.client = client
        self.name = name
        self.bindings = []
        # Highest change seq that existed when the channel subscribed; None while not subscribed
        self.since = None

    @property
    def joined(self):
        return self.since is not None

    def on(self, event, table, callback=None, filter=None):
        """
        Register a change listener. Can be used as a method or a decorator.

        Usage:
            # Using as a decorator
            @channel.on("INSERT", "webrtc_signals", filter={"to_user_id": me})
            async def handler(change, record):
                ...

            # Using directly
            channel.on("UPDATE", "rooms", handler, filter={"id": room_id})
        """
        event = event.upper()
        if callback is None:
            # If no callback is provided, return a decorator
            def decorator(fn):
                self.bindings.append(Binding(event, table, fn, filter))
                return fn
            return decorator
        else:
            # If callback is provided, register it directly
            self.bindings.append(Binding(event, table, callback, filter))
            return self

    def subscribe(self):
        """Start receiving changes committed after this call."""
        if self.joined:
            logger.warning(f"Channel '{self.name}' is already subscribed.")
            return self
        self.since = self.client.latest_seq()
        self.client._channels.append(self)
        logger.debug(f"Channel '{self.name}' subscribed after change {self.since}")
        return self

    def unsubscribe(self):
        """Stop delivery. Changes already fetched but not yet dispatched are dropped."""
        if not self.joined:
            return
        self.since = None
        if self in self.client._channels:
            self.client._channels.remove(self)
        logger.debug(f"Channel '{self.name}' unsubscribed")


class RealtimeClient:
    def __init__(self, db_path, is_server=False, poll_interval=0.5, change_retention=300):
        self.db_path = db_path
        self.is_server = is_server
        self.role = 'client' if not is_server else 'server'
        self.poll_interval = poll_interval
        self.change_retention = change_retention
        self.running = False
        self.tasks = []
        self._channels = []
        # Unique identifier for each connection
        self.client_id = str(uuid.uuid4()).replace('-', '')

        # SQLite DB setup
        try:
            if db_path == ":memory:":
                self.engine = create_engine(
                    "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
            else:
                self.engine = create_engine(f"sqlite:///{db_path}")
            BaseModel.metadata.create_all(self.engine)  # create Tables
            self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        except SQLAlchemyError as e:
            logger.critical(f"Failed to connect to SQLite database: {e}")
            raise BackendError(f"Cannot open database {db_path}") from e
        # Only changes committed after the client came up are delivered
        self._cursor = self.latest_seq()

    @classmethod
    def from_settings(cls, settings, is_server=False):
        return cls(
            settings.db_path,
            is_server=is_server,
            poll_interval=settings.poll_interval,
            change_retention=settings.change_retention,
        )

    @contextmanager
    def _session(self, table):
        """Open a session, mapping storage failures onto roomsync errors."""
        try:
            with self.Session() as session:
                yield session
        except IntegrityError as e:
            if "UNIQUE" in str(e.orig).upper():
                raise DuplicateEntry(f"Duplicate row in {table}") from e
            logger.error(f"Integrity error on {table}: {e.orig}")
            raise BackendError(f"Write to {table} rejected") from e
        except SQLAlchemyError as e:
            logger.error(f"Storage error on {table}: {e}")
            raise BackendError(f"Storage error on {table}") from e

    @staticmethod
    def _model(table):
        try:
            return TABLES[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}") from None

    @staticmethod
    def _record_change(session, table, event_type, record, old_record=None):
        session.add(Change(
            table_name=table,
            event_type=event_type,
            record=_jsonable(record),
            old_record=_jsonable(old_record) if old_record is not None else None,
            committed_at=utcnow(),
        ))

    def latest_seq(self):
        with self._session(Change.__tablename__) as session:
            return session.query(func.max(Change.seq)).scalar() or 0

    def channel(self, name):
        return Channel(self, name)

    def remove_channel(self, channel):
        channel.unsubscribe()

    async def insert(self, table, values):
        """Insert one row and return it."""
        model = self._model(table)
        with self._session(table) as session:
            obj = model(**values)
            session.add(obj)
            session.flush()
            row = row_to_dict(obj)
            self._record_change(session, table, "INSERT", row)
            session.commit()
        logger.debug(f"Inserted {table} row {row.get('id')}")
        return row

    async def update(self, table, values, *criteria, **filters):
        """Overwrite columns on every matching row. Returns the updated rows."""
        model = self._model(table)
        rows = []
        with self._session(table) as session:
            for obj in session.query(model).filter(*criteria).filter_by(**filters).all():
                old_row = row_to_dict(obj)
                for column, value in values.items():
                    setattr(obj, column, value)
                new_row = row_to_dict(obj)
                self._record_change(session, table, "UPDATE", new_row, old_row)
                rows.append(new_row)
            session.commit()
        logger.debug(f"Updated {len(rows)} {table} row(s)")
        return rows

    async def delete(self, table, *criteria, **filters):
        """Delete every matching row. Returns how many were removed."""
        model = self._model(table)
        with self._session(table) as session:
            objs = session.query(model).filter(*criteria).filter_by(**filters).all()
            for obj in objs:
                self._record_change(session, table, "DELETE", row_to_dict(obj), row_to_dict(obj))
                session.delete(obj)
            session.commit()
        if objs:
            logger.debug(f"Deleted {len(objs)} {table} row(s)")
        return len(objs)

    async def select(self, table, *criteria, order_by=None, descending=False, limit=None, **filters):
        model = self._model(table)
        with self._session(table) as session:
            query = session.query(model).filter(*criteria).filter_by(**filters)
            if order_by is not None:
                column = getattr(model, order_by)
                query = query.order_by(column.desc() if descending else column.asc())
            if limit is not None:
                query = query.limit(limit)
            return [row_to_dict(obj) for obj in query.all()]

    async def get(self, table, row_id):
        model = self._model(table)
        with self._session(table) as session:
            obj = session.get(model, row_id)
            return row_to_dict(obj) if obj is not None else None

    async def poll_once(self):
        """Fetch every change committed since the last poll and dispatch it in commit order."""
        with self._session(Change.__tablename__) as session:
            rows = session.query(Change).filter(Change.seq > self._cursor).order_by(Change.seq).all()
            changes = [
                ChangeEvent(
                    seq=row.seq,
                    table=row.table_name,
                    event_type=row.event_type,
                    record=row.record or {},
                    old_record=row.old_record,
                    committed_at=row.committed_at,
                )
                for row in rows
            ]
        for change in changes:
            self._cursor = change.seq
            await self._dispatch(change)
        return len(changes)

    async def _dispatch(self, change):
        for channel in list(self._channels):
            for binding in list(channel.bindings):
                # Checked per binding: an earlier callback may have released the channel
                if not channel.joined or change.seq <= channel.since:
                    break
                if binding.matches(change):
                    await self._invoke(channel, binding.callback, change)

    async def _invoke(self, channel, callback, change):
        num_args = len(inspect.signature(callback).parameters)
        try:
            if num_args >= 2:
                result = callback(change, change.row)
            elif num_args == 1:
                result = callback(change)
            else:
                result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Callback on channel '{channel.name}' failed for change {change.seq}")

    async def _process_changes(self):
        """Poll the change log until stopped."""
        try:
            while self.running:
                try:
                    await self.poll_once()
                except BackendError as e:
                    logger.error(f"Error polling changes for {self.client_id}: {e}")
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.info(f"_process_changes task cancelled for {self.client_id}")
            raise

    async def prune_changes(self):
        """Drop change log rows older than the retention window."""
        cutoff_time = utcnow() - timedelta(seconds=self.change_retention)
        with self._session(Change.__tablename__) as session:
            removed = session.query(Change).filter(Change.committed_at < cutoff_time).delete()
            session.commit()
        if removed:
            logger.info(f"Pruned {removed} change log row(s)")
        return removed

    async def _prune_changes(self):
        try:
            while self.running:
                try:
                    await self.prune_changes()
                except BackendError as e:
                    logger.error(f"Error pruning change log: {e}")
                await asyncio.sleep(self.change_retention)
        except asyncio.CancelledError:
            logger.info(f"_prune_changes task cancelled for {self.client_id}")
            raise

    async def start(self):
        """Start polling the change feed."""
        if self.running:
            logger.warning(f"{'Server' if self.is_server else 'Client'} {self.client_id} is already running.")
            return
        self.running = True
        self.tasks = []
        self.tasks.append(asyncio.create_task(self._process_changes()))
        if self.is_server:
            self.tasks.append(asyncio.create_task(self._prune_changes()))
        logger.info(f"{'Server' if self.is_server else 'Client'} {self.client_id} started successfully.")

    async def stop(self):
        """Stop polling and release every channel."""
        if not self.running:
            logger.warning(f"{'Server' if self.is_server else 'Client'} {self.client_id} is not running.")
            return
        self.running = False
        # Cancel running tasks
        for task in self.tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.tasks.clear()
        for channel in list(self._channels):
            channel.unsubscribe()
        logger.info(f"{'Server' if self.is_server else 'Client'} {self.client_id} stopped.")

    def dispose(self):
        self.engine.dispose()
