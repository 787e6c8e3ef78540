"""
Внешнее хранилище (backend-as-a-service).

Backend - контракт, который нужен ядру: CRUD по таблицам, upsert по ключу
конфликта, подписка на изменения, загрузка файлов.
InMemoryBackend - реализация в памяти для демо и тестов; умеет
добавлять задержку и отказы на отдельные вызовы.
"""

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .domain import ChangeEvent
from .errors import BackendError, ConflictError, RowNotFound
from .transforms import load_seed

logger = logging.getLogger("shop.backend")

Row = Dict


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Backend(Protocol):
    async def select(
        self,
        table: str,
        filters: Optional[Mapping] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Row]: ...

    async def get(self, table: str, row_id: str) -> Optional[Row]: ...

    async def insert(self, table: str, row: Mapping) -> Row: ...

    async def update(
        self, table: str, row_id: str, changes: Mapping, expected: Optional[Mapping] = None
    ) -> Row: ...

    async def upsert(self, table: str, row: Mapping, on_conflict: Sequence[str]) -> Row: ...

    async def delete(self, table: str, filters: Mapping) -> int: ...

    def subscribe(
        self, table: str, queue: asyncio.Queue, filters: Optional[Mapping] = None
    ) -> Callable[[], None]: ...

    async def upload(self, bucket: str, name: str, data: bytes, content_type: str) -> str: ...


class Identity:
    """Текущий пользователь клиента (None - не авторизован)"""

    def __init__(self, user_id: Optional[str] = None):
        self._user_id = user_id

    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        self._user_id = user_id

    def sign_out(self) -> None:
        self._user_id = None


def _matches(row: Mapping, filters: Optional[Mapping]) -> bool:
    return all(row.get(k) == v for k, v in (filters or {}).items())


class InMemoryBackend:
    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.calls: List[Tuple[str, str]] = []
        self.blobs: Dict[str, bytes] = {}
        self._tables: Dict[str, Dict[str, Row]] = {}
        self._subscriptions: List[Tuple[str, Optional[Mapping], asyncio.Queue]] = []
        self._failures: Dict[Tuple[str, str], int] = {}
        self._delays: Dict[Tuple[str, str], float] = {}

    @classmethod
    def from_seed(cls, path: str, latency: float = 0.0) -> "InMemoryBackend":
        backend = cls(latency=latency)
        backend.seed("products", load_seed(path))
        return backend

    # ============ Управление для тестов ============

    def seed(self, table: str, rows) -> List[Row]:
        """Прямая запись строк без задержек и уведомлений"""
        stored = []
        for row in rows:
            row = self._stamp(row)
            self._table(table)[row["id"]] = row
            stored.append(copy.deepcopy(row))
        return stored

    def fail_next(self, op: str, table: str, times: int = 1) -> None:
        self._failures[(op, table)] = self._failures.get((op, table), 0) + times

    def delay(self, op: str, table: str, seconds: float) -> None:
        self._delays[(op, table)] = seconds

    def calls_to(self, table: str) -> List[str]:
        return [op for op, t in self.calls if t == table]

    def rows(self, table: str) -> List[Row]:
        return [copy.deepcopy(r) for r in self._table(table).values()]

    # ============ Внутреннее ============

    def _table(self, table: str) -> Dict[str, Row]:
        return self._tables.setdefault(table, {})

    @staticmethod
    def _stamp(row: Mapping) -> Row:
        row = copy.deepcopy(dict(row))
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", utcnow_iso())
        return row

    async def _enter(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        await asyncio.sleep(self._delays.get((op, table), self.latency))
        remaining = self._failures.get((op, table), 0)
        if remaining:
            self._failures[(op, table)] = remaining - 1
            raise BackendError(f"{op} {table}: service unavailable")

    def _notify(self, table: str, event_type: str, new: Mapping, old: Mapping) -> None:
        event = ChangeEvent(table, event_type, copy.deepcopy(dict(new)), copy.deepcopy(dict(old)))
        for sub_table, filters, queue in self._subscriptions:
            if sub_table == table and _matches(event.row, filters):
                queue.put_nowait(event)

    # ============ Контракт Backend ============

    async def select(self, table, filters=None, order_by=None, descending=False) -> List[Row]:
        await self._enter("select", table)
        rows = [copy.deepcopy(r) for r in self._table(table).values() if _matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: r.get(order_by) or "", reverse=descending)
        return rows

    async def get(self, table, row_id) -> Optional[Row]:
        await self._enter("get", table)
        row = self._table(table).get(row_id)
        return copy.deepcopy(row) if row is not None else None

    async def insert(self, table, row) -> Row:
        await self._enter("insert", table)
        row = self._stamp(row)
        self._table(table)[row["id"]] = row
        self._notify(table, "INSERT", row, {})
        return copy.deepcopy(row)

    async def update(self, table, row_id, changes, expected=None) -> Row:
        await self._enter("update", table)
        current = self._table(table).get(row_id)
        if current is None:
            raise RowNotFound(f"{table}/{row_id}")
        if expected and not _matches(current, expected):
            raise ConflictError(f"{table}/{row_id}: expected {dict(expected)}")
        old = copy.deepcopy(current)
        current.update(copy.deepcopy(dict(changes)))
        current["updated_at"] = utcnow_iso()
        self._notify(table, "UPDATE", current, old)
        return copy.deepcopy(current)

    async def upsert(self, table, row, on_conflict) -> Row:
        await self._enter("upsert", table)
        key = {k: row[k] for k in on_conflict}
        current = next((r for r in self._table(table).values() if _matches(r, key)), None)
        if current is None:
            new = self._stamp(row)
            self._table(table)[new["id"]] = new
            self._notify(table, "INSERT", new, {})
            return copy.deepcopy(new)
        old = copy.deepcopy(current)
        current.update({k: copy.deepcopy(v) for k, v in row.items() if k != "id"})
        current["updated_at"] = utcnow_iso()
        self._notify(table, "UPDATE", current, old)
        return copy.deepcopy(current)

    async def delete(self, table, filters) -> int:
        await self._enter("delete", table)
        doomed = [r for r in self._table(table).values() if _matches(r, filters)]
        for row in doomed:
            del self._table(table)[row["id"]]
            self._notify(table, "DELETE", {}, row)
        return len(doomed)

    def subscribe(self, table, queue, filters=None) -> Callable[[], None]:
        entry = (table, dict(filters) if filters else None, queue)
        self._subscriptions.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscriptions:
                self._subscriptions.remove(entry)

        return unsubscribe

    async def upload(self, bucket, name, data, content_type) -> str:
        await self._enter("upload", bucket)
        key = f"{bucket}/{name}"
        if key in self.blobs:
            raise BackendError(f"{key} already exists")
        self.blobs[key] = bytes(data)
        logger.info("uploaded %s (%s, %d bytes)", key, content_type, len(data))
        return f"memory://{key}"
