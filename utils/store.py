# utils/store.py
from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from exceptions import NotFound, StorageError
from models.records import StoreRecord, compose_key

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class NamespacedStore:
    """Bucketed key-value store; rows are owned by ``(bucket, server_id)`` and keyed ``{server_id}_{entity_id}``.

    Every call opens its own session; writes are committed before returning.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get(self, bucket: str, server_id: str, entity_id: str, model: type[M]) -> M:
        key = compose_key(server_id, entity_id)
        try:
            async with self._session_maker() as s:
                row = await StoreRecord.fetch_one(s, bucket, server_id, key)
        except SQLAlchemyError as e:
            raise StorageError(f"get {bucket}/{key}: {e}") from e
        if row is None:
            raise NotFound(f"{bucket}/{key}")
        return model.model_validate(row.data)

    async def put(self, bucket: str, server_id: str, entity_id: str, record: BaseModel | dict[str, Any]) -> None:
        data = _dump(record)
        try:
            async with self._session_maker() as s, s.begin():
                await StoreRecord.upsert(s, bucket=bucket, server_id=server_id, entity_id=entity_id, data=data)
        except SQLAlchemyError as e:
            raise StorageError(f"put {bucket}/{compose_key(server_id, entity_id)}: {e}") from e

    async def delete(self, bucket: str, server_id: str, entity_id: str) -> None:
        key = compose_key(server_id, entity_id)
        try:
            async with self._session_maker() as s, s.begin():
                await StoreRecord.delete_one(s, bucket, server_id, key)
        except SQLAlchemyError as e:
            raise StorageError(f"delete {bucket}/{key}: {e}") from e

    async def list_by_server(self, bucket: str, server_id: str, model: type[M]) -> list[M]:
        try:
            async with self._session_maker() as s:
                rows = await StoreRecord.fetch_by_server(s, bucket, server_id)
        except SQLAlchemyError as e:
            raise StorageError(f"list {bucket}/{server_id}: {e}") from e
        return [model.model_validate(r.data) for r in rows]

    async def list_raw(self, bucket: str, server_id: str) -> list[dict[str, Any]]:
        try:
            async with self._session_maker() as s:
                rows = await StoreRecord.fetch_by_server(s, bucket, server_id)
        except SQLAlchemyError as e:
            raise StorageError(f"list {bucket}/{server_id}: {e}") from e
        return [r.data for r in rows]

    async def replace_all_for_server(
        self,
        bucket: str,
        server_id: str,
        records: Iterable[tuple[str, BaseModel | dict[str, Any]]],
    ) -> None:
        """Swap every record of ``server_id`` in ``bucket`` for ``records`` in one transaction.

        ``records`` yields ``(entity_id, record)`` pairs.
        """
        # last record wins when an entity id repeats
        items = {entity_id: _dump(r) for entity_id, r in records}
        try:
            async with self._session_maker() as s, s.begin():
                await StoreRecord.delete_by_server(s, bucket, server_id)
                # flush the delete before re-adding keys that may repeat
                await s.flush()
                for entity_id, data in items.items():
                    s.add(StoreRecord(
                        bucket=bucket,
                        key=compose_key(server_id, entity_id),
                        server_id=server_id,
                        data=data,
                    ))
        except SQLAlchemyError as e:
            raise StorageError(f"replace {bucket}/{server_id}: {e}") from e
        log.debug("[store] replaced %s/%s with %d records", bucket, server_id, len(items))


def _dump(record: BaseModel | dict[str, Any]) -> dict[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump(mode="json")
    return dict(record)
