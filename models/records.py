from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import JSON, String, delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


def compose_key(server_id: str, entity_id: str) -> str:
    return f"{server_id}_{entity_id}"


class StoreRecord(Base):
    """One JSON document in a named bucket, keyed by ``{server_id}_{entity_id}``.

    ``server_id`` is part of the primary key: "a" + "b_y" and "a_b" + "y" compose the
    same key string but stay two rows owned by two servers.
    """

    __tablename__ = "store_records"

    bucket: Mapped[str] = mapped_column(String(64), primary_key=True)
    server_id: Mapped[str] = mapped_column(String(128), primary_key=True, index=True)
    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON)

    @staticmethod
    async def fetch_one(s: AsyncSession, bucket: str, server_id: str, key: str) -> Optional["StoreRecord"]:
        res = await s.execute(
            select(StoreRecord).where(
                StoreRecord.bucket == bucket, StoreRecord.server_id == server_id, StoreRecord.key == key
            )
        )
        return res.scalar_one_or_none()

    @staticmethod
    async def fetch_by_server(s: AsyncSession, bucket: str, server_id: str) -> list["StoreRecord"]:
        res = await s.execute(
            select(StoreRecord)
            .where(StoreRecord.bucket == bucket, StoreRecord.server_id == server_id)
            .order_by(StoreRecord.key)
        )
        return list(res.scalars())

    @staticmethod
    async def upsert(s: AsyncSession, *, bucket: str, server_id: str, entity_id: str, data: dict[str, Any]):
        key = compose_key(server_id, entity_id)
        row = await StoreRecord.fetch_one(s, bucket, server_id, key)
        if row:
            row.data = data
        else:
            row = StoreRecord(bucket=bucket, server_id=server_id, key=key, data=data)
            s.add(row)
        return row

    @staticmethod
    async def delete_one(s: AsyncSession, bucket: str, server_id: str, key: str) -> None:
        await s.execute(
            delete(StoreRecord).where(
                StoreRecord.bucket == bucket, StoreRecord.server_id == server_id, StoreRecord.key == key
            )
        )

    @staticmethod
    async def delete_by_server(s: AsyncSession, bucket: str, server_id: str) -> None:
        # server_id column rather than LIKE '{id}_%': "a_" would also match server "a_b"
        await s.execute(
            delete(StoreRecord).where(StoreRecord.bucket == bucket, StoreRecord.server_id == server_id)
        )
