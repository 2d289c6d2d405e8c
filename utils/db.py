from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from utils.config import settings

def make_engine(url: str):
    if url.startswith("sqlite"):
        # aiosqlite: no pre-ping, wait on writers instead of failing with "database is locked"
        return create_async_engine(url, echo=False, connect_args={"timeout": 15})
    return create_async_engine(url, echo=False, pool_pre_ping=True)

async_engine = make_engine(settings.DB_URL)
async_session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
