from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.config import settings

engine = create_async_engine(
    settings.database_url,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=settings.database_echo,
)

# expire_on_commit=False keeps scoped rows readable after the RLS transaction commits
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
