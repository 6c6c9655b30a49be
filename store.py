"""SQLAlchemy persistence for discovered tokens.

One table keyed by the unique pair address. Each upsert runs in its own
transaction; nothing spans more than one pair.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    func,
    select,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from errors import InvalidStatusError
from models import StoredToken, TokenStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TokenModel(Base):
    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pair_address: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    chain_id: Mapped[str] = mapped_column(String(50), nullable=False)
    dex_id: Mapped[str] = mapped_column(String(50), nullable=False)
    base_token_address: Mapped[str] = mapped_column(String(255), nullable=False)
    base_token_name: Mapped[Optional[str]] = mapped_column(String(255))
    base_token_symbol: Mapped[Optional[str]] = mapped_column(String(50))
    quote_token_address: Mapped[Optional[str]] = mapped_column(String(255))
    quote_token_symbol: Mapped[Optional[str]] = mapped_column(String(50))

    price_usd: Mapped[float] = mapped_column(Float, default=0.0)
    price_native: Mapped[float] = mapped_column(Float, default=0.0)
    volume_24h: Mapped[float] = mapped_column(Float, default=0.0)
    volume_6h: Mapped[float] = mapped_column(Float, default=0.0)
    volume_1h: Mapped[float] = mapped_column(Float, default=0.0)
    volume_5m: Mapped[float] = mapped_column(Float, default=0.0)
    price_change_24h: Mapped[float] = mapped_column(Float, default=0.0)
    price_change_6h: Mapped[float] = mapped_column(Float, default=0.0)
    price_change_1h: Mapped[float] = mapped_column(Float, default=0.0)
    price_change_5m: Mapped[float] = mapped_column(Float, default=0.0)
    liquidity_usd: Mapped[float] = mapped_column(Float, default=0.0)
    native_liquidity: Mapped[Optional[float]] = mapped_column(Float)
    pair_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    holders_count: Mapped[int] = mapped_column(Integer, default=0)
    top_holder_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    holder_distribution: Mapped[Optional[list]] = mapped_column(JSON)
    net_traders: Mapped[int] = mapped_column(Integer, default=0)
    estimated_market_cap: Mapped[Optional[float]] = mapped_column(Float)
    rug_score: Mapped[float] = mapped_column(Float, default=0.0)
    rug_risks: Mapped[Optional[list]] = mapped_column(JSON)
    freeze_authority: Mapped[Optional[str]] = mapped_column(String(255))
    mint_authority: Mapped[Optional[str]] = mapped_column(String(255))
    update_authority: Mapped[Optional[str]] = mapped_column(String(255))
    is_mutable: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default=TokenStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_tokens_chain_id", "chain_id"),
        Index("idx_tokens_status", "status"),
        Index("idx_tokens_created_at", "created_at"),
        Index("idx_tokens_volume_24h", "volume_24h"),
        Index("idx_tokens_liquidity_usd", "liquidity_usd"),
        Index("idx_tokens_holders_count", "holders_count"),
        Index("idx_tokens_rug_score", "rug_score"),
    )


# Columns rewritten on every re-ingestion. pair_address, status and
# created_at are never touched by an update.
MUTABLE_COLUMNS = (
    "chain_id",
    "dex_id",
    "base_token_address",
    "base_token_name",
    "base_token_symbol",
    "quote_token_address",
    "quote_token_symbol",
    "price_usd",
    "price_native",
    "volume_24h",
    "volume_6h",
    "volume_1h",
    "volume_5m",
    "price_change_24h",
    "price_change_6h",
    "price_change_1h",
    "price_change_5m",
    "liquidity_usd",
    "native_liquidity",
    "pair_created_at",
    "holders_count",
    "top_holder_percentage",
    "holder_distribution",
    "net_traders",
    "estimated_market_cap",
    "rug_score",
    "rug_risks",
    "freeze_authority",
    "mint_authority",
    "update_authority",
    "is_mutable",
)

SORTABLE_COLUMNS = (
    "pair_created_at",
    "created_at",
    "volume_24h",
    "volume_5m",
    "liquidity_usd",
    "native_liquidity",
    "price_change_24h",
    "price_change_5m",
    "price_native",
    "holders_count",
    "rug_score",
)


class Database:
    """
    Owns the async engine (and therefore the connection pool).
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = create_async_engine(url, echo=echo)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def session(self) -> AsyncSession:
        return self.sessionmaker()

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database connection failed: %s", e)
            return False

    async def close(self) -> None:
        logger.info("Closing database connections...")
        await self.engine.dispose()


@dataclass
class TokenQuery:
    """
    Filters for the query API. None means "not filtered".
    """

    chain_id: Optional[str] = None
    status: Optional[str] = TokenStatus.ACTIVE.value
    dex_id: Optional[str] = None
    min_volume: Optional[float] = None
    max_volume: Optional[float] = None
    min_liquidity: Optional[float] = None
    max_liquidity: Optional[float] = None
    min_native_liquidity: Optional[float] = None
    min_holders: Optional[int] = None
    max_rug_score: Optional[float] = None
    sort_by: str = "pair_created_at"
    sort_order: str = "DESC"
    limit: int = 50
    offset: int = 0

    def conditions(self) -> List[Any]:
        conds = []
        if self.status:
            conds.append(TokenModel.status == self.status)
        if self.chain_id:
            conds.append(TokenModel.chain_id == self.chain_id)
        if self.dex_id:
            conds.append(TokenModel.dex_id == self.dex_id)
        if self.min_volume is not None:
            conds.append(TokenModel.volume_24h >= self.min_volume)
        if self.max_volume is not None:
            conds.append(TokenModel.volume_24h <= self.max_volume)
        if self.min_liquidity is not None:
            conds.append(TokenModel.liquidity_usd >= self.min_liquidity)
        if self.max_liquidity is not None:
            conds.append(TokenModel.liquidity_usd <= self.max_liquidity)
        if self.min_native_liquidity is not None:
            conds.append(TokenModel.native_liquidity >= self.min_native_liquidity)
        if self.min_holders is not None:
            conds.append(TokenModel.holders_count >= self.min_holders)
        if self.max_rug_score is not None:
            conds.append(TokenModel.rug_score <= self.max_rug_score)
        return conds


class TokenRepository:
    """
    Data access for StoredToken records.
    """

    def __init__(self, database: Database):
        self.database = database

    async def find_by_pair_address(self, pair_address: str) -> Optional[StoredToken]:
        async with self.database.session() as session:
            result = await session.execute(select(TokenModel).where(TokenModel.pair_address == pair_address))
            model = result.scalar_one_or_none()
            return StoredToken.model_validate(model) if model else None

    def _insert(self):
        if self.database.dialect == "postgresql":
            return pg_insert(TokenModel)
        return sqlite_insert(TokenModel)

    async def upsert(self, token: StoredToken, now: Optional[datetime] = None) -> StoredToken:
        """
        Insert the token, or refresh every mutable column of the existing row.

        created_at is written only on insert; status is never changed here;
        updated_at is set to `now` either way.
        """
        now = now or _utcnow()
        values: Dict[str, Any] = {col: getattr(token, col) for col in MUTABLE_COLUMNS}
        values["pair_address"] = token.pair_address

        stmt = self._insert().values(
            **values,
            status=TokenStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        set_ = {col: getattr(stmt.excluded, col) for col in MUTABLE_COLUMNS}
        set_["updated_at"] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(index_elements=["pair_address"], set_=set_)

        async with self.database.session() as session:
            async with session.begin():
                await session.execute(stmt)
            result = await session.execute(
                select(TokenModel).where(TokenModel.pair_address == token.pair_address)
            )
            return StoredToken.model_validate(result.scalar_one())

    async def update_status(self, pair_address: str, status: str) -> Optional[StoredToken]:
        if status not in TokenStatus.values():
            raise InvalidStatusError(status, TokenStatus.values())

        async with self.database.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(TokenModel)
                    .where(TokenModel.pair_address == pair_address)
                    .values(status=status, updated_at=_utcnow())
                )
                if result.rowcount == 0:
                    return None
            result = await session.execute(select(TokenModel).where(TokenModel.pair_address == pair_address))
            model = result.scalar_one()
            logger.info("Token status updated: %s -> %s", pair_address, status)
            return StoredToken.model_validate(model)

    # ---------------------------------------------------------
    # Query helpers for the HTTP layer
    # ---------------------------------------------------------
    async def list_tokens(self, query: TokenQuery) -> List[StoredToken]:
        stmt = select(TokenModel).where(*query.conditions())
        if query.sort_by in SORTABLE_COLUMNS:
            column = getattr(TokenModel, query.sort_by)
            stmt = stmt.order_by(column.asc() if query.sort_order.upper() == "ASC" else column.desc())
        stmt = stmt.limit(query.limit).offset(query.offset)

        async with self.database.session() as session:
            result = await session.execute(stmt)
            return [StoredToken.model_validate(m) for m in result.scalars().all()]

    async def count_tokens(self, query: TokenQuery) -> int:
        stmt = select(func.count()).select_from(TokenModel).where(*query.conditions())
        async with self.database.session() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def stats(self, chain_id: Optional[str] = None) -> Dict[str, Any]:
        conds = [TokenModel.status == TokenStatus.ACTIVE.value]
        if chain_id:
            conds.append(TokenModel.chain_id == chain_id)
        stmt = select(
            func.count(TokenModel.id),
            func.sum(TokenModel.volume_24h),
            func.avg(TokenModel.liquidity_usd),
        ).where(*conds)
        async with self.database.session() as session:
            total, total_volume, avg_liquidity = (await session.execute(stmt)).one()
        return {
            "total": int(total or 0),
            "total_volume": float(total_volume or 0.0),
            "avg_liquidity": float(avg_liquidity or 0.0),
        }

    async def dex_stats(self, chain_id: str, dex_id: str) -> Dict[str, Any]:
        stmt = select(
            func.count(TokenModel.id),
            func.avg(TokenModel.volume_24h),
            func.sum(TokenModel.volume_24h),
            func.avg(TokenModel.liquidity_usd),
            func.sum(TokenModel.liquidity_usd),
            func.avg(TokenModel.native_liquidity),
            func.sum(TokenModel.native_liquidity),
            func.avg(TokenModel.holders_count),
            func.avg(TokenModel.rug_score),
        ).where(
            TokenModel.status == TokenStatus.ACTIVE.value,
            TokenModel.chain_id == chain_id,
            TokenModel.dex_id == dex_id,
        )
        async with self.database.session() as session:
            row = (await session.execute(stmt)).one()
        keys = (
            "total_tokens",
            "avg_volume",
            "total_volume",
            "avg_liquidity",
            "total_liquidity",
            "avg_native_liquidity",
            "total_native_liquidity",
            "avg_holders",
            "avg_rug_score",
        )
        return {k: (float(v) if v is not None else None) for k, v in zip(keys, row)}

    async def recent_activity(self, chain_id: Optional[str] = None, limit: int = 20) -> List[StoredToken]:
        return await self.list_tokens(
            TokenQuery(chain_id=chain_id, sort_by="pair_created_at", sort_order="DESC", limit=limit)
        )
