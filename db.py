# db.py - Ledger storage (SQLAlchemy)
# - users: balance row, locked FOR UPDATE by every balance mutation
# - deposit_addresses: unique lower-cased address -> user (1:1, never rotated)
# - transactions: deposit/withdrawal history, UNIQUE(tx_hash, currency) is the dedup key
# - metadata: generic key/value rows (scanner cursor lives here)
# - SQLite: BEGIN IMMEDIATE so the write lock is held before the balance read
# - amounts are exact decimals on every backend (strings on SQLite, NUMERIC elsewhere)

from decimal import Decimal

from sqlalchemy import (
    create_engine, event, Column, Integer, BigInteger, String, Numeric, DateTime, Text,
    ForeignKey, UniqueConstraint, TypeDecorator,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base, relationship
from sqlalchemy.sql import func

from config import DATABASE_URL

Base = declarative_base()


class ExactAmount(TypeDecorator):
    """Decimal column that round-trips every digit.

    SQLite has no decimal type and Numeric would go through float there,
    so the value is stored as a plain decimal string instead.
    """

    impl = Numeric(96, 18, asdecimal=True)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(100))
        return dialect.type_descriptor(self.impl)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(value)
        if dialect.name == "sqlite":
            return format(value, "f")
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value) if not isinstance(value, Decimal) else value


AMOUNT = ExactAmount()

# transaction type / status values
TX_DEPOSIT = "deposit"
TX_WITHDRAWAL = "withdrawal"
STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"


class UserRecord(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(255), nullable=False, unique=True)
    balance = Column(AMOUNT, nullable=False, default=0)
    derivation_path = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    deposit_address = relationship("DepositAddressRecord", back_populates="user", uselist=False)


class DepositAddressRecord(Base):
    __tablename__ = "deposit_addresses"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    wallet_address = Column(String(64), nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("UserRecord", back_populates="deposit_address")


class TransactionRecord(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("tx_hash", "currency", name="uq_transactions_tx_hash_currency"),
    )
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(AMOUNT, nullable=False)  # always positive, sign comes from type
    currency = Column(String(64), nullable=False)
    tx_hash = Column(String(80), nullable=True)  # NULL until a withdrawal is broadcast
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    address = Column(String(64))
    block_number = Column(BigInteger)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class MetadataRecord(Base):
    __tablename__ = "metadata"
    key = Column(String(255), primary_key=True)
    value = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# ---------------------------------
# Engine / sessions
# ---------------------------------
def _use_immediate_transactions(engine: Engine):
    # pysqlite defers BEGIN until the first write; take the lock up front instead
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str = DATABASE_URL) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        _use_immediate_transactions(engine)
        return engine
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(bind: Engine = None):
    Base.metadata.create_all(bind=bind or engine)


engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)
