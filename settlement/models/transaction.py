from sqlalchemy import Column, String, DateTime, Boolean, Numeric, Index, Enum as SQLEnum, text
from settlement.config.database import Base
from settlement.utils.clock import utcnow
import uuid
import enum


class TransactionStatus(str, enum.Enum):
    COMPLETED = "completed"
    ERROR = "error"


class TransactionSource(str, enum.Enum):
    BACKEND = "backend"
    WEBHOOK = "webhook"
    CLIENT_FALLBACK = "client_fallback"


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)  # gross amount charged
    commission = Column(Numeric(12, 2), nullable=False)
    gateway_reference = Column(String(255), nullable=False, index=True)  # payment intent id
    payout_status = Column(Boolean, default=False, nullable=False)
    status = Column(SQLEnum(TransactionStatus), default=TransactionStatus.COMPLETED, nullable=False)
    source = Column(SQLEnum(TransactionSource), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        # At most one paid transaction per job.
        Index(
            "uq_transactions_job_paid",
            "job_id",
            unique=True,
            postgresql_where=text("payout_status"),
            sqlite_where=text("payout_status = 1"),
        ),
        Index("ix_transactions_job_reference", "job_id", "gateway_reference"),
    )

    @property
    def net_amount(self):
        return self.amount - self.commission
