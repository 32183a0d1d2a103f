from sqlalchemy import Column, String, DateTime, Boolean
from settlement.config.database import Base
from settlement.config.settings import settings
from settlement.utils.clock import utcnow
import uuid


class SubAccount(Base):
    __tablename__ = "sub_accounts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    payee_id = Column(String(64), unique=True, index=True, nullable=False)
    gateway_account_id = Column(String(255), unique=True, index=True, nullable=True)
    enabled = Column(Boolean, default=False, nullable=False)  # charges and payouts enabled
    status_updated_at = Column(DateTime, nullable=True)  # created time of the last applied account event
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_simulated(self) -> bool:
        return bool(self.gateway_account_id) and self.gateway_account_id.startswith(
            settings.SIMULATED_ACCOUNT_PREFIX
        )
