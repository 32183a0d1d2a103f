from pydantic import BaseModel, EmailStr, Field, TypeAdapter
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Literal, Optional, Union
from settlement.models.transaction import TransactionStatus, TransactionSource


# ============== Backend Settlement Schemas ==============

class CreatePaymentIntentRequest(BaseModel):
    job_id: str = Field(alias="jobId", min_length=1)
    total_amount: int = Field(alias="totalAmount", gt=0)  # minor units, commission included
    payer_id: str = Field(alias="payerId")
    payee_id: str = Field(alias="payeeId")
    is_simulated_account: bool = Field(default=False, alias="isSimulatedAccount")
    service_name: Optional[str] = Field(default=None, alias="serviceName")
    payer_name: Optional[str] = Field(default=None, alias="payerName")

    class Config:
        populate_by_name = True


class CreatePaymentIntentResponse(BaseModel):
    client_secret: Optional[str] = Field(default=None, alias="clientSecret")
    payment_intent_id: Optional[str] = Field(default=None, alias="paymentIntentId")
    use_connect_account: bool = Field(default=False, alias="useConnectAccount")
    payee_account_id: Optional[str] = Field(default=None, alias="payeeAccountId")

    class Config:
        populate_by_name = True


class ConfirmTransferRequest(BaseModel):
    job_id: str = Field(alias="jobId", min_length=1)
    client_secret: str = Field(alias="clientSecret", min_length=1)
    total_amount: int = Field(alias="totalAmount", gt=0)
    payee_id: str = Field(alias="payeeId")

    class Config:
        populate_by_name = True


class ConfirmTransferResponse(BaseModel):
    success: bool
    status: Optional[str] = None
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    payment_intent_id: Optional[str] = Field(default=None, alias="paymentIntentId")
    created: bool = False
    message: Optional[str] = None

    class Config:
        populate_by_name = True


# ============== Sub-Account Schemas ==============

class CreateAccountRequest(BaseModel):
    payee_id: str = Field(alias="payeeId", min_length=1)
    email: EmailStr
    name: Optional[str] = None

    class Config:
        populate_by_name = True


class CreateAccountResponse(BaseModel):
    success: bool = True
    account_id: str = Field(alias="accountId")

    class Config:
        populate_by_name = True


class OnboardingLinkRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)

    class Config:
        populate_by_name = True


class OnboardingLinkResponse(BaseModel):
    success: bool = True
    url: str


class SubAccountStatus(BaseModel):
    has_account: bool = Field(alias="hasAccount")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    enabled: bool = False
    needs_onboarding: bool = Field(default=False, alias="needsOnboarding")
    simulated: bool = False

    class Config:
        populate_by_name = True


# ============== Transaction Schemas ==============

class TransactionResponse(BaseModel):
    id: str
    job_id: str
    amount: Decimal
    commission: Decimal
    gateway_reference: str
    payout_status: bool
    status: TransactionStatus
    source: TransactionSource
    created_at: datetime

    class Config:
        from_attributes = True


# ============== Notification Payloads ==============

class PaymentLine(BaseModel):
    job_id: str
    amount: Decimal
    service_name: str
    payer_name: str


class IndividualPaymentData(BaseModel):
    type: Literal["individual"] = "individual"
    job_id: str
    amount: Decimal
    service_name: str
    payer_name: str

    def as_line(self) -> PaymentLine:
        return PaymentLine(
            job_id=self.job_id,
            amount=self.amount,
            service_name=self.service_name,
            payer_name=self.payer_name,
        )


class GroupedPaymentData(BaseModel):
    type: Literal["grouped"] = "grouped"
    job_ids: List[str]
    total_amount: Decimal
    payment_count: int
    payments: List[PaymentLine]


NotificationData = Annotated[
    Union[IndividualPaymentData, GroupedPaymentData],
    Field(discriminator="type"),
]

notification_data_adapter = TypeAdapter(NotificationData)


# ============== Gateway Webhook Schemas ==============

class GatewayEventData(BaseModel):
    object: dict


class GatewayEvent(BaseModel):
    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: GatewayEventData

    @property
    def object_id(self) -> Optional[str]:
        return self.data.object.get("id")

    @property
    def object_type(self) -> Optional[str]:
        return self.data.object.get("object")


class AccountObject(BaseModel):
    id: str
    object: str = "account"
    charges_enabled: bool = False
    payouts_enabled: bool = False
    metadata: Dict[str, str] = {}

    @property
    def payee_id(self) -> Optional[str]:
        return self.metadata.get("payeeId")

    @property
    def fully_enabled(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


class PaymentIntentObject(BaseModel):
    id: str
    object: str = "payment_intent"
    amount: int
    currency: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, str] = {}

    @property
    def job_id(self) -> Optional[str]:
        return self.metadata.get("jobId")

    @property
    def payee_id(self) -> Optional[str]:
        return self.metadata.get("payeeId")


class WebhookAck(BaseModel):
    received: bool = True
