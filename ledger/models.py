from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel


def _money_to_json(value: Decimal) -> Any:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


# Stored documents keep amounts as plain JSON numbers.
Money = Annotated[Decimal, PlainSerializer(_money_to_json, when_used="json")]


class LoanStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class FineReason(str, Enum):
    SAVING_DEFAULT = "Saving Default"
    INTEREST_DEFAULT = "Interest Default"
    OTHER = "Other"


class Role(str, Enum):
    ADMIN = "Admin"
    VIEWER = "Viewer"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Record(CamelModel):
    # Unknown keys survive a read-modify-write of the whole document.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str


# ---------------------------------------------------------------- entities


class Member(Record):
    name: str = Field(..., min_length=1)
    phone: str
    join_date: date
    address: Optional[str] = None
    active: bool = Field(default=True, validation_alias=AliasChoices("active", "isActive"))


class Saving(Record):
    member_id: str
    amount: Money = Field(..., gt=0)
    date: date
    remarks: Optional[str] = None


class Loan(Record):
    member_id: str
    principal: Money = Field(..., gt=0)
    interest_rate: Money = Field(..., ge=0, description="Annual percentage")
    start_date: date
    term_months: int = Field(..., gt=0)
    purpose: Optional[str] = None
    status: Optional[LoanStatus] = None


class Payment(Record):
    loan_id: str
    member_id: str
    date: date
    principal_paid: Money = Field(..., ge=0)
    interest_paid: Money = Field(..., ge=0)
    remarks: Optional[str] = None


class FinePayment(Record):
    member_id: str
    date: date
    amount: Money = Field(..., gt=0)
    reason: FineReason
    note: Optional[str] = None


class Expenditure(Record):
    date: date
    item: str = Field(..., min_length=1)
    amount: Money = Field(..., gt=0)
    note: Optional[str] = None


class User(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    user_id: str = Field(..., min_length=1)
    name: str
    password: str = Field(..., description="bcrypt hash")
    role: Role


class SettingsDocument(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    users: list[User] = Field(default_factory=list)


class ChatMessage(Record):
    sender: str
    text: str
    timestamp: datetime
    edited: bool = False
    seen_by: list[str] = Field(default_factory=list)


class BackupSnapshot(CamelModel):
    timestamp: Optional[str] = None
    members: list[Member] = Field(default_factory=list)
    savings: list[Saving] = Field(default_factory=list)
    loans: list[Loan] = Field(default_factory=list)
    payments: list[Payment] = Field(default_factory=list)
    fines: list[FinePayment] = Field(default_factory=list)
    expenditures: list[Expenditure] = Field(default_factory=list)
    settings: SettingsDocument = Field(default_factory=SettingsDocument)


# ---------------------------------------------------------------- requests


class MemberRequest(CamelModel):
    name: str = Field(..., min_length=1)
    phone: str
    join_date: date
    address: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, json_schema_extra={
        "example": {
            "name": "Ram Bahadur",
            "phone": "9800000000",
            "joinDate": "2025-01-15",
            "address": "Ward 4",
        }
    })


class SavingRequest(CamelModel):
    member_id: str
    amount: Money = Field(..., gt=0)
    date: date
    remarks: Optional[str] = None


class BulkSavingRequest(CamelModel):
    member_ids: list[str] = Field(..., min_length=1)
    amount: Money = Field(..., gt=0)
    date: date
    remarks: Optional[str] = "Bulk fixed saving"


class LoanRequest(CamelModel):
    member_id: str
    principal: Money = Field(..., gt=0)
    interest_rate: Money = Field(..., ge=0)
    start_date: date
    term_months: int = Field(..., gt=0)
    purpose: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, json_schema_extra={
        "example": {
            "memberId": "M-0001",
            "principal": 50000,
            "interestRate": 20,
            "startDate": "2025-10-01",
            "termMonths": 6,
        }
    })


class PaymentRequest(CamelModel):
    loan_id: str
    member_id: Optional[str] = Field(None, description="Defaults to the loan's member")
    date: date
    principal_paid: Money = Field(default=Decimal("0"), ge=0)
    interest_paid: Money = Field(default=Decimal("0"), ge=0)
    remarks: Optional[str] = None


class FineRequest(CamelModel):
    member_id: str
    date: date
    amount: Money = Field(..., gt=0)
    reason: FineReason
    note: Optional[str] = None


class ExpenditureRequest(CamelModel):
    date: date
    item: str = Field(..., min_length=1)
    amount: Money = Field(..., gt=0)
    note: Optional[str] = None


class UserRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    name: str
    password: str = Field(..., min_length=1)
    role: Role = Role.VIEWER


class ChatRequest(CamelModel):
    text: str = Field(..., min_length=1)


# ---------------------------------------------------------------- derived views


class LoanPosition(CamelModel):
    loan_id: str
    member_id: str
    principal: Money
    principal_paid: Money
    interest_paid: Money
    outstanding_principal: Money
    monthly_interest: Money
    status: LoanStatus


class MemberAggregate(CamelModel):
    member_id: str
    name: Optional[str] = None
    total_savings: Money
    loans_issued: Money
    principal_paid: Money
    interest_paid: Money
    fines: Money
    net_contribution: Money


class PeriodSummary(CamelModel):
    start: date
    end: date
    members: list[MemberAggregate]
    total_savings: Money
    total_loans_issued: Money
    total_principal_paid: Money
    total_interest: Money
    total_fines: Money
    total_expenditures: Money
    outstanding_loans: Money
    net_balance: Money
    gross_income: Money
    net_profit: Money


class DashboardSummary(CamelModel):
    total_members: int
    total_savings: Money
    total_outstanding: Money
    total_interest: Money
    total_fines: Money
    total_expenditures: Money
    available_balance: Money


class Defaulter(CamelModel):
    id: str
    name: str


class TrendPoint(CamelModel):
    month: str
    savings: Money
    loans_issued: Money


class DistributionSlice(CamelModel):
    name: str
    value: Money
