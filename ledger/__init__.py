"""
Cooperative Savings Ledger

This module provides:
- Entity models for members, savings, loans, payments, fines and expenditures
- A pure ledger engine: outstanding principal, interest, loan status,
  member aggregates, period rollups and defaulter detection
- Mutation coordinators that edit whole documents through the versioned store
- Backup snapshots and restore
"""

from .models import (
    Expenditure,
    FinePayment,
    FineReason,
    Loan,
    LoanStatus,
    Member,
    MemberAggregate,
    Payment,
    PeriodSummary,
    Role,
    Saving,
)
from .service import (
    Actor,
    AuthorizationError,
    LedgerService,
    LedgerServiceError,
    RecordNotFoundError,
    RecordValidationError,
    ReferentialIntegrityError,
)

__all__ = [
    "Member",
    "Saving",
    "Loan",
    "LoanStatus",
    "Payment",
    "FinePayment",
    "FineReason",
    "Expenditure",
    "Role",
    "MemberAggregate",
    "PeriodSummary",
    "Actor",
    "LedgerService",
    "LedgerServiceError",
    "RecordValidationError",
    "ReferentialIntegrityError",
    "RecordNotFoundError",
    "AuthorizationError",
]
