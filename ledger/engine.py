"""
Ledger Engine

Side-effect-free computations over collections already read from the
Document Store. Nothing here is persisted: balances, interest, statuses,
aggregates and defaulter lists are recomputed from current data on demand.
"""

from __future__ import annotations

import calendar
import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence, TypeVar

from .models import (
    DashboardSummary,
    Defaulter,
    DistributionSlice,
    Expenditure,
    FinePayment,
    Loan,
    LoanPosition,
    LoanStatus,
    Member,
    MemberAggregate,
    Payment,
    PeriodSummary,
    Saving,
    TrendPoint,
)

ZERO = Decimal("0")
CENT = Decimal("0.01")

T = TypeVar("T")


def _total(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO)


def payments_for(loan: Loan, payments: Iterable[Payment]) -> list[Payment]:
    return [p for p in payments if p.loan_id == loan.id]


# ---------------------------------------------------------------- loans


def outstanding_principal(loan: Loan, payments: Iterable[Payment]) -> Decimal:
    """Unpaid principal, floored at zero. Interest never reduces principal."""
    paid = _total(p.principal_paid for p in payments_for(loan, payments))
    return max(ZERO, loan.principal - paid)


def monthly_interest(outstanding: Decimal, annual_rate_percent: Decimal) -> Decimal:
    """Simple flat-rate interest for one month on the current outstanding balance."""
    interest = Decimal(outstanding) * Decimal(annual_rate_percent) / 100 / 12
    return interest.quantize(CENT, rounding=ROUND_HALF_UP)


def interest_due(loan: Loan, payments: Iterable[Payment]) -> Decimal:
    return monthly_interest(outstanding_principal(loan, payments), loan.interest_rate)


def loan_status(loan: Loan, payments: Iterable[Payment]) -> LoanStatus:
    # A closed loan reopens if its outstanding balance becomes positive again.
    if outstanding_principal(loan, payments) == ZERO:
        return LoanStatus.CLOSED
    return LoanStatus.ACTIVE


def loan_position(loan: Loan, payments: Iterable[Payment]) -> LoanPosition:
    mine = payments_for(loan, payments)
    outstanding = outstanding_principal(loan, mine)
    return LoanPosition(
        loan_id=loan.id,
        member_id=loan.member_id,
        principal=loan.principal,
        principal_paid=_total(p.principal_paid for p in mine),
        interest_paid=_total(p.interest_paid for p in mine),
        outstanding_principal=outstanding,
        monthly_interest=monthly_interest(outstanding, loan.interest_rate),
        status=loan_status(loan, mine),
    )


def recompute_statuses(loans: Sequence[Loan], payments: Sequence[Payment]) -> list[Loan]:
    """Loans whose persisted status differs from the derived one, with the status corrected."""
    changed = []
    for loan in loans:
        status = loan_status(loan, payments)
        if loan.status != status:
            changed.append(loan.model_copy(update={"status": status}))
    return changed


def payment_member_mismatches(loans: Iterable[Loan], payments: Iterable[Payment]) -> list[Payment]:
    """Payments whose denormalized memberId disagrees with their loan's member."""
    owners = {loan.id: loan.member_id for loan in loans}
    return [
        p for p in payments
        if p.loan_id in owners and owners[p.loan_id] != p.member_id
    ]


# ---------------------------------------------------------------- periods


def period_filter(
    records: Iterable[T], start: date, end: date, field: str = "date"
) -> list[T]:
    """Records whose `field` falls within [start, end], both ends inclusive."""
    return [r for r in records if start <= getattr(r, field) <= end]


def month_window(year: int, month: int) -> tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def quarter_window(year: int, quarter: int) -> tuple[date, date]:
    if quarter not in (1, 2, 3, 4):
        raise ValueError(f"quarter must be 1-4, got {quarter}")
    first_month = (quarter - 1) * 3 + 1
    return date(year, first_month, 1), month_window(year, first_month + 2)[1]


def year_window(year: int) -> tuple[date, date]:
    return date(year, 1, 1), date(year, 12, 31)


def previous_month(day: date) -> tuple[int, int]:
    if day.month == 1:
        return day.year - 1, 12
    return day.year, day.month - 1


# ---------------------------------------------------------------- aggregates


def member_aggregate(
    member_id: str,
    savings: Iterable[Saving],
    loans: Iterable[Loan],
    payments: Iterable[Payment],
    fines: Iterable[FinePayment],
    name: Optional[str] = None,
) -> MemberAggregate:
    total_savings = _total(s.amount for s in savings if s.member_id == member_id)
    loans_issued = _total(l.principal for l in loans if l.member_id == member_id)
    mine = [p for p in payments if p.member_id == member_id]
    principal_paid = _total(p.principal_paid for p in mine)
    interest_paid = _total(p.interest_paid for p in mine)
    total_fines = _total(f.amount for f in fines if f.member_id == member_id)

    return MemberAggregate(
        member_id=member_id,
        name=name,
        total_savings=total_savings,
        loans_issued=loans_issued,
        principal_paid=principal_paid,
        interest_paid=interest_paid,
        fines=total_fines,
        net_contribution=total_savings + interest_paid + total_fines - loans_issued,
    )


def member_sort_key(member_id: str) -> tuple:
    """Natural order so that M-0010 sorts after M-0009 and M-10 after M-9."""
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in re.split(r"(\d+)", member_id) if part
    )


def period_summary(
    members: Sequence[Member],
    savings: Sequence[Saving],
    loans: Sequence[Loan],
    payments: Sequence[Payment],
    fines: Sequence[FinePayment],
    expenditures: Sequence[Expenditure],
    start: date,
    end: date,
) -> PeriodSummary:
    """Monthly, quarterly and annual rollups; only the window differs."""
    savings = period_filter(savings, start, end)
    loans = period_filter(loans, start, end, field="start_date")
    payments = period_filter(payments, start, end)
    fines = period_filter(fines, start, end)
    expenditures = period_filter(expenditures, start, end)

    rows = [
        member_aggregate(m.id, savings, loans, payments, fines, name=m.name)
        for m in sorted(members, key=lambda m: member_sort_key(m.id))
    ]

    total_savings = _total(r.total_savings for r in rows)
    total_loans = _total(r.loans_issued for r in rows)
    total_principal = _total(r.principal_paid for r in rows)
    total_interest = _total(r.interest_paid for r in rows)
    total_fines = _total(r.fines for r in rows)
    total_expenditures = _total(e.amount for e in expenditures)
    outstanding = total_loans - total_principal
    gross_income = total_interest + total_fines

    return PeriodSummary(
        start=start,
        end=end,
        members=rows,
        total_savings=total_savings,
        total_loans_issued=total_loans,
        total_principal_paid=total_principal,
        total_interest=total_interest,
        total_fines=total_fines,
        total_expenditures=total_expenditures,
        outstanding_loans=outstanding,
        net_balance=total_savings + total_interest + total_fines - outstanding - total_expenditures,
        gross_income=gross_income,
        net_profit=gross_income - total_expenditures,
    )


def dashboard_summary(
    members: Sequence[Member],
    savings: Sequence[Saving],
    loans: Sequence[Loan],
    payments: Sequence[Payment],
    fines: Sequence[FinePayment],
    expenditures: Sequence[Expenditure],
) -> DashboardSummary:
    total_savings = _total(s.amount for s in savings)
    total_outstanding = _total(outstanding_principal(l, payments) for l in loans)
    total_interest = _total(p.interest_paid for p in payments)
    total_fines = _total(f.amount for f in fines)
    total_expenditures = _total(e.amount for e in expenditures)

    return DashboardSummary(
        total_members=len(members),
        total_savings=total_savings,
        total_outstanding=total_outstanding,
        total_interest=total_interest,
        total_fines=total_fines,
        total_expenditures=total_expenditures,
        available_balance=(
            total_savings + total_interest + total_fines - total_outstanding - total_expenditures
        ),
    )


def monthly_trends(savings: Iterable[Saving], loans: Iterable[Loan]) -> list[TrendPoint]:
    saved: dict[str, Decimal] = {}
    lent: dict[str, Decimal] = {}
    for s in savings:
        key = s.date.strftime("%Y-%m")
        saved[key] = saved.get(key, ZERO) + s.amount
    for l in loans:
        key = l.start_date.strftime("%Y-%m")
        lent[key] = lent.get(key, ZERO) + l.principal

    return [
        TrendPoint(month=month, savings=saved.get(month, ZERO), loans_issued=lent.get(month, ZERO))
        for month in sorted(set(saved) | set(lent))
    ]


def loan_distribution(
    members: Iterable[Member], loans: Iterable[Loan], top: int = 5
) -> list[DistributionSlice]:
    names = {m.id: m.name for m in members}
    by_member: dict[str, Decimal] = {}
    for l in loans:
        by_member[l.member_id] = by_member.get(l.member_id, ZERO) + l.principal

    ranked = sorted(by_member.items(), key=lambda item: item[1], reverse=True)
    slices = [
        DistributionSlice(name=names.get(member_id, member_id), value=value)
        for member_id, value in ranked[:top]
    ]
    others = _total(value for _, value in ranked[top:])
    if others > 0:
        slices.append(DistributionSlice(name="Others", value=others))
    return slices


# ---------------------------------------------------------------- defaulters


def saving_defaulters(
    members: Sequence[Member], savings: Iterable[Saving], today: date
) -> list[Defaulter]:
    """Members who saved in the previous calendar month but not in the current one."""
    prev_start, prev_end = month_window(*previous_month(today))
    cur_start, cur_end = month_window(today.year, today.month)
    savings = list(savings)

    saved_before = {s.member_id for s in period_filter(savings, prev_start, prev_end)}
    saved_now = {s.member_id for s in period_filter(savings, cur_start, cur_end)}

    return [
        Defaulter(id=m.id, name=m.name)
        for m in members
        if m.id in saved_before and m.id not in saved_now
    ]


def interest_defaulters(
    members: Sequence[Member],
    loans: Iterable[Loan],
    payments: Sequence[Payment],
    today: date,
) -> list[Defaulter]:
    """Members with an active loan and no interest payment in the current calendar month."""
    cur_start, cur_end = month_window(today.year, today.month)
    borrowing = {l.member_id for l in loans if outstanding_principal(l, payments) > 0}
    paid_interest = {
        p.member_id for p in period_filter(payments, cur_start, cur_end) if p.interest_paid > 0
    }

    return [
        Defaulter(id=m.id, name=m.name)
        for m in members
        if m.id in borrowing and m.id not in paid_interest
    ]
