import logging
from datetime import date
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from store import ConflictError, CorruptDocumentError, TransientError

from . import engine
from .config import build_store, configure_logging
from .models import (
    BackupSnapshot,
    BulkSavingRequest,
    CamelModel,
    ChatMessage,
    ChatRequest,
    DashboardSummary,
    Defaulter,
    DistributionSlice,
    Expenditure,
    ExpenditureRequest,
    FinePayment,
    FineRequest,
    Loan,
    LoanPosition,
    LoanRequest,
    Member,
    MemberAggregate,
    MemberRequest,
    Payment,
    PaymentRequest,
    PeriodSummary,
    Role,
    Saving,
    SavingRequest,
    TrendPoint,
    UserRequest,
)
from .service import (
    Actor,
    AuthorizationError,
    LedgerService,
    RecordNotFoundError,
    RecordValidationError,
)

logger = logging.getLogger(__name__)

configure_logging()

app = FastAPI(
    title="Cooperative Savings Ledger API",
    description="Members, savings, loans and payments kept as versioned JSON documents",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService(build_store())


def get_service() -> LedgerService:
    return ledger_service


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    """Identity established upstream by the authentication layer."""
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    try:
        role = Role(x_user_role)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown role")
    return Actor(user_id=x_user_id, role=role)


# ---------------------------------------------------------------- errors


@app.exception_handler(RecordValidationError)
async def validation_error_handler(request: Request, exc: RecordValidationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


@app.exception_handler(RecordNotFoundError)
async def not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": f"{exc.path} was changed by someone else, please retry"},
    )


@app.exception_handler(TransientError)
async def transient_error_handler(request: Request, exc: TransientError):
    logger.error("backend failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


@app.exception_handler(CorruptDocumentError)
async def corrupt_document_handler(request: Request, exc: CorruptDocumentError):
    logger.error("unreadable document on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": f"Stored document {exc.path} is invalid and needs repair"},
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "cooperative-ledger"}


# ---------------------------------------------------------------- collections


def collection_router(
    prefix: str,
    attr: str,
    request_model: type[BaseModel],
    response_model: type[BaseModel],
) -> APIRouter:
    """list/create/update/delete routes for one coordinator."""
    router = APIRouter(prefix=prefix, tags=[attr.capitalize()])

    @router.get("", response_model=list[response_model])
    async def list_records(service: LedgerService = Depends(get_service)):
        return await getattr(service, attr).list()

    @router.post("", response_model=response_model, status_code=status.HTTP_201_CREATED)
    async def create_record(
        body: request_model,
        actor: Actor = Depends(get_actor),
        service: LedgerService = Depends(get_service),
    ):
        return await getattr(service, attr).create(actor, body)

    @router.put("/{record_id}", response_model=response_model)
    async def update_record(
        record_id: str,
        body: request_model,
        actor: Actor = Depends(get_actor),
        service: LedgerService = Depends(get_service),
    ):
        return await getattr(service, attr).update(actor, record_id, body)

    @router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_record(
        record_id: str,
        actor: Actor = Depends(get_actor),
        service: LedgerService = Depends(get_service),
    ):
        await getattr(service, attr).delete(actor, record_id)

    return router


@app.get("/loans/positions", response_model=list[LoanPosition], tags=["Loans"])
async def loan_positions(service: LedgerService = Depends(get_service)):
    return await service.loans.positions()


@app.post("/loans/sync-status", response_model=list[Loan], tags=["Loans"])
async def sync_loan_statuses(
    actor: Actor = Depends(get_actor), service: LedgerService = Depends(get_service)
):
    return await service.loans.sync_statuses()


@app.post("/savings/bulk", response_model=list[Saving], status_code=status.HTTP_201_CREATED, tags=["Savings"])
async def bulk_savings(
    body: BulkSavingRequest,
    actor: Actor = Depends(get_actor),
    service: LedgerService = Depends(get_service),
):
    return await service.savings.bulk_create(actor, body)


@app.post("/members/{member_id}/active", response_model=Member, tags=["Members"])
async def set_member_active(
    member_id: str,
    active: bool,
    actor: Actor = Depends(get_actor),
    service: LedgerService = Depends(get_service),
):
    return await service.members.set_active(actor, member_id, active)


@app.get("/members/{member_id}/summary", response_model=MemberAggregate, tags=["Members"])
async def member_summary(member_id: str, service: LedgerService = Depends(get_service)):
    return await service.member_summary(member_id)


app.include_router(collection_router("/members", "members", MemberRequest, Member))
app.include_router(collection_router("/savings", "savings", SavingRequest, Saving))
app.include_router(collection_router("/loans", "loans", LoanRequest, Loan))
app.include_router(collection_router("/payments", "payments", PaymentRequest, Payment))
app.include_router(collection_router("/fines", "fines", FineRequest, FinePayment))
app.include_router(collection_router("/expenditures", "expenditures", ExpenditureRequest, Expenditure))


# ---------------------------------------------------------------- users


class UserView(CamelModel):
    user_id: str
    name: str
    role: Role


@app.get("/users", response_model=list[UserView], tags=["Users"])
async def list_users(
    actor: Actor = Depends(get_actor), service: LedgerService = Depends(get_service)
):
    return [UserView(user_id=u.user_id, name=u.name, role=u.role) for u in await service.users.list()]


@app.post("/users", response_model=UserView, status_code=status.HTTP_201_CREATED, tags=["Users"])
async def add_user(
    body: UserRequest,
    actor: Actor = Depends(get_actor),
    service: LedgerService = Depends(get_service),
):
    user = await service.users.add(actor, body)
    return UserView(user_id=user.user_id, name=user.name, role=user.role)


@app.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Users"])
async def delete_user(
    user_id: str,
    actor: Actor = Depends(get_actor),
    service: LedgerService = Depends(get_service),
):
    await service.users.delete(actor, user_id)


# ---------------------------------------------------------------- chat


@app.get("/chat", response_model=list[ChatMessage], tags=["Chat"])
async def list_messages(
    actor: Actor = Depends(get_actor), service: LedgerService = Depends(get_service)
):
    return await service.chat.list()


@app.post("/chat", response_model=ChatMessage, status_code=status.HTTP_201_CREATED, tags=["Chat"])
async def send_message(
    body: ChatRequest,
    actor: Actor = Depends(get_actor),
    service: LedgerService = Depends(get_service),
):
    return await service.chat.send(actor, body)


@app.post("/chat/seen", tags=["Chat"])
async def mark_seen(actor: Actor = Depends(get_actor), service: LedgerService = Depends(get_service)):
    await service.chat.mark_seen(actor)
    return {"success": True}


@app.put("/chat/{message_id}", response_model=ChatMessage, tags=["Chat"])
async def edit_message(
    message_id: str,
    body: ChatRequest,
    actor: Actor = Depends(get_actor),
    service: LedgerService = Depends(get_service),
):
    return await service.chat.edit(actor, message_id, body)


@app.delete("/chat/{message_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Chat"])
async def delete_message(
    message_id: str,
    actor: Actor = Depends(get_actor),
    service: LedgerService = Depends(get_service),
):
    await service.chat.delete(actor, message_id)


# ---------------------------------------------------------------- backups


class RestoreRequest(BaseModel):
    path: Optional[str] = None
    snapshot: Optional[BackupSnapshot] = None


@app.get("/backups", response_model=list[str], tags=["Backups"])
async def list_backups(
    actor: Actor = Depends(get_actor), service: LedgerService = Depends(get_service)
):
    return await service.backups.list()


@app.post("/backups", status_code=status.HTTP_201_CREATED, tags=["Backups"])
async def create_backup(
    actor: Actor = Depends(get_actor), service: LedgerService = Depends(get_service)
):
    return {"path": await service.backups.create(actor)}


@app.post("/backups/restore", tags=["Backups"])
async def restore_backup(
    body: RestoreRequest,
    actor: Actor = Depends(get_actor),
    service: LedgerService = Depends(get_service),
):
    source: Union[str, BackupSnapshot, None] = body.path or body.snapshot
    if source is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="path or snapshot is required")
    return {"restored": await service.backups.restore(actor, source)}


# ---------------------------------------------------------------- reports


@app.get("/reports/dashboard", response_model=DashboardSummary, tags=["Reports"])
async def dashboard(service: LedgerService = Depends(get_service)):
    return await service.dashboard()


@app.get("/reports/period", response_model=PeriodSummary, tags=["Reports"])
async def period_report(start: date, end: date, service: LedgerService = Depends(get_service)):
    if end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end is before start")
    return await service.period_report(start, end)


@app.get("/reports/monthly/{year}/{month}", response_model=PeriodSummary, tags=["Reports"])
async def monthly_report(year: int, month: int, service: LedgerService = Depends(get_service)):
    if not 1 <= month <= 12:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="month must be 1-12")
    return await service.period_report(*engine.month_window(year, month))


@app.get("/reports/quarterly/{year}/{quarter}", response_model=PeriodSummary, tags=["Reports"])
async def quarterly_report(year: int, quarter: int, service: LedgerService = Depends(get_service)):
    if not 1 <= quarter <= 4:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="quarter must be 1-4")
    return await service.period_report(*engine.quarter_window(year, quarter))


@app.get("/reports/annual/{year}", response_model=PeriodSummary, tags=["Reports"])
async def annual_report(year: int, service: LedgerService = Depends(get_service)):
    return await service.period_report(*engine.year_window(year))


@app.get("/reports/defaulters", response_model=dict[str, list[Defaulter]], tags=["Reports"])
async def defaulters(on: Optional[date] = None, service: LedgerService = Depends(get_service)):
    return await service.defaulters(on or date.today())


@app.get("/reports/trends", response_model=list[TrendPoint], tags=["Reports"])
async def trends(service: LedgerService = Depends(get_service)):
    return await service.trends()


@app.get("/reports/distribution", response_model=list[DistributionSlice], tags=["Reports"])
async def distribution(top: int = 5, service: LedgerService = Depends(get_service)):
    return await service.loan_distribution(top)


@app.get("/reports/consistency", response_model=list[Payment], tags=["Reports"])
async def consistency(service: LedgerService = Depends(get_service)) -> Any:
    return await service.consistency_issues()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
