from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, ClassVar, Generic, Iterable, Optional, TypeVar, Union
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from store import CorruptDocumentError, DocumentNotFoundError, DocumentStore

from . import engine
from .models import (
    BackupSnapshot,
    BulkSavingRequest,
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
    LoanStatus,
    Member,
    MemberAggregate,
    MemberRequest,
    Payment,
    PaymentRequest,
    PeriodSummary,
    Record,
    Role,
    Saving,
    SavingRequest,
    SettingsDocument,
    TrendPoint,
    User,
    UserRequest,
)
from .security import hash_password, verify_password

logger = logging.getLogger(__name__)

MEMBERS_PATH = "data/members.json"
SAVINGS_PATH = "data/savings.json"
LOANS_PATH = "data/loans.json"
PAYMENTS_PATH = "data/payments.json"
FINES_PATH = "data/fines.json"
EXPENDITURES_PATH = "data/expenditures.json"
SETTINGS_PATH = "data/settings.json"
CHAT_PATH = "data/chat-messages.json"

RecordT = TypeVar("RecordT", bound=Record)
ModelT = TypeVar("ModelT", bound=BaseModel)


class LedgerServiceError(Exception):
    pass


class RecordValidationError(LedgerServiceError):
    pass


class ReferentialIntegrityError(RecordValidationError):
    pass


class RecordNotFoundError(LedgerServiceError):
    pass


class AuthorizationError(LedgerServiceError):
    pass


@dataclass(frozen=True)
class Actor:
    """An already-authenticated caller."""

    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise AuthorizationError(f"Only admins can {action}")


def new_record_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


def next_member_id(existing_ids: Iterable[str]) -> str:
    highest = 0
    for member_id in existing_ids:
        match = re.match(r"M-(\d+)$", member_id)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"M-{highest + 1:04d}"


def validated(model: type[ModelT], data: Any) -> ModelT:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise RecordValidationError(str(e)) from e


def parse_stored(path: str, model: type[ModelT], data: Any) -> ModelT:
    """Validate content read back from the store; bad stored data is a corrupt document."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise CorruptDocumentError(path, str(e)) from e


async def load(store: DocumentStore, path: str, model: type[ModelT]) -> list[ModelT]:
    return [parse_stored(path, model, row) for row in await store.read_document(path)]


def _index_of(rows: list[dict], record_id: str, entity: str) -> int:
    for i, row in enumerate(rows):
        if row.get("id") == record_id:
            return i
    raise RecordNotFoundError(f"{entity.capitalize()} {record_id} not found")


def _merge(row: dict, changes: dict) -> dict:
    merged = {**row, **changes}
    return {key: value for key, value in merged.items() if value is not None}


# ============================================================
# COLLECTION COORDINATORS
# ============================================================


class CollectionCoordinator(Generic[RecordT]):
    """read -> transform (append | replace-by-id | remove-by-id) -> write for one document."""

    path: ClassVar[str]
    model: ClassVar[type[Record]]
    request_model: ClassVar[type[BaseModel]]
    id_prefix: ClassVar[str]
    entity: ClassVar[str]

    def __init__(self, store: DocumentStore):
        self.store = store

    async def list(self) -> list[RecordT]:
        return await load(self.store, self.path, self.model)

    async def get(self, record_id: str) -> RecordT:
        for record in await self.list():
            if record.id == record_id:
                return record
        raise RecordNotFoundError(f"{self.entity.capitalize()} {record_id} not found")

    async def create(self, actor: Actor, request: Any) -> RecordT:
        require_admin(actor, f"create {self.entity}s")
        request = validated(self.request_model, request)
        fields = await self._prepare(request, creating=True)
        record = self._build({**fields, "id": new_record_id(self.id_prefix)})

        await self.store.modify(
            self.path,
            lambda rows: rows + [record.to_document()],
            message=f"Add {self.entity} {record.id}",
        )
        logger.info("created %s %s", self.entity, record.id)
        await self._after_change()
        return record

    async def update(self, actor: Actor, record_id: str, request: Any) -> RecordT:
        require_admin(actor, f"modify {self.entity}s")
        request = validated(self.request_model, request)
        fields = await self._prepare(request, creating=False)
        result: dict[str, RecordT] = {}

        def transform(rows: list[dict]) -> list[dict]:
            index = _index_of(rows, record_id, self.entity)
            record = self._build(_merge(rows[index], {**fields, "id": record_id}))
            rows[index] = record.to_document()
            result["record"] = record
            return rows

        await self.store.modify(self.path, transform, message=f"Update {self.entity} {record_id}")
        logger.info("updated %s %s", self.entity, record_id)
        await self._after_change()
        return result["record"]

    async def delete(self, actor: Actor, record_id: str) -> None:
        require_admin(actor, f"delete {self.entity}s")
        await self._before_delete(record_id)

        def transform(rows: list[dict]) -> list[dict]:
            _index_of(rows, record_id, self.entity)
            return [row for row in rows if row.get("id") != record_id]

        await self.store.modify(self.path, transform, message=f"Delete {self.entity} {record_id}")
        logger.info("deleted %s %s", self.entity, record_id)
        await self._after_change()

    def _build(self, data: dict) -> RecordT:
        return validated(self.model, data)

    async def _prepare(self, request: BaseModel, creating: bool) -> dict:
        """Reference checks; returns the stored fields. Runs before any write."""
        return request.model_dump(mode="json", by_alias=True)

    async def _before_delete(self, record_id: str) -> None:
        pass

    async def _after_change(self) -> None:
        pass

    async def _member(self, member_id: str) -> Member:
        for member in await load(self.store, MEMBERS_PATH, Member):
            if member.id == member_id:
                return member
        raise RecordValidationError(f"Member {member_id} does not exist")


class MemberCoordinator(CollectionCoordinator[Member]):
    path = MEMBERS_PATH
    model = Member
    request_model = MemberRequest
    id_prefix = "M"
    entity = "member"

    async def create(self, actor: Actor, request: Any) -> Member:
        require_admin(actor, "create members")
        request = validated(MemberRequest, request)
        fields = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        result: dict[str, Member] = {}

        def transform(rows: list[dict]) -> list[dict]:
            # Recomputed on every attempt so a conflicting create cannot reuse the id.
            member = self._build({
                **fields,
                "id": next_member_id(row.get("id", "") for row in rows),
                "active": True,
            })
            result["member"] = member
            return rows + [member.to_document()]

        await self.store.modify(self.path, transform, message="Add member")
        logger.info("created member %s", result["member"].id)
        return result["member"]

    async def set_active(self, actor: Actor, member_id: str, active: bool) -> Member:
        require_admin(actor, "change member status")
        result: dict[str, Member] = {}

        def transform(rows: list[dict]) -> list[dict]:
            index = _index_of(rows, member_id, self.entity)
            row = {k: v for k, v in rows[index].items() if k != "isActive"}
            member = self._build({**row, "active": active})
            rows[index] = member.to_document()
            result["member"] = member
            return rows

        await self.store.modify(self.path, transform, message=f"Set member {member_id} active={active}")
        logger.info("member %s active=%s", member_id, active)
        return result["member"]

    async def _before_delete(self, record_id: str) -> None:
        referencing = []
        for label, path, model in (
            ("savings", SAVINGS_PATH, Saving),
            ("loans", LOANS_PATH, Loan),
            ("payments", PAYMENTS_PATH, Payment),
            ("fines", FINES_PATH, FinePayment),
        ):
            if any(r.member_id == record_id for r in await load(self.store, path, model)):
                referencing.append(label)
        if referencing:
            raise ReferentialIntegrityError(
                f"Member {record_id} has {', '.join(referencing)} on record and cannot be deleted"
            )


class SavingCoordinator(CollectionCoordinator[Saving]):
    path = SAVINGS_PATH
    model = Saving
    request_model = SavingRequest
    id_prefix = "S"
    entity = "saving"

    async def _prepare(self, request: SavingRequest, creating: bool) -> dict:
        member = await self._member(request.member_id)
        if creating and not member.active:
            raise RecordValidationError("Inactive members cannot add savings")
        return await super()._prepare(request, creating)

    async def bulk_create(self, actor: Actor, request: Any) -> list[Saving]:
        require_admin(actor, "create savings")
        request = validated(BulkSavingRequest, request)
        members = {m.id: m for m in await load(self.store, MEMBERS_PATH, Member)}
        invalid = [
            member_id for member_id in request.member_ids
            if member_id not in members or not members[member_id].active
        ]
        if invalid:
            raise RecordValidationError(f"Unknown or inactive members: {', '.join(invalid)}")

        records = [
            self._build({
                "id": new_record_id(self.id_prefix),
                "memberId": member_id,
                "amount": request.amount,
                "date": request.date,
                "remarks": request.remarks,
            })
            for member_id in request.member_ids
        ]
        await self.store.modify(
            self.path,
            lambda rows: rows + [r.to_document() for r in records],
            message=f"Add {len(records)} savings",
        )
        logger.info("created %d savings in bulk", len(records))
        return records


class LoanCoordinator(CollectionCoordinator[Loan]):
    path = LOANS_PATH
    model = Loan
    request_model = LoanRequest
    id_prefix = "L"
    entity = "loan"

    async def _prepare(self, request: LoanRequest, creating: bool) -> dict:
        await self._member(request.member_id)
        fields = await super()._prepare(request, creating)
        if creating:
            fields["status"] = LoanStatus.ACTIVE.value
        return fields

    async def _after_change(self) -> None:
        await self.sync_statuses()

    async def positions(self) -> list[LoanPosition]:
        payments = await load(self.store, PAYMENTS_PATH, Payment)
        return [engine.loan_position(loan, payments) for loan in await self.list()]

    async def sync_statuses(self) -> list[Loan]:
        """Persist derived loan statuses. Writes nothing when all are already current."""
        payments = await load(self.store, PAYMENTS_PATH, Payment)
        flipped: list[Loan] = []

        def transform(rows: list[dict]) -> list[dict]:
            loans = [parse_stored(self.path, Loan, row) for row in rows]
            changed = {loan.id: loan for loan in engine.recompute_statuses(loans, payments)}
            flipped[:] = changed.values()
            return [
                changed[loan.id].to_document() if loan.id in changed else row
                for loan, row in zip(loans, rows)
            ]

        await self.store.modify(self.path, transform, message="Update loan statuses")
        for loan in flipped:
            logger.info("loan %s is now %s", loan.id, loan.status.value)
        return flipped


class PaymentCoordinator(CollectionCoordinator[Payment]):
    path = PAYMENTS_PATH
    model = Payment
    request_model = PaymentRequest
    id_prefix = "P"
    entity = "payment"

    def __init__(self, store: DocumentStore, loans: LoanCoordinator):
        super().__init__(store)
        self.loans = loans

    async def _prepare(self, request: PaymentRequest, creating: bool) -> dict:
        try:
            loan = await self.loans.get(request.loan_id)
        except RecordNotFoundError:
            raise RecordValidationError(f"Loan {request.loan_id} does not exist") from None
        if request.member_id is not None and request.member_id != loan.member_id:
            raise RecordValidationError(
                f"Payment member {request.member_id} does not match loan member {loan.member_id}"
            )
        fields = await super()._prepare(request, creating)
        fields["memberId"] = loan.member_id
        return fields

    async def _after_change(self) -> None:
        await self.loans.sync_statuses()


class FineCoordinator(CollectionCoordinator[FinePayment]):
    path = FINES_PATH
    model = FinePayment
    request_model = FineRequest
    id_prefix = "F"
    entity = "fine"

    async def _prepare(self, request: FineRequest, creating: bool) -> dict:
        await self._member(request.member_id)
        return await super()._prepare(request, creating)


class ExpenditureCoordinator(CollectionCoordinator[Expenditure]):
    path = EXPENDITURES_PATH
    model = Expenditure
    request_model = ExpenditureRequest
    id_prefix = "E"
    entity = "expenditure"


# ============================================================
# SETTINGS (USERS) AND CHAT
# ============================================================


def _empty_settings() -> dict:
    return {"users": []}


class UserCoordinator:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def list(self) -> list[User]:
        content = await self.store.read_document(SETTINGS_PATH, default=_empty_settings)
        return parse_stored(SETTINGS_PATH, SettingsDocument, content).users

    async def add(self, actor: Actor, request: Any) -> User:
        require_admin(actor, "manage users")
        request = validated(UserRequest, request)
        user = User(
            user_id=request.user_id,
            name=request.name,
            password=hash_password(request.password),
            role=request.role,
        )

        def transform(content: dict) -> dict:
            users = content.setdefault("users", [])
            if any(u.get("userId") == user.user_id for u in users):
                raise RecordValidationError("User ID already exists")
            users.append(user.to_document())
            return content

        await self.store.modify(SETTINGS_PATH, transform, default=_empty_settings,
                                message=f"Add user {user.user_id}")
        logger.info("added user %s (%s)", user.user_id, user.role.value)
        return user

    async def delete(self, actor: Actor, user_id: str) -> None:
        require_admin(actor, "manage users")

        def transform(content: dict) -> dict:
            users = content.get("users", [])
            remaining = [u for u in users if u.get("userId") != user_id]
            if len(remaining) == len(users):
                raise RecordNotFoundError(f"User {user_id} not found")
            content["users"] = remaining
            return content

        await self.store.modify(SETTINGS_PATH, transform, default=_empty_settings,
                                message=f"Delete user {user_id}")
        logger.info("deleted user %s", user_id)

    async def verify_credentials(self, user_id: str, password: str) -> Optional[User]:
        for user in await self.list():
            if user.user_id == user_id and verify_password(password, user.password):
                return user
        return None


class ChatCoordinator:
    def __init__(self, store: DocumentStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def list(self) -> list[ChatMessage]:
        return await load(self.store, CHAT_PATH, ChatMessage)

    async def send(self, actor: Actor, request: Any) -> ChatMessage:
        request = validated(ChatRequest, request)
        message = ChatMessage(
            id=uuid4().hex, sender=actor.user_id, text=request.text, timestamp=self.clock()
        )
        await self.store.modify(CHAT_PATH, lambda rows: rows + [message.to_document()],
                                message="Add chat message")
        return message

    async def edit(self, actor: Actor, message_id: str, request: Any) -> ChatMessage:
        request = validated(ChatRequest, request)
        result: dict[str, ChatMessage] = {}

        def transform(rows: list[dict]) -> list[dict]:
            index = _index_of(rows, message_id, "message")
            message = parse_stored(CHAT_PATH, ChatMessage, rows[index])
            if message.sender != actor.user_id:
                raise AuthorizationError("Only the sender can edit a message")
            message = message.model_copy(
                update={"text": request.text, "edited": True, "timestamp": self.clock()}
            )
            rows[index] = message.to_document()
            result["message"] = message
            return rows

        await self.store.modify(CHAT_PATH, transform, message="Edit chat message")
        return result["message"]

    async def delete(self, actor: Actor, message_id: str) -> None:
        def transform(rows: list[dict]) -> list[dict]:
            index = _index_of(rows, message_id, "message")
            if not (actor.is_admin or rows[index].get("sender") == actor.user_id):
                raise AuthorizationError("Not authorized to delete this message")
            return rows[:index] + rows[index + 1:]

        await self.store.modify(CHAT_PATH, transform, message="Delete chat message")

    async def mark_seen(self, actor: Actor) -> None:
        def transform(rows: list[dict]) -> list[dict]:
            for row in rows:
                seen_by = row.setdefault("seenBy", [])
                if actor.user_id not in seen_by:
                    seen_by.append(actor.user_id)
            return rows

        await self.store.modify(CHAT_PATH, transform, message="Mark chat messages seen")


# ============================================================
# BACKUPS
# ============================================================

BACKUP_DIR = "backups"

# Chat history is not part of a backup.
BACKUP_SECTIONS = {
    "members": MEMBERS_PATH,
    "savings": SAVINGS_PATH,
    "loans": LOANS_PATH,
    "payments": PAYMENTS_PATH,
    "fines": FINES_PATH,
    "expenditures": EXPENDITURES_PATH,
    "settings": SETTINGS_PATH,
}


def backup_timestamp(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H-%M-%S")


class BackupCoordinator:
    """Point-in-time copies of every data document under backups/."""

    def __init__(self, store: DocumentStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def create(self, actor: Actor) -> str:
        require_admin(actor, "create backups")
        contents = await asyncio.gather(*(
            self.store.read_document(path, default=_empty_settings if name == "settings" else list)
            for name, path in BACKUP_SECTIONS.items()
        ))
        timestamp = backup_timestamp(self.clock())
        snapshot = {"timestamp": timestamp, **dict(zip(BACKUP_SECTIONS, contents))}

        path = f"{BACKUP_DIR}/backup-{timestamp}.json"
        # Never overwrites an existing backup.
        await self.store.create(path, snapshot, message=f"Backup {timestamp}")
        logger.info("created backup %s", path)
        return path

    async def list(self) -> list[str]:
        return [p for p in await self.store.list_documents(BACKUP_DIR) if p.endswith(".json")]

    async def read(self, path: str) -> BackupSnapshot:
        try:
            content = (await self.store.read(path)).content
        except DocumentNotFoundError:
            raise RecordNotFoundError(f"Backup {path} not found") from None
        return validated(BackupSnapshot, content)

    async def restore(self, actor: Actor, source: Union[str, dict, BackupSnapshot]) -> list[str]:
        """
        Overwrite every data document with the backup's content.

        Each document is written independently; a failure part way leaves
        the documents written so far restored and the rest untouched.
        """
        require_admin(actor, "restore backups")
        if isinstance(source, str):
            snapshot = await self.read(source)
        else:
            snapshot = validated(BackupSnapshot, source)

        restored = []
        for name, path in BACKUP_SECTIONS.items():
            section = getattr(snapshot, name)
            if isinstance(section, list):
                content = [record.to_document() for record in section]
            else:
                content = section.to_document()
            await self.store.write(path, content, message=f"Restore {path}")
            restored.append(path)
        logger.info("restored %d documents from backup %s", len(restored), snapshot.timestamp)
        return restored


# ============================================================
# FACADE
# ============================================================


@dataclass
class LedgerSnapshot:
    members: list[Member]
    savings: list[Saving]
    loans: list[Loan]
    payments: list[Payment]
    fines: list[FinePayment]
    expenditures: list[Expenditure]


class LedgerService:
    def __init__(self, store: DocumentStore):
        self.store = store
        self.members = MemberCoordinator(store)
        self.savings = SavingCoordinator(store)
        self.loans = LoanCoordinator(store)
        self.payments = PaymentCoordinator(store, self.loans)
        self.fines = FineCoordinator(store)
        self.expenditures = ExpenditureCoordinator(store)
        self.users = UserCoordinator(store)
        self.chat = ChatCoordinator(store)
        self.backups = BackupCoordinator(store)

    async def snapshot(self) -> LedgerSnapshot:
        members, savings, loans, payments, fines, expenditures = await asyncio.gather(
            self.members.list(),
            self.savings.list(),
            self.loans.list(),
            self.payments.list(),
            self.fines.list(),
            self.expenditures.list(),
        )
        return LedgerSnapshot(members, savings, loans, payments, fines, expenditures)

    async def dashboard(self) -> DashboardSummary:
        s = await self.snapshot()
        return engine.dashboard_summary(
            s.members, s.savings, s.loans, s.payments, s.fines, s.expenditures
        )

    async def period_report(self, start: date, end: date) -> PeriodSummary:
        s = await self.snapshot()
        return engine.period_summary(
            s.members, s.savings, s.loans, s.payments, s.fines, s.expenditures, start, end
        )

    async def member_summary(self, member_id: str) -> MemberAggregate:
        s = await self.snapshot()
        member = next((m for m in s.members if m.id == member_id), None)
        if member is None:
            raise RecordNotFoundError(f"Member {member_id} not found")
        return engine.member_aggregate(
            member_id, s.savings, s.loans, s.payments, s.fines, name=member.name
        )

    async def defaulters(self, today: date) -> dict[str, list[Defaulter]]:
        s = await self.snapshot()
        return {
            "saving": engine.saving_defaulters(s.members, s.savings, today),
            "interest": engine.interest_defaulters(s.members, s.loans, s.payments, today),
        }

    async def trends(self) -> list[TrendPoint]:
        savings, loans = await asyncio.gather(self.savings.list(), self.loans.list())
        return engine.monthly_trends(savings, loans)

    async def loan_distribution(self, top: int = 5) -> list[DistributionSlice]:
        members, loans = await asyncio.gather(self.members.list(), self.loans.list())
        return engine.loan_distribution(members, loans, top=top)

    async def consistency_issues(self) -> list[Payment]:
        loans, payments = await asyncio.gather(self.loans.list(), self.payments.list())
        return engine.payment_member_mismatches(loans, payments)
