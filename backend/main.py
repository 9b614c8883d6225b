import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.budget_engine import BudgetRule, evaluate_budget, month_range, normalize_month
from backend.category_analytics import normalize_category, summarize_categories
from backend.config import Settings, normalize_currency
from backend.database import Database, accounts, budgets, transactions, users
from backend.ledger import (
    ZERO,
    LedgerEntry,
    bounded_money,
    reconcile_account,
    record_transaction,
    remove_transaction,
    to_money,
    transaction_total,
    utcnow,
)
from backend.mailer import Mailer, MailerError, build_mailer, password_reset_email, verification_email
from backend.messages import ApiError, Messages, bad_request, error_response, not_found, unauthorized
from backend.security import (
    ACCESS_PURPOSE,
    RESET_PURPOSE,
    VERIFY_PURPOSE,
    AuthContext,
    TokenError,
    TokenExpired,
    TokenService,
    get_auth_context,
    hash_password,
    password_fingerprint,
    validate_password,
    verify_password,
)

logger = logging.getLogger(__name__)

PENDING = "Pending"
CONFIRMED = "Confirmed"

router = APIRouter()


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain:
        raise ValueError("Invalid email address.")
    return normalized


def _required(value: str, label: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{label} required.")
    return stripped


def _account_number(value: str | int) -> str:
    return _required(str(value), "Account number")


class StrictPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterPayload(StrictPayload):
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    password: str
    confirm_password: str

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        payload.first_name = _required(payload.first_name, "First name")
        payload.last_name = _required(payload.last_name, "Last name")
        payload.email = normalize_email(payload.email)
        payload.phone = payload.phone.strip() if payload.phone else None
        validate_password(payload.password)
        if payload.password != payload.confirm_password:
            raise ValueError(Messages.PASSWORD_MISMATCH)
        return payload


class LoginPayload(StrictPayload):
    email: str
    password: str


class EmailPayload(StrictPayload):
    email: str


class ResetPasswordPayload(StrictPayload):
    token: str
    password: str


class ChangePasswordPayload(StrictPayload):
    current_password: str
    new_password: str


class PasswordConfirmPayload(StrictPayload):
    password: str


class ProfileUpdatePayload(StrictPayload):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None

    def to_values(self) -> dict:
        fields = self.model_dump(exclude_unset=True, exclude_none=True)
        if not fields:
            raise ValueError(Messages.MISSING_FIELDS)
        values = {}
        if "first_name" in fields:
            values["first_name"] = _required(fields["first_name"], "First name")
        if "last_name" in fields:
            values["last_name"] = _required(fields["last_name"], "Last name")
        if "email" in fields:
            values["email"] = normalize_email(fields["email"])
        if "phone" in fields:
            values["phone"] = fields["phone"].strip() or None
        return values


class AccountPayload(StrictPayload):
    name: str
    type: str
    number: str | int
    institution: str
    balance: Decimal

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = _required(payload.name, "Account name")
        payload.type = _required(payload.type, "Account type")
        payload.number = _account_number(payload.number)
        payload.institution = _required(payload.institution, "Institution")
        payload.balance = bounded_money(payload.balance)
        return payload


class AccountUpdatePayload(StrictPayload):
    name: str | None = None
    type: str | None = None
    number: str | int | None = None
    balance: Decimal | None = None
    currency: str | None = None
    active: bool | None = None

    def to_values(self) -> dict:
        fields = self.model_dump(exclude_unset=True, exclude_none=True)
        if not fields:
            raise ValueError(Messages.MISSING_FIELDS)
        values = {}
        if "name" in fields:
            values["name"] = _required(fields["name"], "Account name")
        if "type" in fields:
            values["type"] = _required(fields["type"], "Account type")
        if "number" in fields:
            values["number"] = _account_number(fields["number"])
        if "balance" in fields:
            values["balance"] = bounded_money(fields["balance"])
        if "currency" in fields:
            values["currency"] = normalize_currency(fields["currency"])
        if "active" in fields:
            values["is_active"] = fields["active"]
        return values


class TransactionPayload(StrictPayload):
    amount: Decimal
    category: str
    type: str
    date: date
    name: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.amount = bounded_money(payload.amount)
        if payload.amount == ZERO:
            raise ValueError("Amount must not be zero.")
        payload.category = normalize_category(payload.category)
        payload.type = _required(payload.type, "Transaction type").lower()
        payload.name = payload.name.strip() if payload.name else None
        return payload


class AnalyticsPayload(StrictPayload):
    account_id: str | int = "all"

    def account_filter(self) -> int | None:
        if isinstance(self.account_id, int):
            return self.account_id
        value = self.account_id.strip()
        if value.lower() == "all":
            return None
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError("Invalid account id.") from exc


class BudgetPayload(StrictPayload):
    category: str
    limit: Decimal
    month: str

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.category = normalize_category(payload.category)
        payload.limit = _budget_limit(payload.limit)
        payload.month = normalize_month(payload.month)
        return payload


class BudgetUpdatePayload(StrictPayload):
    category: str | None = None
    limit: Decimal | None = None
    month: str | None = None

    def to_values(self) -> dict:
        fields = self.model_dump(exclude_unset=True, exclude_none=True)
        if not fields:
            raise ValueError(Messages.MISSING_FIELDS)
        values = {}
        if "category" in fields:
            values["category"] = normalize_category(fields["category"])
        if "limit" in fields:
            values["spending_limit"] = _budget_limit(fields["limit"])
        if "month" in fields:
            values["month"] = normalize_month(fields["month"])
        return values


def _budget_limit(value: Decimal) -> Decimal:
    limit = bounded_money(value)
    if limit <= ZERO:
        raise ValueError("Budget limit must be greater than zero.")
    return limit


class MessageResponse(BaseModel):
    status: int
    success: str


class CreatedResponse(MessageResponse):
    id: int


class TokenResponse(MessageResponse):
    token: str
    token_type: str = "bearer"


class TransactionCreatedResponse(CreatedResponse):
    balance: Decimal


class BalanceResponse(MessageResponse):
    balance: Decimal


class ProfileResponse(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    status: str


class AccountResponse(BaseModel):
    id: int
    name: str
    type: str
    number: str
    institution: str
    currency: str
    balance: Decimal
    active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ReconciliationResponse(BaseModel):
    account_id: int
    stored_balance: Decimal
    ledger_balance: Decimal
    drift: Decimal
    transaction_count: int
    balanced: bool


class TransactionResponse(BaseModel):
    id: int
    account_id: int
    name: str | None = None
    amount: Decimal
    category: str
    type: str
    date: date
    created_at: datetime | None = None


class CategoryTotalResponse(BaseModel):
    name: str
    value: Decimal
    percentage: Decimal


class CategoryAnalyticsResponse(BaseModel):
    categories: list[CategoryTotalResponse]
    total_spending: Decimal


class BudgetResponse(BaseModel):
    id: int
    category: str
    limit: Decimal
    month: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BudgetEvaluationResponse(BaseModel):
    budget_id: int
    category: str
    month: str
    limit: Decimal
    spent: Decimal
    remaining: Decimal
    status: str
    start_date: date
    end_date: date


def validate_or_400(validator, payload):
    try:
        return validator(payload)
    except ValueError as exc:
        raise bad_request(str(exc)) from exc


def values_or_400(payload) -> dict:
    try:
        return payload.to_values()
    except ValueError as exc:
        raise bad_request(str(exc)) from exc


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def get_tokens(request: Request) -> TokenService:
    return request.app.state.tokens


def send_verification_email(
    mailer: Mailer,
    tokens: TokenService,
    settings: Settings,
    *,
    user_id: int,
    email: str,
    first_name: str,
    resend: bool = False,
) -> None:
    token = tokens.issue(user_id, VERIFY_PURPOSE, settings.verification_token_lifetime, email=email)
    link = f"{settings.frontend_url}/verify?token={token}"
    subject, html = verification_email(
        first_name, link, settings.verification_token_minutes, resend=resend
    )
    mailer.send(email, subject, html)


def _account_response(row) -> AccountResponse:
    return AccountResponse(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        number=row["number"],
        institution=row["institution"],
        currency=row["currency"],
        balance=to_money(row["balance"]),
        active=row["is_active"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _transaction_response(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        account_id=row["account_id"],
        name=row["name"],
        amount=to_money(row["amount"]),
        category=row["category"],
        type=row["type"],
        date=row["date"],
        created_at=row["created_at"],
    )


def _budget_response(row) -> BudgetResponse:
    return BudgetResponse(
        id=row["id"],
        category=row["category"],
        limit=to_money(row["spending_limit"]),
        month=row["month"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _ledger_entries(rows) -> list[LedgerEntry]:
    return [
        LedgerEntry(
            amount=row["amount"],
            category=row["category"],
            date=row["date"],
            account_id=row["account_id"],
        )
        for row in rows
    ]


def _account_owned(conn, user_id: int, account_id: int) -> bool:
    row = conn.execute(
        select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    ).first()
    return row is not None


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/register", response_model=MessageResponse, status_code=201)
def register(
    payload: RegisterPayload,
    database: Database = Depends(get_database),
    mailer: Mailer = Depends(get_mailer),
    tokens: TokenService = Depends(get_tokens),
    settings: Settings = Depends(get_settings),
) -> MessageResponse:
    payload = validate_or_400(RegisterPayload.validate_payload, payload)
    try:
        with database.begin() as conn:
            existing = conn.execute(
                select(users.c.status).where(users.c.email == payload.email)
            ).scalar_one_or_none()
            if existing == PENDING:
                raise bad_request(Messages.VERIFICATION_SENT)
            if existing is not None:
                raise bad_request(Messages.EMAIL_EXISTS)

            user_id = conn.execute(
                insert(users)
                .values(
                    first_name=payload.first_name,
                    last_name=payload.last_name,
                    email=payload.email,
                    phone=payload.phone,
                    hashed_password=hash_password(payload.password),
                    status=PENDING,
                )
                .returning(users.c.id)
            ).scalar_one()
            # a failed send rolls the registration back so the address can retry
            send_verification_email(
                mailer,
                tokens,
                settings,
                user_id=user_id,
                email=payload.email,
                first_name=payload.first_name,
            )
    except IntegrityError as exc:
        raise bad_request(Messages.EMAIL_EXISTS) from exc

    logger.info("Registered user %s", user_id)
    return MessageResponse(status=201, success=Messages.USER + Messages.CREATED)


@router.post("/login", response_model=TokenResponse)
def login(
    payload: LoginPayload,
    database: Database = Depends(get_database),
    tokens: TokenService = Depends(get_tokens),
    settings: Settings = Depends(get_settings),
) -> TokenResponse:
    email = payload.email.strip().lower()
    with database.begin() as conn:
        row = conn.execute(
            select(users.c.id, users.c.hashed_password, users.c.status).where(users.c.email == email)
        ).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise unauthorized(Messages.INVALID_CREDENTIAL)
    if row["status"] != CONFIRMED:
        raise unauthorized(Messages.NOT_VERIFIED)

    token = tokens.issue(row["id"], ACCESS_PURPOSE, settings.access_token_lifetime)
    logger.info("User %s logged in", row["id"])
    return TokenResponse(status=200, success=Messages.LOGGED_IN, token=token)


@router.get("/verify", response_model=MessageResponse)
def verify_email(
    token: str | None = Query(None),
    database: Database = Depends(get_database),
    tokens: TokenService = Depends(get_tokens),
) -> MessageResponse:
    if not token:
        raise bad_request(Messages.MISSING_TOKEN)
    try:
        claims = tokens.decode(token, VERIFY_PURPOSE)
        user_id = tokens.subject_id(claims)
    except TokenExpired as exc:
        raise bad_request(Messages.EXPIRED_TOKEN) from exc
    except TokenError as exc:
        raise bad_request(Messages.INVALID_TOKEN) from exc

    with database.begin() as conn:
        row = conn.execute(
            select(users.c.status, users.c.email).where(users.c.id == user_id)
        ).mappings().first()
        if row is None:
            raise not_found(Messages.USER + Messages.NOT_FOUND)
        if row["email"] != claims.get("email"):
            # issued for an address the user has since changed
            raise bad_request(Messages.INVALID_TOKEN)
        if row["status"] == CONFIRMED:
            raise bad_request(Messages.ALREADY_VERIFIED)
        conn.execute(update(users).where(users.c.id == user_id).values(status=CONFIRMED))

    logger.info("User %s verified their email", user_id)
    return MessageResponse(status=200, success=Messages.EMAIL_VERIFIED)


@router.post("/resend-verification", response_model=MessageResponse)
def resend_verification(
    payload: EmailPayload,
    database: Database = Depends(get_database),
    mailer: Mailer = Depends(get_mailer),
    tokens: TokenService = Depends(get_tokens),
    settings: Settings = Depends(get_settings),
) -> MessageResponse:
    email = payload.email.strip().lower()
    with database.begin() as conn:
        row = conn.execute(
            select(users.c.id, users.c.first_name, users.c.status).where(users.c.email == email)
        ).mappings().first()

    if not row:
        raise not_found(Messages.USER + Messages.NOT_FOUND)
    if row["status"] == CONFIRMED:
        raise bad_request(Messages.ALREADY_VERIFIED)

    send_verification_email(
        mailer,
        tokens,
        settings,
        user_id=row["id"],
        email=email,
        first_name=row["first_name"],
        resend=True,
    )
    return MessageResponse(status=200, success=Messages.RE_VERIFICATION)


@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(
    payload: EmailPayload,
    database: Database = Depends(get_database),
    mailer: Mailer = Depends(get_mailer),
    tokens: TokenService = Depends(get_tokens),
    settings: Settings = Depends(get_settings),
) -> MessageResponse:
    email = payload.email.strip().lower()
    with database.begin() as conn:
        row = conn.execute(
            select(users.c.id, users.c.first_name, users.c.hashed_password).where(users.c.email == email)
        ).mappings().first()

    if not row:
        raise not_found(Messages.USER + Messages.NOT_FOUND)

    token = tokens.issue(
        row["id"],
        RESET_PURPOSE,
        settings.verification_token_lifetime,
        fp=password_fingerprint(row["hashed_password"], tokens.secret),
    )
    link = f"{settings.frontend_url}/reset-password?token={token}"
    subject, html = password_reset_email(row["first_name"], link, settings.verification_token_minutes)
    mailer.send(email, subject, html)
    return MessageResponse(status=200, success=Messages.RESET_SENT)


@router.post("/change-password", response_model=MessageResponse)
def change_password(
    payload: ResetPasswordPayload,
    database: Database = Depends(get_database),
    tokens: TokenService = Depends(get_tokens),
) -> MessageResponse:
    validate_or_400(validate_password, payload.password)
    try:
        claims = tokens.decode(payload.token, RESET_PURPOSE)
        user_id = tokens.subject_id(claims)
    except TokenError as exc:
        raise bad_request(Messages.INVALID_TOKEN) from exc

    with database.begin() as conn:
        current_hash = conn.execute(
            select(users.c.hashed_password).where(users.c.id == user_id)
        ).scalar_one_or_none()
        if current_hash is None:
            raise not_found(Messages.USER + Messages.NOT_FOUND)
        if claims.get("fp") != password_fingerprint(current_hash, tokens.secret):
            raise bad_request(Messages.INVALID_TOKEN)
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(hashed_password=hash_password(payload.password))
        )

    logger.info("User %s reset their password", user_id)
    return MessageResponse(status=200, success=Messages.NEW_PASSWORD)


@router.get("/me", response_model=ProfileResponse)
def get_profile(
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> ProfileResponse:
    with database.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == auth.user_id)).mappings().first()
    if not row:
        raise not_found(Messages.USER + Messages.NOT_FOUND)
    return ProfileResponse(
        first_name=row["first_name"],
        last_name=row["last_name"],
        email=row["email"],
        phone=row["phone"],
        status=row["status"],
    )


@router.put("/me", response_model=MessageResponse)
def update_profile(
    payload: ProfileUpdatePayload,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
    mailer: Mailer = Depends(get_mailer),
    tokens: TokenService = Depends(get_tokens),
    settings: Settings = Depends(get_settings),
) -> MessageResponse:
    values = values_or_400(payload)
    try:
        with database.begin() as conn:
            current = conn.execute(
                select(users.c.first_name, users.c.email).where(users.c.id == auth.user_id)
            ).mappings().first()
            if not current:
                raise not_found(Messages.USER + Messages.NOT_FOUND)

            new_email = values.get("email")
            email_changed = new_email is not None and new_email != current["email"]
            if email_changed:
                taken = conn.execute(
                    select(users.c.id).where(users.c.email == new_email, users.c.id != auth.user_id)
                ).first()
                if taken:
                    raise bad_request(Messages.EMAIL_EXISTS)
                values["status"] = PENDING

            conn.execute(update(users).where(users.c.id == auth.user_id).values(**values))
            if email_changed:
                send_verification_email(
                    mailer,
                    tokens,
                    settings,
                    user_id=auth.user_id,
                    email=new_email,
                    first_name=values.get("first_name", current["first_name"]),
                )
    except IntegrityError as exc:
        raise bad_request(Messages.EMAIL_EXISTS) from exc

    return MessageResponse(status=200, success=Messages.USER + Messages.UPDATED)


@router.put("/me/password", response_model=MessageResponse)
def update_password(
    payload: ChangePasswordPayload,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> MessageResponse:
    validate_or_400(validate_password, payload.new_password)
    with database.begin() as conn:
        current_hash = conn.execute(
            select(users.c.hashed_password).where(users.c.id == auth.user_id)
        ).scalar_one_or_none()
        if current_hash is None or not verify_password(payload.current_password, current_hash):
            raise unauthorized(Messages.INVALID_CREDENTIAL)
        conn.execute(
            update(users)
            .where(users.c.id == auth.user_id)
            .values(hashed_password=hash_password(payload.new_password))
        )
    return MessageResponse(status=200, success=Messages.NEW_PASSWORD)


@router.delete("/me", response_model=MessageResponse)
def delete_profile(
    payload: PasswordConfirmPayload,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> MessageResponse:
    with database.begin() as conn:
        current_hash = conn.execute(
            select(users.c.hashed_password).where(users.c.id == auth.user_id)
        ).scalar_one_or_none()
        if current_hash is None or not verify_password(payload.password, current_hash):
            raise unauthorized(Messages.INVALID_CREDENTIAL)
        conn.execute(delete(budgets).where(budgets.c.user_id == auth.user_id))
        conn.execute(delete(transactions).where(transactions.c.user_id == auth.user_id))
        conn.execute(delete(accounts).where(accounts.c.user_id == auth.user_id))
        conn.execute(delete(users).where(users.c.id == auth.user_id))

    logger.info("Deleted user %s and all of their records", auth.user_id)
    return MessageResponse(status=200, success=Messages.USER + Messages.DELETED)


@router.get("/accounts", response_model=list[AccountResponse])
def list_accounts(
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> list[AccountResponse]:
    with database.begin() as conn:
        rows = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == auth.user_id)
            .order_by(accounts.c.created_at.desc(), accounts.c.id.desc())
        ).mappings().all()
    return [_account_response(row) for row in rows]


@router.get("/account/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: int,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> AccountResponse:
    with database.begin() as conn:
        row = conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == auth.user_id)
        ).mappings().first()
    if not row:
        raise not_found(Messages.ACCOUNT + Messages.NOT_FOUND)
    return _account_response(row)


@router.post("/account", response_model=CreatedResponse, status_code=201)
def create_account(
    payload: AccountPayload,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
    settings: Settings = Depends(get_settings),
) -> CreatedResponse:
    payload = validate_or_400(AccountPayload.validate_payload, payload)
    now = utcnow()
    try:
        with database.begin() as conn:
            taken = conn.execute(
                select(accounts.c.id).where(
                    accounts.c.user_id == auth.user_id, accounts.c.number == payload.number
                )
            ).first()
            if taken:
                raise bad_request(Messages.NUMBER_TAKEN)
            account_id = conn.execute(
                insert(accounts)
                .values(
                    user_id=auth.user_id,
                    name=payload.name,
                    type=payload.type,
                    number=payload.number,
                    institution=payload.institution,
                    currency=settings.default_currency,
                    balance=payload.balance,
                    opening_balance=payload.balance,
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
                .returning(accounts.c.id)
            ).scalar_one()
    except IntegrityError as exc:
        raise bad_request(Messages.NUMBER_TAKEN) from exc

    logger.info("User %s created account %s", auth.user_id, account_id)
    return CreatedResponse(status=201, success=Messages.ACCOUNT + Messages.CREATED, id=account_id)


@router.put("/account/{account_id}", response_model=MessageResponse)
def update_account(
    account_id: int,
    payload: AccountUpdatePayload,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> MessageResponse:
    values = values_or_400(payload)
    try:
        with database.begin() as conn:
            if not _account_owned(conn, auth.user_id, account_id):
                raise not_found(Messages.ACCOUNT + Messages.NOT_FOUND)
            if "number" in values:
                taken = conn.execute(
                    select(accounts.c.id).where(
                        accounts.c.user_id == auth.user_id,
                        accounts.c.number == values["number"],
                        accounts.c.id != account_id,
                    )
                ).first()
                if taken:
                    raise bad_request(Messages.NUMBER_TAKEN)
            if "balance" in values:
                # a direct edit moves the ledger baseline with it
                recorded = transaction_total(conn, auth.user_id, account_id)
                values["opening_balance"] = to_money(values["balance"] - recorded)
            values["updated_at"] = utcnow()
            conn.execute(
                update(accounts)
                .where(accounts.c.id == account_id, accounts.c.user_id == auth.user_id)
                .values(**values)
            )
    except IntegrityError as exc:
        raise bad_request(Messages.NUMBER_TAKEN) from exc

    return MessageResponse(status=200, success=Messages.ACCOUNT + Messages.UPDATED)


@router.delete("/account/{account_id}", response_model=MessageResponse)
def delete_account(
    account_id: int,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> MessageResponse:
    with database.begin() as conn:
        conn.execute(
            delete(transactions).where(
                transactions.c.account_id == account_id, transactions.c.user_id == auth.user_id
            )
        )
        result = conn.execute(
            delete(accounts).where(accounts.c.id == account_id, accounts.c.user_id == auth.user_id)
        )
        if result.rowcount == 0:
            raise not_found(Messages.ACCOUNT + Messages.NOT_FOUND)

    logger.info("User %s deleted account %s", auth.user_id, account_id)
    return MessageResponse(status=200, success=Messages.ACCOUNT + Messages.DELETED)


@router.get("/account/{account_id}/reconcile", response_model=ReconciliationResponse)
def reconcile(
    account_id: int,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> ReconciliationResponse:
    with database.begin() as conn:
        report = reconcile_account(conn, auth.user_id, account_id)
    if not report.balanced:
        logger.warning(
            "Account %s drifted from its ledger by %s", account_id, report.drift
        )
    return ReconciliationResponse(
        account_id=account_id,
        stored_balance=report.stored_balance,
        ledger_balance=report.ledger_balance,
        drift=report.drift,
        transaction_count=report.transaction_count,
        balanced=report.balanced,
    )


@router.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> list[TransactionResponse]:
    with database.begin() as conn:
        rows = conn.execute(
            select(transactions)
            .where(transactions.c.user_id == auth.user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [_transaction_response(row) for row in rows]


@router.get("/transactions/{account_id}", response_model=list[TransactionResponse])
def list_account_transactions(
    account_id: int,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> list[TransactionResponse]:
    with database.begin() as conn:
        rows = conn.execute(
            select(transactions)
            .where(transactions.c.user_id == auth.user_id, transactions.c.account_id == account_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [_transaction_response(row) for row in rows]


@router.get("/transactions/{account_id}/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    account_id: int,
    transaction_id: int,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> TransactionResponse:
    with database.begin() as conn:
        row = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id,
                transactions.c.account_id == account_id,
                transactions.c.user_id == auth.user_id,
            )
        ).mappings().first()
    if not row:
        raise not_found(Messages.TRANSACTION + Messages.NOT_FOUND)
    return _transaction_response(row)


@router.post(
    "/transactions/{account_id}", response_model=TransactionCreatedResponse, status_code=201
)
def create_transaction(
    account_id: int,
    payload: TransactionPayload,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> TransactionCreatedResponse:
    payload = validate_or_400(TransactionPayload.validate_payload, payload)
    with database.begin() as conn:
        transaction_id, balance = record_transaction(
            conn,
            auth.user_id,
            account_id,
            amount=payload.amount,
            category=payload.category,
            type=payload.type,
            date=payload.date,
            name=payload.name,
        )
    return TransactionCreatedResponse(
        status=201,
        success=Messages.TRANSACTION + Messages.CREATED,
        id=transaction_id,
        balance=balance,
    )


@router.delete("/transactions/{account_id}/{transaction_id}", response_model=BalanceResponse)
def delete_transaction(
    account_id: int,
    transaction_id: int,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> BalanceResponse:
    with database.begin() as conn:
        balance = remove_transaction(conn, auth.user_id, account_id, transaction_id)
    return BalanceResponse(
        status=200, success=Messages.TRANSACTION + Messages.DELETED, balance=balance
    )


@router.post("/analytics/categories", response_model=CategoryAnalyticsResponse)
def category_analytics(
    payload: AnalyticsPayload | None = Body(None),
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> CategoryAnalyticsResponse:
    payload = payload or AnalyticsPayload()
    account_id = validate_or_400(AnalyticsPayload.account_filter, payload)
    conditions = [transactions.c.user_id == auth.user_id]
    with database.begin() as conn:
        if account_id is not None:
            if not _account_owned(conn, auth.user_id, account_id):
                raise not_found(Messages.ACCOUNT + Messages.NOT_FOUND)
            conditions.append(transactions.c.account_id == account_id)
        rows = conn.execute(
            select(
                transactions.c.amount,
                transactions.c.category,
                transactions.c.date,
                transactions.c.account_id,
            ).where(*conditions)
        ).mappings().all()

    summary = summarize_categories(_ledger_entries(rows))
    return CategoryAnalyticsResponse(
        categories=[
            CategoryTotalResponse(name=item.name, value=item.value, percentage=item.percentage)
            for item in summary.categories
        ],
        total_spending=summary.total_spending,
    )


@router.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> list[BudgetResponse]:
    with database.begin() as conn:
        rows = conn.execute(
            select(budgets)
            .where(budgets.c.user_id == auth.user_id)
            .order_by(budgets.c.month.desc(), budgets.c.category.asc())
        ).mappings().all()
    return [_budget_response(row) for row in rows]


@router.get("/budget/{budget_id}", response_model=BudgetResponse)
def get_budget(
    budget_id: int,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> BudgetResponse:
    with database.begin() as conn:
        row = conn.execute(
            select(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == auth.user_id)
        ).mappings().first()
    if not row:
        raise not_found(Messages.BUDGET + Messages.NOT_FOUND)
    return _budget_response(row)


@router.post("/budget", response_model=CreatedResponse, status_code=201)
def create_budget(
    payload: BudgetPayload,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> CreatedResponse:
    payload = validate_or_400(BudgetPayload.validate_payload, payload)
    now = utcnow()
    try:
        with database.begin() as conn:
            existing = conn.execute(
                select(budgets.c.id).where(
                    budgets.c.user_id == auth.user_id,
                    budgets.c.category == payload.category,
                    budgets.c.month == payload.month,
                )
            ).first()
            if existing:
                raise bad_request(Messages.BUDGET_EXISTS)
            budget_id = conn.execute(
                insert(budgets)
                .values(
                    user_id=auth.user_id,
                    category=payload.category,
                    spending_limit=payload.limit,
                    month=payload.month,
                    created_at=now,
                    updated_at=now,
                )
                .returning(budgets.c.id)
            ).scalar_one()
    except IntegrityError as exc:
        raise bad_request(Messages.BUDGET_EXISTS) from exc

    return CreatedResponse(status=201, success=Messages.BUDGET + Messages.CREATED, id=budget_id)


@router.put("/budget/{budget_id}", response_model=MessageResponse)
def update_budget(
    budget_id: int,
    payload: BudgetUpdatePayload,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> MessageResponse:
    values = values_or_400(payload)
    try:
        with database.begin() as conn:
            current = conn.execute(
                select(budgets.c.category, budgets.c.month).where(
                    budgets.c.id == budget_id, budgets.c.user_id == auth.user_id
                )
            ).mappings().first()
            if not current:
                raise not_found(Messages.BUDGET + Messages.NOT_FOUND)
            clash = conn.execute(
                select(budgets.c.id).where(
                    budgets.c.user_id == auth.user_id,
                    budgets.c.category == values.get("category", current["category"]),
                    budgets.c.month == values.get("month", current["month"]),
                    budgets.c.id != budget_id,
                )
            ).first()
            if clash:
                raise bad_request(Messages.BUDGET_EXISTS)
            conn.execute(
                update(budgets)
                .where(budgets.c.id == budget_id, budgets.c.user_id == auth.user_id)
                .values(**values, updated_at=utcnow())
            )
    except IntegrityError as exc:
        raise bad_request(Messages.BUDGET_EXISTS) from exc

    return MessageResponse(status=200, success=Messages.BUDGET + Messages.UPDATED)


@router.delete("/budget/{budget_id}", response_model=MessageResponse)
def delete_budget(
    budget_id: int,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> MessageResponse:
    with database.begin() as conn:
        result = conn.execute(
            delete(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == auth.user_id)
        )
        if result.rowcount == 0:
            raise not_found(Messages.BUDGET + Messages.NOT_FOUND)
    return MessageResponse(status=200, success=Messages.BUDGET + Messages.DELETED)


@router.get("/budget/{budget_id}/evaluate", response_model=BudgetEvaluationResponse)
def evaluate_budget_spending(
    budget_id: int,
    auth: AuthContext = Depends(get_auth_context),
    database: Database = Depends(get_database),
) -> BudgetEvaluationResponse:
    with database.begin() as conn:
        budget = conn.execute(
            select(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == auth.user_id)
        ).mappings().first()
        if not budget:
            raise not_found(Messages.BUDGET + Messages.NOT_FOUND)
        start_date, end_date = month_range(budget["month"])
        rows = conn.execute(
            select(
                transactions.c.amount,
                transactions.c.category,
                transactions.c.date,
                transactions.c.account_id,
            ).where(
                transactions.c.user_id == auth.user_id,
                transactions.c.category == budget["category"],
                transactions.c.date >= start_date,
                transactions.c.date <= end_date,
            )
        ).mappings().all()

    rule = BudgetRule(
        category=budget["category"],
        limit=to_money(budget["spending_limit"]),
        month=budget["month"],
    )
    evaluation = evaluate_budget(_ledger_entries(rows), rule)
    return BudgetEvaluationResponse(
        budget_id=budget["id"],
        category=rule.category,
        month=rule.month,
        limit=rule.limit,
        spent=evaluation.spent,
        remaining=evaluation.remaining,
        status=evaluation.status,
        start_date=evaluation.start_date,
        end_date=evaluation.end_date,
    )


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    error_types = {error.get("type") for error in errors}
    if "extra_forbidden" in error_types:
        return Messages.INCORRECT_FIELD_COUNT
    if "missing" in error_types:
        return Messages.MISSING_FIELDS
    if not errors:
        return "invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid request")
    return f"{location}: {message}" if location else message


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(400, _validation_message(exc))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(SQLAlchemyError)
    async def handle_database_error(request: Request, exc: SQLAlchemyError):
        logger.error("Database failure on %s %s", request.method, request.url.path, exc_info=exc)
        return error_response(500, Messages.INTERNAL_ERROR)

    @app.exception_handler(MailerError)
    async def handle_mailer_error(request: Request, exc: MailerError):
        logger.error("Email delivery failed on %s %s", request.method, request.url.path, exc_info=exc)
        return error_response(500, Messages.INTERNAL_ERROR)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return error_response(500, Messages.INTERNAL_ERROR)


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    mailer: Mailer | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.uses_default_secret:
        logger.warning("JWT_SECRET is not set; using the development secret")
    database = database or Database(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.connect()
        try:
            yield
        finally:
            database.disconnect()

    app = FastAPI(title="WealthTracker API", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.tokens = TokenService(secret=settings.jwt_secret)
    app.state.mailer = mailer or build_mailer(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
