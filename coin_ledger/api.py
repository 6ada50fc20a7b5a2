import logging
import os
from uuid import UUID
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import LedgerConfig
from .errors import (
    CapExceededError, CoinLedgerError, ConcurrencyConflict, DuplicateWelcomeBonusError,
    InsufficientBalanceError, InvalidStateTransitionError, NotFoundError, UserNotActiveError,
)
from .models import (
    AdjustmentRequest, ApproveRequest, BalanceResponse, BalanceSummary, CoinTransaction,
    DecisionResponse, LedgerHistoryResponse, ProcessPaymentRequest, RejectRequest,
    SubmissionResponse, SubmitEarnRequest, SubmitRedeemRequest, TransactionStats, WelcomeBonusResponse,
)
from .service import CoinLedgerService

debug_mode = os.getenv("DEBUG_MODE", "false").lower() == "true"
logging.basicConfig(
    level=logging.DEBUG if debug_mode else logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(
    title="Coin Ledger API",
    description="Coin balances, earn/redeem claims and admin approval workflow for loyalty rewards",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = CoinLedgerService(config=LedgerConfig.from_env())


def _http_error(e: CoinLedgerError) -> HTTPException:
    detail = {"code": e.code, "message": e.message, "retryable": e.retryable}
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if isinstance(e, (InvalidStateTransitionError, DuplicateWelcomeBonusError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(e, (CapExceededError, InsufficientBalanceError)):
        return HTTPException(status_code=422, detail=detail)
    if isinstance(e, UserNotActiveError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
    if isinstance(e, ConcurrencyConflict):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            headers={"Retry-After": "1"},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "coin-ledger"}


@app.post("/users/{user_id}/earn", response_model=SubmissionResponse,
          status_code=status.HTTP_201_CREATED, tags=["Claims"])
def submit_earn(user_id: UUID, request: SubmitEarnRequest) -> SubmissionResponse:
    try:
        return ledger_service.submit_earn(user_id, request)
    except CoinLedgerError as e:
        raise _http_error(e)


@app.post("/users/{user_id}/redeem", response_model=SubmissionResponse,
          status_code=status.HTTP_201_CREATED, tags=["Claims"])
def submit_redeem(user_id: UUID, request: SubmitRedeemRequest) -> SubmissionResponse:
    try:
        return ledger_service.submit_redeem(user_id, request)
    except CoinLedgerError as e:
        raise _http_error(e)


@app.get("/transactions/{transaction_id}", response_model=CoinTransaction, tags=["Transactions"])
def get_transaction(transaction_id: UUID) -> CoinTransaction:
    try:
        return ledger_service.get_transaction(transaction_id)
    except CoinLedgerError as e:
        raise _http_error(e)


@app.post("/transactions/{transaction_id}/approve", response_model=DecisionResponse, tags=["Admin"])
def approve_transaction(transaction_id: UUID, request: ApproveRequest) -> DecisionResponse:
    try:
        return ledger_service.approve(transaction_id, request)
    except CoinLedgerError as e:
        raise _http_error(e)


@app.post("/transactions/{transaction_id}/reject", response_model=DecisionResponse, tags=["Admin"])
def reject_transaction(transaction_id: UUID, request: RejectRequest) -> DecisionResponse:
    try:
        return ledger_service.reject(transaction_id, request)
    except CoinLedgerError as e:
        raise _http_error(e)


@app.post("/transactions/{transaction_id}/mark-processed", response_model=DecisionResponse, tags=["Admin"])
def mark_processed(transaction_id: UUID, request: ApproveRequest) -> DecisionResponse:
    try:
        return ledger_service.mark_processed(transaction_id, request)
    except CoinLedgerError as e:
        raise _http_error(e)


@app.post("/transactions/{transaction_id}/process-payment", response_model=DecisionResponse, tags=["Admin"])
def process_payment(transaction_id: UUID, request: ProcessPaymentRequest) -> DecisionResponse:
    try:
        return ledger_service.process_payment(transaction_id, request)
    except CoinLedgerError as e:
        raise _http_error(e)


@app.post("/users/{user_id}/adjustments", response_model=DecisionResponse,
          status_code=status.HTTP_201_CREATED, tags=["Admin"])
def adjust_balance(user_id: UUID, request: AdjustmentRequest) -> DecisionResponse:
    try:
        return ledger_service.adjust(user_id, request)
    except CoinLedgerError as e:
        raise _http_error(e)


@app.get("/admin/stats", response_model=TransactionStats, tags=["Admin"])
def transaction_stats() -> TransactionStats:
    return ledger_service.get_transaction_stats()


@app.post("/users/{user_id}/welcome-bonus", response_model=WelcomeBonusResponse,
          status_code=status.HTTP_201_CREATED, tags=["Users"])
def issue_welcome_bonus(user_id: UUID) -> WelcomeBonusResponse:
    try:
        return ledger_service.issue_welcome_bonus(user_id)
    except CoinLedgerError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/welcome-bonus/eligibility", tags=["Users"])
def welcome_bonus_eligibility(user_id: UUID):
    try:
        return {"user_id": user_id, "eligible": ledger_service.check_welcome_bonus_eligibility(user_id)}
    except CoinLedgerError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/balance", response_model=BalanceResponse, tags=["Users"])
def get_user_balance(user_id: UUID) -> BalanceResponse:
    return ledger_service.get_balance(user_id)


@app.get("/users/{user_id}/balance/summary", response_model=BalanceSummary, tags=["Users"])
def get_balance_summary(user_id: UUID) -> BalanceSummary:
    return ledger_service.get_balance_summary(user_id)


@app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(user_id: UUID) -> LedgerHistoryResponse:
    return ledger_service.get_ledger_history(user_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
