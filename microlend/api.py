"""
FastAPI REST API Module

Exposes the lending engine over HTTP: wallets, loan applications, funding,
escrow administration, repayment schedules, installment settlement, the admin
repayment overview and user notifications. Runs on port 8090 by default.

Engine errors map to HTTP statuses by kind and are returned as
{"error": <code>, "detail": <message>}.
"""

from datetime import datetime
from typing import Dict, Optional
from fastapi import FastAPI, Depends, Query, Request, status
import uvicorn
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .currency import Money, Currency, to_decimal
from .config import get_config
from .logging_config import setup_logging
from .errors import (
    LendingError, ValidationError, InsufficientFundsError, NotFoundError,
    AlreadyPaidError, InvalidStateError, CompensationError
)
from .escrow import Escrow, EscrowStatus
from .loans import Loan, LoanStatus
from .repayments import ScheduleView, OverviewItem
from .notifications import Notification
from .system import LendingSystem


ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InsufficientFundsError: status.HTTP_402_PAYMENT_REQUIRED,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    AlreadyPaidError: status.HTTP_409_CONFLICT,
    InvalidStateError: status.HTTP_409_CONFLICT,
    CompensationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# Pydantic models for API requests
class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (LKR, USD, etc.)")

    def to_money(self) -> Money:
        try:
            return Money(to_decimal(self.amount), Currency[self.currency.upper()])
        except KeyError:
            raise ValidationError(f"Unsupported currency: {self.currency}")
        except ValueError as e:
            raise ValidationError(str(e))


class WalletAmountRequest(BaseModel):
    amount: MoneyModel


class LoanApplicationRequest(BaseModel):
    borrower_id: str
    requested_amount: MoneyModel
    annual_interest_rate: str  # Percent as string, e.g. "12"
    term_months: int
    purpose: str = ""


class FundLoanRequest(BaseModel):
    lender_id: str
    borrower_id: str
    amount: MoneyModel


def money_dict(money: Optional[Money]) -> Optional[Dict[str, str]]:
    if money is None:
        return None
    return {"amount": str(money.amount), "currency": money.currency.code}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def loan_dict(loan: Loan) -> Dict:
    return {
        "id": loan.id,
        "borrower_id": loan.borrower_id,
        "lender_id": loan.lender_id,
        "status": loan.status.value,
        "requested_amount": money_dict(loan.requested_amount),
        "annual_interest_rate": str(loan.annual_interest_rate),
        "term_months": loan.term_months,
        "purpose": loan.purpose,
        "funded_amount": money_dict(loan.funded_amount),
        "funded_at": _iso(loan.funded_at),
        "escrow_id": loan.escrow_id,
        "repayment_schedule_id": loan.repayment_schedule_id,
        "completed_at": _iso(loan.completed_at),
        "total_return": money_dict(loan.total_return),
        "interest_earned": money_dict(loan.interest_earned),
    }


def escrow_dict(escrow: Escrow) -> Dict:
    return {
        "id": escrow.id,
        "loan_id": escrow.loan_id,
        "lender_id": escrow.lender_id,
        "borrower_id": escrow.borrower_id,
        "amount": money_dict(escrow.amount),
        "status": escrow.status.value,
    }


def schedule_view_dict(view: ScheduleView) -> Dict:
    schedule = view.schedule
    return {
        "id": schedule.id,
        "loan_id": schedule.loan_id,
        "borrower_id": schedule.borrower_id,
        "lender_id": schedule.lender_id,
        "total_amount": money_dict(schedule.total_amount),
        "status": schedule.status.value,
        "is_complete": view.is_complete,
        "as_of": view.as_of.isoformat(),
        "installments": [
            {
                "installment_number": item.installment.installment_number,
                "due_date": item.installment.due_date.isoformat(),
                "total_payment": money_dict(item.installment.total_payment),
                "principal_payment": money_dict(item.installment.principal_payment),
                "interest_payment": money_dict(item.installment.interest_payment),
                "remaining_balance": money_dict(item.installment.remaining_balance),
                "status": item.installment.status.value,
                "display_status": item.display_status.value,
                "paid_date": _iso(item.installment.paid_date),
                "days_late": item.days_late,
                "days_left": item.days_left,
            }
            for item in view.installments
        ],
    }


def overview_item_dict(item: OverviewItem) -> Dict:
    return {
        "schedule_id": item.schedule_id,
        "loan_id": item.loan_id,
        "borrower_id": item.borrower_id,
        "lender_id": item.lender_id,
        "installment_number": item.installment_number,
        "due_date": item.due_date.isoformat(),
        "amount": money_dict(item.amount),
        "display_status": item.display_status.value,
        "days_late": item.days_late,
        "days_left": item.days_left,
    }


def notification_dict(notification: Notification) -> Dict:
    return {
        "id": notification.id,
        "type": notification.notification_type.value,
        "title": notification.title,
        "body": notification.body,
        "priority": notification.priority.value,
        "is_read": notification.is_read,
        "loan_id": notification.loan_id,
        "created_at": notification.created_at.isoformat(),
        "context": notification.context,
    }


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create the HTTP application around a lending system"""
    lending_system = system or LendingSystem()

    app = FastAPI(
        title="Microlend Lending Engine API",
        description="Loan funding, escrow and repayment lifecycle for peer-to-peer micro-lending",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        status_code = status.HTTP_400_BAD_REQUEST
        for error_type, code in ERROR_STATUS.items():
            if isinstance(exc, error_type):
                status_code = code
                break
        return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": str(exc)})

    def get_lending_system() -> LendingSystem:
        return lending_system

    # Health check endpoint
    @app.get("/health")
    async def health_check(system: LendingSystem = Depends(get_lending_system)):
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": system.clock.now().isoformat()}

    # Wallet Endpoints
    @app.get("/wallets/{user_id}")
    def get_wallet(user_id: str, system: LendingSystem = Depends(get_lending_system)):
        """Get wallet balance"""
        wallet = system.wallet_ledger.get_wallet(user_id)
        return {"user_id": wallet.user_id, "balance": money_dict(wallet.balance)}

    @app.post("/wallets/{user_id}/topup")
    def top_up_wallet(user_id: str, request: WalletAmountRequest,
                      system: LendingSystem = Depends(get_lending_system)):
        """Add funds to a wallet"""
        balance = system.top_up(user_id, request.amount.to_money())
        return {"user_id": user_id, "balance": money_dict(balance)}

    @app.post("/wallets/{user_id}/withdraw")
    def withdraw_from_wallet(user_id: str, request: WalletAmountRequest,
                             system: LendingSystem = Depends(get_lending_system)):
        """Withdraw funds from a wallet"""
        balance = system.withdraw(user_id, request.amount.to_money())
        return {"user_id": user_id, "balance": money_dict(balance)}

    @app.get("/wallets/{user_id}/transactions")
    def get_wallet_transactions(user_id: str, limit: int = 100,
                                system: LendingSystem = Depends(get_lending_system)):
        """Get wallet history, newest first"""
        return {
            "transactions": [
                {
                    "id": t.id,
                    "type": t.transaction_type.value,
                    "amount": money_dict(t.amount),
                    "status": t.status.value,
                    "loan_id": t.loan_id,
                    "description": t.description,
                    "created_at": t.created_at.isoformat(),
                }
                for t in system.transactions.list_for_user(user_id, limit=limit)
            ]
        }

    # Loan Endpoints
    @app.post("/loans", status_code=status.HTTP_201_CREATED)
    def apply_for_loan(request: LoanApplicationRequest,
                       system: LendingSystem = Depends(get_lending_system)):
        """Open a loan application"""
        try:
            rate = to_decimal(request.annual_interest_rate)
        except ValueError as e:
            raise ValidationError(str(e))
        loan = system.loan_book.apply_for_loan(
            borrower_id=request.borrower_id,
            requested_amount=request.requested_amount.to_money(),
            annual_interest_rate=rate,
            term_months=request.term_months,
            purpose=request.purpose,
        )
        return loan_dict(loan)

    @app.get("/loans")
    def list_loans(status_filter: Optional[str] = Query(None, alias="status"),
                   system: LendingSystem = Depends(get_lending_system)):
        """List loans, optionally by status"""
        loan_status = _parse_enum(LoanStatus, status_filter)
        return {"loans": [loan_dict(loan) for loan in system.loan_book.list_loans(loan_status)]}

    @app.get("/loans/{loan_id}")
    def get_loan(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
        """Get loan details"""
        return loan_dict(system.loan_book.get_loan(loan_id))

    @app.post("/loans/{loan_id}/fund")
    def fund_loan(loan_id: str, request: FundLoanRequest,
                  system: LendingSystem = Depends(get_lending_system)):
        """Fund a pending loan from the lender's wallet"""
        result = system.funding.fund_loan(
            loan_id=loan_id,
            lender_id=request.lender_id,
            borrower_id=request.borrower_id,
            amount=request.amount.to_money(),
        )
        return {
            "success": result.success,
            "message": result.message,
            "loan_id": result.loan_id,
            "escrow_id": result.escrow_id,
            "repayment_schedule_id": result.repayment_schedule_id,
            "new_wallet_balance": money_dict(result.new_wallet_balance),
            "funded_amount": money_dict(result.funded_amount),
            "warnings": result.warnings,
        }

    # Escrow Endpoints
    @app.get("/escrows")
    def list_escrows(status_filter: Optional[str] = Query(None, alias="status"),
                     system: LendingSystem = Depends(get_lending_system)):
        """List escrows, optionally by status"""
        escrow_status = _parse_enum(EscrowStatus, status_filter)
        return {"escrows": [escrow_dict(e) for e in system.escrow_ledger.list_escrows(escrow_status)]}

    @app.post("/escrows/{escrow_id}/approve")
    def approve_escrow(escrow_id: str, system: LendingSystem = Depends(get_lending_system)):
        result = system.funding.approve_escrow(escrow_id)
        return {"escrow": escrow_dict(result.escrow), "loan": loan_dict(result.loan),
                "warnings": result.warnings}

    @app.post("/escrows/{escrow_id}/release")
    def release_escrow(escrow_id: str, system: LendingSystem = Depends(get_lending_system)):
        result = system.funding.release_escrow(escrow_id)
        return {"escrow": escrow_dict(result.escrow), "loan": loan_dict(result.loan),
                "warnings": result.warnings}

    @app.post("/escrows/{escrow_id}/refund")
    def refund_escrow(escrow_id: str, system: LendingSystem = Depends(get_lending_system)):
        result = system.funding.refund_escrow(escrow_id)
        return {"escrow": escrow_dict(result.escrow), "loan": loan_dict(result.loan),
                "warnings": result.warnings}

    # Repayment Endpoints
    @app.get("/schedules/{schedule_id}")
    def view_schedule(schedule_id: str, system: LendingSystem = Depends(get_lending_system)):
        """Get a repayment schedule with derived installment statuses"""
        return schedule_view_dict(system.schedule_store.view_schedule(schedule_id))

    @app.post("/schedules/{schedule_id}/installments/{installment_number}/pay")
    def mark_installment_paid(schedule_id: str, installment_number: int,
                              system: LendingSystem = Depends(get_lending_system)):
        """Mark an installment paid"""
        result = system.settlement.mark_paid(schedule_id, installment_number)
        return {
            "success": result.success,
            "loan_completed": result.loan_completed,
            "already_paid": result.already_paid,
            "paid_on_time": result.paid_on_time,
            "total_return": money_dict(result.total_return),
            "interest_earned": money_dict(result.interest_earned),
            "warnings": result.warnings,
        }

    @app.get("/admin/repayments/overview")
    def repayment_overview(system: LendingSystem = Depends(get_lending_system)):
        """Unpaid installments grouped into overdue, due soon and upcoming"""
        groups = system.repayment_overview.build()
        return {name: [overview_item_dict(item) for item in items] for name, items in groups.items()}

    @app.post("/admin/repayments/reminders")
    def send_overdue_reminders(system: LendingSystem = Depends(get_lending_system)):
        """Remind borrowers of overdue installments"""
        return {"reminders_sent": system.repayment_overview.send_overdue_reminders()}

    # Lender portfolio
    @app.get("/lenders/{lender_id}/portfolio")
    def lender_portfolio(lender_id: str, system: LendingSystem = Depends(get_lending_system)):
        """Portfolio ROI over completed loans and milestones reached"""
        portfolio = system.milestone_tracker.calculate_portfolio_roi(lender_id)
        return {
            "lender_id": lender_id,
            "roi": str(portfolio.roi),
            "total_invested": str(portfolio.total_invested),
            "total_returns": str(portfolio.total_returns),
            "milestones": system.milestone_tracker.get_reached_milestones(lender_id),
        }

    # Notification Endpoints
    @app.get("/users/{user_id}/notifications")
    def get_notifications(user_id: str, unread_only: bool = False, limit: int = 50,
                          system: LendingSystem = Depends(get_lending_system)):
        engine = system.notification_engine
        return {
            "notifications": [notification_dict(n) for n in
                              engine.get_notifications(user_id, unread_only=unread_only, limit=limit)],
            "unread_count": engine.get_unread_count(user_id),
        }

    @app.post("/notifications/{notification_id}/read")
    def mark_notification_read(notification_id: str,
                               system: LendingSystem = Depends(get_lending_system)):
        if not system.notification_engine.mark_as_read(notification_id):
            raise NotFoundError("Notification", notification_id)
        return {"id": notification_id, "is_read": True}

    return app


def _parse_enum(enum_type, value: Optional[str]):
    if value is None:
        return None
    try:
        return enum_type(value.lower())
    except ValueError:
        raise ValidationError(f"Unknown {enum_type.__name__} value: {value}")


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    settings = get_config()
    setup_logging(level=settings.log_level, fmt=settings.log_format, log_file=settings.log_file)
    uvicorn.run(
        create_app(),
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level="debug" if debug else "info"
    )
