# backend/modules/loyalty/routes/loyalty_routes.py

"""
HTTP routes for loyalty accounts, the points ledger and redemptions.
"""

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from datetime import datetime

from core.database import get_db
from core.error_handling import handle_api_errors

from ..models.ledger_models import TransactionType, TransactionStatus
from ..models.rewards_models import RedemptionStatus
from ..schemas.loyalty_schemas import (
    EnrollmentRequest,
    LoyaltyAccountResponse,
    LoyaltyAccountList,
    LoyaltyAccountSummary,
    OccasionBonusRequest,
    PointsTransactionResponse,
    PointsTransactionList,
    PointsAdjustmentRequest,
    BulkAdjustmentRequest,
    BulkAdjustmentResponse,
    BulkAdjustmentError,
    ReversalRequest,
    ExpirationSweepResponse,
    ExpirationReminderResponse,
    ExpirationReminderBatchResponse,
    PurchaseContext,
    PointsPreviewResponse,
    RuleContribution,
)
from ..schemas.rewards_schemas import (
    RewardItemCreate,
    RewardItemResponse,
    RedemptionRequest,
    RedemptionStatusUpdate,
    RedemptionResponse,
    RedemptionHistory,
)
from ..services.account_service import LoyaltyAccountService
from ..services.expiration_reminders import ExpirationReminderService
from ..services.points_ledger import PointsLedger
from ..services.reward_catalog import RewardCatalog
from ..services.redemption_service import RedemptionService
from ..services.sale_integration import SaleLoyaltyIntegration

router = APIRouter(prefix="/api/v1/loyalty", tags=["Loyalty"])


def get_actor_id(x_staff_id: Optional[int] = Header(None)) -> Optional[int]:
    """Staff member performing the request, when the caller provides one"""
    return x_staff_id


# ========== Accounts ==========


@router.post(
    "/accounts",
    response_model=LoyaltyAccountResponse,
    status_code=status.HTTP_201_CREATED,
)
@handle_api_errors
async def enroll_customer(
    request: EnrollmentRequest,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Enroll a customer in the loyalty program.

    Raises:
        409: Customer already enrolled
    """
    service = LoyaltyAccountService(db)
    return service.enroll(
        request.customer_id, signup_bonus=request.signup_bonus, created_by=actor_id
    )


@router.get("/accounts", response_model=LoyaltyAccountList)
@handle_api_errors
async def list_accounts(
    tier: Optional[str] = Query(None),
    account_status: str = Query("active", alias="status", pattern="^(active|inactive|all)$"),
    min_points: Optional[int] = Query(None, ge=0),
    max_points: Optional[int] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """List members, largest balance first, with the program's tier distribution"""
    is_active = {"active": True, "inactive": False, "all": None}[account_status]
    service = LoyaltyAccountService(db)
    items, total = service.list_accounts(
        tier=tier,
        is_active=is_active,
        min_points=min_points,
        max_points=max_points,
        page=page,
        limit=limit,
    )
    return LoyaltyAccountList(
        items=[LoyaltyAccountResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
        tier_distribution=service.tier_distribution(),
    )


@router.get("/customers/{customer_id}/summary", response_model=LoyaltyAccountSummary)
@handle_api_errors
async def get_account_summary(customer_id: int, db: Session = Depends(get_db)):
    """
    Get balances, tier progress and points expiring in the next 30 days.

    Raises:
        404: Customer not enrolled
    """
    return LoyaltyAccountService(db).get_summary(customer_id)


@router.post("/accounts/{account_id}/deactivate", response_model=LoyaltyAccountResponse)
@handle_api_errors
async def deactivate_account(
    account_id: int,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return LoyaltyAccountService(db).deactivate(account_id, actor_id=actor_id)


@router.post(
    "/customers/{customer_id}/bonuses",
    response_model=Optional[PointsTransactionResponse],
)
@handle_api_errors
async def award_occasion_bonus(
    customer_id: int,
    request: OccasionBonusRequest,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Award the birthday or anniversary bonus configured for the program"""
    return LoyaltyAccountService(db).award_occasion_bonus(
        customer_id, request.occasion, request.reference_id, created_by=actor_id
    )


# ========== Points Ledger ==========


@router.get("/accounts/{account_id}/transactions", response_model=PointsTransactionList)
@handle_api_errors
async def list_transactions(
    account_id: int,
    transaction_type: Optional[TransactionType] = Query(None),
    transaction_status: Optional[TransactionStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """
    Get the account's ledger entries, newest first.

    Raises:
        404: Account not found
    """
    ledger = PointsLedger(db)
    ledger.accounts.get_account_by_id(account_id)
    items, total = ledger.list_transactions(
        account_id, transaction_type, transaction_status, page, limit
    )
    return PointsTransactionList(
        items=[PointsTransactionResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("/accounts/adjustments/bulk", response_model=BulkAdjustmentResponse)
@handle_api_errors
async def bulk_adjust_points(
    request: BulkAdjustmentRequest,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Apply several manual adjustments. Each one commits or fails on its own;
    failures are reported per item.
    """
    outcome = PointsLedger(db).record_adjustments(request.adjustments, created_by=actor_id)
    return BulkAdjustmentResponse(
        succeeded=[PointsTransactionResponse.model_validate(t) for t in outcome.succeeded],
        errors=[BulkAdjustmentError(**error) for error in outcome.errors],
    )


@router.post(
    "/accounts/{account_id}/adjustments",
    response_model=PointsTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
@handle_api_errors
async def adjust_points(
    account_id: int,
    request: PointsAdjustmentRequest,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Manually credit or debit points.

    Raises:
        409: Debit exceeds the balance, or the account is deactivated
    """
    return PointsLedger(db).record_adjustment(
        account_id, request.amount, request.direction, request.reason, created_by=actor_id
    )


@router.post("/transactions/{transaction_id}/reverse", response_model=PointsTransactionResponse)
@handle_api_errors
async def reverse_transaction(
    transaction_id: int,
    request: ReversalRequest,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Reverse a ledger entry.

    Raises:
        404: Transaction not found
        409: Already reversed, or not reversible
    """
    return PointsLedger(db).reverse(transaction_id, request.reason, created_by=actor_id)


@router.post("/expiration/run", response_model=ExpirationSweepResponse)
@handle_api_errors
async def run_expiration_sweep(
    as_of: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
):
    """Expire outstanding points past their expiration date"""
    summary = PointsLedger(db).expire_outstanding(as_of)
    return ExpirationSweepResponse(
        skipped=summary.skipped,
        accounts_processed=summary.accounts_processed,
        lots_expired=summary.lots_expired,
        points_expired=summary.points_expired,
        failed_accounts=summary.failed_accounts,
    )


@router.post(
    "/customers/{customer_id}/expiration-reminder",
    response_model=ExpirationReminderResponse,
)
@handle_api_errors
async def send_expiration_reminder(
    customer_id: int,
    within_days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Tell a customer about points expiring within ``within_days``.

    Raises:
        404: Customer not enrolled
    """
    return ExpirationReminderService(db).remind_customer(
        customer_id, within_days=within_days, actor_id=actor_id
    )


@router.post("/expiration/reminders", response_model=ExpirationReminderBatchResponse)
@handle_api_errors
async def send_expiration_reminders(
    within_days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Remind every active member with points expiring soon"""
    return ExpirationReminderService(db).send_batch(within_days=within_days, actor_id=actor_id)


# ========== Earning ==========


@router.post("/customers/{customer_id}/points/preview", response_model=PointsPreviewResponse)
@handle_api_errors
async def preview_points(
    customer_id: int,
    purchase: PurchaseContext,
    db: Session = Depends(get_db),
):
    """Points a purchase would earn under the current rules"""
    breakdown = SaleLoyaltyIntegration(db).preview_points(customer_id, purchase)
    return PointsPreviewResponse(
        total_points=breakdown.total_points,
        contributions=[
            RuleContribution(rule_id=c.rule_id, rule_name=c.rule_name, points=c.points)
            for c in breakdown.contributions
        ],
        program_cap_applied=breakdown.program_cap_applied,
    )


@router.post("/customers/{customer_id}/sales", response_model=Dict[str, Any])
@handle_api_errors
async def process_completed_sale(
    customer_id: int,
    purchase: PurchaseContext,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Credit the points earned by a completed sale"""
    return SaleLoyaltyIntegration(db).process_completed_sale(
        customer_id, purchase, created_by=actor_id
    )


@router.post("/sales/{sale_id}/reverse", response_model=List[PointsTransactionResponse])
@handle_api_errors
async def reverse_sale(
    sale_id: str,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Take back the points of a refunded sale"""
    return SaleLoyaltyIntegration(db).reverse_sale(sale_id, created_by=actor_id)


# ========== Rewards ==========


@router.get("/rewards", response_model=List[RewardItemResponse])
@handle_api_errors
async def list_rewards(
    tier: Optional[str] = Query(None),
    points_balance: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
):
    return RewardCatalog(db).list_available(tier=tier, points_balance=points_balance)


@router.post(
    "/rewards",
    response_model=RewardItemResponse,
    status_code=status.HTTP_201_CREATED,
)
@handle_api_errors
async def create_reward(request: RewardItemCreate, db: Session = Depends(get_db)):
    return RewardCatalog(db).create_reward(request)


# ========== Redemptions ==========


@router.post(
    "/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
@handle_api_errors
async def redeem_reward(
    request: RedemptionRequest,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Redeem a reward with points.

    Raises:
        404: Account not found
        409: Inactive account, unavailable reward, ineligible tier,
             insufficient stock or balance
        422: Below the program's minimum redemption
    """
    return RedemptionService(db).redeem(
        request.account_id,
        request.reward_id,
        quantity=request.quantity,
        fulfillment_method=request.fulfillment_method,
        notes=request.notes,
        created_by=actor_id,
    )


@router.patch("/redemptions/{redemption_id}/status", response_model=RedemptionResponse)
@handle_api_errors
async def update_redemption_status(
    redemption_id: int,
    request: RedemptionStatusUpdate,
    db: Session = Depends(get_db),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """
    Approve, complete or cancel a redemption. Cancelling refunds the points.

    Raises:
        404: Redemption not found
        409: Transition not allowed
    """
    return RedemptionService(db).update_status(
        redemption_id, request.status, notes=request.notes, actor_id=actor_id
    )


@router.get("/redemptions/{redemption_code}", response_model=RedemptionResponse)
@handle_api_errors
async def get_redemption(redemption_code: str, db: Session = Depends(get_db)):
    return RedemptionService(db).get_by_code(redemption_code)


@router.get("/accounts/{account_id}/redemptions", response_model=RedemptionHistory)
@handle_api_errors
async def get_redemption_history(
    account_id: int,
    redemption_status: Optional[RedemptionStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    items, total = RedemptionService(db).list_history(account_id, redemption_status, page, limit)
    return RedemptionHistory(
        items=[RedemptionResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )
