"""
Admin money-movement, review and maintenance endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from ..system import BankingSystem
from ..check_deposits import CheckDepositStatus
from ..errors import ValidationError
from .dependencies import CallerIdentity, get_banking_system, require_admin
from .schemas import (
    AdminFundsRequest, TransactionStatusRequest, DepositReviewRequest, IssueCardRequest,
    CardFreezeRequest, OutboxPurgeRequest, OutboxRetryRequest, deposit_view
)


router = APIRouter()


@router.post("/funds", status_code=status.HTTP_201_CREATED)
def adjust_balance(
    request: AdminFundsRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Direct credit or debit, bypassing PIN and transfer policy"""
    receipt = system.transfer_engine.admin_adjust_balance(
        user_id=request.user_id,
        account_number=request.account_number,
        adjustment_type=request.adjustment_type,
        amount=request.amount,
        description=request.description,
        admin_id=admin.user_id,
    )
    return {
        "success": True,
        "data": {
            "transaction_id": receipt.transaction_id,
            "reference_id": receipt.reference_id,
            "new_balance": str(receipt.new_balance),
            "currency": receipt.currency.code,
        }
    }


def _transition_response(result):
    return {
        "success": True,
        "message": (f"Status updated to {result.new_status.value}" if result.changed
                    else f"Transaction already {result.new_status.value}"),
        "data": {
            "transaction_id": result.transaction_id,
            "reference_id": result.reference_id,
            "previous_status": result.previous_status.value,
            "new_status": result.new_status.value,
            "changed": result.changed,
            "credit_transaction_id": result.credit_transaction_id,
        }
    }


@router.put("/transactions/{transaction_id}/status")
def set_transaction_status(
    transaction_id: str,
    request: TransactionStatusRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    result = system.status_engine.set_transaction_status(transaction_id, request.status, admin.user_id)
    return _transition_response(result)


@router.put("/transactions/{transaction_id}/complete")
def complete_transaction(
    transaction_id: str,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    result = system.status_engine.complete_transaction(transaction_id, admin.user_id)
    return _transition_response(result)


@router.get("/check-deposits")
def list_check_deposits(
    status_filter: Optional[str] = Query(None, alias="status"),
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    deposit_status = None
    if status_filter:
        try:
            deposit_status = CheckDepositStatus.parse(status_filter)
        except ValueError:
            raise ValidationError("Unknown deposit status", context={"field": "status"})
    deposits = system.deposit_manager.list_deposits(status=deposit_status)
    return {"success": True, "data": [deposit_view(d) for d in deposits]}


@router.get("/check-deposits/{deposit_id}")
def get_check_deposit(
    deposit_id: str,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    return {"success": True, "data": deposit_view(system.deposit_manager.get_deposit(deposit_id))}


@router.put("/check-deposits/{deposit_id}")
def review_check_deposit(
    deposit_id: str,
    request: DepositReviewRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    deposit = system.deposit_manager.review_deposit(deposit_id, request.status, request.notes, admin.user_id)
    return {"success": True, "message": f"Check deposit {deposit.status.value}", "data": deposit_view(deposit)}


@router.post("/cards", status_code=status.HTTP_201_CREATED)
def issue_card(
    request: IssueCardRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    issued = system.card_manager.issue_card(request.user_id, admin.user_id)
    return {
        "success": True,
        "message": "Card issued",
        "data": {
            "user_id": issued.card.user_id,
            "card_holder_name": issued.card.card_holder_name,
            "card_number": issued.card.card_number,
            "expiry_date": issued.card.expiry_date,
            "cvv": issued.cvv,
            "status": issued.card.status.value,
        }
    }


@router.put("/cards/{user_id}/status")
def set_card_status(
    user_id: str,
    request: CardFreezeRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    card = system.card_manager.set_card_frozen(user_id, request.is_frozen, admin.user_id)
    return {"success": True, "message": f"Card status updated to {card.status.value}", "data": card.client_view()}


@router.get("/reconciliation")
def reconcile(
    user_id: Optional[str] = None,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    report = system.reconciler.reconcile(user_id=user_id, actor_id=admin.user_id)
    return {"success": True, "data": report.to_dict()}


@router.post("/outbox/retry")
def retry_outbox(
    request: OutboxRetryRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Re-run failed post-commit tasks"""
    return {"success": True, "data": system.relay.retry_failed(request.max_attempts)}


@router.post("/outbox/purge")
def purge_outbox(
    request: OutboxPurgeRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Delete sent post-commit tasks past the retention window"""
    return {"success": True, "data": {"purged": system.purge_outbox(request.older_than_hours)}}
