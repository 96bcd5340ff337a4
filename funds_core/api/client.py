"""
Client (account holder) endpoints
"""

from fastapi import APIRouter, Depends, status

from ..system import BankingSystem
from ..transfers import get_transfer_types
from .dependencies import CallerIdentity, get_banking_system, get_current_identity
from .schemas import (
    TransferRequest, CheckDepositRequest, CardFreezeRequest,
    user_view, transaction_list, deposit_view
)


router = APIRouter()


@router.get("/profile")
def get_profile(
    identity: CallerIdentity = Depends(get_current_identity),
    system: BankingSystem = Depends(get_banking_system)
):
    user = system.user_registry.get_user(identity.user_id)
    profile = user_view(user)
    # Announcements are shown only while active
    if not user.announcement_message.is_active:
        profile["announcement_message"] = None
    return {"success": True, "data": profile}


@router.get("/transactions")
def list_transactions(
    identity: CallerIdentity = Depends(get_current_identity),
    system: BankingSystem = Depends(get_banking_system)
):
    return {"success": True, "data": transaction_list(system.ledger.list_for_user(identity.user_id))}


@router.get("/transfer-types")
def list_transfer_types(
    identity: CallerIdentity = Depends(get_current_identity),
    system: BankingSystem = Depends(get_banking_system)
):
    user = system.user_registry.get_user(identity.user_id)
    return {
        "success": True,
        "data": {"currency": user.currency.code, "transfer_types": get_transfer_types(user.currency)}
    }


@router.post("/transfers", status_code=status.HTTP_201_CREATED)
def submit_transfer(
    request: TransferRequest,
    identity: CallerIdentity = Depends(get_current_identity),
    system: BankingSystem = Depends(get_banking_system)
):
    """Debit the source account; the transfer stays Processing until an admin acts"""
    receipt = system.transfer_engine.submit_transfer(
        user_id=identity.user_id,
        source_account_number=request.source_account_number,
        amount=request.amount,
        transfer_type=request.transfer_type,
        pin=request.pin,
        destination_account_number=request.destination_account_number,
        destination_name=request.destination_name,
        destination_bank=request.destination_bank,
    )
    return {
        "success": True,
        "message": "Transfer submitted and is processing",
        "data": {
            "transaction_id": receipt.transaction_id,
            "reference_id": receipt.reference_id,
            "new_balance": str(receipt.new_balance),
            "currency": receipt.currency.code,
            "status": receipt.status.value,
        }
    }


@router.post("/check-deposits", status_code=status.HTTP_201_CREATED)
def submit_check_deposit(
    request: CheckDepositRequest,
    identity: CallerIdentity = Depends(get_current_identity),
    system: BankingSystem = Depends(get_banking_system)
):
    deposit = system.deposit_manager.submit_deposit(
        user_id=identity.user_id,
        amount=request.amount,
        currency_code=request.currency,
        destination_account_number=request.destination_account_number,
        image_front_ref=request.image_front_ref,
        image_back_ref=request.image_back_ref,
    )
    return {"success": True, "message": "Check deposit submitted for review", "data": deposit_view(deposit)}


@router.get("/card")
def get_card(
    identity: CallerIdentity = Depends(get_current_identity),
    system: BankingSystem = Depends(get_banking_system)
):
    return {"success": True, "data": system.card_manager.get_card(identity.user_id)}


@router.put("/card/freeze")
def freeze_card(
    request: CardFreezeRequest,
    identity: CallerIdentity = Depends(get_current_identity),
    system: BankingSystem = Depends(get_banking_system)
):
    card = system.card_manager.set_card_frozen(identity.user_id, request.is_frozen, identity.user_id)
    return {"success": True, "data": card.client_view()}
