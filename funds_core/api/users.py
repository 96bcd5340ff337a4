"""
User registry endpoints
"""

from fastapi import APIRouter, Depends, status

from ..system import BankingSystem
from ..users import UserProfile
from .dependencies import CallerIdentity, get_banking_system, require_admin
from .schemas import (
    RegisterUserRequest, CurrencyChangeRequest, UserStatusRequest, AdminMessageRequest,
    PinChangeRequest, GenerateHistoryRequest, account_view, user_view, transaction_list
)


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def register_user(
    request: RegisterUserRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Public registration: creates the user with Checking and Savings accounts"""
    result = system.user_registry.register_user(UserProfile(
        username=request.username,
        email=request.email,
        password=request.password,
        pin=request.pin,
        full_name=request.full_name,
        currency=request.currency,
        date_of_birth=request.date_of_birth,
        gender=request.gender,
        address=request.address,
        occupation=request.occupation,
        profile_picture_ref=request.profile_picture_ref,
    ))
    return {
        "success": True,
        "message": "Registration successful",
        "data": {
            "user_id": result.user_id,
            "accounts": [account_view(a) for a in result.accounts],
        }
    }


@router.get("")
def list_users(
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    users = system.user_registry.list_users()
    return {"success": True, "data": [user_view(u) for u in users]}


@router.get("/{user_id}")
def get_user(
    user_id: str,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    return {"success": True, "data": user_view(system.user_registry.get_user(user_id))}


@router.delete("/{user_id}")
def delete_user(
    user_id: str,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    system.user_registry.delete_user(user_id, admin.user_id)
    return {"success": True, "message": "User deleted"}


@router.put("/{user_id}/currency")
def change_currency(
    user_id: str,
    request: CurrencyChangeRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Switch the user's currency; accounts are regenerated in the new format"""
    user = system.user_registry.change_currency(user_id, request.currency, admin.user_id)
    return {"success": True, "message": f"Currency changed to {user.currency.code}", "data": user_view(user)}


@router.put("/{user_id}/status")
def set_user_status(
    user_id: str,
    request: UserStatusRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    user = system.user_registry.set_status(user_id, request.status, request.reason, admin.user_id)
    return {"success": True, "message": f"Status updated to {user.status.value}", "data": user_view(user)}


@router.put("/{user_id}/transfer-message")
def set_transfer_message(
    user_id: str,
    request: AdminMessageRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Activate or clear the policy message that blocks the user's transfers"""
    user = system.user_registry.set_transfer_message(user_id, request.is_active, request.content, admin.user_id)
    return {"success": True, "data": user_view(user)["transfer_message"]}


@router.put("/{user_id}/announcement")
def set_announcement(
    user_id: str,
    request: AdminMessageRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    user = system.user_registry.set_announcement(user_id, request.is_active, request.content, admin.user_id)
    return {"success": True, "data": user_view(user)["announcement_message"]}


@router.put("/{user_id}/pin")
def change_pin(
    user_id: str,
    request: PinChangeRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    system.user_registry.change_pin(user_id, request.pin, admin.user_id)
    return {"success": True, "message": "Transfer PIN updated"}


@router.get("/{user_id}/transactions")
def list_user_transactions(
    user_id: str,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    system.user_registry.get_user(user_id)
    return {"success": True, "data": transaction_list(system.ledger.list_for_user(user_id))}


@router.post("/{user_id}/transactions/generate", status_code=status.HTTP_201_CREATED)
def generate_history(
    user_id: str,
    request: GenerateHistoryRequest,
    admin: CallerIdentity = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Seed demo history on the user's Checking account"""
    result = system.transfer_engine.generate_history(
        user_id=user_id,
        count=request.count,
        min_amount=request.min_amount,
        max_amount=request.max_amount,
        start_date=request.start_date,
        end_date=request.end_date,
        description_pattern=request.description_pattern,
        kind=request.kind,
        admin_id=admin.user_id,
    )
    return {
        "success": True,
        "message": f"{result.created} transactions generated",
        "data": {
            "created": result.created,
            "net_change": str(result.net_change),
            "new_balance": str(result.new_balance),
            "currency": result.currency.code,
        }
    }
