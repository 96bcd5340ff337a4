"""
Pydantic schemas for API requests and response views
"""

from datetime import datetime
from typing import Dict, List, Optional, Any, Union
from pydantic import BaseModel, Field

from ..accounts import Account
from ..users import User
from ..transactions import Transaction
from ..check_deposits import CheckDeposit


AmountField = Union[str, int, float]


# User schemas
class RegisterUserRequest(BaseModel):
    username: str
    email: str
    password: str
    pin: str = Field(..., description="4 digit transfer PIN")
    full_name: str
    currency: str = Field("USD", description="Currency code (USD, EUR, GBP, AUD, CAD)")
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    occupation: Optional[str] = None
    profile_picture_ref: Optional[str] = None


class CurrencyChangeRequest(BaseModel):
    currency: str


class UserStatusRequest(BaseModel):
    status: str
    reason: str


class AdminMessageRequest(BaseModel):
    is_active: bool
    content: str = ""


class PinChangeRequest(BaseModel):
    pin: str


class GenerateHistoryRequest(BaseModel):
    count: int = Field(..., description="Number of entries (1-500)")
    min_amount: AmountField
    max_amount: AmountField
    start_date: datetime
    end_date: datetime
    description_pattern: str = "Transaction"
    kind: str = Field("mixed", description="credit, debit or mixed")


# Money movement schemas
class TransferRequest(BaseModel):
    source_account_number: str
    amount: AmountField
    transfer_type: str
    pin: str
    destination_account_number: Optional[str] = None
    destination_name: Optional[str] = None
    destination_bank: Optional[str] = None


class AdminFundsRequest(BaseModel):
    user_id: str
    account_number: str
    adjustment_type: str = Field(..., description="credit or debit")
    amount: AmountField
    description: Optional[str] = None


class TransactionStatusRequest(BaseModel):
    status: str


class CheckDepositRequest(BaseModel):
    amount: AmountField
    currency: str
    destination_account_number: str
    image_front_ref: str
    image_back_ref: str


class DepositReviewRequest(BaseModel):
    status: str = Field(..., description="Approved or Declined")
    notes: Optional[str] = None


# Card schemas
class IssueCardRequest(BaseModel):
    user_id: str


class CardFreezeRequest(BaseModel):
    is_frozen: bool


class OutboxPurgeRequest(BaseModel):
    older_than_hours: Optional[int] = Field(None, ge=0, description="Defaults to the configured retention")


class OutboxRetryRequest(BaseModel):
    max_attempts: Optional[int] = None


# Response views
def account_view(account: Account) -> Dict[str, Any]:
    return {
        "account_number": account.account_number,
        "account_type": account.account_type.value,
        "currency": account.currency.code,
        "balance": str(account.balance),
        "domestic_routing": account.domestic_routing,
        "domestic_label": account.domestic_label,
        "iban": account.iban,
        "swift": account.swift,
        "opened_at": account.opened_at.isoformat(),
    }


def user_view(user: User) -> Dict[str, Any]:
    """Public user fields (never hashes or salts)"""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "full_name": user.full_name,
        "currency": user.currency.code,
        "status": user.status.value,
        "status_reason": user.status_reason,
        "role": user.role.value,
        "date_of_birth": user.date_of_birth,
        "gender": user.gender,
        "address": user.address,
        "occupation": user.occupation,
        "profile_picture_ref": user.profile_picture_ref,
        "accounts": [account_view(a) for a in user.accounts],
        "transfer_message": {
            "is_active": user.transfer_message.is_active,
            "content": user.transfer_message.content,
        },
        "announcement_message": {
            "is_active": user.announcement_message.is_active,
            "content": user.announcement_message.content,
        },
        "created_at": user.created_at.isoformat(),
    }


def transaction_view(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "reference_id": transaction.reference_id,
        "user_id": transaction.user_id,
        "account_number": transaction.account_number,
        "account_type": transaction.account_type.value,
        "amount": str(transaction.amount),
        "currency": transaction.currency.code,
        "description": transaction.description,
        "status": transaction.status.value,
        "category": transaction.category.value,
        "value_date": transaction.value_date.isoformat(),
        "is_internal": transaction.is_internal,
        "transfer_type": transaction.transfer_type,
        "destination_account_number": transaction.destination_account_number,
        "destination_name": transaction.destination_name,
        "destination_bank": transaction.destination_bank,
        "related_reference_id": transaction.related_reference_id,
    }


def deposit_view(deposit: CheckDeposit) -> Dict[str, Any]:
    return {
        "deposit_id": deposit.id,
        "user_id": deposit.user_id,
        "username": deposit.username,
        "amount": str(deposit.amount),
        "currency": deposit.currency.code,
        "destination_account_number": deposit.destination_account_number,
        "image_front_ref": deposit.image_front_ref,
        "image_back_ref": deposit.image_back_ref,
        "status": deposit.status.value,
        "review_notes": deposit.review_notes,
        "credited_account_number": deposit.credited_account_number,
        "created_at": deposit.created_at.isoformat(),
    }


def transaction_list(transactions: List[Transaction]) -> List[Dict[str, Any]]:
    return [transaction_view(t) for t in transactions]
