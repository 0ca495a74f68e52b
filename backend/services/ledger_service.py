"""Finance accounts and transactions - only the parts gated by plan limits.

Every creation goes through entitlement_service.guarded_create; listing is a
plain read.
"""
import uuid
from typing import Any, Dict, List

from database import database
from models import AccountCreate, FinanceTransactionCreate, Resource
from services.billing_errors import NotFoundError
from services.entitlement_service import entitlement_service
from utils.money import money_str


async def create_account(subscriber_id: int, data: AccountCreate) -> Dict[str, Any]:
    document = {
        "account_id": str(uuid.uuid4()),
        "name": data.name,
        "account_type": data.account_type,
        "balance": money_str(data.initial_balance),
        "currency": data.currency,
    }
    return await entitlement_service.guarded_create(subscriber_id, Resource.ACCOUNTS, document)


async def create_transaction(subscriber_id: int, data: FinanceTransactionCreate) -> Dict[str, Any]:
    db = database.get_db()
    account = await db.accounts.find_one(
        {"account_id": data.account_id, "subscriber_id": subscriber_id}, {"_id": 0, "account_id": 1}
    )
    if not account:
        raise NotFoundError(f"Account not found: {data.account_id}", error_code="ACCOUNT_NOT_FOUND")

    document = {
        "transaction_id": str(uuid.uuid4()),
        "account_id": data.account_id,
        "description": data.description,
        "amount": money_str(data.amount),
        "kind": data.kind,
        "category": data.category,
        "occurred_on": data.occurred_on,
    }
    return await entitlement_service.guarded_create(subscriber_id, Resource.TRANSACTIONS, document)


async def list_accounts(subscriber_id: int) -> List[Dict[str, Any]]:
    db = database.get_db()
    return await db.accounts.find({"subscriber_id": subscriber_id}, {"_id": 0}).sort("created_at", 1).to_list(length=500)


async def list_transactions(subscriber_id: int, limit: int = 100) -> List[Dict[str, Any]]:
    db = database.get_db()
    cursor = db.transactions.find({"subscriber_id": subscriber_id}, {"_id": 0}).sort("created_at", -1).limit(limit)
    return await cursor.to_list(length=limit)
