"""
Finance accounts and transactions - creation is gated by plan limits.

POST /api/accounts, GET /api/accounts
POST /api/transactions, GET /api/transactions
"""
from fastapi import APIRouter, Request, status

from middleware import subscriber_route_guard
from models import AccountCreate, FinanceTransactionCreate
from services import ledger_service

router = APIRouter(prefix="/api", tags=["ledger"])


@router.post("/accounts", status_code=status.HTTP_201_CREATED)
async def create_account(body: AccountCreate, request: Request):
    user = await subscriber_route_guard(request)
    return await ledger_service.create_account(user["subscriber_id"], body)


@router.get("/accounts")
async def list_accounts(request: Request):
    user = await subscriber_route_guard(request)
    return {"accounts": await ledger_service.list_accounts(user["subscriber_id"])}


@router.post("/transactions", status_code=status.HTTP_201_CREATED)
async def create_transaction(body: FinanceTransactionCreate, request: Request):
    user = await subscriber_route_guard(request)
    return await ledger_service.create_transaction(user["subscriber_id"], body)


@router.get("/transactions")
async def list_transactions(request: Request, limit: int = 100):
    user = await subscriber_route_guard(request)
    return {"transactions": await ledger_service.list_transactions(user["subscriber_id"], limit=min(limit, 500))}
