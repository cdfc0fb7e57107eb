from fastapi import APIRouter, Depends, Query

from pawdia.core.pagination import paginate
from pawdia.deps import get_current_account
from pawdia.models.account import Account
from pawdia.services import ledger

router = APIRouter()


@router.get("/balance")
async def credits_balance(account: Account = Depends(get_current_account)):
    """Return current credit balance."""
    balance = await ledger.get_balance(account.id)
    return {"balance": balance}


@router.get("/ledger")
async def credits_ledger(
    account: Account = Depends(get_current_account),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current account (newest first)."""
    limit, offset = paginate(limit, offset)
    entries = await ledger.list_entries(account.id, limit=limit, offset=offset)
    return {"entries": [ledger.entry_to_dict(e) for e in entries], "limit": limit, "offset": offset}
