"""
Validation Router — on-demand reconciliation of local vs. Amazon Ads counts.
"""

from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from adops.database import get_db
from adops.mcp_client import MCPError
from adops.models import Credential
from adops.services.account_service import AuthenticationError
from adops.services.validation_service import ValidationResult, run_validation
from adops.utils import safe_error_detail

router = APIRouter()


@router.post("/accounts/{account_id}", response_model=ValidationResult)
async def validate_account(account_id: UUID, db: AsyncSession = Depends(get_db)):
    if await db.get(Credential, account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")
    try:
        return await run_validation(db, account_id)
    except AuthenticationError as e:
        # keep the expired status set during token refresh
        await db.commit()
        raise HTTPException(status_code=401, detail=str(e))
    except MCPError as e:
        raise HTTPException(status_code=502, detail=safe_error_detail(e, "Failed to communicate with Amazon Ads API."))
