"""
Carriers Controller - carrier resolution, configured strategies and credentials
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.http.requests.schemas import CarrierCredentialRequest
from app.models import CarrierCode
from app.services.carrier_registry import build_registry, resolve_code
from app.services.credentials import save_carrier_credentials

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/resolve")
async def resolve_carrier(name: str = Query(..., min_length=1)):
    """Map a free-text carrier name to a supported carrier."""
    code = resolve_code(name)
    return {"name": name, "resolved": code is not None, "carrier": code.value if code else None}


@router.get("")
async def list_carriers(db: Session = Depends(get_db)):
    """Supported carriers with the strategy each one currently uses."""
    return build_registry(db).describe()


@router.put("/{carrier}/credentials")
async def set_carrier_credentials(
    carrier: str,
    body: CarrierCredentialRequest,
    db: Session = Depends(get_db),
):
    """Store an API key (encrypted) for a carrier; takes effect on the next run."""
    try:
        code = CarrierCode(carrier.upper())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown carrier: {carrier}")
    save_carrier_credentials(db, code, {"apiKey": body.apiKey.strip()})
    db.commit()
    logger.info("Stored API credentials for %s", code.value)
    return {"carrier": code.value, "configured": True}
