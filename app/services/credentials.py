"""
Credential encryption/decryption and carrier credential access.
"""
import json
import base64
import logging
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from app.config import settings
from app.models import CarrierCode, CarrierCredential

logger = logging.getLogger(__name__)


def get_encryption_key() -> bytes:
    """Derive the Fernet key from ENCRYPTION_KEY"""
    key_str = settings.ENCRYPTION_KEY
    # Fernet needs 32 url-safe base64-encoded bytes
    key_bytes = key_str.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)

def encrypt_token(token: str) -> str:
    """Encrypt a token"""
    f = Fernet(get_encryption_key())
    return f.encrypt(token.encode()).decode()

def decrypt_token(encrypted: str) -> str:
    """Decrypt a token"""
    f = Fernet(get_encryption_key())
    return f.decrypt(encrypted.encode()).decode()


def save_carrier_credentials(db: Session, carrier_code: CarrierCode, values: dict[str, Any]) -> CarrierCredential:
    """Encrypt and upsert credentials for one carrier. Caller commits."""
    cred = db.query(CarrierCredential).filter(CarrierCredential.carrier_code == carrier_code).first()
    if not cred:
        cred = CarrierCredential(carrier_code=carrier_code)
        db.add(cred)
    cred.value_encrypted = encrypt_token(json.dumps(values))
    return cred


def get_carrier_credentials(db: Session, carrier_code: CarrierCode) -> dict[str, Any] | None:
    """Return decrypted credentials dict for the carrier, or None."""
    cred = db.query(CarrierCredential).filter(CarrierCredential.carrier_code == carrier_code).first()
    if not cred or not cred.value_encrypted:
        return None
    try:
        dec = decrypt_token(cred.value_encrypted)
    except InvalidToken:
        logger.warning("Stored credentials for %s cannot be decrypted with current ENCRYPTION_KEY", carrier_code.value)
        return None
    if dec.strip().startswith("{"):
        return json.loads(dec)
    return {"apiKey": dec}


def get_carrier_api_key(db: Optional[Session], carrier_code: CarrierCode) -> str:
    """API key from stored credentials first, then environment."""
    if db is not None:
        creds = get_carrier_credentials(db, carrier_code) or {}
        key = (creds.get("apiKey") or creds.get("api_key") or "").strip()
        if key:
            return key
    if carrier_code == CarrierCode.DELHIVERY:
        return (settings.DELHIVERY_API_KEY or "").strip()
    return ""
