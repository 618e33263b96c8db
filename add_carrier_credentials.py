#!/usr/bin/env python3
"""
Store a carrier API key (encrypted) in carrier_credentials.
With a Delhivery key stored, reconciliation uses the token API instead of page scraping.

Usage: python add_carrier_credentials.py DELHIVERY <api-key>
"""

import sys
from app.database import SessionLocal, Base, engine
from app.models import CarrierCode
from app.services.credentials import save_carrier_credentials, get_carrier_credentials


def add_carrier_credentials(carrier: str, api_key: str) -> bool:
    try:
        code = CarrierCode(carrier.upper())
    except ValueError:
        print(f"❌ Unknown carrier {carrier!r}. Known: {', '.join(c.value for c in CarrierCode)}")
        return False

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        save_carrier_credentials(db, code, {"apiKey": api_key.strip()})
        db.commit()

        stored = get_carrier_credentials(db, code)
        if stored and stored.get("apiKey"):
            key = stored["apiKey"]
            print(f"✅ Credentials stored for {code.value}: {'*' * 20}{key[-4:] if len(key) > 4 else '****'}")
            return True
        print("❌ ERROR: Failed to verify credentials!")
        return False
    except Exception as e:
        print(f"❌ ERROR: {e}")
        db.rollback()
        return False
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(2)
    if not add_carrier_credentials(sys.argv[1], sys.argv[2]):
        sys.exit(1)
    print("🎉 Done. The next reconciliation run picks up the new key.")
