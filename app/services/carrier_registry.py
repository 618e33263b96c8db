"""
Carrier resolution: free-text carrier name on a record -> adapter.

Names come from uploaded reports ("Delhivery Surface", "XpressBees Logistics",
"Ecom Express", ...). Matching is case-insensitive substring containment
against an ordered alias table; an unmatched name stays unresolved.
"""
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.models import CarrierCode
from app.services.carrier_adapter import CarrierAdapter
from app.services.credentials import get_carrier_api_key
from app.services.html_scrape_adapter import build_scrape_adapters
from app.services.token_api_adapter import DelhiveryApiAdapter

logger = logging.getLogger(__name__)

# "ECOM EXPRESS", "BLUEDART EXPRESS" and "FEDEX EXPRESS" all contain "XPRESS",
# so every *EXPRESS alias must be checked before the XpressBees ones.
CARRIER_ALIASES: List[Tuple[str, CarrierCode]] = [
    ("DELHIVERY", CarrierCode.DELHIVERY),
    ("SHADOWFAX", CarrierCode.SHADOWFAX),
    ("SHADOW FAX", CarrierCode.SHADOWFAX),
    ("ECOM", CarrierCode.ECOM),
    ("BLUEDART", CarrierCode.BLUEDART),
    ("BLUE DART", CarrierCode.BLUEDART),
    ("FEDEX", CarrierCode.FEDEX),
    ("FED EX", CarrierCode.FEDEX),
    ("DTDC", CarrierCode.DTDC),
    ("XPRESSBEES", CarrierCode.XPRESSBEES),
    ("XPRESS BEES", CarrierCode.XPRESSBEES),
    ("XPRESS", CarrierCode.XPRESSBEES),
]


def resolve_code(carrier_text: Optional[str]) -> Optional[CarrierCode]:
    """Carrier code for a free-text name, or None when nothing matches."""
    if not carrier_text:
        return None
    upper = carrier_text.strip().upper()
    if not upper:
        return None
    for alias, code in CARRIER_ALIASES:
        if alias in upper:
            return code
    return None


class CarrierRegistry:
    def __init__(self, adapters: Dict[CarrierCode, CarrierAdapter]):
        self.adapters = dict(adapters)

    def resolve(self, carrier_text: Optional[str]) -> Optional[CarrierAdapter]:
        code = resolve_code(carrier_text)
        if code is None:
            return None
        return self.adapters.get(code)

    def get(self, code: CarrierCode) -> Optional[CarrierAdapter]:
        return self.adapters.get(code)

    def codes(self) -> Iterable[CarrierCode]:
        return self.adapters.keys()

    def describe(self) -> List[dict]:
        return [
            {
                "carrier": code.value,
                "strategy": adapter.strategy,
                "concurrencyLimit": adapter.concurrency_limit,
                "batchSize": adapter.batch_size,
            }
            for code, adapter in self.adapters.items()
        ]


def build_registry(db: Optional[Session] = None) -> CarrierRegistry:
    """
    Registry with one adapter per supported carrier.
    Delhivery uses the token API when a key is stored or configured, else the public page.
    """
    adapters: Dict[CarrierCode, CarrierAdapter] = build_scrape_adapters()
    api_key = get_carrier_api_key(db, CarrierCode.DELHIVERY)
    if api_key:
        adapters[CarrierCode.DELHIVERY] = DelhiveryApiAdapter(api_key=api_key)
    else:
        logger.info("Delhivery API key not set; using tracking page scrape")
    return CarrierRegistry(adapters)
