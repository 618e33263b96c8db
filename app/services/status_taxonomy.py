"""
Canonical tracking status taxonomy.

Carriers describe the same lifecycle with free-form text ("Out For Delivery",
"OFD", "Dispatched from hub", ...). Every piece of carrier text is reduced to
one value of OrderTrackingStatus or ReturnTrackingStatus by an ordered rule
list: first match wins, no match yields the default.
"""
import re
from typing import Any, Optional

from app.models import OrderTrackingStatus, ReturnTrackingStatus, OwnerType

# Order of rules is the priority. RTO / undelivered / cancellation outrank
# "delivered" so that "RTO Delivered", "Undelivered" and
# "cancelled after delivery attempt" never read as a successful delivery.
ORDER_STATUS_RULES = [
    (re.compile(r"\brto\b.*\bdeliver|return(ed)? to origin.*deliver|rto[-_ ]?del"), OrderTrackingStatus.RTO_DELIVERED),
    (re.compile(r"\brto\b|return to origin|returned to (seller|shipper|origin)"), OrderTrackingStatus.RTO),
    (re.compile(r"undeliver|not delivered|delivery failed|failed delivery|attempt failed"), OrderTrackingStatus.UNDELIVERED),
    (re.compile(r"cancel"), OrderTrackingStatus.EXCEPTION),
    (re.compile(r"out for delivery|\bofd\b|out-for-delivery"), OrderTrackingStatus.OUT_FOR_DELIVERY),
    (re.compile(r"deliver"), OrderTrackingStatus.DELIVERED),
    (re.compile(r"transit|received at|arrived|\bhub\b|facility|reached|connected|forwarded"), OrderTrackingStatus.IN_TRANSIT),
    (re.compile(r"dispatch|shipped|manifested"), OrderTrackingStatus.DISPATCHED),
    (re.compile(r"picked|pickup done|pick up done"), OrderTrackingStatus.PICKED_UP),
    (re.compile(r"exception|fail|damage|lost|held|hold"), OrderTrackingStatus.EXCEPTION),
    (re.compile(r"pending|not picked|pickup scheduled|created|booked"), OrderTrackingStatus.PENDING),
]

RETURN_STATUS_RULES = [
    (re.compile(r"refund"), ReturnTrackingStatus.REFUNDED),
    (re.compile(r"replace"), ReturnTrackingStatus.REPLACED),
    (re.compile(r"reject|cancel"), ReturnTrackingStatus.REJECTED),
    (re.compile(r"quality|\bqc\b|inspection"), ReturnTrackingStatus.QUALITY_CHECK),
    (re.compile(r"(received|delivered|arrived) at (the )?warehouse|\bdelivered\b"), ReturnTrackingStatus.DELIVERED_TO_WAREHOUSE),
    (re.compile(r"transit|picked|dispatch|shipped|\bhub\b|facility|received at|out for delivery"), ReturnTrackingStatus.IN_TRANSIT),
    (re.compile(r"pickup|pick up|scheduled"), ReturnTrackingStatus.PICKUP_SCHEDULED),
    (re.compile(r"initiat|created|requested"), ReturnTrackingStatus.INITIATED),
]


def _normalize(text: Any) -> str:
    if text is None:
        return ""
    return str(text).strip().lower()


def classify_order_status(text: Optional[str]) -> OrderTrackingStatus:
    """Map carrier text to the order taxonomy. Never raises; unknown -> pending."""
    normalized = _normalize(text)
    if not normalized:
        return OrderTrackingStatus.PENDING
    for pattern, status in ORDER_STATUS_RULES:
        if pattern.search(normalized):
            return status
    return OrderTrackingStatus.PENDING


def classify_return_status(text: Optional[str]) -> ReturnTrackingStatus:
    """Map carrier text to the return taxonomy. Never raises; unknown -> initiated."""
    normalized = _normalize(text)
    if not normalized:
        return ReturnTrackingStatus.INITIATED
    for pattern, status in RETURN_STATUS_RULES:
        if pattern.search(normalized):
            return status
    return ReturnTrackingStatus.INITIATED


def classify_status(text: Optional[str], owner_type: OwnerType):
    if owner_type == OwnerType.RETURN:
        return classify_return_status(text)
    return classify_order_status(text)


def default_status(owner_type: OwnerType):
    if owner_type == OwnerType.RETURN:
        return ReturnTrackingStatus.INITIATED
    return OrderTrackingStatus.PENDING


def is_delivered(status) -> bool:
    return status in (OrderTrackingStatus.DELIVERED, ReturnTrackingStatus.DELIVERED_TO_WAREHOUSE)


def derive_local_order_status(business_status: Optional[str], awb: Optional[str]) -> OrderTrackingStatus:
    """
    Status from fields already on the order (no network).
    Delivered wins; a live, non-cancelled order with an AWB is in transit.
    """
    normalized = _normalize(business_status)
    if "delivered" in normalized and not normalized.startswith("un"):
        return OrderTrackingStatus.DELIVERED
    if "cancel" not in normalized and (awb or "").strip():
        return OrderTrackingStatus.IN_TRANSIT
    return classify_order_status(normalized)


def derive_local_return_status(
    business_status: Optional[str],
    tracking_number: Optional[str],
    raw_row: Optional[dict] = None,
) -> ReturnTrackingStatus:
    """Status from fields already on the return (no network)."""
    normalized = _normalize(business_status)
    if "refund" in normalized:
        return ReturnTrackingStatus.REFUNDED
    three_pl = _normalize((raw_row or {}).get("3PL Delivery Status"))
    if "deliver" in three_pl:
        return ReturnTrackingStatus.DELIVERED_TO_WAREHOUSE
    if (tracking_number or "").strip():
        return ReturnTrackingStatus.IN_TRANSIT
    return ReturnTrackingStatus.INITIATED
