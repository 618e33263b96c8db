"""
Public tracking page scraping.

Used for carriers without an API key. Extraction is an explicit chain:
try_selectors -> try_regex -> not-found/unknown. "Not found" wording only
decides the result when no status was extracted, or when the extracted
status is itself that wording. Such pages never raise here; the fetch
executor reports a status-less payload as a not-found outcome. Only
transport failures and 5xx responses raise.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from bs4 import BeautifulSoup

from app.config import settings
from app.models import CarrierCode, TrackingSource
from app.services.carrier_adapter import CarrierAdapter, NetworkError, RawStatusPayload
from app.services.http_client import get_with_retry

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
    ),
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Cache-Control": "max-age=0",
}

NOT_FOUND_INDICATORS = [
    "not found",
    "invalid",
    "no data",
    "tracking not available",
    "awb not found",
    "package not found",
    "no tracking information",
]

STATUS_SELECTORS = [
    ".status", ".package-status", ".tracking-status", ".current-status",
    '[class*="status"]', '[id*="status"]', ".status-text", ".status-label",
    ".delivery-status", ".shipment-status",
]
LOCATION_SELECTORS = [
    ".location", ".current-location", ".package-location", ".tracking-location",
    '[class*="location"]', '[id*="location"]', ".location-text", ".location-label",
    ".delivery-location", ".shipment-location",
]
TIME_SELECTORS = [
    ".timestamp", ".last-updated", ".update-time", ".tracking-time",
    '[class*="time"]', '[id*="time"]', ".time-text", ".time-label",
    ".delivery-time", ".shipment-time",
]
TIMELINE_SELECTORS = [
    ".timeline", ".tracking-timeline", ".shipment-timeline", ".tracking-history",
    ".shipment-history", '[class*="timeline"]', '[class*="history"]',
]

STATUS_LABEL_RE = re.compile(r"(?:current status|status)[:\s]+([^<\n]+)", re.IGNORECASE)
LOCATION_LABEL_RE = re.compile(r"(?:current location|location)[:\s]+([^<\n]+)", re.IGNORECASE)

# Most specific phrase first
KNOWN_PHRASES = [
    "rto delivered",
    "out for delivery",
    "undelivered",
    "delivered",
    "returned to origin",
    "in transit",
    "dispatched",
    "picked up",
    "shipped",
    "cancelled",
]

MAX_FIELD_LENGTH = 200


@dataclass
class ScrapeProfile:
    code: CarrierCode
    url_template: str
    concurrency_limit: Optional[int] = None
    batch_size: Optional[int] = None
    status_selectors: List[str] = field(default_factory=lambda: list(STATUS_SELECTORS))
    location_selectors: List[str] = field(default_factory=lambda: list(LOCATION_SELECTORS))
    time_selectors: List[str] = field(default_factory=lambda: list(TIME_SELECTORS))


SCRAPE_PROFILES = {
    CarrierCode.DELHIVERY: ScrapeProfile(CarrierCode.DELHIVERY, "https://www.delhivery.com/track-v2/package/{awb}", batch_size=50),
    CarrierCode.SHADOWFAX: ScrapeProfile(CarrierCode.SHADOWFAX, "https://shadowfax.in/track/{awb}"),
    CarrierCode.XPRESSBEES: ScrapeProfile(CarrierCode.XPRESSBEES, "https://www.xpressbees.com/track?isawb=Yes&track={awb}"),
    CarrierCode.BLUEDART: ScrapeProfile(CarrierCode.BLUEDART, "https://www.bluedart.com/track?track={awb}"),
    CarrierCode.DTDC: ScrapeProfile(CarrierCode.DTDC, "https://www.dtdc.in/tracking.aspx?strCnno={awb}"),
    CarrierCode.ECOM: ScrapeProfile(CarrierCode.ECOM, "https://ecomexpress.in/tracking/?awb={awb}"),
    CarrierCode.FEDEX: ScrapeProfile(CarrierCode.FEDEX, "https://www.fedex.com/fedextrack/?trknbr={awb}", concurrency_limit=3, batch_size=10),
}


def _clean(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    cleaned = " ".join(text.split())
    return cleaned[:MAX_FIELD_LENGTH] or None


def _first_text(soup: BeautifulSoup, selectors: List[str]) -> Optional[str]:
    for selector in selectors:
        element = soup.select_one(selector)
        if element is not None:
            text = _clean(element.get_text(" "))
            if text:
                return text
    return None


def _visible_text(soup: BeautifulSoup) -> str:
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return soup.get_text(" ")


def is_not_found_page(page_text: str) -> bool:
    lowered = page_text.lower()
    return any(indicator in lowered for indicator in NOT_FOUND_INDICATORS)


def try_selectors(soup: BeautifulSoup, profile: ScrapeProfile) -> Optional[dict]:
    status = _first_text(soup, profile.status_selectors)
    if not status:
        return None
    return {
        "status_text": status,
        "location": _first_text(soup, profile.location_selectors),
        "status_time": _first_text(soup, profile.time_selectors),
    }


def try_regex(html: str, page_text: str) -> Optional[dict]:
    match = STATUS_LABEL_RE.search(html)
    if match and _clean(match.group(1)):
        location_match = LOCATION_LABEL_RE.search(html)
        return {
            "status_text": _clean(match.group(1)),
            "location": _clean(location_match.group(1)) if location_match else None,
            "status_time": None,
        }
    lowered = page_text.lower()
    for phrase in KNOWN_PHRASES:
        if phrase in lowered:
            return {"status_text": phrase, "location": None, "status_time": None}
    return None


def extract_timeline(soup: BeautifulSoup) -> list:
    history = []
    for selector in TIMELINE_SELECTORS:
        timeline = soup.select_one(selector)
        if timeline is None:
            continue
        for item in timeline.select(".timeline-item, .history-item, .tracking-item, li"):
            status = _first_text(item, [".status", ".item-status"]) or _clean(item.get_text(" "))
            if not status:
                continue
            history.append({
                "timestamp": _first_text(item, [".time", ".item-time"]),
                "status": status,
                "location": _first_text(item, [".location", ".item-location"]),
                "remarks": None,
            })
        if history:
            break
    return history


def parse_tracking_page(html: str, profile: ScrapeProfile) -> RawStatusPayload:
    """Run the extraction chain over one page. Never raises on content."""
    soup = BeautifulSoup(html, "html.parser")
    page_text = _visible_text(soup)
    payload = RawStatusPayload(
        source=TrackingSource.HTML_SCRAPE,
        markup=html,
        byte_length=len(html.encode("utf-8")),
    )
    found = try_selectors(soup, profile)
    extracted_by = "selectors"
    if found is None:
        found = try_regex(html, page_text)
        extracted_by = "regex"

    checked_text = page_text if found is None else found["status_text"]
    if is_not_found_page(checked_text):
        payload.extracted_by = "not-found"
        payload.remarks = "Tracking information not available on carrier page"
        return payload
    if found is None:
        payload.extracted_by = "unknown"
        payload.remarks = "No tracking status found on carrier page"
        return payload

    payload.status_text = found["status_text"]
    payload.location = found["location"]
    payload.status_time = found["status_time"]
    payload.history = extract_timeline(soup)
    payload.extracted_by = extracted_by
    return payload


class HtmlScrapeAdapter(CarrierAdapter):
    strategy = "html-scrape"

    def __init__(self, profile: ScrapeProfile, timeout: Optional[float] = None, max_retries: Optional[int] = None):
        self.profile = profile
        self.code = profile.code
        self.concurrency_limit = profile.concurrency_limit or settings.SCRAPE_CONCURRENCY
        self.batch_size = profile.batch_size or settings.SCRAPE_BATCH_SIZE
        self.timeout = timeout or settings.TRACKING_HTTP_TIMEOUT
        self.max_retries = settings.TRACKING_HTTP_RETRIES if max_retries is None else max_retries

    def tracking_url(self, shipment_id: str) -> str:
        return self.profile.url_template.format(awb=shipment_id)

    async def fetch(self, shipment_id: str) -> RawStatusPayload:
        url = self.tracking_url(shipment_id)
        try:
            resp = await get_with_retry(url, headers=BROWSER_HEADERS, timeout=self.timeout, max_retries=self.max_retries)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{self.code.value} page timeout: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"{self.code.value} page transport error: {e}") from e

        if resp.status_code >= 500:
            raise NetworkError(f"HTTP {resp.status_code} from {self.code.value} tracking page", snippet=resp.text)
        if resp.status_code >= 400:
            logger.info("%s tracking page HTTP %s for awb=%s", self.code.value, resp.status_code, shipment_id)
            return RawStatusPayload(
                source=TrackingSource.HTML_SCRAPE,
                markup=resp.text,
                byte_length=len(resp.content),
                remarks=f"HTTP {resp.status_code}",
                extracted_by="unknown",
            )
        return parse_tracking_page(resp.text, self.profile)


def build_scrape_adapters() -> dict:
    return {code: HtmlScrapeAdapter(profile) for code, profile in SCRAPE_PROFILES.items()}
