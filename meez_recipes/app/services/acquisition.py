"""Content acquisition: delegated page extraction, caption scraping and text preparation.

Raw web scraping happens in a separate extract service; this module only
talks to it (and to the caption scraper) over HTTP and classifies failures.
"""

import base64
import binascii
import ipaddress
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Optional, Tuple
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from meez_recipes.app.core.errors import ConfigurationError, FetchError
from meez_recipes.app.schemas.parse import CaptionError, CaptionResult, ExtractedContent, FetchedContent

logger = logging.getLogger(__name__)


def is_private_host(host: str) -> bool:
    """Check if a host is private/localhost."""
    hostname = host.split(":")[0]
    try:
        ip = ipaddress.ip_address(hostname)
        return ip.is_private or ip.is_loopback
    except ValueError:
        return hostname.lower() in {"localhost"}


class ContentFetcher(ABC):
    @abstractmethod
    async def fetch(self, url: str, request_id: str | None = None) -> FetchedContent:  # pragma: no cover - interface
        """Return clean recipe content for ``url`` or raise FetchError."""


class CaptionScraper(ABC):
    @abstractmethod
    async def scrape_caption(self, video_url: str, request_id: str | None = None) -> CaptionResult:  # pragma: no cover - interface
        """Return the caption of a short video; scraper failures come back in ``error``."""


class HttpContentFetcher(ContentFetcher):
    """Calls the content-extract service: ``POST {base}/extract`` with ``{"url": ...}``."""

    def __init__(self, base_url: str | None, timeout_seconds: float = 45.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = httpx.Timeout(timeout_seconds, connect=10.0)

    async def fetch(self, url: str, request_id: str | None = None) -> FetchedContent:
        if not self.base_url:
            raise ConfigurationError("CONTENT_EXTRACT_URL is not configured")
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise FetchError("Invalid URL", retryable=False)
        if is_private_host(parsed.hostname or ""):
            raise FetchError("URL points to a private or disallowed host", retryable=False)

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/extract", json={"url": url, "requestId": request_id})
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out fetching content: {exc}", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Network error: {exc}", retryable=True) from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise FetchError(
                f"Extract service returned status {resp.status_code}", retryable=True, status_code=resp.status_code
            )
        if resp.status_code >= 400:
            raise FetchError(
                f"Site could not be extracted (status {resp.status_code})",
                retryable=False,
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise FetchError("Extract service returned invalid JSON", retryable=True) from exc
        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise FetchError(f"Extract service error: {message}", retryable=False)

        try:
            content = ExtractedContent.model_validate(data.get("content") or {})
        except ValidationError as exc:
            raise FetchError(f"Extract service returned malformed content: {exc}", retryable=False) from exc
        if not content.source_url:
            content.source_url = url

        timings = dict(data.get("timings") or {})
        timings.setdefault("fetch", round((time.perf_counter() - start) * 1000, 1))
        logger.info(
            "[%s] Extracted content for %s via %s (fallback=%s)",
            request_id,
            url,
            data.get("fetchMethodUsed"),
            content.is_fallback_extraction,
        )
        return FetchedContent(content=content, fetch_method_used=data.get("fetchMethodUsed"), timings=timings)


class HttpCaptionScraper(CaptionScraper):
    """Calls the caption scraper: ``POST {base}/scrape-caption`` with ``{"videoUrl": ...}``."""

    def __init__(self, base_url: str | None, timeout_seconds: float = 45.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = httpx.Timeout(timeout_seconds, connect=10.0)

    async def scrape_caption(self, video_url: str, request_id: str | None = None) -> CaptionResult:
        if not self.base_url:
            raise ConfigurationError("CAPTION_SCRAPER_URL is not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/scrape-caption", json={"videoUrl": video_url})
            resp.raise_for_status()
            result = CaptionResult.model_validate(resp.json())
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            logger.error("[%s] Caption scraper request failed for %s: %s", request_id, video_url, exc)
            return CaptionResult(error=CaptionError(code="SCRAPER_REQUEST_FAILED", message=str(exc), severity="fatal"))

        logger.info(
            "[%s] Caption fetched (platform=%s, length=%s)",
            request_id,
            result.platform,
            len(result.caption or ""),
        )
        return result


RECIPE_KEYWORDS = (
    "recipe", "ingredients", "cook", "bake", "mix", "stir", "add", "cup", "tablespoon", "teaspoon",
    "minutes", "hour", "oven", "pan", "bowl", "salt", "pepper", "oil", "flour", "sugar",
    "onion", "garlic", "chicken", "beef", "pork", "fish", "eggs", "cheese", "butter", "milk",
)

INSTRUCTION_KEYWORDS = (
    "preheat", "heat", "slice", "chop", "dice", "mince", "combine", "mix", "stir", "whisk",
    "beat", "fold", "pour", "sprinkle", "season", "bake", "roast", "fry", "sauté", "boil",
    "simmer", "reduce", "cool", "serve", "garnish", "set aside", "drain", "rinse", "melt",
    "toast", "spread", "layer", "step",
)

MEASUREMENT_PATTERNS = (
    re.compile(r"\d+\s*(cup|cups|tbsp|tablespoon|tablespoons|tsp|teaspoon|teaspoons|oz|ounces|lb|lbs|pound|pounds)", re.I),
    re.compile(r"\d+/\d+\s*(cup|cups|tbsp|tablespoon|tablespoons|tsp|teaspoon|teaspoons)", re.I),
    re.compile(r"\d+\.\d+\s*(cup|cups|tbsp|tablespoon|tablespoons|tsp|teaspoon|teaspoons)", re.I),
)

URL_IN_TEXT_RE = re.compile(r"https?://[^\s<>\"'{}|\\^`\[\]]+", re.I)


def score_caption_quality(caption: Optional[str]) -> str:
    """Rate a caption as 'high', 'medium' or 'low' for recipe extraction."""
    if not caption:
        return "low"
    text = caption.strip()
    if len(text) < 20:
        return "low"
    lowered = text.lower()

    keyword_count = sum(1 for kw in RECIPE_KEYWORDS if kw in lowered)
    instruction_count = sum(1 for kw in INSTRUCTION_KEYWORDS if kw in lowered)
    measurement_count = sum(len(p.findall(text)) for p in MEASUREMENT_PATTERNS)

    # Link-in-bio posts: few measurements plus a URL means the link is the recipe
    if re.search(r"https?://", text) and measurement_count < 2:
        logger.info("Caption has a link and %s measurements; treating as low quality", measurement_count)
        return "low"

    word_count = len(text.split())
    if keyword_count >= 5 and measurement_count >= 2 and word_count >= 50 and instruction_count >= 3:
        return "high"
    if keyword_count >= 3 and (measurement_count >= 1 or word_count >= 30) and instruction_count >= 3:
        return "medium"
    return "low"


def extract_url_from_text(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = URL_IN_TEXT_RE.search(text)
    return match.group(0) if match else None


FOOD_KEYWORDS_RE = re.compile(r"(?:eggs?|chicken|soup|sandwich|pasta|salad|toast|rice|steak|cookies|roast|tacos?)", re.I)


def prepare_raw_text(text: str, dish_name: bool = False) -> str:
    """Trim user text and reject input that cannot describe a recipe.

    Raises ValueError with a user-facing message.
    """
    prepared = (text or "").strip()
    if len(prepared) < 2:
        raise ValueError("Input text is empty or too short.")
    if sum(1 for ch in prepared if ch.isalpha()) < 3:
        raise ValueError("Please include at least a few letters of a dish or recipe.")
    if not dish_name and len(prepared.split()) < 3 and not FOOD_KEYWORDS_RE.search(prepared):
        raise ValueError("Input text has too few words and does not appear to describe a recipe.")
    return prepared


IMAGE_MIME_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")
MAX_IMAGE_BYTES = 10 * 1024 * 1024
DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.S)


def prepare_image(value: str) -> Tuple[str, str]:
    """Split a base64 image (optionally a data URL) into ``(data, mime_type)``.

    Raises ValueError with a user-facing message.
    """
    data = (value or "").strip()
    mime_type = "image/jpeg"
    m = DATA_URL_RE.match(data)
    if m:
        mime_type = m.group("mime").lower()
        data = m.group("data").strip()
    if mime_type not in IMAGE_MIME_TYPES:
        raise ValueError(f"Unsupported image type {mime_type}. Please upload a JPEG, PNG, WebP or GIF.")
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("The attached image is not valid base64 data.") from exc
    if not raw:
        raise ValueError("The attached image is empty.")
    if len(raw) > MAX_IMAGE_BYTES:
        raise ValueError("The attached image is too large (10 MB max).")
    return data, mime_type
