"""Input classification and deterministic cache keys."""

import hashlib
import logging
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from meez_recipes.app.schemas.parse import InputType, RawInput

logger = logging.getLogger(__name__)

VIDEO_HOSTS = ("youtube.com", "youtu.be", "instagram.com", "tiktok.com")

TRACKING_PARAMS = {
    "fbclid",
    "gclid",
    "gclsrc",
    "dclid",
    "gbraid",
    "wbraid",
    "ref",
    "referrer",
    "source",
    "campaign",
    "medium",
    "igshid",
    "twclid",
    "li_fat_id",
    "_ga",
    "_gl",
    "_ke",
    "mc_cid",
    "mc_eid",
    "aff_id",
    "affiliate_id",
    "aff",
    "tag",
    "hsctatracking",
}
TRACKING_PREFIXES = ("utm_", "fb_", "email_", "pk_", "hsa_")

DEFAULT_PORTS = {"http": 80, "https": 443}

MIN_TEXT_CHARS = 3
MIN_LETTER_RATIO = 0.65


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def normalize_url(url: str) -> str:
    """Canonicalize a URL so trivially different spellings share one key."""
    value = url.strip()
    if value.startswith("//"):
        value = "https:" + value
    elif not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", value):
        value = "https://" + value

    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    try:
        port = parts.port
    except ValueError:
        port = None
    netloc = host
    if port and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"

    query_pairs = [
        (key, val)
        for key, val in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    query_pairs.sort()
    query = urlencode(query_pairs)

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"
    if path == "/" and not query:
        path = ""

    return urlunsplit((scheme, netloc, path, query, ""))


def text_cache_key(text: str) -> str:
    return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()


def derive_cache_key(raw: RawInput) -> str:
    """Pure function of the normalized input; ``force_refresh`` never participates."""
    if raw.kind in (InputType.URL, InputType.VIDEO):
        return normalize_url(raw.payload)
    if raw.image_data:
        image_digest = hashlib.sha256(raw.image_data.encode("ascii")).hexdigest()
        return text_cache_key(f"{raw.payload.strip()}\n[image:{image_digest}]")
    return text_cache_key(raw.payload)


def _url_host(text: str) -> str | None:
    candidate = text
    if not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", candidate):
        candidate = "https://" + candidate
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https"):
        return None
    host = (parts.hostname or "").lower()
    # Every label must be non-empty: "Shakshuka." is a dish, not a host
    if "." not in host or not all(host.split(".")) or not re.fullmatch(r"[a-z0-9.-]+", host):
        return None
    return host


def _is_video_host(host: str) -> bool:
    return any(host == domain or host.endswith("." + domain) for domain in VIDEO_HOSTS)


def detect_input_type(text: str) -> InputType:
    value = (text or "").strip()
    if len(value) < MIN_TEXT_CHARS:
        return InputType.INVALID

    # Multi-line or spaced input is never treated as a link
    if not re.search(r"\s", value):
        host = _url_host(value)
        if host:
            return InputType.VIDEO if _is_video_host(host) else InputType.URL

    letters = sum(1 for ch in value if ch.isalpha())
    non_space = sum(1 for ch in value if not ch.isspace())
    if non_space == 0 or letters / non_space < MIN_LETTER_RATIO:
        return InputType.INVALID
    return InputType.RAW_TEXT


def is_dish_name_query(text: str, max_words: int = 6) -> bool:
    value = (text or "").strip()
    if not value or "\n" in value:
        return False
    return len(value.split()) <= max_words
