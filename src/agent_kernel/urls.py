# urls.py
# URL discovery in noisy user text, normalization, and URL policy.
#
# Input here is untrusted: chat text with zero-width characters, full-width
# punctuation, wrapping quotes, and prose glued to the end of a link.
# Nothing in this module raises; anything unusable becomes None / [].

import re
from urllib.parse import quote, urlsplit, urlunsplit

_ZERO_WIDTH = re.compile(r"[\u200b-\u200d\ufeff]")
_FULL_WIDTH = str.maketrans({"：": ":", "／": "/", "．": "."})

URL_PATTERN = re.compile(r"https?://[^\s)]+|www\.[^\s)]+", re.IGNORECASE)

_LEADING_WRAP = re.compile(r"^[\"'“”‘’(\[{【《]+")
_TRAILING_PUNCT = re.compile(r"[\"'“”‘’)\]}】》，。；：！？、.,;:!?]+$")
_HAS_SCHEME = re.compile(r"^https?://", re.IGNORECASE)
# A scheme other than http(s), or a mangled one such as "https:/".
_FOREIGN_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*:(?!\d)", re.IGNORECASE)
# An authority followed by at least one path, query or fragment character.
_HAS_PATH = re.compile(r"^(?:https?://|www\.)[^/?#]+[/?#]", re.IGNORECASE)

# RFC 3986 characters only, checked after non-ASCII text is percent-encoded.
# Spaces, braces and angle brackets mean the token is not a clean URL yet.
_URL_CHARS = re.compile(r"[A-Za-z0-9\-._~:/?#\[\]@!$&'()*+,;=%]+")
_HOST_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
_HOSTNAME = re.compile(rf"(?:{_HOST_LABEL}\.)*{_HOST_LABEL}", re.IGNORECASE)
_IPV6 = re.compile(r"[0-9a-f:.]+", re.IGNORECASE)
_NON_ASCII = re.compile(r"[^\x00-\x7f]+")

# Short links of the article platform: keep only the canonical /s/<id> path.
_WECHAT_SHORT_LINK = re.compile(r"^(?:https?://)?mp\.weixin\.qq\.com/s/([A-Za-z0-9_-]+)", re.IGNORECASE)
_WECHAT_HOST = re.compile(r"^https?://mp\.weixin\.qq\.com/", re.IGNORECASE)

_PLACEHOLDER_EXACT = {"https://...", "http://...", "https://…", "http://…", "..."}
_PLACEHOLDER_MARKERS = ("example.com", "{url}", "<url>", "{{")

_PRIVATE_172 = re.compile(r"^172\.(1[6-9]|2\d|3[01])\.")


# ---------------------------------------------------------------------------
# Cleaning
# ---------------------------------------------------------------------------


def normalize_text(text: str) -> str:
    """Strip zero-width characters and fold full-width URL punctuation."""
    return _ZERO_WIDTH.sub("", text or "").translate(_FULL_WIDTH)


def clean_raw_url(value: str) -> str:
    candidate = normalize_text(value).strip()
    candidate = _LEADING_WRAP.sub("", candidate)
    candidate = _TRAILING_PUNCT.sub("", candidate)
    return candidate.strip()


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _encode_non_ascii(value: str) -> str:
    """Percent-encode runs of non-ASCII characters as UTF-8, leaving the rest alone."""
    return _NON_ASCII.sub(lambda match: quote(match.group(0), safe=""), value)


def try_normalize_http_url(value: str) -> str | None:
    """
    Parse `value` as an http(s) URL, adding https:// when no scheme is given.

    Returns the canonical string (lowercase scheme and host, "/" for an
    empty path) or None. Internationalized hosts are IDNA-encoded and
    non-ASCII path, query and fragment text is percent-encoded, so the
    result is always ASCII.
    """
    if not value:
        return None
    if not _HAS_SCHEME.match(value) and _FOREIGN_SCHEME.match(value):
        return None
    candidate = value if _HAS_SCHEME.match(value) else f"https://{value}"
    if not _URL_CHARS.fullmatch(_encode_non_ascii(candidate)):
        return None

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        return None

    host = parts.hostname
    if not host:
        return None
    if ":" in host:
        if not _IPV6.fullmatch(host):
            return None
        host = f"[{host}]"
    else:
        try:
            host = host.encode("idna").decode("ascii")
        except UnicodeError:
            return None
        if not _HOSTNAME.fullmatch(host):
            return None

    userinfo = _encode_non_ascii(parts.netloc.rpartition("@")[0])
    netloc = f"{userinfo}@" if userinfo else ""
    netloc += host.lower()
    if port is not None:
        netloc += f":{port}"

    path = _encode_non_ascii(parts.path) or "/"
    return urlunsplit((scheme, netloc, path, _encode_non_ascii(parts.query), _encode_non_ascii(parts.fragment)))


def normalize_matched_url(value: str) -> str | None:
    """
    Canonicalize one regex match.

    Order: platform short-link form, direct parse, then trim one trailing
    character at a time to peel off junk stuck to the link. Trimming stops
    before it would cut into the host.
    """
    candidate = clean_raw_url(value)
    if not candidate:
        return None

    short_link = _WECHAT_SHORT_LINK.match(candidate)
    if short_link:
        canonical = try_normalize_http_url(f"https://mp.weixin.qq.com/s/{short_link.group(1)}")
        if canonical:
            return canonical

    direct = try_normalize_http_url(candidate)
    if direct:
        return direct

    while _HAS_PATH.match(candidate):
        candidate = _TRAILING_PUNCT.sub("", candidate[:-1]).rstrip()
        normalized = try_normalize_http_url(candidate)
        if normalized:
            return normalized
    return None


def normalize_url(value: str) -> str | None:
    """Public entry point: idempotent, normalize(normalize(u)) == normalize(u)."""
    return normalize_matched_url(value)


def extract_urls(text: str, max_links: int = 2) -> list[str]:
    """Distinct normalized URLs in first-seen order, capped at `max_links`."""
    found: list[str] = []
    for match in URL_PATTERN.findall(normalize_text(text)):
        normalized = normalize_matched_url(match)
        if normalized and normalized not in found:
            found.append(normalized)
            if len(found) >= max_links:
                break
    return found


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def prefers_dynamic(url: str) -> bool:
    """Hosts whose article body is script-rendered."""
    return bool(_WECHAT_HOST.match(url or ""))


def is_placeholder_url(url: str) -> bool:
    """Literal ellipsis schemes, example.com and unfilled template markers."""
    raw = normalize_text(url).strip().lower()
    cleaned = clean_raw_url(url).lower()
    if not cleaned or cleaned in ("http://", "https://"):
        return True
    if raw in _PLACEHOLDER_EXACT:
        return True
    return any(marker in raw for marker in _PLACEHOLDER_MARKERS)


def is_blocked_url(url: str) -> bool:
    """Loopback and private ranges, judged lexically. Unparseable URLs are blocked."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return True
    if not host:
        return True
    if host in ("localhost", "127.0.0.1", "::1"):
        return True
    if host.startswith("10.") or host.startswith("192.168."):
        return True
    return bool(_PRIVATE_172.match(host))
