from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid"}
PAGE_PARAM = "page"


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS


def normalize_url(raw_url: str) -> str:
    """Conservative URL normalization used before storing discovered posting links."""
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()

    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)

    return urlunparse((scheme, netloc, path, "", query, ""))


def posting_id(url: str) -> str:
    """Dedup key of a posting: the ID after ``/view/``, else the trailing path segment."""
    path = urlparse(url.strip()).path.rstrip("/")
    _, marker, rest = path.partition("/view/")
    if marker and rest:
        return rest.split("/", maxsplit=1)[0]
    return path.rsplit("/", maxsplit=1)[-1]


def page_of(url: str) -> int:
    for key, value in parse_qsl(urlparse(url).query):
        if key == PAGE_PARAM:
            try:
                return max(1, int(value))
            except ValueError:
                return 1
    return 1


def with_page(url: str, page: int) -> str:
    parsed = urlparse(url)
    pairs = [(key, value) for key, value in parse_qsl(parsed.query, keep_blank_values=True) if key != PAGE_PARAM]
    if page > 1:
        pairs.append((PAGE_PARAM, str(page)))
    return urlunparse(parsed._replace(query=urlencode(pairs)))


def query_key(url: str) -> str:
    """Identity of a search query across its pages."""
    return with_page(url, 1)


def query_text(url: str) -> str:
    for key, value in parse_qsl(urlparse(url).query):
        if key == "query":
            return value
    return ""


def ensure_scheme(url: str) -> str:
    stripped = url.strip().rstrip("/")
    if stripped.startswith(("http://", "https://")):
        return stripped
    return f"https://{stripped}"


def is_http_url(url: str | None) -> bool:
    if not url:
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)
