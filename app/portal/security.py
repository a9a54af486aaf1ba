from urllib.parse import urlsplit

from flask import Request, Response

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self' https://unpkg.com; "
    "style-src 'self' https://cdn.jsdelivr.net; "
    "connect-src 'self'"
)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-XSS-Protection": "0",
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def is_cross_origin_request(req: Request) -> bool:
    """
    True for a state-changing request that a browser marked (or that looks) cross-origin.
    Prefers Sec-Fetch-Site; falls back to comparing Origin with Host.
    Requests without either header (curl, server-to-server) are allowed.
    """
    if req.method in SAFE_METHODS:
        return False

    fetch_site = req.headers.get("Sec-Fetch-Site")
    if fetch_site:
        return fetch_site not in ("same-origin", "none")

    origin = req.headers.get("Origin")
    if not origin:
        return False
    if origin == "null":
        return True
    return urlsplit(origin).netloc.lower() != (req.host or "").lower()


def apply_security_headers(resp: Response) -> Response:
    for name, value in SECURITY_HEADERS.items():
        resp.headers[name] = value
    return resp


def apply_no_cache_headers(req: Request, resp: Response) -> Response:
    """Cache-busting for dynamic routes; static files keep their caching headers."""
    if req.path.startswith("/static/"):
        return resp
    for name, value in NO_CACHE_HEADERS.items():
        if name not in resp.headers:
            resp.headers[name] = value
    return resp
