"""web_search tool: fetch a URL and return its body as readable text."""

import ipaddress
import socket
import urllib.error
import urllib.parse
import urllib.request

from .tools import DEFAULT_TIMEOUT, MAX_OUTPUT_BYTES, ToolError, ToolOutcome

MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # 5 MB raw download cap
MAX_REDIRECTS = 10

HEADERS = {
    "User-Agent": "tandem/0.1 (+https://pypi.org/project/tandem/)",
    "Accept": "text/markdown,text/html,text/plain,application/json,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_TEXT_MIMES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/xhtml+xml",
        "application/javascript",
        "application/rss+xml",
        "application/atom+xml",
    }
)


class _RedirectError(Exception):
    def __init__(self, url: str, code: int):
        self.url = url
        self.code = code


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _RedirectError(newurl, code)


def _check_url_safety(url: str) -> None:
    """Raise ToolError for a non-http(s) scheme or a private/internal target."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ToolError(
            f"url scheme {parsed.scheme!r} is not allowed, must be http or https"
        )
    hostname = parsed.hostname
    if not hostname:
        raise ToolError("could not parse hostname from url")
    try:
        infos = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise ToolError(f"could not resolve hostname {hostname!r}: {e}") from e
    for _family, _, _, _, sockaddr in infos:
        addr = ipaddress.ip_address(sockaddr[0])
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            raise ToolError(
                f"url resolves to private/internal address ({addr}), blocked for security"
            )


def _decode_response(data: bytes, content_type: str | None) -> str:
    """Decode with the Content-Type charset, then UTF-8, then latin-1."""
    charset = None
    if content_type:
        for part in content_type.split(";"):
            part = part.strip()
            if part.lower().startswith("charset="):
                charset = part.split("=", 1)[1].strip().strip("\"'")
                break

    for encoding in (charset, "utf-8"):
        if encoding is None:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def _open(url: str, timeout: int):
    """Open url, following up to MAX_REDIRECTS redirects with a safety check on each hop."""
    current_url = url
    opener = urllib.request.build_opener(_NoRedirectHandler)

    for _ in range(MAX_REDIRECTS + 1):
        _check_url_safety(current_url)
        req = urllib.request.Request(current_url, headers=HEADERS)
        try:
            return opener.open(req, timeout=timeout)
        except _RedirectError as r:
            current_url = urllib.parse.urljoin(current_url, r.url)
        except urllib.error.HTTPError as e:
            raise ToolError(f"HTTP {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            reason = str(e.reason)
            if "timed out" in reason.lower():
                raise ToolError(f"request timed out after {timeout} seconds") from e
            host = urllib.parse.urlparse(current_url).hostname
            raise ToolError(f"could not connect to {host}: {reason}") from e
        except TimeoutError as e:
            raise ToolError(f"request timed out after {timeout} seconds") from e
        except OSError as e:
            host = urllib.parse.urlparse(current_url).hostname
            raise ToolError(f"could not connect to {host}: {e}") from e
    raise ToolError(f"too many redirects (limit is {MAX_REDIRECTS})")


def fetch_url(url: str, timeout: int = DEFAULT_TIMEOUT) -> str:
    """Fetch url and return its body; HTML is converted to markdown.

    Raises ToolError on any failure.
    """
    if not url or not isinstance(url, str):
        raise ToolError("url must be a non-empty string")
    timeout = max(1, min(int(timeout), 120))

    resp = _open(url, timeout)
    with resp:
        content_type = resp.headers.get("Content-Type", "")
        mime = content_type.split(";")[0].strip().lower()
        if mime and not mime.startswith("text/") and mime not in _TEXT_MIMES:
            raise ToolError(f"binary content (content-type: {mime}), cannot display as text")

        try:
            data = resp.read(MAX_RESPONSE_SIZE + 1)
        except OSError as e:
            raise ToolError(f"failed to read response: {e}") from e

    if len(data) > MAX_RESPONSE_SIZE:
        raise ToolError(f"response too large (more than {MAX_RESPONSE_SIZE} bytes)")
    if b"\x00" in data[:8192]:
        raise ToolError("binary content detected (null bytes found), cannot display as text")

    body = _decode_response(data, content_type)

    if mime in ("text/html", "application/xhtml+xml"):
        from html_to_markdown import convert

        try:
            body = convert(body)
        except Exception as e:
            raise ToolError(f"failed to convert HTML to markdown: {e}") from e

    encoded = body.encode("utf-8")
    if len(encoded) > MAX_OUTPUT_BYTES:
        body = (
            encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
            + f"\n[content truncated at {MAX_OUTPUT_BYTES} bytes, total was {len(encoded)} bytes]"
        )
    return body


def web_search(args: dict, timeout: int = DEFAULT_TIMEOUT) -> ToolOutcome:
    try:
        return ToolOutcome.ok(fetch_url(args["url"], timeout=timeout))
    except ToolError as e:
        raise ToolError(f"Failed to fetch {args['url']}: {e}") from e
