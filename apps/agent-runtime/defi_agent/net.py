from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from . import __version__
from .errors import DefiError, ErrorCode, unavailable

log = logging.getLogger(__name__)

USER_AGENT = f"defi-agent/{__version__}"


def _status_error(status: int, url: str, body: dict[str, Any]) -> DefiError:
    host = urllib.parse.urlsplit(url).netloc
    message = str(body.get("message") or body.get("error") or body.get("description") or "").strip()
    details = {"status": status, "host": host}
    if status in (401, 403):
        return DefiError(ErrorCode.AUTH, message or f"request to {host} was not authorized", details=details)
    if status == 429:
        return DefiError(ErrorCode.RATE_LIMITED, message or f"rate limited by {host}", details=details)
    return DefiError(ErrorCode.UNAVAILABLE, message or f"request to {host} failed with HTTP {status}", details=details)


def http_json_request(
    method: str,
    url: str,
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    query: dict[str, Any] | None = None,
    timeout: int = 20,
) -> dict[str, Any]:
    """Send a JSON request and return the decoded object body.

    Non-2xx responses are raised as typed errors: 401/403 map to ``auth``,
    429 to ``rate_limited`` and everything else to ``unavailable``.
    """
    if query:
        encoded = urllib.parse.urlencode({k: v for k, v in query.items() if v is not None and v != ""})
        url = f"{url}?{encoded}" if encoded else url

    request_headers: dict[str, str] = {"Accept": "application/json", "User-Agent": USER_AGENT}
    if headers:
        request_headers.update(headers)

    raw_data: bytes | None = None
    if payload is not None:
        raw_data = json.dumps(payload).encode("utf-8")
        request_headers["Content-Type"] = "application/json"

    log.debug("http %s %s", method.upper(), url.split("?", 1)[0])
    request = urllib.request.Request(url=url, data=raw_data, headers=request_headers, method=method.upper())
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = response.read().decode("utf-8")
            parsed = json.loads(body) if body else {}
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8") if exc.fp else ""
        try:
            parsed_err = json.loads(body) if body else {}
            if not isinstance(parsed_err, dict):
                parsed_err = {"message": body}
        except json.JSONDecodeError:
            parsed_err = {"message": body or str(exc)}
        raise _status_error(int(exc.code), url, parsed_err) from exc
    except urllib.error.URLError as exc:
        raise unavailable(f"request failed: {exc.reason}") from exc
    except TimeoutError as exc:
        raise unavailable(f"request timed out after {timeout}s") from exc
    except json.JSONDecodeError as exc:
        raise unavailable("response was not valid JSON") from exc

    if not isinstance(parsed, dict):
        raise unavailable("response was not a JSON object")
    return parsed
