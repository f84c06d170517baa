"""
Upstream forwarding for the metered proxy.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional, Tuple
from urllib.parse import quote

import httpx
from starlette.responses import Response

from .errors import ProxyError
from .tokens import SESSION_HEADER, SESSION_QUERY_PARAM

logger = logging.getLogger(__name__)

# Never forwarded upstream: hop-by-hop headers and our own credential.
# Content-Length and Accept-Encoding are set by httpx, which decodes the
# response body itself.
EXCLUDED_REQUEST_HEADERS = {
    "host",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "te",
    "trailer",
    "upgrade",
    "content-length",
    "accept-encoding",
    SESSION_HEADER.lower(),
}

# Never copied back to the client. httpx has already decoded the body, so
# the upstream framing and encoding headers no longer describe it.
EXCLUDED_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "transfer-encoding",
    "te",
    "trailer",
    "upgrade",
    "content-encoding",
    "content-length",
}

BODYLESS_METHODS = {"GET", "HEAD"}

# RFC 3986 pchar plus "/", minus "%".
PATH_SAFE_CHARS = "/:@!$&'()*+,;=-._~"


def build_upstream_url(target_url: str, sub_path: str) -> str:
    """
    Append the sub-path to the gateway's target base URL.

    The sub-path arrives percent-decoded; it is re-encoded so characters
    like "?", "#" and "%" stay part of the path instead of starting a query,
    a fragment or a new escape.
    """
    if not sub_path.startswith("/"):
        sub_path = "/" + sub_path
    return target_url.rstrip("/") + quote(sub_path, safe=PATH_SAFE_CHARS)


def filter_query_params(params: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Keep every query parameter, in order, except the session credential."""
    return [(k, v) for k, v in params if k != SESSION_QUERY_PARAM]


def filter_request_headers(headers: Iterable[Tuple[str, str]], strip_authorization: bool = False) -> List[Tuple[str, str]]:
    """
    Drop hop-by-hop and credential headers.

    Args:
        headers: Incoming (name, value) pairs.
        strip_authorization: Also drop Authorization (it carried an L402 voucher).
    """
    excluded = EXCLUDED_REQUEST_HEADERS | ({"authorization"} if strip_authorization else set())
    return [(k, v) for k, v in headers if k.lower() not in excluded]


def filter_response_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in EXCLUDED_RESPONSE_HEADERS]


async def forward_request(
    client: httpx.AsyncClient,
    *,
    method: str,
    url: str,
    headers: List[Tuple[str, str]],
    params: List[Tuple[str, str]],
    body: Optional[bytes],
    timeout: float,
) -> httpx.Response:
    """
    Send the request upstream and read the full response.

    Raises:
        ProxyError: On any transport failure or timeout. The caller must not
            bill for the request.
    """
    try:
        response = await client.request(
            method,
            url,
            headers=headers,
            params=params,
            content=body if method.upper() not in BODYLESS_METHODS else None,
            timeout=timeout,
        )
    except httpx.TimeoutException as e:
        logger.error("Upstream timeout: %s %s (%s)", method, url, e)
        raise ProxyError("Target API timed out") from e
    except httpx.HTTPError as e:
        logger.error("Upstream unreachable: %s %s (%s)", method, url, e)
        raise ProxyError() from e
    return response


def build_client_response(upstream: httpx.Response, extra: Mapping[str, str]) -> Response:
    """Upstream status, body and headers verbatim, plus the gateway's disclosure headers."""
    response = Response(content=upstream.content, status_code=upstream.status_code)
    for k, v in filter_response_headers(upstream.headers.multi_items()):
        response.headers.append(k, v)
    for k, v in extra.items():
        response.headers[k] = v
    return response
