"""HTTP node handler."""

import json
from typing import Any, Dict, Optional, TYPE_CHECKING

import httpx

from flowengine.core.errors import ExecutionError
from flowengine.core.logging import get_logger

if TYPE_CHECKING:
    from flowengine.services.node_dispatcher import DispatchContext

logger = get_logger(__name__)

BODY_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ('', 'false', '0', 'no')
    return bool(value)


def _parse_response(response: httpx.Response, expect_json: bool) -> Any:
    if not response.content:
        return None
    if expect_json:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


async def handle_http(
    node_id: str,
    config: Dict[str, Any],
    context: "DispatchContext",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Make one HTTP request.

    Args:
        node_id: The node ID
        config: Resolved config (url, method, headers, query, json or body)
        context: Dispatch context
        transport: Optional httpx transport (mock transports in tests)

    Returns:
        ``{"status", "headers", "data"}`` for 2xx/3xx responses

    Raises:
        ExecutionError: classified by status code or transport failure
    """
    method = str(config.get('method') or 'GET').upper()
    url = config.get('url')
    if not url or not isinstance(url, str):
        raise ExecutionError("URL is required", code="BAD_INPUT")

    headers = {str(k): str(v) for k, v in (config.get('headers') or {}).items()}
    params = {k: v for k, v in (config.get('query') or {}).items() if v is not None}

    kwargs: Dict[str, Any] = {'method': method, 'url': url, 'headers': headers, 'params': params}
    if method in BODY_METHODS:
        if config.get('json') is not None:
            kwargs['json'] = config['json']
        elif config.get('body') is not None:
            body = config['body']
            kwargs['content'] = body if isinstance(body, (str, bytes)) else json.dumps(body)

    logger.info("[HTTP] Executing", node_id=node_id, method=method, url=url)

    client_kwargs: Dict[str, Any] = {'timeout': None, 'follow_redirects': True}
    if transport is not None:
        client_kwargs['transport'] = transport

    try:
        async with httpx.AsyncClient(**client_kwargs) as client:
            response = await client.request(**kwargs)
    except httpx.TimeoutException as e:
        raise ExecutionError(f"Request to {url} timed out", code="TIMEOUT") from e
    except httpx.InvalidURL as e:
        raise ExecutionError(f"Invalid URL '{url}': {e}", code="BAD_INPUT") from e
    except httpx.TransportError as e:
        raise ExecutionError(f"Connection to {url} failed: {e}", code="CONNECTION_ERROR") from e

    if response.status_code >= 400:
        logger.warning("[HTTP] Error response", node_id=node_id, status=response.status_code)
        raise ExecutionError.from_status(
            response.status_code,
            f"{method} {url} responded with HTTP {response.status_code}",
        )

    return {
        "status": response.status_code,
        "headers": dict(response.headers),
        "data": _parse_response(response, _as_bool(config.get('expect_json', True))),
    }
