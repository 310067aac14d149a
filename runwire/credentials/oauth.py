"""OAuth refresh-token exchange."""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Dict, Mapping, Optional

import httpx

from ..config import OAuthClientConfig
from ..constants import DEFAULT_OAUTH_HTTP_TIMEOUT, DEFAULT_REFRESH_MARGIN_SECONDS
from ..errors import UpstreamError

logger = logging.getLogger(__name__)

# Provider errors after which only a new consent can help.
REAUTH_ERRORS = frozenset({"invalid_grant", "unauthorized_client", "access_denied", "invalid_client"})


def is_oauth_body(body: Any) -> bool:
    return isinstance(body, Mapping) and "refresh_token" in body and "expires_at" in body


def still_fresh(
    body: Mapping[str, Any],
    margin_seconds: int = DEFAULT_REFRESH_MARGIN_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """``True`` while ``expires_at`` is more than ``margin_seconds`` away."""
    current = time.time() if now is None else now
    try:
        expires_at = float(body["expires_at"])
    except (KeyError, TypeError, ValueError):
        return False
    return expires_at - margin_seconds > current


def merge_token_response(
    body: Mapping[str, Any], response: Mapping[str, Any], now: Optional[float] = None
) -> Dict[str, Any]:
    """Fold a token endpoint response into the stored credential body.

    ``expires_in`` becomes an absolute ``expires_at``; a rotated
    ``refresh_token`` replaces the old one, otherwise the old one is kept.
    """
    current = time.time() if now is None else now
    merged = dict(body)
    merged["access_token"] = response["access_token"]
    if "expires_in" in response:
        merged["expires_at"] = int(current + float(response["expires_in"]))
    elif "expires_at" in response:
        merged["expires_at"] = response["expires_at"]
    if response.get("refresh_token"):
        merged["refresh_token"] = response["refresh_token"]
    for key, value in response.items():
        if key not in ("access_token", "expires_in", "expires_at", "refresh_token"):
            merged[key] = value
    return merged


class OAuthTokenClient:
    """Posts ``grant_type=refresh_token`` exchanges to a provider.

    Args:
        timeout: Seconds before the provider is considered unreachable.
        transport: Optional httpx transport, e.g. ``httpx.MockTransport``.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_OAUTH_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    async def refresh(
        self, client: OAuthClientConfig, refresh_token: str
    ) -> Dict[str, Any]:
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        headers = {"Accept": "application/json"}
        if client.auth_method == "basic":
            pair = f"{client.client_id}:{client.client_secret}".encode()
            headers["Authorization"] = f"Basic {base64.b64encode(pair).decode()}"
        else:
            form["client_id"] = client.client_id
            form["client_secret"] = client.client_secret

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as http:
                response = await http.post(client.token_url, data=form, headers=headers)
        except httpx.TimeoutException:
            raise UpstreamError("Request timed out", error_code="timeout") from None
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Network error: {exc}", error_code="network_error") from None

        try:
            payload = response.json()
        except ValueError:
            payload = {"error": response.text[:200]}

        if response.status_code != 200 or "access_token" not in payload:
            raise self._parse_error(payload, response.status_code)
        return payload

    @staticmethod
    def _parse_error(payload: Mapping[str, Any], status_code: int) -> UpstreamError:
        error = str(payload.get("error", "") or "")
        description = payload.get("error_description", "")
        if error in REAUTH_ERRORS:
            logger.warning(f"OAuth provider rejected the refresh token ({error}); reauthorization required")
        return UpstreamError(
            description or f"OAuth error ({status_code}): {error}",
            error_code=error or "upstream_error",
        )
