"""Session acquisition against the Microsoft identity platform."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import urlsplit

import httpx

from ...config import settings
from .client import SharePointError


logger = logging.getLogger("spcrawl.sharepoint.auth")


class AuthError(SharePointError):
    """Raised when credentials cannot be exchanged for an access token."""
    pass


@dataclass(frozen=True)
class SharePointSession:
    """
    Authenticated handle scoped to one tenant.

    Created once per run and shared read-only by every operation of that
    run, including concurrent site workers.
    """

    tenant_url: str
    access_token: str = field(repr=False)
    acquired_at: float = field(default_factory=time.time)


def _token_url(tenant_id: str) -> str:
    return settings.sharepoint_token_url or (
        f"https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
    )


def _scope(tenant_url: str) -> str:
    parts = urlsplit(tenant_url)
    return f"{parts.scheme}://{parts.netloc}/.default"


def _token_payload(
    tenant_url: str,
    username: Optional[str],
    password: Optional[str],
    client_id: Optional[str],
    client_secret: Optional[str],
) -> Dict[str, str]:
    if not client_id:
        raise AuthError("SHAREPOINT_CLIENT_ID is required to acquire a SharePoint session")

    payload = {"client_id": client_id, "scope": _scope(tenant_url)}
    if username:
        if not password:
            raise AuthError(f"No password configured for {username}")
        payload.update({"grant_type": "password", "username": username, "password": password})
    elif client_secret:
        payload["grant_type"] = "client_credentials"
    else:
        raise AuthError("Either username/password or a client secret is required")

    if client_secret:
        payload["client_secret"] = client_secret
    return payload


async def acquire_session(
    tenant_url: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    tenant_id: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SharePointSession:
    """
    Exchange credentials for a SharePoint session.

    Uses the OAuth2 password grant when a username is given and falls back to
    client credentials otherwise. Missing arguments are read from settings.

    Args:
        tenant_url: Tenant root URL (e.g. https://mycompany.sharepoint.com)
        username: Account name for delegated access
        password: Account password
        client_id: Azure AD application ID
        client_secret: Application secret (required for client credentials)
        tenant_id: Azure AD tenant ID or alias
        transport: Optional httpx transport (tests)

    Returns:
        SharePointSession for the tenant

    Raises:
        AuthError: If the identity platform rejects the request or returns no token
    """
    if not tenant_url:
        raise AuthError("SHAREPOINT_COMPANY_URL is required to acquire a SharePoint session")

    username = username if username is not None else settings.sharepoint_username
    password = password if password is not None else settings.sharepoint_password
    client_id = client_id or settings.sharepoint_client_id
    client_secret = client_secret or settings.sharepoint_client_secret
    tenant_id = tenant_id or settings.sharepoint_tenant_id

    payload = _token_payload(tenant_url, username, password, client_id, client_secret)

    async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
        try:
            token_resp = await client.post(_token_url(tenant_id), data=payload)
            token_resp.raise_for_status()
            data = token_resp.json()
        except httpx.HTTPStatusError as e:
            detail = ""
            try:
                detail = e.response.json().get("error_description", "")
            except ValueError:
                pass
            raise AuthError(
                f"Token request rejected (HTTP {e.response.status_code}) {detail}".strip()
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise AuthError(f"Token request failed: {e}") from e

    access_token = data.get("access_token")
    if not access_token:
        raise AuthError("No access_token returned from Microsoft identity platform.")

    logger.info(f"Acquired SharePoint session for {tenant_url} ({payload['grant_type']} grant)")
    return SharePointSession(tenant_url=tenant_url.rstrip("/"), access_token=access_token)
