"""Whop OAuth code exchange and identity lookup."""

import logging
from typing import Optional

import httpx

from .auth.handshake import ExchangeResult
from .config import Settings, get_settings
from .errors import PlatformExchangeError

logger = logging.getLogger(__name__)


class PlatformOAuthClient:
    """Exchange an authorization code for an access token and user identity."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str,
        me_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.me_url = me_url
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PlatformOAuthClient":
        settings = settings or get_settings()
        return cls(
            client_id=settings.whop_app_id or "",
            client_secret=settings.whop_client_secret or "",
            token_url=settings.whop_oauth_token_url,
            me_url=settings.whop_me_url,
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> ExchangeResult:
        """Trade *code* for an access token, then fetch who it belongs to.

        Raises:
            PlatformExchangeError: either call failed or returned no usable data.
        """
        if not self.client_id or not self.client_secret:
            raise PlatformExchangeError("Whop OAuth is not configured")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                token_response = await client.post(
                    self.token_url,
                    json={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "grant_type": "authorization_code",
                        "redirect_uri": redirect_uri,
                    },
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as e:
                raise PlatformExchangeError(f"Token exchange request failed: {e}") from e

            if token_response.status_code != 200:
                logger.error(
                    "Token exchange failed (%s): %s",
                    token_response.status_code, token_response.text[:200],
                )
                raise PlatformExchangeError(
                    "Failed to exchange authorization code",
                    status_code=token_response.status_code,
                )

            access_token = token_response.json().get("access_token")
            if not access_token:
                raise PlatformExchangeError("No access token received")

            try:
                user_response = await client.get(
                    self.me_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except httpx.HTTPError as e:
                raise PlatformExchangeError(f"User lookup request failed: {e}") from e

        if user_response.status_code != 200:
            logger.error(
                "Failed to fetch user info (%s): %s",
                user_response.status_code, user_response.text[:200],
            )
            raise PlatformExchangeError(
                "Failed to get user info", status_code=user_response.status_code
            )

        user_info = user_response.json()
        user_id = user_info.get("id")
        if not user_id:
            raise PlatformExchangeError("User info did not include an id")

        return ExchangeResult(
            access_token=access_token,
            user_id=str(user_id),
            username=user_info.get("username") or user_info.get("name"),
            company_id=user_info.get("company_id"),
        )
