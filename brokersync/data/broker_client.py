"""
Broker REST API client (Primary / Matba-Rofex style API).

Implements the PageFetcher and AuthRefresher protocols used by the sync
controller:
    POST /auth/getToken      X-Username / X-Password -> X-Auth-Token header
    GET  /rest/accounts      account names for the logged-in user
    GET  /rest/order/all     every order of an account (no pagination)

HTTP failures are raised as typed errors so the controller can choose the
retry policy: 401/403 AUTH, 429 RATE_LIMIT, 5xx and network TRANSIENT,
other 4xx VALIDATION.
"""
import asyncio
import ssl
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import aiohttp
import certifi

from brokersync.config.config import BrokerConfig
from brokersync.domain.models import BrokerAuth, OperationsPage
from brokersync.exceptions import (
    AuthenticationError,
    RateLimitError,
    TransientAPIError,
    ValidationError,
)
from brokersync.monitoring.logger import get_logger
from brokersync.utils.retry import parse_retry_after, retry_on_transient_errors

logger = get_logger(__name__)

AUTH_TOKEN_HEADER = "X-Auth-Token"


@dataclass
class BrokerResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    payload: Any = None
    text: str = ""

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


def raise_for_status(response: BrokerResponse, path: str) -> None:
    """Map an HTTP error response onto the error taxonomy."""
    status = response.status
    if status < 400:
        return
    detail = response.text[:200] if response.text else ""
    message = f"{path} returned HTTP {status}" + (f": {detail}" if detail else "")
    if status in (401, 403):
        raise AuthenticationError(message, status=status)
    if status == 429:
        raise RateLimitError(
            message,
            status=status,
            retry_after_ms=parse_retry_after(response.header("Retry-After")),
        )
    if status >= 500:
        raise TransientAPIError(message, status=status)
    raise ValidationError(message)


def transact_date_prefix(trading_day: str) -> str:
    """'2025-10-20' -> '20251020', the date part of a broker transactTime."""
    return trading_day.replace("-", "")


class BrokerClient:
    """
    Async client for the broker REST API.

    A shared aiohttp session may be injected; otherwise one short-lived
    session is opened per request.
    """

    def __init__(
        self,
        config: BrokerConfig,
        session: Optional[aiohttp.ClientSession] = None,
        clock=time.time,
    ):
        self.config = config
        self._session = session
        self._clock = clock
        self._ssl_context: Optional[ssl.SSLContext] = None
        self.auth: Optional[BrokerAuth] = None
        self._account_name: Optional[str] = config.account_id

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def _send(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        headers: Dict[str, str],
        params: Optional[Dict[str, str]],
    ) -> BrokerResponse:
        async with session.request(method, url, headers=headers, params=params) as response:
            text = await response.text()
            payload = None
            if text and "json" in (response.headers.get("Content-Type") or ""):
                payload = await response.json(content_type=None)
            return BrokerResponse(status=response.status, headers=dict(response.headers), payload=payload, text=text)

    async def _request(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> BrokerResponse:
        url = f"{self.config.base_url}{path}"
        try:
            if self._session is not None:
                response = await self._send(self._session, method, url, headers or {}, params)
            else:
                connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
                timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
                async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                    response = await self._send(session, method, url, headers or {}, params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientAPIError(f"{method} {path} failed: {type(e).__name__}: {e}") from e

        raise_for_status(response, path)
        return response

    @retry_on_transient_errors(max_retries=2, base_delay=1.0, max_backoff=5.0)
    async def login(self) -> BrokerAuth:
        """Authenticate and store a session token valid for session_hours."""
        if not self.config.username or not self.config.password:
            raise AuthenticationError("Broker credentials are not configured")

        response = await self._request(
            "POST",
            "/auth/getToken",
            headers={"X-Username": self.config.username, "X-Password": self.config.password},
        )
        token = response.header(AUTH_TOKEN_HEADER)
        if not token:
            raise AuthenticationError("Login response carried no auth token", status=response.status)

        expiry_ms = self._now_ms() + int(self.config.session_hours * 3600 * 1000)
        self.auth = BrokerAuth(
            token=token,
            expiry_ms=expiry_ms,
            account_id=self._account_name,
            display_name=self.config.username,
        )
        logger.info("BROKER_LOGIN_OK", base_url=self.config.base_url, expiry_ms=expiry_ms)
        return self.auth

    async def ensure_valid_token(self, auth: Optional[BrokerAuth] = None) -> str:
        """
        Return a token that stays valid past the refresh window.

        Raises:
            AuthenticationError: re-authentication failed
        """
        current = auth or self.auth
        window_ms = self.config.token_refresh_window_seconds * 1000
        if current and current.token and not current.expires_within(window_ms, self._now_ms()):
            return current.token

        logger.info("BROKER_TOKEN_REFRESH", had_session=bool(current and current.token))
        try:
            refreshed = await self.login()
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Token refresh failed: {e}") from e
        return refreshed.token

    async def get_accounts(self, token: str) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/rest/accounts", headers={AUTH_TOKEN_HEADER: token})
        payload = response.payload or {}
        self._check_payload_status(payload, "/rest/accounts")
        return list(payload.get("accounts") or [])

    async def _resolve_account(self, token: str) -> str:
        if self._account_name:
            return self._account_name
        accounts = await self.get_accounts(token)
        if not accounts:
            raise ValidationError("No broker accounts available for this user")
        first = accounts[0]
        name = first.get("name") or first.get("id")
        if not name:
            raise ValidationError("Broker account has no name")
        self._account_name = str(name)
        logger.info("BROKER_ACCOUNT_RESOLVED", account=self._account_name, available=len(accounts))
        return self._account_name

    async def get_orders(self, token: str, account: str) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET",
            "/rest/order/all",
            headers={AUTH_TOKEN_HEADER: token},
            params={"accountId": account},
        )
        payload = response.payload or {}
        self._check_payload_status(payload, "/rest/order/all")
        return list(payload.get("orders") or [])

    async def fetch(
        self,
        token: str,
        trading_day: str,
        page_token: Optional[str] = None,
    ) -> OperationsPage:
        """
        Orders of `trading_day` as one page.

        The API has no server-side pagination, so next_page_token is always
        None and page_token is ignored.
        """
        account = await self._resolve_account(token)
        orders = await self.get_orders(token, account)
        prefix = transact_date_prefix(trading_day)
        selected = [o for o in orders if str(o.get("transactTime") or "").startswith(prefix)]
        logger.debug(
            "BROKER_ORDERS_FETCHED",
            account=account,
            trading_day=trading_day,
            total=len(orders),
            selected=len(selected),
        )
        return OperationsPage(operations=selected, next_page_token=None, estimated_total=len(selected))

    @staticmethod
    def _check_payload_status(payload: Mapping[str, Any], path: str) -> None:
        if str(payload.get("status", "OK")).upper() == "ERROR":
            description = payload.get("description") or payload.get("message") or "unknown error"
            raise ValidationError(f"{path} rejected the request: {description}")

    async def close(self) -> None:
        """Close an injected session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
