"""
Remote Attribution Service client.

Endpoints:
    POST /referrals/track           - record a referral click
    GET  /referrals/status?wallet=  - is this account already referred?
    PUT  /referrals/track           - register a conversion (server is idempotent)

EXTERNAL DEPENDENCY POLICY:
- 401/403 → ReferralApiAuthError (NOT retried in-call)
- other 4xx → ReferralApiInvalidResponseError (NOT retried in-call)
- 5xx/timeout/network → retried via retry_async, then ReferralApiUnavailableError
- track_click retries only when the request never reached the server
  (connect failures): a duplicate click is harmless but not free
- Responses may come wrapped as {"success": ..., "data": {...}}
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple, Type

import httpx

import config
from attribution.core.structured_logger import log_event, mask_wallet
from attribution.services.referrals.exceptions import (
    ReferralApiAuthError,
    ReferralApiError,
    ReferralApiInvalidResponseError,
    ReferralApiUnavailableError,
)
from attribution.services.referrals.progress import ConversionOutcome, UtmParams
from attribution.utils.retry import retry_async, TRANSIENT_EXCEPTIONS

logger = logging.getLogger(__name__)

# Only failures where nothing was sent
CONNECT_ONLY_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
)

RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 5.0


@dataclass(frozen=True)
class TrackClickResult:
    ip_hash: Optional[str] = None


@dataclass(frozen=True)
class StatusResult:
    already_attributed: bool


def _unwrap(body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise ReferralApiInvalidResponseError(f"Expected JSON object, got {type(body).__name__}")
    data = body.get("data", body)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ReferralApiInvalidResponseError(f"Expected 'data' object, got {type(data).__name__}")
    return data


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ReferralApiClient:
    """
    Thin wrapper over an httpx.AsyncClient.

    The http client is injected so its cookie jar can be shared with the
    compatibility signal and tests can use httpx.MockTransport. Use
    ReferralApiClient.create() to build one from config.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        retry_base_delay: float = RETRY_BASE_DELAY,
        retry_max_delay: float = RETRY_MAX_DELAY,
    ):
        self._http = http_client
        self.base_url = (base_url if base_url is not None else config.REFERRAL_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.REFERRAL_API_TIMEOUT
        self.retries = retries if retries is not None else config.REFERRAL_API_RETRIES
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

    @classmethod
    def create(cls, **kwargs) -> "ReferralApiClient":
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.REFERRAL_API_TIMEOUT),
            headers={"Content-Type": "application/json"},
        )
        return cls(http_client, **kwargs)

    @property
    def cookies(self) -> httpx.Cookies:
        return self._http.cookies

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"

        async def _make_request():
            response = await self._http.request(
                method,
                url,
                json=json,
                params=params,
                timeout=self.timeout,
            )
            # 401/403 → AuthError (should NOT be retried)
            if response.status_code in (401, 403):
                raise ReferralApiAuthError(
                    f"Authentication error: status={response.status_code}, response={response.text[:200]}",
                    status_code=response.status_code,
                )
            # Other 4xx → InvalidResponseError (should NOT be retried)
            if 400 <= response.status_code < 500:
                raise ReferralApiInvalidResponseError(
                    f"Client error: status={response.status_code}, response={response.text[:200]}",
                    status_code=response.status_code,
                )
            # 5xx → HTTPStatusError, retried when retry_on includes httpx.HTTPError
            response.raise_for_status()
            return response

        start = time.monotonic()
        try:
            response = await retry_async(
                _make_request,
                retries=self.retries,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                retry_on=retry_on,
            )
        except ReferralApiError as e:
            log_event(
                logger,
                component="client",
                operation=operation,
                outcome="failed",
                duration_ms=int((time.monotonic() - start) * 1000),
                reason=type(e).__name__,
                level="warning",
            )
            raise
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log_event(
                logger,
                component="client",
                operation=operation,
                outcome="failed",
                duration_ms=int((time.monotonic() - start) * 1000),
                reason=f"http_{status}",
                level="warning",
            )
            raise ReferralApiUnavailableError(
                f"{operation}: server error status={status}", status_code=status
            ) from e
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
            log_event(
                logger,
                component="client",
                operation=operation,
                outcome="failed",
                duration_ms=int((time.monotonic() - start) * 1000),
                reason=type(e).__name__,
                level="warning",
            )
            raise ReferralApiUnavailableError(f"{operation}: {type(e).__name__}: {str(e)[:100]}") from e

        log_event(
            logger,
            component="client",
            operation=operation,
            outcome="success",
            duration_ms=int((time.monotonic() - start) * 1000),
            level="debug",
        )

        try:
            body = response.json()
        except ValueError as e:
            raise ReferralApiInvalidResponseError(
                f"{operation}: response is not JSON", status_code=response.status_code
            ) from e
        return _unwrap(body)

    async def track_click(
        self,
        code: str,
        utm: Optional[UtmParams] = None,
        referrer_url: Optional[str] = None,
        landing_page: Optional[str] = None,
    ) -> TrackClickResult:
        """
        Record a referral click.

        Raises:
            ReferralApiError subclasses
        """
        utm = utm or UtmParams()
        data = await self._request(
            "track_click",
            "POST",
            "/referrals/track",
            json={
                "code": code,
                "source": utm.source or "direct",
                "medium": utm.medium,
                "campaign": utm.campaign,
                "referer": referrer_url,
                "landingPage": landing_page,
            },
            retry_on=CONNECT_ONLY_EXCEPTIONS,
        )
        ip_hash = data.get("ipHash")
        return TrackClickResult(ip_hash=str(ip_hash) if ip_hash else None)

    async def check_status(self, account: str) -> StatusResult:
        """
        Ask whether the account already has a referrer. Pure read.

        Raises:
            ReferralApiError subclasses
        """
        data = await self._request(
            "check_status",
            "GET",
            "/referrals/status",
            params={"wallet": account},
        )
        return StatusResult(already_attributed=data.get("isReferred") is True)

    async def register_conversion(
        self,
        account: str,
        code: str,
        utm: Optional[UtmParams] = None,
    ) -> ConversionOutcome:
        """
        Register the conversion of `account` under `code`.

        Safe to repeat for the same (account, code): the server decides
        whether anything new happens.

        Raises:
            ReferralApiError subclasses
        """
        utm = utm or UtmParams()
        data = await self._request(
            "register_conversion",
            "PUT",
            "/referrals/track",
            json={
                "wallet": account,
                "code": code,
                "source": utm.source or "direct",
                "campaign": utm.campaign,
            },
        )

        bonus = data.get("bonus") or {}
        if not isinstance(bonus, dict):
            bonus = {}
        outcome = ConversionOutcome(
            registered=data.get("registered") is True,
            referrer=data.get("referrer"),
            level=_optional_int(data.get("level")),
            bonus_distributed=bonus.get("distributed") is True,
            bonus_total_amount=_optional_float(bonus.get("totalAmount")),
            message=data.get("message"),
        )
        logger.info(
            f"REFERRAL_API_CONVERSION_RESPONSE [wallet={mask_wallet(account)}, code={code}, "
            f"registered={outcome.registered}, bonus_distributed={outcome.bonus_distributed}]"
        )
        return outcome
