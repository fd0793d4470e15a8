"""Payer adapter contract and a shared HTTP base for insurer integrations.

Any insurer integration is a drop-in implementation of `PayerAdapter` plus
a registry entry. `HttpPayerAdapter` supplies the pieces most REST/FHIR
integrations need: retried requests, OAuth token caching and envelope
construction.
"""

import asyncio
import logging
import time
from datetime import date, datetime, timedelta
from typing import (
    Any, Awaitable, Callable, Dict, FrozenSet, Optional, Protocol, Tuple,
    runtime_checkable,
)
from uuid import UUID, uuid4

import httpx
from pydantic import BaseModel, Field

from ..constants import (
    ADAPTER_MAX_RETRIES,
    ADAPTER_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_ADAPTER_TIMEOUT_SECONDS,
    DEFAULT_HEALTH_TIMEOUT_SECONDS,
    TOKEN_EXPIRY_BUFFER_SECONDS,
)
from ..schemas import (
    ApiType,
    DataType,
    DateRange,
    DecryptedCredential,
    HealthCheckResult,
    PayerError,
    PayerErrorCode,
    PayerIntegration,
    PayerResponse,
)
from ..utils import Clock, utcnow
from .errors import (
    PayerAdapterError,
    PayerServiceUnavailableError,
    error_for_status,
)

logger = logging.getLogger(__name__)


class PayerRequestContext(BaseModel):
    """Everything an adapter needs to make one call for one patient."""
    request_id: str = Field(default_factory=lambda: str(uuid4()))
    practice_id: UUID
    patient_id: UUID
    member_id: str
    date_of_birth: Optional[date] = None
    first_name: str
    last_name: str
    group_number: Optional[str] = None
    payer_integration: PayerIntegration
    credential: DecryptedCredential


class AccessToken(BaseModel):
    token: str
    expires_at: datetime


@runtime_checkable
class PayerAdapter(Protocol):
    payer_code: str
    payer_name: str
    api_type: ApiType
    aliases: Tuple[str, ...]

    async def authenticate(self, credential: DecryptedCredential) -> AccessToken:
        ...

    async def health_check(self) -> HealthCheckResult:
        ...

    async def check_eligibility(self, context: PayerRequestContext) -> PayerResponse:
        ...

    async def get_benefits(self, context: PayerRequestContext) -> PayerResponse:
        ...

    async def get_claims_history(
        self, context: PayerRequestContext, date_range: Optional[DateRange] = None
    ) -> PayerResponse:
        ...

    async def check_prior_auth(self, context: PayerRequestContext, service_code: str) -> PayerResponse:
        ...

    def supports_capability(self, capability: DataType) -> bool:
        ...


def parse_amount(value: Any) -> float:
    """Coerce a payer-reported money value to float; junk becomes 0."""
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class HttpPayerAdapter:
    """Base for adapters that talk HTTP to an insurer API.

    Subclasses set the class attributes, implement `authenticate` and
    `health_check`, and override the data methods they support. Unsupported
    data methods answer with a NOT_IMPLEMENTED envelope.
    """

    payer_code: str = ""
    payer_name: str = ""
    api_type: ApiType = ApiType.PROPRIETARY
    aliases: Tuple[str, ...] = ()
    capabilities: FrozenSet[DataType] = frozenset({DataType.ELIGIBILITY})

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS,
        health_timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
        max_retries: int = ADAPTER_MAX_RETRIES,
        retry_base_delay: float = ADAPTER_RETRY_BASE_DELAY_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the adapter.

        Args:
            base_url: Insurer API root
            timeout_seconds: Per-request timeout
            health_timeout_seconds: Timeout for the health check
            max_retries: Attempts per request for 5xx and transport errors
            retry_base_delay: First backoff delay; doubles on each retry
            transport: Optional httpx transport (tests pass httpx.MockTransport)
            clock: Source of the current time for token expiry
            sleep: Awaitable used between retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.health_timeout_seconds = health_timeout_seconds
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._tokens: Dict[UUID, AccessToken] = {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.payer_code} {self.base_url}>"

    def supports_capability(self, capability: DataType) -> bool:
        try:
            return DataType(capability) in self.capabilities
        except ValueError:
            return False

    # Contract defaults

    async def authenticate(self, credential: DecryptedCredential) -> AccessToken:
        raise NotImplementedError

    async def health_check(self) -> HealthCheckResult:
        raise NotImplementedError

    async def check_eligibility(self, context: PayerRequestContext) -> PayerResponse:
        return self.not_implemented(DataType.ELIGIBILITY, context.request_id)

    async def get_benefits(self, context: PayerRequestContext) -> PayerResponse:
        return self.not_implemented(DataType.BENEFITS, context.request_id)

    async def get_claims_history(
        self, context: PayerRequestContext, date_range: Optional[DateRange] = None
    ) -> PayerResponse:
        return self.not_implemented(DataType.CLAIMS_HISTORY, context.request_id)

    async def check_prior_auth(self, context: PayerRequestContext, service_code: str) -> PayerResponse:
        return self.not_implemented(DataType.PRIOR_AUTH, context.request_id)

    # Envelopes

    def not_implemented(self, capability: DataType, request_id: Optional[str] = None) -> PayerResponse:
        return PayerResponse(
            success=False,
            error=PayerError(
                code=PayerErrorCode.NOT_IMPLEMENTED,
                message=f"{DataType(capability).value} is not implemented for {self.payer_code}",
            ),
            response_time_ms=0,
            request_id=request_id or str(uuid4()),
        )

    async def execute(
        self,
        context: PayerRequestContext,
        operation: Callable[[], Awaitable[Tuple[BaseModel, Any]]],
    ) -> PayerResponse:
        """Run one data operation and wrap its outcome in a PayerResponse.

        `operation` returns (normalized model, raw payload) or raises a
        PayerAdapterError, which becomes an error envelope.
        """
        start = time.monotonic()
        try:
            normalized, raw = await operation()
        except PayerAdapterError as e:
            if e.code == PayerErrorCode.AUTH_FAILED:
                self.invalidate_token(context.credential.credential.id)
            logger.warning(f"{self.payer_code} request {context.request_id} failed: {e.code.value} {e.message}")
            return PayerResponse(
                success=False,
                error=e.to_error(),
                response_time_ms=self._elapsed_ms(start),
                request_id=context.request_id,
            )
        except ValueError as e:
            # Undecodable payer payloads
            logger.error(f"{self.payer_code} request {context.request_id} returned unreadable data: {e}")
            return PayerResponse(
                success=False,
                error=PayerError(code=PayerErrorCode.UNKNOWN_ERROR, message=f"Unreadable payer response: {e}"),
                response_time_ms=self._elapsed_ms(start),
                request_id=context.request_id,
            )

        return PayerResponse(
            success=True,
            data=normalized.model_dump(mode="json"),
            raw_response=raw,
            response_time_ms=self._elapsed_ms(start),
            request_id=context.request_id,
        )

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    # HTTP

    def client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout_seconds,
            transport=self._transport,
        )

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, retrying 5xx responses and transport errors.

        4xx responses are returned to the caller without retry.

        Raises:
            PayerServiceUnavailableError: When every attempt failed
        """
        last_error = None
        async with self.client() as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.request(method, path, **kwargs)
                except httpx.TransportError as e:
                    last_error = f"{type(e).__name__}: {e}"
                else:
                    if response.status_code < 500:
                        return response
                    last_error = f"HTTP {response.status_code}"

                if attempt < self.max_retries - 1:
                    delay = self.retry_base_delay * (2 ** attempt)
                    logger.warning(
                        f"{self.payer_code} {method} {path} failed ({last_error}); "
                        f"retry {attempt + 1}/{self.max_retries - 1} in {delay:.1f}s"
                    )
                    await self._sleep(delay)

        raise PayerServiceUnavailableError(
            f"{self.payer_code} unavailable after {self.max_retries} attempts: {last_error}",
            self.payer_code,
            {"last_error": last_error},
        )

    def raise_for_status(self, response: httpx.Response, message: str) -> None:
        if response.is_success:
            return
        raise error_for_status(
            response.status_code,
            self.payer_code,
            f"{message}: HTTP {response.status_code}",
            retry_after=parse_retry_after(response),
        )

    # Tokens

    async def ensure_token(self, credential: DecryptedCredential) -> str:
        """Return a cached access token, authenticating when it is near expiry."""
        credential_id = credential.credential.id
        cached = self._tokens.get(credential_id)
        buffer = timedelta(seconds=TOKEN_EXPIRY_BUFFER_SECONDS)
        if cached is not None and cached.expires_at - buffer > self._clock():
            return cached.token

        token = await self.authenticate(credential)
        self._tokens[credential_id] = token
        return token.token

    def invalidate_token(self, credential_id: UUID) -> None:
        self._tokens.pop(credential_id, None)
