import asyncio
import json
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import aiohttp
from loguru import logger

from provisioning_client.errors import ErrorKind, ExecutionError
from provisioning_client.models import ApiRequest, ApiResponse, Credential, ExecutorConfig


def classify_status(status_code: int) -> Optional[ErrorKind]:
    """Maps an HTTP status to an error kind, None for 2xx"""
    if 200 <= status_code < 300:
        return None
    if status_code in (401, 403):
        return ErrorKind.unauthorized
    if status_code == 429:
        return ErrorKind.rate_limited
    if 400 <= status_code < 500:
        return ErrorKind.invalid_request
    if status_code >= 500:
        return ErrorKind.server_error
    # 1xx/3xx are never expected from the control plane
    return ErrorKind.invalid_request


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parses a Retry-After header given either as seconds or as an HTTP date"""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _error_message(response: ApiResponse) -> str:
    body = response.body
    if body.get("error_code") or body.get("message"):
        return f"{body.get('error_code', 'ERROR')}: {body.get('message', '')}".strip()
    if response.raw_body:
        return response.raw_body[:200]
    return "no error detail in response"


class RequestExecutor:
    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        config: Optional[ExecutorConfig] = None,
    ):
        self.config = config or ExecutorConfig()
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def closed(self) -> bool:
        return self._session is None or self._session.closed

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _build_headers(self, credential: Credential, request: ApiRequest) -> dict:
        headers = {
            "Authorization": f"Bearer {credential.token}",
            "Accept": "application/json",
        }
        if request.body is not None:
            headers["Content-Type"] = "application/json"
        return headers

    async def execute(
        self,
        credential: Credential,
        request: ApiRequest,
        timeout: Optional[float] = None,
    ) -> ApiResponse:
        """Sends a single request and returns the normalized response or raises a classified ExecutionError"""
        session = self._get_session()
        url = credential.url_for(request.path)
        request_timeout = timeout if timeout is not None else self.config.request_timeout
        data = json.dumps(request.body) if request.body is not None else None

        try:
            async with session.request(
                request.method,
                url,
                params=request.params,
                data=data,
                headers=self._build_headers(credential, request),
                timeout=aiohttp.ClientTimeout(total=request_timeout),
            ) as response:
                text = self._decode(await response.read(), response.charset)
                retry_after_header = response.headers.get("Retry-After")
                api_response = self._normalize(response.status, text, response.headers)
        except asyncio.TimeoutError as e:
            self.logger.warning(
                f"{request.describe()} timed out after {request_timeout:.1f}s"
            )
            raise ExecutionError(
                ErrorKind.timeout, f"no response within {request_timeout:.1f}s"
            ) from e
        except aiohttp.InvalidURL as e:
            self.logger.error(f"Invalid URL for {request.describe()}: {e}")
            raise ExecutionError(ErrorKind.invalid_request, f"invalid URL {e}") from e
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
            self.logger.warning(f"Network error on {request.describe()}: {e}")
            raise ExecutionError(ErrorKind.network_error, str(e) or type(e).__name__) from e
        except aiohttp.ClientError as e:
            # redirect loops and other failures before a usable response
            self.logger.warning(f"Client error on {request.describe()}: {e!r}")
            raise ExecutionError(ErrorKind.network_error, repr(e)) from e

        kind = classify_status(api_response.status_code)
        if kind is None:
            self.logger.debug(f"{request.describe()} -> {api_response.status_code}")
            return api_response

        retry_after = None
        if kind is ErrorKind.rate_limited:
            retry_after = parse_retry_after(retry_after_header)
        self.logger.warning(
            f"HTTP error {api_response.status_code} at {request.describe()}: {_error_message(api_response)}"
        )
        raise ExecutionError(
            kind,
            _error_message(api_response),
            status_code=api_response.status_code,
            retry_after=retry_after,
        )

    @staticmethod
    def _decode(raw: bytes, charset: Optional[str]) -> str:
        try:
            return raw.decode(charset or "utf-8", errors="replace")
        except LookupError:
            # unknown charset label in Content-Type
            return raw.decode("utf-8", errors="replace")

    @staticmethod
    def _normalize(status_code: int, text: str, headers) -> ApiResponse:
        body = {}
        raw_body = None
        if text:
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                body = parsed
            else:
                raw_body = text
        return ApiResponse(
            status_code=status_code,
            body=body,
            raw_body=raw_body,
            headers={k: v for k, v in headers.items()},
        )
