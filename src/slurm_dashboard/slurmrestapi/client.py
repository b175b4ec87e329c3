"""SLURM REST API client.

Provides an async HTTP client with account/token header authentication
and response validation using Pydantic models.
"""

import base64
import json
import time
from pathlib import Path
from typing import Any

import httpx
import structlog

from .types import RawJobData, RawNodeData

logger = structlog.get_logger(__name__)

DEFAULT_API_VERSION = "v0.0.38"

DEFAULT_TIMEOUT = 30.0


class ExpiredTokenError(Exception):
    """Raised when the Slurm JWT has expired."""


class SlurmApiError(RuntimeError):
    """Raised when the Slurm REST API reports errors in its response body."""


class MalformedResponseError(SlurmApiError):
    """Raised when a response does not have the expected top-level shape."""


def validate_jwt_not_expired(token: str) -> None:
    """Check that a JWT token has not expired.

    The payload is decoded without verifying the signature. Tokens that are
    not JWTs, or carry no ``exp`` claim, are accepted with a warning.

    Raises:
        ExpiredTokenError: If the token's ``exp`` claim is in the past.
    """
    parts = token.split(".")
    if len(parts) != 3:  # noqa: PLR2004
        logger.warning("Token does not appear to be a JWT, skipping expiry check")
        return

    try:
        payload_b64 = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(payload_b64))
    except (ValueError, json.JSONDecodeError):
        logger.warning("Failed to decode JWT payload, skipping expiry check")
        return

    exp = payload.get("exp") if isinstance(payload, dict) else None
    if exp is None:
        logger.warning("JWT has no 'exp' claim, skipping expiry check")
        return

    now = time.time()
    if now >= exp:
        msg = f"Slurm JWT has expired (exp={exp}, now={int(now)})"
        raise ExpiredTokenError(msg)

    logger.info("JWT expiry validated", expires_in_seconds=int(exp - now))


def _read_token(token: str | None, token_file: str | Path | None) -> str | None:
    if token:
        return token.strip()
    if token_file:
        token_path = Path(token_file)
        if not token_path.exists():
            msg = f"Token file not found: {token_file}"
            raise FileNotFoundError(msg)
        return token_path.read_text().strip()
    return None


class SlurmRestApiClient:
    """Async HTTP client for the SLURM REST API.

    Handles authentication headers, makes requests, checks for API-level
    errors and returns validated record types. A single
    ``httpx.AsyncClient`` is created lazily and shared by all tasks on the
    event loop. Can be used as an async context manager.
    """

    def __init__(
        self,
        base_url: str,
        account: str = "",
        token: str | None = None,
        token_file: str | Path | None = None,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the REST API client.

        Args:
            base_url: Base URL for the SLURM REST API (e.g., "http://slurm:6820").
            account: Account name sent as ``X-SLURM-USER-NAME``.
            token: Authentication token; takes precedence over ``token_file``.
            token_file: Path to file containing the authentication token.
            api_version: SLURM REST API version (default: v0.0.38).
            timeout: Request timeout in seconds (default: 30.0).
            transport: Optional httpx transport, used by tests.

        Raises:
            ValueError: If base_url is empty or timeout is not positive.
            FileNotFoundError: If token_file is specified but doesn't exist.
            ExpiredTokenError: If the token is a JWT that already expired.
        """
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self._timeout = timeout
        self._transport = transport

        self._headers = {"Accept": "application/json"}
        if account:
            self._headers["X-SLURM-USER-NAME"] = account

        resolved_token = _read_token(token, token_file)
        if resolved_token:
            validate_jwt_not_expired(resolved_token)
            self._headers["X-SLURM-USER-TOKEN"] = resolved_token

        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the shared httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if open."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make a GET request to the SLURM REST API.

        Args:
            endpoint: API endpoint path (e.g., "/slurm/v0.0.38/nodes").
            params: Optional query parameters.

        Returns:
            Raw JSON response as dictionary.

        Raises:
            httpx.HTTPError: If the HTTP request fails.
            SlurmApiError: If the API returns errors in the response.
            MalformedResponseError: If the body is not a JSON object.
        """
        start_time = time.time()
        params = params or {}

        try:
            logger.debug(
                "Making API request",
                method="GET",
                endpoint=endpoint,
                params=params,
            )
            response = await self.client.get(endpoint, params=params)
            response.raise_for_status()
            duration = time.time() - start_time
            logger.debug("API request completed", duration_seconds=round(duration, 3))
        except httpx.HTTPError:
            duration = time.time() - start_time
            logger.exception(
                "API request failed",
                endpoint=endpoint,
                duration_seconds=round(duration, 3),
            )
            raise

        try:
            data = response.json()
        except ValueError as exc:
            msg = f"Response from {endpoint} is not valid JSON"
            raise MalformedResponseError(msg) from exc
        if not isinstance(data, dict):
            msg = f"Response from {endpoint} is not a JSON object"
            raise MalformedResponseError(msg)

        if errors := data.get("errors", []):
            error_messages = []
            for error in errors:
                error_msg = (
                    error.get("error", str(error)) if isinstance(error, dict) else str(error)
                )
                logger.error("API error response", error_message=error_msg)
                error_messages.append(error_msg)
            msg = f"API returned errors: {'; '.join(error_messages)}"
            raise SlurmApiError(msg)
        return data

    @staticmethod
    def _records(data: dict[str, Any], key: str) -> list[dict[str, Any]]:
        """Extract a list of record objects, skipping entries that aren't objects."""
        items = data.get(key) or []
        if not isinstance(items, list):
            msg = f"Expected '{key}' to be a list, got {type(items).__name__}"
            raise MalformedResponseError(msg)

        records = []
        for item in items:
            if not isinstance(item, dict):
                logger.warning("Skipping malformed record", collection=key)
                continue
            records.append(item)
        return records

    async def get_nodes(self) -> list[RawNodeData]:
        """Fetch all node information.

        Returns:
            List of validated RawNodeData objects.

        Raises:
            httpx.HTTPError: If HTTP request fails.
            SlurmApiError: If API returns errors or an unexpected shape.
        """
        data = await self._make_request(f"/slurm/{self.api_version}/nodes")
        return [
            RawNodeData.model_validate(node) for node in self._records(data, "nodes")
        ]

    async def get_jobs(self) -> list[RawJobData]:
        """Fetch all job information.

        Returns:
            List of validated RawJobData objects.

        Raises:
            httpx.HTTPError: If HTTP request fails.
            SlurmApiError: If API returns errors or an unexpected shape.
        """
        data = await self._make_request(f"/slurm/{self.api_version}/jobs")
        return [RawJobData.model_validate(job) for job in self._records(data, "jobs")]

    async def get_reservations(self) -> dict[str, Any]:
        """Fetch reservations as the raw API payload."""
        return await self._make_request(f"/slurm/{self.api_version}/reservations")

    async def get_user_jobs(self, user: str, state: str = "running") -> dict[str, Any]:
        """Fetch a user's jobs from the accounting database as the raw payload."""
        return await self._make_request(
            f"/slurmdb/{self.api_version}/jobs",
            params={"users": user, "state": state},
        )
