"""
Best-effort trigger of downstream scorecard generation
"""

from typing import Optional, Sequence
from uuid import UUID
import asyncio
import logging

import httpx

from core.config import settings
from core.exceptions import NetworkError, ClientRejectedError

logger = logging.getLogger(__name__)

SCORECARD_PATH = "/api/internal/scorecard/generate"
RETRY_DELAYS = (0.5, 1.5, 3.0)


class ScorecardNotifier:
    """
    Tell the app that fresh metrics exist for a user.

    Retry policy:
    - HTTP 5xx, timeouts and network errors: retried after each delay in
      retry_delays (3 retries, 4 attempts with the defaults)
    - HTTP 4xx: the request itself is wrong, never retried
    notify() never raises; the import outcome does not depend on it.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_delays: Sequence[float] = RETRY_DELAYS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url if base_url is not None else settings.EDEN_APP_URL
        self.secret = secret if secret is not None else settings.WORKER_SECRET
        self.timeout = timeout or settings.NOTIFY_TIMEOUT_SECONDS
        self.retry_delays = tuple(retry_delays)
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.secret)

    async def _post(self, client: httpx.AsyncClient, url: str, user_id: UUID) -> None:
        try:
            response = await client.post(
                url,
                json={"user_id": str(user_id)},
                headers={
                    "Authorization": f"Bearer {self.secret}",
                    "Content-Type": "application/json"
                }
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"Scorecard request failed: {type(e).__name__}",
                context={"url": url},
                original_exception=e
            )

        if response.status_code >= 500:
            raise NetworkError(
                f"Scorecard service error {response.status_code}",
                context={"url": url, "status_code": response.status_code, "response_body": response.text[:500]}
            )

        if response.status_code >= 400:
            raise ClientRejectedError(
                f"Scorecard request rejected with {response.status_code}",
                context={"url": url, "status_code": response.status_code, "response_body": response.text[:500]}
            )

    async def notify(self, user_id: UUID) -> bool:
        """
        POST {"user_id": ...} to the scorecard endpoint.

        Returns:
            True when the service accepted the request, False otherwise
        """
        if not self.configured:
            logger.debug("Scorecard trigger skipped: EDEN_APP_URL or WORKER_SECRET not set")
            return False

        url = f"{self.base_url.rstrip('/')}{SCORECARD_PATH}"
        attempts = len(self.retry_delays) + 1

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                for attempt in range(attempts):
                    try:
                        await self._post(client, url, user_id)
                        logger.info(f"Scorecard generation triggered for user {user_id}")
                        return True

                    except ClientRejectedError as e:
                        logger.warning(f"Scorecard trigger rejected for user {user_id}: {e.message}")
                        return False

                    except NetworkError as e:
                        if attempt < attempts - 1:
                            delay = self.retry_delays[attempt]
                            logger.warning(
                                f"{e.message}. Retrying in {delay} seconds "
                                f"(attempt {attempt + 1}/{attempts})"
                            )
                            await asyncio.sleep(delay)
                        else:
                            logger.error(
                                f"Scorecard trigger failed for user {user_id} after {attempts} attempts: {e.message}"
                            )
        except Exception as e:
            logger.error(f"Unexpected error triggering scorecard for user {user_id}: {e}")

        return False
