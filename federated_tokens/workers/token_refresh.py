"""Background worker that periodically refreshes expired tokens."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from federated_tokens.core.config import get_settings
from federated_tokens.core.logging import configure_logging
from federated_tokens.dependencies import get_token_service
from federated_tokens.services.tokens import RefreshSummary, TokensError, TokenService

logger = logging.getLogger(__name__)


class TokenRefreshWorker:
    """Run a bulk refresh pass on a fixed interval."""

    def __init__(
        self,
        token_service: TokenService,
        interval_seconds: float = 300.0,
        skip_failed: bool = False,
    ) -> None:
        self._tokens = token_service
        self._interval = interval_seconds
        self._skip_failed = skip_failed

    async def run_once(self) -> Optional[RefreshSummary]:
        """Run one pass; a failed pass is logged and yields ``None``."""
        logger.info("Starting token refresh pass", extra={"skip_failed": self._skip_failed})
        try:
            return await self._tokens.refresh_all_tokens(skip_failed=self._skip_failed)
        except TokensError:
            logger.exception("Token refresh pass aborted")
            return None

    async def run_forever(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    worker = TokenRefreshWorker(
        token_service=get_token_service(),
        interval_seconds=settings.refresh.interval_seconds,
        skip_failed=settings.refresh.skip_failed,
    )
    await worker.run_forever()


if __name__ == "__main__":  # pragma: no cover - manual execution path
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Token refresh worker stopped")
