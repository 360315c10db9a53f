"""Per-step retry policy used by ``WorkflowContext.step``."""

from __future__ import annotations

import asyncio
import random
from typing import Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_RETRY_BACKOFF_BASE, DEFAULT_RETRY_JITTER


class RetryPolicy(BaseModel):
    """How often a failing step handler is re-invoked within one attempt.

    Retries happen in-process and are not recorded in the history; a step
    keeps a single ``step_start`` however many times its handler runs.
    """

    model_config = {"frozen": True}

    retries: int = Field(default=0, ge=0)
    backoff_base: float = Field(default=DEFAULT_RETRY_BACKOFF_BASE, ge=0)
    jitter: float = Field(default=DEFAULT_RETRY_JITTER, ge=0)
    max_delay: Optional[float] = None

    @classmethod
    def coerce(cls, value: int | RetryPolicy | None) -> RetryPolicy:
        if isinstance(value, RetryPolicy):
            return value
        return cls(retries=value or 0)

    def allows(self, attempt: int) -> bool:
        """Return ``True`` if retry number ``attempt`` (1-based) may run."""
        return attempt <= self.retries

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt``."""
        delay = self.backoff_base**attempt + random.uniform(0, self.jitter)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    async def wait(self, attempt: int) -> None:
        await asyncio.sleep(self.delay_for(attempt))
