"""
AI provider interface.

The scheduler and refinement only talk to providers through these types.
A provider never raises for an ordinary failed call; it returns a
ProviderResponse with ``success=False`` and says whether the failure is
worth retrying. Cancellation is the exception: it raises Cancelled.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from storyflow.lib.errors import AiProviderFailure, Cancelled

logger = logging.getLogger(__name__)


@dataclass
class ProviderRequest:
    context: str
    instructions: str
    prior_analysis: Optional[str] = None
    workspace: Optional[Path] = None
    session_id: Optional[str] = None


@dataclass
class ProviderResponse:
    success: bool
    output: str = ""
    error: Optional[str] = None
    transient: bool = False
    session_id: Optional[str] = None
    duration: float = 0.0


class AIProvider(Protocol):
    def refine_analysis(self, request: ProviderRequest, cancel_event: threading.Event) -> ProviderResponse:
        ...

    def refine(self, request: ProviderRequest, cancel_event: threading.Event) -> ProviderResponse:
        ...

    def implement(self, request: ProviderRequest, cancel_event: threading.Event) -> ProviderResponse:
        ...


@dataclass
class RetryPolicy:
    """Bounded retries for transient provider failures."""
    max_retries: int = 3
    base_delay: float = 5.0
    max_delay: float = 300.0

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=config.max_ai_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.max_retry_delay,
        )

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


def retry_transient(
    call: Callable[[], ProviderResponse],
    policy: RetryPolicy,
    cancel_event: threading.Event,
    on_retry: Optional[Callable[[int, float, ProviderResponse], None]] = None,
    subject: str = "",
) -> ProviderResponse:
    """
    Invoke a provider call, retrying transient failures with exponential backoff.

    ``on_retry(attempt, delay, response)`` runs before each wait. Waits end
    early when ``cancel_event`` is set.

    Raises:
        Cancelled: If cancelled before or between attempts
        AiProviderFailure: On a terminal failure or once retries run out
    """
    attempt = 0
    while True:
        if cancel_event.is_set():
            raise Cancelled()
        response = call()
        if response.success:
            return response

        error = response.error or "provider call failed"
        if not response.transient:
            raise AiProviderFailure(error, transient=False, subject=subject)
        if attempt >= policy.max_retries:
            raise AiProviderFailure(
                f"{error} (gave up after {attempt + 1} attempts)", transient=True, subject=subject
            )

        attempt += 1
        delay = policy.delay(attempt)
        logger.warning(
            f"[AI] {subject or 'provider call'}: transient failure, "
            f"retry {attempt}/{policy.max_retries} in {delay:.1f}s: {error}"
        )
        if on_retry:
            on_retry(attempt, delay, response)
        if cancel_event.wait(delay):
            raise Cancelled()
