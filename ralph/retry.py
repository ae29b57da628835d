"""
Retry controller with exponential backoff for agent invocations.

Wraps a single unit of work (one external-agent call), classifies failures
and retries only transient ones. Fatal and Critical failures return at once
with their classification attached so the caller can halt without touching
the last checkpoint.
"""

import logging
import time
from typing import Callable

from ralph import telemetry
from ralph.classifier import RuleSet, classify
from ralph.models import ErrorClassification, ErrorKind, IterationResult

logger = logging.getLogger(__name__)

UnitOfWork = Callable[[], IterationResult]
RetryCallback = Callable[[int, float, ErrorClassification], None]


class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the first retry in seconds
        backoff_multiplier: Factor applied to the delay after each retry
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        backoff_multiplier: float = 2.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff_multiplier = backoff_multiplier


class RetryController:
    """Executes units of work with classification-driven retries.

    Usage:
        controller = RetryController(RetryConfig(max_attempts=3))
        result = controller.execute(lambda: invoker.invoke(prompt))
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        rules: RuleSet | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: RetryCallback | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            config: Attempt budget and backoff parameters
            rules: Error rule set (packaged defaults if None)
            sleep: Blocking wait function, replaceable in tests
            on_retry: Called as (attempt, delay, classification) before each wait
        """
        self.config = config or RetryConfig()
        self.rules = rules
        self._sleep = sleep
        self._on_retry = on_retry

    def execute(self, unit_of_work: UnitOfWork) -> IterationResult:
        """Run the unit of work, retrying transient failures.

        Returns immediately on success or cancellation. Fatal, Critical and
        Unknown failures are returned after the first attempt. Transient
        failures are retried until the attempt budget is spent, after which
        the last failure is returned as-is.

        Args:
            unit_of_work: Zero-argument callable performing one agent call

        Returns:
            The final IterationResult, with classification set on failure
        """
        delay = self.config.base_delay
        attempt = 0

        while True:
            attempt += 1
            result = unit_of_work()
            result.attempts = attempt

            if result.success or result.cancelled:
                return result

            classification = classify(result.error_text, self.rules)
            result.classification = classification

            if classification.kind != ErrorKind.TRANSIENT:
                logger.warning(
                    "%s error on attempt %d, not retrying: %s",
                    classification.kind.value,
                    attempt,
                    classification.message,
                )
                return result

            if attempt >= self.config.max_attempts:
                logger.warning(
                    "Transient error persisted after %d attempts: %s",
                    attempt,
                    classification.message,
                )
                return result

            wait = (
                classification.retry_after
                if classification.retry_after is not None
                else delay
            )
            logger.warning(
                "Transient error: %s Attempt %d/%d, retrying in %.0fs.",
                classification.message,
                attempt,
                self.config.max_attempts,
                wait,
            )
            telemetry.record_retry(classification.kind.value)

            if self._on_retry is not None:
                self._on_retry(attempt, wait, classification)

            self._sleep(wait)
            delay *= self.config.backoff_multiplier
