"""Step retry strategies.

Retries are not slept in-process: a failed attempt is logged as
``retrying`` and the enrollment is rescheduled ``compute_delay(attempt)``
seconds later, so the worker pool is never held by a waiting step.

Provides configurable policies:
- Fixed delay (the default: 5 minutes between attempts, 3 attempts)
- Exponential backoff (with optional jitter)
- Linear backoff

Only transient provider errors (timeouts, 5xx, throttling) are retried.
Per-action overrides come from the action's ``retry`` block:

    {"policy": "exponential", "max_attempts": 5, "base_delay": 60}
"""

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from core.exceptions import ProviderError


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Retry schedule for one workflow step.

    ``max_attempts`` counts every attempt, the first included.
    """
    policy: RetryPolicy
    max_attempts: int = 3
    base_delay: float = 300.0
    max_delay: float = 86400.0
    jitter: bool = False
    jitter_range: float = 0.2

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries: the first failure is final."""
        return cls(policy=RetryPolicy.NONE, max_attempts=1)

    @classmethod
    def fixed(cls, max_attempts: int = 3, delay: float = 300.0) -> 'RetryStrategy':
        """Fixed delay between attempts."""
        return cls(
            policy=RetryPolicy.FIXED,
            max_attempts=max_attempts,
            base_delay=delay,
            jitter=False,
        )

    @classmethod
    def exponential(
        cls,
        max_attempts: int = 5,
        base_delay: float = 60.0,
        max_delay: float = 3600.0,
        jitter: bool = True,
    ) -> 'RetryStrategy':
        """Exponential backoff with optional jitter."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def linear(
        cls,
        max_attempts: int = 5,
        base_delay: float = 120.0,
        max_delay: float = 3600.0,
    ) -> 'RetryStrategy':
        """Linear backoff: delay = base_delay * attempt_number."""
        return cls(
            policy=RetryPolicy.LINEAR,
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=False,
        )

    @classmethod
    def from_dict(cls, config: dict, default: Optional['RetryStrategy'] = None) -> 'RetryStrategy':
        """Create a strategy from an action's ``retry`` block.

        Keys missing from `config` are taken from `default` when given.
        """
        base = default or cls.fixed()
        policy = config.get('policy', base.policy.value)
        return cls(
            policy=RetryPolicy(policy),
            max_attempts=int(config.get('max_attempts', base.max_attempts)),
            base_delay=float(config.get('base_delay', base.base_delay)),
            max_delay=float(config.get('max_delay', base.max_delay)),
            jitter=bool(config.get('jitter', base.jitter)),
            jitter_range=float(config.get('jitter_range', base.jitter_range)),
        )

    def to_dict(self) -> dict:
        """Serialize to dict for storage in an action definition."""
        return {
            'policy': self.policy.value,
            'max_attempts': self.max_attempts,
            'base_delay': self.base_delay,
            'max_delay': self.max_delay,
            'jitter': self.jitter,
            'jitter_range': self.jitter_range,
        }

    def compute_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.FIXED:
            delay = self.base_delay
        elif self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return round(delay, 3)

    def compute_delay_ms(self, attempt: int) -> int:
        return int(self.compute_delay(attempt) * 1000)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Whether failed attempt number `attempt` gets another try.

        Timeouts and transient provider errors are retried; permanent
        provider rejections and anything unclassified are not.
        """
        if self.policy == RetryPolicy.NONE:
            return False

        if attempt >= self.max_attempts:
            return False

        if error is None:
            return True

        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return True
        if isinstance(error, ProviderError):
            return error.retryable
        return False


# ─── Preset strategies ───

RETRY_PRESETS: dict[str, RetryStrategy] = {
    'none': RetryStrategy.none(),
    'default': RetryStrategy.fixed(max_attempts=3, delay=300.0),
    'messaging': RetryStrategy.exponential(max_attempts=4, base_delay=120.0, max_delay=1800.0),
    'appointments': RetryStrategy.linear(max_attempts=3, base_delay=300.0, max_delay=1800.0),
}
