"""
Readiness Poller

Blocks the handoff until the first-boot script has written its marker file.
Polling is bounded by an attempt count and a deadline; the delay between
attempts doubles up to a ceiling.
"""

import shlex
import time
import logging
from typing import Callable, NamedTuple

import paramiko

from learnstack.services.errors import ProvisioningError
from learnstack.services.remote import HostKeyVerificationError

logger = logging.getLogger(__name__)


class ReadinessCheckError(Exception):
    """A single readiness check could not reach the host"""
    pass


class ReadinessTimeoutError(ProvisioningError):
    """The marker file did not appear within the polling budget"""

    def __init__(self, attempts: int, elapsed: float):
        super().__init__(
            f"Host not ready after {attempts} attempts ({elapsed:.0f}s); "
            f"the boot script may have failed"
        )
        self.attempts = attempts
        self.elapsed = elapsed


class ReadinessPolicy(NamedTuple):
    initial_grace: float = 30.0
    max_attempts: int = 20
    base_delay: float = 5.0
    max_delay: float = 60.0
    deadline: float = 1800.0

    @classmethod
    def from_settings(cls, readiness) -> "ReadinessPolicy":
        return cls(
            initial_grace=readiness.initial_grace,
            max_attempts=readiness.max_attempts,
            base_delay=readiness.base_delay,
            max_delay=readiness.max_delay,
            deadline=readiness.deadline,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)"""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def wait_for_marker(
    check: Callable[[], bool],
    policy: ReadinessPolicy,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """
    Poll ``check`` until it reports the marker present.

    Args:
        check: Returns True once the marker exists, False while it is absent;
            raises ReadinessCheckError when the host cannot be reached
        policy: Grace period, attempt budget, backoff and deadline
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        Number of attempts it took

    Raises:
        ReadinessTimeoutError: Once the attempts or the deadline are exhausted
    """
    started = clock()
    if policy.initial_grace > 0:
        logger.info(f"Waiting {policy.initial_grace:.0f}s before the first readiness check")
        sleep(policy.initial_grace)

    attempt = 0
    while attempt < policy.max_attempts:
        attempt += 1
        try:
            if check():
                logger.info(f"Host ready after {attempt} attempts", extra={"attempts": attempt})
                return attempt
            logger.info(f"Marker absent (attempt {attempt}/{policy.max_attempts})")
        except ReadinessCheckError as e:
            logger.info(f"Host unreachable (attempt {attempt}/{policy.max_attempts}): {str(e)}")

        if attempt >= policy.max_attempts:
            break

        delay = policy.backoff_delay(attempt)
        if clock() - started + delay > policy.deadline:
            logger.warning(f"Readiness deadline of {policy.deadline:.0f}s reached")
            break
        sleep(delay)

    elapsed = clock() - started
    logger.error(
        f"Host not ready after {attempt} attempts",
        extra={"attempts": attempt, "elapsed": elapsed}
    )
    raise ReadinessTimeoutError(attempt, elapsed)


def marker_check(session_factory: Callable, marker_path: str) -> Callable[[], bool]:
    """
    Build a check that opens a fresh SSH session and tests for the marker file.

    A host key mismatch is not retried.
    """
    command = f"test -f {shlex.quote(marker_path)}"

    def check() -> bool:
        try:
            with session_factory() as session:
                return session.run(command, check=False).exit_status == 0
        except HostKeyVerificationError:
            raise
        except (paramiko.SSHException, OSError) as e:
            raise ReadinessCheckError(str(e)) from e

    return check
