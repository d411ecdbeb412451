"""Bounded polling with fixed backoff.

Used by the identity provisioner while it waits for the database trigger
to create a parents row.
"""

import logging
import time

logger = logging.getLogger(__name__)


def _found(result):
    return result is not None


def poll(fetch, attempts, interval, until=_found, initial_delay=0, sleep=time.sleep,
         label="poll"):
    """Call ``fetch`` until ``until(result)`` is true or attempts run out.

    Args:
        fetch:         Zero-arg callable, called once per attempt.
        attempts:      Max number of calls to ``fetch`` (at least 1).
        interval:      Seconds to sleep between attempts (fixed backoff).
        until:         Predicate on the fetched value. Defaults to "not None".
        initial_delay: Seconds to sleep before the first attempt.
        sleep:         Injected for tests.
        label:         Name used in log lines.

    Returns the first accepted result, or None if every attempt missed.
    Exceptions raised by ``fetch`` propagate.
    """
    attempts = max(1, int(attempts))

    if initial_delay:
        sleep(initial_delay)

    for attempt in range(1, attempts + 1):
        result = fetch()
        if until(result):
            if attempt > 1:
                logger.info(f"{label}: succeeded on attempt {attempt}/{attempts}")
            return result

        if attempt < attempts:
            logger.debug(
                f"{label}: attempt {attempt}/{attempts} missed, retrying in {interval}s"
            )
            if interval:
                sleep(interval)

    logger.info(f"{label}: gave up after {attempts} attempts")
    return None
