from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from storefleet.proc import AdapterCommandError
from storefleet.services.errors import ReadinessTimeoutError
from storefleet.services.kube_adapter import KubeAdapter, PodStatus

logger = logging.getLogger(__name__)

DEFAULT_READINESS_TIMEOUT = 600
DEFAULT_POLL_INTERVAL = 5


def all_pods_ready(pods: Sequence[PodStatus]) -> bool:
    """At least one pod, and every pod Running with a Ready=True condition."""
    return bool(pods) and all(pod.running_and_ready for pod in pods)


class ReadinessWaiter:
    """Polls pod status in a namespace until every pod is running and ready."""

    def __init__(
        self,
        kube: KubeAdapter,
        *,
        timeout: float = DEFAULT_READINESS_TIMEOUT,
        interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._kube = kube
        self._timeout = timeout
        self._interval = interval
        self._sleep = sleep
        self._clock = clock

    def pods_ready(self, namespace: str) -> bool:
        try:
            return all_pods_ready(self._kube.list_pods(namespace))
        except (AdapterCommandError, ValueError) as exc:
            logger.warning("Error checking pod status in %s: %s", namespace, exc)
            return False

    def wait(self, namespace: str) -> None:
        """Block until the namespace is ready; raise ``ReadinessTimeoutError`` at the deadline.

        Read errors from the platform are logged and retried on the next poll.
        Only the deadline is fatal.
        """
        deadline = self._clock() + self._timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                pods = self._kube.list_pods(namespace)
            except (AdapterCommandError, ValueError) as exc:
                logger.warning(
                    "Transient error polling pods in %s (attempt %s): %s", namespace, attempt, exc
                )
            else:
                if all_pods_ready(pods):
                    logger.info("All %s pod(s) ready in %s after %s poll(s)", len(pods), namespace, attempt)
                    return
                logger.debug(
                    "Pods not ready in %s: %s",
                    namespace,
                    ", ".join(f"{pod.name}={pod.phase}/{'ready' if pod.ready else 'unready'}" for pod in pods)
                    or "none scheduled",
                )

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ReadinessTimeoutError(namespace, self._timeout)
            self._sleep(min(self._interval, remaining))
