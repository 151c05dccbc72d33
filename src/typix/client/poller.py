"""Client-side polling of generation status.

Generations run on the server while the client watches them: after an
initial delay the poller reads the record every ``poll_interval`` seconds
until it reaches ``completed`` or ``failed``. Each read is delivered as
``on_update(message_id, {"generation": status})``.

Polling also stops on :meth:`GenerationPoller.stop` or after
``max_duration`` seconds. The local timeout does not change the record; a
record left behind is timed out by the server on its next status read.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

import requests

from typix.core.config import TypixConfig, config
from typix.core.errors import ServiceException
from typix.core.generation import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[str, dict[str, Any]], None]


class StatusSource(Protocol):
    def get_generation_status(self, generation_id: str) -> dict[str, Any] | None: ...


class GenerationPoller:
    """Poll one generation on a background thread.

    Args:
        client: Anything with ``get_generation_status(generation_id)``
        generation_id: Record to watch
        message_id: Assistant message the record belongs to
        on_update: Receives every status read
        initial_delay: Seconds before the first read
        interval: Seconds between reads
        max_duration: Seconds after which polling gives up
        on_finish: Called once when the loop exits, for any reason
    """

    def __init__(
        self,
        client: StatusSource,
        generation_id: str,
        message_id: str,
        on_update: UpdateCallback,
        initial_delay: float = 3.0,
        interval: float = 3.0,
        max_duration: float = 303.0,
        on_finish: Callable[["GenerationPoller"], None] | None = None,
    ) -> None:
        self.client = client
        self.generation_id = generation_id
        self.message_id = message_id
        self.on_update = on_update
        self.initial_delay = initial_delay
        self.interval = interval
        self.max_duration = max_duration
        self.on_finish = on_finish
        self.last_status: dict[str, Any] | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"typix-poll-{self.generation_id}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def poll_once(self) -> dict[str, Any] | None:
        """Read the status once and deliver it.

        Transport errors are logged and reported as None; the next tick
        tries again.
        """
        try:
            status = self.client.get_generation_status(self.generation_id)
        except (requests.RequestException, ServiceException) as e:
            logger.warning(f"Error polling generation {self.generation_id}: {e}")
            return None

        if status is not None:
            self.last_status = status
            self.on_update(self.message_id, {"generation": status})
        return status

    def _run(self) -> None:
        started = time.monotonic()
        try:
            if self._stop.wait(self.initial_delay):
                return

            while True:
                status = self.poll_once()
                if status is not None and status.get("status") in TERMINAL_STATUSES:
                    logger.debug(f"Generation {self.generation_id} reached {status['status']}")
                    return
                if time.monotonic() - started >= self.max_duration:
                    logger.warning(
                        f"Stopped polling generation {self.generation_id} after {self.max_duration:.0f}s"
                    )
                    return
                if self._stop.wait(self.interval):
                    return
        finally:
            if self.on_finish is not None:
                self.on_finish(self)


class PollerRegistry:
    """At most one active poller per generation id."""

    def __init__(
        self,
        client: StatusSource,
        on_update: UpdateCallback,
        app_config: TypixConfig | None = None,
    ) -> None:
        self.client = client
        self.on_update = on_update
        self.config = app_config or config
        self._pollers: dict[str, GenerationPoller] = {}
        self._lock = threading.Lock()

    def start(self, generation_id: str, message_id: str) -> GenerationPoller:
        """Start polling ``generation_id``; a no-op if it is already polled."""
        with self._lock:
            existing = self._pollers.get(generation_id)
            if existing is not None and existing.active:
                return existing

            poller = GenerationPoller(
                self.client,
                generation_id,
                message_id,
                self.on_update,
                initial_delay=self.config.poll_initial_delay,
                interval=self.config.poll_interval,
                max_duration=self.config.generation_stale_minutes * 60 + self.config.poll_interval,
                on_finish=self._finished,
            )
            self._pollers[generation_id] = poller
            poller.start()
            return poller

    def _finished(self, poller: GenerationPoller) -> None:
        with self._lock:
            if self._pollers.get(poller.generation_id) is poller:
                del self._pollers[poller.generation_id]

    def is_active(self, generation_id: str) -> bool:
        with self._lock:
            poller = self._pollers.get(generation_id)
        return poller is not None and poller.active

    def stop(self, generation_id: str) -> None:
        with self._lock:
            poller = self._pollers.pop(generation_id, None)
        if poller is not None:
            poller.stop()

    def stop_all(self, timeout: float | None = None) -> None:
        """Stop every poller and wait up to ``timeout`` seconds for each."""
        with self._lock:
            pollers = list(self._pollers.values())
            self._pollers.clear()
        for poller in pollers:
            poller.stop()
        for poller in pollers:
            poller.join(timeout)
