import logging
import threading
import time
from typing import Callable, Optional

from requests.exceptions import RequestException

from client.api_client import APIClient, APIError

logger = logging.getLogger(__name__)


class ReconnectingSubscription:
    """Follows the user's change events on a background thread.

    Every (re)connect waits for the server to confirm the subscription and
    then calls ``on_resync`` before any incremental event is delivered, so
    whatever changed while disconnected is picked up by a full re-read.
    """

    def __init__(
        self,
        client: APIClient,
        on_event: Callable[[dict], None],
        on_resync: Callable[[], None],
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
    ):
        self._client = client
        self._on_event = on_event
        self._on_resync = on_resync
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stream = None
        self.connected = False

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="job-events", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        stream = self._stream
        if stream is not None:
            stream.close()

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> None:
        """One connection lifetime: connect, resync, then apply events until the stream ends."""
        stream = self._client.open_event_stream()
        self._stream = stream
        try:
            stream.wait_until_ready()
            self.connected = True
            self._on_resync()
            for event in stream:
                if self._stop.is_set():
                    return
                self._on_event(event)
        finally:
            self.connected = False
            self._stream = None
            stream.close()

    def run(self) -> None:
        delay = self._retry_delay
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self.run_once()
            except (RequestException, APIError) as e:
                logger.warning("Change stream dropped: %s", e)
            if self._stop.is_set():
                break
            # A connection that stayed up for a while resets the backoff.
            if time.monotonic() - started > self._max_retry_delay:
                delay = self._retry_delay
            logger.info("Reconnecting to change stream in %.1fs", delay)
            self._stop.wait(delay)
            delay = min(delay * 2, self._max_retry_delay)
