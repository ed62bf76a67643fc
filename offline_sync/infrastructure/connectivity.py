from __future__ import annotations

import logging
import socket
import threading
from typing import Callable
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}


class SocketConnectivityProbe:
    """Reports online when a TCP connection to the remote host opens in time."""

    def __init__(self, base_url: str, *, timeout_seconds: float = 3.0) -> None:
        parts = urlsplit(base_url)
        self._host = parts.hostname or ""
        self._port = parts.port or _DEFAULT_PORTS.get(parts.scheme, 443)
        self._timeout_seconds = timeout_seconds

    @property
    def address(self) -> tuple[str, int]:
        return self._host, self._port

    def is_online(self) -> bool:
        if not self._host:
            return False
        try:
            socket.create_connection((self._host, self._port), timeout=self._timeout_seconds).close()
        except OSError:
            return False
        return True


class ConnectivityMonitor:
    def __init__(
        self,
        probe: Callable[[], bool],
        on_change: Callable[[bool], None],
        *,
        poll_seconds: float = 10.0,
    ) -> None:
        self._probe = probe
        self._on_change = on_change
        self._poll_seconds = poll_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_state: bool | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="connectivity-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._poll_seconds)
            self._thread = None

    def poll_once(self) -> bool | None:
        """Probes once and emits only when the state differs from the previous probe."""
        online = bool(self._probe())
        if online == self._last_state:
            return None
        previous = self._last_state
        self._last_state = online
        if previous is None and online:
            return None
        self._on_change(online)
        return online

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("Connectivity probe failed")
            self._stop_event.wait(self._poll_seconds)
