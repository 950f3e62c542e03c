"""
Serial monitor module for espflasher.
Passively reads device output from the transport while no protocol operation owns it.
"""

import logging
import sys
import threading
from typing import Callable, Optional

from .config import DEFAULT_MONITOR_BAUD
from .exceptions import SerialConnectionException, TransportBusy
from .transport import Transport, TransportLock

logger = logging.getLogger(__name__)

MONITOR_OWNER = 'monitor'


def write_to_stdout(data: bytes) -> None:
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()


class SerialMonitor:
    """
    Background reader for the application output of the device.

    The monitor never waits for the transport lock: while a protocol
    operation holds it, reads are skipped.
    """

    def __init__(self, transport: Transport, lock: Optional[TransportLock] = None,
                 baud: int = DEFAULT_MONITOR_BAUD, on_data: Callable[[bytes], None] = write_to_stdout,
                 poll_interval: float = 0.05):
        """
        Initialize the monitor.

        Args:
            transport: Transport shared with the session controller
            lock: Transport ownership token shared with the session controller
            baud: Baud rate the application talks at
            on_data: Called with every chunk of received bytes
            poll_interval: Read timeout and back-off while the transport is busy
        """
        self.transport = transport
        self.lock = lock or TransportLock()
        self.baud = baud
        self.on_data = on_data
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread = None
        self._paused = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def paused(self) -> bool:
        return self._paused

    def read_chunk(self, timeout: Optional[float] = None) -> bytes:
        """
        Read whatever the device sent.

        Raises:
            TransportBusy: If a protocol operation owns the transport
        """
        with self.lock.hold(MONITOR_OWNER, blocking=False):
            return self.transport.read(self.poll_interval if timeout is None else timeout)

    def send(self, data: bytes) -> None:
        """
        Send bytes to the application.

        Raises:
            TransportBusy: If a protocol operation owns the transport
        """
        with self.lock.hold(MONITOR_OWNER, blocking=False):
            self.transport.write(data)

    def _run(self) -> None:
        logger.debug("Serial monitor started")
        while not self._stop_event.is_set():
            try:
                data = self.read_chunk()
            except TransportBusy:
                self._stop_event.wait(self.poll_interval)
                continue
            except SerialConnectionException as e:
                logger.error(f"Serial monitor stopped: {e}")
                break
            if data:
                self.on_data(data)
        logger.debug("Serial monitor stopped")

    def start(self, baud: Optional[int] = None) -> None:
        """Open the transport at the monitor baud rate if needed and start reading."""
        if self.running:
            return
        if baud is not None:
            self.baud = baud
        with self.lock.hold(MONITOR_OWNER):
            if self.transport.is_open and self.transport.baudrate != self.baud:
                self.transport.close()
            if not self.transport.is_open:
                self.transport.open(self.baud)
        self._paused = False
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='serial-monitor', daemon=True)
        self._thread.start()
        logger.info(f"Serial monitor running at {self.baud} baud")

    def stop(self) -> None:
        """Stop reading and wait for the reader thread to end."""
        self._paused = False
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def pause(self) -> None:
        """Stop reading, remembering to come back on resume()."""
        if not self.running:
            return
        self.stop()
        self._paused = True
        logger.debug("Serial monitor paused")

    def resume(self, baud: Optional[int] = None) -> None:
        """Restart a paused monitor, reopening the transport at the monitor baud rate."""
        if not self._paused:
            return
        self.start(baud)
