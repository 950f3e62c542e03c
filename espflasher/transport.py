"""
Transport module for espflasher.
Defines the byte channel the protocol runs on and the pyserial implementation of it.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Optional

import serial

from .config import ROM_BAUD
from .exceptions import SerialConnectionException, TransportBusy

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Duplex byte channel with reset and boot-select line control."""

    @property
    @abstractmethod
    def baudrate(self) -> int:
        """Baud rate the channel is open at."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the channel is open."""

    @abstractmethod
    def open(self, baud: int) -> None:
        """Open the channel at the given baud rate."""

    @abstractmethod
    def close(self) -> None:
        """Close the channel."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Write all bytes."""

    @abstractmethod
    def read(self, timeout: float) -> bytes:
        """Read whatever arrives within timeout seconds, b'' if nothing does."""

    @abstractmethod
    def set_control_lines(self, assert_reset: bool, assert_boot_select: bool) -> None:
        """Drive the chip reset and boot-select lines."""

    def flush_input(self) -> None:
        """Drop bytes already received but not read."""
        while self.read(0.01):
            pass


class SerialTransport(Transport):
    """Transport over a serial port, using pyserial."""

    def __init__(self, port_name: str, read_timeout: float = 0.05):
        """
        Initialize the transport for the specified serial port.

        Args:
            port_name: Serial port name
            read_timeout: Granularity of blocking reads in seconds
        """
        self.port_name = port_name
        self.read_timeout = read_timeout
        self.serial_port = None
        self._baudrate = ROM_BAUD

    @property
    def baudrate(self) -> int:
        return self._baudrate

    @property
    def is_open(self) -> bool:
        return self.serial_port is not None and self.serial_port.is_open

    def open(self, baud: int) -> None:
        try:
            # Opening with DTR/RTS released keeps the chip running
            self.serial_port = serial.serial_for_url(
                self.port_name,
                baudrate=baud,
                timeout=self.read_timeout,
                write_timeout=10,
                do_not_open=True,
            )
            self.serial_port.dtr = False
            self.serial_port.rts = False
            self.serial_port.open()
            self._baudrate = baud
            logger.debug(f"Opened serial port {self.port_name} at {baud} baud")
        except (serial.SerialException, ValueError) as e:
            logger.error(f"Error opening serial port: {e}")
            raise SerialConnectionException(str(e))

    def close(self) -> None:
        if self.serial_port and self.serial_port.is_open:
            self.serial_port.close()
            logger.debug("Serial port closed")
        self.serial_port = None

    def _require_open(self):
        if not self.is_open:
            raise SerialConnectionException(f'{self.port_name} is not open')
        return self.serial_port

    def write(self, data: bytes) -> None:
        port = self._require_open()
        try:
            port.write(data)
            port.flush()
        except serial.SerialException as e:
            raise SerialConnectionException(str(e))

    def read(self, timeout: float) -> bytes:
        port = self._require_open()
        try:
            waiting = port.in_waiting
            if waiting:
                return port.read(waiting)
            port.timeout = min(timeout, self.read_timeout) if timeout > 0 else 0
            return port.read(1)
        except serial.SerialException as e:
            raise SerialConnectionException(str(e))

    def set_control_lines(self, assert_reset: bool, assert_boot_select: bool) -> None:
        # RTS drives EN and DTR drives IO0, both inverted by the auto-reset circuit.
        # Setting DTR again after RTS works around a Windows usbser.sys quirk.
        port = self._require_open()
        port.dtr = assert_boot_select
        port.rts = assert_reset
        port.dtr = assert_boot_select

    def flush_input(self) -> None:
        self._require_open().reset_input_buffer()


class TransportLock:
    """
    Ownership token for a transport.

    Protocol operations hold it for their whole duration. The passive
    monitor only reads while it can take the lock without waiting.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.owner = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def acquire(self, owner: str, blocking: bool = True, timeout: Optional[float] = None) -> bool:
        if not blocking:
            acquired = self._lock.acquire(False)
        elif timeout is None:
            acquired = self._lock.acquire()
        else:
            acquired = self._lock.acquire(True, timeout)
        if acquired:
            self.owner = owner
        return acquired

    def release(self) -> None:
        self.owner = None
        self._lock.release()

    @contextmanager
    def hold(self, owner: str, blocking: bool = True):
        """
        Hold the transport for the duration of a with-block.

        Raises:
            TransportBusy: If blocking is False and somebody else holds it
        """
        if not self.acquire(owner, blocking=blocking):
            raise TransportBusy(self.owner)
        try:
            yield self
        finally:
            self.release()
