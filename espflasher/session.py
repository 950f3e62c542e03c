"""
Session module for espflasher.
Holds the per-connection state and the controller driving it through the bootloader workflow.
"""

import logging
import time
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple

from .chips import CHIP_DEFS, ChipDescriptor
from .config import (
    Protocol,
    ROM_BAUD,
    DEFAULT_CONNECT_ATTEMPTS,
    DEFAULT_SYNC_ATTEMPTS,
    RESET_HOLD_DELAY,
    RESET_RELEASE_DELAY,
    BOOTLOADER_RESET_DELAY,
)
from .engine import CancelToken
from .exceptions import (
    EspFlasherException,
    OperationCancelled,
    SerialConnectionException,
    SessionStateError,
    StubUploadError,
    Timeout,
)
from .programmer import FlashPart, ProgressEvent, Programmer
from .stub import StubImage, upload_stub
from .transport import Transport, TransportLock

logger = logging.getLogger(__name__)

PROTOCOL_OWNER = 'protocol'


class SessionState(Enum):
    DISCONNECTED = 'disconnected'
    IDENTIFYING = 'identifying'
    ROM_ONLY = 'rom_only'
    STUBBED = 'stubbed'
    FLASHING = 'flashing'


IDLE_STATES = (SessionState.ROM_ONLY, SessionState.STUBBED)


class Session:
    """State of one connection to a device."""

    def __init__(self, transport: Transport, lock: Optional[TransportLock] = None, baud: int = ROM_BAUD):
        self.transport = transport
        self.lock = lock or TransportLock()
        self.baud = baud
        self.state = SessionState.DISCONNECTED
        self.flash_size = None
        self._chip = None
        self._stub_active = False

    @property
    def chip(self) -> Optional[ChipDescriptor]:
        return self._chip

    def bind_chip(self, chip: ChipDescriptor) -> None:
        """
        Bind the identified chip. The binding is permanent for the session.

        Raises:
            SessionStateError: If another chip is already bound
        """
        if self._chip is not None and self._chip is not chip:
            raise SessionStateError(f"Session is already bound to {self._chip.name}, "
                                    f"refusing to rebind to {chip.name}")
        self._chip = chip

    @property
    def stub_active(self) -> bool:
        return self._stub_active

    def mark_stub_active(self) -> None:
        self._stub_active = True


def erase_ranges(parts: Sequence[FlashPart]) -> List[Tuple[int, int]]:
    """Sector aligned (offset, size) ranges covering the parts, merged where they touch."""
    sector = Protocol.FLASH_SECTOR_SIZE
    ranges = []
    for part in sorted(parts, key=lambda p: p.offset):
        start = part.offset - part.offset % sector
        end = part.offset + len(part.data)
        end += -end % sector
        if ranges and start <= ranges[-1][1]:
            ranges[-1][1] = max(ranges[-1][1], end)
        else:
            ranges.append([start, end])
    return [(start, end - start) for start, end in ranges if end > start]


class SessionController:
    """
    Drives a session from connect to disconnect.

    All protocol work runs while the transport lock is held. A passive
    monitor sharing the transport is paused on connect and resumed after
    disconnect, at its own baud rate.
    """

    def __init__(self, transport: Optional[Transport], registry: Sequence[ChipDescriptor] = CHIP_DEFS,
                 monitor=None, monitor_baud: Optional[int] = None,
                 cancel_token: Optional[CancelToken] = None):
        """
        Initialize the controller.

        Args:
            transport: Channel to the device
            registry: Chip descriptors used for identification
            monitor: Optional SerialMonitor sharing the transport
            monitor_baud: Baud rate the monitor resumes at, defaults to the monitor's own
            cancel_token: Token used to abort running operations
        """
        self.transport = transport
        self.registry = registry
        self.monitor = monitor
        if monitor is not None:
            self.lock = monitor.lock
            self.monitor_baud = monitor_baud or monitor.baud
        else:
            self.lock = TransportLock()
            self.monitor_baud = monitor_baud
        self.cancel_token = cancel_token or CancelToken()
        self.session = Session(transport, self.lock)
        self.programmer = None
        self._writer = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.state != SessionState.DISCONNECTED:
            self.disconnect()

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def chip(self) -> Optional[ChipDescriptor]:
        return self.session.chip

    def _require_state(self, operation: str, *states: SessionState) -> None:
        if self.state not in states:
            allowed = ', '.join(s.name for s in states)
            raise SessionStateError(f"Cannot {operation} in state {self.state.name} (requires {allowed})")

    def _idle_state(self) -> SessionState:
        return SessionState.STUBBED if self.session.stub_active else SessionState.ROM_ONLY

    def enter_bootloader(self) -> None:
        """Reset the chip into its serial bootloader with the classic DTR/RTS sequence."""
        logger.debug("Resetting into the bootloader")
        self.transport.set_control_lines(True, False)
        time.sleep(RESET_HOLD_DELAY)
        self.transport.set_control_lines(False, True)
        time.sleep(BOOTLOADER_RESET_DELAY)
        self.transport.set_control_lines(False, False)

    def _hard_reset(self, use_watchdog: bool) -> None:
        chip = self.chip
        if use_watchdog and chip is not None and chip.supports_watchdog_reset:
            try:
                if chip.uses_usb_jtag_serial(self.programmer):
                    logger.info("Resetting via RTC watchdog...")
                    chip.watchdog_reset(self.programmer)
            except EspFlasherException as e:
                logger.warning(f"Watchdog reset failed: {e}")
        logger.info("Hard resetting via RTS pin...")
        self.transport.set_control_lines(True, False)
        time.sleep(RESET_HOLD_DELAY)
        self.transport.set_control_lines(False, False)
        time.sleep(RESET_RELEASE_DELAY)

    def _pause_monitor(self) -> None:
        if self.monitor is not None:
            self.monitor.pause()

    def _resume_monitor(self) -> None:
        if self.monitor is None:
            return
        try:
            self.monitor.resume(self.monitor_baud)
        except SerialConnectionException as e:
            logger.warning(f"Could not resume the serial monitor: {e}")

    def _shutdown(self, reset: bool, use_watchdog: bool) -> None:
        with self.lock.hold(PROTOCOL_OWNER):
            if reset and self.transport.is_open:
                try:
                    self._hard_reset(use_watchdog)
                except SerialConnectionException as e:
                    logger.warning(f"Hard reset failed: {e}")
            self.transport.close()
        self.session.state = SessionState.DISCONNECTED
        self._resume_monitor()

    def _abort(self) -> None:
        """Drop the session after a failure it can't continue from."""
        logger.debug("Aborting session")
        self._shutdown(reset=True, use_watchdog=False)

    def connect(self, sync_attempts: int = DEFAULT_SYNC_ATTEMPTS,
                connect_attempts: int = DEFAULT_CONNECT_ATTEMPTS, reset: bool = True) -> ChipDescriptor:
        """
        Open the transport, enter the bootloader and identify the chip.

        Args:
            sync_attempts: SYNC commands per connect attempt
            connect_attempts: Reset and sync rounds before giving up
            reset: Reset into the bootloader before syncing

        Returns:
            Descriptor of the detected chip

        Raises:
            Timeout: If the device never answered
            UnknownChip: If the chip is not in the registry
        """
        if self.transport is None:
            raise SessionStateError("Cannot connect without a transport")
        self._require_state('connect', SessionState.DISCONNECTED)
        self._pause_monitor()
        self.cancel_token.reset()
        self.session = Session(self.transport, self.lock)
        self.programmer = Programmer(self.session, self.registry, self.cancel_token)
        self.session.state = SessionState.IDENTIFYING

        try:
            with self.lock.hold(PROTOCOL_OWNER):
                if self.transport.is_open:
                    self.transport.close()
                self.transport.open(ROM_BAUD)
                chip = self._identify(sync_attempts, connect_attempts, reset)
                self.programmer.describe_chip()
        except EspFlasherException:
            self._abort()
            raise

        self.session.state = self._idle_state()
        return chip

    def _identify(self, sync_attempts: int, connect_attempts: int, reset: bool) -> ChipDescriptor:
        last_error = None
        for attempt in range(connect_attempts):
            if reset:
                self.enter_bootloader()
            self.programmer.engine.flush_input()
            try:
                return self.programmer.identify(sync_attempts)
            except Timeout as e:
                last_error = e
                logger.info(f"Connect attempt {attempt + 1}/{connect_attempts} failed: {e}")
        raise last_error

    @contextmanager
    def _operation(self, state: Optional[SessionState] = None):
        """
        Run a protocol operation with the transport held.

        The session returns to its previous state afterwards, unless the
        operation was cancelled or lost the transport.
        """
        self._pause_monitor()
        prior = self.state
        if state is not None:
            self.session.state = state
        try:
            with self.lock.hold(PROTOCOL_OWNER):
                yield self.programmer
        except (OperationCancelled, SerialConnectionException):
            self._abort()
            raise
        finally:
            if state is not None and self.state is state:
                self.session.state = prior

    def load_stub(self, stub: StubImage) -> None:
        """
        Upload and run the stub loader.

        Raises:
            StubUploadError: If the upload fails; the session is disconnected
        """
        if self.state == SessionState.STUBBED:
            logger.info("Stub is already running")
            return
        self._require_state('load the stub', SessionState.ROM_ONLY)
        try:
            with self._operation() as programmer:
                upload_stub(programmer, stub)
        except StubUploadError:
            self._abort()
            raise
        self.session.state = SessionState.STUBBED

    def erase(self, region: Optional[Tuple[int, int]] = None) -> None:
        """Erase the whole flash, or the (offset, size) region."""
        self._require_state('erase', *IDLE_STATES)
        with self._operation(SessionState.FLASHING) as programmer:
            programmer.erase(region)

    def write(self, parts: Sequence[FlashPart], **options) -> Iterator[ProgressEvent]:
        """
        Write parts to flash.

        The transport stays locked until the returned generator is exhausted
        or closed.

        Args:
            parts: FlashParts to write
            **options: Options of Programmer.write

        Returns:
            Generator of ProgressEvents. Disconnecting closes it.
        """
        self._require_state('write', *IDLE_STATES)
        self._writer = self._flash(parts, None, options)
        return self._writer

    def flash(self, parts: Sequence[FlashPart], erase: Optional[str] = None,
              **options) -> Iterator[ProgressEvent]:
        """
        Erase and write parts to flash.

        Args:
            parts: FlashParts to write
            erase: None, 'all' for the whole chip or 'region' for the sectors the parts touch
            **options: Options of Programmer.write

        Returns:
            Generator of ProgressEvents
        """
        if erase not in (None, 'all', 'region'):
            raise ValueError(f"Unknown erase mode {erase!r}")
        self._require_state('flash', *IDLE_STATES)
        self._writer = self._flash(parts, erase, options)
        return self._writer

    def _flash(self, parts, erase, options) -> Iterator[ProgressEvent]:
        with self._operation(SessionState.FLASHING) as programmer:
            if erase == 'all':
                programmer.erase()
            elif erase == 'region':
                for region in erase_ranges(parts):
                    programmer.erase(region)
            yield from programmer.write(parts, **options)

    def read_flash(self, offset: int, length: int, progress_fn=None) -> bytes:
        """Read flash content."""
        self._require_state('read flash', *IDLE_STATES)
        with self._operation() as programmer:
            return programmer.read_flash(offset, length, progress_fn)

    def change_baud(self, baud: int) -> None:
        """
        Switch the link to a new baud rate.

        Raises:
            SessionStateError: While flashing or when not connected
        """
        if self.state == SessionState.FLASHING:
            raise SessionStateError("Cannot change the baud rate while flashing")
        self._require_state('change the baud rate', *IDLE_STATES)
        with self._operation() as programmer:
            programmer.change_baud(baud)

    def run_app(self) -> None:
        """Start the application through the loader and close the session without a line reset."""
        self._require_state('run the application', *IDLE_STATES)
        with self._operation() as programmer:
            logger.info("Running application...")
            programmer.run()
        self.disconnect(reset=False)

    def _close_writer(self) -> bool:
        """Close a paused write so it releases the transport. Returns True if one was running."""
        writer, self._writer = self._writer, None
        if writer is None or writer.gi_frame is None or writer.gi_running:
            return False
        interrupted = self.state == SessionState.FLASHING
        writer.close()
        if interrupted:
            logger.warning("Write interrupted by disconnect")
        return interrupted

    def disconnect(self, reset: bool = True) -> None:
        """
        Close the session, resetting the chip into its application first.

        A write that is still in progress is stopped first.

        Args:
            reset: Hard reset the chip before closing the transport
        """
        interrupted = self._close_writer()
        if self.state == SessionState.DISCONNECTED:
            return
        self._shutdown(reset, use_watchdog=not interrupted and self.state in IDLE_STATES)
        logger.info("Disconnected")

    def cancel(self) -> None:
        """Abort the running operation at its next response wait."""
        logger.info("Cancelling...")
        self.cancel_token.cancel()
