"""
Command/response engine for espflasher.
Sends one command at a time over the session transport and matches it with its reply.
"""

import logging
import struct
import threading
import time
from collections import namedtuple
from typing import Optional

from . import slip
from .config import (
    Protocol,
    DEFAULT_TIMEOUT,
    DEFAULT_COMMAND_ATTEMPTS,
    DEFAULT_SYNC_ATTEMPTS,
    MAX_TIMEOUT,
    SYNC_INTERVAL,
    SYNC_TIMEOUT,
)
from .exceptions import (
    FrameError,
    OperationCancelled,
    ProtocolError,
    SessionStateError,
    Timeout,
)

logger = logging.getLogger(__name__)

Response = namedtuple('Response', ['opcode', 'value', 'data'])


def command_name(opcode: int) -> str:
    return Protocol.COMMAND_NAMES.get(opcode, f'0x{opcode:02x}')


class CancelToken:
    """Lets another thread abort a running protocol operation."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()


class CommandEngine:
    """
    Executes bootloader commands over the transport of a session.

    The caller must hold the session transport lock; the engine never has
    more than one command in flight.
    """

    def __init__(self, session, cancel_token: Optional[CancelToken] = None):
        """
        Initialize the engine.

        Args:
            session: Session owning the transport
            cancel_token: Token checked while waiting for responses
        """
        self.session = session
        self.cancel_token = cancel_token or CancelToken()
        self.reader = slip.SlipReader(session.transport)
        self.sync_stub_detected = False

    @property
    def status_bytes_length(self) -> int:
        if self.session.stub_active or self.session.chip is None:
            return Protocol.STUB_STATUS_BYTES_LENGTH
        return self.session.chip.rom_status_bytes_length

    def _check_command_set(self, opcode: int) -> None:
        if self.session.stub_active and opcode in Protocol.ROM_ONLY_COMMANDS:
            raise SessionStateError(f'{command_name(opcode)} is only supported by the ROM loader')
        if not self.session.stub_active and opcode in Protocol.STUB_ONLY_COMMANDS:
            raise SessionStateError(f'{command_name(opcode)} is only supported by the stub loader')

    def _send(self, opcode: int, payload: bytes = b'', checksum: Optional[int] = None) -> None:
        frame = slip.encode(opcode, payload, checksum)
        logger.debug(f"Sent {command_name(opcode)} with payload length {len(payload)}")
        self.session.transport.write(frame)

    def _recv(self, opcode: Optional[int], timeout: float) -> Optional[Response]:
        """
        Wait for the response to a command.

        Args:
            opcode: Opcode of the outstanding command, None accepts any response
            timeout: Seconds to wait

        Returns:
            The response, or None if none matched before the timeout
        """
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            packet = self.reader.read_frame(remaining, self.cancel_token)
            if packet is None:
                return None
            try:
                direction, op_ret, data, value = slip.parse_packet(packet)
            except FrameError as e:
                logger.debug(f"Dropped packet: {e}")
                continue
            if direction != Protocol.DIRECTION_RESPONSE:
                continue
            if opcode is None or op_ret == opcode:
                return Response(op_ret, value, data)
            # A ROM that did not understand the request answers with a status
            # but without echoing the opcode we are waiting for.
            if len(data) >= 2 and data[0] != 0 and data[1] == Protocol.ROM_INVALID_RECV_MSG:
                self.flush_input()
                raise ProtocolError(f'{command_name(opcode)} is not supported by the device',
                                    data[1])
            logger.debug(f"Discarded stale {command_name(op_ret)} response while waiting "
                         f"for {command_name(opcode)}")

    def read_packet(self, timeout: float = DEFAULT_TIMEOUT) -> Optional[bytes]:
        """Read one raw packet, for exchanges that do not follow the request/response shape."""
        return self.reader.read_frame(min(timeout, MAX_TIMEOUT), self.cancel_token)

    def write_packet(self, packet: bytes) -> None:
        """Write one raw packet, wrapped in SLIP framing."""
        self.session.transport.write(slip.slip_escape(packet))

    def execute(self, opcode: int, payload: bytes = b'', checksum: Optional[int] = None,
                timeout: float = DEFAULT_TIMEOUT, attempts: int = DEFAULT_COMMAND_ATTEMPTS) -> Response:
        """
        Send a command and wait for its response.

        Args:
            opcode: Command code
            payload: Command payload
            checksum: Checksum field, computed when omitted
            timeout: Seconds to wait for each attempt
            attempts: How often the command is sent before giving up

        Returns:
            The matching response

        Raises:
            Timeout: If no attempt got a matching response
            ProtocolError: If the device did not understand the command
            OperationCancelled: If the cancel token fired while waiting
        """
        self._check_command_set(opcode)
        timeout = min(timeout, MAX_TIMEOUT)
        for attempt in range(attempts):
            self.cancel_token.raise_if_cancelled()
            self._send(opcode, payload, checksum)
            response = self._recv(opcode, timeout)
            if response is not None:
                return response
            if attempt < attempts - 1:
                logger.debug(f"No response to {command_name(opcode)}, retrying "
                             f"({attempts - attempt - 1} attempts left)")
        raise Timeout(command_name(opcode), attempts)

    def check_command(self, description: str, opcode: int, payload: bytes = b'',
                      checksum: Optional[int] = None, timeout: float = DEFAULT_TIMEOUT,
                      attempts: int = DEFAULT_COMMAND_ATTEMPTS):
        """
        Execute a command and check the status bytes of its response.

        Returns:
            The response data in front of the status bytes if there is any,
            otherwise the value field of the response

        Raises:
            ProtocolError: If the response reports a failure
        """
        response = self.execute(opcode, payload, checksum, timeout=timeout, attempts=attempts)
        status_length = self.status_bytes_length
        data = response.data
        if len(data) < status_length:
            raise ProtocolError(f'Failed to {description}. Only got {len(data)} byte status response.')
        status = data[-status_length:]
        if status[0] != 0:
            raise ProtocolError(f'Failed to {description}', status[1])
        if len(data) > status_length:
            return data[:-status_length]
        return response.value

    def flush_input(self) -> None:
        self.session.transport.flush_input()
        self.reader.reset()

    def sync(self, attempts: int = DEFAULT_SYNC_ATTEMPTS, interval: float = SYNC_INTERVAL) -> bool:
        """
        Perform the sync handshake with the device.

        Args:
            attempts: Number of SYNC commands sent before giving up
            interval: Pause between two attempts in seconds

        Returns:
            True if a stub answered instead of the ROM loader

        Raises:
            Timeout: If none of the attempts got a response
        """
        for attempt in range(attempts):
            self.cancel_token.raise_if_cancelled()
            try:
                response = self.execute(Protocol.SYNC, Protocol.SYNC_PAYLOAD,
                                        timeout=SYNC_TIMEOUT, attempts=1)
            except Timeout:
                logger.debug(f"Sync attempt {attempt + 1}/{attempts} got no response")
                time.sleep(interval)
                continue
            # ROM loaders answer with a non-zero value, a running stub with 0
            self.sync_stub_detected = response.value == 0
            # The ROM answers one SYNC with several replies; drain the rest
            while True:
                extra = self._recv(None, SYNC_TIMEOUT)
                if extra is None:
                    break
                self.sync_stub_detected &= extra.value == 0
            logger.debug("Sync successful")
            return self.sync_stub_detected
        raise Timeout('SYNC', attempts)

    def read_reg(self, addr: int, timeout: float = DEFAULT_TIMEOUT) -> int:
        """
        Read a 32-bit register or memory word of the device.

        Args:
            addr: Register address

        Returns:
            Register value
        """
        # The status length differs between chips and is unknown while the
        # chip is being detected, so only the first status byte is checked.
        response = self.execute(Protocol.READ_REG, struct.pack('<I', addr), timeout=timeout)
        if response.data and response.data[0] != 0:
            error_code = response.data[1] if len(response.data) > 1 else None
            raise ProtocolError(f'Failed to read register address {addr:08x}', error_code)
        return response.value

    def write_reg(self, addr: int, value: int, mask: int = 0xFFFFFFFF, delay_us: int = 0) -> int:
        """Write a 32-bit register or memory word of the device."""
        payload = struct.pack('<IIII', addr, value, mask, delay_us)
        return self.check_command('write target memory', Protocol.WRITE_REG, payload)
