"""
SLIP framing for the ESP serial bootloader protocol.

Every packet travels as a SLIP frame: a 0xC0 delimiter, the escaped packet,
and another 0xC0. Inside the packet 0xDB is sent as 0xDB 0xDD and 0xC0 as
0xDB 0xDC. A packet is an 8 byte header (direction, opcode, payload length,
checksum or value) followed by the payload.
"""

import logging
import struct
import time
from collections import namedtuple
from typing import Optional, Tuple

from .config import Protocol
from .exceptions import FrameError

logger = logging.getLogger(__name__)

Packet = namedtuple('Packet', ['direction', 'opcode', 'payload', 'checksum'])

_END = Protocol.SLIP_END[0]
_ESC = Protocol.SLIP_ESC[0]
_ESC_END = 0xDC
_ESC_ESC = 0xDD

# Size of the header in front of the data block of FLASH_DATA, MEM_DATA, ...
DATA_BLOCK_HEADER_SIZE = 16


def checksum(data: bytes, state: int = Protocol.CHECKSUM_MAGIC) -> int:
    """
    Calculate the checksum of a data block, as the ROM defines it.

    Args:
        data: Data bytes
        state: Seed value

    Returns:
        Every byte XORed into the seed
    """
    for b in data:
        state ^= b
    return state


def expected_checksum(opcode: int, payload: bytes) -> int:
    """
    Checksum a request with this opcode and payload has to carry.

    Data commands carry the 0xEF seeded checksum of the data block the
    device checks. Every other request carries the checksum of its whole
    payload under a different seed.
    """
    if opcode in Protocol.DATA_COMMANDS:
        return checksum(payload[DATA_BLOCK_HEADER_SIZE:])
    return checksum(payload, Protocol.COMMAND_CHECKSUM_MAGIC)


def data_block(data: bytes, seq: int) -> bytes:
    """
    Build the payload of FLASH_DATA, MEM_DATA and FLASH_DEFL_DATA.

    The 16 byte block header holds the data size, the sequence number and
    two reserved words the loader skips. The last one carries a check value
    over the first 12 header bytes.

    Args:
        data: Block contents
        seq: Sequence number of the block

    Returns:
        Header and data
    """
    header = struct.pack('<III', len(data), seq, 0)
    return header + struct.pack('<I', checksum(header, Protocol.COMMAND_CHECKSUM_MAGIC)) + data


def block_header_ok(payload: bytes) -> bool:
    """Check the block header of a data command payload."""
    if len(payload) < DATA_BLOCK_HEADER_SIZE:
        return False
    check = checksum(payload[:DATA_BLOCK_HEADER_SIZE - 4], Protocol.COMMAND_CHECKSUM_MAGIC)
    return payload[DATA_BLOCK_HEADER_SIZE - 4:DATA_BLOCK_HEADER_SIZE] == struct.pack('<I', check)


def slip_escape(packet: bytes) -> bytes:
    """Wrap a packet in delimiters, escaping the special bytes."""
    escaped = packet.replace(Protocol.SLIP_ESC, Protocol.SLIP_ESC_ESC).replace(
        Protocol.SLIP_END, Protocol.SLIP_ESC_END)
    return Protocol.SLIP_END + escaped + Protocol.SLIP_END


def slip_unescape(frame: bytes) -> bytes:
    """
    Strip the delimiters from a frame and undo the escaping.

    Raises:
        FrameError: If the delimiters are missing, a delimiter shows up
            inside the frame or an escape sequence is invalid
    """
    if len(frame) < 2 or frame[0] != _END or frame[-1] != _END:
        raise FrameError('frame must start and end with a delimiter')
    packet = bytearray()
    in_escape = False
    for b in frame[1:-1]:
        if in_escape:
            in_escape = False
            if b == _ESC_END:
                packet.append(_END)
            elif b == _ESC_ESC:
                packet.append(_ESC)
            else:
                raise FrameError(f'invalid escape sequence 0xdb 0x{b:02x}')
        elif b == _ESC:
            in_escape = True
        elif b == _END:
            raise FrameError('unexpected delimiter before the payload is complete')
        else:
            packet.append(b)
    if in_escape:
        raise FrameError('frame ends inside an escape sequence')
    return bytes(packet)


def encode(opcode: int, payload: bytes = b'', checksum: Optional[int] = None,
           direction: int = Protocol.DIRECTION_REQUEST) -> bytes:
    """
    Build the wire bytes of a packet.

    Args:
        opcode: Command code
        payload: Command payload
        checksum: Value of the checksum field, computed from the payload
            when omitted (for responses this slot carries the reply value)
        direction: Request or response

    Returns:
        The SLIP frame
    """
    if checksum is None:
        checksum = expected_checksum(opcode, payload)
    header = struct.pack(Protocol.HEADER_FORMAT, direction, opcode, len(payload), checksum)
    return slip_escape(header + payload)


def parse_packet(packet: bytes) -> Packet:
    """Split an unescaped packet into its header fields and payload."""
    if len(packet) < Protocol.HEADER_SIZE:
        raise FrameError(f'packet of {len(packet)} bytes is shorter than its header')
    direction, opcode, length, value = struct.unpack(
        Protocol.HEADER_FORMAT, packet[:Protocol.HEADER_SIZE])
    payload = packet[Protocol.HEADER_SIZE:]
    if len(payload) != length:
        raise FrameError(f'header announces {length} payload bytes but {len(payload)} arrived')
    return Packet(direction, opcode, payload, value)


def decode_packet(frame: bytes) -> Packet:
    """Decode a complete SLIP frame into a Packet."""
    return parse_packet(slip_unescape(frame))


def decode(frame: bytes) -> Tuple[int, bytes, bool]:
    """
    Decode a complete SLIP frame.

    Args:
        frame: Wire bytes, delimiters included

    Returns:
        Tuple of (opcode, payload, checksum_ok). Responses carry a value
        instead of a checksum and always report checksum_ok.

    Raises:
        FrameError: If the frame is malformed
    """
    packet = decode_packet(frame)
    if packet.direction == Protocol.DIRECTION_RESPONSE:
        return packet.opcode, packet.payload, True
    checksum_ok = packet.checksum == expected_checksum(packet.opcode, packet.payload)
    if packet.opcode in Protocol.DATA_COMMANDS:
        checksum_ok = checksum_ok and block_header_ok(packet.payload)
    return packet.opcode, packet.payload, checksum_ok


class SlipReader:
    """
    Incremental SLIP decoder on top of a transport.

    Bytes between frames (boot messages, noise) are dropped. A broken
    escape sequence throws the partial frame away and decoding resumes at
    the next delimiter.
    """

    def __init__(self, transport):
        self.transport = transport
        self._partial = None
        self._in_escape = False
        self._pending = []
        self._garbage = bytearray()

    def reset(self) -> None:
        """Forget any partially received frame."""
        self._partial = None
        self._in_escape = False
        self._pending = []
        self._garbage = bytearray()

    def _feed(self, data: bytes) -> None:
        for b in data:
            if self._partial is None:
                if b == _END:
                    if self._garbage:
                        logger.debug(f'Discarded {len(self._garbage)} bytes outside a frame: '
                                     f'{bytes(self._garbage)!r}')
                        self._garbage = bytearray()
                    self._partial = bytearray()
                else:
                    self._garbage.append(b)
            elif self._in_escape:
                self._in_escape = False
                if b == _ESC_END:
                    self._partial.append(_END)
                elif b == _ESC_ESC:
                    self._partial.append(_ESC)
                else:
                    logger.debug(f'Invalid escape 0xdb 0x{b:02x}, resynchronising')
                    self._partial = None
            elif b == _ESC:
                self._in_escape = True
            elif b == _END:
                if self._partial:
                    self._pending.append(bytes(self._partial))
                    self._partial = None
                # An empty frame means we saw the closing delimiter of a frame
                # whose start we missed; treat this delimiter as an opening one.
            else:
                self._partial.append(b)

    def read_frame(self, timeout: float, cancel_token=None) -> Optional[bytes]:
        """
        Read the next complete packet.

        Args:
            timeout: Seconds to wait for the packet
            cancel_token: Optional token checked between reads

        Returns:
            The unescaped packet, or None on timeout
        """
        deadline = time.monotonic() + timeout
        while not self._pending:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            data = self.transport.read(remaining)
            if data:
                self._feed(data)
        return self._pending.pop(0)
