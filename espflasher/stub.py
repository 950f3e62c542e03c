"""
Stub loader module for espflasher.
Uploads a second stage loader into RAM through the ROM command set and starts it.
"""

import base64
import json
import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .chip_helper import ChipHelper
from .config import Protocol, STUB_GREETING_TIMEOUT
from .exceptions import (
    FileNotFoundException,
    FrameError,
    InvalidFlashRangeException,
    ProtocolError,
    StubUploadError,
    Timeout,
)

logger = logging.getLogger(__name__)


@dataclass
class StubImage:
    """Code and data segments of a stub loader plus its entry point."""
    text: bytes
    text_start: int
    entry: int
    data: bytes = b''
    data_start: Optional[int] = None
    bss_start: Optional[int] = None

    @classmethod
    def from_dict(cls, stub: dict) -> 'StubImage':
        """
        Build a stub image from the esptool stub JSON layout.

        Args:
            stub: Dict with base64 'text'/'data' and the start addresses

        Returns:
            The stub image
        """
        try:
            data = stub.get('data')
            return cls(
                text=base64.b64decode(stub['text']),
                text_start=stub['text_start'],
                entry=stub['entry'],
                data=base64.b64decode(data) if data else b'',
                data_start=stub.get('data_start'),
                bss_start=stub.get('bss_start'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StubUploadError(f"Invalid stub image: {e}")

    @classmethod
    def from_json(cls, path: str) -> 'StubImage':
        """Load a stub image from a JSON file."""
        if not os.path.exists(path):
            raise FileNotFoundException(path)
        with open(path, 'r') as f:
            try:
                return cls.from_dict(json.load(f))
            except json.JSONDecodeError as e:
                raise StubUploadError(f"Invalid stub file {path}: {e}")

    def segments(self) -> List[Tuple[int, bytes]]:
        """(load address, bytes) of every non-empty segment."""
        segments = [(self.text_start, self.text)]
        if self.data and self.data_start is not None:
            segments.append((self.data_start, self.data))
        return segments


def upload_stub(programmer, stub: StubImage) -> None:
    """
    Upload the stub to RAM, run it and wait for its greeting.

    Blocks are sent once each; a failed block aborts the whole upload and the
    device has to be synced again from scratch.

    Args:
        programmer: Programmer of a session whose chip has been identified
        stub: Stub image to run

    Raises:
        StubUploadError: If any step of the upload fails
    """
    session = programmer.session
    if session.stub_active:
        logger.info("Stub is already running, skipping upload")
        return

    helper = ChipHelper(programmer.chip)
    logger.info("Uploading stub...")
    try:
        for offset, data in stub.segments():
            helper.check_ram_range(offset, len(data))
        for offset, data in stub.segments():
            blocks = (len(data) + Protocol.ESP_RAM_BLOCK - 1) // Protocol.ESP_RAM_BLOCK
            logger.debug(f"Writing {len(data)} bytes to RAM at {offset:#010x} in {blocks} blocks")
            programmer.mem_begin(len(data), blocks, Protocol.ESP_RAM_BLOCK, offset)
            for seq in range(blocks):
                block = data[seq * Protocol.ESP_RAM_BLOCK:(seq + 1) * Protocol.ESP_RAM_BLOCK]
                programmer.mem_block(block, seq)
        logger.info("Running stub...")
        programmer.mem_finish(stub.entry)
        greeting = programmer.engine.read_packet(STUB_GREETING_TIMEOUT)
    except InvalidFlashRangeException as e:
        raise StubUploadError(f"Stub segment does not fit the {programmer.chip.name} RAM: {e}") from e
    except (Timeout, ProtocolError, FrameError) as e:
        raise StubUploadError(str(e)) from e

    if greeting != Protocol.STUB_GREETING:
        raise StubUploadError(f"Failed to start stub. Unexpected response: {greeting!r}")
    session.mark_stub_active()
    logger.info("Stub running...")
