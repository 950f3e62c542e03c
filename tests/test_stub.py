"""
Test module for the stub loader upload.
"""

import base64
import json
import os
import sys
import tempfile
import unittest

# Add parent directory to path to import espflasher modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from espflasher.config import Protocol
from espflasher.exceptions import FileNotFoundException, StubUploadError
from espflasher.programmer import Programmer
from espflasher.session import Session
from espflasher.stub import StubImage, upload_stub
from simulated_chip import SimulatedChip

TEXT_START = 0x40080000
DATA_START = 0x3FFB0000


def make_stub(text_size=0x2000, data_size=0x100):
    return StubImage(
        text=bytes(i & 0xFF for i in range(text_size)),
        text_start=TEXT_START,
        entry=TEXT_START + 4,
        data=b'\x5a' * data_size,
        data_start=DATA_START,
    )


class TestStubImage(unittest.TestCase):
    """Test cases for loading stub images."""

    def test_from_dict(self):
        """Test the esptool JSON layout."""
        stub = StubImage.from_dict({
            'entry': 0x400BE598,
            'text': base64.b64encode(b'\x01\x02').decode(),
            'text_start': 0x400BE000,
            'data': base64.b64encode(b'\x03').decode(),
            'data_start': 0x3FFDEBA8,
            'bss_start': 0x3FFDEB00,
        })
        self.assertEqual(stub.text, b'\x01\x02')
        self.assertEqual(stub.segments(), [(0x400BE000, b'\x01\x02'), (0x3FFDEBA8, b'\x03')])

    def test_from_dict_without_data(self):
        """Test a stub with a text segment only."""
        stub = StubImage.from_dict({'entry': 1, 'text': base64.b64encode(b'\x00').decode(), 'text_start': 0})
        self.assertEqual(len(stub.segments()), 1)

    def test_from_dict_missing_field(self):
        """Test that an incomplete stub is refused."""
        with self.assertRaises(StubUploadError):
            StubImage.from_dict({'text': ''})

    def test_from_json(self):
        """Test loading a stub file."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            json.dump({'entry': 2, 'text': base64.b64encode(b'abcd').decode(), 'text_start': 16}, f)
            path = f.name
        try:
            stub = StubImage.from_json(path)
            self.assertEqual((stub.text, stub.text_start, stub.entry), (b'abcd', 16, 2))
        finally:
            os.unlink(path)
        with self.assertRaises(FileNotFoundException):
            StubImage.from_json(path)


class TestUploadStub(unittest.TestCase):
    """Test cases for running the stub on a simulated device."""

    def setUp(self):
        self.device = SimulatedChip()
        self.device.open(115200)
        self.session = Session(self.device)
        self.programmer = Programmer(self.session)
        self.programmer.identify()

    def test_upload(self):
        """Test that segments land in RAM and the stub takes over."""
        stub = make_stub()
        upload_stub(self.programmer, stub)
        self.assertTrue(self.session.stub_active)
        self.assertEqual(self.device.ram[TEXT_START], stub.text[:Protocol.ESP_RAM_BLOCK])
        self.assertEqual(self.device.ram[TEXT_START + Protocol.ESP_RAM_BLOCK],
                         stub.text[Protocol.ESP_RAM_BLOCK:])
        self.assertEqual(self.device.ram[DATA_START], stub.data)
        self.assertEqual(self.device.opcodes().count(Protocol.MEM_BEGIN), 2)
        self.assertEqual(self.device.opcodes()[-1], Protocol.MEM_END)

    def test_status_length_switches_after_upload(self):
        """Test that commands after the upload use the stub replies."""
        upload_stub(self.programmer, make_stub())
        self.assertEqual(self.programmer.engine.status_bytes_length, 2)
        self.programmer.erase((0x1000, 0x1000))
        self.assertIn(Protocol.ERASE_REGION, self.device.opcodes())

    def test_failed_block_is_not_retried(self):
        """Test that a lost block acknowledgement aborts the upload."""
        stub = make_stub()
        self.device.fail_opcodes.add(Protocol.MEM_DATA)
        with self.assertRaises(StubUploadError):
            upload_stub(self.programmer, stub)
        self.assertEqual(self.device.opcodes().count(Protocol.MEM_DATA), 1)
        self.assertFalse(self.session.stub_active)

    def test_missing_greeting(self):
        """Test that a stub that never says hello is an upload failure."""
        stub = make_stub()
        self.device._cmd_mem_end = lambda opcode, payload: self.device._reply(opcode)
        with self.assertRaises(StubUploadError):
            upload_stub(self.programmer, stub)
        self.assertFalse(self.session.stub_active)

    def test_segment_outside_ram(self):
        """Test that segments must fit a RAM region of the chip."""
        stub = make_stub()
        stub.text_start = 0x40000000
        with self.assertRaises(StubUploadError):
            upload_stub(self.programmer, stub)
        self.assertNotIn(Protocol.MEM_BEGIN, self.device.opcodes())

    def test_skipped_when_stub_running(self):
        """Test that nothing is uploaded if sync found a running stub."""
        self.session.mark_stub_active()
        count = len(self.device.commands)
        upload_stub(self.programmer, make_stub())
        self.assertEqual(len(self.device.commands), count)


if __name__ == '__main__':
    unittest.main()
