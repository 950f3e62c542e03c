"""
Test module for the command-line interface.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

# Add parent directory to path to import espflasher modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from espflasher import cli
from espflasher.chips import ESP32C5
from espflasher.config import Protocol
from espflasher.programmer import FlashPart, ProgressEvent
from simulated_chip import SimulatedChip


class TestParseArgs(unittest.TestCase):
    """Test cases for argument parsing."""

    def test_defaults(self):
        args = cli.parse_args(['-p', '/dev/ttyUSB0', 'write_flash', '0x1000', 'boot.bin'])
        self.assertEqual(args.baud, 921600)
        self.assertEqual(args.after, 'hard_reset')
        self.assertEqual(args.flash_args, ['0x1000', 'boot.bin'])
        self.assertFalse(args.erase_all)

    def test_erase_options_are_exclusive(self):
        with self.assertRaises(SystemExit):
            cli.parse_args(['-p', 'COM3', 'write_flash', '--erase-all', '--erase-region'])


class TestTaskProgressBar(unittest.TestCase):
    """Test cases for the progress rendering."""

    @patch('espflasher.cli.tqdm')
    def test_one_bar_per_part(self, mock_tqdm):
        parts = [FlashPart(b'\x00' * 10, 0x1000, 'boot.bin'), FlashPart(b'\x00' * 4, 0x8000)]
        progress = cli.TaskProgressBar(parts)
        for event in (ProgressEvent(0, 4, 10), ProgressEvent(0, 10, 10), ProgressEvent(1, 4, 4)):
            progress.show(event)
        self.assertEqual(mock_tqdm.call_count, 2)
        self.assertEqual(mock_tqdm.call_args_list[1].kwargs['desc'], 'Writing 0x8000')
        bar = mock_tqdm.return_value
        self.assertEqual([c.args[0] for c in bar.update.call_args_list], [4, 6, 4])


class TestRunCommand(unittest.TestCase):
    """Test cases for complete commands against a simulated device."""

    def setUp(self):
        self.device = SimulatedChip()
        patcher = patch('espflasher.cli.SerialTransport', return_value=self.device)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir)

    def path(self, name):
        return os.path.join(self.tmpdir, name)

    def run_cli(self, *argv):
        return cli.main(['-p', 'sim', '-b', '115200', '--connect-attempts', '1'] + list(argv))

    def test_no_command(self):
        self.assertEqual(cli.main(['-p', 'sim']), 1)

    def test_chip_id(self):
        self.assertEqual(self.run_cli('chip_id'), 0)
        self.assertFalse(self.device.is_open)

    def test_chip_id_security_report(self):
        """Test that chip_id reports the MAC address and the security eFuses."""
        device = SimulatedChip(chip=ESP32C5)
        base = ESP32C5.efuse_base
        device.registers.update({base + 0x38: 1 << 20, base + 0x44: 0x33445566, base + 0x48: 0x1122})
        with patch('espflasher.cli.SerialTransport', return_value=device):
            with self.assertLogs('espflasher.cli', level='INFO') as logs:
                self.assertEqual(self.run_cli('chip_id'), 0)
        output = '\n'.join(logs.output)
        self.assertIn('MAC: 11:22:33:44:55:66', output)
        self.assertIn('Secure boot: yes', output)
        self.assertIn('Flash encryption: no', output)
        self.assertIn('Flash encryption key present: no', output)

    def test_write_flash(self):
        with open(self.path('app.bin'), 'wb') as f:
            f.write(b'\x42' * 3000)
        with patch('espflasher.cli.tqdm'):
            self.assertEqual(self.run_cli('write_flash', '0x10000', self.path('app.bin')), 0)
        self.assertEqual(bytes(self.device.flash[0x10000:0x10000 + 3000]), b'\x42' * 3000)
        self.assertIn(Protocol.SPI_FLASH_MD5, self.device.opcodes())

    def test_write_flash_bad_pairs(self):
        self.assertEqual(self.run_cli('write_flash', '0x10000'), 1)
        self.assertNotIn(Protocol.FLASH_BEGIN, self.device.opcodes())

    def test_read_flash(self):
        self.device.flash[0:0x100] = bytes(range(256))
        with patch('espflasher.cli.tqdm'):
            self.assertEqual(self.run_cli('read_flash', '0', '0x100', self.path('dump.bin')), 0)
        with open(self.path('dump.bin'), 'rb') as f:
            self.assertEqual(f.read(), bytes(range(256)))

    def test_erase_region_misaligned(self):
        self.assertEqual(self.run_cli('erase_region', '0x1001', '0x1000'), 1)
        self.assertFalse(self.device.is_open)

    def test_no_reset_after(self):
        self.assertEqual(cli.main(['-p', 'sim', '-b', '115200', '--after', 'no_reset', 'chip_id']), 0)
        self.assertEqual(self.device.control_lines[-1], (False, False))
        self.assertEqual(len(self.device.control_lines), 3)

    def test_run_after(self):
        self.assertEqual(self.run_cli('--after', 'run', 'chip_id'), 0)
        self.assertEqual(self.device.opcodes()[-1], Protocol.FLASH_END)

    def test_connect_failure(self):
        with patch('espflasher.session.Programmer.identify',
                   side_effect=cli.EspFlasherException('no answer')):
            self.assertEqual(self.run_cli('chip_id'), 1)


if __name__ == '__main__':
    unittest.main()
