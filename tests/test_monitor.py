"""
Test module for the serial monitor.
"""

import os
import sys
import threading
import time
import unittest
from unittest.mock import MagicMock

# Add parent directory to path to import espflasher modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from espflasher.exceptions import SerialConnectionException, TransportBusy
from espflasher.monitor import SerialMonitor
from espflasher.session import PROTOCOL_OWNER
from simulated_chip import SimulatedChip


def wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


class TestSerialMonitor(unittest.TestCase):
    """Test cases for the passive reader."""

    def setUp(self):
        self.device = SimulatedChip()
        self.received = []
        self.monitor = SerialMonitor(self.device, baud=74880, on_data=self.received.append,
                                     poll_interval=0.01)

    def tearDown(self):
        self.monitor.stop()

    def test_start_opens_at_monitor_baud(self):
        """Test that starting opens the transport at the application baud rate."""
        self.monitor.start()
        self.assertTrue(self.monitor.running)
        self.assertEqual(self.device.baudrate, 74880)

    def test_start_reopens_at_other_baud(self):
        """Test that a transport left at another baud rate gets reopened."""
        self.device.open(921600)
        self.monitor.start(115200)
        self.assertEqual(self.device.baudrate, 115200)
        self.assertEqual(self.monitor.baud, 115200)

    def test_output_is_delivered(self):
        """Test that device output reaches the callback."""
        self.monitor.start()
        self.device.inject(b'Hello from app_main\r\n')
        self.assertTrue(wait_for(lambda: self.received))
        self.assertEqual(b''.join(self.received), b'Hello from app_main\r\n')

    def test_read_chunk_busy(self):
        """Test that reads fail fast while a protocol operation owns the transport."""
        self.device.open(74880)
        with self.monitor.lock.hold(PROTOCOL_OWNER):
            with self.assertRaises(TransportBusy) as cm:
                self.monitor.read_chunk(0)
            with self.assertRaises(TransportBusy):
                self.monitor.send(b'x')
        self.assertEqual(cm.exception.owner, PROTOCOL_OWNER)
        self.device.inject(b'ok')
        self.assertEqual(self.monitor.read_chunk(0), b'ok')

    def test_reader_skips_while_busy(self):
        """Test that the reader thread leaves the transport alone while it is owned."""
        self.monitor.start()
        self.monitor.lock.acquire(PROTOCOL_OWNER)
        try:
            self.device.inject(b'boot message')
            time.sleep(0.1)
            self.assertEqual(self.received, [])
        finally:
            self.monitor.lock.release()
        self.assertTrue(wait_for(lambda: self.received))

    def test_pause_and_resume(self):
        """Test that only a paused monitor restarts on resume."""
        self.monitor.resume()
        self.assertFalse(self.monitor.running)
        self.monitor.start()
        self.monitor.pause()
        self.assertFalse(self.monitor.running)
        self.assertTrue(self.monitor.paused)
        self.device.close()
        self.monitor.resume(115200)
        self.assertTrue(self.monitor.running)
        self.assertFalse(self.monitor.paused)
        self.assertEqual(self.device.baudrate, 115200)

    def test_reader_stops_on_lost_transport(self):
        """Test that a vanished port ends the reader thread."""
        transport = MagicMock()
        transport.is_open = True
        transport.baudrate = 74880
        transport.read.side_effect = SerialConnectionException('device disconnected')
        monitor = SerialMonitor(transport, baud=74880, on_data=self.received.append)
        with self.assertLogs('espflasher.monitor', level='ERROR'):
            monitor.start()
            self.assertTrue(wait_for(lambda: not monitor.running))
        monitor.stop()

    def test_send(self):
        """Test writing to the application."""
        self.device.open(74880)
        transport = MagicMock(wraps=self.device)
        monitor = SerialMonitor(transport)
        monitor.send(b'help\n')
        transport.write.assert_called_once_with(b'help\n')


if __name__ == '__main__':
    unittest.main()
