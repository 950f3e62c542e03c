#!/usr/bin/env python3
"""
Example script demonstrating how to use espflasher as a library.
"""

import os
import sys
import logging

# Add the parent directory to the path so we can import the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from espflasher import (
    EspFlasherException,
    FlashPart,
    SerialMonitor,
    SerialTransport,
    SessionController,
    StubImage,
)

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def main():
    """
    Example function demonstrating how to use espflasher as a library.

    Connects to the device, writes an application image and leaves the
    serial monitor running at the application baud rate.
    """
    # Parameters
    port_name = '/dev/ttyUSB0'  # Change this to your actual port
    firmware_file = 'firmware.bin'  # Change this to your actual firmware file
    stub_file = None  # esptool stub JSON for the chip, optional
    address = 0x10000

    transport = SerialTransport(port_name)
    monitor = SerialMonitor(transport, baud=115200)

    try:
        with open(firmware_file, 'rb') as f:
            parts = [FlashPart(f.read(), address, firmware_file)]

        # The controller pauses the monitor while it owns the port
        monitor.start()

        with SessionController(transport, monitor=monitor) as controller:
            chip = controller.connect()
            logger.info(f"Connected to {chip.name}")

            if stub_file:
                controller.load_stub(StubImage.from_json(stub_file))
                controller.change_baud(921600)

            for event in controller.flash(parts, erase='region'):
                logger.info(f"Part {event.part_index}: {event.bytes_written}/{event.bytes_total}")

            controller.disconnect()

        logger.info("Library usage example completed successfully")

    except (EspFlasherException, OSError) as e:
        logger.error(f"Error: {e}")
        return 1
    finally:
        monitor.stop()
        transport.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
