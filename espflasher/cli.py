"""
Command-line interface module for espflasher.
"""

import argparse
import logging
import sys
import time
from typing import List, Optional, Sequence

from tqdm import tqdm

from .chip_helper import ChipHelper
from .config import DEFAULT_FLASH_BAUD, DEFAULT_MONITOR_BAUD, ROM_BAUD
from .exceptions import EspFlasherException, SessionStateError, UnsupportedFeature
from .manifest import load_flash_args, load_manifest
from .monitor import SerialMonitor
from .programmer import FlashPart, ProgressEvent
from .session import SessionController
from .stub import StubImage
from .transport import SerialTransport

logger = logging.getLogger(__name__)

FLASH_MODE_CHOICES = ['keep', 'qio', 'qout', 'dio', 'dout']

SECURITY_FLAG_NAMES = {
    'flash_encryption': 'Flash encryption',
    'secure_boot': 'Secure boot',
    'encrypted_download_disabled': 'Manual encrypted download disabled',
    'flash_encryption_key_valid': 'Flash encryption key present',
}


class TaskProgressBar:
    """Renders ProgressEvents as one tqdm bar per part."""

    def __init__(self, parts: Sequence[FlashPart]):
        self.parts = parts
        self.last_part_index = None
        self.last_written = 0
        self.pbar = None

    def show(self, event: ProgressEvent) -> None:
        if event.part_index != self.last_part_index:
            self.close()
            self.last_part_index = event.part_index
            self.last_written = 0
            part = self.parts[event.part_index]
            desc = part.name or f'{part.offset:#x}'
            self.pbar = tqdm(total=event.bytes_total, unit='B', unit_scale=True, desc=f'Writing {desc}')

        self.pbar.update(event.bytes_written - self.last_written)
        self.last_written = event.bytes_written
        if event.bytes_written == event.bytes_total:
            self.close()

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None


def setup_logging(verbose: bool = False) -> None:
    """
    Set up logging configuration.

    Args:
        verbose: Whether to enable verbose logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler()
        ]
    )


def parse_args(args: List[str] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments (optional)

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(description="ESP serial bootloader flasher")
    parser.add_argument("-p", "--port", required=True, help="Serial port name")
    parser.add_argument("-b", "--baud", type=int, default=DEFAULT_FLASH_BAUD,
                        help="Baud rate used after connecting")
    parser.add_argument("--monitor-baud", type=int, default=DEFAULT_MONITOR_BAUD,
                        help="Baud rate of the serial monitor")
    parser.add_argument("--stub", help="Stub loader JSON file to run before any operation")
    parser.add_argument("--after", choices=['hard_reset', 'no_reset', 'run'], default='hard_reset',
                        help="What to do after the operation")
    parser.add_argument("--connect-attempts", type=int, default=3, help="Reset and sync rounds")
    parser.add_argument("-v", "--verbose", help="Enable verbose logging", action="store_true")

    subparsers = parser.add_subparsers(dest='command', help='Operations')

    subparsers.add_parser('chip_id', help='Identify the connected chip')

    # Write flash command
    write_flash_parser = subparsers.add_parser('write_flash', help='Write firmware to the device')
    write_flash_parser.add_argument('flash_args', nargs='*', help='Offset and firmware file pairs')
    write_flash_parser.add_argument('--manifest', help='Firmware manifest JSON file')
    erase_group = write_flash_parser.add_mutually_exclusive_group()
    erase_group.add_argument('--erase-all', action='store_true', help='Erase the whole flash first')
    erase_group.add_argument('--erase-region', action='store_true',
                             help='Erase the sectors touched by the parts first')
    write_flash_parser.add_argument('--no-compress', action='store_true', help='Send data uncompressed')
    write_flash_parser.add_argument('--no-verify', action='store_true', help='Skip the MD5 verification')
    write_flash_parser.add_argument('--flash-mode', choices=FLASH_MODE_CHOICES, default='keep')
    write_flash_parser.add_argument('--flash-freq', default='keep', help="e.g. 80m, 40m or keep")
    write_flash_parser.add_argument('--flash-size', default='keep', help="e.g. 4MB, detect or keep")
    write_flash_parser.add_argument('--monitor', action='store_true', help='Open the serial monitor afterwards')

    # Read flash command
    read_flash_parser = subparsers.add_parser('read_flash', help='Read flash content from the device')
    read_flash_parser.add_argument('address', help='Starting offset')
    read_flash_parser.add_argument('size', help='Number of bytes')
    read_flash_parser.add_argument('output_file', help='Location of the output file')

    subparsers.add_parser('erase_flash', help='Erase the whole flash')

    erase_region_parser = subparsers.add_parser('erase_region', help='Erase a region of the flash')
    erase_region_parser.add_argument('address', help='Starting offset, sector aligned')
    erase_region_parser.add_argument('size', help='Number of bytes, sector aligned')

    subparsers.add_parser('monitor', help='Show the output of the running application')

    return parser.parse_args(args)


def load_parts(args: argparse.Namespace, chip_helper: ChipHelper) -> List[FlashPart]:
    """
    Collect the parts of a write_flash command.

    Raises:
        ValueError: If arguments are invalid
    """
    if args.manifest:
        if args.flash_args:
            raise ValueError("Give either a manifest or offset and file pairs, not both")
        return load_manifest(args.manifest, chip_helper.chip.name)
    flash_args = args.flash_args
    if not flash_args or len(flash_args) % 2 != 0:
        raise ValueError("The argument list must be pairs of offset and firmware file")
    pairs = list(zip(flash_args[::2], flash_args[1::2]))
    return load_flash_args(pairs, chip_helper.number_helper)


def prepare_session(args: argparse.Namespace, controller: SessionController) -> None:
    """Run the stub and switch to the operating baud rate."""
    if args.stub:
        controller.load_stub(StubImage.from_json(args.stub))
    if args.baud != ROM_BAUD:
        try:
            controller.change_baud(args.baud)
        except SessionStateError as e:
            logger.warning(f"Staying at {ROM_BAUD} baud: {e}")


def handle_chip_id(args: argparse.Namespace, controller: SessionController) -> bool:
    programmer = controller.programmer
    logger.info(f"Chip: {controller.chip.name}")
    try:
        logger.info(f"Flash ID: {programmer.flash_id():#08x}")
    except EspFlasherException as e:
        logger.warning(f"Could not read the flash ID: {e}")
    purposes = programmer.key_block_purposes()
    if purposes:
        logger.info(f"Key purposes: {', '.join(purposes)}")
    try:
        logger.info(f"MAC: {programmer.read_mac()}")
    except UnsupportedFeature as e:
        logger.debug(str(e))
    for name, enabled in programmer.security_info().items():
        logger.info(f"{SECURITY_FLAG_NAMES[name]}: {'yes' if enabled else 'no'}")
    return True


def handle_write_flash(args: argparse.Namespace, controller: SessionController) -> bool:
    """
    Handle write_flash command.

    Args:
        args: Parsed arguments
        controller: Connected session controller

    Returns:
        True if successful, False otherwise
    """
    try:
        parts = load_parts(args, ChipHelper(controller.chip))
    except (ValueError, EspFlasherException) as e:
        logger.error(str(e))
        return False

    erase = None
    if args.erase_all:
        erase = 'all'
    elif args.erase_region:
        erase = 'region'

    progress = TaskProgressBar(parts)
    try:
        for event in controller.flash(parts, erase=erase, compress=not args.no_compress,
                                      flash_mode=args.flash_mode, flash_freq=args.flash_freq,
                                      flash_size=args.flash_size, verify=not args.no_verify):
            progress.show(event)
    finally:
        progress.close()
    logger.info(f"Wrote {len(parts)} parts")
    return True


def handle_read_flash(args: argparse.Namespace, controller: SessionController) -> bool:
    """
    Handle read_flash command.

    Args:
        args: Parsed arguments
        controller: Connected session controller

    Returns:
        True if successful, False otherwise
    """
    chip_helper = ChipHelper(controller.chip)
    try:
        address = chip_helper.number_helper(args.address)
        size = chip_helper.number_helper(args.size)
        chip_helper.check_flash_addr(address, size=size)
    except EspFlasherException as e:
        logger.error(str(e))
        return False

    with tqdm(total=size, unit='B', unit_scale=True, desc='Reading') as pbar:
        def update(done, total):
            pbar.update(done - pbar.n)
        data = controller.read_flash(address, size, update)

    try:
        with open(args.output_file, 'wb') as f:
            f.write(data)
        logger.info(f"Flash content saved to {args.output_file}")
    except OSError as e:
        logger.error(f"Failed to write output file: {e}")
        return False
    return True


def handle_erase_flash(args: argparse.Namespace, controller: SessionController) -> bool:
    controller.erase()
    return True


def handle_erase_region(args: argparse.Namespace, controller: SessionController) -> bool:
    chip_helper = ChipHelper(controller.chip)
    try:
        address = chip_helper.number_helper(args.address)
        size = chip_helper.number_helper(args.size)
    except EspFlasherException as e:
        logger.error(str(e))
        return False
    controller.erase((address, size))
    return True


def run_monitor(monitor: SerialMonitor) -> None:
    """Show the application output until interrupted."""
    monitor.start()
    logger.info("Press Ctrl+C to exit")
    try:
        while monitor.running:
            time.sleep(0.1)
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()


def run_command(args: argparse.Namespace) -> bool:
    """
    Run the specified command.

    Args:
        args: Parsed arguments

    Returns:
        True if successful, False otherwise
    """
    if not args.command:
        logger.error("No command specified")
        return False

    transport = SerialTransport(args.port)
    monitor = None
    if args.command == 'monitor' or getattr(args, 'monitor', False):
        monitor = SerialMonitor(transport, baud=args.monitor_baud)
    if args.command == 'monitor':
        try:
            run_monitor(monitor)
        except EspFlasherException as e:
            logger.error(str(e))
            return False
        finally:
            transport.close()
        return True

    handlers = {
        'chip_id': handle_chip_id,
        'write_flash': handle_write_flash,
        'read_flash': handle_read_flash,
        'erase_flash': handle_erase_flash,
        'erase_region': handle_erase_region,
    }
    handler = handlers.get(args.command)
    if handler is None:
        logger.error(f"Unknown command: {args.command}")
        return False

    controller = SessionController(transport, monitor=monitor, monitor_baud=args.monitor_baud)
    try:
        with controller:
            logger.info(f"Connecting to {args.port}...")
            controller.connect(connect_attempts=args.connect_attempts)
            prepare_session(args, controller)
            success = handler(args, controller)
            if args.after == 'run':
                controller.run_app()
            else:
                controller.disconnect(reset=args.after == 'hard_reset')
    except EspFlasherException as e:
        logger.error(str(e))
        return False

    if not success:
        return False
    logger.info("Operation completed successfully")
    if monitor is not None:
        run_monitor(monitor)
        transport.close()
    return True


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        if run_command(args):
            return 0
        else:
            return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
