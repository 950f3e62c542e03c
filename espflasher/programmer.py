"""
Programmer module for espflasher.
Identifies the chip and handles flash operations over the bootloader protocol.
"""

import hashlib
import logging
import struct
import time
import zlib
from collections import namedtuple
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from .chip_helper import ChipHelper
from .chips import CHIP_DEFS, ChipDescriptor, detect_chip
from .config import (
    Protocol,
    DETECTED_FLASH_SIZES,
    DEFAULT_SYNC_ATTEMPTS,
    DEFAULT_TIMEOUT,
    CHIP_ERASE_TIMEOUT,
    ERASE_REGION_TIMEOUT_PER_MB,
    ERASE_WRITE_TIMEOUT_PER_MB,
    MD5_TIMEOUT_PER_MB,
    MEM_END_ROM_TIMEOUT,
    flash_size_bytes,
    timeout_per_mb,
)
from .engine import CancelToken, CommandEngine
from .exceptions import (
    FlashOpError,
    InvalidFlashRangeException,
    ProtocolError,
    SessionStateError,
    Timeout,
    VerifyError,
)
from .slip import data_block

logger = logging.getLogger(__name__)

FlashPart = namedtuple('FlashPart', ['data', 'offset', 'name'], defaults=[None])
ProgressEvent = namedtuple('ProgressEvent', ['part_index', 'bytes_written', 'bytes_total'])

FLASH_MODES = {'qio': 0, 'qout': 1, 'dio': 2, 'dout': 3}

# SPI user command register bits
SPI_USR_COMMAND = 1 << 31
SPI_USR_MISO = 1 << 28
SPI_CMD_USR = 1 << 18
SPI_USR2_COMMAND_LEN_SHIFT = 28


def pad_to(data: bytes, alignment: int, pad_character: bytes = b'\xff') -> bytes:
    """Pad data to a multiple of alignment bytes."""
    pad_mod = len(data) % alignment
    if pad_mod != 0:
        data += pad_character * (alignment - pad_mod)
    return data


class Programmer:
    """Bootloader client for one session: identification and flash operations."""

    def __init__(self, session, registry: Sequence[ChipDescriptor] = CHIP_DEFS,
                 cancel_token: Optional[CancelToken] = None):
        """
        Initialize the programmer.

        Args:
            session: Session the programmer works on
            registry: Chip descriptors to identify against
            cancel_token: Token checked while waiting for the device
        """
        self.session = session
        self.registry = registry
        self.engine = CommandEngine(session, cancel_token)
        self._flash_attached = False

    # Register access and state used by the chip behaviour hooks

    @property
    def baudrate(self) -> int:
        return self.session.transport.baudrate

    @property
    def stub_active(self) -> bool:
        return self.session.stub_active

    @property
    def chip(self) -> ChipDescriptor:
        if self.session.chip is None:
            raise SessionStateError('The chip has not been identified yet')
        return self.session.chip

    @property
    def flash_write_size(self) -> int:
        if self.stub_active:
            return Protocol.STUB_FLASH_WRITE_SIZE
        return Protocol.ROM_FLASH_WRITE_SIZE

    def read_reg(self, addr: int) -> int:
        return self.engine.read_reg(addr)

    def write_reg(self, addr: int, value: int, mask: int = 0xFFFFFFFF, delay_us: int = 0) -> int:
        return self.engine.write_reg(addr, value, mask, delay_us)

    def _require_extended_commands(self, operation: str) -> None:
        if not self.stub_active and not self.chip.rom_extended_commands:
            raise SessionStateError(f'{operation} is not supported by the {self.chip.name} ROM loader, '
                                    'load the stub first')

    # Identification

    def handshake(self, attempts: int = DEFAULT_SYNC_ATTEMPTS) -> bool:
        """
        Synchronise with the bootloader.

        Returns:
            True if a stub is already running on the device
        """
        logger.debug("Syncing with the bootloader")
        return self.engine.sync(attempts)

    def identify(self, sync_attempts: int = DEFAULT_SYNC_ATTEMPTS) -> ChipDescriptor:
        """
        Sync, read the chip magic value and bind the matching descriptor to the session.

        Args:
            sync_attempts: Number of SYNC commands before giving up

        Returns:
            Descriptor of the detected chip

        Raises:
            Timeout: If the device does not answer
            UnknownChip: If no descriptor accepts the magic value
        """
        stub_detected = self.handshake(sync_attempts)
        magic_value = self.read_reg(Protocol.CHIP_DETECT_MAGIC_REG_ADDR)
        logger.debug(f"Chip magic value {magic_value:#010x}")
        chip = detect_chip(magic_value, self.registry)
        self.session.bind_chip(chip)
        if stub_detected:
            logger.info("Stub loader is already running")
            self.session.mark_stub_active()
        logger.info(f"Detected chip: {chip.name}")
        return chip

    def describe_chip(self) -> None:
        """Log the chip description, features, crystal and console type."""
        chip = self.chip
        logger.info(f"Chip is {chip.get_chip_description(self)}")
        if chip.features:
            logger.info(f"Features: {', '.join(chip.features)}")
        logger.info(f"Crystal is {chip.get_crystal_freq(self)}MHz")
        if chip.uses_usb_jtag_serial(self):
            logger.info("Device is connected through USB-JTAG-serial")

    def key_block_purposes(self) -> List[str]:
        """Names of the purposes programmed into the eFuse key blocks."""
        chip = self.chip
        return [chip.key_purpose_name(chip.get_key_block_purpose(self, block))
                for block in range(len(chip.efuse_purpose_regs))]

    def read_mac(self) -> str:
        """Factory MAC address, as colon separated hex."""
        return ':'.join(f'{b:02x}' for b in self.chip.read_mac(self))

    def security_info(self) -> Dict[str, bool]:
        """
        Read the security related eFuses.

        Returns:
            Flags by name, empty if the chip does not describe its security eFuses
        """
        chip = self.chip
        if not chip.supports_security_info:
            return {}
        return {
            'flash_encryption': chip.get_flash_encryption_enabled(self),
            'secure_boot': chip.get_secure_boot_enabled(self),
            'encrypted_download_disabled': chip.get_encrypted_download_disabled(self),
            'flash_encryption_key_valid': chip.is_flash_encryption_key_valid(self),
        }

    # RAM download

    def mem_begin(self, size: int, blocks: int, blocksize: int, offset: int, attempts: int = 1):
        """Start downloading an image to RAM."""
        return self.engine.check_command(
            'enter RAM download mode', Protocol.MEM_BEGIN,
            struct.pack('<IIII', size, blocks, blocksize, offset), attempts=attempts)

    def mem_block(self, data: bytes, seq: int, attempts: int = 1):
        """Send one block of an image to RAM."""
        return self.engine.check_command(
            'write to target RAM', Protocol.MEM_DATA,
            data_block(data, seq), attempts=attempts)

    def mem_finish(self, entrypoint: int = 0):
        """
        Leave RAM download mode and jump to the entry point.

        The ROM may reset its UART while starting the code, so a missing or
        broken response is tolerated unless the stub is the one answering.
        """
        timeout = DEFAULT_TIMEOUT if self.stub_active else MEM_END_ROM_TIMEOUT
        data = struct.pack('<II', int(entrypoint == 0), entrypoint)
        try:
            return self.engine.check_command('leave RAM download mode', Protocol.MEM_END,
                                             data, timeout=timeout, attempts=1)
        except (Timeout, ProtocolError):
            if self.stub_active:
                raise
            logger.debug("No usable MEM_END response from the ROM loader")
            return None

    # SPI flash setup

    def spi_attach(self, hspi_arg: int = 0) -> None:
        """Attach the SPI flash pins."""
        payload = struct.pack('<I', hspi_arg)
        if not self.stub_active:
            # The ROM expects an extra "is legacy" flag and padding
            payload += struct.pack('BBBB', 0, 0, 0, 0)
        self.engine.check_command('configure SPI flash pins', Protocol.SPI_ATTACH, payload)

    def flash_set_parameters(self, size: int) -> None:
        """Tell the loader the size of the attached flash."""
        payload = struct.pack('<IIIIII', 0, size, 64 * 1024, Protocol.FLASH_SECTOR_SIZE, 256, 0xFFFF)
        self.engine.check_command('set SPI params', Protocol.SPI_SET_PARAMS, payload)

    def run_spiflash_command(self, spiflash_command: int, read_bits: int = 0) -> int:
        """
        Run a read-only SPI flash command through the SPI user-command registers.

        Args:
            spiflash_command: SPI flash opcode
            read_bits: Number of bits to read back, at most 32

        Returns:
            The bits read back
        """
        if read_bits > 32:
            raise ValueError("Reading more than 32 bits back from a SPI flash operation is unsupported")
        chip = self.chip
        base = chip.spi_reg_base
        spi_cmd_reg = base
        spi_usr_reg = base + chip.spi_usr_offs
        spi_usr1_reg = base + chip.spi_usr1_offs
        spi_usr2_reg = base + chip.spi_usr2_offs
        spi_w0_reg = base + chip.spi_w0_offs

        old_spi_usr = self.read_reg(spi_usr_reg)
        old_spi_usr2 = self.read_reg(spi_usr2_reg)

        miso_bits = read_bits - 1 if read_bits > 0 else 0
        if chip.spi_miso_dlen_offs is not None:
            if read_bits > 0:
                self.write_reg(base + chip.spi_miso_dlen_offs, miso_bits)
        else:
            self.write_reg(spi_usr1_reg, miso_bits << 8)

        flags = SPI_USR_COMMAND
        if read_bits > 0:
            flags |= SPI_USR_MISO
        self.write_reg(spi_usr_reg, flags)
        self.write_reg(spi_usr2_reg, (7 << SPI_USR2_COMMAND_LEN_SHIFT) | spiflash_command)
        self.write_reg(spi_w0_reg, 0)
        self.write_reg(spi_cmd_reg, SPI_CMD_USR)

        for _ in range(10):
            if (self.read_reg(spi_cmd_reg) & SPI_CMD_USR) == 0:
                break
        else:
            raise ProtocolError("SPI command did not complete in time")

        status = self.read_reg(spi_w0_reg)
        # restore some SPI controller registers
        self.write_reg(spi_usr_reg, old_spi_usr)
        self.write_reg(spi_usr2_reg, old_spi_usr2)
        return status

    def flash_id(self) -> int:
        """Read the JEDEC manufacturer and device ID of the SPI flash."""
        return self.run_spiflash_command(Protocol.SPIFLASH_RDID, 24)

    def detect_flash_size(self) -> Optional[str]:
        """
        Detect the flash size from its JEDEC ID and cache it on the session.

        Returns:
            Size name such as '4MB', or None if the ID is not recognised
        """
        if self.session.flash_size is not None:
            return self.session.flash_size
        flash_id = self.flash_id()
        size_id = flash_id >> 16
        size = DETECTED_FLASH_SIZES.get(size_id)
        if size is None:
            logger.warning(f"Could not auto-detect flash size (FlashID={flash_id:#x}, SizeID={size_id:#x})")
            return None
        logger.info(f"Detected flash size: {size}")
        self.session.flash_size = size
        return size

    def prepare_flash(self) -> None:
        """Attach the flash and pass its size to the loader, once per session."""
        if self._flash_attached:
            return
        if self.chip.rom_needs_spi_attach:
            self.spi_attach()
        size = self.detect_flash_size()
        if size is not None:
            self.flash_set_parameters(flash_size_bytes(size))
        self._flash_attached = True

    # Flash download

    def _check_flash_command(self, description: str, opcode: int, payload: bytes = b'',
                             timeout: float = DEFAULT_TIMEOUT):
        try:
            return self.engine.check_command(description, opcode, payload, timeout=timeout)
        except ProtocolError as e:
            raise FlashOpError(str(e)) from e

    def flash_begin(self, size: int, offset: int) -> int:
        """
        Start downloading to flash. The ROM erases the region up front.

        Returns:
            Number of blocks to write
        """
        write_size = self.flash_write_size
        num_blocks = (size + write_size - 1) // write_size
        if self.stub_active:
            timeout = DEFAULT_TIMEOUT
        else:
            timeout = timeout_per_mb(ERASE_REGION_TIMEOUT_PER_MB, size)
        params = struct.pack('<IIII', size, num_blocks, write_size, offset)
        if self.chip.supports_encrypted_flash and not self.stub_active:
            params += struct.pack('<I', 0)
        start = time.time()
        self._check_flash_command('enter Flash download mode', Protocol.FLASH_BEGIN, params, timeout=timeout)
        if size != 0 and not self.stub_active:
            logger.info(f"Took {time.time() - start:.2f}s to erase flash block")
        return num_blocks

    def flash_block(self, data: bytes, seq: int, timeout: float = DEFAULT_TIMEOUT) -> None:
        """Write one block to flash."""
        self._check_flash_command(f'write to target Flash after seq {seq}', Protocol.FLASH_DATA,
                                  data_block(data, seq), timeout=timeout)

    def flash_finish(self, reboot: bool = False) -> None:
        """Leave flash mode, optionally running the application."""
        self._check_flash_command('leave Flash mode', Protocol.FLASH_END, struct.pack('<I', int(not reboot)))

    def flash_defl_begin(self, size: int, compsize: int, offset: int) -> int:
        """
        Start downloading compressed data to flash.

        Returns:
            Number of blocks to write
        """
        self._require_extended_commands('Compressed flash write')
        write_size = self.flash_write_size
        num_blocks = (compsize + write_size - 1) // write_size
        erase_blocks = (size + write_size - 1) // write_size
        if self.stub_active:
            # the stub erases as it writes and wants the uncompressed size
            erase_size = size
            timeout = DEFAULT_TIMEOUT
        else:
            erase_size = erase_blocks * write_size
            timeout = timeout_per_mb(ERASE_REGION_TIMEOUT_PER_MB, erase_size)
        logger.info(f"Compressed {size} bytes to {compsize}...")
        params = struct.pack('<IIII', erase_size, num_blocks, write_size, offset)
        if self.chip.supports_encrypted_flash and not self.stub_active:
            params += struct.pack('<I', 0)
        start = time.time()
        self._check_flash_command('enter compressed flash mode', Protocol.FLASH_DEFL_BEGIN, params,
                                  timeout=timeout)
        if size != 0 and not self.stub_active:
            logger.info(f"Took {time.time() - start:.2f}s to erase flash block")
        return num_blocks

    def flash_defl_block(self, data: bytes, seq: int, timeout: float = DEFAULT_TIMEOUT) -> None:
        """Write one block of compressed data to flash."""
        self._check_flash_command(f'write compressed data to flash after seq {seq}',
                                  Protocol.FLASH_DEFL_DATA,
                                  data_block(data, seq), timeout=timeout)

    def flash_defl_finish(self, reboot: bool = False) -> None:
        """Leave compressed flash mode."""
        if not reboot and not self.stub_active:
            # FLASH_DEFL_END makes the ROM loader exit and run the application
            return
        self._check_flash_command('leave compressed flash mode', Protocol.FLASH_DEFL_END,
                                  struct.pack('<I', int(not reboot)))

    def flash_md5sum(self, addr: int, size: int) -> str:
        """
        Let the device calculate the MD5 of a flash region.

        Returns:
            Lower case hex digest
        """
        self._require_extended_commands('Flash MD5')
        timeout = timeout_per_mb(MD5_TIMEOUT_PER_MB, size)
        res = self.engine.check_command('calculate md5sum', Protocol.SPI_FLASH_MD5,
                                        struct.pack('<IIII', addr, size, 0, 0), timeout=timeout)
        if isinstance(res, int):
            raise ProtocolError("MD5 command returned no digest")
        if len(res) == 32:
            return res.decode('utf-8').lower()  # ROM replies with hex text
        if len(res) == 16:
            return res.hex()
        raise ProtocolError(f"MD5 command returned unexpected result: {res!r}")

    # Erase / write / verify

    def erase(self, region: Optional[tuple] = None) -> None:
        """
        Erase the whole flash, or a sector aligned (offset, size) region of it.

        Raises:
            FlashOpError: If the device rejects the erase or the region is not aligned
        """
        self.prepare_flash()
        if region is None:
            if not self.stub_active:
                raise FlashOpError("Erasing the whole flash requires the stub loader")
            logger.info("Erasing flash (this may take a while)...")
            start = time.time()
            self._check_flash_command('erase flash', Protocol.ERASE_FLASH, timeout=CHIP_ERASE_TIMEOUT)
            logger.info(f"Chip erase completed successfully in {time.time() - start:.1f}s")
            return

        offset, size = region
        if offset % Protocol.FLASH_SECTOR_SIZE != 0:
            raise FlashOpError(f"Offset to erase from must be a multiple of {Protocol.FLASH_SECTOR_SIZE}")
        if size % Protocol.FLASH_SECTOR_SIZE != 0:
            raise FlashOpError(f"Size of data to erase must be a multiple of {Protocol.FLASH_SECTOR_SIZE}")
        try:
            ChipHelper(self.chip).check_flash_addr(offset, size, self._flash_size_bytes())
        except InvalidFlashRangeException as e:
            raise FlashOpError(str(e)) from e
        logger.info(f"Erasing region {offset:#010x}-{offset + size - 1:#010x}...")
        if self.stub_active:
            timeout = timeout_per_mb(ERASE_REGION_TIMEOUT_PER_MB, size)
            self._check_flash_command('erase region', Protocol.ERASE_REGION,
                                      struct.pack('<II', offset, size), timeout=timeout)
        else:
            # the ROM has no erase command, but erases on FLASH_BEGIN
            self.flash_begin(size, offset)

    def _flash_size_bytes(self) -> Optional[int]:
        size = self.session.flash_size
        return flash_size_bytes(size) if size else None

    def _update_image_flash_params(self, offset: int, image: bytes, flash_mode: str,
                                   flash_freq: str, flash_size: str) -> bytes:
        """Patch mode, frequency and size into the header of a bootloader image."""
        chip = self.chip
        if offset != chip.bootloader_flash_offset or len(image) < 8:
            return image
        if flash_mode == 'keep' and flash_freq == 'keep' and flash_size == 'keep':
            return image
        if image[0] != Protocol.ESP_IMAGE_MAGIC:
            logger.warning(f"Image at {offset:#x} doesn't look like an image file, "
                           "so not changing any flash settings.")
            return image

        magic, segments, mode, size_freq = struct.unpack('BBBB', image[:4])
        if flash_mode != 'keep':
            mode = FLASH_MODES[flash_mode]
        freq = size_freq & 0x0F
        if flash_freq != 'keep':
            freq = chip.parse_flash_freq(flash_freq)
        size_code = size_freq & 0xF0
        if flash_size == 'detect':
            flash_size = self.session.flash_size or 'keep'
        if flash_size != 'keep':
            size_code = chip.parse_flash_size(flash_size)

        header = struct.pack('BBBB', magic, segments, mode, size_code | freq)
        if header != image[:4]:
            logger.info(f"Flash params set to {struct.unpack('>H', header[2:])[0]:#06x}")
        return header + image[4:]

    def prepare_images(self, parts: Sequence[FlashPart], flash_mode: str = 'keep',
                       flash_freq: str = 'keep', flash_size: str = 'keep') -> List[bytes]:
        """
        Validate the parts against the flash layout and build the bytes to write.

        Raises:
            FlashOpError: If a part leaves the flash or two parts overlap
        """
        helper = ChipHelper(self.chip)
        size_bytes = self._flash_size_bytes()
        images = []
        try:
            for part in parts:
                image = pad_to(bytes(part.data), 4)
                helper.check_flash_addr(part.offset, len(image), size_bytes)
                image = self._update_image_flash_params(part.offset, image, flash_mode,
                                                        flash_freq, flash_size)
                images.append(image)
            helper.check_no_overlap((part.offset, len(image)) for part, image in zip(parts, images))
        except (InvalidFlashRangeException, ValueError) as e:
            raise FlashOpError(str(e)) from e
        return images

    def download_firmware(self, part_index: int, address: int, image: bytes,
                          compress: bool = True) -> Iterator[ProgressEvent]:
        """
        Write one image to flash, block by block.

        Args:
            part_index: Index reported in the progress events
            address: Flash offset
            image: Bytes to write
            compress: Send the image deflated

        Yields:
            ProgressEvent whenever the number of written bytes changes
        """
        total = len(image)
        write_size = self.flash_write_size
        logger.info(f"Writing {total} bytes at {address:#010x}...")
        yield ProgressEvent(part_index, 0, total)

        if compress:
            payload = zlib.compress(image, 9)
            decompress = zlib.decompressobj()
            num_blocks = self.flash_defl_begin(total, len(payload), address)
        else:
            payload = image
            decompress = None
            num_blocks = self.flash_begin(total, address)

        written = 0
        start = time.time()
        for seq in range(num_blocks):
            block = payload[seq * write_size:(seq + 1) * write_size]
            if compress:
                block_uncompressed = len(decompress.decompress(block))
                timeout = max(DEFAULT_TIMEOUT,
                              timeout_per_mb(ERASE_WRITE_TIMEOUT_PER_MB, block_uncompressed))
                if not self.stub_active:
                    # the ROM erased everything during FLASH_DEFL_BEGIN
                    timeout = DEFAULT_TIMEOUT
                self.flash_defl_block(block, seq, timeout=timeout)
                progress = min(written + block_uncompressed, total)
            else:
                block = block + b'\xff' * (write_size - len(block))
                self.flash_block(block, seq)
                progress = min(written + write_size, total)
            if seq == num_blocks - 1:
                progress = total
            if progress != written:
                written = progress
                yield ProgressEvent(part_index, written, total)

        elapsed = time.time() - start
        logger.info(f"Wrote {total} bytes at {address:#010x} in {elapsed:.1f} seconds")

    def verify_firmware(self, address: int, image: bytes) -> None:
        """
        Compare the MD5 of the image with the MD5 the device computes over flash.

        Raises:
            VerifyError: If the digests differ
        """
        expected = hashlib.md5(image).hexdigest()
        actual = self.flash_md5sum(address, len(image))
        if actual != expected:
            logger.error(f"File md5: {expected}, flash md5: {actual}")
            raise VerifyError(address, len(image), expected, actual)
        logger.info(f"Hash of data at {address:#010x} verified.")

    def write(self, parts: Sequence[FlashPart], compress: bool = True, flash_mode: str = 'keep',
              flash_freq: str = 'keep', flash_size: str = 'keep',
              verify: bool = True) -> Iterator[ProgressEvent]:
        """
        Write firmware parts to flash and verify them.

        Args:
            parts: FlashParts to write
            compress: Send the data deflated when the active loader supports it
            flash_mode: Flash mode for the bootloader header, or 'keep'
            flash_freq: Flash frequency for the bootloader header, or 'keep'
            flash_size: Flash size for the bootloader header, 'detect' or 'keep'
            verify: Check every part against the device MD5 afterwards

        Yields:
            ProgressEvents of every part

        Raises:
            FlashOpError: If a part is invalid or the device rejects the write
            VerifyError: If flash content does not match after writing
        """
        self.prepare_flash()
        images = self.prepare_images(parts, flash_mode, flash_freq, flash_size)

        if compress and not self.stub_active and not self.chip.rom_extended_commands:
            logger.info(f"The {self.chip.name} ROM loader can't write compressed data, sending it raw")
            compress = False

        for index, (part, image) in enumerate(zip(parts, images)):
            yield from self.download_firmware(index, part.offset, image, compress)

        if self.stub_active:
            # Leave flash mode but stay in the loader
            self.flash_begin(0, 0)
            if compress:
                self.flash_defl_finish(False)
            else:
                self.flash_finish(False)

        if not verify:
            return
        if not self.stub_active and not self.chip.rom_extended_commands:
            logger.warning(f"The {self.chip.name} ROM loader can't verify flash contents, skipping")
            return
        for part, image in zip(parts, images):
            self.verify_firmware(part.offset, image)

    # Read back

    def read_flash(self, offset: int, length: int,
                   progress_fn: Optional[Callable[[int, int], None]] = None) -> bytes:
        """
        Read flash content.

        Args:
            offset: Flash offset
            length: Number of bytes
            progress_fn: Called with (bytes_read, length) after every packet

        Returns:
            Flash content
        """
        if not self.stub_active:
            return self.read_flash_slow(offset, length, progress_fn)
        self.prepare_flash()
        self.engine.check_command(
            'read flash', Protocol.READ_FLASH,
            struct.pack('<IIII', offset, length, Protocol.FLASH_SECTOR_SIZE,
                        Protocol.READ_FLASH_PACKETS_IN_FLIGHT))
        data = b''
        while len(data) < length:
            packet = self.engine.read_packet()
            if packet is None:
                raise Timeout('READ_FLASH data')
            data += packet
            if len(data) < length and len(packet) < Protocol.FLASH_SECTOR_SIZE:
                raise ProtocolError(f"Corrupt data, expected {Protocol.FLASH_SECTOR_SIZE:#x} bytes "
                                    f"but received {len(packet):#x} bytes")
            self.engine.write_packet(struct.pack('<I', len(data)))
            if progress_fn:
                progress_fn(min(len(data), length), length)
        if len(data) > length:
            raise ProtocolError("Read more than expected")
        digest = self.engine.read_packet()
        if digest is None or len(digest) != 16:
            raise ProtocolError("Expected digest, got: %r" % (digest,))
        if hashlib.md5(data).digest() != digest:
            raise VerifyError(offset, length, digest.hex(), hashlib.md5(data).hexdigest())
        return data

    def read_flash_slow(self, offset: int, length: int,
                        progress_fn: Optional[Callable[[int, int], None]] = None) -> bytes:
        """Read flash content through the ROM loader, 64 bytes per command."""
        self._require_extended_commands('Reading flash')
        data = b''
        while len(data) < length:
            block_len = min(Protocol.READ_FLASH_SLOW_BLOCK, length - len(data))
            r = self.engine.check_command(
                f'read flash block at {offset + len(data):#x}', Protocol.READ_FLASH_SLOW,
                struct.pack('<II', offset + len(data), block_len))
            if isinstance(r, int) or len(r) < block_len:
                raise ProtocolError(f"Expected {block_len} byte block, got {r!r}")
            data += r[:block_len]
            if progress_fn:
                progress_fn(len(data), length)
        return data

    # Link speed

    def change_baud(self, baud: int) -> None:
        """
        Switch the device and the transport to a new baud rate.

        Host and device switch at the same time; when they end up disagreeing
        the next command fails and the normal sync path recovers.
        """
        self._require_extended_commands('Changing the baud rate')
        self.chip.before_change_baud(self)
        logger.info(f"Changing baud rate to {baud}")
        transport = self.session.transport
        # the stub takes the new baud rate and the old one
        second_arg = transport.baudrate if self.stub_active else 0
        self.engine.execute(Protocol.CHANGE_BAUDRATE, struct.pack('<II', baud, second_arg))
        transport.close()
        transport.open(baud)
        time.sleep(0.05)  # get rid of garbage sent during the baud rate change
        self.engine.flush_input()
        self.session.baud = baud
        logger.info("Changed.")

    def run(self, reboot: bool = True) -> None:
        """Leave the loader and run the application in flash."""
        self.flash_begin(0, 0)
        self.flash_finish(reboot)
