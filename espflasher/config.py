"""
Configuration module for espflasher.
Contains protocol constants and the timing defaults used by the programmer.
"""

# Baud rates
ROM_BAUD = 115200
DEFAULT_FLASH_BAUD = 921600
DEFAULT_MONITOR_BAUD = 115200

# Timeout for most commands, in seconds
DEFAULT_TIMEOUT = 3.0
# Timeout for a single sync attempt
SYNC_TIMEOUT = 0.1
# Pause between two sync attempts
SYNC_INTERVAL = 0.05
# Timeout for a full chip erase
CHIP_ERASE_TIMEOUT = 120.0
# Longest timeout we ever hand to the transport
MAX_TIMEOUT = CHIP_ERASE_TIMEOUT * 2
# Per-megabyte timeouts for operations whose duration scales with size
ERASE_REGION_TIMEOUT_PER_MB = 30.0
ERASE_WRITE_TIMEOUT_PER_MB = 40.0
MD5_TIMEOUT_PER_MB = 8.0
# The ROM may reset its UART before answering MEM_END
MEM_END_ROM_TIMEOUT = 0.2
# How long to wait for the stub greeting after MEM_END
STUB_GREETING_TIMEOUT = 1.0

DEFAULT_SYNC_ATTEMPTS = 7
DEFAULT_COMMAND_ATTEMPTS = 3
DEFAULT_CONNECT_ATTEMPTS = 3

# Delays of the two-phase reset sequences, in seconds
RESET_HOLD_DELAY = 0.1
RESET_RELEASE_DELAY = 0.2
BOOTLOADER_RESET_DELAY = 0.05


def timeout_per_mb(seconds_per_mb: float, size_bytes: int) -> float:
    """Scale a per-megabyte timeout to a transfer size, never below the default."""
    result = seconds_per_mb * (size_bytes / 1e6)
    if result < DEFAULT_TIMEOUT:
        return DEFAULT_TIMEOUT
    return result


class Protocol:
    """Constants for the ESP serial bootloader protocol."""
    # SLIP framing
    SLIP_END = b'\xc0'
    SLIP_ESC = b'\xdb'
    SLIP_ESC_END = b'\xdb\xdc'
    SLIP_ESC_ESC = b'\xdb\xdd'

    DIRECTION_REQUEST = 0x00
    DIRECTION_RESPONSE = 0x01
    HEADER_FORMAT = '<BBHI'
    HEADER_SIZE = 8

    # Commands supported by the ROM loaders
    FLASH_BEGIN = 0x02
    FLASH_DATA = 0x03
    FLASH_END = 0x04
    MEM_BEGIN = 0x05
    MEM_END = 0x06
    MEM_DATA = 0x07
    SYNC = 0x08
    WRITE_REG = 0x09
    READ_REG = 0x0A
    SPI_SET_PARAMS = 0x0B
    SPI_ATTACH = 0x0D
    READ_FLASH_SLOW = 0x0E
    CHANGE_BAUDRATE = 0x0F
    FLASH_DEFL_BEGIN = 0x10
    FLASH_DEFL_DATA = 0x11
    FLASH_DEFL_END = 0x12
    SPI_FLASH_MD5 = 0x13
    GET_SECURITY_INFO = 0x14

    # Commands only supported by the stub
    ERASE_FLASH = 0xD0
    ERASE_REGION = 0xD1
    READ_FLASH = 0xD2
    RUN_USER_CODE = 0xD3

    # Commands whose checksum field protects the data block
    DATA_COMMANDS = frozenset((FLASH_DATA, MEM_DATA, FLASH_DEFL_DATA))
    ROM_ONLY_COMMANDS = frozenset((READ_FLASH_SLOW,))
    STUB_ONLY_COMMANDS = frozenset((ERASE_FLASH, ERASE_REGION, READ_FLASH, RUN_USER_CODE))

    COMMAND_NAMES = {
        FLASH_BEGIN: 'FLASH_BEGIN',
        FLASH_DATA: 'FLASH_DATA',
        FLASH_END: 'FLASH_END',
        MEM_BEGIN: 'MEM_BEGIN',
        MEM_END: 'MEM_END',
        MEM_DATA: 'MEM_DATA',
        SYNC: 'SYNC',
        WRITE_REG: 'WRITE_REG',
        READ_REG: 'READ_REG',
        SPI_SET_PARAMS: 'SPI_SET_PARAMS',
        SPI_ATTACH: 'SPI_ATTACH',
        READ_FLASH_SLOW: 'READ_FLASH_SLOW',
        CHANGE_BAUDRATE: 'CHANGE_BAUDRATE',
        FLASH_DEFL_BEGIN: 'FLASH_DEFL_BEGIN',
        FLASH_DEFL_DATA: 'FLASH_DEFL_DATA',
        FLASH_DEFL_END: 'FLASH_DEFL_END',
        SPI_FLASH_MD5: 'SPI_FLASH_MD5',
        GET_SECURITY_INFO: 'GET_SECURITY_INFO',
        ERASE_FLASH: 'ERASE_FLASH',
        ERASE_REGION: 'ERASE_REGION',
        READ_FLASH: 'READ_FLASH',
        RUN_USER_CODE: 'RUN_USER_CODE',
    }

    # Seed of the data block checksum
    CHECKSUM_MAGIC = 0xEF
    # Seed of the checksum over command payloads and data block headers
    COMMAND_CHECKSUM_MAGIC = 0x5A

    # Reply code of a ROM that did not understand the request
    ROM_INVALID_RECV_MSG = 0x05

    SYNC_PAYLOAD = b'\x07\x07\x12\x20' + 32 * b'\x55'
    STUB_GREETING = b'OHAI'

    CHIP_DETECT_MAGIC_REG_ADDR = 0x40001000
    UART_CLKDIV_MASK = 0xFFFFF

    # Transfer sizes
    ESP_RAM_BLOCK = 0x1800
    ROM_FLASH_WRITE_SIZE = 0x400
    STUB_FLASH_WRITE_SIZE = 0x4000
    FLASH_SECTOR_SIZE = 0x1000
    READ_FLASH_SLOW_BLOCK = 64
    READ_FLASH_PACKETS_IN_FLIGHT = 64

    STUB_STATUS_BYTES_LENGTH = 2

    ESP_IMAGE_MAGIC = 0xE9

    # SPI flash commands
    SPIFLASH_RDID = 0x9F


DETECTED_FLASH_SIZES = {
    0x12: '256KB',
    0x13: '512KB',
    0x14: '1MB',
    0x15: '2MB',
    0x16: '4MB',
    0x17: '8MB',
    0x18: '16MB',
    0x19: '32MB',
    0x1A: '64MB',
    0x1B: '128MB',
    0x1C: '256MB',
    0x20: '64MB',
    0x21: '128MB',
    0x22: '256MB',
    0x32: '256KB',
    0x33: '512KB',
    0x34: '1MB',
    0x35: '2MB',
    0x36: '4MB',
    0x37: '8MB',
    0x38: '16MB',
    0x39: '32MB',
    0x3A: '64MB',
}


def flash_size_bytes(size: str) -> int:
    """Convert a flash size name such as '4MB' or '512KB' into bytes."""
    if size.endswith('MB'):
        return int(size[:-2]) * 1024 * 1024
    if size.endswith('KB'):
        return int(size[:-2]) * 1024
    raise ValueError(f'Unknown flash size {size}')
