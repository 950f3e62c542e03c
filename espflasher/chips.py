"""
Chip definitions for espflasher.

Each supported chip family is described by an immutable ChipDescriptor.
A family that behaves like another one is derived from it with only the
differing fields overridden, see derive().
"""

import dataclasses
import logging
import struct
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Sequence, Tuple

from .config import Protocol, flash_size_bytes
from .exceptions import UnknownChip, UnsupportedFeature

logger = logging.getLogger(__name__)

MemoryMapEntry = Tuple[int, int, str]

# Regions the loaders can write to
RAM_REGION_KINDS = frozenset((
    'DRAM', 'IRAM', 'BYTE_ACCESSIBLE', 'DIRAM_DRAM', 'DIRAM_IRAM',
    'RTC_DRAM', 'RTC_IRAM', 'RTC_DATA', 'MEM_INTERNAL',
))


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType(dict(mapping))


# Behaviour hooks. Every hook receives the descriptor and a loader offering
# read_reg(addr), write_reg(addr, value) and the baudrate property.

def detect_crystal_freq(chip, loader) -> int:
    """
    Figure out the crystal frequency from the UART clock divider.

    Host and chip agree on the baud rate or we could not talk at all, so
    baud rate times divider gives the bus frequency, which is the crystal
    frequency scaled by xtal_clk_divider.
    """
    uart_div = loader.read_reg(chip.uart_clkdiv_reg) & Protocol.UART_CLKDIV_MASK
    est_xtal = (loader.baudrate * uart_div) / 1e6 / chip.xtal_clk_divider
    norm_xtal = chip.crystal_thresholds[-1][1]
    for threshold, freq in chip.crystal_thresholds:
        if est_xtal > threshold:
            norm_xtal = freq
            break
    if abs(norm_xtal - est_xtal) > 1:
        logger.warning(f"Detected crystal freq {est_xtal:.2f}MHz is quite different to "
                       f"normalized freq {norm_xtal}MHz. Unsupported crystal in use?")
    return norm_xtal


def fixed_crystal_freq(freq_mhz: int) -> Callable:
    """Hook for chips whose ROM only runs from one crystal frequency."""
    def crystal_freq(chip, loader) -> int:
        return freq_mhz
    return crystal_freq


def sysclk_crystal_freq(chip, loader) -> Optional[int]:
    """Crystal frequency the ROM was configured for, from the PCR sysclk register."""
    if chip.sysclk_conf_reg is None:
        return None
    value = loader.read_reg(chip.sysclk_conf_reg)
    return (value & chip.sysclk_xtal_freq_mask) >> chip.sysclk_xtal_freq_shift


def uart_no_uses_usb_jtag_serial(chip, loader) -> bool:
    """The ROM records the console in use; one value means USB-JTAG-serial."""
    if chip.uartdev_buf_no is None or chip.uartdev_buf_no_usb_jtag_serial is None:
        return False
    uart_no = loader.read_reg(chip.uartdev_buf_no) & 0xFF
    return uart_no == chip.uartdev_buf_no_usb_jtag_serial


def rtc_watchdog_reset(chip, loader) -> None:
    """Reset the chip by arming the RTC watchdog with a short timeout."""
    base = chip.rtc_cntl_base
    logger.info("Hard resetting with a watchdog...")
    loader.write_reg(base + chip.rtc_wdt_wprotect_offs, chip.rtc_wdt_wkey)  # unlock
    loader.write_reg(base + chip.rtc_wdt_config1_offs, 2000)  # timeout
    loader.write_reg(base + chip.rtc_wdt_config0_offs, (1 << 31) | (5 << 28) | (1 << 8) | 2)
    loader.write_reg(base + chip.rtc_wdt_wprotect_offs, 0)  # lock


def placeholder_watchdog_reset(chip, loader) -> None:
    logger.warning(f"Watchdog reset is not implemented for {chip.name}, continuing without it")


def esp32c5_before_change_baud(chip, loader) -> None:
    """Report a crystal the ROM did not expect before switching baud rate."""
    if loader.stub_active:
        return
    rom_expect = chip.get_crystal_freq_rom_expect(loader)
    detected = chip.get_crystal_freq(loader)
    logger.info(f"ROM expects crystal freq: {rom_expect} MHz, detected {detected} MHz.")
    if (detected, rom_expect) in ((48, 40), (40, 48)):
        # TODO: scale the requested baud rate by detected/rom_expect once the
        # ROM behaviour on mismatched crystals is documented.
        logger.warning("Crystal frequency mismatch detected. "
                       "Baud rate adjustment may be needed but is not applied.")


def esp32c5_chip_description(chip, loader) -> str:
    word = loader.read_reg(chip.efuse_block1_addr + 4 * 2)
    pkg_version = (word >> 26) & 0x07
    major = (word >> 4) & 0x03
    minor = word & 0x0F
    desc = chip.name if pkg_version == 0 else f"unknown {chip.name}"
    return f"{desc} (revision v{major}.{minor})"


def key_purpose_or_key_manager_valid(chip, loader) -> bool:
    """
    Check for a usable flash encryption key.

    Either a key block holds an XTS-AES-128 key, or the key manager is
    forced to provide the XTS-AES key.
    """
    for block in range(len(chip.efuse_purpose_regs)):
        if chip.get_key_block_purpose(loader, block) in chip.xts_aes_key_purposes:
            return True
    if chip.efuse_force_key_manager_field is None:
        return False
    offset, mask = chip.efuse_force_key_manager_field
    return (loader.read_reg(chip.efuse_base + offset) & mask) != 0


def plain_chip_description(chip, loader) -> str:
    return chip.name


@dataclasses.dataclass(frozen=True, eq=False)
class ChipDescriptor:
    """Static description of one chip family."""
    name: str
    magic_values: Tuple[int, ...]
    image_chip_id: int = 0
    features: Tuple[str, ...] = ()

    # Registers
    efuse_base: int = 0
    efuse_block1_offset: int = 0x44
    uart_clkdiv_reg: int = 0x60000014
    xtal_clk_divider: int = 1
    crystal_thresholds: Tuple[Tuple[float, int], ...] = ((33, 40), (0, 26))
    sysclk_conf_reg: Optional[int] = None
    sysclk_xtal_freq_mask: int = 0
    sysclk_xtal_freq_shift: int = 0
    uartdev_buf_no: Optional[int] = None
    uartdev_buf_no_usb_jtag_serial: Optional[int] = None

    # RTC watchdog, for chips that reset through it
    rtc_cntl_base: int = 0x60008000
    rtc_wdt_config0_offs: int = 0x90
    rtc_wdt_config1_offs: int = 0x94
    rtc_wdt_wprotect_offs: int = 0xA8
    rtc_wdt_wkey: int = 0x50D83AA1

    # SPI flash controller layout, used to read the flash ID
    spi_reg_base: int = 0x60002000
    spi_usr_offs: int = 0x18
    spi_usr1_offs: int = 0x1C
    spi_usr2_offs: int = 0x20
    spi_mosi_dlen_offs: Optional[int] = 0x24
    spi_miso_dlen_offs: Optional[int] = 0x28
    spi_w0_offs: int = 0x58

    # Memory and flash layout
    bootloader_flash_offset: int = 0x0
    memory_map: Tuple[MemoryMapEntry, ...] = ()
    flash_frequency: Mapping[str, int] = dataclasses.field(default_factory=lambda: _frozen({}))
    flash_sizes: Mapping[str, int] = dataclasses.field(default_factory=lambda: _frozen({}))

    # eFuse key blocks
    key_purposes: Mapping[int, str] = dataclasses.field(default_factory=lambda: _frozen({}))
    efuse_purpose_regs: Tuple[Tuple[int, int], ...] = ()
    efuse_purpose_mask: int = 0x0F
    xts_aes_key_purposes: frozenset = frozenset()

    # eFuse security fields as (offset from efuse_base, mask)
    efuse_mac_offset: Optional[int] = None
    efuse_flash_crypt_cnt_field: Optional[Tuple[int, int]] = None
    efuse_secure_boot_field: Optional[Tuple[int, int]] = None
    efuse_dis_manual_encrypt_field: Optional[Tuple[int, int]] = None
    efuse_force_key_manager_field: Optional[Tuple[int, int]] = None

    # Capabilities
    rom_status_bytes_length: int = 4
    # Compressed writes, MD5, baud rate change and slow flash reads
    rom_extended_commands: bool = True
    supports_encrypted_flash: bool = False
    rom_needs_spi_attach: bool = True

    # Behaviour hooks
    crystal_freq_fn: Callable = detect_crystal_freq
    crystal_freq_rom_expect_fn: Callable = sysclk_crystal_freq
    uses_usb_jtag_serial_fn: Callable = uart_no_uses_usb_jtag_serial
    watchdog_reset_fn: Optional[Callable] = None
    before_change_baud_fn: Optional[Callable] = None
    flash_encryption_key_valid_fn: Optional[Callable] = None
    chip_description_fn: Callable = plain_chip_description

    @property
    def efuse_block1_addr(self) -> int:
        return self.efuse_base + self.efuse_block1_offset

    @property
    def max_flash_size(self) -> Optional[int]:
        """Largest flash the chip can address, None if it lists no flash sizes."""
        if not self.flash_sizes:
            return None
        return max(flash_size_bytes(size) for size in self.flash_sizes)

    @property
    def supports_watchdog_reset(self) -> bool:
        return self.watchdog_reset_fn is not None

    def accepts(self, magic_value: int) -> bool:
        return magic_value in self.magic_values

    def get_memory_regions(self, kind: str) -> Sequence[MemoryMapEntry]:
        return [entry for entry in self.memory_map if entry[2] == kind]

    def get_crystal_freq(self, loader) -> int:
        return self.crystal_freq_fn(self, loader)

    def get_crystal_freq_rom_expect(self, loader) -> Optional[int]:
        return self.crystal_freq_rom_expect_fn(self, loader)

    def uses_usb_jtag_serial(self, loader) -> bool:
        return self.uses_usb_jtag_serial_fn(self, loader)

    def watchdog_reset(self, loader) -> None:
        if self.watchdog_reset_fn is None:
            raise UnsupportedFeature("Watchdog reset", self.name)
        self.watchdog_reset_fn(self, loader)

    def before_change_baud(self, loader) -> None:
        if self.before_change_baud_fn is not None:
            self.before_change_baud_fn(self, loader)

    def get_chip_description(self, loader) -> str:
        return self.chip_description_fn(self, loader)

    def get_key_block_purpose(self, loader, key_block: int) -> int:
        """
        Read the purpose assigned to an eFuse key block.

        Raises:
            ValueError: If the key block number is out of range
        """
        if not 0 <= key_block < len(self.efuse_purpose_regs):
            raise ValueError(f"Valid key block numbers must be in range 0-{len(self.efuse_purpose_regs) - 1}")
        offset, shift = self.efuse_purpose_regs[key_block]
        return (loader.read_reg(self.efuse_base + offset) >> shift) & self.efuse_purpose_mask

    def key_purpose_name(self, purpose: int) -> str:
        return self.key_purposes.get(purpose, f"UNKNOWN ({purpose})")

    def _read_efuse_field(self, loader, field: Optional[Tuple[int, int]], feature: str) -> int:
        if field is None:
            raise UnsupportedFeature(feature, self.name)
        offset, mask = field
        return loader.read_reg(self.efuse_base + offset) & mask

    @property
    def supports_security_info(self) -> bool:
        return self.efuse_flash_crypt_cnt_field is not None

    def read_mac(self, loader) -> bytes:
        """
        Read the factory MAC address from eFuse.

        Raises:
            UnsupportedFeature: If the chip has no known MAC location
        """
        if self.efuse_mac_offset is None:
            raise UnsupportedFeature("Reading the MAC address", self.name)
        addr = self.efuse_base + self.efuse_mac_offset
        mac0 = loader.read_reg(addr)
        mac1 = loader.read_reg(addr + 4)
        return struct.pack('>II', mac1, mac0)[2:]

    def get_flash_encryption_enabled(self, loader) -> bool:
        """Flash encryption is on while an odd number of SPI_BOOT_CRYPT_CNT bits are set."""
        count = self._read_efuse_field(loader, self.efuse_flash_crypt_cnt_field, "Flash encryption status")
        return bin(count).count('1') % 2 == 1

    def get_secure_boot_enabled(self, loader) -> bool:
        return self._read_efuse_field(loader, self.efuse_secure_boot_field, "Secure boot status") != 0

    def get_encrypted_download_disabled(self, loader) -> bool:
        """True once DIS_DOWNLOAD_MANUAL_ENCRYPT is burned."""
        return self._read_efuse_field(loader, self.efuse_dis_manual_encrypt_field,
                                      "Manual encryption status") != 0

    def is_flash_encryption_key_valid(self, loader) -> bool:
        if self.flash_encryption_key_valid_fn is None:
            raise UnsupportedFeature("Flash encryption key check", self.name)
        return self.flash_encryption_key_valid_fn(self, loader)

    def parse_flash_freq(self, freq: Optional[str]) -> int:
        if freq is None:
            return 0
        try:
            return self.flash_frequency[freq]
        except KeyError:
            raise ValueError(f"Flash frequency '{freq}' is not supported by {self.name}. "
                             f"Supported frequencies: {', '.join(self.flash_frequency)}")

    def parse_flash_size(self, size: str) -> int:
        try:
            return self.flash_sizes[size]
        except KeyError:
            raise ValueError(f"Flash size '{size}' is not supported by {self.name}. "
                             f"Supported sizes: {', '.join(self.flash_sizes)}")


def derive(base: ChipDescriptor, **overrides) -> ChipDescriptor:
    """Create a descriptor that equals base except for the given fields."""
    return dataclasses.replace(base, **overrides)


ESP32_FLASH_SIZES = _frozen({
    '1MB': 0x00, '2MB': 0x10, '4MB': 0x20, '8MB': 0x30,
    '16MB': 0x40, '32MB': 0x50, '64MB': 0x60, '128MB': 0x70,
})

ESP32_FLASH_FREQUENCY = _frozen({'80m': 0xF, '40m': 0x0, '26m': 0x1, '20m': 0x2})

ESP32C3_KEY_PURPOSES = _frozen({
    0: 'USER/EMPTY',
    1: 'RESERVED',
    4: 'XTS_AES_128_KEY',
    5: 'HMAC_DOWN_ALL',
    6: 'HMAC_DOWN_JTAG',
    7: 'HMAC_DOWN_DIGITAL_SIGNATURE',
    8: 'HMAC_UP',
    9: 'SECURE_BOOT_DIGEST0',
    10: 'SECURE_BOOT_DIGEST1',
    11: 'SECURE_BOOT_DIGEST2',
})

ESP8266 = ChipDescriptor(
    name='ESP8266',
    magic_values=(0xFFF0C101,),
    features=('WiFi',),
    efuse_base=0x3FF00050,
    xtal_clk_divider=2,
    spi_reg_base=0x60000200,
    spi_usr_offs=0x1C,
    spi_usr1_offs=0x20,
    spi_usr2_offs=0x24,
    spi_mosi_dlen_offs=None,
    spi_miso_dlen_offs=None,
    spi_w0_offs=0x40,
    memory_map=(
        (0x3FF00000, 0x3FF00010, 'DPORT'),
        (0x3FFE8000, 0x40000000, 'DRAM'),
        (0x40100000, 0x40108000, 'IRAM'),
        (0x40201010, 0x402E1010, 'IROM'),
    ),
    flash_frequency=ESP32_FLASH_FREQUENCY,
    flash_sizes=_frozen({
        '512KB': 0x00, '256KB': 0x10, '1MB': 0x20, '2MB': 0x30,
        '4MB': 0x40, '8MB': 0x80, '16MB': 0x90,
    }),
    rom_status_bytes_length=2,
    rom_extended_commands=False,
    rom_needs_spi_attach=False,
)

ESP32 = ChipDescriptor(
    name='ESP32',
    magic_values=(0x00F01D83,),
    features=('WiFi', 'BT', 'Dual Core'),
    efuse_base=0x3FF5A000,
    uart_clkdiv_reg=0x3FF40014,
    spi_reg_base=0x3FF42000,
    spi_usr_offs=0x1C,
    spi_usr1_offs=0x20,
    spi_usr2_offs=0x24,
    spi_mosi_dlen_offs=0x28,
    spi_miso_dlen_offs=0x2C,
    spi_w0_offs=0x80,
    bootloader_flash_offset=0x1000,
    memory_map=(
        (0x00000000, 0x00010000, 'PADDING'),
        (0x3F400000, 0x3F800000, 'DROM'),
        (0x3F800000, 0x3FC00000, 'EXTRAM_DATA'),
        (0x3FF80000, 0x3FF82000, 'RTC_DRAM'),
        (0x3FF90000, 0x40000000, 'BYTE_ACCESSIBLE'),
        (0x3FFAE000, 0x40000000, 'DRAM'),
        (0x3FFE0000, 0x3FFFFFFC, 'DIRAM_DRAM'),
        (0x40000000, 0x40070000, 'IROM'),
        (0x40070000, 0x40078000, 'CACHE_PRO'),
        (0x40078000, 0x40080000, 'CACHE_APP'),
        (0x40080000, 0x400A0000, 'IRAM'),
        (0x400A0000, 0x400BFFFC, 'DIRAM_IRAM'),
        (0x400C0000, 0x400C2000, 'RTC_IRAM'),
        (0x400D0000, 0x40400000, 'IROM'),
        (0x50000000, 0x50002000, 'RTC_DATA'),
    ),
    flash_frequency=ESP32_FLASH_FREQUENCY,
    flash_sizes=ESP32_FLASH_SIZES,
)

ESP32S2 = derive(
    ESP32,
    name='ESP32-S2',
    magic_values=(0x000007C6,),
    image_chip_id=2,
    supports_encrypted_flash=True,
    features=('WiFi', 'Single Core'),
    efuse_base=0x3F41A000,
    uart_clkdiv_reg=0x3F400014,
    spi_reg_base=0x3F402000,
    spi_usr_offs=0x18,
    spi_usr1_offs=0x1C,
    spi_usr2_offs=0x20,
    spi_mosi_dlen_offs=0x24,
    spi_miso_dlen_offs=0x28,
    spi_w0_offs=0x58,
    memory_map=(
        (0x00000000, 0x00010000, 'PADDING'),
        (0x3F000000, 0x3FF80000, 'DROM'),
        (0x3F500000, 0x3FF80000, 'EXTRAM_DATA'),
        (0x3FF9E000, 0x3FFA0000, 'RTC_DRAM'),
        (0x3FF9E000, 0x40000000, 'BYTE_ACCESSIBLE'),
        (0x3FF9E000, 0x40072000, 'MEM_INTERNAL'),
        (0x3FFB0000, 0x40000000, 'DRAM'),
        (0x40000000, 0x4001A100, 'IROM_MASK'),
        (0x40020000, 0x40070000, 'IRAM'),
        (0x40070000, 0x40072000, 'RTC_IRAM'),
        (0x40080000, 0x40800000, 'IROM'),
        (0x50000000, 0x50002000, 'RTC_DATA'),
    ),
)

ESP32S3 = derive(
    ESP32S2,
    name='ESP32-S3',
    magic_values=(0x9,),
    image_chip_id=9,
    features=('WiFi', 'BLE', 'Dual Core'),
    efuse_base=0x60007000,
    uart_clkdiv_reg=0x60000014,
    crystal_freq_fn=fixed_crystal_freq(40),
    uartdev_buf_no=0x3FCEF14C,
    uartdev_buf_no_usb_jtag_serial=4,
    rtc_wdt_config0_offs=0x98,
    rtc_wdt_config1_offs=0x9C,
    rtc_wdt_wprotect_offs=0xB0,
    watchdog_reset_fn=rtc_watchdog_reset,
    spi_reg_base=0x60002000,
    bootloader_flash_offset=0x0,
    memory_map=(
        (0x00000000, 0x00010000, 'PADDING'),
        (0x3C000000, 0x3D000000, 'DROM'),
        (0x3D000000, 0x3E000000, 'EXTRAM_DATA'),
        (0x600FE000, 0x60100000, 'RTC_DRAM'),
        (0x3FC88000, 0x3FD00000, 'BYTE_ACCESSIBLE'),
        (0x3FC88000, 0x403E2000, 'MEM_INTERNAL'),
        (0x3FC88000, 0x3FD00000, 'DRAM'),
        (0x40000000, 0x4001A100, 'IROM_MASK'),
        (0x40370000, 0x403E0000, 'IRAM'),
        (0x600FE000, 0x60100000, 'RTC_IRAM'),
        (0x42000000, 0x42800000, 'IROM'),
        (0x50000000, 0x50002000, 'RTC_DATA'),
    ),
)

ESP32C3 = derive(
    ESP32S3,
    name='ESP32-C3',
    magic_values=(0x6921506F, 0x1B31506F, 0x4881606F, 0x4361606F),
    image_chip_id=5,
    features=('WiFi', 'BLE', 'Single Core'),
    efuse_base=0x60008800,
    uartdev_buf_no=0x3FCDF07C,
    uartdev_buf_no_usb_jtag_serial=3,
    rtc_wdt_config0_offs=0x90,
    rtc_wdt_config1_offs=0x94,
    rtc_wdt_wprotect_offs=0xA8,
    memory_map=(
        (0x00000000, 0x00010000, 'PADDING'),
        (0x3C000000, 0x3C800000, 'DROM'),
        (0x3FC80000, 0x3FCE0000, 'DRAM'),
        (0x3FC88000, 0x3FD00000, 'BYTE_ACCESSIBLE'),
        (0x3FF00000, 0x3FF20000, 'DROM_MASK'),
        (0x40000000, 0x40060000, 'IROM_MASK'),
        (0x42000000, 0x42800000, 'IROM'),
        (0x4037C000, 0x403E0000, 'IRAM'),
        (0x50000000, 0x50002000, 'RTC_IRAM'),
        (0x50000000, 0x50002000, 'RTC_DRAM'),
        (0x600FE000, 0x60100000, 'MEM_INTERNAL2'),
    ),
    key_purposes=ESP32C3_KEY_PURPOSES,
    efuse_purpose_regs=((0x34, 24), (0x34, 28), (0x38, 0), (0x38, 4), (0x38, 8), (0x38, 12)),
)

ESP32C6 = derive(
    ESP32C3,
    name='ESP32-C6',
    magic_values=(0x2CE0806F,),
    image_chip_id=13,
    features=('WiFi 6', 'BT 5', 'IEEE802.15.4'),
    efuse_base=0x600B0800,
    uartdev_buf_no=0x4087F580,
    spi_reg_base=0x60003000,
    watchdog_reset_fn=None,
    memory_map=(
        (0x00000000, 0x00010000, 'PADDING'),
        (0x42800000, 0x43000000, 'DROM'),
        (0x40800000, 0x40880000, 'DRAM'),
        (0x40800000, 0x40880000, 'BYTE_ACCESSIBLE'),
        (0x4004AC00, 0x40050000, 'DROM_MASK'),
        (0x40000000, 0x4004AC00, 'IROM_MASK'),
        (0x42000000, 0x42800000, 'IROM'),
        (0x40800000, 0x40880000, 'IRAM'),
        (0x50000000, 0x50004000, 'RTC_IRAM'),
        (0x50000000, 0x50004000, 'RTC_DRAM'),
        (0x600FE000, 0x60100000, 'MEM_INTERNAL2'),
    ),
    flash_frequency=_frozen({'80m': 0x0, '40m': 0x0, '20m': 0x2}),
)

ESP32C5 = derive(
    ESP32C6,
    name='ESP32-C5',
    magic_values=(0x1101406F, 0x63E1406F, 0x5FD1406F),
    image_chip_id=23,
    features=('Wi-Fi 6 (dual-band)', 'BT 5 (LE)', 'IEEE802.15.4', 'Single Core + LP Core', '240MHz'),
    bootloader_flash_offset=0x2000,
    efuse_base=0x600B4800,
    crystal_thresholds=((45, 48), (33, 40), (0, 26)),
    crystal_freq_fn=detect_crystal_freq,
    sysclk_conf_reg=0x60096110,
    sysclk_xtal_freq_mask=0x7F << 24,
    sysclk_xtal_freq_shift=24,
    uartdev_buf_no=0x4085F514,
    watchdog_reset_fn=placeholder_watchdog_reset,
    before_change_baud_fn=esp32c5_before_change_baud,
    chip_description_fn=esp32c5_chip_description,
    memory_map=(
        (0x00000000, 0x00010000, 'PADDING'),
        (0x42000000, 0x44000000, 'DROM'),
        (0x40800000, 0x40860000, 'DRAM'),
        (0x40800000, 0x40860000, 'BYTE_ACCESSIBLE'),
        (0x4003A000, 0x40040000, 'DROM_MASK'),
        (0x40000000, 0x4003A000, 'IROM_MASK'),
        (0x42000000, 0x44000000, 'IROM'),
        (0x40800000, 0x40860000, 'IRAM'),
        (0x50000000, 0x50004000, 'RTC_IRAM'),
        (0x50000000, 0x50004000, 'RTC_DRAM'),
        (0x600FE000, 0x60100000, 'MEM_INTERNAL2'),
    ),
    flash_frequency=_frozen({'80m': 0xF, '40m': 0x0, '20m': 0x2}),
    key_purposes=_frozen({
        0: 'USER/EMPTY',
        1: 'ECDSA_KEY',
        4: 'XTS_AES_128_KEY',
        5: 'HMAC_DOWN_ALL',
        6: 'HMAC_DOWN_JTAG',
        7: 'HMAC_DOWN_DIGITAL_SIGNATURE',
        8: 'HMAC_UP',
        9: 'SECURE_BOOT_DIGEST0',
        10: 'SECURE_BOOT_DIGEST1',
        11: 'SECURE_BOOT_DIGEST2',
        12: 'KM_INIT_KEY',
        15: 'XTS_AES_128_PSRAM_KEY',
        16: 'ECDSA_KEY_P192',
        17: 'ECDSA_KEY_P384_L',
        18: 'ECDSA_KEY_P384_H',
    }),
    efuse_purpose_regs=((0x34, 22), (0x34, 27), (0x38, 0), (0x38, 5), (0x38, 10), (0x38, 15)),
    efuse_purpose_mask=0x1F,
    xts_aes_key_purposes=frozenset((4,)),
    efuse_mac_offset=0x44,
    efuse_flash_crypt_cnt_field=(0x34, 0x7 << 18),
    efuse_secure_boot_field=(0x38, 1 << 20),
    efuse_dis_manual_encrypt_field=(0x30, 1 << 20),
    # FORCE_USE_KEY_MANAGER_KEY, XTS-AES value
    efuse_force_key_manager_field=(0x34, 2 << 10),
    flash_encryption_key_valid_fn=key_purpose_or_key_manager_valid,
)

ESP32H2 = derive(
    ESP32C6,
    name='ESP32-H2',
    magic_values=(0xD7B73E80,),
    image_chip_id=16,
    features=('BLE', 'IEEE802.15.4'),
    crystal_freq_fn=fixed_crystal_freq(32),
    uartdev_buf_no=0x4084FEFC,
    memory_map=(
        (0x00000000, 0x00010000, 'PADDING'),
        (0x42800000, 0x43000000, 'DROM'),
        (0x40800000, 0x40850000, 'DRAM'),
        (0x40800000, 0x40850000, 'BYTE_ACCESSIBLE'),
        (0x4001C400, 0x40020000, 'DROM_MASK'),
        (0x40000000, 0x4001C400, 'IROM_MASK'),
        (0x42000000, 0x42800000, 'IROM'),
        (0x40800000, 0x40850000, 'IRAM'),
        (0x50000000, 0x50001000, 'RTC_IRAM'),
        (0x50000000, 0x50001000, 'RTC_DRAM'),
        (0x600FE000, 0x60100000, 'MEM_INTERNAL2'),
    ),
    flash_frequency=_frozen({'48m': 0xF, '24m': 0x0, '16m': 0x1, '12m': 0x2}),
)

CHIP_DEFS = (ESP8266, ESP32, ESP32S2, ESP32S3, ESP32C3, ESP32C6, ESP32C5, ESP32H2)


def detect_chip(magic_value: int, registry: Sequence[ChipDescriptor] = CHIP_DEFS) -> ChipDescriptor:
    """
    Select the chip whose magic values contain the value read from the device.

    Args:
        magic_value: Value of the chip detect register
        registry: Descriptors to search, in priority order

    Returns:
        The first matching descriptor

    Raises:
        UnknownChip: If no descriptor accepts the value
    """
    for chip in registry:
        if chip.accepts(magic_value):
            return chip
    raise UnknownChip(magic_value)


def get_chip(name: str, registry: Sequence[ChipDescriptor] = CHIP_DEFS) -> ChipDescriptor:
    """Look a chip up by name, ignoring case and dashes."""
    wanted = name.upper().replace('-', '')
    for chip in registry:
        if chip.name.upper().replace('-', '') == wanted:
            return chip
    raise KeyError(f'Unknown chip {name}')
