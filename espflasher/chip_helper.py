"""
Chip helper module for espflasher.
Provides address parsing and range validations against a chip's memory layout.
"""

import logging
from typing import Iterable, Optional, Tuple

from .chips import ChipDescriptor, RAM_REGION_KINDS
from .exceptions import InvalidFlashRangeException, InvalidNumberFormatException

logger = logging.getLogger(__name__)


class ChipHelper:
    """Helper class for chip-specific address validations."""

    def __init__(self, chip: ChipDescriptor):
        """
        Initialize the chip helper.

        Args:
            chip: Descriptor of the identified chip
        """
        self.chip = chip

    @staticmethod
    def in_range(value: int, range_tuple: Tuple[int, int]) -> bool:
        """
        Check if a value is within the specified range.

        Args:
            value: Value to check
            range_tuple: Range tuple (min, max), both inclusive

        Returns:
            True if value is within range, False otherwise
        """
        return range_tuple[0] <= value <= range_tuple[1]

    def check_flash_addr(self, addr: int, size: Optional[int] = None,
                         flash_size: Optional[int] = None) -> bool:
        """
        Check if a flash offset is valid for the chip.

        Args:
            addr: Flash offset to check
            size: Number of bytes starting at addr (optional)
            flash_size: Size of the attached flash. When unknown the largest
                flash the chip can address is the bound.

        Returns:
            True if the range is valid

        Raises:
            InvalidFlashRangeException: If the range leaves the flash
        """
        if not flash_size:
            flash_size = self.chip.max_flash_size
        upper = (flash_size - 1) if flash_size else 0xFFFFFFFF
        flash_range = (0, upper)
        if not self.in_range(addr, flash_range):
            raise InvalidFlashRangeException(addr, flash_range)
        if size is not None and size > 0:
            if not self.in_range(addr + size - 1, flash_range):
                raise InvalidFlashRangeException(addr + size - 1, flash_range)
        return True

    def check_no_overlap(self, ranges: Iterable[Tuple[int, int]]) -> bool:
        """
        Check that (offset, size) ranges do not overlap each other.

        Raises:
            InvalidFlashRangeException: At the first offset that is written twice
        """
        previous_end = None
        previous_start = None
        for start, size in sorted(ranges):
            if previous_end is not None and start < previous_end:
                raise InvalidFlashRangeException(start, (previous_start, previous_end - 1))
            previous_start, previous_end = start, start + size
        return True

    def ram_region(self, addr: int, size: int) -> Optional[Tuple[int, int, str]]:
        """Return the writable memory map entry holding [addr, addr + size), if any."""
        for start, end, kind in self.chip.memory_map:
            if kind in RAM_REGION_KINDS and start <= addr and addr + size <= end:
                return start, end, kind
        return None

    def check_ram_range(self, addr: int, size: int) -> bool:
        """
        Check that a RAM load lies inside one writable region of the memory map.

        Raises:
            InvalidFlashRangeException: If it overlaps anything else
        """
        if self.ram_region(addr, size) is None:
            raise InvalidFlashRangeException(addr, (addr, addr + size - 1))
        return True

    def number_helper(self, number_or_str: str) -> int:
        """
        Convert a string to a number, handling hex, decimal and the name 'bootloader'.

        Args:
            number_or_str: String to convert

        Returns:
            Integer value

        Raises:
            InvalidNumberFormatException: If string cannot be converted to a number
        """
        number_or_str = number_or_str.strip()

        if number_or_str.lower() == 'bootloader':
            return self.chip.bootloader_flash_offset

        # Check if hex
        if number_or_str.lower().startswith('0x'):
            try:
                return int(number_or_str, 16)
            except ValueError:
                raise InvalidNumberFormatException(number_or_str)

        # Try decimal
        try:
            return int(number_or_str)
        except ValueError:
            raise InvalidNumberFormatException(number_or_str)
