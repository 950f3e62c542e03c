"""
Exception classes for espflasher.
"""

from typing import Optional


class EspFlasherException(Exception):
    """Base exception class for espflasher."""
    def __init__(self, message):
        super().__init__(message)


class FrameError(EspFlasherException):
    """Exception raised when a byte sequence is not a well-formed SLIP frame."""
    def __init__(self, message):
        super().__init__(f'Malformed frame: {message}')


class Timeout(EspFlasherException):
    """Exception raised when the device gives no matching response in time."""
    def __init__(self, operation, attempts=1):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f'Timed out waiting for {operation} response after {attempts} attempt(s)')


class ProtocolError(EspFlasherException):
    """Exception raised for a well-formed response that reports a failure."""

    # Error codes reported by the ROM and the stub in the status bytes
    ERROR_CODES = {
        0x05: 'Received message is invalid',
        0x06: 'Failed to act on received message',
        0x07: 'Invalid CRC in message',
        0x08: 'Flash write error',
        0x09: 'Flash read error',
        0x0A: 'Flash read length error',
        0x0B: 'Deflate error',
        0xC0: 'Bad data length',
        0xC1: 'Bad data checksum',
        0xC2: 'Bad blocksize',
        0xC3: 'Invalid command',
        0xC4: 'Failed SPI operation',
        0xC5: 'Failed SPI unlock',
        0xC6: 'Not in flash mode',
        0xC7: 'Inflate error',
        0xC8: 'Not enough data',
        0xC9: 'Too much data',
        0xFF: 'Command not implemented',
    }

    def __init__(self, message, error_code: Optional[int] = None):
        self.error_code = error_code
        if error_code is not None:
            reason = self.ERROR_CODES.get(error_code, 'Unknown error')
            message = f'{message} (result was {error_code:#04x}: {reason})'
        super().__init__(message)


class UnknownChip(EspFlasherException):
    """Exception raised when the magic value matches no known chip."""
    def __init__(self, magic_value):
        self.magic_value = magic_value
        super().__init__(f'Unexpected chip magic value {magic_value:#010x}. '
                         'Unsupported or unknown chip')


class UnsupportedFeature(EspFlasherException):
    """Exception raised when the chip has no support for a feature."""
    def __init__(self, feature, chip_name):
        self.feature = feature
        super().__init__(f'{feature} is not supported on {chip_name}')


class StubUploadError(EspFlasherException):
    """Exception raised when the stub could not be uploaded or started."""
    def __init__(self, message):
        super().__init__(f'Failed to start stub: {message}')


class FlashOpError(EspFlasherException):
    """Exception raised when the device rejects an erase or write request."""
    def __init__(self, message):
        super().__init__(message)


class VerifyError(EspFlasherException):
    """Exception raised when the flash contents do not match the written image."""
    def __init__(self, offset, size, expected, actual):
        self.offset = offset
        self.expected = expected
        self.actual = actual
        super().__init__(f'MD5 of {size} bytes at {offset:#010x} does not match: '
                         f'expected {expected}, device reported {actual}')


class SerialConnectionException(EspFlasherException):
    """Exception raised when there's an issue with the serial connection."""
    def __init__(self, message):
        super().__init__(f'Serial connection error: {message}')


class SessionStateError(EspFlasherException):
    """Exception raised for an operation that is not allowed in the current session state."""
    def __init__(self, message):
        super().__init__(message)


class OperationCancelled(EspFlasherException):
    """Exception raised when the user aborts a protocol operation."""
    def __init__(self, operation='operation'):
        super().__init__(f'{operation} was cancelled')


class TransportBusy(EspFlasherException):
    """Exception raised when the transport is owned by somebody else."""
    def __init__(self, owner):
        self.owner = owner
        super().__init__(f'Transport is in use by {owner}')


class InvalidFlashRangeException(EspFlasherException):
    """Exception raised when an address is outside the valid flash range."""
    def __init__(self, value, def_range):
        message = f'Address {value:#010x} is not within valid range of {def_range[0]:#010x}:{def_range[1]:#010x}'
        super().__init__(message)


class InvalidNumberFormatException(EspFlasherException):
    """Exception raised when a number input is not in a valid format."""
    def __init__(self, value):
        message = f'Input \'{value}\' is not a valid number, it needs to be hex or dec.'
        super().__init__(message)


class FileNotFoundException(EspFlasherException):
    """Exception raised when a firmware file is not found."""
    def __init__(self, value):
        message = f'Firmware file not found at {value}'
        super().__init__(message)


class ManifestException(EspFlasherException):
    """Exception raised when a firmware manifest cannot be used."""
    def __init__(self, path, message):
        super().__init__(f'Invalid manifest {path}: {message}')
