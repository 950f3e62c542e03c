"""
espflasher - A client for the ESP serial bootloader protocol.
"""

from .chips import ChipDescriptor, CHIP_DEFS, derive, detect_chip, get_chip
from .chip_helper import ChipHelper
from .engine import CancelToken, CommandEngine
from .monitor import SerialMonitor
from .programmer import FlashPart, ProgressEvent, Programmer
from .session import Session, SessionController, SessionState
from .stub import StubImage, upload_stub
from .transport import SerialTransport, Transport, TransportLock
from .exceptions import (
    EspFlasherException,
    FrameError,
    Timeout,
    ProtocolError,
    UnknownChip,
    UnsupportedFeature,
    StubUploadError,
    FlashOpError,
    VerifyError,
    SerialConnectionException,
    SessionStateError,
    OperationCancelled,
    TransportBusy,
    InvalidFlashRangeException,
    InvalidNumberFormatException,
    FileNotFoundException,
    ManifestException
)

__version__ = '1.0.0'
