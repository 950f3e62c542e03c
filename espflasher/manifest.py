"""
Manifest module for espflasher.
Turns firmware manifests and offset/file pairs into FlashParts.
"""

import json
import logging
import os
from typing import List, Optional, Sequence, Tuple

from .exceptions import FileNotFoundException, InvalidNumberFormatException, ManifestException
from .programmer import FlashPart

logger = logging.getLogger(__name__)


def parse_offset(value) -> int:
    """Offsets are either integers or strings in hex or decimal."""
    if isinstance(value, bool):
        raise InvalidNumberFormatException(str(value))
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip(), 0)
    except ValueError:
        raise InvalidNumberFormatException(str(value))


def read_part(path: str, offset: int) -> FlashPart:
    if not os.path.exists(path):
        raise FileNotFoundException(path)
    with open(path, 'rb') as f:
        data = f.read()
    logger.debug(f"Loaded {len(data)} bytes from {path} for offset {offset:#x}")
    return FlashPart(data, offset, os.path.basename(path))


def load_manifest(path: str, chip_family: Optional[str] = None) -> List[FlashPart]:
    """
    Load the parts of a firmware manifest.

    The manifest lists builds, each with parts of a path relative to the
    manifest and a flash offset:
    {"builds": [{"chipFamily": "ESP32", "parts": [{"path": "app.bin", "offset": 65536}]}]}

    Args:
        path: Path of the manifest JSON file
        chip_family: Only use builds for this chip family, the first build otherwise

    Returns:
        FlashParts in manifest order

    Raises:
        ManifestException: If the manifest is malformed or has no matching build
        FileNotFoundException: If the manifest or a part file does not exist
    """
    if not os.path.exists(path):
        raise FileNotFoundException(path)
    try:
        with open(path, 'r') as f:
            manifest = json.load(f)
    except json.JSONDecodeError as e:
        raise ManifestException(path, f"invalid JSON: {e}")

    builds = manifest.get('builds') if isinstance(manifest, dict) else None
    if not builds:
        raise ManifestException(path, "no builds listed")

    if chip_family is not None:
        wanted = chip_family.replace('-', '').upper()
        # builds without a chipFamily fit any chip
        matching = [b for b in builds
                    if str(b.get('chipFamily') or wanted).replace('-', '').upper() == wanted]
        if not matching:
            raise ManifestException(path, f"no build for {chip_family}")
        build = matching[0]
    else:
        build = builds[0]

    base_dir = os.path.dirname(os.path.abspath(path))
    parts = []
    for entry in build.get('parts', []):
        try:
            part_path = entry['path']
            offset = parse_offset(entry['offset'])
        except (KeyError, TypeError) as e:
            raise ManifestException(path, f"invalid part entry {entry!r}: {e}")
        except InvalidNumberFormatException as e:
            raise ManifestException(path, str(e))
        parts.append(read_part(os.path.join(base_dir, part_path), offset))
    if not parts:
        raise ManifestException(path, "build has no parts")
    logger.info(f"Loaded {len(parts)} parts from {path}")
    return parts


def load_flash_args(pairs: Sequence[Tuple[str, str]], number_helper=parse_offset) -> List[FlashPart]:
    """
    Load (offset, file) pairs as given on the command line.

    Args:
        pairs: Offset strings and file paths
        number_helper: Converts an offset string, e.g. ChipHelper.number_helper

    Returns:
        FlashParts in the given order
    """
    return [read_part(path, number_helper(offset)) for offset, path in pairs]
