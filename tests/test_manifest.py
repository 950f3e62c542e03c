"""
Test module for firmware manifests and offset/file arguments.
"""

import json
import os
import shutil
import sys
import tempfile
import unittest

# Add parent directory to path to import espflasher modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from espflasher.chip_helper import ChipHelper
from espflasher.chips import ESP32C3
from espflasher.exceptions import (
    FileNotFoundException,
    InvalidNumberFormatException,
    ManifestException,
)
from espflasher.manifest import load_flash_args, load_manifest, parse_offset


class TestParseOffset(unittest.TestCase):
    """Test cases for offset parsing."""

    def test_formats(self):
        """Test integers, hex strings and decimal strings."""
        self.assertEqual(parse_offset(4096), 4096)
        self.assertEqual(parse_offset('0x10000'), 0x10000)
        self.assertEqual(parse_offset(' 65536 '), 65536)

    def test_invalid(self):
        """Test values that are not offsets."""
        for value in ('0xZZ', 'app', True, None):
            with self.assertRaises(InvalidNumberFormatException):
                parse_offset(value)


class TestManifest(unittest.TestCase):
    """Test cases for loading manifests from disk."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.write_file('bootloader.bin', b'\xe9' + b'\x00' * 15)
        self.write_file('partitions.bin', b'\xaa\x50' * 8)
        self.write_file('app.bin', b'\x01\x02\x03')
        self.write_file('app-c3.bin', b'\x04\x05')

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def write_file(self, name, data):
        with open(os.path.join(self.tmpdir, name), 'wb') as f:
            f.write(data)

    def write_manifest(self, manifest, name='manifest.json'):
        path = os.path.join(self.tmpdir, name)
        with open(path, 'w') as f:
            if isinstance(manifest, str):
                f.write(manifest)
            else:
                json.dump(manifest, f)
        return path

    def test_load_parts(self):
        """Test that parts are read relative to the manifest in order."""
        path = self.write_manifest({'builds': [{'chipFamily': 'ESP32', 'parts': [
            {'path': 'bootloader.bin', 'offset': 4096},
            {'path': 'partitions.bin', 'offset': '0x8000'},
            {'path': 'app.bin', 'offset': 65536},
        ]}]})
        parts = load_manifest(path)
        self.assertEqual([p.offset for p in parts], [0x1000, 0x8000, 0x10000])
        self.assertEqual([p.name for p in parts], ['bootloader.bin', 'partitions.bin', 'app.bin'])
        self.assertEqual(parts[2].data, b'\x01\x02\x03')

    def test_chip_family_selects_build(self):
        """Test picking the build matching the connected chip."""
        path = self.write_manifest({'builds': [
            {'chipFamily': 'ESP32', 'parts': [{'path': 'app.bin', 'offset': 0x10000}]},
            {'chipFamily': 'ESP32-C3', 'parts': [{'path': 'app-c3.bin', 'offset': 0x10000}]},
        ]})
        parts = load_manifest(path, ESP32C3.name)
        self.assertEqual(parts[0].data, b'\x04\x05')
        parts = load_manifest(path, 'esp32c3')
        self.assertEqual(parts[0].data, b'\x04\x05')
        with self.assertRaises(ManifestException):
            load_manifest(path, 'ESP32-S3')

    def test_build_without_chip_family(self):
        """Test that a build without chipFamily fits any chip."""
        path = self.write_manifest({'builds': [{'parts': [{'path': 'app.bin', 'offset': 0}]}]})
        self.assertEqual(len(load_manifest(path, 'ESP32-H2')), 1)

    def test_missing_files(self):
        """Test missing manifest and missing part files."""
        with self.assertRaises(FileNotFoundException):
            load_manifest(os.path.join(self.tmpdir, 'nope.json'))
        path = self.write_manifest({'builds': [{'parts': [{'path': 'missing.bin', 'offset': 0}]}]})
        with self.assertRaises(FileNotFoundException):
            load_manifest(path)

    def test_malformed(self):
        """Test manifests that can't be used."""
        bad = [
            '{not json',
            {'builds': []},
            [],
            {'builds': [{'parts': []}]},
            {'builds': [{'parts': [{'offset': 0}]}]},
            {'builds': [{'parts': [{'path': 'app.bin', 'offset': 'start'}]}]},
        ]
        for manifest in bad:
            path = self.write_manifest(manifest)
            with self.assertRaises(ManifestException, msg=repr(manifest)):
                load_manifest(path)

    def test_flash_args(self):
        """Test offset/file pairs from the command line."""
        pairs = [('0x1000', os.path.join(self.tmpdir, 'bootloader.bin')),
                 ('app', os.path.join(self.tmpdir, 'app.bin'))]
        with self.assertRaises(InvalidNumberFormatException):
            load_flash_args(pairs)
        pairs[0] = ('bootloader', pairs[0][1])
        parts = load_flash_args(pairs[:1], ChipHelper(ESP32C3).number_helper)
        self.assertEqual(parts[0].offset, ESP32C3.bootloader_flash_offset)
        self.assertEqual(parts[0].data[0], 0xE9)


if __name__ == '__main__':
    unittest.main()
