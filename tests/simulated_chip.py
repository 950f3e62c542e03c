"""
Simulated device for the tests: a Transport that answers like an ESP ROM loader or stub.
"""

import hashlib
import os
import struct
import sys
import time
import zlib

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from espflasher import slip
from espflasher.chips import ESP32
from espflasher.config import Protocol
from espflasher.exceptions import FrameError
from espflasher.transport import Transport

ROM_SYNC_VALUE = 0x20120707
SYNC_EXTRA_REPLIES = 3
SPI_CMD_USR = 1 << 18


class SimulatedChip(Transport):
    """
    In-memory device speaking the bootloader protocol.

    Flash behaves like NOR flash: erased bytes read 0xFF and writes can only
    clear bits.
    """

    def __init__(self, chip=ESP32, flash_size=4 * 1024 * 1024, flash_id=0x1640EF,
                 stub_running=False, silent=False, magic=None):
        self.chip = chip
        self.magic = chip.magic_values[0] if magic is None else magic
        self.flash = bytearray(b'\xff' * flash_size)
        self.flash_id = flash_id
        self.stub = stub_running
        self.silent = silent
        self.ram = {}
        self.registers = {
            chip.uart_clkdiv_reg: int(40e6 * chip.xtal_clk_divider / 115200),
        }
        self.commands = []
        self.packets = []
        self.control_lines = []
        self.drop_responses = 0
        self.before_md5 = None
        self.fail_opcodes = set()
        self._open = False
        self._baud = 115200
        self._in = bytearray()
        self._out = bytearray()
        self._write = None

    # Transport

    @property
    def baudrate(self):
        return self._baud

    @property
    def is_open(self):
        return self._open

    def open(self, baud):
        self._open = True
        self._baud = baud

    def close(self):
        self._open = False

    def write(self, data):
        self._in += data
        while True:
            start = self._in.find(Protocol.SLIP_END)
            if start < 0:
                self._in = bytearray()
                return
            end = self._in.find(Protocol.SLIP_END, start + 1)
            if end < 0:
                del self._in[:start]
                return
            frame = bytes(self._in[start:end + 1])
            del self._in[:end + 1]
            if frame == Protocol.SLIP_END * 2:
                continue
            self._handle_frame(frame)

    def read(self, timeout):
        if self._out:
            data = bytes(self._out)
            self._out = bytearray()
            return data
        time.sleep(min(timeout, 0.005))
        return b''

    def set_control_lines(self, assert_reset, assert_boot_select):
        self.control_lines.append((assert_reset, assert_boot_select))

    def flush_input(self):
        pass

    # Helpers for tests

    def inject(self, data):
        """Queue raw bytes as if the device had sent them."""
        self._out += data

    def opcodes(self):
        return [opcode for opcode, _ in self.commands]

    # Device side

    @property
    def status_length(self):
        return Protocol.STUB_STATUS_BYTES_LENGTH if self.stub else self.chip.rom_status_bytes_length

    def _status(self, ok=True, error=0):
        status = bytes([0 if ok else 1, error])
        return status + b'\x00' * (self.status_length - 2)

    def _reply(self, opcode, data=b'', value=0, ok=True, error=0):
        self._out += slip.encode(opcode, data + self._status(ok, error), value,
                                 direction=Protocol.DIRECTION_RESPONSE)

    def _handle_frame(self, frame):
        try:
            packet = slip.decode_packet(frame)
        except FrameError:
            return  # acks of READ_FLASH and other short packets
        opcode, payload = packet.opcode, packet.payload
        self.commands.append((opcode, payload))
        self.packets.append(packet)
        if self.silent:
            return
        if self.drop_responses:
            self.drop_responses -= 1
            return
        if opcode in Protocol.DATA_COMMANDS:
            if packet.checksum != slip.checksum(payload[slip.DATA_BLOCK_HEADER_SIZE:]):
                self._reply(opcode, ok=False, error=0x07)
                return
        if opcode in self.fail_opcodes:
            self._reply(opcode, ok=False, error=0x06)
            return
        handler = getattr(self, '_cmd_' + Protocol.COMMAND_NAMES.get(opcode, 'unknown').lower(), None)
        if handler is None:
            self._reply(opcode, ok=False, error=Protocol.ROM_INVALID_RECV_MSG)
            return
        handler(opcode, payload)

    def _cmd_sync(self, opcode, payload):
        value = 0 if self.stub else ROM_SYNC_VALUE
        for _ in range(1 + (0 if self.stub else SYNC_EXTRA_REPLIES)):
            self._reply(opcode, value=value)

    def _cmd_read_reg(self, opcode, payload):
        addr, = struct.unpack('<I', payload[:4])
        if addr == Protocol.CHIP_DETECT_MAGIC_REG_ADDR:
            value = self.magic
        else:
            value = self.registers.get(addr, 0)
        self._reply(opcode, value=value)

    def _cmd_write_reg(self, opcode, payload):
        addr, value, mask, _ = struct.unpack('<IIII', payload[:16])
        old = self.registers.get(addr, 0)
        self.registers[addr] = (old & ~mask) | (value & mask)
        if addr == self.chip.spi_reg_base and value & SPI_CMD_USR:
            self._run_spi_command()
        self._reply(opcode)

    def _run_spi_command(self):
        base = self.chip.spi_reg_base
        command = self.registers.get(base + self.chip.spi_usr2_offs, 0) & 0xFF
        if command == Protocol.SPIFLASH_RDID:
            self.registers[base + self.chip.spi_w0_offs] = self.flash_id
        self.registers[base] = 0

    def _cmd_spi_attach(self, opcode, payload):
        self._reply(opcode)

    def _cmd_spi_set_params(self, opcode, payload):
        self._reply(opcode)

    def _cmd_change_baudrate(self, opcode, payload):
        self._baud, _ = struct.unpack('<II', payload[:8])
        self._reply(opcode)

    def _cmd_mem_begin(self, opcode, payload):
        size, blocks, blocksize, offset = struct.unpack('<IIII', payload[:16])
        self._write = {'offset': offset, 'blocksize': blocksize}
        self._reply(opcode)

    def _cmd_mem_data(self, opcode, payload):
        size, seq = struct.unpack('<II', payload[:8])
        addr = self._write['offset'] + seq * self._write['blocksize']
        self.ram[addr] = payload[16:16 + size]
        self._reply(opcode)

    def _cmd_mem_end(self, opcode, payload):
        no_entry, entry = struct.unpack('<II', payload[:8])
        self._reply(opcode)
        if not no_entry:
            self.stub = True
            self._out += slip.slip_escape(Protocol.STUB_GREETING)

    def _erase(self, offset, size):
        sector = Protocol.FLASH_SECTOR_SIZE
        start = offset - offset % sector
        end = offset + size
        end += -end % sector
        end = min(end, len(self.flash))
        self.flash[start:end] = b'\xff' * (end - start)

    def _program(self, offset, data):
        for i, b in enumerate(data):
            if offset + i < len(self.flash):
                self.flash[offset + i] &= b

    def _cmd_flash_begin(self, opcode, payload):
        size, blocks, blocksize, offset = struct.unpack('<IIII', payload[:16])
        if offset + size > len(self.flash):
            self._reply(opcode, ok=False, error=0x08)
            return
        self._erase(offset, size)
        self._write = {'offset': offset, 'blocksize': blocksize}
        self._reply(opcode)

    def _cmd_flash_data(self, opcode, payload):
        size, seq = struct.unpack('<II', payload[:8])
        self._program(self._write['offset'] + seq * self._write['blocksize'], payload[16:16 + size])
        self._reply(opcode)

    def _cmd_flash_end(self, opcode, payload):
        self._reply(opcode)

    def _cmd_flash_defl_begin(self, opcode, payload):
        erase_size, blocks, blocksize, offset = struct.unpack('<IIII', payload[:16])
        self._erase(offset, erase_size)
        self._write = {'offset': offset, 'written': 0, 'inflate': zlib.decompressobj()}
        self._reply(opcode)

    def _cmd_flash_defl_data(self, opcode, payload):
        size, seq = struct.unpack('<II', payload[:8])
        data = self._write['inflate'].decompress(payload[16:16 + size])
        self._program(self._write['offset'] + self._write['written'], data)
        self._write['written'] += len(data)
        self._reply(opcode)

    def _cmd_flash_defl_end(self, opcode, payload):
        self._reply(opcode)

    def _cmd_spi_flash_md5(self, opcode, payload):
        addr, size = struct.unpack('<II', payload[:8])
        if self.before_md5 is not None:
            self.before_md5(self)
        digest = hashlib.md5(bytes(self.flash[addr:addr + size]))
        if self.stub:
            self._reply(opcode, digest.digest())
        else:
            self._reply(opcode, digest.hexdigest().encode('ascii'))

    def _cmd_erase_flash(self, opcode, payload):
        self.flash[:] = b'\xff' * len(self.flash)
        self._reply(opcode)

    def _cmd_erase_region(self, opcode, payload):
        offset, size = struct.unpack('<II', payload[:8])
        self._erase(offset, size)
        self._reply(opcode)

    def _cmd_read_flash_slow(self, opcode, payload):
        addr, size = struct.unpack('<II', payload[:8])
        data = bytes(self.flash[addr:addr + size])
        self._reply(opcode, data + b'\xff' * (Protocol.READ_FLASH_SLOW_BLOCK - len(data)))

    def _cmd_read_flash(self, opcode, payload):
        addr, size, sector, _ = struct.unpack('<IIII', payload[:16])
        self._reply(opcode)
        data = bytes(self.flash[addr:addr + size])
        for i in range(0, len(data), sector):
            self._out += slip.slip_escape(data[i:i + sector])
        self._out += slip.slip_escape(hashlib.md5(data).digest())
