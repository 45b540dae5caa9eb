"""Tests for the command protocol."""

import struct

import pytest

from esputil.chips import UNKNOWN_CHIP, chip_by_name
from esputil.errors import CommandTimeoutError, DeviceError, FatalError
from esputil.loader import (
    ESP_FLASH_BEGIN,
    ESP_FLASH_DATA,
    ESP_READ_REG,
    ESP_SYNC,
    ESPLoader,
    pack_spi_pins,
)
from esputil.slip import slip_encode

from conftest import FakeDevice, FakeTransport, make_response, unslip


def esp32_loader(transport):
    return ESPLoader(transport, chip_by_name("ESP32"))


class TestChecksum:
    """Tests for the ROM checksum."""

    def test_empty(self):
        """The seed alone."""
        assert ESPLoader.checksum(b"") == 0xEF

    def test_xor_fold(self):
        """0xEF XORed with every byte."""
        data = b"\x01\x02\x04\xff"
        expected = 0xEF
        for b in data:
            expected ^= b
        assert ESPLoader.checksum(data) == expected


class TestCommand:
    """Request framing and response matching."""

    def test_request_layout(self, transport):
        """Header is zero, opcode, length, checksum seed, then the payload."""
        loader = esp32_loader(transport)
        loader.command(ESP_READ_REG, b"\x00\x10\x00\x40", chk=0x1234)
        request = unslip(transport.writes[0])
        assert request[:8] == struct.pack("<BBHI", 0, ESP_READ_REG, 4, 0x1234)
        assert request[8:] == b"\x00\x10\x00\x40"

    def test_returns_zero_on_success(self, transport):
        """Status 0 means success."""
        ecode, frame = esp32_loader(transport).command(ESP_SYNC, b"\x00" * 36)
        assert ecode == 0
        assert frame[1] == ESP_SYNC

    def test_wrong_opcode_ignored(self):
        """A response echoing another opcode does not complete the call."""
        transport = FakeTransport()
        transport.feed(make_response(ESP_SYNC))
        loader = esp32_loader(transport)
        with pytest.raises(CommandTimeoutError):
            loader.command(ESP_READ_REG, b"\x00" * 4)

    def test_short_and_request_frames_skipped(self):
        """Frames under 10 bytes or not marked as responses are skipped."""
        transport = FakeTransport()
        transport.feed(slip_encode(b"\x01\x0a\x02\x00"))
        transport.feed(slip_encode(struct.pack("<BBHI", 0, ESP_READ_REG, 2, 0) + b"\x00\x00"))
        transport.feed(make_response(ESP_READ_REG, value=0xdeadbeef))
        loader = esp32_loader(transport)
        assert loader.read_reg(0x3ff00000) == 0xdeadbeef

    def test_debug_text_before_response(self):
        """Boot messages on the line are passed over."""
        transport = FakeTransport()
        transport.feed(b"rst:0x1 (POWERON_RESET),boot:0x3 (DOWNLOAD_BOOT)\r\n")
        transport.feed(make_response(ESP_READ_REG, value=7))
        assert esp32_loader(transport).read_reg(0) == 7

    def test_error_code_four_byte_status(self, capsys):
        """Non-legacy chips keep status and error in the last four bytes."""
        transport = FakeTransport()
        transport.feed(make_response(ESP_FLASH_DATA, error=8, status_len=4))
        ecode, _ = esp32_loader(transport).command(ESP_FLASH_DATA)
        assert ecode == 8
        assert "error 8: Flash write error" in capsys.readouterr().out

    def test_error_code_two_byte_status(self):
        """Unknown and ESP8266 chips keep status and error in the last two bytes."""
        transport = FakeTransport()
        transport.feed(make_response(ESP_FLASH_DATA, error=7, status_len=2))
        ecode, _ = ESPLoader(transport, UNKNOWN_CHIP).command(ESP_FLASH_DATA)
        assert ecode == 7

    def test_unknown_error_code(self, capsys):
        """Codes outside 5-11 print as unknown."""
        transport = FakeTransport()
        transport.feed(make_response(ESP_FLASH_DATA, error=0x42))
        esp32_loader(transport).command(ESP_FLASH_DATA)
        assert "error 66: Unknown error" in capsys.readouterr().out

    def test_leftover_bytes_kept_for_next_command(self):
        """Two responses in one read both get used."""
        transport = FakeTransport()
        transport.feed(make_response(ESP_READ_REG, value=1) + make_response(ESP_READ_REG, value=2))
        loader = esp32_loader(transport)
        assert loader.read_reg(0) == 1
        assert loader.read_reg(4) == 2

    def test_flush_input_discards_leftovers(self):
        """flush_input() drops pending bytes."""
        transport = FakeTransport()
        transport.feed(make_response(ESP_READ_REG, value=1) + make_response(ESP_READ_REG, value=2))
        loader = esp32_loader(transport)
        loader.read_reg(0)
        loader.flush_input()
        with pytest.raises(CommandTimeoutError):
            loader.read_reg(4)

    def test_check_command_raises_device_error(self):
        """A non-zero status becomes a DeviceError with the code and text."""
        transport = FakeTransport()
        transport.feed(make_response(ESP_FLASH_BEGIN, error=6))
        with pytest.raises(DeviceError) as excinfo:
            esp32_loader(transport).check_command("erase failed", ESP_FLASH_BEGIN)
        assert excinfo.value.code == 6
        assert excinfo.value.op == ESP_FLASH_BEGIN
        assert str(excinfo.value) == "erase failed (error 6: Failed to act on received message)"


class TestOperations:
    """Payloads of the higher level commands."""

    def test_flash_begin_esp32(self, transport, device):
        """ESP32 ROM takes four words."""
        num_blocks = esp32_loader(transport).flash_begin(5000, 0x10000)
        assert num_blocks == 2
        assert device.flash_begins[0][4] == struct.pack("<IIII", 5000, 2, 4096, 0x10000)

    def test_flash_begin_extra_param(self):
        """Newer chips get a trailing zero word."""
        device = FakeDevice("ESP32-S2")
        transport = FakeTransport(device)
        ESPLoader(transport, device.chip).flash_begin(4096, 0)
        assert device.flash_begins[0][4] == struct.pack("<IIIII", 4096, 1, 4096, 0, 0)

    def test_flash_block(self, transport, device):
        """Length, sequence and the data checksum."""
        esp32_loader(transport).flash_block(b"\x01\x02\x03", 7)
        seq, data, chk = device.flash_blocks[0]
        assert (seq, data) == (7, b"\x01\x02\x03")
        assert chk == 0xEF ^ 0x01 ^ 0x02 ^ 0x03

    def test_flash_block_failure(self, transport, device):
        """A failing block write raises with the flash_data message."""
        device.errors[ESP_FLASH_DATA] = 8
        with pytest.raises(DeviceError, match="flash_data failed"):
            esp32_loader(transport).flash_block(b"\x00", 0)

    def test_flash_finish_reboots(self, transport, device):
        """FLASH_END carries 0 for reboot."""
        esp32_loader(transport).flash_finish()
        assert device.flash_ends == [b"\x00\x00\x00\x00"]

    def test_spi_pin_packing(self):
        """CLK,Q,D,HD,CS packs into 6-bit fields."""
        assert pack_spi_pins((6, 17, 8, 11, 16)) == 0xb408446

    def test_spi_attach(self, transport):
        """SPI_ATTACH then SPI_SET_PARAMS with a generic geometry."""
        esp32_loader(transport).spi_attach((6, 17, 8, 11, 16))
        attach, params = transport.requests
        assert attach[8:] == struct.pack("<II", 0xb408446, 0)
        assert params[8:] == struct.pack("<IIIIII", 0, 4 * 1024 * 1024, 65536, 4096, 256, 0xffff)

    def test_spi_attach_default_pins(self, transport):
        """No pins means zero."""
        esp32_loader(transport).flash_spi_attach()
        assert transport.requests[0][8:] == b"\x00" * 8

    def test_read_flash_slow(self, transport, device):
        """Data comes from byte 8 of the response."""
        device.flash[0x100:0x110] = bytes(range(16))
        assert esp32_loader(transport).read_flash_slow(0x100, 16) == bytes(range(16))

    def test_read_flash_slow_short_response(self):
        """Fewer bytes than asked for is a fatal error."""
        device = FakeDevice("ESP32", flash_size=0x120)
        loader = esp32_loader(FakeTransport(device))
        with pytest.raises(FatalError, match="Short flash read @ addr 0x100"):
            loader.read_flash_slow(0x100, 64)

    def test_change_baud(self, transport, device):
        """Device first, then the host side."""
        esp32_loader(transport).change_baud(921600)
        assert device.baud_changes == [921600]
        assert transport.baudrate == 921600

    def test_mem_commands(self, transport):
        """MEM_BEGIN, MEM_DATA and MEM_END payloads."""
        loader = esp32_loader(transport)
        loader.mem_begin(16, 1, 0x1800, 0x40080000)
        loader.mem_block(b"\xaa" * 16, 0)
        loader.mem_finish(0x40080000)
        begin, block, end = transport.requests
        assert begin[8:] == struct.pack("<IIII", 16, 1, 0x1800, 0x40080000)
        assert block[4:8] == struct.pack("<I", ESPLoader.checksum(b"\xaa" * 16))
        assert end[8:] == struct.pack("<II", 0, 0x40080000)

    def test_write_reg(self, transport):
        """WRITE_REG carries address, value, mask and delay."""
        esp32_loader(transport).write_reg(0x3ff00000, 5)
        assert transport.requests[0][8:] == struct.pack("<IIII", 0x3ff00000, 5, 0xFFFFFFFF, 0)

    def test_hard_reset(self, transport):
        """IO0 high, pulse EN low."""
        esp32_loader(transport).hard_reset()
        assert transport.lines == [("dtr", False), ("rts", True), ("rts", False)]
