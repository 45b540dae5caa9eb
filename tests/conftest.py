"""Shared fixtures: a scripted ROM bootloader behind a fake serial transport."""

import struct
import time

import pytest

from esputil.chips import chip_by_name
from esputil.slip import slip_encode


def unslip(data):
    """Decode one SLIP frame as written by slip_send()."""
    assert data[:1] == b"\xc0" and data[-1:] == b"\xc0"
    return data[1:-1].replace(b"\xdb\xdc", b"\xc0").replace(b"\xdb\xdd", b"\xdb")


def make_response(op, value=0, data=b"", error=0, status_len=4):
    """Build a SLIP-encoded bootloader response frame."""
    status = bytes([1 if error else 0, error]) + bytes(status_len - 2)
    body = data + status
    return slip_encode(struct.pack("<BBHI", 1, op, len(body), value) + body)


class FakeDevice:
    """Answers bootloader requests the way the ROM does.

    flash is a bytearray standing in for the SPI flash, registers maps
    addresses to 32-bit values. errors maps an opcode to an error code to
    report. Requests whose opcode is in silent get no answer at all.
    """

    def __init__(self, chip_name="ESP32", flash_size=0x10000, sync_failures=0):
        chip = chip_by_name(chip_name)
        self.chip = chip
        self.status_len = chip.status_len
        self.registers = {0x40001000: chip.chip_id}
        self.flash = bytearray(b"\xff" * flash_size)
        self.sync_failures = sync_failures
        self.errors = {}
        self.silent = set()
        self.flash_begins = []
        self.flash_blocks = []
        self.flash_ends = []
        self.baud_changes = []
        self._write_offset = 0

    def respond(self, op, value=0, data=b""):
        return make_response(op, value, data, self.errors.get(op, 0), self.status_len)

    def __call__(self, request):
        _, op, length, chk = struct.unpack("<BBHI", request[:8])
        payload = request[8:8 + length]
        if op in self.silent:
            return b""
        if op == 0x08:
            if self.sync_failures > 0:
                self.sync_failures -= 1
                return b""
            return self.respond(op, 0x20120707)
        if op == 0x0a:
            (addr,) = struct.unpack("<I", payload)
            return self.respond(op, self.registers.get(addr, 0))
        if op == 0x02:
            size, blocks, block_size, offset = struct.unpack("<IIII", payload[:16])
            self.flash_begins.append((size, blocks, block_size, offset, payload))
            self._write_offset = offset
            return self.respond(op)
        if op == 0x03:
            size, seq, _, _ = struct.unpack("<IIII", payload[:16])
            data = payload[16:16 + size]
            self.flash_blocks.append((seq, data, chk))
            if op not in self.errors:
                self.flash[self._write_offset:self._write_offset + len(data)] = data
                self._write_offset += len(data)
            return self.respond(op)
        if op == 0x04:
            self.flash_ends.append(payload)
            return self.respond(op)
        if op == 0x0e:
            offset, size = struct.unpack("<II", payload)
            return self.respond(op, data=bytes(self.flash[offset:offset + size]))
        if op == 0x0f:
            self.baud_changes.append(struct.unpack("<II", payload)[0])
            return self.respond(op)
        return self.respond(op)


class FakeTransport:
    """In-memory stand-in for SerialTransport."""

    def __init__(self, device=None, atomic=True):
        self.device = device
        self.rx = bytearray()
        self.writes = []
        self.requests = []
        self.lines = []
        self.supports_atomic_rts_dtr = atomic
        self.baudrate = 115200
        self.closed = False

    def feed(self, data):
        self.rx += data

    def read(self, timeout):
        data = bytes(self.rx)
        self.rx.clear()
        return data

    def write(self, data):
        self.writes.append(bytes(data))
        if self.device is not None and data[:1] == b"\xc0":
            request = unslip(bytes(data))
            self.requests.append(request)
            self.rx += self.device(request)

    def flush_input(self):
        self.rx.clear()

    def set_rts(self, state):
        self.lines.append(("rts", state))

    def set_dtr(self, state):
        self.lines.append(("dtr", state))

    def set_rts_and_dtr(self, rts, dtr):
        self.lines.append(("rts+dtr", rts, dtr))

    def change_baud(self, baud):
        self.baudrate = baud

    def fileno(self):
        return 3

    def close(self):
        self.closed = True

    def opcodes(self):
        return [request[1] for request in self.requests]


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Reset sequences and baud changes sleep, tests don't need to."""
    monkeypatch.setattr(time, "sleep", lambda seconds: None)


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def transport(device):
    return FakeTransport(device)
