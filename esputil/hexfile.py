"""Intel HEX encoding and decoding.

Only record types 0 (data), 1 (end of file) and 4 (extended linear address)
are produced. The decoder skips other record types.
"""
import os

from esputil.const import HEX_RECORD_SIZE
from esputil.errors import FormatError
from esputil.helpers import reset_scratch_dir

DATA = 0
END_OF_FILE = 1
EXTENDED_ADDRESS = 4


def record_checksum(rtype, address, data):
    cs = rtype + len(data) + ((address >> 8) & 0xff) + (address & 0xff) + sum(data)
    return (~cs + 1) & 0xff


class HexRecord(object):
    def __init__(self, rtype, address, data=b''):
        self.rtype = rtype
        self.address = address & 0xffff
        self.data = bytes(data)

    @property
    def checksum(self):
        return record_checksum(self.rtype, self.address, self.data)

    def encode(self):
        return ":%02x%04x%02x%s%02x" % (len(self.data), self.address, self.rtype,
                                        self.data.hex(), self.checksum)

    @classmethod
    def extended_address(cls, addr):
        return cls(EXTENDED_ADDRESS, 0, bytes([(addr >> 24) & 0xff, (addr >> 16) & 0xff]))

    @classmethod
    def parse(cls, line, lineno=0, strict=False):
        """ Parse one record, with whitespace already stripped. """
        if not line.startswith(":"):
            raise FormatError("line %d: no colon" % lineno)
        try:
            length = int(line[1:3], 16)
            expected = 1 + 2 + 4 + 2 + length * 2 + 2
            if len(line) != expected:
                raise FormatError("line %d: len %d, expected %d" % (lineno, len(line), expected))
            address = int(line[3:7], 16)
            rtype = int(line[7:9], 16)
            data = bytes.fromhex(line[9:9 + length * 2])
            checksum = int(line[9 + length * 2:], 16)
        except ValueError as err:
            raise FormatError("line %d: invalid hex digits: %s" % (lineno, err)) from err
        record = cls(rtype, address, data)
        if strict and checksum != record.checksum:
            raise FormatError("line %d: checksum 0x%02x, expected 0x%02x"
                              % (lineno, checksum, record.checksum))
        return record

    def __repr__(self):
        return "HexRecord(type=%d, address=0x%04x, len=%d)" % (self.rtype, self.address, len(self.data))


def iter_records(pairs):
    """ Yield the records for a sequence of (address, data) pairs, then the EOF record.

    Data records never cross a 64 KiB boundary. An extended address record is
    emitted whenever the upper 16 address bits change.
    """
    upper = None
    for addr, data in pairs:
        pos = 0
        while pos < len(data):
            if upper != addr >> 16:
                upper = addr >> 16
                yield HexRecord.extended_address(addr)
            n = min(HEX_RECORD_SIZE, len(data) - pos, 0x10000 - (addr & 0xffff))
            yield HexRecord(DATA, addr, data[pos:pos + n])
            pos += n
            addr += n
    yield HexRecord(END_OF_FILE, 0)


def encode_hex(pairs):
    return "".join(record.encode() + "\n" for record in iter_records(pairs))


def _lines(text):
    """ Split HEX text into records, ignoring all whitespace. """
    line, lineno = [], 1
    for c in text:
        if c == "\n":
            if line:
                yield lineno, "".join(line)
            line = []
            lineno += 1
        elif not c.isspace():
            line.append(c)
    if line:
        yield lineno, "".join(line)


def decode_hex(text, strict=False):
    """ Decode HEX text into a list of (address, data) runs of contiguous bytes.

    Per-record checksums are only verified in strict mode.
    """
    runs = []
    current = None
    upper = 0
    next_addr = 0
    for lineno, line in _lines(text):
        record = HexRecord.parse(line, lineno, strict)
        if record.rtype == DATA:
            addr = upper | record.address
            if current is None or next_addr != addr:
                current = [addr, bytearray()]
                runs.append(current)
            current[1] += record.data
            next_addr = addr + len(record.data)
        elif record.rtype == END_OF_FILE:
            current = None
        elif record.rtype == EXTENDED_ADDRESS:
            upper = int.from_bytes(record.data[:2], "big") << 16
    return [(addr, bytes(data)) for addr, data in runs]


def mkhex(pairs, out):
    """ Write the HEX encoding of (address, path) pairs to a text stream. """
    def contents():
        for addr, path in pairs:
            with open(path, "rb") as f:
                yield addr, f.read()
    for record in iter_records(contents()):
        out.write(record.encode() + "\n")


def unhex_to_dir(hexfile, tmp_dir, strict=False):
    """ Unpack a HEX file into tmp_dir as one <address>.bin file per contiguous run.

    tmp_dir is deleted and recreated first. Returns the list of created paths.
    """
    try:
        with open(hexfile, "rb") as f:
            text = f.read().decode("latin-1")
    except IOError as err:
        raise FormatError("cannot open %s: %s" % (hexfile, err)) from err
    runs = decode_hex(text, strict)
    reset_scratch_dir(tmp_dir)
    paths = []
    for addr, data in runs:
        path = os.path.join(tmp_dir, "%#x.bin" % addr)
        with open(path, "wb") as f:
            f.write(data)
        paths.append(path)
    return paths
