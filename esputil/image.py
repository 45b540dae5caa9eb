import io
import struct

from esputil.errors import FormatError
from esputil.helpers import align_to
from esputil.loader import ESP_CHECKSUM_MAGIC, ESPLoader

ESP_IMAGE_MAGIC = 0xe9
EXTENDED_HEADER_LEN = 16

# wp_pin, spi drive (3 bytes), chip id (2 bytes), min rev, reserved (8), hash appended
DEFAULT_EXTENDED_HEADER = bytes([0xee, 0, 0, 0, 2, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0])


class ImageSegment(object):
    """ Wrapper class for a segment in an ESP image
    (very similar to a program header in an ELF file also) """
    def __init__(self, addr, data, file_offs=None):
        self.addr = addr
        self.data = bytes(data)
        self.file_offs = file_offs

    @property
    def aligned_size(self):
        return align_to(len(self.data), 4)

    def __repr__(self):
        r = "len 0x%05x load 0x%08x" % (len(self.data), self.addr)
        if self.file_offs is not None:
            r += " file_offs 0x%08x" % (self.file_offs)
        return r


class ESPFirmwareImage(object):
    """ ESP firmware image: common header, entry point, extended header,
    segments, then zero padding and a checksum byte at a 16 byte boundary.

    The checksum covers the real segment bytes only, never the alignment padding.
    """
    def __init__(self, load_file=None):
        self.segments = []
        self.entrypoint = 0
        self.flash_mode = 0
        self.flash_size_freq = 0
        self.extended_header = DEFAULT_EXTENDED_HEADER
        self.checksum = None

        if load_file is not None:
            self.load(load_file)

    def set_chip(self, chip):
        """ Fill the extended header fields for the given chip profile. """
        header = bytearray(self.extended_header)
        header[0] = chip.wp_pin
        if chip.image_chip_id is not None:
            header[4] = chip.image_chip_id
        self.extended_header = bytes(header)

    def calculate_checksum(self):
        """ Calculate checksum of loaded image, based on segments in
        segment array.
        """
        checksum = ESP_CHECKSUM_MAGIC
        for seg in self.segments:
            checksum = ESPLoader.checksum(seg.data, checksum)
        return checksum

    def save(self, f):
        """ Write the image to a binary file object. """
        f.write(struct.pack('<BBBBI', ESP_IMAGE_MAGIC, len(self.segments),
                            self.flash_mode, self.flash_size_freq, self.entrypoint))
        f.write(self.extended_header)
        ofs = 8 + EXTENDED_HEADER_LEN
        for segment in self.segments:
            f.write(struct.pack('<II', segment.addr, segment.aligned_size))
            f.write(segment.data)
            f.write(b'\x00' * (segment.aligned_size - len(segment.data)))
            ofs += 8 + segment.aligned_size
        # Pad to 16 bytes, so that the checksum is the last byte of the block
        f.write(b'\x00' * (align_to(ofs + 1, 16) - 1 - ofs))
        f.write(struct.pack('B', self.calculate_checksum()))

    def to_bytes(self):
        buf = io.BytesIO()
        self.save(buf)
        return buf.getvalue()

    def load(self, f):
        """ Parse an image from a binary file object.

        Segment data is read back at its stored (aligned) size. The zero
        padding does not change the XOR checksum.
        """
        header = f.read(8)
        if len(header) < 8:
            raise FormatError("Image too short: %d bytes" % len(header))
        (magic, segments, self.flash_mode, self.flash_size_freq,
         self.entrypoint) = struct.unpack('<BBBBI', header)
        if magic != ESP_IMAGE_MAGIC:
            raise FormatError('Invalid firmware image magic=0x%x' % (magic))
        self.extended_header = f.read(EXTENDED_HEADER_LEN)
        if len(self.extended_header) < EXTENDED_HEADER_LEN:
            raise FormatError("Image too short: truncated extended header")
        ofs = 8 + EXTENDED_HEADER_LEN
        for _ in range(segments):
            seg_header = f.read(8)
            if len(seg_header) < 8:
                raise FormatError("End of file reading segment header at 0x%x" % ofs)
            addr, size = struct.unpack('<II', seg_header)
            data = f.read(size)
            if len(data) < size:
                raise FormatError('End of file reading segment 0x%x, length %d (actual length %d)'
                                  % (addr, size, len(data)))
            self.segments.append(ImageSegment(addr, data, ofs))
            ofs += 8 + size
        f.read(align_to(ofs + 1, 16) - 1 - ofs)
        checksum = f.read(1)
        if len(checksum) < 1:
            raise FormatError("Image too short: missing checksum")
        self.checksum = checksum[0]

    def verify(self):
        calculated = self.calculate_checksum()
        if self.checksum != calculated:
            raise FormatError("Checksum mismatch: image has 0x%02x, calculated 0x%02x"
                              % (self.checksum, calculated))


class ELFFile(object):
    """ Read-only view of the program headers of an ELF32 file. """
    LEN_FILE_HEADER = 0x34
    LEN_SEG_HEADER = 0x20

    def __init__(self, data, name="ELF"):
        self.name = name
        self.data = bytes(data)
        self._read_header()

    @classmethod
    def from_file(cls, path):
        with open(path, 'rb') as f:
            return cls(f.read(), path)

    def _read_header(self):
        if len(self.data) < self.LEN_FILE_HEADER:
            raise FormatError("%s: corrupt ELF file, only %d bytes" % (self.name, len(self.data)))
        (ident, _type, _machine, _version,
         self.entrypoint, self.phoff, _shoff, _flags,
         _ehsize, _phentsize, self.phnum, _shentsize,
         _shnum, _shstrndx) = struct.unpack("<16sHHIIIIIHHHHHH", self.data[:self.LEN_FILE_HEADER])

        if ident[0] != 0x7f or ident[1:4] != b'ELF':
            raise FormatError("%s has invalid ELF magic header" % self.name)
        if ident[4] != 1:
            raise FormatError("%s: not ELF32: %d" % (self.name, ident[4]))

        # GCC-generated files have an empty first program header
        self.skip_first = self.phnum > 0 and self._raw_phdr(0)[4] == 0

    def _raw_phdr(self, index):
        offs = self.phoff + index * self.LEN_SEG_HEADER
        if offs + self.LEN_SEG_HEADER > len(self.data):
            raise FormatError("%s: program header %d is past the end of file" % (self.name, index))
        return struct.unpack_from("<IIIIIIII", self.data, offs)

    @property
    def num_segments(self):
        return self.phnum - 1 if self.skip_first else self.phnum

    def get_phdr(self, no):
        """ Return (vaddr, filesz, offset) of the no-th real program header. """
        if self.skip_first:
            no += 1
        _type, offset, vaddr, _paddr, filesz, _memsz, _flags, _align = self._raw_phdr(no)
        return vaddr, filesz, offset

    def segment(self, no):
        vaddr, filesz, offset = self.get_phdr(no)
        data = self.data[offset:offset + filesz]
        if len(data) < filesz:
            raise FormatError("%s: segment %d data is past the end of file" % (self.name, no))
        return ImageSegment(vaddr, data, offset)

    @property
    def segments(self):
        return [self.segment(i) for i in range(self.num_segments)]


def elf2image(elf, chip=None):
    """ Build an ESPFirmwareImage from the program headers of an ELFFile. """
    image = ESPFirmwareImage()
    image.entrypoint = elf.entrypoint
    if chip is not None:
        image.set_chip(chip)
    image.segments = elf.segments
    return image
