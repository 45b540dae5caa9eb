import argparse
import io
import signal
import struct
import sys

from esputil.const import (
    ESP_ROM_BAUD,
    FLASH_BLOCK_SIZE,
    READ_BOOTLOADER_TIMEOUT,
    READ_FLASH_BLOCK_SIZE,
)
from esputil.errors import EsputilError, FatalError
from esputil.helpers import is_url, open_downloadable_binary, print_overwrite
from esputil.hexfile import decode_hex, mkhex, unhex_to_dir
from esputil.image import ESP_IMAGE_MAGIC, ELFFile, elf2image
from esputil.monitor import Monitor


class ChipInfo:
    def __init__(self, name, chip_id, mac=None, xtal=None):
        self.name = name
        self.chip_id = chip_id
        self.mac = mac
        self.xtal = xtal

    def as_dict(self):
        return {
            "name": self.name,
            "chip_id": self.chip_id,
            "mac": self.mac,
            "xtal": self.xtal,
        }


def read_chip_info(loader, baud=ESP_ROM_BAUD):
    """ MAC from eFuse, crystal frequency estimated from the UART clock divider.

    Both stay None for chips without a known register map.
    """
    chip = loader.chip
    info = ChipInfo(chip.name, chip.chip_id)
    if not chip.has_mac_registers:
        return info
    try:
        mac0 = loader.read_reg(chip.efuse_base + chip.mac0_offset)
        mac1 = loader.read_reg(chip.efuse_base + chip.mac1_offset)
        uart_div = loader.read_reg(chip.uart_clkdiv_reg) & 0xFFFFF
    except FatalError as err:
        raise EsputilError(f"Reading chip details failed: {err}") from err
    octets = ((mac1 >> 8) & 255, mac1 & 255, (mac0 >> 24) & 255,
              (mac0 >> 16) & 255, (mac0 >> 8) & 255, mac0 & 255)
    info.mac = ":".join("%02x" % b for b in octets)
    info.xtal = (baud * uart_div) / 1e6 / chip.xtal_clk_divider
    return info


def info(loader, baud=ESP_ROM_BAUD):
    chip_info = read_chip_info(loader, baud)
    print("Chip ID: 0x%x (%s)" % (chip_info.chip_id, chip_info.name))
    if chip_info.mac is not None:
        print(f"MAC: {chip_info.mac}")
        print("Detected xtal freq: %.2fMHz" % chip_info.xtal)
    return chip_info


def read_mem(loader, addr, size, out):
    """ Dump memory with 32-bit register reads, little-endian. """
    for ofs in range(0, size, 4):
        try:
            value = loader.read_reg(addr + ofs)
        except FatalError as err:
            raise EsputilError("Error: mem read @ addr %#x: %s" % (addr + ofs, err)) from err
        out.write(struct.pack('<I', value))
    out.flush()


def read_flash(loader, addr, size, out, spi_pins=None):
    if loader.chip.legacy:
        raise EsputilError("Can't do it on %s" % loader.chip.name)
    loader.spi_attach(spi_pins)
    ofs = 0
    while ofs < size:
        bs = min(READ_FLASH_BLOCK_SIZE, size - ofs)
        try:
            data = loader.read_flash_slow(addr + ofs, bs)
        except FatalError as err:
            raise EsputilError("Error: flash read @ addr %#x: %s" % (addr + ofs, err)) from err
        out.write(data)
        ofs += bs
    out.flush()


def resolve_flash_params(loader, override=None):
    """ Flash mode/size/frequency for the bootloader header.

    The override wins. Otherwise read bytes 2-3 of the bootloader image that
    is on the device already, falling back to 0.
    """
    if override is not None:
        return override
    chip = loader.chip
    if not chip.needs_bootloader_params:
        return 0
    try:
        data = loader.read_flash_slow(chip.bootloader_offset, 16, timeout=READ_BOOTLOADER_TIMEOUT)
    except FatalError as err:
        print("Error: can't read bootloader @ addr %#x: %s" % (chip.bootloader_offset, err))
        return 0
    if data[0] != ESP_IMAGE_MAGIC:
        print("Wrong magic for bootloader @ addr %#x" % chip.bootloader_offset)
        return 0
    return (data[2] << 8) | data[3]


def patch_image_header(block, chip, flash_params):
    """ Embed flash params and the chip type into the first block of a bootloader image. """
    block = bytearray(block)
    if flash_params and len(block) > 3:
        block[2] = (flash_params >> 8) & 255
        block[3] = flash_params & 255
    # common header is 8 bytes, so extended header byte N is at 8 + N
    if len(block) > 12:
        if chip.wp_pin != 0xEE:
            block[8] = chip.wp_pin
        if chip.image_chip_id is not None:
            block[12] = chip.image_chip_id
    return bytes(block)


class FlashSession(object):
    """ Erase and write one binary at one flash offset. """
    def __init__(self, loader, offset, binary, name, flash_params=0):
        self.loader = loader
        self.offset = offset
        self.binary = binary
        self.name = name
        self.flash_params = flash_params
        self.seq = 0
        binary.seek(0, 2)  # seek to end
        self.size = binary.tell()
        binary.seek(0)

    def run(self):
        print("Erasing %d bytes @ %#x" % (self.size, self.offset))
        self.loader.flash_begin(self.size, self.offset)
        written = 0
        while True:
            block = self.binary.read(FLASH_BLOCK_SIZE)
            if not block:
                break
            if self.seq == 0 and self.offset == self.loader.chip.bootloader_offset:
                block = patch_image_header(block, self.loader.chip, self.flash_params)
            written += len(block)
            print_overwrite("Writing %s, %d/%d bytes @ 0x%x (%d%%)"
                            % (self.name, len(block), self.size, self.offset + written - len(block),
                               written * 100 // self.size))
            self.loader.flash_block(block, self.seq)
            self.seq += 1
        print_overwrite("Written %s, %d bytes @ %#x" % (self.name, self.size, self.offset), last_line=True)
        return written


class FlashArgsAction(argparse.Action):
    """ Custom parser class for the flash arguments: address/filename pairs, or a single .hex file.

    Produces a list of (address, filename) tuples, address is None for HEX files.
    Files are not opened here, they may be URLs.
    """
    def __init__(self, option_strings, dest, nargs='+', hex_files=True, **kwargs):
        super(FlashArgsAction, self).__init__(option_strings, dest, nargs, **kwargs)
        self.hex_files = hex_files

    def __call__(self, parser, namespace, values, option_string=None):
        entries = []
        i = 0
        while i < len(values):
            if self.hex_files and values[i].lower().endswith(".hex"):
                entries.append((None, values[i]))
                i += 1
                continue
            try:
                address = int(values[i], 0)
            except ValueError:
                raise argparse.ArgumentError(self, 'Address "%s" must be a number' % values[i])
            if i + 1 >= len(values):
                raise argparse.ArgumentError(self, 'Must be pairs of an address and the binary filename to write there')
            entries.append((address, values[i + 1]))
            i += 2
        setattr(namespace, self.dest, entries)


def write_flash(loader, entries, flash_params=None, spi_pins=None, baud=ESP_ROM_BAUD):
    """ Flash every (address, filename) entry, then leave flash mode.

    Non-legacy chips get SPI attached first. Flash parameters are resolved
    once and patched into a bootloader image written at the chip's
    bootloader offset.
    """
    if baud > ESP_ROM_BAUD:
        print("Changing baud rate to %d" % baud)
        loader.change_baud(baud)

    params = flash_params or 0
    if not loader.chip.legacy:
        loader.spi_attach(spi_pins)
        params = resolve_flash_params(loader, flash_params)
    print("Using flash params %#x" % params)

    for address, path in entries:
        if is_url(path):
            print(f"Downloading {path}")
        binary = open_downloadable_binary(path)
        try:
            if address is None:
                runs = decode_hex(binary.read().decode("latin-1"))
                for run_addr, data in runs:
                    FlashSession(loader, run_addr, io.BytesIO(data), "%s@%#x" % (path, run_addr), params).run()
            else:
                FlashSession(loader, address, binary, path, params).run()
        finally:
            binary.close()

    loader.flash_finish(reboot=True)


def make_bin(elf_path, bin_path, chip=None, verbose=False):
    try:
        elf = ELFFile.from_file(elf_path)
    except IOError as err:
        raise EsputilError(f"Cannot open {elf_path}: {err}") from err
    image = elf2image(elf, chip)
    if verbose:
        print("%s: %d segments found" % (elf_path, len(image.segments)))
        for segment in image.segments:
            print("  addr %x size %u" % (segment.addr, segment.aligned_size))
    try:
        with open(bin_path, "wb") as f:
            image.save(f)
    except IOError as err:
        raise EsputilError(f"Cannot open {bin_path}: {err}") from err
    return image


def make_hex(pairs, out=None):
    out = sys.stdout if out is None else out
    try:
        mkhex(pairs, out)
    except IOError as err:
        raise EsputilError(f"ERROR: cannot open file: {err}") from err


def unpack_hex(hexfile, tmp_dir):
    paths = unhex_to_dir(hexfile, tmp_dir)
    for path in paths:
        print(path)
    return paths


def monitor(transport, baud=ESP_ROM_BAUD, bridge=None, verbose=False):
    """ Run the serial monitor until SIGINT or SIGTERM. """
    if baud != ESP_ROM_BAUD:
        transport.change_baud(baud)
    mon = Monitor(transport, bridge, verbose)
    signal.signal(signal.SIGINT, mon.stop)
    signal.signal(signal.SIGTERM, mon.stop)
    mon.run()
    return mon
