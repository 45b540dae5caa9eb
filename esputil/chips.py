from collections import namedtuple


class ChipProfile(namedtuple("ChipProfile", [
        "chip_id",              # value of the CHIP_DETECT_MAGIC register
        "name",
        "bootloader_offset",    # flash offset of the 2nd stage bootloader image
        "flash_begin_extra",    # ROM FLASH_BEGIN takes a trailing "encrypted" word
        "status_len",           # number of status bytes at the end of a response
        "image_chip_id",        # chip id byte for the image extended header, or None
        "wp_pin",               # WP pin byte for the image extended header
        "efuse_base",           # base MAC eFuse register block, 0 if unknown
        "mac0_offset",
        "mac1_offset",
        "uart_clkdiv_reg",
        "xtal_clk_divider",
        "legacy",               # ESP8266 family
])):
    """ Static description of a chip family.

    All downstream logic reads these fields, it never compares identifiers.
    """
    __slots__ = ()

    @property
    def is_unknown(self):
        return self.chip_id == 0

    @property
    def needs_bootloader_params(self):
        """ Flash parameters can be read back from the bootloader on the device. """
        return not self.legacy and not self.is_unknown

    @property
    def has_mac_registers(self):
        return self.efuse_base != 0

    def __str__(self):
        return self.name


def _chip(chip_id, name, bootloader_offset=0, flash_begin_extra=True, status_len=4,
          image_chip_id=None, wp_pin=0xEE, efuse_base=0, mac0_offset=0, mac1_offset=0,
          uart_clkdiv_reg=0, xtal_clk_divider=1, legacy=False):
    return ChipProfile(chip_id, name, bootloader_offset, flash_begin_extra, status_len,
                       image_chip_id, wp_pin, efuse_base, mac0_offset, mac1_offset,
                       uart_clkdiv_reg, xtal_clk_divider, legacy)


UNKNOWN_CHIP = _chip(0, "Unknown", flash_begin_extra=False, status_len=2)

KNOWN_CHIPS = [
    _chip(0xfff0c101, "ESP8266", flash_begin_extra=False, status_len=2,
          xtal_clk_divider=2, legacy=True),
    _chip(0x00f01d83, "ESP32", bootloader_offset=0x1000, flash_begin_extra=False,
          efuse_base=0x3FF5A000, mac0_offset=0x04, mac1_offset=0x08,
          uart_clkdiv_reg=0x3FF40014),
    _chip(0x6921506f, "ESP32-C3-ECO2", image_chip_id=5),
    _chip(0x1b31506f, "ESP32-C3-ECO3", image_chip_id=5,
          efuse_base=0x60008800, mac0_offset=0x44, mac1_offset=0x48,
          uart_clkdiv_reg=0x60000014),
    _chip(0x000007c6, "ESP32-S2", bootloader_offset=0x1000, image_chip_id=2, wp_pin=0,
          efuse_base=0x3F41A044, mac0_offset=0x44, mac1_offset=0x48,
          uart_clkdiv_reg=0x3F400014),
    _chip(0xeb004136, "ESP32-S3-BETA2"),
    _chip(0x00000009, "ESP32-S3-BETA3",
          efuse_base=0x60007000, mac0_offset=0x44, mac1_offset=0x48,
          uart_clkdiv_reg=0x60000014),
    _chip(0x0da1806f, "ESP32-C6-BETA"),
]


def chip_by_id(chip_id):
    for chip in KNOWN_CHIPS:
        if chip.chip_id == chip_id:
            return chip
    return None


def chip_by_name(name):
    for chip in KNOWN_CHIPS:
        if chip.name.lower() == name.lower():
            return chip
    return None


def chip_names():
    return [chip.name for chip in KNOWN_CHIPS]
