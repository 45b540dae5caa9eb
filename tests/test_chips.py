"""Tests for the chip registry."""

from esputil.chips import KNOWN_CHIPS, UNKNOWN_CHIP, chip_by_id, chip_by_name


class TestLookup:
    """Lookups by identifier and by name."""

    def test_by_id(self):
        """ROM identifiers map to chip names."""
        assert chip_by_id(0x00f01d83).name == "ESP32"
        assert chip_by_id(0xfff0c101).name == "ESP8266"
        assert chip_by_id(0x000007c6).name == "ESP32-S2"
        assert chip_by_id(0x1b31506f).name == "ESP32-C3-ECO3"

    def test_unknown_id(self):
        """Unregistered identifiers are not found."""
        assert chip_by_id(0x12345678) is None

    def test_by_name_case_insensitive(self):
        """Names match regardless of case."""
        assert chip_by_name("esp32-s2") is chip_by_name("ESP32-S2")
        assert chip_by_name("nope") is None

    def test_ids_unique(self):
        """Every registered chip has its own identifier."""
        ids = [chip.chip_id for chip in KNOWN_CHIPS]
        assert len(ids) == len(set(ids))


class TestProfiles:
    """Capabilities carried by the profiles."""

    def test_unknown_default(self):
        """The default profile has the short status and no bootloader offset."""
        assert UNKNOWN_CHIP.is_unknown
        assert UNKNOWN_CHIP.status_len == 2
        assert UNKNOWN_CHIP.bootloader_offset == 0
        assert not UNKNOWN_CHIP.needs_bootloader_params

    def test_esp8266_legacy(self):
        """ESP8266 uses a 2 byte status and no flash params read."""
        chip = chip_by_name("ESP8266")
        assert chip.legacy
        assert chip.status_len == 2
        assert not chip.needs_bootloader_params
        assert chip.xtal_clk_divider == 2

    def test_esp32(self):
        """ESP32 has its bootloader at 0x1000 and a 4 byte status."""
        chip = chip_by_name("ESP32")
        assert chip.bootloader_offset == 0x1000
        assert chip.status_len == 4
        assert not chip.flash_begin_extra
        assert chip.has_mac_registers

    def test_flash_begin_extra_param(self):
        """Newer families take the extra FLASH_BEGIN word."""
        for name in ("ESP32-S2", "ESP32-S3-BETA2", "ESP32-S3-BETA3", "ESP32-C3-ECO2",
                     "ESP32-C3-ECO3", "ESP32-C6-BETA"):
            assert chip_by_name(name).flash_begin_extra, name

    def test_image_patch_fields(self):
        """C3 and S2 carry the chip id for the image header, S2 clears the WP pin."""
        assert chip_by_name("ESP32-C3-ECO3").image_chip_id == 5
        assert chip_by_name("ESP32-C3-ECO2").image_chip_id == 5
        s2 = chip_by_name("ESP32-S2")
        assert (s2.image_chip_id, s2.wp_pin) == (2, 0)
        assert chip_by_name("ESP32").image_chip_id is None

    def test_str(self):
        """Profiles print as their name."""
        assert str(chip_by_name("esp32")) == "ESP32"
