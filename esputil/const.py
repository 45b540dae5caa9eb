import re
import sys

__version__ = "1.0.0"

if sys.platform == "win32":
    DEFAULT_PORT = "COM99"  # Non-existent port, forces -p
elif sys.platform == "darwin":
    DEFAULT_PORT = "/dev/cu.usbmodem"
else:
    DEFAULT_PORT = "/dev/ttyUSB0"

ESP_ROM_BAUD = 115200
DEFAULT_TMP_DIR = "tmp"
DEFAULT_UDP_PORT = 1999

# Environment variables backing the global options
ENV_PORT = "PORT"
ENV_BAUD = "BAUD"
ENV_FLASH_PARAMS = "FLASH_PARAMS"
ENV_FLASH_SPI = "FLASH_SPI"
ENV_CHIP = "CHIP"
ENV_TMP_DIR = "TMP_DIR"
ENV_UDP_PORT = "UDP_PORT"
ENV_VERBOSE = "V"

# Command timeouts, in seconds
SYNC_TIMEOUT = 0.1
READ_REG_TIMEOUT = 0.1
SPI_TIMEOUT = 0.25
FLASH_BEGIN_TIMEOUT = 15
FLASH_DATA_TIMEOUT = 1.5
FLASH_END_TIMEOUT = 0.25
READ_FLASH_TIMEOUT = 0.5
READ_BOOTLOADER_TIMEOUT = 2
CHANGE_BAUD_TIMEOUT = 0.05
MEM_TIMEOUT = 0.25
MONITOR_POLL_TIMEOUT = 1.0

DEFAULT_RESET_DELAY = 0.05  # IO0 hold time after releasing EN
CONNECT_ATTEMPTS = 6

SLIP_BUFFER_SIZE = 32 * 1024
FLASH_BLOCK_SIZE = 4096
READ_FLASH_BLOCK_SIZE = 64
HEX_RECORD_SIZE = 16

# https://stackoverflow.com/a/3809435/8924614
HTTP_REGEX = re.compile(
    r"https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{2,256}\.[a-z]{2,6}\b([-a-zA-Z0-9@:%_+.~#?&/=]*)"
)
