import struct
import time

from esputil.chips import UNKNOWN_CHIP, chip_by_id
from esputil.const import (
    CHANGE_BAUD_TIMEOUT,
    CONNECT_ATTEMPTS,
    DEFAULT_RESET_DELAY,
    FLASH_BEGIN_TIMEOUT,
    FLASH_BLOCK_SIZE,
    FLASH_DATA_TIMEOUT,
    FLASH_END_TIMEOUT,
    MEM_TIMEOUT,
    READ_FLASH_TIMEOUT,
    READ_REG_TIMEOUT,
    SPI_TIMEOUT,
    SYNC_TIMEOUT,
)
from esputil.errors import CommandTimeoutError, ConnectError, DeviceError, FatalError, describe_error
from esputil.helpers import HexFormatter, div_roundup, dump
from esputil.slip import SlipDecoder, slip_send

# Commands supported by the ROM bootloader
ESP_FLASH_BEGIN = 0x02
ESP_FLASH_DATA = 0x03
ESP_FLASH_END = 0x04
ESP_MEM_BEGIN = 0x05
ESP_MEM_END = 0x06
ESP_MEM_DATA = 0x07
ESP_SYNC = 0x08
ESP_WRITE_REG = 0x09
ESP_READ_REG = 0x0a
ESP_SPI_SET_PARAMS = 0x0b
ESP_SPI_ATTACH = 0x0d
ESP_READ_FLASH_SLOW = 0x0e
ESP_CHANGE_BAUDRATE = 0x0f

COMMAND_NAMES = {
    ESP_FLASH_BEGIN: "FLASH_BEGIN",
    ESP_FLASH_DATA: "FLASH_DATA",
    ESP_FLASH_END: "FLASH_END",
    ESP_MEM_BEGIN: "MEM_BEGIN",
    ESP_MEM_END: "MEM_END",
    ESP_MEM_DATA: "MEM_DATA",
    ESP_SYNC: "SYNC",
    ESP_WRITE_REG: "WRITE_REG",
    ESP_READ_REG: "READ_REG",
    ESP_SPI_SET_PARAMS: "SPI_SET_PARAMS",
    ESP_SPI_ATTACH: "SPI_ATTACH",
    ESP_READ_FLASH_SLOW: "READ_FLASH",
    ESP_CHANGE_BAUDRATE: "CHANGE_BAUD",
}

# Initial state for the checksum routine
ESP_CHECKSUM_MAGIC = 0xef

# This ROM address has a different value on each chip model
CHIP_DETECT_MAGIC_REG_ADDR = 0x40001000

SYNC_PAYLOAD = b'\x07\x07\x12\x20' + 32 * b'\x55'

# A response is at least the 8 byte header plus a 2 byte status
MIN_RESPONSE_LEN = 10


def pack_spi_pins(pins):
    """ Pack (clk, q, d, hd, cs) pin numbers into the SPI_ATTACH argument.

    6,17,8,11,16 -> 0xb408446, the same value esptool produces.
    """
    clk, q, d, hd, cs = pins
    return clk | (q << 6) | (d << 12) | (cs << 18) | (hd << 24)


class ResetStrategy(object):
    """ One way of wiggling RTS/DTR to get the chip into download mode.

    RTS = either CH_PD/EN or nRESET (both active low = chip in reset)
    DTR = GPIO0 (active low = boot to flasher)
    DTR & RTS are active low signals, ie True = pin @ 0V, False = pin @ VCC.
    """
    def __init__(self, transport, reset_delay=DEFAULT_RESET_DELAY):
        self.transport = transport
        self.reset_delay = reset_delay

    def __call__(self):
        self.reset()

    def reset(self):
        raise NotImplementedError

    def __repr__(self):
        return "%s(delay=%.2f)" % (type(self).__name__, self.reset_delay)


class USBJTAGSerialReset(ResetStrategy):
    """ Custom reset sequence, which is required when the device
    is connecting via its USB-JTAG-Serial peripheral.
    """
    def reset(self):
        t = self.transport
        t.set_rts(False)
        t.set_dtr(False)  # Idle
        time.sleep(0.1)
        t.set_dtr(True)  # Set IO0
        t.set_rts(False)
        time.sleep(0.1)
        t.set_rts(True)  # Reset. Note dtr/rts calls inverted so we go through (1,1) instead of (0,0)
        t.set_dtr(False)
        t.set_rts(True)  # Extra RTS set for RTS as Windows only propagates DTR on RTS setting
        time.sleep(0.1)
        t.set_dtr(False)
        t.set_rts(False)

    def __repr__(self):
        return "USBJTAGSerialReset()"


class UnixTightReset(ResetStrategy):
    """ Both lines change in a single ioctl, for USB-serial bridges that
    would otherwise glitch the chip through the (0,0) state.
    """
    def reset(self):
        t = self.transport
        t.set_rts_and_dtr(False, False)
        t.set_rts_and_dtr(True, True)
        t.set_rts_and_dtr(True, False)  # IO0=HIGH & EN=LOW, chip in reset
        time.sleep(0.1)
        t.set_rts_and_dtr(False, True)  # IO0=LOW & EN=HIGH, chip out of reset
        time.sleep(self.reset_delay)
        t.set_rts_and_dtr(False, False)  # IO0=HIGH, done
        t.set_dtr(False)  # Needed in some environments to ensure IO0=HIGH


class ClassicReset(ResetStrategy):
    def reset(self):
        t = self.transport
        time.sleep(0.1)
        t.set_dtr(False)  # IO0=HIGH
        t.set_rts(True)  # EN=LOW, chip in reset
        time.sleep(0.1)
        t.set_dtr(True)  # IO0=LOW
        t.set_rts(False)  # EN=HIGH, chip out of reset
        time.sleep(self.reset_delay)
        t.set_dtr(False)  # IO0=HIGH, done


def reset_strategies(transport, delay=DEFAULT_RESET_DELAY, extra_delay=DEFAULT_RESET_DELAY + 0.05):
    """ Reset sequences to cycle through, in order.

    The tight variants are only available where RTS and DTR can be set at once.
    """
    strategies = [USBJTAGSerialReset(transport)]
    if transport.supports_atomic_rts_dtr:
        strategies += [UnixTightReset(transport, delay), UnixTightReset(transport, extra_delay)]
    strategies += [ClassicReset(transport, delay), ClassicReset(transport, extra_delay)]
    return strategies


class ResetCycle(object):
    """ Round-robin over reset strategies.

    count advances on every call, whatever the outcome of the attempt, and
    survives across connect() calls made with the same cycle.
    """
    def __init__(self, strategies):
        self.strategies = list(strategies)
        self.count = 0

    def next_strategy(self):
        strategy = self.strategies[self.count % len(self.strategies)]
        self.count += 1
        return strategy


class ESPLoader(object):
    """ Access to the ESP ROM bootloader over a transport.

    The transport must provide read(timeout), write(data), flush_input(),
    set_rts(state), set_dtr(state), set_rts_and_dtr(rts, dtr),
    supports_atomic_rts_dtr and change_baud(baud).

    The chip profile starts as UNKNOWN_CHIP (or whatever was given) and is
    replaced by connect() with the detected one. Frames returned by
    command() are copies, but the decoder buffer is reused: one command is
    in flight at a time.
    """
    def __init__(self, transport, chip=UNKNOWN_CHIP, trace_enabled=False):
        self._transport = transport
        self.chip = chip
        self._slip = SlipDecoder()
        self._pending = b''
        self._trace_enabled = trace_enabled

    def trace(self, message, *format_args):
        if self._trace_enabled:
            now = time.time()
            try:
                delta = now - self._last_trace
            except AttributeError:
                delta = 0.0
            self._last_trace = now
            prefix = "TRACE +%.3f " % delta
            print(prefix + (message % format_args))

    """ Calculate checksum of a blob, as it is defined by the ROM """
    @staticmethod
    def checksum(data, state=ESP_CHECKSUM_MAGIC):
        for b in data:
            state ^= b
        return state

    def write(self, packet):
        slip_send(packet, self._transport.write)

    def _next_chunk(self, op, timeout):
        if self._pending:
            chunk, self._pending = self._pending, b''
            return chunk
        chunk = self._transport.read(timeout)
        if not chunk:
            raise CommandTimeoutError(op, timeout)
        return chunk

    def command(self, op, data=b'', chk=0, timeout=READ_REG_TIMEOUT):
        """ Send a request, wait for the matching response.

        Returns (error code, response frame). Frames that are too short, are
        not responses, or answer a different opcode are skipped.
        """
        pkt = struct.pack('<BBHI', 0x00, op, len(data), chk) + data
        self.write(pkt)
        if self._trace_enabled:
            dump(COMMAND_NAMES.get(op, "0x%02x" % op), pkt)

        deadline = time.time() + timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0 and not self._pending:
                raise CommandTimeoutError(op, timeout)
            chunk = self._next_chunk(op, max(remaining, 0))
            for i, c in enumerate(chunk):
                n = self._slip.recv(c)
                if n == 0:
                    continue
                frame = self._slip.frame(n)
                if self._trace_enabled:
                    dump("--SLIP_RESPONSE:", frame)
                if n < MIN_RESPONSE_LEN or frame[0] != 1 or frame[1] != op:
                    continue
                self._pending = chunk[i + 1:]
                # the status bytes are the last 2/4 bytes in the frame (depending on chip),
                # we only care if the first one is non-zero. If it is, the second byte is a reason.
                eofs = n - self.chip.status_len
                ecode = frame[eofs + 1] if frame[eofs] else 0
                if ecode:
                    print("error %d: %s" % (ecode, describe_error(ecode)))
                return ecode, frame

    def check_command(self, message, op, data=b'', chk=0, timeout=READ_REG_TIMEOUT):
        """ Like command(), but a non-zero status raises DeviceError(message). """
        ecode, frame = self.command(op, data, chk, timeout=timeout)
        if ecode:
            raise DeviceError(message, op, ecode)
        return frame

    def flush_input(self):
        self._transport.flush_input()
        self._pending = b''
        self._slip.reset()

    def sync(self):
        """ One SYNC round, True if the bootloader answered with status 0. """
        try:
            ecode, _ = self.command(ESP_SYNC, SYNC_PAYLOAD, timeout=SYNC_TIMEOUT)
        except CommandTimeoutError:
            return False
        return ecode == 0

    def connect(self, cycle=None, attempts=CONNECT_ATTEMPTS):
        """ Reset into download mode, sync, then detect the chip.

        Attempt j applies the next reset strategy and tries SYNC 2 + j times.
        """
        if cycle is None:
            cycle = ResetCycle(reset_strategies(self._transport))
        for attempt in range(attempts):
            strategy = cycle.next_strategy()
            self.trace("Connect attempt %d, reset %r", attempt + 1, strategy)
            strategy()
            self.flush_input()
            for _ in range(2 + attempt):
                if self.sync():
                    time.sleep(0.05)
                    self.flush_input()
                    return self.detect_chip()
        raise ConnectError("Error connecting: no response from the ROM bootloader after %d attempts" % attempts)

    def detect_chip(self):
        try:
            chip_id = self.read_reg(CHIP_DETECT_MAGIC_REG_ADDR)
        except FatalError as err:
            raise ConnectError("Error reading chip ID: %s" % err) from err
        detected = chip_by_id(chip_id)
        if detected is None:
            raise ConnectError("Unknown chip ID: %08x" % chip_id)
        if not self.chip.is_unknown and self.chip.chip_id != chip_id:
            raise ConnectError("Chip specified (%s) does not match chip detected (%s)"
                               % (self.chip.name, detected.name))
        self.chip = detected
        self.trace("Detected chip %s (0x%08x)", detected.name, chip_id)
        return detected

    def read_reg(self, addr, timeout=READ_REG_TIMEOUT):
        """ Read memory address in target """
        frame = self.check_command("Failed to read register address %08x" % addr,
                                   ESP_READ_REG, struct.pack('<I', addr), timeout=timeout)
        return struct.unpack('<I', frame[4:8])[0]

    """ Write to memory address in target """
    def write_reg(self, addr, value, mask=0xFFFFFFFF, delay_us=0):
        command = struct.pack('<IIII', addr, value, mask, delay_us)
        return self.check_command("Failed to write target memory", ESP_WRITE_REG, command)

    """ Start downloading an application image to RAM """
    def mem_begin(self, size, blocks, blocksize, offset):
        return self.check_command("Failed to enter RAM download mode", ESP_MEM_BEGIN,
                                  struct.pack('<IIII', size, blocks, blocksize, offset),
                                  timeout=MEM_TIMEOUT)

    """ Send a block of an image to RAM """
    def mem_block(self, data, seq):
        return self.check_command("Failed to write to target RAM", ESP_MEM_DATA,
                                  struct.pack('<IIII', len(data), seq, 0, 0) + data,
                                  self.checksum(data), timeout=MEM_TIMEOUT)

    """ Leave download mode and run the application """
    def mem_finish(self, entrypoint=0):
        data = struct.pack('<II', int(entrypoint == 0), entrypoint)
        return self.check_command("Failed to leave RAM download mode", ESP_MEM_END,
                                  data, timeout=MEM_TIMEOUT)

    def flash_begin(self, size, offset):
        """ Start downloading to Flash (the ROM erases the region up front).

        Returns number of blocks to write.
        """
        num_blocks = div_roundup(size, FLASH_BLOCK_SIZE)
        params = struct.pack('<IIII', size, num_blocks, FLASH_BLOCK_SIZE, offset)
        if self.chip.flash_begin_extra:
            params += struct.pack('<I', 0)  # not encrypted
        self.trace("flash_begin size=%d blocks=%d offset=0x%x", size, num_blocks, offset)
        self.check_command("erase failed", ESP_FLASH_BEGIN, params, timeout=FLASH_BEGIN_TIMEOUT)
        return num_blocks

    def flash_block(self, data, seq):
        self.check_command("flash_data failed", ESP_FLASH_DATA,
                           struct.pack('<IIII', len(data), seq, 0, 0) + data,
                           self.checksum(data), timeout=FLASH_DATA_TIMEOUT)

    """ Leave flash mode, 0 means reboot """
    def flash_finish(self, reboot=True):
        pkt = struct.pack('<I', int(not reboot))
        self.check_command("flash_end failed", ESP_FLASH_END, pkt, timeout=FLASH_END_TIMEOUT)

    def flash_spi_attach(self, pins=None):
        """ Send SPI attach command to enable the SPI flash pins.

        pins is a (clk, q, d, hd, cs) tuple, None keeps the ROM defaults.
        """
        hspi_arg = pack_spi_pins(pins) if pins else 0
        # the ROM loader takes an additional 'is legacy' word
        self.check_command("SPI_ATTACH failed", ESP_SPI_ATTACH,
                           struct.pack('<II', hspi_arg, 0), timeout=SPI_TIMEOUT)

    def flash_set_parameters(self, size=4 * 1024 * 1024):
        """Tell the ESP bootloader the parameters of the chip

        Corresponds to the "flashchip" data structure that the ROM
        has in RAM. All parameters but the size are generic values.
        """
        fl_id = 0
        total_size = size
        block_size = 64 * 1024
        sector_size = 4 * 1024
        page_size = 256
        status_mask = 0xffff
        self.check_command("SPI_SET_PARAMS failed", ESP_SPI_SET_PARAMS,
                           struct.pack('<IIIIII', fl_id, total_size, block_size, sector_size,
                                       page_size, status_mask),
                           timeout=SPI_TIMEOUT)

    def spi_attach(self, pins=None):
        self.flash_spi_attach(pins)
        self.flash_set_parameters()

    def read_flash_slow(self, offset, length, timeout=READ_FLASH_TIMEOUT):
        """ Read up to 64 bytes of flash with the ROM-only READ_FLASH_SLOW command. """
        frame = self.check_command("Failed to read flash @ addr %#x" % offset, ESP_READ_FLASH_SLOW,
                                   struct.pack('<II', offset, length), timeout=timeout)
        data = frame[8:8 + length]
        if len(data) < length:
            raise FatalError("Short flash read @ addr %#x: expected %d bytes, got %d"
                             % (offset, length, len(data)))
        self.trace("read_flash_slow 0x%x: %s", offset, HexFormatter(data))
        return data

    def change_baud(self, baud):
        self.check_command("SET_BAUD failed", ESP_CHANGE_BAUDRATE, struct.pack('<II', baud, 0),
                           timeout=CHANGE_BAUD_TIMEOUT)
        self._transport.change_baud(baud)
        time.sleep(0.05)  # get rid of crap sent during baud rate change
        self.flush_input()

    def hard_reset(self):
        self.trace("Hard resetting via RTS pin")
        self._transport.set_dtr(False)  # IO0 -> HIGH
        self._transport.set_rts(True)  # EN -> LOW
        time.sleep(0.1)
        self._transport.set_rts(False)  # EN -> HIGH
