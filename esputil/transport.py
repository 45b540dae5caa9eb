import os
import select
import socket
import struct
import sys

import serial

from esputil.const import ESP_ROM_BAUD
from esputil.errors import TransportError

if os.name != "nt":
    import fcntl
    import termios

    # Constants used for terminal status, in case termios does not define them
    TIOCMSET = getattr(termios, "TIOCMSET", 0x5418)
    TIOCMGET = getattr(termios, "TIOCMGET", 0x5415)
    TIOCM_DTR = getattr(termios, "TIOCM_DTR", 0x002)
    TIOCM_RTS = getattr(termios, "TIOCM_RTS", 0x004)

    # raised by pyserial and ioctl on ports without modem lines, or unplugged ones
    PORT_ERRORS = (serial.SerialException, OSError, termios.error)
else:
    PORT_ERRORS = (serial.SerialException, OSError)

READY_STDIN = 1
READY_SERIAL = 2
READY_SOCK = 4


class SerialTransport(object):
    """ Byte stream over a serial port, plus the RTS and DTR control lines.

    RTS drives EN (chip reset), DTR drives IO0 (boot mode). Both are active
    low: True means the pin is at 0V.
    """
    def __init__(self, port, baud=ESP_ROM_BAUD):
        try:
            self._port = serial.serial_for_url(port, do_not_open=True)
            # setting the baud rate before opening avoids a spurious reset
            # on some USB-serial drivers
            self._port.baudrate = baud
            self._port.open()
        except serial.SerialException as err:
            raise TransportError("Could not open %s, the port doesn't exist: %s" % (port, err)) from err
        self.name = port

    @property
    def baudrate(self):
        return self._port.baudrate

    def fileno(self):
        return self._port.fileno()

    def read(self, timeout):
        """ Return whatever is available within timeout seconds, b'' if nothing arrived. """
        try:
            self._port.timeout = timeout
            data = self._port.read(1)
            if data:
                waiting = self._port.in_waiting
                if waiting:
                    data += self._port.read(waiting)
            return data
        except serial.SerialException as err:
            raise TransportError("Serial line closed: %s" % err) from err

    def write(self, data):
        try:
            self._port.write(data)
        except serial.SerialException as err:
            raise TransportError("Serial line closed: %s" % err) from err

    def flush_input(self):
        try:
            self._port.reset_input_buffer()
        except PORT_ERRORS as err:
            raise TransportError("Serial line closed: %s" % err) from err

    def _line_error(self, err):
        return TransportError("Cannot set control lines on %s: %s" % (self.name, err))

    def set_rts(self, state):
        try:
            self._port.rts = state
            # Work-around for adapters on Windows using the usbser.sys driver:
            # generate a dummy change to DTR so that the set-control-line-state
            # request is sent with the updated RTS state and the same DTR state
            self._port.dtr = self._port.dtr
        except PORT_ERRORS as err:
            raise self._line_error(err) from err

    def set_dtr(self, state):
        try:
            self._port.dtr = state
        except PORT_ERRORS as err:
            raise self._line_error(err) from err

    @property
    def supports_atomic_rts_dtr(self):
        return os.name != "nt" and not self.name.startswith(("rfc2217:", "socket:", "loop:"))

    def set_rts_and_dtr(self, rts, dtr):
        """ Change both lines with a single ioctl, so the chip never sees (0,0) in between. """
        try:
            status = struct.unpack("I", fcntl.ioctl(self._port.fileno(), TIOCMGET, struct.pack("I", 0)))[0]
        except PORT_ERRORS as err:
            raise self._line_error(err) from err
        if dtr:
            status |= TIOCM_DTR
        else:
            status &= ~TIOCM_DTR
        if rts:
            status |= TIOCM_RTS
        else:
            status &= ~TIOCM_RTS
        try:
            fcntl.ioctl(self._port.fileno(), TIOCMSET, struct.pack("I", status))
        except PORT_ERRORS as err:
            raise self._line_error(err) from err

    def change_baud(self, baud):
        try:
            self._port.baudrate = baud
        except (serial.SerialException, ValueError) as err:
            raise TransportError("Failed to set baud rate %d: %s" % (baud, err)) from err

    def close(self):
        self._port.close()


class UdpBridge(object):
    """ UDP socket bound to all interfaces.

    The peer is whoever sent the most recent datagram; nothing is sent until
    a peer is known.
    """
    def __init__(self, port):
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self._sock.bind(("0.0.0.0", port))
        except OSError as err:
            self._sock.close()
            raise TransportError("Cannot bind UDP port %d: %s" % (port, err)) from err
        self.port = port
        self.peer = None

    def fileno(self):
        return self._sock.fileno()

    def recv(self, size=2048):
        data, self.peer = self._sock.recvfrom(size)
        return data

    def send(self, data):
        if self.peer is None:
            return False
        self._sock.sendto(data, self.peer)
        return True

    def close(self):
        self._sock.close()


def iowait(serial_fd, sock_fd=None, timeout=1.0, stdin_fd=None):
    """ Wait for any of stdin, the serial port or the UDP socket to become readable.

    Returns a READY_* bitmask, 0 on timeout. Pass stdin_fd=-1 to leave stdin out.
    """
    if stdin_fd is None:
        stdin_fd = sys.stdin.fileno()
    sources = {serial_fd: READY_SERIAL}
    if stdin_fd >= 0:
        sources[stdin_fd] = READY_STDIN
    if sock_fd is not None:
        sources[sock_fd] = READY_SOCK
    try:
        readable, _, _ = select.select(list(sources), [], [], timeout)
    except (OSError, ValueError) as err:
        raise TransportError("Waiting for input failed: %s" % err) from err
    ready = 0
    for fd in readable:
        ready |= sources[fd]
    return ready
