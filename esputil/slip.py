# SLIP framing, https://datatracker.ietf.org/doc/html/rfc1055
#
# The serial line carries both free-form text (ROM boot messages, firmware
# logs) and SLIP frames. The decoder tells them apart only by a mode flag
# that flips on every END byte.

from esputil.const import SLIP_BUFFER_SIZE

END = 0xC0
ESC = 0xDB
ESC_END = 0xDC
ESC_ESC = 0xDD


def slip_encode(packet):
    """ Return packet wrapped in END bytes, with END and ESC escaped. """
    return b'\xc0' \
        + bytes(packet).replace(b'\xdb', b'\xdb\xdd').replace(b'\xc0', b'\xdb\xdc') \
        + b'\xc0'


def slip_send(packet, write):
    """ SLIP-encode packet and hand it to the write() sink. """
    write(slip_encode(packet))


class SlipDecoder(object):
    """ Byte-at-a-time SLIP receiver.

    mode 0 is pass-through (bytes are not buffered), mode 1 accumulates a
    frame. recv() returns the length of a completed frame, or 0. The frame
    itself is frame(length); the buffer is reused, so a frame must be consumed
    before more bytes are fed in.

    A frame longer than the buffer is truncated: bytes past the buffer size
    are dropped without error.
    """
    def __init__(self, size=SLIP_BUFFER_SIZE):
        self.buf = bytearray(size)
        self.size = size
        self.len = 0
        self.mode = 0
        self.prev = 0

    def _append(self, c):
        if self.len < self.size:
            self.buf[self.len] = c
            self.len += 1

    def recv(self, c):
        res = 0
        if self.mode:
            if self.prev == ESC and c == ESC_END:
                self._append(END)
            elif self.prev == ESC and c == ESC_ESC:
                self._append(ESC)
            elif c == END:
                res = self.len
            elif c != ESC:
                self._append(c)
        self.prev = c
        if c == END:
            self.len = 0
            self.mode = 0 if self.mode else 1
        return res

    def frame(self, length):
        return bytes(self.buf[:length])

    def feed(self, data):
        """ Feed a chunk of bytes, yield every completed frame. """
        for c in data:
            n = self.recv(c)
            if n:
                yield self.frame(n)

    def reset(self):
        self.len = 0
        self.mode = 0
        self.prev = 0
