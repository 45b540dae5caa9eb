import os
import sys

from esputil.const import MONITOR_POLL_TIMEOUT
from esputil.errors import TransportError
from esputil.helpers import dump
from esputil.slip import SlipDecoder, slip_send
from esputil.transport import READY_SERIAL, READY_SOCK, READY_STDIN, iowait


class Monitor(object):
    """ Pass-through between the serial port, the terminal and a UDP peer.

    Unframed serial bytes go to the terminal, complete SLIP frames go to the
    UDP peer. Terminal input is written to the device as is, UDP datagrams
    are SLIP-framed first. Sources are served serial first, then stdin,
    then UDP.
    """
    def __init__(self, transport, bridge=None, verbose=False, stdin_fd=None, out=None, wait=iowait):
        self.transport = transport
        self.bridge = bridge
        self.verbose = verbose
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.out = sys.stdout.buffer if out is None else out
        self.wait = wait
        self.slip = SlipDecoder()
        self.stopped = False

    def stop(self, *args):
        self.stopped = True

    def step(self, timeout=MONITOR_POLL_TIMEOUT):
        sock_fd = self.bridge.fileno() if self.bridge is not None else None
        ready = self.wait(self.transport.fileno(), sock_fd, timeout, self.stdin_fd)
        if ready & READY_SERIAL:
            self._from_serial()
        if ready & READY_STDIN:
            self._from_stdin()
        if ready & READY_SOCK:
            self._from_bridge()
        return ready

    def run(self):
        while not self.stopped:
            self.step()

    def _from_serial(self):
        data = self.transport.read(0)
        if not data:
            raise TransportError("Serial line closed")
        if self.verbose:
            dump("READ", data)
        for c in data:
            n = self.slip.recv(c)
            if n == 0:
                if self.slip.mode == 0:
                    self.out.write(bytes([c]))
                continue
            frame = self.slip.frame(n)
            if self.bridge is not None:
                self.bridge.send(frame)
            if self.verbose:
                dump("SR", frame)
        self.out.flush()

    def _from_stdin(self):
        data = os.read(self.stdin_fd, 4096)
        if not data:
            # EOF, stop polling stdin
            self.stdin_fd = -1
            return
        if self.verbose:
            dump("WRITE", data)
        self.transport.write(data)

    def _from_bridge(self):
        data = self.bridge.recv()
        if data:
            if self.verbose:
                dump("RSOCK", data)
            slip_send(data, self.transport.write)
