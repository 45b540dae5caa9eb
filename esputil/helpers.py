import io
import os
import shutil
import sys

import serial.tools.list_ports as list_ports

from esputil.const import HTTP_REGEX
from esputil.errors import EsputilError


def list_serial_ports():
    return sorted((port.device, port.description) for port in list_ports.comports())


def arg_auto_int(x):
    return int(x, 0)


def div_roundup(a, b):
    """ Return a/b rounded up to nearest integer, without floating point. """
    return (int(a) + int(b) - 1) // int(b)


def align_to(n, to):
    return div_roundup(n, to) * to


class HexFormatter(object):
    """
    Wrapper class which takes binary data in its constructor
    and returns a hexdump as its __str__ method.

    Used for lazy formatting of trace() output, so no hex strings are
    generated when tracing is disabled. Each row holds 16 bytes: offset,
    hex values and the printable ASCII rendering.
    """
    def __init__(self, binary_string):
        self._s = bytes(binary_string)

    def __str__(self):
        rows = []
        for ofs in range(0, len(self._s), 16):
            line = self._s[ofs:ofs + 16]
            ascii_line = "".join(chr(c) if 0x20 <= c <= 0x7e else '.' for c in line)
            hex_line = "".join(" %02x" % c for c in line)
            rows.append("%04x %-48s  %s" % (ofs, hex_line, ascii_line))
        return "\n".join(rows)


def dump(label, data):
    print("%s [%d bytes]\n%s\n" % (label, len(data), HexFormatter(data)))


def print_overwrite(message, last_line=False):
    """ Print a message, overwriting the currently printed line.

    If output is not a TTY (for example redirected to a pipe), no overwriting
    happens and this function is the same as print().
    """
    if sys.stdout.isatty():
        print("\r%s" % message, end='\n' if last_line else '')
        sys.stdout.flush()
    else:
        print(message)


def is_url(path):
    return HTTP_REGEX.match(path) is not None


def open_downloadable_binary(path):
    """ Open a local file, or fetch an http(s) URL into memory. """
    if hasattr(path, "seek"):
        path.seek(0)
        return path

    if is_url(path):
        import requests

        try:
            response = requests.get(path)
            response.raise_for_status()
        except requests.exceptions.Timeout as err:
            raise EsputilError(f"Timeout while retrieving file '{path}': {err}") from err
        except requests.exceptions.RequestException as err:
            raise EsputilError(f"Error while retrieving file '{path}': {err}") from err

        binary = io.BytesIO()
        binary.write(response.content)
        binary.seek(0)
        binary.name = path.rsplit("/", 1)[-1]
        return binary

    try:
        return open(path, "rb")
    except IOError as err:
        raise EsputilError(f"Error opening binary '{path}': {err}") from err


def reset_scratch_dir(path):
    """ Delete the scratch directory with everything in it, then recreate it empty. """
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        os.makedirs(path)
    except OSError as err:
        raise EsputilError(f"Cannot recreate directory {path}: {err}") from err
    return path
