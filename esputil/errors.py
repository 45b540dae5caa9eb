ERROR_CODES = {
    5: "Received message is invalid",
    6: "Failed to act on received message",
    7: "Invalid CRC in message",
    8: "Flash write error",
    9: "Flash read error",
    10: "Flash read length error",
    11: "Deflate error",
}


def describe_error(code):
    return ERROR_CODES.get(code, "Unknown error")


class EsputilError(Exception):
    pass


class FatalError(RuntimeError):
    """
    Wrapper class for runtime errors that aren't caused by internal bugs, but by
    ROM bootloader responses or input content.
    """
    def __init__(self, message):
        RuntimeError.__init__(self, message)


class ConnectError(FatalError):
    """ The bootloader could not be reached, or is not the chip we expected. """


class CommandTimeoutError(ConnectError):
    """ No response matching the request arrived before the timeout. """
    def __init__(self, op, timeout):
        ConnectError.__init__(self, "No response to command 0x%02x within %.2fs" % (op, timeout))
        self.op = op
        self.timeout = timeout


class DeviceError(FatalError):
    """ The ROM bootloader answered with a non-zero status. """
    def __init__(self, message, op, code):
        self.op = op
        self.code = code
        self.description = describe_error(code)
        FatalError.__init__(self, "%s (error %d: %s)" % (message, code, self.description))


class TransportError(FatalError):
    pass


class FormatError(FatalError):
    pass
