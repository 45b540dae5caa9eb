import argparse
import os
import sys

from esputil import const
from esputil.chips import UNKNOWN_CHIP, chip_by_name, chip_names
from esputil.cmds import (
    FlashArgsAction,
    info,
    make_bin,
    make_hex,
    monitor,
    read_flash,
    read_mem,
    unpack_hex,
    write_flash,
)
from esputil.errors import EsputilError, FatalError, TransportError
from esputil.helpers import arg_auto_int, list_serial_ports
from esputil.loader import ESPLoader
from esputil.transport import SerialTransport, UdpBridge


def flash_params_arg(value):
    try:
        params = int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError('%s is not a number' % value)
    if params < 0 or params > 0xFFFF:
        raise argparse.ArgumentTypeError('Flash params must be a 16-bit value, got %s' % value)
    return params


def spi_connection_arg(value):
    """ Parse a sequence of 5 pin numbers separated by commas: CLK,Q,D,HD,CS. """
    values = value.split(",")
    if len(values) != 5:
        raise argparse.ArgumentTypeError('%s is not a valid list of comma-separate pin numbers. Must be 5 numbers - CLK,Q,D,HD,CS.' % value)
    try:
        values = tuple(int(v, 0) for v in values)
    except ValueError:
        raise argparse.ArgumentTypeError('%s is not a valid argument. All pins must be numeric values' % value)
    if any([v for v in values if v > 33 or v < 0]):
        raise argparse.ArgumentTypeError('Pin numbers must be in the range 0-33.')
    return values


def chip_arg(value):
    chip = chip_by_name(value)
    if chip is None:
        raise argparse.ArgumentTypeError('Unknown chip type: %s (known: %s)' % (value, ", ".join(chip_names())))
    return chip


def parse_args(argv):
    env = os.environ
    parser = argparse.ArgumentParser(prog=f"esputil {const.__version__}",
                                     description="Flash and monitor Espressif chips through the ROM bootloader.")
    parser.add_argument("-b", "--baud", type=arg_auto_int,
                        default=env.get(const.ENV_BAUD, str(const.ESP_ROM_BAUD)),
                        help="Baud rate for flashing and monitor (env BAUD)")
    parser.add_argument("-p", "--port", default=env.get(const.ENV_PORT, const.DEFAULT_PORT),
                        help="Serial port device (env PORT)")
    parser.add_argument("-fp", "--flash-params", type=flash_params_arg,
                        default=env.get(const.ENV_FLASH_PARAMS),
                        help="Flash params override, e.g. 0x220 (env FLASH_PARAMS)")
    parser.add_argument("-fspi", "--flash-spi", type=spi_connection_arg,
                        default=env.get(const.ENV_FLASH_SPI),
                        help="Flash SPI pins CLK,Q,D,HD,CS (env FLASH_SPI)")
    parser.add_argument("-chip", "--chip", type=chip_arg, default=env.get(const.ENV_CHIP),
                        help="Chip type, autodetected if not set (env CHIP)")
    parser.add_argument("-tmp", "--tmp-dir", default=env.get(const.ENV_TMP_DIR, const.DEFAULT_TMP_DIR),
                        help="Scratch directory for unhex (env TMP_DIR)")
    parser.add_argument("-udp", "--udp-port", type=int,
                        default=env.get(const.ENV_UDP_PORT, str(const.DEFAULT_UDP_PORT)),
                        help="UDP bridge port for monitor (env UDP_PORT)")
    parser.add_argument("-v", "--verbose", action="store_true", default=const.ENV_VERBOSE in env,
                        help="Hexdump serial traffic (env V)")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    subparsers.add_parser("info", help="Print chip ID, MAC and crystal frequency")
    subparsers.add_parser("monitor", help="Serial monitor, SLIP frames are bridged to UDP")

    parser_readmem = subparsers.add_parser("readmem", help="Dump memory to stdout")
    parser_readmem.add_argument("address", type=arg_auto_int)
    parser_readmem.add_argument("size", type=arg_auto_int)

    parser_readflash = subparsers.add_parser("readflash", help="Dump flash to stdout")
    parser_readflash.add_argument("address", type=arg_auto_int)
    parser_readflash.add_argument("size", type=arg_auto_int)

    parser_flash = subparsers.add_parser("flash", help="Write OFFSET FILE pairs, or a FILE.hex, to flash")
    parser_flash.add_argument("files", metavar="<address> <filename> | <filename.hex>",
                              action=FlashArgsAction)

    parser_mkbin = subparsers.add_parser("mkbin", help="Convert an ELF file to an ESP firmware image")
    parser_mkbin.add_argument("elf")
    parser_mkbin.add_argument("bin")

    parser_mkhex = subparsers.add_parser("mkhex", help="Pack binaries into Intel HEX on stdout")
    parser_mkhex.add_argument("pairs", metavar="<address> <filename>", action=FlashArgsAction, hex_files=False)

    parser_unhex = subparsers.add_parser("unhex", help="Unpack Intel HEX into the scratch directory")
    parser_unhex.add_argument("hexfile")

    return parser.parse_args(argv[1:])


def open_transport(port):
    try:
        return SerialTransport(port, const.ESP_ROM_BAUD)
    except TransportError as err:
        ports = list_serial_ports()
        if not ports:
            raise
        listing = "\n".join(f" * {device} ({desc})" for device, desc in ports)
        raise EsputilError(f"{err}\nAvailable serial ports:\n{listing}") from err


def run_connected(args, transport):
    loader = ESPLoader(transport, args.chip or UNKNOWN_CHIP, trace_enabled=args.verbose)
    try:
        loader.connect()
        if args.command == "info":
            info(loader, transport.baudrate)
        elif args.command == "readmem":
            read_mem(loader, args.address, args.size, sys.stdout.buffer)
        elif args.command == "readflash":
            read_flash(loader, args.address, args.size, sys.stdout.buffer, args.flash_spi)
        elif args.command == "flash":
            write_flash(loader, args.files, args.flash_params, args.flash_spi, args.baud)
    finally:
        # leave the chip running rather than stuck in download mode
        try:
            loader.hard_reset()
        except FatalError as err:
            print(f"WARNING: hard reset failed: {err}", file=sys.stderr)


def run_esputil(argv):
    args = parse_args(argv)

    # Commands that do not need the serial port
    if args.command == "mkbin":
        make_bin(args.elf, args.bin, args.chip, args.verbose)
        return 0
    if args.command == "mkhex":
        make_hex(args.pairs)
        return 0
    if args.command == "unhex":
        unpack_hex(args.hexfile, args.tmp_dir)
        return 0

    transport = open_transport(args.port)
    try:
        if args.command == "monitor":
            bridge = UdpBridge(args.udp_port)
            try:
                monitor(transport, args.baud, bridge, args.verbose)
            finally:
                bridge.close()
        else:
            run_connected(args, transport)
    finally:
        transport.close()
    return 0


def main(argv=None):
    try:
        return run_esputil(sys.argv if argv is None else argv) or 0
    except (FatalError, EsputilError) as err:
        msg = str(err)
        if msg:
            print(msg, file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    sys.exit(main())
