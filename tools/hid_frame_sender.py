#!/usr/bin/env python3
"""
hid_frame_sender.py — Raw HID Frame Sender for the maXTouch bridge
=====================================================================

Sends hand-built report frames to the raw-HID debug bridge and prints the
raw response. Useful for:
    - Poking the bridge firmware while developing it
    - Checking a single register read/write without the full driver
    - Reproducing a failing exchange seen in the frame log

Frames are typed without the report id byte; it is prepended and the frame
is zero-padded to the report length automatically.

Usage:
    # Send one frame (read 7 bytes at 0x0000 = information block)
    python hid_frame_sender.py --frame "02 00 00 07"

    # Interactive sender (type frames or shortcuts, see responses)
    python hid_frame_sender.py --interactive

    # Same, against the simulated controller
    python hid_frame_sender.py --interactive --transport loopback

MIT License — Copyright (c) 2026 maxtouch-studio contributors
"""

from __future__ import annotations
import sys
import argparse
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import maxtouch_studio as mts  # noqa: E402


SHORTCUT_HELP = """\
  Shortcuts:
    version              Protocol version check
    info                 Read the 7-byte information block
    read ADDR LEN        Read LEN bytes at hex ADDR
    write ADDR XX XX..   Write bytes at hex ADDR
    mouse                Query mouse mode
    mouse on|off         Set mouse mode
    reboot               Reboot bridge into bootloader (no reply)
    quit                 Exit"""


# ═══════════════════════════════════════════════════════════════════════
# FRAME HELPERS
# ═══════════════════════════════════════════════════════════════════════

def parse_frame_hex(text: str, report_length: int = mts.REPORT_LENGTH) -> bytearray:
    """Hex bytes (report id excluded) -> full zero-padded report frame."""
    body = bytes.fromhex(text)
    if len(body) > report_length - 1:
        raise ValueError(f"Frame has {len(body)} bytes, max {report_length - 1}")
    frame = bytearray(report_length)
    frame[0] = mts.REPORT_ID
    frame[1:1 + len(body)] = body
    return frame


def expand_shortcut(line: str, report_length: int = mts.REPORT_LENGTH) -> bytearray:
    """Turn a shortcut (or plain hex) into a frame."""
    words = line.split()
    cmd = words[0].lower()
    if cmd == "version":
        return mts.MaxTouchProtocol.build_version_check(report_length)
    if cmd == "info":
        return mts.MaxTouchProtocol.build_read(mts.INFO_BLOCK_ADDRESS, mts.INFO_BLOCK_SIZE,
                                               report_length)
    if cmd == "read":
        return mts.MaxTouchProtocol.build_read(int(words[1], 16), int(words[2], 0), report_length)
    if cmd == "write":
        return mts.MaxTouchProtocol.build_write(int(words[1], 16), bytes.fromhex("".join(words[2:])),
                                                report_length)
    if cmd == "mouse":
        if len(words) == 1:
            return mts.MaxTouchProtocol.build_command(mts.CommandType.GET_MOUSE_MODE,
                                                      report_length=report_length)
        return mts.MaxTouchProtocol.build_command(mts.CommandType.SET_MOUSE_MODE,
                                                  int(words[1].lower() == "on"), report_length)
    if cmd == "reboot":
        return mts.MaxTouchProtocol.build_command(mts.CommandType.REBOOT_BOOTLOADER,
                                                  report_length=report_length)
    return parse_frame_hex(line, report_length)


def send_frame(transport: mts.BaseTransport, frame: bytes,
               timeout_ms: int = mts.DEFAULT_TIMEOUT_MS,
               report_length: int = mts.REPORT_LENGTH) -> Optional[bytes]:
    """Send one frame and print the response. Returns the response or None."""
    print(f"  TX [{len(frame)}]: {mts.hex_str(frame)}")
    transport.write(bytes(frame))
    if frame[1] == mts.MaxTouchCommand.COMMAND and frame[2] == mts.CommandType.REBOOT_BOOTLOADER:
        print("  (reboot sent, no reply expected)")
        return None
    response = transport.read(report_length, timeout_ms)
    if not response:
        print(f"  RX: timeout after {timeout_ms} ms")
        return None
    status = response[0]
    label = "OK" if status == mts.ResponseStatus.OK else f"ERROR {status}"
    print(f"  RX [{len(response)}]: {mts.hex_str(response)}")
    print(f"  Status: {label}")
    if frame[1] == mts.MaxTouchCommand.READ and status == mts.ResponseStatus.OK:
        print(f"  Data: {mts.hex_str(mts.MaxTouchProtocol.read_payload(response, frame[4]))}")
    return response


# ═══════════════════════════════════════════════════════════════════════
# INTERACTIVE MODE
# ═══════════════════════════════════════════════════════════════════════

def interactive_mode(transport: mts.BaseTransport, timeout_ms: int = mts.DEFAULT_TIMEOUT_MS) -> None:
    """Interactive frame sender: type hex or a shortcut, see responses."""
    print("maXTouch Bridge Interactive Frame Sender")
    print("  Type hex bytes without the report id (e.g. 02 00 00 07)")
    print(SHORTCUT_HELP)
    print()

    while True:
        try:
            line = input("MXT> ").strip()
        except (EOFError, KeyboardInterrupt):
            break

        if not line or line.lower() == "quit":
            break

        try:
            frame = expand_shortcut(line)
        except (ValueError, IndexError) as e:
            print(f"  Bad input: {e}")
            continue

        try:
            send_frame(transport, frame, timeout_ms)
        except mts.TransportError as e:
            print(f"  Transport error: {e}")
        print()


# ═══════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════

def open_transport(args: argparse.Namespace) -> mts.BaseTransport:
    if args.transport == "loopback":
        transport = mts.LoopbackTransport()
    else:
        config = mts.HidConfig(vendor_id=args.vid, product_id=args.pid)
        devices = mts.HidTransport.find_devices(config)
        if not devices:
            raise mts.DeviceNotFoundError(
                f"No raw-HID interface found for {args.vid:04X}:{args.pid:04X}")
        transport = mts.HidTransport(devices[0]["path"])
    transport.open()
    return transport


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Raw HID frame sender for the maXTouch debug bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=SHORTCUT_HELP,
    )
    parser.add_argument("--frame", type=str, default=None,
                        help="Frame or shortcut to send once (e.g. '02 00 00 07' or 'info')")
    parser.add_argument("--interactive", action="store_true", help="Interactive prompt")
    parser.add_argument("--transport", choices=["hid", "loopback"], default="hid",
                        help="Transport type (default: hid)")
    parser.add_argument("--vid", type=lambda s: int(s, 0), default=mts.VENDOR_ID,
                        help=f"USB vendor id (default: 0x{mts.VENDOR_ID:04X})")
    parser.add_argument("--pid", type=lambda s: int(s, 0), default=mts.PRODUCT_ID,
                        help=f"USB product id (default: 0x{mts.PRODUCT_ID:04X})")
    parser.add_argument("--timeout", type=int, default=mts.DEFAULT_TIMEOUT_MS,
                        help="Read timeout in ms")
    args = parser.parse_args(argv)

    if not args.frame and not args.interactive:
        parser.print_help()
        return 1

    try:
        transport = open_transport(args)
    except mts.MaxTouchError as e:
        print(f"ERROR: {e}")
        return 1

    try:
        if args.interactive:
            interactive_mode(transport, args.timeout)
        else:
            send_frame(transport, expand_shortcut(args.frame), args.timeout)
    finally:
        transport.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
