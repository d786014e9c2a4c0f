#!/usr/bin/env python3
"""
maxtouch_studio.py — maXTouch HID Debug Driver
=================================================

Talks to a Microchip/Atmel maXTouch capacitive touch controller through a
raw-HID debug bridge running on the keyboard/trackpad MCU. The bridge
forwards register reads and writes to the controller's T-object memory map
and exposes a couple of housekeeping commands of its own.

What it does:
    - Discovers the bridge by USB vendor/product id and raw-HID usage page
    - Reads the Information Block and Object Table on connect
    - Reads and decodes typed configuration objects (T6, T7, T8, T25, T42,
      T46, T47, T56, T65, T80, T100)
    - Writes raw bytes into any object, bounds-checked against its size
    - Streams the T37 diagnostic pages (mutual delta / reference) into an
      RGB heatmap, honouring the T100 orientation flags
    - Reboots the MCU into its bootloader, gets/sets trackpad mouse mode

Wire format (HID report, 32 bytes + report id):
    TX: [report_id=0] [command] [addr_lo] [addr_hi] [length] [payload...]
    RX: [status] [...] [...] [...] [data...]
    A read or write moves at most REPORT_LENGTH - 5 = 28 bytes per report.

Architecture:
    Single-file module with a CLI backend. Loopback transport simulates a
    controller (info block, object table, T6/T37 paging) so everything runs
    without hardware.

Requires: Python 3.9+, hid (hidapi)
Optional: rich (coloured console logging), Pillow (PNG heatmaps)

MIT License

Copyright (c) 2026 maxtouch-studio contributors

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 0 - IMPORTS & GLOBALS
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import os
import sys
import math
import time
import struct
import logging
import argparse
import threading
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field, fields
from enum import IntEnum, Enum, auto
from typing import Optional, Callable, List, Tuple, Dict, Any
from collections import deque

# hidapi, needed for real hardware only (loopback works without it)
try:
    import hid
    HID_AVAILABLE = True
except ImportError:
    HID_AVAILABLE = False

# Pillow, optional, used to hand heatmaps off as PNG
try:
    from PIL import Image
    PIL_AVAILABLE = True
except ImportError:
    PIL_AVAILABLE = False

# ── Version & Metadata ──
__version__ = "0.1.0"
__app_name__ = "maXTouch Studio"
__target_device__ = "maXTouch via raw-HID debug bridge"

# ── Logging Setup ──
LOG_DIR = Path(__file__).resolve().parent / "logs"
USER_LOG_DIR = Path.home() / ".maxtouch-studio" / "logs"

# Rich logging handler (optional, install `rich` for colored console output)
try:
    from rich.logging import RichHandler
    RICH_LOGGING_AVAILABLE = True
except ImportError:
    RICH_LOGGING_AVAILABLE = False


def resolve_log_dir() -> Path:
    """logs/ next to this file, or a per-user directory when that is not writable."""
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        if os.access(LOG_DIR, os.W_OK):
            return LOG_DIR
    except OSError:
        pass
    return USER_LOG_DIR


def setup_logging(
    name: str = "maxtouch",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Configure and return a logger.

    Args:
        name:          Logger name and log-file prefix.
        level:         Root level (DEBUG captures every HID frame to file).
        console_level: Level for console/terminal output (WARNING+ by
                       default so CLI output isn't cluttered).
        log_dir:       Override log directory (default: logs/ next to this file,
                       or ~/.maxtouch-studio/logs when that is read-only).
        rich_console:  Use Rich handler for console if available.

    Returns:
        Configured ``logging.Logger`` instance.

    Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
    """
    log_dir = log_dir or resolve_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: captures everything (DEBUG+) ──
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{name}_{ts}.log"
    file_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_fmt)
    logger.addHandler(fh)

    # ── Console handler: warnings and errors only by default ──
    if rich_console and RICH_LOGGING_AVAILABLE:
        ch = RichHandler(
            level=console_level,
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    else:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S",
        ))
    ch.setLevel(console_level)
    logger.addHandler(ch)

    logger.info("=" * 60)
    logger.info("Logger initialized: %s", name)
    logger.info("Log file: %s", log_file)
    logger.info("Console level: %s", logging.getLevelName(console_level))
    logger.info("=" * 60)

    return logger

log = setup_logging()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1 - CONSTANTS & PROTOCOL DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════

# ── Bridge signature ──
VENDOR_ID = 0xFEED
PRODUCT_ID = 0x0000
USAGE_PAGE = 0xFF60
USAGE = 0x61

# ── Report framing ──
REPORT_ID = 0x00
REPORT_LENGTH = 33              # 32-byte raw-HID report + report id
FRAME_HEADER_LENGTH = 5         # report id, command, addr lo, addr hi, length
RESPONSE_DATA_OFFSET = 4
DEFAULT_TIMEOUT_MS = 1000
FRAME_LOG_DEPTH = 256

VERSION_MAGIC = bytes([0x9A, 0x4D])
PROTOCOL_VERSION = bytes([0x00, 0x01])

# ── Memory map ──
INFO_BLOCK_ADDRESS = 0x0000
INFO_BLOCK_SIZE = 7
OBJECT_ELEMENT_SIZE = 6

# ── T37 diagnostic page ──
DIAGNOSTIC_HEADER_SIZE = 2      # mode echo + page number
PAGE_DATA_SIZE = 128            # 64 little-endian int16 samples

# ── T6 / T100 bits ──
BACKUP_NV_MAGIC = 0x55
T100_CFG1_INVERT_X = 0x80
T100_CFG1_INVERT_Y = 0x40
T100_CFG1_SWITCH_XY = 0x20


class MaxTouchCommand(IntEnum):
    """Bridge command byte (frame[1])."""
    CHECK_VERSION = 0x00
    COMMAND = 0x01
    READ = 0x02
    WRITE = 0x03

class CommandType(IntEnum):
    """Sub-command carried by a COMMAND frame (frame[2])."""
    REBOOT_BOOTLOADER = 0x00
    SET_MOUSE_MODE = 0x01
    GET_MOUSE_MODE = 0x02

class ResponseStatus(IntEnum):
    """Status byte returned in response[0]. Anything but OK is a device error."""
    OK = 0x00

class DiagnosticMode(IntEnum):
    """T6 DIAGNOSTIC field values."""
    PAGE_UP = 0x01
    PAGE_DOWN = 0x02
    MUTUAL_DELTA = 0x10
    MUTUAL_REFERENCE = 0x11

class ObjectType(IntEnum):
    """maXTouch object type numbers used by this driver."""
    GEN_COMMANDPROCESSOR = 6
    GEN_POWERCONFIG = 7
    GEN_ACQUISITIONCONFIG = 8
    SPT_SELFTEST = 25
    DEBUG_DIAGNOSTIC = 37
    SPT_USERDATA = 38
    PROCI_TOUCHSUPPRESSION = 42
    SPT_CTECONFIG = 46
    PROCI_STYLUS = 47
    PROCI_SHIELDLESS = 56
    PROCI_LENSBENDING = 65
    PROCG_RETRANSMISSIONCOMPENSATION = 80
    TOUCH_MULTIPLETOUCHSCREEN = 100

OBJECT_NAMES: Dict[int, str] = {
    5: "GEN_MESSAGEPROCESSOR",
    15: "TOUCH_KEYARRAY",
    18: "SPT_COMMSCONFIG",
    19: "SPT_GPIOPWM",
    44: "SPT_MESSAGECOUNT",
    **{t.value: t.name for t in ObjectType},
}

# Colour limits per diagnostic mode (low, high)
DEFAULT_COLOUR_LIMITS: Dict[int, Tuple[int, int]] = {
    DiagnosticMode.MUTUAL_DELTA: (-128, 127),
    DiagnosticMode.MUTUAL_REFERENCE: (0, 32000),
}


def object_name(object_type: int) -> str:
    """Human-readable name for an object type, e.g. ``T100 TOUCH_MULTIPLETOUCHSCREEN``."""
    name = OBJECT_NAMES.get(object_type)
    return f"T{object_type} {name}" if name else f"T{object_type}"


def hex_str(data: bytes) -> str:
    """Format bytes as hex string."""
    return " ".join(f"{b:02X}" for b in data)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2 - ERRORS
# ═══════════════════════════════════════════════════════════════════════

class MaxTouchError(Exception):
    """Base class for every driver failure."""

class NotConnectedError(MaxTouchError):
    """Raised when an operation needs a session and none is open."""

class DeviceNotFoundError(MaxTouchError):
    """Raised when no HID endpoint matches the bridge signature."""

class TransportError(MaxTouchError):
    """Raised when the transport fails to send or receive."""

class TransportTimeout(TransportError):
    """Raised when no response arrives within the read timeout."""

class DeviceError(MaxTouchError):
    """The bridge answered with a non-OK status byte."""

    def __init__(self, status: int, step: str = ""):
        self.status = status
        self.step = step
        msg = f"Device reported an error ({status})"
        super().__init__(f"{step}: {msg}" if step else msg)

class ObjectNotFoundError(MaxTouchError):
    """The object type is not present in the device's object table."""

class NotSerializableError(MaxTouchError):
    """The object exists but has no registered layout."""

class OutOfBoundsError(MaxTouchError):
    """A register write would run past the end of its object."""

class DecodeError(MaxTouchError):
    """Raw bytes are too short for the layout they are decoded into."""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3 - INFORMATION BLOCK & OBJECT TABLE
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class InformationBlock:
    """The 7-byte block at address 0."""
    family_id: int
    variant_id: int
    version: int
    build: int
    matrix_x_size: int
    matrix_y_size: int
    num_objects: int

    FORMAT = "<7B"

    @classmethod
    def from_bytes(cls, data: bytes) -> InformationBlock:
        if len(data) < INFO_BLOCK_SIZE:
            raise DecodeError(f"Information block needs {INFO_BLOCK_SIZE} bytes, got {len(data)}")
        return cls(*struct.unpack_from(cls.FORMAT, data, 0))

    @property
    def firmware(self) -> str:
        return f"{self.version >> 4}.{self.version & 0x0F}.{self.build:02X}"


@dataclass(frozen=True)
class ObjectDetails:
    """Where an object lives and how big one instance is."""
    address: int
    size: int
    instances: int
    report_ids: int = 0


@dataclass(frozen=True)
class ObjectTableElement:
    """One 6-byte object table entry, stored at ``7 + 6*i``."""
    object_type: int
    position_ls_byte: int
    position_ms_byte: int
    size_minus_one: int
    instances_minus_one: int
    report_ids_per_instance: int

    FORMAT = "<6B"

    @classmethod
    def from_bytes(cls, data: bytes) -> ObjectTableElement:
        if len(data) < OBJECT_ELEMENT_SIZE:
            raise DecodeError(f"Object table element needs {OBJECT_ELEMENT_SIZE} bytes, got {len(data)}")
        return cls(*struct.unpack_from(cls.FORMAT, data, 0))

    def details(self) -> ObjectDetails:
        return ObjectDetails(
            address=(self.position_ms_byte << 8) | self.position_ls_byte,
            size=self.size_minus_one + 1,
            instances=self.instances_minus_one + 1,
            report_ids=self.report_ids_per_instance,
        )


@dataclass(frozen=True)
class Orientation:
    """Sensor orientation flags projected out of T100 CFG1."""
    invert_x: bool = False
    invert_y: bool = False
    switch_xy: bool = False

    @classmethod
    def from_cfg1(cls, cfg1: int) -> Orientation:
        return cls(
            invert_x=bool(cfg1 & T100_CFG1_INVERT_X),
            invert_y=bool(cfg1 & T100_CFG1_INVERT_Y),
            switch_xy=bool(cfg1 & T100_CFG1_SWITCH_XY),
        )


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4 - TYPED OBJECT LAYOUTS
# ═══════════════════════════════════════════════════════════════════════

class TObject:
    """
    Base for packed configuration objects.

    Subclasses are dataclasses whose fields are listed in wire order and a
    ``FORMAT`` struct string describing the same fields. Decoding takes the
    first ``byte_size()`` bytes of the object; anything after that is ignored
    (newer firmware appends fields).
    """

    TYPE = 0
    FORMAT = "<"
    VARIABLE_LENGTH = False

    @classmethod
    def byte_size(cls) -> int:
        return struct.calcsize(cls.FORMAT)

    @classmethod
    def from_bytes(cls, data: bytes) -> TObject:
        size = cls.byte_size()
        if len(data) < size:
            raise DecodeError(f"{object_name(cls.TYPE)} needs {size} bytes, got {len(data)}")
        return cls(*struct.unpack_from(cls.FORMAT, bytes(data[:size]), 0))

    def to_bytes(self) -> bytes:
        return struct.pack(self.FORMAT, *(getattr(self, f.name) for f in fields(self)))


@dataclass
class T6CommandProcessor(TObject):
    TYPE = 6
    FORMAT = "<7B"

    reset: int = 0
    backupnv: int = 0
    calibrate: int = 0
    reportall: int = 0
    debugctrl: int = 0
    diagnostic: int = 0
    debugctrl2: int = 0


@dataclass
class T7PowerConfig(TObject):
    """Acquisition intervals; CFG/CFG2 carry the pipeline and overflow bits."""
    TYPE = 7
    FORMAT = "<7B"

    idleacqint: int = 0
    actvacqint: int = 0
    actv2idleto: int = 0
    cfg: int = 0
    cfg2: int = 0
    idleacqintfine: int = 0
    actvacqintfine: int = 0


@dataclass
class T8AcquisitionConfig(TObject):
    TYPE = 8
    FORMAT = "<9Bb5B"

    chrgtime: int = 0
    reserved: int = 0
    tchdrift: int = 0
    driftst: int = 0
    tchautocal: int = 0
    sync: int = 0
    atchcalst: int = 0
    atchcalsthr: int = 0
    atchfrccalthr: int = 0
    atchfrccalratio: int = 0
    measallow: int = 0
    measidledef: int = 0
    measactvdef: int = 0
    refmode: int = 0
    cfg: int = 0


@dataclass
class T25SelfTest(TObject):
    """Signal limits are 16-bit; SC_ prefixed limits apply to self capacitance."""
    TYPE = 25
    FORMAT = "<2B4HB2H"

    ctrl: int = 0
    cmd: int = 0
    upsiglim: int = 0
    losiglim: int = 0
    sc_upsiglim: int = 0
    sc_losiglim: int = 0
    pindwellus: int = 0
    sigrangelim: int = 0
    sc_sigrangelim: int = 0


@dataclass
class T42TouchSuppression(TObject):
    TYPE = 42
    FORMAT = "<13B"

    ctrl: int = 0
    apprthr: int = 0
    maxapprarea: int = 0
    maxtcharea: int = 0
    supstrength: int = 0
    supextto: int = 0
    maxnumtchs: int = 0
    shapestrength: int = 0
    supdist: int = 0
    disthyst: int = 0
    maxscrnarea: int = 0
    cfg: int = 0
    maxfngrsarea: int = 0


@dataclass
class T46CteConfig(TObject):
    TYPE = 46
    FORMAT = "<4BH2BH3B"

    ctrl: int = 0
    reserved: int = 0
    idlesyncsperx: int = 0
    activesyncsperx: int = 0
    adcspersync: int = 0
    pulsesperadc: int = 0
    xslew: int = 0
    syncdelay: int = 0
    xvoltage: int = 0
    reserved2: int = 0
    inrushcfg: int = 0


@dataclass
class T47ProciStylus(TObject):
    TYPE = 47
    FORMAT = "<10B2bB7s9B"

    ctrl: int = 0
    contmin: int = 0
    contmax: int = 0
    stability: int = 0
    maxtcharea: int = 0
    amplthr: int = 0
    styshape: int = 0
    hoversup: int = 0
    confthr: int = 0
    syncsperx: int = 0
    xposadj: int = 0
    yposadj: int = 0
    cfg: int = 0
    reserved: bytes = b""
    supstyto: int = 0
    maxnumsty: int = 0
    xedgectrl: int = 0
    xedgedist: int = 0
    yedgectrl: int = 0
    yedgedist: int = 0
    supto: int = 0
    supclassmode: int = 0
    dxxtrasigthr: int = 0


@dataclass
class T56Shieldless(TObject):
    """
    INTDELAY has one byte per Y line, so the device-side object is shorter
    than this layout on small matrices. Short reads are zero-padded before
    decoding; fields after INTDELAY are then only approximate.
    """
    TYPE = 56
    FORMAT = "<4B32s6B4HB"
    VARIABLE_LENGTH = True

    ctrl: int = 0
    reserved: int = 0
    optint: int = 0
    inttime: int = 0
    intdelay: bytes = b""
    multicutgc: int = 0
    gclimit: int = 0
    ncncl: int = 0
    touchbias: int = 0
    basescale: int = 0
    shiftlimit: int = 0
    ylonoisemul: int = 0
    ylonoisediv: int = 0
    yhinoisemul: int = 0
    yhinoisediv: int = 0
    reserved2: int = 0


@dataclass
class T65LensBending(TObject):
    TYPE = 65
    FORMAT = "<2B4HBH5B2s3B"

    ctrl: int = 0
    gradthr: int = 0
    ylonoisemul: int = 0
    ylonoisediv: int = 0
    yhinoisemul: int = 0
    yhinoisediv: int = 0
    lpfiltcoef: int = 0
    forcescale: int = 0
    forcethr: int = 0
    forcethrhyst: int = 0
    forcedi: int = 0
    forcehyst: int = 0
    atchratio: int = 0
    reserved: bytes = b""
    exfrcthr: int = 0
    exfrcthrhyst: int = 0
    exfrcto: int = 0


@dataclass
class T80RetransmissionCompensation(TObject):
    TYPE = 80
    FORMAT = "<10B"

    ctrl: int = 0
    compgain: int = 0
    targetdelta: int = 0
    compthr: int = 0
    atchthr: int = 0
    moistcfg: int = 0
    reserved: int = 0
    moistthr: int = 0
    moistinvtchthr: int = 0
    moistcfg2: int = 0


@dataclass
class T100MultipleTouchTouchscreen(TObject):
    """
    Touchscreen configuration. CFG1 bit 7 inverts X, bit 6 inverts Y and
    bit 5 swaps the axes; see ``orientation()``.
    """
    TYPE = 100
    FORMAT = "<11B2bH7B2bH21B2H3B"

    ctrl: int = 0
    cfg1: int = 0
    scraux: int = 0
    tchaux: int = 0
    tcheventcfg: int = 0
    akscfg: int = 0
    numtch: int = 0
    xycfg: int = 0
    xorigin: int = 0
    xsize: int = 0
    xpitch: int = 0
    xloclip: int = 0
    xhiclip: int = 0
    xrange: int = 0
    xedgecfg: int = 0
    xedgedist: int = 0
    dxxedgecfg: int = 0
    dxxedgedist: int = 0
    yorigin: int = 0
    ysize: int = 0
    ypitch: int = 0
    yloclip: int = 0
    yhiclip: int = 0
    yrange: int = 0
    yedgecfg: int = 0
    yedgedist: int = 0
    gain: int = 0
    dxgain: int = 0
    tchthr: int = 0
    tchhyst: int = 0
    intthr: int = 0
    noisesf: int = 0
    cutoffthr: int = 0
    mrgthr: int = 0
    mrgthradjstr: int = 0
    mrghyst: int = 0
    dxthrsf: int = 0
    tchdidown: int = 0
    tchdiup: int = 0
    nexttchdi: int = 0
    calcfg: int = 0
    jumplimit: int = 0
    movfilter: int = 0
    movsmooth: int = 0
    movpred: int = 0
    movhysti: int = 0
    movhystn: int = 0
    amplhyst: int = 0
    scrareahyst: int = 0
    intthrhyst: int = 0

    def orientation(self) -> Orientation:
        return Orientation.from_cfg1(self.cfg1)


OBJECT_LAYOUTS: Dict[int, type] = {
    cls.TYPE: cls for cls in (
        T6CommandProcessor,
        T7PowerConfig,
        T8AcquisitionConfig,
        T25SelfTest,
        T42TouchSuppression,
        T46CteConfig,
        T47ProciStylus,
        T56Shieldless,
        T65LensBending,
        T80RetransmissionCompensation,
        T100MultipleTouchTouchscreen,
    )
}


class ObjectCodec:
    """Raw object bytes <-> typed layouts."""

    @staticmethod
    def is_serializable(object_type: int) -> bool:
        return object_type in OBJECT_LAYOUTS

    @staticmethod
    def layout_for(object_type: int) -> type:
        layout = OBJECT_LAYOUTS.get(object_type)
        if layout is None:
            raise NotSerializableError(f"Object {object_name(object_type)} is not serializable.")
        return layout

    @staticmethod
    def decode(object_type: int, data: bytes) -> TObject:
        """Decode raw object bytes. Variable-length objects are zero-padded first."""
        layout = ObjectCodec.layout_for(object_type)
        size = layout.byte_size()
        if layout.VARIABLE_LENGTH and len(data) < size:
            data = bytes(data) + bytes(size - len(data))
        return layout.from_bytes(data)

    @staticmethod
    def encode(obj: TObject) -> bytes:
        return obj.to_bytes()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5 - HID FRAME PROTOCOL
# ═══════════════════════════════════════════════════════════════════════

class MaxTouchProtocol:
    """
    Report frame building and response parsing.

    Request frames are always ``report_length`` bytes, zero filled:
        [0] report id   [1] command   [2] addr lo   [3] addr hi   [4] length
        [5...] write payload
    Version check puts magic + protocol version in [2..5]; COMMAND frames
    put the sub-command in [2] and its argument in [3].

    Responses: [0] status, read data from [4], mouse mode flag in [1].
    """

    @staticmethod
    def chunk_capacity(report_length: int = REPORT_LENGTH) -> int:
        """Maximum payload bytes per read/write report."""
        return report_length - FRAME_HEADER_LENGTH

    @staticmethod
    def build_frame(command: int, report_length: int = REPORT_LENGTH) -> bytearray:
        frame = bytearray(report_length)
        frame[0] = REPORT_ID
        frame[1] = command
        return frame

    @staticmethod
    def build_version_check(report_length: int = REPORT_LENGTH) -> bytearray:
        frame = MaxTouchProtocol.build_frame(MaxTouchCommand.CHECK_VERSION, report_length)
        frame[2:6] = VERSION_MAGIC + PROTOCOL_VERSION
        return frame

    @staticmethod
    def _put_address(frame: bytearray, address: int, length: int, report_length: int) -> None:
        if not 0 <= address <= 0xFFFF:
            raise ValueError(f"Address 0x{address:X} outside the 16-bit register space")
        capacity = MaxTouchProtocol.chunk_capacity(report_length)
        if not 0 < length <= capacity:
            raise ValueError(f"Chunk length {length} outside 1..{capacity}")
        frame[2] = address & 0xFF
        frame[3] = (address >> 8) & 0xFF
        frame[4] = length

    @staticmethod
    def build_read(address: int, length: int, report_length: int = REPORT_LENGTH) -> bytearray:
        frame = MaxTouchProtocol.build_frame(MaxTouchCommand.READ, report_length)
        MaxTouchProtocol._put_address(frame, address, length, report_length)
        return frame

    @staticmethod
    def build_write(address: int, data: bytes, report_length: int = REPORT_LENGTH) -> bytearray:
        frame = MaxTouchProtocol.build_frame(MaxTouchCommand.WRITE, report_length)
        MaxTouchProtocol._put_address(frame, address, len(data), report_length)
        frame[FRAME_HEADER_LENGTH:FRAME_HEADER_LENGTH + len(data)] = data
        return frame

    @staticmethod
    def build_command(command_type: int, argument: int = 0,
                      report_length: int = REPORT_LENGTH) -> bytearray:
        frame = MaxTouchProtocol.build_frame(MaxTouchCommand.COMMAND, report_length)
        frame[2] = command_type
        frame[3] = argument & 0xFF
        return frame

    @staticmethod
    def parse_status(response: bytes) -> int:
        if not response:
            raise TransportError("Empty response")
        return response[0]

    @staticmethod
    def read_payload(response: bytes, length: int) -> bytes:
        data = bytes(response[RESPONSE_DATA_OFFSET:RESPONSE_DATA_OFFSET + length])
        if len(data) < length:
            raise TransportError(f"Short response: expected {length} data bytes, got {len(data)}")
        return data

    @staticmethod
    def parse_mouse_mode(response: bytes) -> bool:
        if len(response) < 2:
            raise TransportError("Short response to mouse mode query")
        return bool(response[1])


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6 - TRANSPORT LAYER (HID / Loopback)
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class HidConfig:
    """Bridge signature and link timing."""
    vendor_id: int = VENDOR_ID
    product_id: int = PRODUCT_ID
    usage_page: int = USAGE_PAGE
    usage: int = USAGE
    report_length: int = REPORT_LENGTH
    timeout_ms: int = DEFAULT_TIMEOUT_MS


class BaseTransport:
    """Abstract base for report-oriented transports."""

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def read(self, size: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> bytes:
        """Read one report. Returns ``b""`` on timeout."""
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError


class HidTransport(BaseTransport):
    """Raw HID transport over hidapi."""

    def __init__(self, path: bytes, label: str = ""):
        self.path = path
        self.label = label or repr(path)
        self._device = None

    def open(self) -> None:
        if not HID_AVAILABLE:
            raise TransportError("hid not installed (pip install hid, needs the hidapi library)")
        try:
            self._device = hid.Device(path=self.path)
            log.info("Opened HID device %s: %s %s", self.label,
                     self._device.manufacturer, self._device.product)
        except hid.HIDException as e:
            self._device = None
            raise TransportError(f"Failed to open HID device {self.label}: {e}") from e

    def close(self) -> None:
        if self._device:
            try:
                self._device.close()
            except hid.HIDException as e:
                raise TransportError(f"Failed to close HID device {self.label}: {e}") from e
            finally:
                self._device = None
            log.info("Closed HID device %s", self.label)

    def write(self, data: bytes) -> int:
        if not self._device:
            raise TransportError("HID device not open")
        try:
            return self._device.write(bytes(data))
        except hid.HIDException as e:
            raise TransportError(f"HID write failed: {e}") from e

    def read(self, size: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> bytes:
        if not self._device:
            raise TransportError("HID device not open")
        try:
            return bytes(self._device.read(size, timeout=timeout_ms))
        except hid.HIDException as e:
            raise TransportError(f"HID read failed: {e}") from e

    @property
    def is_open(self) -> bool:
        return self._device is not None

    @staticmethod
    def find_devices(config: Optional[HidConfig] = None) -> List[Dict[str, Any]]:
        """List raw-HID interfaces matching the bridge signature."""
        if not HID_AVAILABLE:
            return []
        config = config or HidConfig()
        return [
            d for d in hid.enumerate(config.vendor_id, config.product_id)
            if d.get("vendor_id") == config.vendor_id
            and d.get("product_id") == config.product_id
            and d.get("usage_page") == config.usage_page
            and d.get("usage") == config.usage
        ]


class LoopbackTransport(BaseTransport):
    """
    In-memory loopback for testing without hardware.

    Simulates the HID bridge and a maXTouch controller behind it: an
    information block, an object table and the objects themselves laid out
    in a flat register map. Writes to T6 DIAGNOSTIC refill T37 with the
    requested page, so heatmap sweeps behave like the real thing.

    Fault injection for tests:
        inject_status(status, after)  non-OK status after *after* good replies
        drop_replies                  swallow replies (reader times out)
        stale_reads                   serve N stale T37 pages
        version_ok                    fail the version handshake when False
    """

    # (object type, size, instances, report ids per instance)
    DEFAULT_OBJECTS: Tuple[Tuple[int, int, int, int], ...] = (
        (37, DIAGNOSTIC_HEADER_SIZE + PAGE_DATA_SIZE, 1, 0),
        (6, 7, 1, 1),
        (38, 64, 1, 0),
        (7, 7, 1, 0),
        (8, 15, 1, 0),
        (25, 15, 1, 1),
        (42, 13, 1, 0),
        (46, 13, 1, 0),
        (47, 29, 1, 0),
        (56, 43, 1, 1),
        (65, 23, 1, 0),
        (80, 10, 1, 0),
        (100, 54, 1, 12),
    )

    def __init__(self, matrix_x: int = 8, matrix_y: int = 6,
                 objects: Optional[Tuple[Tuple[int, int, int, int], ...]] = None,
                 sample_source: Optional[Callable[[int, int], int]] = None,
                 family_id: int = 0xA6, variant_id: int = 0x13,
                 version: int = 0x10, build: int = 0xAA):
        self.matrix_x = matrix_x
        self.matrix_y = matrix_y
        self.sample_source = sample_source or self._default_sample
        self.objects: Dict[int, ObjectDetails] = {}
        self._opened = False
        self._rx_queue: deque = deque()
        self.tx_log: List[bytes] = []

        # Fault injection / observation
        self.version_ok = True
        self.drop_replies = False
        self.stale_reads = 0
        self._error_status: Optional[int] = None
        self._error_after = 0
        self._serving_stale = False
        self.mouse_mode = False
        self.rebooted = False
        self.calibrations = 0
        self.backups = 0
        self.resets = 0
        self.diagnostic_mode = 0
        self.diagnostic_page = 0

        table = list(objects or self.DEFAULT_OBJECTS)
        # Info block, table, 3-byte table CRC, then the objects
        address = INFO_BLOCK_SIZE + OBJECT_ELEMENT_SIZE * len(table) + 3
        elements = bytearray()
        for obj_type, size, instances, report_ids in table:
            self.objects[obj_type] = ObjectDetails(address, size, instances, report_ids)
            elements += bytes([
                obj_type, address & 0xFF, (address >> 8) & 0xFF,
                size - 1, instances - 1, report_ids,
            ])
            address += size * instances

        self.memory = bytearray(address)
        self.memory[0:INFO_BLOCK_SIZE] = bytes([
            family_id, variant_id, version, build, matrix_x, matrix_y, len(table),
        ])
        self.memory[INFO_BLOCK_SIZE:INFO_BLOCK_SIZE + len(elements)] = elements

    @staticmethod
    def _default_sample(mode: int, node: int) -> int:
        if mode == DiagnosticMode.MUTUAL_REFERENCE:
            return 16000 + (node * 37) % 4000
        return ((node * 13) % 200) - 100

    # ── Test helpers ──

    def object_bytes(self, object_type: int) -> bytes:
        details = self.objects[object_type]
        return bytes(self.memory[details.address:details.address + details.size])

    def set_object_bytes(self, object_type: int, data: bytes, offset: int = 0) -> None:
        details = self.objects[object_type]
        start = details.address + offset
        self.memory[start:start + len(data)] = data

    def inject_status(self, status: Optional[int], after: int = 0) -> None:
        """Answer with *status* once *after* more replies have gone out normally."""
        self._error_status = status
        self._error_after = after

    def frames_sent(self, command: Optional[int] = None) -> List[bytes]:
        if command is None:
            return list(self.tx_log)
        return [f for f in self.tx_log if f[1] == command]

    # ── BaseTransport ──

    def open(self) -> None:
        self._opened = True
        log.info("Loopback transport opened (simulated %dx%d controller)",
                 self.matrix_x, self.matrix_y)

    def close(self) -> None:
        self._opened = False
        self._rx_queue.clear()

    def write(self, data: bytes) -> int:
        if not self._opened:
            raise TransportError("Loopback not open")
        self.tx_log.append(bytes(data))
        self._simulate_response(bytes(data))
        return len(data)

    def read(self, size: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> bytes:
        if not self._opened:
            raise TransportError("Loopback not open")
        if not self._rx_queue:
            return b""
        return bytes(self._rx_queue.popleft()[:size])

    @property
    def is_open(self) -> bool:
        return self._opened

    # ── Simulation ──

    def _reply(self, response: bytearray) -> None:
        if self.drop_replies:
            return
        if self._error_status is not None:
            if self._error_after > 0:
                self._error_after -= 1
            else:
                response[0] = self._error_status
        self._rx_queue.append(bytes(response))

    def _simulate_response(self, frame: bytes) -> None:
        """Generate the bridge's response to one request frame."""
        if len(frame) < FRAME_HEADER_LENGTH:
            return
        command = frame[1]
        response = bytearray(len(frame) - 1)

        if command == MaxTouchCommand.CHECK_VERSION:
            if not self.version_ok or frame[2:6] != VERSION_MAGIC + PROTOCOL_VERSION:
                response[0] = 0x01
            self._reply(response)

        elif command == MaxTouchCommand.COMMAND:
            sub = frame[2]
            if sub == CommandType.REBOOT_BOOTLOADER:
                self.rebooted = True
                return
            if sub == CommandType.SET_MOUSE_MODE:
                self.mouse_mode = bool(frame[3])
            elif sub == CommandType.GET_MOUSE_MODE:
                response[1] = int(self.mouse_mode)
            else:
                response[0] = 0xFF
            self._reply(response)

        elif command == MaxTouchCommand.READ:
            address = frame[2] | (frame[3] << 8)
            length = frame[4]
            response[1:4] = frame[1:4]
            response[RESPONSE_DATA_OFFSET:RESPONSE_DATA_OFFSET + length] = \
                self._read_memory(address, length)
            self._reply(response)

        elif command == MaxTouchCommand.WRITE:
            address = frame[2] | (frame[3] << 8)
            length = frame[4]
            response[1:4] = frame[1:4]
            if address + length > len(self.memory):
                response[0] = 0x02
            else:
                self._write_memory(address, frame[FRAME_HEADER_LENGTH:FRAME_HEADER_LENGTH + length])
            self._reply(response)

        else:
            response[0] = 0xFF
            self._reply(response)

    def _read_memory(self, address: int, length: int) -> bytes:
        t37 = self.objects.get(ObjectType.DEBUG_DIAGNOSTIC)
        if t37 and address == t37.address:
            self._serving_stale = self.stale_reads > 0
            if self._serving_stale:
                self.stale_reads -= 1
        if t37 and self._serving_stale and t37.address <= address < t37.address + t37.size:
            stale = bytearray(t37.size)
            stale[1] = 0xFF
            start = address - t37.address
            return bytes(stale[start:start + length])
        return bytes(self.memory[address:address + length]).ljust(length, b"\x00")

    def _write_memory(self, address: int, data: bytes) -> None:
        self.memory[address:address + len(data)] = data
        t6 = self.objects.get(ObjectType.GEN_COMMANDPROCESSOR)
        if not t6:
            return
        for offset, value in enumerate(data):
            field_index = address + offset - t6.address
            if value == 0 or not 0 <= field_index < 7:
                continue
            if field_index == 0:
                self.resets += 1
            elif field_index == 1 and value == BACKUP_NV_MAGIC:
                self.backups += 1
            elif field_index == 2:
                self.calibrations += 1
            elif field_index == 5:
                self._diagnostic(value)

    def _diagnostic(self, value: int) -> None:
        if value == DiagnosticMode.PAGE_UP:
            self.diagnostic_page += 1
        elif value == DiagnosticMode.PAGE_DOWN:
            self.diagnostic_page = max(0, self.diagnostic_page - 1)
        else:
            self.diagnostic_mode = value
            self.diagnostic_page = 0
        self._fill_diagnostic_page()

    def _fill_diagnostic_page(self) -> None:
        t37 = self.objects.get(ObjectType.DEBUG_DIAGNOSTIC)
        if not t37:
            return
        page = bytearray(t37.size)
        page[0] = self.diagnostic_mode
        page[1] = self.diagnostic_page & 0xFF
        nodes = self.matrix_x * self.matrix_y
        per_page = PAGE_DATA_SIZE // 2
        for i in range(per_page):
            node = self.diagnostic_page * per_page + i
            if node >= nodes:
                break
            sample = max(-32768, min(32767, self.sample_source(self.diagnostic_mode, node)))
            struct.pack_into("<h", page, DIAGNOSTIC_HEADER_SIZE + i * 2, sample)
        self.memory[t37.address:t37.address + t37.size] = page


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7 - DIAGNOSTIC HEATMAP
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Heatmap:
    """RGB heatmap, row-major, 3 bytes per pixel."""
    width: int
    height: int
    pixels: Optional[bytearray] = field(default=None, repr=False)
    min_sample: Optional[int] = None
    max_sample: Optional[int] = None
    out_of_range: int = 0

    def __post_init__(self):
        if self.pixels is None:
            self.pixels = bytearray(self.width * self.height * 3)

    def put_pixel(self, x: int, y: int, rgb: Tuple[int, int, int]) -> None:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"Pixel ({x}, {y}) outside {self.width}x{self.height}")
        i = (y * self.width + x) * 3
        self.pixels[i:i + 3] = bytes(rgb)

    def get_pixel(self, x: int, y: int) -> Tuple[int, int, int]:
        i = (y * self.width + x) * 3
        return tuple(self.pixels[i:i + 3])

    def rows(self) -> List[bytes]:
        stride = self.width * 3
        return [bytes(self.pixels[r * stride:(r + 1) * stride]) for r in range(self.height)]

    def track(self, sample: int, low: int, high: int) -> None:
        if self.min_sample is None or sample < self.min_sample:
            self.min_sample = sample
        if self.max_sample is None or sample > self.max_sample:
            self.max_sample = sample
        if sample < low or sample > high:
            self.out_of_range += 1
            log.debug("Sample %d outside colour range %d..%d", sample, low, high)

    def to_image(self) -> "Image.Image":
        if not PIL_AVAILABLE:
            raise RuntimeError("Pillow not installed (pip install Pillow)")
        return Image.frombytes("RGB", (self.width, self.height), bytes(self.pixels))

    def to_png(self) -> bytes:
        from io import BytesIO
        buf = BytesIO()
        self.to_image().save(buf, format="PNG")
        return buf.getvalue()

    def save_png(self, path) -> Path:
        path = Path(path)
        path.write_bytes(self.to_png())
        log.info("Heatmap saved: %s (%dx%d)", path, self.width, self.height)
        return path


class HeatmapMapper:
    """Node index to pixel coordinate, sample to colour."""

    @staticmethod
    def page_count(nodes: int) -> int:
        return math.ceil(nodes * 2 / PAGE_DATA_SIZE)

    @staticmethod
    def node_position(index: int, sensor_size: Tuple[int, int],
                      orientation: Orientation) -> Tuple[int, int]:
        """
        Map a diagnostic node index to a heatmap (x, y).

        Nodes arrive X-major: ``x = index // y_size``, ``y = index % y_size``.
        Inversion mirrors within the sensor extents, then the axes are
        swapped if requested.
        """
        x_size, y_size = sensor_size
        x = index // y_size
        y = index % y_size
        if orientation.invert_x:
            x = x_size - x - 1
        if orientation.invert_y:
            y = y_size - y - 1
        if orientation.switch_xy:
            x, y = y, x
        return x, y

    @staticmethod
    def normalize(sample: int, low: int, high: int) -> float:
        if low < 0:
            span = max(-low, high)
            return max(-1.0, min(1.0, sample / span))
        return max(0.0, min(1.0, (sample - low) / (high - low)))

    @staticmethod
    def colour(normalized: float) -> Tuple[int, int, int]:
        """Negative values shade toward red, positive toward blue, zero is white."""
        if normalized < 0:
            value = 255 - int(-255 * normalized)
            return (255, value, value)
        value = 255 - int(255 * normalized)
        return (value, value, 255)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 8 - DEVICE COMMUNICATION ENGINE
# ═══════════════════════════════════════════════════════════════════════

class CommState(Enum):
    """Communication state machine."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


@dataclass
class ConnectionState:
    """Everything known about the currently open device."""
    transport: BaseTransport
    info: Optional[InformationBlock] = None
    sensor_size: Tuple[int, int] = (0, 0)
    orientation: Orientation = field(default_factory=Orientation)
    objects: Dict[int, ObjectDetails] = field(default_factory=dict)


class MaxTouchComm:
    """
    High-level maXTouch driver.

    Owns at most one session. Every public operation holds the session lock
    for its whole duration, so a heatmap sweep cannot interleave with a
    register write from another thread.
    """

    def __init__(self, transport: Optional[BaseTransport] = None,
                 config: Optional[HidConfig] = None):
        self.transport = transport
        self.config = config or HidConfig()
        self.state = CommState.DISCONNECTED
        self.session: Optional[ConnectionState] = None
        self._lock = threading.Lock()
        self._callbacks: Dict[str, List[Callable]] = {}
        self._rx_frame_log: deque = deque(maxlen=FRAME_LOG_DEPTH)
        self._tx_frame_log: deque = deque(maxlen=FRAME_LOG_DEPTH)

    # ── Event System ──

    def on(self, event: str, callback: Callable) -> None:
        """Register an event callback. Events: log, progress, state."""
        self._callbacks.setdefault(event, []).append(callback)

    def emit(self, event: str, **kwargs) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._callbacks.get(event, []):
            try:
                cb(**kwargs)
            except Exception as e:
                log.error("Event callback error: %s", e)

    def _set_state(self, state: CommState) -> None:
        self.state = state
        self.emit("state", state=state)

    # ── Session accessors ──

    @property
    def is_connected(self) -> bool:
        return self.session is not None

    @property
    def information_block(self) -> Optional[InformationBlock]:
        return self.session.info if self.session else None

    @property
    def object_table(self) -> Dict[int, ObjectDetails]:
        return dict(self.session.objects) if self.session else {}

    @property
    def orientation(self) -> Orientation:
        return self.session.orientation if self.session else Orientation()

    @property
    def sensor_size(self) -> Tuple[int, int]:
        return self.session.sensor_size if self.session else (0, 0)

    def _session(self) -> ConnectionState:
        if self.session is None:
            raise NotConnectedError("Not connected to a maXTouch device")
        return self.session

    def _lookup(self, object_type: int) -> ObjectDetails:
        details = self._session().objects.get(object_type)
        if details is None:
            raise ObjectNotFoundError(f"Object {object_name(object_type)} not found in object table")
        return details

    # ── Low-Level Frame I/O ──

    def _send(self, frame: bytes) -> None:
        transport = self._session().transport
        self._tx_frame_log.append((time.monotonic(), bytes(frame)))
        log.debug("TX [%d]: %s", len(frame), hex_str(frame))
        transport.write(bytes(frame))

    def _transact(self, frame: bytes, step: str) -> bytes:
        """Send one frame, wait for one response and check its status."""
        self._send(frame)
        response = self._session().transport.read(self.config.report_length, self.config.timeout_ms)
        if not response:
            raise TransportTimeout(f"{step}: no response within {self.config.timeout_ms} ms")
        self._rx_frame_log.append((time.monotonic(), bytes(response)))
        log.debug("RX [%d]: %s", len(response), hex_str(response))
        status = MaxTouchProtocol.parse_status(response)
        if status != ResponseStatus.OK:
            raise DeviceError(status, step)
        return response

    def _read_data(self, address: int, length: int) -> bytes:
        self._session()
        capacity = MaxTouchProtocol.chunk_capacity(self.config.report_length)
        data = bytearray()
        for offset in range(0, length, capacity):
            chunk = min(capacity, length - offset)
            frame = MaxTouchProtocol.build_read(address + offset, chunk, self.config.report_length)
            response = self._transact(frame, f"Read {chunk} bytes at 0x{address + offset:04X}")
            data += MaxTouchProtocol.read_payload(response, chunk)
        return bytes(data)

    def _write_data(self, address: int, data: bytes) -> None:
        self._session()
        capacity = MaxTouchProtocol.chunk_capacity(self.config.report_length)
        for offset in range(0, len(data), capacity):
            chunk = data[offset:offset + capacity]
            frame = MaxTouchProtocol.build_write(address + offset, chunk, self.config.report_length)
            self._transact(frame, f"Write {len(chunk)} bytes at 0x{address + offset:04X}")

    def _write_object(self, object_type: int, obj: TObject) -> None:
        details = self._lookup(object_type)
        self._write_data(details.address, ObjectCodec.encode(obj)[:details.size])

    # ── Connection ──

    def connect(self) -> InformationBlock:
        """
        Open the bridge, check the protocol version and load the object table.

        Any previous session is dropped first. On failure the transport is
        closed and no session remains.
        """
        with self._lock:
            self._close_session()
            self._set_state(CommState.CONNECTING)
            transport = None
            try:
                transport = self.transport or self._discover()
                transport.open()
                self.session = ConnectionState(transport=transport)
                self._transact(MaxTouchProtocol.build_version_check(self.config.report_length),
                               "Version check")
                info = self._load_object_table()
            except Exception as e:
                self.session = None
                if transport is not None:
                    self._close_transport(transport)
                self._set_state(CommState.ERROR)
                self.emit("log", msg=f"Connect failed: {e}", level="error")
                log.error("Connect failed: %s", e)
                raise

            self._set_state(CommState.CONNECTED)
            self.emit("log", msg=(
                f"Connected: family 0x{info.family_id:02X} variant 0x{info.variant_id:02X} "
                f"fw {info.firmware}, {info.matrix_x_size}x{info.matrix_y_size} matrix, "
                f"{info.num_objects} objects"), level="success")
            return info

    def _discover(self) -> HidTransport:
        if not HID_AVAILABLE:
            raise TransportError("hid not installed (pip install hid, needs the hidapi library)")
        devices = HidTransport.find_devices(self.config)
        if not devices:
            raise DeviceNotFoundError(
                f"No raw-HID interface found for {self.config.vendor_id:04X}:"
                f"{self.config.product_id:04X} usage page 0x{self.config.usage_page:04X}")
        d = devices[0]
        label = f"{d.get('manufacturer_string') or ''} {d.get('product_string') or ''}".strip()
        return HidTransport(d["path"], label)

    def _load_object_table(self) -> InformationBlock:
        session = self._session()
        info = InformationBlock.from_bytes(self._read_data(INFO_BLOCK_ADDRESS, INFO_BLOCK_SIZE))
        session.info = info
        session.sensor_size = (info.matrix_x_size, info.matrix_y_size)
        log.info("Info block: %s", info)

        for i in range(info.num_objects):
            raw = self._read_data(INFO_BLOCK_SIZE + OBJECT_ELEMENT_SIZE * i, OBJECT_ELEMENT_SIZE)
            element = ObjectTableElement.from_bytes(raw)
            details = element.details()
            session.objects[element.object_type] = details
            log.info("  %-40s addr=0x%04X size=%3d instances=%d", object_name(element.object_type),
                     details.address, details.size, details.instances)
            self.emit("progress", current=i + 1, total=info.num_objects, label="Object table")
        return info

    def disconnect(self) -> None:
        """Close transport and drop the session."""
        with self._lock:
            self._close_session()
            self._set_state(CommState.DISCONNECTED)

    def _close_session(self) -> None:
        if self.session is not None:
            self._close_transport(self.session.transport)
            self.session = None

    @staticmethod
    def _close_transport(transport: BaseTransport) -> None:
        try:
            transport.close()
        except TransportError as e:
            log.warning("Transport close failed: %s", e)

    # ── Register I/O ──

    def read_data(self, address: int, length: int) -> bytes:
        """Read *length* bytes from the register map, chunked per report."""
        with self._lock:
            return self._read_data(address, length)

    def write_data(self, address: int, data: bytes) -> None:
        with self._lock:
            self._write_data(address, bytes(data))

    def read_object(self, object_type: int) -> bytes:
        """Raw bytes of the first instance of an object."""
        with self._lock:
            details = self._lookup(object_type)
            return self._read_data(details.address, details.size)

    def decode_object(self, object_type: int) -> TObject:
        """Read and decode an object. Reading T100 also refreshes the orientation."""
        with self._lock:
            details = self._lookup(object_type)
            ObjectCodec.layout_for(object_type)
            obj = ObjectCodec.decode(object_type, self._read_data(details.address, details.size))
            if isinstance(obj, T100MultipleTouchTouchscreen):
                self._apply_orientation(obj.orientation())
            return obj

    def _apply_orientation(self, orientation: Orientation) -> None:
        session = self._session()
        if orientation != session.orientation:
            log.info("Orientation: %s", orientation)
        session.orientation = orientation

    def write_register(self, object_type: int, offset: int, data: bytes) -> None:
        """Write raw bytes into an object at *offset*."""
        with self._lock:
            details = self._lookup(object_type)
            if offset < 0 or offset + len(data) >= details.size:
                raise OutOfBoundsError(f"Attempt to write off the end of object {object_type}.")
            self._write_data(details.address + offset, bytes(data))
            self.emit("log", msg=f"Wrote {len(data)} bytes to {object_name(object_type)} "
                                 f"at offset {offset}", level="info")

    def write_object(self, object_type: int, obj: TObject) -> None:
        """Encode a typed object and write it over the device copy."""
        if obj.TYPE != object_type:
            raise ValueError(f"{type(obj).__name__} cannot be written to {object_name(object_type)}")
        with self._lock:
            self._write_object(object_type, obj)

    # ── Command processor (T6) ──

    def calibrate(self) -> None:
        """Force a recalibration."""
        with self._lock:
            self._write_object(ObjectType.GEN_COMMANDPROCESSOR, T6CommandProcessor(calibrate=1))
        self.emit("log", msg="Recalibration requested", level="info")

    def backup_config(self) -> None:
        """Persist the current configuration to non-volatile memory."""
        with self._lock:
            self._write_object(ObjectType.GEN_COMMANDPROCESSOR,
                               T6CommandProcessor(backupnv=BACKUP_NV_MAGIC))
        self.emit("log", msg="Configuration backed up to NVM", level="info")

    # ── Diagnostic heatmap ──

    def get_heatmap(self, mode: int, low: int, high: int) -> Heatmap:
        """
        Sweep the T37 diagnostic pages for *mode* and render them.

        Samples are coloured against ``low..high``: with a negative *low* the
        scale is symmetric around zero (red/white/blue), otherwise it runs
        white to blue.
        """
        if low >= 0 and high <= low:
            raise ValueError(f"Colour range {low}..{high} is empty")
        with self._lock:
            session = self._session()
            self._lookup(ObjectType.GEN_COMMANDPROCESSOR)
            t37 = self._lookup(ObjectType.DEBUG_DIAGNOSTIC)
            if t37.size < DIAGNOSTIC_HEADER_SIZE + PAGE_DATA_SIZE:
                raise DecodeError(f"T37 is {t37.size} bytes, too small for a diagnostic page")

            x_size, y_size = session.sensor_size
            orientation = session.orientation
            if orientation.switch_xy:
                heatmap = Heatmap(width=y_size, height=x_size)
            else:
                heatmap = Heatmap(width=x_size, height=y_size)

            self._write_object(ObjectType.GEN_COMMANDPROCESSOR, T6CommandProcessor(diagnostic=mode))
            nodes = x_size * y_size
            pages = HeatmapMapper.page_count(nodes)

            for page in range(pages):
                data = self._read_data(t37.address, t37.size)
                if data[0] != ObjectType.DEBUG_DIAGNOSTIC and data[1] != page & 0xFF:
                    log.debug("Stale diagnostic page (got mode %d page %d, want page %d), re-reading",
                              data[0], data[1], page)
                    data = self._read_data(t37.address, t37.size)

                if page != pages - 1:
                    self._write_object(ObjectType.GEN_COMMANDPROCESSOR,
                                       T6CommandProcessor(diagnostic=DiagnosticMode.PAGE_UP))

                for offset in range(0, PAGE_DATA_SIZE, 2):
                    index = (page * PAGE_DATA_SIZE + offset) // 2
                    if index >= nodes:
                        break
                    sample = struct.unpack_from("<h", data, DIAGNOSTIC_HEADER_SIZE + offset)[0]
                    heatmap.track(sample, low, high)
                    x, y = HeatmapMapper.node_position(index, session.sensor_size, orientation)
                    rgb = HeatmapMapper.colour(HeatmapMapper.normalize(sample, low, high))
                    heatmap.put_pixel(x, y, rgb)

                self.emit("progress", current=page + 1, total=pages, label="Diagnostic pages")

        log.info("Heatmap mode 0x%02X: %dx%d, samples %s..%s", mode, heatmap.width,
                 heatmap.height, heatmap.min_sample, heatmap.max_sample)
        if heatmap.out_of_range:
            log.warning("%d samples outside colour range %d..%d (min %s, max %s)",
                        heatmap.out_of_range, low, high, heatmap.min_sample, heatmap.max_sample)
        return heatmap

    # ── Bridge commands ──

    def reboot_bootloader(self) -> None:
        """Reboot the bridge MCU into its bootloader. No reply is expected."""
        with self._lock:
            self._send(MaxTouchProtocol.build_command(
                CommandType.REBOOT_BOOTLOADER, report_length=self.config.report_length))
        self.emit("log", msg="Reboot to bootloader sent", level="warning")

    def set_mouse_mode(self, enable: bool) -> None:
        with self._lock:
            self._transact(MaxTouchProtocol.build_command(
                CommandType.SET_MOUSE_MODE, int(bool(enable)), self.config.report_length),
                "Set mouse mode")

    def get_mouse_mode(self) -> bool:
        with self._lock:
            response = self._transact(MaxTouchProtocol.build_command(
                CommandType.GET_MOUSE_MODE, report_length=self.config.report_length),
                "Get mouse mode")
            return MaxTouchProtocol.parse_mouse_mode(response)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 9 - CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

DIAGNOSTIC_MODE_CHOICES = {
    "delta": DiagnosticMode.MUTUAL_DELTA,
    "reference": DiagnosticMode.MUTUAL_REFERENCE,
}

def cli_log_callback(msg: str, level: str = "info") -> None:
    """Print log messages to console."""
    prefix = {"info": "  ", "warning": "⚠ ", "error": "✗ ", "success": "✓ ", "debug": "  "}
    print(f"{prefix.get(level, '  ')}{msg}")

def cli_progress_callback(current: int, total: int, label: str = "") -> None:
    """Print progress to console."""
    if total > 0:
        pct = (current / total) * 100
        bar_len = 40
        filled = int(bar_len * current / total)
        bar = "█" * filled + "░" * (bar_len - filled)
        print(f"\r  {label} [{bar}] {pct:.0f}%", end="", flush=True)
        if current >= total:
            print()

def parse_int(text: str) -> int:
    """argparse type accepting decimal or 0x-prefixed hex."""
    return int(text, 0)

def format_object(obj: TObject) -> List[str]:
    lines = [f"{object_name(obj.TYPE)}"]
    for f in fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, bytes):
            shown = hex_str(value)
        elif value < 0:
            shown = str(value)
        else:
            shown = f"{value} (0x{value:02X})"
        lines.append(f"  {f.name:16s} = {shown}")
    return lines


def print_object_table(comm: MaxTouchComm) -> None:
    info = comm.information_block
    print(f"\n  Family:   0x{info.family_id:02X}")
    print(f"  Variant:  0x{info.variant_id:02X}")
    print(f"  Firmware: {info.firmware}")
    print(f"  Matrix:   {info.matrix_x_size} x {info.matrix_y_size}")
    print(f"  Objects:  {info.num_objects}\n")
    for obj_type, d in sorted(comm.object_table.items()):
        codec = "✓" if ObjectCodec.is_serializable(obj_type) else " "
        print(f"  {codec} {object_name(obj_type):42s} 0x{d.address:04X}  "
              f"size {d.size:3d}  x{d.instances}")

def build_transport(args: argparse.Namespace) -> Optional[BaseTransport]:
    if args.transport == "loopback":
        return LoopbackTransport()
    return None

def build_config(args: argparse.Namespace) -> HidConfig:
    return HidConfig(
        vendor_id=args.vid,
        product_id=args.pid,
        usage_page=args.usage_page,
        usage=args.usage,
        timeout_ms=args.timeout,
    )

def run_cli(args: argparse.Namespace) -> int:
    """Run the CLI interface."""
    print(f"\n{__app_name__} v{__version__}")
    print(f"Target: {__target_device__}\n")

    config = build_config(args)

    if args.command == "devices":
        if not HID_AVAILABLE:
            print("hid not installed (pip install hid)")
            return 1
        devices = HidTransport.find_devices(config)
        if devices:
            print("Matching raw-HID interfaces:")
            for d in devices:
                print(f"  {d.get('manufacturer_string')} {d.get('product_string')}  {d.get('path')!r}")
        else:
            print("No matching raw-HID interfaces found")
        return 0

    comm = MaxTouchComm(build_transport(args), config)
    comm.on("log", cli_log_callback)
    comm.on("progress", cli_progress_callback)

    print("Connecting...")
    try:
        comm.connect()
    except MaxTouchError as e:
        print(f"✗ Connection failed: {e}")
        return 1

    try:
        if args.command == "info":
            print_object_table(comm)
            return 0

        elif args.command == "read":
            if args.raw:
                data = comm.read_object(args.object)
                print(f"{object_name(args.object)}: {hex_str(data)}")
            else:
                for line in format_object(comm.decode_object(args.object)):
                    print(line)
            return 0

        elif args.command == "write":
            data = bytes.fromhex(args.data)
            comm.write_register(args.object, args.offset, data)
            if args.backup:
                comm.backup_config()
            return 0

        elif args.command == "heatmap":
            mode = DIAGNOSTIC_MODE_CHOICES[args.mode]
            low, high = args.clim or DEFAULT_COLOUR_LIMITS[mode]
            if args.recalibrate:
                comm.calibrate()
            # T100 orientation is needed before the sweep
            if ObjectType.TOUCH_MULTIPLETOUCHSCREEN in comm.object_table:
                comm.decode_object(ObjectType.TOUCH_MULTIPLETOUCHSCREEN)
            heatmap = comm.get_heatmap(mode, low, high)
            print(f"\n  Heatmap {heatmap.width} x {heatmap.height}, "
                  f"samples {heatmap.min_sample}..{heatmap.max_sample}")
            out_path = args.output or f"heatmap_{args.mode}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.png"
            heatmap.save_png(out_path)
            print(f"✓ Saved to {out_path}")
            return 0

        elif args.command == "calibrate":
            comm.calibrate()
            return 0

        elif args.command == "backup":
            comm.backup_config()
            return 0

        elif args.command == "reboot":
            comm.reboot_bootloader()
            return 0

        elif args.command == "mouse":
            if args.enable is not None:
                comm.set_mouse_mode(args.enable)
            print(f"  Mouse mode: {'on' if comm.get_mouse_mode() else 'off'}")
            return 0

        else:
            print(f"Unknown command: {args.command}")
            return 1

    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        return 130
    except Exception as e:
        print(f"\n✗ Error: {e}")
        log.exception("CLI error")
        return 1
    finally:
        comm.disconnect()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 10 - ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="maxtouch-studio",
        description=f"{__app_name__} v{__version__}: maXTouch object table, config and heatmap tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s devices                                  # List matching HID interfaces
  %(prog)s info                                     # Info block + object table
  %(prog)s read --object 100                        # Decode T100
  %(prog)s read --object 38 --raw                   # Hex dump of T38
  %(prog)s write --object 7 --offset 0 --data "20 FF"   # Patch T7
  %(prog)s heatmap --mode delta -o delta.png        # Mutual delta heatmap
  %(prog)s heatmap --mode reference --clim 0 32000  # Reference heatmap
  %(prog)s mouse --enable                           # Turn mouse mode on
  %(prog)s reboot                                   # Jump to bootloader
  %(prog)s info --transport loopback                # Simulated controller
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    devices_p = subparsers.add_parser("devices", help="List matching raw-HID interfaces")
    info_p = subparsers.add_parser("info", help="Show information block and object table")

    read_p = subparsers.add_parser("read", help="Read and decode an object")
    read_p.add_argument("--object", "-t", type=parse_int, required=True, help="Object type (e.g. 100)")
    read_p.add_argument("--raw", action="store_true", help="Hex dump instead of decoding")

    write_p = subparsers.add_parser("write", help="Write raw bytes into an object")
    write_p.add_argument("--object", "-t", type=parse_int, required=True, help="Object type")
    write_p.add_argument("--offset", type=parse_int, default=0, help="Byte offset within the object")
    write_p.add_argument("--data", "-d", required=True, help='Hex bytes, e.g. "20 FF"')
    write_p.add_argument("--backup", action="store_true", help="Back up config to NVM afterwards")

    heatmap_p = subparsers.add_parser("heatmap", help="Capture a diagnostic heatmap as PNG")
    heatmap_p.add_argument("--mode", "-m", choices=sorted(DIAGNOSTIC_MODE_CHOICES), default="delta",
                           help="Diagnostic mode (default: delta)")
    heatmap_p.add_argument("--clim", "-c", type=int, nargs=2, metavar=("LOW", "HIGH"),
                           help="Colour limits (default: -128..127, or 0..32000 for reference)")
    heatmap_p.add_argument("--output", "-o", help="Output .png path")
    heatmap_p.add_argument("--recalibrate", "-R", action="store_true",
                           help="Force recalibration before capturing")

    calibrate_p = subparsers.add_parser("calibrate", help="Force recalibration")
    backup_p = subparsers.add_parser("backup", help="Back up configuration to NVM")
    reboot_p = subparsers.add_parser("reboot", help="Reboot the bridge into its bootloader")

    mouse_p = subparsers.add_parser("mouse", help="Get or set mouse mode")
    toggle = mouse_p.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enable", action="store_true", default=None,
                        help="Enable mouse mode")
    toggle.add_argument("--disable", dest="enable", action="store_false", help="Disable mouse mode")

    # Global options
    for sub in [devices_p, info_p, read_p, write_p, heatmap_p, calibrate_p, backup_p, reboot_p, mouse_p]:
        sub.add_argument("--transport", choices=["hid", "loopback"], default="hid",
                         help="Transport type (loopback = simulated controller)")
        sub.add_argument("--vid", type=parse_int, default=VENDOR_ID,
                         help=f"USB vendor id (default: 0x{VENDOR_ID:04X})")
        sub.add_argument("--pid", type=parse_int, default=PRODUCT_ID,
                         help=f"USB product id (default: 0x{PRODUCT_ID:04X})")
        sub.add_argument("--usage-page", type=parse_int, default=USAGE_PAGE,
                         help=f"Raw-HID usage page (default: 0x{USAGE_PAGE:04X})")
        sub.add_argument("--usage", type=parse_int, default=USAGE,
                         help=f"Raw-HID usage (default: 0x{USAGE:02X})")
        sub.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT_MS, help="Read timeout in ms")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0
    return run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
