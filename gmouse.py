#!/usr/bin/env python3
import argparse
import dataclasses
import enum
import json
import logging
import struct
import sys
import time

import usb.core
import usb.util

log = logging.getLogger(__name__)

VENDOR_ID = 0x046d  # Logitech
PRODUCT_ID = 0xc08c

DEVICE_INDEX = 0xff  # this device, not a receiver slot
SOFTWARE_ID = 0x0c

REQUEST_TYPE = 0x21  # Host-to-device, class, interface
SET_REPORT = 0x09

RESPONSE_LENGTH = 20
LINE_LENGTH = 16
LINE_COUNT = 16
BLOCK_LENGTH = LINE_LENGTH * LINE_COUNT

PROFILE_COUNT = 5
DPI_SLOTS = 5
DPI_MIN = 100
DPI_MAX = 25600

DEFAULT_TIMEOUT = 10000  # ms
DRAIN_TIMEOUT = 100  # ms
DRAIN_LIMIT = 256
MAX_DISCARDS = 32
MAX_POLLS = 50
POLL_INTERVAL = 0.1  # seconds

# first write of the two-phase commit, the device only takes id + 1
WRITE_ID = 0x1c

CRC_SEED = 0xffff
CRC_POLYNOMIAL = 0x1021

PING_DATA = 0x39


class ReportID(enum.IntEnum):
    SHORT = 0x10
    LONG = 0x11

    @property
    def size(self):
        return {ReportID.SHORT: 7, ReportID.LONG: 20}[self]

    @property
    def w_value(self):
        return 0x0200 | self


class Feature(enum.IntEnum):
    ROOT = 0x00
    FEATURE_SET = 0x01
    DEVICE_INFO = 0x02
    DEVICE_NAME = 0x03
    LED = 0x0e
    ONBOARD_PROFILES = 0x0f
    RESET = 0x10


class Function(enum.IntEnum):
    # on the root feature 0x0 looks up a feature index and 0x1 is the ping
    ROOT = 0x0
    GET_FEATURE = 0x1
    CHECK_CONNECTED = 0x2
    SET = 0x3
    STATUS = 0x4
    READ_RECORD = 0x5
    START_RECORD = 0x6
    WRITE_RECORD = 0x7
    END_RECORD = 0x8
    ERROR_HANDLING_B = 0xb
    ERROR_HANDLING_C = 0xc


# feature ids as reported by the root feature lookup
FEATURE_IDS = {
    Feature.ONBOARD_PROFILES: 0x8100,
    Feature.LED: 0x8070,
}


PollingRateHz = {
    1000: 0x01,
    500: 0x02,
    333: 0x03,
    250: 0x04,
}


class LEDMode(enum.IntEnum):
    OFF = 0x00
    STATIC = 0x01
    CYCLE = 0x02


class GMouseError(Exception):
    pass


class TransportError(GMouseError):
    """
    A control or interrupt transfer failed, or no data arrived where a
    response was required
    """


class ProtocolMismatch(GMouseError):
    """
    The device answered, but not in the shape the protocol expects
    """


class DeviceRejected(GMouseError):
    def __init__(self, status):
        super().__init__(
            f'device rejected the command '
            f'(error 0x{status.error_code:02x}, profile {status.profile})')
        self.status = status


class DeviceNotFound(GMouseError):
    pass


def inverse(dict_obj):
    return {v: k for k, v in dict_obj.items()}


def format_frame(data):
    return ' '.join(f'{b:02x}' for b in data)


def _check_byte(*values):
    for value in values:
        if not isinstance(value, int):
            raise TypeError(f'expected an int, got {value!r}')
        if not (0x00 <= value <= 0xff):
            raise ValueError(f'not a byte: {value}')


def op_byte(function_id, software_id):
    if not (0x0 <= function_id <= 0xf):
        raise ValueError(f'function id must be a nibble: {function_id}')
    if not (0x1 <= software_id <= 0xf):
        raise ValueError(f'software id must be a non-zero nibble: {software_id}')
    return function_id << 4 | software_id


def encode_short(device_index, feature_index, function_id, software_id,
                 a=0x00, b=0x00, c=0x00):
    _check_byte(device_index, feature_index, a, b, c)
    return bytes([
        ReportID.SHORT,
        device_index,
        feature_index,
        op_byte(function_id, software_id),
        a,
        b,
        c,
    ])


def encode_long(device_index, feature_index, function_id, software_id,
                payload=b''):
    payload = bytes(payload)
    if len(payload) > LINE_LENGTH:
        raise ValueError(f'long frame payload is {len(payload)} bytes, max {LINE_LENGTH}')
    _check_byte(device_index, feature_index)
    header = bytes([
        ReportID.LONG,
        device_index,
        feature_index,
        op_byte(function_id, software_id),
    ])
    return header + payload.ljust(LINE_LENGTH, b'\x00')


@dataclasses.dataclass(frozen=True)
class Status:
    error_code: int
    profile: int

    @property
    def ok(self):
        return self.error_code == 0

    def raise_for_error(self):
        if not self.ok:
            raise DeviceRejected(self)
        return self


def decode_status(response):
    """
    Returns None when the read came back short, which is what a timed out
    read with no data looks like
    """
    if len(response) < RESPONSE_LENGTH:
        return None
    return Status(error_code=response[4], profile=response[5])


def is_discardable(frame):
    # byte 3 echoes the op byte; zero means the real answer is still queued
    return len(frame) > 3 and frame[3] == 0


def crc16(data):
    """
    Checksum the firmware keeps over a record: polynomial 0x1021, seed
    0xffff, most significant bit first, no final xor.
    """
    crc = CRC_SEED
    for value in data:
        crc ^= value << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ CRC_POLYNOMIAL) & 0xffff
            else:
                crc = (crc << 1) & 0xffff
    return crc


def checksum_bytes(data):
    return struct.pack('>H', crc16(data))


def _fill(value):
    return bytes([value] * LINE_LENGTH)


BUTTONS_LINE = bytes([
    0x80, 0x01, 0x00, 0x01,
    0x80, 0x01, 0x00, 0x02,
    0x80, 0x01, 0x00, 0x04,
    0x80, 0x01, 0x00, 0x08,
])
BUTTONS_TAIL_LINE = bytes([
    0x80, 0x01, 0x00, 0x10,
    0x90, 0x05, 0xff, 0xff,
]) + b'\xff' * 8
ALT_BUTTONS_TAIL_LINE = bytes([
    0x80, 0x01, 0x00, 0x10,
    0x90, 0x05, 0xff, 0xff,
]) + b'\x00' * 8
LED_LINE = bytes([
    0x01, 0xff, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00,
    0x00, 0x00, 0x00, 0x01, 0xff, 0x00, 0x00, 0x00,
])
LED_TAIL_LINE = b'\x00' * 7 + b'\xff' * 9
# last two bytes are replaced by the checksum
TRAILER_LINE = b'\xff' * 4 + b'\x00' * 3 + b'\xff' * 7 + b'\x00' * 2

PROFILE_MARKER_LINES = {
    2: BUTTONS_LINE,
    3: BUTTONS_TAIL_LINE,
    4: _fill(0xff),
    5: _fill(0xff),
    6: BUTTONS_LINE,
    7: ALT_BUTTONS_TAIL_LINE,
    8: _fill(0x00),
    9: LED_LINE,
    12: _fill(0x00),
    13: LED_LINE,
    14: LED_TAIL_LINE,
}

NAME_LINE = 10
NAME_LENGTH = 2 * LINE_LENGTH
WRITE_ID_OFFSET = LINE_LENGTH + 2
DPI_OFFSET = 3
DIRECTORY_ENTRY_LENGTH = 4


def check_dpi(dpi):
    if not isinstance(dpi, int):
        raise TypeError(f'DPI must be an int, got {dpi!r}')
    if dpi != 0 and not (DPI_MIN <= dpi <= DPI_MAX):
        raise ValueError(f'DPI must be 0 (disabled) or {DPI_MIN}..{DPI_MAX}, got {dpi}')


def check_profile(profile):
    if not isinstance(profile, int):
        raise TypeError(f'profile must be an int, got {profile!r}')
    if not (1 <= profile <= PROFILE_COUNT):
        raise ValueError(f'profile must be 1..{PROFILE_COUNT}, got {profile}')


class Block:
    """
    A 256-byte record, sent to the device as sixteen 16-byte lines with
    the checksum in the last two bytes
    """

    def body(self):
        raise NotImplementedError

    def to_bytes(self):
        body = self.body()
        assert len(body) == BLOCK_LENGTH - 2
        return body + checksum_bytes(body)

    def __bytes__(self):
        return self.to_bytes()

    def lines(self):
        data = self.to_bytes()
        return [data[i:i + LINE_LENGTH] for i in range(0, BLOCK_LENGTH, LINE_LENGTH)]

    @property
    def checksum(self):
        return crc16(self.body())


@dataclasses.dataclass(frozen=True)
class ProfileBlock(Block):
    dpis: tuple
    polling_rate: int = 1000
    write_id: int = WRITE_ID
    profile: int = 1

    def __post_init__(self):
        dpis = tuple(self.dpis)
        if not (1 <= len(dpis) <= DPI_SLOTS):
            raise ValueError(f'between 1 and {DPI_SLOTS} DPI values are required')
        for dpi in dpis:
            check_dpi(dpi)
        if not any(dpis):
            raise ValueError('at least one DPI slot must be enabled')
        object.__setattr__(self, 'dpis', dpis + (0,) * (DPI_SLOTS - len(dpis)))
        if self.polling_rate not in PollingRateHz:
            raise ValueError(
                f'polling rate must be one of {sorted(PollingRateHz)}, got {self.polling_rate}')
        _check_byte(self.write_id)
        check_profile(self.profile)

    @property
    def name(self):
        return f'Profile {self.profile}'

    def with_write_id(self, write_id):
        return dataclasses.replace(self, write_id=write_id)

    def for_profile(self, profile):
        return dataclasses.replace(self, profile=profile)

    def settings_line(self):
        line = bytes([PollingRateHz[self.polling_rate], 0x01, 0x00])
        line += struct.pack(f'<{DPI_SLOTS}H', *self.dpis)
        return line + b'\xff' * 3

    def write_id_line(self):
        return bytes([0xff, 0x00, self.write_id, 0x00]) + b'\xff' * 12

    def name_lines(self):
        raw = self.name.encode('utf-16-le')
        if len(raw) > NAME_LENGTH:
            raise ValueError(f'profile name too long: {self.name!r}')
        return raw.ljust(NAME_LENGTH, b'\x00')

    def body(self):
        data = bytearray()
        data += self.settings_line()
        data += self.write_id_line()
        for index in range(2, NAME_LINE):
            data += PROFILE_MARKER_LINES[index]
        data += self.name_lines()
        for index in range(NAME_LINE + 2, LINE_COUNT - 1):
            data += PROFILE_MARKER_LINES[index]
        data += TRAILER_LINE[:-2]
        return bytes(data)

    @classmethod
    def from_bytes(cls, data, profile):
        data = bytes(data)
        if len(data) != BLOCK_LENGTH:
            raise ProtocolMismatch(f'profile record is {len(data)} bytes, expected {BLOCK_LENGTH}')
        expected = crc16(data[:-2])
        actual, = struct.unpack('>H', data[-2:])
        if actual != expected:
            raise ProtocolMismatch(
                f'profile {profile} checksum mismatch: '
                f'stored 0x{actual:04x}, computed 0x{expected:04x}')
        polling_rate = inverse(PollingRateHz).get(data[0])
        if polling_rate is None:
            raise ProtocolMismatch(f'unknown polling rate code 0x{data[0]:02x}')
        dpis = struct.unpack(f'<{DPI_SLOTS}H', data[DPI_OFFSET:DPI_OFFSET + 2 * DPI_SLOTS])
        try:
            return cls(
                dpis=dpis,
                polling_rate=polling_rate,
                write_id=data[WRITE_ID_OFFSET],
                profile=profile,
            )
        except (TypeError, ValueError) as e:
            raise ProtocolMismatch(f'profile {profile} holds unsupported settings: {e}') from e


@dataclasses.dataclass(frozen=True)
class DirectoryBlock(Block):
    """
    Record 0: one [0x00, slot, enabled, 0x00] entry per profile
    """
    enabled: tuple

    def __post_init__(self):
        enabled = tuple(bool(e) for e in self.enabled)
        if len(enabled) != PROFILE_COUNT:
            raise ValueError(f'expected {PROFILE_COUNT} profile slots, got {len(enabled)}')
        if not any(enabled):
            raise ValueError('at least one profile must stay enabled')
        object.__setattr__(self, 'enabled', enabled)

    @classmethod
    def from_profiles(cls, profiles):
        for profile in profiles:
            check_profile(profile)
        return cls(tuple(slot in profiles for slot in range(1, PROFILE_COUNT + 1)))

    def body(self):
        data = bytearray(b'\xff' * (BLOCK_LENGTH - 2))
        for slot, enabled in enumerate(self.enabled, 1):
            offset = (slot - 1) * DIRECTORY_ENTRY_LENGTH
            data[offset:offset + DIRECTORY_ENTRY_LENGTH] = bytes([0x00, slot, int(enabled), 0x00])
        return bytes(data)


class LED:
    MODE = None

    def color(self):
        return (0x00, 0x00, 0x00)

    def cycle(self):
        return (0x00, 0x00, 0x00)

    def payload(self):
        return bytes([
            0x00,
            self.MODE,
            *self.color(),
            0x01,
            0x00,
            *self.cycle(),
        ]).ljust(LINE_LENGTH, b'\x00')


@dataclasses.dataclass(frozen=True)
class LedOff(LED):
    MODE = LEDMode.OFF


@dataclasses.dataclass(frozen=True)
class LedStatic(LED):
    MODE = LEDMode.STATIC

    r: int
    g: int
    b: int

    def __post_init__(self):
        _check_byte(self.r, self.g, self.b)

    def color(self):
        return (self.r, self.g, self.b)


@dataclasses.dataclass(frozen=True)
class LedCycle(LED):
    """
    speed: cycle period in milliseconds
    brightness: percent
    """
    MODE = LEDMode.CYCLE

    speed: int = 11000
    brightness: int = 100

    def __post_init__(self):
        if not (0 <= self.speed <= 0xffff):
            raise ValueError(f'cycle speed must fit in 16 bits, got {self.speed}')
        if not (0 <= self.brightness <= 100):
            raise ValueError(f'brightness must be 0..100, got {self.brightness}')

    def cycle(self):
        return (*struct.pack('>H', self.speed), self.brightness)


def find_devices(vendor_id=VENDOR_ID, product_id=PRODUCT_ID):
    return list(usb.core.find(find_all=True, idVendor=vendor_id, idProduct=product_id))


TRANSFER_TYPES = {
    usb.util.ENDPOINT_TYPE_CTRL: 'control',
    usb.util.ENDPOINT_TYPE_ISO: 'isochronous',
    usb.util.ENDPOINT_TYPE_BULK: 'bulk',
    usb.util.ENDPOINT_TYPE_INTR: 'interrupt',
}


def describe(device):
    interfaces = []
    for config in device:
        for interface in config:
            endpoints = []
            for endpoint in interface:
                address = endpoint.bEndpointAddress
                direction = usb.util.endpoint_direction(address)
                endpoints.append({
                    'address': f'0x{address:02x}',
                    'direction': 'in' if direction == usb.util.ENDPOINT_IN else 'out',
                    'transfer': TRANSFER_TYPES.get(usb.util.endpoint_type(endpoint.bmAttributes)),
                    'max_packet_size': endpoint.wMaxPacketSize,
                })
            interfaces.append({
                'interface': interface.bInterfaceNumber,
                'alternate': interface.bAlternateSetting,
                'endpoints': endpoints,
            })
    return {
        'bus': device.bus,
        'address': device.address,
        'id': f'{device.idVendor:04x}:{device.idProduct:04x}',
        'interfaces': interfaces,
    }


class Session:
    """
    Owns one USB device for the span of a with-block: picks the HID++
    interface and its endpoints, claims it on enter and releases it on
    every exit path.
    """
    DEFAULT_READ_ADDRESS = 0x82
    DEFAULT_WRITE_ADDRESS = 0x00

    def __init__(self, device, timeout=DEFAULT_TIMEOUT):
        self.device = device
        self.timeout = timeout
        self.interface = None
        self.read_address = self.DEFAULT_READ_ADDRESS
        self.write_address = self.DEFAULT_WRITE_ADDRESS
        self._claimed = False
        self._detached = False

    def select_endpoints(self):
        try:
            config = self.device.get_active_configuration()
        except usb.core.USBError as e:
            raise TransportError(f'could not read the active configuration: {e}') from e
        # the vendor interface comes last
        interface = max(config, key=lambda intf: intf.bInterfaceNumber)
        read_address = write_address = None
        for endpoint in interface:
            address = endpoint.bEndpointAddress
            if usb.util.endpoint_direction(address) == usb.util.ENDPOINT_IN:
                if read_address is None:
                    read_address = address
            elif write_address is None:
                write_address = address
        self.interface = interface.bInterfaceNumber
        if read_address is not None:
            self.read_address = read_address
        if write_address is not None:
            self.write_address = write_address
        log.info('interface 0x%02x, read address 0x%02x, write address 0x%02x',
                 self.interface, self.read_address, self.write_address)

    def open(self):
        self.select_endpoints()
        try:
            if self.device.is_kernel_driver_active(self.interface):
                self.device.detach_kernel_driver(self.interface)
                self._detached = True
        except NotImplementedError:
            log.debug('kernel driver detach not supported on this platform')
        except usb.core.USBError as e:
            self.close()
            raise TransportError(f'could not detach kernel driver: {e}') from e
        try:
            usb.util.claim_interface(self.device, self.interface)
        except usb.core.USBError as e:
            self.close()
            raise TransportError(f'could not claim interface {self.interface}: {e}') from e
        self._claimed = True
        log.info('claimed interface %d', self.interface)
        return self

    def close(self):
        if self.interface is None:
            return
        try:
            if self._claimed:
                usb.util.release_interface(self.device, self.interface)
            if self._detached:
                self.device.attach_kernel_driver(self.interface)
        except usb.core.USBError as e:
            log.warning('could not release interface %d: %s', self.interface, e)
        finally:
            self._claimed = False
            self._detached = False
            usb.util.dispose_resources(self.device)

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()

    def write(self, frame):
        report = ReportID(frame[0])
        if len(frame) != report.size:
            raise ValueError(f'{report.name.lower()} frame must be {report.size} bytes, got {len(frame)}')
        try:
            written = self.device.ctrl_transfer(
                REQUEST_TYPE,
                SET_REPORT,
                report.w_value,
                self.interface,
                frame,
                self.timeout)
        except usb.core.USBError as e:
            raise TransportError(f'control write failed: {e}') from e
        if written != len(frame):
            raise TransportError(f'short control write: {written} of {len(frame)} bytes')
        return written

    def read(self, timeout=None):
        try:
            data = self.device.read(
                self.read_address,
                RESPONSE_LENGTH,
                self.timeout if timeout is None else timeout)
        except usb.core.USBTimeoutError:
            return b''
        except usb.core.USBError as e:
            raise TransportError(f'interrupt read failed: {e}') from e
        return data.tobytes()


class Connection:
    """
    Frames commands for one device and reads back the number of responses
    each command is known to produce.
    """

    def __init__(self, transport, *,
                 device_index=DEVICE_INDEX,
                 software_id=SOFTWARE_ID,
                 timeout=DEFAULT_TIMEOUT,
                 drain_timeout=DRAIN_TIMEOUT,
                 max_discards=MAX_DISCARDS,
                 max_polls=MAX_POLLS,
                 poll_interval=POLL_INTERVAL):
        op_byte(0x0, software_id)
        self.transport = transport
        self.device_index = device_index
        self.software_id = software_id
        self.timeout = timeout
        self.drain_timeout = drain_timeout
        self.max_discards = max_discards
        self.max_polls = max_polls
        self.poll_interval = poll_interval

    def short(self, feature, function, a=0x00, b=0x00, c=0x00):
        return encode_short(self.device_index, feature, function, self.software_id, a, b, c)

    def long(self, feature, function, payload=b''):
        return encode_long(self.device_index, feature, function, self.software_id, payload)

    def send(self, frame):
        log.debug('write 0x%04x: %s', ReportID(frame[0]).w_value, format_frame(frame))
        self.transport.write(frame)

    def read_response(self, required=True):
        discarded = 0
        while True:
            data = self.transport.read(self.timeout)
            if not data:
                if required:
                    raise TransportError('device did not answer before the timeout')
                return None
            log.debug('read %02d bytes: %s', len(data), format_frame(data))
            if not is_discardable(data):
                return data
            discarded += 1
            if discarded > self.max_discards:
                raise ProtocolMismatch(
                    f'no answer after discarding {self.max_discards} placeholder frames')

    def command(self, frame, responses=1):
        self.send(frame)
        first = self.read_response()
        for _ in range(responses - 1):
            if self.read_response(required=False) is None:
                log.debug('fewer than %d responses queued', responses)
                break
        return first

    def query_status(self):
        response = self.command(self.short(Feature.ONBOARD_PROFILES, Function.STATUS))
        status = decode_status(response)
        if status is None:
            raise ProtocolMismatch(f'status response too short ({len(response)} bytes)')
        log.debug('status: error 0x%02x, profile %d', status.error_code, status.profile)
        return status

    def wait_for_profile(self):
        for attempt in range(1, self.max_polls + 1):
            status = self.query_status()
            if status.profile:
                if not (1 <= status.profile <= PROFILE_COUNT):
                    raise ProtocolMismatch(f'device reported unknown profile {status.profile}')
                return status.profile
            log.debug('no active profile reported yet (%d/%d)', attempt, self.max_polls)
            if attempt < self.max_polls:
                time.sleep(self.poll_interval)
        raise ProtocolMismatch(f'device reported no active profile after {self.max_polls} polls')

    def clear_queue(self):
        drained = 0
        while drained < DRAIN_LIMIT:
            data = self.transport.read(self.drain_timeout)
            if not data:
                break
            log.debug('drained: %s', format_frame(data))
            drained += 1
        else:
            log.warning('queue still not empty after %d frames', drained)
        return drained


class RecordWriter:
    """
    Moves 256-byte records to and from the onboard-profile feature.

    A write is Begin (record, offset 0, length 256), sixteen 16-byte
    lines, then End. The device refuses a record whose write id matches
    the previous write but still advances its state, so every profile
    write runs the whole sequence twice: once with the base id, which is
    expected to be rejected, then with id + 1, which commits.
    """

    def __init__(self, conn):
        self.conn = conn

    def begin(self, record):
        payload = struct.pack('>HHH', record, 0, BLOCK_LENGTH)
        self.conn.command(self.conn.long(Feature.ONBOARD_PROFILES, Function.START_RECORD, payload))

    def write_line(self, line):
        if len(line) != LINE_LENGTH:
            raise ValueError(f'record lines are {LINE_LENGTH} bytes, got {len(line)}')
        self.conn.command(self.conn.long(Feature.ONBOARD_PROFILES, Function.WRITE_RECORD, line))

    def end(self):
        response = self.conn.command(
            self.conn.short(Feature.ONBOARD_PROFILES, Function.END_RECORD),
            responses=3)
        status = decode_status(response)
        if status is None:
            raise ProtocolMismatch(f'end of record response too short ({len(response)} bytes)')
        return status

    def write_pass(self, record, lines):
        lines = list(lines)
        if len(lines) != LINE_COUNT:
            raise ValueError(f'a record is {LINE_COUNT} lines, got {len(lines)}')
        self.begin(record)
        for line in lines:
            self.write_line(line)
        return self.end()

    def write_profile(self, block, profile=0):
        if profile == 0:
            profile = self.conn.wait_for_profile()
            log.info('writing to active profile %d', profile)
        block = block.for_profile(profile)

        status = self.write_pass(profile, block.lines())
        if status.ok:
            log.info('first pass accepted (write id 0x%02x)', block.write_id)
        else:
            log.info('first pass rejected with error 0x%02x (write id 0x%02x)',
                     status.error_code, block.write_id)

        block = block.with_write_id((block.write_id + 1) & 0xff)
        status = self.write_pass(profile, block.lines())
        if status.ok:
            log.info('profile %d committed (write id 0x%02x)', profile, block.write_id)
        else:
            log.warning('profile %d write rejected with error 0x%02x',
                        profile, status.error_code)
        return status

    def read_record(self, record):
        data = bytearray()
        for offset in range(0, BLOCK_LENGTH, LINE_LENGTH):
            payload = struct.pack('>HH', record, offset)
            response = self.conn.command(
                self.conn.long(Feature.ONBOARD_PROFILES, Function.READ_RECORD, payload))
            if len(response) < RESPONSE_LENGTH:
                raise ProtocolMismatch(
                    f'record {record} offset {offset}: short response ({len(response)} bytes)')
            data += response[4:RESPONSE_LENGTH]
        return bytes(data)


class GMouse:
    def __init__(self, conn):
        self.conn = conn
        self.records = RecordWriter(conn)

    def query_status(self):
        return self.conn.query_status()

    def clear_queue(self):
        return self.conn.clear_queue()

    def wait_for_profile(self):
        return self.conn.wait_for_profile()

    def lookup_feature(self, feature_id):
        response = self.conn.command(
            self.conn.short(Feature.ROOT, Function.ROOT, feature_id >> 8, feature_id & 0xff))
        if len(response) < 5:
            raise ProtocolMismatch(f'feature lookup response too short ({len(response)} bytes)')
        return response[4]

    def initialize(self):
        self.conn.command(self.conn.short(Feature.ROOT, Function.GET_FEATURE, 0x00, 0x00, PING_DATA))
        for feature, feature_id in FEATURE_IDS.items():
            index = self.lookup_feature(feature_id)
            if index != feature:
                log.warning('feature 0x%04x is at index 0x%02x, expected 0x%02x',
                            feature_id, index, feature)
        self.conn.command(self.conn.short(Feature.ONBOARD_PROFILES, Function.CHECK_CONNECTED))
        self.conn.command(self.conn.short(Feature.LED, Function.ROOT))
        # clears error 1 left behind by a host-mode session
        self.conn.command(
            self.conn.short(Feature.ONBOARD_PROFILES, Function.SET, 0x00, 0x01),
            responses=3)
        status = self.conn.query_status()
        log.info('initialized: error 0x%02x, profile %d', status.error_code, status.profile)
        self.conn.command(self.conn.short(Feature.ONBOARD_PROFILES, Function.ERROR_HANDLING_B))
        self.conn.command(self.conn.short(Feature.ONBOARD_PROFILES, Function.ERROR_HANDLING_C, 0x03))

    def finish(self):
        self.conn.command(self.conn.short(Feature.ONBOARD_PROFILES, Function.ERROR_HANDLING_C, 0x03))
        self.conn.command(self.conn.short(Feature.ONBOARD_PROFILES, Function.ERROR_HANDLING_B))

    def switch_profile(self, profile):
        check_profile(profile)
        before = self.conn.query_status()
        log.debug('switching from profile %d to %d', before.profile, profile)
        self.conn.command(
            self.conn.short(Feature.ONBOARD_PROFILES, Function.SET, 0x00, profile),
            responses=3)
        status = self.conn.query_status()
        if status.profile != profile:
            log.warning('asked for profile %d, device reports %d', profile, status.profile)
        else:
            log.info('switched to profile %d', profile)
        return status

    def enable_profile(self, enabled):
        block = DirectoryBlock(tuple(enabled))
        status = self.records.write_pass(0, block.lines())
        if not status.ok:
            log.warning('profile directory write rejected with error 0x%02x', status.error_code)
        return status

    def set_led(self, led):
        if not isinstance(led, LED):
            raise TypeError(f'expected an LED mode, got {led!r}')
        self.conn.command(self.conn.long(Feature.LED, Function.SET, led.payload()))

    def write_settings(self, dpis, polling_rate=1000, profile=0, write_id=WRITE_ID):
        if profile:
            check_profile(profile)
        block = ProfileBlock(
            dpis=tuple(dpis),
            polling_rate=polling_rate,
            write_id=write_id,
            profile=profile or 1,
        )
        return self.records.write_profile(block, profile)

    def read_profile(self, profile):
        check_profile(profile)
        return ProfileBlock.from_bytes(self.records.read_record(profile), profile)


def pretty_json(data):
    return json.dumps(data, indent=2, sort_keys=True)


def _status_info(status):
    return {
        'error_code': status.error_code,
        'profile': status.profile,
        'ok': status.ok,
    }


def _profile_info(block):
    return {
        'profile': block.profile,
        'name': block.name,
        'polling_rate_hz': block.polling_rate,
        'dpi': list(block.dpis),
        'write_id': block.write_id,
    }


def _parser_ints(value, count=None):
    try:
        values = [int(v, 0) for v in value.split(',')]
    except ValueError:
        raise argparse.ArgumentTypeError(f'expected comma separated integers: {value!r}')
    if count is not None and len(values) != count:
        raise argparse.ArgumentTypeError(f'expected {count} values: {value!r}')
    return values


def _parser_color(value):
    r, g, b = _parser_ints(value, count=3)
    try:
        LedStatic(r, g, b)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return (r, g, b)


def _parser_dpis(value):
    dpis = _parser_ints(value)
    try:
        ProfileBlock(dpis=tuple(dpis))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return dpis


def _parser_profile(value):
    profile = int(value)
    if not (1 <= profile <= PROFILE_COUNT):
        raise argparse.ArgumentTypeError(f'profile must be 1..{PROFILE_COUNT}')
    return profile


def _parser_cycle_speed(value):
    speed = int(value)
    try:
        LedCycle(speed=speed)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return speed


def _parser_brightness(value):
    brightness = int(value)
    try:
        LedCycle(brightness=brightness)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return brightness


def _parser_profiles(value):
    profiles = _parser_ints(value)
    for profile in profiles:
        if not (1 <= profile <= PROFILE_COUNT):
            raise argparse.ArgumentTypeError(f'profile must be 1..{PROFILE_COUNT}')
    return profiles


def _parser_hex(value):
    return int(value, 16)


def _led_from_args(args):
    if args.color is not None and args.led in (None, 'static'):
        return LedStatic(*args.color)
    match args.led:
        case 'off':
            return LedOff()
        case 'static':
            return LedStatic(0xff, 0xff, 0xff)
        case 'cycle':
            return LedCycle(speed=args.cycle_speed, brightness=args.brightness)
    return None


def _run_device(device, args):
    info = {}
    if args.info:
        info['device'] = describe(device)

    with Session(device, timeout=args.timeout) as session:
        conn = Connection(
            session,
            timeout=args.timeout,
            drain_timeout=args.drain_timeout,
            max_discards=args.max_discards,
            max_polls=args.max_polls,
            poll_interval=args.poll_interval,
        )
        mouse = GMouse(conn)
        mouse.clear_queue()

        if args.init:
            mouse.initialize()

        if args.dpi is not None:
            status = mouse.write_settings(
                args.dpi,
                polling_rate=args.polling_rate,
                profile=args.profile or 0)
            info['write'] = _status_info(status)

        if args.enable_profiles is not None:
            status = mouse.enable_profile(
                DirectoryBlock.from_profiles(args.enable_profiles).enabled)
            info['enable_profiles'] = _status_info(status)

        led = _led_from_args(args)
        if led is not None:
            mouse.set_led(led)

        if args.switch_profile is not None:
            info['switch_profile'] = _status_info(mouse.switch_profile(args.switch_profile))

        if args.read_profile is not None:
            info['read_profile'] = _profile_info(mouse.read_profile(args.read_profile))

        if args.status:
            info['status'] = _status_info(mouse.query_status())

        if args.init:
            mouse.finish()

    if info:
        print(pretty_json(info))


def _configure_logging(verbose):
    if verbose >= 2:
        logging.basicConfig(level=logging.DEBUG, format='[%(levelname)s] %(name)s: %(message)s')
    elif verbose == 1:
        logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    else:
        logging.basicConfig(level=logging.WARNING, format='[%(levelname)s] %(message)s')


def build_parser():
    parser = argparse.ArgumentParser(
        description='Configure DPI, polling rate, LED and profiles of a Logitech mouse')
    parser.add_argument('--status', action='store_true',
                        help='print the current error code and active profile')
    parser.add_argument('--switch-profile', type=_parser_profile, metavar='N')
    parser.add_argument('--color', type=_parser_color, metavar='R,G,B',
                        help='set the LED to a static color')
    parser.add_argument('--led', choices=['off', 'static', 'cycle'])
    parser.add_argument('--cycle-speed', type=_parser_cycle_speed, default=11000,
                        help='cycle period in milliseconds')
    parser.add_argument('--brightness', type=_parser_brightness, default=100,
                        help='cycle brightness in percent')
    parser.add_argument('--dpi', type=_parser_dpis, metavar='DPI[,DPI...]',
                        help='up to five DPI steps, 0 disables a step')
    parser.add_argument('--polling-rate', type=int, choices=PollingRateHz, default=1000)
    parser.add_argument('--profile', type=_parser_profile, metavar='N',
                        help='profile written by --dpi (default: the active one)')
    parser.add_argument('--enable-profiles', type=_parser_profiles, metavar='N[,N...]',
                        help='enable exactly these profiles')
    parser.add_argument('--read-profile', type=_parser_profile, metavar='N')
    parser.add_argument('--info', action='store_true',
                        help='print the USB descriptors of each device')
    parser.add_argument('--init', action='store_true',
                        help='run the feature handshake before and after the commands')
    parser.add_argument('--vendor-id', type=_parser_hex, default=VENDOR_ID)
    parser.add_argument('--product-id', type=_parser_hex, default=PRODUCT_ID)
    parser.add_argument('--timeout', type=int, default=DEFAULT_TIMEOUT, help='milliseconds')
    parser.add_argument('--drain-timeout', type=int, default=DRAIN_TIMEOUT, help='milliseconds')
    parser.add_argument('--max-discards', type=int, default=MAX_DISCARDS)
    parser.add_argument('--max-polls', type=int, default=MAX_POLLS)
    parser.add_argument('--poll-interval', type=float, default=POLL_INTERVAL, help='seconds')
    parser.add_argument('-v', '--verbose', action='count', default=0)
    return parser


def main(argv=None):
    args, unknown = build_parser().parse_known_args(argv)
    _configure_logging(args.verbose)
    if unknown:
        log.debug('ignoring arguments: %s', ' '.join(unknown))

    try:
        devices = find_devices(args.vendor_id, args.product_id)
        if not devices:
            raise DeviceNotFound(
                f'no device {args.vendor_id:04x}:{args.product_id:04x} found')
    except (DeviceNotFound, usb.core.NoBackendError) as e:
        log.error('%s', e)
        return 1

    failed = 0
    for device in devices:
        try:
            _run_device(device, args)
        except (GMouseError, usb.core.USBError) as e:
            log.error('device on bus %s address %s failed: %s',
                      getattr(device, 'bus', '?'), getattr(device, 'address', '?'), e)
            failed += 1
    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
