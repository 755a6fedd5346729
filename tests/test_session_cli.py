"""Tests for the pyusb session and the command line."""

import array
import json
from unittest.mock import MagicMock, patch

import pytest
import usb.core

import gmouse
from gmouse import Session

from conftest import FakeTransport


class FakeEndpoint:
    def __init__(self, address, attributes=0x03, size=64):
        self.bEndpointAddress = address
        self.bmAttributes = attributes
        self.wMaxPacketSize = size


class FakeInterface(list):
    def __init__(self, number, endpoints):
        super().__init__(endpoints)
        self.bInterfaceNumber = number
        self.bAlternateSetting = 0


def make_device(interfaces=None):
    if interfaces is None:
        interfaces = [
            FakeInterface(0, [FakeEndpoint(0x81)]),
            FakeInterface(1, [FakeEndpoint(0x82)]),
        ]
    device = MagicMock()
    device.get_active_configuration.return_value = interfaces
    device.__iter__.return_value = iter([interfaces])
    device.is_kernel_driver_active.return_value = False
    device.ctrl_transfer.side_effect = lambda rt, req, value, index, data, timeout: len(data)
    device.idVendor = gmouse.VENDOR_ID
    device.idProduct = gmouse.PRODUCT_ID
    device.bus = 1
    device.address = 7
    return device


@pytest.fixture
def usb_util():
    with patch('usb.util.claim_interface') as claim, \
            patch('usb.util.release_interface') as release, \
            patch('usb.util.dispose_resources') as dispose:
        yield MagicMock(claim=claim, release=release, dispose=dispose)


# =========================================================================
# Session
# =========================================================================

class TestSelectEndpoints:

    def test_highest_interface(self):
        session = Session(make_device())
        session.select_endpoints()
        assert session.interface == 1
        assert session.read_address == 0x82
        assert session.write_address == 0x00

    def test_in_and_out(self):
        device = make_device([
            FakeInterface(2, [FakeEndpoint(0x03), FakeEndpoint(0x83), FakeEndpoint(0x84)]),
        ])
        session = Session(device)
        session.select_endpoints()
        assert session.interface == 2
        assert session.read_address == 0x83
        assert session.write_address == 0x03

    def test_no_endpoints_keeps_defaults(self):
        session = Session(make_device([FakeInterface(0, [])]))
        session.select_endpoints()
        assert session.read_address == Session.DEFAULT_READ_ADDRESS
        assert session.write_address == Session.DEFAULT_WRITE_ADDRESS

    def test_configuration_error(self):
        device = make_device()
        device.get_active_configuration.side_effect = usb.core.USBError('gone')
        with pytest.raises(gmouse.TransportError):
            Session(device).select_endpoints()


class TestSessionLifecycle:

    def test_claims_and_releases(self, usb_util):
        device = make_device()
        with Session(device) as session:
            usb_util.claim.assert_called_once_with(device, 1)
            assert session.interface == 1
        usb_util.release.assert_called_once_with(device, 1)
        usb_util.dispose.assert_called_once_with(device)
        device.detach_kernel_driver.assert_not_called()

    def test_released_on_error(self, usb_util):
        device = make_device()
        with pytest.raises(gmouse.ProtocolMismatch):
            with Session(device):
                raise gmouse.ProtocolMismatch('boom')
        usb_util.release.assert_called_once_with(device, 1)

    def test_kernel_driver_detached_and_restored(self, usb_util):
        device = make_device()
        device.is_kernel_driver_active.return_value = True
        with Session(device):
            device.detach_kernel_driver.assert_called_once_with(1)
        device.attach_kernel_driver.assert_called_once_with(1)

    def test_detach_failure(self, usb_util):
        device = make_device()
        device.is_kernel_driver_active.return_value = True
        device.detach_kernel_driver.side_effect = usb.core.USBError('access denied')
        with pytest.raises(gmouse.TransportError):
            Session(device).open()
        usb_util.claim.assert_not_called()
        device.attach_kernel_driver.assert_not_called()
        usb_util.dispose.assert_called_once_with(device)

    def test_claim_failure(self, usb_util):
        device = make_device()
        usb_util.claim.side_effect = usb.core.USBError('busy')
        with pytest.raises(gmouse.TransportError):
            Session(device).open()
        usb_util.release.assert_not_called()
        usb_util.dispose.assert_called_once_with(device)


class TestSessionTransfers:

    def test_write_short(self):
        device = make_device()
        session = Session(device, timeout=500)
        session.select_endpoints()
        frame = bytes([0x10, 0xff, 0x0f, 0x4c, 0x00, 0x00, 0x00])
        assert session.write(frame) == 7
        device.ctrl_transfer.assert_called_once_with(0x21, 0x09, 0x0210, 1, frame, 500)

    def test_write_long(self):
        device = make_device()
        session = Session(device)
        session.select_endpoints()
        session.write(bytes([0x11]) + bytes(19))
        assert device.ctrl_transfer.call_args[0][2] == 0x0211

    def test_write_wrong_size(self):
        with pytest.raises(ValueError):
            Session(make_device()).write(bytes([0x10]) + bytes(10))

    def test_short_write(self):
        device = make_device()
        device.ctrl_transfer.side_effect = None
        device.ctrl_transfer.return_value = 3
        with pytest.raises(gmouse.TransportError):
            Session(device).write(bytes([0x10]) + bytes(6))

    def test_write_failure(self):
        device = make_device()
        device.ctrl_transfer.side_effect = usb.core.USBError('pipe')
        with pytest.raises(gmouse.TransportError):
            Session(device).write(bytes([0x10]) + bytes(6))

    def test_read(self):
        device = make_device()
        device.read.return_value = array.array('B', range(20))
        session = Session(device, timeout=800)
        assert session.read() == bytes(range(20))
        device.read.assert_called_once_with(0x82, 20, 800)

    def test_read_timeout_is_empty(self):
        device = make_device()
        device.read.side_effect = usb.core.USBTimeoutError('timeout')
        assert Session(device).read(timeout=100) == b''

    def test_read_failure(self):
        device = make_device()
        device.read.side_effect = usb.core.USBError('no device')
        with pytest.raises(gmouse.TransportError):
            Session(device).read()


class TestDescribe:

    def test_describe(self):
        info = gmouse.describe(make_device())
        assert info['id'] == '046d:c08c'
        assert [i['interface'] for i in info['interfaces']] == [0, 1]
        endpoint = info['interfaces'][1]['endpoints'][0]
        assert endpoint == {
            'address': '0x82',
            'direction': 'in',
            'transfer': 'interrupt',
            'max_packet_size': 64,
        }


# =========================================================================
# Command line
# =========================================================================

class TestParsers:

    def test_dpi(self):
        args = gmouse.build_parser().parse_args(['--dpi', '400,800,1600'])
        assert args.dpi == [400, 800, 1600]

    @pytest.mark.parametrize('value', ['800,abc', '50', '0,0', '1,2,3,4,5,6'])
    def test_dpi_invalid(self, value):
        with pytest.raises(SystemExit):
            gmouse.build_parser().parse_args(['--dpi', value])

    def test_color(self):
        args = gmouse.build_parser().parse_args(['--color', '255,0,0x80'])
        assert args.color == (255, 0, 0x80)

    def test_color_invalid(self):
        with pytest.raises(SystemExit):
            gmouse.build_parser().parse_args(['--color', '300,0,0'])

    @pytest.mark.parametrize('argv', [
        ['--brightness', '150'],
        ['--brightness', '-1'],
        ['--cycle-speed', '70000'],
        ['--cycle-speed', 'fast'],
    ])
    def test_cycle_invalid(self, argv):
        with pytest.raises(SystemExit):
            gmouse.build_parser().parse_args(['--led', 'cycle'] + argv)

    def test_cycle(self):
        args = gmouse.build_parser().parse_args(['--cycle-speed', '5000', '--brightness', '40'])
        assert (args.cycle_speed, args.brightness) == (5000, 40)

    def test_profile_range(self):
        with pytest.raises(SystemExit):
            gmouse.build_parser().parse_args(['--switch-profile', '6'])

    def test_ids(self):
        args = gmouse.build_parser().parse_args(['--vendor-id', '046d', '--product-id', 'c08c'])
        assert (args.vendor_id, args.product_id) == (0x046d, 0xc08c)


def run_device(transport, argv):
    session = MagicMock()
    session.return_value.__enter__.return_value = transport
    args = gmouse.build_parser().parse_args(argv)
    with patch('gmouse.Session', session):
        gmouse._run_device(make_device(), args)
    return session


class TestRunDevice:

    def test_status(self, capsys):
        transport = FakeTransport()
        run_device(transport, ['--status'])
        assert json.loads(capsys.readouterr().out) == {
            'status': {'error_code': 0, 'ok': True, 'profile': 1},
        }
        assert transport.writes == [bytes([0x10, 0xff, 0x0f, 0x4c, 0x00, 0x00, 0x00])]

    def test_drains_first(self):
        transport = FakeTransport()
        transport.queue.extend([bytes(20)] * 2)
        run_device(transport, ['--status'])
        assert transport.events[:3] == ['r', 'r', 'r']

    def test_color(self, capsys):
        transport = FakeTransport()
        run_device(transport, ['--color', '1,2,3'])
        assert transport.writes[0][4:9] == bytes([0x00, 0x01, 0x01, 0x02, 0x03])
        assert capsys.readouterr().out == ''

    def test_led_cycle(self):
        transport = FakeTransport()
        run_device(transport, ['--led', 'cycle', '--cycle-speed', '5000'])
        assert transport.writes[0][5] == gmouse.LEDMode.CYCLE

    def test_dpi_with_profile(self, capsys):
        transport = FakeTransport()
        run_device(transport, ['--dpi', '800,1600', '--profile', '2'])
        assert len(transport.writes) == 36
        assert json.loads(capsys.readouterr().out)['write']['ok'] is True

    def test_enable_profiles(self):
        transport = FakeTransport()
        run_device(transport, ['--enable-profiles', '1,3'])
        data = b''.join(f[4:] for f in transport.writes[1:17])
        assert data == bytes(gmouse.DirectoryBlock((True, False, True, False, False)))

    def test_session_timeout(self):
        session = run_device(FakeTransport(), ['--timeout', '250'])
        assert session.call_args[1]['timeout'] == 250


class TestMain:

    def test_no_devices(self):
        with patch('gmouse.find_devices', return_value=[]):
            assert gmouse.main([]) == 1

    def test_device_isolation(self):
        devices = [make_device(), make_device()]
        with patch('gmouse.find_devices', return_value=devices), \
                patch('gmouse._run_device', side_effect=[gmouse.TransportError('x'), None]) as run:
            assert gmouse.main(['--status']) == 1
        assert run.call_count == 2

    def test_success(self):
        with patch('gmouse.find_devices', return_value=[make_device()]), \
                patch('gmouse._run_device') as run:
            assert gmouse.main(['--status']) == 0
        run.assert_called_once()

    def test_ignores_unknown_arguments(self):
        with patch('gmouse.find_devices', return_value=[make_device()]), \
                patch('gmouse._run_device') as run:
            assert gmouse.main(['--bogus', '--status']) == 0
        assert run.call_args[0][1].status is True

    def test_passes_ids(self):
        with patch('gmouse.find_devices', return_value=[]) as find:
            gmouse.main(['--vendor-id', '1234', '--product-id', 'abcd'])
        find.assert_called_once_with(0x1234, 0xabcd)
