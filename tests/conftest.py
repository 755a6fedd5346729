"""Shared fixtures: a scripted transport standing in for the USB session."""

import collections

import pytest

import gmouse


def reply(frame, error_code=0x00, profile=0x01):
    """Echo the request header and put a status in bytes 4 and 5."""
    return bytes([0x11, frame[1], frame[2], frame[3], error_code, profile]).ljust(
        gmouse.RESPONSE_LENGTH, b'\x00')


class FakeTransport:
    """
    Records every write and answers each one through ``responder``.

    ``responder(frame, count)`` returns the list of frames queued after
    the ``count``-th write. Reads pop from the queue and return ``b''``
    once it is empty, the same as a timed out interrupt read.
    """

    def __init__(self, responder=None):
        self.writes = []
        self.reads = 0
        self.events = []
        self.queue = collections.deque()
        self.responder = responder or self.default_responder
        self.timeouts = []

    @staticmethod
    def default_responder(frame, count):
        answers = [reply(frame)]
        if frame[2] == gmouse.Feature.ONBOARD_PROFILES and frame[3] >> 4 in (
                gmouse.Function.END_RECORD, gmouse.Function.SET):
            answers += [reply(frame), reply(frame)]
        return answers

    def write(self, frame):
        self.writes.append(bytes(frame))
        self.events.append('w')
        self.queue.extend(self.responder(bytes(frame), len(self.writes)))
        return len(frame)

    def read(self, timeout=None):
        self.reads += 1
        self.events.append('r')
        self.timeouts.append(timeout)
        if self.queue:
            return self.queue.popleft()
        return b''


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def conn(transport):
    return gmouse.Connection(transport, poll_interval=0)


@pytest.fixture
def mouse(conn):
    return gmouse.GMouse(conn)
