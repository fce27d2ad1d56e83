import pytest

from caterina_tool.boot_transport.avr109 import SessionTiming
from support import ScriptedTransport


@pytest.fixture
def fast_timing():
    return SessionTiming(probe_delay=0, identity_settle=0, command_settle=0,
                         read_timeout=0.2, poll_interval=0.01)


@pytest.fixture
def scripted():
    return ScriptedTransport
