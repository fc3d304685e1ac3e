import pytest
from dbus_fast import Message, MessageType, Variant

import adapter_session


def method_return(signature="", body=None):
    return Message(message_type=MessageType.METHOD_RETURN, reply_serial=1, signature=signature, body=body or [])


def error_reply(error_name, text):
    return Message(message_type=MessageType.ERROR, error_name=error_name, reply_serial=1, signature="s", body=[text])


class FakeBus:
    """
    In-memory stand-in for dbus_fast.aio.MessageBus serving a tiny BlueZ.

    `properties` maps device path -> {property name: Variant}; a property
    missing from the map answers with an InvalidArgs error. Members listed in
    `errors` answer with org.bluez.Error.Failed and the given text; members
    listed in `raises` raise the given exception from call() instead.
    """

    def __init__(self):
        self.managed_objects = {}
        self.properties = {}
        self.errors = {}
        self.raises = {}
        self.connect_error = None
        self.disconnect_error = None
        self.managed_objects_signature = "a{oa{sa{sv}}}"
        self.broken_paths = set()
        self.calls = []
        self.connected = False
        self.disconnected = False
        self.init_kwargs = None

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        return self

    def disconnect(self):
        self.disconnected = True

    async def wait_for_disconnect(self):
        if self.disconnect_error is not None:
            raise self.disconnect_error

    async def call(self, message):
        self.calls.append((message.path, message.interface, message.member, list(message.body)))

        if message.member in self.raises:
            raise self.raises[message.member]

        if message.member in self.errors:
            return error_reply("org.bluez.Error.Failed", self.errors[message.member])

        if message.member in ("StartDiscovery", "StopDiscovery"):
            return method_return()

        if message.member == "GetManagedObjects":
            return method_return(self.managed_objects_signature, [self.managed_objects])

        if message.member == "Get":
            if message.path in self.broken_paths:
                return error_reply("org.freedesktop.DBus.Error.UnknownObject", "Unknown object path")
            _, prop = message.body
            value = self.properties.get(message.path, {}).get(prop)
            if value is None:
                return error_reply("org.freedesktop.DBus.Error.InvalidArgs", f"No such property '{prop}'")
            return method_return("v", [value])

        return error_reply("org.freedesktop.DBus.Error.UnknownMethod", f"Unknown method {message.member}")

    def add_device(self, path, name=None, address=None):
        props = {}
        if name is not None:
            props["Name"] = Variant("s", name)
        if address is not None:
            props["Address"] = Variant("s", address)
        self.managed_objects[path] = {"org.bluez.Device1": props}
        self.properties[path] = props

    def members(self):
        return [member for _, _, member, _ in self.calls]


@pytest.fixture
def fake_bus(monkeypatch):
    bus = FakeBus()

    def factory(**kwargs):
        bus.init_kwargs = kwargs
        return bus

    monkeypatch.setattr(adapter_session, "MessageBus", factory)
    return bus


@pytest.fixture
def sleeps(monkeypatch):
    """Records requested scan durations instead of waiting."""
    durations = []

    async def fake_sleep(duration):
        durations.append(duration)

    monkeypatch.setattr(adapter_session.asyncio, "sleep", fake_sleep)
    return durations
