import asyncio
import sys
import time
from dataclasses import asdict, dataclass

from bleak.backends.bluezdbus.defs import (
    ADAPTER_INTERFACE,
    DEVICE_INTERFACE,
    OBJECT_MANAGER_INTERFACE,
    PROPERTIES_INTERFACE,
)
from bleak.exc import BleakDBusError
from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.errors import AuthError, DBusError, InvalidAddressError, InvalidObjectPathError
from dbus_fast.validators import is_object_path_valid

# --- BlueZ endpoints ---
BLUEZ_SERVICE = "org.bluez"
ADAPTER_PATH = "/org/bluez/hci0"  # first/default adapter
ROOT_PATH = "/"
MANAGED_OBJECTS_SIGNATURE = "a{oa{sa{sv}}}"

SCAN_DURATION = 30  # seconds
UNKNOWN_NAME = "Unknown Device"
UNKNOWN_ADDRESS = "Unknown Address"


class BusConnectionError(ConnectionError):
    """The system message bus could not be reached."""


class DiscoveryStartError(BleakDBusError):
    pass


class DiscoveryStopError(BleakDBusError):
    pass


class EnumerationError(BleakDBusError):
    pass


class PropertyReadError(BleakDBusError):
    pass


@dataclass(frozen=True)
class DeviceRecord:
    """One discovered device, as shown in the report."""

    reference: str
    display_name: str = UNKNOWN_NAME
    hardware_address: str = UNKNOWN_ADDRESS

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


def _error_text(error: BleakDBusError) -> str:
    return error.dbus_error_details or error.dbus_error


def decode_managed_objects(body) -> dict[str, frozenset[str]]:
    """Reduce a GetManagedObjects reply body to path -> interface names.

    Entries that are not an object path mapped to an interface dictionary
    are skipped so one bad entry does not hide the rest.
    """
    objects: dict[str, frozenset[str]] = {}
    if not body or not isinstance(body[0], dict):
        return objects

    for path, interfaces in body[0].items():
        if not isinstance(path, str) or not is_object_path_valid(path):
            continue
        if not isinstance(interfaces, dict):
            continue
        objects[path] = frozenset(name for name in interfaces if isinstance(name, str))
    return objects


class AdapterSession:
    """
    Owns the system bus connection and drives one BlueZ adapter through
    discovery, enumeration and per-device property reads.

    Use as an async context manager so the bus is released on every exit path.
    """

    def __init__(self, adapter_path: str = ADAPTER_PATH, bus_address: str | None = None):
        self.adapter_path = adapter_path
        self.bus_address = bus_address
        self.bus: MessageBus | None = None
        self.log_messages: list[str] = []

    async def __aenter__(self) -> "AdapterSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _record(self, message: str) -> None:
        timestamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        self.log_messages.append(f"[{timestamp}] {message}")

    def _log(self, message: str) -> None:
        """Records a progress message and prints it to stdout."""
        self._record(message)
        print(message)

    def _error(self, message: str) -> None:
        """Records a failure and prints it to stderr."""
        self._record(message)
        print(message, file=sys.stderr)

    # --- Bus lifecycle ---

    async def open(self) -> None:
        """Connects to the system bus. Raises BusConnectionError on failure."""
        if self.bus is not None:
            return

        # The socket is opened by the constructor, so it belongs inside the try.
        try:
            bus = MessageBus(bus_address=self.bus_address, bus_type=BusType.SYSTEM)
            self.bus = await bus.connect()
        except (OSError, AuthError, InvalidAddressError) as e:
            raise BusConnectionError(f"Failed to connect to system bus: {e}") from e

    async def close(self) -> None:
        if self.bus is None:
            return
        bus, self.bus = self.bus, None
        if not bus.connected:
            return
        bus.disconnect()
        try:
            await bus.wait_for_disconnect()
        except Exception as e:
            # Must not replace an exception already leaving the scan body.
            self._error(f"Error while disconnecting: {e}")

    async def _call(self, error_cls, path, interface, member, signature="", body=None) -> Message:
        if self.bus is None:
            raise error_cls("org.freedesktop.DBus.Error.Disconnected", ["Not connected to the system bus"])

        try:
            reply = await self.bus.call(
                Message(
                    destination=BLUEZ_SERVICE,
                    path=path,
                    interface=interface,
                    member=member,
                    signature=signature,
                    body=body or [],
                )
            )
        except InvalidObjectPathError as e:
            raise error_cls("org.freedesktop.DBus.Error.InvalidArgs", [str(e)]) from e
        except (OSError, EOFError, DBusError) as e:
            raise error_cls("org.freedesktop.DBus.Error.Disconnected", [str(e) or type(e).__name__]) from e
        if reply is None:
            raise error_cls("org.freedesktop.DBus.Error.NoReply", ["No reply received"])
        if reply.message_type == MessageType.ERROR:
            raise error_cls(reply.error_name, reply.body)
        return reply

    # --- Adapter methods ---

    async def start_discovery(self) -> bool:
        try:
            await self._call(DiscoveryStartError, self.adapter_path, ADAPTER_INTERFACE, "StartDiscovery")
        except DiscoveryStartError as e:
            self._error(f"Failed to start discovery: {_error_text(e)}")
            return False
        self._log("Discovery started...")
        return True

    async def stop_discovery(self) -> bool:
        try:
            await self._call(DiscoveryStopError, self.adapter_path, ADAPTER_INTERFACE, "StopDiscovery")
        except DiscoveryStopError as e:
            self._error(f"Failed to stop discovery: {_error_text(e)}")
            return False
        self._log("Discovery stopped.")
        return True

    async def enumerate_devices(self) -> list[str]:
        """Returns the device object paths under the adapter, in reply order."""
        try:
            reply = await self._call(EnumerationError, ROOT_PATH, OBJECT_MANAGER_INTERFACE, "GetManagedObjects")
            if reply.signature != MANAGED_OBJECTS_SIGNATURE:
                raise EnumerationError(
                    "org.freedesktop.DBus.Error.InvalidSignature",
                    [f"Unexpected reply signature '{reply.signature}'"],
                )
        except EnumerationError as e:
            self._error(f"Failed to get managed objects: {_error_text(e)}")
            return []

        # The path convention alone marks a device; interfaces are not checked.
        prefix = f"{self.adapter_path}/dev_"
        return [path for path in decode_managed_objects(reply.body) if path.startswith(prefix)]

    async def get_property(self, device_reference: str, interface_name: str, property_name: str, default: str) -> str:
        """Reads one string property, returning `default` on any failure."""
        try:
            reply = await self._call(
                PropertyReadError,
                device_reference,
                PROPERTIES_INTERFACE,
                "Get",
                "ss",
                [interface_name, property_name],
            )
        except PropertyReadError:
            return default

        if reply.signature != "v" or not reply.body:
            return default
        value = reply.body[0]
        if not isinstance(value, Variant) or value.signature != "s" or not isinstance(value.value, str):
            return default
        return value.value

    # --- Scan ---

    async def scan(self, duration: float = SCAN_DURATION) -> list[DeviceRecord] | None:
        """
        Runs one discovery window and resolves every device found.

        Returns None when discovery could not be started.
        """
        self._log(f"Starting Bluetooth device scan for {duration} seconds...")

        if not await self.start_discovery():
            return None

        await asyncio.sleep(duration)

        await self.stop_discovery()

        records = []
        for device_path in await self.enumerate_devices():
            name = await self.get_property(device_path, DEVICE_INTERFACE, "Name", UNKNOWN_NAME)
            address = await self.get_property(device_path, DEVICE_INTERFACE, "Address", UNKNOWN_ADDRESS)
            records.append(DeviceRecord(device_path, name, address))
        return records
