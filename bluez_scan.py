#!/usr/bin/env python3
"""Scan for nearby Bluetooth devices through BlueZ and print what was found."""

import asyncio
import sys

from adapter_session import SCAN_DURATION, AdapterSession, BusConnectionError, DeviceRecord


DEVICE_ENTRY = "{index}. {display_name}\n   Address: {hardware_address}\n   Path: {reference}\n"


def format_report(records: list[DeviceRecord]) -> str:
    lines = [
        "",
        "=== Discovered Bluetooth Devices ===",
        f"Found {len(records)} device(s):",
        "",
    ]

    if not records:
        lines.append("No devices found.")
        return "\n".join(lines)

    for i, record in enumerate(records, 1):
        lines.append(DEVICE_ENTRY.format(index=i, **record.as_dict()))
    return "\n".join(lines)


async def main(duration: float = SCAN_DURATION) -> int:
    try:
        async with AdapterSession() as session:
            records = await session.scan(duration)
    except BusConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # Discovery never started; the failure is already on stderr.
    if records is None:
        return 0

    print(format_report(records))
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("Scan interrupted by user.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
