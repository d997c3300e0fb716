#!/usr/bin/env python3

"""CLI tool to list serial ports, scan BLE advertisements, or talk to a port"""

import argparse
import asyncio
import json
import logging
import sys

import ok_logging_setup

import ok_devio

ok_logging_setup.skip_traceback_for(ok_devio.InvalidArgument)
ok_logging_setup.skip_traceback_for(ok_devio.PortOpenFailure)
ok_logging_setup.skip_traceback_for(ok_devio.AdapterUnavailable)

CLI_KEY = "cli"


def main():
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(title="actions", dest="command")
    subparsers.add_parser("ports", help="List serial ports")

    scan_parser = subparsers.add_parser("scan", help="Scan BLE advertisements")
    scan_parser.add_argument(
        "--time", "-t", default=10.0, type=float, help="seconds to scan"
    )
    scan_parser.add_argument("--adapter", help="radio adapter (e.g. hci0)")

    mon_parser = subparsers.add_parser("monitor", help="Serial monitor")
    mon_parser.add_argument("port", help="serial port name")
    mon_parser.add_argument("baud", type=int, help="baud rate")
    mon_parser.add_argument("--data-bits", type=int, default=8)
    mon_parser.add_argument("--stop-bits", type=int, default=1)
    mon_parser.add_argument("--parity", default="none")
    mon_parser.add_argument("--flow-control", default="none")
    mon_parser.add_argument(
        "--hex", action="store_true", help="print received bytes as hex"
    )
    mon_parser.add_argument(
        "--eol", default="\r\n", help="line ending appended to sent lines"
    )
    mon_parser.add_argument(
        "--reset",
        action="store_true",
        help="pulse RTS/DTR to reset the device after opening",
    )

    data_parser = subparsers.add_parser("appdata", help="Set up app data")
    data_parser.add_argument(
        "--reveal", action="store_true", help="open the folder afterwards"
    )

    args = parser.parse_args()
    if not args.command:
        args = parser.parse_args(["ports"])

    level = "warning" if args.command == "ports" else "info"
    ok_logging_setup.install({"OK_LOGGING_LEVEL": level})

    if args.command == "ports":
        ports = ok_devio.list_serial_ports()
        if not ports:
            ok_logging_setup.exit("❌ No serial ports found")
        for name in ports:
            print(name)

    elif args.command == "scan":
        adapter = ok_devio.BleakRadioAdapter(adapter=args.adapter)
        count = asyncio.run(run_scan(adapter, args.time))
        logging.info("📡 %d advertisement%s", count, "" if count == 1 else "s")

    elif args.command == "monitor":
        run_monitor(args)

    elif args.command == "appdata":
        root = ok_devio.ensure_app_data()
        print(root)
        print(", ".join(ok_devio.read_chip_list(root)))
        if args.reveal:
            ok_devio.open_directory(str(root))


async def run_scan(adapter: ok_devio.RadioAdapter, seconds: float) -> int:
    bus = ok_devio.LocalEventBus()
    bus.listen(ok_devio.SCAN_EVENT_TOPIC, lambda p: print(format_device(p)))
    task = asyncio.create_task(
        ok_devio.start_advertisement_scan(bus, bus, adapter=adapter)
    )
    done, _ = await asyncio.wait([task], timeout=seconds)
    if not done:
        bus.publish(ok_devio.STOP_SCAN_TOPIC, None)
        done, _ = await asyncio.wait([task], timeout=1.0)
    if not done:
        task.cancel()  # no advertisement arrived to observe the stop
        try:
            await task
        except asyncio.CancelledError:
            return 0
    return task.result()


def format_device(payload: str) -> str:
    dev = json.loads(payload)
    words = [dev["address"], f"{dev['rssi']}dBm"]
    if dev["local_name"]:
        words.append(repr(dev["local_name"]))
    for vendor, data in dev["manufacturer_data"].items():
        words.append(f"mfr={int(vendor):04x}:{bytes(data).hex()}")
    words.extend(f"svc={s}" for s in dev["services"])
    return " ".join(words)


def run_monitor(args) -> None:
    bus = ok_devio.LocalEventBus()

    def on_event(event: ok_devio.SerialEvent):
        if event.kind == "data":
            if args.hex:
                print(event.hex)
            else:
                sys.stdout.write(event.text)
                sys.stdout.flush()
        elif event.kind == "error":
            logging.error("💥 %s", event.text)
        else:
            logging.info("🔌 %s", event.text)

    bus.listen(ok_devio.SERIAL_EVENT_TOPIC, on_event)
    with ok_devio.SessionRegistry(bus) as registry:
        registry.open(
            CLI_KEY,
            args.port,
            args.baud,
            data_bits=args.data_bits,
            stop_bits=args.stop_bits,
            parity=args.parity,
            flow_control=args.flow_control,
        )
        if args.reset:
            registry.set_signals(CLI_KEY, rts=True, dtr=False)
            registry.set_signals(CLI_KEY, rts=False, dtr=False)

        try:
            for line in sys.stdin:
                data = (line.rstrip("\r\n") + args.eol).encode()
                registry.send(CLI_KEY, data)
        except KeyboardInterrupt:
            pass
        registry.close(CLI_KEY, wait=True)


if __name__ == "__main__":
    main()
