#!/usr/bin/env python3

"""CLI tool to list serial ports and watch them come and go"""

import argparse
import logging
import ok_logging_setup
import ok_serial_watch
import re

ok_logging_setup.skip_traceback_for(ok_serial_watch.EnumerationError)
ok_logging_setup.skip_traceback_for(ok_serial_watch.MonitoringLost)


class PrintingListener:
    """Prints one line per port change"""

    def on_arrival(self, port: str) -> None:
        print(f"inserted: '{port}'", flush=True)

    def on_removal(self, port: str) -> None:
        print(f"removed: '{port}'", flush=True)


def main():
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(title="actions", dest="command")
    list_parser = subparsers.add_parser("list", help="List serial ports")
    list_parser.add_argument(
        "--verbose", "-v", action="store_true", help="print all properties"
    )

    watch_parser = subparsers.add_parser(
        "watch", help="Print serial ports as they are inserted and removed"
    )
    watch_parser.add_argument(
        "--poll",
        "-p",
        default=1.0,
        type=float,
        help="seconds between scans when polling",
    )
    watch_parser.add_argument(
        "--replay",
        "-r",
        action="store_true",
        help="report ports already present as inserted",
    )

    args = parser.parse_args()
    if not args.command:
        args = parser.parse_args(["watch"])

    ok_logging_setup.install({"OK_LOGGING_LEVEL": "info"})

    if args.command == "list":
        found = ok_serial_watch.scan_serial_ports()
        num = len(found)
        if num == 0:
            ok_logging_setup.exit("❌ No serial ports found")

        logging.info("🔌 %d serial port%s found", num, "" if num == 1 else "s")
        for port in found:
            if args.verbose:
                print(format_detail(port), end="\n\n")
            else:
                print(format_line(port))

    if args.command == "watch":
        opts = ok_serial_watch.WatchOptions(poll_interval=args.poll)
        with ok_serial_watch.SerialPortWatcher(opts=opts) as watcher:
            watcher.add_error_callback(report_error)
            try:
                watcher.add_notification_callback(
                    PrintingListener(), replay=args.replay
                )
            except ok_serial_watch.EnumerationError as exc:
                logging.error("🚫 Can't watch serial ports: %s", exc)

            print("Press enter to exit.", flush=True)
            try:
                input()
            except (EOFError, KeyboardInterrupt):
                pass


def report_error(exc: ok_serial_watch.SerialWatchException):
    if isinstance(exc, ok_serial_watch.MonitoringLost):
        logging.error("💥 Stopped watching serial ports: %s", exc)


def format_line(port: ok_serial_watch.SerialPort) -> str:
    words = [port.name]
    try:
        vid_int, pid_int = int(port.attr["vid"], 0), int(port.attr["pid"], 0)
    except (KeyError, ValueError):
        pass
    else:
        words.append(f"{vid_int:04x}:{pid_int:04x}")

    for k in "serial_number description".split():
        if v := format_value(port, k):
            words.append(v)
    return " ".join(words)


def format_detail(port: ok_serial_watch.SerialPort) -> str:
    return f"Port: {port.name}" + "".join(
        f"\n  {k}={format_value(port, k)}" for k in port.attr
    )


def format_value(port: ok_serial_watch.SerialPort, k: str) -> str:
    if v := port.attr.get(k, ""):
        return repr(v) if re.search(r"""[\s!"'*=?\\]""", v) else v
    return ""


if __name__ == "__main__":
    main()
