import argparse
import datetime
import logging
import sys

import requests

from aranet_btle import client


def parse_args(ctl_args):
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--scan", action="store_true", help="Print readings advertised by nearby devices"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log bluetooth activity"
    )
    current = parser.add_argument_group("Options for current reading")
    current.add_argument(
        "-u", "--url", metavar="URL", help="Remote url for current value push"
    )
    scan = parser.add_argument_group("Options for scan")
    scan.add_argument(
        "-d",
        "--duration",
        metavar="SECONDS",
        type=float,
        help="Stop scanning after SECONDS (default: until interrupted)",
    )
    adapter = parser.add_argument_group("Bluetooth settings")
    adapter.add_argument(
        "--adapter", metavar="NAME", help="Bluetooth adapter to use, e.g. hci0"
    )
    adapter.add_argument(
        "--settle",
        metavar="SECONDS",
        type=float,
        default=client.Config.settle_delay,
        help="Time to scan before looking for devices",
    )
    adapter.add_argument(
        "--timeout",
        metavar="SECONDS",
        type=float,
        default=client.Config.connect_timeout,
        help="Connection timeout",
    )
    adapter.add_argument(
        "--read-timeout",
        dest="read_timeout",
        metavar="SECONDS",
        type=float,
        help="Timeout for reading measurements",
    )

    return parser.parse_args(ctl_args)


def make_config(args) -> client.Config:
    return client.Config(
        adapter=args.adapter,
        settle_delay=args.settle,
        connect_timeout=args.timeout,
        read_timeout=args.read_timeout,
    )


def print_scan_result(result):
    print(result.sensor_data.toString(result.device.name, result.id, result.rssi))


def post_data(url, current):
    # get current measurement minute
    now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
    delta_ago = datetime.timedelta(seconds=current.age)
    t = now - delta_ago
    t = t.replace(second=0)  # epoch, floored to minutes
    data = current.toDict()
    data["time"] = t.timestamp()
    r = requests.post(
        url,
        data=data,
    )
    print("Pushing data: {:s}".format(r.text))


def main(argv):
    args = parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    config = make_config(args)

    try:
        if args.scan:
            print("Looking for Aranet4 devices...")
            print()
            try:
                found = client.find_nearby(print_scan_result, args.duration, config)
            except KeyboardInterrupt:
                return 0
            print(f"Scan finished. Found {len(found)}")
            return 0

        current = client.get_current_readings(config)
    except client.Aranet4Error as e:
        print(f"Error: {e}")
        return 1

    print(current.toString())
    if args.url:
        post_data(args.url, current)
    return 0


def entry_point():
    sys.exit(main(argv=sys.argv[1:]))


if __name__ == "__main__":
    entry_point()
