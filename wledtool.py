#!/usr/bin/env python3
"""
wledtool - WLED Backup and Firmware Updater

This script manages WLED LED controllers on the local network. Devices are found
via mDNS service discovery (_wled._tcp), their cfg.json and presets.json documents
can be backed up to disk, and new firmware can be pushed to them via HTTP POST to
the /update endpoint.

Usage:
    python wledtool.py [OPTIONS] COMMAND

Commands:
    backup:   Save cfg.json and presets.json of each device to the backup directory
    update:   Upload a firmware binary to each device
    discover: List WLED devices advertised on the local network
"""

import argparse
import ipaddress
import logging
import os
import shutil
import subprocess
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlsplit

import requests
from zeroconf import ServiceBrowser, ServiceListener, Zeroconf

__version__ = '1.0.0'

SERVICE_TYPE = '_wled._tcp'
ZEROCONF_SERVICE_TYPE = f"{SERVICE_TYPE}.local."
AVAHI_BROWSE = 'avahi-browse'
DEFAULT_PORT = 80
DEFAULT_SCAN_TIMEOUT = 5.0
BACKUP_RESOURCES = ('cfg', 'presets')
COMMANDS = ('backup', 'update', 'discover')
MDNS_BACKENDS = ('avahi', 'zeroconf')

# ANSI colors
RESET = '\033[0m'
RED = '\033[31m'
GREEN = '\033[32m'
YELLOW = '\033[33m'
BLUE = '\033[34m'
CYAN = '\033[36m'

LEVEL_COLORS = {
    logging.DEBUG: CYAN,
    logging.INFO: BLUE,
    logging.WARNING: YELLOW,
    logging.ERROR: RED,
    logging.CRITICAL: RED,
}
SUCCESS = {'color': GREEN}

logger = logging.getLogger('wledtool')


class ColorFormatter(logging.Formatter):
    """Formats records as '[LEVEL] message', colorized for terminals."""

    def __init__(self, use_color: bool = False):
        super().__init__('[%(levelname)s] %(message)s')
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if not self.use_color:
            return line
        color = getattr(record, 'color', None) or LEVEL_COLORS.get(record.levelno, '')
        return f"{color}{line}{RESET}"


def _is_terminal(stream) -> bool:
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


def setup_logging(quiet: bool = False, verbose: bool = False,
                  log_file: Optional[Path] = None, stream=None) -> logging.Logger:
    """
    Configure the wledtool logger.

    Console output goes to stdout and is colorized only when stdout is a terminal.
    Quiet mode drops the console handler entirely; a log file, if given, still
    receives every record.

    Args:
        quiet: Suppress all console log output
        verbose: Log debug messages (request URLs, discovery commands)
        log_file: Optional file to append timestamped records to
        stream: Console stream (defaults to sys.stdout)

    Returns:
        The configured logger
    """
    stream = stream if stream is not None else sys.stdout

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    if not quiet:
        console = logging.StreamHandler(stream)
        console.setFormatter(ColorFormatter(use_color=_is_terminal(stream)))
        logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger


class WledToolError(Exception):
    """Base class for wledtool errors."""


class ArgumentError(WledToolError):
    """Raised for invalid or missing command line input."""


class PreconditionError(WledToolError):
    """Raised when a required external tool or file is missing."""


class DiscoveryError(PreconditionError):
    """Raised when the mDNS browser runs but fails."""


class NoTargetError(WledToolError):
    """Raised when neither --target nor --discover was given."""


class RequestError(WledToolError):
    """A single HTTP request against a device did not succeed."""

    def __init__(self, host: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.host = host
        self.status_code = status_code


class TransportError(RequestError):
    """No HTTP response: connection refused, DNS failure, timeout."""


class ServerError(RequestError):
    """The device answered with HTTP 4xx or 5xx."""


class UnexpectedResponse(RequestError):
    """The device answered with a status that is neither 2xx nor an error (1xx, 3xx)."""


class RequestOutcome(Enum):
    SUCCESS = 'success'
    TRANSPORT_ERROR = 'transport error'
    SERVER_ERROR = 'server error'
    UNEXPECTED_RESPONSE = 'unexpected response'


def classify_response(status_code: Optional[int]) -> RequestOutcome:
    """
    Classify the result of an HTTP request.

    Args:
        status_code: HTTP status code, or None if no response was received

    Returns:
        The RequestOutcome for the status code
    """
    if status_code is None:
        return RequestOutcome.TRANSPORT_ERROR
    if 200 <= status_code < 300:
        return RequestOutcome.SUCCESS
    if status_code >= 400:
        return RequestOutcome.SERVER_ERROR
    return RequestOutcome.UNEXPECTED_RESPONSE


def raise_for_outcome(host: str, status_code: Optional[int], reason: Optional[str] = None) -> None:
    """
    Raise the RequestError matching the classified status code.

    Args:
        host: Host the request was sent to, used in the error message
        status_code: HTTP status code, or None if no response was received
        reason: Transport failure details, if any

    Raises:
        TransportError: No response was received
        ServerError: Status code is 400 or above
        UnexpectedResponse: Status code is outside 2xx and below 400
    """
    outcome = classify_response(status_code)
    if outcome is RequestOutcome.SUCCESS:
        return
    if outcome is RequestOutcome.TRANSPORT_ERROR:
        raise TransportError(host, f"could not connect to {host}: {reason or 'no response'}")
    if outcome is RequestOutcome.SERVER_ERROR:
        raise ServerError(host, f"{host} returned HTTP {status_code}", status_code)
    raise UnexpectedResponse(host, f"unexpected response from {host}: HTTP {status_code}", status_code)


@dataclass(frozen=True)
class Device:
    """A WLED device reachable over HTTP."""

    hostname: str
    address: str
    port: int = DEFAULT_PORT

    @classmethod
    def from_target(cls, target: str) -> 'Device':
        return cls(hostname=target, address=target, port=DEFAULT_PORT)

    @property
    def base_url(self) -> str:
        host = self.address
        try:
            if ipaddress.ip_address(host).version == 6:
                host = f"[{host}]"
        except ValueError:
            pass  # hostname
        return f"http://{host}:{self.port}"

    @property
    def location(self) -> str:
        return f"{self.hostname} ({self.address}:{self.port})"


@dataclass(frozen=True)
class Settings:
    """Immutable run configuration built once from the command line."""

    command: str
    target: Optional[str] = None
    discover: bool = False
    directory: Path = Path('.')
    firmware: Optional[Path] = None
    quiet: bool = False
    verbose: bool = False
    timeout: Optional[float] = None
    mdns: str = 'avahi'
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    log_file: Optional[Path] = None


class HttpClient(ABC):
    """The HTTP operations wledtool needs from a client."""

    @abstractmethod
    def download(self, url: str, destination: Path) -> int:
        """
        GET a URL and write the response body to a file.

        Args:
            url: URL to fetch
            destination: File the body is written to

        Returns:
            HTTP status code

        Raises:
            TransportError: If no response was received
        """

    @abstractmethod
    def upload(self, url: str, field: str, file_path: Path) -> int:
        """
        POST a file as a multipart form field.

        Args:
            url: Upload URL
            field: Form field name
            file_path: File to upload

        Returns:
            HTTP status code

        Raises:
            TransportError: If no response was received
        """

    def close(self) -> None:
        pass


class RequestsHttpClient(HttpClient):
    """HttpClient backed by a requests session."""

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize the client.

        Args:
            timeout: HTTP request timeout in seconds (None waits indefinitely)
        """
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": f"wledtool/{__version__}"})

    def download(self, url: str, destination: Path) -> int:
        host = urlsplit(url).netloc
        try:
            with self.session.get(url, timeout=self.timeout, stream=True,
                                  allow_redirects=False) as response:
                with open(destination, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=8192):
                        f.write(chunk)
                return response.status_code
        except requests.exceptions.RequestException as e:
            raise_for_outcome(host, None, reason=str(e))

    def upload(self, url: str, field: str, file_path: Path) -> int:
        host = urlsplit(url).netloc
        try:
            with open(file_path, 'rb') as f:
                files = {field: (file_path.name, f, 'application/octet-stream')}
                response = self.session.post(url, files=files, timeout=self.timeout,
                                             allow_redirects=False)
            return response.status_code
        except requests.exceptions.RequestException as e:
            raise_for_outcome(host, None, reason=str(e))

    def close(self) -> None:
        self.session.close()


class DiscoveryProvider(ABC):
    """Finds WLED devices on the local network."""

    @abstractmethod
    def discover(self) -> List[Device]:
        """Return discovered devices in the order they were found."""


def _strip_local(name: str) -> str:
    name = name.rstrip('.')
    if name.endswith('.local'):
        name = name[: -len('.local')]
    return name


def parse_avahi_output(output: str) -> List[Device]:
    """
    Parse `avahi-browse --parsable --resolve` output into devices.

    Only resolved records (lines starting with '=') are used. Their fields are
    '=;interface;protocol;name;type;domain;hostname;address;port;txt'.
    Each hostname is returned once, with the first address it was resolved
    to; further records (other interfaces, IPv6 next to IPv4) are skipped.

    Args:
        output: stdout of avahi-browse

    Returns:
        List of devices in emission order
    """
    devices = []
    seen = set()

    for line in output.splitlines():
        if not line.startswith('='):
            continue

        fields = line.split(';')
        if len(fields) < 9:
            logger.debug(f"Skipping malformed avahi record: {line}")
            continue

        try:
            port = int(fields[8])
        except ValueError:
            logger.debug(f"Skipping avahi record with invalid port: {line}")
            continue

        device = Device(hostname=_strip_local(fields[6]), address=fields[7], port=port)
        if device.hostname in seen:
            logger.debug(f"Skipping additional address {device.address} of {device.hostname}")
            continue
        seen.add(device.hostname)
        devices.append(device)

    return devices


class AvahiDiscovery(DiscoveryProvider):
    """Discovery through the avahi-browse command line tool."""

    def discover(self) -> List[Device]:
        executable = shutil.which(AVAHI_BROWSE)
        if executable is None:
            raise PreconditionError(
                f"{AVAHI_BROWSE} not found - install avahi-utils or use --mdns zeroconf"
            )

        cmd = [executable, '--resolve', '--terminate', '--parsable', SERVICE_TYPE]
        logger.debug(f"Running {' '.join(cmd)}")
        result = subprocess.run(cmd, capture_output=True, text=True)

        if result.returncode != 0:
            raise DiscoveryError(
                f"{AVAHI_BROWSE} failed (exit {result.returncode}): {result.stderr.strip()}"
            )

        devices = parse_avahi_output(result.stdout)
        logger.debug(f"Discovered {len(devices)} WLED devices")
        return devices


class WledServiceListener(ServiceListener):
    """Collects resolved _wled._tcp services announced while browsing."""

    def __init__(self):
        self.devices: List[Device] = []
        self.lock = threading.Lock()

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        info = zc.get_service_info(type_, name)
        if info is None:
            logger.debug(f"Could not resolve {name}")
            return

        addresses = info.parsed_addresses()
        if not addresses:
            logger.debug(f"No address for {name}")
            return

        hostname = _strip_local(info.server or name)
        device = Device(hostname=hostname, address=addresses[0], port=info.port or DEFAULT_PORT)
        with self.lock:
            if all(known.hostname != device.hostname for known in self.devices):
                self.devices.append(device)

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        pass

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        pass


class ZeroconfDiscovery(DiscoveryProvider):
    """In-process mDNS discovery for hosts without avahi."""

    def __init__(self, scan_timeout: float = DEFAULT_SCAN_TIMEOUT):
        self.scan_timeout = scan_timeout

    def discover(self) -> List[Device]:
        logger.debug(f"Browsing {ZEROCONF_SERVICE_TYPE} for {self.scan_timeout}s")
        listener = WledServiceListener()
        try:
            zc = Zeroconf()
            try:
                ServiceBrowser(zc, ZEROCONF_SERVICE_TYPE, listener)
                time.sleep(self.scan_timeout)
            finally:
                zc.close()
        except OSError as e:
            raise DiscoveryError(f"mDNS unavailable: {e}") from e

        with listener.lock:
            return list(listener.devices)


def make_discovery(settings: Settings) -> DiscoveryProvider:
    if settings.mdns == 'zeroconf':
        return ZeroconfDiscovery(settings.scan_timeout)
    return AvahiDiscovery()


def validate_firmware(firmware: Optional[Path]) -> None:
    """
    Validate that the firmware file exists.

    Args:
        firmware: Path to firmware binary

    Raises:
        ArgumentError: If no firmware path was given
        PreconditionError: If the file doesn't exist
    """
    if firmware is None:
        raise ArgumentError('update requires --firmware')
    if not firmware.is_file():
        raise PreconditionError(f"Firmware file not found: {firmware}")


class WledManager:
    """Runs backups and firmware updates against WLED devices, one at a time."""

    def __init__(self, settings: Settings, http: HttpClient):
        self.settings = settings
        self.http = http

    def _fetch(self, device: Device, resource: str, destination: Path) -> bool:
        url = f"{device.base_url}/{resource}"
        logger.debug(f"GET {url} -> {destination}")
        try:
            status = self.http.download(url, destination)
            raise_for_outcome(f"{device.address}:{device.port}", status)
        except RequestError as e:
            logger.error(f"✗ Failed to fetch {resource} from {device.hostname}: {e}")
            destination.unlink(missing_ok=True)
            return False
        return True

    def backup_device(self, device: Device) -> bool:
        """
        Back up cfg.json and presets.json of a device.

        Both documents are downloaded to .tmp files first and renamed to
        {hostname}.cfg.json / {hostname}.presets.json only when both fetches
        succeeded. When the second fetch fails the first one's .tmp is left
        behind; it is never renamed.

        Args:
            device: Device to back up

        Returns:
            True if both documents were saved, False otherwise
        """
        directory = self.settings.directory
        logger.info(f"Backing up {device.location}")

        try:
            directory.mkdir(parents=True, exist_ok=True)

            staged = []
            for resource in BACKUP_RESOURCES:
                final = directory / f"{device.hostname}.{resource}.json"
                temp = final.with_name(final.name + '.tmp')
                if not self._fetch(device, f"{resource}.json", temp):
                    return False
                staged.append((temp, final))

            for temp, final in staged:
                os.replace(temp, final)
        except OSError as e:
            logger.error(f"✗ Could not write backup of {device.hostname}: {e}")
            return False

        logger.info(f"✓ Backup of {device.hostname} saved to {directory}", extra=SUCCESS)
        return True

    def update_device(self, device: Device, firmware: Path) -> bool:
        """
        Upload firmware to a device.

        Only starts the update; flashing and reboot happen on the device
        afterwards and are not awaited.

        Args:
            device: Device to update
            firmware: Path to firmware binary

        Returns:
            True if the device accepted the upload, False otherwise
        """
        url = f"{device.base_url}/update"

        try:
            file_size = firmware.stat().st_size
            logger.info(f"Uploading firmware to {device.location} ({file_size} bytes)")
            status = self.http.upload(url, 'file', firmware)
            raise_for_outcome(f"{device.address}:{device.port}", status)
        except RequestError as e:
            logger.error(f"✗ Firmware upload to {device.hostname} failed: {e}")
            return False
        except OSError as e:
            logger.error(f"✗ Could not read firmware {firmware}: {e}")
            return False

        logger.info(f"✓ Firmware upload successful to {device.hostname}", extra=SUCCESS)
        return True

    def _run_batch(self, devices: List[Device], action, verb: str) -> Dict:
        results = {
            'total': len(devices),
            'succeeded': 0,
            'failed': [],
        }

        if not devices:
            logger.warning('No WLED devices found')
            return results

        for device in devices:
            if action(device):
                results['succeeded'] += 1
            else:
                results['failed'].append(device.hostname)

        logger.info(f"{results['succeeded']}/{results['total']} devices {verb}")
        if results['failed']:
            logger.warning(f"Failed devices: {', '.join(results['failed'])}")
        return results

    def backup_all(self, devices: List[Device]) -> Dict:
        """
        Back up every device; a failing device doesn't stop the batch.

        Returns:
            Dictionary with 'total', 'succeeded' and 'failed' (hostnames)
        """
        return self._run_batch(devices, self.backup_device, 'backed up')

    def update_all(self, devices: List[Device], firmware: Path) -> Dict:
        """
        Update every device; a failing device doesn't stop the batch.

        Returns:
            Dictionary with 'total', 'succeeded' and 'failed' (hostnames)
        """
        return self._run_batch(devices, lambda device: self.update_device(device, firmware), 'updated')


def resolve_devices(settings: Settings, discovery: DiscoveryProvider) -> List[Device]:
    """
    Determine the devices a backup or update runs against.

    --target wins over --discover; discovery is not run when a target is given.

    Raises:
        NoTargetError: If neither --target nor --discover was given
    """
    if settings.target:
        return [Device.from_target(settings.target)]
    if settings.discover:
        return discovery.discover()
    raise NoTargetError('No target specified - use --target HOST or --discover')


class WledArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ArgumentError instead of exiting."""

    def error(self, message):
        raise ArgumentError(message)


def _option_value(value: str) -> str:
    if not value:
        raise argparse.ArgumentTypeError('missing value')
    if value.startswith('-'):
        raise argparse.ArgumentTypeError(f"expected a value, got option '{value}'")
    return value


def _path_value(value: str) -> Path:
    return Path(_option_value(value))


def _seconds_value(value: str) -> float:
    try:
        seconds = float(_option_value(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number of seconds: '{value}'") from None
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than zero: '{value}'")
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = WledArgumentParser(
        prog='wledtool',
        allow_abbrev=False,
        description='Back up and update WLED devices on the local network',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  wledtool discover
  wledtool --target 192.168.1.50 --directory backups backup
  wledtool --discover --directory backups backup
  wledtool --discover --firmware WLED_0.14.4_ESP32.bin update
        """
    )

    parser.add_argument('command', nargs='?', choices=COMMANDS,
                        help='backup, update or discover')
    parser.add_argument('-t', '--target', type=_option_value, metavar='HOST',
                        help='Operate on a single device (takes precedence over --discover)')
    parser.add_argument('-D', '--discover', action='store_true',
                        help='Operate on all devices found via mDNS')
    parser.add_argument('-d', '--directory', type=_path_value, default=Path('.'), metavar='PATH',
                        help='Backup directory (default: current directory)')
    parser.add_argument('-f', '--firmware', type=_path_value, metavar='PATH',
                        help='Firmware binary for update')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='No log output; discover prints hostnames only')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log debug messages')
    parser.add_argument('--mdns', choices=MDNS_BACKENDS, default='avahi',
                        help='mDNS backend used for discovery (default: avahi)')
    parser.add_argument('--scan-timeout', type=_seconds_value, default=DEFAULT_SCAN_TIMEOUT,
                        metavar='SECONDS',
                        help=f"Browse time for --mdns zeroconf (default: {DEFAULT_SCAN_TIMEOUT:g})")
    parser.add_argument('--timeout', type=_seconds_value, metavar='SECONDS',
                        help='HTTP request timeout in seconds (default: none)')
    parser.add_argument('--log-file', type=_path_value, metavar='PATH',
                        help='Also append log records to this file')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")

    return parser


def parse_settings(parser: argparse.ArgumentParser, argv: List[str]) -> Settings:
    """
    Parse command line arguments into Settings.

    Raises:
        ArgumentError: For unknown options, missing values or a missing/unknown command
    """
    args = parser.parse_args(argv)
    if args.command is None:
        raise ArgumentError('no command given')

    return Settings(
        command=args.command,
        target=args.target,
        discover=args.discover,
        directory=args.directory,
        firmware=args.firmware,
        quiet=args.quiet,
        verbose=args.verbose,
        timeout=args.timeout,
        mdns=args.mdns,
        scan_timeout=args.scan_timeout,
        log_file=args.log_file,
    )


def list_devices(devices: List[Device], quiet: bool) -> None:
    for device in devices:
        if quiet:
            print(device.hostname)
        else:
            print(f"{device.hostname:<24} {device.address}:{device.port}")


def run(settings: Settings, http: Optional[HttpClient] = None,
        discovery: Optional[DiscoveryProvider] = None) -> int:
    """
    Execute a command.

    Per-device failures are logged and summarized but do not change the
    exit code; only fatal setup errors (raised as WledToolError) do.

    Args:
        settings: Run configuration
        http: HTTP client (a RequestsHttpClient is created when omitted)
        discovery: Discovery provider (chosen from settings when omitted)

    Returns:
        Process exit code
    """
    discovery = discovery or make_discovery(settings)

    if settings.command == 'discover':
        list_devices(discovery.discover(), settings.quiet)
        return 0

    if settings.command == 'update':
        validate_firmware(settings.firmware)

    devices = resolve_devices(settings, discovery)

    owns_client = http is None
    if owns_client:
        http = RequestsHttpClient(timeout=settings.timeout)
    manager = WledManager(settings, http)

    try:
        if settings.command == 'backup':
            manager.backup_all(devices)
        else:
            manager.update_all(devices, settings.firmware)
    finally:
        if owns_client:
            http.close()

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main function."""
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()
    setup_logging()

    if not argv:
        parser.print_help(sys.stdout)
        return 0

    try:
        settings = parse_settings(parser, argv)
    except ArgumentError as e:
        logger.error(f"{e}")
        parser.print_usage(sys.stdout)
        return 1

    try:
        setup_logging(quiet=settings.quiet, verbose=settings.verbose, log_file=settings.log_file)
    except OSError as e:
        logger.error(f"Cannot open log file {settings.log_file}: {e}")
        return 1

    try:
        return run(settings)
    except WledToolError as e:
        logger.error(f"{e}")
        return 1
    except KeyboardInterrupt:
        logger.info('Interrupted by user')
        return 130


if __name__ == '__main__':
    sys.exit(main())
