#!/usr/bin/env python3
"""
Tests for WLED mDNS discovery
"""

import subprocess

import pytest

import wledtool
from wledtool import (
    AvahiDiscovery,
    Device,
    DiscoveryError,
    PreconditionError,
    Settings,
    WledServiceListener,
    ZeroconfDiscovery,
    make_discovery,
    parse_avahi_output,
)

AVAHI_OUTPUT = """\
+;eth0;IPv4;livingroom;_wled._tcp;local
+;eth0;IPv4;kitchen;_wled._tcp;local
=;eth0;IPv4;livingroom;_wled._tcp;local;livingroom.local;10.0.0.5;80;"mac=a1b2c3d4e5f6"
=;eth0;IPv4;kitchen;_wled._tcp;local;kitchen.local;10.0.0.6;80;"mac=0a1b2c3d4e5f"
=;eth0;IPv6;kitchen;_wled._tcp;local;kitchen.local;fd00::6;80;"mac=0a1b2c3d4e5f"
=;wlan0;IPv4;livingroom;_wled._tcp;local;livingroom.local;10.0.0.5;80;"mac=a1b2c3d4e5f6"
-;eth0;IPv4;porch;_wled._tcp;local
"""


def test_parse_resolved_records_once_per_hostname():
    devices = parse_avahi_output(AVAHI_OUTPUT)

    assert devices == [
        Device("livingroom", "10.0.0.5", 80),
        Device("kitchen", "10.0.0.6", 80),
    ]


def test_parse_empty_output():
    assert parse_avahi_output("") == []
    assert parse_avahi_output("+;eth0;IPv4;livingroom;_wled._tcp;local\n") == []


def test_parse_skips_malformed_records():
    output = (
        "=;eth0;IPv4;broken;_wled._tcp;local\n"
        "=;eth0;IPv4;badport;_wled._tcp;local;badport.local;10.0.0.9;http;\n"
        "=;eth0;IPv4;porch;_wled._tcp;local;porch.local;10.0.0.7;8080;\n"
    )

    assert parse_avahi_output(output) == [Device("porch", "10.0.0.7", 8080)]


def test_missing_avahi_is_a_precondition_error(monkeypatch):
    monkeypatch.setattr(wledtool.shutil, "which", lambda name: None)

    with pytest.raises(PreconditionError) as exc:
        AvahiDiscovery().discover()
    assert "avahi-browse" in str(exc.value)


def test_avahi_runs_a_single_resolving_scan(monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout=AVAHI_OUTPUT, stderr="")

    monkeypatch.setattr(wledtool.shutil, "which", lambda name: "/usr/bin/avahi-browse")
    monkeypatch.setattr(wledtool.subprocess, "run", fake_run)

    devices = AvahiDiscovery().discover()

    assert calls == [["/usr/bin/avahi-browse", "--resolve", "--terminate", "--parsable", "_wled._tcp"]]
    assert [d.hostname for d in devices] == ["livingroom", "kitchen"]


def test_avahi_failure_is_fatal(monkeypatch):
    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="",
                                          stderr="Failed to create client object: Daemon not running\n")

    monkeypatch.setattr(wledtool.shutil, "which", lambda name: "/usr/bin/avahi-browse")
    monkeypatch.setattr(wledtool.subprocess, "run", fake_run)

    with pytest.raises(DiscoveryError) as exc:
        AvahiDiscovery().discover()
    assert "Daemon not running" in str(exc.value)


def test_make_discovery_selects_backend():
    assert isinstance(make_discovery(Settings(command="discover")), AvahiDiscovery)

    provider = make_discovery(Settings(command="discover", mdns="zeroconf", scan_timeout=2.5))
    assert isinstance(provider, ZeroconfDiscovery)
    assert provider.scan_timeout == 2.5


class FakeServiceInfo:
    def __init__(self, server, addresses, port):
        self.server = server
        self._addresses = addresses
        self.port = port

    def parsed_addresses(self):
        return list(self._addresses)


class FakeZeroconf:
    def __init__(self, infos):
        self.infos = infos

    def get_service_info(self, type_, name):
        return self.infos.get(name)


def test_listener_collects_resolved_services():
    zc = FakeZeroconf({
        "livingroom._wled._tcp.local.": FakeServiceInfo("livingroom.local.", ["10.0.0.5"], 80),
        "kitchen._wled._tcp.local.": FakeServiceInfo("kitchen.local.", ["10.0.0.6", "fd00::6"], 80),
        "porch._wled._tcp.local.": FakeServiceInfo("porch.local.", [], 80),
    })
    listener = WledServiceListener()

    for name in ("livingroom._wled._tcp.local.", "kitchen._wled._tcp.local.",
                 "porch._wled._tcp.local.", "gone._wled._tcp.local.",
                 "livingroom._wled._tcp.local."):
        listener.add_service(zc, wledtool.ZEROCONF_SERVICE_TYPE, name)

    assert listener.devices == [
        Device("livingroom", "10.0.0.5", 80),
        Device("kitchen", "10.0.0.6", 80),
    ]


def test_zeroconf_discovery_browses_and_closes(monkeypatch):
    events = []

    class Zeroconf:
        def close(self):
            events.append("close")

    def browser(zc, type_, listener):
        events.append(("browse", type_))
        listener.devices.append(Device("livingroom", "10.0.0.5", 80))

    monkeypatch.setattr(wledtool, "Zeroconf", Zeroconf)
    monkeypatch.setattr(wledtool, "ServiceBrowser", browser)
    monkeypatch.setattr(wledtool.time, "sleep", lambda seconds: events.append(("sleep", seconds)))

    devices = ZeroconfDiscovery(scan_timeout=3).discover()

    assert devices == [Device("livingroom", "10.0.0.5", 80)]
    assert events == [("browse", "_wled._tcp.local."), ("sleep", 3), "close"]


def test_zeroconf_without_multicast_is_a_discovery_error(monkeypatch):
    def no_interface():
        raise OSError(19, "No such device")

    monkeypatch.setattr(wledtool, "Zeroconf", no_interface)

    with pytest.raises(DiscoveryError) as exc:
        ZeroconfDiscovery(scan_timeout=1).discover()
    assert "mDNS unavailable" in str(exc.value)


def test_main_reports_unavailable_zeroconf(monkeypatch, capsys):
    def no_interface():
        raise OSError(19, "No such device")

    monkeypatch.setattr(wledtool, "Zeroconf", no_interface)

    assert wledtool.main(["--mdns", "zeroconf", "discover"]) == 1
    out = capsys.readouterr().out
    assert "[ERROR] mDNS unavailable" in out
    assert "Traceback" not in out
