"""Shared fakes for wledtool tests."""

from pathlib import Path
from typing import Dict, List

import pytest

from wledtool import Device, DiscoveryProvider, HttpClient, setup_logging


class FakeHttpClient(HttpClient):
    """Serves canned responses keyed by URL; unknown URLs get a 404."""

    def __init__(self, responses: Dict = None, upload_status: int = 200):
        self.responses = responses or {}
        self.upload_status = upload_status
        self.requests: List[tuple] = []
        self.closed = False

    def download(self, url: str, destination: Path) -> int:
        self.requests.append(("GET", url))
        response = self.responses.get(url, (404, b"Not Found"))
        if isinstance(response, Exception):
            raise response
        status, body = response
        destination.write_bytes(body)
        return status

    def upload(self, url: str, field: str, file_path: Path) -> int:
        self.requests.append(("POST", url, field, file_path.read_bytes()))
        response = self.responses.get(url, self.upload_status)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self) -> None:
        self.closed = True


class FakeDiscovery(DiscoveryProvider):
    def __init__(self, devices: List[Device] = None):
        self.devices = devices or []
        self.calls = 0

    def discover(self) -> List[Device]:
        self.calls += 1
        return list(self.devices)


@pytest.fixture(autouse=True)
def plain_logging():
    setup_logging()
    yield


@pytest.fixture
def fake_discovery():
    return FakeDiscovery()
