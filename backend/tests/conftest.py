"""
Pytest configuration and fixtures for the trusted devices tests.

Provides:
- FakeProxy: in-memory proxy management API and remote devices served
  through httpx.MockTransport
- Real service objects wired to the fake
- AsyncClient for the FastAPI app with an in-memory journal database
"""

import itertools
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Dict, List, Optional, Set

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.main import app
from app.services import (
    DeviceGateway,
    DeviceHealthTable,
    GroupCapacityResolver,
    JobJournal,
    ReachabilityMonitor,
    TeardownOrchestrator,
    TrustReconciler,
)
from app.services.gateway import CERTIFICATES_PATH, DEVICE_GROUPS_PATH, DEVICE_INFO_PATH, ECHO_PATH
from app.settings import Settings

PROXY_MACHINE_ID = "proxy-machine-id"
PREFIX = "TrustProxy_"


class FakeProxy:
    """In-memory stand-in for the proxy management API and remote devices"""

    def __init__(self, machine_id: Optional[str] = PROXY_MACHINE_ID):
        self.machine_id = machine_id
        self.groups: Dict[str, List[dict]] = {}
        self.other_groups = ["dockerContainers"]
        self.proxy_certificates: List[dict] = []
        self.remote_certificates: Dict[str, List[dict]] = {}
        self.unreachable: Set[str] = set()
        self.failing_deletes: Set[str] = set()
        self.local_down = False
        self.reject_adds = False
        self.requests: List[tuple] = []
        self.auth_headers: List[str] = []
        self._ids = itertools.count(1)

    # -- seeding -------------------------------------------------------

    def add_record(
        self,
        group: str,
        address: str,
        port: int = 443,
        state: str = "ACTIVE",
        machine_id: Optional[str] = None,
        managed: bool = False,
        rest_version: str = "15.1.0",
    ) -> dict:
        record = {
            "uuid": f"uuid-{next(self._ids)}",
            "address": address,
            "httpsPort": port,
            "state": state,
            "groupName": group,
        }
        if machine_id:
            record["machineId"] = machine_id
        if managed:
            record.update({
                "mcpDeviceName": f"/Common/{address}",
                "hostname": f"bigip-{address}.example.com",
                "version": "15.1.0",
                "restFrameworkVersion": rest_version,
            })
        self.groups.setdefault(group, []).append(record)
        return record

    def records(self) -> List[dict]:
        return [record for records in self.groups.values() for record in records]

    def find(self, address: str, port: int = 443) -> Optional[dict]:
        for record in self.records():
            if record["address"] == address and record["httpsPort"] == port:
                return record
        return None

    @property
    def mutations(self) -> List[tuple]:
        return [r for r in self.requests if r[0] in ("POST", "DELETE")]

    # -- transport -----------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.host, request.url.path))
        if request.url.host == "localhost":
            if self.local_down:
                raise httpx.ConnectError("Connection refused", request=request)
            self.auth_headers.append(request.headers.get("authorization", ""))
            return self._local(request)
        return self._remote(request)

    def _local(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path

        if path == DEVICE_INFO_PATH:
            if self.machine_id:
                return httpx.Response(200, json={"machineId": self.machine_id})
            return httpx.Response(200, json={"address": "127.0.0.1"})

        if path == DEVICE_GROUPS_PATH:
            if method == "GET":
                names = self.other_groups + list(self.groups)
                return httpx.Response(200, json={"items": [{"groupName": n} for n in names]})
            body = json.loads(request.content)
            name = body["groupName"]
            if name in self.groups:
                return httpx.Response(409, json={"message": "group exists"})
            self.groups[name] = []
            return httpx.Response(200, json=body)

        if path.startswith(DEVICE_GROUPS_PATH + "/"):
            parts = path[len(DEVICE_GROUPS_PATH) + 1:].split("/")
            group = parts[0]
            if group not in self.groups:
                return httpx.Response(404, json={"message": "group not found"})
            records = self.groups[group]
            if len(parts) == 2 and method == "GET":
                return httpx.Response(200, json={"items": [dict(r) for r in records]})
            if len(parts) == 2 and method == "POST":
                if self.reject_adds:
                    return httpx.Response(400, json={"message": "invalid credentials"})
                body = json.loads(request.content)
                record = self.add_record(group, body["address"], body["httpsPort"], state="PENDING")
                record["userName"] = body["userName"]
                return httpx.Response(200, json=dict(record))
            if len(parts) == 3 and method == "DELETE":
                uuid = parts[2]
                if uuid in self.failing_deletes:
                    return httpx.Response(500, json={"message": "delete failed"})
                for record in records:
                    if record["uuid"] == uuid:
                        records.remove(record)
                        return httpx.Response(200, json=record)
                return httpx.Response(404, json={"message": "device not found"})

        if path == CERTIFICATES_PATH and method == "GET":
            return httpx.Response(200, json={"items": list(self.proxy_certificates)})

        if path.startswith(CERTIFICATES_PATH + "/") and method == "DELETE":
            cert_id = path.rsplit("/", 1)[1]
            for cert in self.proxy_certificates:
                if cert["certificateId"] == cert_id:
                    self.proxy_certificates.remove(cert)
                    return httpx.Response(200, json=cert)
            return httpx.Response(404, json={"message": "certificate not found"})

        return httpx.Response(404, json={"message": "not found"})

    def _remote(self, request: httpx.Request) -> httpx.Response:
        key = f"{request.url.host}:{request.url.port or 443}"
        if key in self.unreachable:
            raise httpx.ConnectError("All connection attempts failed", request=request)

        method, path = request.method, request.url.path
        if path == ECHO_PATH:
            return httpx.Response(200, json={})

        certificates = self.remote_certificates.setdefault(key, [])
        if path == CERTIFICATES_PATH and method == "GET":
            return httpx.Response(200, json={"items": list(certificates)})
        if path.startswith(CERTIFICATES_PATH + "/") and method == "DELETE":
            cert_id = path.rsplit("/", 1)[1]
            self.remote_certificates[key] = [c for c in certificates if c["certificateId"] != cert_id]
            return httpx.Response(200, json={})

        return httpx.Response(404, json={"message": "not found"})


class FakeClock:
    """Manually advanced clock for the reachability monitor"""

    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, milliseconds: int) -> None:
        self.now += timedelta(milliseconds=milliseconds)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        monitor_enabled=False,
        machine_id_path=str(tmp_path / "machineId"),
        failed_device_removal_milliseconds=60000,
    )


@pytest.fixture
def proxy() -> FakeProxy:
    return FakeProxy()


@pytest.fixture
def health() -> DeviceHealthTable:
    return DeviceHealthTable()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory():
    """In-memory journal database shared across sessions"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest_asyncio.fixture
async def gateway(proxy, settings, health):
    transport = httpx.MockTransport(proxy.handler)
    local_client = httpx.AsyncClient(
        base_url=settings.proxy_base_url,
        auth=(settings.proxy_username, settings.proxy_password),
        transport=transport,
    )
    remote_client = httpx.AsyncClient(transport=transport)
    gateway = DeviceGateway(local_client, remote_client, settings, health)
    yield gateway
    await gateway.aclose()


@pytest.fixture
def services(gateway, settings, health, clock, session_factory):
    """Every service wired the way the application lifespan wires them"""
    resolver = GroupCapacityResolver(gateway, settings.device_group_prefix, settings.max_devices_per_group)
    teardown = TeardownOrchestrator(gateway, settings.min_certificate_delete_version)
    reconciler = TrustReconciler(gateway, resolver, teardown, health, settings)
    journal = JobJournal(session_factory)
    monitor = ReachabilityMonitor(
        reconciler, gateway, teardown, health, settings, journal=journal, clock=clock
    )
    return SimpleNamespace(
        gateway=gateway,
        health=health,
        resolver=resolver,
        teardown=teardown,
        reconciler=reconciler,
        journal=journal,
        monitor=monitor,
    )


@pytest_asyncio.fixture
async def async_client(services, session_factory):
    """
    AsyncClient pointing to the FastAPI app backed by the fake proxy.

    Yields:
        httpx.AsyncClient: Async HTTP client for making requests to the app.
    """
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.reconciler = services.reconciler
    app.state.journal = services.journal
    app.state.monitor = services.monitor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
