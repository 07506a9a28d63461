"""
Tests for trust teardown.
"""

import pytest

from app.exceptions import TeardownError
from app.services.teardown import rest_major_version


async def hidden_devices(services):
    return {d.target_host: d for d in await services.reconciler.list_devices(include_hidden=True)}


class TestTeardown:
    """Certificate cleanup and entry removal."""

    @pytest.mark.asyncio
    async def test_unreachable_device_still_removed(self, services, proxy):
        proxy.add_record("TrustProxy_0", "10.0.0.5", machine_id="dev-1", managed=True)
        proxy.unreachable.add("10.0.0.5:443")
        devices = await hidden_devices(services)

        await services.teardown.teardown([devices["10.0.0.5"]])

        assert proxy.records() == []

    @pytest.mark.asyncio
    async def test_old_devices_keep_proxy_certificate(self, services, proxy):
        proxy.add_record("TrustProxy_0", "10.0.0.5", machine_id="dev-1", managed=True, rest_version="12.1.0")
        proxy.remote_certificates["10.0.0.5:443"] = [{"certificateId": "r1", "machineId": "proxy-machine-id"}]
        devices = await hidden_devices(services)

        await services.teardown.teardown([devices["10.0.0.5"]])

        assert proxy.records() == []
        assert not [r for r in proxy.requests if r[1] == "10.0.0.5"]
        assert proxy.remote_certificates["10.0.0.5:443"] == [{"certificateId": "r1", "machineId": "proxy-machine-id"}]

    @pytest.mark.asyncio
    async def test_proxy_certificate_removed_for_unmanaged_device(self, services, proxy):
        proxy.add_record("TrustProxy_0", "10.0.0.5", machine_id="dev-1")
        proxy.proxy_certificates = [{"certificateId": "c1", "machineId": "dev-1"}]
        devices = await hidden_devices(services)

        await services.teardown.teardown([devices["10.0.0.5"]])

        assert proxy.proxy_certificates == []
        assert not [r for r in proxy.requests if r[1] == "10.0.0.5"]

    @pytest.mark.asyncio
    async def test_unresolvable_proxy_identity_does_not_block_removal(self, services, proxy):
        proxy.add_record("TrustProxy_0", "10.0.0.5", machine_id="dev-1", managed=True)
        devices = await hidden_devices(services)
        proxy.machine_id = None

        await services.teardown.teardown([devices["10.0.0.5"]])

        assert proxy.records() == []

    @pytest.mark.asyncio
    async def test_entry_removal_failures_aggregated(self, services, proxy):
        broken = proxy.add_record("TrustProxy_0", "10.0.0.5", machine_id="dev-1", managed=True)
        proxy.add_record("TrustProxy_0", "10.0.0.6", machine_id="dev-2", managed=True)
        proxy.failing_deletes.add(broken["uuid"])
        devices = await hidden_devices(services)

        with pytest.raises(TeardownError) as excinfo:
            await services.teardown.teardown(list(devices.values()))

        assert excinfo.value.devices == ["10.0.0.5:443"]
        assert "could not remove trusted device from the proxy" in excinfo.value.message
        assert [r["address"] for r in proxy.records()] == ["10.0.0.5"]

    @pytest.mark.asyncio
    async def test_nothing_to_remove(self, services, proxy):
        await services.teardown.teardown([])

        assert proxy.requests == []


@pytest.mark.parametrize("version,major", [
    ("14.1.0", 14),
    ("12", 12),
    ("", 0),
    (None, 0),
    ("v13", 0),
])
def test_rest_major_version(version, major):
    assert rest_major_version(version) == major
