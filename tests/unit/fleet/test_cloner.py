"""Tests for the clone/start state machine."""

from unittest.mock import AsyncMock, patch

import pytest

from cyberrange.core.constants import InstanceState
from cyberrange.core.exceptions import FleetAPIError, ReadinessTimeoutError, TemplateNotFoundError
from cyberrange.core.types import Instance
from cyberrange.fleet.cloner import CloneStartMachine


def _locked() -> FleetAPIError:
    return FleetAPIError(
        "POST /nodes/proxmox09/lxc/103/clone failed: 500 CT is locked (disk)",
        status_code=500,
    )


@pytest.fixture
def machine(fake_fleet, pool_hosts, fast_timing) -> CloneStartMachine:
    return CloneStartMachine(fake_fleet, pool_hosts, fast_timing, instance_floor=2000)


@pytest.fixture
def target(pool_hosts):
    return pool_hosts[2]


class TestNextAvailableId:
    async def test_floor_on_empty_pool(self, machine):
        assert await machine.next_available_id() == 2000

    async def test_highest_id_across_all_hosts(self, machine, fake_fleet):
        fake_fleet.add_instance("proxmox00", 2004, "beta-1")
        fake_fleet.add_instance("proxmox03", 2011, "beta-2")
        fake_fleet.add_instance("proxmox09", 2002, "gamma-1")

        assert await machine.next_available_id() == 2012

    async def test_listing_failure_aborts(self, machine, fake_fleet):
        fake_fleet.list_errors["proxmox03"] = FleetAPIError("GET /nodes/proxmox03/lxc failed: 595")

        with pytest.raises(FleetAPIError):
            await machine.next_available_id()


class TestFindTemplate:
    async def test_template_present(self, machine, target):
        await machine.find_template(target)

    async def test_template_missing(self, machine, fake_fleet, target):
        fake_fleet.instances["proxmox09"] = []

        with pytest.raises(TemplateNotFoundError, match="103"):
            await machine.find_template(target)

    async def test_plain_instance_with_template_id_does_not_count(self, machine, fake_fleet, target):
        fake_fleet.instances["proxmox09"] = []
        fake_fleet.add_instance("proxmox09", 103, "not-a-template")

        with pytest.raises(TemplateNotFoundError):
            await machine.find_template(target)


class TestTemplateProtection:
    async def test_restored_after_block(self, machine, fake_fleet, target):
        async with machine.template_unprotected(target):
            assert fake_fleet.protection[("proxmox09", 103)] == 0

        assert fake_fleet.protection[("proxmox09", 103)] == 1

    async def test_restored_when_block_raises(self, machine, fake_fleet, target):
        with pytest.raises(RuntimeError):
            async with machine.template_unprotected(target):
                raise RuntimeError("clone loop crashed")

        assert fake_fleet.protection[("proxmox09", 103)] == 1

    async def test_unprotected_template_is_left_alone(self, machine, fake_fleet, target):
        fake_fleet.protection[("proxmox09", 103)] = 0

        async with machine.template_unprotected(target):
            pass

        assert not [call for call in fake_fleet.calls if call[0] == "config"]


class TestCloneOne:
    async def test_success(self, machine, target):
        instance = Instance(vmid=2001, hostname="acme-1", host="proxmox09")

        await machine.clone_one(target, instance, "Sandbox")

        assert instance.state is InstanceState.CLONED
        assert instance.attempts == 1

    async def test_lock_retry_then_success(self, machine, fake_fleet, target):
        fake_fleet.clone_errors = [_locked(), _locked(), None]
        instance = Instance(vmid=2001, hostname="acme-1", host="proxmox09")

        await machine.clone_one(target, instance, "Sandbox")

        assert instance.state is InstanceState.CLONED
        assert instance.attempts == 3
        assert instance.error is None

    async def test_persistent_lock_stops_after_five_attempts(self, machine, fake_fleet, target):
        fake_fleet.clone_errors = [_locked() for _ in range(10)]
        instance = Instance(vmid=2001, hostname="acme-1", host="proxmox09")

        with patch("cyberrange.fleet.cloner.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await machine.clone_one(target, instance, "Sandbox")

        assert instance.state is InstanceState.FAILED
        assert instance.attempts == 5
        assert len([call for call in fake_fleet.calls if call[0] == "clone"]) == 5
        assert sleep.await_count == 4
        assert "CT is locked" in (instance.error or "")

    async def test_other_error_fails_immediately(self, machine, fake_fleet, target):
        fake_fleet.clone_errors = [FleetAPIError("500 storage 'local-lvm' is full", status_code=500)]
        instance = Instance(vmid=2001, hostname="acme-1", host="proxmox09")

        await machine.clone_one(target, instance, "Sandbox")

        assert instance.state is InstanceState.FAILED
        assert instance.attempts == 1

    async def test_task_timeout_fails(self, machine, fake_fleet, target):
        fake_fleet.wait_for_task = AsyncMock(side_effect=ReadinessTimeoutError("Task UPID not ready after 120s"))
        instance = Instance(vmid=2001, hostname="acme-1", host="proxmox09")

        await machine.clone_one(target, instance, "Sandbox")

        assert instance.state is InstanceState.FAILED
        assert "not ready" in (instance.error or "")


class TestCloneAndStart:
    async def test_batch_identities_and_hostnames(self, machine, fake_fleet, target):
        fake_fleet.add_instance("proxmox00", 2003, "beta-1")

        instances = await machine.clone_and_start(target, "acme", 3)

        assert [(i.vmid, i.hostname) for i in instances] == [
            (2005, "acme-1"),
            (2006, "acme-2"),
            (2007, "acme-3"),
        ]
        assert all(i.state is InstanceState.STARTED for i in instances)
        assert fake_fleet.protection[("proxmox09", 103)] == 1

    async def test_clones_run_before_starts(self, machine, fake_fleet, target):
        await machine.clone_and_start(target, "acme", 2)

        kinds = [call[0] for call in fake_fleet.calls if call[0] in ("clone", "start", "config")]
        assert kinds == ["config", "clone", "clone", "config", "start", "start"]

    async def test_one_failed_clone_does_not_stop_the_batch(self, machine, fake_fleet, target):
        fake_fleet.clone_errors = [None, FleetAPIError("500 storage full", status_code=500), None]

        instances = await machine.clone_and_start(target, "acme", 3)

        assert [i.hostname for i in instances] == ["acme-1", "acme-3"]
        assert [i.state for i in machine.last_batch] == [
            InstanceState.STARTED,
            InstanceState.FAILED,
            InstanceState.STARTED,
        ]

    async def test_start_failure_is_kept_in_result(self, machine, fake_fleet, target):
        fake_fleet.start_errors[2002] = FleetAPIError("500 start failed", status_code=500)

        instances = await machine.clone_and_start(target, "acme", 2)

        assert [i.vmid for i in instances] == [2001, 2002]
        assert instances[1].state is InstanceState.FAILED
        assert "start failed" in (instances[1].error or "")

    async def test_protection_restored_when_allocation_fails(self, machine, fake_fleet, target):
        fake_fleet.list_errors["proxmox00"] = FleetAPIError("GET /nodes/proxmox00/lxc failed: 595")

        with pytest.raises(FleetAPIError):
            await machine.clone_and_start(target, "acme", 1)

        assert fake_fleet.protection[("proxmox09", 103)] == 1
        assert not [call for call in fake_fleet.calls if call[0] == "clone"]

    async def test_missing_template_changes_nothing(self, machine, fake_fleet, target):
        fake_fleet.instances["proxmox09"] = []

        with pytest.raises(TemplateNotFoundError):
            await machine.clone_and_start(target, "acme", 2)

        assert fake_fleet.calls == []
