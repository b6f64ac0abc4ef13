import json
import logging
from random import Random

import pytest
from scapy.layers.dhcp import BOOTP, DHCP
from scapy.layers.inet import IP, UDP
from scapy.layers.l2 import Ether

from bootsmith.services.dhcp.db_dhcp_stats import DHCPStats
from bootsmith.services.dhcp.lease_policy import LeasePolicy
from bootsmith.services.dhcp.message_handler import DHCPMessageHandler
from bootsmith.services.dhcp.models import DHCPMessage
from bootsmith.services.dhcp.pxe import PXEOptionBuilder
from bootsmith.services.registry.models import (
    SPECIAL_KEY_NETWORK_CONFIGURATION,
    InstanceInfo,
    Machine,
    MachineType,
    RegistryError,
    VariableNotFound,
)

SERVER_IP = "10.0.0.2"
CLIENT_MAC = "aa:bb:cc:dd:ee:ff"
CLIENT_IP = "10.0.0.10"
BOOT_MESSAGE = "Blacksmith (v1.0)"

NETWORK_CONFIGURATION = {
    "netmask": "255.255.255.0",
    "router": "10.0.0.1",
    "classlessRouteOptions": [
        {"destination": "10.10.0.0", "size": 16, "router": "10.0.0.1"},
    ],
}


class FakeMachineInterface:
    def __init__(self, registry: "FakeRegistry", mac: str):
        self._registry = registry
        self.mac = mac

    def machine(self, create_if_missing: bool = True) -> Machine:
        self._registry.calls.append(("machine", self.mac))
        _machine = self._registry.machines.get(self.mac)
        if _machine is None:
            raise RegistryError(f"cannot provision {self.mac}")
        return _machine

    def get_variable(self, key: str) -> str:
        self._registry.calls.append(("get_variable", self.mac, key))
        for _scope in (self.mac, ""):
            _value = self._registry.variables.get((_scope, key))
            if _value is not None:
                return _value
        raise VariableNotFound(key)

    def check_in(self) -> None:
        self._registry.check_ins.append(self.mac)


class FakeRegistry:
    """In-memory registry recording every call made by the handler."""

    def __init__(self, cluster_name: str = "mycluster"):
        self._cluster_name = cluster_name
        self.machines: dict[str, Machine] = {}
        self.variables: dict[tuple[str, str], str] = {
            ("", SPECIAL_KEY_NETWORK_CONFIGURATION): json.dumps(NETWORK_CONFIGURATION)
        }
        self.instance_list = [
            InstanceInfo(name="bootsmith-1", ip="10.0.0.1"),
            InstanceInfo(name="bootsmith-2", ip="10.0.0.2"),
        ]
        self.calls: list[tuple] = []
        self.check_ins: list[str] = []

    def add_machine(self, mac: str, ip: str) -> Machine:
        _machine = Machine(mac=mac, ip=ip, type=MachineType.STATIC, first_seen=1, last_seen=1)
        self.machines[mac] = _machine
        return _machine

    def machine_interface(self, mac: str) -> FakeMachineInterface:
        self.calls.append(("machine_interface", mac))
        return FakeMachineInterface(self, mac)

    def instances(self) -> list[InstanceInfo]:
        return list(self.instance_list)

    def cluster_name(self) -> str:
        return self._cluster_name


def build_dhcp_packet(
    dhcp_type: int,
    mac: str = CLIENT_MAC,
    xid: int = 0x12345678,
    ciaddr: str = "0.0.0.0",
    giaddr: str = "0.0.0.0",
    options: list | tuple = (),
):
    """Client frame as it would come off the wire."""
    return (
        Ether(src=mac, dst="ff:ff:ff:ff:ff:ff")
        / IP(src="0.0.0.0", dst="255.255.255.255")
        / UDP(sport=68, dport=67)
        / BOOTP(
            op=1,
            xid=xid,
            chaddr=bytes.fromhex(mac.replace(":", "")),
            ciaddr=ciaddr,
            giaddr=giaddr,
        )
        / DHCP(options=[("message-type", int(dhcp_type)), *options, "end"])
    )


def build_dhcp_message(dhcp_type: int, **kwargs) -> DHCPMessage:
    return DHCPMessage(build_dhcp_packet(dhcp_type, **kwargs))


@pytest.fixture
def logger() -> logging.Logger:
    _logger = logging.getLogger("tests.dhcp")
    _logger.setLevel(logging.DEBUG)
    return _logger


@pytest.fixture
def registry() -> FakeRegistry:
    _registry = FakeRegistry()
    _registry.add_machine(CLIENT_MAC, CLIENT_IP)
    return _registry


@pytest.fixture
def stats(logger):
    _stats = DHCPStats(logger=logger)
    yield _stats
    _stats.close()


@pytest.fixture
def lease_policy() -> LeasePolicy:
    return LeasePolicy(min_lease_hours=24, max_lease_hours=48, rng=Random(42))


@pytest.fixture
def pxe_builder() -> PXEOptionBuilder:
    return PXEOptionBuilder(server_ip=SERVER_IP, boot_message=BOOT_MESSAGE)


@pytest.fixture
def handler(registry, lease_policy, pxe_builder, logger, stats) -> DHCPMessageHandler:
    return DHCPMessageHandler(
        server_ip=SERVER_IP,
        registry=registry,
        lease_policy=lease_policy,
        pxe_builder=pxe_builder,
        logger=logger,
        stats=stats,
    )
