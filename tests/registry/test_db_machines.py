import logging
from random import Random

import pytest
from conftest import build_dhcp_message

from bootsmith.services.dhcp.lease_policy import LeasePolicy
from bootsmith.services.dhcp.message_handler import DHCPMessageHandler
from bootsmith.services.dhcp.models import DHCPOptionCode, DHCPType
from bootsmith.services.dhcp.pxe import PXEOptionBuilder
from bootsmith.services.registry import db_machines
from bootsmith.services.registry.db_machines import MachineStorage, normalize_mac
from bootsmith.services.registry.models import (
    SPECIAL_KEY_NETWORK_CONFIGURATION,
    InstanceInfo,
    MachineType,
    PoolExhausted,
    RegistryError,
    VariableNotFound,
)

STATIC_MAC = "52:54:00:12:34:56"
DYNAMIC_MAC = "52:54:00:12:34:99"


@pytest.fixture
def registry_logger() -> logging.Logger:
    return logging.getLogger("tests.registry")


@pytest.fixture
def storage(registry_logger):
    _storage = MachineStorage(
        logger=registry_logger,
        cluster_name="mycluster",
        instances=[InstanceInfo(name="bootsmith-1", ip="10.0.0.100")],
        ip_pool_start="10.0.0.100",
        ip_pool_end="10.0.0.103",
        static_map={STATIC_MAC: "10.0.0.101"},
    )
    yield _storage
    _storage.close()


def test_normalize_mac():
    # Positive
    assert normalize_mac("52:54:00:12:34:56") == "52:54:00:12:34:56"
    assert normalize_mac("52-54-00-12-34-56") == "52:54:00:12:34:56"
    assert normalize_mac("5254.0012.3456") == "52:54:00:12:34:56"
    assert normalize_mac("AA:BB:CC:DD:EE:FF") == "aa:bb:cc:dd:ee:ff"

    # Negative
    for mac in ("", "52:54:00:12:34", "52:54:00:12:34:56:78", "zz:54:00:12:34:56"):
        with pytest.raises(ValueError):
            normalize_mac(mac)


def test_static_assignment(storage):
    machine = storage.machine_interface(STATIC_MAC.upper()).machine()

    assert machine.mac == STATIC_MAC
    assert machine.ip == "10.0.0.101"
    assert machine.type == MachineType.STATIC


def test_dynamic_assignment(storage):
    machine = storage.machine_interface(DYNAMIC_MAC).machine()

    # .100 is an instance, .101 is static
    assert machine.ip == "10.0.0.102"
    assert machine.type == MachineType.DYNAMIC

    # Stable across lookups
    assert storage.machine_interface(DYNAMIC_MAC).machine().ip == "10.0.0.102"
    assert storage.get_machine_by_ip("10.0.0.102").mac == DYNAMIC_MAC


def test_pool_exhausted(storage):
    storage.machine_interface("02:00:00:00:00:01").machine()
    storage.machine_interface("02:00:00:00:00:02").machine()

    with pytest.raises(PoolExhausted):
        storage.machine_interface("02:00:00:00:00:03").machine()
    assert storage.get_machine("02:00:00:00:00:01").ip == "10.0.0.102"
    assert storage.get_machine("02:00:00:00:00:02").ip == "10.0.0.103"
    assert storage.get_machine("02:00:00:00:00:03") is None


def test_no_assignment(storage):
    # Negative
    with pytest.raises(RegistryError):
        storage.machine_interface(DYNAMIC_MAC).machine(create_if_missing=False)

    storage.auto_assign = False
    with pytest.raises(RegistryError):
        storage.machine_interface(DYNAMIC_MAC).machine()
    assert storage.get_machine(DYNAMIC_MAC) is None

    with pytest.raises(ValueError):
        storage.machine_interface("not-a-mac")


def test_variables(storage):
    interface = storage.machine_interface(STATIC_MAC)

    with pytest.raises(VariableNotFound):
        interface.get_variable("kernel")

    storage.set_variable("kernel", "vmlinuz-cluster")
    assert interface.get_variable("kernel") == "vmlinuz-cluster"

    storage.set_variable("kernel", "vmlinuz-machine", mac=STATIC_MAC.upper())
    assert interface.get_variable("kernel") == "vmlinuz-machine"
    assert storage.get_variable("kernel") == "vmlinuz-cluster"
    assert storage.machine_interface(DYNAMIC_MAC).get_variable("kernel") == "vmlinuz-cluster"

    # Upsert
    storage.set_variable("kernel", "vmlinuz-2")
    assert storage.get_variable("kernel") == "vmlinuz-2"
    assert interface.get_variable("kernel") == "vmlinuz-machine"

    with pytest.raises(ValueError):
        storage.set_variable("", "value")


def test_check_in(storage, monkeypatch):
    interface = storage.machine_interface(STATIC_MAC)
    first_seen = interface.machine().first_seen

    monkeypatch.setattr(db_machines, "time", lambda: first_seen + 60)
    interface.check_in()

    assert storage.get_machine(STATIC_MAC).last_seen == first_seen + 60
    assert interface.machine().first_seen == first_seen
    assert storage.get_machine(DYNAMIC_MAC) is None


def test_check_in_unknown_machine(storage, caplog):
    with caplog.at_level(logging.WARNING, logger="tests.registry"):
        storage.check_in(DYNAMIC_MAC)
    assert any("unknown machine" in r.getMessage() for r in caplog.records)


def test_static_map_reload(storage):
    dynamic = storage.machine_interface(DYNAMIC_MAC).machine()
    assert dynamic.ip == "10.0.0.102"

    # Static entry claims the dynamic machine's address
    storage.load_static_map({STATIC_MAC: "10.0.0.101", "02:00:00:00:00:09": "10.0.0.102"})

    assert storage.get_machine(DYNAMIC_MAC) is None
    claimed = storage.get_machine("02:00:00:00:00:09")
    assert claimed.ip == "10.0.0.102"
    assert claimed.type == MachineType.STATIC

    # Moved static machine
    storage.load_static_map({STATIC_MAC: "10.0.0.103"})
    assert storage.get_machine(STATIC_MAC).ip == "10.0.0.103"

    # Reassigned from the pool on next contact
    assert storage.machine_interface(DYNAMIC_MAC).machine().ip == "10.0.0.101"


def test_save_and_load(storage, registry_logger, tmp_path):
    storage.machine_interface(DYNAMIC_MAC).machine()
    storage.set_variable(SPECIAL_KEY_NETWORK_CONFIGURATION, '{"netmask": "255.255.255.0"}')
    path = tmp_path / "db" / "machines.sqlite3"

    storage.save_to_disk(path)
    assert path.is_file()

    restored = MachineStorage(
        logger=registry_logger,
        cluster_name="mycluster",
        instances=[],
        ip_pool_start="10.0.0.100",
        ip_pool_end="10.0.0.103",
        path=path,
    )
    try:
        assert restored.get_machine(DYNAMIC_MAC).ip == "10.0.0.102"
        assert restored.get_machine(STATIC_MAC).ip == "10.0.0.101"
        assert restored.get_variable(SPECIAL_KEY_NETWORK_CONFIGURATION).startswith("{")
    finally:
        restored.close()


def test_closed_storage(storage):
    storage.close()

    # Negative
    with pytest.raises(RuntimeError):
        storage.machine_interface(STATIC_MAC).machine()


def test_invalid_pool(registry_logger):
    with pytest.raises(ValueError):
        MachineStorage(
            logger=registry_logger,
            cluster_name="mycluster",
            instances=[],
            ip_pool_start="10.0.0.200",
            ip_pool_end="10.0.0.100",
        )


def test_handler_with_storage(storage, logger):
    storage.set_variable(
        SPECIAL_KEY_NETWORK_CONFIGURATION,
        '{"netmask": "255.255.255.0", "router": "10.0.0.1"}',
    )
    handler = DHCPMessageHandler(
        server_ip="10.0.0.2",
        registry=storage,
        lease_policy=LeasePolicy(rng=Random(0)),
        pxe_builder=PXEOptionBuilder("10.0.0.2", "Blacksmith (v1.0)"),
        logger=logger,
    )

    offer = handler.handle_message(build_dhcp_message(DHCPType.DISCOVER, mac=DYNAMIC_MAC))
    assert offer.dhcp_type == DHCPType.OFFER
    assert offer.your_ip == "10.0.0.102"
    assert offer.get_option(DHCPOptionCode.DOMAIN_NAME_SERVER) == bytes([10, 0, 0, 100])
    assert offer.get_option(DHCPOptionCode.HOST_NAME) == b"525400123499.mycluster"

    ack = handler.handle_message(
        build_dhcp_message(
            DHCPType.REQUEST,
            mac=DYNAMIC_MAC,
            options=[("server_id", "10.0.0.2"), ("requested_addr", "10.0.0.102")],
        )
    )
    assert ack.dhcp_type == DHCPType.ACK
    assert ack.your_ip == "10.0.0.102"

    # Another machine's address is refused
    assert (
        handler.handle_message(
            build_dhcp_message(
                DHCPType.REQUEST, mac=DYNAMIC_MAC, options=[("requested_addr", "10.0.0.101")]
            )
        )
        is None
    )
