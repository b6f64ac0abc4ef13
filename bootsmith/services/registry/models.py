from dataclasses import dataclass
from enum import Enum, unique
from typing import Protocol

SPECIAL_KEY_NETWORK_CONFIGURATION = "net-conf"


class RegistryError(Exception):
    """Registry could not answer the request."""


class VariableNotFound(RegistryError):
    """No machine or cluster level value for the key."""


class PoolExhausted(RegistryError):
    """No free address left to assign."""


@unique
class MachineType(str, Enum):
    """How the machine got its address"""

    STATIC = "static"
    DYNAMIC = "dynamic"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Machine:
    mac: str
    ip: str
    type: MachineType
    first_seen: int
    last_seen: int


@dataclass(frozen=True)
class InstanceInfo:
    name: str
    ip: str

    def __repr__(self):
        return f"name='{self.name}',ip='{self.ip}'"


class MachineInterface(Protocol):
    """Registry handle bound to one hardware address."""

    mac: str

    def machine(self, create_if_missing: bool = True) -> Machine:
        """Current assignment, provisioned on demand. Raises RegistryError."""
        ...

    def get_variable(self, key: str) -> str:
        """Machine level value, else cluster level. Raises VariableNotFound."""
        ...

    def check_in(self) -> None:
        """Record that the machine was seen now."""
        ...


class MachineRegistry(Protocol):
    def machine_interface(self, mac: str) -> MachineInterface: ...

    def instances(self) -> list[InstanceInfo]: ...

    def cluster_name(self) -> str: ...
