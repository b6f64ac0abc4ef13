"""Per-cluster network configuration handed to DHCP clients.

The registry stores it as a JSON string under the network configuration key:

    {
        "netmask": "255.255.255.0",
        "router": "10.0.0.1",
        "classlessRouteOptions": [
            {"destination": "10.10.0.0", "size": 16, "router": "10.0.0.1"}
        ]
    }

`router` and `classlessRouteOptions` are optional. Routes are encoded for
option 121 as described in RFC 3442: prefix length, the significant octets of
the destination, then the gateway.
"""

from ipaddress import IPv4Address, IPv4Network

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bootsmith.services.dhcp.exceptions import MalformedConfiguration


class ClasslessRoute(BaseModel):
    model_config = ConfigDict(frozen=True)

    destination: IPv4Address
    size: int = Field(ge=0, le=32)
    router: IPv4Address

    @property
    def significant_octets(self) -> int:
        return (self.size + 7) // 8

    @property
    def network(self) -> IPv4Network:
        return IPv4Network((self.destination, self.size), strict=False)

    def to_bytes(self) -> bytes:
        """Prefix length, significant destination octets, gateway."""
        _destination = self.network.network_address.packed
        return (
            bytes([self.size])
            + _destination[: self.significant_octets]
            + self.router.packed
        )


class NetworkConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    netmask: IPv4Address
    router: IPv4Address | None = None
    classless_routes: tuple[ClasslessRoute, ...] = Field(
        default=(), alias="classlessRouteOptions"
    )

    def classless_route_option(self) -> bytes:
        return encode_classless_routes(self.classless_routes)


def parse_network_configuration(raw: str | bytes) -> NetworkConfiguration:
    """Parse the stored JSON value.

    Raises:
        MalformedConfiguration: value is not JSON or does not match the layout.
    """
    if raw is None:
        raise MalformedConfiguration("network configuration is empty")
    try:
        return NetworkConfiguration.model_validate_json(raw)
    except ValidationError as err:
        raise MalformedConfiguration(
            f"failed to parse network configuration: {err.error_count()} error(s) in {raw!r}"
        ) from err


def encode_classless_routes(routes) -> bytes:
    """Concatenate routes in configured order into an option 121 value."""
    return b"".join(route.to_bytes() for route in routes)


def decode_classless_routes(data: bytes) -> list[ClasslessRoute]:
    """Inverse of `encode_classless_routes`.

    Raises:
        MalformedConfiguration: truncated entry or prefix length over 32.
    """
    routes: list[ClasslessRoute] = []
    i = 0
    while i < len(data):
        size = data[i]
        if size > 32:
            raise MalformedConfiguration(f"invalid prefix length {size} at offset {i}")
        octets = (size + 7) // 8
        end = i + 1 + octets + 4
        if end > len(data):
            raise MalformedConfiguration(f"truncated classless route at offset {i}")
        destination = data[i + 1:i + 1 + octets].ljust(4, b"\x00")
        routes.append(
            ClasslessRoute(
                destination=IPv4Address(destination),
                size=size,
                router=IPv4Address(data[i + 1 + octets:end]),
            )
        )
        i = end
    return routes
