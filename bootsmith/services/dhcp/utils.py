"""utils.py.

Helpers for the DHCP wire format:
- Decode raw DHCP option bytes into a code -> value map
- Format hardware addresses and derive client hostnames
- Pack IPv4 addresses for option values

Uses Scapy to reach the raw option bytes and ipaddress for address handling.
"""

from collections.abc import Iterable
from ipaddress import IPv4Address, ip_address

from scapy.layers.dhcp import DHCP
from scapy.packet import Packet

OPTION_PAD = 0
OPTION_END = 255
HOSTNAME_LABEL_MAX = 63
HOSTNAME_MAC_PREFIX_LEN = 13  # 12 hex digits + "."
CLUSTER_NAME_MAX = HOSTNAME_LABEL_MAX - HOSTNAME_MAC_PREFIX_LEN
OPTION_VALUE_MAX = 255
ADDRESSES_PER_OPTION_MAX = OPTION_VALUE_MAX // 4


def decode_options(data: bytes) -> dict[int, bytes]:
    """Decode a DHCP option TLV stream (after the magic cookie).

    Pad bytes are skipped, decoding stops at End. A truncated trailing
    option keeps whatever bytes are present. Repeated codes are
    concatenated as RFC 3396 prescribes.
    """
    options: dict[int, bytes] = {}
    i = 0
    while i < len(data):
        code = data[i]
        if code == OPTION_END:
            break
        if code == OPTION_PAD:
            i += 1
            continue
        if i + 1 >= len(data):
            break
        length = data[i + 1]
        value = data[i + 2:i + 2 + length]
        options[code] = options.get(code, b"") + value
        i += 2 + length
    return options


def extract_options_from_packet(packet: Packet) -> dict[int, bytes]:
    """Raw option map of a scapy packet carrying a DHCP layer."""
    if DHCP not in packet:
        return {}
    return decode_options(bytes(packet[DHCP]))


def format_mac(chaddr: bytes) -> str:
    """Format the first six bytes of a hardware address as aa:bb:cc:dd:ee:ff."""
    return chaddr[:6].hex(":")


def hostname_for(chaddr: bytes, cluster_name: str) -> str:
    """Hostname handed to a client: hex MAC without separators plus the cluster name."""
    return chaddr[:6].hex() + "." + cluster_name


def is_cluster_name_too_long(cluster_name: str) -> bool:
    """The MAC label and the dot leave 50 bytes of a 63 byte DNS label."""
    return len(cluster_name.encode()) > CLUSTER_NAME_MAX


def ip_to_bytes(ip: str | IPv4Address) -> bytes:
    return IPv4Address(ip).packed


def is_zero_address(data: bytes) -> bool:
    return not any(data)


def pack_addresses(
    addresses: Iterable[str | IPv4Address], limit: int = ADDRESSES_PER_OPTION_MAX
) -> bytes:
    """Concatenate IPv4 addresses as 4 byte values, no length or separator (RFC 2132 option 6).

    Non IPv4 addresses are skipped. At most `limit` addresses are packed, 63 fill one option.
    """
    _packed = []
    for address in addresses:
        if len(_packed) >= limit:
            break
        _address = ip_address(address)
        if isinstance(_address, IPv4Address):
            _packed.append(_address.packed)
    return b"".join(_packed)
