from dataclasses import dataclass
from datetime import timedelta
from enum import IntEnum, unique
from time import time
from types import MappingProxyType

from scapy.layers.dhcp import BOOTP, DHCP
from scapy.layers.inet import IP, UDP
from scapy.layers.l2 import Ether
from scapy.packet import Packet, Padding

from bootsmith.services.dhcp.utils import (
    extract_options_from_packet,
    format_mac,
    ip_to_bytes,
)

DEFAULT_DHCP_TYPE = -1
NO_IP_ASSIGNED = "0.0.0.0"
BOOTP_MIN_LEN = 300


@unique
class DHCPType(IntEnum):
    DISCOVER = 1
    OFFER = 2
    REQUEST = 3
    DECLINE = 4
    ACK = 5
    NAK = 6
    RELEASE = 7
    INFORM = 8

    def __str__(self) -> str:
        return self.name


@unique
class DHCPOptionCode(IntEnum):
    """Option codes produced or consumed by the responder (RFC 2132, 3442, 4578)."""

    SUBNET_MASK = 1
    ROUTER = 3
    DOMAIN_NAME_SERVER = 6
    HOST_NAME = 12
    VENDOR_SPECIFIC_INFORMATION = 43
    REQUESTED_IP_ADDRESS = 50
    IP_ADDRESS_LEASE_TIME = 51
    DHCP_MESSAGE_TYPE = 53
    SERVER_IDENTIFIER = 54
    PARAMETER_REQUEST_LIST = 55
    VENDOR_CLASS_IDENTIFIER = 60
    CLIENT_MACHINE_IDENTIFIER = 97
    CLASSLESS_STATIC_ROUTE = 121
    END = 255


class DHCPMessage:
    """Incoming DHCP message decoded from a scapy packet.

    `options` maps option codes to their raw value bytes and is read-only.
    """

    def __init__(self, packet: Packet):
        self.received = time()
        self.packet: Packet = packet
        _bootp = packet[BOOTP]
        self.op: int = _bootp.op
        self.xid: int = _bootp.xid
        self.flags: int = _bootp.flags
        self.chaddr: bytes = bytes(_bootp.chaddr)[:6]  # hardware address, padding stripped
        self.mac: str = format_mac(self.chaddr)
        self.ciaddr: str = _bootp.ciaddr  # current IP (used in RENEW/REBIND)
        self.giaddr: str = _bootp.giaddr  # Gateway IP (by relay agents)
        self.src_ip: str = packet[IP].src if IP in packet else NO_IP_ASSIGNED
        self.src_port: int = packet[UDP].sport if UDP in packet else 68
        self.options: MappingProxyType = MappingProxyType(extract_options_from_packet(packet))
        _type = self.options.get(DHCPOptionCode.DHCP_MESSAGE_TYPE, b"")
        self.dhcp_type: int = _type[0] if len(_type) == 1 else DEFAULT_DHCP_TYPE

    @property
    def ciaddr_bytes(self) -> bytes:
        return ip_to_bytes(self.ciaddr)

    @property
    def server_id(self) -> bytes | None:
        return self.options.get(DHCPOptionCode.SERVER_IDENTIFIER)

    @property
    def requested_ip(self) -> bytes | None:
        return self.options.get(DHCPOptionCode.REQUESTED_IP_ADDRESS)

    @property
    def param_req_list(self) -> list[int] | None:
        """Requested option codes, None when the client sent no list."""
        _value = self.options.get(DHCPOptionCode.PARAMETER_REQUEST_LIST)
        if _value is None:
            return None
        return list(_value)

    @property
    def is_pxe(self) -> bool:
        return DHCPOptionCode.CLIENT_MACHINE_IDENTIFIER in self.options

    @property
    def dedup_key(self) -> tuple[int, str, int]:
        return (self.xid, self.mac, self.dhcp_type)

    def __repr__(self):
        return f"DHCPMessage(type={self.dhcp_type}, xid={self.xid:#010x}, mac='{self.mac}')"


@dataclass(frozen=True)
class DHCPReply:
    """OFFER or ACK produced by the message handler, ready for the response factory."""

    request: DHCPMessage
    dhcp_type: DHCPType
    server_ip: str
    your_ip: str
    lease_time: timedelta
    options: tuple[tuple[int, bytes], ...]

    def get_option(self, code: int) -> bytes | None:
        for _code, _value in self.options:
            if _code == code:
                return _value
        return None

    @property
    def option_codes(self) -> list[int]:
        return [_code for _code, _ in self.options]

    def dhcp_options(self) -> list:
        """Scapy DHCP option list: type, server id, lease time, selected options, end."""
        return [
            ("message-type", int(self.dhcp_type)),
            ("server_id", self.server_ip),
            ("lease_time", int(self.lease_time.total_seconds())),
            *self.options,
            "end",
        ]


@dataclass
class DHCPConfig:
    """
    Addresses used to frame DHCP replies
    """

    server_ip: str
    server_mac: str
    port: int
    client_port: int
    broadcast_mac: str
    broadcast_ip: str


class DHCPResponseFactory:
    """
    Builds scapy frames for DHCP replies.

    Usage:
        1. Initialize the factory once with server/network configuration using `init()`.
        2. Call build() with a DHCPReply to get the frame to send.

    Notes:
        - Must call `init()` before `build()`, otherwise RuntimeError is raised.
        - Relayed requests (giaddr set) are answered to the relay on the server port,
          everything else is broadcast to the client port.
    """

    _config: DHCPConfig | None = None

    @classmethod
    def init(
        cls,
        server_ip: str,
        server_mac: str,
        port: int,
        client_port: int,
        broadcast_mac: str,
        broadcast_ip: str,
    ):
        cls._config = DHCPConfig(
            server_ip=server_ip,
            server_mac=server_mac,
            port=port,
            client_port=client_port,
            broadcast_mac=broadcast_mac,
            broadcast_ip=broadcast_ip,
        )

    @classmethod
    def build(cls, reply: DHCPReply) -> Packet:
        """Build and return the frame carrying `reply`."""

        if not cls._config:
            raise RuntimeError("not initialized")

        _cfg: DHCPConfig = cls._config
        _request = reply.request

        if _request.giaddr and _request.giaddr != NO_IP_ASSIGNED:
            _dst_ip, _dport = _request.giaddr, _cfg.port
        else:
            _dst_ip, _dport = _cfg.broadcast_ip, _cfg.client_port

        _bootp = BOOTP(
            op=2,
            xid=_request.xid,
            flags=_request.flags,
            chaddr=_request.chaddr + b"\x00" * 10,
            ciaddr=_request.ciaddr,
            yiaddr=reply.your_ip,
            siaddr=reply.server_ip,
            giaddr=_request.giaddr,
        ) / DHCP(options=reply.dhcp_options())

        _missing = BOOTP_MIN_LEN - len(bytes(_bootp))
        if _missing > 0:
            _bootp = _bootp / Padding(load=b"\x00" * _missing)

        return (
            Ether(src=_cfg.server_mac, dst=_cfg.broadcast_mac)
            / IP(src=_cfg.server_ip, dst=_dst_ip)
            / UDP(sport=_cfg.port, dport=_dport)
            / _bootp
        )
