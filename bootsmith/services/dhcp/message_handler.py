from logging import DEBUG, INFO, NOTSET, Logger

from bootsmith.services.dhcp.db_dhcp_stats import DHCPStats
from bootsmith.services.dhcp.exceptions import (
    AddressMismatch,
    DHCPDropError,
    ForeignServer,
    MalformedConfiguration,
    UnresolvableClient,
)
from bootsmith.services.dhcp.lease_policy import LeasePolicy
from bootsmith.services.dhcp.models import (
    DEFAULT_DHCP_TYPE,
    DHCPMessage,
    DHCPOptionCode,
    DHCPReply,
    DHCPType,
)
from bootsmith.services.dhcp.network_config import (
    NetworkConfiguration,
    parse_network_configuration,
)
from bootsmith.services.dhcp.pxe import PXEOptionBuilder
from bootsmith.services.dhcp.reply_options import ReplyOptions
from bootsmith.services.dhcp.utils import (
    OPTION_VALUE_MAX,
    hostname_for,
    ip_to_bytes,
    is_cluster_name_too_long,
    is_zero_address,
    pack_addresses,
)
from bootsmith.services.registry.models import (
    SPECIAL_KEY_NETWORK_CONFIGURATION,
    MachineInterface,
    MachineRegistry,
    RegistryError,
)

PXE_VENDOR_CLASS = b"PXEClient"


def _type_name(dhcp_type: int) -> str:
    try:
        return DHCPType(dhcp_type).name
    except ValueError:
        return str(dhcp_type)


class DHCPMessageHandler:
    """Stateless DHCP responder for registry managed machines.

    One instance serves every worker thread: it only holds configuration
    fixed at startup and takes no locks. Registry atomicity is the
    registry's job.

    Behavior:
        - DISCOVER -> OFFER, REQUEST -> ACK, both for the registry assignment.
        - RELEASE, DECLINE -> counted and logged, no reply, no state change.
        - Anything that cannot be answered is dropped: `handle_message`
          returns None and logs why. Clients retransmit.
    """

    def __init__(
        self,
        server_ip: str,
        registry: MachineRegistry,
        lease_policy: LeasePolicy,
        pxe_builder: PXEOptionBuilder,
        logger: Logger,
        stats: DHCPStats | None = None,
    ):
        self.server_ip = server_ip
        self._server_ip_bytes = ip_to_bytes(server_ip)
        self.registry = registry
        self.lease_policy = lease_policy
        self.pxe_builder = pxe_builder
        self.logger = logger
        self.stats = stats

        _cluster_name = registry.cluster_name()
        if is_cluster_name_too_long(_cluster_name):
            self.logger.warning(
                "Cluster name %r is too long, it may break the behaviour of DHCP clients.",
                _cluster_name,
            )

    def handle_message(self, dhcp_msg: DHCPMessage) -> DHCPReply | None:
        """Process one incoming message.

        Returns:
            DHCPReply | None: OFFER/ACK to send, or None when nothing is sent.
        """
        self._increment("received_total")
        try:
            match dhcp_msg.dhcp_type:
                case DHCPType.DISCOVER:
                    self._increment("received_discover")
                    return self._handle_lease_request(dhcp_msg, DHCPType.DISCOVER)
                case DHCPType.REQUEST:
                    self._increment("received_request")
                    return self._handle_lease_request(dhcp_msg, DHCPType.REQUEST)
                case DHCPType.RELEASE:
                    self._increment("received_release")
                    self._handle_release_decline(dhcp_msg)
                case DHCPType.DECLINE:
                    self._increment("received_decline")
                    self._handle_release_decline(dhcp_msg)
                case _ if dhcp_msg.dhcp_type == DEFAULT_DHCP_TYPE:
                    self._increment("received_malformed")
                    self.logger.debug("Message without type from %s.", dhcp_msg.mac)
                case _:
                    self._increment("received_other")
                    self.logger.debug(
                        "Ignoring dhcp %s from %s.", _type_name(dhcp_msg.dhcp_type), dhcp_msg.mac
                    )

        except DHCPDropError as err:
            self._increment("received_dropped")
            if err.log_level > NOTSET:
                self.logger.log(
                    err.log_level,
                    "dhcp %s - CHADDR %s - %s",
                    _type_name(dhcp_msg.dhcp_type),
                    dhcp_msg.mac,
                    err,
                )

        except Exception as err:
            self._increment("received_dropped")
            self.logger.exception(
                "dhcp %s - CHADDR %s - error processing message: %s",
                _type_name(dhcp_msg.dhcp_type),
                dhcp_msg.mac,
                err,
            )

        return None

    def _handle_lease_request(self, dhcp_msg: DHCPMessage, msg_type: DHCPType) -> DHCPReply:
        self._check_server_identifier(dhcp_msg, msg_type)

        try:
            machine_interface = self.registry.machine_interface(dhcp_msg.mac)
            machine = machine_interface.machine(create_if_missing=True)
        except RegistryError as err:
            raise UnresolvableClient(f"failed to get machine: {err}") from err

        net_conf = self._network_configuration(machine_interface)

        try:
            instances = self.registry.instances()
            cluster_name = self.registry.cluster_name()
        except RegistryError as err:
            raise DHCPDropError(f"failed to get instances: {err}", log_level=INFO) from err

        options = ReplyOptions()
        options.add(DHCPOptionCode.SUBNET_MASK, net_conf.netmask.packed)
        options.add(DHCPOptionCode.DOMAIN_NAME_SERVER, pack_addresses(i.ip for i in instances))
        hostname = hostname_for(dhcp_msg.chaddr, cluster_name).encode()
        if len(hostname) <= OPTION_VALUE_MAX:
            options.add(DHCPOptionCode.HOST_NAME, hostname)
        else:
            self.logger.debug("Hostname for %s does not fit option 12, left out.", dhcp_msg.mac)
        if net_conf.router is not None:
            options.add(DHCPOptionCode.ROUTER, net_conf.router.packed)
        if net_conf.classless_routes:
            routes = net_conf.classless_route_option()
            if len(routes) > OPTION_VALUE_MAX:
                raise MalformedConfiguration(
                    f"{len(net_conf.classless_routes)} classless routes do not fit option 121"
                )
            options.add(DHCPOptionCode.CLASSLESS_STATIC_ROUTE, routes)

        assigned_ip = ip_to_bytes(machine.ip)
        response_type = DHCPType.OFFER
        if msg_type == DHCPType.REQUEST:
            response_type = DHCPType.ACK
            self._check_requested_address(dhcp_msg, assigned_ip, machine.ip)
            machine_interface.check_in()

        self.logger.debug(
            "dhcp %s - CHADDR %s - assignedIp %s - isPxe %s",
            msg_type,
            dhcp_msg.mac,
            machine.ip,
            dhcp_msg.is_pxe,
        )

        reply_options = options.select_order_or_all(dhcp_msg.param_req_list)
        if dhcp_msg.is_pxe:
            reply_options.extend(self._pxe_options(dhcp_msg))

        return DHCPReply(
            request=dhcp_msg,
            dhcp_type=response_type,
            server_ip=self.server_ip,
            your_ip=machine.ip,
            lease_time=self.lease_policy.next_lease_duration(),
            options=tuple(reply_options),
        )

    def _check_server_identifier(self, dhcp_msg: DHCPMessage, msg_type: DHCPType):
        server_id = dhcp_msg.server_id
        if server_id is None or server_id == self._server_ip_bytes:
            return
        if msg_type == DHCPType.DISCOVER:
            raise ForeignServer(f"identifying dhcp server in Discover ({server_id.hex()})", DEBUG)
        raise ForeignServer("message is for another server", NOTSET)

    def _network_configuration(self, machine_interface: MachineInterface) -> NetworkConfiguration:
        try:
            raw = machine_interface.get_variable(SPECIAL_KEY_NETWORK_CONFIGURATION)
        except RegistryError as err:
            raise MalformedConfiguration(f"failed to get network configuration: {err}") from err
        return parse_network_configuration(raw)

    def _check_requested_address(self, dhcp_msg: DHCPMessage, assigned_ip: bytes, machine_ip: str):
        requested = dhcp_msg.requested_ip
        if requested is None:
            requested = dhcp_msg.ciaddr_bytes
        if len(requested) != 4 or is_zero_address(requested):
            raise AddressMismatch("bad request", DEBUG)
        if not self.lease_policy.validate_requested_address(requested, assigned_ip):
            raise AddressMismatch(
                f"requestedIP({'.'.join(str(b) for b in requested)}) != assignedIp({machine_ip})"
            )

    def _pxe_options(self, dhcp_msg: DHCPMessage) -> list[tuple[int, bytes]]:
        guid = dhcp_msg.options[DHCPOptionCode.CLIENT_MACHINE_IDENTIFIER][1:]
        return [
            (int(DHCPOptionCode.VENDOR_CLASS_IDENTIFIER), PXE_VENDOR_CLASS),
            (int(DHCPOptionCode.CLIENT_MACHINE_IDENTIFIER), guid),
            (int(DHCPOptionCode.VENDOR_SPECIFIC_INFORMATION), self.pxe_builder.build()),
        ]

    def _handle_release_decline(self, dhcp_msg: DHCPMessage):
        """Leases are owned by the registry: nothing to reclaim."""
        self.logger.debug(
            "Received dhcp %s XID=%s, MAC=%s, no action.",
            _type_name(dhcp_msg.dhcp_type),
            dhcp_msg.xid,
            dhcp_msg.mac,
        )

    def _increment(self, key: str):
        if self.stats is not None:
            self.stats.increment(key)
