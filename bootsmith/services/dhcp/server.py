from json import dumps
from logging import Logger
from pathlib import Path
from queue import Empty, Full, Queue
from random import Random
from threading import Event, RLock, Thread, current_thread
from time import time, time_ns

from cachetools import TTLCache
from scapy.layers.dhcp import BOOTP
from scapy.layers.inet import IP
from scapy.layers.l2 import Ether
from scapy.packet import Packet
from scapy.sendrecv import sendp, sniff
from watchdog.observers.api import BaseObserver

from bootsmith.config.config import CONFIG_PATH, config, start_file_watcher
from bootsmith.models.models import Config
from bootsmith.services.dhcp.db_dhcp_stats import DHCPStats
from bootsmith.services.dhcp.lease_policy import LeasePolicy
from bootsmith.services.dhcp.message_handler import DHCPMessageHandler
from bootsmith.services.dhcp.models import (
    DHCPMessage,
    DHCPReply,
    DHCPResponseFactory,
    DHCPType,
)
from bootsmith.services.dhcp.pxe import PXEOptionBuilder
from bootsmith.services.logger.logger import MainLogger
from bootsmith.services.registry.db_machines import MachineStorage
from bootsmith.services.registry.models import (
    SPECIAL_KEY_NETWORK_CONFIGURATION,
    InstanceInfo,
    VariableNotFound,
)

META = config.get("meta")
VERSION = str(META.get("version"))

PATHS = config.get("paths")
ROOT_PATH = Path(PATHS.get("root"))
DB_PATH = ROOT_PATH / PATHS.get("database")

DHCP_CONFIG = config.get("dhcp")
INTERFACE = DHCP_CONFIG.get("interface")
PORT = int(DHCP_CONFIG.get("port"))
CLIENT_PORT = int(DHCP_CONFIG.get("client_port"))
SERVER_IP = str(DHCP_CONFIG.get("ip"))
SERVER_MAC = str(DHCP_CONFIG.get("mac"))
BROADCAST_IP = str(DHCP_CONFIG.get("broadcast_ip"))
BROADCAST_MAC = str(DHCP_CONFIG.get("broadcast_mac"))
MIN_LEASE_HOURS = int(DHCP_CONFIG.get("min_lease_hours"))
MAX_LEASE_HOURS = int(DHCP_CONFIG.get("max_lease_hours"))

WORKERS = int(DHCP_CONFIG.get("workers"))
RECEIVED_QUEUE_SIZE = int(DHCP_CONFIG.get("rcvd_queue_size"))
DEDUP_CACHE_SIZE = int(DHCP_CONFIG.get("dedup_cache_size"))
DEDUP_TTL = float(DHCP_CONFIG.get("dedup_ttl_seconds"))
TIMEOUTS = DHCP_CONFIG.get("timeouts")
WORKER_GET_TIMEOUT = float(TIMEOUTS.get("worker_get"))
WORKER_JOIN_TIMEOUT = float(TIMEOUTS.get("worker_join"))

REGISTRY_CONFIG = config.get("registry")
CLUSTER_NAME = str(REGISTRY_CONFIG.get("cluster_name"))
AUTO_ASSIGN = bool(REGISTRY_CONFIG.get("auto_assign"))
IP_POOL_START = str(REGISTRY_CONFIG.get("ip_pool_start"))
IP_POOL_END = str(REGISTRY_CONFIG.get("ip_pool_end"))
STATIC_MAP_FILEPATH: Path = CONFIG_PATH / REGISTRY_CONFIG.get("static_map_file")
REGISTRY_DB_FILEPATH: Path = DB_PATH / REGISTRY_CONFIG.get("database_file")
RELOAD_DEBOUNCE_DELAY = float(REGISTRY_CONFIG.get("reload_debounce_seconds"))
INSTANCES = [
    InstanceInfo(name=str(_instance["name"]), ip=str(_instance["ip"]))
    for _instance in REGISTRY_CONFIG.get("instances")
]
NETWORK_CONFIGURATION = dict(REGISTRY_CONFIG.get("network_configuration"))

STATS_DB_FILEPATH: Path = DB_PATH / config.get("stats").get("database_file")

BOOTP_REQUEST = 1
BOOT_MESSAGE = f"Bootsmith ({VERSION})"


dhcp_logger: Logger = MainLogger.get_logger(service_name="DHCP", log_level="debug")
registry_logger: Logger = MainLogger.get_logger(service_name="REGISTRY", log_level="info")


class DHCPServer:
    """Sniffs DHCP requests, answers them through `DHCPMessageHandler`.

    One listener thread feeds a bounded queue, `WORKERS` threads drain it.
    Frames repeated within `DEDUP_TTL` seconds (same xid, MAC and type) are
    handled once; later retransmissions are handled again.
    """

    _lock = RLock()
    _workers = {}
    _stop = Event()
    timestamp: float
    initialised = False
    running = False
    handler: DHCPMessageHandler
    registry: MachineStorage
    stats: DHCPStats
    _static_map_observer: BaseObserver | None = None

    @classmethod
    def init(
        cls,
        received_queue_size=RECEIVED_QUEUE_SIZE,
        dedup_cache_size=DEDUP_CACHE_SIZE,
        dedup_ttl=DEDUP_TTL,
    ) -> None:

        if cls.initialised:
            raise RuntimeError("Already Init")

        cls._received_queue = Queue(maxsize=received_queue_size)
        cls._dedup_cache = TTLCache(maxsize=dedup_cache_size, ttl=dedup_ttl)

        cls._static_map = Config(path=STATIC_MAP_FILEPATH)
        cls.registry = MachineStorage(
            logger=registry_logger,
            cluster_name=CLUSTER_NAME,
            instances=INSTANCES,
            ip_pool_start=IP_POOL_START,
            ip_pool_end=IP_POOL_END,
            auto_assign=AUTO_ASSIGN,
            static_map=cls._static_map.get_config(),
            path=REGISTRY_DB_FILEPATH,
        )
        try:
            cls.registry.get_variable(SPECIAL_KEY_NETWORK_CONFIGURATION)
        except VariableNotFound:
            cls.registry.set_variable(
                SPECIAL_KEY_NETWORK_CONFIGURATION, dumps(NETWORK_CONFIGURATION)
            )

        cls.stats = DHCPStats(logger=dhcp_logger)
        DHCPResponseFactory.init(
            server_ip=SERVER_IP,
            server_mac=SERVER_MAC,
            port=PORT,
            client_port=CLIENT_PORT,
            broadcast_mac=BROADCAST_MAC,
            broadcast_ip=BROADCAST_IP,
        )
        cls.handler = DHCPMessageHandler(
            server_ip=SERVER_IP,
            registry=cls.registry,
            lease_policy=LeasePolicy(
                min_lease_hours=MIN_LEASE_HOURS,
                max_lease_hours=MAX_LEASE_HOURS,
                rng=Random(time_ns()),
            ),
            pxe_builder=PXEOptionBuilder(server_ip=SERVER_IP, boot_message=BOOT_MESSAGE),
            logger=dhcp_logger,
            stats=cls.stats,
        )

        cls.initialised = True

    @classmethod
    def start(cls):
        """Start all necessary threads"""

        if not cls.initialised:
            raise RuntimeError("Not init.")
        if cls.running:
            raise RuntimeError("Server already running.")
        cls.running = True
        cls.timestamp = time()
        cls._stop.clear()

        with cls._lock:
            cls._static_map_observer = start_file_watcher(
                file_path=STATIC_MAP_FILEPATH,
                reload_delay=RELOAD_DEBOUNCE_DELAY,
                reload_function=cls._reload_static_map,
            )

            _traffic_listener = Thread(
                target=cls._traffic_listener, name="dhcp-traffic-listener", daemon=True
            )
            _traffic_listener.start()
            cls._workers["dhcp-traffic-listener"] = _traffic_listener

            for _index in range(WORKERS):
                _worker = Thread(
                    target=cls._processor, name=f"dhcp-worker-{_index}", daemon=True
                )
                _worker.start()
                cls._workers[f"dhcp-worker-{_index}"] = _worker
            dhcp_logger.info(
                "Started %s on %s:%s (interface: %s).",
                cls.__name__,
                SERVER_IP,
                PORT,
                INTERFACE,
            )

    @classmethod
    def stop(cls, worker_join_timeout=WORKER_JOIN_TIMEOUT):

        if not cls.running:
            raise RuntimeError("Server not running.")

        with cls._lock:
            cls.running = False
            cls._stop.set()
            if cls._static_map_observer is not None:
                cls._static_map_observer.stop()
                cls._static_map_observer.join(timeout=worker_join_timeout)
                cls._static_map_observer = None
            for _name, thread in cls._workers.items():
                if thread.is_alive():
                    thread.join(timeout=worker_join_timeout)
            cls._workers.clear()

            try:
                cls.registry.save_to_disk(REGISTRY_DB_FILEPATH)
                cls.stats.save_to_disk(STATS_DB_FILEPATH)
            except Exception as err:
                dhcp_logger.error("Failed to persist state: %s.", err)
            dhcp_logger.info("Stopped %s.", cls.__name__)

    @classmethod
    def _reload_static_map(cls):
        try:
            cls._static_map.reload()
            cls.registry.load_static_map(cls._static_map.get_config())
        except Exception as err:
            registry_logger.error("Static map reload failed: %s.", err)

    @classmethod
    def _traffic_listener(cls, interface=INTERFACE, port=PORT):
        """Start sniffing for DHCP packets on the interface"""
        try:
            sniff(
                iface=interface,
                filter=f"ip and udp and dst port {port}",
                prn=cls._listen,
                stop_filter=lambda _: not cls.running,
                store=False,
            )
        except Exception as err:
            dhcp_logger.critical("Cannot listen on %s:%s: %s.", interface, port, err)
            raise

    @classmethod
    def _listen(cls, packet: Packet):
        """Callback for sniffed DHCP packets; enqueues into processing queue."""
        try:
            if BOOTP not in packet or packet[BOOTP].op != BOOTP_REQUEST:
                return
            if (
                Ether in packet and packet[Ether].src.lower() == SERVER_MAC.lower()
            ) or (IP in packet and packet[IP].src == SERVER_IP):
                return
            cls._received_queue.put_nowait(packet)
        except Full:
            dhcp_logger.warning("Queue full.")
        except Exception as err:
            dhcp_logger.exception("Couldn't enqueue DHCP packet: %s.", err)

    @classmethod
    def _processor(cls, worker_get_timeout=WORKER_GET_TIMEOUT):
        """Main processor function multi threaded."""

        while cls.running:
            _packet = None
            try:
                _packet = cls._received_queue.get(timeout=worker_get_timeout)
                dhcp_message = DHCPMessage(_packet)

                with cls._lock:
                    if dhcp_message.dedup_key in cls._dedup_cache:
                        continue
                    cls._dedup_cache[dhcp_message.dedup_key] = True

                reply = cls.handler.handle_message(dhcp_message)
                if reply is not None:
                    cls._send_response(reply)

            except Empty:
                continue
            except Exception as err:
                dhcp_logger.error("%s processing %s.", current_thread().name, err)
            finally:
                if _packet is not None:
                    cls._received_queue.task_done()

    @classmethod
    def _send_response(cls, reply: DHCPReply):
        """Frame `reply` and send it on the configured interface."""
        try:
            packet = DHCPResponseFactory.build(reply)
            sendp(packet, iface=INTERFACE, verbose=False)
            cls.stats.increment("sent_total")
            cls.stats.increment("sent_offer" if reply.dhcp_type == DHCPType.OFFER else "sent_ack")
            dhcp_logger.debug(
                "Send TYPE:%s, XID:%s, CHADDR:%s, YIADDR:%s, LEASE:%s.",
                reply.dhcp_type,
                reply.request.xid,
                reply.request.mac,
                reply.your_ip,
                reply.lease_time,
            )
        except Exception as err:
            cls.stats.increment("sent_failed")
            dhcp_logger.error("Failed to send DHCP response %s", err)
