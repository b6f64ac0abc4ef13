from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, model_validator

from bootsmith.services.dhcp.network_config import NetworkConfiguration


class Meta(BaseModel):
    name: str
    version: str


class Paths(BaseModel):
    root: str
    database: str


class DHCPTimeouts(BaseModel):
    worker_get: float
    worker_join: float


class DHCP(BaseModel):
    interface: Optional[str] = None
    ip: IPvAnyAddress
    mac: str
    port: int = 67
    client_port: int = 68
    broadcast_ip: IPvAnyAddress
    broadcast_mac: str
    min_lease_hours: int = Field(default=24, ge=0)
    max_lease_hours: int = Field(default=48, gt=0)
    workers: int = Field(default=4, gt=0)
    rcvd_queue_size: int = Field(default=512, gt=0)
    dedup_cache_size: int = Field(default=1024, gt=0)
    dedup_ttl_seconds: float = Field(default=2, gt=0)
    timeouts: DHCPTimeouts

    @model_validator(mode="after")
    def check_lease_bounds(self) -> "DHCP":
        if self.min_lease_hours >= self.max_lease_hours:
            raise ValueError("min_lease_hours must be lower than max_lease_hours")
        return self


class Instance(BaseModel):
    name: str
    ip: IPvAnyAddress


class Registry(BaseModel):
    cluster_name: str
    auto_assign: bool = True
    ip_pool_start: IPvAnyAddress
    ip_pool_end: IPvAnyAddress
    static_map_file: str
    database_file: str
    reload_debounce_seconds: float = 3.0
    instances: List[Instance]
    network_configuration: NetworkConfiguration


class Stats(BaseModel):
    database_file: str


class Logging(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: int
    disable_existing_loggers: bool = False
    formatters: Dict[str, Dict[str, str]]
    handlers: Dict[str, Dict[str, Any]]
    root: Dict[str, List[str] | str]


class ConfigSchema(BaseModel):
    meta: Meta
    paths: Paths
    dhcp: DHCP
    registry: Registry
    stats: Stats
    logging: Logging
