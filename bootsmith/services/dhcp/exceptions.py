"""Reasons for the handler to drop a message without replying.

None of these are fatal: the client retransmits and the exchange recovers.
Each carries the log level the handler reports it at.
"""

import logging


class DHCPDropError(Exception):
    """Base class for every silent drop."""

    log_level: int = logging.DEBUG

    def __init__(self, message: str, log_level: int | None = None):
        super().__init__(message)
        if log_level is not None:
            self.log_level = log_level


class ForeignServer(DHCPDropError):
    """Server identifier names another DHCP server."""


class UnresolvableClient(DHCPDropError):
    """Registry could not provide a machine for the hardware address."""


class MalformedConfiguration(DHCPDropError):
    """Network configuration is missing or cannot be parsed."""

    log_level = logging.INFO


class AddressMismatch(DHCPDropError):
    """Requested address is malformed or differs from the assigned one."""

    log_level = logging.INFO
