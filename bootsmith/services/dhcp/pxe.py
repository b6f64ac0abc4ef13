"""PXE vendor options carried in DHCP option 43.

Layout of the payload (Intel PXE 2.1, table 2-1):

    6  discovery control   1 byte,  3 = no broadcast/multicast discovery
    8  boot servers        type 0x8000, count 1, server address
    9  boot menu           type 0x8000, item 9, label
    10 menu prompt         timeout 2s, prompt
    255 end
"""

from struct import pack

from bootsmith.services.dhcp.utils import ip_to_bytes

PXE_DISCOVERY_CONTROL = 6
PXE_BOOT_SERVERS = 8
PXE_BOOT_MENU = 9
PXE_MENU_PROMPT = 10
PXE_END = 255

DISCOVERY_DISABLE_BROADCAST_MULTICAST = 0x03
BOOT_SERVER_TYPE_ANY = 0x8000
BOOT_MENU_ITEM = 9
MENU_PROMPT_TIMEOUT = 2

# Boot menu adds 3 bytes of type and item before the label.
BOOT_MENU_LABEL_MAX = 255 - 3
# The whole payload is one option 43 value: 21 fixed bytes plus the message twice.
PXE_PAYLOAD_FIXED_LEN = 21
BOOT_MESSAGE_MAX = min(BOOT_MENU_LABEL_MAX, (255 - PXE_PAYLOAD_FIXED_LEN) // 2)


class PXEOptionBuilder:
    """Builds the vendor specific information payload for PXE clients."""

    def __init__(self, server_ip: str, boot_message: str):
        self.server_ip = server_ip
        self._server_ip_bytes = ip_to_bytes(server_ip)
        self.boot_message = boot_message
        self._label = boot_message.encode()
        if len(self._label) > BOOT_MESSAGE_MAX:
            raise ValueError(
                f"Boot message is {len(self._label)} bytes, at most {BOOT_MESSAGE_MAX} fit a PXE option."
            )

    def discovery_control(self) -> bytes:
        return bytes([PXE_DISCOVERY_CONTROL, 1, DISCOVERY_DISABLE_BROADCAST_MULTICAST])

    def boot_servers(self) -> bytes:
        return pack("!BBHB", PXE_BOOT_SERVERS, 7, BOOT_SERVER_TYPE_ANY, 1) + self._server_ip_bytes

    def boot_menu(self) -> bytes:
        return (
            pack("!BBHB", PXE_BOOT_MENU, 3 + len(self._label), BOOT_SERVER_TYPE_ANY, BOOT_MENU_ITEM)
            + self._label
        )

    def menu_prompt(self) -> bytes:
        return pack("!BBB", PXE_MENU_PROMPT, 1 + len(self._label), MENU_PROMPT_TIMEOUT) + self._label

    def build(self) -> bytes:
        return b"".join(
            (
                self.discovery_control(),
                self.boot_servers(),
                self.boot_menu(),
                self.menu_prompt(),
                bytes([PXE_END]),
            )
        )
