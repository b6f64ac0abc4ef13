from collections.abc import Iterable


class ReplyOptions:
    """Ordered set of reply options, one value per code.

    Selection follows RFC 2131 section 4.3.1: with a parameter request list
    the client's order wins and codes we do not have are skipped, without one
    every option is returned in insertion order.
    """

    def __init__(self):
        self._options: dict[int, bytes] = {}

    def add(self, code: int, value: bytes) -> "ReplyOptions":
        if not 0 < int(code) < 255:
            raise ValueError(f"Invalid option code {code}.")
        if len(value) > 255:
            raise ValueError(f"Option {int(code)} value is {len(value)} bytes, at most 255 fit.")
        self._options[int(code)] = bytes(value)
        return self

    def get(self, code: int) -> bytes | None:
        return self._options.get(int(code))

    def __contains__(self, code: int) -> bool:
        return int(code) in self._options

    def __len__(self) -> int:
        return len(self._options)

    def items(self) -> list[tuple[int, bytes]]:
        return list(self._options.items())

    def select_order_or_all(self, requested: Iterable[int] | None) -> list[tuple[int, bytes]]:
        if requested is None:
            return self.items()
        return self.select_order(requested)

    def select_order(self, requested: Iterable[int]) -> list[tuple[int, bytes]]:
        _selected: list[tuple[int, bytes]] = []
        _seen: set[int] = set()
        for code in requested:
            if code in _seen or code not in self._options:
                continue
            _seen.add(code)
            _selected.append((code, self._options[code]))
        return _selected
