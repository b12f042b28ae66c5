from __future__ import annotations

from collections.abc import Iterable

from clawfleet.errors import PortExhaustedError


class PortAllocator:
    """Hands out the lowest free port in ``[base, base + max_instances)``.

    Stateless: the set of ports in use is read from the instances table by
    the caller, under the same write lock as the insert that claims the port.
    """

    def __init__(self, base: int = 18790, max_instances: int = 100) -> None:
        self.base = base
        self.max_instances = max_instances

    def allocate(self, used: Iterable[int]) -> int:
        taken = set(used)
        for port in range(self.base, self.base + self.max_instances):
            if port not in taken:
                return port
        raise PortExhaustedError(
            f"No available ports (all {self.max_instances} slots from {self.base} are in use)"
        )
