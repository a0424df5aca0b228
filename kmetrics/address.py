"""Choosing the address to connect to a node by address-type priority."""

from __future__ import annotations

from collections.abc import Iterable

from kmetrics.types import Node, NodeAddressType

# Overrides first, then internal before external, DNS before IPs.
DEFAULT_ADDRESS_TYPE_PRIORITY: tuple[NodeAddressType, ...] = (
    NodeAddressType.HOSTNAME,
    NodeAddressType.INTERNAL_DNS,
    NodeAddressType.INTERNAL_IP,
    NodeAddressType.EXTERNAL_DNS,
    NodeAddressType.EXTERNAL_IP,
)


class PriorityNodeAddressResolver:
    """Resolves a node address by type priority, then by order within a type."""

    def __init__(self, type_priority: Iterable[NodeAddressType] = DEFAULT_ADDRESS_TYPE_PRIORITY) -> None:
        self.type_priority: tuple[NodeAddressType, ...] = tuple(type_priority)

    def node_address(self, node: Node) -> str:
        """Return the preferred address; raise LookupError if no type matches."""
        for addr_type in self.type_priority:
            match = next((a.address for a in node.addresses if a.type == addr_type), None)
            if match is not None:
                return match
        names = [t.value for t in self.type_priority]
        raise LookupError(f"no address matched types {names}")