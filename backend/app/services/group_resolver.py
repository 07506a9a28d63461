"""
Group Capacity Resolver
Places new device entries into capacity-bounded device groups
"""

import asyncio
import structlog
from typing import Dict, Optional

from app.services.gateway import DeviceGateway

logger = structlog.get_logger()


class GroupCapacityResolver:
    """Shards trusted devices across prefixed device groups"""

    def __init__(self, gateway: DeviceGateway, prefix: str, capacity: int):
        self.gateway = gateway
        self.prefix = prefix
        self.capacity = capacity

    def group_index(self, group_name: str) -> Optional[int]:
        """Numeric suffix of a managed group name, None if it has none"""
        suffix = group_name[len(self.prefix):]
        if not group_name.startswith(self.prefix) or not suffix.isdigit():
            return None
        return int(suffix)

    async def occupancy(self) -> Dict[int, int]:
        """Device count per managed group index"""
        groups = {}
        for name in await self.gateway.query_group_containers():
            index = self.group_index(name)
            if index is not None:
                groups[index] = name

        indexes = sorted(groups)
        counts = await asyncio.gather(*(self.gateway.query_devices(groups[i]) for i in indexes))
        return {index: len(devices) for index, devices in zip(indexes, counts)}

    async def resolve_target_container(self) -> str:
        """
        Name of a device group with free capacity

        Occupancy is queried on every call, nothing is reserved, so
        concurrent callers can overshoot the capacity bound.

        Returns:
            Group name, created on the proxy if every group is full
        """
        occupancy = await self.occupancy()

        if not occupancy:
            return await self.gateway.create_group_container(f"{self.prefix}0")

        for index in sorted(occupancy):
            if occupancy[index] < self.capacity:
                return f"{self.prefix}{index}"

        next_index = max(occupancy) + 1
        logger.info(
            "All device groups at capacity",
            groups=len(occupancy),
            capacity=self.capacity,
            next_group=f"{self.prefix}{next_index}",
        )
        return await self.gateway.create_group_container(f"{self.prefix}{next_index}")
