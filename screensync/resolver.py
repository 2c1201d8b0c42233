import logging

from .errors import NotLinked
from .models import DeviceIdentity

logger = logging.getLogger(__name__)

class IdentityResolver:
    def __init__(self, directory):
        self.directory = directory

    async def resolve(self, location_id: str) -> DeviceIdentity:
        binding = await self.directory.get_device_binding(location_id)
        if binding is None or not binding.device_id:
            logger.info(f"Location {location_id} has no linked device")
            raise NotLinked(f"Location {location_id} is not linked to a device")
        return DeviceIdentity(
            location_id=location_id,
            device_id=binding.device_id,
            sequence_id=binding.sequence_id,
        )
