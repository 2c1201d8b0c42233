import logging
import httpx
from typing import Dict, List, Optional
from ..config import settings
from ..errors import VendorRejected, VendorUnreachable
from ..models import ApprovedAd, BaselineItem, DeviceBinding

logger = logging.getLogger(__name__)

def _as_str(val) -> Optional[str]:
    if val is None or val == "":
        return None
    return str(val)

class HostApiClient:
    """
    Client for the host application that owns locations, contracts and ad
    approval. Implements the location directory, approved-ads and baseline
    provider interfaces consumed by the engine.
    """
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"Accept": "application/json"}
        if settings.HOST_API_TOKEN:
            headers["Authorization"] = f"Bearer {settings.HOST_API_TOKEN}"
        self.client = httpx.AsyncClient(
            base_url=settings.HOST_API_BASE_URL.rstrip('/'),
            headers=headers,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def _call(self, method: str, path: str, json: Optional[Dict] = None, allow_404: bool = False):
        try:
            resp = await self.client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise VendorUnreachable(f"Host API {method} {path} timed out", raw=repr(e))
        except httpx.TransportError as e:
            raise VendorUnreachable(f"Host API {method} {path} failed: {e}", raw=repr(e))
        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 500:
            raise VendorUnreachable(f"Host API {method} {path} returned {resp.status_code}", raw=resp.text)
        if resp.status_code >= 400:
            raise VendorRejected(f"Host API {method} {path} rejected with {resp.status_code}", raw=resp.text, status_code=resp.status_code)
        if not resp.content:
            return {}
        # Login pages and proxy errors come back as HTML with a 200
        if "json" not in resp.headers.get("content-type", "") or resp.text.lstrip().startswith("<"):
            raise VendorRejected(f"Host API {method} {path} returned non-JSON response", raw=resp.text, status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError:
            raise VendorRejected(f"Host API {method} {path} returned invalid JSON", raw=resp.text, status_code=resp.status_code)

    # Location directory

    async def get_device_binding(self, location_id: str) -> Optional[DeviceBinding]:
        data = await self._call("GET", f"/locations/{location_id}/device-binding", allow_404=True)
        if not data:
            return None
        # Older host versions wrap the binding
        data = data.get("binding", data)
        return DeviceBinding(
            location_id=location_id,
            device_id=_as_str(data.get("deviceId") or data.get("device_id")),
            sequence_id=_as_str(data.get("sequenceId") or data.get("sequence_id")),
        )

    async def set_sequence_id(self, location_id: str, sequence_id: str):
        await self._call("PUT", f"/locations/{location_id}/device-binding/sequence", json={"sequenceId": sequence_id})
        logger.info(f"Stored sequence {sequence_id} for location {location_id}")

    async def list_location_ids(self) -> List[str]:
        data = await self._call("GET", "/locations?linked=true")
        rows = data if isinstance(data, list) else (data or {}).get("locations", [])
        ids = []
        for row in rows:
            if isinstance(row, dict):
                loc_id = _as_str(row.get("id"))
            else:
                loc_id = _as_str(row)
            if loc_id:
                ids.append(loc_id)
        return ids

    # Approved ads

    async def get_approved_ads(self, location_id: str) -> List[ApprovedAd]:
        data = await self._call("GET", f"/locations/{location_id}/approved-ads")
        rows = data if isinstance(data, list) else (data or {}).get("ads", [])
        ads = []
        for row in rows:
            media_id = _as_str(row.get("mediaId") or row.get("media_id"))
            if not media_id:
                logger.warning(f"Skipping approved ad without media id for location {location_id}: {row}")
                continue
            ads.append(ApprovedAd(
                media_id=media_id,
                duration_seconds=row.get("durationSeconds") or row.get("duration_seconds"),
                active=row.get("active", True),
            ))
        return ads

    async def get_ad_slot_count(self, location_id: str) -> Optional[int]:
        data = await self._call("GET", f"/locations/{location_id}/contract", allow_404=True)
        if not data:
            return None
        slots = data.get("adSlots", data.get("ad_slots"))
        try:
            return int(slots) if slots is not None else None
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric slot count {slots!r} for location {location_id}")
            return None

    # Baseline

    async def get_baseline_items(self) -> List[BaselineItem]:
        data = await self._call("GET", "/baseline/items")
        rows = data if isinstance(data, list) else (data or {}).get("items", [])
        items = []
        for row in rows:
            media_id = _as_str(row.get("mediaId") or row.get("media_id"))
            if media_id:
                items.append(BaselineItem(
                    media_id=media_id,
                    duration_seconds=row.get("durationSeconds") or row.get("duration_seconds"),
                ))
        return items
