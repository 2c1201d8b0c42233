import logging
import time
import httpx
from typing import Any, Dict, List, Optional
from ..config import settings
from ..errors import VendorRejected, VendorUnreachable
from ..retry import BackoffSchedule, retry_call

logger = logging.getLogger(__name__)

def _raw(resp: httpx.Response) -> str:
    return f"HTTP {resp.status_code}: {resp.text}"

class DeviceApiClient:
    """
    Thin async wrapper over the device-management API. Returns raw vendor
    payloads; interpretation lives in normalize.py.
    """
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(
            base_url=settings.DEVICE_API_BASE_URL.rstrip('/'),
            headers={
                "Authorization": f"{settings.DEVICE_API_AUTH_SCHEME} {settings.DEVICE_API_TOKEN}",
                "Accept": "application/json",
            },
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )
        # Screenshot URLs are usually pre-signed on another host; no auth header
        self.media = httpx.AsyncClient(
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            follow_redirects=True,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()
        await self.media.aclose()

    def _read_schedule(self) -> BackoffSchedule:
        return BackoffSchedule(settings.VENDOR_RETRY_DELAYS_SECONDS, settings.VENDOR_RETRY_DEADLINE_SECONDS)

    async def _request(self, method: str, path: str, json: Optional[Dict] = None, allow_404: bool = False) -> Optional[Any]:
        try:
            resp = await self.client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise VendorUnreachable(f"{method} {path} timed out", raw=repr(e))
        except httpx.TransportError as e:
            raise VendorUnreachable(f"{method} {path} failed: {e}", raw=repr(e))

        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            raise VendorUnreachable(f"{method} {path} returned {resp.status_code}", raw=_raw(resp))
        if resp.status_code >= 400:
            raise VendorRejected(f"{method} {path} rejected with {resp.status_code}", raw=_raw(resp), status_code=resp.status_code)

        if resp.status_code == 204 or not resp.content:
            return {}
        content_type = resp.headers.get("content-type", "")
        text = resp.text
        # Login pages and proxy errors come back as HTML with a 200
        if "json" not in content_type or text.lstrip().startswith("<"):
            raise VendorRejected(f"{method} {path} returned non-JSON response", raw=_raw(resp), status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError:
            raise VendorRejected(f"{method} {path} returned invalid JSON", raw=_raw(resp), status_code=resp.status_code)

    async def _get(self, path: str, allow_404: bool = False) -> Optional[Any]:
        return await retry_call(
            lambda: self._request("GET", path, allow_404=allow_404),
            self._read_schedule(),
            retry_on=(VendorUnreachable,),
            label=f"GET {path}",
        )

    # Screens

    async def get_screen(self, device_id: str) -> Dict:
        data = await self._get(f"/screens/{device_id}/")
        if not isinstance(data, dict):
            raise VendorRejected(f"Screen {device_id} payload is not an object", raw=repr(data)[:500])
        return data

    async def patch_screen(self, device_id: str, payload: Dict) -> Any:
        logger.debug(f"PATCH screen {device_id}: {payload}")
        return await self._request("PATCH", f"/screens/{device_id}/", json=payload)

    async def push_screen(self, device_id: str) -> Any:
        return await self._request("POST", f"/screens/{device_id}/push/")

    async def get_screenshot(self, device_id: str) -> Optional[Any]:
        return await self._get(f"/screens/{device_id}/screenshot/", allow_404=True)

    # Sequences (playlists on the vendor side)

    async def get_sequence(self, sequence_id: str) -> Optional[Dict]:
        return await self._get(f"/playlists/{sequence_id}/", allow_404=True)

    async def find_sequences_by_name(self, name: str) -> List[Dict]:
        """Exact-name matches across all result pages."""
        matches = []
        path: Optional[str] = "/playlists/?" + str(httpx.QueryParams({"search": name}))
        pages = 0
        while path and pages < 20:
            data = await self._get(path)
            pages += 1
            if isinstance(data, list):
                results, path = data, None
            elif isinstance(data, dict):
                results = data.get("results") or []
                path = data.get("next")
            else:
                break
            matches.extend(r for r in results if isinstance(r, dict) and r.get("name") == name)
        return matches

    async def create_sequence(self, name: str) -> Dict:
        data = await self._request("POST", "/playlists/", json={"name": name, "items": []})
        if not isinstance(data, dict) or data.get("id") is None:
            raise VendorRejected(f"Create sequence '{name}' returned no id", raw=repr(data)[:500])
        return data

    async def set_sequence_items(self, sequence_id: str, items: List[Dict]) -> Any:
        return await self._request("PATCH", f"/playlists/{sequence_id}/", json={"items": items})

    # Media

    async def fetch_image(self, url: str) -> bytes:
        busted = httpx.URL(url).copy_merge_params({"_": str(int(time.time() * 1000))})
        try:
            resp = await self.media.get(busted, headers={"Accept": "image/*", "Cache-Control": "no-cache"})
        except httpx.TimeoutException as e:
            raise VendorUnreachable("Screenshot download timed out", raw=repr(e))
        except httpx.TransportError as e:
            raise VendorUnreachable(f"Screenshot download failed: {e}", raw=repr(e))
        if resp.status_code >= 400:
            err = VendorUnreachable if resp.status_code >= 500 else VendorRejected
            raise err(f"Screenshot download returned {resp.status_code}", raw=f"HTTP {resp.status_code}")
        return resp.content
