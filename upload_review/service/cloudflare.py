from typing import Optional

import httpx

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"


class CloudflarePurgeError(Exception):
    pass


def purge_path(prefix: str, file_name: str) -> str:
    return f"/{prefix}{file_name}"


class CloudflarePurger:
    """Secondary cache purge. Treated as best-effort during approval."""

    def __init__(
        self,
        token: str,
        zone_id: str,
        base_url: str = CLOUDFLARE_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self._token = token
        self._zone_id = zone_id
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    async def purge(self, path: str) -> None:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        url = f"{self._base_url}/zones/{self._zone_id}/purge_cache"

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                resp = await client.post(url, json={"files": [path]}, headers=headers)
        except httpx.RequestError as e:
            raise CloudflarePurgeError(f"Failed to reach Cloudflare: {str(e)}") from e

        if resp.status_code != 200:
            raise CloudflarePurgeError(f"Cloudflare purge returned {resp.status_code}")

        data = resp.json()
        if not data.get("success"):
            errors = ", ".join(str(err.get("message")) for err in data.get("errors", []))
            raise CloudflarePurgeError(f"Cloudflare purge failed: {errors or 'unknown error'}")
