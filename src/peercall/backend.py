import httpx
import logging

logger = logging.getLogger(__name__)


class SupabaseClient:
    """HTTP client for the PostgREST tables the call manager touches.

    Call-log writes are a side channel: every method catches its own errors,
    logs them and returns a fallback so a database outage can never change
    the outcome of a call.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/rest/v1",
                headers={
                    "apikey": api_key,
                    "Authorization": f"Bearer {access_token or api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def insert_call_log(self, row: dict) -> dict:
        try:
            resp = await self._client.post(
                "/call_logs",
                json=row,
                headers={"Prefer": "return=minimal"},
            )
            resp.raise_for_status()
            return {"success": True}
        except httpx.HTTPStatusError as e:
            logger.warning("Could not log call %s: %s %s", row.get("id"), e.response.status_code, e.response.text)
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.warning("Could not log call %s: %s", row.get("id"), e)
            return {"success": False, "error": str(e)}

    async def update_call_log(self, call_id: str, fields: dict) -> dict:
        try:
            resp = await self._client.patch(
                "/call_logs",
                params={"id": f"eq.{call_id}"},
                json=fields,
                headers={"Prefer": "return=minimal"},
            )
            resp.raise_for_status()
            return {"success": True}
        except httpx.HTTPStatusError as e:
            logger.warning("Could not update call log %s: %s %s", call_id, e.response.status_code, e.response.text)
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.warning("Could not update call log %s: %s", call_id, e)
            return {"success": False, "error": str(e)}

    async def fetch_profile(self, user_id: str) -> dict:
        """Display name and avatar for a user, or {} when unavailable."""
        try:
            resp = await self._client.get(
                "/profiles",
                params={"select": "full_name,profile_image", "id": f"eq.{user_id}"},
                headers={"Accept": "application/vnd.pgrst.object+json"},
            )
            resp.raise_for_status()
            return resp.json() or {}
        except Exception as e:
            logger.warning("Profile lookup failed for %s: %s", user_id, e)
            return {}

    async def list_call_logs(self, user_id: str, limit: int = 50) -> list[dict]:
        """Calls the user placed or received, newest first."""
        try:
            resp = await self._client.get(
                "/call_logs",
                params={
                    "select": "*",
                    "or": f"(caller_id.eq.{user_id},recipient_id.eq.{user_id})",
                    "order": "started_at.desc",
                    "limit": str(limit),
                },
            )
            resp.raise_for_status()
            return resp.json()
        except Exception as e:
            logger.error("list_call_logs failed for %s: %s", user_id, e)
            return []
