"""
Propagates the list of store names to the static site's build environment.

The deployed site reads a comma-separated ``REPOS`` variable from its
Cloudflare Pages project to know which repositories to pull images from.
Every call here is best-effort: failures are logged and reported in the
result, never raised.
"""

from typing import Any, Optional

import aiohttp
from loguru import logger

REPOS_VARIABLE = "REPOS"


class PagesDiscovery:
    def __init__(
        self,
        api_token: str,
        account_id: str,
        project_name: str,
        api_url: str = "https://api.cloudflare.com/client/v4",
        current_repos: str = "",
        timeout: float = 15.0,
    ):
        self.api_token = api_token
        self.account_id = account_id
        self.project_name = project_name
        self.api_url = api_url.rstrip("/")
        self.current_repos = current_repos
        self.timeout = timeout

    @property
    def variables_url(self) -> str:
        return (
            f"{self.api_url}/accounts/{self.account_id}/pages/projects/"
            f"{self.project_name}/deployments/settings/environment_variables"
        )

    async def _call(self, method: str, payload: Optional[list] = None) -> Any:
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        async with aiohttp.ClientSession(
            headers=headers, timeout=aiohttp.ClientTimeout(total=self.timeout)
        ) as session:
            async with session.request(method, self.variables_url, json=payload) as response:
                result = await response.json(content_type=None)
                if response.status >= 400 or not result.get("success"):
                    errors = result.get("errors") or [{}]
                    raise RuntimeError(
                        f"{method} environment variables failed ({response.status}): "
                        f"{errors[0].get('message', 'unknown error')}"
                    )
                return result.get("result") or []

    async def get_variables(self) -> list[dict]:
        return await self._call("GET")

    async def set_variable(self, key: str, value: str) -> None:
        current = await self.get_variables()
        updated = []
        found = False
        for var in current:
            if var.get("name") == key:
                updated.append({"name": key, "value": value, "type": var.get("type") or "plain_text"})
                found = True
            else:
                updated.append(var)
        if not found:
            updated.append({"name": key, "value": value, "type": "plain_text"})

        await self._call("PUT", updated)
        logger.info(f"Environment variable {key} updated on Pages project {self.project_name}")

    async def add_store(self, store_name: str) -> dict:
        try:
            repos = [name.strip() for name in self.current_repos.split(",") if name.strip()]
            if store_name in repos:
                logger.debug(f"{store_name} already listed in {REPOS_VARIABLE}")
                return {"success": True, "changed": False}

            repos.append(store_name)
            value = ",".join(repos)
            await self.set_variable(REPOS_VARIABLE, value)
            self.current_repos = value
            return {"success": True, "changed": True, "value": value}
        except Exception as e:
            logger.error(f"Failed to propagate store {store_name} to {REPOS_VARIABLE}: {e}")
            return {"success": False, "error": str(e)}
