"""
Post-write deployment fan-out.

Every known store may carry its own deploy hook (a URL that rebuilds the
static site). After a write, each hook is POSTed concurrently and the
outcome of every call is collected. A partial deployment is still useful,
so the overall result is a success as soon as one hook succeeded.
"""

import asyncio
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Union

import aiohttp
from loguru import logger

from pixrepo.metadata import MetadataStore

ENV_HOOK_ID = "env"
ENV_HOOK_NAME = "environment-hook"


@dataclass
class HookResult:
    store_id: Union[int, str]
    store_name: str
    success: bool
    error: Optional[str] = None
    response: Any = None


@dataclass
class DeployResult:
    overall_success: bool
    results: list[HookResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.overall_success,
            "results": [asdict(r) for r in self.results],
        }


class DeployTriggerAggregator:
    def __init__(
        self,
        metadata: MetadataStore,
        global_hook: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.metadata = metadata
        self.global_hook = global_hook
        self.timeout = timeout

    async def _post_hook(
        self, session: aiohttp.ClientSession, store_id, store_name: str, url: str
    ) -> HookResult:
        try:
            async with session.post(url, headers={"Content-Type": "application/json"}) as response:
                text = await response.text()
                try:
                    body = json.loads(text)
                except ValueError:
                    body = text

                if response.status < 400:
                    logger.info(f"Deploy hook for {store_name} triggered ({response.status})")
                    return HookResult(store_id, store_name, True, response=body)

                logger.warning(
                    f"Deploy hook for {store_name} failed: {response.status} {text[:200]}"
                )
                return HookResult(
                    store_id,
                    store_name,
                    False,
                    error=f"Deploy hook returned {response.status}",
                    response=body,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Deploy hook request for {store_name} raised: {e!r}")
            return HookResult(store_id, store_name, False, error=f"Deploy hook request failed: {e!r}")

    async def trigger_all(self) -> DeployResult:
        try:
            stores = self.metadata.list_stores()
        except Exception as e:
            logger.error(f"Could not list stores for deploy: {e}")
            return DeployResult(overall_success=False)

        targets = []
        results = []
        if not stores:
            if self.global_hook:
                targets.append((ENV_HOOK_ID, ENV_HOOK_NAME, self.global_hook))
            else:
                logger.error("No stores registered and no global deploy hook configured")
        for store in stores:
            hook = store.deploy_hook or self.global_hook
            if not hook:
                logger.warning(f"Store {store.name} (id={store.id}) has no deploy hook")
                results.append(
                    HookResult(store.id, store.name, False, error="No deploy hook configured")
                )
                continue
            targets.append((store.id, store.name, hook))

        if targets:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                results.extend(
                    await asyncio.gather(
                        *[self._post_hook(session, sid, name, url) for sid, name, url in targets]
                    )
                )

        overall = any(r.success for r in results)
        logger.info(
            f"Deploy fan-out finished: {sum(r.success for r in results)}/{len(results)} hooks succeeded"
        )
        return DeployResult(overall_success=overall, results=results)
