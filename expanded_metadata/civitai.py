import asyncio

import aiohttp

CIVITAI_SOURCE = "civitai"


def build_session(user_agent: str, timeout: float, token: str | None = None) -> aiohttp.ClientSession:
    headers = {"User-Agent": user_agent}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return aiohttp.ClientSession(
        headers=headers,
        timeout=aiohttp.ClientTimeout(total=timeout),
    )


class CivitaiClient:
    """CivitAI v1 lookups by hash, with AutoV2 tried before AutoV3."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str, web_url: str = "https://civitai.com"):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.web_url = web_url.rstrip("/")

    async def _get_json(self, url: str) -> dict | None:
        try:
            async with self.session.get(url) as response:
                if response.status < 200 or response.status >= 300:
                    print(f"[ExpandedMetadata] [DEBUG] CivitAI returned {response.status} for {url}")
                    return None
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            print(f"[ExpandedMetadata] [WARN] CivitAI request failed for {url}: {e}")
            return None
        if not isinstance(data, dict):
            print(f"[ExpandedMetadata] [WARN] CivitAI returned a non-object body for {url}")
            return None
        return data

    async def fetch_version_by_hash(self, short_hash: str) -> dict | None:
        return await self._get_json(f"{self.base_url}/model-versions/by-hash/{short_hash}")

    async def fetch_model(self, model_id) -> dict | None:
        return await self._get_json(f"{self.base_url}/models/{model_id}")

    def model_url(self, data: dict) -> str:
        return f"{self.web_url}/models/{data.get('modelId')}?modelVersionId={data.get('id')}"

    async def lookup(self, autov2_short: str | None, autov3_short: str | None) -> dict | None:
        """
        Look a model up by hash. Returns the civitai section of the metadata
        document, or None when nothing matched.
        """
        candidates = [h for h in (autov2_short, autov3_short) if h]
        data = None
        hash_used = None
        for candidate in candidates[:2]:
            data = await self.fetch_version_by_hash(candidate)
            if data is not None:
                hash_used = candidate
                break
        if data is None:
            print(f"[ExpandedMetadata] [INFO] No CivitAI match for {', '.join(candidates) or 'empty hashes'}")
            return None

        if data.get("modelId") is not None:
            model = await self.fetch_model(data["modelId"])
            if model is not None:
                data["model"] = model

        print(f"[ExpandedMetadata] [INFO] CivitAI match via {hash_used}: modelId={data.get('modelId')} versionId={data.get('id')}")
        return {
            "source": CIVITAI_SOURCE,
            "data": data,
            "hash_used": hash_used,
            "model_url": self.model_url(data),
        }
