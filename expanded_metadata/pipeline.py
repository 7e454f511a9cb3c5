import asyncio
import traceback

from .assets import download_media
from .civitai import CivitaiClient, build_session
from .hasher import compute_autov3, calculate_hashes, strip_hash_prefix
from .header import read_safetensors_metadata
from .model_registry import ModelReference, ModelRegistry
from .settings import Settings
from .store import MetadataStore


class MetadataPipeline:
    """
    Builds and caches the expanded metadata document for a model:
    header read, hashing, CivitAI lookup, media download, with the
    document saved after each stage.

    Runs are single-flight per document path and per model file, so
    concurrent requests for one model share a single run.
    """

    def __init__(self, settings: Settings, registry: ModelRegistry):
        self.settings = settings
        self.registry = registry
        self.store = MetadataStore(settings.metadata_dir)
        registry.load_hash_index(settings.hash_index_path)
        self._document_runs: dict[str, asyncio.Task] = {}
        self._tensor_hash_runs: dict[str, asyncio.Task] = {}

    @staticmethod
    def _join(registry: dict, key: str, factory) -> asyncio.Future:
        task = registry.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            registry[key] = task

            def _done(t, key=key):
                if registry.get(key) is t:
                    registry.pop(key, None)

            task.add_done_callback(_done)
        return asyncio.shield(task)

    async def _tensor_hash(self, ref: ModelReference) -> str | None:
        if ref.known_tensor_hash:
            return strip_hash_prefix(ref.known_tensor_hash)

        async def _compute():
            print(f"[ExpandedMetadata] [INFO] Hash not cached for {ref.display_name}, calculating...")
            digest = await asyncio.to_thread(compute_autov3, ref.file_path)
            await asyncio.to_thread(self.registry.remember_tensor_hash, ref.file_path, digest)
            return digest

        try:
            return await self._join(self._tensor_hash_runs, ref.file_path, _compute)
        except Exception as e:
            print(f"[ExpandedMetadata] [WARN] Could not get tensor hash for {ref.display_name}: {e}")
            return None

    async def document_path(self, ref: ModelReference) -> str:
        digest = await self._tensor_hash(ref)
        ref.known_tensor_hash = digest
        return await asyncio.to_thread(self.store.resolve_path, ref.display_name, digest)

    async def get_metadata(self, model_path: str, subtype: str | None = None) -> dict:
        """Return the cached document for a model, building it on a miss."""
        ref = self.registry.resolve(model_path, subtype)
        print(f"[ExpandedMetadata] [DEBUG] Model found: {ref.model_path} ({ref.subtype})")
        path = await self.document_path(ref)
        return await self._join(self._document_runs, path, lambda: self._load_or_create(ref, path))

    async def _load_or_create(self, ref: ModelReference, path: str) -> dict:
        cached = await asyncio.to_thread(self.store.load, path)
        if cached is not None:
            return cached
        return await self.create_document(ref, path)

    async def refresh_metadata(self, model_path: str, subtype: str | None = None) -> dict:
        """Discard any cached document for a model and build it again."""
        ref = self.registry.resolve(model_path, subtype)
        path = await self.document_path(ref)
        running = self._document_runs.get(path)
        if running is not None:
            # Let the current run finish before deleting its document
            await asyncio.shield(running)
            running = self._document_runs.get(path)
            if running is not None:
                print(f"[ExpandedMetadata] [DEBUG] Refresh joined in-flight rebuild for {ref.display_name}")
                return await asyncio.shield(running)
        self.store.invalidate(path)
        return await self._join(self._document_runs, path, lambda: self.create_document(ref, path))

    async def _save(self, path: str, document: dict):
        await asyncio.to_thread(self.store.save, path, document)

    async def create_document(self, ref: ModelReference, path: str) -> dict:
        document = {}
        try:
            document["file_name"] = ref.file_name
            document["file_path"] = ref.file_path
            document["file_metadata"] = await asyncio.to_thread(read_safetensors_metadata, ref.file_path)
            await self._save(path, document)

            hashes = await asyncio.to_thread(calculate_hashes, ref.file_path, ref.known_tensor_hash)
            document["hashes"] = hashes
            if hashes.get("sha256_autov3"):
                await asyncio.to_thread(self.registry.remember_tensor_hash, ref.file_path, hashes["sha256_autov3"])
            await self._save(path, document)

            civitai = await self.lookup_civitai(hashes)
            if civitai is not None:
                document["civitai"] = civitai
                if self.settings.download_images:
                    await self.download_images(civitai, hashes.get("autov3_short", ""))

            await self._save(path, document)
            return document
        except Exception as e:
            print(f"[ExpandedMetadata] [ERROR] Failed to create expanded metadata for {ref.file_path}: {e}")
            print(f"[ExpandedMetadata] [ERROR] Traceback: {traceback.format_exc()}")
            document["error"] = str(e) if str(e) else repr(e)
            return document

    async def lookup_civitai(self, hashes: dict) -> dict | None:
        autov2_short = hashes.get("autov2_short") or ""
        autov3_short = hashes.get("autov3_short") or ""
        if not autov2_short and not autov3_short:
            return None
        async with build_session(
            self.settings.user_agent,
            self.settings.request_timeout,
            self.settings.civitai_token,
        ) as session:
            client = CivitaiClient(session, self.settings.civitai_base_url, self.settings.civitai_web_url)
            return await client.lookup(autov2_short, autov3_short)

    async def download_images(self, civitai: dict, identifier: str) -> int:
        images = (civitai.get("data") or {}).get("images")
        if not isinstance(images, list) or not images:
            return 0
        async with build_session(self.settings.user_agent, self.settings.download_timeout) as session:
            return await download_media(
                session,
                images,
                self.settings.images_dir,
                identifier,
                delay=self.settings.download_delay,
                timeout=self.settings.download_timeout,
            )
