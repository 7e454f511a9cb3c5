import asyncio
import os
import traceback

from aiohttp import web

from .assets import InvalidMediaPath, MediaPathForbidden, media_content_type, resolve_media_path
from .model_registry import ModelResolutionError, default_registry
from .pipeline import MetadataPipeline
from .settings import load_settings

API_ROUTE_BASE = "/expanded_metadata"
IMAGE_ROUTE_BASE = "/ExpandedMetadataImage"
IMAGE_CACHE_CONTROL = "public, max-age=31536000, immutable"


async def _read_params(request) -> dict:
    params = dict(request.query)
    if request.method == "POST" and request.can_read_body:
        try:
            data = await request.json()
        except Exception:
            data = {}
        if isinstance(data, dict):
            params.update({k: v for k, v in data.items() if v is not None})
    return params


def _read_media(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def setup(app, pipeline: MetadataPipeline | None = None):
    if pipeline is None:
        pipeline = MetadataPipeline(load_settings(), default_registry())

    async def _run(request, refresh: bool):
        params = await _read_params(request)
        model_path = params.get("model_path")
        subtype = params.get("subtype")
        print(f"[ExpandedMetadata] [INFO] {'Refresh' if refresh else 'Get'} metadata for {model_path} ({subtype or 'default'})")
        try:
            if refresh:
                document = await pipeline.refresh_metadata(model_path, subtype)
            else:
                document = await pipeline.get_metadata(model_path, subtype)
        except ModelResolutionError as e:
            print(f"[ExpandedMetadata] [ERROR] {e}")
            return web.json_response({"error": str(e)}, status=e.status)
        except Exception as e:
            print(f"[ExpandedMetadata] [ERROR] Metadata request failed: {e}")
            print(f"[ExpandedMetadata] [ERROR] Traceback: {traceback.format_exc()}")
            return web.json_response({"error": str(e) if str(e) else repr(e)}, status=500)
        return web.json_response(document)

    async def get_expanded_metadata(request):
        return await _run(request, refresh=False)

    async def refresh_expanded_metadata(request):
        return await _run(request, refresh=True)

    async def serve_image(request):
        rel_path = request.match_info.get("path", "")
        try:
            full_path = resolve_media_path(pipeline.settings.images_dir, rel_path)
        except InvalidMediaPath:
            print(f"[ExpandedMetadata] [WARN] Rejected invalid image path: {rel_path}")
            return web.Response(status=400, text="Invalid path")
        except MediaPathForbidden:
            print(f"[ExpandedMetadata] [WARN] Path traversal attempt blocked: {rel_path}")
            return web.Response(status=403, text="Forbidden")

        filename = os.path.basename(full_path)
        etag = f'"{filename}"'
        try:
            if not os.path.isfile(full_path):
                return web.Response(status=404, text="File not found")
            headers = {"Cache-Control": IMAGE_CACHE_CONTROL, "ETag": etag}
            if request.headers.get("If-None-Match") == etag:
                return web.Response(status=304, headers=headers)
            payload = await asyncio.to_thread(_read_media, full_path)
        except FileNotFoundError:
            return web.Response(status=404, text="File not found")
        except Exception as e:
            print(f"[ExpandedMetadata] [ERROR] Failed to serve image: {e}")
            return web.Response(status=500, text="Internal server error")

        return web.Response(
            body=payload,
            content_type=media_content_type(filename),
            headers=headers,
        )

    app.router.add_get(f"{API_ROUTE_BASE}/metadata", get_expanded_metadata)
    app.router.add_post(f"{API_ROUTE_BASE}/metadata", get_expanded_metadata)
    app.router.add_post(f"{API_ROUTE_BASE}/refresh", refresh_expanded_metadata)
    app.router.add_get(f"{IMAGE_ROUTE_BASE}/{{path:.*}}", serve_image)
    print(f"[ExpandedMetadata] [INFO] Registered {IMAGE_ROUTE_BASE} route")
    return pipeline
