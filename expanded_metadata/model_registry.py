import os
import json
import threading
from dataclasses import dataclass

from .store import write_json_atomic

try:
    import folder_paths
except Exception:
    folder_paths = None

DEFAULT_SUBTYPE = "checkpoints"
# Swarm-style subtype names mapped onto ComfyUI model folders.
SUBTYPE_ALIASES = {
    "stable-diffusion": "checkpoints",
    "checkpoint": "checkpoints",
    "lora": "loras",
    "lycoris": "loras",
    "vae": "vae",
    "embedding": "embeddings",
    "embeddings": "embeddings",
    "controlnet": "controlnet",
    "clip_vision": "clip_vision",
    "clipvision": "clip_vision",
    "upscale": "upscale_models",
    "upscaler": "upscale_models",
    "diffusion_model": "diffusion_models",
    "unet": "diffusion_models",
    "text_encoder": "text_encoders",
    "clip": "text_encoders",
}


class ModelResolutionError(Exception):
    """Raised for unknown subtypes and models that cannot be found."""

    def __init__(self, message: str, status: int = 404):
        super().__init__(message)
        self.status = status


@dataclass
class ModelReference:
    model_path: str
    subtype: str
    file_path: str
    known_tensor_hash: str | None = None

    @property
    def file_name(self) -> str:
        return os.path.basename(self.file_path)

    @property
    def display_name(self) -> str:
        return os.path.splitext(self.file_name)[0]


def normalize_model_path(path: str) -> str:
    normalized = str(path or "").replace("\\", "/")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    return normalized.lstrip("/")


class ModelRegistry:
    """
    Resolves (model_path, subtype) pairs to files on disk and caches
    tensor hashes per file so they are not recomputed on every request.
    Subclasses provide folder lookup.
    """

    def __init__(self):
        # abspath -> (size, mtime_ns, autov3)
        self._tensor_hashes = {}
        self._tensor_hashes_lock = threading.Lock()
        self.hash_index_path = None

    def folder_names(self) -> list[str]:
        raise NotImplementedError

    def find_file(self, folder: str, model_path: str) -> str | None:
        raise NotImplementedError

    def folder_for_subtype(self, subtype: str | None) -> str:
        value = str(subtype or "").strip() or DEFAULT_SUBTYPE
        folders = self.folder_names()
        if value in folders:
            return value
        alias = SUBTYPE_ALIASES.get(value.lower())
        if alias and alias in folders:
            return alias
        raise ModelResolutionError("Invalid sub-type.", status=400)

    def resolve(self, model_path: str, subtype: str | None = None) -> ModelReference:
        folder = self.folder_for_subtype(subtype)
        normalized = normalize_model_path(model_path)
        if not normalized:
            raise ModelResolutionError("Missing model path.", status=400)
        full_path = self.find_file(folder, normalized)
        if not full_path or not os.path.isfile(full_path):
            raise ModelResolutionError(f"Model not found: {normalized} in {folder}")
        full_path = os.path.abspath(full_path)
        return ModelReference(
            model_path=normalized,
            subtype=folder,
            file_path=full_path,
            known_tensor_hash=self.cached_tensor_hash(full_path),
        )

    def load_hash_index(self, path: str):
        """
        Back the tensor hash cache with a JSON file so hashes survive host
        restarts. Entries whose file changed size or mtime are ignored on lookup.
        """
        self.hash_index_path = path
        if not os.path.exists(path):
            return
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except Exception as e:
            print(f"[ExpandedMetadata] [WARN] Ignoring unreadable hash index {path}: {e}")
            return
        if not isinstance(data, dict):
            return
        loaded = {}
        for file_path, entry in data.items():
            if not isinstance(entry, dict):
                continue
            digest = entry.get("sha256_autov3")
            size = entry.get("size")
            mtime_ns = entry.get("mtime_ns")
            if isinstance(digest, str) and digest and isinstance(size, int) and isinstance(mtime_ns, int):
                loaded[file_path] = (size, mtime_ns, digest)
        with self._tensor_hashes_lock:
            loaded.update(self._tensor_hashes)
            self._tensor_hashes = loaded
        print(f"[ExpandedMetadata] [DEBUG] Loaded {len(loaded)} cached tensor hashes")

    @staticmethod
    def _file_signature(path: str):
        try:
            stat = os.stat(path)
        except OSError:
            return None
        return (os.path.abspath(path), stat.st_size, stat.st_mtime_ns)

    def cached_tensor_hash(self, path: str) -> str | None:
        signature = self._file_signature(path)
        if signature is None:
            return None
        file_path, size, mtime_ns = signature
        with self._tensor_hashes_lock:
            entry = self._tensor_hashes.get(file_path)
        if entry is None or entry[:2] != (size, mtime_ns):
            return None
        return entry[2]

    def remember_tensor_hash(self, path: str, digest: str):
        signature = self._file_signature(path)
        if signature is None or not digest:
            return
        file_path, size, mtime_ns = signature
        with self._tensor_hashes_lock:
            if self._tensor_hashes.get(file_path) == (size, mtime_ns, digest):
                return
            self._tensor_hashes[file_path] = (size, mtime_ns, digest)
            if self.hash_index_path:
                snapshot = {
                    p: {"size": s, "mtime_ns": m, "sha256_autov3": d}
                    for p, (s, m, d) in self._tensor_hashes.items()
                }
                try:
                    write_json_atomic(self.hash_index_path, snapshot)
                except OSError as e:
                    print(f"[ExpandedMetadata] [WARN] Could not save hash index: {e}")


class DirectoryModelRegistry(ModelRegistry):
    """Registry over a plain models/<folder>/... tree."""

    def __init__(self, models_root: str):
        super().__init__()
        self.models_root = models_root

    def folder_names(self) -> list[str]:
        if not os.path.exists(self.models_root):
            return []
        return sorted(
            name for name in os.listdir(self.models_root)
            if os.path.isdir(os.path.join(self.models_root, name))
        )

    def find_file(self, folder: str, model_path: str) -> str | None:
        base = os.path.realpath(os.path.join(self.models_root, folder))
        candidate = os.path.realpath(os.path.join(base, model_path))
        if os.path.commonpath([base, candidate]) != base:
            return None
        return candidate if os.path.isfile(candidate) else None


class FolderPathsRegistry(ModelRegistry):
    """Registry backed by ComfyUI's folder_paths module."""

    def __init__(self, module=None):
        super().__init__()
        self.folder_paths = module or folder_paths
        if self.folder_paths is None:
            raise RuntimeError("folder_paths is not available outside ComfyUI")

    def folder_names(self) -> list[str]:
        names = getattr(self.folder_paths, "folder_names_and_paths", {}) or {}
        return sorted(names.keys())

    def find_file(self, folder: str, model_path: str) -> str | None:
        return self.folder_paths.get_full_path(folder, model_path)


def default_registry() -> ModelRegistry:
    if folder_paths is not None:
        return FolderPathsRegistry(folder_paths)
    return DirectoryModelRegistry(os.path.join(os.getcwd(), "models"))
