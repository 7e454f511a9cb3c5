import os
import glob
import json
import tempfile

from .hasher import AUTOV3_SHORT_LEN, short_hash

UNKNOWN_HASH_TOKEN = "unknown"


def metadata_filename(short: str, display_name: str) -> str:
    return f"{short}.meta.{display_name}.json"


def write_json_atomic(path: str, data):
    """Overwrite path with data, via a temp file so readers never see a partial write."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
        raise


class MetadataStore:
    """One pretty-printed JSON document per model, keyed by AutoV3 short hash."""

    def __init__(self, metadata_dir: str):
        self.metadata_dir = metadata_dir

    def ensure_dir(self):
        os.makedirs(self.metadata_dir, exist_ok=True)

    def resolve_path(self, display_name: str, autov3: str | None) -> str:
        """
        Find the document for a model. An existing <short>.meta.*.json wins so
        renaming the model file keeps its document.
        """
        self.ensure_dir()
        short = short_hash(autov3, AUTOV3_SHORT_LEN)
        if not short:
            print(f"[ExpandedMetadata] [WARN] No hash for {display_name}, using name-based metadata file")
            return os.path.join(self.metadata_dir, metadata_filename(UNKNOWN_HASH_TOKEN, display_name))

        pattern = os.path.join(glob.escape(self.metadata_dir), f"{short}.meta.*.json")
        existing = sorted(glob.glob(pattern))
        if existing:
            print(f"[ExpandedMetadata] [DEBUG] Found existing metadata file: {os.path.basename(existing[0])}")
            return existing[0]
        filename = metadata_filename(short, display_name)
        print(f"[ExpandedMetadata] [DEBUG] Creating new metadata file: {filename}")
        return os.path.join(self.metadata_dir, filename)

    def load(self, path: str) -> dict | None:
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except Exception as e:
            print(f"[ExpandedMetadata] [ERROR] Failed to read existing metadata file {path}: {e}")
            return None
        if not isinstance(data, dict):
            print(f"[ExpandedMetadata] [ERROR] Metadata file {path} is not a JSON object")
            return None
        return data

    def save(self, path: str, document: dict):
        write_json_atomic(path, document)

    def invalidate(self, path: str):
        try:
            os.remove(path)
            print(f"[ExpandedMetadata] [DEBUG] Removed metadata file {os.path.basename(path)}")
        except FileNotFoundError:
            return
