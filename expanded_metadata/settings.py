import os
import json
from dataclasses import dataclass

import yaml

try:
    import folder_paths
except Exception:
    folder_paths = None

SETTINGS_REL_PATH = os.path.join("user", "default", "comfy.settings.json")
CONFIG_FILENAME = "expanded_metadata.yaml"
TOKEN_SETTING = "expanded_metadata.civitai_token"
DOWNLOAD_IMAGES_SETTING = "expanded_metadata.download_images"


@dataclass
class Settings:
    """Runtime configuration for the metadata pipeline"""
    root_dir: str
    civitai_base_url: str = "https://civitai.com/api/v1"
    civitai_web_url: str = "https://civitai.com"
    civitai_token: str = ""
    user_agent: str = "ComfyUI-ExpandedMetadata/1.0"
    request_timeout: float = 30.0
    download_timeout: float = 120.0
    download_delay: float = 0.5
    download_images: bool = True

    @property
    def metadata_dir(self) -> str:
        return os.path.join(self.root_dir, "metadata")

    @property
    def images_dir(self) -> str:
        return os.path.join(self.root_dir, "images")

    @property
    def hash_index_path(self) -> str:
        return os.path.join(self.root_dir, "tensor_hashes.json")


def get_base_path() -> str:
    base_path = getattr(folder_paths, "base_path", None) if folder_paths else None
    return base_path or os.getcwd()


def _coerce_bool(value, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return default


def _coerce_float(value, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 0 else default


def read_host_settings(base_path: str) -> dict:
    """Read the host UI settings file, {} if missing or unreadable."""
    settings_path = os.path.join(base_path, SETTINGS_REL_PATH)
    if not os.path.exists(settings_path):
        return {}
    try:
        with open(settings_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except Exception as e:
        print(f"[ExpandedMetadata] [WARN] Could not read {settings_path}: {e}")
        return {}
    return payload if isinstance(payload, dict) else {}


def read_config_file(path: str) -> dict:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except Exception as e:
        print(f"[ExpandedMetadata] [WARN] Could not load config {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(base_path: str | None = None) -> Settings:
    """
    Build settings from defaults, the optional YAML config file,
    the host settings JSON and environment variables (last wins).
    """
    base_path = base_path or get_base_path()
    config_path = os.getenv("EXPANDED_METADATA_CONFIG") or os.path.join(base_path, CONFIG_FILENAME)
    config = read_config_file(config_path)

    civitai = config.get("civitai") or {}
    downloads = config.get("downloads") or {}
    if not isinstance(civitai, dict):
        civitai = {}
    if not isinstance(downloads, dict):
        downloads = {}

    root_dir = config.get("root_dir") or os.path.join(base_path, "expanded_metadata")
    settings = Settings(root_dir=os.path.abspath(os.path.join(base_path, root_dir)))
    settings.civitai_base_url = str(civitai.get("base_url") or settings.civitai_base_url).rstrip("/")
    settings.civitai_web_url = str(civitai.get("web_url") or settings.civitai_web_url).rstrip("/")
    settings.civitai_token = str(civitai.get("token") or "").strip()
    settings.user_agent = str(civitai.get("user_agent") or settings.user_agent)
    settings.request_timeout = _coerce_float(civitai.get("timeout"), settings.request_timeout)
    settings.download_timeout = _coerce_float(downloads.get("timeout"), settings.download_timeout)
    settings.download_delay = _coerce_float(downloads.get("delay"), settings.download_delay)
    settings.download_images = _coerce_bool(downloads.get("enabled"), settings.download_images)

    host = read_host_settings(base_path)
    host_token = str(host.get(TOKEN_SETTING, "") or "").strip()
    if host_token:
        settings.civitai_token = host_token
    if DOWNLOAD_IMAGES_SETTING in host:
        settings.download_images = _coerce_bool(host.get(DOWNLOAD_IMAGES_SETTING), settings.download_images)

    # Environment wins over files
    env_token = os.getenv("CIVITAI_API_TOKEN", "").strip()
    if env_token:
        settings.civitai_token = env_token
    env_root = os.getenv("EXPANDED_METADATA_ROOT", "").strip()
    if env_root:
        settings.root_dir = os.path.abspath(env_root)
    return settings
