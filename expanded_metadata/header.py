import json
import struct

HEADER_LENGTH_BYTES = 8
MAX_HEADER_BYTES = 100 * 1024 * 1024
METADATA_KEY = "__metadata__"


def read_header_length(f) -> int:
    """
    Read the little-endian int64 header length at the current position.
    Raises ValueError when it is truncated, negative or above the sanity limit.
    """
    raw = f.read(HEADER_LENGTH_BYTES)
    if len(raw) < HEADER_LENGTH_BYTES:
        raise ValueError("File too small to be valid SafeTensors")
    header_len = struct.unpack("<q", raw)[0]
    if header_len < 0 or header_len > MAX_HEADER_BYTES:
        raise ValueError(f"Invalid SafeTensors header length: {header_len}")
    return header_len


def read_safetensors_metadata(file_path: str) -> dict:
    """Return the __metadata__ block of a safetensors file, {} on any failure."""
    try:
        with open(file_path, "rb") as f:
            header_len = read_header_length(f)
            header_bytes = f.read(header_len)
        if len(header_bytes) < header_len:
            raise ValueError("Incomplete header read")
        header = json.loads(header_bytes.decode("utf-8"))
        if not isinstance(header, dict):
            raise ValueError("Header is not a JSON object")
        metadata = header.get(METADATA_KEY)
        if not isinstance(metadata, dict):
            return {}
        return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in metadata.items()}
    except Exception as e:
        print(f"[ExpandedMetadata] [ERROR] Failed to read safetensors metadata from {file_path}: {e}")
        return {}
