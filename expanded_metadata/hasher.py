import hashlib

from .header import HEADER_LENGTH_BYTES, read_header_length

AUTOV2_SHORT_LEN = 10
AUTOV3_SHORT_LEN = 12
CHUNK_SIZE = 1024 * 1024


def strip_hash_prefix(value: str | None) -> str:
    text = str(value or "").strip().lower()
    return text[2:] if text.startswith("0x") else text


def short_hash(full_hash: str | None, length: int) -> str:
    return strip_hash_prefix(full_hash)[:length]


def _sha256_from(f) -> str:
    sha256 = hashlib.sha256()
    for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
        sha256.update(chunk)
    return sha256.hexdigest().lower()


def compute_autov2(file_path: str) -> str:
    """SHA-256 over the whole file."""
    with open(file_path, "rb") as f:
        return _sha256_from(f)


def compute_autov3(file_path: str) -> str:
    """SHA-256 over the tensor payload, skipping the length prefix and JSON header."""
    with open(file_path, "rb") as f:
        header_len = read_header_length(f)
        f.seek(HEADER_LENGTH_BYTES + header_len)
        return _sha256_from(f)


def calculate_hashes(file_path: str, known_autov3: str | None = None) -> dict:
    """
    Compute both content identifiers for a model file.

    A digest that fails is stored as an empty string. If the file cannot be
    opened at all the OSError propagates and nothing is produced.
    """
    # Fail fast on unreadable files before doing any hashing work
    with open(file_path, "rb"):
        pass

    try:
        autov2 = compute_autov2(file_path)
    except Exception as e:
        print(f"[ExpandedMetadata] [ERROR] AutoV2 hash failed for {file_path}: {e}")
        autov2 = ""

    autov3 = strip_hash_prefix(known_autov3)
    if not autov3:
        try:
            autov3 = compute_autov3(file_path)
        except Exception as e:
            print(f"[ExpandedMetadata] [ERROR] AutoV3 hash failed for {file_path}: {e}")
            autov3 = ""

    return {
        "sha256_autov2": autov2,
        "autov2_short": short_hash(autov2, AUTOV2_SHORT_LEN),
        "sha256_autov3": autov3,
        "autov3_short": short_hash(autov3, AUTOV3_SHORT_LEN),
    }
