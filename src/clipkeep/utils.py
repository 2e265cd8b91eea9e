import hashlib
import re
import struct
from pathlib import Path

_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")
_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def compute_hash(data: bytes) -> str:
    """Content address of a payload: SHA-256, lowercase hex, usable as a filename."""
    return hashlib.sha256(data).hexdigest()


def looks_like_hash(name: str) -> bool:
    return bool(_DIGEST_RE.match(name))


def truncate_text(text: str, max_len: int) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) > max_len:
        return collapsed[: max_len - 3] + "..."
    return collapsed


def ensure_dir(path: Path) -> None:
    path.mkdir(mode=0o775, parents=True, exist_ok=True)


def png_dimensions(data: bytes) -> tuple[int, int] | None:
    # IHDR is always the first chunk: width and height follow its type tag.
    if len(data) < 24 or not data.startswith(_PNG_SIGNATURE) or data[12:16] != b"IHDR":
        return None
    return struct.unpack(">II", data[16:24])
