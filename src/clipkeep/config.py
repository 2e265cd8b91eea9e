import os
from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_cache_dir, user_log_dir

CACHE_DIR = Path(os.environ.get("CLIPKEEP_CACHE_DIR", user_cache_dir()))
APP_ID = os.environ.get("CLIPKEEP_APP_ID", "clipkeep")
LOG_PATH = Path(user_log_dir("clipkeep")) / "clipkeep.log"

REGISTRY_FILE = "registry.txt"
BACKUP_SUFFIX = "~"
PREVIEW_LENGTH = 60  # characters shown by `clipkeep list`


def _parse_int_env(name: str, default: int, low: int, high: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(low, min(high, value))


HISTORY_SIZE = _parse_int_env("CLIPKEEP_HISTORY_SIZE", 15, 1, 500)  # non-favorite entries kept
CACHE_FILE_SIZE = _parse_int_env("CLIPKEEP_CACHE_FILE_SIZE", 5, 1, 256)  # MiB before the index is rotated


@dataclass(frozen=True)
class RegistryConfig:
    cache_dir: Path
    app_id: str = APP_ID
    history_size: int = HISTORY_SIZE
    cache_file_size_mib: int = CACHE_FILE_SIZE

    @classmethod
    def from_env(cls) -> "RegistryConfig":
        return cls(
            cache_dir=CACHE_DIR,
            app_id=APP_ID,
            history_size=HISTORY_SIZE,
            cache_file_size_mib=CACHE_FILE_SIZE,
        )

    @property
    def root(self) -> Path:
        return Path(self.cache_dir) / self.app_id

    @property
    def cache_file_size_bytes(self) -> int:
        return self.cache_file_size_mib * 1024 * 1024
