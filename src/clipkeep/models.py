from collections.abc import Mapping
from enum import Enum

from clipkeep.utils import compute_hash, truncate_text

DEFAULT_MIMETYPE = "text/plain"


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    BINARY = "binary"


class DecodeError(ValueError):
    """A stored record or encoded payload could not be turned back into an entry."""


def content_type_for(mimetype: str) -> ContentType:
    if mimetype.startswith("text/"):
        return ContentType.TEXT
    if mimetype.startswith("image/"):
        return ContentType.IMAGE
    return ContentType.BINARY


class ClipboardEntry:
    """One clipboard history item.

    The payload and mimetype are fixed at construction; only the favorite
    flag changes afterwards. Use :meth:`create` rather than instantiating the
    variants directly, it picks :class:`TextEntry` or :class:`BinaryEntry`
    from the mimetype.

    Equality and hashing go through :meth:`string_value`, so two image
    entries with the same bytes compare equal whatever their mimetypes.
    """

    def __init__(self, mimetype: str, data: bytes, favorite: bool = False):
        self._mimetype = mimetype
        self._data = bytes(data)
        self._favorite = bool(favorite)

    @staticmethod
    def create(mimetype: str, data: bytes | str, favorite: bool = False) -> "ClipboardEntry":
        if isinstance(data, str):
            data = data.encode("utf-8")
        if content_type_for(mimetype) is ContentType.TEXT:
            return TextEntry(mimetype, data, favorite)
        return BinaryEntry(mimetype, data, favorite)

    @classmethod
    def from_record(cls, record: Mapping, data: bytes | None = None) -> "ClipboardEntry":
        """Rebuild an entry from an index record.

        Text records carry their value inline. Binary records only carry a
        blob reference, so the caller has to load the blob and pass its bytes
        as ``data``.
        """
        mimetype, contents, favorite = _validate_record(record)
        if content_type_for(mimetype) is ContentType.TEXT:
            return TextEntry(mimetype, contents.encode("utf-8"), favorite)
        if data is None:
            raise DecodeError(f"binary record {contents!r} needs its blob contents")
        return BinaryEntry(mimetype, data, favorite)

    @staticmethod
    def blob_reference(record: Mapping) -> str | None:
        """Return the blob reference of a binary record, None for text records."""
        mimetype, contents, _ = _validate_record(record)
        if content_type_for(mimetype) is ContentType.TEXT:
            return None
        if not contents:
            raise DecodeError("binary record has an empty blob reference")
        return contents

    @staticmethod
    def decode(mimetype: str, encoded: str, favorite: bool = False) -> "ClipboardEntry":
        """Inverse of :meth:`encode`."""
        if content_type_for(mimetype) is ContentType.TEXT:
            return TextEntry(mimetype, encoded.encode("utf-8"), favorite)
        try:
            data = bytes.fromhex(encoded)
        except ValueError as e:
            raise DecodeError(f"invalid hex payload for {mimetype}") from e
        return BinaryEntry(mimetype, data, favorite)

    @property
    def kind(self) -> ContentType:
        return content_type_for(self._mimetype)

    @property
    def mimetype(self) -> str:
        return self._mimetype

    @property
    def data(self) -> bytes:
        return self._data

    @property
    def byte_size(self) -> int:
        return len(self._data)

    @property
    def favorite(self) -> bool:
        return self._favorite

    @favorite.setter
    def favorite(self, value: bool) -> None:
        self._favorite = bool(value)

    def is_favorite(self) -> bool:
        return self._favorite

    def set_favorite(self, value: bool) -> None:
        self.favorite = value

    def is_text(self) -> bool:
        return self._mimetype.startswith("text/")

    def is_image(self) -> bool:
        return self._mimetype.startswith("image/")

    def is_binary(self) -> bool:
        return not self.is_text()

    def content_hash(self) -> str:
        return compute_hash(self._data)

    def string_value(self) -> str:
        raise NotImplementedError

    def encode(self) -> str:
        raise NotImplementedError

    def preview(self, max_len: int) -> str:
        return truncate_text(self.string_value(), max_len)

    def to_record(self, contents: str | None = None) -> dict:
        if contents is None:
            if self.is_binary():
                raise ValueError("binary entries are stored by blob reference")
            contents = self.string_value()
        return {"favorite": self._favorite, "mimetype": self._mimetype, "contents": contents}

    def equals(self, other: "ClipboardEntry") -> bool:
        return self.string_value() == other.string_value()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ClipboardEntry):
            return NotImplemented
        return self.equals(other)

    def __hash__(self) -> int:
        return hash(self.string_value())

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(mimetype={self._mimetype!r}, "
            f"size={len(self._data)}, favorite={self._favorite})>"
        )


class TextEntry(ClipboardEntry):
    def __init__(self, mimetype: str, data: bytes, favorite: bool = False):
        if content_type_for(mimetype) is not ContentType.TEXT:
            raise ValueError(f"not a text mimetype: {mimetype!r}")
        super().__init__(mimetype, data, favorite)

    def string_value(self) -> str:
        return self._data.decode("utf-8", errors="replace")

    def encode(self) -> str:
        return self.string_value()


class BinaryEntry(ClipboardEntry):
    """Image or other non-text payload, stored as a content-addressed blob."""

    def __init__(self, mimetype: str, data: bytes, favorite: bool = False):
        if content_type_for(mimetype) is ContentType.TEXT:
            raise ValueError(f"not a binary mimetype: {mimetype!r}")
        super().__init__(mimetype, data, favorite)

    def string_value(self) -> str:
        # Not reversible: the hash stands in for the bytes.
        return f"[Image {self.content_hash()}]"

    def encode(self) -> str:
        return self._data.hex()


def _validate_record(record: Mapping) -> tuple[str, str, bool]:
    if not isinstance(record, Mapping):
        raise DecodeError(f"record must be an object, got {type(record).__name__}")
    mimetype = record.get("mimetype") or DEFAULT_MIMETYPE
    if not isinstance(mimetype, str):
        raise DecodeError(f"record mimetype must be a string, got {type(mimetype).__name__}")
    contents = record.get("contents")
    if not isinstance(contents, str):
        raise DecodeError(f"record contents must be a string, got {type(contents).__name__}")
    favorite = record.get("favorite")
    if favorite is None:
        favorite = False
    elif not isinstance(favorite, bool):
        raise DecodeError(f"record favorite must be a boolean, got {type(favorite).__name__}")
    return mimetype, contents, favorite
