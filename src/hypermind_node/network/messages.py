"""Wire messages exchanged directly between nodes."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class Announcement(BaseModel):
    """A node telling a peer it is alive.

    seq increases with every announcement a node sends, so receivers can
    drop replayed or reordered copies.
    """

    peer_id: str = Field(min_length=1, max_length=128)
    seq: int = Field(ge=0)
    key: str | None = None          # Hex-encoded public key
    port: int | None = Field(default=None, gt=0, lt=65536)

    @field_validator("key")
    @classmethod
    def _key_is_hex(cls, v: str | None) -> str | None:
        if v is not None:
            bytes.fromhex(v)
        return v

    @property
    def key_bytes(self) -> bytes | None:
        return bytes.fromhex(self.key) if self.key else None
