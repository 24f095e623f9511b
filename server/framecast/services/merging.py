from __future__ import annotations

from typing import Protocol


class ResultMerger(Protocol):
    """Joins the captured clip with the provider's generated continuation."""

    async def merge(self, *, original_video: bytes, generated_url: str) -> str:
        ...


class PassThroughMerger:
    """Returns the generated clip unchanged.

    Concatenation is left to the provider or a downstream media service.
    """

    async def merge(self, *, original_video: bytes, generated_url: str) -> str:
        _ = original_video
        return generated_url
