"""Interfaces for the external tools the builders delegate to."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any


@dataclass
class BuildEvent:
    """One relayed container-build progress record.

    Attributes:
        level: "info" or "error"
        message: Text for the log (the stream line, or a decode error)
        record: Decoded JSON record, None when decoding failed
    """

    level: str
    message: str
    record: dict[str, Any] | None = None


class Packager:
    """Appends model payloads to an executable in a memory-mappable layout."""

    def align(self, output_path: Path, model_paths: Sequence[Path], args_path: Path) -> None:
        """Rewrite `output_path` in place with the models and the args manifest appended.

        Raises:
            BuildError: Tool could not be started or exited non-zero
        """
        raise NotImplementedError


class ImageBuilder:
    """Submits a build context to a container build API."""

    def build(self, context: IO[bytes], tag: str, dockerfile: str) -> Iterator[bytes | str]:
        """Start an image build and yield raw progress chunks.

        Args:
            context: gzip-compressed tar build context
            tag: Image name to tag the result with
            dockerfile: Path of the recipe inside the context

        Raises:
            BuildError: The API rejected the request
        """
        raise NotImplementedError
