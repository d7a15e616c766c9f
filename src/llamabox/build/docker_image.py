"""
Container image builder.

Build context layout (gzip tar, fixed order):

    ./<serving-binary-name>
    ./Dockerfile
    ./model-0
    ./model-1
    ...

The context is assembled in memory with compression level 0 and normalized
entry metadata (owner 0:0, mtime 0), so identical inputs produce identical
bytes. Every model is copied into the image; the entrypoint serves model-0.
"""

from __future__ import annotations

import codecs
import gzip
import io
import json
import logging
import tarfile
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import IO

import docker
from docker.errors import DockerException

from llamabox.build.base import BuildEvent, ImageBuilder
from llamabox.errors import BuildError

logger = logging.getLogger(__name__)

DOCKERFILE_NAME = "Dockerfile"
DEFAULT_BASE_IMAGE = "debian:bullseye-slim"
DEFAULT_PORT = 8080
APP_DIR = "/usr/src/app"


def render_dockerfile(
    model_count: int,
    server_name: str = "llamafile-server",
    base_image: str = DEFAULT_BASE_IMAGE,
    port: int = DEFAULT_PORT,
) -> str:
    """Render the build recipe for `model_count` models."""
    lines = [
        f"FROM {base_image} AS final",
        "RUN addgroup --gid 1000 user",
        'RUN adduser --uid 1000 --gid 1000 --disabled-password --gecos "" user',
        "USER user",
        f"WORKDIR {APP_DIR}",
        f"COPY /{server_name} ./{server_name}",
    ]
    lines.extend(f"COPY /model-{i} ./model-{i}" for i in range(model_count))

    entrypoint = [
        "/bin/sh",
        f"{APP_DIR}/{server_name}",
        "-m",
        f"{APP_DIR}/model-0",
        "--host",
        "0.0.0.0",
    ]
    lines += [
        "",
        f"# Expose {port} port.",
        f"EXPOSE {port}",
        "",
        "# Set entrypoint.",
        f"ENTRYPOINT {json.dumps(entrypoint)}",
    ]
    return "\n".join(lines) + "\n"


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mtime = 0
    return info


def _executable(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info = _normalize(info)
    info.mode = 0o755
    return info


def build_context_archive(
    dockerfile: str,
    server_path: str | Path,
    model_paths: Sequence[str | Path],
    server_name: str | None = None,
) -> io.BytesIO:
    """Build the gzip tar build context in memory.

    Returns:
        Buffer positioned at the start of the archive

    Raises:
        BuildError: A file could not be read or a header could not be encoded
    """
    server_path = Path(server_path)
    server_name = server_name or server_path.name
    buf = io.BytesIO()
    try:
        with gzip.GzipFile(fileobj=buf, mode="wb", compresslevel=0, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT, dereference=True) as tar:
                logger.debug(f"Appending {server_name}..")
                tar.add(server_path, arcname=f"./{server_name}", recursive=False, filter=_executable)

                logger.debug(f"Appending {DOCKERFILE_NAME}..")
                data = dockerfile.encode("utf-8")
                info = _executable(tarfile.TarInfo(f"./{DOCKERFILE_NAME}"))
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))

                for i, model_path in enumerate(model_paths):
                    logger.debug(f"Appending model-{i} from {model_path}..")
                    tar.add(model_path, arcname=f"./model-{i}", recursive=False, filter=_normalize)
    except (OSError, ValueError, tarfile.TarError) as e:
        raise BuildError(f"Failed to build image context: {e}") from e

    buf.seek(0)
    return buf


def _event_for_line(line: str) -> BuildEvent:
    try:
        record = json.loads(line)
    except ValueError:
        return BuildEvent(level="error", message=f"Failed to decode build output: {line!r}")
    if not isinstance(record, dict):
        return BuildEvent(level="error", message=f"Unexpected build output: {line!r}")

    if "error" in record:
        return BuildEvent(level="error", message=str(record["error"]).strip(), record=record)
    for key in ("stream", "status"):
        if record.get(key):
            return BuildEvent(level="info", message=str(record[key]).strip(), record=record)
    return BuildEvent(level="info", message=json.dumps(record), record=record)


class ProgressDecoder:
    """Splits raw build-output chunks into newline-delimited JSON records."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes | str) -> list[BuildEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [_event_for_line(line) for line in lines if line.strip()]

    def close(self) -> list[BuildEvent]:
        rest, self._buffer = self._buffer + self._decoder.decode(b"", final=True), ""
        return [_event_for_line(rest)] if rest.strip() else []


class DockerApiBuilder(ImageBuilder):
    """ImageBuilder backed by the Docker Engine API (docker SDK low-level client)."""

    def __init__(self, api: docker.APIClient):
        self.api = api

    @classmethod
    def from_base_url(cls, base_url: str | None = None) -> DockerApiBuilder:
        """Connect to the daemon at `base_url` (platform default socket when None)."""
        try:
            return cls(docker.APIClient(base_url=base_url))
        except DockerException as e:
            raise BuildError(f"Failed to initialize docker: {e}") from e

    def build(self, context: IO[bytes], tag: str, dockerfile: str) -> Iterator[bytes | str]:
        try:
            yield from self.api.build(
                fileobj=context,
                custom_context=True,
                encoding="gzip",
                dockerfile=dockerfile,
                tag=tag,
                rm=True,
                decode=False,
            )
        except (DockerException, OSError) as e:
            raise BuildError(f"Docker build of '{tag}' failed: {e}") from e


class ContainerImageBuilder:
    """Builds a container image serving the first of the given models."""

    def __init__(
        self,
        image_builder: ImageBuilder,
        base_image: str = DEFAULT_BASE_IMAGE,
        port: int = DEFAULT_PORT,
    ):
        self.image_builder = image_builder
        self.base_image = base_image
        self.port = port

    def build(
        self,
        image_name: str,
        model_paths: Sequence[str | Path],
        server_path: str | Path,
        on_event: Callable[[BuildEvent], None] | None = None,
    ) -> list[BuildEvent]:
        """Build and tag `image_name`, relaying progress events as they arrive.

        Undecodable progress records are relayed as error events and do not
        stop the build; error records reported by the daemon fail it once the
        stream has ended.

        Returns:
            All relayed events, in order

        Raises:
            ValueError: No models given
            BuildError: Context could not be built, or the build failed
        """
        if not model_paths:
            raise ValueError("At least one model is required to build an image")
        server_path = Path(server_path)

        logger.info(f"Building image: {image_name}")
        dockerfile = render_dockerfile(len(model_paths), server_path.name, self.base_image, self.port)
        logger.debug(f"Dockerfile: {dockerfile}")

        logger.info("Building tarball.. This may take a while.")
        context = build_context_archive(dockerfile, server_path, model_paths)

        logger.info("Building image.. This may take a while.")
        decoder = ProgressDecoder()
        events: list[BuildEvent] = []
        daemon_errors: list[str] = []

        def relay(batch: list[BuildEvent]) -> None:
            for event in batch:
                events.append(event)
                if event.level == "error":
                    logger.error(event.message)
                    if event.record is not None:
                        daemon_errors.append(event.message)
                else:
                    logger.info(event.message)
                if on_event is not None:
                    on_event(event)

        for chunk in self.image_builder.build(context, image_name, DOCKERFILE_NAME):
            relay(decoder.feed(chunk))
        relay(decoder.close())

        if daemon_errors:
            raise BuildError(f"Image build of '{image_name}' failed: {daemon_errors[-1]}")
        logger.info(f"Built image {image_name}")
        return events
