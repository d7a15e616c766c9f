"""
Build pipeline: resolve the model, fetch the tools, build the requested artifacts.

Every step runs sequentially; each one needs the path produced by the one
before it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from llamabox.artifacts.model_cache import ModelCache, ReleaseAssetCache
from llamabox.artifacts.sources import ModelSource
from llamabox.build.base import BuildEvent, ImageBuilder, Packager
from llamabox.build.docker_image import ContainerImageBuilder, DockerApiBuilder
from llamabox.build.llamafile import LlamafileAssembler, ZipalignPackager, default_output_path
from llamabox.config import LlamaboxConfig
from llamabox.fetch.http_client import StreamingDownloader
from llamabox.fetch.releases import SERVER_ASSET, ZIPALIGN_ASSET, ReleaseResolver
from llamabox.serve import run_server

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StandaloneExecutable:
    """Build a llamafile; None means `<output_dir>/<model stem>`."""

    output_path: Path | None = None


@dataclass(frozen=True)
class ContainerImage:
    """Build a container image; None means the lower-cased model file name."""

    image_name: str | None = None


BuildTarget = Union[StandaloneExecutable, ContainerImage]


@dataclass
class BuildRequest:
    source: ModelSource
    targets: list[BuildTarget] = field(default_factory=list)
    execute: bool = False


@dataclass
class BuildResult:
    model_path: Path
    server_path: Path | None = None
    llamafiles: list[Path] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    image_events: list[BuildEvent] = field(default_factory=list)


def default_image_name(model_path: Path) -> str:
    return model_path.name.lower()


class BuildPipeline:
    """Wires the cache, release lookup and builders from one LlamaboxConfig.

    The packager and image builder default to the real zipalign binary and
    the Docker daemon; tests pass fakes.
    """

    def __init__(
        self,
        config: LlamaboxConfig,
        downloader: StreamingDownloader | None = None,
        packager: Packager | None = None,
        image_builder: ImageBuilder | None = None,
    ):
        self.config = config
        self.downloader = downloader or StreamingDownloader(timeout_s=config.http_timeout_s)
        self.resolver = ReleaseResolver(self.downloader, api_base_url=config.github_api_url)
        self.tools = ReleaseAssetCache(self.resolver, self.downloader, config.release_repository)
        self._packager = packager
        self._image_builder = image_builder

    def model_cache(self) -> ModelCache:
        logger.info("Initializing models directory")
        return ModelCache(
            self.config.model_dir,
            self.downloader,
            hosted_url_template=self.config.hosted_url_template,
        )

    def packager(self) -> Packager:
        if self._packager is None:
            zipalign = self.tools.ensure(self.config.zipalign_path, ZIPALIGN_ASSET)
            self._packager = ZipalignPackager(zipalign.local_path)
        return self._packager

    def image_builder(self) -> ImageBuilder:
        if self._image_builder is None:
            self._image_builder = DockerApiBuilder.from_base_url(self.config.docker_base_url)
        return self._image_builder

    def output_path(self, target: StandaloneExecutable, model_path: Path) -> Path:
        if target.output_path is not None:
            return Path(target.output_path)
        if self.config.output_dir is None:
            raise ValueError("Neither an output path nor an output directory was specified")
        return default_output_path(model_path, self.config.output_dir)

    def run(self, request: BuildRequest) -> BuildResult:
        model_path = self.model_cache().resolve(request.source)
        logger.info("Located model")
        logger.debug(f"Model path: {model_path}")

        result = BuildResult(model_path=model_path)
        if not (request.targets or request.execute):
            return result

        server = self.tools.ensure(self.config.server_path, SERVER_ASSET)
        logger.info(f"Using llamafile-server at {server.local_path}")
        result.server_path = server.local_path

        for target in request.targets:
            if isinstance(target, ContainerImage):
                image_name = target.image_name or default_image_name(model_path)
                builder = ContainerImageBuilder(
                    self.image_builder(), base_image=self.config.base_image, port=self.config.port
                )
                result.image_events += builder.build(image_name, [model_path], server.local_path)
                result.images.append(image_name)
            elif isinstance(target, StandaloneExecutable):
                output = self.output_path(target, model_path)
                assembler = LlamafileAssembler(self.packager())
                result.llamafiles.append(assembler.build(server.local_path, [model_path], output))
            else:
                raise TypeError(f"Unsupported build target: {target!r}")

        if request.execute:
            run_server(server.local_path, model_path)
        return result
