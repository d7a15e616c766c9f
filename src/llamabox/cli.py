"""CLI for llamabox.

Resolve a model and package it as a llamafile and/or a container image.

Usage:
    llamabox --hf-repo TheBloke/Mistral-7B-Instruct-v0.2-GGUF \\
        --hf-file mistral-7b-instruct-v0.2.Q4_K_M.gguf \\
        --build-llamafile --output-dir dist

    llamabox --file-path models/tiny.gguf --docker-build --image-name tiny-llm

Every option can also be set through a LLAMABOX_* environment variable
(e.g. LLAMABOX_MODEL_DIR) or a .env file in the working directory.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from llamabox.artifacts.sources import HostedFile, LocalPath, ModelSource, RemoteUrl
from llamabox.config import LlamaboxConfig, apply_overrides, load_config
from llamabox.errors import LlamaboxError
from llamabox.pipeline import BuildPipeline, BuildRequest, BuildTarget, ContainerImage, StandaloneExecutable

logger = logging.getLogger(__name__)

ENV_PREFIX = "LLAMABOX_"


def _env(name: str) -> str | None:
    return os.getenv(ENV_PREFIX + name)


def _env_flag(name: str) -> bool:
    return (_env(name) or "").strip().lower() in {"1", "true", "yes", "on"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Package a GGUF model as a llamafile and/or a container image.",
    )
    source = parser.add_argument_group("model source (exactly one)")
    exclusive = source.add_mutually_exclusive_group()
    exclusive.add_argument("-f", "--file-path", default=_env("FILE_PATH"), help="Local model file path")
    exclusive.add_argument("-u", "--file-url", default=_env("FILE_URL"), help="Model URL")
    exclusive.add_argument("-m", "--hf-repo", default=_env("HF_REPO"), help="Hugging Face repository")
    source.add_argument(
        "-n", "--hf-file", default=_env("HF_FILE"), help="Hugging Face file name, within the repository"
    )

    parser.add_argument("--config", type=Path, default=_env("CONFIG"), help="Config YAML")
    parser.add_argument(
        "-d",
        "--model-dir",
        default=_env("MODEL_DIR"),
        help="Models directory; models are downloaded to and looked up here",
    )
    parser.add_argument("-l", "--server-path", default=_env("SERVER_PATH"), help="Path to llamafile-server")
    parser.add_argument("--zipalign-path", default=_env("ZIPALIGN_PATH"), help="Path to zipalign")

    parser.add_argument(
        "-B",
        "--build-llamafile",
        action="store_true",
        default=_env_flag("BUILD_LLAMAFILE"),
        help="Build llamafile with embedded model",
    )
    output = parser.add_mutually_exclusive_group()
    output.add_argument("-o", "--output", default=_env("OUTPUT"), help="Output file of llamafile build")
    output.add_argument("--output-dir", default=_env("OUTPUT_DIR"), help="Output folder of llamafile builds")

    parser.add_argument(
        "-b",
        "--docker-build",
        action="store_true",
        default=_env_flag("DOCKER_BUILD"),
        help="Build docker image with the model",
    )
    parser.add_argument("--image-name", default=_env("IMAGE_NAME"), help="Image name for the docker image")
    parser.add_argument(
        "-e", "--execute", action="store_true", default=_env_flag("EXECUTE"), help="Execute the model"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def source_from_args(args: argparse.Namespace) -> ModelSource:
    """Pick the single model source; raises ValueError on conflicts or omissions.

    argparse rejects conflicting flags; conflicts that come from LLAMABOX_*
    defaults are caught here.
    """
    if args.hf_repo or args.hf_file:
        if not (args.hf_repo and args.hf_file):
            raise ValueError("--hf-repo and --hf-file must be given together")
        if args.file_path or args.file_url:
            raise ValueError("--hf-repo/--hf-file cannot be combined with --file-path or --file-url")
        return HostedFile(args.hf_repo, args.hf_file)
    if args.file_path and args.file_url:
        raise ValueError("--file-path and --file-url are mutually exclusive")
    if args.file_path:
        return LocalPath(Path(args.file_path))
    if args.file_url:
        return RemoteUrl(args.file_url)
    raise ValueError("One of --file-path, --file-url or --hf-repo/--hf-file is required")


def request_from_args(args: argparse.Namespace) -> BuildRequest:
    targets: list[BuildTarget] = []
    if args.image_name and not args.docker_build:
        raise ValueError("--image-name requires --docker-build")
    if (args.output or args.output_dir) and not args.build_llamafile:
        raise ValueError("--output/--output-dir require --build-llamafile")
    if args.build_llamafile and not (args.output or args.output_dir):
        raise ValueError("--build-llamafile requires --output or --output-dir")

    if args.docker_build:
        targets.append(ContainerImage(args.image_name))
    if args.build_llamafile:
        targets.append(StandaloneExecutable(Path(args.output) if args.output else None))
    return BuildRequest(source=source_from_args(args), targets=targets, execute=args.execute)


def config_from_args(args: argparse.Namespace) -> LlamaboxConfig:
    cfg = load_config(args.config) if args.config else LlamaboxConfig()
    return apply_overrides(
        cfg,
        model_dir=args.model_dir,
        server_path=args.server_path,
        zipalign_path=args.zipalign_path,
        output_dir=args.output_dir,
        docker_base_url=os.getenv("DOCKER_HOST"),
    )


def main(argv: list[str] | None = None) -> int:
    load_dotenv(Path.cwd() / ".env")
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.debug(f"Args: {args}")

    try:
        request = request_from_args(args)
        config = config_from_args(args)
        result = BuildPipeline(config).run(request)
    except (LlamaboxError, FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        logger.error("Exiting")
        return 1

    for path in result.llamafiles:
        logger.info(f"Built llamafile {path}")
    for image in result.images:
        logger.info(f"Built docker image {image}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
