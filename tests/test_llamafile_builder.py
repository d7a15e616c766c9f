"""Tests for the llamafile assembler and the zipalign packager.

The packager is replaced by a recording fake; zipalign itself is stood in for
by small shell scripts (POSIX only).
"""

import os
from pathlib import Path

import pytest

from llamabox.build.base import Packager
from llamabox.build.llamafile import (
    LlamafileAssembler,
    ZipalignPackager,
    default_output_path,
    server_args,
)
from llamabox.errors import AlreadyExistsError, BuildError, IoError

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires /bin/sh and permission bits")


class RecordingPackager(Packager):
    def __init__(self):
        self.calls = []

    def align(self, output_path, model_paths, args_path):
        self.calls.append((output_path, list(model_paths), args_path, args_path.read_text()))


@pytest.fixture
def inputs(tmp_path: Path) -> tuple[Path, Path]:
    server = tmp_path / "llamafile-server"
    server.write_bytes(b"\x7fELF server binary " * 100)
    model = tmp_path / "tiny.Q4_K_M.gguf"
    model.write_bytes(b"GGUF model data")
    return server, model


class TestLlamafileAssembler:
    def test_output_is_copy_of_server_then_aligned(self, tmp_path: Path, inputs):
        server, model = inputs
        out_dir = tmp_path / "dist"
        out_dir.mkdir()
        output = out_dir / "tiny"
        packager = RecordingPackager()

        result = LlamafileAssembler(packager).build(server, [model], output)

        assert result == output
        assert output.read_bytes() == server.read_bytes()
        assert packager.calls == [
            (output, [model], out_dir / ".args", "-m\ntiny.Q4_K_M.gguf\n--host\n0.0.0.0\n")
        ]

    @posix_only
    def test_output_and_server_are_executable(self, tmp_path: Path, inputs):
        server, model = inputs
        os.chmod(server, 0o644)
        output = tmp_path / "out"

        LlamafileAssembler(RecordingPackager()).build(server, [model], output)

        assert os.stat(output).st_mode & 0o111
        assert os.stat(server).st_mode & 0o111

    def test_refuses_existing_output(self, tmp_path: Path, inputs):
        server, model = inputs
        output = tmp_path / "existing"
        output.write_bytes(b"keep me")
        packager = RecordingPackager()

        with pytest.raises(AlreadyExistsError):
            LlamafileAssembler(packager).build(server, [model], output)

        assert output.read_bytes() == b"keep me"
        assert packager.calls == []

    def test_refuses_existing_args_file(self, tmp_path: Path, inputs):
        server, model = inputs
        out_dir = tmp_path / "dist"
        out_dir.mkdir()
        (out_dir / ".args").write_text("-m\nother.gguf\n")
        packager = RecordingPackager()

        with pytest.raises(AlreadyExistsError):
            LlamafileAssembler(packager).build(server, [model], out_dir / "tiny")

        assert (out_dir / ".args").read_text() == "-m\nother.gguf\n"
        assert packager.calls == []
        assert not (out_dir / "tiny").exists()

    def test_args_file_removed_after_build(self, tmp_path: Path, inputs):
        server, model = inputs

        LlamafileAssembler(RecordingPackager()).build(server, [model], tmp_path / "tiny")

        assert not (tmp_path / ".args").exists()

    def test_successive_builds_share_output_dir(self, tmp_path: Path, inputs):
        server, model = inputs
        other = tmp_path / "other.gguf"
        other.write_bytes(b"other model")
        out_dir = tmp_path / "dist"
        out_dir.mkdir()
        packager = RecordingPackager()
        assembler = LlamafileAssembler(packager)

        assembler.build(server, [model], out_dir / "tiny")
        assembler.build(server, [other], out_dir / "other")

        assert (out_dir / "tiny").exists() and (out_dir / "other").exists()
        assert [call[3] for call in packager.calls] == [
            "-m\ntiny.Q4_K_M.gguf\n--host\n0.0.0.0\n",
            "-m\nother.gguf\n--host\n0.0.0.0\n",
        ]

    def test_failed_alignment_cleans_up(self, tmp_path: Path, inputs):
        server, model = inputs

        class FailingPackager(Packager):
            def align(self, output_path, model_paths, args_path):
                raise BuildError("zipalign exited with code 1")

        output = tmp_path / "tiny"
        with pytest.raises(BuildError):
            LlamafileAssembler(FailingPackager()).build(server, [model], output)

        assert not output.exists()
        assert not (tmp_path / ".args").exists()
        # a retry is not blocked by leftovers
        packager = RecordingPackager()
        LlamafileAssembler(packager).build(server, [model], output)
        assert len(packager.calls) == 1

    def test_all_models_packaged_first_one_served(self, tmp_path: Path, inputs):
        server, model = inputs
        second = tmp_path / "second.gguf"
        second.write_bytes(b"more")
        packager = RecordingPackager()
        (tmp_path / "staging").mkdir()

        LlamafileAssembler(packager, args_dir=tmp_path / "staging").build(
            server, [model, second], tmp_path / "bundle"
        )

        _, models, _, args = packager.calls[0]
        assert models == [model, second]
        assert "second.gguf" not in args

    def test_requires_a_model(self, tmp_path: Path, inputs):
        server, _ = inputs
        with pytest.raises(ValueError):
            LlamafileAssembler(RecordingPackager()).build(server, [], tmp_path / "out")

    def test_missing_server(self, tmp_path: Path, inputs):
        _, model = inputs
        output = tmp_path / "out"
        with pytest.raises(IoError):
            LlamafileAssembler(RecordingPackager()).build(tmp_path / "nope", [model], output)
        assert not output.exists()


def test_server_args():
    assert server_args(Path("/models/a/b.gguf")) == ["-m", "b.gguf", "--host", "0.0.0.0"]


def test_default_output_path_creates_dir(tmp_path: Path):
    out_dir = tmp_path / "dist" / "llamafiles"
    path = default_output_path(Path("/models/mistral-7b.Q4_K_M.gguf"), out_dir)
    assert path == out_dir / "mistral-7b.Q4_K_M"
    assert out_dir.is_dir()


class TestZipalignPackager:
    def test_command(self):
        packager = ZipalignPackager("/opt/zipalign")
        cmd = packager.command(Path("out"), [Path("a.gguf"), Path("b.gguf")], Path(".args"))
        assert cmd == ["/opt/zipalign", "-j0", "out", "a.gguf", "b.gguf", ".args"]

    @posix_only
    def test_runs_tool_with_arguments(self, tmp_path: Path):
        log = tmp_path / "argv.txt"
        tool = tmp_path / "zipalign"
        tool.write_text(f'#!/bin/sh\nprintf "%s\\n" "$@" > "{log}"\n')
        os.chmod(tool, 0o644)

        ZipalignPackager(tool).align(tmp_path / "out", [tmp_path / "m.gguf"], tmp_path / ".args")

        assert log.read_text().splitlines() == [
            "-j0",
            str(tmp_path / "out"),
            str(tmp_path / "m.gguf"),
            str(tmp_path / ".args"),
        ]
        assert os.stat(tool).st_mode & 0o111

    @posix_only
    def test_nonzero_exit_is_build_error(self, tmp_path: Path):
        tool = tmp_path / "zipalign"
        tool.write_text("#!/bin/sh\necho 'bad zip' >&2\nexit 3\n")

        with pytest.raises(BuildError) as exc:
            ZipalignPackager(tool).align(tmp_path / "out", [tmp_path / "m"], tmp_path / ".args")
        assert "3" in str(exc.value)

    @posix_only
    def test_spawn_failure_is_build_error(self, tmp_path: Path):
        tool = tmp_path / "zipalign"
        tool.write_bytes(b"")  # exists but is not a runnable program

        with pytest.raises(BuildError):
            ZipalignPackager(tool).align(tmp_path / "out", [tmp_path / "m"], tmp_path / ".args")

    def test_missing_tool_is_build_error(self, tmp_path: Path):
        with pytest.raises(BuildError):
            ZipalignPackager(tmp_path / "zipalign").align(tmp_path / "out", [tmp_path / "m"], tmp_path / ".args")
