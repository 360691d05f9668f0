"""Artifact Packager — turns a source tree into one deployable Artifact.

Order of operations:

1. Run the optional build command in the source directory.
2. Walk the tree and select files: include patterns first, then the
   default exclusion set plus caller excludes.  Exclude always wins.
3. Write a deterministic zip archive (sorted entries, fixed timestamps),
   or stage the selected files as a build context and hand them to an
   ``ImageBuilder``.

Pattern syntax:
    ``name/``  matches a directory (at any depth, or as a path prefix such
               as ``src/tests/``) and everything below it.
    other      ``fnmatch`` against the relative POSIX path and the file name.

The packager writes to its local work directory only; uploading is the
artifact store's job.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import uuid
import zipfile
from collections.abc import Iterator, Sequence
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from deployforge.core.cli_runner import CliCommandError, run_cli, tail
from deployforge.core.hasher import sha256_file
from deployforge.errors import BuildFailedError
from deployforge.models.artifacts import Artifact, OutputFormat

logger = logging.getLogger(__name__)

# Applied even when the caller supplies no patterns.
DEFAULT_EXCLUDES: tuple[str, ...] = (
    ".git/",
    ".github/",
    ".hg/",
    ".svn/",
    "tests/",
    "test/",
    "__pycache__/",
    ".venv/",
    "venv/",
    ".env",
    ".env.*",
    "*.pyc",
    ".DS_Store",
)

_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


# ---------------------------------------------------------------------------
# Pattern matching
# ---------------------------------------------------------------------------


def _matches_dir_pattern(parts: Sequence[str], dir_pattern: str) -> bool:
    """True if any leading directory of *parts* matches *dir_pattern*."""
    for i in range(1, len(parts) + 1):
        prefix = "/".join(parts[:i])
        if fnmatchcase(parts[i - 1], dir_pattern) or fnmatchcase(prefix, dir_pattern):
            return True
    return False


def matches_pattern(rel_path: str, pattern: str) -> bool:
    """Return True if the relative POSIX file path matches *pattern*."""
    path = PurePosixPath(rel_path)
    if pattern.endswith("/"):
        return _matches_dir_pattern(path.parts[:-1], pattern.rstrip("/"))
    return fnmatchcase(path.as_posix(), pattern) or fnmatchcase(path.name, pattern)


def select_path(
    rel_path: str, include: Sequence[str], exclude: Sequence[str]
) -> bool:
    """Apply include then exclude patterns to one relative file path."""
    if include and not any(matches_pattern(rel_path, p) for p in include):
        return False
    return not any(matches_pattern(rel_path, p) for p in exclude)


# ---------------------------------------------------------------------------
# Image builder protocol
# ---------------------------------------------------------------------------


class ImageBuildResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    digest: str  # "sha256:<hex>"
    size_bytes: int = 0


@runtime_checkable
class ImageBuilder(Protocol):
    """Builds a container image from a prepared context directory."""

    def build(self, context_dir: Path, image_ref: str) -> ImageBuildResult:
        ...


class DockerImageBuilder:
    """Builds images with the container CLI (``docker build --iidfile``)."""

    def __init__(self, docker_cli: str = "docker", timeout: float = 1800.0) -> None:
        self._cli = docker_cli
        self._timeout = timeout

    def build(self, context_dir: Path, image_ref: str) -> ImageBuildResult:
        iidfile = context_dir.parent / f"{context_dir.name}.iid"
        try:
            run_cli(
                [self._cli, "build", "--iidfile", str(iidfile), "-t", image_ref, str(context_dir)],
                timeout=self._timeout,
            )
            digest = iidfile.read_text(encoding="utf-8").strip()
            size = run_cli(
                [self._cli, "image", "inspect", "--format", "{{.Size}}", image_ref],
                timeout=60,
            ).strip()
        except CliCommandError as exc:
            raise BuildFailedError(f"Image build failed for {image_ref}: {exc}") from exc
        finally:
            iidfile.unlink(missing_ok=True)
        return ImageBuildResult(
            digest=digest if digest.startswith("sha256:") else f"sha256:{digest}",
            size_bytes=int(size) if size.isdigit() else 0,
        )


# ---------------------------------------------------------------------------
# Packager
# ---------------------------------------------------------------------------


class ArtifactPackager:
    """Produces Artifacts from source trees.

    Parameters
    ----------
    work_dir:
        Local ephemeral directory for packaged output.
    inline_deploy_limit_bytes:
        Size at which an artifact must be stored before deployment.  Only
        a warning boundary here.
    image_builder:
        Used for ``OutputFormat.IMAGE``.  Defaults to ``DockerImageBuilder``.
    """

    def __init__(
        self,
        work_dir: Path,
        *,
        inline_deploy_limit_bytes: int = 50 * 1024 * 1024,
        image_builder: ImageBuilder | None = None,
        build_timeout: float = 1800.0,
    ) -> None:
        self._work_dir = Path(work_dir)
        self._limit = inline_deploy_limit_bytes
        self._image_builder = image_builder
        self._build_timeout = build_timeout

    def package(
        self,
        source_dir: Path,
        *,
        output_format: OutputFormat = OutputFormat.ARCHIVE,
        build_command: str | None = None,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
        runtime: str = "",
        source_commit: str = "",
        name: str = "",
        image_repository: str = "",
    ) -> Artifact:
        """Build, filter and package *source_dir* into one Artifact.

        Raises ``BuildFailedError`` if the build command fails or no files
        survive filtering; no Artifact is produced in either case.
        """
        source_dir = Path(source_dir).resolve()
        if not source_dir.is_dir():
            raise BuildFailedError(f"Source directory not found: {source_dir}")

        if build_command:
            self.run_build(source_dir, build_command)

        excludes = [*DEFAULT_EXCLUDES, *exclude]
        files = sorted(self.select_files(source_dir, include, excludes))
        if not files:
            raise BuildFailedError(f"No files selected for packaging in {source_dir}")

        self._work_dir.mkdir(parents=True, exist_ok=True)
        name = name or source_dir.name

        if output_format == OutputFormat.IMAGE:
            artifact = self._package_image(
                source_dir, files, name=name, runtime=runtime,
                source_commit=source_commit, image_repository=image_repository,
            )
        else:
            artifact = self._package_archive(
                source_dir, files, name=name, runtime=runtime,
                source_commit=source_commit,
            )

        logger.info(
            "Packaged %s: %d files, %d bytes, %s",
            name, artifact.file_count, artifact.size_bytes, artifact.content_hash,
        )
        if artifact.size_bytes >= self._limit:
            logger.warning(
                "Artifact %s is %d bytes (limit %d); it must be stored before deployment.",
                artifact.content_hash, artifact.size_bytes, self._limit,
            )
        return artifact

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def run_build(self, source_dir: Path, build_command: str) -> None:
        """Run the shell build command inside *source_dir*."""
        logger.info("Running build command in %s: %s", source_dir, build_command)
        try:
            proc = subprocess.run(
                build_command,
                shell=True,
                cwd=source_dir,
                capture_output=True,
                text=True,
                timeout=self._build_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise BuildFailedError(
                f"Build command timed out after {self._build_timeout}s: {build_command}"
            ) from exc
        except OSError as exc:
            raise BuildFailedError(f"Build command could not start: {exc}") from exc
        if proc.returncode != 0:
            raise BuildFailedError(
                f"Build command exited {proc.returncode}: {build_command}\n"
                f"{tail(proc.stderr or proc.stdout or '')}"
            )

    @staticmethod
    def select_files(
        source_dir: Path, include: Sequence[str], exclude: Sequence[str]
    ) -> Iterator[str]:
        """Yield relative POSIX paths of files selected for packaging.

        Excluded directories are pruned during the walk.
        """
        dir_excludes = [p.rstrip("/") for p in exclude if p.endswith("/")]
        for root, dirs, filenames in os.walk(source_dir):
            rel_root = Path(root).relative_to(source_dir).as_posix()
            rel_root = "" if rel_root == "." else rel_root
            kept = []
            for d in dirs:
                rel_dir = f"{rel_root}/{d}" if rel_root else d
                if any(
                    _matches_dir_pattern(PurePosixPath(rel_dir).parts, p)
                    for p in dir_excludes
                ):
                    continue
                kept.append(d)
            dirs[:] = sorted(kept)
            for filename in filenames:
                rel_path = f"{rel_root}/{filename}" if rel_root else filename
                if select_path(rel_path, include, exclude):
                    yield rel_path

    def _package_archive(
        self,
        source_dir: Path,
        files: list[str],
        *,
        name: str,
        runtime: str,
        source_commit: str,
    ) -> Artifact:
        staging = self._work_dir / f".{name}-{uuid.uuid4().hex[:8]}.zip.partial"
        try:
            with zipfile.ZipFile(staging, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for rel_path in files:
                    src = source_dir / rel_path
                    info = zipfile.ZipInfo(rel_path, date_time=_ZIP_EPOCH)
                    mode = 0o755 if os.access(src, os.X_OK) else 0o644
                    info.external_attr = (0o100000 | mode) << 16
                    info.compress_type = zipfile.ZIP_DEFLATED
                    zf.writestr(info, src.read_bytes())

            digest = sha256_file(staging)
            final = self._work_dir / f"{name}-{digest[:12]}.zip"
            staging.replace(final)
        except OSError as exc:
            raise BuildFailedError(f"Could not package {source_dir}: {exc}") from exc
        finally:
            staging.unlink(missing_ok=True)
        return Artifact(
            content_hash=f"sha256:{digest}",
            size_bytes=final.stat().st_size,
            output_format=OutputFormat.ARCHIVE,
            runtime=runtime,
            source_commit=source_commit,
            local_path=final,
            file_count=len(files),
        )

    def _package_image(
        self,
        source_dir: Path,
        files: list[str],
        *,
        name: str,
        runtime: str,
        source_commit: str,
        image_repository: str,
    ) -> Artifact:
        context_dir = self._work_dir / f"{name}-context-{uuid.uuid4().hex[:8]}"
        for rel_path in files:
            dest = context_dir / rel_path
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source_dir / rel_path, dest)

        tag = source_commit[:12] or uuid.uuid4().hex[:12]
        image_ref = f"{image_repository or name}:{tag}"
        builder = self._image_builder or DockerImageBuilder()
        result = builder.build(context_dir, image_ref)
        return Artifact(
            content_hash=result.digest,
            size_bytes=result.size_bytes,
            output_format=OutputFormat.IMAGE,
            runtime=runtime,
            source_commit=source_commit,
            local_path=context_dir,
            image_ref=image_ref,
            file_count=len(files),
        )
