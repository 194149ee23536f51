"""Container image build and push.

This module handles:
- Verifying the build artifact before any container engine call
- Building the image under the run's unique tag
- Registry login with a per-run client config
- Pushing, with failures classified as auth (fatal) or transient
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from pathlib import Path

from pydantic import SecretStr

from shipline.builds.artifacts import verify_artifact
from shipline.errors import AuthError, BuildError, NetworkError, PipelineError
from shipline.pipeline.schema import ImageConfig
from shipline.types import BuildArtifact, ImageReference

logger = logging.getLogger(__name__)

# Substrings of engine output that mean credentials were rejected
AUTH_FAILURE_MARKERS = (
    "unauthorized",
    "authentication required",
    "access denied",
    "requested access to the resource is denied",
    "denied:",
    "forbidden",
    "incorrect username or password",
    "no basic auth credentials",
)

# Build argument carrying the artifact path relative to the build context
ARTIFACT_BUILD_ARG = "ARTIFACT"


def classify_registry_failure(output: str, action: str) -> PipelineError:
    """Classify a failed login or push.

    Authentication problems are fatal; everything else is treated as a
    transient registry or network problem.
    """
    lowered = output.lower()
    if any(marker in lowered for marker in AUTH_FAILURE_MARKERS):
        return AuthError(
            f"Registry rejected credentials during {action}", response=output
        )
    return NetworkError(f"Registry {action} failed", response=output)


class ImagePublisher:
    """Packages an artifact into an image and pushes it.

    The publisher remembers which tags it has built but not yet pushed, so
    that a retried publish only repeats the push.
    """

    def __init__(
        self,
        config: ImageConfig,
        engine_binary: str = "docker",
        build_timeout: int | None = None,
        push_timeout: int | None = None,
        username: str | None = None,
        password: SecretStr | None = None,
    ) -> None:
        self.config = config
        self.engine_binary = engine_binary
        self.build_timeout = build_timeout
        self.push_timeout = push_timeout
        self.username = username
        self.password = password
        self._built: set[str] = set()
        self._lock = threading.Lock()

    def _run(
        self,
        args: list[str],
        timeout: int | None,
        env: dict[str, str] | None,
        stdin: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self.engine_binary, *args]
        logger.info("Executing: %s", shlex.join(cmd))
        try:
            return subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise NetworkError(
                f"{self.engine_binary} {args[0]} timed out after {timeout}s",
                response=e.stderr,
                code="timeout",
            ) from e
        except OSError as e:
            raise BuildError(
                f"Failed to run {self.engine_binary}: {e}",
                code="execution_error",
            ) from e

    def build_image(
        self,
        image: ImageReference,
        artifact: BuildArtifact,
        source_dir: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        """Build the image from the checkout's Dockerfile.

        Raises:
            BuildError: If the artifact is outside the context or the build fails.
            NetworkError: If the build timed out.
        """
        context_dir = (source_dir / self.config.context).resolve()
        dockerfile = source_dir / self.config.dockerfile
        try:
            artifact_arg = artifact.path.resolve().relative_to(context_dir).as_posix()
        except ValueError as e:
            raise BuildError(
                f"Artifact {artifact.path} is outside build context {context_dir}",
                code="artifact_outside_context",
            ) from e

        result = self._run(
            [
                "build",
                "--file",
                str(dockerfile),
                "--tag",
                str(image),
                "--build-arg",
                f"{ARTIFACT_BUILD_ARG}={artifact_arg}",
                "--label",
                f"org.opencontainers.image.revision={artifact.source_revision}",
                str(context_dir),
            ],
            timeout=self.build_timeout,
            env=env,
        )
        if result.returncode != 0:
            raise BuildError(
                f"Image build failed with exit code {result.returncode}",
                response=result.stderr or result.stdout,
                code="image_build_failed",
            )
        logger.info("Built image %s", image)

    def login(self, env: dict[str, str] | None = None) -> None:
        """Log in to the registry when a password handle is configured."""
        if self.password is None:
            return
        args = ["login", "--password-stdin"]
        if self.username:
            args.extend(["--username", self.username])
        registry = self.config.login_registry()
        if registry:
            args.append(registry)
        result = self._run(
            args,
            timeout=self.push_timeout,
            env=env,
            stdin=self.password.get_secret_value(),
        )
        if result.returncode != 0:
            raise classify_registry_failure(result.stderr or result.stdout, "login")

    def push(self, image: ImageReference, env: dict[str, str] | None = None) -> None:
        """Push a tag. Pushing identical content twice is a registry no-op.

        Raises:
            AuthError: If the registry rejected the credentials.
            NetworkError: Any other push failure, including timeouts.
        """
        result = self._run(["push", str(image)], timeout=self.push_timeout, env=env)
        if result.returncode != 0:
            raise classify_registry_failure(result.stderr or result.stdout, "push")
        logger.info("Pushed image %s", image)

    def publish(
        self,
        artifact: BuildArtifact,
        tag: str,
        source_dir: Path,
        env: dict[str, str] | None = None,
    ) -> ImageReference:
        """Verify, build (once) and push the image for a run.

        Args:
            artifact: Output of the build stage.
            tag: The run's unique tag.
            source_dir: Checkout holding the Dockerfile and context.
            env: Environment for container engine calls.

        Returns:
            Reference of the pushed image.

        Raises:
            BuildError: Checksum mismatch or image build failure.
            AuthError: Registry rejected credentials.
            NetworkError: Transient push failure.
        """
        verify_artifact(artifact)
        image = ImageReference(repository=self.config.repository, tag=tag)

        with self._lock:
            already_built = str(image) in self._built
        if already_built:
            logger.info("Image %s already built, retrying push only", image)
        else:
            self.build_image(image, artifact, source_dir, env=env)
            with self._lock:
                self._built.add(str(image))

        self.login(env=env)
        self.push(image, env=env)
        with self._lock:
            self._built.discard(str(image))
        return image


__all__ = [
    "ARTIFACT_BUILD_ARG",
    "AUTH_FAILURE_MARKERS",
    "ImagePublisher",
    "classify_registry_failure",
]
