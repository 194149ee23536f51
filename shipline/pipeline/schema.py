"""Pydantic models for pipeline definition validation.

A pipeline definition describes one application: where its source lives,
how to build it, which image repository it is published to, and which
manifest file each target environment deploys from.
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Environment names become part of image tags and lock file names
ENVIRONMENT_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.\-]{0,63}$")


class SourceConfig(BaseModel):
    """Schema for the application source repository.

    Attributes:
        url: Clone URL (https, ssh or local path).
        default_revision: Revision built when a trigger names none.
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field(description="Application source clone URL")
    default_revision: str = Field(default="main")


class BuildConfig(BaseModel):
    """Schema for the application build.

    Attributes:
        command: Build command, split with shell quoting rules.
        artifact: Glob, relative to the checkout, matching exactly one file.
        analysis_command: Optional static-analysis command run after build.
        env: Extra environment variables for both commands.
    """

    model_config = ConfigDict(extra="forbid")

    command: str = Field(description="Build command")
    artifact: str = Field(description="Artifact glob relative to checkout")
    analysis_command: str | None = Field(default=None)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("artifact")
    @classmethod
    def validate_artifact(cls, v: str) -> str:
        """Validate the artifact glob stays inside the checkout."""
        if v.startswith("/") or ".." in v.split("/"):
            raise ValueError("artifact must be a relative path inside the checkout")
        return v


class ImageConfig(BaseModel):
    """Schema for the container image.

    Attributes:
        repository: Image repository, optionally registry-qualified.
        dockerfile: Dockerfile path relative to the checkout.
        context: Build context relative to the checkout.
        registry: Registry host for login; derived from repository if unset.
    """

    model_config = ConfigDict(extra="forbid")

    repository: str = Field(description="Image repository without tag")
    dockerfile: str = Field(default="Dockerfile")
    context: str = Field(default=".")
    registry: str | None = Field(default=None)

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        """Validate the repository carries no tag or digest."""
        last = v.rsplit("/", 1)[-1]
        if ":" in last or "@" in v:
            raise ValueError("repository must not include a tag or digest")
        if v != v.lower():
            raise ValueError("repository must be lowercase")
        return v

    def login_registry(self) -> str | None:
        """Return the registry host to log in to, if any."""
        if self.registry:
            return self.registry
        first = self.repository.split("/", 1)[0]
        if "/" in self.repository and ("." in first or ":" in first):
            return first
        return None


class ManifestConfig(BaseModel):
    """Schema for the manifest (GitOps) repository."""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(description="Manifest repository clone URL")
    branch: str = Field(default="main")
    author_name: str = Field(default="shipline")
    author_email: str = Field(default="shipline@localhost")


class EnvironmentConfig(BaseModel):
    """Schema for one target environment.

    Attributes:
        manifest_path: Manifest file path inside the manifest repository.
        branch: Manifest branch override for this environment.
    """

    model_config = ConfigDict(extra="forbid")

    manifest_path: str = Field(description="Manifest file in the manifest repo")
    branch: str | None = Field(default=None)


class PipelineDefinition(BaseModel):
    """Schema for a complete pipeline definition."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Application name")
    source: SourceConfig
    build: BuildConfig
    image: ImageConfig
    manifest: ManifestConfig
    environments: dict[str, EnvironmentConfig] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_environment_names(self) -> "PipelineDefinition":
        """Validate environment names are usable in tags and file names."""
        for name in self.environments:
            if not ENVIRONMENT_NAME_PATTERN.match(name):
                raise ValueError(
                    f"environment name '{name}' must match "
                    f"{ENVIRONMENT_NAME_PATTERN.pattern}"
                )
        return self

    def manifest_branch(self, environment: str) -> str:
        """Return the manifest branch an environment publishes to."""
        return self.environments[environment].branch or self.manifest.branch


__all__ = [
    "BuildConfig",
    "ENVIRONMENT_NAME_PATTERN",
    "EnvironmentConfig",
    "ImageConfig",
    "ManifestConfig",
    "PipelineDefinition",
    "SourceConfig",
]
