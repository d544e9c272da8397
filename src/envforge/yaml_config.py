"""Pydantic models for the per-branch ``lifecycle.yaml`` file.

A repository may carry a declarative file describing the services of its
preview environment.  The resolver overlays it on the database template.

Usage::

    from envforge.yaml_config import LifecycleConfig

    config = LifecycleConfig.from_yaml(text)
    service = config.get_service("api")

Example YAML::

    version: "1.0.0"
    environment:
      defaultServices:
        - name: api
        - name: billing-db
          serviceId: 12            # defined in the database template
        - name: auth
          repository: org/auth     # defined in another repo's lifecycle.yaml
          branch: main
      optionalServices:
        - name: worker
    services:
      - name: api
        requires:
          - name: cache
        github:
          repository: org/api
          branchName: main
          docker:
            defaultTag: main
            ecr: apps
            builder:
              engine: buildkit
            app:
              dockerfilePath: Dockerfile
              env:
                API_VERSION: "{{auth_buildOutput(v(\\d+\\.\\d+\\.\\d+))}}"
            init:
              dockerfilePath: Dockerfile.migrate
          deployment:
            hostnames:
              host: preview.example.dev
            readiness:
              httpGet: {path: /health, port: 8080}
      - name: cache
        docker:
          dockerImage: redis
          defaultTag: "7"

Older files without ``environment.defaultServices`` / ``optionalServices``
are still accepted; the resolver then merges every entry of ``services``.
"""

from __future__ import annotations

from typing import Annotated, Any

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator

from envforge.core.errors import ConfigurationError
from envforge.models import Build, Deployable, DeployType

_TYPE_KEYS: dict[str, DeployType] = {
    "github": DeployType.GITHUB,
    "docker": DeployType.DOCKER,
    "codefresh": DeployType.CODEFRESH,
    "auroraRestore": DeployType.AURORA_RESTORE,
    "externalHttp": DeployType.EXTERNAL_HTTP,
    "configuration": DeployType.CONFIGURATION,
}


def _stringify_env(v: Any) -> Any:
    if isinstance(v, dict):
        return {str(k): "" if val is None else str(val) for k, val in v.items()}
    return v


# YAML scalars (ports, flags) arrive as int/bool; env values are always strings.
EnvMap = Annotated[dict[str, str], BeforeValidator(_stringify_env)]


class _Spec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class HostnamesSpec(_Spec):
    host: str | None = None
    defaultPublicUrl: str | None = None


class DeploymentSpec(_Spec):
    resource: dict[str, Any] = Field(default_factory=dict, description="Resource requests/limits")
    readiness: dict[str, Any] = Field(default_factory=dict, description="Readiness probe parameters")
    hostnames: HostnamesSpec | None = None
    port: int | None = None


class BuilderSpec(_Spec):
    engine: str | None = None


class AfterBuildPipelineSpec(_Spec):
    afterBuildPipelineId: str
    # Key spelling matches existing lifecycle.yaml files.
    detatchAfterBuildPipeline: bool = False
    description: str | None = None


class DockerfileSpec(_Spec):
    dockerfilePath: str = "Dockerfile"
    env: EnvMap = Field(default_factory=dict)
    afterBuildPipelineConfig: AfterBuildPipelineSpec | None = None


class DockerBuildSpec(_Spec):
    defaultTag: str | None = None
    ecr: str | None = Field(default=None, description="Registry repository for built images")
    builder: BuilderSpec | None = None
    app: DockerfileSpec = Field(default_factory=DockerfileSpec)
    init: DockerfileSpec | None = None


class GithubServiceSpec(_Spec):
    repository: str | None = None
    branchName: str | None = None
    docker: DockerBuildSpec = Field(default_factory=DockerBuildSpec)
    deployment: DeploymentSpec | None = None


class DockerServiceSpec(_Spec):
    dockerImage: str
    defaultTag: str | None = None
    env: EnvMap = Field(default_factory=dict)
    deployment: DeploymentSpec | None = None


class CodefreshServiceSpec(_Spec):
    repository: str | None = None
    branchName: str | None = None
    buildPipelineName: str
    defaultTag: str | None = None
    ecr: str | None = None
    env: EnvMap = Field(default_factory=dict)
    deployment: DeploymentSpec | None = None


class AuroraRestoreSpec(_Spec):
    command: str | None = None
    arguments: str | None = None


class ExternalHttpSpec(_Spec):
    defaultInternalHostname: str | None = None
    defaultPublicUrl: str | None = None


class ConfigurationSpec(_Spec):
    defaultTag: str | None = None
    branchName: str | None = None


class RequireSpec(_Spec):
    name: str


class ServiceSpec(_Spec):
    """One entry of ``services``; exactly one type block must be present."""

    name: str = Field(..., min_length=1)
    requires: list[RequireSpec] = Field(default_factory=list)
    deploymentDependsOn: list[str] = Field(default_factory=list)
    github: GithubServiceSpec | None = None
    docker: DockerServiceSpec | None = None
    codefresh: CodefreshServiceSpec | None = None
    auroraRestore: AuroraRestoreSpec | None = None
    externalHttp: ExternalHttpSpec | None = None
    configuration: ConfigurationSpec | None = None

    @model_validator(mode="after")
    def validate_single_type(self) -> ServiceSpec:
        present = [key for key in _TYPE_KEYS if getattr(self, key) is not None]
        if len(present) != 1:
            raise ValueError(
                f"Service '{self.name}' must define exactly one of {sorted(_TYPE_KEYS)}, got {present or 'none'}"
            )
        return self

    @property
    def type(self) -> DeployType:
        return next(t for key, t in _TYPE_KEYS.items() if getattr(self, key) is not None)

    @property
    def repository(self) -> str | None:
        block = self.github or self.codefresh
        return block.repository if block else None

    @property
    def branch_name(self) -> str | None:
        block = self.github or self.codefresh or self.configuration
        return block.branchName if block else None

    def to_deployable(
        self,
        build: Build,
        *,
        repository: str | None,
        branch_name: str | None,
        active: bool,
        depends_on: str | None = None,
        default_host: str | None = None,
    ) -> Deployable:
        """Flatten this service into a :class:`Deployable`.

        ``repository`` / ``branch_name`` are where the file was read from.
        A service block naming a different repository builds from that
        repository at its own ``branchName``.

        Raises:
            ConfigurationError: If a source-built service has no repository.
        """
        if self.repository and self.repository != repository:
            repository, branch_name = self.repository, self.branch_name or branch_name
        elif branch_name is None:
            branch_name = self.branch_name

        deployable = Deployable(
            name=self.name,
            build_id=build.id,
            build_uuid=build.uuid,
            type=self.type,
            repository=repository,
            branch_name=branch_name,
            depends_on_deployable_name=depends_on,
            deployment_depends_on=list(self.deploymentDependsOn),
            active=active,
            host=default_host,
        )

        deployment: DeploymentSpec | None = None
        if self.github is not None:
            docker = self.github.docker
            deployment = self.github.deployment
            deployable.default_tag = docker.defaultTag
            deployable.registry_repository = docker.ecr
            deployable.builder = docker.builder.engine if docker.builder else None
            deployable.dockerfile_path = docker.app.dockerfilePath
            deployable.env = dict(docker.app.env)
            if docker.app.afterBuildPipelineConfig is not None:
                deployable.after_build_pipeline_name = docker.app.afterBuildPipelineConfig.afterBuildPipelineId
                deployable.detach_after_build_pipeline = docker.app.afterBuildPipelineConfig.detatchAfterBuildPipeline
            if docker.init is not None:
                deployable.init_dockerfile_path = docker.init.dockerfilePath
                deployable.init_env = dict(docker.init.env)
        elif self.codefresh is not None:
            deployment = self.codefresh.deployment
            deployable.build_pipeline_name = self.codefresh.buildPipelineName
            deployable.default_tag = self.codefresh.defaultTag
            deployable.registry_repository = self.codefresh.ecr
            deployable.env = dict(self.codefresh.env)
        elif self.docker is not None:
            deployment = self.docker.deployment
            deployable.docker_image = self.docker.dockerImage
            deployable.default_tag = self.docker.defaultTag
            deployable.env = dict(self.docker.env)
        elif self.auroraRestore is not None:
            deployable.restore = self.auroraRestore.model_dump(exclude_none=True)
        elif self.externalHttp is not None:
            deployable.default_public_url = self.externalHttp.defaultPublicUrl
            deployable.host = None
        elif self.configuration is not None:
            deployable.default_tag = self.configuration.defaultTag

        if deployment is not None:
            deployable.resources = dict(deployment.resource)
            deployable.readiness = dict(deployment.readiness)
            deployable.port = deployment.port
            if deployment.hostnames is not None:
                deployable.host = deployment.hostnames.host or default_host
                deployable.default_public_url = deployment.hostnames.defaultPublicUrl

        if deployable.type.is_source_build and not deployable.repository:
            raise ConfigurationError(f"Service '{self.name}' has no resolvable repository")
        return deployable


class DependencyServiceSpec(_Spec):
    """Entry of ``environment.defaultServices`` / ``optionalServices``."""

    name: str = Field(..., min_length=1)
    serviceId: int | None = None
    repository: str | None = None
    branch: str | None = None


class EnvironmentSpec(_Spec):
    name: str | None = None
    defaultServices: list[DependencyServiceSpec] = Field(default_factory=list)
    optionalServices: list[DependencyServiceSpec] = Field(default_factory=list)


class LifecycleConfig(_Spec):
    """Root model of ``lifecycle.yaml``."""

    version: str = "1.0.0"
    environment: EnvironmentSpec | None = None
    services: list[ServiceSpec] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> Any:
        return str(v) if isinstance(v, (int, float)) else v

    @field_validator("services")
    @classmethod
    def validate_unique_names(cls, v: list[ServiceSpec]) -> list[ServiceSpec]:
        names = [svc.name for svc in v]
        if len(names) != len(set(names)):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate service names: {duplicates}")
        return v

    @property
    def has_environment_services(self) -> bool:
        env = self.environment
        return env is not None and bool(env.defaultServices or env.optionalServices)

    def get_service(self, name: str) -> ServiceSpec | None:
        return next((svc for svc in self.services if svc.name == name), None)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> LifecycleConfig:
        """Parse and validate YAML content.

        Raises:
            ConfigurationError: If the YAML is empty, malformed, or does not
                match the schema.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid lifecycle YAML: {e}", cause=e) from e

        if not data:
            raise ConfigurationError("Lifecycle YAML is empty")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Lifecycle YAML must be a mapping, got {type(data).__name__}")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Lifecycle YAML does not match schema: {e}", cause=e) from e
