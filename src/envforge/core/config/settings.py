"""
Process settings for envforge.

One validated, cached settings object holds the deployment-time knobs:
worker-pool size, dependency poll budget, native build images and
timeouts, and tag prefixes.  Every field can be set through an
``ENVFORGE_*`` environment variable or a ``.env`` file.

Org-wide build defaults that change at runtime (cache registry,
destination registry, resources) are not settings; they come from the
:class:`~envforge.core.config.provider.GlobalConfigProvider`.

Tags:
    envforge, configuration, settings, pydantic
"""

from __future__ import annotations

try:
    from pydantic_settings import BaseSettings, SettingsConfigDict
except ImportError as exc:  # pragma: no cover
    raise ImportError(
        "envforge.core.config.settings requires pydantic-settings. Install it with: pip install pydantic-settings"
    ) from exc

from pydantic import Field, field_validator


class EnvforgeSettings(BaseSettings):
    """Envforge configuration, read from ``ENVFORGE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ENVFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # ── Database ─────────────────────────────────────────────────
    database_path: str = Field(default=":memory:", description="sqlite path for the deploy ledger")

    # ── Worker pool ──────────────────────────────────────────────
    max_concurrency: int = Field(default=8, ge=1)

    # ── Dependency wait ──────────────────────────────────────────
    dependency_poll_attempts: int = Field(default=240, ge=1)
    dependency_poll_interval_seconds: float = Field(default=5.0, ge=0)

    # ── Native builds ────────────────────────────────────────────
    build_namespace: str = Field(default="lifecycle-app")
    build_service_account: str = Field(default="native-build-sa")
    build_job_timeout_seconds: int = Field(default=2100, ge=1)
    buildkit_endpoint: str = Field(default="tcp://buildkit.lifecycle-app.svc.cluster.local:1234")
    buildkit_image: str = Field(default="moby/buildkit:v0.12.0")
    kaniko_image: str = Field(default="gcr.io/kaniko-project/executor:v1.9.2")
    git_image: str = Field(default="alpine/git:2.40.1")
    aws_cli_image: str = Field(default="amazon/aws-cli:2.13.0")
    noop_auth_image: str = Field(default="alpine:3.18")

    # ── Remote CI ────────────────────────────────────────────────
    remote_ci_log_url_template: str = Field(default="https://g.codefresh.io/build/{id}")
    remote_ci_timeout_seconds: int = Field(default=3600, ge=1)

    # ── Tags ─────────────────────────────────────────────────────
    tag_prefix: str = Field(default="lfc")
    init_tag_prefix: str = Field(default="lfc-init")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got {v!r}")
        return v

    @property
    def dependency_poll_budget_seconds(self) -> float:
        return self.dependency_poll_attempts * self.dependency_poll_interval_seconds


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, EnvforgeSettings] = {}


def get_settings(*, _force_reload: bool = False) -> EnvforgeSettings:
    """Load, validate, and cache an :class:`EnvforgeSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]

    settings = EnvforgeSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
