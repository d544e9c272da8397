"""
Image tag and registry path helpers.

A deploy tag is ``{prefix}-{short_sha}-{env_hash}``: the same revision
built with the same environment always maps to the same tag, which is
what lets the orchestrator skip a build when the tag already exists.

Registry repository paths differ by registry kind:

* account-isolated registries (ECR private, ECR public) already carry a
  repository per service, so the configured path is used as-is;
* any other registry is shared, so ``/{service}`` is appended.

Examples:
    >>> generate_deploy_tag("0123456789abcdef", "a1b2c3d4")
    'lfc-0123456-a1b2c3d4'
    >>> construct_repo_path("team/apps", "api", "registry.internal:5000")
    'team/apps/api'
    >>> construct_repo_path("team/apps", "api", "123456789012.dkr.ecr.us-west-2.amazonaws.com")
    'team/apps'
"""

from __future__ import annotations

import re

ECR_DOMAIN_RE = re.compile(r"^\d+\.dkr\.ecr(-fips)?\.[a-z0-9-]+\.amazonaws\.com$")
ECR_AUTH_RE = re.compile(r"^[0-9]+\.dkr\.ecr\.([a-z0-9-]+)\.amazonaws\.com$")
PUBLIC_ECR_DOMAIN = "public.ecr.aws"

DEFAULT_TAG_PREFIX = "lfc"
DEFAULT_INIT_TAG_PREFIX = "lfc-init"


def short_sha(sha: str, length: int = 7) -> str:
    return sha[:length]


def generate_deploy_tag(sha: str, env_hash: str, prefix: str = DEFAULT_TAG_PREFIX) -> str:
    """Deterministic image tag for a revision + environment."""
    return f"{prefix}-{short_sha(sha)}-{env_hash}"


def is_account_isolated_registry(registry_domain: str | None) -> bool:
    """True for registries that give each repository its own namespace."""
    if not registry_domain:
        return False
    domain = registry_domain.lower()
    return bool(ECR_DOMAIN_RE.match(domain)) or domain == PUBLIC_ECR_DOMAIN


def ecr_region(registry_domain: str) -> str | None:
    """Region of a private ECR host, or None for any other registry."""
    match = ECR_AUTH_RE.match(registry_domain)
    return match.group(1) if match else None


def construct_repo_path(repository: str | None, service_name: str, registry_domain: str | None) -> str:
    """Repository path for *service_name* inside *registry_domain*."""
    if not repository:
        return ""
    repository = repository.strip("/")
    if is_account_isolated_registry(registry_domain):
        return repository
    if repository.endswith(f"/{service_name}") or repository == service_name:
        return repository
    return f"{repository}/{service_name}"


def image_reference(registry_domain: str, repo_path: str, tag: str) -> str:
    return f"{registry_domain}/{repo_path}:{tag}"
