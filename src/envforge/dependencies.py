"""
Cross-service dependency wait.

An env value of the form ``{{<service>_buildOutput(<pattern>)}}`` declares
that this deploy needs a value from a sibling's build log.  Before the
deploy builds, the resolver polls the sibling's ``build_output`` until it
is populated, then applies ``<pattern>`` with a single first-match search.

Architecture:
    ::

        parse_bindings(env)
          → static env (bindings removed) + [CrossServiceEnvBinding]

        CrossServiceDependencyResolver.wait(deploy, bindings)
          │  asyncio.gather, one task per binding (any failure fails all)
          ▼
        _resolve_one(binding)
          sibling uuid = "{source}-{build_uuid}"
          poll ledger.get_build_output ── attempts × interval
            │ exhausted → DependencyTimeoutError
            ▼
          pattern == ""          → nothing extracted (sequencing only)
          re.search(pattern)     → group(0)
          no match               → key left absent, logged

Example:
    >>> env, bindings = parse_bindings({"VERSION": "{{api_buildOutput(v[0-9.]+)}}"})
    >>> bindings[0].source_service_name, bindings[0].extraction_pattern
    ('api', 'v[0-9.]+')
    >>> extracted = await resolver.wait(deploy, bindings)
    >>> extracted
    {'VERSION': 'v1.2.3'}
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING

from envforge.core.errors import ConfigurationError, DependencyTimeoutError
from envforge.core.logging import get_logger
from envforge.models import CrossServiceEnvBinding, deploy_uuid

if TYPE_CHECKING:
    from envforge.core.config.settings import EnvforgeSettings
    from envforge.ledger import DeployLedger
    from envforge.models import Deploy

logger = get_logger(__name__)

BINDING_RE = re.compile(r"^\{\{\s*([\w-]+?)_buildOutput\((.*)\)\s*\}\}$", re.DOTALL)


def parse_bindings(env: dict[str, str]) -> tuple[dict[str, str], list[CrossServiceEnvBinding]]:
    """Split *env* into static values and cross-service bindings."""
    static: dict[str, str] = {}
    bindings: list[CrossServiceEnvBinding] = []
    for key, value in env.items():
        match = BINDING_RE.match(value.strip()) if isinstance(value, str) else None
        if match is None:
            static[key] = value
            continue
        bindings.append(
            CrossServiceEnvBinding(
                source_service_name=match.group(1),
                target_env_key=key,
                extraction_pattern=match.group(2),
            )
        )
    return static, bindings


def extract(pattern: str, output: str) -> str | None:
    """First match of *pattern* in *output*; None for an empty pattern or no match.

    Raises:
        ConfigurationError: If *pattern* is not a valid regular expression.
    """
    if not pattern:
        return None
    try:
        match = re.search(pattern, output)
    except re.error as exc:
        raise ConfigurationError(f"Invalid extraction pattern {pattern!r}: {exc}", cause=exc) from exc
    return match.group(0) if match else None


class CrossServiceDependencyResolver:
    """Wait on sibling build output and extract bound env values."""

    def __init__(
        self,
        ledger: DeployLedger,
        settings: EnvforgeSettings,
    ):
        self._ledger = ledger
        self._attempts = settings.dependency_poll_attempts
        self._interval = settings.dependency_poll_interval_seconds

    async def wait(self, deploy: Deploy, bindings: list[CrossServiceEnvBinding]) -> dict[str, str]:
        """Resolve every binding of *deploy* in parallel.

        Returns:
            ``{target_env_key: value}`` for bindings that extracted a value.

        Raises:
            DependencyTimeoutError: If any sibling never produced output.
        """
        if not bindings:
            return {}

        results = await asyncio.gather(*(self._resolve_one(deploy, b) for b in bindings))

        extracted = {b.target_env_key: value for b, value in zip(bindings, results) if value is not None}
        logger.info(
            "dependency.resolved",
            deploy_uuid=deploy.uuid,
            bindings=len(bindings),
            extracted=sorted(extracted),
        )
        return extracted

    async def _resolve_one(self, deploy: Deploy, binding: CrossServiceEnvBinding) -> str | None:
        sibling = deploy_uuid(binding.source_service_name, deploy.build_uuid)
        output = await self._poll_output(deploy, sibling)

        value = extract(binding.extraction_pattern, output)
        if value is None and binding.extraction_pattern:
            logger.info(
                "dependency.no_match",
                deploy_uuid=deploy.uuid,
                sibling=sibling,
                key=binding.target_env_key,
                pattern=binding.extraction_pattern,
            )
        return value

    async def _poll_output(self, deploy: Deploy, sibling: str) -> str:
        for attempt in range(1, self._attempts + 1):
            output = self._ledger.get_build_output(sibling)
            if output:
                logger.debug("dependency.output_ready", deploy_uuid=deploy.uuid, sibling=sibling, attempt=attempt)
                return output
            if attempt < self._attempts:
                await asyncio.sleep(self._interval)

        logger.warning(
            "dependency.timeout",
            deploy_uuid=deploy.uuid,
            build_uuid=deploy.build_uuid,
            sibling=sibling,
            attempts=self._attempts,
        )
        raise DependencyTimeoutError(sibling, self._attempts, self._interval).with_context(
            deploy_uuid=deploy.uuid, build_uuid=deploy.build_uuid
        )
