"""
Envforge - build orchestration core for pull-request preview environments.

A pull request fans out into a set of services.  Envforge resolves them
from the database template and the branch's ``lifecycle.yaml``, registers
one Deploy per service, and drives each Deploy through image build on one
of several pluggable build engines.

- envforge.resolver: DeployableResolver
- envforge.registrar: DeployRegistrar
- envforge.engines: build engines and the engine router
- envforge.dependencies: cross-service build-output bindings
- envforge.orchestrator: DeployOrchestrator, resolve_and_build
"""

__version__ = "0.1.0"

from envforge.core.errors import (
    BuildExecutionError,
    ConfigurationError,
    DependencyTimeoutError,
    EnvforgeError,
    LogRetrievalError,
    StaleAttemptError,
    TransientInfrastructureError,
)
from envforge.ledger import DeployLedger
from envforge.models import Build, Deploy, Deployable, DeployStatus, DeployType
from envforge.orchestrator import DeployOrchestrator, build_default_router
from envforge.registrar import DeployRegistrar
from envforge.resolver import DeployableResolver
from envforge.schema import create_schema

__all__ = [
    "Build",
    "BuildExecutionError",
    "ConfigurationError",
    "Deploy",
    "DeployLedger",
    "DeployOrchestrator",
    "DeployRegistrar",
    "DeployStatus",
    "DeployType",
    "Deployable",
    "DeployableResolver",
    "DependencyTimeoutError",
    "EnvforgeError",
    "LogRetrievalError",
    "StaleAttemptError",
    "TransientInfrastructureError",
    "build_default_router",
    "create_schema",
]
