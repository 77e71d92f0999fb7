"""
Deployment entry point: deployer/main.py

  1. Build the chatbot descriptor graph for one environment
  2. Validate it (a rejected graph exits before any Azure call)
  3. Provision in dependency order, writing secrets to Key Vault
  4. Bind the container's managed identity to the vault
  5. Print the DeploymentReport

Dry-run (AZURE_DEPLOY_DRY_RUN=true, the default) uses the simulated
provider, an in-memory secret store and in-memory role assignments.
"""
from __future__ import annotations

import argparse
import json
import logging
from typing import List, Optional, Sequence, Tuple

from config.azure_config import (
    AZURE_CONFIG,
    ORCHESTRATOR_CONFIG,
    AzureConfig,
    OrchestratorConfig,
)
from deployer.agents.access_grant_binder import AccessGrantBinder
from deployer.agents.orchestrator import DeploymentOrchestrator
from deployer.blueprints.chatbot import (
    ENVIRONMENT_PROFILES,
    KEY_VAULT,
    build_chatbot_graph,
    resource_names,
)
from deployer.errors import GraphValidationError
from deployer.providers.azure_provider import build_provider
from deployer.providers.role_assignments import build_role_service
from deployer.schemas.resources import DeploymentContext
from deployer.stores.secret_store import build_secret_store
from logs.audit import AuditLogger, get_audit

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

for lib in ("azure", "urllib3"):
    logging.getLogger(lib).setLevel(logging.WARNING)


def build_orchestrator(
    azure_config: AzureConfig = AZURE_CONFIG,
    config:       OrchestratorConfig = ORCHESTRATOR_CONFIG,
    environment:  str = "dev",
    dry_run:      Optional[bool] = None,
    audit:        Optional[AuditLogger] = None,
) -> DeploymentOrchestrator:
    """Wire provider, secret store and binder for one deployment run."""
    dry_run = config.dry_run if dry_run is None else dry_run
    if not dry_run:
        azure_config.require_azure_creds()

    vault_name = resource_names(azure_config.name_prefix, environment, azure_config.vault_name)[KEY_VAULT]
    audit = audit or get_audit()
    context = DeploymentContext.from_config(azure_config, tags={
        "managed_by":  "chatbot-infra-orchestrator",
        "environment": environment,
    })

    logger.info(
        "[%s] Building orchestrator: environment=%s dry_run=%s resource_group=%s",
        context.deployment_id, environment, dry_run, context.resource_group,
    )
    return DeploymentOrchestrator(
        provider=build_provider(dry_run, azure_config.subscription_id),
        secret_store=build_secret_store(
            use_local=dry_run, vault_url=f"https://{vault_name}.vault.azure.net",
        ),
        binder=AccessGrantBinder(
            build_role_service(dry_run, azure_config.subscription_id), audit=audit,
        ),
        context=context,
        config=config,
        audit=audit,
        secret_store_resource_id=KEY_VAULT,
    )


def _registry_arg(value: str) -> Tuple[str, str]:
    arm_id, sep, login_server = value.partition("=")
    if not sep or not arm_id or not login_server:
        raise argparse.ArgumentTypeError("expected ID=LOGIN_SERVER")
    return arm_id, login_server


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision the chatbot infrastructure")
    parser.add_argument("--environment", choices=sorted(ENVIRONMENT_PROFILES),
                        default=AZURE_CONFIG.environment if AZURE_CONFIG.environment
                        in ENVIRONMENT_PROFILES else "dev")
    parser.add_argument("--plan", action="store_true",
                        help="Validate the graph and print the batches; no Azure calls")
    parser.add_argument("--live", action="store_true",
                        help="Provision real resources (overrides AZURE_DEPLOY_DRY_RUN)")
    parser.add_argument("--existing-registry", metavar="ID=LOGIN_SERVER", type=_registry_arg,
                        help="Bind to a registry created outside this deployment")
    parser.add_argument("--json", action="store_true",
                        help="Print the report as JSON")
    return parser


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Returns the process exit code: 0 ok, 1 resource failures, 2 rejected."""
    args = build_parser().parse_args(argv)
    descriptors = build_chatbot_graph(
        AZURE_CONFIG, args.environment, existing_registry=args.existing_registry,
    )
    dry_run = False if args.live else None

    try:
        orchestrator = build_orchestrator(environment=args.environment, dry_run=dry_run)
    except EnvironmentError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    try:
        if args.plan:
            batches: List[List[str]] = orchestrator.plan(descriptors)
            print(f"Provisioning plan ({len(batches)} batches):")
            for idx, batch in enumerate(batches, start=1):
                print(f"  {idx}. {', '.join(batch)}")
            return 0
        report = await orchestrator.deploy(descriptors)
    except GraphValidationError as exc:
        print(f"Graph rejected [{exc.kind}]: {exc}")
        return 2

    print("\n" + "=" * 60)
    print(json.dumps(report.to_dict(), indent=2) if args.json else report.summary())
    print("=" * 60)
    return 0 if report.succeeded else 1
