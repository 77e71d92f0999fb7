"""Unit tests for the deployment orchestrator."""

import asyncio
import shutil
import tempfile
import unittest
from pathlib import Path

from config.azure_config import AzureConfig, OrchestratorConfig
from deployer.agents.access_grant_binder import AccessGrantBinder
from deployer.agents.orchestrator import DeploymentOrchestrator
from deployer.blueprints.chatbot import (
    CONTAINER,
    KEY_VAULT,
    OPENAI,
    SQL,
    VAULT_ACCESS,
    build_chatbot_graph,
)
from deployer.errors import CycleDetected, InvalidTransition, PermissionDenied
from deployer.providers.role_assignments import (
    BUILTIN_ROLES,
    InMemoryRoleAssignmentService,
    RoleAssignmentService,
)
from deployer.providers.simulated import SimulatedResourceProvider
from deployer.schemas.resources import (
    DeploymentContext,
    OutputRef,
    ResourceDescriptor,
    ResourceKind,
    ResourceState,
    SecretRef,
)
from deployer.stores.secret_store import InMemorySecretStore
from logs.audit import AuditLogger


def vault(rid, **params):
    return ResourceDescriptor(id=rid, kind=ResourceKind.KEY_VAULT, parameters=params)


def ref(rid, attribute="id"):
    return OutputRef(resource_id=rid, attribute=attribute)


class DenyingRoleService(RoleAssignmentService):
    async def assign(self, context, principal_id, target_id, role_id):
        raise PermissionDenied("create_role_assignment", target_id)


class LeakyProvider(SimulatedResourceProvider):
    """Puts the generated API key into a public output."""

    async def create_or_update(self, context, kind, resource_id, parameters):
        result = await super().create_or_update(context, kind, resource_id, parameters)
        if "api_key" in result.secret_material:
            result.outputs["endpoint"] = f"https://x/?key={result.secret_material['api_key']}"
        return result


class ForgetfulProvider(SimulatedResourceProvider):
    """Omits the vault URI from Key Vault outputs."""

    async def create_or_update(self, context, kind, resource_id, parameters):
        result = await super().create_or_update(context, kind, resource_id, parameters)
        result.outputs.pop("vault_uri", None)
        return result


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.audit = AuditLogger(Path(self.tmpdir) / "audit.jsonl")
        self.addCleanup(shutil.rmtree, self.tmpdir, ignore_errors=True)
        self.addCleanup(self.audit.shutdown)

        self.provider = SimulatedResourceProvider(time_scale=0.01)
        self.store = InMemorySecretStore()
        self.roles = InMemoryRoleAssignmentService()
        self.context = DeploymentContext(
            subscription_id="00000000-0000-0000-0000-000000000001",
            resource_group="rg-test",
            location="eastus",
        )
        self.config = OrchestratorConfig(
            provider_timeout_seconds=5, grant_timeout_seconds=5,
            secret_timeout_seconds=5, max_parallel=4, dry_run=True,
        )

    def make(self, store_id=None, **overrides):
        params = dict(
            provider=self.provider,
            secret_store=self.store,
            binder=AccessGrantBinder(self.roles, audit=self.audit),
            context=self.context,
            config=self.config,
            audit=self.audit,
            secret_store_resource_id=store_id,
        )
        params.update(overrides)
        return DeploymentOrchestrator(**params)

    def chatbot(self):
        config = AzureConfig(tenant_id="tenant", vault_name="", name_prefix="bot")
        graph = build_chatbot_graph(config, "dev")
        return graph, {d.id: d for d in graph}


class TestChatbotScenario(OrchestratorTestCase):
    """KeyVault -> {SQL, OpenAI, Registry} -> Container -> grant."""

    async def test_all_resources_ready_with_one_grant(self):
        graph, by_id = self.chatbot()
        report = await self.make(store_id=KEY_VAULT).deploy(graph)

        self.assertTrue(report.succeeded, report.summary())
        self.assertTrue(all(d.state == ResourceState.READY for d in graph))
        self.assertEqual(len(report.grants), 1)

        grant = report.grants[0]
        self.assertEqual(grant.principal_id, by_id[CONTAINER].outputs["principal_id"])
        self.assertEqual(grant.target_resource_id, by_id[KEY_VAULT].outputs["id"])
        self.assertEqual(grant.role, BUILTIN_ROLES["Key Vault Secrets User"])
        self.assertEqual(by_id[VAULT_ACCESS].outputs["grant_id"], grant.grant_id)

    async def test_secrets_stored_and_never_in_outputs(self):
        graph, _ = self.chatbot()
        await self.make(store_id=KEY_VAULT).deploy(graph)

        self.assertEqual(
            self.store.names(),
            ["openai-api-key", "sql-admin-password", "sql-connection-string"],
        )
        rendered = " ".join(str(d.outputs) for d in graph)
        for name in self.store.names():
            value = await self.store.get(self.context, name)
            self.assertNotIn(value, rendered)

    async def test_container_receives_secret_names_only(self):
        graph, by_id = self.chatbot()
        seen = {}
        original = self.provider.create_or_update

        async def spy(context, kind, resource_id, parameters):
            seen[resource_id] = parameters
            return await original(context, kind, resource_id, parameters)

        self.provider.create_or_update = spy
        await self.make(store_id=KEY_VAULT).deploy(graph)

        env = seen[CONTAINER]["environment"]
        self.assertEqual(env["SQL_PASSWORD_SECRET"], "sql-admin-password")
        self.assertEqual(env["KEY_VAULT_URI"], by_id[KEY_VAULT].outputs["vault_uri"])
        self.assertTrue(seen[CONTAINER]["image"].startswith(
            by_id["registry"].outputs["login_server"] + "/"))
        for name in self.store.names():
            self.assertNotIn(await self.store.get(self.context, name), str(seen[CONTAINER]))

    async def test_existing_registry_is_not_provisioned(self):
        config = AzureConfig(tenant_id="tenant", vault_name="", name_prefix="bot")
        graph = build_chatbot_graph(
            config, "dev",
            existing_registry=("/subscriptions/x/registries/shared", "shared.azurecr.io"),
        )
        report = await self.make(store_id=KEY_VAULT).deploy(graph)
        self.assertTrue(report.succeeded, report.summary())
        self.assertEqual(self.provider.calls_for("registry"), 0)
        self.assertFalse(report.outcome("registry").changed)

    async def test_grant_failure_is_reported(self):
        graph, by_id = self.chatbot()
        orchestrator = self.make(
            store_id=KEY_VAULT,
            binder=AccessGrantBinder(DenyingRoleService(), audit=self.audit),
        )
        report = await orchestrator.deploy(graph)

        self.assertFalse(report.succeeded)
        self.assertEqual(by_id[VAULT_ACCESS].state, ResourceState.FAILED)
        self.assertEqual(report.outcome(VAULT_ACCESS).error_kind, "GrantFailure")
        self.assertEqual(by_id[CONTAINER].state, ResourceState.READY)
        self.assertEqual([o.resource_id for o in report.failed()], [VAULT_ACCESS])

    async def test_secret_leaking_into_outputs_fails_resource(self):
        self.provider = LeakyProvider(time_scale=0.01)
        graph, by_id = self.chatbot()
        await self.make(store_id=KEY_VAULT).deploy(graph)

        self.assertEqual(by_id[OPENAI].state, ResourceState.FAILED)
        self.assertIn("appears in outputs", by_id[OPENAI].error)
        self.assertEqual(by_id[CONTAINER].state, ResourceState.SKIPPED)
        self.assertEqual(by_id[VAULT_ACCESS].state, ResourceState.SKIPPED)
        self.assertNotIn("openai-api-key", self.store.names())

    async def test_denied_secret_write_fails_producer(self):
        self.store = InMemorySecretStore(denied={"sql-admin-password"})
        graph, by_id = self.chatbot()
        report = await self.make(store_id=KEY_VAULT).deploy(graph)

        self.assertEqual(by_id[SQL].state, ResourceState.FAILED)
        self.assertEqual(report.outcome(SQL).error_kind, "PermissionDenied")
        self.assertEqual(by_id[OPENAI].state, ResourceState.READY)
        self.assertEqual(by_id[CONTAINER].state, ResourceState.SKIPPED)


class TestIdempotence(OrchestratorTestCase):

    async def test_second_run_makes_no_provider_calls(self):
        graph, _ = self.chatbot()
        orchestrator = self.make(store_id=KEY_VAULT)
        await orchestrator.deploy(graph)
        calls, grants, writes = len(self.provider.calls), self.roles.calls, len(self.store.writes)

        report = await orchestrator.deploy(graph)

        self.assertTrue(report.succeeded)
        self.assertEqual(len(self.provider.calls), calls)
        self.assertEqual(self.roles.calls, grants)
        self.assertEqual(len(self.store.writes), writes)
        self.assertEqual(report.provider_calls, 0)

    async def test_parameter_diff_reprovisions_only_changed(self):
        graph = [vault("a"), vault("b", sku="standard", up=ref("a")), vault("c", up=ref("b"))]
        orchestrator = self.make()
        await orchestrator.deploy(graph)

        graph[1].parameters["sku"] = "premium"
        report = await orchestrator.deploy(graph)

        self.assertTrue(report.succeeded)
        self.assertEqual(self.provider.calls_for("a"), 1)
        self.assertEqual(self.provider.calls_for("b"), 2)
        # b's id did not change, so c's resolved parameters are identical
        self.assertEqual(self.provider.calls_for("c"), 1)
        self.assertTrue(report.outcome("b").changed)
        self.assertFalse(report.outcome("c").changed)

    async def test_failed_resource_retried_on_next_run(self):
        graph = [vault("a"), vault("b", up=ref("a"))]
        self.provider.fail("a")
        orchestrator = self.make()
        first = await orchestrator.deploy(graph)
        self.assertEqual(first.outcome("b").state, "skipped")

        self.provider.heal("a")
        second = await orchestrator.deploy(graph)
        self.assertTrue(second.succeeded)
        self.assertEqual(self.provider.calls_for("a"), 2)
        self.assertEqual(self.provider.calls_for("b"), 1)


class TestFailureHandling(OrchestratorTestCase):

    async def test_cycle_rejected_before_any_provider_call(self):
        graph = [vault("a", x=ref("b")), vault("b", x=ref("a"))]
        with self.assertRaises(CycleDetected):
            await self.make().deploy(graph)
        self.assertEqual(self.provider.calls, [])
        events = [r["event"] for r in self.audit.read_all()]
        self.assertIn("GRAPH_REJECTED", events)

    async def test_failure_isolated_to_its_branch(self):
        graph = [vault("a"), vault("b", up=ref("a")), vault("c"), vault("d", up=ref("c"))]
        self.provider.fail("a", "quota exceeded")
        report = await self.make().deploy(graph)

        states = {o.resource_id: o.state for o in report.outcomes}
        self.assertEqual(states, {"a": "failed", "b": "skipped", "c": "ready", "d": "ready"})
        self.assertEqual(self.provider.calls_for("b"), 0)
        self.assertIn("quota exceeded", report.outcome("a").error)
        self.assertEqual(report.outcome("a").error_kind, "ProvisionFailure")
        self.assertIn("'a'", report.outcome("b").error)
        self.assertFalse(report.succeeded)

    async def test_timeout_treated_as_failure(self):
        self.provider = SimulatedResourceProvider(delays={"slow": 2.0}, time_scale=0.01)
        self.config = OrchestratorConfig(
            provider_timeout_seconds=0.1, grant_timeout_seconds=5,
            secret_timeout_seconds=5, max_parallel=4, dry_run=True,
        )
        graph = [vault("slow"), vault("after", up=ref("slow")), vault("other")]
        report = await self.make().deploy(graph)

        self.assertEqual(report.outcome("slow").state, "failed")
        self.assertEqual(report.outcome("slow").error_kind, "Timeout")
        self.assertEqual(report.outcome("after").state, "skipped")
        self.assertEqual(report.outcome("other").state, "ready")

    async def test_unresolvable_output_fails_consumer(self):
        graph = [vault("a"), vault("b", uri=ref("a", "vault_uri")), vault("c")]
        report = await self.make(provider=ForgetfulProvider(time_scale=0.01)).deploy(graph)

        self.assertEqual(report.outcome("a").state, "ready")
        self.assertEqual(report.outcome("b").state, "failed")
        self.assertEqual(report.outcome("b").error_kind, "ProvisionFailure")
        self.assertIn("vault_uri", report.outcome("b").error)
        self.assertEqual(report.outcome("c").state, "ready")

    async def test_cancelled_deploy_can_be_rerun(self):
        graph = [vault("a"), vault("b", up=ref("a"))]
        slow = SimulatedResourceProvider(delays={"a": 5.0}, time_scale=0.01)
        task = asyncio.create_task(self.make(provider=slow).deploy(graph))
        await asyncio.sleep(0.1)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual(graph[0].state, ResourceState.FAILED)
        self.assertEqual(graph[0].error_kind, "Cancelled")
        self.assertNotEqual(graph[1].state, ResourceState.PROVISIONING)

        report = await self.make().deploy(graph)
        self.assertTrue(report.succeeded, report.summary())
        self.assertEqual(self.provider.calls_for("a"), 1)

    async def test_illegal_transition_raises(self):
        orchestrator = self.make()
        d = vault("a")
        with self.assertRaises(InvalidTransition):
            orchestrator._transition(d, ResourceState.FAILED)


class TestOrdering(OrchestratorTestCase):

    async def test_consumer_starts_after_secret_write_completes(self):
        self.store = InMemorySecretStore(write_delay=0.2)
        graph = [
            vault("kv"),
            ResourceDescriptor(
                id="db", kind=ResourceKind.SQL,
                parameters={"key_vault": ref("kv")},
                secrets={"db-password": "admin_password"},
            ),
            ResourceDescriptor(
                id="app", kind=ResourceKind.CONTAINER_INSTANCE,
                parameters={"image": "app:1", "environment": {"PW": SecretRef(name="db-password")}},
            ),
        ]
        report = await self.make(store_id="kv").deploy(graph)

        self.assertTrue(report.succeeded, report.summary())
        self.assertGreaterEqual(
            self.provider.started_at["app"], self.store.completed_at("db-password"),
        )

    async def test_consumer_starts_after_producer_ready(self):
        graph = [vault("a"), vault("b", up=ref("a")), vault("c", up=ref("b"))]
        await self.make().deploy(graph)
        self.assertGreaterEqual(self.provider.started_at["b"], self.provider.finished_at["a"])
        self.assertGreaterEqual(self.provider.started_at["c"], self.provider.finished_at["b"])

    async def test_independent_branches_overlap(self):
        self.provider = SimulatedResourceProvider(delays={"a": 0.2, "b": 0.2})
        await self.make().deploy([vault("a"), vault("b")])
        self.assertLess(self.provider.started_at["b"], self.provider.finished_at["a"])
        self.assertLess(self.provider.started_at["a"], self.provider.finished_at["b"])

    async def test_max_parallel_bounds_in_flight_calls(self):
        self.provider = SimulatedResourceProvider(delays={"a": 0.1, "b": 0.1})
        self.config = OrchestratorConfig(
            provider_timeout_seconds=5, grant_timeout_seconds=5,
            secret_timeout_seconds=5, max_parallel=1, dry_run=True,
        )
        await self.make().deploy([vault("a"), vault("b")])
        first, second = sorted(["a", "b"], key=self.provider.started_at.get)
        self.assertGreaterEqual(
            self.provider.started_at[second], self.provider.finished_at[first],
        )

    async def test_concurrent_deploys_serialise_per_resource(self):
        graph = [vault("a")]
        orchestrator = self.make()
        await asyncio.gather(orchestrator.deploy(graph), orchestrator.deploy(graph))
        self.assertEqual(self.provider.calls_for("a"), 1)


class TestReport(OrchestratorTestCase):

    async def test_report_and_audit_trail(self):
        graph = [vault("a"), vault("b", up=ref("a"))]
        orchestrator = self.make()
        self.assertEqual(orchestrator.plan(graph), [["a"], ["b"]])
        self.assertEqual(self.provider.calls, [])

        report = await orchestrator.deploy(graph)
        data = report.to_dict()
        self.assertTrue(data["succeeded"])
        self.assertEqual(data["counts"], {"ready": 2})
        self.assertEqual([r["resource_id"] for r in data["resources"]], ["a", "b"])
        self.assertIn("SUCCEEDED", report.summary())

        events = [r["event"] for r in self.audit.read_all()]
        self.assertEqual(events[0], "DEPLOYMENT_STARTED")
        self.assertEqual(events[-1], "DEPLOYMENT_COMPLETE")
        self.assertEqual(events.count("RESOURCE_STATE"), 4)
        ok, broken, _ = self.audit.verify_chain()
        self.assertTrue(ok)
        self.assertIsNone(broken)

    async def test_status_queries_provider(self):
        graph = [vault("a", name="kv-one")]
        orchestrator = self.make()
        await orchestrator.deploy(graph)
        self.assertEqual(await orchestrator.status(graph), {"a": "Succeeded"})


if __name__ == "__main__":
    unittest.main()
