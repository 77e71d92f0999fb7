"""Unit tests for the secret stores."""

import os
import unittest
from unittest.mock import MagicMock, patch

from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError

from deployer.errors import PermissionDenied, SecretNotFound
from deployer.schemas.resources import DeploymentContext
from deployer.stores.secret_store import (
    InMemorySecretStore,
    KeyVaultSecretStore,
    build_secret_store,
)

CONTEXT = DeploymentContext(
    subscription_id="s", resource_group="rg", location="eastus",
    tags={"environment": "dev"}, deployment_id="dep-1",
)


class TestInMemorySecretStore(unittest.IsolatedAsyncioTestCase):

    async def test_put_then_get(self):
        store = InMemorySecretStore()
        await store.put(CONTEXT, "db-password", "hunter2")
        self.assertEqual(await store.get(CONTEXT, "db-password"), "hunter2")
        self.assertEqual(store.names(), ["db-password"])

    async def test_put_replaces_current_value(self):
        store = InMemorySecretStore()
        await store.put(CONTEXT, "k", "v1")
        await store.put(CONTEXT, "k", "v2")
        self.assertEqual(await store.get(CONTEXT, "k"), "v2")
        self.assertEqual(len(store.writes), 2)

    async def test_missing_secret(self):
        with self.assertRaises(SecretNotFound) as ctx:
            await InMemorySecretStore().get(CONTEXT, "nope")
        self.assertEqual(ctx.exception.kind, "NotFound")

    async def test_denied_name(self):
        store = InMemorySecretStore(denied=["locked"])
        with self.assertRaises(PermissionDenied):
            await store.put(CONTEXT, "locked", "v")
        with self.assertRaises(PermissionDenied):
            await store.get(CONTEXT, "locked")

    async def test_completion_time_recorded_after_delay(self):
        store = InMemorySecretStore(write_delay=0.05)
        self.assertIsNone(store.completed_at("k"))
        await store.put(CONTEXT, "k", "v")
        self.assertIsNotNone(store.completed_at("k"))


class TestKeyVaultSecretStore(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        patcher = patch("deployer.stores.secret_store.SecretClient")
        self.client_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = self.client_cls.return_value
        self.store = KeyVaultSecretStore("https://kv.vault.azure.net", credential=MagicMock())

    async def test_put_tags_secret_with_deployment(self):
        await self.store.put(CONTEXT, "openai-api-key", "k-123")
        self.client.set_secret.assert_called_once_with(
            "openai-api-key", "k-123",
            tags={"environment": "dev", "deployment_id": "dep-1"},
        )

    async def test_get_returns_value(self):
        self.client.get_secret.return_value = MagicMock(value="k-123")
        self.assertEqual(await self.store.get(CONTEXT, "openai-api-key"), "k-123")

    async def test_get_not_found(self):
        self.client.get_secret.side_effect = ResourceNotFoundError(message="gone")
        with self.assertRaises(SecretNotFound):
            await self.store.get(CONTEXT, "x")

    async def test_forbidden_maps_to_permission_denied(self):
        error = HttpResponseError(message="Forbidden")
        error.status_code = 403
        self.client.set_secret.side_effect = error
        with self.assertRaises(PermissionDenied):
            await self.store.put(CONTEXT, "x", "v")

    async def test_other_http_errors_propagate(self):
        error = HttpResponseError(message="Server error")
        error.status_code = 500
        self.client.get_secret.side_effect = error
        with self.assertRaises(HttpResponseError):
            await self.store.get(CONTEXT, "x")

    @patch("deployer.stores.secret_store.PURGE_SETTLE_SECONDS", 0)
    async def test_soft_deleted_secret_is_purged_and_rewritten(self):
        self.client.set_secret.side_effect = [
            ResourceExistsError(message="ObjectIsDeletedButRecoverable"),
            MagicMock(),
        ]
        await self.store.put(CONTEXT, "x", "v")
        self.client.purge_deleted_secret.assert_called_once_with("x")
        self.assertEqual(self.client.set_secret.call_count, 2)


class TestBuildSecretStore(unittest.TestCase):

    def test_local(self):
        self.assertIsInstance(build_secret_store(use_local=True), InMemorySecretStore)

    @patch.dict(os.environ, {"SECRET_STORE_LOCAL": "true"})
    def test_local_from_env(self):
        self.assertIsInstance(build_secret_store(), InMemorySecretStore)

    @patch.dict(os.environ, {"SECRET_STORE_LOCAL": "false", "VAULT_NAME": ""})
    def test_vault_name_required(self):
        with self.assertRaises(EnvironmentError):
            build_secret_store()

    @patch.dict(os.environ, {"SECRET_STORE_LOCAL": "false"})
    @patch("deployer.stores.secret_store.build_credential")
    @patch("deployer.stores.secret_store.SecretClient")
    def test_explicit_vault_url(self, client_cls, build_credential):
        store = build_secret_store(vault_url="https://kv-bot-dev.vault.azure.net")
        self.assertIsInstance(store, KeyVaultSecretStore)
        self.assertEqual(store.vault_url, "https://kv-bot-dev.vault.azure.net")


if __name__ == "__main__":
    unittest.main()
