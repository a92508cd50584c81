"""Tests for the one-step reconcile driver."""

import base64

import pytest
import yaml

from conftest import FakeProvider

from vmimport.cluster import SECRET
from vmimport.config import AppConfig, EngineSettings
from vmimport.pipeline import itinerary as phases
from vmimport.pipeline.reconcile import Reconciler, config_credentials, secret_data
from vmimport.pipeline.state import StatusStore


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        engine=EngineSettings(import_without_template=True),
        vmware={"vcenter": "vc.local", "username": "admin", "password": "pw"},
        state_dir=tmp_path,
    )


@pytest.fixture
def reconciler(config, cluster, provider):
    return Reconciler(config, cluster, provider_factory=lambda request, cluster: provider)


class TestSecrets:
    def test_secret_data_decodes_and_overlays(self):
        secret = {
            "data": {"vmware": base64.b64encode(b"apiUrl: vc.local").decode(), "other": base64.b64encode(b"x").decode()},
            "stringData": {"other": "y"},
        }
        assert secret_data(secret) == {"vmware": "apiUrl: vc.local", "other": "y"}

    def test_config_credentials(self, config):
        document = yaml.safe_load(config_credentials(config)["vmware"])
        assert document["vcenter"] == "vc.local"
        assert document["password"] == "pw"

    def test_no_vmware_config(self, tmp_path):
        assert config_credentials(AppConfig(state_dir=tmp_path)) == {}


class TestReconciler:
    def test_step_persists_status(self, reconciler, migration_request, provider, tmp_path):
        result = reconciler.reconcile(migration_request)

        assert result.phase == phases.STARTED
        assert provider.calls == ["init", "prepare_resource_mapping", "close"]
        saved = StatusStore(tmp_path).load(migration_request.key)
        assert saved.phase == phases.STARTED
        assert saved.itinerary == "ColdImport"

    def test_resumes_from_store(self, reconciler, migration_request):
        for _ in range(3):
            result = reconciler.reconcile(migration_request)
        assert result.phase == phases.POWER_OFF_SOURCE

    def test_missing_secret_postpones(self, reconciler, migration_request, provider, tmp_path):
        migration_request.credentials_secret = "vcenter-creds"
        assert reconciler.reconcile(migration_request) is None
        assert provider.calls == []
        assert StatusStore(tmp_path).load(migration_request.key) is None

    def test_secret_is_read(self, config, cluster, migration_request):
        cluster.create({
            "kind": SECRET,
            "metadata": {"name": "vcenter-creds", "namespace": "default"},
            "stringData": {"vmware": "apiUrl: vc.local"},
        })
        migration_request.credentials_secret = "vcenter-creds"
        seen = {}

        class RecordingProvider(FakeProvider):
            def init(self, credentials, request):
                seen.update(credentials)

        reconciler = Reconciler(config, cluster, provider_factory=lambda r, c: RecordingProvider())
        reconciler.reconcile(migration_request)
        assert seen == {"vmware": "apiUrl: vc.local"}

    def test_provider_closed_on_error(self, config, cluster, migration_request, tmp_path):
        provider = FakeProvider()

        def boom(credentials, request):
            raise ValueError("bad credentials")
        provider.init = boom

        reconciler = Reconciler(config, cluster, provider_factory=lambda r, c: provider)
        with pytest.raises(ValueError):
            reconciler.reconcile(migration_request)
        assert provider.calls == ["close"]
        assert StatusStore(tmp_path).load(migration_request.key) is not None
