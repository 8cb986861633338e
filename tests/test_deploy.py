"""Tests for shipyard.deploy — publishing versions to the edge platform."""

import hashlib

import httpx
import pytest
from unittest.mock import AsyncMock

from app.clients import edge_client
from shipyard.contracts import BuildArtifact, BuildAttempt, Deployment, Environment, Version
from shipyard.deploy import (
    MAX_SCRIPT_BYTES,
    DeploymentConfig,
    DeploymentService,
    asset_key,
    categorize,
    hostname_for,
    script_name_for,
    should_offload,
)
from shipyard.errors import DeploymentFailure, DeploymentPreconditionError
from shipyard.project import Project

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
INDEX = b"<h1>Hello World</h1>"


def _config(**overrides) -> DeploymentConfig:
    values = dict(
        account_id="acc",
        api_token="tok",
        workers_subdomain="shipyard-test",
        bucket="assets",
        asset_public_url="https://assets.example.com",
        env_bindings=(("API_URL", "https://api.example.com"),),
        liveness_attempts=2,
        liveness_initial_s=0.01,
        liveness_max_s=0.01,
    )
    values.update(overrides)
    return DeploymentConfig(**values)


def _add_version(project: Project, files: dict[str, bytes], *, entry: str = "") -> Version:
    artifact = BuildArtifact(files=files, entry=entry)
    version = Version(
        number=project.next_version_number,
        files={"index.html": "<h1>Hello World</h1>"},
        build_attempt=len(project.build_attempts) + 1,
        artifact=artifact,
    )
    project.build_attempts.append(BuildAttempt(
        number=len(project.build_attempts) + 1, success=True, version_id=version.id,
    ))
    project.add_version(version)
    return version


@pytest.fixture
def project() -> Project:
    return Project(name="Hello World", id="abc123def456")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_script_names(self):
        assert script_name_for("shop-abc123", Environment.PREVIEW) == "preview-shop-abc123"
        assert script_name_for("shop-abc123", Environment.PRODUCTION) == "shop-abc123"

    def test_hostname_on_workers_dev(self):
        config = _config()
        assert hostname_for("shop", Environment.PREVIEW, config) == "preview-shop.shipyard-test.workers.dev"
        assert hostname_for("shop", Environment.PRODUCTION, config) == "shop.shipyard-test.workers.dev"

    def test_hostname_on_custom_domain(self):
        config = _config(zone_id="z1", base_domain="apps.example.com")
        assert hostname_for("shop", Environment.PREVIEW, config) == "preview--shop.apps.example.com"
        assert hostname_for("shop", Environment.PRODUCTION, config) == "shop.apps.example.com"

    def test_asset_key_is_content_addressed(self):
        digest = hashlib.sha256(PNG).hexdigest()[:16]
        assert asset_key("img/logo.png", PNG) == f"assets/{digest}/logo.png"
        assert asset_key("other/logo.png", PNG) == asset_key("img/logo.png", PNG)

    @pytest.mark.parametrize(
        "path, data, expected",
        [
            ("index.html", INDEX, False),
            ("logo.png", b"tiny", True),
            ("assets/app.js", b"x" * 60_000, True),
            ("blob.bin", b"\xff\xfe\x00", True),
            ("styles.css", b"body{}", False),
        ],
    )
    def test_should_offload(self, path, data, expected):
        assert should_offload(path, data, 50_000) is expected

    @pytest.mark.parametrize(
        "status, body, expected",
        [
            (401, "", "auth_failure"),
            (403, "quota", "auth_failure"),
            (429, "", "quota_exceeded"),
            (400, "daily request limit exceeded", "quota_exceeded"),
            (400, "Uncaught SyntaxError", "script_rejected"),
            (413, "", "script_rejected"),
            (500, "", "network_error"),
            (None, "", "network_error"),
        ],
    )
    def test_categorize(self, status, body, expected):
        assert categorize(status, body) == expected

    def test_oversized_payload_is_rejected_even_with_limit_wording(self):
        assert categorize(413, "request body size limit exceeded") == "script_rejected"

    @pytest.mark.parametrize(
        "status, codes, expected",
        [
            (400, [10037], "quota_exceeded"),
            (200, [971], "quota_exceeded"),
            (400, [10027], "script_rejected"),
            (400, [10000], "auth_failure"),
            (500, [10037], "quota_exceeded"),
            (400, [99999], "script_rejected"),
        ],
    )
    def test_categorize_by_error_code(self, status, codes, expected):
        assert categorize(status, "Workers request failed", codes) == expected


# ---------------------------------------------------------------------------
# Preconditions and planning
# ---------------------------------------------------------------------------


class TestPrecondition:
    def test_version_without_attempt(self, project):
        service = DeploymentService(_config())
        orphan = Version(number=1, files={}, build_attempt=1, artifact=BuildArtifact(files={"a": b"1"}))
        with pytest.raises(DeploymentPreconditionError, match="no build attempt"):
            service.check_precondition(project, orphan)

    def test_latest_attempt_failed(self, project):
        version = _add_version(project, {"index.html": INDEX})
        project.build_attempts.append(BuildAttempt(number=2, success=False, version_id=version.id))
        with pytest.raises(DeploymentPreconditionError, match="most recent build attempt failed"):
            DeploymentService(_config()).check_precondition(project, version)

    def test_empty_artifact(self, project):
        version = _add_version(project, {})
        with pytest.raises(DeploymentPreconditionError, match="empty"):
            DeploymentService(_config()).check_precondition(project, version)


class TestPlan:
    def test_static_site_embeds_text_and_offloads_binary(self, project):
        version = _add_version(project, {"index.html": INDEX, "logo.png": PNG})
        plan = DeploymentService(_config()).plan(project, version, Environment.PREVIEW)

        key = asset_key("logo.png", PNG)
        assert plan.script_name == "preview-hello-world-abc123"
        assert plan.hostname == "preview-hello-world-abc123.shipyard-test.workers.dev"
        assert plan.offloads == {"logo.png": (key, PNG)}
        assert plan.manifest == {"logo.png": f"https://assets.example.com/{key}"}
        script = plan.script.decode()
        assert script.startswith("const ASSET_MANIFEST = {")
        assert "const CODE_FILES = " in script
        assert "Hello World" in script
        assert "export default" in script

    def test_bundled_worker_is_kept(self, project):
        version = _add_version(
            project, {"worker.js": b"export default { fetch() {} }"}, entry="worker.js",
        )
        plan = DeploymentService(_config()).plan(project, version, Environment.PRODUCTION)
        assert plan.script == b"const ASSET_MANIFEST = {};\nexport default { fetch() {} }"
        assert plan.script_name == "hello-world-abc123"


# ---------------------------------------------------------------------------
# Full deployment
# ---------------------------------------------------------------------------


class TestDeploy:
    @pytest.mark.asyncio
    async def test_workers_dev_deployment(self, project, edge_requests):
        seen, _ = edge_requests
        probe = AsyncMock(return_value=200)
        service = DeploymentService(_config(), probe=probe)
        version = _add_version(project, {"index.html": INDEX, "logo.png": PNG})

        deployment = await service.deploy(project, version, Environment.PREVIEW)

        assert [(r.method, r.url.path.rsplit("/", 1)[-1]) for r in seen] == [
            ("PUT", "logo.png"),
            ("PUT", "preview-hello-world-abc123"),
            ("PATCH", "settings"),
            ("POST", "subdomain"),
        ]
        settings = seen[2].content.decode()
        assert '"name": "API_URL"' in settings
        assert '"text": "preview"' in settings

        assert deployment.success
        assert deployment.live is True
        assert deployment.liveness_status == 200
        assert deployment.url == "https://preview-hello-world-abc123.shipyard-test.workers.dev"
        assert deployment.version_id == version.id
        assert deployment.asset_manifest == {
            "logo.png": f"https://assets.example.com/{asset_key('logo.png', PNG)}",
        }
        probe.assert_awaited_once_with(deployment.url)

    @pytest.mark.asyncio
    async def test_custom_domain_binds_route(self, project, edge_requests):
        seen, _ = edge_requests
        service = DeploymentService(
            _config(zone_id="z1", base_domain="apps.example.com"), probe=AsyncMock(return_value=200),
        )
        version = _add_version(project, {"index.html": INDEX})
        deployment = await service.deploy(project, version, Environment.PRODUCTION)

        route_lookup, route_create = seen[-2:]
        assert route_lookup.method == "GET"
        assert route_create.method == "POST"
        assert route_create.url.path == "/client/v4/zones/z1/workers/routes"
        assert b"hello-world-abc123.apps.example.com/*" in route_create.content
        assert deployment.url == "https://hello-world-abc123.apps.example.com"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, category",
        [(403, "auth_failure"), (429, "quota_exceeded"), (400, "script_rejected"), (502, "network_error")],
    )
    async def test_upload_failure_is_categorized(self, project, edge_requests, status, category):
        _, failures = edge_requests
        failures["/workers/scripts/"] = httpx.Response(status, text="upstream said no")
        service = DeploymentService(_config(), probe=AsyncMock(return_value=200))
        version = _add_version(project, {"index.html": INDEX})

        with pytest.raises(DeploymentFailure) as exc_info:
            await service.deploy(project, version, Environment.PREVIEW)

        assert exc_info.value.category == category
        assert exc_info.value.step == "script upload"
        assert exc_info.value.status_code == status
        assert exc_info.value.retryable is (category != "auth_failure")

    @pytest.mark.asyncio
    async def test_platform_error_code_decides_category(self, project, edge_requests):
        _, failures = edge_requests
        failures["/workers/scripts/"] = httpx.Response(
            400, json={"success": False, "errors": [{"code": 10037, "message": "exceeded"}]},
        )
        service = DeploymentService(_config(), probe=AsyncMock(return_value=200))
        version = _add_version(project, {"index.html": INDEX})

        with pytest.raises(DeploymentFailure) as exc_info:
            await service.deploy(project, version, Environment.PREVIEW)

        assert exc_info.value.category == "quota_exceeded"
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_transport_error_is_network_error(self, project, monkeypatch):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        monkeypatch.setattr(
            edge_client, "_client", httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        service = DeploymentService(_config(), probe=AsyncMock(return_value=200))
        version = _add_version(project, {"index.html": INDEX})

        with pytest.raises(DeploymentFailure) as exc_info:
            await service.deploy(project, version, Environment.PREVIEW)
        assert exc_info.value.category == "network_error"

    @pytest.mark.asyncio
    async def test_oversized_script_rejected_before_upload(self, project, edge_requests):
        seen, _ = edge_requests
        big = b"x" * (MAX_SCRIPT_BYTES + 1)
        version = _add_version(project, {"worker.js": big}, entry="worker.js")
        service = DeploymentService(_config(), probe=AsyncMock(return_value=200))

        with pytest.raises(DeploymentFailure) as exc_info:
            await service.deploy(project, version, Environment.PREVIEW)
        assert exc_info.value.category == "script_rejected"
        assert seen == []


class TestLiveness:
    @pytest.mark.asyncio
    async def test_never_answers(self):
        probe = AsyncMock(return_value=503)
        service = DeploymentService(_config(liveness_attempts=3), probe=probe)
        assert await service.check_liveness("https://x") == (False, 503)
        assert probe.await_count == 3

    @pytest.mark.asyncio
    async def test_recovers_after_transport_error(self):
        probe = AsyncMock(side_effect=[httpx.ConnectError("dns"), 301])
        service = DeploymentService(_config(), probe=probe)
        assert await service.check_liveness("https://x") == (True, 301)

    @pytest.mark.asyncio
    async def test_only_errors(self):
        probe = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        service = DeploymentService(_config(), probe=probe)
        assert await service.check_liveness("https://x") == (False, None)


class TestRollback:
    def _deployed(self, project, version):
        project.deployments.append(Deployment(
            version_id=version.id, environment=Environment.PRODUCTION, success=True,
        ))

    def test_selects_previous_deployed_version(self, project):
        v1 = _add_version(project, {"index.html": b"1"})
        v2 = _add_version(project, {"index.html": b"2"})
        v3 = _add_version(project, {"index.html": b"3"})
        self._deployed(project, v1)
        self._deployed(project, v2)
        self._deployed(project, v3)
        assert DeploymentService(_config()).select_rollback_target(project) is v2

    def test_skips_never_deployed_versions(self, project):
        v1 = _add_version(project, {"index.html": b"1"})
        _add_version(project, {"index.html": b"2"})
        _add_version(project, {"index.html": b"3"})
        self._deployed(project, v1)
        assert DeploymentService(_config()).select_rollback_target(project) is v1

    def test_nothing_to_roll_back_to(self, project):
        v1 = _add_version(project, {"index.html": b"1"})
        self._deployed(project, v1)
        with pytest.raises(DeploymentPreconditionError, match="no previously deployed version"):
            DeploymentService(_config()).select_rollback_target(project)
