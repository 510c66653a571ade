from fastapi.testclient import TestClient
import pytest

from config.settings import EngineSettings
from main import create_app
from privacy.engine import PrivacyComplianceEngine
from privacy.errors import AuthorityRejectedError, RemoteAuthorityError
from services.authority import InMemoryComplianceAuthority
from services.cache_store import InMemoryCacheStore


USER = "user-123"


@pytest.fixture
def client(engine):
    app = create_app(settings=EngineSettings(), engine=engine)
    with TestClient(app) as test_client:
        yield test_client


def _client_with_authority(resolver, clock, authority):
    engine = PrivacyComplianceEngine(resolver, authority, InMemoryCacheStore(), clock=clock)
    return TestClient(create_app(settings=EngineSettings(), engine=engine))


def _grant(client, purpose="analytics", region="EU", **extra):
    body = {"user_id": USER, "purpose": purpose, "legal_basis": "consent", "region": region, "version": "2.0"}
    body.update(extra)
    return client.post("/api/privacy/consent", json=body)


def test_health_endpoints(client):
    assert client.get("/").json()["status"] == "healthy"
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["regions"] == 8


class TestRegions:
    def test_list_regions(self, client):
        payload = client.get("/api/privacy/regions").json()
        assert payload["count"] == 8
        assert {region["region"] for region in payload["regions"]} >= {"EU", "US", "CN"}

    def test_get_region_is_case_insensitive(self, client):
        response = client.get("/api/privacy/regions/eu")
        assert response.status_code == 200
        assert response.json()["minimum_age"] == 16

    def test_unknown_region(self, client):
        response = client.get("/api/privacy/regions/XX")
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "unknown_region"


class TestConsentRoutes:
    def test_record_and_read_preferences(self, client):
        response = _grant(client)
        assert response.status_code == 200
        assert response.json()["granted"] is True

        preferences = client.get(f"/api/privacy/preferences/{USER}").json()
        assert preferences["purposes"]["analytics"]["granted"] is True
        assert preferences["stale"] is False

    def test_invalid_legal_basis(self, client):
        response = client.post(
            "/api/privacy/consent",
            json={"user_id": USER, "purpose": "marketing", "legal_basis": "legitimate_interest", "region": "EU"},
        )
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "invalid_legal_basis"
        assert detail["retryable"] is False

    def test_withdraw_without_grant_conflicts(self, client):
        response = client.post("/api/privacy/consent/withdraw", json={"user_id": USER, "purpose": "analytics"})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "no_active_consent"

    def test_withdraw_and_history(self, client, clock):
        _grant(client)
        clock.advance(minutes=1)
        withdrawn = client.post("/api/privacy/consent/withdraw", json={"user_id": USER, "purpose": "analytics"})
        _grant(client, purpose="marketing")

        assert withdrawn.json()["withdrawn_at"] is not None
        history = client.get(f"/api/privacy/consent/{USER}/history", params={"purpose": "analytics"}).json()
        assert history["count"] == 2
        assert [record["granted"] for record in history["records"]] == [True, False]

    def test_batch_update(self, client):
        response = client.post(
            "/api/privacy/consent/batch",
            json={
                "user_id": USER,
                "region": "EU",
                "updates": [
                    {"purpose": "analytics", "granted": True},
                    {"purpose": "marketing", "granted": False},
                ],
            },
        )
        assert response.status_code == 200
        payload = response.json()
        assert payload["updated"] == 1
        assert payload["failed"] == [
            {"purpose": "marketing", "reason": "User user-123 has no active consent for 'marketing'", "code": "no_active_consent"}
        ]

    def test_renewal_check(self, client):
        _grant(client, version="1.0")
        payload = client.get(f"/api/privacy/consent/{USER}/renewal").json()
        assert payload["needs_renewal"] is True
        assert payload["expired_purposes"] == ["analytics"]

    def test_missing_field_is_rejected_by_schema(self, client):
        response = client.post("/api/privacy/consent", json={"user_id": USER})
        assert response.status_code == 422

    def test_default_version_grant_is_compliant(self, client):
        response = client.post(
            "/api/privacy/consent",
            json={"user_id": USER, "purpose": "marketing", "legal_basis": "consent", "region": "EU"},
        )

        assert response.json()["consent_version"] == "2.0"
        report = client.get(f"/api/privacy/compliance/{USER}").json()
        assert report["score"] == 100
        assert report["issues"] == []

    def test_record_id_of_another_user_conflicts(self, client):
        _grant(client, record_id="rec-1")

        response = client.post(
            "/api/privacy/consent",
            json={"user_id": "bob", "purpose": "marketing", "region": "EU", "record_id": "rec-1"},
        )

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "duplicate_id"
        history = client.get("/api/privacy/consent/bob/history").json()
        assert history["count"] == 0

    def test_consent_response_shape(self, client):
        payload = _grant(client).json()

        assert set(payload) == {
            "id",
            "user_id",
            "purpose",
            "legal_basis",
            "region",
            "granted",
            "consent_method",
            "consent_version",
            "timestamp",
            "withdrawn_at",
        }
        assert payload["timestamp"].startswith("2025-01-15T12:00:00")
        assert payload["withdrawn_at"] is None


class TestAgeGateRoutes:
    def test_minor_needs_parental_consent(self, client):
        verification = client.post(
            "/api/privacy/age-verification",
            json={"user_id": USER, "birth_date": "2010-06-01", "region": "EU"},
        ).json()
        assert verification["requires_parental_consent"] is True
        assert verification["verified"] is False

        blocked = _grant(client, purpose="marketing")
        assert blocked.status_code == 403
        assert blocked.json()["detail"]["code"] == "parental_consent_required"

        request = client.post(
            "/api/privacy/parental-consent",
            json={"user_id": USER, "parent_email": "parent@example.com"},
        ).json()
        assert request["status"] == "pending"
        assert client.post(f"/api/privacy/parental-consent/{request['id']}/sent").json()["status"] == "sent"
        assert client.post(f"/api/privacy/parental-consent/{request['id']}/confirm").json()["status"] == "verified"

        assert _grant(client, purpose="marketing").status_code == 200
        listed = client.get("/api/privacy/parental-consent", params={"user_id": USER}).json()
        assert len(listed["requests"]) == 1

    def test_future_birth_date(self, client):
        response = client.post(
            "/api/privacy/age-verification",
            json={"user_id": USER, "birth_date": "2099-01-01"},
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "future_birth_date"

    def test_rejected_request_cannot_be_confirmed(self, client):
        request = client.post(
            "/api/privacy/parental-consent",
            json={"user_id": USER, "parent_email": "parent@example.com"},
        ).json()
        client.post(f"/api/privacy/parental-consent/{request['id']}/reject")

        response = client.post(f"/api/privacy/parental-consent/{request['id']}/confirm")
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "invalid_transition"

    def test_unknown_parental_request(self, client):
        response = client.post("/api/privacy/parental-consent/missing/confirm")
        assert response.status_code == 404

    def test_expire_endpoint(self, client, clock):
        client.post("/api/privacy/parental-consent", json={"user_id": USER, "parent_email": "parent@example.com"})
        clock.advance(days=15)

        payload = client.post("/api/privacy/parental-consent/expire").json()

        assert payload["count"] == 1
        assert payload["expired"][0]["status"] == "rejected"

    def test_age_verification_lookup(self, client):
        assert client.get(f"/api/privacy/age-verification/{USER}").json()["verification"] is None


class TestRightsRequestRoutes:
    def _submit(self, client, **extra):
        body = {"user_id": USER, "type": "erasure", "region": "US", "priority": "high"}
        body.update(extra)
        return client.post("/api/privacy/rights-requests", json=body)

    def test_submit_and_get(self, client):
        created = self._submit(client).json()
        assert created["status"] == "submitted"

        fetched = client.get(f"/api/privacy/rights-requests/{created['id']}").json()
        assert fetched["deadline"] == created["deadline"]

        listed = client.get("/api/privacy/rights-requests", params={"user_id": USER}).json()
        assert listed["count"] == 1

    def test_unknown_request(self, client):
        response = client.get("/api/privacy/rights-requests/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "unknown_request"

    def test_extend_before_in_progress_conflicts(self, client):
        created = self._submit(client).json()
        response = client.post(f"/api/privacy/rights-requests/{created['id']}/extend", json={"reason": "busy"})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "invalid_transition"

    def test_lifecycle_and_single_extension(self, client):
        request_id = self._submit(client).json()["id"]
        for status in ("identity_verification_pending", "in_progress"):
            response = client.post(
                f"/api/privacy/rights-requests/{request_id}/transition", json={"status": status}
            )
            assert response.status_code == 200

        extended = client.post(f"/api/privacy/rights-requests/{request_id}/extend", json={"reason": "backups"})
        again = client.post(f"/api/privacy/rights-requests/{request_id}/extend", json={"reason": "more"})

        assert extended.json()["status"] == "extended"
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "already_extended"

        done = client.post(
            f"/api/privacy/rights-requests/{request_id}/transition",
            json={"status": "fulfilled", "note": "Erased"},
        ).json()
        assert done["resolution_note"] == "Erased"

    def test_overdue_listing(self, client, clock):
        self._submit(client)
        clock.advance(days=46)

        payload = client.get("/api/privacy/rights-requests/overdue", params={"user_id": USER}).json()

        assert payload["count"] == 1
        assert payload["user_id"] == USER
        assert payload["requests"][0]["effective_deadline"] == payload["requests"][0]["deadline"]

    def test_request_id_of_another_user_conflicts(self, client):
        self._submit(client, request_id="req-1", description="delete me")

        response = client.post(
            "/api/privacy/rights-requests", json={"user_id": "bob", "type": "erasure", "request_id": "req-1"}
        )

        assert response.status_code == 409
        assert "delete me" not in response.text
        assert client.get("/api/privacy/rights-requests", params={"user_id": "bob"}).json()["count"] == 0


class TestReportingRoutes:
    def test_compliance_and_dashboard(self, client):
        _grant(client, version="1.0")

        report = client.get(f"/api/privacy/compliance/{USER}").json()
        dashboard = client.get(f"/api/privacy/dashboard/{USER}").json()

        assert report["score"] == 95
        assert report["compliant"] is True
        assert report["findings"] == [
            {"kind": "consent_renewal", "subject": "analytics", "message": report["issues"][0]}
        ]
        assert dashboard["compliance_score"] == 95
        assert dashboard["consent_summary"]["expired"] == 1

    def test_sync_and_pending(self, client):
        _grant(client)
        synced = client.post(f"/api/privacy/sync/{USER}").json()
        pending = client.get(f"/api/privacy/sync/{USER}/pending").json()

        assert synced["stale"] is False
        assert synced["purposes"]["analytics"]["granted"] is True
        assert pending["count"] == 0


class TestAuthorityErrors:
    def test_unavailable_authority_returns_503(self, resolver, clock):
        class Down(InMemoryComplianceAuthority):
            async def push(self, mutation):
                raise RemoteAuthorityError("timeout")

        with _client_with_authority(resolver, clock, Down()) as client:
            response = _grant(client)

        assert response.status_code == 503
        assert response.json()["detail"] == {
            "code": "authority_unavailable",
            "message": "timeout",
            "retryable": True,
        }

    def test_rejecting_authority_returns_502(self, resolver, clock):
        class Rejecting(InMemoryComplianceAuthority):
            async def push(self, mutation):
                raise AuthorityRejectedError("duplicate entity")

        with _client_with_authority(resolver, clock, Rejecting()) as client:
            response = client.post(
                "/api/privacy/rights-requests", json={"user_id": USER, "type": "access"}
            )

        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "authority_rejected"
