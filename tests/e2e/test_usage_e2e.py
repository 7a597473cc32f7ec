"""E2E tests for GET /api/usage/current."""

import pytest

from application.models import SubscriptionTier
from tests.conftest import TEST_USER_ID, auth_headers
from tests.e2e.conftest import DOCUMENT_BODY, DOCUMENT_URL, PHOTO_BODY, PHOTO_URL

USAGE_URL = "/api/usage/current"


@pytest.mark.integration
class TestUsageSummary:
    def test_new_visitor_gets_cookie_and_full_allowance(self, client, settings):
        response = client.get(USAGE_URL)

        assert response.status_code == 200
        assert settings.anon_cookie_name in response.headers["set-cookie"]
        data = response.json()
        assert data["tier"] == "FREE"
        assert data["identity"]["isAnonymous"] is True
        assert data["usage"]["DOCUMENT"] == {
            "current": 0,
            "limit": 5,
            "remaining": 5,
            "isAtLimit": False,
            "available": True,
        }
        assert data["usage"]["DNA"]["available"] is False

    def test_reflects_tool_usage_for_same_visitor(self, client):
        client.post(DOCUMENT_URL, json=DOCUMENT_BODY)
        client.post(PHOTO_URL, json=PHOTO_BODY)
        client.post(PHOTO_URL, json=PHOTO_BODY)

        data = client.get(USAGE_URL).json()

        assert data["usage"]["DOCUMENT"]["current"] == 1
        assert data["usage"]["PHOTO"]["isAtLimit"] is True
        assert data["usage"]["PHOTO"]["remaining"] == 0

    def test_does_not_reserve_or_rate_limit(self, client, usage_repo):
        for _ in range(30):
            assert client.get(USAGE_URL).status_code == 200
        assert "check_and_increment" not in usage_repo.calls

    def test_does_not_record_new_visitors(self, client, identity_repo):
        for _ in range(5):
            client.cookies.clear()
            assert client.get(USAGE_URL).status_code == 200

        assert identity_repo.last_seen == {}

    def test_unlimited_tier(self, client, subscription_repo):
        subscription_repo.set_tier(TEST_USER_ID, SubscriptionTier.PROFESSIONAL)

        data = client.get(USAGE_URL, headers=auth_headers()).json()

        assert data["tier"] == "PROFESSIONAL"
        assert data["identity"] == {"type": "USER", "isAnonymous": False}
        assert data["usage"]["DNA"] == {
            "current": 0,
            "limit": -1,
            "remaining": -1,
            "isAtLimit": False,
            "available": True,
        }

    def test_database_outage_is_503(self, client, usage_repo):
        usage_repo.fail_always(ConnectionError("down"))

        response = client.get(USAGE_URL)

        assert response.status_code == 503
        assert response.json()["errorCode"] == "SERVICE_UNAVAILABLE"
