"""Integration tests for /api/v1/security events, stats and password policies."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from schoolauth import app as app_module
from schoolauth.api.csrf import CSRF_COOKIE, CSRF_HEADER
from schoolauth.service.runtime import get_runtime

PASSWORD = "Bz3^Tfw6Qc*u"
ADMIN_PASSWORD = "Ke9%Jgv2Ys@o"

SECURITY = "/api/v1/security"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _login(client, username, password=PASSWORD):
    response = client.post(
        "/api/v1/users/login", json={"username": username, "password": password}
    )
    assert response.status_code == 200, response.text
    return response.json()["token"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _mutating(client, token):
    return {**_bearer(token), CSRF_HEADER: client.cookies.get(CSRF_COOKIE)}


@pytest.fixture
def accounts():
    auth = get_runtime().auth
    return {
        "teacher": asyncio.run(
            auth.create_account(
                "mentor1", "mentor1@school.example", PASSWORD, role="teacher", department="academic"
            )
        ),
        "principal": asyncio.run(
            auth.create_account("principal", "principal@school.example", PASSWORD, role="school_admin")
        ),
        "it": asyncio.run(
            auth.create_account("netops", "netops@school.example", PASSWORD, role="it_admin")
        ),
        "admin": asyncio.run(
            auth.create_account("root", "root@school.example", ADMIN_PASSWORD, role="super_admin")
        ),
    }


@pytest.fixture
def events(accounts):
    audit = get_runtime().audit
    teacher_id = accounts["teacher"].id
    return {
        "attack": audit.security_event("POTENTIAL_ATTACK", user_id=teacher_id),
        "brute": audit.security_event("BRUTE_FORCE_ATTEMPT", ip_address="10.1.1.1"),
        "weak": audit.security_event("WEAK_PASSWORD_DETECTED", user_id=teacher_id),
    }


class TestEvents:
    def test_list_is_paginated_newest_first(self, client, events):
        token = _login(client, "root", ADMIN_PASSWORD)

        response = client.get(f"{SECURITY}/events", params={"limit": 2}, headers=_bearer(token))
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["results"] == 2
        assert body["total"] == 3
        assert body["totalPages"] == 2
        assert body["currentPage"] == 1
        ids = [e["id"] for e in body["data"]["events"]]
        assert ids == [events["weak"].id, events["brute"].id]

        response = client.get(
            f"{SECURITY}/events", params={"limit": 2, "page": 2}, headers=_bearer(token)
        )
        assert [e["id"] for e in response.json()["data"]["events"]] == [events["attack"].id]

    def test_list_filters(self, client, accounts, events):
        token = _login(client, "netops")

        response = client.get(
            f"{SECURITY}/events",
            params={"user": accounts["teacher"].id, "severity": "CRITICAL"},
            headers=_bearer(token),
        )
        assert response.status_code == 200
        listed = response.json()["data"]["events"]
        assert [e["id"] for e in listed] == [events["attack"].id]
        assert listed[0]["riskScore"] == 85
        assert listed[0]["isResolved"] is False

        response = client.get(
            f"{SECURITY}/events", params={"type": "BRUTE_FORCE_ATTEMPT"}, headers=_bearer(token)
        )
        assert response.json()["total"] == 1

        future = (datetime.now(timezone.utc) + timedelta(days=1)).strftime("%Y-%m-%dT%H:%M:%S")
        response = client.get(
            f"{SECURITY}/events", params={"startDate": future}, headers=_bearer(token)
        )
        assert response.json()["total"] == 0

    def test_unknown_severity_rejected(self, client, events):
        token = _login(client, "root", ADMIN_PASSWORD)
        response = client.get(
            f"{SECURITY}/events", params={"severity": "SEVERE"}, headers=_bearer(token)
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid severity: SEVERE"

    def test_events_are_admin_only(self, client, events):
        token = _login(client, "principal")
        response = client.get(f"{SECURITY}/events", headers=_bearer(token))
        assert response.status_code == 403
        assert response.json()["message"] == "You do not have permission to perform this action"

    def test_events_require_login(self, client):
        assert client.get(f"{SECURITY}/events").status_code == 401

    def test_high_risk_orders_by_risk(self, client, events):
        token = _login(client, "root", ADMIN_PASSWORD)

        response = client.get(f"{SECURITY}/events/high-risk", headers=_bearer(token))
        assert response.status_code == 200
        ids = [e["id"] for e in response.json()["data"]["events"]]
        assert ids == [events["attack"].id, events["brute"].id]


class TestResolve:
    def test_resolve_records_action_and_audit(self, client, accounts, events):
        token = _login(client, "netops")

        response = client.patch(
            f"{SECURITY}/events/{events['attack'].id}/resolve",
            json={"action": "LOCK_ACCOUNT", "notes": "confirmed with teacher"},
            headers=_mutating(client, token),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Security event resolved successfully"
        event = body["data"]["event"]
        assert event["isResolved"] is True
        assert event["resolvedBy"] == accounts["it"].id
        assert event["resolvedAt"] is not None
        assert event["actions"][0]["action"] == "LOCK_ACCOUNT"
        assert event["actions"][0]["performedBy"] == accounts["it"].id
        assert event["actions"][0]["notes"] == "confirmed with teacher"

        logs = get_runtime().store.list_audit_logs(action="SECURITY_EVENT_RESOLVED")
        assert len(logs) == 1
        assert logs[0].resource == "SECURITY"
        assert logs[0].resource_model == "SecurityEvent"
        assert logs[0].details["event_type"] == "POTENTIAL_ATTACK"

        # Resolved events drop out of the high-risk queue
        response = client.get(f"{SECURITY}/events/high-risk", headers=_bearer(token))
        assert [e["id"] for e in response.json()["data"]["events"]] == [events["brute"].id]

    def test_resolve_without_body(self, client, events):
        token = _login(client, "root", ADMIN_PASSWORD)
        response = client.patch(
            f"{SECURITY}/events/{events['brute'].id}/resolve", headers=_mutating(client, token)
        )
        assert response.status_code == 200
        assert response.json()["data"]["event"]["actions"] == []

    def test_resolve_rejects_unknown_action(self, client, events):
        token = _login(client, "root", ADMIN_PASSWORD)
        response = client.patch(
            f"{SECURITY}/events/{events['brute'].id}/resolve",
            json={"action": "IGNORE"},
            headers=_mutating(client, token),
        )
        assert response.status_code == 400
        assert get_runtime().store.get_security_event(events["brute"].id).is_resolved is False

    def test_resolve_unknown_event(self, client, accounts):
        token = _login(client, "root", ADMIN_PASSWORD)
        response = client.patch(
            f"{SECURITY}/events/does-not-exist/resolve",
            json={"action": "LOG_ONLY"},
            headers=_mutating(client, token),
        )
        assert response.status_code == 404
        assert response.json()["message"] == "Security event not found"

    def test_resolve_requires_csrf(self, client, events):
        token = _login(client, "root", ADMIN_PASSWORD)
        response = client.patch(
            f"{SECURITY}/events/{events['brute'].id}/resolve", headers=_bearer(token)
        )
        assert response.status_code == 403


class TestStats:
    def test_school_admin_sees_breakdown(self, client, events):
        get_runtime().audit.security_event("POTENTIAL_ATTACK")
        token = _login(client, "principal")

        response = client.get(f"{SECURITY}/stats", params={"timeframe": 7}, headers=_bearer(token))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["timeframe"] == 7
        assert data["totalEvents"] == 4
        assert data["unresolvedHighRisk"] == 3
        assert [group["_id"] for group in data["severityBreakdown"]] == ["CRITICAL", "HIGH", "LOW"]
        assert data["severityBreakdown"][0]["totalCount"] == 2
        assert data["topThreatTypes"][0] == {
            "_id": "POTENTIAL_ATTACK",
            "count": 2,
            "avgRiskScore": 85.0,
        }

    def test_teacher_cannot_view_stats(self, client, accounts):
        token = _login(client, "mentor1")
        assert client.get(f"{SECURITY}/stats", headers=_bearer(token)).status_code == 403


class TestPasswordPolicies:
    def _create(self, client, token, **body):
        payload = {
            "name": "staff",
            "description": "Stricter rules for staff",
            "rules": {"minLength": 14, "passwordHistory": 8},
            "applicableRoles": ["teacher", "school_admin"],
        }
        payload.update(body)
        return client.post(
            f"{SECURITY}/password-policies", json=payload, headers=_mutating(client, token)
        )

    def test_create_and_list(self, client, accounts):
        token = _login(client, "root", ADMIN_PASSWORD)

        response = self._create(client, token)
        assert response.status_code == 201
        policy = response.json()["data"]["policy"]
        assert policy["name"] == "staff"
        assert policy["createdBy"] == accounts["admin"].id
        assert policy["rules"]["minLength"] == 14
        assert policy["rules"]["passwordHistory"] == 8
        # Unsent rules keep their defaults
        assert policy["rules"]["requireUppercase"] is True
        assert policy["applicableRoles"] == ["teacher", "school_admin"]

        response = client.get(f"{SECURITY}/password-policies", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["results"] == 1
        assert get_runtime().policies.get_applicable_policy("teacher").min_length == 14

    def test_duplicate_name_rejected(self, client, accounts):
        token = _login(client, "root", ADMIN_PASSWORD)
        assert self._create(client, token).status_code == 201
        response = self._create(client, token)
        assert response.status_code == 400
        assert response.json()["message"] == "A password policy with this name already exists"

    @pytest.mark.parametrize(
        "body,message",
        [
            ({"rules": {"minLength": 4}}, "minLength must be at least 6"),
            ({"rules": {"expiryDays": -1}}, "passwordHistory and expiryDays cannot be negative"),
            ({"applicableRoles": ["janitor"]}, "Invalid role: janitor"),
            ({"name": "  "}, "Please provide a policy name"),
        ],
    )
    def test_invalid_rules_rejected(self, client, accounts, body, message):
        token = _login(client, "root", ADMIN_PASSWORD)
        response = self._create(client, token, **body)
        assert response.status_code == 400
        assert response.json()["message"] == message

    def test_patch_updates_only_sent_rules(self, client, accounts):
        token = _login(client, "netops")
        policy_id = self._create(client, token).json()["data"]["policy"]["id"]

        response = client.patch(
            f"{SECURITY}/password-policies/{policy_id}",
            json={"rules": {"expiryDays": 30}, "isActive": False},
            headers=_mutating(client, token),
        )
        assert response.status_code == 200
        policy = response.json()["data"]["policy"]
        assert policy["rules"]["expiryDays"] == 30
        assert policy["rules"]["minLength"] == 14
        assert policy["isActive"] is False

        # Inactive policies are hidden from the listing
        response = client.get(f"{SECURITY}/password-policies", headers=_bearer(token))
        assert response.json()["results"] == 0

    def test_patch_unknown_policy(self, client, accounts):
        token = _login(client, "root", ADMIN_PASSWORD)
        response = client.patch(
            f"{SECURITY}/password-policies/missing",
            json={"rules": {"expiryDays": 30}},
            headers=_mutating(client, token),
        )
        assert response.status_code == 404
        assert response.json()["message"] == "Password policy not found"

    def test_policies_are_admin_only(self, client, accounts):
        token = _login(client, "principal")
        assert client.get(f"{SECURITY}/password-policies", headers=_bearer(token)).status_code == 403
        assert self._create(client, token).status_code == 403


class TestValidatePassword:
    def test_any_user_can_check_a_password(self, client, accounts):
        token = _login(client, "mentor1")

        response = client.post(
            f"{SECURITY}/validate-password",
            json={"password": "short"},
            headers=_mutating(client, token),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["validation"]["isValid"] is False
        assert "Password must be at least 8 characters long" in data["validation"]["errors"]
        assert data["policy"]["minLength"] == 8

    def test_history_is_checked_for_a_known_user(self, client, accounts):
        token = _login(client, "mentor1")
        asyncio.run(
            get_runtime().auth.update_my_password(accounts["teacher"].id, PASSWORD, "Wq8&Lmx3Rv!p")
        )
        token = _login(client, "mentor1", "Wq8&Lmx3Rv!p")

        response = client.post(
            f"{SECURITY}/validate-password",
            json={"password": PASSWORD, "userId": accounts["teacher"].id},
            headers=_mutating(client, token),
        )
        assert response.status_code == 200
        validation = response.json()["data"]["validation"]
        assert validation["isValid"] is False
        assert validation["errors"] == [
            "Password has been used recently. Please choose a different password"
        ]

    def test_unknown_user(self, client, accounts):
        token = _login(client, "mentor1")
        response = client.post(
            f"{SECURITY}/validate-password",
            json={"password": "Wq8&Lmx3Rv!p", "userId": "ghost"},
            headers=_mutating(client, token),
        )
        assert response.status_code == 404

    def test_password_required(self, client, accounts):
        token = _login(client, "mentor1")
        response = client.post(
            f"{SECURITY}/validate-password", json={}, headers=_mutating(client, token)
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Please provide password"
