"""
Tests for the license server HTTP surface.
"""

import pytest

from conftest import MACHINE_A, MACHINE_B, MACHINE_C, SCENARIO_KEY


def _body(key=SCENARIO_KEY, machine=MACHINE_A):
    return {"licenseKey": key, "machineId": machine}


class TestActivateEndpoint:
    def test_success(self, api_client, scenario_license):
        response = api_client.post("/api/activate", json=_body())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "License activated successfully"
        assert isinstance(data["activationId"], int)

    def test_limit_reached_is_429(self, api_client, scenario_license):
        api_client.post("/api/activate", json=_body(machine=MACHINE_A))
        api_client.post("/api/activate", json=_body(machine=MACHINE_B))

        response = api_client.post("/api/activate", json=_body(machine=MACHINE_C))

        assert response.status_code == 429
        assert response.json() == {
            "success": False,
            "error": "Activation limit reached. Deactivate another device first.",
            "errorType": "LICENSE_LIMIT_REACHED",
            "reason": "LIMIT_REACHED",
        }

    @pytest.mark.parametrize("body, status, error_type", [
        (_body(key="PS-FFFF-FFFF-FFFF"), 404, "LICENSE_INVALID"),
        (_body(key="garbage"), 400, "VALIDATION_ERROR"),
        (_body(machine="xyz"), 400, "VALIDATION_ERROR"),
        ({}, 400, "VALIDATION_ERROR"),
    ])
    def test_rejections(self, api_client, scenario_license, body, status, error_type):
        response = api_client.post("/api/activate", json=body)

        assert response.status_code == status
        assert response.json()["success"] is False
        assert response.json()["errorType"] == error_type

    @pytest.mark.parametrize("kwargs", [
        {"json": {"licenseKey": SCENARIO_KEY, "machineId": 12345}},
        {"json": {"licenseKey": ["PS-A4B3-C8D9-E2F1"], "machineId": MACHINE_A}},
        {"content": b"garbage", "headers": {"Content-Type": "application/json"}},
    ])
    def test_malformed_body_is_a_format_error(self, api_client, store, scenario_license, kwargs):
        response = api_client.post("/api/activate", **kwargs)

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Invalid request body",
            "errorType": "VALIDATION_ERROR",
            "reason": "FORMAT_ERROR",
        }
        assert store.count_activations(SCENARIO_KEY) == 0

    def test_inactive_is_403(self, api_client, store, scenario_license):
        store.set_license_status(SCENARIO_KEY, "inactive")

        response = api_client.post("/api/activate", json=_body())

        assert response.status_code == 403
        assert response.json()["error"] == "License is not active"

    def test_expired_is_410(self, api_client, expired_license):
        response = api_client.post("/api/activate", json=_body(key=expired_license.license_key))

        assert response.status_code == 410
        assert response.json()["errorType"] == "LICENSE_EXPIRED"


class TestValidateEndpoint:
    def test_success_reports_status_and_expiry(self, api_client, scenario_license):
        api_client.post("/api/activate", json=_body())

        response = api_client.post("/api/validate", json=_body())

        assert response.status_code == 200
        assert response.json() == {"success": True, "status": "active", "expiresAt": None}

    def test_not_found_and_not_activated_are_distinguishable(self, api_client, scenario_license):
        missing = api_client.post("/api/validate", json=_body(key="PS-FFFF-FFFF-FFFF"))
        elsewhere = api_client.post("/api/validate", json=_body())

        assert missing.status_code == 404
        assert missing.json()["reason"] == "NOT_FOUND"
        assert elsewhere.status_code == 403
        assert elsewhere.json()["reason"] == "NOT_ACTIVATED_ON_MACHINE"


class TestDeactivateEndpoint:
    def test_deactivate_then_not_found(self, api_client, store, scenario_license):
        api_client.post("/api/activate", json=_body())

        first = api_client.post("/api/deactivate", json=_body())
        second = api_client.post("/api/deactivate", json=_body())

        assert first.status_code == 200
        assert first.json() == {"success": True, "message": "License deactivated"}
        assert second.status_code == 404
        assert second.json()["error"] == "Activation not found"
        assert store.get_license(SCENARIO_KEY).current_activations == 0


class TestHealth:
    def test_api_health(self, api_client):
        data = api_client.get("/api/health").json()

        assert data["status"] == "online"
        assert data["success"] is True
        assert "timestamp" in data

    def test_root_health(self, api_client):
        data = api_client.get("/health").json()

        assert data["status"] == "OK"
        assert data["uptime"] >= 0

    def test_unknown_endpoint(self, api_client):
        response = api_client.get("/api/nope")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Endpoint not found"}
