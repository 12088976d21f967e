"""
Tests para los middlewares de clínica y cabeceras de seguridad
"""
from uuid import uuid4


# ===== TESTS DE MIDDLEWARE =====

class TestTenantMiddleware:
    """Validación del header X-Clinic-ID"""

    async def test_invalid_clinic_header_is_rejected(self, api_client, auth_headers, clinic):
        headers = auth_headers(clinic)
        headers["X-Clinic-ID"] = "no-es-un-uuid"

        response = await api_client.get("/subscriptions", headers=headers)

        assert response.status_code == 400
        assert "UUID" in response.json()["detail"]

    async def test_clinic_id_is_echoed_in_response(self, api_client, auth_headers, clinic):
        response = await api_client.get("/subscriptions", headers=auth_headers(clinic))

        assert response.status_code == 200
        assert response.headers["X-Clinic-ID"] == str(clinic.id)

    async def test_exempt_paths_need_no_clinic(self, api_client):
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert "X-Clinic-ID" not in response.headers

    async def test_cron_path_is_exempt(self, api_client):
        response = await api_client.post(
            "/refills/cron/process-due",
            params={"clinic_id": str(uuid4())},
            headers={"X-Cron-Secret": "test-cron-secret"}
        )

        assert response.status_code == 200


class TestSecurityHeaders:

    async def test_security_headers_on_every_response(self, api_client):
        response = await api_client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
