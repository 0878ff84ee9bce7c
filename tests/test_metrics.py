"""Tests for Prometheus metrics endpoint and middleware."""

from metahub_service.middleware.metrics import normalize_path


class TestMetricsEndpoint:
    """Tests for /metrics endpoint."""

    def test_metrics_endpoint_returns_prometheus_format(self, client, initialized_store):
        """Test that /metrics returns valid Prometheus text format."""
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")

        content = response.text
        assert "metahub_branches_requests_total" in content
        assert "metahub_branches_request_duration_seconds" in content

    def test_metrics_endpoint_no_auth_required(self, client, initialized_store):
        """Test that /metrics doesn't require authentication."""
        response = client.get("/metrics")

        assert response.status_code == 200

    def test_metrics_includes_service_info(self, client, initialized_store):
        response = client.get("/metrics")

        assert "metahub_branches_service_info" in response.text

    def test_metrics_includes_store_gauges(self, client, api_metahub):
        """Metahub and branch totals are refreshed on scrape."""
        response = client.get("/metrics")
        content = response.text

        assert "metahub_metahubs_total 1.0" in content
        assert "metahub_branches_total 1.0" in content

    def test_branch_operations_counted(self, client, api_metahub):
        response = client.post(
            f"/metahub/{api_metahub['id']}/branches",
            json={"codename": "feature", "name": "Feature"},
            headers=api_metahub["owner_headers"],
        )
        assert response.status_code == 201

        content = client.get("/metrics").text
        assert 'metahub_branch_operations_total{operation="create",status="success"}' in content
        assert "metahub_branch_create_duration_seconds_bucket" in content


class TestMetricsMiddleware:
    """Tests for MetricsMiddleware request instrumentation."""

    def test_request_increments_counter(self, client, initialized_store):
        """Test that requests increment the request counter."""
        client.get("/health")

        content = client.get("/metrics").text

        assert 'metahub_branches_requests_total{' in content
        assert 'endpoint="/health"' in content

    def test_metrics_endpoint_not_instrumented(self, client, initialized_store):
        """Test that /metrics endpoint itself is not instrumented to avoid recursion."""
        for _ in range(5):
            client.get("/metrics")

        content = client.get("/metrics").text

        assert 'endpoint="/metrics"' not in content

    def test_ids_not_in_endpoint_labels(self, client, api_metahub):
        client.get(
            f"/metahub/{api_metahub['id']}/branches",
            headers=api_metahub["owner_headers"],
        )

        content = client.get("/metrics").text

        assert 'endpoint="/metahub/{metahub_id}/branches"' in content
        assert api_metahub["id"] not in content


class TestNormalizePath:
    def test_metahub_and_branch_ids(self):
        assert (
            normalize_path("/metahub/abc/branch/def/activate")
            == "/metahub/{metahub_id}/branch/{branch_id}/activate"
        )

    def test_collection_paths_unchanged(self):
        assert normalize_path("/metahubs") == "/metahubs"
        assert normalize_path("/metahub/abc/branches") == "/metahub/{metahub_id}/branches"

    def test_root(self):
        assert normalize_path("/") == "/"
