"""
Test suite for the task monitor API server.
"""

import unittest

from fastapi.testclient import TestClient

from server import app


class TestAPIServer(unittest.TestCase):
    """Test cases for the main API server."""

    def setUp(self) -> None:
        self.client = TestClient(app)

    def test_root_endpoint(self) -> None:
        """Test that the root endpoint returns the expected welcome message."""
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Task Monitor API")

    def test_progress_routes_are_mounted(self) -> None:
        paths = {route.path for route in app.routes}
        self.assertIn("/api/tasks/{task_id}/snapshot", paths)
        self.assertIn("/api/preferences/run-defaults", paths)

    def test_cors_preflight(self) -> None:
        response = self.client.options(
            "/api/tasks",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.headers["access-control-allow-origin"], "http://localhost:3000"
        )


if __name__ == "__main__":
    unittest.main()
