import os

from locust import HttpUser, task, between

class DeskUser(HttpUser):
    wait_time = between(1, 3)

    def on_start(self):
        # tokens are minted out of band; the service has no login endpoint
        token = os.environ["LOAD_TOKEN"]
        self.headers = {"Authorization": f"Bearer {token}"}

    @task(5)
    def unread_badge(self):
        self.client.get("/api/notifications/unread-count", headers=self.headers)

    @task(2)
    def list_notifications(self):
        self.client.get("/api/notifications/?limit=20", headers=self.headers)

    @task(1)
    def open_incident(self):
        self.client.post(
            "/api/cases/incidents",
            json={"title": "bench incident", "description": "load test"},
            headers=self.headers,
        )
