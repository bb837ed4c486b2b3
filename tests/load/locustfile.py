"""
Locust load testing for the analysis queue API.

Run with:
    locust -f tests/load/locustfile.py --host=http://localhost:8000

Or headless:
    locust -f tests/load/locustfile.py --host=http://localhost:8000 \
        --headless -u 100 -r 10 --run-time 5m
"""

import random
import uuid

from locust import HttpUser, between, task

TEST_OWNERS = [f"load-test-owner-{i}" for i in range(5)]


class SubmitterUser(HttpUser):
    """
    Simulated owner submitting and watching analysis jobs.

    Traffic mix:
    - Job submissions (most common)
    - Job status and log polling
    - Job listing
    """

    wait_time = between(0.5, 2)

    def on_start(self):
        self.owner_id = random.choice(TEST_OWNERS)
        self.created_job_ids: list[str] = []

    def _headers(self) -> dict[str, str]:
        return {"X-Owner-ID": self.owner_id}

    @task(10)
    def submit_job(self):
        """Submit a job for a fresh target."""
        target_id = f"repo-{uuid.uuid4().hex[:12]}"
        response = self.client.post(
            "/v1/jobs",
            json={"target_id": target_id, "prompt": "Generate course documentation"},
            headers=self._headers(),
            name="/v1/jobs [POST]",
        )

        if response.status_code == 201:
            job_id = response.json().get("id")
            if job_id:
                self.created_job_ids.append(job_id)
                if len(self.created_job_ids) > 100:
                    self.created_job_ids = self.created_job_ids[-100:]

    @task(5)
    def get_job_status(self):
        if not self.created_job_ids:
            return

        job_id = random.choice(self.created_job_ids)
        self.client.get(
            f"/v1/jobs/{job_id}",
            headers=self._headers(),
            name="/v1/jobs/{job_id} [GET]",
        )

    @task(3)
    def poll_logs(self):
        if not self.created_job_ids:
            return

        job_id = random.choice(self.created_job_ids)
        self.client.get(
            f"/v1/jobs/{job_id}/logs",
            params={"after_seq": 0},
            headers=self._headers(),
            name="/v1/jobs/{job_id}/logs [GET]",
        )

    @task(3)
    def list_jobs(self):
        status_filter = random.choice([None, "pending", "running", "completed", "dead"])
        params: dict[str, object] = {"page": 1, "page_size": 20}
        if status_filter:
            params["status"] = status_filter

        self.client.get(
            "/v1/jobs",
            params=params,
            headers=self._headers(),
            name="/v1/jobs [GET]",
        )

    @task(1)
    def health_check(self):
        self.client.get("/health", name="/health [GET]")


class DedupeUser(HttpUser):
    """
    Owner that keeps resubmitting the same targets.

    Every resubmission while the first job is active must come back as a duplicate.
    """

    wait_time = between(1, 3)

    def on_start(self):
        self.owner_id = "dedupe-test-owner"
        self.active_targets: dict[str, str] = {}

    def _headers(self) -> dict[str, str]:
        return {"X-Owner-ID": self.owner_id}

    @task(3)
    def submit_new_target(self):
        target_id = f"dedupe-{uuid.uuid4().hex[:12]}"
        response = self.client.post(
            "/v1/jobs",
            json={"target_id": target_id, "prompt": "Analyze"},
            headers=self._headers(),
            name="/v1/jobs [POST] (new)",
        )
        if response.status_code == 201:
            self.active_targets[target_id] = response.json()["id"]
            if len(self.active_targets) > 50:
                self.active_targets.pop(next(iter(self.active_targets)))

    @task(7)
    def submit_duplicate(self):
        if not self.active_targets:
            return

        target_id, job_id = random.choice(list(self.active_targets.items()))
        with self.client.post(
            "/v1/jobs",
            json={"target_id": target_id, "prompt": "Analyze again"},
            headers=self._headers(),
            name="/v1/jobs [POST] (duplicate)",
            catch_response=True,
        ) as response:
            if response.status_code != 201:
                response.failure(f"Unexpected status {response.status_code}")
                return

            data = response.json()
            # A finished job frees the key, so a new id is fine when duplicate is False
            if data["duplicate"] and data["id"] != job_id:
                response.failure("Duplicate resolved to a different job")
            elif not data["duplicate"]:
                self.active_targets[target_id] = data["id"]
                response.success()
            else:
                response.success()


class WorkerUser(HttpUser):
    """
    Remote worker driving jobs through the worker-facing endpoints.
    """

    wait_time = between(0.2, 1)

    def on_start(self):
        self.worker_id = f"load-worker-{uuid.uuid4().hex[:8]}"

    @task
    def claim_and_finish(self):
        response = self.client.post(
            "/v1/queue/claim",
            json={"worker_id": self.worker_id, "lease_seconds": 60},
            name="/v1/queue/claim [POST]",
        )
        if response.status_code != 200:
            return

        job = response.json().get("job")
        if job is None:
            return

        job_id = job["id"]
        self.client.post(
            f"/v1/queue/jobs/{job_id}/heartbeat",
            json={"worker_id": self.worker_id, "sub_state": "running", "progress": "Working"},
            name="/v1/queue/jobs/{job_id}/heartbeat [POST]",
        )

        if random.random() < 0.8:
            self.client.post(
                f"/v1/queue/jobs/{job_id}/complete",
                json={"worker_id": self.worker_id, "result": {"documents": []}, "result_count": 0},
                name="/v1/queue/jobs/{job_id}/complete [POST]",
            )
        else:
            self.client.post(
                f"/v1/queue/jobs/{job_id}/fail",
                json={"worker_id": self.worker_id, "error": "Simulated failure"},
                name="/v1/queue/jobs/{job_id}/fail [POST]",
            )
