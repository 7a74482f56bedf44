"""
Locust load testing for the coordinator API.

Run with:
    locust -f tests/load/locustfile.py --host=http://localhost:8000

Or headless:
    locust -f tests/load/locustfile.py --host=http://localhost:8000 \
        --headless -u 50 -r 5 --run-time 5m

Point it at a replica behind the load balancer: followers answer triggers
with 503 and the leader's id, which is counted as a valid response.
"""

import random

from locust import HttpUser, between, task

JOB_NAMES = ["echo", "sleep", "flaky", "http_request"]

# Accepted, already running, or routed to the leader
TRIGGER_OK = {202, 409, 503}


class OperatorUser(HttpUser):
    """
    Simulated operator/scheduler traffic.

    Simulates realistic traffic patterns:
    - Trigger requests (most common, mostly rejected as already running)
    - Execution status checks
    - Work item listing and stats
    - Leadership and health queries
    """

    wait_time = between(0.5, 2)

    def on_start(self):
        """Called when a user starts."""
        self.execution_ids: list[str] = []

    @task(10)
    def trigger_job(self):
        """Trigger a job; concurrent triggers collapse into one execution."""
        job_name = random.choice(JOB_NAMES)

        with self.client.post(
            f"/v1/jobs/{job_name}/trigger",
            name="/v1/jobs/{job_name}/trigger [POST]",
            catch_response=True,
        ) as response:
            if response.status_code not in TRIGGER_OK:
                response.failure(f"Unexpected status {response.status_code}")
                return
            response.success()

            execution_id = response.json().get("execution_id")
            if execution_id:
                self.execution_ids.append(execution_id)
                # Keep only recent execution IDs
                if len(self.execution_ids) > 100:
                    self.execution_ids = self.execution_ids[-100:]

    @task(5)
    def get_execution(self):
        """Check status of a previously triggered execution."""
        if not self.execution_ids:
            return

        execution_id = random.choice(self.execution_ids)
        self.client.get(
            f"/v1/executions/{execution_id}",
            name="/v1/executions/{execution_id} [GET]",
        )

    @task(3)
    def list_executions(self):
        """List executions, optionally filtered by status."""
        status_filter = random.choice([None, "running", "completed", "failed", "unknown"])
        params = {"page": 1, "page_size": 20}

        if status_filter:
            params["status"] = status_filter

        self.client.get("/v1/executions", params=params, name="/v1/executions [GET]")

    @task(3)
    def list_work_items(self):
        """List work items for a job."""
        params = {
            "page": 1,
            "page_size": 20,
            "job_name": random.choice(JOB_NAMES),
        }
        self.client.get("/v1/work-items", params=params, name="/v1/work-items [GET]")

    @task(2)
    def get_stats(self):
        """Get work item statistics."""
        self.client.get(
            "/v1/work-items/stats",
            params={"job_name": random.choice(JOB_NAMES)},
            name="/v1/work-items/stats [GET]",
        )

    @task(1)
    def get_leadership(self):
        """Check which replica leads."""
        self.client.get("/v1/leadership", name="/v1/leadership [GET]")

    @task(1)
    def health_check(self):
        """Check API health."""
        self.client.get("/health", name="/health [GET]")


class TriggerStormUser(HttpUser):
    """
    User that fires bursts of triggers for one job to exercise single-flight.
    """

    wait_time = between(5, 10)

    @task
    def trigger_burst(self):
        """Trigger the same job repeatedly; at most one burst request is accepted."""
        job_name = random.choice(JOB_NAMES)
        burst_size = random.randint(10, 50)

        for _ in range(burst_size):
            with self.client.post(
                f"/v1/jobs/{job_name}/trigger",
                name="/v1/jobs/{job_name}/trigger [POST] (burst)",
                catch_response=True,
            ) as response:
                if response.status_code in TRIGGER_OK:
                    response.success()
                else:
                    response.failure(f"Unexpected status {response.status_code}")
