from locust import HttpUser, task, between
import os
import uuid

GATE_HOST = os.getenv("GATE_HOST", "http://127.0.0.1:8080")
APP_HOSTNAME = os.getenv("APP_HOSTNAME", "app.localhost")
SECRET_PATH = os.getenv("SECRET_PATH", "/secret_path")

# MODE:
#   baseline = every user unlocks once, then browses
#   adversary = users never unlock and keep rotating IPs (all 403s)
MODE = os.getenv("MODE", "baseline").lower()

BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"


def _fake_ip() -> str:
    n = uuid.uuid4().int
    return f"10.{(n >> 16) & 0xFF}.{(n >> 8) & 0xFF}.{n & 0xFF}"


class GateUser(HttpUser):
    host = GATE_HOST
    wait_time = between(0.1, 0.3)

    def on_start(self):
        # stable client IP per Locust user; the gate keys sessions on it
        self.ip = _fake_ip()
        if MODE != "adversary":
            self._unlock()

    def _headers(self) -> dict:
        return {
            "Host": APP_HOSTNAME,
            "X-Forwarded-For": self.ip,
            "User-Agent": BROWSER_UA,
        }

    def _unlock(self):
        with self.client.get(
            f"{SECRET_PATH}/",
            headers=self._headers(),
            allow_redirects=False,
            name="unlock",
            catch_response=True,
        ) as r:
            if r.status_code == 302:
                r.success()
            else:
                r.failure(f"unexpected unlock status {r.status_code}: {r.text[:200]}")

    def _get(self, path: str, name: str):
        if MODE == "adversary":
            self.ip = _fake_ip()

        expected = (403,) if MODE == "adversary" else (200, 404)
        with self.client.get(path, headers=self._headers(), name=name, catch_response=True) as r:
            if r.status_code in expected:
                r.success()
            else:
                r.failure(f"unexpected status {r.status_code}: {r.text[:200]}")

    @task(6)
    def export_small(self):
        self._get("/export/small.csv", "small")

    @task(3)
    def echo(self):
        self._get(f"/echo/{uuid.uuid4().hex[:8]}", "echo")

    @task(1)
    def export_large(self):
        self._get("/export/large.csv", "large")
