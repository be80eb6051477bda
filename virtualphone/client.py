"""HTTP client for the call service, as used by the phone app and demo scripts."""
from typing import Any, Dict, List, Optional
import threading
import time

import requests

from virtualphone.utils.logger import ServiceLogger

STATUS_TIMEOUT = 2
PROBE_TIMEOUT = 3
REQUEST_TIMEOUT = 10


class PhoneClient:
    """Thin wrapper over the call service REST API."""

    def __init__(self, base_url: str, logger: Optional[ServiceLogger] = None):
        self.base_url = base_url.rstrip("/")
        self.logger = logger or ServiceLogger("phone-client", log_dir=None)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        return requests.post(self._url(path), json=payload, timeout=REQUEST_TIMEOUT)

    # -- liveness ------------------------------------------------------

    def check_status(self) -> bool:
        """Quick "is the server awake" probe."""
        try:
            resp = requests.get(self._url("/api/status"), timeout=STATUS_TIMEOUT)
            return resp.ok
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"Status check failed: {e}")
            return False

    def check_connection(self) -> bool:
        try:
            resp = requests.get(self._url("/api/test"), timeout=PROBE_TIMEOUT)
            return resp.ok
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"Connection check failed: {e}")
            return False

    def warmup(self, attempts: int = 3, pause: float = 2.0) -> bool:
        """Wake a cold-started host, retrying a few times before giving up."""
        for attempt in range(1, attempts + 1):
            self.logger.info(f"Waking server ({attempt}/{attempts})")
            try:
                resp = requests.get(self._url("/api/status"), timeout=PROBE_TIMEOUT)
                if resp.ok:
                    return True
            except requests.exceptions.RequestException as e:
                self.logger.debug(f"Wake attempt {attempt} failed: {e}")
            if attempt < attempts:
                time.sleep(pause)
        self.logger.warning("Server did not respond, it may be sleeping")
        return False

    # -- call control --------------------------------------------------

    def start_call(self, phone_number: str) -> str:
        resp = self._post("/api/call", {"phoneNumber": phone_number})
        resp.raise_for_status()
        return resp.json()["callId"]

    def answer(self, call_id: str, update_only: bool = False) -> bool:
        resp = self._post("/api/answer", {"callId": call_id, "updateOnly": update_only})
        resp.raise_for_status()
        return resp.json().get("success", False)

    def hangup(self, call_id: str, update_only: bool = False) -> bool:
        resp = self._post("/api/hangup", {"callId": call_id, "updateOnly": update_only})
        # A call the server already forgot is still hung up from our side
        if resp.status_code == 404:
            return True
        resp.raise_for_status()
        return resp.json().get("success", False)

    def active_calls(self) -> List[Dict[str, Any]]:
        resp = requests.get(self._url("/api/calls"), timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        return resp.json()

    # -- records -------------------------------------------------------

    def get_records(self) -> List[Dict[str, Any]]:
        try:
            resp = requests.get(
                self._url("/api/call-records"),
                headers={"Cache-Control": "no-cache", "Pragma": "no-cache"},
                timeout=REQUEST_TIMEOUT,
            )
            resp.raise_for_status()
            return resp.json()
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Fetching call records failed: {e}")
            return []

    def get_merged_records(self) -> List[Dict[str, Any]]:
        resp = requests.get(self._url("/api/merged-call-records"), timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        return resp.json()["records"]

    def sync_records(self, records: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
        """Push local history; returns the server's authoritative record set."""
        try:
            resp = self._post("/api/sync-records", {"records": records})
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Syncing {len(records)} records failed: {e}")
            return None
        return resp.json()["records"]

    def clear_history(self) -> bool:
        resp = self._post("/api/clear-history", {})
        resp.raise_for_status()
        return resp.json().get("success", False)


class KeepAlivePinger:
    """Background thread that pings /keep-alive so an idle host does not sleep."""

    def __init__(self, url: str, interval: float = 600.0, logger: Optional[ServiceLogger] = None):
        self.url = url
        self.interval = interval
        self.logger = logger or ServiceLogger("keep-alive", log_dir=None)
        self.pings = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def ping(self) -> bool:
        try:
            resp = requests.get(self.url, timeout=PROBE_TIMEOUT)
            self.pings += 1
            return resp.ok
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"Keep-alive ping failed: {e}")
            return False

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.ping()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="keep-alive", daemon=True)
        self._thread.start()
        self.logger.info(f"Keep-alive pinging {self.url} every {self.interval}s")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
