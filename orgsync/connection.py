"""HTTP connection to a remote org."""

import csv
import io
import logging
import time
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .constants import DEFAULT_POLLING_INTERVAL_MS, DEFAULT_POLLING_TIMEOUT_MS
from .errors import ExecutionError, InitializationError, MetadataError
from .models.describe import ObjectDescribe
from .models.record import Record
from .models.script import ScriptOrg

logger = logging.getLogger(__name__)

BULK_QUERY_FINAL_STATES = ("JobComplete", "Failed", "Aborted")


def flatten_record(data: Dict[str, Any], prefix: str = "") -> Record:
    """
    Flatten a query result record.

    The ``attributes`` entries are dropped and nested relationship objects
    become dotted field names (``Account.Name``).
    """
    record: Record = {}
    for key, value in data.items():
        if key == "attributes":
            continue
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            nested = flatten_record(value, f"{name}.")
            if nested:
                record.update(nested)
            else:
                record[name] = None
        else:
            record[name] = value
    return record


def response_error_message(response: Optional[requests.Response]) -> str:
    """Extract the error message of an API response."""
    if response is None:
        return "No response"
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        code = data.get("errorCode") or data.get("exceptionCode")
        message = data.get("message") or data.get("exceptionMessage") or data.get("error") or str(data)
        return f"{code}: {message}" if code else message
    return str(data)


class OrgConnection:
    """
    Authenticated HTTP session to one org.

    Supports:
    - Paged REST queries (query and queryAll)
    - Bulk API 2.0 query jobs for large reads
    - Object describes
    - Raw requests used by the API engines
    - Rate limiting
    - Retry logic
    """

    def __init__(
        self,
        org: ScriptOrg,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        rate_limit: float = 0.0,
        polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS,
        polling_timeout_ms: int = DEFAULT_POLLING_TIMEOUT_MS,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the connection.

        Args:
            org: Org settings holding the instance URL and access token
            max_retries: Retries of failed or throttled requests
            backoff_factor: Exponential backoff factor between retries
            rate_limit: Max requests per second, 0 for no limit
            polling_interval_ms: Wait between bulk job status checks
            polling_timeout_ms: Maximum wait for a bulk job
            session: Custom requests session
            logger: Logger to use instead of the module logger
        """
        if not org.instance_url or not org.access_token:
            raise InitializationError(f"Org {org.name} has no instance URL or access token")

        self.org = org
        self.instance_url = org.instance_url.rstrip("/")
        self.api_version = org.api_version
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.rate_limit = rate_limit
        self.polling_interval_ms = polling_interval_ms
        self.polling_timeout_ms = polling_timeout_ms
        self.logger = logger or logging.getLogger(__name__)
        self._last_request_time = 0.0
        self._session = session or self._create_session()
        self._session.headers["Authorization"] = f"Bearer {org.access_token}"

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retries = Retry(
            total=self.max_retries,
            backoff_factor=self.backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    @property
    def data_url(self) -> str:
        return f"{self.instance_url}/services/data/v{self.api_version}"

    @property
    def async_url(self) -> str:
        return f"{self.instance_url}/services/async/{self.api_version}"

    def _rate_limit_wait(self):
        """Wait to respect rate limits."""
        if self.rate_limit > 0:
            elapsed = time.time() - self._last_request_time
            wait_time = (1.0 / self.rate_limit) - elapsed
            if wait_time > 0:
                time.sleep(wait_time)
        self._last_request_time = time.time()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if path.startswith("/services/"):
            return f"{self.instance_url}{path}"
        return f"{self.data_url}/{path.lstrip('/')}"

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Send a request to the org.

        Args:
            method: HTTP method
            path: Absolute URL, a ``/services/...`` path or a path under the data API
            **kwargs: Passed to ``requests.Session.request``

        Returns:
            The response

        Raises:
            requests.exceptions.HTTPError: When the org answers with an error status
            ExecutionError: When the org cannot be reached or retries are exhausted
        """
        self._rate_limit_wait()
        url = self._url(path)
        self.logger.debug(f"{method} {url}")
        try:
            response = self._session.request(method, url, **kwargs)
        except requests.exceptions.RequestException as e:
            raise ExecutionError(f"Request to {self.org.name} failed: {method} {url}: {e}") from e
        response.raise_for_status()
        return response

    def request_json(self, method: str, path: str, **kwargs) -> Any:
        response = self.request(method, path, **kwargs)
        return response.json() if response.text else {}

    def describe(self, object_name: str) -> ObjectDescribe:
        """
        Describe an object.

        Raises:
            MetadataError: When the object cannot be described
        """
        try:
            data = self.request_json("GET", f"sobjects/{object_name}/describe")
        except requests.exceptions.HTTPError as e:
            raise MetadataError(
                f"Cannot describe {object_name} in {self.org.name}: {response_error_message(e.response)}"
            ) from e
        except ExecutionError as e:
            raise MetadataError(f"Cannot describe {object_name}: {e}") from e
        return ObjectDescribe.from_dict(data)

    def query(self, soql: str, query_all: bool = False) -> List[Record]:
        """
        Run a query through the REST API, following all result pages.

        Raises:
            ExecutionError: When the query fails
        """
        endpoint = "queryAll" if query_all else "query"
        records: List[Record] = []
        try:
            data = self.request_json("GET", endpoint, params={"q": soql})
            while True:
                records.extend(flatten_record(item) for item in data.get("records", []))
                next_url = data.get("nextRecordsUrl")
                if data.get("done", True) or not next_url:
                    break
                data = self.request_json("GET", next_url)
        except requests.exceptions.HTTPError as e:
            raise ExecutionError(f"Query failed: {response_error_message(e.response)}") from e
        return records

    def bulk_query(self, soql: str, query_all: bool = False) -> List[Record]:
        """
        Run a query through a Bulk API 2.0 query job.

        Raises:
            ExecutionError: When the job fails or times out
        """
        try:
            job = self.request_json(
                "POST",
                "jobs/query",
                json={"operation": "queryAll" if query_all else "query", "query": soql},
            )
            job_id = job["id"]
            self._wait_for_query_job(job_id)

            records: List[Record] = []
            locator = None
            while True:
                params = {"locator": locator} if locator else None
                response = self.request("GET", f"jobs/query/{job_id}/results", params=params)
                records.extend(parse_csv_records(response.text))
                locator = response.headers.get("Sforce-Locator")
                if not locator or locator == "null":
                    break
        except requests.exceptions.HTTPError as e:
            raise ExecutionError(f"Bulk query failed: {response_error_message(e.response)}") from e
        return records

    def _wait_for_query_job(self, job_id: str) -> None:
        started = time.time()
        while True:
            info = self.request_json("GET", f"jobs/query/{job_id}")
            state = info.get("state")
            if state in BULK_QUERY_FINAL_STATES:
                if state != "JobComplete":
                    raise ExecutionError(f"Bulk query job {job_id} {state}: {info.get('errorMessage', '')}")
                return
            if (time.time() - started) * 1000 > self.polling_timeout_ms:
                raise ExecutionError(f"Bulk query job {job_id} timed out")
            time.sleep(self.polling_interval_ms / 1000.0)

    def query_records(self, soql: str, use_bulk: bool = False, query_all: bool = False) -> List[Record]:
        """Run a query through the bulk API or the REST API."""
        if use_bulk:
            return self.bulk_query(soql, query_all)
        return self.query(soql, query_all)

    def close(self) -> None:
        self._session.close()


def parse_csv_records(text: str) -> List[Record]:
    """Parse a bulk result CSV into records; empty cells become None."""
    if not text or not text.strip():
        return []
    reader = csv.DictReader(io.StringIO(text))
    return [{k: (v if v != "" else None) for k, v in row.items()} for row in reader]
