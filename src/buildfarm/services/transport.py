"""Delivery of report transactions to the remote collector."""

import hashlib
import hmac
import logging
from pathlib import Path
from typing import Protocol

import requests

from ..constants import TRANSPORT_TIMEOUT
from ..models import ReportRecord

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Buildfarm-Signature"


class TransportError(Exception):
    """Report could not be delivered."""


class Transport(Protocol):
    """Sends a report; returns 0 when delivered, a failure code otherwise."""

    def send(self, record: ReportRecord, archive: Path | None) -> int: ...


def sign(body: bytes, secret: str) -> str:
    """HMAC-SHA256 of the request body keyed by the shared secret."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def load_record(path: Path) -> ReportRecord:
    """Load a persisted report transaction.

    Raises:
        TransportError: If the file is missing or not a valid record
    """
    try:
        return ReportRecord.model_validate_json(path.read_text())
    except FileNotFoundError:
        raise TransportError(f"no saved report at {path}") from None
    except ValueError as e:
        raise TransportError(f"saved report {path} is invalid: {e}") from e


class HttpTransport:
    """POST the report and its log archive to the collector URL.

    The JSON payload never contains the secret; the collector verifies the
    signature header instead.
    """

    def __init__(
        self,
        target: str,
        secret: str,
        timeout: float = TRANSPORT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.target = target
        self.secret = secret
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, record: ReportRecord, archive: Path | None) -> requests.Response:
        body = record.model_dump_json(exclude={"secret"}).encode()
        headers = {SIGNATURE_HEADER: sign(body, self.secret)}
        data = {"payload": body.decode()}
        if archive is not None and archive.is_file():
            with open(archive, "rb") as f:
                files = {"logs": (archive.name, f, "application/gzip")}
                return self.session.post(
                    self.target, data=data, files=files, headers=headers, timeout=self.timeout
                )
        return self.session.post(self.target, data=data, headers=headers, timeout=self.timeout)

    def send(self, record: ReportRecord, archive: Path | None) -> int:
        try:
            response = self._post(record, archive)
        except requests.RequestException as e:
            logger.error(f"Web txn to {self.target} failed: {e}")
            return 1

        if not response.ok:
            logger.error(f"Web txn rejected: HTTP {response.status_code} {response.reason}")
            return 1
        if response.text.lstrip().startswith("ERROR"):
            logger.error(f"Web txn rejected by server: {response.text.strip()[:200]}")
            return 1

        logger.debug(f"Web txn delivered to {self.target}")
        return 0
