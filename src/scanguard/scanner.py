"""
VirusTotal v3 reputation scanner and identifier helpers.

Supports URL lookups via the VirusTotal API v3:
- GET /urls/{id} where id is the URL-safe unpadded base64 of the URL
- 404 submits the URL (POST /urls) and reports a pending result
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import re
import time
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from scanguard.config.defaults import (
    BLOCKED_SCHEMES,
    IDENTIFIER_MAX_LENGTH,
    SCANNER_HTTP_TIMEOUT_SECONDS,
    VIRUSTOTAL_BASE_URL,
)
from scanguard.errors import ScannerError, ValidationError
from scanguard.trust.models import ExternalScanResult

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*):")
_WHITESPACE_RE = re.compile(r"\s+")


def canonicalize_identifier(identifier: str) -> str:
    """
    Normalize a scanned identifier into the form that gets hashed and scanned.

    Raises:
        ValidationError: Empty input or a blocked scheme (javascript, data, file, ftp)
    """
    if not isinstance(identifier, str):
        raise ValidationError("Identifier must be a string")
    value = _WHITESPACE_RE.sub("", identifier.strip())
    if not value:
        raise ValidationError("Identifier is empty")

    match = _SCHEME_RE.match(value)
    scheme = match.group(1).lower() if match else None
    if scheme in BLOCKED_SCHEMES:
        raise ValidationError(f"Blocked scheme: {scheme}")
    if scheme is None or "://" not in value[:len(scheme) + 3]:
        value = "https://" + value

    parts = urlsplit(value)
    path = parts.path or "/"
    value = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, parts.fragment))
    return value[:IDENTIFIER_MAX_LENGTH]


def hash_target(identifier: str) -> str:
    """SHA-256 hex digest of the canonical identifier."""
    canonical = canonicalize_identifier(identifier)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def url_id(url: str) -> str:
    """VirusTotal v3 URL identifier."""
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")


def _get_virustotal_api_key() -> Optional[str]:
    """Get VirusTotal API key from environment."""
    return os.environ.get("SCANGUARD_VIRUSTOTAL_API_KEY") or os.environ.get("VIRUSTOTAL_API_KEY")


class VirusTotalScanner:
    """
    ReputationScanner backed by VirusTotal.

    Raises on any failure; retry and circuit breaking are the gateway's job.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = VIRUSTOTAL_BASE_URL,
        timeout: float = SCANNER_HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or _get_virustotal_api_key()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise ScannerError(
                "VirusTotal API key not found. Set SCANGUARD_VIRUSTOTAL_API_KEY environment variable."
            )
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"x-apikey": self.api_key},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def scan(self, identifier: str) -> ExternalScanResult:
        """
        Look up an identifier, submitting it for analysis if unknown.

        Returns:
            ExternalScanResult; pending=True when VirusTotal has no analysis yet

        Raises:
            ValidationError: Identifier cannot be scanned
            ScannerError: Unexpected HTTP status or malformed body
            ConnectionError / TimeoutError: Transport failure
        """
        url = canonicalize_identifier(identifier)
        try:
            async with self._client() as client:
                response = await client.get(f"/urls/{url_id(url)}")
                if response.status_code == 404:
                    return await self._submit(client, url)
                self._raise_for_status(response)
                return self._parse_report(response.json())
        except httpx.TimeoutException as e:
            raise TimeoutError(f"VirusTotal request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ConnectionError(f"VirusTotal unreachable: {e}") from e

    async def _submit(self, client: httpx.AsyncClient, url: str) -> ExternalScanResult:
        response = await client.post("/urls", data={"url": url})
        self._raise_for_status(response)
        analysis_id = (response.json().get("data") or {}).get("id")
        logger.info(f"Submitted {url} to VirusTotal (analysis {analysis_id})")
        return ExternalScanResult(is_secure=False, pending=True, scanned_at=time.time())

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code == 401 or response.status_code == 403:
            raise ScannerError("Invalid VirusTotal API key", status_code=response.status_code)
        if response.status_code == 429:
            raise ScannerError("VirusTotal rate limit exceeded", status_code=429)
        if not 200 <= response.status_code < 300:
            raise ScannerError(
                f"VirusTotal error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

    @staticmethod
    def _parse_report(body: dict) -> ExternalScanResult:
        data = body.get("data")
        if not isinstance(data, dict):
            raise ScannerError(f"Malformed VirusTotal response: {body!r:.200}")
        attributes = data.get("attributes") or {}
        stats = attributes.get("last_analysis_stats") or {}
        if not stats:
            return ExternalScanResult(is_secure=False, pending=True, scanned_at=time.time())

        positives = int(stats.get("malicious", 0)) + int(stats.get("suspicious", 0))
        total = sum(int(v) for v in stats.values() if isinstance(v, (int, float)))
        scanned_at = attributes.get("last_analysis_date") or time.time()
        permalink = f"https://www.virustotal.com/gui/url/{data['id']}" if data.get("id") else None
        return ExternalScanResult(
            is_secure=positives == 0,
            positives=positives,
            total=total,
            pending=False,
            scanned_at=float(scanned_at),
            permalink=permalink,
        )
