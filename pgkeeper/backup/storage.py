"""
S3-compatible object storage for backup artifacts.

Talks plain HTTP to any S3-compatible service (AWS, MinIO, Ceph, R2, ...).
Requests are signed with AWS Signature Version 4 by sign_request(), a pure
function with no I/O so it can be checked against published test vectors.

Addressing:
- endpoint configured: path style, {endpoint}/{bucket}/{key}
- no endpoint: virtual-hosted style, https://{bucket}.s3.{region}.amazonaws.com/{key}
"""

import hashlib
import hmac
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, List, Any
from urllib.parse import quote, urlparse

import requests

from .compression import compute_checksum
from .records import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

ALGORITHM = 'AWS4-HMAC-SHA256'
SERVICE = 's3'
EMPTY_PAYLOAD_HASH = hashlib.sha256(b'').hexdigest()

# Seconds
TRANSFER_TIMEOUT = 600
CONTROL_TIMEOUT = 30


class StorageError(Exception):
    """
    Raised when an object store operation fails.

    status_code and body are set when the service answered with a non-2xx
    response; both are None for transport failures (timeouts, DNS, ...).
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class ObjectStoreConfig:
    """Connection settings and long-term credentials for the object store."""

    bucket: str
    region: str = 'us-east-1'
    access_key: str = ''
    secret_key: str = ''
    endpoint: Optional[str] = None


def hash_payload(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode('utf-8'), hashlib.sha256).digest()


def derive_signing_key(secret_key: str, date_stamp: str, region: str, service: str = SERVICE) -> bytes:
    """HMAC chain: secret -> date -> region -> service -> 'aws4_request'."""
    k_date = _hmac(('AWS4' + secret_key).encode('utf-8'), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, 'aws4_request')


def canonical_query_string(params: Optional[Dict[str, str]]) -> str:
    """Sorted, RFC 3986 encoded query string ('' when there are no params)."""
    if not params:
        return ''
    return '&'.join(
        f"{quote(str(name), safe='-_.~')}={quote(str(value), safe='-_.~')}"
        for name, value in sorted(params.items())
    )


def sign_request(
    method: str,
    path: str,
    headers: Dict[str, str],
    payload_hash: str,
    credentials: ObjectStoreConfig,
    timestamp: datetime,
    query: str = ''
) -> Dict[str, str]:
    """
    Sign a request with AWS Signature Version 4.

    Args:
        method: HTTP method
        path: Canonical URI (already percent-encoded)
        headers: Headers to sign; Host must be present
        payload_hash: Hex SHA-256 of the request body
        credentials: Access key, secret key and region
        timestamp: Request time (UTC)
        query: Canonical query string, '' for requests without one

    Returns:
        A new header dict with x-amz-date, x-amz-content-sha256 and
        Authorization added. The input dict is not modified.
    """
    amz_date = timestamp.strftime('%Y%m%dT%H%M%SZ')
    date_stamp = timestamp.strftime('%Y%m%d')
    credential_scope = f"{date_stamp}/{credentials.region}/{SERVICE}/aws4_request"

    signed = dict(headers)
    signed['x-amz-date'] = amz_date
    signed['x-amz-content-sha256'] = payload_hash

    # Lower-case names, sorted; values trimmed
    normalized = {name.lower(): str(value).strip() for name, value in signed.items()}
    header_names = sorted(normalized)
    canonical_headers = ''.join(f"{name}:{normalized[name]}\n" for name in header_names)
    signed_headers = ';'.join(header_names)

    canonical_request = '\n'.join([
        method,
        path,
        query,
        canonical_headers,
        signed_headers,
        payload_hash,
    ])

    string_to_sign = '\n'.join([
        ALGORITHM,
        amz_date,
        credential_scope,
        hashlib.sha256(canonical_request.encode('utf-8')).hexdigest(),
    ])

    signing_key = derive_signing_key(credentials.secret_key, date_stamp, credentials.region)
    signature = hmac.new(signing_key, string_to_sign.encode('utf-8'), hashlib.sha256).hexdigest()

    signed['Authorization'] = (
        f"{ALGORITHM} Credential={credentials.access_key}/{credential_scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return signed


def parse_list_objects(xml_text: str) -> List[Dict[str, Any]]:
    """
    Parse a ListObjectsV2 response body.

    Returns:
        List of dicts with 'key', 'last_modified' (aware datetime or None)
        and 'size' keys, in document order

    Raises:
        StorageError: If the body is not well-formed XML
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise StorageError(f"Invalid S3 list response: {e}")

    def local_name(element):
        return element.tag.rsplit('}', 1)[-1]

    objects = []
    for contents in root.iter():
        if local_name(contents) != 'Contents':
            continue

        fields = {local_name(child): (child.text or '') for child in contents}
        if not fields.get('Key'):
            continue

        last_modified = None
        if fields.get('LastModified'):
            try:
                last_modified = parse_timestamp(fields['LastModified'])
            except ValueError:
                logger.warning(f"Unparseable LastModified for {fields['Key']}: {fields['LastModified']}")

        try:
            size = int(fields.get('Size') or 0)
        except ValueError:
            size = 0

        objects.append({
            'key': fields['Key'],
            'last_modified': last_modified,
            'size': size,
        })

    return objects


class S3Storage:
    """
    Handler for backup artifacts in an S3-compatible bucket.

    Every operation either fully succeeds or raises StorageError.
    """

    def __init__(self, config: ObjectStoreConfig, session: Optional[requests.Session] = None):
        """
        Initialize S3 storage handler.

        Args:
            config: Bucket, region, credentials and optional custom endpoint
            session: requests session to use (a new one by default)
        """
        if not config.bucket:
            raise StorageError("S3 bucket is not configured")

        self.config = config
        self.session = session or requests.Session()

    @property
    def path_style(self) -> bool:
        return bool(self.config.endpoint)

    @property
    def base_url(self) -> str:
        if self.config.endpoint:
            return self.config.endpoint.rstrip('/')
        return f"https://{self.config.bucket}.s3.{self.config.region}.amazonaws.com"

    def _object_path(self, key: str = '') -> str:
        encoded = quote(key, safe='/~')
        if self.path_style:
            return f"/{self.config.bucket}/{encoded}"
        return f"/{encoded}"

    def _request(self, method: str, path: str, timeout: int,
                 query: Optional[Dict[str, str]] = None,
                 payload_hash: str = EMPTY_PAYLOAD_HASH,
                 extra_headers: Optional[Dict[str, str]] = None,
                 **kwargs) -> requests.Response:
        """Sign and send one request. Raises StorageError on transport failure."""
        query_string = canonical_query_string(query)
        headers = {'Host': urlparse(self.base_url).netloc}
        if extra_headers:
            headers.update(extra_headers)

        signed_headers = sign_request(
            method, path, headers, payload_hash, self.config,
            utc_now(), query=query_string
        )

        url = f"{self.base_url}{path}"
        if query_string:
            url = f"{url}?{query_string}"

        try:
            return self.session.request(method, url, headers=signed_headers, timeout=timeout, **kwargs)
        except requests.RequestException as e:
            raise StorageError(f"S3 {method} {path} failed: {e}")

    @staticmethod
    def _raise_for_status(response: requests.Response, operation: str, allowed=()):
        if response.ok or response.status_code in allowed:
            return
        body = response.text
        raise StorageError(
            f"S3 {operation} failed: {response.status_code} {response.reason} - {body}",
            status_code=response.status_code,
            body=body
        )

    def upload(self, key: str, local_path: str):
        """
        Upload a local file to the given key.

        Raises:
            StorageError: If the file is missing or the upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        payload_hash = compute_checksum(local_path)
        size = os.path.getsize(local_path)

        with open(local_path, 'rb') as f:
            response = self._request(
                'PUT', self._object_path(key), TRANSFER_TIMEOUT,
                payload_hash=payload_hash,
                extra_headers={
                    'Content-Type': 'application/octet-stream',
                    'Content-Length': str(size),
                },
                data=f
            )

        self._raise_for_status(response, 'upload')
        logger.info(f"Backup uploaded to S3: {key} ({size} bytes)")

    def download(self, key: str, dest_path: str):
        """
        Download an object to a local path.

        Raises:
            StorageError: If the request fails; no partial file is left behind
        """
        response = self._request('GET', self._object_path(key), TRANSFER_TIMEOUT, stream=True)

        try:
            self._raise_for_status(response, 'download')
            with open(dest_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    if chunk:
                        f.write(chunk)
        except (requests.RequestException, OSError) as e:
            self._remove_partial(dest_path)
            raise StorageError(f"S3 download failed: {e}")
        except StorageError:
            self._remove_partial(dest_path)
            raise
        finally:
            response.close()

        logger.info(f"Backup downloaded from S3: {key} -> {dest_path}")

    def delete(self, key: str):
        """
        Delete an object.

        Raises:
            StorageError: If deletion fails
        """
        response = self._request('DELETE', self._object_path(key), CONTROL_TIMEOUT)
        self._raise_for_status(response, 'delete', allowed=(204,))
        logger.debug(f"Backup deleted from S3: {key}")

    def list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        """
        List objects under a prefix (first page only).

        Returns:
            List of dicts with 'key', 'last_modified' and 'size' keys

        Raises:
            StorageError: If listing fails
        """
        response = self._request(
            'GET', self._object_path(''), CONTROL_TIMEOUT,
            query={'list-type': '2', 'prefix': prefix}
        )
        self._raise_for_status(response, 'list')
        return parse_list_objects(response.text)

    def test_connection(self) -> bool:
        """
        Test bucket access with a signed HEAD request.

        Raises:
            StorageError: If the bucket is missing or access is denied
        """
        response = self._request('HEAD', self._object_path(''), CONTROL_TIMEOUT)
        if response.status_code == 404:
            raise StorageError(f"Bucket does not exist: {self.config.bucket}", status_code=404)
        if response.status_code == 403:
            raise StorageError(f"Access denied to bucket: {self.config.bucket}", status_code=403)
        self._raise_for_status(response, 'connection test')
        return True

    @staticmethod
    def _remove_partial(path: str):
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial download {path}: {e}")
