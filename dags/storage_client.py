"""
ONTAP Storage API Client
========================

Thin wrapper over the storage controller's REST interface used by the restore
workflow: volume lookup, snapshot listing, FlexClone creation, CIFS share
creation and the matching deletions.

Every method is a single request. There are no retries here; the restore
workflow attempts each remote call exactly once and reports the failure.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

import requests

# Snapshots owned by the storage system or by replication, never restorable
SYSTEM_SNAPSHOT_PREFIX = 'vserver'
REPLICATION_SNAPSHOT_PREFIX = 'snapmirror'
INELIGIBLE_SNAPSHOT_PREFIXES = (SYSTEM_SNAPSHOT_PREFIX, REPLICATION_SNAPSHOT_PREFIX)

CLONE_MARKER = '_clone_'
SHARE_PREFIX = 'restore_'
# <volume>_clone_<YYYYmmddHHMMSS><microseconds>_<6 hex>
CLONE_NAME_PATTERN = re.compile(r'.+_clone_\d{20}_[0-9a-f]{6}')

DEFAULT_TIMEOUT = 60


class StorageApiError(RuntimeError):
    """Non-2xx answer or transport failure from the storage controller"""

    def __init__(self, status: Optional[int], body: str, method: str, url: str):
        self.status = status
        self.body = body
        self.method = method
        self.url = url
        status_text = f'HTTP {status}' if status is not None else 'no response'
        super().__init__(f'{method} {url} failed ({status_text}): {body}')


@dataclass(frozen=True)
class StorageConnection:
    """Transport settings shared by every call of one client"""
    base_url: str
    username: str
    password: str
    verify_tls: bool = True
    ca_bundle: Optional[str] = None
    timeout: int = DEFAULT_TIMEOUT

    @property
    def verify(self) -> Union[bool, str]:
        if not self.verify_tls:
            return False
        return self.ca_bundle or True

    def __repr__(self) -> str:
        return (f'StorageConnection(base_url={self.base_url!r}, username={self.username!r}, '
                f'verify_tls={self.verify_tls!r}, ca_bundle={self.ca_bundle!r}, timeout={self.timeout!r})')


@dataclass(frozen=True)
class VolumeIdentity:
    uuid: str
    name: str
    svm_name: Optional[str] = None


@dataclass(frozen=True)
class StorageSnapshot:
    name: str
    create_time: Optional[datetime]
    volume_uuid: str


def is_eligible_snapshot(name: str) -> bool:
    return not name.startswith(INELIGIBLE_SNAPSHOT_PREFIXES)


def eligible_snapshots(snapshots: Iterable[StorageSnapshot]) -> List[StorageSnapshot]:
    """Drop system and replication snapshots (case-sensitive prefix match)"""
    return [snapshot for snapshot in snapshots if is_eligible_snapshot(snapshot.name)]


def clone_name_for(volume_name: str, now: Optional[datetime] = None) -> str:
    """Clone name unique per call: parent volume, time to the microsecond, random suffix"""
    now = now or datetime.now()
    return f'{volume_name}{CLONE_MARKER}{now.strftime("%Y%m%d%H%M%S%f")}_{secrets.token_hex(3)}'


def share_name_for(clone_name: str) -> str:
    return f'{SHARE_PREFIX}{clone_name}'


def junction_path_for(clone_name: str) -> str:
    return f'/{clone_name}'


def is_restore_clone_name(clone_name: str) -> bool:
    """Only names produced by clone_name_for; a volume that merely contains _clone_ is not ours"""
    return CLONE_NAME_PATTERN.fullmatch(clone_name) is not None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logging.warning(f'Unparseable snapshot create_time: {value}')
        return None


class StorageApiClient:
    """ONTAP REST client bound to one StorageConnection"""

    def __init__(self, connection: StorageConnection, session: Optional[requests.Session] = None):
        self.connection = connection
        self.session = session or requests.Session()
        self.base_url = connection.base_url.rstrip('/')

        if not connection.verify_tls:
            logging.warning(f'TLS certificate validation disabled for {self.base_url}')

    def _request(self, method: str, path: str, params: Optional[Dict] = None,
                 body: Optional[Dict] = None) -> Dict[str, Any]:
        url = f'{self.base_url}{path}'
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=body,
                auth=(self.connection.username, self.connection.password),
                verify=self.connection.verify,
                timeout=self.connection.timeout,
                headers={'Accept': 'application/json'},
            )
        except requests.RequestException as e:
            raise StorageApiError(None, str(e), method, url)

        if response.status_code >= 400:
            raise StorageApiError(response.status_code, response.text, method, url)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise StorageApiError(response.status_code, response.text, method, url)

    def find_volume(self, name: str) -> Optional[VolumeIdentity]:
        data = self._request('GET', '/api/storage/volumes', params={'name': name, 'fields': 'uuid,name,svm'})
        for record in data.get('records', []):
            if record.get('name') == name:
                return VolumeIdentity(
                    uuid=record['uuid'],
                    name=record['name'],
                    svm_name=(record.get('svm') or {}).get('name'),
                )
        return None

    def list_snapshots(self, volume: VolumeIdentity) -> List[StorageSnapshot]:
        data = self._request('GET', f'/api/storage/volumes/{volume.uuid}/snapshots',
                             params={'fields': 'name,create_time'})
        return [
            StorageSnapshot(
                name=record['name'],
                create_time=_parse_time(record.get('create_time')),
                volume_uuid=volume.uuid,
            )
            for record in data.get('records', [])
        ]

    def create_clone(self, clone_name: str, parent_volume: VolumeIdentity, parent_snapshot: str) -> str:
        """Create a FlexClone and return its volume uuid"""
        body = {
            'name': clone_name,
            'clone': {
                'parent_volume': {'name': parent_volume.name},
                'parent_snapshot': {'name': parent_snapshot},
            },
            'nas': {'path': junction_path_for(clone_name)},
        }
        if parent_volume.svm_name:
            body['svm'] = {'name': parent_volume.svm_name}

        url = f'{self.base_url}/api/storage/volumes'
        data = self._request('POST', '/api/storage/volumes', params={'return_records': 'true'}, body=body)
        records = data.get('records') or []
        if not records or not records[0].get('uuid'):
            raise StorageApiError(None, f'clone created without a uuid in response: {data}', 'POST', url)

        clone_uuid = records[0]['uuid']
        logging.info(f'✓ Clone created: {clone_name} (uuid: {clone_uuid})')
        return clone_uuid

    def create_share(self, share_name: str, path: str, svm_name: Optional[str] = None) -> str:
        """Create a CIFS share and return its identifier ("<svm uuid>/<name>")"""
        body = {'name': share_name, 'path': path}
        if svm_name:
            body['svm'] = {'name': svm_name}

        data = self._request('POST', '/api/protocols/cifs/shares', params={'return_records': 'true'}, body=body)
        records = data.get('records') or []
        record = records[0] if records else {}
        share_id = self._share_id(record, share_name)
        logging.info(f'✓ Share created: {share_name} -> {path}')
        return share_id

    def find_share(self, share_name: str) -> Optional[str]:
        data = self._request('GET', '/api/protocols/cifs/shares', params={'name': share_name, 'fields': 'name,svm'})
        for record in data.get('records', []):
            if record.get('name') == share_name:
                return self._share_id(record, share_name)
        return None

    @staticmethod
    def _share_id(record: Dict[str, Any], share_name: str) -> str:
        svm_uuid = (record.get('svm') or {}).get('uuid')
        name = record.get('name') or share_name
        return f'{svm_uuid}/{name}' if svm_uuid else name

    def delete_share(self, share_id: str) -> bool:
        """Delete a share; False when it was already gone"""
        return self._delete(f'/api/protocols/cifs/shares/{share_id}', f'share {share_id}')

    def delete_clone(self, clone_uuid: str) -> bool:
        """Delete a clone volume; False when it was already gone"""
        return self._delete(f'/api/storage/volumes/{clone_uuid}', f'clone {clone_uuid}')

    def _delete(self, path: str, label: str) -> bool:
        try:
            self._request('DELETE', path)
        except StorageApiError as e:
            if e.status == 404:
                logging.info(f'{label} not found, treating as already deleted')
                return False
            raise
        logging.info(f'✓ Deleted {label}')
        return True
