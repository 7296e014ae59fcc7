"""
Settings for capture and restore.

The DAGs read each section from an Airflow Variable of the same name; the CLI
reads the same sections from one YAML file:

    backup_directory: /mnt/vm_configs
    retention_days: 30
    storage_settings:
      url: https://cluster1.example.com
      user: admin
      passwd: secret
      verify_tls: true
      certificate: /etc/pki/ontap-ca.pem
    ovirt_settings:
      url: https://engine.example.com/ovirt-engine/api
      user: admin@internal
      passwd: secret
      certificate: /etc/pki/ovirt-engine/ca.pem
      cluster: Default
      import_storage_domain: restore_clones
    restore_settings:
      share_mount_root: /mnt/restore
      name_conflict_policy: disambiguate
      coordination_resource: HostedEngine
"""

from datetime import timedelta
from typing import Any, Dict, Optional

import yaml

from leader_gate import DEFAULT_COORDINATION_RESOURCE
from metadata_store import DEFAULT_RETENTION
from restore_orchestrator import CONFLICT_ABORT, CONFLICT_DISAMBIGUATE, RESTORED_SUFFIX
from storage_client import DEFAULT_TIMEOUT, StorageConnection


class SettingsError(ValueError):
    """Missing or invalid setting"""


def load_settings(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            settings = yaml.safe_load(f)
    except OSError as e:
        raise SettingsError(f'Cannot read settings file {path}: {e}')
    except yaml.YAMLError as e:
        raise SettingsError(f'Invalid YAML in {path}: {e}')

    if settings is None:
        return {}
    if not isinstance(settings, dict):
        raise SettingsError(f'Settings file {path} must contain a mapping')
    return settings


def require(section: Dict[str, Any], key: str, section_name: str) -> Any:
    value = section.get(key) if section else None
    if value is None or value == '':
        raise SettingsError(f'Missing setting {section_name}.{key}')
    return value


def get_section(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = settings.get(name) or {}
    if not isinstance(value, dict):
        raise SettingsError(f'Setting {name} must be a mapping')
    return value


def retention_from_settings(settings: Dict[str, Any]) -> timedelta:
    days = settings.get('retention_days')
    if days is None:
        return DEFAULT_RETENTION
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise SettingsError(f'retention_days must be a number of days, got {days!r}')
    if days < 0:
        raise SettingsError(f'retention_days must not be negative, got {days}')
    return timedelta(days=days)


def storage_connection_from_settings(storage_settings: Dict[str, Any],
                                     password: Optional[str] = None) -> StorageConnection:
    """Password given here (prompted) wins over the stored one"""
    password = password or storage_settings.get('passwd')
    if not password:
        raise SettingsError('Missing setting storage_settings.passwd')

    return StorageConnection(
        base_url=require(storage_settings, 'url', 'storage_settings'),
        username=require(storage_settings, 'user', 'storage_settings'),
        password=password,
        verify_tls=bool(storage_settings.get('verify_tls', True)),
        ca_bundle=storage_settings.get('certificate'),
        timeout=int(storage_settings.get('timeout', DEFAULT_TIMEOUT)),
    )


def ovirt_config_from_settings(ovirt_settings: Dict[str, Any], password: Optional[str] = None) -> Dict[str, Any]:
    """Connection dict in the form create_ovirt_connection() takes"""
    config = {
        'url': require(ovirt_settings, 'url', 'ovirt_settings'),
        'user': require(ovirt_settings, 'user', 'ovirt_settings'),
        'passwd': password or ovirt_settings.get('passwd'),
        'certificate': ovirt_settings.get('certificate'),
        'insecure': bool(ovirt_settings.get('insecure', False)),
    }
    if not config['passwd']:
        raise SettingsError('Missing setting ovirt_settings.passwd')
    if not config['certificate'] and not config['insecure']:
        raise SettingsError('ovirt_settings.certificate is required unless insecure is true')
    return config


def restore_options(restore_settings: Dict[str, Any]) -> Dict[str, Any]:
    policy = restore_settings.get('name_conflict_policy', CONFLICT_DISAMBIGUATE)
    if policy not in (CONFLICT_DISAMBIGUATE, CONFLICT_ABORT):
        raise SettingsError(f'restore_settings.name_conflict_policy must be '
                            f'{CONFLICT_DISAMBIGUATE} or {CONFLICT_ABORT}, got {policy!r}')
    return {
        'share_mount_root': require(restore_settings, 'share_mount_root', 'restore_settings'),
        'name_conflict_policy': policy,
        'restored_suffix': restore_settings.get('restored_suffix', RESTORED_SUFFIX),
        'coordination_resource': restore_settings.get('coordination_resource', DEFAULT_COORDINATION_RESOURCE),
    }
