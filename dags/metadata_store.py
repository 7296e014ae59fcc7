import json
import logging
import os
import re
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from vm_config_record import ConfigurationRecord, RecordFormatError

DEFAULT_RETENTION = timedelta(days=30)

TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
RECORD_EXTENSION = '.json'

_RECORD_SUFFIX = re.compile(r'_(\d{8}_\d{6})\.json$')


class RecordWriteConflict(RuntimeError):
    """A record file for the same VM and second already exists"""


class MetadataStore:
    """Per-VM directories of timestamped configuration records"""

    def __init__(self, backup_dir: str):
        self.backup_dir = backup_dir

    def _vm_dir(self, vm_name: str) -> str:
        if not vm_name or vm_name in ('.', '..') or '/' in vm_name or '\\' in vm_name:
            raise ValueError(f'Invalid VM name for metadata store: {vm_name!r}')
        return os.path.join(self.backup_dir, vm_name)

    def record_path(self, vm_name: str, captured_at: datetime) -> str:
        """Lexical order of these file names is chronological order"""
        file_name = f'{vm_name}_{captured_at.strftime(TIMESTAMP_FORMAT)}{RECORD_EXTENSION}'
        return os.path.join(self._vm_dir(vm_name), file_name)

    def append(self, record: ConfigurationRecord) -> str:
        """Write a record; never overwrites an existing file"""
        path = self.record_path(record.name, record.captured_at)
        os.makedirs(os.path.dirname(path), exist_ok=True)

        try:
            with open(path, 'x', encoding='utf-8') as f:
                json.dump(record.to_document(), f, indent=2, ensure_ascii=False)
        except FileExistsError:
            raise RecordWriteConflict(f'Configuration record already exists: {path}')

        logging.info(f'✓ Configuration record written: {path}')
        return path

    def list_for(self, vm_name: str) -> List[Tuple[str, datetime]]:
        """Records of a VM as (path, capture time), newest first"""
        vm_dir = self._vm_dir(vm_name)
        if not os.path.isdir(vm_dir):
            return []

        prefix = f'{vm_name}_'
        records = []
        for file_name in os.listdir(vm_dir):
            if not file_name.startswith(prefix):
                continue
            match = _RECORD_SUFFIX.search(file_name)
            # The timestamp must directly follow the VM name
            if not match or match.start() != len(vm_name):
                continue
            try:
                captured_at = datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
            except ValueError:
                logging.warning(f'Ignoring record with invalid timestamp: {file_name}')
                continue
            records.append((os.path.join(vm_dir, file_name), captured_at))

        records.sort(key=lambda item: item[1], reverse=True)
        return records

    def latest(self, vm_name: str) -> Optional[str]:
        records = self.list_for(vm_name)
        return records[0][0] if records else None

    def load(self, path: str) -> ConfigurationRecord:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except (ValueError, UnicodeDecodeError) as e:
            raise RecordFormatError('<document>', f'{os.path.basename(path)} is not valid JSON: {e}') from e
        return ConfigurationRecord.from_document(document)

    def entities(self) -> List[str]:
        """VM names that have at least one record"""
        if not os.path.isdir(self.backup_dir):
            return []
        names = []
        for entry in sorted(os.listdir(self.backup_dir)):
            if os.path.isdir(os.path.join(self.backup_dir, entry)) and self.list_for(entry):
                names.append(entry)
        return names

    def prune(self, vm_name: str, retention: timedelta = DEFAULT_RETENTION,
              now: Optional[datetime] = None) -> List[str]:
        """Delete records strictly older than now - retention"""
        cutoff = (now or datetime.now()) - retention
        removed = []

        for path, captured_at in self.list_for(vm_name):
            if captured_at >= cutoff:
                continue
            try:
                os.remove(path)
                removed.append(path)
                logging.info(f'✓ Expired record removed: {os.path.basename(path)}')
            except OSError as e:
                logging.error(f'✗ Error removing expired record {path}: {e}')

        if removed:
            logging.info(f'Pruned {len(removed)} records older than {cutoff.isoformat()} for VM {vm_name}')
        return removed
