from datetime import datetime, timedelta
from airflow import DAG
from airflow.operators.python import PythonOperator
from airflow.models import Variable
import logging
import os
from metadata_store import MetadataStore
from vm_config_record import RecordFormatError

# DAG Configuration
default_args = {
    'owner': 'vm-config-records',
    'depends_on_past': False,
    'start_date': datetime(2025, 1, 1),
    'email_on_failure': False,
    'email_on_retry': False,
    'retries': 0,
    'retry_delay': timedelta(minutes=5),
}

dag = DAG(
    'lista_registros_configuracao',
    default_args=default_args,
    description='List the configuration records available for a VM',
    schedule=None,  # Manual trigger only
    catchup=False,
    max_active_runs=1,
    tags=['records', 'list', 'manual']
)

BACKUP_DIR = Variable.get('backup_directory')


def validate_vm_name(**context):
    """VM name from the run configuration; lists known VMs when it has no records"""
    vm_name = context['dag_run'].conf.get('vm_name') if context['dag_run'].conf else None

    if not vm_name:
        raise ValueError('VM name must be provided in DAG run configuration: {"vm_name": "your_vm_name"}')

    store = MetadataStore(BACKUP_DIR)
    known = store.entities()
    if vm_name not in known:
        logging.warning(f'No records for VM {vm_name}. VMs with records: {known}')

    return {'vm_name': vm_name, 'has_records': vm_name in known}


def list_vm_records(**context):
    """List the records of a VM, newest first, with the label the restore DAG accepts"""
    vm_name = context['dag_run'].conf['vm_name']
    store = MetadataStore(BACKUP_DIR)
    records = store.list_for(vm_name)

    if not records:
        logging.info(f'No configuration records found for VM: {vm_name}')
        return {
            'vm_name': vm_name,
            'records': [],
            'total_records': 0,
            'message': f'No configuration records found for VM {vm_name}'
        }

    formatted_records = []
    for position, (path, captured_at) in enumerate(records, 1):
        entry = {
            'number': position,
            'label': os.path.splitext(os.path.basename(path))[0],
            'captured_at': captured_at.strftime('%Y-%m-%d %H:%M:%S'),
            'path': path,
        }
        try:
            record = store.load(path)
            entry.update({
                'valid': True,
                'cpu_count': record.cpu_count,
                'memory_mb': record.memory.startup_bytes // (1024 * 1024),
                'adapters': len(record.network_adapters),
                'disks': len(record.disks),
            })
        except (RecordFormatError, ValueError, OSError) as e:
            entry.update({'valid': False, 'error': str(e)})
        formatted_records.append(entry)

    result = {
        'vm_name': vm_name,
        'records': formatted_records,
        'total_records': len(formatted_records),
        'newest_record': formatted_records[0]['captured_at'],
        'oldest_record': formatted_records[-1]['captured_at'],
    }

    logging.info(f'✓ Found {len(formatted_records)} records for VM {vm_name}')
    logging.info(f'  Date range: {result["oldest_record"]} to {result["newest_record"]}')
    logging.info('Available records:')
    for entry in formatted_records:
        if entry['valid']:
            logging.info(f'  [{entry["number"]:2d}] ✓ {entry["label"]} ({entry["cpu_count"]} vCPU, '
                         f'{entry["memory_mb"]} MB, {entry["adapters"]} NICs, {entry["disks"]} disks)')
        else:
            logging.info(f'  [{entry["number"]:2d}] ✗ {entry["label"]} ({entry["error"]})')

    return result


# Define tasks
validate_vm_task = PythonOperator(
    task_id='validate_vm_name',
    python_callable=validate_vm_name,
    dag=dag
)

list_records_task = PythonOperator(
    task_id='list_vm_records',
    python_callable=list_vm_records,
    dag=dag
)

# Task dependencies
validate_vm_task >> list_records_task
