from datetime import datetime, timedelta
from airflow import DAG
from airflow.operators.python import PythonOperator
from airflow.models import Variable
import logging
import os
from config_snapshotter import run_capture
from leader_gate import DEFAULT_COORDINATION_RESOURCE, LeaderGate
from metadata_store import MetadataStore
from ovirt_hypervisor import build_ovirt_hypervisor
from restore_settings import retention_from_settings

# DAG Configuration
default_args = {
    'owner': 'vm-config-capture',
    'depends_on_past': False,
    'start_date': datetime(2025, 1, 1),
    'email_on_failure': False,
    'email_on_retry': False,
    'retries': 1,
    'retry_delay': timedelta(minutes=5),
}

dag = DAG(
    'captura_configuracao_vms',
    default_args=default_args,
    description='Capture the configuration of every clustered VM and prune expired records',
    schedule='0 */6 * * *',
    catchup=False,
    max_active_runs=1,
    tags=['capture', 'config', 'scheduled', 'source']
)

BACKUP_DIR = Variable.get('backup_directory')


def validate_backup_directory(**context):
    """Make sure the record directory exists and is writable"""
    os.makedirs(BACKUP_DIR, exist_ok=True)
    if not os.access(BACKUP_DIR, os.W_OK):
        raise RuntimeError(f'Backup directory {BACKUP_DIR} is not writable')

    logging.info(f'✓ Backup directory OK: {BACKUP_DIR}')
    return {'backup_directory': BACKUP_DIR}


def capture_configurations(**context):
    """Capture every VM, only on the node that owns the coordination VM"""
    ovirt_settings = Variable.get('ovirt_settings', deserialize_json=True)
    restore_settings = Variable.get('restore_settings', deserialize_json=True, default_var={})
    retention = retention_from_settings({'retention_days': restore_settings.get('retention_days')})

    hypervisor = build_ovirt_hypervisor(ovirt_settings)
    try:
        gate = LeaderGate(
            hypervisor,
            restore_settings.get('coordination_resource', DEFAULT_COORDINATION_RESOURCE),
            local_identity=restore_settings.get('local_identity'),
        )
        summary = run_capture(hypervisor, MetadataStore(BACKUP_DIR), retention=retention, gate=gate)
    finally:
        hypervisor.close()

    if summary['status'] == 'skipped':
        logging.info('Capture skipped on this node')
    elif summary['failed']:
        logging.warning(f"⚠ {len(summary['failed'])} VMs could not be captured: {list(summary['failed'])}")

    return summary


# Define tasks
validate_directory_task = PythonOperator(
    task_id='validate_backup_directory',
    python_callable=validate_backup_directory,
    dag=dag
)

capture_task = PythonOperator(
    task_id='capture_configurations',
    python_callable=capture_configurations,
    dag=dag
)

# Task dependencies
validate_directory_task >> capture_task
