from datetime import datetime, timedelta
from airflow import DAG
from airflow.operators.python import PythonOperator
from airflow.models import Variable
import logging
from metadata_store import MetadataStore
from ovirt_hypervisor import build_ovirt_hypervisor
from restore_orchestrator import RestoreError, RestoreOrchestrator
from restore_settings import restore_options, storage_connection_from_settings
from selection import FixedSelector, LatestSelector
from storage_client import StorageApiClient, eligible_snapshots

# DAG Configuration
default_args = {
    'owner': 'vm-config-restore',
    'depends_on_past': False,
    'start_date': datetime(2025, 1, 1),
    'email_on_failure': False,
    'email_on_retry': False,
    'retries': 0,  # Never create a second clone or VM for the same request
    'retry_delay': timedelta(minutes=10),
}

dag = DAG(
    'restaura_vm_de_clone',
    default_args=default_args,
    description='Restore a VM under a new name from a FlexClone of a storage snapshot',
    schedule=None,  # Manual trigger only
    catchup=False,
    max_active_runs=1,
    tags=['restore', 'dr', 'clone', 'manual']
)

BACKUP_DIR = Variable.get('backup_directory')


def _selector(answer):
    if answer is None or str(answer).lower() == 'latest':
        return LatestSelector()
    return FixedSelector(answer)


def validate_restore_request(**context):
    """Resolve record and snapshot from the run configuration without creating anything

    Run configuration:
        {"vm_name": "SQL01", "volume_name": "vm_datastore01",
         "record": "latest" | "<record label>" | "#2",
         "snapshot": "latest" | "<snapshot name>" | "#1"}
    """
    conf = context['dag_run'].conf or {}
    vm_name = conf.get('vm_name')
    volume_name = conf.get('volume_name')

    if not vm_name or not volume_name:
        raise ValueError('vm_name and volume_name must be provided in DAG run configuration')

    store = MetadataStore(BACKUP_DIR)
    records = store.list_for(vm_name)
    if not records:
        raise ValueError(f'No configuration records found for VM {vm_name}')

    storage = StorageApiClient(storage_connection_from_settings(Variable.get('storage_settings', deserialize_json=True)))
    volume = storage.find_volume(volume_name)
    if volume is None:
        raise ValueError(f'Volume {volume_name} not found')
    snapshots = eligible_snapshots(storage.list_snapshots(volume))
    if not snapshots:
        raise ValueError(f'No eligible snapshots on volume {volume_name}')

    logging.info(f'✓ Validation complete')
    logging.info(f'  VM: {vm_name} ({len(records)} records, newest {records[0][1].isoformat()})')
    logging.info(f'  Volume: {volume.name} ({len(snapshots)} eligible snapshots)')

    return {
        'vm_name': vm_name,
        'volume_name': volume_name,
        'record': conf.get('record', 'latest'),
        'snapshot': conf.get('snapshot', 'latest'),
    }


def perform_restore(**context):
    """Clone, validate and rebuild the VM; the clone stays in place for the VM to use"""
    request = context['task_instance'].xcom_pull(task_ids='validate_restore_request')
    options = restore_options(Variable.get('restore_settings', deserialize_json=True))

    storage = StorageApiClient(storage_connection_from_settings(Variable.get('storage_settings', deserialize_json=True)))
    hypervisor = build_ovirt_hypervisor(Variable.get('ovirt_settings', deserialize_json=True))

    try:
        orchestrator = RestoreOrchestrator(
            MetadataStore(BACKUP_DIR),
            storage,
            hypervisor,
            share_mount_root=options['share_mount_root'],
            name_conflict_policy=options['name_conflict_policy'],
            restored_suffix=options['restored_suffix'],
        )
        result = orchestrator.run(
            request['vm_name'],
            request['volume_name'],
            _selector(request['record']),
            _selector(request['snapshot']),
        )
    except RestoreError as e:
        if e.handle is not None:
            logging.error(f'✗ Restore failed with clone handle: {e.handle.to_dict()}')
        raise
    finally:
        hypervisor.close()

    logging.info(f'✓ Restore completed: {result.source_vm} -> {result.vm_name}')
    logging.info(f'  Clone: {result.handle.clone_name} ({result.handle.clone_uuid})')
    logging.info(f'  Share: {result.handle.share_name} ({result.handle.share_id})')
    for warning in result.warnings:
        logging.warning(f'  ⚠ {warning}')
    logging.info(f'To remove the clone trigger limpa_clone_restauracao with '
                 f'{{"clone": {result.handle.to_dict()}, "confirm": true}}')

    return result.to_dict()


# Define tasks
validate_request_task = PythonOperator(
    task_id='validate_restore_request',
    python_callable=validate_restore_request,
    dag=dag
)

perform_restore_task = PythonOperator(
    task_id='perform_restore',
    python_callable=perform_restore,
    dag=dag
)

# Task dependencies
validate_request_task >> perform_restore_task
