from datetime import datetime, timedelta
from airflow import DAG
from airflow.operators.python import PythonOperator
from airflow.models import Variable
import logging
from restore_orchestrator import CloneHandle, cleanup_clone
from restore_settings import storage_connection_from_settings
from storage_client import StorageApiClient, share_name_for

# DAG Configuration
default_args = {
    'owner': 'vm-config-restore',
    'depends_on_past': False,
    'start_date': datetime(2025, 1, 1),
    'email_on_failure': False,
    'email_on_retry': False,
    'retries': 0,
    'retry_delay': timedelta(minutes=5),
}

dag = DAG(
    'limpa_clone_restauracao',
    default_args=default_args,
    description='Delete the share and FlexClone created by a restore',
    schedule=None,  # Manual trigger only
    catchup=False,
    max_active_runs=1,
    tags=['restore', 'cleanup', 'clone', 'manual']
)


def cleanup_restore_clone(**context):
    """Delete share then clone of one restore run

    Run configuration:
        {"clone": {"clone_name": "...", "clone_uuid": "...", "share_id": "..."},
         "confirm": true}
    """
    conf = context['dag_run'].conf or {}
    clone = conf.get('clone') or {}

    if not clone.get('clone_name'):
        raise ValueError('clone.clone_name must be provided in DAG run configuration')

    handle = CloneHandle(
        clone_name=clone['clone_name'],
        share_name=clone.get('share_name') or share_name_for(clone['clone_name']),
        mount_path=clone.get('mount_path', ''),
        clone_uuid=clone.get('clone_uuid'),
        share_id=clone.get('share_id'),
    )

    logging.info(f'Cleanup requested for clone {handle.clone_name}, share {handle.share_name}')
    storage = StorageApiClient(storage_connection_from_settings(Variable.get('storage_settings', deserialize_json=True)))
    result = cleanup_clone(storage, handle, confirmed=conf.get('confirm') is True)

    if not result.ok:
        raise RuntimeError(f'Cleanup of {handle.clone_name} incomplete: {"; ".join(result.errors)}')

    return {
        'clone_name': handle.clone_name,
        'share_name': handle.share_name,
        'share_deleted': result.share_deleted,
        'clone_deleted': result.clone_deleted,
        'completed_at': datetime.now().isoformat()
    }


# Define task
cleanup_task = PythonOperator(
    task_id='cleanup_restore_clone',
    python_callable=cleanup_restore_clone,
    dag=dag
)

cleanup_task
