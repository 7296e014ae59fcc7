"""Tests for the single-writer gate."""

from unittest.mock import patch

from hypervisor import HypervisorError
from leader_gate import LeaderGate


def test_owner_matching_local_node_is_authoritative(hypervisor):
    hypervisor.owners['HostedEngine'] = 'hv-node-01'

    assert LeaderGate(hypervisor, local_identity='hv-node-01').is_authoritative()


def test_match_ignores_domain_and_case(hypervisor):
    hypervisor.owners['HostedEngine'] = 'HV-NODE-01.corp.example.com'

    assert LeaderGate(hypervisor, local_identity='hv-node-01').is_authoritative()


def test_other_owner_is_not_authoritative(hypervisor):
    hypervisor.owners['HostedEngine'] = 'hv-node-02'

    assert not LeaderGate(hypervisor, local_identity='hv-node-01').is_authoritative()


def test_empty_owner_is_not_authoritative(hypervisor):
    assert not LeaderGate(hypervisor, local_identity='hv-node-01').is_authoritative()


def test_failed_query_is_not_authoritative(hypervisor, caplog):
    hypervisor.errors['owner_of'] = HypervisorError('engine unreachable')

    with caplog.at_level('ERROR'):
        assert not LeaderGate(hypervisor, local_identity='hv-node-01').is_authoritative()

    assert 'engine unreachable' in caplog.text


def test_custom_resource_name(hypervisor):
    hypervisor.owners['cluster-core'] = 'hv-node-03'

    gate = LeaderGate(hypervisor, 'cluster-core', local_identity='hv-node-03')

    assert gate.is_authoritative()
    assert ('owner_of', 'cluster-core') in hypervisor.calls


def test_defaults_to_hostname(hypervisor):
    hypervisor.owners['HostedEngine'] = 'this-host'

    with patch('leader_gate.socket.gethostname', return_value='this-host'):
        assert LeaderGate(hypervisor).is_authoritative()
