import logging
import socket
from typing import Optional

from hypervisor import Hypervisor

# Must be the same on every node for the decision to hold cluster-wide
DEFAULT_COORDINATION_RESOURCE = 'HostedEngine'


def _short_name(host: str) -> str:
    return host.strip().split('.')[0].lower()


class LeaderGate:
    """Decides whether this node is the single writer for configuration capture"""

    def __init__(self, hypervisor: Hypervisor, resource_name: str = DEFAULT_COORDINATION_RESOURCE,
                 local_identity: Optional[str] = None):
        self.hypervisor = hypervisor
        self.resource_name = resource_name
        self.local_identity = local_identity or socket.gethostname()

    def is_authoritative(self) -> bool:
        """True only when the owner query succeeds and names this node"""
        try:
            owner = self.hypervisor.owner_of(self.resource_name)
        except Exception as e:
            logging.error(f'✗ Could not determine owner of {self.resource_name}: {e}')
            return False

        if not owner:
            logging.error(f'✗ No owner reported for {self.resource_name}')
            return False

        authoritative = _short_name(owner) == _short_name(self.local_identity)
        if authoritative:
            logging.info(f'✓ {self.local_identity} owns {self.resource_name}, proceeding as writer')
        else:
            logging.info(f'{self.resource_name} is owned by {owner}, not {self.local_identity}; skipping')
        return authoritative
