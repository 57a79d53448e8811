"""Port interfaces - Layer boundary contracts.

Ports (2):
    DeploymentRecordStore - Deployment record + history persistence
    NotificationSink      - Status change notifications (webhook hand-off)
"""

from token_lifecycle.ports.deployment_store import DeploymentRecordStore
from token_lifecycle.ports.notification_sink import NotificationSink

__all__ = [
    "DeploymentRecordStore",
    "NotificationSink",
]
