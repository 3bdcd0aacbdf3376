"""
Deployment tracking - follows external agent provisioning operations until
the provider reports a terminal state.
"""

from docbroker.deployments.notifications import (
    DeploymentEvent,
    LogNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from docbroker.deployments.provisioning import (
    DigitalOceanAgentsClient,
    OperationStatus,
    ProvisioningService,
)
from docbroker.deployments.reconciler import DeploymentReconciler
from docbroker.deployments.tracker import (
    DeploymentStatus,
    DeploymentTracker,
    DeploymentTrackingEntry,
)

__all__ = [
    # Tracking
    "DeploymentStatus",
    "DeploymentTracker",
    "DeploymentTrackingEntry",
    # Reconciliation
    "DeploymentReconciler",
    # Provisioning
    "DigitalOceanAgentsClient",
    "OperationStatus",
    "ProvisioningService",
    # Notifications
    "DeploymentEvent",
    "LogNotificationSink",
    "NotificationSink",
    "WebhookNotificationSink",
]
