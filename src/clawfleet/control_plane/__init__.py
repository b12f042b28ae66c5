"""Remote hosting control plane: GraphQL client, retry policy, deployment polling."""

from clawfleet.control_plane.client import ControlPlaneClient
from clawfleet.control_plane.polling import wait_for_deployment
from clawfleet.control_plane.retry import classify_error, retry_control_plane

__all__ = [
    "ControlPlaneClient",
    "classify_error",
    "retry_control_plane",
    "wait_for_deployment",
]
